"""Data models for impersonation-controller.

This module provides type-safe data structures for the reconciliation
controller: the desired state read from the CredentialIssuer, the names the
serving certificate must cover, and the status published after each sync.
"""

import copy
import ipaddress
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address

# Port the proxy listens on inside the pod, and the port Services expose.
IMPERSONATION_PROXY_PORT = 8444
DEFAULT_HTTPS_PORT = 443

APP_LABEL_KEY = "app"


class ProxyMode(str, Enum):
    """Impersonation proxy enablement modes.

    Inherits from str to allow direct comparison with values read from
    the CredentialIssuer spec.
    """

    DISABLED = "disabled"
    AUTO = "auto"
    ENABLED = "enabled"


class ServiceType(str, Enum):
    """Kinds of Service that may front the impersonation proxy."""

    NONE = "None"
    LOAD_BALANCER = "LoadBalancer"
    CLUSTER_IP = "ClusterIP"


class StrategyStatus(str, Enum):
    """Overall outcome of a sync pass as published on the CredentialIssuer."""

    SUCCESS = "Success"
    ERROR = "Error"


class StrategyReason(str, Enum):
    """Machine-readable reason attached to a published status."""

    LISTENING = "Listening"
    PENDING = "Pending"
    DISABLED = "Disabled"
    ERROR_DURING_SETUP = "ErrorDuringSetup"


@dataclass(frozen=True, slots=True)
class DesiredSpec:
    """The impersonation proxy section of a CredentialIssuer spec.

    Attributes:
        mode: Whether the proxy is disabled, enabled, or decided automatically.
        service_type: Kind of Service to create in front of the proxy.
        load_balancer_ip: Optional IP to request from the load balancer.
        external_endpoint: Optional host[:port] clients use to reach the proxy.
        annotations: Annotations to put on the generated Service.

    """

    mode: str
    service_type: str = ServiceType.LOAD_BALANCER.value
    load_balancer_ip: str = ""
    external_endpoint: str = ""
    annotations: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_credential_issuer(cls, credential_issuer: dict[str, Any]) -> "DesiredSpec | None":
        """Copy the impersonation proxy spec out of a CredentialIssuer object.

        The object usually comes from a shared cache, so nested values are
        deep-copied before use.

        Args:
            credential_issuer: The CredentialIssuer as returned by the API.

        Returns:
            The DesiredSpec, or None when spec.impersonationProxy is absent.

        """
        raw = copy.deepcopy((credential_issuer.get("spec") or {}).get("impersonationProxy"))
        if raw is None:
            return None
        service = raw.get("service") or {}
        return cls(
            mode=raw.get("mode") or "",
            service_type=service.get("type") or ServiceType.LOAD_BALANCER.value,
            load_balancer_ip=service.get("loadBalancerIP") or "",
            external_endpoint=raw.get("externalEndpoint") or "",
            annotations=dict(service.get("annotations") or {}),
        )


@dataclass(frozen=True, slots=True)
class DesiredState:
    """Which sub-resources should exist after a sync pass."""

    should_have_impersonator: bool
    should_have_load_balancer: bool
    should_have_cluster_ip: bool
    should_have_tls_secret: bool
    disabled_explicitly: bool
    disabled_by_auto_mode: bool


@dataclass(frozen=True, slots=True)
class CertNameInfo:
    """Names the TLS serving certificate must cover.

    When ready is False the certificate cannot be issued yet and the other
    fields carry no meaning. Either selected_ips or selected_hostname is
    set, never both.

    Attributes:
        ready: Whether the certificate name is known.
        selected_ips: IP addresses to put in the certificate.
        selected_hostname: DNS name to put in the certificate.
        client_endpoint: Host or host:port clients should connect to.

    """

    ready: bool
    selected_ips: tuple[IPAddress, ...] = ()
    selected_hostname: str = ""
    client_endpoint: str = ""

    @classmethod
    def not_ready(cls) -> "CertNameInfo":
        return cls(ready=False)


@dataclass(frozen=True, slots=True)
class ReconciliationStatus:
    """The impersonation proxy strategy published after a sync pass.

    Attributes:
        status: Success or Error.
        reason: Machine-readable reason.
        message: Human-readable explanation.
        last_update_time: When this status was computed.
        endpoint: HTTPS URL clients should use (success only).
        ca_bundle: Base64-encoded CA certificate (success only).

    """

    status: StrategyStatus
    reason: StrategyReason
    message: str
    last_update_time: datetime
    endpoint: str = ""
    ca_bundle: str = ""

    def to_strategy(self) -> dict[str, Any]:
        """Render the status as a CredentialIssuer strategy entry."""
        strategy: dict[str, Any] = {
            "type": "ImpersonationProxy",
            "status": self.status.value,
            "reason": self.reason.value,
            "message": self.message,
            "lastUpdateTime": self.last_update_time.strftime("%Y-%m-%dT%H:%M:%SZ"),
        }
        if self.status == StrategyStatus.SUCCESS:
            strategy["frontend"] = {
                "type": "ImpersonationProxy",
                "impersonationProxyInfo": {
                    "endpoint": self.endpoint,
                    "certificateAuthorityData": self.ca_bundle,
                },
            }
        return strategy


@dataclass(frozen=True, slots=True)
class ControllerSettings:
    """Names and labels the controller uses for the resources it manages.

    Attributes:
        namespace: Namespace holding the Services and Secrets.
        credential_issuer_name: Name of the cluster-scoped CredentialIssuer.
        load_balancer_service_name: Name of the generated LoadBalancer Service.
        cluster_ip_service_name: Name of the generated ClusterIP Service.
        tls_secret_name: Name of the TLS serving certificate Secret.
        ca_secret_name: Name of the impersonation CA Secret.
        signer_secret_name: Name of the credential signing CA Secret.
        labels: Labels applied to every generated object.
        port: Port the proxy listens on.

    """

    namespace: str
    credential_issuer_name: str
    load_balancer_service_name: str
    cluster_ip_service_name: str
    tls_secret_name: str
    ca_secret_name: str
    signer_secret_name: str
    labels: dict[str, str] = field(default_factory=dict)
    port: int = IMPERSONATION_PROXY_PORT
