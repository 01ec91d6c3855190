"""Desired-state resolution for the impersonation proxy.

This module validates the impersonation proxy section of a CredentialIssuer
and turns it into the set of sub-resources that should exist.
"""

from typing import Any

from icecream import ic

from impersonation_controller.endpoint import is_ip, parse_endpoint
from impersonation_controller.exceptions import EndpointParseError, SpecValidationError
from impersonation_controller.models import (
    DEFAULT_HTTPS_PORT,
    DesiredSpec,
    DesiredState,
    ProxyMode,
    ServiceType,
)

_VALID_MODES = {mode.value for mode in ProxyMode}
_VALID_SERVICE_TYPES = {service_type.value for service_type in ServiceType}


def validate_desired_spec(spec: DesiredSpec) -> None:
    """Validate an impersonation proxy spec.

    When the mode is disabled no other field is inspected.

    Args:
        spec: The spec to validate.

    Raises:
        SpecValidationError: If any field is invalid.

    """
    if spec.mode not in _VALID_MODES:
        raise SpecValidationError(f"invalid proxy mode {spec.mode!r} (expected auto, disabled, or enabled)")

    if spec.mode == ProxyMode.DISABLED:
        return

    if spec.service_type not in _VALID_SERVICE_TYPES:
        raise SpecValidationError(
            f"invalid service type {spec.service_type!r} (expected None, LoadBalancer, or ClusterIP)"
        )

    if spec.load_balancer_ip and not is_ip(spec.load_balancer_ip):
        raise SpecValidationError(f"invalid LoadBalancerIP {spec.load_balancer_ip!r}")

    if not spec.external_endpoint and spec.service_type == ServiceType.NONE:
        raise SpecValidationError("externalEndpoint must be set when service.type is None")

    if spec.external_endpoint:
        try:
            parse_endpoint(spec.external_endpoint, DEFAULT_HTTPS_PORT)
        except EndpointParseError as err:
            raise SpecValidationError(f"invalid ExternalEndpoint {spec.external_endpoint!r}: {err}") from err


def load_desired_spec(credential_issuer: dict[str, Any]) -> DesiredSpec:
    """Read and validate the impersonation proxy spec from a CredentialIssuer.

    Args:
        credential_issuer: The CredentialIssuer object as returned by the API.

    Returns:
        A validated copy of the spec.

    Raises:
        SpecValidationError: If the section is missing or invalid.

    """
    spec = DesiredSpec.from_credential_issuer(credential_issuer)
    if spec is None:
        raise SpecValidationError("could not load CredentialIssuer: spec.impersonationProxy is nil")

    try:
        validate_desired_spec(spec)
    except SpecValidationError as err:
        raise SpecValidationError(f"could not load CredentialIssuer spec.impersonationProxy: {err}") from err

    ic(spec)
    return spec


def resolve_desired_state(spec: DesiredSpec, *, has_control_plane: bool) -> DesiredState:
    """Decide which sub-resources should exist for a validated spec.

    Args:
        spec: A spec that passed validate_desired_spec.
        has_control_plane: Whether the cluster has visible control plane nodes.

    Returns:
        The DesiredState for this sync pass.

    """
    auto = spec.mode == ProxyMode.AUTO
    should_have_impersonator = spec.mode == ProxyMode.ENABLED or (auto and not has_control_plane)

    return DesiredState(
        should_have_impersonator=should_have_impersonator,
        should_have_load_balancer=should_have_impersonator and spec.service_type == ServiceType.LOAD_BALANCER,
        should_have_cluster_ip=should_have_impersonator and spec.service_type == ServiceType.CLUSTER_IP,
        should_have_tls_secret=should_have_impersonator,
        disabled_explicitly=spec.mode == ProxyMode.DISABLED,
        disabled_by_auto_mode=auto and has_control_plane,
    )
