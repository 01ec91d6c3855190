"""Shared test fixtures for impersonation-controller tests."""

import base64
import copy
import threading
from collections import Counter
from unittest.mock import MagicMock

import pytest
from icecream import ic
from kubernetes.client import (
    V1LoadBalancerIngress,
    V1LoadBalancerStatus,
    V1ObjectMeta,
    V1Secret,
    V1Service,
    V1ServiceStatus,
)
from kubernetes.client.exceptions import ApiException

from impersonation_controller.certauthority import CertificateAuthority
from impersonation_controller.dynamiccert import DynamicCertProvider
from impersonation_controller.models import ControllerSettings

ic.disable()


class FakeCluster:
    """In-memory stand-in for Cluster that counts mutating calls."""

    def __init__(self, namespace: str = "concierge") -> None:
        self.namespace = namespace
        self.services: dict[str, V1Service] = {}
        self.secrets: dict[str, V1Secret] = {}
        self.credential_issuer: dict = {}
        self.control_plane = False
        self.node_queries = 0
        self.calls: Counter[str] = Counter()
        self.status_writes: list[dict] = []
        self.next_cluster_ip = "10.96.0.10"

    @property
    def mutations(self) -> int:
        return sum(self.calls[kind] for kind in ("create", "update", "delete"))

    def reset_calls(self) -> None:
        self.calls.clear()

    def get_service(self, name):
        service = self.services.get(name)
        return copy.deepcopy(service) if service is not None else None

    def create_service(self, service):
        name = service.metadata.name
        if name in self.services:
            raise ApiException(status=409, reason="AlreadyExists")
        self.calls["create"] += 1
        stored = copy.deepcopy(service)
        if stored.spec.type == "ClusterIP" and not stored.spec.cluster_ip:
            stored.spec.cluster_ip = self.next_cluster_ip
            stored.spec.cluster_i_ps = [self.next_cluster_ip]
        self.services[name] = stored
        return copy.deepcopy(stored)

    def update_service(self, service):
        self.calls["update"] += 1
        self.services[service.metadata.name] = copy.deepcopy(service)
        return copy.deepcopy(service)

    def delete_service(self, name):
        self.calls["delete"] += 1
        return self.services.pop(name, None) is not None

    def get_secret(self, name):
        secret = self.secrets.get(name)
        return copy.deepcopy(secret) if secret is not None else None

    def create_secret(self, secret):
        name = secret.metadata.name
        if name in self.secrets:
            raise ApiException(status=409, reason="AlreadyExists")
        self.calls["create"] += 1
        self.secrets[name] = copy.deepcopy(secret)
        return copy.deepcopy(secret)

    def delete_secret(self, name):
        self.calls["delete"] += 1
        return self.secrets.pop(name, None) is not None

    def has_control_plane_nodes(self):
        self.node_queries += 1
        return self.control_plane

    def get_credential_issuer(self, name):
        return copy.deepcopy(self.credential_issuer)

    def replace_credential_issuer_status(self, name, body):
        self.status_writes.append(copy.deepcopy(body))
        self.credential_issuer = copy.deepcopy(body)
        return body

    def assign_ingress(self, name, *, ip=None, hostname=None):
        """Simulate the cloud provider assigning an ingress address."""
        service = self.services[name]
        service.status = V1ServiceStatus(
            load_balancer=V1LoadBalancerStatus(ingress=[V1LoadBalancerIngress(ip=ip, hostname=hostname)])
        )


class FakeProxyServer:
    """Proxy factory whose servers block until stopped, or until crash() is called."""

    def __init__(self) -> None:
        self.starts = 0
        self.factory_calls: list[tuple] = []
        self.stop_error: BaseException | None = None
        self._crash = threading.Event()
        self._crash_error: BaseException | None = None
        self.exited = threading.Event()

    def crash(self, error: BaseException | None) -> None:
        self._crash_error = error
        self._crash.set()

    def __call__(self, port, serving_provider, signing_provider):
        self.factory_calls.append((port, serving_provider, signing_provider))

        def start(stop_event: threading.Event) -> None:
            self.starts += 1
            self.exited.clear()
            try:
                while not stop_event.is_set():
                    if self._crash.wait(0.01):
                        self._crash.clear()
                        if self._crash_error is not None:
                            raise self._crash_error
                        return
                if self.stop_error is not None:
                    raise self.stop_error
            finally:
                self.exited.set()

        return start


def credential_issuer(mode="enabled", service_type="LoadBalancer", **extra):
    """Build a CredentialIssuer object with an impersonation proxy spec."""
    proxy = {"mode": mode, "service": {"type": service_type}}
    if "load_balancer_ip" in extra:
        proxy["service"]["loadBalancerIP"] = extra["load_balancer_ip"]
    if "annotations" in extra:
        proxy["service"]["annotations"] = extra["annotations"]
    if "external_endpoint" in extra:
        proxy["externalEndpoint"] = extra["external_endpoint"]
    return {
        "apiVersion": "config.concierge.pinniped.dev/v1alpha1",
        "kind": "CredentialIssuer",
        "metadata": {"name": "concierge-config"},
        "spec": {"impersonationProxy": proxy},
    }


@pytest.fixture
def settings():
    """Controller settings used across tests."""
    return ControllerSettings(
        namespace="concierge",
        credential_issuer_name="concierge-config",
        load_balancer_service_name="impersonation-lb",
        cluster_ip_service_name="impersonation-clusterip",
        tls_secret_name="impersonation-tls",
        ca_secret_name="impersonation-ca",
        signer_secret_name="impersonation-signer",
        labels={"app": "concierge", "team": "auth"},
    )


@pytest.fixture
def fake_cluster():
    """An empty in-memory cluster."""
    return FakeCluster()


@pytest.fixture
def signer_secret(settings, fake_cluster):
    """Store a credential signing CA Secret and return the CA."""
    ca = CertificateAuthority.new("Signer CA")
    fake_cluster.secrets[settings.signer_secret_name] = V1Secret(
        metadata=V1ObjectMeta(name=settings.signer_secret_name),
        data={
            "caCertificate": base64.b64encode(ca.bundle()).decode("ascii"),
            "caCertificatePrivateKey": base64.b64encode(ca.private_key_pem()).decode("ascii"),
        },
    )
    return ca


@pytest.fixture
def fake_proxy():
    """A controllable proxy server factory."""
    return FakeProxyServer()


@pytest.fixture
def serving_provider():
    return DynamicCertProvider("serving")


@pytest.fixture
def signing_provider():
    return DynamicCertProvider("signing")


@pytest.fixture
def mock_core_v1_api():
    """A MagicMock CoreV1Api."""
    return MagicMock()


@pytest.fixture
def mock_custom_objects_api():
    """A MagicMock CustomObjectsApi."""
    return MagicMock()
