"""Tests for controller.py module."""

import threading
import time
from datetime import datetime, timezone

import pytest
from kubernetes.client import V1ObjectMeta, V1Secret

from conftest import credential_issuer
from impersonation_controller.controller import ImpersonatorConfigController
from impersonation_controller.exceptions import ImpersonationError, ProxyCrashError, SyncError, TransientConflictError
from impersonation_controller.exposure import build_load_balancer, create_or_update_service
from impersonation_controller.models import DesiredSpec, StrategyReason, StrategyStatus
from impersonation_controller.status import MESSAGE_DISABLED_AUTOMATICALLY, MESSAGE_DISABLED_EXPLICITLY

NOW = datetime(2026, 3, 4, 5, 6, 7, tzinfo=timezone.utc)


@pytest.fixture
def controller(settings, fake_cluster, fake_proxy, signing_provider):
    ctrl = ImpersonatorConfigController(
        settings,
        fake_cluster,
        fake_proxy,
        signing_provider,
        clock=lambda: NOW,
    )
    yield ctrl
    ctrl.proxy.ensure_stopped()


def _published(fake_cluster):
    return fake_cluster.credential_issuer["status"]["strategies"][0]


class TestDisabled:
    """Tests for disabled modes."""

    def test_disabled_removes_everything(self, settings, fake_cluster, controller, signing_provider):
        """Test that explicitly disabling tears down every generated object."""
        fake_cluster.credential_issuer = credential_issuer(mode="enabled")
        create_or_update_service(fake_cluster, build_load_balancer(settings, DesiredSpec(mode="enabled")))
        fake_cluster.assign_ingress(settings.load_balancer_service_name, ip="10.0.0.5")
        with pytest.raises(ImpersonationError):
            # No signer Secret yet, so this pass fails after issuing the TLS cert.
            controller.sync()
        assert settings.tls_secret_name in fake_cluster.secrets
        assert controller.proxy.is_running

        fake_cluster.credential_issuer["spec"] = credential_issuer(mode="disabled")["spec"]
        status = controller.sync()

        assert (status.status, status.reason, status.message) == (
            StrategyStatus.ERROR,
            StrategyReason.DISABLED,
            MESSAGE_DISABLED_EXPLICITLY,
        )
        assert not controller.proxy.is_running
        assert settings.load_balancer_service_name not in fake_cluster.services
        assert settings.cluster_ip_service_name not in fake_cluster.services
        assert settings.tls_secret_name not in fake_cluster.secrets
        assert controller.serving_cert_provider.current_cert_key_content() == (None, None)
        assert signing_provider.current_cert_key_content() == (None, None)
        assert _published(fake_cluster)["reason"] == "Disabled"

    def test_auto_mode_with_control_plane(self, fake_cluster, controller):
        """Test that auto mode stays off when control plane nodes are visible."""
        fake_cluster.credential_issuer = credential_issuer(mode="auto")
        fake_cluster.control_plane = True

        status = controller.sync()
        controller.sync()

        assert status.message == MESSAGE_DISABLED_AUTOMATICALLY
        assert not controller.proxy.is_running
        assert fake_cluster.services == {}
        assert fake_cluster.node_queries == 1


class TestLoadBalancer:
    """Tests for the LoadBalancer flow."""

    def test_pending_until_ingress_assigned(self, settings, fake_cluster, fake_proxy, controller, signer_secret):
        """Test the pending status, then the listening status once the ingress arrives."""
        fake_cluster.credential_issuer = credential_issuer(mode="auto", annotations={"a": "1"})

        status = controller.sync()

        assert status.reason == StrategyReason.PENDING
        assert controller.proxy.is_running
        assert fake_proxy.factory_calls[0][0] == 8444
        assert settings.load_balancer_service_name in fake_cluster.services
        assert settings.ca_secret_name in fake_cluster.secrets
        assert settings.tls_secret_name not in fake_cluster.secrets

        fake_cluster.assign_ingress(settings.load_balancer_service_name, ip="10.0.0.5")
        status = controller.sync()

        assert status.status == StrategyStatus.SUCCESS
        assert status.reason == StrategyReason.LISTENING
        assert status.endpoint == "https://10.0.0.5"
        assert settings.tls_secret_name in fake_cluster.secrets
        assert controller.serving_cert_provider.current_cert_key_content()[0] is not None
        assert controller.signing_cert_provider.current_cert_key_content()[0] == signer_secret.bundle()
        published = _published(fake_cluster)
        assert published["frontend"]["impersonationProxyInfo"]["endpoint"] == "https://10.0.0.5"
        assert published["lastUpdateTime"] == "2026-03-04T05:06:07Z"

    def test_second_pass_is_idempotent(self, settings, fake_cluster, controller, signer_secret):
        """Test that a second pass over a converged cluster writes nothing."""
        fake_cluster.credential_issuer = credential_issuer(mode="enabled", annotations={"a": "1"})
        controller.sync()
        fake_cluster.assign_ingress(settings.load_balancer_service_name, hostname="lb.example.com")
        controller.sync()
        fake_cluster.reset_calls()
        writes = len(fake_cluster.status_writes)

        status = controller.sync()

        assert status.endpoint == "https://lb.example.com"
        assert fake_cluster.mutations == 0
        assert len(fake_cluster.status_writes) == writes

    def test_switch_to_cluster_ip(self, settings, fake_cluster, controller, signer_secret):
        """Test that changing the Service type swaps the Services and reissues the cert."""
        fake_cluster.credential_issuer = credential_issuer(mode="enabled")
        controller.sync()
        fake_cluster.assign_ingress(settings.load_balancer_service_name, ip="10.0.0.5")
        controller.sync()

        fake_cluster.credential_issuer["spec"] = credential_issuer(mode="enabled", service_type="ClusterIP")["spec"]
        status = controller.sync()

        assert settings.load_balancer_service_name not in fake_cluster.services
        assert settings.cluster_ip_service_name in fake_cluster.services
        assert status.endpoint == "https://10.96.0.10"


class TestExternalEndpoint:
    """Tests for explicitly configured endpoints."""

    def test_no_service(self, settings, fake_cluster, controller, signer_secret):
        """Test that service type None uses only the external endpoint."""
        fake_cluster.credential_issuer = credential_issuer(
            mode="enabled", service_type="None", external_endpoint="198.51.100.9:443"
        )

        status = controller.sync()

        assert fake_cluster.services == {}
        assert status.status == StrategyStatus.SUCCESS
        assert status.endpoint == "https://198.51.100.9"


class TestErrors:
    """Tests for failed sync passes."""

    def test_invalid_spec(self, fake_cluster, controller):
        """Test that an invalid spec is published as an error and nothing is started."""
        fake_cluster.credential_issuer = credential_issuer(mode="sometimes")

        with pytest.raises(ImpersonationError, match="invalid proxy mode"):
            controller.sync()

        published = _published(fake_cluster)
        assert published["status"] == "Error"
        assert published["reason"] == "ErrorDuringSetup"
        assert published["message"].startswith("could not load CredentialIssuer spec.impersonationProxy: ")
        assert not controller.proxy.is_running

    def test_missing_signer_secret(self, settings, fake_cluster, controller):
        """Test that a ready proxy without a signer Secret reports an error."""
        fake_cluster.credential_issuer = credential_issuer(mode="enabled", external_endpoint="proxy.example.com")

        with pytest.raises(ImpersonationError, match="credential signing secret"):
            controller.sync()

        assert controller.last_status.reason == StrategyReason.ERROR_DURING_SETUP
        assert controller.signing_cert_provider.current_cert_key_content() == (None, None)

    def test_credential_issuer_unreadable(self, fake_cluster, controller):
        """Test that nothing is published when the CredentialIssuer cannot be read."""

        def fail(name):
            raise RuntimeError("forbidden")

        fake_cluster.get_credential_issuer = fail

        with pytest.raises(ImpersonationError, match="could not get CredentialIssuer to update: forbidden"):
            controller.sync()

        assert fake_cluster.status_writes == []

    def test_sync_and_status_errors_are_aggregated(self, fake_cluster, controller):
        """Test that a failing status write is reported alongside the sync error."""
        fake_cluster.credential_issuer = credential_issuer(mode="sometimes")

        def fail(name, body):
            raise RuntimeError("status write failed")

        fake_cluster.replace_credential_issuer_status = fail

        with pytest.raises(SyncError) as exc_info:
            controller.sync()

        assert len(exc_info.value.errors) == 2
        assert "status write failed" in str(exc_info.value)

    def test_concurrent_create_is_pending(self, settings, fake_cluster, controller, monkeypatch):
        """Test that losing a create race to another replica is published as pending."""
        fake_cluster.credential_issuer = credential_issuer(mode="enabled", external_endpoint="proxy.example.com")
        fake_cluster.secrets[settings.ca_secret_name] = V1Secret(metadata=V1ObjectMeta(name=settings.ca_secret_name))
        read = fake_cluster.get_secret
        monkeypatch.setattr(
            fake_cluster,
            "get_secret",
            lambda name: None if name == settings.ca_secret_name else read(name),
        )

        with pytest.raises(TransientConflictError, match="could not create CA secret"):
            controller.sync()

        published = _published(fake_cluster)
        assert published["status"] == "Error"
        assert published["reason"] == "Pending"

    def test_proxy_crash_then_restart(self, fake_cluster, fake_proxy, controller, signer_secret):
        """Test that a crashed proxy is reported and restarted on the next pass."""
        fake_cluster.credential_issuer = credential_issuer(mode="enabled", external_endpoint="proxy.example.com")
        assert controller.sync().status == StrategyStatus.SUCCESS

        fake_proxy.crash(OSError("listener died"))
        assert controller.sync_requested.wait(2)

        with pytest.raises(ProxyCrashError, match="listener died"):
            controller.sync()
        assert _published(fake_cluster)["reason"] == "ErrorDuringSetup"
        assert controller.signing_cert_provider.current_cert_key_content() == (None, None)

        status = controller.sync()

        assert status.status == StrategyStatus.SUCCESS
        assert len(fake_proxy.factory_calls) == 2
        assert controller.signing_cert_provider.current_cert_key_content()[0] is not None


class TestSyncBookkeeping:
    """Tests for sync requests, failure counting and overlapping calls."""

    def test_failures_are_counted_until_success(self, fake_cluster, controller):
        """Test that consecutive failures are counted and reset by a successful pass."""
        fake_cluster.credential_issuer = credential_issuer(mode="sometimes")

        for _ in range(2):
            with pytest.raises(ImpersonationError):
                controller.sync()

        assert controller.consecutive_failures == 2

        fake_cluster.credential_issuer = credential_issuer(mode="disabled")
        controller.sync()

        assert controller.consecutive_failures == 0

    def test_request_sync(self, controller):
        """Test that a sync request is flagged for the driver."""
        assert not controller.sync_requested.is_set()

        controller.request_sync()

        assert controller.sync_requested.is_set()

    def test_concurrent_calls_do_not_overlap(self, fake_cluster, controller):
        """Test that a second caller waits for the running pass."""
        fake_cluster.credential_issuer = credential_issuer(mode="disabled")
        entered = threading.Event()
        release = threading.Event()
        active = []
        overlaps = []
        read = fake_cluster.get_credential_issuer

        def slow_read(name):
            overlaps.append(len(active))
            active.append(name)
            entered.set()
            release.wait(2)
            active.pop()
            return read(name)

        fake_cluster.get_credential_issuer = slow_read
        first = threading.Thread(target=controller.sync)
        second = threading.Thread(target=controller.sync)
        first.start()
        assert entered.wait(2)
        second.start()
        time.sleep(0.05)
        release.set()
        first.join(timeout=5)
        second.join(timeout=5)

        assert overlaps == [0, 0]
        assert controller.last_status.reason == StrategyReason.DISABLED
