"""The impersonation proxy configuration controller.

This module provides the ImpersonatorConfigController class. One sync pass
resolves the desired state, toggles the proxy server and the two kinds of
Service, resolves the serving certificate name, reconciles the CA and TLS
Secrets, publishes a status and finally loads or clears the signing CA.
Each step is idempotent, so a pass interrupted part way is completed by the
next one.
"""

import threading
from collections.abc import Callable
from datetime import datetime, timezone

from icecream import ic

from impersonation_controller.certauthority import CertificateAuthority
from impersonation_controller.certname import find_desired_tls_certificate_name
from impersonation_controller.cluster import Cluster
from impersonation_controller.dynamiccert import DynamicCertProvider
from impersonation_controller.exceptions import ImpersonationError, aggregate
from impersonation_controller.exposure import (
    build_cluster_ip,
    build_load_balancer,
    create_or_update_service,
    ensure_service_removed,
)
from impersonation_controller.models import ControllerSettings, DesiredSpec, ReconciliationStatus
from impersonation_controller.process import ProxyFactory, ProxyProcess
from impersonation_controller.resolver import load_desired_spec, resolve_desired_state
from impersonation_controller.signer import clear_signer_ca, load_signer_ca
from impersonation_controller.status import CredentialIssuerStatusSink, compose_status, status_for_error
from impersonation_controller.tls import ensure_ca_secret, ensure_tls_secret, ensure_tls_secret_removed

SERVING_CERT_PROVIDER_NAME = "impersonation-proxy-serving-cert"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ImpersonatorConfigController:
    """Keeps the impersonation proxy and its resources in the desired state.

    All mutable state (the cached control plane answer, the proxy process)
    belongs to the instance, so independent instances never interfere.

    Attributes:
        settings: Names and labels of the managed resources.
        cluster: The resource store.
        key: The reconciliation key, the CredentialIssuer name.
        sync_requested: Set when a sync pass was requested outside of a watch
            event, for example because the proxy server exited.
        consecutive_failures: Number of sync passes that failed in a row.
        serving_cert_provider: Serving certificate shared with the proxy.
        signing_cert_provider: Signing CA shared with the proxy.
        proxy: Lifecycle manager of the proxy server.
        status_sink: Where each pass publishes its status.
        last_status: The status published by the most recent pass.

    """

    def __init__(
        self,
        settings: ControllerSettings,
        cluster: Cluster,
        proxy_factory: ProxyFactory,
        signing_cert_provider: DynamicCertProvider,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings
        self.cluster = cluster
        self.key = settings.credential_issuer_name
        self.sync_requested = threading.Event()
        self.consecutive_failures = 0
        self.serving_cert_provider = DynamicCertProvider(SERVING_CERT_PROVIDER_NAME)
        self.signing_cert_provider = signing_cert_provider
        self.proxy = ProxyProcess(proxy_factory, settings.port, self.serving_cert_provider, signing_cert_provider)
        self.status_sink = CredentialIssuerStatusSink(cluster, settings.credential_issuer_name)
        self.last_status: ReconciliationStatus | None = None
        self._clock = clock
        self._has_control_plane_nodes: bool | None = None
        self._sync_lock = threading.Lock()

    def sync(self) -> ReconciliationStatus:
        """Run one sync pass and publish its status.

        Passes never overlap: a call made while another pass is running waits
        for it to finish.

        Returns:
            The published status.

        Raises:
            ImpersonationError: If the CredentialIssuer cannot be read.
            Exception: The error of the pass and/or of publishing the status.
                The error status is still published when the pass fails.

        """
        with self._sync_lock:
            try:
                status = self._sync_once()
            except Exception:
                self.consecutive_failures += 1
                raise
            self.consecutive_failures = 0
            return status

    def _sync_once(self) -> ReconciliationStatus:
        ic("starting impersonator config sync")
        try:
            credential_issuer = self.cluster.get_credential_issuer(self.settings.credential_issuer_name)
        except Exception as err:
            raise ImpersonationError(f"could not get CredentialIssuer to update: {err}") from err

        sync_err: BaseException | None = None
        try:
            status = self._do_sync(credential_issuer)
        except Exception as err:
            sync_err = err
            status = status_for_error(err, self._clock())
            # The proxy is not ready, so the signer CA must not be served.
            clear_signer_ca(self.signing_cert_provider)

        self.last_status = status
        sink_err: BaseException | None = None
        try:
            self.status_sink.update(credential_issuer, status)
        except Exception as err:
            sink_err = err

        err = aggregate([sync_err, sink_err])
        if err is not None:
            raise err
        ic("finished impersonator config sync")
        return status

    def _has_control_plane(self) -> bool:
        # A live node list is expensive, so the answer is kept for the lifetime of the controller.
        if self._has_control_plane_nodes is None:
            self._has_control_plane_nodes = self.cluster.has_control_plane_nodes()
            ic(self._has_control_plane_nodes)
        return self._has_control_plane_nodes

    def _do_sync(self, credential_issuer: dict) -> ReconciliationStatus:
        spec = load_desired_spec(credential_issuer)
        state = resolve_desired_state(spec, has_control_plane=self._has_control_plane())
        ic(state)

        if state.should_have_impersonator:
            self.proxy.ensure_started(self.request_sync)
        else:
            self.proxy.ensure_stopped()

        self._toggle_services(
            spec,
            should_have_load_balancer=state.should_have_load_balancer,
            should_have_cluster_ip=state.should_have_cluster_ip,
        )

        try:
            name_info = find_desired_tls_certificate_name(self.cluster, self.settings, spec)
        except Exception:
            self.serving_cert_provider.unset_cert_key_content()
            raise

        ca: CertificateAuthority | None = None
        if state.should_have_tls_secret:
            ca = ensure_ca_secret(self.cluster, self.settings)
            ensure_tls_secret(self.cluster, self.settings, self.serving_cert_provider, name_info, ca)
        else:
            ensure_tls_secret_removed(self.cluster, self.settings, self.serving_cert_provider)

        status = compose_status(state, name_info, ca, self._clock())
        load_signer_ca(self.cluster, self.settings, self.signing_cert_provider, status.status)
        return status

    def _toggle_services(
        self,
        spec: DesiredSpec,
        *,
        should_have_load_balancer: bool,
        should_have_cluster_ip: bool,
    ) -> None:
        if should_have_load_balancer:
            create_or_update_service(self.cluster, build_load_balancer(self.settings, spec))
        else:
            ensure_service_removed(self.cluster, self.settings.load_balancer_service_name)

        if should_have_cluster_ip:
            create_or_update_service(self.cluster, build_cluster_ip(self.settings, spec))
        else:
            ensure_service_removed(self.cluster, self.settings.cluster_ip_service_name)

    def request_sync(self) -> None:
        """Ask for another sync pass, picked up by whoever drives the controller."""
        self.sync_requested.set()

    def __repr__(self) -> str:
        return f"ImpersonatorConfigController(key={self.key!r}, proxy={self.proxy!r})"
