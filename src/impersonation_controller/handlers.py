"""kopf handlers that drive the impersonator config controller.

The CredentialIssuer is watched for creation and spec changes, and the
generated Services and the Secrets in the controller namespace are watched
for any event. Every trigger leads to the same sync pass of the controller
carried in the operator memo. A failed pass raises kopf.TemporaryError so
that kopf retries it with a delay that doubles on each consecutive failure.
"""

import os
from typing import Any

import kopf
from icecream import ic
from kubernetes import client

from impersonation_controller import console
from impersonation_controller.cluster import (
    CREDENTIAL_ISSUER_GROUP,
    CREDENTIAL_ISSUER_PLURAL,
    CREDENTIAL_ISSUER_VERSION,
)
from impersonation_controller.controller import ImpersonatorConfigController

RESYNC_PERIOD = float(os.getenv("IMPERSONATION_RESYNC_PERIOD", "180"))
SYNC_REQUEST_POLL_INTERVAL = 1.0
BASE_RETRY_DELAY = 0.005
MAX_RETRY_DELAY = 1000.0
ANNOTATION_PREFIX = "impersonation.concierge.pinniped.dev"

_CREDENTIAL_ISSUERS = (CREDENTIAL_ISSUER_GROUP, CREDENTIAL_ISSUER_VERSION, CREDENTIAL_ISSUER_PLURAL)


def retry_delay(failures: int) -> float:
    """Return the delay before retrying after the given number of failures in a row.

    Args:
        failures: Consecutive failed sync passes, including the latest one.

    Returns:
        5 ms after the first failure, doubling each time, capped at 1000 s.

    """
    if failures < 1:
        return BASE_RETRY_DELAY
    return min(BASE_RETRY_DELAY * 2 ** min(failures - 1, 32), MAX_RETRY_DELAY)


def sync_or_retry(controller: ImpersonatorConfigController) -> None:
    """Run one sync pass, turning a failure into a kopf retry.

    Raises:
        kopf.TemporaryError: If the pass failed.

    """
    try:
        status = controller.sync()
    except Exception as err:
        delay = retry_delay(controller.consecutive_failures)
        console.error(f"Sync of {console.highlight(controller.key)} failed, retrying in {delay:g}s: {err}")
        raise kopf.TemporaryError(str(err), delay=delay) from err
    console.success(f"Synced {console.highlight(controller.key)}: {status.reason.value}")


def is_managed_credential_issuer(name: str, memo: kopf.Memo, **_: Any) -> bool:
    return name == memo.controller.settings.credential_issuer_name


def is_managed_service(name: str, namespace: str, memo: kopf.Memo, **_: Any) -> bool:
    settings = memo.controller.settings
    return namespace == settings.namespace and name in (
        settings.load_balancer_service_name,
        settings.cluster_ip_service_name,
    )


def is_managed_secret(name: str, namespace: str, memo: kopf.Memo, **_: Any) -> bool:
    settings = memo.controller.settings
    return namespace == settings.namespace and name in (
        settings.tls_secret_name,
        settings.ca_secret_name,
        settings.signer_secret_name,
    )


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **_: Any) -> None:
    """Apply kopf settings."""
    settings.posting.enabled = False
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(prefix=ANNOTATION_PREFIX)
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(
        prefix=ANNOTATION_PREFIX,
        key="last-handled-configuration",
    )


@kopf.on.login()
def login(**_: Any) -> kopf.ConnectionInfo:
    """Authenticate kopf with the configuration already loaded for the Kubernetes client.

    This keeps the operator on the same cluster and context as the
    controller's own API calls.
    """
    config = client.Configuration.get_default_copy()
    header = config.get_api_key_with_prefix("authorization") or ""
    scheme, _sep, token = header.rpartition(" ")
    return kopf.ConnectionInfo(
        server=config.host,
        ca_path=config.ssl_ca_cert,
        insecure=not config.verify_ssl,
        username=config.username or None,
        password=config.password or None,
        scheme=scheme or None,
        token=token or None,
        certificate_path=config.cert_file,
        private_key_path=config.key_file,
    )


@kopf.on.resume(*_CREDENTIAL_ISSUERS, when=is_managed_credential_issuer)
@kopf.on.create(*_CREDENTIAL_ISSUERS, when=is_managed_credential_issuer)
@kopf.on.update(*_CREDENTIAL_ISSUERS, field="spec", when=is_managed_credential_issuer)
def reconcile_credential_issuer(name: str, memo: kopf.Memo, **_: Any) -> None:
    """Sync when the CredentialIssuer is first seen or its spec changes."""
    ic(name)
    sync_or_retry(memo.controller)


@kopf.timer(*_CREDENTIAL_ISSUERS, interval=RESYNC_PERIOD, initial_delay=RESYNC_PERIOD, when=is_managed_credential_issuer)
def resync(memo: kopf.Memo, **_: Any) -> None:
    """Periodic sync pass, correcting drift that no watch event reported."""
    sync_or_retry(memo.controller)


@kopf.daemon(*_CREDENTIAL_ISSUERS, when=is_managed_credential_issuer)
def process_sync_requests(stopped: kopf.DaemonStopped, memo: kopf.Memo, **_: Any) -> None:
    """Run the sync passes requested by owned object events and proxy server exits.

    A failed pass leaves the request set, so the daemon restarted by kopf
    after the retry delay picks it up again.
    """
    controller: ImpersonatorConfigController = memo.controller
    while not stopped:
        if not controller.sync_requested.wait(SYNC_REQUEST_POLL_INTERVAL):
            continue
        controller.sync_requested.clear()
        try:
            sync_or_retry(controller)
        except kopf.TemporaryError:
            controller.request_sync()
            raise


@kopf.on.event("", "v1", "services", when=is_managed_service)
def on_service_event(event: dict[str, Any], name: str, memo: kopf.Memo, **_: Any) -> None:
    """Request a sync pass when a generated Service changes or disappears."""
    ic(event.get("type"), name)
    memo.controller.request_sync()


@kopf.on.event("", "v1", "secrets", when=is_managed_secret)
def on_secret_event(event: dict[str, Any], name: str, memo: kopf.Memo, **_: Any) -> None:
    """Request a sync pass when the CA, TLS or signer Secret changes or disappears."""
    ic(event.get("type"), name)
    memo.controller.request_sync()


@kopf.on.cleanup()
def stop_proxy(memo: kopf.Memo, **_: Any) -> None:
    """Stop the impersonation proxy when the operator shuts down."""
    memo.controller.proxy.ensure_stopped()


def run(controller: ImpersonatorConfigController) -> None:
    """Run the operator until it is signalled to stop.

    Namespaced watches are limited to the controller namespace; the
    cluster-scoped CredentialIssuer is served regardless.

    Args:
        controller: The controller every handler syncs.

    """
    console.info(f"Starting impersonator config controller for {console.highlight(controller.key)}")
    kopf.run(
        standalone=True,
        namespaces=[controller.settings.namespace],
        memo=kopf.Memo(controller=controller),
    )
    console.info("Impersonator config controller stopped")
