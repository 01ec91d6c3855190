"""Composition and publication of the impersonation proxy status.

Every sync pass ends with exactly one ReconciliationStatus, which is
written into the status of the CredentialIssuer as the ImpersonationProxy
strategy.
"""

import base64
import copy
from datetime import datetime
from typing import Any

from icecream import ic

from impersonation_controller import console
from impersonation_controller.certauthority import CertificateAuthority
from impersonation_controller.cluster import Cluster, is_conflict
from impersonation_controller.exceptions import SyncError, TransientConflictError
from impersonation_controller.models import (
    CertNameInfo,
    DesiredState,
    ReconciliationStatus,
    StrategyReason,
    StrategyStatus,
)

STRATEGY_TYPE = "ImpersonationProxy"

MESSAGE_DISABLED_EXPLICITLY = "impersonation proxy was explicitly disabled by configuration"
MESSAGE_DISABLED_AUTOMATICALLY = "automatically determined that impersonation proxy should be disabled"
MESSAGE_PENDING = "waiting for load balancer Service to be assigned IP or hostname"
MESSAGE_LISTENING = "impersonation proxy is ready to accept client connections"


def compose_status(
    state: DesiredState,
    name_info: CertNameInfo,
    ca: CertificateAuthority | None,
    now: datetime,
) -> ReconciliationStatus:
    """Derive the published status from the outcome of a successful sync pass.

    Args:
        state: The resolved desired state.
        name_info: The resolved certificate name.
        ca: The impersonation CA; required when the proxy is listening.
        now: Timestamp for the status.

    Returns:
        The status, checked in order: explicitly disabled, disabled by auto
        mode, pending an address, listening.

    """
    if state.disabled_explicitly:
        return ReconciliationStatus(StrategyStatus.ERROR, StrategyReason.DISABLED, MESSAGE_DISABLED_EXPLICITLY, now)
    if state.disabled_by_auto_mode:
        return ReconciliationStatus(StrategyStatus.ERROR, StrategyReason.DISABLED, MESSAGE_DISABLED_AUTOMATICALLY, now)
    if not name_info.ready or ca is None:
        return ReconciliationStatus(StrategyStatus.ERROR, StrategyReason.PENDING, MESSAGE_PENDING, now)
    return ReconciliationStatus(
        StrategyStatus.SUCCESS,
        StrategyReason.LISTENING,
        MESSAGE_LISTENING,
        now,
        endpoint=f"https://{name_info.client_endpoint}",
        ca_bundle=base64.b64encode(ca.bundle()).decode("ascii"),
    )


def reason_for_error(err: BaseException) -> StrategyReason:
    """Classify a sync error.

    Conflicts and already-exists errors are expected while several replicas
    race, so they are reported as pending and recover on a following sync.
    """
    errors = err.errors if isinstance(err, SyncError) else [err]
    if all(isinstance(e, TransientConflictError) or is_conflict(e) for e in errors):
        return StrategyReason.PENDING
    return StrategyReason.ERROR_DURING_SETUP


def status_for_error(err: BaseException, now: datetime) -> ReconciliationStatus:
    """Build the error status published when a sync pass fails."""
    return ReconciliationStatus(StrategyStatus.ERROR, reason_for_error(err), str(err).strip(), now)


def _without_timestamp(strategy: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in strategy.items() if key != "lastUpdateTime"}


class CredentialIssuerStatusSink:
    """Writes the ImpersonationProxy strategy into a CredentialIssuer status.

    Attributes:
        cluster: The resource store.
        name: Name of the CredentialIssuer.

    """

    def __init__(self, cluster: Cluster, name: str) -> None:
        self.cluster = cluster
        self.name = name

    def update(self, credential_issuer: dict[str, Any], status: ReconciliationStatus) -> None:
        """Merge the strategy into the CredentialIssuer status and persist it.

        Other strategies are kept. Nothing is written when only the
        timestamp would change.

        Args:
            credential_issuer: The CredentialIssuer as last read.
            status: The status computed by this sync pass.

        """
        strategy = status.to_strategy()
        updated = copy.deepcopy(credential_issuer)
        strategies: list[dict[str, Any]] = updated.setdefault("status", {}).setdefault("strategies", [])

        for index, existing in enumerate(strategies):
            if existing.get("type") == STRATEGY_TYPE:
                if _without_timestamp(existing) == _without_timestamp(strategy):
                    ic("status unchanged")
                    return
                strategies[index] = strategy
                break
        else:
            strategies.append(strategy)

        console.step(f"Updating CredentialIssuer {console.highlight(self.name)} status: {status.reason.value}")
        self.cluster.replace_credential_issuer_status(self.name, updated)
