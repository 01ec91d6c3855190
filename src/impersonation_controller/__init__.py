"""impersonation-controller: keeps a Kubernetes impersonation proxy in its desired state.

This package reconciles the impersonation proxy described by a
CredentialIssuer: it runs the proxy server, exposes it through a
LoadBalancer or ClusterIP Service, maintains its CA and TLS serving
certificate, and publishes the outcome as a CredentialIssuer strategy.

Example usage:
    from impersonation_controller import Cluster, ControllerSettings, ImpersonatorConfigController

    controller = ImpersonatorConfigController(settings, Cluster(settings.namespace), factory, signer)
    status = controller.sync()
"""

__version__ = "0.1.0"

from impersonation_controller.cli import cli
from impersonation_controller.cluster import Cluster
from impersonation_controller.controller import ImpersonatorConfigController
from impersonation_controller.dynamiccert import DynamicCertProvider
from impersonation_controller.exceptions import (
    CertificateError,
    ClusterConnectionError,
    EndpointParseError,
    ImpersonationError,
    ProxyCrashError,
    ResolutionError,
    SigningCredentialError,
    SpecValidationError,
    StorageCorruptionError,
    SyncError,
    TransientConflictError,
)
from impersonation_controller.models import ControllerSettings, ReconciliationStatus

__all__ = [
    # Version
    "__version__",
    # Main CLI
    "cli",
    # Classes
    "Cluster",
    "ControllerSettings",
    "DynamicCertProvider",
    "ImpersonatorConfigController",
    "ReconciliationStatus",
    # Exceptions
    "ImpersonationError",
    "CertificateError",
    "ClusterConnectionError",
    "EndpointParseError",
    "ProxyCrashError",
    "ResolutionError",
    "SigningCredentialError",
    "SpecValidationError",
    "StorageCorruptionError",
    "SyncError",
    "TransientConflictError",
]
