"""Custom exceptions for impersonation-controller.

This module defines the exception hierarchy used by the reconciliation
controller. The hierarchy mirrors the failure taxonomy of a sync pass so
that the status composer can classify an error without string matching.
"""


class ImpersonationError(Exception):
    """Base exception for all impersonation-controller errors.

    All custom exceptions in this package inherit from this class,
    allowing callers to catch all controller errors with a single
    except clause if desired.
    """

    pass


class SpecValidationError(ImpersonationError):
    """Raised when the impersonation proxy configuration is malformed.

    This can occur when:
    - The mode is not one of auto, disabled or enabled
    - The service type is unknown
    - The load balancer IP or the external endpoint cannot be parsed
    - The service type is None but no external endpoint is set
    """

    pass


class EndpointParseError(ImpersonationError):
    """Raised when a host[:port] endpoint string cannot be parsed."""

    pass


class ClusterConnectionError(ImpersonationError):
    """Raised when connection to the Kubernetes cluster fails.

    This can occur when:
    - The kubeconfig is invalid or missing
    - The cluster is unreachable
    - Authentication fails
    """

    pass


class ResolutionError(ImpersonationError):
    """Raised when the load balancer reports ingress data that carries no usable address."""

    pass


class StorageCorruptionError(ImpersonationError):
    """Raised when stored CA material cannot be parsed.

    Corrupt CA secrets are never regenerated automatically, since that
    would silently discard material an operator may still depend on.
    """

    pass


class CertificateError(ImpersonationError):
    """Raised when certificate or private key PEM data is invalid."""

    pass


class ProxyCrashError(ImpersonationError):
    """Raised when the background proxy server exited unexpectedly.

    Attributes:
        errors: The crash error followed by any error reported while stopping.

    """

    def __init__(self, errors: list[BaseException]) -> None:
        self.errors = errors
        super().__init__(_join_messages(errors))


class SigningCredentialError(ImpersonationError):
    """Raised when the credential signing secret is missing or unparseable."""

    pass


class TransientConflictError(ImpersonationError):
    """Raised when a benign race with another controller replica was detected.

    Errors of this type are reported with a pending reason and are retried
    on the next sync rather than treated as setup failures.
    """

    pass


class SyncError(ImpersonationError):
    """Aggregate of every error raised while running a single sync pass.

    Attributes:
        errors: The individual errors, in the order they occurred.

    """

    def __init__(self, errors: list[BaseException]) -> None:
        self.errors = errors
        super().__init__(_join_messages(errors))


def _join_messages(errors: list[BaseException]) -> str:
    messages = [str(err) for err in errors]
    if len(messages) == 1:
        return messages[0]
    return "[" + ", ".join(messages) + "]"


def aggregate(errors: list[BaseException | None]) -> BaseException | None:
    """Collapse a list of optional errors into a single error.

    Args:
        errors: Errors to combine; None entries are ignored.

    Returns:
        None if there are no errors, the error itself if there is exactly
        one, otherwise a SyncError wrapping all of them.

    """
    present = [err for err in errors if err is not None]
    if not present:
        return None
    if len(present) == 1:
        return present[0]
    return SyncError(present)
