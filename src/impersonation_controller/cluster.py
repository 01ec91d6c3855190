"""Kubernetes cluster interaction utilities.

This module provides the Cluster class, the resource store the controller
uses for Services, Secrets, Nodes and the CredentialIssuer. Absence of an
object is reported as None rather than as an exception so that callers can
treat "not found" as an ordinary outcome.
"""

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, TypeVar

from icecream import ic
from kubernetes import client, config
from kubernetes.client import V1Secret, V1Service
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import MaxRetryError

from impersonation_controller import console
from impersonation_controller.exceptions import ClusterConnectionError, ImpersonationError, TransientConflictError

CREDENTIAL_ISSUER_GROUP = "config.concierge.pinniped.dev"
CREDENTIAL_ISSUER_VERSION = "v1alpha1"
CREDENTIAL_ISSUER_PLURAL = "credentialissuers"

_CONTROL_PLANE_LABELS = ("node-role.kubernetes.io/control-plane", "node-role.kubernetes.io/master")
_LEGACY_ROLE_LABEL = "kubernetes.io/role"

_T = TypeVar("_T")


def is_not_found(err: BaseException) -> bool:
    """Return True if err is an API error with status 404."""
    return isinstance(err, ApiException) and err.status == 404


def is_conflict(err: BaseException) -> bool:
    """Return True if err is an API conflict or already-exists error (status 409)."""
    return isinstance(err, ApiException) and err.status == 409


@contextmanager
def conflicts_as_transient(description: str) -> Iterator[None]:
    """Re-raise a 409 from the wrapped API calls as TransientConflictError.

    This happens when another replica creates the same object between our
    read and our create.

    Args:
        description: What was being written, used in the error message.

    """
    try:
        yield
    except ApiException as err:
        if not is_conflict(err):
            raise
        raise TransientConflictError(f"{description}: {err.reason or 'conflict'}") from err


def load_kubernetes_config(context: str | None = None) -> None:
    """Load in-cluster configuration, falling back to the local kubeconfig.

    Args:
        context: Kubeconfig context to use when running outside a cluster.

    Raises:
        ClusterConnectionError: If neither configuration can be loaded.

    """
    try:
        config.load_incluster_config()
        console.info("Loaded in-cluster Kubernetes configuration")
        return
    except ConfigException:
        pass
    try:
        config.load_kube_config(context=context)
    except ConfigException as e:
        raise ClusterConnectionError(f"Invalid or missing kubeconfig: {e}") from e
    console.info(f"Loaded kubeconfig{f' for context {console.highlight(context)}' if context else ''}")


class Cluster:
    """Reads and writes the cluster objects managed by the controller.

    Attributes:
        namespace: Namespace holding the managed Services and Secrets.
        core_v1_api: Client for Services, Secrets and Nodes.
        custom_objects_api: Client for the CredentialIssuer.

    """

    def __init__(
        self,
        namespace: str,
        *,
        core_v1_api: client.CoreV1Api | None = None,
        custom_objects_api: client.CustomObjectsApi | None = None,
    ) -> None:
        self.namespace = namespace
        self.core_v1_api = core_v1_api or client.CoreV1Api()
        self.custom_objects_api = custom_objects_api or client.CustomObjectsApi()

    @staticmethod
    def _call(fn: Callable[..., _T], *args: Any, **kwargs: Any) -> _T:
        try:
            return fn(*args, **kwargs)
        except MaxRetryError as e:
            raise ClusterConnectionError(f"Failed to connect to the Kubernetes cluster: {e.reason}") from e

    def _get_or_none(self, fn: Callable[..., _T], *args: Any) -> _T | None:
        try:
            return self._call(fn, *args)
        except ApiException as e:
            if is_not_found(e):
                return None
            raise

    def _delete(self, fn: Callable[..., Any], name: str) -> bool:
        try:
            self._call(fn, name, self.namespace)
        except ApiException as e:
            if is_not_found(e):
                return False
            raise
        return True

    def get_service(self, name: str) -> V1Service | None:
        """Return the named Service, or None if it does not exist."""
        return self._get_or_none(self.core_v1_api.read_namespaced_service, name, self.namespace)

    def create_service(self, service: V1Service) -> V1Service:
        return self._call(self.core_v1_api.create_namespaced_service, self.namespace, service)

    def update_service(self, service: V1Service) -> V1Service:
        return self._call(self.core_v1_api.replace_namespaced_service, service.metadata.name, self.namespace, service)

    def delete_service(self, name: str) -> bool:
        """Delete the named Service.

        Returns:
            False if the Service was already gone, True otherwise.

        """
        return self._delete(self.core_v1_api.delete_namespaced_service, name)

    def get_secret(self, name: str) -> V1Secret | None:
        """Return the named Secret, or None if it does not exist."""
        return self._get_or_none(self.core_v1_api.read_namespaced_secret, name, self.namespace)

    def create_secret(self, secret: V1Secret) -> V1Secret:
        return self._call(self.core_v1_api.create_namespaced_secret, self.namespace, secret)

    def delete_secret(self, name: str) -> bool:
        """Delete the named Secret.

        Returns:
            False if the Secret was already gone, True otherwise.

        """
        return self._delete(self.core_v1_api.delete_namespaced_secret, name)

    def has_control_plane_nodes(self) -> bool:
        """Query live whether any node in the cluster is a control plane node.

        Raises:
            ImpersonationError: If the cluster reports no nodes at all.

        """
        nodes = self._call(self.core_v1_api.list_node).items
        if not nodes:
            raise ImpersonationError("no nodes found")
        for node in nodes:
            labels = node.metadata.labels or {}
            if any(label in labels for label in _CONTROL_PLANE_LABELS):
                ic(node.metadata.name)
                return True
            if labels.get(_LEGACY_ROLE_LABEL) in ("master", "control-plane"):
                ic(node.metadata.name)
                return True
        return False

    def get_credential_issuer(self, name: str) -> dict[str, Any]:
        """Return the named cluster-scoped CredentialIssuer."""
        return self._call(
            self.custom_objects_api.get_cluster_custom_object,
            CREDENTIAL_ISSUER_GROUP,
            CREDENTIAL_ISSUER_VERSION,
            CREDENTIAL_ISSUER_PLURAL,
            name,
        )

    def replace_credential_issuer_status(self, name: str, body: dict[str, Any]) -> dict[str, Any]:
        """Write the status subresource of the named CredentialIssuer."""
        return self._call(
            self.custom_objects_api.replace_cluster_custom_object_status,
            CREDENTIAL_ISSUER_GROUP,
            CREDENTIAL_ISSUER_VERSION,
            CREDENTIAL_ISSUER_PLURAL,
            name,
            body,
        )

    def __repr__(self) -> str:
        return f"Cluster(namespace={self.namespace!r})"
