"""Reconciliation of the Services that expose the impersonation proxy.

Annotations requested in the CredentialIssuer spec are merged into the
Service rather than replacing its annotations, so that keys written by other
actors survive. The keys this controller wrote last time are remembered in a
bookkeeping annotation, which is how keys removed from the spec are detected
and removed from the Service.
"""

import copy
import json
from typing import Any

from icecream import ic
from kubernetes.client import V1ObjectMeta, V1Service, V1ServicePort, V1ServiceSpec

from impersonation_controller import console
from impersonation_controller.cluster import Cluster, conflicts_as_transient
from impersonation_controller.models import (
    APP_LABEL_KEY,
    DEFAULT_HTTPS_PORT,
    ControllerSettings,
    DesiredSpec,
    ServiceType,
)

ANNOTATION_KEYS_KEY = "credentialissuer.pinniped.dev/annotation-keys"


def _desired_service(
    settings: ControllerSettings,
    spec: DesiredSpec,
    *,
    name: str,
    service_type: ServiceType,
    load_balancer_ip: str | None,
) -> V1Service:
    return V1Service(
        metadata=V1ObjectMeta(
            name=name,
            namespace=settings.namespace,
            labels=dict(settings.labels),
            annotations=dict(spec.annotations),
        ),
        spec=V1ServiceSpec(
            type=service_type.value,
            ports=[V1ServicePort(port=DEFAULT_HTTPS_PORT, target_port=settings.port, protocol="TCP")],
            load_balancer_ip=load_balancer_ip or None,
            selector={APP_LABEL_KEY: settings.labels.get(APP_LABEL_KEY, "")},
        ),
    )


def build_load_balancer(settings: ControllerSettings, spec: DesiredSpec) -> V1Service:
    """Return the desired LoadBalancer Service for the impersonation proxy."""
    return _desired_service(
        settings,
        spec,
        name=settings.load_balancer_service_name,
        service_type=ServiceType.LOAD_BALANCER,
        load_balancer_ip=spec.load_balancer_ip,
    )


def build_cluster_ip(settings: ControllerSettings, spec: DesiredSpec) -> V1Service:
    """Return the desired ClusterIP Service for the impersonation proxy."""
    return _desired_service(
        settings,
        spec,
        name=settings.cluster_ip_service_name,
        service_type=ServiceType.CLUSTER_IP,
        load_balancer_ip=None,
    )


def _recorded_annotation_keys(annotations: dict[str, str] | None) -> list[str]:
    raw = (annotations or {}).get(ANNOTATION_KEYS_KEY)
    if raw is None:
        return []
    try:
        keys = json.loads(raw)
    except json.JSONDecodeError:
        # Treat an unreadable record as absent; it is rewritten below.
        return []
    if not isinstance(keys, list):
        return []
    return [key for key in keys if isinstance(key, str)]


def _like_existing(value: Any, existing: Any) -> Any:
    # Empty and missing collections are the same thing to the API server.
    if not value and not existing:
        return existing
    return value


def merge_service(existing: V1Service, desired: V1Service) -> V1Service:
    """Return a copy of existing carrying the fields this controller owns from desired.

    Labels, selector, type and load balancer IP are overwritten. Annotations
    are merged: desired keys are overlaid, keys recorded in the existing
    bookkeeping annotation but no longer desired are deleted, and the
    bookkeeping annotation itself is dropped when nothing is desired.

    Args:
        existing: The Service as currently stored.
        desired: The desired Service, bookkeeping annotation included.

    Returns:
        The updated copy; existing is not modified.

    """
    desired_annotations = dict(desired.metadata.annotations or {})
    updated = copy.deepcopy(existing)

    updated.metadata.labels = _like_existing(desired.metadata.labels, existing.metadata.labels)
    updated.spec.load_balancer_ip = desired.spec.load_balancer_ip
    updated.spec.type = desired.spec.type
    updated.spec.selector = desired.spec.selector

    annotations = dict(existing.metadata.annotations or {})
    annotations.update(desired_annotations)
    for old_key in _recorded_annotation_keys(existing.metadata.annotations):
        if old_key not in desired_annotations:
            annotations.pop(old_key, None)
    if not any(key != ANNOTATION_KEYS_KEY for key in desired_annotations):
        annotations.pop(ANNOTATION_KEYS_KEY, None)
    updated.metadata.annotations = _like_existing(annotations, existing.metadata.annotations)

    return updated


def create_or_update_service(cluster: Cluster, desired: V1Service) -> None:
    """Create the desired Service, or update the existing one when it drifted.

    The sorted list of requested annotation keys is recorded in the
    bookkeeping annotation of desired (only when at least one annotation is
    requested). No write happens when the stored Service already matches.

    Args:
        cluster: The resource store.
        desired: The desired Service; its annotations are modified in place.

    """
    annotations = desired.metadata.annotations or {}
    desired_keys = sorted(annotations)
    if desired_keys:
        annotations[ANNOTATION_KEYS_KEY] = json.dumps(desired_keys, separators=(",", ":"))
        desired.metadata.annotations = annotations

    name = desired.metadata.name
    existing = cluster.get_service(name)
    if existing is None:
        console.action(f"Creating {desired.spec.type} service {console.ref(cluster.namespace, name)}")
        with conflicts_as_transient(f"could not create service {name}"):
            cluster.create_service(desired)
        return

    updated = merge_service(existing, desired)
    if updated == existing:
        ic("service unchanged", name)
        return

    console.action(f"Updating {desired.spec.type} service {console.ref(cluster.namespace, name)}")
    cluster.update_service(updated)


def ensure_service_removed(cluster: Cluster, name: str) -> None:
    """Delete the named Service if it exists, tolerating a concurrent delete."""
    if cluster.get_service(name) is None:
        return
    console.action(f"Deleting service {console.ref(cluster.namespace, name)}")
    if not cluster.delete_service(name):
        ic("service already deleted", name)
