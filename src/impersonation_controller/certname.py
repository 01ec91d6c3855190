"""Selection of the names the TLS serving certificate must cover.

The names come from the explicit external endpoint when one is configured,
otherwise from the addresses assigned to the generated Service.
"""

import ipaddress

from icecream import ic

from impersonation_controller import console
from impersonation_controller.cluster import Cluster
from impersonation_controller.endpoint import parse_endpoint
from impersonation_controller.exceptions import ResolutionError
from impersonation_controller.models import (
    DEFAULT_HTTPS_PORT,
    CertNameInfo,
    ControllerSettings,
    DesiredSpec,
    IPAddress,
    ServiceType,
)


def _parse_ip(text: str | None) -> IPAddress | None:
    if not text:
        return None
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def from_endpoint_config(external_endpoint: str) -> CertNameInfo:
    """Build the certificate name from an explicit external endpoint.

    The default HTTPS port is dropped from the client endpoint.

    Args:
        external_endpoint: A validated host[:port] string.

    Returns:
        A ready CertNameInfo covering the endpoint's IP or hostname.

    """
    addr = parse_endpoint(external_endpoint, DEFAULT_HTTPS_PORT)
    endpoint = addr.endpoint().removesuffix(f":{DEFAULT_HTTPS_PORT}")

    ip = _parse_ip(addr.host)
    if ip is not None:
        return CertNameInfo(ready=True, selected_ips=(ip,), client_endpoint=endpoint)
    return CertNameInfo(ready=True, selected_hostname=addr.host, client_endpoint=endpoint)


def from_cluster_ip_service(cluster: Cluster, settings: ControllerSettings) -> CertNameInfo:
    """Build the certificate name from the generated ClusterIP Service.

    Not ready while the Service is missing or has not been assigned an IP.
    """
    service = cluster.get_service(settings.cluster_ip_service_name)
    if service is None:
        return CertNameInfo.not_ready()

    primary_ip = service.spec.cluster_ip if service.spec else None
    if not primary_ip:
        return CertNameInfo.not_ready()

    # cluster_ip is always set when cluster_i_ps is, but not the other way around.
    addresses = (service.spec.cluster_i_ps or []) or [primary_ip]
    ips = tuple(ip for ip in (_parse_ip(address) for address in addresses) if ip is not None)
    if not ips:
        return CertNameInfo.not_ready()
    return CertNameInfo(ready=True, selected_ips=ips, client_endpoint=primary_ip)


def from_load_balancer(cluster: Cluster, settings: ControllerSettings) -> CertNameInfo:
    """Build the certificate name from the generated LoadBalancer Service.

    A hostname ingress is preferred over an IP ingress.

    Raises:
        ResolutionError: If ingress entries exist but none carries a usable
            hostname or IP address.

    """
    name = settings.load_balancer_service_name
    service = cluster.get_service(name)
    if service is None:
        return CertNameInfo.not_ready()

    ingresses = []
    if service.status and service.status.load_balancer:
        ingresses = service.status.load_balancer.ingress or []

    if not ingresses or (not ingresses[0].hostname and not ingresses[0].ip):
        console.step(
            f"Load balancer {console.ref(cluster.namespace, name)} has no ingress yet, "
            "waiting before generating the TLS certificate"
        )
        return CertNameInfo.not_ready()

    for ingress in ingresses:
        if ingress.hostname:
            return CertNameInfo(ready=True, selected_hostname=ingress.hostname, client_endpoint=ingress.hostname)

    for ingress in ingresses:
        ip = _parse_ip(ingress.ip)
        if ip is not None:
            return CertNameInfo(ready=True, selected_ips=(ip,), client_endpoint=ingress.ip)

    raise ResolutionError(
        f"could not find valid IP addresses or hostnames from load balancer {cluster.namespace}/{name}"
    )


def find_desired_tls_certificate_name(
    cluster: Cluster,
    settings: ControllerSettings,
    spec: DesiredSpec,
) -> CertNameInfo:
    """Decide which names the TLS serving certificate must cover.

    Args:
        cluster: The resource store.
        settings: Controller resource names.
        spec: The validated desired spec.

    Returns:
        The CertNameInfo; not ready when addresses are still being assigned.

    Raises:
        ResolutionError: If the load balancer reports malformed ingress data.

    """
    if spec.external_endpoint:
        info = from_endpoint_config(spec.external_endpoint)
    elif spec.service_type == ServiceType.CLUSTER_IP:
        info = from_cluster_ip_service(cluster, settings)
    else:
        info = from_load_balancer(cluster, settings)
    ic(info)
    return info
