"""Parsing of host[:port] endpoint strings.

The external endpoint in a CredentialIssuer spec may be a DNS name, an IPv4
address or an IPv6 address, optionally followed by a port. IPv6 addresses
with a port must be wrapped in brackets.
"""

import ipaddress
import re
from typing import NamedTuple

from impersonation_controller.exceptions import EndpointParseError

# Kubernetes DNS subdomain name validation (RFC 1123)
_DNS_SUBDOMAIN_MAX_LENGTH = 253
_DNS_SUBDOMAIN_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")

_MAX_PORT = 65535


def validate_dns_name(name: str) -> bool | str:
    """Validate a DNS subdomain name.

    Args:
        name: The name to validate.

    Returns:
        True if valid, or an error message string if invalid.

    """
    if not name:
        return "Name cannot be empty"
    if len(name) > _DNS_SUBDOMAIN_MAX_LENGTH:
        return f"Name must be {_DNS_SUBDOMAIN_MAX_LENGTH} characters or less"
    if not _DNS_SUBDOMAIN_PATTERN.match(name):
        return "Name must consist of lowercase alphanumeric characters, '-' or '.', and must start and end with an alphanumeric character"
    return True


def is_ip(text: str) -> bool:
    """Return True if text is a literal IPv4 or IPv6 address."""
    try:
        ipaddress.ip_address(text)
    except ValueError:
        return False
    return True


class HostPort(NamedTuple):
    """A parsed endpoint.

    Attributes:
        host: DNS name or IP address, without brackets.
        port: Port number.

    """

    host: str
    port: int

    def endpoint(self) -> str:
        """Render the endpoint as host:port, bracketing IPv6 hosts."""
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


def parse_endpoint(text: str, default_port: int) -> HostPort:
    """Parse a host[:port] string.

    Args:
        text: The endpoint, e.g. "example.com", "10.0.0.1:8443" or "[::1]:443".
        default_port: Port to use when none is given.

    Returns:
        The parsed HostPort.

    Raises:
        EndpointParseError: If the host is neither an IP address nor a valid
            DNS name, or the port is not a number between 0 and 65535.

    """
    host, port_text = _split_host_port(text)

    port = default_port
    if port_text is not None:
        if not (port_text.isascii() and port_text.isdigit()) or int(port_text) > _MAX_PORT:
            raise EndpointParseError(f"invalid port {port_text!r}")
        port = int(port_text)

    if not is_ip(host):
        valid = validate_dns_name(host)
        if valid is not True:
            raise EndpointParseError(f"host {host!r} is not a valid hostname or IP address: {valid}")

    return HostPort(host=host, port=port)


def _split_host_port(text: str) -> tuple[str, str | None]:
    if text.startswith("["):
        closing = text.find("]")
        if closing == -1:
            raise EndpointParseError(f"missing ']' in address {text!r}")
        host = text[1:closing]
        rest = text[closing + 1 :]
        if not is_ip(host) or ":" not in host:
            raise EndpointParseError(f"bracketed host {host!r} is not an IPv6 address")
        if not rest:
            return host, None
        if not rest.startswith(":"):
            raise EndpointParseError(f"unexpected characters after ']' in address {text!r}")
        return host, rest[1:]

    # A bare IPv6 address has more than one colon and carries no port.
    if text.count(":") > 1:
        if not is_ip(text):
            raise EndpointParseError(f"address {text!r} has too many colons")
        return text, None

    if ":" in text:
        host, port_text = text.split(":", 1)
        return host, port_text
    return text, None
