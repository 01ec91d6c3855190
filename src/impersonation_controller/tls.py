"""Reconciliation of the impersonation CA and TLS serving certificate Secrets.

An existing TLS Secret is run through an ordered list of checks. The first
check that fails causes the Secret to be deleted, after which a fresh
certificate is issued from the current CA once the certificate name is
known.
"""

import base64
import binascii
import ssl
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from cryptography import x509
from icecream import ic
from kubernetes.client import V1ObjectMeta, V1Secret

from impersonation_controller import console
from impersonation_controller.certauthority import (
    CertificateAuthority,
    cert_key_pair_matches,
    certificate_names,
)
from impersonation_controller.cluster import Cluster, conflicts_as_transient
from impersonation_controller.dynamiccert import DynamicCertProvider
from impersonation_controller.exceptions import CertificateError
from impersonation_controller.models import CertNameInfo, ControllerSettings, IPAddress

CA_COMMON_NAME = "Pinniped Impersonation Proxy CA"
CA_CRT_KEY = "ca.crt"
CA_KEY_KEY = "ca.key"
TLS_CERT_KEY = "tls.crt"
TLS_PRIVATE_KEY_KEY = "tls.key"


def secret_bytes(secret: V1Secret, key: str) -> bytes:
    """Return the decoded value stored under key in a Secret, or b"" if absent."""
    value = (secret.data or {}).get(key)
    if not value:
        return b""
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return b""


def _encode(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def decode_pem_certificate(data: bytes) -> bytes | None:
    """Return the DER bytes of a PEM certificate, or None if data is not one."""
    try:
        return ssl.PEM_cert_to_DER_cert(data.decode("ascii").strip())
    except ValueError:
        return None
    body = b"".join(match.group(2).split())
    try:
        return base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError):
        return None


class Failure(str, Enum):
    """Reasons an existing TLS Secret is discarded."""

    DECODE = "decode failure"
    PARSE = "parse failure"
    KEY_MISMATCH = "key mismatch"
    TRUST = "trust failure"
    STALE = "staleness"
    NAME_MISMATCH = "name mismatch"


@dataclass
class SecretUnderCheck:
    """The TLS Secret contents and the state it is checked against."""

    cert_pem: bytes
    key_pem: bytes
    name_info: CertNameInfo
    ca: CertificateAuthority
    der: bytes | None = None
    certificate: x509.Certificate | None = field(default=None, repr=False)


@dataclass(frozen=True)
class SecretCheck:
    """One step of the TLS Secret validation chain.

    Attributes:
        failure: The failure reported when the check does not pass.
        description: What a failure means, for logging.
        passes: Predicate; later checks may rely on state set by earlier ones.

    """

    failure: Failure
    description: str
    passes: Callable[[SecretUnderCheck], bool]


def _decodes(subject: SecretUnderCheck) -> bool:
    subject.der = decode_pem_certificate(subject.cert_pem)
    return subject.der is not None


def _parses(subject: SecretUnderCheck) -> bool:
    try:
        subject.certificate = x509.load_der_x509_certificate(subject.der or b"")
    except ValueError:
        return False
    return True


def _key_matches(subject: SecretUnderCheck) -> bool:
    return subject.certificate is not None and cert_key_pair_matches(subject.certificate, subject.key_pem)


def _trusted(subject: SecretUnderCheck) -> bool:
    return subject.certificate is not None and subject.ca.verifies(subject.certificate)


def _name_ready(subject: SecretUnderCheck) -> bool:
    return subject.name_info.ready


def _names_match(subject: SecretUnderCheck) -> bool:
    if subject.certificate is None:
        return False
    actual_ips, actual_hostnames = certificate_names(subject.certificate)
    ic(subject.name_info, actual_ips, actual_hostnames)
    return certificate_names_match(
        subject.name_info.selected_ips,
        actual_ips,
        subject.name_info.selected_hostname,
        actual_hostnames,
    )


TLS_SECRET_CHECKS: tuple[SecretCheck, ...] = (
    SecretCheck(Failure.DECODE, "found missing or not PEM-encoded data in TLS Secret", _decodes),
    SecretCheck(Failure.PARSE, "PEM data in TLS Secret represented an invalid cert", _parses),
    SecretCheck(Failure.KEY_MISMATCH, "found invalid private key PEM data in TLS Secret", _key_matches),
    SecretCheck(Failure.TRUST, "TLS cert was not signed by the current impersonation CA", _trusted),
    SecretCheck(Failure.STALE, "waiting for a new certificate name, so the current TLS cert is stale", _name_ready),
    SecretCheck(Failure.NAME_MISMATCH, "TLS cert names do not match the desired names", _names_match),
)


def find_failure(subject: SecretUnderCheck, checks: Sequence[SecretCheck] = TLS_SECRET_CHECKS) -> SecretCheck | None:
    """Run checks in order and return the first one that fails, or None if all pass."""
    for check in checks:
        if not check.passes(subject):
            return check
    return None


def certificate_names_match(
    desired_ips: Sequence[IPAddress],
    actual_ips: Sequence[IPAddress],
    desired_hostname: str,
    actual_hostnames: Sequence[str],
) -> bool:
    """Return True if a certificate's names exactly cover the desired names.

    IPs must match in count and order with no DNS names present. A hostname
    must be the only DNS name, with no IPs present.
    """
    if desired_ips and actual_ips and len(desired_ips) == len(actual_ips) and not actual_hostnames:
        return all(desired == actual for desired, actual in zip(desired_ips, actual_ips))
    if desired_hostname and len(actual_hostnames) == 1 and actual_hostnames[0] == desired_hostname and not actual_ips:
        return True
    return False


def ensure_ca_secret(cluster: Cluster, settings: ControllerSettings) -> CertificateAuthority:
    """Load the impersonation CA, creating and storing a new one if none exists.

    Raises:
        StorageCorruptionError: If the stored CA cannot be parsed.

    """
    secret = cluster.get_secret(settings.ca_secret_name)
    if secret is not None:
        return CertificateAuthority.load(secret_bytes(secret, CA_CRT_KEY), secret_bytes(secret, CA_KEY_KEY))

    ca = CertificateAuthority.new(CA_COMMON_NAME)
    ca_secret = V1Secret(
        metadata=V1ObjectMeta(
            name=settings.ca_secret_name,
            namespace=settings.namespace,
            labels=dict(settings.labels),
        ),
        data={CA_CRT_KEY: _encode(ca.bundle()), CA_KEY_KEY: _encode(ca.private_key_pem())},
        type="Opaque",
    )
    console.action(
        f"Creating CA certificates for impersonation proxy in {console.ref(settings.namespace, settings.ca_secret_name)}"
    )
    with conflicts_as_transient(f"could not create CA secret {settings.ca_secret_name}"):
        cluster.create_secret(ca_secret)
    return ca


def ensure_tls_secret_removed(cluster: Cluster, settings: ControllerSettings, provider: DynamicCertProvider) -> None:
    """Delete the TLS Secret if present and forget the loaded serving certificate.

    A concurrent delete by another replica is not an error; in that case the
    loaded certificate is left alone.
    """
    if cluster.get_secret(settings.tls_secret_name) is None:
        return
    console.action(
        f"Deleting TLS certificates for impersonation proxy in {console.ref(settings.namespace, settings.tls_secret_name)}"
    )
    if not cluster.delete_secret(settings.tls_secret_name):
        ic("TLS secret already deleted")
        return
    provider.unset_cert_key_content()


def load_tls_cert(provider: DynamicCertProvider, cert_pem: bytes, key_pem: bytes) -> None:
    """Load a serving certificate into the provider, clearing it on failure.

    Raises:
        CertificateError: If the PEM data cannot be used.

    """
    try:
        provider.set_cert_key_content(cert_pem, key_pem)
    except CertificateError as err:
        provider.unset_cert_key_content()
        raise CertificateError(f"could not parse TLS cert PEM data from Secret: {err}") from err
    console.step("Loaded TLS certificates for impersonation proxy")


def _create_tls_secret(
    cluster: Cluster,
    settings: ControllerSettings,
    ca: CertificateAuthority,
    name_info: CertNameInfo,
) -> tuple[bytes, bytes]:
    hostnames = [name_info.selected_hostname] if name_info.selected_hostname else []
    cert_pem, key_pem = ca.issue_server_cert(hostnames, name_info.selected_ips)

    secret = V1Secret(
        metadata=V1ObjectMeta(
            name=settings.tls_secret_name,
            namespace=settings.namespace,
            labels=dict(settings.labels),
        ),
        data={TLS_PRIVATE_KEY_KEY: _encode(key_pem), TLS_CERT_KEY: _encode(cert_pem)},
        type="kubernetes.io/tls",
    )
    names = ", ".join([*hostnames, *(str(ip) for ip in name_info.selected_ips)])
    console.action(
        f"Creating TLS certificates for impersonation proxy covering {console.highlight(names)} "
        f"in {console.ref(settings.namespace, settings.tls_secret_name)}"
    )
    with conflicts_as_transient(f"could not create TLS secret {settings.tls_secret_name}"):
        cluster.create_secret(secret)
    return cert_pem, key_pem


def ensure_tls_secret(
    cluster: Cluster,
    settings: ControllerSettings,
    provider: DynamicCertProvider,
    name_info: CertNameInfo,
    ca: CertificateAuthority,
) -> None:
    """Make the TLS Secret match the CA and the desired names, and load it.

    An existing Secret failing any check is deleted. When no Secret remains
    and the name is known, a new certificate is issued, stored and loaded.
    When the name is not yet known, no certificate is served.

    Raises:
        CertificateError: If the remaining Secret cannot be loaded.

    """
    secret = cluster.get_secret(settings.tls_secret_name)

    if secret is not None:
        subject = SecretUnderCheck(
            cert_pem=secret_bytes(secret, TLS_CERT_KEY),
            key_pem=secret_bytes(secret, TLS_PRIVATE_KEY_KEY),
            name_info=name_info,
            ca=ca,
        )
        failed = find_failure(subject)
        if failed is None:
            load_tls_cert(provider, subject.cert_pem, subject.key_pem)
            return
        console.warning(f"{failed.description} ({failed.failure.value})")
        ensure_tls_secret_removed(cluster, settings, provider)

    if not name_info.ready:
        return

    cert_pem, key_pem = _create_tls_secret(cluster, settings, ca, name_info)
    load_tls_cert(provider, cert_pem, key_pem)
