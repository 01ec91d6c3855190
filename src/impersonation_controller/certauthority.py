"""Self-signed certificate authority for the impersonation proxy.

This module provides the CertificateAuthority class, which creates or loads
the CA that signs the proxy's TLS serving certificate, and small helpers for
inspecting PEM encoded certificates.
"""

import ipaddress
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from impersonation_controller.exceptions import CertificateError, StorageCorruptionError
from impersonation_controller.models import IPAddress

APPROXIMATELY_ONE_HUNDRED_YEARS = timedelta(days=100 * 365)
SERVING_CERT_COMMON_NAME = "impersonation-proxy"

# Certificates are backdated to tolerate clock skew between nodes.
_CLOCK_SKEW_ALLOWANCE = timedelta(minutes=5)

_PrivateKey = ec.EllipticCurvePrivateKey


def _generate_private_key() -> _PrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


def _private_key_to_pem(key: _PrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _validity_window(ttl: timedelta) -> tuple[datetime, datetime]:
    now = datetime.now(timezone.utc)
    return now - _CLOCK_SKEW_ALLOWANCE, now + ttl


def parse_certificate_pem(cert_pem: bytes) -> x509.Certificate:
    """Parse the first certificate in a PEM blob.

    Raises:
        CertificateError: If the data is not a PEM encoded certificate.

    """
    try:
        return x509.load_pem_x509_certificate(cert_pem)
    except ValueError as err:
        raise CertificateError(f"could not parse certificate PEM data: {err}") from err


def load_private_key_pem(key_pem: bytes) -> _PrivateKey:
    """Parse an unencrypted PEM private key.

    Raises:
        CertificateError: If the data is not a PEM encoded private key.

    """
    try:
        key = serialization.load_pem_private_key(key_pem, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as err:
        raise CertificateError(f"could not parse private key PEM data: {err}") from err
    return key


def cert_key_pair_matches(cert: x509.Certificate, key_pem: bytes) -> bool:
    """Return True if key_pem holds the private key for the certificate's public key."""
    try:
        key = load_private_key_pem(key_pem)
    except CertificateError:
        return False
    public_format = serialization.PublicFormat.SubjectPublicKeyInfo
    return key.public_key().public_bytes(serialization.Encoding.DER, public_format) == cert.public_key().public_bytes(
        serialization.Encoding.DER, public_format
    )


def certificate_names(cert: x509.Certificate) -> tuple[list[IPAddress], list[str]]:
    """Return the IP addresses and DNS names from the subject alternative name extension."""
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return [], []
    return list(san.get_values_for_type(x509.IPAddress)), list(san.get_values_for_type(x509.DNSName))


class CertificateAuthority:
    """A self-signed CA held in memory.

    Attributes:
        certificate: The CA certificate.

    """

    def __init__(self, certificate: x509.Certificate, private_key: _PrivateKey) -> None:
        self.certificate = certificate
        self._private_key = private_key

    @classmethod
    def new(cls, common_name: str, ttl: timedelta = APPROXIMATELY_ONE_HUNDRED_YEARS) -> "CertificateAuthority":
        """Generate a new self-signed CA.

        Args:
            common_name: Subject common name of the CA certificate.
            ttl: How long the CA certificate is valid for.

        Returns:
            The new CertificateAuthority.

        """
        key = _generate_private_key()
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
        not_before, not_after = _validity_window(ttl)
        certificate = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=True,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .sign(key, hashes.SHA256())
        )
        return cls(certificate, key)

    @classmethod
    def load(cls, cert_pem: bytes, key_pem: bytes) -> "CertificateAuthority":
        """Load a CA from its stored PEM certificate and private key.

        Raises:
            StorageCorruptionError: If either blob cannot be parsed or the key
                does not belong to the certificate.

        """
        try:
            certificate = parse_certificate_pem(cert_pem)
            key = load_private_key_pem(key_pem)
        except CertificateError as err:
            raise StorageCorruptionError(f"could not load CA: {err}") from err
        if not cert_key_pair_matches(certificate, key_pem):
            raise StorageCorruptionError("could not load CA: public key does not match private key")
        return cls(certificate, key)

    def bundle(self) -> bytes:
        """Return the PEM encoded CA certificate."""
        return self.certificate.public_bytes(serialization.Encoding.PEM)

    def private_key_pem(self) -> bytes:
        """Return the PEM encoded CA private key."""
        return _private_key_to_pem(self._private_key)

    def issue_server_cert(
        self,
        hostnames: Sequence[str],
        ips: Sequence[IPAddress],
        ttl: timedelta = APPROXIMATELY_ONE_HUNDRED_YEARS,
    ) -> tuple[bytes, bytes]:
        """Issue a TLS serving certificate signed by this CA.

        Args:
            hostnames: DNS names for the subject alternative name extension.
            ips: IP addresses for the subject alternative name extension.
            ttl: How long the certificate is valid for.

        Returns:
            A tuple of (certificate PEM, private key PEM).

        Raises:
            CertificateError: If neither a hostname nor an IP is given.

        """
        if not hostnames and not ips:
            raise CertificateError("could not create impersonation cert: no hostnames or IPs given")

        key = _generate_private_key()
        alt_names: list[x509.GeneralName] = [x509.DNSName(hostname) for hostname in hostnames]
        alt_names += [x509.IPAddress(ipaddress.ip_address(ip)) for ip in ips]
        not_before, not_after = _validity_window(ttl)

        certificate = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, SERVING_CERT_COMMON_NAME)]))
            .issuer_name(self.certificate.subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
            .add_extension(x509.SubjectAlternativeName(alt_names), critical=False)
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(self._private_key.public_key()),
                critical=False,
            )
            .sign(self._private_key, hashes.SHA256())
        )
        return certificate.public_bytes(serialization.Encoding.PEM), _private_key_to_pem(key)

    def verifies(self, cert: x509.Certificate) -> bool:
        """Return True if cert was issued by this CA and is currently valid."""
        if cert.issuer != self.certificate.subject:
            return False
        try:
            cert.verify_directly_issued_by(self.certificate)
        except (ValueError, TypeError, InvalidSignature):
            return False
        now = datetime.now(timezone.utc)
        return cert.not_valid_before_utc <= now <= cert.not_valid_after_utc

    def __repr__(self) -> str:
        return f"CertificateAuthority(subject={self.certificate.subject.rfc4514_string()!r})"
