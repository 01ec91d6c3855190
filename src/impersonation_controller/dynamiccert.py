"""In-memory certificate/key holders shared with the proxy server.

The controller writes certificate material into a DynamicCertProvider while
the proxy server thread reads it on every TLS handshake, so all access goes
through a lock.
"""

import threading

from icecream import ic

from impersonation_controller.certauthority import cert_key_pair_matches, parse_certificate_pem
from impersonation_controller.exceptions import CertificateError


class DynamicCertProvider:
    """Holds the current certificate and private key PEM pair, if any.

    Attributes:
        name: Name used when reporting on this provider.

    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._cert_pem: bytes | None = None
        self._key_pem: bytes | None = None

    def set_cert_key_content(self, cert_pem: bytes, key_pem: bytes) -> None:
        """Replace the stored pair after checking that it is usable.

        Args:
            cert_pem: PEM encoded certificate.
            key_pem: PEM encoded private key for the certificate.

        Raises:
            CertificateError: If the certificate cannot be parsed or the key
                does not belong to it. The previous content is kept.

        """
        cert = parse_certificate_pem(cert_pem)
        if not cert_key_pair_matches(cert, key_pem):
            raise CertificateError(f"{self.name}: private key does not match certificate")
        with self._lock:
            self._cert_pem = cert_pem
            self._key_pem = key_pem
        ic(self.name, "set")

    def unset_cert_key_content(self) -> None:
        """Forget the stored pair."""
        with self._lock:
            self._cert_pem = None
            self._key_pem = None
        ic(self.name, "unset")

    def current_cert_key_content(self) -> tuple[bytes | None, bytes | None]:
        """Return the stored (certificate PEM, key PEM) pair, or (None, None)."""
        with self._lock:
            return self._cert_pem, self._key_pem

    def __repr__(self) -> str:
        cert_pem, _ = self.current_cert_key_content()
        return f"DynamicCertProvider(name={self.name!r}, loaded={cert_pem is not None})"
