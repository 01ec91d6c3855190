"""HTTPS listener started in place of the impersonation proxy.

The listener terminates TLS with whatever serving certificate the controller
has currently loaded, answers health checks, and refuses everything else.
Forwarding impersonated requests to the API server is handled elsewhere.
"""

import json
import ssl
import tempfile
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

from icecream import ic

from impersonation_controller.dynamiccert import DynamicCertProvider
from impersonation_controller.process import StartFunc

DEFAULT_BIND = "0.0.0.0"


class _ServingContexts:
    """Builds SSL contexts from a provider, caching one per certificate."""

    def __init__(self, provider: DynamicCertProvider) -> None:
        self._provider = provider
        self._lock = threading.Lock()
        self._cached: tuple[bytes, ssl.SSLContext] | None = None

    def current(self) -> ssl.SSLContext | None:
        cert_pem, key_pem = self._provider.current_cert_key_content()
        if cert_pem is None or key_pem is None:
            return None
        with self._lock:
            if self._cached is not None and self._cached[0] == cert_pem:
                return self._cached[1]
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            context.minimum_version = ssl.TLSVersion.TLSv1_2
            # ssl only loads certificate chains from files.
            with tempfile.TemporaryDirectory() as tmp:
                cert_path = Path(tmp) / "tls.crt"
                key_path = Path(tmp) / "tls.key"
                cert_path.write_bytes(cert_pem)
                key_path.write_bytes(key_pem)
                context.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path))
            self._cached = (cert_pem, context)
            return context


class _ProxyHandler(BaseHTTPRequestHandler):
    """Request handler for the listener."""

    signing_cert_provider: DynamicCertProvider | None = None

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        ic(self.address_string(), format % args)

    def send_json(self, data: dict, status: int = 200) -> None:
        body = json.dumps(data).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self) -> None:  # noqa: N802
        if self.path.rstrip("/") == "/healthz":
            signer_loaded = False
            if self.signing_cert_provider is not None:
                signer_loaded = self.signing_cert_provider.current_cert_key_content()[0] is not None
            self.send_json({"status": "ok", "signerLoaded": signer_loaded})
            return
        self.send_json({"message": "impersonation is not available on this listener"}, 503)


def tls_server_factory(
    port: int,
    serving_cert_provider: DynamicCertProvider,
    signing_cert_provider: DynamicCertProvider,
    bind: str = DEFAULT_BIND,
) -> StartFunc:
    """Build a start function for the HTTPS listener.

    The TLS context is chosen per handshake, so certificates loaded into the
    serving provider after startup take effect without a restart. Handshakes
    fail while no serving certificate is loaded.

    Args:
        port: Port to listen on.
        serving_cert_provider: Source of the TLS serving certificate.
        signing_cert_provider: Source of the credential signing CA.
        bind: Address to bind to.

    Returns:
        A function that serves until its stop event is set.

    """
    contexts = _ServingContexts(serving_cert_provider)

    def select_context(ssl_socket: ssl.SSLObject, server_name: str | None, _: ssl.SSLContext) -> int | None:
        context = contexts.current()
        if context is None:
            ic("no serving certificate loaded", server_name)
            return ssl.ALERT_DESCRIPTION_HANDSHAKE_FAILURE
        ssl_socket.context = context
        return None

    base_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    base_context.minimum_version = ssl.TLSVersion.TLSv1_2
    base_context.sni_callback = select_context

    handler = type("ProxyHandler", (_ProxyHandler,), {"signing_cert_provider": signing_cert_provider})

    def start(stop_event: threading.Event) -> None:
        server = ThreadingHTTPServer((bind, port), handler)
        server.daemon_threads = True
        server.socket = base_context.wrap_socket(server.socket, server_side=True, do_handshake_on_connect=False)

        serve_thread = threading.Thread(target=server.serve_forever, name="impersonation-proxy-listener", daemon=True)
        serve_thread.start()
        try:
            stop_event.wait()
        finally:
            server.shutdown()
            server.server_close()
            serve_thread.join()

    return start
