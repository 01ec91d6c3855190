"""Tests for proxy.py module."""

import http.client
import ipaddress
import json
import socket
import ssl
import threading
import time

import pytest

from impersonation_controller.certauthority import CertificateAuthority
from impersonation_controller.proxy import tls_server_factory


def _free_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture(scope="module")
def ca():
    return CertificateAuthority.new("Proxy Test CA")


@pytest.fixture
def listener(serving_provider, signing_provider):
    port = _free_port()
    start = tls_server_factory(port, serving_provider, signing_provider, bind="127.0.0.1")
    stop_event = threading.Event()
    errors = []

    def run():
        try:
            start(stop_event)
        except Exception as err:  # noqa: BLE001
            errors.append(err)

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    _wait_for_port(port)
    yield port
    stop_event.set()
    thread.join(timeout=5)
    assert not thread.is_alive()
    assert errors == []


def _wait_for_port(port, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            with socket.create_connection(("127.0.0.1", port), timeout=0.5):
                return
        except OSError:
            time.sleep(0.02)
    raise AssertionError(f"listener on port {port} did not come up")


def _client_context(ca):
    context = ssl.create_default_context(cadata=ca.bundle().decode("ascii"))
    return context


def _get(port, context, path="/healthz"):
    conn = http.client.HTTPSConnection("localhost", port, context=context, timeout=5)
    try:
        conn.request("GET", path)
        response = conn.getresponse()
        return response.status, json.loads(response.read())
    finally:
        conn.close()


class TestTlsListener:
    """Tests for the HTTPS listener."""

    def test_healthz_with_loaded_cert(self, listener, ca, serving_provider):
        """Test that the listener serves the currently loaded certificate."""
        serving_provider.set_cert_key_content(*ca.issue_server_cert(["localhost"], [ipaddress.ip_address("127.0.0.1")]))

        status, body = _get(listener, _client_context(ca))

        assert status == 200
        assert body == {"status": "ok", "signerLoaded": False}

    def test_signer_loaded_is_reported(self, listener, ca, serving_provider, signing_provider):
        """Test that a loaded signing CA is reported."""
        serving_provider.set_cert_key_content(*ca.issue_server_cert(["localhost"], []))
        signing_provider.set_cert_key_content(ca.bundle(), ca.private_key_pem())

        _, body = _get(listener, _client_context(ca))

        assert body["signerLoaded"] is True

    def test_other_paths_unavailable(self, listener, ca, serving_provider):
        """Test that anything but health checks is refused."""
        serving_provider.set_cert_key_content(*ca.issue_server_cert(["localhost"], []))

        status, _ = _get(listener, _client_context(ca), "/api/v1/namespaces")

        assert status == 503

    def test_handshake_fails_without_cert(self, listener, ca):
        """Test that no TLS session is established while no cert is loaded."""
        with pytest.raises((ssl.SSLError, ConnectionError)):
            _get(listener, _client_context(ca))

    def test_rotated_cert_is_picked_up(self, listener, ca, serving_provider):
        """Test that a certificate loaded after startup is used without a restart."""
        other_ca = CertificateAuthority.new("Rotated CA")
        serving_provider.set_cert_key_content(*ca.issue_server_cert(["localhost"], []))
        assert _get(listener, _client_context(ca))[0] == 200

        serving_provider.set_cert_key_content(*other_ca.issue_server_cert(["localhost"], []))

        assert _get(listener, _client_context(other_ca))[0] == 200
