"""
TLS-ALPN-01 challenge (RFC 8737).

The validation server connects to <domain>:443 offering the ``acme-tls/1``
ALPN protocol and expects a self-signed certificate that

  - names exactly the identifier being validated (DNS or IP SAN), and
  - carries the critical acmeIdentifier extension (OID 1.3.6.1.5.5.7.1.31)
    whose value is the DER OCTET STRING of SHA-256(key_authorization).

`ProviderServer` serves such a certificate from a short-lived TLS listener.
"""
from __future__ import annotations

import datetime
import hashlib
import ipaddress
import logging
import os
import socketserver
import ssl
import tempfile
import threading
from typing import TYPE_CHECKING, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID, ObjectIdentifier

from acmecore.crypto import private_key_to_pem
from acmecore.errors import AcmeError
from acmecore.models import Authorization
from challenge import ChallengeType, Provider, ValidateFunc, find_challenge

if TYPE_CHECKING:
    from acmecore.core import Core

logger = logging.getLogger(__name__)

ACME_TLS_1_PROTOCOL = "acme-tls/1"
ID_PE_ACME_IDENTIFIER = ObjectIdentifier("1.3.6.1.5.5.7.1.31")

_CERT_LIFETIME = datetime.timedelta(days=1)


# ─── Certificate ──────────────────────────────────────────────────────────────


def acme_identifier_value(key_auth: str) -> bytes:
    """DER encoding of OCTET STRING(SHA-256(key_auth))."""
    digest = hashlib.sha256(key_auth.encode()).digest()
    return b"\x04\x20" + digest


def challenge_cert(domain: str, key_auth: str) -> tuple[bytes, bytes]:
    """
    Build the self-signed validation certificate for *domain*.

    Returns (certificate PEM, private key PEM).
    """
    key = ec.generate_private_key(ec.SECP256R1())
    now = datetime.datetime.now(datetime.timezone.utc)

    try:
        san: x509.GeneralName = x509.IPAddress(ipaddress.ip_address(domain))
    except ValueError:
        san = x509.DNSName(domain)

    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "ACME Challenge TEMP")])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + _CERT_LIFETIME)
        .add_extension(x509.SubjectAlternativeName([san]), critical=False)
        .add_extension(
            x509.UnrecognizedExtension(ID_PE_ACME_IDENTIFIER, acme_identifier_value(key_auth)),
            critical=True,
        )
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM), private_key_to_pem(key)


def challenge_ssl_context(domain: str, key_auth: str) -> ssl.SSLContext:
    """Server-side SSLContext presenting the challenge certificate over acme-tls/1."""
    cert_pem, key_pem = challenge_cert(domain, key_auth)

    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    ctx.set_alpn_protocols([ACME_TLS_1_PROTOCOL])

    # load_cert_chain only reads from files
    with tempfile.TemporaryDirectory(prefix="tls-alpn-01-") as tmp:
        certfile = os.path.join(tmp, "cert.pem")
        keyfile = os.path.join(tmp, "key.pem")
        with open(certfile, "wb") as fh:
            fh.write(cert_pem)
        with os.fdopen(os.open(keyfile, os.O_WRONLY | os.O_CREAT, 0o600), "wb") as fh:
            fh.write(key_pem)
        ctx.load_cert_chain(certfile=certfile, keyfile=keyfile)
    return ctx


# ─── Solver ───────────────────────────────────────────────────────────────────


class TLSALPN01Challenge:
    def __init__(self, core: "Core", validate: ValidateFunc, provider: Provider) -> None:
        self.core = core
        self.validate = validate
        self.provider = provider

    def solve(self, authz: Authorization) -> None:
        domain = authz.identifier.value
        chlng = find_challenge(ChallengeType.TLSALPN01, authz)

        key_auth = self.core.key_authorization(chlng.token)
        logger.info("[%s] acme: trying to solve TLS-ALPN-01", domain)

        try:
            self.provider.present(domain, chlng.token, key_auth)
        except Exception as exc:
            raise AcmeError(f"[{domain}] acme: error presenting token: {exc}") from exc

        try:
            self.validate(self.core, domain, chlng)
        finally:
            try:
                self.provider.cleanup(domain, chlng.token, key_auth)
            except Exception as exc:
                logger.warning("[%s] acme: cleaning up failed: %s", domain, exc)


# ─── Standalone server ────────────────────────────────────────────────────────


class _ChallengeTLSServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    daemon_threads = True
    allow_reuse_address = True
    ssl_context: ssl.SSLContext


class _HandshakeHandler(socketserver.BaseRequestHandler):
    """Completes the TLS handshake (which is all validation needs) and hangs up."""

    server: _ChallengeTLSServer

    def handle(self) -> None:
        try:
            with self.server.ssl_context.wrap_socket(self.request, server_side=True) as conn:
                logger.debug(
                    "tls-alpn-01 handshake from %s (alpn=%s)",
                    self.client_address[0], conn.selected_alpn_protocol(),
                )
        except (ssl.SSLError, OSError) as exc:
            logger.debug("tls-alpn-01 handshake from %s failed: %s", self.client_address[0], exc)


class ProviderServer:
    """Standalone TLS-ALPN-01 provider listening on *iface*:*port* (default :443)."""

    def __init__(self, iface: str = "", port: int | str = 443) -> None:
        self.iface = iface
        self.port = int(port)
        self._server: Optional[_ChallengeTLSServer] = None
        self._thread: Optional[threading.Thread] = None

    def get_address(self) -> str:
        return f"{self.iface}:{self.port}"

    def present(self, domain: str, token: str, key_auth: str) -> None:
        if self._server is not None:
            raise AcmeError("TLS-ALPN-01 challenge server is already running")

        ctx = challenge_ssl_context(domain, key_auth)
        try:
            server = _ChallengeTLSServer((self.iface, self.port), _HandshakeHandler)
        except OSError as exc:
            raise AcmeError(f"could not start HTTPS server for challenge: {exc}") from exc
        server.ssl_context = ctx

        self._server = server
        self._thread = threading.Thread(target=server.serve_forever, daemon=True)
        self._thread.start()

    def cleanup(self, domain: str, token: str, key_auth: str) -> None:
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    @property
    def bound_port(self) -> int:
        if self._server is None:
            return self.port
        return self._server.server_address[1]
