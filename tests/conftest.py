"""
Shared pytest fixtures.

Unit tests talk to a fake CA through the `responses` library: FAKE_DIRECTORY
is served at DIRECTORY_URL and `make_core` builds a Core against it.

Pebble fixture
--------------
The `pebble_settings` fixture patches the module-level `config.settings`
singleton so a run talks to a local Pebble instance instead of the
configured CA.
"""
from __future__ import annotations

import datetime
import socket
from pathlib import Path

import pytest
import responses as resp_lib
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from acmecore.core import Core
from acmecore.sender import Sender

DIRECTORY_URL = "https://acme.test/directory"

FAKE_DIRECTORY = {
    "newNonce": "https://acme.test/newNonce",
    "newAccount": "https://acme.test/newAccount",
    "newOrder": "https://acme.test/newOrder",
    "revokeCert": "https://acme.test/revokeCert",
    "keyChange": "https://acme.test/keyChange",
    "renewalInfo": "https://acme.test/renewalInfo",
    "meta": {"termsOfService": "https://acme.test/tos"},
}

FAKE_NONCE = "testnonce12345"
ACCOUNT_URL = "https://acme.test/acct/1"


# ─── Pebble availability check ────────────────────────────────────────────────

def _pebble_running(host: str = "localhost", port: int = 14000) -> bool:
    """Return True if Pebble's ACME port is open."""
    try:
        with socket.create_connection((host, port), timeout=1):
            return True
    except OSError:
        return False


requires_pebble = pytest.mark.skipif(
    not _pebble_running(),
    reason="Pebble not running on localhost:14000",
)


@pytest.fixture()
def pebble_settings(tmp_path: Path):
    """
    Mutate the live settings singleton to point at local Pebble,
    restore original values after the test.
    """
    from config import settings

    keys = [
        "CA_PROVIDER", "ACME_DIRECTORY_URL", "ACME_EAB_KEY_ID", "ACME_EAB_HMAC_KEY",
        "MANAGED_DOMAINS", "CERT_STORE_PATH", "ACCOUNTS_PATH", "ACCEPT_TOS",
        "HTTP_CHALLENGE_MODE", "HTTP_CHALLENGE_PORT", "WEBROOT_PATH",
        "ACME_INSECURE", "ACME_CA_BUNDLE", "EXCLUDED_CHALLENGES", "ACCOUNT_EMAIL",
        "TLS_CHALLENGE_ENABLED", "DNS_PRESENT_HOOK", "ARI_ENABLED", "RENEWAL_THRESHOLD_DAYS",
    ]
    originals = {k: getattr(settings, k) for k in keys}

    settings.CA_PROVIDER = "custom"
    settings.ACME_DIRECTORY_URL = "https://localhost:14000/dir"
    settings.ACME_EAB_KEY_ID = ""
    settings.ACME_EAB_HMAC_KEY = ""
    settings.MANAGED_DOMAINS = ["acme-test.localhost"]
    settings.CERT_STORE_PATH = str(tmp_path / "certs")
    settings.ACCOUNTS_PATH = str(tmp_path / "accounts")
    settings.ACCEPT_TOS = True
    settings.HTTP_CHALLENGE_MODE = "standalone"
    settings.HTTP_CHALLENGE_PORT = 5002  # Pebble's default httpPort
    settings.WEBROOT_PATH = None
    settings.ACME_INSECURE = True
    settings.ACME_CA_BUNDLE = ""
    settings.EXCLUDED_CHALLENGES = ["tls-alpn-01", "dns-01"]
    settings.ACCOUNT_EMAIL = ""
    settings.TLS_CHALLENGE_ENABLED = False
    settings.DNS_PRESENT_HOOK = ""
    settings.ARI_ENABLED = False
    settings.RENEWAL_THRESHOLD_DAYS = 30

    yield settings

    for k, v in originals.items():
        setattr(settings, k, v)


# ─── Keys ─────────────────────────────────────────────────────────────────────

@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def ec_key():
    return ec.generate_private_key(ec.SECP256R1())


# ─── Fake CA ──────────────────────────────────────────────────────────────────

def add_directory(nonce: str = FAKE_NONCE) -> None:
    """Register the directory and newNonce endpoints on the active mock."""
    resp_lib.add(resp_lib.GET, DIRECTORY_URL, json=FAKE_DIRECTORY)
    resp_lib.add(resp_lib.HEAD, FAKE_DIRECTORY["newNonce"], headers={"Replay-Nonce": nonce})


def make_core(key, kid: str = ACCOUNT_URL, nonce_retries: int = 1) -> Core:
    """Build a Core against the fake CA; call inside an active `responses` mock."""
    add_directory()
    return Core(Sender(), DIRECTORY_URL, key, kid=kid, nonce_retries=nonce_retries)


def problem_json(type_: str, detail: str = "", status: int = 400) -> dict:
    return {"type": type_, "detail": detail, "status": status}


# ─── Certificates ─────────────────────────────────────────────────────────────

def make_self_signed(
    key,
    common_name: str,
    sans: list[str] | None = None,
    ca: bool = False,
    days: int = 90,
    issuer: tuple | None = None,
    extra_extensions: list | None = None,
) -> x509.Certificate:
    """
    Build a test certificate.  *issuer* is (issuer_cert, issuer_key) to
    sign with; without it the certificate is self-signed.
    """
    now = datetime.datetime.now(datetime.timezone.utc)
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    signer_key = key
    issuer_name = subject
    if issuer is not None:
        issuer_cert, signer_key = issuer
        issuer_name = issuer_cert.subject

    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
    )
    if sans:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(s) for s in sans]), critical=False
        )
    for ext in extra_extensions or []:
        builder = builder.add_extension(ext, critical=False)
    return builder.sign(signer_key, hashes.SHA256())


def to_pem(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


@pytest.fixture(scope="session")
def ca_pair(ec_key):
    """(CA certificate, CA key)."""
    return make_self_signed(ec_key, "Test Issuing CA", ca=True, days=3650), ec_key
