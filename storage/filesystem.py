"""
PEM filesystem storage for issued certificates.

Directory layout per certificate (named after its first domain, with the
wildcard ``*`` replaced by ``_``):
  <store>/<domain>/
      cert.pem        — Leaf certificate
      chain.pem       — Issuer chain
      fullchain.pem   — cert + chain (nginx uses this)
      privkey.pem     — Private key (mode 0o600), absent for CSR-based orders
      csr.pem         — Caller CSR, only for CSR-based orders
      metadata.json   — Domain, certificate URLs, issued/expires timestamps

All writes are atomic: temp file + fsync + atomic rename.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from acmecore import crypto
from certificate.certifier import Resource
from storage.atomic import atomic_write_bytes, atomic_write_text

logger = logging.getLogger(__name__)

CERT_FILE = "cert.pem"
CHAIN_FILE = "chain.pem"
FULLCHAIN_FILE = "fullchain.pem"
KEY_FILE = "privkey.pem"
CSR_FILE = "csr.pem"
METADATA_FILE = "metadata.json"


# ─── Paths ─────────────────────────────────────────────────────────────────────


def safe_name(domain: str) -> str:
    """File-system friendly directory name for *domain*."""
    return domain.replace("*", "_")


def cert_dir(cert_store_path: str, domain: str) -> Path:
    """Return the Path for a domain's cert directory (not created)."""
    return Path(cert_store_path) / safe_name(domain)


# ─── Expiry ────────────────────────────────────────────────────────────────────


def parse_expiry(pem: bytes | str) -> datetime:
    """notAfter of the first certificate in *pem*, as an aware UTC datetime."""
    if isinstance(pem, str):
        pem = pem.encode()
    return crypto.parse_pem_certificate(pem).not_valid_after_utc


def days_until_expiry(expiry: datetime, now: Optional[datetime] = None) -> int:
    """Return integer days until expiry (negative if already expired)."""
    now = now or datetime.now(tz=timezone.utc)
    return (expiry - now).days


# ─── Write ─────────────────────────────────────────────────────────────────────


def save_resource(cert_store_path: str, resource: Resource) -> dict:
    """
    Write every file of *resource* under its domain directory.

    Returns the metadata dict that was stored in metadata.json.
    """
    d = cert_dir(cert_store_path, resource.domain)

    leaf, rest = crypto.split_pem_chain(resource.certificate)
    chain = resource.issuer_certificate or rest

    atomic_write_bytes(d / CERT_FILE, leaf)
    atomic_write_bytes(d / CHAIN_FILE, chain)
    atomic_write_bytes(d / FULLCHAIN_FILE, leaf + chain)

    if resource.private_key:
        atomic_write_bytes(d / KEY_FILE, resource.private_key, mode=0o600)
    if resource.csr:
        atomic_write_bytes(d / CSR_FILE, resource.csr)

    metadata = {
        "domain": resource.domain,
        "cert_url": resource.cert_url,
        "cert_stable_url": resource.cert_stable_url,
        "issued_at": datetime.now(tz=timezone.utc).isoformat(),
        "expires_at": parse_expiry(leaf).isoformat(),
    }
    atomic_write_text(d / METADATA_FILE, json.dumps(metadata, indent=2))

    logger.info("[%s] certificate saved to %s", resource.domain, d)
    return metadata


# ─── Read ──────────────────────────────────────────────────────────────────────


def read_cert_pem(cert_store_path: str, domain: str) -> Optional[bytes]:
    """Return the leaf certificate PEM, or None if not found."""
    path = cert_dir(cert_store_path, domain) / CERT_FILE
    if path.exists():
        return path.read_bytes()
    return None


def read_metadata(cert_store_path: str, domain: str) -> Optional[dict]:
    """Return the stored metadata dict for a domain, or None."""
    path = cert_dir(cert_store_path, domain) / METADATA_FILE
    if path.exists():
        return json.loads(path.read_text())
    return None


def load_resource(cert_store_path: str, domain: str) -> Optional[Resource]:
    """Rebuild the Resource saved for *domain*, or None when nothing is stored."""
    d = cert_dir(cert_store_path, domain)
    cert = _read_optional(d / CERT_FILE)
    if cert is None:
        return None

    metadata = read_metadata(cert_store_path, domain) or {}
    return Resource(
        domain=metadata.get("domain", domain),
        cert_url=metadata.get("cert_url", ""),
        cert_stable_url=metadata.get("cert_stable_url", ""),
        private_key=_read_optional(d / KEY_FILE),
        certificate=cert,
        issuer_certificate=_read_optional(d / CHAIN_FILE) or b"",
        csr=_read_optional(d / CSR_FILE),
    )


def _read_optional(path: Path) -> Optional[bytes]:
    try:
        return path.read_bytes()
    except FileNotFoundError:
        return None
