"""
Domain private keys, CSRs and PEM handling.

Boundary: this module owns everything cryptographic that is *domain*-specific.
Account-key operations (JWK, JWS, EAB) live in acmecore/jws.py.
"""
from __future__ import annotations

import ipaddress
import re
from enum import Enum
from typing import Iterable, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

PrivateKey = Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]

_PEM_CERT_RE = re.compile(
    rb"-----BEGIN CERTIFICATE-----\r?\n.+?\r?\n-----END CERTIFICATE-----\r?\n?",
    re.DOTALL,
)


class KeyType(str, Enum):
    EC256 = "ec256"
    EC384 = "ec384"
    RSA2048 = "rsa2048"
    RSA3072 = "rsa3072"
    RSA4096 = "rsa4096"
    RSA8192 = "rsa8192"


_RSA_SIZES = {
    KeyType.RSA2048: 2048,
    KeyType.RSA3072: 3072,
    KeyType.RSA4096: 4096,
    KeyType.RSA8192: 8192,
}
_EC_CURVES = {
    KeyType.EC256: ec.SECP256R1,
    KeyType.EC384: ec.SECP384R1,
}


# ─── Keys ─────────────────────────────────────────────────────────────────────


def generate_private_key(key_type: KeyType | str = KeyType.RSA2048) -> PrivateKey:
    """Generate a domain private key of the given type."""
    key_type = KeyType(key_type)
    if key_type in _EC_CURVES:
        return ec.generate_private_key(_EC_CURVES[key_type]())
    return rsa.generate_private_key(public_exponent=65537, key_size=_RSA_SIZES[key_type])


def private_key_to_pem(key: PrivateKey) -> bytes:
    """Serialize a private key to unencrypted PEM (PKCS#1 / SEC1)."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def parse_private_key(data: bytes) -> PrivateKey:
    key = serialization.load_pem_private_key(data, password=None)
    if not isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise ValueError(f"unsupported private key type: {type(key).__name__}")
    return key


# ─── Certificates ─────────────────────────────────────────────────────────────


def split_pem_chain(data: bytes) -> tuple[bytes, bytes]:
    """
    Split a PEM chain into (leaf, rest).

    *rest* is every certificate after the first, concatenated, or b"" when
    *data* holds a single certificate.
    """
    blocks = _PEM_CERT_RE.findall(data)
    if not blocks:
        raise ValueError("no PEM certificate found")
    blocks = [b if b.endswith(b"\n") else b + b"\n" for b in blocks]
    return blocks[0], b"".join(blocks[1:])


def parse_pem_bundle(data: bytes) -> list[x509.Certificate]:
    """Parse every certificate of a PEM bundle, in order."""
    certs = x509.load_pem_x509_certificates(data)
    if not certs:
        raise ValueError("no certificates were found while parsing the bundle")
    return certs


def parse_pem_certificate(data: bytes) -> x509.Certificate:
    """Parse the first certificate of a PEM blob."""
    return parse_pem_bundle(data)[0]


def certificate_to_pem(data: bytes) -> bytes:
    """Return *data* as PEM whether it was DER or PEM."""
    if b"-----BEGIN" in data:
        return data
    cert = x509.load_der_x509_certificate(data)
    return cert.public_bytes(serialization.Encoding.PEM)


def domains_from_certificate(cert: x509.Certificate) -> list[str]:
    """Common name first (when present), then every SAN not already listed."""
    domains: list[str] = []
    cn = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if cn:
        domains.append(str(cn[0].value))
    for name in _sans(cert.extensions):
        if name not in domains:
            domains.append(name)
    return domains


# ─── CSR ──────────────────────────────────────────────────────────────────────


def create_csr(
    private_key: PrivateKey,
    common_name: str,
    san_domains: Iterable[str] | None = None,
    must_staple: bool = False,
) -> bytes:
    """
    Create a DER-encoded CSR.

    *common_name* becomes the subject CN and is always part of the SAN list;
    IP addresses are added as IPAddress SANs.  *must_staple* adds the TLS
    Feature extension (status_request, RFC 7633).
    """
    all_names = list(dict.fromkeys([common_name, *(san_domains or [])]))  # dedupe, keep order

    builder = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
        .add_extension(
            x509.SubjectAlternativeName([_general_name(n) for n in all_names]),
            critical=False,
        )
    )
    if must_staple:
        builder = builder.add_extension(
            x509.TLSFeature([x509.TLSFeatureType.status_request]),
            critical=False,
        )

    csr = builder.sign(private_key, hashes.SHA256())
    return csr.public_bytes(serialization.Encoding.DER)


def parse_csr(data: bytes) -> x509.CertificateSigningRequest:
    """Load a CSR from PEM or DER."""
    if b"-----BEGIN" in data:
        return x509.load_pem_x509_csr(data)
    return x509.load_der_x509_csr(data)


def csr_to_pem(data: bytes) -> bytes:
    return parse_csr(data).public_bytes(serialization.Encoding.PEM)


def domains_from_csr(csr: x509.CertificateSigningRequest) -> list[str]:
    """Common name first (when present), then every SAN not already listed."""
    domains: list[str] = []
    cn = csr.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if cn:
        domains.append(str(cn[0].value))
    for name in _sans(csr.extensions):
        if name not in domains:
            domains.append(name)
    return domains


def _general_name(name: str) -> x509.GeneralName:
    try:
        return x509.IPAddress(ipaddress.ip_address(name))
    except ValueError:
        return x509.DNSName(name)


def _sans(extensions: x509.Extensions) -> list[str]:
    try:
        san = extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return []
    names = list(san.get_values_for_type(x509.DNSName))
    names.extend(str(ip) for ip in san.get_values_for_type(x509.IPAddress))
    return names
