"""
JWK / JWS / EAB signing for ACME requests (RFC 8555 §6.2, RFC 7515).

Uses *josepy* (the library powering Certbot) for the JWK representation and
RFC 7638 thumbprints, and *cryptography* for the signatures themselves.

Responsibilities (boundary with acmecore/crypto.py):
  - Wrap account keys as JWKs and compute thumbprints
  - Compute key-authorizations for challenges
  - Sign ACME POST bodies as flattened JWS (with jwk or kid header)
  - Build the External Account Binding inner JWS
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
from typing import TYPE_CHECKING, Any, Optional, Union

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from josepy.jwk import JWK, JWKEC, JWKRSA

from acmecore.errors import EncodingError, SigningError

if TYPE_CHECKING:
    from acmecore.nonces import NoncePool

PrivateKey = Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]

_B64URL_RE = re.compile(r"^[A-Za-z0-9_-]*$")


# ─── Keys and thumbprints ─────────────────────────────────────────────────────


def jwk_for(key: Any) -> JWK:
    """Wrap a cryptography key (private or public) in the matching josepy JWK."""
    if isinstance(key, (rsa.RSAPrivateKey, rsa.RSAPublicKey)):
        return JWKRSA(key=key)
    if isinstance(key, (ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey)):
        return JWKEC(key=key)
    raise SigningError(f"unsupported key type: {type(key).__name__}")


def public_jwk(key: PrivateKey) -> dict[str, Any]:
    """Return the public JWK of *key* as a JSON-ready dict (kty included)."""
    return jwk_for(key).public_key().to_partial_json()


def compute_jwk_thumbprint(key: PrivateKey) -> str:
    """base64url SHA-256 thumbprint of the public JWK (RFC 7638)."""
    return b64url(jwk_for(key).public_key().thumbprint(hash_function=hashes.SHA256))


def compute_key_authorization(token: str, key: PrivateKey) -> str:
    """Return the key-authorization string for a challenge *token*."""
    return f"{token}.{compute_jwk_thumbprint(key)}"


# ─── JWS signing ─────────────────────────────────────────────────────────────


class JWS:
    """
    Signs ACME request bodies for one account.

    *kid* is the account URL; while it is empty the public JWK is embedded
    in the protected header instead (newAccount and key lookups).
    """

    def __init__(
        self,
        private_key: Optional[PrivateKey],
        kid: str = "",
        nonces: Optional["NoncePool"] = None,
    ) -> None:
        self.private_key = private_key
        self.kid = kid
        self.nonces = nonces

    def sign(self, url: str, payload: bytes) -> dict[str, str]:
        """
        Return the flattened JWS for *payload* addressed to *url*.

        An empty *payload* produces a POST-as-GET body.
        """
        key = self._require_key()
        alg = signing_algorithm(key)

        header: dict[str, Any] = {"alg": alg, "url": url}
        if self.nonces is not None:
            header["nonce"] = self.nonces.take()
        if self.kid:
            header["kid"] = self.kid
        else:
            header["jwk"] = public_jwk(key)

        protected = b64url(json.dumps(header).encode())
        payload_b64 = b64url(payload) if payload else ""
        signing_input = f"{protected}.{payload_b64}".encode()

        return {
            "protected": protected,
            "payload": payload_b64,
            "signature": b64url(_sign(key, alg, signing_input)),
        }

    def sign_external_account_binding(self, url: str, kid: str, hmac_encoded: str) -> dict[str, str]:
        """
        Build the EAB inner JWS (RFC 8555 §7.3.4).

        Protected header: {"alg":"HS256","kid":<eab kid>,"url":<newAccount url>};
        payload: the account public JWK; signature: HMAC-SHA256 keyed with the
        base64url-decoded *hmac_encoded*.
        """
        key = self._require_key()
        if not kid:
            raise SigningError("acme: external account binding requires a key identifier")

        hmac_key = b64url_decode(hmac_encoded)

        header = {"alg": "HS256", "kid": kid, "url": url}
        protected = b64url(json.dumps(header).encode())
        payload = b64url(json.dumps(public_jwk(key)).encode())

        signing_input = f"{protected}.{payload}".encode()
        mac = hmac.new(hmac_key, signing_input, hashlib.sha256).digest()

        return {
            "protected": protected,
            "payload": payload,
            "signature": b64url(mac),
        }

    def key_authorization(self, token: str) -> str:
        return compute_key_authorization(token, self._require_key())

    def _require_key(self) -> PrivateKey:
        if self.private_key is None:
            raise SigningError("acme: no private key configured")
        return self.private_key


def signing_algorithm(key: PrivateKey) -> str:
    if isinstance(key, rsa.RSAPrivateKey):
        return "RS256"
    if isinstance(key, ec.EllipticCurvePrivateKey):
        if isinstance(key.curve, ec.SECP256R1):
            return "ES256"
        if isinstance(key.curve, ec.SECP384R1):
            return "ES384"
        raise SigningError(f"unsupported curve: {key.curve.name}")
    raise SigningError(f"unsupported key type: {type(key).__name__}")


def _sign(key: PrivateKey, alg: str, data: bytes) -> bytes:
    if alg == "RS256":
        return key.sign(data, padding.PKCS1v15(), hashes.SHA256())

    hash_alg = hashes.SHA256() if alg == "ES256" else hashes.SHA384()
    der = key.sign(data, ec.ECDSA(hash_alg))
    # JWS wants the raw r || s concatenation, not the DER sequence.
    r, s = decode_dss_signature(der)
    size = (key.curve.key_size + 7) // 8
    return r.to_bytes(size, "big") + s.to_bytes(size, "big")


# ─── base64url ────────────────────────────────────────────────────────────────


def b64url(data: bytes) -> str:
    """URL-safe base64 encoding with no padding (as required by JOSE)."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def b64url_decode(s: str) -> bytes:
    """Strict unpadded base64url decode; EncodingError on malformed input."""
    if not s or not _B64URL_RE.match(s) or len(s) % 4 == 1:
        raise EncodingError("acme: could not decode hmac key: malformed base64url value")
    try:
        return base64.urlsafe_b64decode(s + "=" * (-len(s) % 4))
    except (ValueError, TypeError) as exc:
        raise EncodingError(f"acme: could not decode hmac key: {exc}") from exc
