"""
Unit tests for acmecore/jws.py — thumbprints, key authorizations, JWS and EAB signing.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from unittest.mock import MagicMock

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature

from acmecore import jws as jwslib
from acmecore.errors import EncodingError, SigningError

FAKE_NONCE = "testnonce12345"


def _decode(segment: str) -> dict:
    return json.loads(jwslib.b64url_decode(segment))


def _pool(nonce: str = FAKE_NONCE) -> MagicMock:
    pool = MagicMock()
    pool.take.return_value = nonce
    return pool


# ─── Keys and thumbprints ─────────────────────────────────────────────────────

def test_jwk_thumbprint_is_deterministic(rsa_key):
    t1 = jwslib.compute_jwk_thumbprint(rsa_key)
    t2 = jwslib.compute_jwk_thumbprint(rsa_key)
    assert t1 == t2
    assert "=" not in t1
    # SHA-256 digest, unpadded base64url
    assert len(t1) == 43


def test_thumbprint_differs_between_keys(rsa_key, ec_key):
    assert jwslib.compute_jwk_thumbprint(rsa_key) != jwslib.compute_jwk_thumbprint(ec_key)


def test_key_authorization(ec_key):
    key_auth = jwslib.compute_key_authorization("sometoken", ec_key)
    assert key_auth == f"sometoken.{jwslib.compute_jwk_thumbprint(ec_key)}"


def test_public_jwk_has_no_private_members(rsa_key, ec_key):
    rsa_jwk = jwslib.public_jwk(rsa_key)
    assert rsa_jwk["kty"] == "RSA"
    assert "d" not in rsa_jwk

    ec_jwk = jwslib.public_jwk(ec_key)
    assert ec_jwk["kty"] == "EC"
    assert ec_jwk["crv"] == "P-256"
    assert "d" not in ec_jwk


def test_signing_algorithm_per_key_type(rsa_key, ec_key):
    assert jwslib.signing_algorithm(rsa_key) == "RS256"
    assert jwslib.signing_algorithm(ec_key) == "ES256"
    assert jwslib.signing_algorithm(ec.generate_private_key(ec.SECP384R1())) == "ES384"


def test_unsupported_curve_is_rejected():
    with pytest.raises(SigningError):
        jwslib.signing_algorithm(ec.generate_private_key(ec.SECP521R1()))


# ─── JWS ──────────────────────────────────────────────────────────────────────

class TestSign:
    """Flattened JWS bodies."""

    def test_jwk_header_without_kid(self, rsa_key):
        body = jwslib.JWS(rsa_key, nonces=_pool()).sign("https://acme.test/newAccount", b'{"a":1}')
        protected = _decode(body["protected"])

        assert protected["alg"] == "RS256"
        assert protected["nonce"] == FAKE_NONCE
        assert protected["url"] == "https://acme.test/newAccount"
        assert protected["jwk"]["kty"] == "RSA"
        assert "kid" not in protected

    def test_kid_header_replaces_jwk(self, rsa_key):
        body = jwslib.JWS(rsa_key, "https://acme.test/acct/1", _pool()).sign(
            "https://acme.test/newOrder", b"{}"
        )
        protected = _decode(body["protected"])

        assert protected["kid"] == "https://acme.test/acct/1"
        assert "jwk" not in protected

    def test_post_as_get_has_empty_payload(self, ec_key):
        body = jwslib.JWS(ec_key, "https://acme.test/acct/1", _pool()).sign("https://acme.test/order/1", b"")
        assert body["payload"] == ""

    def test_rsa_signature_verifies(self, rsa_key):
        body = jwslib.JWS(rsa_key, nonces=_pool()).sign("https://acme.test/x", b'{"hello":"world"}')
        signing_input = f"{body['protected']}.{body['payload']}".encode()

        rsa_key.public_key().verify(
            jwslib.b64url_decode(body["signature"]),
            signing_input,
            padding.PKCS1v15(),
            hashes.SHA256(),
        )

    def test_ec_signature_is_raw_r_s(self, ec_key):
        body = jwslib.JWS(ec_key, nonces=_pool()).sign("https://acme.test/x", b"{}")
        sig = jwslib.b64url_decode(body["signature"])
        assert len(sig) == 64

        r = int.from_bytes(sig[:32], "big")
        s = int.from_bytes(sig[32:], "big")
        signing_input = f"{body['protected']}.{body['payload']}".encode()
        ec_key.public_key().verify(encode_dss_signature(r, s), signing_input, ec.ECDSA(hashes.SHA256()))

    def test_each_signature_takes_a_nonce(self, ec_key):
        pool = _pool()
        signer = jwslib.JWS(ec_key, nonces=pool)
        signer.sign("https://acme.test/x", b"{}")
        signer.sign("https://acme.test/x", b"{}")
        assert pool.take.call_count == 2

    def test_missing_key_fails(self):
        with pytest.raises(SigningError):
            jwslib.JWS(None, nonces=_pool()).sign("https://acme.test/x", b"{}")


# ─── External Account Binding ─────────────────────────────────────────────────

class TestExternalAccountBinding:
    """EAB inner JWS."""

    HMAC_KEY = b"super-secret-hmac-key-material!!"

    def test_eab_structure_and_mac(self, ec_key):
        encoded = jwslib.b64url(self.HMAC_KEY)
        eab = jwslib.JWS(ec_key).sign_external_account_binding(
            "https://acme.test/newAccount", "kid-123", encoded
        )

        protected = _decode(eab["protected"])
        assert protected == {"alg": "HS256", "kid": "kid-123", "url": "https://acme.test/newAccount"}
        assert _decode(eab["payload"]) == jwslib.public_jwk(ec_key)

        expected = hmac.new(
            self.HMAC_KEY, f"{eab['protected']}.{eab['payload']}".encode(), hashlib.sha256
        ).digest()
        assert jwslib.b64url_decode(eab["signature"]) == expected

    def test_eab_never_takes_a_nonce(self, ec_key):
        pool = _pool()
        jwslib.JWS(ec_key, nonces=pool).sign_external_account_binding(
            "https://acme.test/newAccount", "kid-123", jwslib.b64url(self.HMAC_KEY)
        )
        pool.take.assert_not_called()

    @pytest.mark.parametrize("bad", ["", "not base64!", "abcde"])
    def test_malformed_hmac_key(self, ec_key, bad):
        with pytest.raises(EncodingError):
            jwslib.JWS(ec_key).sign_external_account_binding("https://acme.test/newAccount", "kid", bad)

    def test_missing_kid(self, ec_key):
        with pytest.raises(SigningError):
            jwslib.JWS(ec_key).sign_external_account_binding(
                "https://acme.test/newAccount", "", jwslib.b64url(self.HMAC_KEY)
            )


def test_b64url_round_trip_without_padding():
    assert jwslib.b64url(b"\xff\xfe") == "__4"
    assert jwslib.b64url_decode("__4") == b"\xff\xfe"
