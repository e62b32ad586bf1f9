"""
Unit tests for acmecore/services.py — accounts, orders, authorizations,
challenges, certificates and renewal info against a mocked CA.
"""
from __future__ import annotations

import json

import pytest
import responses as resp_lib
from cryptography.hazmat.primitives import serialization

from acmecore.errors import OrderInvalidError, ProtocolError
from acmecore.jws import b64url_decode
from acmecore.models import Account
from acmecore.services import make_identifier
from tests.conftest import ACCOUNT_URL, FAKE_DIRECTORY, make_core, make_self_signed, to_pem

ORDER_URL = "https://acme.test/order/1"
AUTHZ_URL = "https://acme.test/authz/1"
CHALLENGE_URL = "https://acme.test/chall/1"
CERT_URL = "https://acme.test/cert/1"
ISSUER_URL = "https://acme.test/cert/1/issuer"


def _payload(call) -> dict:
    body = json.loads(call.request.body)
    if not body["payload"]:
        return {}
    return json.loads(b64url_decode(body["payload"]))


def _last_post(url: str):
    return [c for c in resp_lib.calls if c.request.method == "POST" and c.request.url == url][-1]


@pytest.fixture()
def leaf_and_issuer(ca_pair, rsa_key):
    ca_cert, ca_key = ca_pair
    leaf = make_self_signed(rsa_key, "example.com", ["example.com"], issuer=(ca_cert, ca_key))
    return to_pem(leaf), to_pem(ca_cert)


# ─── Accounts ─────────────────────────────────────────────────────────────────

class TestAccountService:
    """newAccount and account updates."""

    @resp_lib.activate
    def test_new_sets_location(self, ec_key):
        core = make_core(ec_key, kid="")
        resp_lib.add(
            resp_lib.POST, FAKE_DIRECTORY["newAccount"],
            json={"status": "valid", "contact": ["mailto:a@example.com"]},
            status=201,
            headers={"Location": ACCOUNT_URL},
        )

        account = core.accounts.new(Account(terms_of_service_agreed=True, contact=["mailto:a@example.com"]))

        assert account.location == ACCOUNT_URL
        assert account.status == "valid"
        sent = _payload(_last_post(FAKE_DIRECTORY["newAccount"]))
        assert sent == {"termsOfServiceAgreed": True, "contact": ["mailto:a@example.com"]}

    @resp_lib.activate
    def test_find_by_key_only_returns_existing(self, ec_key):
        core = make_core(ec_key, kid="")
        resp_lib.add(
            resp_lib.POST, FAKE_DIRECTORY["newAccount"],
            json={"status": "valid"}, headers={"Location": ACCOUNT_URL},
        )

        account = core.accounts.find_by_key()

        assert account.location == ACCOUNT_URL
        assert _payload(_last_post(FAKE_DIRECTORY["newAccount"])) == {"onlyReturnExisting": True}

    @resp_lib.activate
    def test_new_eab_embeds_binding(self, ec_key):
        core = make_core(ec_key, kid="")
        resp_lib.add(
            resp_lib.POST, FAKE_DIRECTORY["newAccount"],
            json={"status": "valid"}, status=201, headers={"Location": ACCOUNT_URL},
        )

        core.accounts.new_eab(Account(terms_of_service_agreed=True), "eab-kid", "c2VjcmV0LWtleQ")

        eab = _payload(_last_post(FAKE_DIRECTORY["newAccount"]))["externalAccountBinding"]
        header = json.loads(b64url_decode(eab["protected"]))
        assert header["kid"] == "eab-kid"
        assert header["alg"] == "HS256"

    @resp_lib.activate
    def test_deactivate(self, ec_key):
        core = make_core(ec_key)
        resp_lib.add(resp_lib.POST, ACCOUNT_URL, json={"status": "deactivated"})

        account = core.accounts.deactivate(ACCOUNT_URL)

        assert account.status == "deactivated"
        assert _payload(_last_post(ACCOUNT_URL)) == {"status": "deactivated"}

    @resp_lib.activate
    def test_empty_url_is_rejected(self, ec_key):
        core = make_core(ec_key)
        with pytest.raises(ValueError):
            core.accounts.get("")


# ─── Orders ───────────────────────────────────────────────────────────────────

class TestOrderService:
    """newOrder and finalize."""

    @resp_lib.activate
    def test_new_order_identifiers(self, ec_key):
        core = make_core(ec_key)
        resp_lib.add(
            resp_lib.POST, FAKE_DIRECTORY["newOrder"],
            json={
                "status": "pending",
                "identifiers": [{"type": "dns", "value": "example.com"}, {"type": "ip", "value": "192.0.2.1"}],
                "authorizations": [AUTHZ_URL],
                "finalize": ORDER_URL + "/finalize",
            },
            status=201,
            headers={"Location": ORDER_URL},
        )

        order = core.orders.new(["example.com", "192.0.2.1"], replaces="aki.serial")

        assert order.location == ORDER_URL
        assert order.authorizations == [AUTHZ_URL]
        sent = _payload(_last_post(FAKE_DIRECTORY["newOrder"]))
        assert sent["identifiers"] == [
            {"type": "dns", "value": "example.com"},
            {"type": "ip", "value": "192.0.2.1"},
        ]
        assert sent["replaces"] == "aki.serial"
        assert "notBefore" not in sent

    @resp_lib.activate
    def test_finalize_sends_b64url_der_csr(self, ec_key):
        core = make_core(ec_key)
        resp_lib.add(
            resp_lib.POST, ORDER_URL + "/finalize",
            json={"status": "processing"}, headers={"Location": ORDER_URL},
        )

        order = core.orders.update_for_csr(ORDER_URL + "/finalize", b"\x30\x82csr")

        assert order.status == "processing"
        assert order.location == ORDER_URL
        assert b64url_decode(_payload(_last_post(ORDER_URL + "/finalize"))["csr"]) == b"\x30\x82csr"

    @resp_lib.activate
    def test_finalize_invalid_order(self, ec_key):
        core = make_core(ec_key)
        resp_lib.add(
            resp_lib.POST, ORDER_URL + "/finalize",
            json={"status": "invalid", "error": {"type": "urn:ietf:params:acme:error:badCSR", "detail": "bad"}},
        )

        with pytest.raises(OrderInvalidError) as exc_info:
            core.orders.update_for_csr(ORDER_URL + "/finalize", b"csr")
        assert exc_info.value.problem.type.endswith("badCSR")


def test_make_identifier():
    assert make_identifier("example.com").type == "dns"
    assert make_identifier("2001:db8::1").type == "ip"


# ─── Authorizations and challenges ────────────────────────────────────────────

@resp_lib.activate
def test_authorization_get_and_deactivate(ec_key):
    core = make_core(ec_key)
    resp_lib.add(
        resp_lib.POST, AUTHZ_URL,
        json={
            "status": "pending",
            "identifier": {"type": "dns", "value": "example.com"},
            "wildcard": True,
            "challenges": [{"type": "dns-01", "url": CHALLENGE_URL, "status": "pending", "token": "tok"}],
        },
    )
    resp_lib.add(resp_lib.POST, AUTHZ_URL, json={"status": "deactivated", "identifier": {"value": "example.com"}})

    authz = core.authorizations.get(AUTHZ_URL)
    core.authorizations.deactivate(AUTHZ_URL)

    assert authz.location == AUTHZ_URL
    assert authz.wildcard is True
    assert authz.challenges[0].token == "tok"
    assert _payload(_last_post(AUTHZ_URL)) == {"status": "deactivated"}


@resp_lib.activate
def test_challenge_new_reads_headers(ec_key):
    core = make_core(ec_key)
    resp_lib.add(
        resp_lib.POST, CHALLENGE_URL,
        json={"type": "http-01", "status": "processing", "token": "tok"},
        headers={"Retry-After": "3", "Link": f'<{AUTHZ_URL}>;rel="up"'},
    )

    chlg = core.challenges.new(CHALLENGE_URL)

    assert chlg.url == CHALLENGE_URL
    assert chlg.retry_after == "3"
    assert chlg.authorization_url == AUTHZ_URL
    assert _payload(_last_post(CHALLENGE_URL)) == {}


# ─── Certificates ─────────────────────────────────────────────────────────────

class TestCertificateService:
    """Certificate download, issuer handling and revocation."""

    @resp_lib.activate
    def test_chain_response_is_kept_whole(self, ec_key, leaf_and_issuer):
        leaf, issuer = leaf_and_issuer
        core = make_core(ec_key)
        resp_lib.add(resp_lib.POST, CERT_URL, body=leaf + issuer,
                     content_type="application/pem-certificate-chain")

        cert, chain = core.certificates.get(CERT_URL, bundle=False)

        assert cert == leaf + issuer
        assert chain == issuer

    @resp_lib.activate
    def test_issuer_fetched_from_up_link(self, ec_key, leaf_and_issuer):
        leaf, issuer = leaf_and_issuer
        core = make_core(ec_key)
        resp_lib.add(resp_lib.POST, CERT_URL, body=leaf, headers={"Link": f'<{ISSUER_URL}>;rel="up"'})
        issuer_der = _der(issuer)
        resp_lib.add(resp_lib.POST, ISSUER_URL, body=issuer_der, content_type="application/pkix-cert")

        cert, chain = core.certificates.get(CERT_URL, bundle=True)

        assert chain == issuer
        assert cert == leaf + issuer

    @resp_lib.activate
    def test_unbundled_leaf_with_issuer(self, ec_key, leaf_and_issuer):
        leaf, issuer = leaf_and_issuer
        core = make_core(ec_key)
        resp_lib.add(resp_lib.POST, CERT_URL, body=leaf, headers={"Link": f'<{ISSUER_URL}>;rel="up"'})
        resp_lib.add(resp_lib.POST, ISSUER_URL, body=issuer)

        cert, chain = core.certificates.get(CERT_URL, bundle=False)

        assert cert == leaf
        assert chain == issuer

    @resp_lib.activate
    def test_no_up_link_returns_leaf_alone(self, ec_key, leaf_and_issuer):
        leaf, _ = leaf_and_issuer
        core = make_core(ec_key)
        resp_lib.add(resp_lib.POST, CERT_URL, body=leaf)

        assert core.certificates.get(CERT_URL, bundle=True) == (leaf, b"")

    @resp_lib.activate
    def test_issuer_failure_is_not_fatal(self, ec_key, leaf_and_issuer):
        leaf, _ = leaf_and_issuer
        core = make_core(ec_key)
        resp_lib.add(resp_lib.POST, CERT_URL, body=leaf, headers={"Link": f'<{ISSUER_URL}>;rel="up"'})
        resp_lib.add(resp_lib.POST, ISSUER_URL, body="gone", status=404)

        assert core.certificates.get(CERT_URL, bundle=True) == (leaf, b"")

    @resp_lib.activate
    def test_revoke(self, ec_key, leaf_and_issuer):
        leaf, _ = leaf_and_issuer
        core = make_core(ec_key)
        resp_lib.add(resp_lib.POST, FAKE_DIRECTORY["revokeCert"], body="")

        core.certificates.revoke(_der(leaf), reason=4)

        sent = _payload(_last_post(FAKE_DIRECTORY["revokeCert"]))
        assert sent["reason"] == 4
        assert b64url_decode(sent["certificate"]) == _der(leaf)

    @resp_lib.activate
    def test_revoke_without_endpoint(self, ec_key):
        core = make_core(ec_key)
        core.directory = core.directory.model_copy(update={"revoke_cert": ""})
        with pytest.raises(ProtocolError):
            core.certificates.revoke(b"der")


# ─── Renewal info ─────────────────────────────────────────────────────────────

@resp_lib.activate
def test_get_renewal_info_is_unauthenticated(ec_key):
    core = make_core(ec_key)
    resp_lib.add(
        resp_lib.GET, FAKE_DIRECTORY["renewalInfo"] + "/aki.serial",
        json={
            "suggestedWindow": {"start": "2025-01-01T00:00:00Z", "end": "2025-01-03T00:00:00Z"},
            "explanationURL": "https://acme.test/why",
        },
        headers={"Retry-After": "21600"},
    )

    info = core.certificates.get_renewal_info("aki.serial")

    assert info.explanation_url == "https://acme.test/why"
    assert info.retry_after == "21600"
    assert info.suggested_window.start.year == 2025


@resp_lib.activate
def test_update_renewal_info_posts_replaced(ec_key):
    core = make_core(ec_key)
    resp_lib.add(resp_lib.POST, FAKE_DIRECTORY["renewalInfo"], body="")

    core.certificates.update_renewal_info("aki.serial")

    assert _payload(_last_post(FAKE_DIRECTORY["renewalInfo"])) == {"certID": "aki.serial", "replaced": True}


def _der(pem: bytes) -> bytes:
    from cryptography import x509
    return x509.load_pem_x509_certificate(pem).public_bytes(serialization.Encoding.DER)
