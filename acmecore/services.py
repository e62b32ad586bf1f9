"""
Typed ACME services built on `Core.post` / `Core.post_as_get`.

Each service is a thin, stateless view over the core: it builds the request
payload, decodes the response into the wire models and copies over the
header-borne values (Location, Retry-After, Link rel="up").
"""
from __future__ import annotations

import ipaddress
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Iterable, Optional

from acmecore import crypto
from acmecore.errors import OrderInvalidError, ProtocolError
from acmecore.jws import b64url
from acmecore.models import (
    STATUS_DEACTIVATED,
    STATUS_INVALID,
    Account,
    Authorization,
    Challenge,
    CSRMessage,
    Identifier,
    Order,
    RenewalInfoResponse,
    RenewalInfoUpdate,
    RevokeCertMessage,
)
from acmecore.sender import PEM_CHAIN_CONTENT_TYPE, links, location

if TYPE_CHECKING:
    from acmecore.core import Core

logger = logging.getLogger(__name__)


class _Service:
    def __init__(self, core: "Core") -> None:
        self.core = core


# ─── Accounts ─────────────────────────────────────────────────────────────────


class AccountService(_Service):
    def new(self, account: Account) -> Account:
        """POST newAccount; the returned Account carries its location (key-ID)."""
        resp = self.core.post(self.core.directory.new_account, account.to_wire())
        result = Account.model_validate(resp.json())
        result.location = location(resp)
        return result

    def new_eab(self, account: Account, kid: str, hmac_encoded: str) -> Account:
        """POST newAccount with an External Account Binding."""
        account.external_account_binding = self.core.sign_eab(
            self.core.directory.new_account, kid, hmac_encoded
        )
        return self.new(account)

    def find_by_key(self) -> Account:
        """Look up the account registered for the core's key (onlyReturnExisting)."""
        return self.new(Account(only_return_existing=True))

    def get(self, account_url: str) -> Account:
        if not account_url:
            raise ValueError("account[get]: empty URL")
        resp = self.core.post_as_get(account_url)
        result = Account.model_validate(resp.json())
        result.location = account_url
        return result

    def update(self, account_url: str, account: Account) -> Account:
        if not account_url:
            raise ValueError("account[update]: empty URL")
        resp = self.core.post(account_url, account.to_wire())
        result = Account.model_validate(resp.json())
        result.location = account_url
        return result

    def deactivate(self, account_url: str) -> Account:
        if not account_url:
            raise ValueError("account[deactivate]: empty URL")
        return self.update(account_url, Account(status=STATUS_DEACTIVATED))


# ─── Orders ───────────────────────────────────────────────────────────────────


class OrderService(_Service):
    def new(
        self,
        domains: Iterable[str],
        not_before: Optional[datetime] = None,
        not_after: Optional[datetime] = None,
        replaces: Optional[str] = None,
    ) -> Order:
        """POST newOrder for *domains* (IP addresses become "ip" identifiers)."""
        order = Order(
            identifiers=[make_identifier(d) for d in domains],
            not_before=not_before,
            not_after=not_after,
            replaces=replaces,
        )
        resp = self.core.post(self.core.directory.new_order, order.to_wire())
        result = Order.model_validate(resp.json())
        result.location = location(resp)
        return result

    def get(self, order_url: str) -> Order:
        if not order_url:
            raise ValueError("order[get]: empty URL")
        resp = self.core.post_as_get(order_url)
        result = Order.model_validate(resp.json())
        result.location = order_url
        return result

    def update_for_csr(self, finalize_url: str, csr_der: bytes) -> Order:
        """POST the DER CSR to the finalize URL."""
        resp = self.core.post(finalize_url, CSRMessage(csr=b64url(csr_der)).to_wire())
        result = Order.model_validate(resp.json())
        result.location = location(resp)

        if result.status == STATUS_INVALID:
            raise OrderInvalidError("acme: finalized order is invalid", result.error)
        return result


def make_identifier(value: str) -> Identifier:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return Identifier(type="dns", value=value)
    return Identifier(type="ip", value=value)


# ─── Authorizations ───────────────────────────────────────────────────────────


class AuthorizationService(_Service):
    def get(self, authz_url: str) -> Authorization:
        if not authz_url:
            raise ValueError("authorization[get]: empty URL")
        resp = self.core.post_as_get(authz_url)
        result = Authorization.model_validate(resp.json())
        result.location = authz_url
        return result

    def deactivate(self, authz_url: str) -> None:
        if not authz_url:
            raise ValueError("authorization[deactivate]: empty URL")
        self.core.post(authz_url, {"status": STATUS_DEACTIVATED})


# ─── Challenges ───────────────────────────────────────────────────────────────


class ChallengeService(_Service):
    def new(self, challenge_url: str) -> Challenge:
        """Tell the server the challenge is ready (POST an empty object)."""
        if not challenge_url:
            raise ValueError("challenge[new]: empty URL")
        return self._decode(self.core.post(challenge_url, {}), challenge_url)

    def get(self, challenge_url: str) -> Challenge:
        if not challenge_url:
            raise ValueError("challenge[get]: empty URL")
        return self._decode(self.core.post_as_get(challenge_url), challenge_url)

    @staticmethod
    def _decode(resp, challenge_url: str) -> Challenge:
        result = Challenge.model_validate(resp.json())
        if not result.url:
            result.url = challenge_url
        result.retry_after = resp.headers.get("Retry-After", "")
        up = links(resp, "up")
        if up:
            result.authorization_url = up[0]
        return result


# ─── Certificates ─────────────────────────────────────────────────────────────


class CertificateService(_Service):
    def get(self, cert_url: str, bundle: bool = False) -> tuple[bytes, bytes]:
        """
        Download a certificate; return (certificate PEM, issuer PEM).

        When the server already returns a chain it is kept as-is and the
        issuer is everything after the leaf.  Otherwise the issuer is
        fetched from the first Link rel="up"; if that fails the leaf is
        returned alone (issuer empty) and a warning is logged.
        """
        cert, up = self._get_certificate_and_up(cert_url)

        leaf, rest = crypto.split_pem_chain(cert)
        if rest:
            return cert, rest

        if not up:
            logger.warning("acme: no issuer link for certificate %s", cert_url)
            return leaf, b""

        try:
            issuer = self._get_issuer(up[0])
        except Exception as exc:
            logger.warning("acme: could not bundle issuer certificate [%s]: %s", cert_url, exc)
            return leaf, b""

        if bundle:
            return leaf + issuer, issuer
        return leaf, issuer

    def revoke(self, cert_der: bytes, reason: Optional[int] = None) -> None:
        url = self.core.directory.revoke_cert
        if not url:
            raise ProtocolError("directory missing revoke certificate URL")
        self.core.post(url, RevokeCertMessage(certificate=b64url(cert_der), reason=reason).to_wire())

    def get_renewal_info(self, cert_id: str) -> RenewalInfoResponse:
        """GET <renewalInfo>/<cert_id> (unauthenticated, per the ARI draft)."""
        resp = self.core.sender.get(self._renewal_info_url(cert_id))
        result = RenewalInfoResponse.model_validate(resp.json())
        result.retry_after = resp.headers.get("Retry-After", "")
        return result

    def update_renewal_info(self, cert_id: str) -> None:
        """Tell the server the certificate identified by *cert_id* was replaced."""
        url = self._renewal_info_url("")
        self.core.post(url.rstrip("/"), RenewalInfoUpdate(cert_id=cert_id).to_wire())

    def _renewal_info_url(self, cert_id: str) -> str:
        base = self.core.directory.renewal_info
        if not base:
            raise ProtocolError("renewalInfo: server does not advertise a renewal info endpoint")
        if not cert_id:
            return base
        return f"{base.rstrip('/')}/{cert_id}"

    def _get_certificate_and_up(self, url: str) -> tuple[bytes, list[str]]:
        resp = self.core.post_as_get(url, accept=PEM_CHAIN_CONTENT_TYPE)
        return resp.content, links(resp, "up")

    def _get_issuer(self, up_url: str) -> bytes:
        logger.info("acme: requesting issuer cert from %s", up_url)
        data, _ = self._get_certificate_and_up(up_url)
        return crypto.certificate_to_pem(data)
