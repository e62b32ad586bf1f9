"""
Account registration on top of `Core.accounts`.

`Registrar` works on behalf of a `User`: anything that can hand out an email
address, its stored `Registration` and the account private key.  The file
account store (storage/accounts.py) is the stock implementation.

Registration results are `Registration(body, uri)`; *uri* is the account URL
that doubles as the JWS key-ID.  A successful register/resolve also sets the
key-ID on the core so later requests are signed with ``kid``.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional, Protocol

import requests
from pydantic import BaseModel, Field

from acmecore.errors import AcmeError, RemoteError
from acmecore.jws import PrivateKey
from acmecore.models import Account

if TYPE_CHECKING:
    from acmecore.core import Core

logger = logging.getLogger(__name__)

MAIL_TO = "mailto:"
ZEROSSL_EAB_URL = "https://api.zerossl.com/acme/eab-credentials-email"


class Registration(BaseModel):
    body: Account = Field(default_factory=Account)
    uri: str = ""


class User(Protocol):
    def get_email(self) -> str: ...

    def get_registration(self) -> Optional[Registration]: ...

    def get_private_key(self) -> PrivateKey: ...


class Registrar:
    def __init__(self, core: "Core", user: User) -> None:
        self.core = core
        self.user = user

    # ── New accounts ──────────────────────────────────────────────────────

    def register(self, terms_agreed: bool) -> Registration:
        """Create (or look up, on 409 Conflict) the account for the user's key."""
        message = self._account_message(terms_agreed)
        try:
            account = self.core.accounts.new(message)
        except RemoteError as exc:
            account = _existing_account(exc)
        return self._remember(account)

    def register_with_eab(self, terms_agreed: bool, kid: str, hmac_encoded: str) -> Registration:
        """Create the account with an External Account Binding (kid + base64url HMAC key)."""
        message = self._account_message(terms_agreed)
        try:
            account = self.core.accounts.new_eab(message, kid, hmac_encoded)
        except RemoteError as exc:
            account = _existing_account(exc)
        return self._remember(account)

    def register_with_zerossl(self, terms_agreed: bool) -> Registration:
        """Fetch EAB credentials from ZeroSSL for the user's email, then register."""
        email = self.user.get_email()
        if not email:
            raise AcmeError("acme: cannot register ZeroSSL account without email address")

        try:
            kid, hmac_encoded = create_zerossl_account(email, self.core.sender.session)
        except (requests.RequestException, ValueError) as exc:
            raise AcmeError(f"acme: error registering new ZeroSSL account: {exc}") from exc

        return self.register_with_eab(terms_agreed, kid, hmac_encoded)

    def resolve_account_by_key(self) -> Registration:
        """Find the account already registered for the user's key."""
        logger.info("acme: trying to resolve account by key")
        return self._remember(self.core.accounts.find_by_key())

    # ── Existing accounts ─────────────────────────────────────────────────

    def query_registration(self) -> Registration:
        uri = self._registration_uri()
        logger.info("acme: querying account for %s", uri)
        account = self.core.accounts.get(uri)
        # the server does not send Location here
        return Registration(body=account, uri=uri)

    def update_registration(self, terms_agreed: bool) -> Registration:
        uri = self._registration_uri()
        account = self.core.accounts.update(uri, self._account_message(terms_agreed))
        return Registration(body=account, uri=uri)

    def delete_registration(self) -> None:
        """Deactivate the account.  Deactivation is permanent."""
        uri = self._registration_uri()
        logger.info("acme: deleting account for %s", self.user.get_email() or uri)
        self.core.accounts.deactivate(uri)

    # ── Helpers ───────────────────────────────────────────────────────────

    def _account_message(self, terms_agreed: bool) -> Account:
        message = Account(terms_of_service_agreed=terms_agreed, contact=[])
        email = self.user.get_email()
        if email:
            logger.info("acme: registering account for %s", email)
            message.contact = [MAIL_TO + email]
        return message

    def _registration_uri(self) -> str:
        reg = self.user.get_registration()
        if reg is None or not reg.uri:
            raise AcmeError("acme: the user has no registration")
        return reg.uri

    def _remember(self, account: Account) -> Registration:
        self.core.set_kid(account.location)
        body = account.model_copy()
        return Registration(body=body, uri=account.location)


def _existing_account(exc: RemoteError) -> Account:
    """A 409 on newAccount still carries the existing account's Location."""
    if exc.status_code != 409 or exc.response is None:
        raise exc
    return Account(location=exc.response.headers.get("Location", ""))


def create_zerossl_account(email: str, session: Optional[requests.Session] = None) -> tuple[str, str]:
    """Ask ZeroSSL for EAB credentials tied to *email*; returns (kid, hmac)."""
    session = session or requests.Session()
    resp = session.post(ZEROSSL_EAB_URL, data={"email": email}, timeout=30)
    try:
        data = resp.json()
    except ValueError as exc:
        # ZeroSSL sometimes answers in plain text
        raise ValueError(f"parsing response: {exc}. Original response:\n{resp.text[:10240]}") from exc

    if not data.get("success"):
        raise ValueError("received success=false")
    return data["eab_kid"], data["eab_hmac_key"]
