"""
Directory-driven ACME client core.

`Core` owns the nonce pool and the signer and funnels every authenticated
request through one signed-POST primitive:

* POST        — `post(url, payload)`, JSON payload
* POST-as-GET — `post_as_get(url)`, empty payload (RFC 8555 §6.3)

badNonce recovery: a `NonceError` discards the consumed nonce and the request
is re-signed with a fresh one, `nonce_retries` times (default once).  Any
Replay-Nonce header on a response, successful or not, is pushed back into the
pool for reuse.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Optional

import requests

from acmecore.errors import NonceError, ProtocolError, RemoteError
from acmecore.jws import JWS, PrivateKey
from acmecore.models import Directory
from acmecore.nonces import NoncePool
from acmecore.sender import Sender, nonce_from_response
from acmecore.services import (
    AccountService,
    AuthorizationService,
    CertificateService,
    ChallengeService,
    OrderService,
)

logger = logging.getLogger(__name__)

DEFAULT_NONCE_RETRIES = 1
# Ceiling for test servers that reject a large share of nonces on purpose.
MAX_NONCE_RETRIES = 5


class Core:
    def __init__(
        self,
        sender: Sender,
        directory_url: str,
        private_key: Optional[PrivateKey],
        kid: str = "",
        nonce_retries: int = DEFAULT_NONCE_RETRIES,
    ) -> None:
        self.sender = sender
        self.directory = get_directory(sender, directory_url)
        self.nonces = NoncePool(sender, self.directory.new_nonce)
        self.private_key = private_key
        self.kid = kid
        self.nonce_retries = max(0, min(nonce_retries, MAX_NONCE_RETRIES))

        self.accounts = AccountService(self)
        self.authorizations = AuthorizationService(self)
        self.certificates = CertificateService(self)
        self.challenges = ChallengeService(self)
        self.orders = OrderService(self)

    # ── Signing ───────────────────────────────────────────────────────────

    def jws(self) -> JWS:
        return JWS(self.private_key, self.kid, self.nonces)

    def set_kid(self, kid: str) -> None:
        """Set the key identifier (account URL) used for subsequent requests."""
        if kid:
            self.kid = kid

    def key_authorization(self, token: str) -> str:
        return self.jws().key_authorization(token)

    def sign_eab(self, new_account_url: str, kid: str, hmac_encoded: str) -> dict[str, str]:
        return self.jws().sign_external_account_binding(new_account_url, kid, hmac_encoded)

    # ── Requests ──────────────────────────────────────────────────────────

    def post(self, url: str, payload: Any, accept: str = "application/json") -> requests.Response:
        """Sign and POST a JSON *payload*."""
        try:
            content = json.dumps(payload).encode()
        except (TypeError, ValueError) as exc:
            raise ProtocolError(f"failed to marshal message: {exc}") from exc
        return self._retriable_post(url, content, accept)

    def post_as_get(self, url: str, accept: str = "application/json") -> requests.Response:
        """POST-as-GET: a signed request with an empty payload."""
        return self._retriable_post(url, b"", accept)

    def _retriable_post(self, url: str, content: bytes, accept: str) -> requests.Response:
        attempt = 0
        while True:
            try:
                return self._signed_post(url, content, accept)
            except NonceError:
                if attempt >= self.nonce_retries:
                    raise
                attempt += 1
                logger.warning("acme: nonce rejected by %s, retrying with a fresh nonce", url)

    def _signed_post(self, url: str, content: bytes, accept: str) -> requests.Response:
        body = json.dumps(self.jws().sign(url, content)).encode()
        try:
            resp = self.sender.post(url, body, accept=accept)
        except RemoteError as exc:
            self._recycle_nonce(exc.response)
            raise
        self._recycle_nonce(resp)
        return resp

    def _recycle_nonce(self, resp: Optional[requests.Response]) -> None:
        if resp is None:
            return
        try:
            self.nonces.give(nonce_from_response(resp))
        except ProtocolError:
            pass


def get_directory(sender: Sender, directory_url: str) -> Directory:
    """GET the directory and check the endpoints every client needs."""
    resp = sender.get(directory_url)
    try:
        directory = Directory.model_validate(resp.json())
    except ValueError as exc:
        raise ProtocolError(f"get directory at '{directory_url}': {exc}") from exc

    if not directory.new_account:
        raise ProtocolError("directory missing new registration URL")
    if not directory.new_order:
        raise ProtocolError("directory missing new order URL")
    return directory
