"""
Anti-replay nonce pool.

Nonces handed out by `take()` are removed from the pool, so a value is used
by at most one signed request.  Fresh nonces arrive on almost every ACME
response and are pushed back with `give()`; the pool only goes to the
network (HEAD newNonce) when it is empty.
"""
from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from acmecore.sender import nonce_from_response

if TYPE_CHECKING:
    from acmecore.sender import Sender

logger = logging.getLogger(__name__)


class NoncePool:
    def __init__(self, sender: "Sender", nonce_url: str) -> None:
        self._sender = sender
        self._nonce_url = nonce_url
        self._nonces: list[str] = []
        self._lock = threading.Lock()

    def take(self) -> str:
        """Return an unused nonce, fetching one from the server if needed."""
        with self._lock:
            if self._nonces:
                return self._nonces.pop()

        # The network round trip happens outside the lock.
        return self._fetch()

    def give(self, nonce: str) -> None:
        """Store a server-supplied nonce for later use."""
        if not nonce:
            return
        with self._lock:
            self._nonces.append(nonce)

    def __len__(self) -> int:
        with self._lock:
            return len(self._nonces)

    def _fetch(self) -> str:
        logger.debug("Fetching a fresh nonce from %s", self._nonce_url)
        resp = self._sender.head(self._nonce_url)
        return nonce_from_response(resp)
