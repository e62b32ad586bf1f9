"""
File-backed ACME account store; the stock implementation of the
`acmecore.registration.User` capability set.

Layout (one directory per CA host and user):
  <root>/accounts/<ca host, ":" → "_">/<email or placeholder>/
      account.json      — {"email", "registration": {"body", "uri"}}
      keys/<user>.key   — account private key PEM (mode 0o600)

A missing key is generated on first use.  A key without a stored
registration is how a caller knows to register or resolve by key.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from acmecore import crypto
from acmecore.crypto import KeyType, PrivateKey
from acmecore.registration import Registration
from storage.atomic import atomic_write_bytes, atomic_write_text

logger = logging.getLogger(__name__)

USER_ID_PLACEHOLDER = "noemail@example.com"
ACCOUNT_FILE = "account.json"
KEYS_DIR = "keys"


class AccountStore:
    def __init__(
        self,
        root_path: str,
        server_url: str,
        email: str = "",
        key_type: KeyType | str = KeyType.EC256,
    ) -> None:
        self.email = email
        self.user_id = email or USER_ID_PLACEHOLDER
        self.key_type = KeyType(key_type)

        server_dir = urlparse(server_url).netloc.replace(":", "_")
        self.root_user_path = Path(root_path) / "accounts" / server_dir / self.user_id
        self.account_file = self.root_user_path / ACCOUNT_FILE
        self.key_file = self.root_user_path / KEYS_DIR / f"{self.user_id}.key"

        self._key: Optional[PrivateKey] = None
        self._registration: Optional[Registration] = None
        self._loaded = False

    # ── User ──────────────────────────────────────────────────────────────

    def get_email(self) -> str:
        return self.email

    def get_registration(self) -> Optional[Registration]:
        if not self._loaded:
            self._registration = self._load_registration()
            self._loaded = True
        return self._registration

    def get_private_key(self) -> PrivateKey:
        if self._key is None:
            self._key = self._load_or_create_key()
        return self._key

    # ── Persistence ───────────────────────────────────────────────────────

    def save_registration(self, registration: Registration) -> None:
        data = {
            "email": self.email,
            "registration": registration.model_dump(mode="json", by_alias=True, exclude_none=True),
        }
        atomic_write_text(self.account_file, json.dumps(data, indent=2))
        self._registration = registration
        self._loaded = True
        logger.info("account saved to %s", self.account_file)

    def has_account(self) -> bool:
        return self.account_file.exists()

    def _load_registration(self) -> Optional[Registration]:
        try:
            data = json.loads(self.account_file.read_text())
        except FileNotFoundError:
            return None
        reg = data.get("registration")
        if not reg:
            return None
        return Registration.model_validate(reg)

    def _load_or_create_key(self) -> PrivateKey:
        if self.key_file.exists():
            return crypto.parse_private_key(self.key_file.read_bytes())

        logger.info(
            "no key found for account %s; generating a %s key", self.user_id, self.key_type.value
        )
        key = crypto.generate_private_key(self.key_type)
        atomic_write_bytes(self.key_file, crypto.private_key_to_pem(key), mode=0o600)
        logger.info("saved key to %s", self.key_file)
        return key
