"""
ACME Renewal Information (ARI).

The CA publishes a suggested renewal window per certificate at
  <renewalInfo>/<certID>
where certID = base64url(AKI keyIdentifier) "." base64url(serial number).

`RenewalInfo.should_renew_at` turns a window into a decision:
  - pick a uniformly random instant inside [start, end)
  - already past                        → renew now
  - within the caller's sleep budget    → renew at that instant
  - otherwise                           → None (check again next cycle)
"""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Optional

from cryptography import x509

from acmecore.errors import AcmeError
from acmecore.jws import b64url
from acmecore.models import Window
from acmecore.sender import parse_retry_after

if TYPE_CHECKING:
    from acmecore.core import Core

logger = logging.getLogger(__name__)


def make_ari_cert_id(leaf: x509.Certificate) -> str:
    """Build the ARI certificate identifier of *leaf*."""
    try:
        aki = leaf.extensions.get_extension_for_class(x509.AuthorityKeyIdentifier).value
    except x509.ExtensionNotFound as exc:
        raise AcmeError("certificate has no authority key identifier") from exc
    if not aki.key_identifier:
        raise AcmeError("certificate has no authority key identifier")

    serial = leaf.serial_number
    # DER INTEGER content octets: big-endian, with a leading zero if the top bit is set
    serial_bytes = serial.to_bytes((serial.bit_length() + 8) // 8, "big")
    return f"{b64url(aki.key_identifier)}.{b64url(serial_bytes)}"


@dataclass
class RenewalInfo:
    suggested_window: Window
    explanation_url: str = ""
    retry_after: float = 0.0  # seconds until the CA wants to be asked again

    def should_renew_at(
        self,
        now: datetime,
        willing_to_sleep: timedelta = timedelta(0),
        rand: Callable[[float, float], float] = random.uniform,
    ) -> Optional[datetime]:
        """
        When to renew, or None to defer to the next regular check.

        *willing_to_sleep* is how long the caller can wait before renewing.
        """
        now = _utc(now)
        start = _utc(self.suggested_window.start)
        end = _utc(self.suggested_window.end)

        window = max((end - start).total_seconds(), 0.0)
        rt = start + timedelta(seconds=rand(0.0, window)) if window else start

        if rt < now:
            return now
        if now + willing_to_sleep >= rt:
            return rt
        return None


def get_renewal_info(core: "Core", leaf: x509.Certificate) -> RenewalInfo:
    """Fetch the CA's renewal window for *leaf*."""
    resp = core.certificates.get_renewal_info(make_ari_cert_id(leaf))
    try:
        retry_after = parse_retry_after(resp.retry_after)
    except ValueError as exc:
        logger.warning("acme: invalid Retry-After on renewal info: %s", exc)
        retry_after = 0.0
    return RenewalInfo(
        suggested_window=resp.suggested_window,
        explanation_url=resp.explanation_url,
        retry_after=retry_after,
    )


def update_renewal_info(core: "Core", leaf: x509.Certificate) -> None:
    """Tell the CA that *leaf* has been replaced."""
    core.certificates.update_renewal_info(make_ari_cert_id(leaf))


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
