"""
DNS-01 challenge (RFC 8555 §8.4).

  1. key_authorization = token + "." + jwk_thumbprint   (same as HTTP-01)
  2. TXT record value  = base64url(SHA-256(key_authorization))
  3. DNS name          = _acme-challenge.<domain>. (CNAMEs are followed)
  4. pre_solve: provider publishes the record
     solve:     wait for propagation on the authoritative servers, validate
     cleanup:   provider withdraws the record

Presenting is split from solving so the engine can publish every record
before waiting on any of them; propagation then overlaps across domains.
"""
from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from acmecore.errors import AcmeError, PollingTimeoutError
from acmecore.jws import b64url
from acmecore.models import Authorization
from challenge import ChallengeType, Provider, ValidateFunc, find_challenge, targeted_domain
from challenge.nameserver import NameserverClient, default_client

if TYPE_CHECKING:
    from acmecore.core import Core

logger = logging.getLogger(__name__)

DEFAULT_PROPAGATION_TIMEOUT = 60.0
DEFAULT_POLLING_INTERVAL = 2.0
DEFAULT_TTL = 120

# check(fqdn, value) -> propagated?
PreCheckFunc = Callable[[str, str], bool]


# ─── TXT value computation ─────────────────────────────────────────────────────


def compute_dns_txt_value(key_authorization: str) -> str:
    """Return base64url(SHA-256(key_authorization)) with no padding."""
    return b64url(hashlib.sha256(key_authorization.encode("ascii")).digest())


@dataclass(frozen=True)
class ChallengeInfo:
    fqdn: str  # _acme-challenge.<domain>.
    effective_fqdn: str  # after CNAME resolution
    value: str


def challenge_info(
    domain: str,
    key_auth: str,
    client: Optional[NameserverClient] = None,
    follow_cname: bool = True,
) -> ChallengeInfo:
    """Everything a provider needs to publish the TXT record for *domain*."""
    fqdn = f"_acme-challenge.{domain}."
    effective = fqdn
    if follow_cname:
        effective = (client or default_client()).lookup_cname(fqdn)
    return ChallengeInfo(fqdn=fqdn, effective_fqdn=effective, value=compute_dns_txt_value(key_auth))


# ─── Propagation pre-check ────────────────────────────────────────────────────


class PreCheck:
    """
    Decides whether the TXT record is visible yet.

    By default every authoritative nameserver of the zone is asked directly.
    *check* replaces that with a custom function; *disabled* skips the check
    entirely (only the initial interval is waited).
    """

    def __init__(
        self,
        client: Optional[NameserverClient] = None,
        check: Optional[PreCheckFunc] = None,
        disabled: bool = False,
    ) -> None:
        self.client = client
        self.check = check
        self.disabled = disabled

    def __call__(self, domain: str, fqdn: str, value: str) -> bool:
        if self.disabled:
            return True
        if self.check is not None:
            return self.check(fqdn, value)
        return (self.client or default_client()).check_propagation(fqdn, value)


def wait_for(
    what: str,
    timeout: float,
    interval: float,
    check: Callable[[], bool],
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """
    Call *check* every *interval* seconds until it returns True.

    Exceptions from *check* count as "not yet"; the last one is reported
    when *timeout* runs out.
    """
    logger.info("wait for %s [timeout: %gs, interval: %gs]", what, timeout, interval)
    deadline = clock() + timeout
    last_error: Optional[BaseException] = None

    while True:
        try:
            if check():
                return
            last_error = None
        except Exception as exc:
            last_error = exc

        if clock() >= deadline:
            msg = f"{what}: time limit exceeded"
            if last_error is not None:
                msg += f": last error: {last_error}"
            raise PollingTimeoutError(msg) from last_error

        sleep(interval)


# ─── Solver ───────────────────────────────────────────────────────────────────


class DNS01Challenge:
    def __init__(
        self,
        core: "Core",
        validate: ValidateFunc,
        provider: Optional[Provider],
        precheck: Optional[PreCheck] = None,
        client: Optional[NameserverClient] = None,
        follow_cname: bool = True,
    ) -> None:
        self.core = core
        self.validate = validate
        self.provider = provider
        self.client = client
        self.precheck = precheck or PreCheck(client=client)
        self.follow_cname = follow_cname
        self.sleep: Callable[[float], None] = time.sleep

    def pre_solve(self, authz: Authorization) -> None:
        """Publish the TXT record; no propagation check, no ACME traffic."""
        domain = targeted_domain(authz)
        logger.info("[%s] acme: preparing to solve DNS-01", domain)

        chlng = find_challenge(ChallengeType.DNS01, authz)
        if self.provider is None:
            raise AcmeError(f"[{domain}] acme: no DNS provider configured")

        key_auth = self.core.key_authorization(chlng.token)
        try:
            self.provider.present(authz.identifier.value, chlng.token, key_auth)
        except Exception as exc:
            raise AcmeError(f"[{domain}] acme: error presenting token: {exc}") from exc

    def solve(self, authz: Authorization) -> None:
        domain = targeted_domain(authz)
        logger.info("[%s] acme: trying to solve DNS-01", domain)

        chlng = find_challenge(ChallengeType.DNS01, authz)
        key_auth = self.core.key_authorization(chlng.token)
        info = challenge_info(authz.identifier.value, key_auth, self.client, self.follow_cname)

        timeout, interval = self.propagation_timeout()
        logger.info("[%s] acme: checking DNS record propagation", domain)
        self.sleep(interval)

        def propagated() -> bool:
            stop = self.precheck(domain, info.effective_fqdn, info.value)
            if not stop:
                logger.info("[%s] acme: waiting for DNS record propagation", domain)
            return stop

        wait_for("propagation", timeout, interval, propagated, sleep=self.sleep)

        chlng.key_authorization = key_auth
        self.validate(self.core, domain, chlng)

    def cleanup(self, authz: Authorization) -> None:
        logger.info("[%s] acme: cleaning DNS-01 challenge", targeted_domain(authz))
        chlng = find_challenge(ChallengeType.DNS01, authz)
        if self.provider is None:
            return
        key_auth = self.core.key_authorization(chlng.token)
        self.provider.cleanup(authz.identifier.value, chlng.token, key_auth)

    def propagation_timeout(self) -> tuple[float, float]:
        """The provider's (timeout, interval) when it has one, else 60 s / 2 s."""
        timeout_fn = getattr(self.provider, "timeout", None)
        if callable(timeout_fn):
            return timeout_fn()
        return DEFAULT_PROPAGATION_TIMEOUT, DEFAULT_POLLING_INTERVAL

    def sequential(self) -> tuple[bool, float]:
        """(solve one domain at a time?, seconds between domains) from the provider."""
        sequential_fn = getattr(self.provider, "sequential", None)
        if not callable(sequential_fn):
            return False, 0.0
        interval = sequential_fn()
        if interval is None:
            return False, 0.0
        return True, float(interval)
