"""
Challenge solvers and the pieces they share.

  ChallengeType      — the supported RFC 8555 / RFC 8737 challenge types
  Provider           — what a solver needs to publish and withdraw proof
  ProviderTimeout    — optional provider override for propagation waits
  ProviderSequential — optional provider opt-in to one-domain-at-a-time solving
  find_challenge     — pick the challenge of a given type out of an authz
  targeted_domain    — the identifier as requested ("*." for wildcards)
  validate           — trigger server validation, then poll to a verdict

Validation polling (the same for every challenge type):
  1. POST {} to the challenge URL
  2. valid                → done
     invalid              → RemoteError carrying the challenge problem
     pending / processing → sleep Retry-After (5 s when absent), refetch
     anything else        → UnexpectedStateError
  3. Past the deadline    → PollingTimeoutError
"""
from __future__ import annotations

import logging
import time
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional, Protocol

from acmecore.errors import AcmeError, PollingTimeoutError, RemoteError, UnexpectedStateError
from acmecore.models import (
    STATUS_INVALID,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_VALID,
    Authorization,
    Challenge,
    Problem,
)
from acmecore.sender import parse_retry_after

if TYPE_CHECKING:
    from acmecore.core import Core

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER = 5.0
DEFAULT_VALIDATION_TIMEOUT = 300.0


class ChallengeType(str, Enum):
    HTTP01 = "http-01"
    DNS01 = "dns-01"
    TLSALPN01 = "tls-alpn-01"


class Provider(Protocol):
    """Publishes (present) and withdraws (cleanup) a key authorization for a domain."""

    def present(self, domain: str, token: str, key_auth: str) -> None: ...

    def cleanup(self, domain: str, token: str, key_auth: str) -> None: ...


class ProviderTimeout(Protocol):
    """A provider that needs a custom propagation budget: (timeout, interval) in seconds."""

    def timeout(self) -> tuple[float, float]: ...


class ProviderSequential(Protocol):
    """A provider whose records must be handled one domain at a time.

    Returns the seconds to wait between two domains, or None to solve in
    parallel as usual.
    """

    def sequential(self) -> Optional[float]: ...


# validate(core, domain, challenge); raises on failure
ValidateFunc = Callable[["Core", str, Challenge], None]


def find_challenge(chlg_type: ChallengeType | str, authz: Authorization) -> Challenge:
    chlg_type = ChallengeType(chlg_type)
    for chlg in authz.challenges:
        if chlg.type == chlg_type.value:
            return chlg
    raise AcmeError(
        f"[{targeted_domain(authz)}] acme: unable to find challenge {chlg_type.value}"
    )


def targeted_domain(authz: Authorization) -> str:
    if authz.wildcard:
        return "*." + authz.identifier.value
    return authz.identifier.value


# ─── Validation polling ───────────────────────────────────────────────────────


def validate(
    core: "Core",
    domain: str,
    chlg: Challenge,
    timeout: float = DEFAULT_VALIDATION_TIMEOUT,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """Ask the server to validate *chlg* and poll until it reaches a verdict."""
    deadline = clock() + timeout
    current = core.challenges.new(chlg.url)

    while True:
        if _challenge_done(domain, current):
            logger.info("[%s] the server validated our request", domain)
            return

        remaining = deadline - clock()
        if remaining <= 0:
            raise PollingTimeoutError(
                f"[{domain}] acme: challenge validation timed out after {timeout:g}s "
                f"(status={current.status})"
            )

        sleep(min(_retry_after(current), remaining))
        current = core.challenges.get(chlg.url)


def _challenge_done(domain: str, chlg: Challenge) -> bool:
    if chlg.status == STATUS_VALID:
        return True
    if chlg.status in (STATUS_PENDING, STATUS_PROCESSING):
        return False
    if chlg.status == STATUS_INVALID:
        problem = chlg.error or Problem(detail=f"[{domain}] invalid challenge")
        raise RemoteError(problem)
    raise UnexpectedStateError(
        f"[{domain}] the server returned an unexpected challenge status: {chlg.status}"
    )


def _retry_after(chlg: Challenge) -> float:
    try:
        delay = parse_retry_after(chlg.retry_after)
    except ValueError:
        delay = 0.0
    # servers are not required to send Retry-After
    return delay or DEFAULT_RETRY_AFTER
