"""
Challenge resolution engine.

`SolverManager` maps challenge types to solvers; `Prober` runs a set of
authorizations through them in three phases:

  1. Selection — per authorization (already-valid ones are skipped), the
     first challenge in server order whose type has a registered solver.
     No match is a per-domain failure.
  2. Presolve  — every selected solver that can pre-solve publishes its
     proof up front.  A failure excludes that domain from phase 3.
  3. Solve     — each remaining domain is solved, then cleaned up whatever
     the outcome.  Cleanup failures are logged, never reported.

Solvers that report themselves sequential are kept out of those phases and
run afterwards, one domain at a time (presolve, solve, cleanup), waiting
their interval between domains.

Failures are isolated per domain and returned together as one ObtainError.
"""
from __future__ import annotations

import functools
import logging
import time
from typing import TYPE_CHECKING, Any, Callable, NamedTuple, Optional, Protocol

from acmecore.errors import AcmeError, ObtainError
from acmecore.models import STATUS_VALID, Authorization
from challenge import DEFAULT_VALIDATION_TIMEOUT, ChallengeType, Provider, targeted_domain, validate
from challenge.dns01 import DNS01Challenge, PreCheck
from challenge.http01 import HTTP01Challenge
from challenge.nameserver import NameserverClient
from challenge.tlsalpn01 import TLSALPN01Challenge

if TYPE_CHECKING:
    from acmecore.core import Core

logger = logging.getLogger(__name__)


class Solver(Protocol):
    def solve(self, authz: Authorization) -> None: ...


class RegisteredSolver(NamedTuple):
    solver: Any
    can_presolve: bool
    can_cleanup: bool
    sequential: bool = False
    interval: float = 0.0  # seconds between two sequential domains


class ResolutionObserver(Protocol):
    """Optional hooks around each domain's solve phase."""

    def solve_started(self, domain: str, chlg_type: str) -> None: ...

    def solve_finished(self, domain: str, error: Optional[BaseException]) -> None: ...


def register(solver: Any) -> RegisteredSolver:
    """Probe *solver* once for its optional capabilities."""
    sequential, interval = False, 0.0
    probe = getattr(solver, "sequential", None)
    if callable(probe):
        sequential, interval = probe()
    return RegisteredSolver(
        solver=solver,
        can_presolve=callable(getattr(solver, "pre_solve", None)),
        can_cleanup=callable(getattr(solver, "cleanup", None)),
        sequential=bool(sequential),
        interval=float(interval),
    )


# ─── Registry ─────────────────────────────────────────────────────────────────


class SolverManager:
    def __init__(self, core: "Core", validation_timeout: float = DEFAULT_VALIDATION_TIMEOUT) -> None:
        self.core = core
        self.validate = functools.partial(validate, timeout=validation_timeout)
        self.solvers: dict[ChallengeType, RegisteredSolver] = {}

    def set_http01_provider(self, provider: Provider) -> None:
        self.set_solver(ChallengeType.HTTP01, HTTP01Challenge(self.core, self.validate, provider))

    def set_tlsalpn01_provider(self, provider: Provider) -> None:
        self.set_solver(ChallengeType.TLSALPN01, TLSALPN01Challenge(self.core, self.validate, provider))

    def set_dns01_provider(
        self,
        provider: Provider,
        precheck: Optional[PreCheck] = None,
        client: Optional[NameserverClient] = None,
    ) -> None:
        self.set_solver(
            ChallengeType.DNS01,
            DNS01Challenge(self.core, self.validate, provider, precheck=precheck, client=client),
        )

    def set_solver(self, chlg_type: ChallengeType | str, solver: Any) -> None:
        """Register (or replace) the solver for *chlg_type*."""
        self.solvers[ChallengeType(chlg_type)] = register(solver)

    def remove(self, chlg_type: ChallengeType | str) -> None:
        """Stop considering *chlg_type* at all."""
        self.solvers.pop(ChallengeType(chlg_type), None)

    def choose_solver(self, authz: Authorization) -> Optional[tuple[str, RegisteredSolver]]:
        """First challenge, in server order, with a registered solver."""
        domain = targeted_domain(authz)
        for chlg in authz.challenges:
            try:
                registered = self.solvers.get(ChallengeType(chlg.type))
            except ValueError:
                registered = None
            if registered is not None:
                logger.info("[%s] acme: use %s solver", domain, chlg.type)
                return chlg.type, registered
            logger.info("[%s] acme: could not find solver for: %s", domain, chlg.type)
        return None


# ─── Prober ───────────────────────────────────────────────────────────────────


class _Selected(NamedTuple):
    authz: Authorization
    domain: str
    chlg_type: str
    registered: RegisteredSolver


class Prober:
    def __init__(
        self,
        solver_manager: SolverManager,
        observer: Optional[ResolutionObserver] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.solver_manager = solver_manager
        self.observer = observer
        self.sleep = sleep

    def solve(self, authorizations: list[Authorization]) -> None:
        """Resolve every authorization; raise ObtainError naming each failed domain."""
        failures: dict[str, BaseException] = {}
        selected: list[_Selected] = []

        for authz in authorizations:
            domain = targeted_domain(authz)
            if authz.status == STATUS_VALID:
                # servers may reuse a recently validated authorization
                logger.info("[%s] acme: authorization already valid; skipping challenge", domain)
                continue

            choice = self.solver_manager.choose_solver(authz)
            if choice is None:
                failures[domain] = AcmeError(f"[{domain}] acme: could not determine solvers")
                continue
            selected.append(_Selected(authz, domain, *choice))

        self._parallel_solve([s for s in selected if not s.registered.sequential], failures)
        self._sequential_solve([s for s in selected if s.registered.sequential], failures)

        error = ObtainError.from_failures(failures)
        if error is not None:
            raise error

    def _parallel_solve(self, selected: list[_Selected], failures: dict[str, BaseException]) -> None:
        for sel in selected:
            if not sel.registered.can_presolve:
                continue
            try:
                sel.registered.solver.pre_solve(sel.authz)
            except Exception as exc:
                failures[sel.domain] = exc

        for sel in selected:
            if sel.domain in failures:
                continue
            error = self._solve_one(sel)
            if error is not None:
                failures[sel.domain] = error

    def _sequential_solve(self, selected: list[_Selected], failures: dict[str, BaseException]) -> None:
        for i, sel in enumerate(selected):
            if sel.registered.can_presolve:
                try:
                    sel.registered.solver.pre_solve(sel.authz)
                except Exception as exc:
                    failures[sel.domain] = exc
                    if sel.registered.can_cleanup:
                        self._cleanup(sel)
                    continue

            error = self._solve_one(sel)
            if error is not None:
                failures[sel.domain] = error
                continue

            if i < len(selected) - 1:
                logger.info("sequence: waiting %gs before the next domain", sel.registered.interval)
                self.sleep(sel.registered.interval)

    def _solve_one(self, sel: _Selected) -> Optional[BaseException]:
        if self.observer is not None:
            self.observer.solve_started(sel.domain, sel.chlg_type)

        error: Optional[BaseException] = None
        try:
            sel.registered.solver.solve(sel.authz)
        except Exception as exc:
            error = exc
        finally:
            if sel.registered.can_cleanup:
                self._cleanup(sel)

        if self.observer is not None:
            self.observer.solve_finished(sel.domain, error)
        return error

    @staticmethod
    def _cleanup(sel: _Selected) -> None:
        try:
            sel.registered.solver.cleanup(sel.authz)
        except Exception as exc:
            logger.warning("[%s] acme: cleaning up failed: %s", sel.domain, exc)
