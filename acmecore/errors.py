"""
Exception hierarchy for the ACME protocol core.

Every error raised by this package derives from `AcmeError`.  Transport
failures from `requests` are left untouched and propagate as-is.
"""
from __future__ import annotations

from typing import Any, Mapping, Optional

from acmecore.models import Problem

BAD_NONCE = "urn:ietf:params:acme:error:badNonce"


class AcmeError(Exception):
    """Base class for all ACME errors."""


class ProtocolError(AcmeError):
    """The server sent malformed or incomplete data (e.g. no Replay-Nonce)."""


class SigningError(AcmeError):
    """A request could not be signed."""


class EncodingError(AcmeError):
    """A value could not be decoded (e.g. a malformed base64url EAB key)."""


class RemoteError(AcmeError):
    """The ACME server answered with an RFC 7807 problem document."""

    def __init__(self, problem: Problem, status_code: int = 0, response: Any = None) -> None:
        self.problem = problem
        self.response = response
        self.status_code = status_code or (problem.status or 0)
        super().__init__(str(problem))

    @property
    def type(self) -> str:
        return self.problem.type


class NonceError(RemoteError):
    """The server rejected the anti-replay nonce (badNonce)."""


class OrderInvalidError(AcmeError):
    """An order reached the terminal ``invalid`` state."""

    def __init__(self, message: str, problem: Optional[Problem] = None) -> None:
        self.problem = problem
        if problem is not None:
            message = f"{message}: {problem}"
        super().__init__(message)


class UnexpectedStateError(AcmeError):
    """A resource left its known states without reaching a terminal one."""


class PollingTimeoutError(AcmeError, TimeoutError):
    """A polling budget was exhausted before a terminal status was reached."""


class ObtainError(AcmeError):
    """
    Per-domain failures collected during a batch operation.

    An ObtainError always carries at least one failure.  Use
    `ObtainError.from_failures` to turn a possibly-empty mapping into
    either an error or ``None``.
    """

    def __init__(self, failures: Mapping[str, BaseException]) -> None:
        if not failures:
            raise ValueError("ObtainError requires at least one failure")
        self.failures: dict[str, BaseException] = dict(failures)
        super().__init__(self._format())

    @classmethod
    def from_failures(cls, failures: Mapping[str, BaseException]) -> Optional["ObtainError"]:
        if not failures:
            return None
        return cls(failures)

    def __len__(self) -> int:
        return len(self.failures)

    def __contains__(self, domain: object) -> bool:
        return domain in self.failures

    def __getitem__(self, domain: str) -> BaseException:
        return self.failures[domain]

    def _format(self) -> str:
        lines = ["error: one or more domains had a problem:"]
        for domain in sorted(self.failures):
            lines.append(f"[{domain}] {self.failures[domain]}")
        return "\n".join(lines)


def problem_error(problem: Problem, status_code: int = 0, response: Any = None) -> RemoteError:
    """Build the most specific RemoteError subclass for *problem*."""
    if problem.type == BAD_NONCE:
        return NonceError(problem, status_code, response)
    return RemoteError(problem, status_code, response)
