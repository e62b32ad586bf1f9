"""
HTTP transport for the ACME client.

`Sender` owns the `requests.Session` (user agent, CA bundle, timeouts) and
converts RFC 7807 error responses into `RemoteError` / `NonceError`.  The
module also hosts the small header helpers (Location, Link, Retry-After,
Replay-Nonce) the services rely on.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional

import requests
from requests.utils import parse_header_links

from acmecore import __version__
from acmecore.errors import ProtocolError, problem_error
from acmecore.models import Problem

logger = logging.getLogger(__name__)

_USER_AGENT = f"certwright/{__version__}"

JOSE_CONTENT_TYPE = "application/jose+json"
PEM_CHAIN_CONTENT_TYPE = "application/pem-certificate-chain"


class Sender:
    """Thin wrapper around a requests.Session speaking ACME conventions."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        user_agent: str = "",
        ca_bundle: str = "",
        insecure: bool = False,
        timeout: float = 30,
    ) -> None:
        self.timeout = timeout
        self.session = session or requests.Session()
        ua = _USER_AGENT if not user_agent else f"{_USER_AGENT} {user_agent}"
        self.session.headers.update({"User-Agent": ua})

        if insecure:
            import urllib3
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
            self.session.verify = False
        elif ca_bundle:
            self.session.verify = ca_bundle

    def get(self, url: str, accept: str = "application/json") -> requests.Response:
        return self._do("GET", url, headers={"Accept": accept})

    def head(self, url: str) -> requests.Response:
        return self._do("HEAD", url)

    def post(
        self,
        url: str,
        body: bytes,
        content_type: str = JOSE_CONTENT_TYPE,
        accept: str = "application/json",
    ) -> requests.Response:
        return self._do(
            "POST",
            url,
            data=body,
            headers={"Content-Type": content_type, "Accept": accept},
        )

    def _do(self, method: str, url: str, **kwargs) -> requests.Response:
        logger.debug("%s %s", method, url)
        resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        if resp.status_code >= 400:
            raise problem_error(_problem_from(resp), resp.status_code, resp)
        return resp


def _problem_from(resp: requests.Response) -> Problem:
    try:
        body = resp.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        problem = Problem.model_validate(body)
        if problem.status is None:
            problem.status = resp.status_code
        return problem

    return Problem(
        type="",
        status=resp.status_code,
        detail=f"{resp.request.method} {resp.url}: {resp.text.strip() or resp.reason}",
    )


# ─── Header helpers ───────────────────────────────────────────────────────────


def nonce_from_response(resp: Optional[requests.Response]) -> str:
    """Return the Replay-Nonce header; ProtocolError if it is absent."""
    if resp is None:
        raise ProtocolError("nil response")
    nonce = resp.headers.get("Replay-Nonce", "")
    if not nonce:
        raise ProtocolError("server did not respond with a proper nonce header")
    return nonce


def location(resp: requests.Response) -> str:
    return resp.headers.get("Location", "")


def links(resp: requests.Response, rel: str) -> list[str]:
    """Return every Link header URL with relation *rel*, in header order."""
    urls = []
    for header in _header_values(resp, "Link"):
        for link in parse_header_links(header):
            if link.get("rel") == rel and link.get("url"):
                urls.append(link["url"])
    return urls


def _header_values(resp: requests.Response, name: str) -> list[str]:
    raw = getattr(resp.raw, "headers", None)
    if raw is not None and hasattr(raw, "getlist"):
        values = raw.getlist(name)
        if values:
            return values
    value = resp.headers.get(name)
    return [value] if value else []


def parse_retry_after(value: str, now: Optional[datetime] = None) -> float:
    """
    Convert a Retry-After header value into seconds.

    Accepts delta-seconds or an HTTP-date; returns 0 for an empty value.
    Raises ValueError when the value is neither.
    """
    value = value.strip()
    if not value:
        return 0.0
    if value.isdigit():
        return float(value)

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"invalid time format: {value}") from exc
    if when is None:
        raise ValueError(f"invalid time format: {value}")
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(tz=timezone.utc)
    return max((when - now).total_seconds(), 0.0)
