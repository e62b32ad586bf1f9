"""
HTTP-01 challenge (RFC 8555 §8.3).

The key authorization must be retrievable at
  http://<domain>/.well-known/acme-challenge/<token>

Two providers:
  1. ProviderServer  — a minimal standalone HTTP server on a configurable
     interface/port (default :80).  Requires the process to be able to bind
     that port (run as root, with CAP_NET_BIND_SERVICE, or behind a proxy).
  2. WebrootProvider — writes the token file into an existing web-server root
     so an already-running nginx/apache can serve it.
"""
from __future__ import annotations

import logging
import os
import socketserver
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from acmecore.errors import AcmeError
from acmecore.models import Authorization
from challenge import ChallengeType, Provider, ValidateFunc, find_challenge

if TYPE_CHECKING:
    from acmecore.core import Core

logger = logging.getLogger(__name__)

CHALLENGE_PATH_PREFIX = "/.well-known/acme-challenge/"


def challenge_path(token: str) -> str:
    return CHALLENGE_PATH_PREFIX + token


# ─── Solver ───────────────────────────────────────────────────────────────────


class HTTP01Challenge:
    def __init__(self, core: "Core", validate: ValidateFunc, provider: Provider) -> None:
        self.core = core
        self.validate = validate
        self.provider = provider

    def solve(self, authz: Authorization) -> None:
        domain = authz.identifier.value
        chlng = find_challenge(ChallengeType.HTTP01, authz)

        key_auth = self.core.key_authorization(chlng.token)
        logger.info("[%s] acme: trying to solve HTTP-01", domain)

        try:
            self.provider.present(domain, chlng.token, key_auth)
        except Exception as exc:
            raise AcmeError(f"[{domain}] acme: error presenting token: {exc}") from exc

        try:
            self.validate(self.core, domain, chlng)
        finally:
            try:
                self.provider.cleanup(domain, chlng.token, key_auth)
            except Exception as exc:
                logger.warning("[%s] acme: cleaning up failed: %s", domain, exc)


# ─── Standalone server ────────────────────────────────────────────────────────


class _ChallengeHTTPServer(HTTPServer):
    """HTTPServer carrying the one challenge it answers for."""

    domain: str = ""
    token: str = ""
    key_auth: str = ""
    host_header: str = "Host"

    def server_bind(self) -> None:
        # skip HTTPServer.server_bind: its getfqdn() call can block on DNS
        socketserver.TCPServer.server_bind(self)
        self.server_name, self.server_port = self.server_address[:2]


class _ChallengeHandler(BaseHTTPRequestHandler):
    """Serves only the ACME HTTP-01 challenge path; 404 for everything else."""

    server: _ChallengeHTTPServer

    def do_GET(self) -> None:
        srv = self.server
        if self.path != challenge_path(srv.token):
            self._not_found()
            return

        host = _request_host(self.headers, srv.host_header)
        if not _host_matches(host, srv.domain):
            logger.info(
                "[%s] acme: received request for host %r that does not match the challenge",
                srv.domain, host,
            )
            self._not_found()
            return

        body = srv.key_auth.encode()
        self.send_response(200)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)
        logger.info("[%s] served key authentication", srv.domain)

    def _not_found(self) -> None:
        self.send_response(404)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def log_message(self, fmt: str, *args: object) -> None:
        logger.debug("http-01 server: " + fmt, *args)


class ProviderServer:
    """
    Standalone HTTP-01 provider.

    `present` starts a server on *iface*:*port* in a background thread and
    `cleanup` shuts it down.  With `set_proxy_header` the requested host is
    read from ``X-Forwarded-Host`` / ``Forwarded`` (or any header) instead of
    ``Host``, for use behind a reverse proxy.
    """

    def __init__(self, iface: str = "", port: int | str = 80) -> None:
        self.iface = iface
        self.port = int(port)
        self.host_header = "Host"
        self._server: Optional[_ChallengeHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    def get_address(self) -> str:
        return f"{self.iface}:{self.port}"

    def set_proxy_header(self, name: str) -> None:
        self.host_header = name or "Host"

    def present(self, domain: str, token: str, key_auth: str) -> None:
        if self._server is not None:
            raise AcmeError("HTTP-01 challenge server is already running")

        try:
            server = _ChallengeHTTPServer((self.iface, self.port), _ChallengeHandler)
        except OSError as exc:
            raise AcmeError(f"could not start HTTP server for challenge: {exc}") from exc

        server.domain = domain
        server.token = token
        server.key_auth = key_auth
        server.host_header = self.host_header

        self._server = server
        self._thread = threading.Thread(target=server.serve_forever, daemon=True)
        self._thread.start()

    def cleanup(self, domain: str, token: str, key_auth: str) -> None:
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    @property
    def bound_port(self) -> int:
        """Port actually bound (useful when constructed with port 0)."""
        if self._server is None:
            return self.port
        return self._server.server_address[1]


def _request_host(headers, name: str) -> str:
    if name.lower() == "host":
        return headers.get("Host", "")

    values = headers.get_all(name) or []
    if not values:
        return ""
    # only the first (closest to the client) entry counts
    first = values[0].split(",")[0].strip()
    if name.lower() != "forwarded":
        return first

    for pair in first.split(";"):
        key, _, value = pair.strip().partition("=")
        if key.lower() == "host":
            return value.strip('"')
    return ""


def _host_matches(host: str, domain: str) -> bool:
    if not host:
        return False
    if host.startswith("["):
        # [v6addr] or [v6addr]:port
        host = host[1:].split("]", 1)[0]
    elif host.count(":") == 1:
        host = host.rsplit(":", 1)[0]
    return host.lower() == domain.lower().strip("[]")


# ─── Webroot provider ─────────────────────────────────────────────────────────


class WebrootProvider:
    """Writes the key authorization under *path*/.well-known/acme-challenge/."""

    def __init__(self, path: str) -> None:
        if not path:
            raise AcmeError("webroot path must be set")
        self.path = path

    def _token_path(self, token: str) -> Path:
        return Path(self.path) / CHALLENGE_PATH_PREFIX.strip("/") / token

    def present(self, domain: str, token: str, key_auth: str) -> None:
        token_path = self._token_path(token)
        token_path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
        token_path.write_text(key_auth, encoding="utf-8")
        os.chmod(token_path, 0o644)

    def cleanup(self, domain: str, token: str, key_auth: str) -> None:
        try:
            os.remove(self._token_path(token))
        except FileNotFoundError:
            pass
