"""
DNS-01 provider that delegates record changes to user shell commands.

Each hook runs through the shell with the challenge described in the
environment:
  CERTWRIGHT_DOMAIN      — identifier being authorized (no "*.")
  CERTWRIGHT_FQDN        — record name, CNAMEs already followed
  CERTWRIGHT_VALUE       — TXT record value
  CERTWRIGHT_TOKEN       — challenge token

A non-zero exit status fails the step with the hook's stderr. With a
*sequential_interval* the domains are solved one after another, that many
seconds apart, for hooks that cannot hold several records at once.
"""
from __future__ import annotations

import logging
import os
import subprocess
from typing import Optional

from acmecore.errors import AcmeError
from challenge.dns01 import DEFAULT_POLLING_INTERVAL, DEFAULT_PROPAGATION_TIMEOUT, challenge_info
from challenge.nameserver import NameserverClient

logger = logging.getLogger(__name__)

DEFAULT_HOOK_TIMEOUT = 120.0


class HookProvider:
    def __init__(
        self,
        present_cmd: str,
        cleanup_cmd: str = "",
        propagation_timeout: float = DEFAULT_PROPAGATION_TIMEOUT,
        polling_interval: float = DEFAULT_POLLING_INTERVAL,
        client: Optional[NameserverClient] = None,
        hook_timeout: float = DEFAULT_HOOK_TIMEOUT,
        sequential_interval: Optional[float] = None,
    ) -> None:
        if not present_cmd:
            raise ValueError("a present hook command is required")
        self.present_cmd = present_cmd
        self.cleanup_cmd = cleanup_cmd
        self.propagation_timeout = propagation_timeout
        self.polling_interval = polling_interval
        self.client = client
        self.hook_timeout = hook_timeout
        self.sequential_interval = sequential_interval

    def present(self, domain: str, token: str, key_auth: str) -> None:
        self._run("present", self.present_cmd, domain, token, key_auth)

    def cleanup(self, domain: str, token: str, key_auth: str) -> None:
        if self.cleanup_cmd:
            self._run("cleanup", self.cleanup_cmd, domain, token, key_auth)

    def timeout(self) -> tuple[float, float]:
        return self.propagation_timeout, self.polling_interval

    def sequential(self) -> Optional[float]:
        """Seconds between domains when the hooks handle one record at a time."""
        return self.sequential_interval

    def _run(self, step: str, cmd: str, domain: str, token: str, key_auth: str) -> str:
        info = challenge_info(domain, key_auth, self.client)
        env = dict(os.environ)
        env.update(
            {
                "CERTWRIGHT_DOMAIN": domain,
                "CERTWRIGHT_FQDN": info.effective_fqdn,
                "CERTWRIGHT_VALUE": info.value,
                "CERTWRIGHT_TOKEN": token,
            }
        )

        logger.info("[%s] running %s hook: %s", domain, step, cmd)
        try:
            proc = subprocess.run(
                cmd,
                shell=True,
                env=env,
                capture_output=True,
                text=True,
                timeout=self.hook_timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise AcmeError(f"[{domain}] {step} hook timed out after {self.hook_timeout:g}s") from exc

        if proc.stdout.strip():
            logger.debug("[%s] %s hook output: %s", domain, step, proc.stdout.strip())
        if proc.returncode != 0:
            raise AcmeError(
                f"[{domain}] {step} hook exited with status {proc.returncode}: {proc.stderr.strip()}"
            )
        return proc.stdout
