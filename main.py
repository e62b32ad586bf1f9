"""
certwright — ACME certificate client CLI entry point.

Usage:
  python main.py --run                    # Obtain certificates for the managed domains
  python main.py --renew                  # Renew stored certificates that are due
  python main.py --schedule               # Renewal check daily at SCHEDULE_TIME (UTC)
  python main.py --revoke example.com     # Revoke a stored certificate
  python main.py --run --domains a.com b.com
"""
from __future__ import annotations

import argparse
import logging
import sys
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import requests
import structlog

# ── Logging setup ─────────────────────────────────────────────────────────────

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger(__name__)
summary = structlog.get_logger("certwright")

REVOCATION_REASONS = {0, 1, 3, 4, 5}


# ── Client wiring ─────────────────────────────────────────────────────────────


def build_core(settings):
    """Sender → account store → Core, registering the account on first use."""
    from acmecore.core import Core
    from acmecore.sender import Sender
    from storage.accounts import AccountStore

    sender = Sender(
        user_agent=settings.USER_AGENT,
        ca_bundle=settings.ACME_CA_BUNDLE,
        insecure=settings.ACME_INSECURE,
    )
    store = AccountStore(
        settings.ACCOUNTS_PATH,
        settings.ACME_DIRECTORY_URL,
        email=settings.ACCOUNT_EMAIL,
        key_type=settings.ACCOUNT_KEY_TYPE,
    )

    registration = store.get_registration()
    core = Core(
        sender,
        settings.ACME_DIRECTORY_URL,
        store.get_private_key(),
        kid=registration.uri if registration else "",
        nonce_retries=settings.NONCE_RETRIES,
    )
    if registration is None:
        store.save_registration(register_account(settings, core, store))
    return core


def register_account(settings, core, store):
    from acmecore.registration import Registrar

    if not settings.ACCEPT_TOS:
        log.error("No account registered yet. Set ACCEPT_TOS=true (or pass --accept-tos) to agree to the CA terms.")
        sys.exit(1)

    registrar = Registrar(core, store)
    if settings.ACME_EAB_KEY_ID and settings.ACME_EAB_HMAC_KEY:
        log.info("Registering account with external account binding (kid=%s)", settings.ACME_EAB_KEY_ID)
        return registrar.register_with_eab(True, settings.ACME_EAB_KEY_ID, settings.ACME_EAB_HMAC_KEY)
    if settings.CA_PROVIDER == "zerossl":
        return registrar.register_with_zerossl(True)
    return registrar.register(True)


def build_solver_manager(settings, core):
    from challenge import ChallengeType, http01, tlsalpn01
    from challenge.dns01 import PreCheck
    from challenge.hook import HookProvider
    from challenge.nameserver import NameserverClient
    from challenge.resolver import SolverManager

    manager = SolverManager(core, validation_timeout=settings.VALIDATION_TIMEOUT)

    if settings.HTTP_CHALLENGE_MODE == "webroot":
        manager.set_http01_provider(http01.WebrootProvider(settings.WEBROOT_PATH))
    else:
        server = http01.ProviderServer(settings.HTTP_CHALLENGE_IFACE, settings.HTTP_CHALLENGE_PORT)
        if settings.HTTP_PROXY_HEADER:
            server.set_proxy_header(settings.HTTP_PROXY_HEADER)
        manager.set_http01_provider(server)

    if settings.TLS_CHALLENGE_ENABLED:
        manager.set_tlsalpn01_provider(
            tlsalpn01.ProviderServer(settings.TLS_CHALLENGE_IFACE, settings.TLS_CHALLENGE_PORT)
        )

    if settings.DNS_PRESENT_HOOK:
        client = NameserverClient(settings.DNS_RESOLVERS, timeout=settings.DNS_TIMEOUT)
        provider = HookProvider(
            settings.DNS_PRESENT_HOOK,
            settings.DNS_CLEANUP_HOOK,
            propagation_timeout=settings.DNS_PROPAGATION_TIMEOUT,
            polling_interval=settings.DNS_POLLING_INTERVAL,
            client=client,
            sequential_interval=settings.DNS_SEQUENTIAL_INTERVAL,
        )
        precheck = PreCheck(client=client, disabled=not settings.DNS_PROPAGATION_CHECK)
        manager.set_dns01_provider(provider, precheck=precheck, client=client)

    for chlg_type in settings.EXCLUDED_CHALLENGES:
        manager.remove(ChallengeType(chlg_type))
    return manager


def build_certifier(settings, core):
    from acmecore.crypto import KeyType
    from certificate import Certifier, CertifierOptions
    from challenge.resolver import Prober

    prober = Prober(build_solver_manager(settings, core), observer=_SolveLogger())
    options = CertifierOptions(key_type=KeyType(settings.KEY_TYPE), timeout=settings.CERT_TIMEOUT)
    return Certifier(core, prober, options)


class _SolveLogger:
    def solve_started(self, domain: str, chlg_type: str) -> None:
        summary.info("challenge_started", domain=domain, challenge=chlg_type)

    def solve_finished(self, domain: str, error: Optional[BaseException]) -> None:
        if error is None:
            summary.info("challenge_valid", domain=domain)
        else:
            summary.warning("challenge_failed", domain=domain, error=str(error))


# ── Runs ──────────────────────────────────────────────────────────────────────


def run_obtain(domains: list[str] | None = None) -> dict:
    """Obtain one SAN certificate covering every domain and store it."""
    from acmecore.errors import AcmeError, ObtainError
    from certificate import ObtainRequest
    from config import settings
    from storage import filesystem

    effective_domains = domains or settings.MANAGED_DOMAINS
    if not effective_domains:
        log.error("No managed domains configured. Set MANAGED_DOMAINS in .env or pass --domains.")
        sys.exit(1)

    log.info("Obtaining a certificate for %d domain(s): %s",
             len(effective_domains), ", ".join(effective_domains))

    try:
        core = build_core(settings)
        certifier = build_certifier(settings, core)
        resource = certifier.obtain(
            ObtainRequest(
                domains=effective_domains,
                bundle=settings.BUNDLE,
                must_staple=settings.MUST_STAPLE,
            )
        )
    except ObtainError as exc:
        for domain, err in exc.failures.items():
            summary.error("obtain_failed", domain=domain, error=str(err))
        return {"issued": [], "failed": sorted(exc.failures)}
    except (AcmeError, ValueError, requests.RequestException) as exc:
        summary.error("obtain_failed", domains=effective_domains, error=str(exc))
        return {"issued": [], "failed": list(effective_domains)}

    metadata = filesystem.save_resource(settings.CERT_STORE_PATH, resource)
    summary.info("certificate_issued", domain=resource.domain, expires_at=metadata["expires_at"])
    return {"issued": [resource.domain], "failed": []}


def run_renew(domains: list[str] | None = None, sleep: Callable[[float], None] = time.sleep) -> dict:
    """
    Renew the stored certificates named by *domains* that are due.

    A certificate is stored under the first domain it was obtained for, so
    without *domains* the first managed domain names the one to renew.
    When the CA's renewal window picks an instant within
    ARI_WAIT_TO_RENEW_SECONDS, *sleep* waits for it before renewing.
    """
    from acmecore import crypto
    from acmecore.errors import AcmeError
    from config import settings
    from storage import filesystem

    effective_domains = domains or settings.MANAGED_DOMAINS[:1]
    if not effective_domains:
        log.error("No managed domains configured. Set MANAGED_DOMAINS in .env or pass --domains.")
        sys.exit(1)

    core = build_core(settings)
    certifier = build_certifier(settings, core)
    renewed: list[str] = []
    skipped: list[str] = []
    failed: list[str] = []

    for domain in effective_domains:
        resource = filesystem.load_resource(settings.CERT_STORE_PATH, domain)
        if resource is None:
            log.warning("[%s] no stored certificate; use --run to obtain one", domain)
            failed.append(domain)
            continue

        leaf = crypto.parse_pem_certificate(resource.certificate)
        use_ari = False
        try:
            due, use_ari = _renewal_due(settings, certifier, leaf, sleep)
        except AcmeError as exc:
            log.warning("[%s] renewal check failed: %s", domain, exc)
            due = False

        if not due:
            skipped.append(domain)
            continue

        try:
            new = certifier.renew(
                resource,
                bundle=settings.BUNDLE,
                must_staple=settings.MUST_STAPLE,
                reuse_key=settings.REUSE_KEY,
                replaces=use_ari,
            )
        except AcmeError as exc:
            summary.error("renewal_failed", domain=domain, error=str(exc))
            failed.append(domain)
            continue

        # the stored names stay put even when the CA reorders the SANs
        new.domain = resource.domain
        metadata = filesystem.save_resource(settings.CERT_STORE_PATH, new)
        summary.info("certificate_renewed", domain=domain, expires_at=metadata["expires_at"])
        renewed.append(domain)

    log.info("Renewal run complete — renewed: %s | not due: %s | failed: %s",
             renewed or "none", skipped or "none", failed or "none")
    return {"renewed": renewed, "skipped": skipped, "failed": failed}


def _renewal_due(settings, certifier, leaf, sleep: Callable[[float], None] = time.sleep) -> tuple[bool, bool]:
    """
    (renew now?, renewal info was used?) for *leaf*.

    A renewal instant from the CA wins, sleeping until it when it lies ahead.
    Without one the expiry threshold decides.
    """
    from acmecore.errors import AcmeError
    from storage.filesystem import days_until_expiry

    now = datetime.now(tz=timezone.utc)
    use_ari = False
    if settings.ARI_ENABLED:
        try:
            info = certifier.get_renewal_info(leaf)
        except AcmeError as exc:
            log.info("Renewal info unavailable (%s); falling back to expiry threshold", exc)
        else:
            use_ari = True
            wait = timedelta(seconds=settings.ARI_WAIT_TO_RENEW_SECONDS)
            when = info.should_renew_at(now, wait)
            if info.explanation_url:
                log.info("CA renewal explanation: %s", info.explanation_url)
            if when is not None:
                delay = (when - now).total_seconds()
                if delay > 0:
                    log.info("Sleeping %.0fs until the CA renewal time %s", delay, when.isoformat())
                    sleep(delay)
                return True, use_ari

    days_left = days_until_expiry(leaf.not_valid_after_utc, now)
    log.info("Certificate for %s expires in %d day(s)", leaf.subject.rfc4514_string(), days_left)
    return days_left <= settings.RENEWAL_THRESHOLD_DAYS, use_ari


def run_revocation(domains: list[str], reason: int = 0) -> dict:
    """Revoke the stored certificate of each domain."""
    from acmecore.errors import AcmeError
    from config import settings
    from storage import filesystem

    if reason not in REVOCATION_REASONS:
        log.error("Invalid revocation reason %d. Must be one of: %s",
                  reason, ", ".join(str(r) for r in sorted(REVOCATION_REASONS)))
        sys.exit(1)

    if not domains:
        log.error("No domains specified for revocation.")
        sys.exit(1)

    managed = set(settings.MANAGED_DOMAINS)
    unmanaged = [d for d in domains if d not in managed]
    if unmanaged:
        log.warning("Revoking unmanaged domains: %s", ", ".join(unmanaged))

    log.info("Starting revocation run for %d domain(s): %s (reason=%d)",
             len(domains), ", ".join(domains), reason)

    core = build_core(settings)
    certifier = build_certifier(settings, core)
    revoked: list[str] = []
    failed: list[str] = []

    for domain in domains:
        resource = filesystem.load_resource(settings.CERT_STORE_PATH, domain)
        if resource is None:
            log.warning("[%s] no stored certificate to revoke", domain)
            failed.append(domain)
            continue
        try:
            certifier.revoke(resource.certificate, reason)
        except AcmeError as exc:
            summary.error("revocation_failed", domain=domain, error=str(exc))
            failed.append(domain)
            continue
        summary.info("certificate_revoked", domain=domain, reason=reason)
        revoked.append(domain)

    log.info("Revocation run complete — revoked: %s | failed: %s", revoked or "none", failed or "none")
    return {"revoked": revoked, "failed": failed}


def run_scheduled(domains: list[str] | None = None) -> None:
    """Run the renewal check on a recurring daily schedule."""
    import schedule
    from config import settings

    schedule_time = settings.SCHEDULE_TIME
    log.info("Scheduling daily renewal check at %s UTC", schedule_time)

    def job() -> None:
        log.info("Scheduled run triggered")
        try:
            run_renew(domains=domains)
        except Exception as exc:
            log.exception("Scheduled run failed: %s", exc)

    schedule.every().day.at(schedule_time).do(job)

    log.info("Running initial check immediately...")
    job()

    log.info("Entering schedule loop — press Ctrl+C to stop")
    while True:
        schedule.run_pending()
        time.sleep(60)


# ── CLI ───────────────────────────────────────────────────────────────────────


def main() -> None:
    parser = argparse.ArgumentParser(
        description="certwright — ACME certificate client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --run --accept-tos
  python main.py --run --domains api.example.com shop.example.com
  python main.py --renew
  python main.py --schedule
  python main.py --revoke example.com api.example.com
  python main.py --revoke example.com --reason 4
        """,
    )
    parser.add_argument(
        "--run",
        action="store_true",
        help="Obtain one certificate covering the managed domains and exit",
    )
    parser.add_argument(
        "--renew",
        action="store_true",
        help="Renew stored certificates that are due and exit",
    )
    parser.add_argument(
        "--schedule",
        action="store_true",
        help="Run the renewal check daily at SCHEDULE_TIME (UTC)",
    )
    parser.add_argument(
        "--revoke",
        nargs="+",
        metavar="DOMAIN",
        help="Revoke the stored certificates of one or more domains",
    )
    parser.add_argument(
        "--reason",
        type=int,
        default=0,
        metavar="CODE",
        help="RFC 5280 revocation reason code (default: 0=unspecified; also: 1=keyCompromise, "
             "3=affiliationChanged, 4=superseded, 5=cessationOfOperation)",
    )
    parser.add_argument(
        "--domains",
        nargs="+",
        metavar="DOMAIN",
        help="Override managed domains for this run",
    )
    parser.add_argument(
        "--accept-tos",
        action="store_true",
        help="Agree to the CA terms of service when registering a new account",
    )

    args = parser.parse_args()

    if not (args.run or args.renew or args.schedule or args.revoke):
        parser.print_help()
        sys.exit(1)

    if args.accept_tos:
        from config import settings
        settings.ACCEPT_TOS = True

    if args.revoke:
        result = run_revocation(domains=args.revoke, reason=args.reason)
    elif args.run:
        result = run_obtain(domains=args.domains)
    elif args.renew:
        result = run_renew(domains=args.domains)
    else:
        run_scheduled(domains=args.domains)
        return

    if result.get("failed"):
        sys.exit(2)


if __name__ == "__main__":
    main()
