"""
Certificate orchestrator: one order from identifiers to an issued certificate.

    created → authorizations fetched → challenges resolved → finalized
            → polling → issued | failed

Partial certificates are never produced: if any authorization cannot be
fetched or solved the issuance stops, and any failure after resolution is
reported against every domain of the order.

Authorizations are fetched concurrently, one task per URL, with a fixed
delay between launches so the CA's per-second request budget is respected.
"""
from __future__ import annotations

import ipaddress
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Optional, Protocol

import idna
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509 import ocsp
from cryptography.x509.oid import AuthorityInformationAccessOID

from acmecore import crypto
from acmecore.crypto import KeyType, PrivateKey
from acmecore.errors import AcmeError, ObtainError, OrderInvalidError, PollingTimeoutError
from acmecore.models import STATUS_INVALID, STATUS_VALID, Authorization, Order
from certificate import renewal

if TYPE_CHECKING:
    from acmecore.core import Core

logger = logging.getLogger(__name__)

DEFAULT_OVERALL_REQUEST_LIMIT = 18
MAX_BODY_SIZE = 1024 * 1024
OCSP_REQUEST_CONTENT_TYPE = "application/ocsp-request"


class Resolver(Protocol):
    def solve(self, authorizations: list[Authorization]) -> None: ...


# ─── Requests and results ─────────────────────────────────────────────────────


@dataclass
class CertifierOptions:
    key_type: KeyType = KeyType.RSA2048
    timeout: float = 30.0  # certificate polling budget, seconds
    poll_interval: float = 0.5
    overall_request_limit: int = DEFAULT_OVERALL_REQUEST_LIMIT


@dataclass
class ObtainRequest:
    """The first domain becomes the CommonName; all of them become SANs."""

    domains: list[str]
    bundle: bool = False
    private_key: Optional[PrivateKey] = None
    must_staple: bool = False
    not_before: Optional[datetime] = None
    not_after: Optional[datetime] = None
    replaces: Optional[str] = None  # ARI cert ID of the certificate being replaced


@dataclass
class ObtainForCSRRequest:
    csr: x509.CertificateSigningRequest
    bundle: bool = False
    private_key: Optional[PrivateKey] = None
    not_before: Optional[datetime] = None
    not_after: Optional[datetime] = None
    replaces: Optional[str] = None


@dataclass
class Resource:
    """An issued certificate; every byte field is PEM and can go straight to disk."""

    domain: str
    cert_url: str = ""
    cert_stable_url: str = ""
    private_key: Optional[bytes] = None
    certificate: bytes = b""
    issuer_certificate: bytes = b""
    csr: Optional[bytes] = None


# ─── Certifier ────────────────────────────────────────────────────────────────


class Certifier:
    def __init__(self, core: "Core", resolver: Resolver, options: Optional[CertifierOptions] = None) -> None:
        self.core = core
        self.resolver = resolver
        self.options = options or CertifierOptions()
        self.sleep: Callable[[float], None] = time.sleep
        self.clock: Callable[[], float] = time.monotonic

    def obtain(self, request: ObtainRequest) -> Resource:
        """
        Obtain one certificate covering every domain of *request*.

        A new private key of `options.key_type` is generated unless the
        request carries one.  Raises ObtainError on any per-domain failure.
        """
        if not request.domains:
            raise ValueError("no domains to obtain a certificate for")

        domains = sanitize_domains(request.domains)
        if not domains:
            raise ValueError("no valid domains to obtain a certificate for")
        logger.info(
            "[%s] acme: obtaining %sSAN certificate",
            ", ".join(domains), "bundled " if request.bundle else "",
        )

        order = self.core.orders.new(domains, request.not_before, request.not_after, request.replaces)
        authzs = self._resolve(order)

        logger.info("[%s] acme: validations succeeded; requesting certificates", ", ".join(domains))
        try:
            private_key = request.private_key or crypto.generate_private_key(self.options.key_type)
            return self._get_for_order(domains, order, request.bundle, private_key, request.must_staple)
        except Exception as exc:
            raise _fail_all(authzs, domains, exc) from exc

    def obtain_for_csr(self, request: ObtainForCSRRequest) -> Resource:
        """Obtain a certificate for an existing CSR (domains from its CN and SANs)."""
        domains = crypto.domains_from_csr(request.csr)
        if not domains:
            raise ValueError("the CSR names no domains")
        logger.info(
            "[%s] acme: obtaining %sSAN certificate given a CSR",
            ", ".join(domains), "bundled " if request.bundle else "",
        )

        order = self.core.orders.new(domains, request.not_before, request.not_after, request.replaces)
        authzs = self._resolve(order)

        logger.info("[%s] acme: validations succeeded; requesting certificates", ", ".join(domains))
        key_pem = crypto.private_key_to_pem(request.private_key) if request.private_key else None
        try:
            csr_der = request.csr.public_bytes(serialization.Encoding.DER)
            resource = self._get_for_csr(domains, order, request.bundle, csr_der, key_pem)
        except Exception as exc:
            raise _fail_all(authzs, domains, exc) from exc

        # kept so that renewals can reuse the same CSR
        resource.csr = request.csr.public_bytes(serialization.Encoding.PEM)
        return resource

    def renew(
        self,
        resource: Resource,
        bundle: bool = False,
        must_staple: bool = False,
        reuse_key: bool = False,
        replaces: bool = False,
    ) -> Resource:
        """
        Obtain a fresh certificate for the names of *resource*.

        The preserved CSR is reused when there is one.  *reuse_key* keeps the
        existing private key; *replaces* marks the new order as the ARI
        replacement of the old certificate.
        """
        leaf = crypto.parse_pem_bundle(resource.certificate)[0]
        if _is_ca(leaf):
            raise AcmeError(f"[{resource.domain}] certificate bundle starts with a CA certificate")

        hours_left = (leaf.not_valid_after_utc - datetime.now(timezone.utc)).total_seconds() / 3600
        logger.info("[%s] acme: trying renewal with %d hours remaining", resource.domain, int(hours_left))

        replaces_id = renewal.make_ari_cert_id(leaf) if replaces else None

        if resource.csr:
            return self.obtain_for_csr(
                ObtainForCSRRequest(
                    csr=crypto.parse_csr(resource.csr),
                    bundle=bundle,
                    replaces=replaces_id,
                )
            )

        private_key = None
        if reuse_key and resource.private_key:
            private_key = crypto.parse_private_key(resource.private_key)

        return self.obtain(
            ObtainRequest(
                domains=crypto.domains_from_certificate(leaf),
                bundle=bundle,
                private_key=private_key,
                must_staple=must_staple,
                replaces=replaces_id,
            )
        )

    def revoke(self, cert_pem: bytes, reason: Optional[int] = None) -> None:
        """Revoke the first certificate of a PEM certificate or bundle."""
        leaf = crypto.parse_pem_bundle(cert_pem)[0]
        if _is_ca(leaf):
            raise AcmeError("certificate bundle starts with a CA certificate")
        self.core.certificates.revoke(leaf.public_bytes(serialization.Encoding.DER), reason)

    def get_renewal_info(self, leaf: x509.Certificate) -> renewal.RenewalInfo:
        return renewal.get_renewal_info(self.core, leaf)

    def update_renewal_info(self, leaf: x509.Certificate) -> None:
        renewal.update_renewal_info(self.core, leaf)

    # ── OCSP ──────────────────────────────────────────────────────────────

    def get_ocsp(self, bundle: bytes) -> tuple[bytes, ocsp.OCSPResponse]:
        """
        Query the OCSP responder of the leaf in *bundle*.

        The bundle is expected leaf first.  With a lone leaf the issuer is
        downloaded from the leaf's caIssuers URL.  Returns the raw DER
        response (ready for stapling) and its parsed form.
        """
        certs = crypto.parse_pem_bundle(bundle)
        leaf = certs[0]

        ocsp_urls = _aia_urls(leaf, AuthorityInformationAccessOID.OCSP)
        if not ocsp_urls:
            raise AcmeError("no OCSP server specified in cert")

        if len(certs) == 1:
            issuer_urls = _aia_urls(leaf, AuthorityInformationAccessOID.CA_ISSUERS)
            if not issuer_urls:
                raise AcmeError("no issuing certificate URL")
            certs.append(self._download_issuer(issuer_urls[0]))
        issuer = certs[1]

        request = (
            ocsp.OCSPRequestBuilder()
            .add_certificate(leaf, issuer, hashes.SHA1())
            .build()
            .public_bytes(serialization.Encoding.DER)
        )
        resp = self.core.sender.session.post(
            ocsp_urls[0],
            data=request,
            headers={"Content-Type": OCSP_REQUEST_CONTENT_TYPE},
            timeout=self.core.sender.timeout,
        )
        resp.raise_for_status()
        raw = resp.content[:MAX_BODY_SIZE]
        return raw, ocsp.load_der_ocsp_response(raw)

    def _download_issuer(self, url: str) -> x509.Certificate:
        resp = self.core.sender.session.get(url, timeout=self.core.sender.timeout)
        resp.raise_for_status()
        data = resp.content[:MAX_BODY_SIZE]
        return crypto.parse_pem_certificate(crypto.certificate_to_pem(data))

    # ── Authorizations ────────────────────────────────────────────────────

    def _resolve(self, order: Order) -> list[Authorization]:
        authzs = self._get_authorizations(order)
        try:
            self.resolver.solve(authzs)
        except Exception:
            self._deactivate_authorizations(authzs)
            raise
        return authzs

    def _get_authorizations(self, order: Order) -> list[Authorization]:
        """Fetch every authorization of *order* concurrently, in order."""
        urls = list(order.authorizations)
        if not urls:
            return []

        delay = 1.0 / max(self.options.overall_request_limit, 1)
        fetched: dict[str, Authorization] = {}
        failures: dict[str, BaseException] = {}

        with ThreadPoolExecutor(max_workers=len(urls), thread_name_prefix="authz") as pool:
            futures = {}
            for i, url in enumerate(urls):
                if i:
                    self.sleep(delay)
                futures[pool.submit(self.core.authorizations.get, url)] = url

            for future in as_completed(futures):
                url = futures[future]
                try:
                    fetched[url] = future.result()
                except Exception as exc:
                    failures[url] = exc

        for authz in fetched.values():
            logger.info("[%s] acme: authorization URL: %s", authz.identifier.value, authz.location)

        error = ObtainError.from_failures(failures)
        if error is not None:
            # no partial certificates: give back what was obtained
            self._deactivate_authorizations(list(fetched.values()))
            raise error

        return [fetched[url] for url in urls]

    def _deactivate_authorizations(self, authzs: list[Authorization]) -> None:
        for authz in authzs:
            if authz.status == STATUS_VALID:
                logger.info("skipping deactivation of valid authorization: %s", authz.location)
                continue
            try:
                self.core.authorizations.deactivate(authz.location)
            except Exception as exc:
                logger.warning("unable to deactivate authorization %s: %s", authz.location, exc)

    # ── Finalize and fetch ────────────────────────────────────────────────

    def _get_for_order(
        self,
        domains: list[str],
        order: Order,
        bundle: bool,
        private_key: PrivateKey,
        must_staple: bool,
    ) -> Resource:
        common_name = domains[0]
        # identifiers may come back in any order
        sans = [common_name] + [i.value for i in order.identifiers if i.value != common_name]

        csr = crypto.create_csr(private_key, common_name, sans, must_staple)
        return self._get_for_csr(domains, order, bundle, csr, crypto.private_key_to_pem(private_key))

    def _get_for_csr(
        self,
        domains: list[str],
        order: Order,
        bundle: bool,
        csr_der: bytes,
        private_key_pem: Optional[bytes],
    ) -> Resource:
        finalized = self.core.orders.update_for_csr(order.finalize, csr_der)

        resource = Resource(
            domain=domains[0],
            cert_url=finalized.certificate or "",
            private_key=private_key_pem,
        )

        if finalized.status == STATUS_VALID and self._check_response(finalized, resource, bundle):
            return resource

        order_url = finalized.location or order.location
        deadline = self.clock() + self.options.timeout
        while True:
            if self.clock() >= deadline:
                raise PollingTimeoutError(
                    f"[{resource.domain}] certificate polling timed out after {self.options.timeout:g}s"
                )
            self.sleep(self.options.poll_interval)

            current = self.core.orders.get(order_url)
            if self._check_response(current, resource, bundle):
                return resource

    def _check_response(self, order: Order, resource: Resource, bundle: bool) -> bool:
        """Load the certificate into *resource* once *order* is valid."""
        if order.status == STATUS_INVALID:
            raise OrderInvalidError("order has invalid state: invalid", order.error)
        if order.status != STATUS_VALID:
            return False
        if not order.certificate:
            # valid but no certificate URL yet; keep polling
            return False

        cert, issuer = self.core.certificates.get(order.certificate, bundle)
        resource.certificate = cert
        resource.issuer_certificate = issuer
        resource.cert_url = order.certificate
        resource.cert_stable_url = order.certificate

        logger.info("[%s] server responded with a certificate", resource.domain)
        return True


# ─── Helpers ──────────────────────────────────────────────────────────────────


def sanitize_domains(domains: list[str]) -> list[str]:
    """
    IDNA-encode every domain the way it must appear in a certificate.

    Wildcard prefixes and IP addresses pass through; names that cannot be
    encoded are dropped with an info log.
    """
    result = []
    for domain in domains:
        try:
            result.append(to_idna(domain))
        except idna.IDNAError as exc:
            logger.info("skip domain %r: unable to sanitize (punycode): %s", domain, exc)
    return result


def to_idna(domain: str) -> str:
    try:
        ipaddress.ip_address(domain)
        return domain
    except ValueError:
        pass

    prefix = ""
    if domain.startswith("*."):
        prefix, domain = "*.", domain[2:]
    return prefix + idna.encode(domain, uts46=True).decode("ascii")


def _fail_all(authzs: list[Authorization], domains: list[str], exc: Exception) -> ObtainError:
    names = [a.identifier.value for a in authzs] or domains
    return ObtainError({name: exc for name in names})


def _is_ca(cert: x509.Certificate) -> bool:
    try:
        return cert.extensions.get_extension_for_class(x509.BasicConstraints).value.ca
    except x509.ExtensionNotFound:
        return False


def _aia_urls(cert: x509.Certificate, method: x509.ObjectIdentifier) -> list[str]:
    try:
        aia = cert.extensions.get_extension_for_class(x509.AuthorityInformationAccess).value
    except x509.ExtensionNotFound:
        return []
    return [
        desc.access_location.value
        for desc in aia
        if desc.access_method == method and isinstance(desc.access_location, x509.UniformResourceIdentifier)
    ]
