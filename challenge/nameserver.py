"""
DNS lookups for the DNS-01 propagation pre-check, built on dnspython.

  find_zone_by_fqdn      — zone apex via SOA, walking up the labels
  find_primary_ns        — SOA MNAME of that zone
  lookup_nameservers     — authoritative NS set of the zone
  lookup_cname           — follow the CNAME chain of a record
  check_authoritative    — query every authoritative server directly for TXT

SOA answers are cached per FQDN until the SOA refresh interval elapses; the
cache is module-wide and guarded by a lock.
"""
from __future__ import annotations

import ipaddress
import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import Iterable, Optional

import dns.exception
import dns.flags
import dns.message
import dns.query
import dns.rcode
import dns.rdatatype
import dns.resolver

from acmecore.errors import AcmeError

logger = logging.getLogger(__name__)

DEFAULT_RESOLV_CONF = "/etc/resolv.conf"
DEFAULT_NAMESERVERS = ["8.8.8.8:53", "8.8.4.4:53"]
DEFAULT_DNS_TIMEOUT = 10.0
_MAX_CNAME_HOPS = 50


class DNSLookupError(AcmeError):
    """A DNS query could not be answered usefully."""


# ─── SOA cache ────────────────────────────────────────────────────────────────


@dataclass
class _SoaEntry:
    zone: str
    primary_ns: str
    expires: float

    def expired(self) -> bool:
        return time.monotonic() > self.expires


_soa_cache: dict[str, _SoaEntry] = {}
_soa_lock = threading.Lock()


def clear_fqdn_cache() -> None:
    with _soa_lock:
        _soa_cache.clear()


# ─── Nameserver lists ─────────────────────────────────────────────────────────


def parse_nameservers(servers: Iterable[str]) -> list[str]:
    """Normalise nameserver addresses to host:port (port 53 when missing)."""
    result = []
    for server in servers:
        server = server.strip()
        if not server:
            continue
        host, port = split_host_port(server)
        if ":" in host:
            result.append(f"[{host}]:{port}")
        else:
            result.append(f"{host}:{port}")
    return result


def split_host_port(server: str) -> tuple[str, int]:
    if server.startswith("["):
        host, _, rest = server[1:].partition("]")
        return host, int(rest.lstrip(":") or 53)
    try:
        ipaddress.IPv6Address(server)
    except ValueError:
        pass
    else:
        return server, 53
    host, sep, port = server.rpartition(":")
    if not sep:
        return server, 53
    return host, int(port)


def system_nameservers(path: str = DEFAULT_RESOLV_CONF, defaults: Optional[list[str]] = None) -> list[str]:
    """Nameservers from resolv.conf, or *defaults* when it cannot be read."""
    defaults = DEFAULT_NAMESERVERS if defaults is None else defaults
    try:
        resolver = dns.resolver.Resolver(filename=path, configure=True)
    except (dns.exception.DNSException, OSError):
        return list(defaults)
    if not resolver.nameservers:
        return list(defaults)
    # dnspython >= 2.4 hands back Nameserver objects rather than addresses
    return parse_nameservers(str(getattr(ns, "address", ns)) for ns in resolver.nameservers)


def to_fqdn(name: str) -> str:
    return name if name.endswith(".") else name + "."


def _suffixes(fqdn: str) -> list[str]:
    labels = fqdn.rstrip(".").split(".")
    return [".".join(labels[i:]) + "." for i in range(len(labels))]


# ─── Client ───────────────────────────────────────────────────────────────────


class NameserverClient:
    """Queries a fixed list of recursive nameservers (host:port strings)."""

    def __init__(
        self,
        recursive_nameservers: Optional[Iterable[str]] = None,
        timeout: float = DEFAULT_DNS_TIMEOUT,
        tcp_only: bool = False,
    ) -> None:
        if recursive_nameservers:
            self.recursive_nameservers = parse_nameservers(recursive_nameservers)
        else:
            self.recursive_nameservers = system_nameservers()
        self.timeout = timeout
        self.tcp_only = tcp_only

    # ── Zone discovery ────────────────────────────────────────────────────

    def find_zone_by_fqdn(self, fqdn: str) -> str:
        return self._lookup_soa(to_fqdn(fqdn)).zone

    def find_primary_ns(self, fqdn: str) -> str:
        return self._lookup_soa(to_fqdn(fqdn)).primary_ns

    def lookup_nameservers(self, fqdn: str) -> list[str]:
        """Authoritative nameservers of the zone containing *fqdn*."""
        try:
            zone = self.find_zone_by_fqdn(fqdn)
        except DNSLookupError as exc:
            raise DNSLookupError(f"[fqdn={fqdn}] could not determine the zone: {exc}") from exc

        try:
            resp = self.query(zone, dns.rdatatype.NS, self.recursive_nameservers, recursive=True)
        except DNSLookupError as exc:
            raise DNSLookupError(f"[zone={zone}] NS call failed: {exc}") from exc

        servers = [
            rdata.target.to_text().lower()
            for rrset in resp.answer
            if rrset.rdtype == dns.rdatatype.NS
            for rdata in rrset
        ]
        if not servers:
            raise DNSLookupError(f"[zone={zone}] could not determine authoritative nameservers")
        return servers

    def lookup_cname(self, fqdn: str) -> str:
        """Follow CNAMEs from *fqdn*; return the last name in the chain."""
        fqdn = to_fqdn(fqdn)
        for _ in range(_MAX_CNAME_HOPS):
            try:
                resp = self.query(fqdn, dns.rdatatype.CNAME, self.recursive_nameservers, recursive=True)
            except DNSLookupError as exc:
                logger.debug("CNAME lookup for %s failed: %s", fqdn, exc)
                return fqdn
            target = _cname_target(resp, fqdn)
            if not target:
                return fqdn
            logger.info("found CNAME entry for %r: %r", fqdn, target)
            fqdn = target
        return fqdn

    # ── Propagation ───────────────────────────────────────────────────────

    def check_propagation(self, fqdn: str, value: str) -> bool:
        """
        True when every authoritative server of *fqdn*'s zone answers the
        expected TXT *value*.  Raises DNSLookupError naming the first server
        that does not.
        """
        fqdn = to_fqdn(fqdn)
        try:
            resp = self.query(fqdn, dns.rdatatype.TXT, self.recursive_nameservers, recursive=True)
        except DNSLookupError as exc:
            raise DNSLookupError(f"initial recursive nameserver: {exc}") from exc
        if resp.rcode() == dns.rcode.NOERROR:
            fqdn = _cname_target(resp, fqdn) or fqdn

        return self.check_authoritative(fqdn, value, self.lookup_nameservers(fqdn))

    def check_authoritative(self, fqdn: str, value: str, nameservers: list[str]) -> bool:
        for ns in nameservers:
            resp = self.query(fqdn, dns.rdatatype.TXT, [f"{ns.rstrip('.')}:53"], recursive=False)

            rcode = resp.rcode()
            if rcode not in (dns.rcode.NOERROR, dns.rcode.NXDOMAIN):
                raise DNSLookupError(f"NS {ns} returned {dns.rcode.to_text(rcode)} for {fqdn}")

            records = txt_values(resp)
            if value not in records:
                raise DNSLookupError(
                    f"NS {ns} did not return the expected TXT record "
                    f"[fqdn: {fqdn}, value: {value}]: {' ,'.join(records)}"
                )
        return True

    # ── Queries ───────────────────────────────────────────────────────────

    def query(
        self,
        name: str,
        rdtype: dns.rdatatype.RdataType,
        nameservers: list[str],
        recursive: bool = True,
    ) -> dns.message.Message:
        """Ask each nameserver in turn; return the first answer with records."""
        request = dns.message.make_query(name, rdtype, use_edns=0, payload=4096)
        if not recursive:
            request.flags &= ~dns.flags.RD

        resp: Optional[dns.message.Message] = None
        errors: list[str] = []
        for ns in nameservers:
            try:
                resp = self._send(request, ns)
            except (dns.exception.DNSException, OSError) as exc:
                errors.append(f"DNS call to {ns}: {exc}")
                continue
            if resp.answer:
                return resp

        if resp is None:
            raise DNSLookupError("; ".join(errors) or f"no nameservers to query for {name}")
        return resp

    def _send(self, request: dns.message.Message, ns: str) -> dns.message.Message:
        host, port = split_host_port(ns)
        where = _address(host, port)
        if self.tcp_only:
            return dns.query.tcp(request, where, timeout=self.timeout, port=port)

        resp = dns.query.udp(request, where, timeout=self.timeout, port=port)
        if resp.flags & dns.flags.TC:
            resp = dns.query.tcp(request, where, timeout=self.timeout, port=port)
        return resp

    def _lookup_soa(self, fqdn: str) -> _SoaEntry:
        with _soa_lock:
            entry = _soa_cache.get(fqdn)
        if entry is not None and not entry.expired():
            return entry

        # The queries happen outside the lock.
        entry = self._fetch_soa(fqdn)
        with _soa_lock:
            _soa_cache[fqdn] = entry
        return entry

    def _fetch_soa(self, fqdn: str) -> _SoaEntry:
        last_error = ""
        for domain in _suffixes(fqdn):
            try:
                resp = self.query(domain, dns.rdatatype.SOA, self.recursive_nameservers, recursive=True)
            except DNSLookupError as exc:
                last_error = str(exc)
                continue

            rcode = resp.rcode()
            if rcode == dns.rcode.NXDOMAIN:
                continue
            if rcode != dns.rcode.NOERROR:
                raise DNSLookupError(
                    f"unexpected response code '{dns.rcode.to_text(rcode)}' for {domain}"
                )
            # a CNAME cannot sit at a zone apex
            if any(rrset.rdtype == dns.rdatatype.CNAME for rrset in resp.answer):
                continue
            for rrset in resp.answer:
                if rrset.rdtype == dns.rdatatype.SOA:
                    soa = rrset[0]
                    return _SoaEntry(
                        zone=rrset.name.to_text(),
                        primary_ns=soa.mname.to_text(),
                        expires=time.monotonic() + soa.refresh,
                    )

        msg = f"could not find the start of authority for {fqdn}"
        if last_error:
            msg += f": {last_error}"
        raise DNSLookupError(msg)


def txt_values(resp: dns.message.Message) -> list[str]:
    return [
        b"".join(rdata.strings).decode("utf-8")
        for rrset in resp.answer
        if rrset.rdtype == dns.rdatatype.TXT
        for rdata in rrset
    ]


def _cname_target(resp: dns.message.Message, fqdn: str) -> str:
    for rrset in resp.answer:
        if rrset.rdtype == dns.rdatatype.CNAME and rrset.name.to_text().lower() == fqdn.lower():
            return rrset[0].target.to_text()
    return ""


def _address(host: str, port: int) -> str:
    try:
        ipaddress.ip_address(host)
        return host
    except ValueError:
        return socket.getaddrinfo(host, port, type=socket.SOCK_DGRAM)[0][4][0]


_default_client: Optional[NameserverClient] = None
_default_lock = threading.Lock()


def default_client() -> NameserverClient:
    global _default_client
    with _default_lock:
        if _default_client is None:
            _default_client = NameserverClient()
        return _default_client
