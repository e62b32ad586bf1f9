"""
Unit tests for challenge/nameserver.py.

Wire traffic is replaced by an in-memory zone: `FakeClient._send` answers
each dnspython query from a dict instead of the network.
"""
from __future__ import annotations

import threading

import dns.flags
import dns.message
import dns.rcode
import dns.rdatatype
import dns.rrset
import pytest

from challenge import nameserver
from challenge.nameserver import DNSLookupError, NameserverClient, parse_nameservers, to_fqdn

SOA = "ns1.example.com. hostmaster.example.com. 1 7200 3600 1209600 300"


class FakeClient(NameserverClient):
    """
    *records*: {(name, type): [rdata text, ...]} served by every server.
    *authoritative*: {ns host: {(name, type): [...]}} overrides per server.
    """

    def __init__(self, records, authoritative=None):
        super().__init__(["192.0.2.53:53"], timeout=1)
        self.records = records
        self.authoritative = authoritative or {}
        self.sent: list[tuple[str, str, str, bool]] = []

    def _send(self, request, ns):
        question = request.question[0]
        name = question.name.to_text()
        rdtype = dns.rdatatype.to_text(question.rdtype)
        self.sent.append((ns, name, rdtype, bool(request.flags & dns.flags.RD)))

        host = ns.rsplit(":", 1)[0]
        table = self.authoritative.get(host, self.records)
        resp = dns.message.make_response(request)

        cname = table.get((name, "CNAME"))
        if cname and rdtype != "CNAME":
            resp.answer.append(dns.rrset.from_text(name, 300, "IN", "CNAME", *cname))
            return resp

        values = table.get((name, rdtype))
        if values is None:
            if not any(key[0] == name for key in table):
                resp.set_rcode(dns.rcode.NXDOMAIN)
            return resp
        resp.answer.append(dns.rrset.from_text(name, 300, "IN", rdtype, *values))
        return resp


@pytest.fixture(autouse=True)
def _fresh_cache():
    nameserver.clear_fqdn_cache()
    yield
    nameserver.clear_fqdn_cache()


ZONE = {
    ("example.com.", "SOA"): [SOA],
    ("example.com.", "NS"): ["ns1.example.com.", "ns2.example.com."],
}


# ─── Address helpers ──────────────────────────────────────────────────────────

def test_parse_nameservers():
    assert parse_nameservers(["8.8.8.8", "1.1.1.1:5353", "2001:db8::1", "[2001:db8::2]:53", " "]) == [
        "8.8.8.8:53",
        "1.1.1.1:5353",
        "[2001:db8::1]:53",
        "[2001:db8::2]:53",
    ]


def test_to_fqdn():
    assert to_fqdn("example.com") == "example.com."
    assert to_fqdn("example.com.") == "example.com."


def test_system_nameservers_fallback(tmp_path):
    missing = tmp_path / "resolv.conf"
    assert nameserver.system_nameservers(str(missing), defaults=["9.9.9.9:53"]) == ["9.9.9.9:53"]


def test_system_nameservers_from_file(tmp_path):
    conf = tmp_path / "resolv.conf"
    conf.write_text("nameserver 192.0.2.1\nnameserver 2001:db8::53\n")
    assert nameserver.system_nameservers(str(conf)) == ["192.0.2.1:53", "[2001:db8::53]:53"]


# ─── Zone discovery ───────────────────────────────────────────────────────────

class TestZoneDiscovery:
    """SOA walk and the SOA cache."""

    def test_find_zone_walks_up(self):
        client = FakeClient(ZONE)
        assert client.find_zone_by_fqdn("_acme-challenge.www.example.com") == "example.com."
        assert client.find_primary_ns("_acme-challenge.www.example.com") == "ns1.example.com."

    def test_soa_is_cached(self):
        client = FakeClient(ZONE)
        client.find_zone_by_fqdn("www.example.com.")
        sent = len(client.sent)
        client.find_zone_by_fqdn("www.example.com.")
        assert len(client.sent) == sent

    def test_slow_lookup_does_not_block_others(self):
        started = threading.Event()
        release = threading.Event()

        class SlowClient(FakeClient):
            def _send(self, request, ns):
                started.set()
                release.wait(5)
                return super()._send(request, ns)

        slow = threading.Thread(target=SlowClient(ZONE).find_zone_by_fqdn, args=("www.example.com.",))
        slow.start()
        try:
            assert started.wait(5)
            done = threading.Event()
            other = FakeClient({("example.org.", "SOA"): [SOA]})
            threading.Thread(
                target=lambda: (other.find_zone_by_fqdn("www.example.org."), done.set()), daemon=True
            ).start()
            assert done.wait(2)
        finally:
            release.set()
            slow.join(5)

    def test_no_soa(self):
        client = FakeClient({})
        with pytest.raises(DNSLookupError, match="start of authority"):
            client.find_zone_by_fqdn("nothing.invalid.")

    def test_lookup_nameservers(self):
        client = FakeClient(ZONE)
        assert client.lookup_nameservers("www.example.com.") == ["ns1.example.com.", "ns2.example.com."]


def test_lookup_cname_follows_chain():
    client = FakeClient(
        {
            ("_acme-challenge.example.com.", "CNAME"): ["_acme-challenge.delegated.example.net."],
            ("_acme-challenge.delegated.example.net.", "CNAME"): ["final.example.org."],
        }
    )
    assert client.lookup_cname("_acme-challenge.example.com.") == "final.example.org."


def test_lookup_cname_without_alias():
    client = FakeClient(ZONE)
    assert client.lookup_cname("_acme-challenge.example.com") == "_acme-challenge.example.com."


# ─── Propagation ──────────────────────────────────────────────────────────────

class TestPropagation:
    """TXT checks against each authoritative server."""

    FQDN = "_acme-challenge.example.com."

    def _client(self, ns1_value: str, ns2_value: str) -> FakeClient:
        public = {**ZONE, (self.FQDN, "TXT"): ['"whatever"']}
        return FakeClient(
            public,
            authoritative={
                "ns1.example.com": {(self.FQDN, "TXT"): [f'"{ns1_value}"']},
                "ns2.example.com": {(self.FQDN, "TXT"): [f'"{ns2_value}"']},
            },
        )

    def test_propagated_everywhere(self):
        client = self._client("expected", "expected")
        assert client.check_propagation(self.FQDN, "expected") is True

        authoritative = [s for s in client.sent if s[0].startswith("ns")]
        assert {s[0] for s in authoritative} == {"ns1.example.com:53", "ns2.example.com:53"}
        # authoritative queries are non-recursive
        assert not any(s[3] for s in authoritative)

    def test_one_server_lagging(self):
        client = self._client("expected", "stale")
        with pytest.raises(DNSLookupError, match="ns2.example.com"):
            client.check_propagation(self.FQDN, "expected")

    def test_check_authoritative_directly(self):
        client = self._client("expected", "expected")
        assert client.check_authoritative(self.FQDN, "expected", ["ns1.example.com."])


def test_txt_values_joins_strings():
    resp = dns.message.make_response(dns.message.make_query("x.example.", "TXT"))
    resp.answer.append(dns.rrset.from_text("x.example.", 60, "IN", "TXT", '"part1" "part2"'))
    assert nameserver.txt_values(resp) == ["part1part2"]
