"""Shared fixtures: scripted DNS servers and a network-free configuration."""

import struct

import dns.edns
import dns.flags
import dns.message
import dns.name
import dns.rcode
import dns.rdata
import dns.rdataclass
import dns.rdatatype
import pytest

from delegsync.config import PACKAGE_TEMPLATES, AppConfig
from delegsync.keystore import KeyStore
from delegsync.models import Endpoint

CHILD = "192.0.2.53"
PARENT = "198.51.100.53"


def add_rrs(message, section, lines):
    """Add 'owner ttl IN TYPE rdata' lines to a message section."""
    for line in lines:
        owner, ttl, rdclass, rdtype, rdata = line.split(None, 4)
        rd = dns.rdata.from_text(rdclass, rdtype, rdata)
        rrset = message.find_rrset(
            section,
            dns.name.from_text(owner),
            dns.rdataclass.from_text(rdclass),
            dns.rdatatype.from_text(rdtype),
            create=True,
        )
        rrset.add(rd, int(ttl))


class FakeDNS:
    """Answers queries from a table keyed by (server, qname, type)."""

    def __init__(self):
        self.answers = {}
        self.calls = []

    def add(self, server, qname, rdtype, answer=(), authority=(), additional=(), rcode="NOERROR", aa=True):
        self.answers[(server, qname.lower(), rdtype.upper())] = {
            "answer": answer,
            "authority": authority,
            "additional": additional,
            "rcode": rcode,
            "aa": aa,
        }

    def queried(self, rdtype):
        return [call for call in self.calls if call[2] == rdtype]

    def __call__(self, message, server, timeout):
        question = message.question[0]
        qname = question.name.to_text().lower()
        rdtype = dns.rdatatype.to_text(question.rdtype)
        self.calls.append((server.host, qname, rdtype))
        entry = self.answers.get((server.host, qname, rdtype), {})
        response = dns.message.make_response(message)
        if entry.get("aa", True):
            response.flags |= dns.flags.AA
        response.set_rcode(dns.rcode.from_text(entry.get("rcode", "NOERROR")))
        add_rrs(response, response.answer, entry.get("answer", ()))
        add_rrs(response, response.authority, entry.get("authority", ()))
        add_rrs(response, response.additional, entry.get("additional", ()))
        return response


class FakeExchange:
    """Plays back per-host outcomes: an rcode name, (rcode, EDE) or an exception."""

    def __init__(self, outcomes=None):
        self.outcomes = outcomes or {}
        self.calls = []

    def __call__(self, wire, endpoint, timeout):
        self.calls.append((endpoint, wire))
        outcome = self.outcomes.get(endpoint.host, "NOERROR")
        if isinstance(outcome, Exception):
            raise outcome
        ede = None
        if isinstance(outcome, tuple):
            outcome, ede = outcome
        (query_id,) = struct.unpack_from("!H", wire)
        response = dns.message.Message(id=query_id)
        response.flags = dns.flags.QR
        response.set_rcode(dns.rcode.from_text(outcome))
        if ede is not None:
            response.use_edns(0, options=[dns.edns.EDEOption(*ede)])
        return response


@pytest.fixture
def fake_dns():
    return FakeDNS()


@pytest.fixture
def config(tmp_path):
    return AppConfig(
        child_primary=Endpoint(CHILD),
        parent_primary=Endpoint(PARENT),
        dsync_resolver=Endpoint(PARENT),
        parent_zone=None,
        keystore_path=tmp_path / "keystore.yaml",
        trusted_keys_file=None,
        sig0_algorithm="ECDSAP256SHA256",
        sig0_lifetime=300,
        dns_timeout=1.0,
        sync_schemes=("update", "notify"),
        templates_dir=PACKAGE_TEMPLATES,
        log_level="DEBUG",
    )


@pytest.fixture
def store(tmp_path):
    return KeyStore(tmp_path / "keystore.yaml")
