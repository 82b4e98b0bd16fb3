"""Delegation snapshot helpers built on dnspython."""

from __future__ import annotations

import logging
from typing import Callable, Iterable

import dns.exception
import dns.flags
import dns.message
import dns.name
import dns.query
import dns.rcode
import dns.rdatatype
import dns.rrset

from .models import DelegationRecordSet, Endpoint, Record, ResolutionError, fqdn

LOG = logging.getLogger("delegsync")

QueryFn = Callable[[dns.message.Message, Endpoint, float], dns.message.Message]


def udp_query(message: dns.message.Message, server: Endpoint, timeout: float) -> dns.message.Message:
    """Send a query over UDP, retrying over TCP when the answer is truncated."""
    if not server.is_address:
        raise ValueError(f"{server.host} is not an IP address")
    response, _ = dns.query.udp_with_fallback(message, server.host, timeout=timeout, port=server.port)
    return response


def _records(section: Iterable[dns.rrset.RRset], qname: str, rdtype: dns.rdatatype.RdataType) -> list[Record]:
    """Return the records of one owner/type found in a message section."""
    name = dns.name.from_text(qname)
    rtype = dns.rdatatype.to_text(rdtype)
    return [
        Record(name=qname, type=rtype, ttl=rrset.ttl, value=rdata.to_text())
        for rrset in section
        if rrset.name == name and rrset.rdtype == rdtype
        for rdata in rrset
    ]


def _ask(
    zone: str,
    qname: str,
    rdtype: dns.rdatatype.RdataType,
    server: Endpoint,
    timeout: float,
    query: QueryFn,
) -> dns.message.Message:
    """Send a non-recursive query and insist on a NOERROR response."""
    message = dns.message.make_query(qname, rdtype)
    message.flags &= ~dns.flags.RD
    rtype = dns.rdatatype.to_text(rdtype)
    LOG.debug("Querying %s for %s %s", server, qname, rtype)
    try:
        response = query(message, server, timeout)
    except (dns.exception.DNSException, OSError, ValueError) as exc:
        raise ResolutionError(f"Zone {zone}: {qname} {rtype} query to {server} failed: {exc}") from exc
    rcode = response.rcode()
    if rcode != dns.rcode.NOERROR:
        raise ResolutionError(
            f"Zone {zone}: {qname} {rtype} query to {server} returned {dns.rcode.to_text(rcode)}"
        )
    return response


def _collect_glue(snapshot: DelegationRecordSet, server: Endpoint, timeout: float, query: QueryFn) -> None:
    """Add A and AAAA glue for every in-bailiwick nameserver."""
    for name in snapshot.in_bailiwick_ns():
        for rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA):
            response = _ask(snapshot.zone, name, rdtype, server, timeout, query)
            for section in (response.answer, response.authority, response.additional):
                found = _records(section, name, rdtype)
                if found:
                    for record in found:
                        snapshot.add(record)
                    break


def read_child_delegation(
    zone: str,
    server: Endpoint | str,
    timeout: float = 5.0,
    query: QueryFn = udp_query,
) -> DelegationRecordSet:
    """Return the delegation data the child primary serves authoritatively."""
    zone = fqdn(zone)
    server = Endpoint.parse(server)
    response = _ask(zone, zone, dns.rdatatype.NS, server, timeout, query)
    if not response.flags & dns.flags.AA:
        raise ResolutionError(f"Zone {zone}: child server {server} did not answer authoritatively")
    ns = _records(response.answer, zone, dns.rdatatype.NS)
    if not ns:
        raise ResolutionError(f"Zone {zone}: child server {server} returned no NS RRset")
    snapshot = DelegationRecordSet(zone=zone, ns=ns)
    _collect_glue(snapshot, server, timeout, query)
    LOG.info("Child %s: %d NS, %d A, %d AAAA", zone, len(snapshot.ns), len(snapshot.a_glue), len(snapshot.aaaa_glue))
    return snapshot


def read_parent_delegation(
    zone: str,
    server: Endpoint | str,
    timeout: float = 5.0,
    query: QueryFn = udp_query,
) -> DelegationRecordSet:
    """Return the delegation data the parent primary publishes for the zone."""
    zone = fqdn(zone)
    server = Endpoint.parse(server)
    response = _ask(zone, zone, dns.rdatatype.NS, server, timeout, query)
    ns = _records(response.answer, zone, dns.rdatatype.NS) or _records(response.authority, zone, dns.rdatatype.NS)
    if not ns:
        raise ResolutionError(f"Zone {zone}: parent server {server} returned no delegation")
    snapshot = DelegationRecordSet(zone=zone, ns=ns)
    _collect_glue(snapshot, server, timeout, query)
    LOG.info("Parent %s: %d NS, %d A, %d AAAA", zone, len(snapshot.ns), len(snapshot.a_glue), len(snapshot.aaaa_glue))
    return snapshot


def read_snapshots(
    zone: str,
    child_server: Endpoint | str,
    parent_server: Endpoint | str,
    timeout: float = 5.0,
    query: QueryFn = udp_query,
) -> tuple[DelegationRecordSet, DelegationRecordSet]:
    """Return the (child, parent) delegation snapshots for a zone."""
    child = read_child_delegation(zone, child_server, timeout, query)
    parent = read_parent_delegation(zone, parent_server, timeout, query)
    return child, parent
