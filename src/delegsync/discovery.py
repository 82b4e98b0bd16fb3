"""DSYNC discovery of the endpoints a parent accepts updates and notifies on."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Sequence

import dns.exception
import dns.message
import dns.rcode
import dns.rdatatype
import dns.resolver
from dns.rdtypes.ANY.DSYNC import DSYNC

from .models import (
    DiscoveryQueryError,
    DsyncTarget,
    Endpoint,
    NoTargetError,
    fqdn,
    is_subdomain,
)
from .snapshot import QueryFn, udp_query

LOG = logging.getLogger("delegsync")

SCHEME_NOTIFY = 1
SCHEME_UPDATE = 2
SCHEMES = {"notify": SCHEME_NOTIFY, "update": SCHEME_UPDATE}

AddressResolver = Callable[[str, float], list[str]]


@dataclass
class DsyncResult:
    """DSYNC records found for a child and the parent they were found in."""

    qname: str
    records: list[DSYNC] = field(default_factory=list)
    parent: str = ""


def resolve_addresses(name: str, timeout: float) -> list[str]:
    """Return the IPv4 then IPv6 addresses of a host through the system resolver."""
    resolver = dns.resolver.Resolver()
    addresses: list[str] = []
    for rdtype in ("A", "AAAA"):
        try:
            answer = resolver.resolve(name, rdtype, lifetime=timeout)
        except (dns.resolver.NoAnswer, dns.resolver.NXDOMAIN):
            continue
        addresses.extend(rdata.to_text() for rdata in answer)
    return addresses


def scheme_code(scheme: str | int) -> int:
    """Return the numeric DSYNC scheme for a name such as 'update'."""
    if isinstance(scheme, int):
        return scheme
    try:
        return SCHEMES[scheme.lower()]
    except KeyError as exc:
        raise ValueError(f"unknown DSYNC scheme {scheme!r}") from exc


def _under(prefix: str, zone: str) -> str:
    return f"{prefix}." if zone == "." else f"{prefix}.{zone}"


def _dsync_query(qname: str, server: Endpoint, timeout: float, query: QueryFn) -> tuple[list[DSYNC], str]:
    """Query one DSYNC owner; return the records or the parent named by a negative answer."""
    LOG.debug("Looking up %s DSYNC at %s", qname, server)
    message = dns.message.make_query(qname, dns.rdatatype.DSYNC)
    try:
        response = query(message, server, timeout)
    except (dns.exception.DNSException, OSError, ValueError) as exc:
        raise DiscoveryQueryError(f"DSYNC query for {qname} at {server} failed: {exc}") from exc
    rcode = response.rcode()
    if rcode not in (dns.rcode.NOERROR, dns.rcode.NXDOMAIN):
        raise DiscoveryQueryError(f"DSYNC query for {qname} at {server} returned {dns.rcode.to_text(rcode)}")
    records = [rdata for rrset in response.answer if rrset.rdtype == dns.rdatatype.DSYNC for rdata in rrset]
    if records:
        return records, ""
    for rrset in response.authority:
        if rrset.rdtype == dns.rdatatype.SOA:
            return [], rrset.name.to_text().lower()
    return [], ""


def dsync_discovery(
    child_zone: str,
    server: Endpoint | str,
    timeout: float = 5.0,
    query: QueryFn = udp_query,
) -> DsyncResult:
    """Find the DSYNC RRset that applies to a child zone.

    Looks first under the guessed parent (one label up), then under the parent
    revealed by the SOA of a negative answer, and finally at the parent apex.
    """
    child = fqdn(child_zone)
    server = Endpoint.parse(server)
    labels = child.rstrip(".").split(".")
    parent_guess = fqdn(".".join(labels[1:]))

    qname = _under(f"{labels[0]}._dsync", parent_guess)
    records, parent = _dsync_query(qname, server, timeout, query)
    if records:
        LOG.info("Found %d DSYNC records at %s", len(records), qname)
        return DsyncResult(qname=qname, records=records, parent=parent_guess)

    if parent and parent != parent_guess:
        if child == parent or not is_subdomain(child, parent):
            raise DiscoveryQueryError(f"Misidentified parent {parent} for {child}")
        prefix = child[: -len(parent) - 1] if parent != "." else child.rstrip(".")
        qname = _under(f"{prefix}._dsync", parent)
        records, _ = _dsync_query(qname, server, timeout, query)
        if records:
            LOG.info("Found %d DSYNC records at %s", len(records), qname)
            return DsyncResult(qname=qname, records=records, parent=parent)

    parent = parent or parent_guess
    qname = _under("_dsync", parent)
    records, _ = _dsync_query(qname, server, timeout, query)
    LOG.info("Found %d DSYNC records at %s", len(records), qname)
    return DsyncResult(qname=qname, records=records, parent=parent)


def _resolve_target(zone: str, match: DSYNC, result: DsyncResult, timeout: float, resolve: AddressResolver) -> DsyncTarget:
    """Turn the chosen DSYNC record into a target with resolved addresses."""
    name = match.target.to_text()
    try:
        addresses = resolve(name, timeout)
    except (dns.exception.DNSException, OSError) as exc:
        raise DiscoveryQueryError(f"Zone {zone}: cannot resolve DSYNC target {name}: {exc}") from exc
    if not addresses:
        raise DiscoveryQueryError(f"Zone {zone}: DSYNC target {name} has no addresses")
    schemes = {
        (dns.rdatatype.to_text(record.rrtype), int(record.scheme))
        for record in result.records
        if record.target == match.target
    }
    LOG.info("Zone %s: DSYNC target %s port %d addresses %s", zone, name, match.port, addresses)
    return DsyncTarget(
        name=name,
        port=match.port,
        addresses=addresses,
        schemes=schemes,
        qname=result.qname,
        parent=result.parent,
    )


def lookup_target(
    zone: str,
    hint_server: Endpoint | str,
    trigger_type: str | int,
    scheme: str | int,
    timeout: float = 5.0,
    query: QueryFn = udp_query,
    resolve: AddressResolver = resolve_addresses,
) -> DsyncTarget:
    """Return the first DSYNC target advertising the trigger type and scheme."""
    trigger = dns.rdatatype.from_text(trigger_type) if isinstance(trigger_type, str) else trigger_type
    code = scheme_code(scheme)
    result = dsync_discovery(zone, hint_server, timeout, query)
    for record in result.records:
        if record.rrtype == trigger and record.scheme == code:
            return _resolve_target(fqdn(zone), record, result, timeout, resolve)
    raise NoTargetError(
        f"No DSYNC type {dns.rdatatype.to_text(trigger)} scheme {code} target found for zone {fqdn(zone)}"
        f" (looked up {result.qname})"
    )


def best_sync_scheme(
    zone: str,
    hint_server: Endpoint | str,
    preferences: Sequence[str],
    timeout: float = 5.0,
    query: QueryFn = udp_query,
    resolve: AddressResolver = resolve_addresses,
) -> tuple[str, DsyncTarget]:
    """Pick the first preferred scheme the parent supports and resolve its target."""
    zone = fqdn(zone)
    result = dsync_discovery(zone, hint_server, timeout, query)
    if not result.records:
        raise NoTargetError(f"No DSYNC records for {zone} found in parent {result.parent}")
    for preference in preferences:
        code = scheme_code(preference)
        for record in result.records:
            if record.scheme != code:
                continue
            if code == SCHEME_NOTIFY and record.rrtype not in (dns.rdatatype.CSYNC, dns.rdatatype.ANY):
                continue
            return preference.lower(), _resolve_target(zone, record, result, timeout, resolve)
    raise NoTargetError(f"Parent {result.parent} supports none of the schemes {', '.join(preferences)} for {zone}")
