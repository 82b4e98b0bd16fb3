"""Builders for the DNS UPDATE messages sent to the parent."""

from __future__ import annotations

import logging
from typing import Iterable

import dns.flags
import dns.update

from .models import DelegationDiff, KeyRecord, fqdn, is_subdomain

LOG = logging.getLogger("delegsync")

EDNS_PAYLOAD = 1232
KEY_TTL = 3600


def _new_update(parent_zone: str) -> dns.update.UpdateMessage:
    update = dns.update.UpdateMessage(fqdn(parent_zone))
    update.use_edns(0, dns.flags.DO, EDNS_PAYLOAD)
    return update


def build_delegation_update(parent_zone: str, child_zone: str, diff: DelegationDiff) -> dns.update.UpdateMessage:
    """Return an UPDATE that applies a delegation diff in the parent zone.

    Removals come first. A removed NS whose target lies inside the child zone
    also takes its A and AAAA RRsets with it.
    """
    child_zone = fqdn(child_zone)
    update = _new_update(parent_zone)

    orphaned = []
    for record in diff.ns_removes:
        target = record.canonical_value()
        if is_subdomain(target, child_zone) and target not in orphaned:
            orphaned.append(target)

    for record in diff.removes():
        if record.canonical_type() != "NS" and record.canonical_name() in orphaned:
            continue
        update.delete(record.canonical_name(), record.canonical_type(), record.canonical_value())
    for name in orphaned:
        update.delete(name, "A")
        update.delete(name, "AAAA")
    for record in diff.adds():
        update.add(record.canonical_name(), record.ttl, record.canonical_type(), record.canonical_value())

    LOG.debug(
        "Built delegation update for %s in %s: %d adds, %d removes, %d orphaned glue owners",
        child_zone,
        fqdn(parent_zone),
        len(diff.adds()),
        len(diff.removes()),
        len(orphaned),
    )
    return update


def build_key_update(
    parent_zone: str,
    child_zone: str,
    adds: Iterable[KeyRecord] = (),
    removes: Iterable[KeyRecord] = (),
    ttl: int = KEY_TTL,
) -> dns.update.UpdateMessage:
    """Return an UPDATE that publishes and withdraws KEY records for a child."""
    child_zone = fqdn(child_zone)
    update = _new_update(parent_zone)
    for key in removes:
        update.delete(child_zone, key.keytype, key.public_key)
    for key in adds:
        update.add(child_zone, ttl, key.keytype, key.public_key)
    return update
