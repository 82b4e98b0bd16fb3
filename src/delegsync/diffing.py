"""Diff utilities for delegation data."""

from __future__ import annotations

from .models import DelegationDiff, DelegationRecordSet, Record


def _set_difference(left: dict[tuple[str, str, str], Record], right: dict[tuple[str, str, str], Record]) -> list[Record]:
    """Return records keyed in left but not in right, sorted by identity."""
    return [left[key] for key in sorted(set(left) - set(right))]


def diff_delegations(child: DelegationRecordSet, parent: DelegationRecordSet) -> DelegationDiff:
    """Produce the changes that turn the parent's delegation into the child's."""
    diff = DelegationDiff()
    for rtype, adds, removes in (
        ("NS", diff.ns_adds, diff.ns_removes),
        ("A", diff.a_adds, diff.a_removes),
        ("AAAA", diff.aaaa_adds, diff.aaaa_removes),
    ):
        child_map = child.index(rtype)
        parent_map = parent.index(rtype)
        adds.extend(_set_difference(child_map, parent_map))
        removes.extend(_set_difference(parent_map, child_map))
    return diff
