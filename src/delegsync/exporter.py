"""Utilities to serialise diffs and key listings into declarative formats."""

from __future__ import annotations

import json
from typing import Any, Iterable

import yaml

from .models import DelegationDiff, KeyRecord, Record

MASK = "***"


def _record_to_dict(record: Record) -> dict[str, Any]:
    """Convert a record into a serialisable dictionary."""
    return {
        "name": record.canonical_name(),
        "type": record.canonical_type(),
        "ttl": record.ttl,
        "value": record.canonical_value(),
    }


def diff_to_dict(zone: str, diff: DelegationDiff) -> dict[str, Any]:
    """Create a dictionary describing a delegation diff."""
    return {
        "zone": zone,
        "in_sync": not diff.has_changes(),
        "add": [_record_to_dict(record) for record in diff.adds()],
        "remove": [_record_to_dict(record) for record in diff.removes()],
    }


def key_to_dict(key: KeyRecord) -> dict[str, Any]:
    """Convert a key into a dictionary with the private half masked."""
    return {
        "owner": key.owner,
        "keyid": key.keyid,
        "algorithm": key.algorithm,
        "type": key.keytype,
        "state": key.state.value,
        "validated": key.validated,
        "trusted": key.trusted,
        "creator": key.creator,
        "public_key": key.public_key,
        "private_key": MASK if key.owned else None,
    }


def keys_to_dict(keys: Iterable[KeyRecord]) -> dict[str, Any]:
    return {"keys": [key_to_dict(key) for key in keys]}


def to_yaml(data: dict[str, Any]) -> str:
    """Return YAML representation of exported data."""
    return yaml.safe_dump(data, sort_keys=False)


def to_json(data: dict[str, Any]) -> str:
    """Return JSON representation of exported data."""
    return json.dumps(data, indent=2)


def dump(data: dict[str, Any], fmt: str = "yaml") -> str:
    if fmt == "json":
        return to_json(data)
    return to_yaml(data)
