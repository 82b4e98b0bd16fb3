"""Render delegation status reports via Jinja2 templates."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from .models import DelegationDiff, DelegationRecordSet, Record


def _record_to_template_data(record: Record) -> dict[str, str | int]:
    """Convert a record into template-friendly data."""
    return {
        "owner": record.canonical_name(),
        "ttl": record.ttl,
        "type": record.canonical_type(),
        "value": record.canonical_value(),
    }


def _records(records: list[Record]) -> list[dict[str, str | int]]:
    return [_record_to_template_data(record) for record in records]


def render_status(
    templates_dir: Path,
    child: DelegationRecordSet,
    parent: DelegationRecordSet,
    diff: DelegationDiff,
    target: Any | None = None,
    template_name: str = "status.j2",
) -> str:
    """Render the delegation status report for one zone."""
    env = Environment(
        loader=FileSystemLoader(str(templates_dir)),
        undefined=StrictUndefined,
        trim_blocks=True,
        lstrip_blocks=True,
    )
    template = env.get_template(template_name)
    text = template.render(
        zone=child.zone,
        in_sync=not diff.has_changes(),
        child=_records(list(child.iter_records())),
        parent=_records(list(parent.iter_records())),
        adds=_records(diff.adds()),
        removes=_records(diff.removes()),
        target=target,
    )
    return text.strip() + "\n"
