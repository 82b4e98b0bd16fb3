"""Load trusted third-party public keys from a templated YAML file."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from jinja2 import Environment, FileSystemLoader, StrictUndefined
from jinja2.exceptions import TemplateError
from pydantic import BaseModel, Field, field_validator

from .keystore import KeyStore, check_public_key, load_public_key, verify_public_key
from .models import ConfigError, DuplicateKeyError, KeyStoreError, fqdn

LOG = logging.getLogger("delegsync")


class TrustedKeySpec(BaseModel):
    """Schema for one trusted key entry."""

    owner: str
    key: str = Field(description="KEY rdata or a full KEY RR line")

    @field_validator("owner")
    @classmethod
    def _absolute_owner(cls, value: str) -> str:
        """Normalise the owner to a lower-case FQDN."""
        return fqdn(value)


class TrustedKeysSpec(BaseModel):
    """Schema for the YAML document."""

    keys: list[TrustedKeySpec] = Field(default_factory=list)


@dataclass
class TrustLoadResult:
    """Outcome of importing a trusted keys file."""

    trusted: list[tuple[str, int]] = field(default_factory=list)
    skipped: list[tuple[str, int]] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)


def _render_yaml(path: Path, extra_context: dict[str, Any] | None = None) -> str:
    """Render a YAML file through Jinja2."""
    env = Environment(
        loader=FileSystemLoader(str(path.parent)),
        undefined=StrictUndefined,
        autoescape=False,
        keep_trailing_newline=True,
    )
    template = env.get_template(path.name)
    context = {"env": os.environ}
    if extra_context:
        context.update(extra_context)
    return template.render(**context)


def load_trusted_keys_file(path: Path, template_vars: dict[str, Any] | None = None) -> TrustedKeysSpec:
    """Render, parse and validate a trusted keys file."""
    try:
        rendered = _render_yaml(path, template_vars)
    except (OSError, TemplateError) as exc:
        raise ConfigError(f"Failed to render trusted keys file {path}: {exc}") from exc
    try:
        data = yaml.safe_load(rendered) or {}
    except yaml.YAMLError as exc:  # noqa: BLE001
        raise ConfigError(f"Failed to parse YAML: {exc}") from exc

    try:
        return TrustedKeysSpec(**data)
    except Exception as exc:  # noqa: BLE001
        raise ConfigError(f"YAML validation error: {exc}") from exc


def import_trusted_keys(store: KeyStore, path: Path, template_vars: dict[str, Any] | None = None) -> TrustLoadResult:
    """Import, verify and trust every key listed in the file.

    Keys that fail verification are never stored. Keys already in the store
    are left as they are, so a key untrusted by hand stays untrusted.
    """
    loaded = load_trusted_keys_file(path, template_vars)
    result = TrustLoadResult()
    for entry in loaded.keys:
        try:
            material = load_public_key(entry.key, owner=entry.owner, creator="trust-file")
        except KeyStoreError as exc:
            LOG.warning("Skipping trusted key for %s: %s", entry.owner, exc)
            result.rejected.append(entry.owner)
            continue
        if not check_public_key(material):
            result.rejected.append(entry.owner)
            continue
        try:
            store.add(entry.owner, material, creator="trust-file")
        except DuplicateKeyError:
            LOG.debug("Trusted key %d for %s already stored, leaving it unchanged", material.keyid, entry.owner)
            result.skipped.append((entry.owner, material.keyid))
            continue
        if not verify_public_key(store, entry.owner, material.keyid):
            store.delete(entry.owner, material.keyid)
            result.rejected.append(entry.owner)
            continue
        store.set_trust(entry.owner, material.keyid, True)
        result.trusted.append((entry.owner, material.keyid))
    LOG.info(
        "Trusted %d keys from %s (%d already stored, %d rejected)",
        len(result.trusted),
        path,
        len(result.skipped),
        len(result.rejected),
    )
    return result
