"""High-level orchestration for delegsync."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

from .config import AppConfig
from .diffing import diff_delegations
from .discovery import AddressResolver, best_sync_scheme, lookup_target, resolve_addresses
from .keystore import (
    KeyStore,
    generate_keypair,
    load_bind_keypair,
    load_public_key,
    verify_owned_key,
)
from .models import (
    ConfigError,
    DelegationDiff,
    DelegationRecordSet,
    DelegSyncError,
    DsyncTarget,
    KeyRecord,
    KeyState,
    KeyStoreError,
    OperationCancelled,
    fqdn,
)
from .renderer import render_status
from .sig0 import sign_update
from .snapshot import QueryFn, read_snapshots, udp_query
from .transport import ExchangeFn, UpdateResult, raw_exchange, send_notify, send_update
from .trust_loader import TrustLoadResult, import_trusted_keys
from .update import build_delegation_update, build_key_update

LOG = logging.getLogger("delegsync")


@dataclass
class DelegationStatusResult:
    """Child and parent views of a delegation and how they differ."""

    zone: str
    child: DelegationRecordSet
    parent: DelegationRecordSet
    diff: DelegationDiff
    target: DsyncTarget | None = None
    report: str = ""


@dataclass
class SyncResult:
    """Outcome of one delegation sync."""

    zone: str
    status: str
    diff: DelegationDiff
    scheme: str | None = None
    target: DsyncTarget | None = None
    sent: UpdateResult | None = None


@dataclass
class KeyUpdateResult:
    """Outcome of publishing a key at the parent."""

    zone: str
    keyid: int
    target: DsyncTarget
    sent: UpdateResult
    retired: list[int] = field(default_factory=list)


class DelegationController:
    """Coordinates status, sync and key operations for child zones."""

    def __init__(
        self,
        config: AppConfig,
        keystore: KeyStore,
        query: QueryFn = udp_query,
        exchange: ExchangeFn = raw_exchange,
        resolve: AddressResolver = resolve_addresses,
        cancel: threading.Event | None = None,
    ):
        self.config = config
        self.keystore = keystore
        self.query = query
        self.exchange = exchange
        self.resolve = resolve
        self.cancel = cancel

    def _check_cancel(self, zone: str) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise OperationCancelled(f"Zone {zone}: operation cancelled")

    def _snapshots(self, zone: str) -> tuple[DelegationRecordSet, DelegationRecordSet]:
        self._check_cancel(zone)
        return read_snapshots(
            zone,
            self.config.child_primary,
            self.config.parent_primary,
            timeout=self.config.dns_timeout,
            query=self.query,
        )

    def _update_target(self, zone: str) -> DsyncTarget:
        self._check_cancel(zone)
        return lookup_target(
            zone,
            self.config.dsync_resolver,
            "ANY",
            "update",
            timeout=self.config.dns_timeout,
            query=self.query,
            resolve=self.resolve,
        )

    def _parent_zone(self, target: DsyncTarget) -> str:
        return fqdn(self.config.parent_zone or target.parent)

    def analyse(self, zone: str, discover: bool = False) -> DelegationStatusResult:
        """Compare the child's delegation data with what the parent publishes."""
        zone = fqdn(zone)
        child, parent = self._snapshots(zone)
        diff = diff_delegations(child, parent)
        target = self._update_target(zone) if discover else None
        report = render_status(self.config.templates_dir, child, parent, diff, target)
        LOG.info("Zone %s: %s", zone, "in sync" if not diff.has_changes() else f"{diff.total()} changes pending")
        return DelegationStatusResult(zone=zone, child=child, parent=parent, diff=diff, target=target, report=report)

    def sync(self, zone: str, scheme: str | None = None) -> SyncResult:
        """Bring the parent's delegation in line with the child, if needed."""
        zone = fqdn(zone)
        child, parent = self._snapshots(zone)
        diff = diff_delegations(child, parent)
        if not diff.has_changes():
            LOG.info("Zone %s: delegation in sync; nothing to send.", zone)
            return SyncResult(zone=zone, status="in-sync", diff=diff)

        self._check_cancel(zone)
        preferences = (scheme,) if scheme else self.config.sync_schemes
        chosen, target = best_sync_scheme(
            zone,
            self.config.dsync_resolver,
            preferences,
            timeout=self.config.dns_timeout,
            query=self.query,
            resolve=self.resolve,
        )
        if chosen == "notify":
            sent = send_notify(
                zone, target.endpoints(), self.config.dns_timeout, "CSYNC", exchange=self.exchange, cancel=self.cancel
            )
            return SyncResult(zone=zone, status="notified", diff=diff, scheme=chosen, target=target, sent=sent)

        key = self.keystore.active_signing_key(zone)
        message = build_delegation_update(self._parent_zone(target), zone, diff)
        signed = sign_update(message, key, lifetime=self.config.sig0_lifetime)
        self._check_cancel(zone)
        sent = send_update(signed, target.endpoints(), self.config.dns_timeout, exchange=self.exchange, cancel=self.cancel)
        LOG.info("Zone %s: delegation update accepted by %s", zone, sent.endpoint)
        return SyncResult(zone=zone, status="updated", diff=diff, scheme=chosen, target=target, sent=sent)

    def upload_key(self, zone: str) -> KeyUpdateResult:
        """Publish the active SIG(0) key for the zone at the parent."""
        zone = fqdn(zone)
        key = self.keystore.active_signing_key(zone)
        target = self._update_target(zone)
        message = build_key_update(self._parent_zone(target), zone, adds=[key])
        signed = sign_update(message, key, lifetime=self.config.sig0_lifetime)
        self._check_cancel(zone)
        sent = send_update(signed, target.endpoints(), self.config.dns_timeout, exchange=self.exchange, cancel=self.cancel)
        LOG.info("Zone %s: KEY %d uploaded to %s", zone, key.keyid, sent.endpoint)
        return KeyUpdateResult(zone=zone, keyid=key.keyid, target=target, sent=sent)

    def roll_key(self, zone: str) -> KeyUpdateResult:
        """Replace the active key at the parent with a newly generated one.

        The UPDATE is signed with the current key. The new key becomes active,
        and the old one retired, only once the parent has accepted it. If the
        UPDATE is not accepted the new key is removed from the store again.
        """
        zone = fqdn(zone)
        old = self.keystore.active_signing_key(zone)
        new = self.keystore.add(zone, generate_keypair(zone, self.config.sig0_algorithm), creator="roll")
        try:
            verify_owned_key(self.keystore, zone, new.keyid)
            target = self._update_target(zone)
            message = build_key_update(self._parent_zone(target), zone, adds=[new], removes=[old])
            signed = sign_update(message, old, lifetime=self.config.sig0_lifetime)
            self._check_cancel(zone)
            sent = send_update(
                signed, target.endpoints(), self.config.dns_timeout, exchange=self.exchange, cancel=self.cancel
            )
        except DelegSyncError:
            self.keystore.delete(zone, new.keyid)
            raise
        self.keystore.set_state(zone, new.keyid, KeyState.ACTIVE)
        self.keystore.set_state(zone, old.keyid, KeyState.RETIRED)
        LOG.info("Zone %s: rolled SIG(0) key %d -> %d", zone, old.keyid, new.keyid)
        return KeyUpdateResult(zone=zone, keyid=new.keyid, target=target, sent=sent, retired=[old.keyid])

    def generate_key(self, zone: str, algorithm: str | None = None, keytype: str = "KEY") -> KeyRecord:
        """Generate, store and self-verify a new key pair for the zone."""
        material = generate_keypair(zone, algorithm or self.config.sig0_algorithm, keytype)
        key = self.keystore.add(zone, material, creator="generate")
        verify_owned_key(self.keystore, zone, key.keyid)
        return self.keystore.get(zone, key.keyid)

    def import_key(self, owner: str | None = None, path: Path | None = None, text: str | None = None) -> KeyRecord:
        """Import a BIND key pair from disk or a public key from text."""
        if path is not None:
            material = load_bind_keypair(path)
        elif text is not None:
            material = load_public_key(text, owner=owner)
        else:
            raise KeyStoreError("Importing a key needs a key file path or public key text")
        key = self.keystore.add(owner or material.owner, material, creator="import")
        verify_owned_key(self.keystore, key.owner, key.keyid)
        return self.keystore.get(key.owner, key.keyid)

    def load_trusted_keys(self, path: Path | None = None) -> TrustLoadResult:
        """Import a trusted keys file, by default the configured one."""
        path = path or self.config.trusted_keys_file
        if path is None:
            raise ConfigError("No trusted keys file given and TRUSTED_KEYS_FILE is not set.")
        return import_trusted_keys(self.keystore, path)


def configure_logging(level: str) -> None:
    """Configure logging output."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
