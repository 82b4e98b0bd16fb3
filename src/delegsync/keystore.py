"""Thread-safe store of SIG(0) keys, their lifecycle state and trust."""

from __future__ import annotations

import base64
import dataclasses
import logging
import os
import threading
from pathlib import Path
from typing import Iterable

import dns.dnssecalgs
import dns.exception
import dns.rdata
import dns.rdataclass
import dns.rdatatype
import yaml
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import ec, ed448, ed25519, rsa
from dns.dnssecalgs.rsa import PrivateRSA
from dns.dnssectypes import Algorithm
from pydantic import BaseModel, Field, model_validator

from .models import (
    DuplicateKeyError,
    KeyRecord,
    KeyState,
    KeyStoreError,
    NoSigningKeyError,
    NotValidatedError,
    SigningError,
    UnknownKeyError,
    fqdn,
)
from .sig0 import private_key_from_record

LOG = logging.getLogger("delegsync")

RSA_KEY_SIZE = 2048
KEY_TYPES = {"KEY", "DNSKEY"}


class KeyEntry(BaseModel):
    """Schema for one persisted key."""

    owner: str
    keyid: int = Field(ge=0, le=65535)
    algorithm: str
    public_key: str
    keytype: str = "KEY"
    flags: int = 256
    private_key: str | None = None
    state: KeyState = KeyState.CREATED
    validated: bool = False
    trusted: bool = False
    creator: str = ""

    @model_validator(mode="after")
    def trusted_requires_validated(self) -> "KeyEntry":
        if self.trusted and not self.validated:
            raise ValueError(f"key {self.keyid} for {self.owner} is trusted but not validated")
        return self


class KeyStoreFile(BaseModel):
    """Schema for the key store YAML document."""

    keys: list[KeyEntry] = Field(default_factory=list)


def _copy(record: KeyRecord) -> KeyRecord:
    return dataclasses.replace(record)


class KeyStore:
    """Keys indexed by (owner, keyid), optionally persisted to a YAML file.

    Every public method takes the store lock, so concurrent callers see each
    mutation as a whole. A mutation is written to disk before it replaces the
    in-memory index, so a failed write leaves both unchanged. Lookups return
    copies; mutate through the methods.
    """

    def __init__(self, path: Path | None = None):
        self.path = path
        self._lock = threading.RLock()
        self._keys: dict[tuple[str, int], KeyRecord] = {}
        if path is not None and path.exists():
            self._load()

    def _load(self) -> None:
        assert self.path is not None
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise KeyStoreError(f"Failed to parse key store {self.path}: {exc}") from exc
        except OSError as exc:
            raise KeyStoreError(f"Cannot read key store {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise KeyStoreError(f"Key store {self.path} must be a mapping with a 'keys' list")
        try:
            document = KeyStoreFile(**data)
        except Exception as exc:  # noqa: BLE001
            raise KeyStoreError(f"Key store {self.path} validation error: {exc}") from exc
        for entry in document.keys:
            record = KeyRecord(**entry.model_dump())
            record.owner = fqdn(record.owner)
            self._keys[record.store_key] = record
        LOG.debug("Loaded %d keys from %s", len(self._keys), self.path)

    def _commit(self, keys: dict[tuple[str, int], KeyRecord]) -> None:
        """Persist a new index, then make it the current one."""
        if self.path is not None:
            document = KeyStoreFile(keys=[KeyEntry(**dataclasses.asdict(record)) for record in keys.values()])
            tmp_path = self.path.with_name(f"{self.path.name}.tmp")
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path.write_text(yaml.safe_dump(document.model_dump(mode="json"), sort_keys=False), encoding="utf-8")
                os.replace(tmp_path, self.path)
            except OSError as exc:
                raise KeyStoreError(f"Cannot write key store {self.path}: {exc}") from exc
        self._keys = keys

    def _require(self, owner: str, keyid: int) -> KeyRecord:
        try:
            return self._keys[(fqdn(owner), keyid)]
        except KeyError as exc:
            raise UnknownKeyError(f"No key {keyid} for {fqdn(owner)} in the key store") from exc

    def _replace(self, owner: str, keyid: int, **changes) -> KeyRecord:
        record = dataclasses.replace(self._require(owner, keyid), **changes)
        keys = dict(self._keys)
        keys[record.store_key] = record
        self._commit(keys)
        return record

    def add(self, owner: str, material: KeyRecord, creator: str | None = None) -> KeyRecord:
        """Store a new key in state 'created', unvalidated and untrusted.

        The key ID is computed from the key material, not taken from the caller.
        """
        record = dataclasses.replace(
            material,
            owner=fqdn(owner),
            keyid=key_rdata(material).key_id(),
            state=KeyState.CREATED,
            validated=False,
            trusted=False,
            creator=creator if creator is not None else material.creator,
        )
        with self._lock:
            if record.store_key in self._keys:
                raise DuplicateKeyError(f"Key {record.keyid} for {record.owner} is already stored")
            keys = dict(self._keys)
            keys[record.store_key] = record
            self._commit(keys)
        LOG.info("Added %s key %d for %s", record.algorithm, record.keyid, record.owner)
        return _copy(record)

    def get(self, owner: str, keyid: int) -> KeyRecord:
        with self._lock:
            return _copy(self._require(owner, keyid))

    def list(self, owner: str | None = None) -> list[KeyRecord]:
        """Return copies of stored keys, optionally limited to one owner."""
        with self._lock:
            return [
                _copy(record)
                for record in self._keys.values()
                if owner is None or record.owner == fqdn(owner)
            ]

    def set_state(self, owner: str, keyid: int, state: KeyState | str) -> KeyRecord:
        """Move a key to any lifecycle state."""
        state = KeyState(state)
        with self._lock:
            previous = self._require(owner, keyid).state
            record = self._replace(owner, keyid, state=state)
        LOG.info("Key %d for %s: %s -> %s", keyid, fqdn(owner), previous.value, state.value)
        return _copy(record)

    def set_trust(self, owner: str, keyid: int, trusted: bool) -> KeyRecord:
        """Trust or distrust a key; only validated keys can be trusted."""
        with self._lock:
            if trusted and not self._require(owner, keyid).validated:
                raise NotValidatedError(f"Key {keyid} for {fqdn(owner)} must be validated before it is trusted")
            record = self._replace(owner, keyid, trusted=trusted)
        LOG.info("Key %d for %s %s", keyid, fqdn(owner), "trusted" if trusted else "untrusted")
        return _copy(record)

    def delete(self, owner: str, keyid: int) -> None:
        with self._lock:
            self._require(owner, keyid)
            keys = dict(self._keys)
            del keys[(fqdn(owner), keyid)]
            self._commit(keys)
        LOG.info("Deleted key %d for %s", keyid, fqdn(owner))

    def mark_validated(self, owner: str, keyid: int) -> KeyRecord:
        """Record a successful verification. Use the verify_* routines instead."""
        with self._lock:
            record = self._replace(owner, keyid, validated=True)
        return _copy(record)

    def active_signing_key(self, owner: str) -> KeyRecord:
        """Return the first active key with private material for the owner."""
        with self._lock:
            for record in self._keys.values():
                if record.owner == fqdn(owner) and record.state == KeyState.ACTIVE and record.owned:
                    return _copy(record)
        raise NoSigningKeyError(f"No active SIG(0) key with a private key for {fqdn(owner)}")


def key_rdata(record: KeyRecord) -> dns.rdata.Rdata:
    """Return the KEY or DNSKEY rdata of a stored key."""
    try:
        return dns.rdata.from_text(dns.rdataclass.IN, dns.rdatatype.from_text(record.keytype), record.public_key)
    except (dns.exception.DNSException, ValueError) as exc:
        raise KeyStoreError(f"Malformed {record.keytype} for {record.owner}: {exc}") from exc


def check_public_key(record: KeyRecord) -> bool:
    """Check that a public key parses, is usable, and matches its key id."""
    try:
        rdata = key_rdata(record)
        if not rdata.key:
            raise ValueError("empty public key")
        public_cls = dns.dnssecalgs.get_algorithm_cls(rdata.algorithm).public_cls
        public_cls.from_dnskey(rdata)
    except (KeyStoreError, ValueError, dns.exception.DNSException) as exc:
        LOG.warning("Key %d for %s failed verification: %s", record.keyid, record.owner, exc)
        return False
    if rdata.key_id() != record.keyid:
        LOG.warning("Key %d for %s has key tag %d", record.keyid, record.owner, rdata.key_id())
        return False
    return True


def verify_public_key(store: KeyStore, owner: str, keyid: int) -> bool:
    """Verify a stored public key and mark it validated when it passes."""
    if not check_public_key(store.get(owner, keyid)):
        return False
    store.mark_validated(owner, keyid)
    return True


def verify_owned_key(store: KeyStore, owner: str, keyid: int) -> bool:
    """Check that the stored private key signs data its public key verifies."""
    record = store.get(owner, keyid)
    if not record.owned:
        return verify_public_key(store, owner, keyid)
    challenge = f"delegsync key check {record.owner} {record.keyid}".encode()
    try:
        rdata = key_rdata(record)
        private = private_key_from_record(record)
        public = private.public_cls.from_dnskey(rdata)
        public.verify(private.sign(challenge), challenge)
    except InvalidSignature:
        LOG.warning("Private and public halves of key %d for %s do not match", keyid, record.owner)
        return False
    except (KeyStoreError, SigningError, ValueError, dns.exception.DNSException) as exc:
        LOG.warning("Key %d for %s failed verification: %s", keyid, record.owner, exc)
        return False
    store.mark_validated(owner, keyid)
    return True


def validate_key_rrset(store: KeyStore, owner: str, keyid: int, published: Iterable[dns.rdata.Rdata | str]) -> bool:
    """Validate a key by finding it in the KEY RRset published at its owner."""
    record = store.get(owner, keyid)
    expected = key_rdata(record)
    for item in published:
        if isinstance(item, str):
            try:
                item = dns.rdata.from_text(dns.rdataclass.IN, expected.rdtype, item)
            except (dns.exception.DNSException, ValueError):
                continue
        if item == expected:
            store.mark_validated(owner, keyid)
            return True
    LOG.warning("Key %d for %s is not in the published %s RRset", keyid, record.owner, record.keytype)
    return False


def _record_from_rdata(owner: str, rdata: dns.rdata.Rdata, private_pem: str | None = None, creator: str = "") -> KeyRecord:
    return KeyRecord(
        owner=fqdn(owner),
        keyid=rdata.key_id(),
        algorithm=Algorithm.to_text(rdata.algorithm),
        public_key=rdata.to_text(),
        keytype=dns.rdatatype.to_text(rdata.rdtype),
        flags=rdata.flags,
        private_key=private_pem,
        creator=creator,
    )


def generate_keypair(
    owner: str,
    algorithm: str = "ECDSAP256SHA256",
    keytype: str = "KEY",
    flags: int = 256,
    creator: str = "generate",
) -> KeyRecord:
    """Return a freshly generated key pair for the owner."""
    keytype = keytype.upper()
    if keytype not in KEY_TYPES:
        raise KeyStoreError(f"Unsupported key type {keytype}")
    try:
        cls = dns.dnssecalgs.get_algorithm_cls(Algorithm.make(algorithm))
        private = cls.generate(RSA_KEY_SIZE) if issubclass(cls, PrivateRSA) else cls.generate()
        dnskey = private.public_key().to_dnskey(flags=flags, protocol=3)
        rdata = dns.rdata.from_text(
            dns.rdataclass.IN, dns.rdatatype.from_text(keytype), dnskey.to_text()
        )
        pem = private.to_pem().decode()
    except (ValueError, dns.exception.DNSException) as exc:
        raise KeyStoreError(f"Cannot generate {algorithm} key for {fqdn(owner)}: {exc}") from exc
    return _record_from_rdata(owner, rdata, pem, creator)


def load_public_key(text: str, owner: str | None = None, creator: str = "import") -> KeyRecord:
    """Parse a KEY or DNSKEY given as a full RR line or, with an owner, as rdata."""
    tokens = text.split()
    index = next((i for i, token in enumerate(tokens) if token.upper() in KEY_TYPES), None)
    if index is None:
        if owner is None:
            raise KeyStoreError(f"Cannot find an owner and key type in {text!r}")
        keytype, rdata_text = "KEY", text
    else:
        keytype, rdata_text = tokens[index].upper(), " ".join(tokens[index + 1 :])
        if index > 0:
            owner = tokens[0]
        if owner is None:
            raise KeyStoreError(f"Key RR {text!r} has no owner name")
    try:
        rdata = dns.rdata.from_text(dns.rdataclass.IN, dns.rdatatype.from_text(keytype), rdata_text)
    except (dns.exception.DNSException, ValueError) as exc:
        raise KeyStoreError(f"Malformed {keytype} record {text!r}: {exc}") from exc
    return _record_from_rdata(owner, rdata, None, creator)


def _b64_int(value: str) -> int:
    return int.from_bytes(base64.b64decode(value), "big")


def _private_from_bind(fields: dict) -> object:
    """Return a cryptography private key built from BIND v1.x private fields."""
    algorithm = Algorithm.make(int(str(fields["Algorithm"]).split()[0]))
    if algorithm in (Algorithm.ECDSAP256SHA256, Algorithm.ECDSAP384SHA384):
        curve = ec.SECP256R1() if algorithm == Algorithm.ECDSAP256SHA256 else ec.SECP384R1()
        return ec.derive_private_key(_b64_int(fields["PrivateKey"]), curve)
    if algorithm == Algorithm.ED25519:
        return ed25519.Ed25519PrivateKey.from_private_bytes(base64.b64decode(fields["PrivateKey"]))
    if algorithm == Algorithm.ED448:
        return ed448.Ed448PrivateKey.from_private_bytes(base64.b64decode(fields["PrivateKey"]))
    public = rsa.RSAPublicNumbers(_b64_int(fields["PublicExponent"]), _b64_int(fields["Modulus"]))
    numbers = rsa.RSAPrivateNumbers(
        p=_b64_int(fields["Prime1"]),
        q=_b64_int(fields["Prime2"]),
        d=_b64_int(fields["PrivateExponent"]),
        dmp1=_b64_int(fields["Exponent1"]),
        dmq1=_b64_int(fields["Exponent2"]),
        iqmp=_b64_int(fields["Coefficient"]),
        public_numbers=public,
    )
    return numbers.private_key()


def _bind_paths(path: Path) -> tuple[Path, Path]:
    base = path.with_suffix("") if path.suffix in {".key", ".private"} else path
    return base.with_name(f"{base.name}.key"), base.with_name(f"{base.name}.private")


def load_bind_keypair(path: Path, creator: str = "import") -> KeyRecord:
    """Load a BIND key pair from its .key and .private files."""
    key_path, private_path = _bind_paths(path)
    try:
        key_lines = [
            line for line in key_path.read_text(encoding="utf-8").splitlines() if line.strip() and not line.startswith(";")
        ]
        fields = yaml.safe_load(private_path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise KeyStoreError(f"Cannot read BIND key pair {path}: {exc}") from exc
    if not key_lines:
        raise KeyStoreError(f"{key_path} holds no key record")
    public = load_public_key(key_lines[0], creator=creator)

    try:
        crypto_key = _private_from_bind(fields)
        cls = dns.dnssecalgs.get_algorithm_cls(Algorithm.make(public.algorithm))
        private = cls(key=crypto_key)
    except (KeyError, TypeError, ValueError, dns.exception.DNSException) as exc:
        raise KeyStoreError(f"Malformed private key file {private_path}: {exc}") from exc
    derived = private.public_key().to_dnskey(flags=public.flags, protocol=3)
    if derived.key != key_rdata(public).key:
        raise KeyStoreError(f"{private_path} does not match the public key in {key_path}")
    return dataclasses.replace(public, private_key=private.to_pem().decode())
