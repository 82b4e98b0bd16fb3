"""Core data models used by delegsync."""

from __future__ import annotations

import enum
import ipaddress
from dataclasses import dataclass, field
from typing import Iterator


def _ensure_absolute(name: str) -> str:
    """Return a fully qualified name with a trailing dot."""
    stripped = name.strip()
    if not stripped or stripped == "@":
        return "."
    return stripped if stripped.endswith(".") else f"{stripped}."


def fqdn(name: str) -> str:
    """Return the lower-cased, fully qualified form of a domain name."""
    return _ensure_absolute(name).lower()


def is_subdomain(name: str, zone: str) -> bool:
    """Return True when name is at or below the zone apex."""
    name, zone = fqdn(name), fqdn(zone)
    if zone == ".":
        return True
    return name == zone or name.endswith(f".{zone}")


@dataclass(frozen=True)
class Record:
    """Canonical representation of a delegation resource record."""

    name: str
    type: str
    ttl: int
    value: str

    def canonical_name(self) -> str:
        """Return the canonical fully qualified owner name."""
        return fqdn(self.name)

    def canonical_type(self) -> str:
        """Return the canonical RR type."""
        return self.type.upper()

    def canonical_value(self) -> str:
        """Return a canonicalised RR value for comparisons."""
        value = self.value.strip()
        canonical_type = self.canonical_type()
        if canonical_type == "NS":
            return fqdn(value)
        if canonical_type in {"A", "AAAA"}:
            try:
                return str(ipaddress.ip_address(value))
            except ValueError:
                return value.lower()
        return value

    def key(self) -> tuple[str, str, str]:
        """Return a tuple key used for equality checks."""
        return (self.canonical_name(), self.canonical_type(), self.canonical_value())

    def to_text(self) -> str:
        return f"{self.canonical_name()} {self.ttl} IN {self.canonical_type()} {self.canonical_value()}"


@dataclass
class DelegationRecordSet:
    """Delegation data (NS plus glue) for one zone as seen from one side."""

    zone: str
    ns: list[Record] = field(default_factory=list)
    a_glue: list[Record] = field(default_factory=list)
    aaaa_glue: list[Record] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.zone = fqdn(self.zone)
        records = [*self.ns, *self.a_glue, *self.aaaa_glue]
        self.ns, self.a_glue, self.aaaa_glue = [], [], []
        for record in records:
            self.add(record)

    def _bucket(self, rtype: str) -> list[Record]:
        if rtype == "NS":
            return self.ns
        if rtype == "A":
            return self.a_glue
        if rtype == "AAAA":
            return self.aaaa_glue
        raise ValueError(f"{rtype} records are not part of a delegation")

    def add(self, record: Record) -> bool:
        """Add a record unless an identical one is present; return True if added."""
        bucket = self._bucket(record.canonical_type())
        if any(existing.key() == record.key() for existing in bucket):
            return False
        bucket.append(record)
        return True

    def iter_records(self) -> Iterator[Record]:
        """Yield NS records, then A glue, then AAAA glue."""
        yield from self.ns
        yield from self.a_glue
        yield from self.aaaa_glue

    def ns_names(self) -> list[str]:
        """Return the NS targets in insertion order."""
        return [record.canonical_value() for record in self.ns]

    def in_bailiwick_ns(self) -> list[str]:
        """Return the NS targets that need glue (at or below the zone apex)."""
        return [name for name in self.ns_names() if is_subdomain(name, self.zone)]

    def index(self, rtype: str) -> dict[tuple[str, str, str], Record]:
        """Return a dictionary of one category keyed by record identity."""
        return {record.key(): record for record in self._bucket(rtype)}


@dataclass
class DelegationDiff:
    """Additions and removals that bring the parent in line with the child."""

    ns_adds: list[Record] = field(default_factory=list)
    ns_removes: list[Record] = field(default_factory=list)
    a_adds: list[Record] = field(default_factory=list)
    a_removes: list[Record] = field(default_factory=list)
    aaaa_adds: list[Record] = field(default_factory=list)
    aaaa_removes: list[Record] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        """Return True when the diff contains any change."""
        return bool(self.total())

    def has_changes(self) -> bool:
        return self.changed

    def adds(self) -> list[Record]:
        return [*self.ns_adds, *self.a_adds, *self.aaaa_adds]

    def removes(self) -> list[Record]:
        return [*self.ns_removes, *self.a_removes, *self.aaaa_removes]

    def total(self) -> int:
        """Return the total number of change entries."""
        return len(self.adds()) + len(self.removes())


@dataclass(frozen=True)
class Endpoint:
    """A DNS server address and port."""

    host: str
    port: int = 53

    @classmethod
    def parse(cls, value: str | Endpoint, default_port: int = 53) -> Endpoint:
        """Parse host, host:port, [v6]:port or a bare IPv6 address."""
        if isinstance(value, Endpoint):
            return value
        text = value.strip()
        if not text:
            raise ValueError("empty server address")
        if text.startswith("["):
            host, _, rest = text[1:].partition("]")
            port = rest[1:] if rest.startswith(":") else ""
            return cls(host, int(port) if port else default_port)
        if text.count(":") == 1:
            host, port = text.split(":")
            return cls(host, int(port))
        return cls(text, default_port)

    @property
    def is_address(self) -> bool:
        """Return True when the host is an IPv4 or IPv6 literal."""
        try:
            ipaddress.ip_address(self.host)
        except ValueError:
            return False
        return True

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass
class DsyncTarget:
    """Where an authenticated UPDATE or NOTIFY for a zone should be sent."""

    name: str
    port: int
    addresses: list[str] = field(default_factory=list)
    schemes: set[tuple[str, int]] = field(default_factory=set)
    qname: str = ""
    parent: str = ""

    def endpoints(self) -> list[Endpoint]:
        """Return the candidate endpoints in discovery order."""
        return [Endpoint(address, self.port) for address in self.addresses]


class KeyState(str, enum.Enum):
    """Lifecycle stage of an owned key."""

    CREATED = "created"
    ACTIVE = "active"
    RETIRED = "retired"


@dataclass
class KeyRecord:
    """A SIG(0) or DNSSEC key as held by the key store."""

    owner: str
    keyid: int
    algorithm: str
    public_key: str
    keytype: str = "KEY"
    flags: int = 256
    private_key: str | None = None
    state: KeyState = KeyState.CREATED
    validated: bool = False
    trusted: bool = False
    creator: str = ""

    @property
    def store_key(self) -> tuple[str, int]:
        return (fqdn(self.owner), self.keyid)

    @property
    def owned(self) -> bool:
        """Return True when the private half is held locally."""
        return self.private_key is not None

    def public_rr_text(self) -> str:
        return f"{fqdn(self.owner)} IN {self.keytype} {self.public_key}"


class DelegSyncError(Exception):
    """Base exception for delegsync."""


class ConfigError(DelegSyncError):
    """Raised when the environment holds invalid settings."""


class ResolutionError(DelegSyncError):
    """Raised when a delegation snapshot cannot be obtained."""


class DiscoveryError(DelegSyncError):
    """Base class for update target discovery failures."""


class NoTargetError(DiscoveryError):
    """Raised when no DSYNC record matches the requested type and scheme."""


class DiscoveryQueryError(DiscoveryError):
    """Raised when the DSYNC query itself fails."""


class NoSigningKeyError(DelegSyncError):
    """Raised when no active private key is available for a zone."""


class SigningError(DelegSyncError):
    """Raised on cryptographic failure while signing."""


class AllCandidatesExhaustedError(DelegSyncError):
    """Raised when every candidate endpoint failed to accept a message."""

    def __init__(self, message: str, attempts: list | None = None):
        super().__init__(message)
        self.attempts = attempts or []


class KeyStoreError(DelegSyncError):
    """Base class for key store invariant violations."""


class DuplicateKeyError(KeyStoreError):
    """Raised when adding a key that is already stored."""


class UnknownKeyError(KeyStoreError):
    """Raised when the requested key is not in the store."""


class NotValidatedError(KeyStoreError):
    """Raised when trusting a key that has not been validated."""


class OperationCancelled(DelegSyncError):
    """Raised when the caller aborts an operation before network I/O."""
