"""Environment-driven configuration loader."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import dns.dnssecalgs
import dns.dnssectypes
import dns.exception
from dotenv import load_dotenv

from .models import ConfigError, Endpoint

KNOWN_SCHEMES = {"update", "notify"}
PACKAGE_TEMPLATES = Path(__file__).parent / "templates"


@dataclass(frozen=True)
class AppConfig:
    """Application-wide configuration values."""

    child_primary: Endpoint
    parent_primary: Endpoint
    dsync_resolver: Endpoint
    parent_zone: str | None
    keystore_path: Path
    trusted_keys_file: Path | None
    sig0_algorithm: str
    sig0_lifetime: int
    dns_timeout: float
    sync_schemes: tuple[str, ...]
    templates_dir: Path
    log_level: str


def _parse_endpoint(name: str, value: str) -> Endpoint:
    """Return an Endpoint parsed from an environment value."""
    try:
        endpoint = Endpoint.parse(value)
    except ValueError as exc:
        raise ConfigError(f"{name} must be address or address:port, got {value!r}.") from exc
    if not endpoint.is_address:
        raise ConfigError(f"{name} must be an IP address, not a host name, got {value!r}.")
    return endpoint


def _parse_number(name: str, value: str, kind: type) -> int | float:
    try:
        number = kind(value)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}.") from exc
    if number <= 0:
        raise ConfigError(f"{name} must be positive.")
    return number


def _parse_schemes(value: str) -> tuple[str, ...]:
    """Return the ordered scheme preference list."""
    schemes = tuple(part.strip().lower() for part in value.split(",") if part.strip())
    if not schemes:
        raise ConfigError("SYNC_SCHEMES must list at least one scheme.")
    unknown = [scheme for scheme in schemes if scheme not in KNOWN_SCHEMES]
    if unknown:
        raise ConfigError(f"SYNC_SCHEMES contains unknown schemes: {', '.join(unknown)}.")
    return schemes


def _parse_algorithm(value: str) -> str:
    """Return the mnemonic of a DNSSEC algorithm that dnspython can sign with."""
    try:
        algorithm = dns.dnssectypes.Algorithm.make(int(value) if value.isdigit() else value)
        dns.dnssecalgs.get_algorithm_cls(algorithm)
    except (ValueError, dns.exception.UnsupportedAlgorithm) as exc:
        raise ConfigError(f"SIG0_ALGORITHM {value!r} is not a supported signing algorithm.") from exc
    return dns.dnssectypes.Algorithm.to_text(algorithm)


def load_config() -> AppConfig:
    """Load configuration values from the environment (and .env)."""
    load_dotenv()
    child_primary = _parse_endpoint("CHILD_PRIMARY", os.getenv("CHILD_PRIMARY", "127.0.0.1:53"))
    parent_primary = _parse_endpoint("PARENT_PRIMARY", os.getenv("PARENT_PRIMARY", "127.0.0.1:53"))
    resolver_value = os.getenv("DSYNC_RESOLVER")
    dsync_resolver = _parse_endpoint("DSYNC_RESOLVER", resolver_value) if resolver_value else parent_primary

    trusted_keys = os.getenv("TRUSTED_KEYS_FILE")
    parent_zone = os.getenv("PARENT_ZONE") or None

    return AppConfig(
        child_primary=child_primary,
        parent_primary=parent_primary,
        dsync_resolver=dsync_resolver,
        parent_zone=parent_zone,
        keystore_path=Path(os.getenv("KEYSTORE_PATH", "keystore.yaml")).resolve(),
        trusted_keys_file=Path(trusted_keys).resolve() if trusted_keys else None,
        sig0_algorithm=_parse_algorithm(os.getenv("SIG0_ALGORITHM", "ECDSAP256SHA256")),
        sig0_lifetime=int(_parse_number("SIG0_LIFETIME", os.getenv("SIG0_LIFETIME", "300"), int)),
        dns_timeout=float(_parse_number("DNS_TIMEOUT", os.getenv("DNS_TIMEOUT", "5"), float)),
        sync_schemes=_parse_schemes(os.getenv("SYNC_SCHEMES", "update,notify")),
        templates_dir=Path(os.getenv("TEMPLATES_DIR", str(PACKAGE_TEMPLATES))).resolve(),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
