"""Delivery of signed UPDATE and NOTIFY messages with candidate fallback."""

from __future__ import annotations

import logging
import socket
import struct
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Sequence

import dns.exception
import dns.flags
import dns.inet
import dns.message
import dns.opcode
import dns.query
import dns.rcode
import dns.rdatatype

from .models import AllCandidatesExhaustedError, Endpoint, OperationCancelled, fqdn
from .sig0 import SignedUpdate

LOG = logging.getLogger("delegsync")

ExchangeFn = Callable[[bytes, Endpoint, float], dns.message.Message]


@dataclass
class Attempt:
    """Outcome of sending one message to one candidate."""

    endpoint: Endpoint
    rcode: str | None = None
    error: str | None = None
    ede_code: int | None = None
    ede_text: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.rcode == "NOERROR"


@dataclass
class UpdateResult:
    """The accepting endpoint, its response, and every attempt made."""

    endpoint: Endpoint
    response: dns.message.Message
    attempts: list[Attempt] = field(default_factory=list)


def _destination(endpoint: Endpoint) -> tuple[int, tuple]:
    if not endpoint.is_address:
        raise ValueError(f"{endpoint.host} is not an IP address")
    af = dns.inet.af_for_address(endpoint.host)
    if af == socket.AF_INET6:
        return af, (endpoint.host, endpoint.port, 0, 0)
    return af, (endpoint.host, endpoint.port)


def raw_exchange(wire: bytes, endpoint: Endpoint, timeout: float) -> dns.message.Message:
    """Send pre-rendered wire over UDP, retrying over TCP when truncated."""
    (query_id,) = struct.unpack_from("!H", wire)
    af, destination = _destination(endpoint)
    expiration = time.time() + timeout
    with dns.query.make_socket(af, socket.SOCK_DGRAM) as sock:
        dns.query.send_udp(sock, wire, destination, expiration)
        response, _ = dns.query.receive_udp(sock, destination, expiration, ignore_trailing=True)
    if response.flags & dns.flags.TC:
        LOG.debug("Truncated response from %s, retrying over TCP", endpoint)
        with socket.create_connection((endpoint.host, endpoint.port), timeout=timeout) as sock:
            dns.query.send_tcp(sock, wire, expiration)
            response, _ = dns.query.receive_tcp(sock, expiration, ignore_trailing=True)
    if response.id != query_id:
        raise dns.query.BadResponse(f"response id {response.id} does not match query id {query_id}")
    return response


def _extended_error(response: dns.message.Message) -> tuple[int | None, str | None]:
    for option in response.extended_errors():
        return int(option.code), option.text
    return None, None


def _check_cancel(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled("operation cancelled before sending")


def send_with_fallback(
    wire: bytes,
    candidates: Sequence[Endpoint],
    timeout: float,
    exchange: ExchangeFn = raw_exchange,
    cancel: threading.Event | None = None,
    label: str = "UPDATE",
) -> UpdateResult:
    """Try each candidate once in order until one answers NOERROR."""
    attempts: list[Attempt] = []
    for endpoint in candidates:
        _check_cancel(cancel)
        attempt = Attempt(endpoint=endpoint)
        attempts.append(attempt)
        try:
            response = exchange(wire, endpoint, timeout)
        except (dns.exception.DNSException, OSError, ValueError) as exc:
            attempt.error = str(exc) or type(exc).__name__
            LOG.warning("%s to %s failed: %s", label, endpoint, attempt.error)
            continue
        attempt.rcode = dns.rcode.to_text(response.rcode())
        attempt.ede_code, attempt.ede_text = _extended_error(response)
        if attempt.ok:
            LOG.info("%s accepted by %s", label, endpoint)
            return UpdateResult(endpoint=endpoint, response=response, attempts=attempts)
        if attempt.ede_code is not None:
            LOG.warning(
                "%s to %s returned %s (EDE %d: %s)", label, endpoint, attempt.rcode, attempt.ede_code, attempt.ede_text
            )
        else:
            LOG.warning("%s to %s returned %s", label, endpoint, attempt.rcode)
    raise AllCandidatesExhaustedError(
        f"{label} rejected or unanswered by all {len(attempts)} candidates", attempts=attempts
    )


def send_update(
    signed: SignedUpdate | bytes,
    candidates: Sequence[Endpoint],
    timeout: float,
    exchange: ExchangeFn = raw_exchange,
    cancel: threading.Event | None = None,
) -> UpdateResult:
    """Deliver a signed UPDATE to the first candidate that accepts it."""
    wire = signed.wire if isinstance(signed, SignedUpdate) else signed
    return send_with_fallback(wire, candidates, timeout, exchange, cancel, label="UPDATE")


def build_notify(zone: str, rdtype: str = "CSYNC") -> dns.message.Message:
    """Return a NOTIFY announcing a changed RRset at the zone apex."""
    message = dns.message.make_query(fqdn(zone), dns.rdatatype.from_text(rdtype))
    message.flags = dns.flags.AA
    message.set_opcode(dns.opcode.NOTIFY)
    return message


def send_notify(
    zone: str,
    candidates: Sequence[Endpoint],
    timeout: float,
    rdtype: str = "CSYNC",
    exchange: ExchangeFn = raw_exchange,
    cancel: threading.Event | None = None,
) -> UpdateResult:
    """Deliver a NOTIFY for the zone using the same fallback as UPDATE."""
    wire = build_notify(zone, rdtype).to_wire()
    return send_with_fallback(wire, candidates, timeout, exchange, cancel, label=f"NOTIFY({rdtype})")
