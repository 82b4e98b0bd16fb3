"""SIG(0) transaction signatures for DNS UPDATE messages."""

from __future__ import annotations

import logging
import struct
import time
from dataclasses import dataclass

import dns.dnssecalgs
import dns.dnssectypes
import dns.exception
import dns.message
import dns.name
import dns.rdata
import dns.rdataclass
import dns.rdatatype
from cryptography.exceptions import InvalidSignature
from dns.dnssecalgs.base import GenericPrivateKey
from dns.rdtypes.ANY.KEY import KEY
from dns.rdtypes.ANY.SIG import SIG

from .models import KeyRecord, KeyState, NoSigningKeyError, SigningError, fqdn

LOG = logging.getLogger("delegsync")

DEFAULT_LIFETIME = 300
CLOCK_SKEW = 60
_HEADER = struct.Struct("!HHHHHH")
_RR_FIXED = struct.Struct("!HHIH")


@dataclass
class SignedUpdate:
    """A rendered UPDATE with its SIG(0) appended as the last additional RR."""

    message: dns.message.Message
    wire: bytes
    keyid: int
    signer: str


def private_key_from_record(key: KeyRecord) -> GenericPrivateKey:
    """Return the dnspython private key object for an owned key."""
    if key.private_key is None:
        raise NoSigningKeyError(f"Key {key.owner} {key.keyid} has no private key")
    try:
        algorithm = dns.dnssectypes.Algorithm.make(key.algorithm)
        cls = dns.dnssecalgs.get_algorithm_cls(algorithm)
        return cls.from_pem(key.private_key.encode())
    except (ValueError, TypeError, dns.exception.DNSException) as exc:
        raise SigningError(f"Cannot load private key {key.owner} {key.keyid}: {exc}") from exc


def _append_rr(wire: bytes, rdtype: int, rdclass: int, rdata: bytes) -> bytes:
    """Append a root-owned RR with TTL 0 and bump ARCOUNT."""
    header = list(_HEADER.unpack_from(wire))
    header[5] += 1
    record = b"\x00" + _RR_FIXED.pack(rdtype, rdclass, 0, len(rdata)) + rdata
    return _HEADER.pack(*header) + wire[_HEADER.size :] + record


def sign_update(
    message: dns.message.Message,
    key: KeyRecord,
    now: int | None = None,
    lifetime: int = DEFAULT_LIFETIME,
) -> SignedUpdate:
    """Render an UPDATE and sign it with SIG(0) using an active owned key.

    The signature covers the SIG rdata without its signature field followed by
    the unsigned message. The SIG record is appended after the OPT record, so
    the returned wire must be sent as is.
    """
    if key.state != KeyState.ACTIVE or not key.owned:
        raise NoSigningKeyError(f"Key {key.owner} {key.keyid} is not an active owned key")
    private = private_key_from_record(key)
    now = int(time.time()) if now is None else now
    signer = fqdn(key.owner)
    try:
        unsigned = message.to_wire()
        sig = SIG(
            dns.rdataclass.ANY,
            dns.rdatatype.SIG,
            0,
            dns.dnssectypes.Algorithm.make(key.algorithm),
            0,
            0,
            now + lifetime,
            now - CLOCK_SKEW,
            key.keyid,
            dns.name.from_text(signer),
            b"",
        )
        signature = private.sign(sig.to_wire() + unsigned)
        signed_rdata = sig.replace(signature=signature).to_wire()
    except (ValueError, TypeError, dns.exception.DNSException) as exc:
        raise SigningError(f"Signing update for {signer} with key {key.keyid} failed: {exc}") from exc
    wire = _append_rr(unsigned, dns.rdatatype.SIG, dns.rdataclass.ANY, signed_rdata)
    LOG.debug("Signed update id %d with %s key %d (%d bytes)", message.id, signer, key.keyid, len(wire))
    return SignedUpdate(message=message, wire=wire, keyid=key.keyid, signer=signer)


def _skip_rr(wire: bytes, offset: int, question: bool = False) -> tuple[int, int]:
    """Return (rdata offset, next offset) for the record starting at offset."""
    _, used = dns.name.from_wire(wire, offset)
    offset += used
    if question:
        return offset + 4, offset + 4
    _, _, _, rdlen = _RR_FIXED.unpack_from(wire, offset)
    start = offset + _RR_FIXED.size
    return start, start + rdlen


def verify_sig0(wire: bytes, key_rdata: KEY, now: int | None = None) -> bool:
    """Return True when the trailing SIG(0) of a message verifies with the key."""
    try:
        _, _, qdcount, ancount, nscount, arcount = _HEADER.unpack_from(wire)
        if arcount == 0:
            return False
        offset = _HEADER.size
        for _ in range(qdcount):
            _, offset = _skip_rr(wire, offset, question=True)
        last_start = rdata_start = offset
        for _ in range(ancount + nscount + arcount):
            last_start = offset
            rdata_start, offset = _skip_rr(wire, offset)
        rdtype, rdclass, _, rdlen = _RR_FIXED.unpack_from(wire, rdata_start - _RR_FIXED.size)
        if rdtype != dns.rdatatype.SIG or rdclass != dns.rdataclass.ANY:
            return False
        sig = dns.rdata.from_wire(dns.rdataclass.ANY, dns.rdatatype.SIG, wire, rdata_start, rdlen)
    except (struct.error, dns.exception.DNSException):
        return False
    now = int(time.time()) if now is None else now
    if not sig.inception <= now <= sig.expiration:
        return False
    if sig.key_tag != key_rdata.key_id() or sig.algorithm != key_rdata.algorithm:
        return False

    header = list(_HEADER.unpack_from(wire))
    header[5] -= 1
    unsigned = _HEADER.pack(*header) + wire[_HEADER.size : last_start]
    data = sig.replace(signature=b"").to_wire() + unsigned
    try:
        public_cls = dns.dnssecalgs.get_algorithm_cls(key_rdata.algorithm).public_cls
        public_cls.from_dnskey(key_rdata).verify(sig.signature, data)
    except InvalidSignature:
        return False
    except (ValueError, dns.exception.DNSException) as exc:
        LOG.warning("Cannot verify SIG(0) with key %d: %s", key_rdata.key_id(), exc)
        return False
    return True
