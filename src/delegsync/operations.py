"""Request types and the dispatcher that runs them against a controller."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from .controller import DelegationController
from .exporter import diff_to_dict, key_to_dict, keys_to_dict
from .keystore import verify_owned_key
from .models import DelegSyncError, KeyState

LOG = logging.getLogger("delegsync")


@dataclass(frozen=True)
class DelegationStatus:
    zone: str
    discover: bool = False


@dataclass(frozen=True)
class DelegationSync:
    zone: str
    scheme: str | None = None


@dataclass(frozen=True)
class KeyUpload:
    zone: str


@dataclass(frozen=True)
class KeyRoll:
    zone: str


@dataclass(frozen=True)
class KeyGenerate:
    zone: str
    algorithm: str | None = None
    keytype: str = "KEY"


@dataclass(frozen=True)
class KeyImport:
    owner: str | None = None
    path: Path | None = None
    text: str | None = None


@dataclass(frozen=True)
class KeyList:
    owner: str | None = None


@dataclass(frozen=True)
class KeyDelete:
    owner: str
    keyid: int


@dataclass(frozen=True)
class KeySetState:
    owner: str
    keyid: int
    state: KeyState


@dataclass(frozen=True)
class KeyTrust:
    owner: str
    keyid: int
    trusted: bool = True


@dataclass(frozen=True)
class KeyVerify:
    owner: str
    keyid: int


@dataclass(frozen=True)
class KeyLoadTrusted:
    path: Path | None = None


@dataclass
class Response:
    """Envelope returned for every request."""

    error: bool = False
    error_msg: str = ""
    result: Any = None
    time: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))


def _status(controller: DelegationController, request: DelegationStatus) -> dict[str, Any]:
    status = controller.analyse(request.zone, discover=request.discover)
    data = diff_to_dict(status.zone, status.diff)
    data["report"] = status.report
    return data


def _sync(controller: DelegationController, request: DelegationSync) -> dict[str, Any]:
    outcome = controller.sync(request.zone, scheme=request.scheme)
    data = diff_to_dict(outcome.zone, outcome.diff)
    data["status"] = outcome.status
    if outcome.sent is not None:
        data["accepted_by"] = str(outcome.sent.endpoint)
        data["attempts"] = len(outcome.sent.attempts)
    return data


def _upload(controller: DelegationController, request: KeyUpload) -> dict[str, Any]:
    outcome = controller.upload_key(request.zone)
    return {"zone": outcome.zone, "keyid": outcome.keyid, "accepted_by": str(outcome.sent.endpoint)}


def _roll(controller: DelegationController, request: KeyRoll) -> dict[str, Any]:
    outcome = controller.roll_key(request.zone)
    return {
        "zone": outcome.zone,
        "keyid": outcome.keyid,
        "retired": outcome.retired,
        "accepted_by": str(outcome.sent.endpoint),
    }


def _generate(controller: DelegationController, request: KeyGenerate) -> dict[str, Any]:
    return key_to_dict(controller.generate_key(request.zone, request.algorithm, request.keytype))


def _import(controller: DelegationController, request: KeyImport) -> dict[str, Any]:
    return key_to_dict(controller.import_key(owner=request.owner, path=request.path, text=request.text))


def _list(controller: DelegationController, request: KeyList) -> dict[str, Any]:
    return keys_to_dict(controller.keystore.list(request.owner))


def _delete(controller: DelegationController, request: KeyDelete) -> dict[str, Any]:
    controller.keystore.delete(request.owner, request.keyid)
    return {"owner": request.owner, "keyid": request.keyid, "deleted": True}


def _set_state(controller: DelegationController, request: KeySetState) -> dict[str, Any]:
    return key_to_dict(controller.keystore.set_state(request.owner, request.keyid, request.state))


def _trust(controller: DelegationController, request: KeyTrust) -> dict[str, Any]:
    return key_to_dict(controller.keystore.set_trust(request.owner, request.keyid, request.trusted))


def _verify(controller: DelegationController, request: KeyVerify) -> dict[str, Any]:
    valid = verify_owned_key(controller.keystore, request.owner, request.keyid)
    data = key_to_dict(controller.keystore.get(request.owner, request.keyid))
    data["verified"] = valid
    return data


def _load_trusted(controller: DelegationController, request: KeyLoadTrusted) -> dict[str, Any]:
    outcome = controller.load_trusted_keys(request.path)
    return {
        "trusted": [{"owner": owner, "keyid": keyid} for owner, keyid in outcome.trusted],
        "skipped": [{"owner": owner, "keyid": keyid} for owner, keyid in outcome.skipped],
        "rejected": list(outcome.rejected),
    }


HANDLERS: dict[type, Callable[[DelegationController, Any], Any]] = {
    DelegationStatus: _status,
    DelegationSync: _sync,
    KeyUpload: _upload,
    KeyRoll: _roll,
    KeyGenerate: _generate,
    KeyImport: _import,
    KeyList: _list,
    KeyDelete: _delete,
    KeySetState: _set_state,
    KeyTrust: _trust,
    KeyVerify: _verify,
    KeyLoadTrusted: _load_trusted,
}


def dispatch(controller: DelegationController, request: Any) -> Response:
    """Run a request and wrap its outcome or failure in a Response."""
    handler = HANDLERS.get(type(request))
    if handler is None:
        raise TypeError(f"unsupported request {type(request).__name__}")
    try:
        result = handler(controller, request)
    except DelegSyncError as exc:
        LOG.error("%s failed: %s", type(request).__name__, exc)
        return Response(error=True, error_msg=str(exc))
    return Response(result=result)
