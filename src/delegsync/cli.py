"""Command-line entry point for delegsync."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any

from .config import load_config
from .controller import DelegationController, configure_logging
from .exporter import dump
from .keystore import KeyStore
from .models import DelegSyncError, KeyState
from .operations import (
    DelegationStatus,
    DelegationSync,
    KeyDelete,
    KeyGenerate,
    KeyImport,
    KeyList,
    KeyLoadTrusted,
    KeyRoll,
    KeySetState,
    KeyTrust,
    KeyUpload,
    KeyVerify,
    dispatch,
)


def _build_parser() -> argparse.ArgumentParser:
    """Create the CLI parser."""
    parser = argparse.ArgumentParser(description="Keep parent delegations in sync with child zones.")
    parser.add_argument("--log-level", help="Override log level (default from config).")
    parser.add_argument(
        "--format",
        choices=["yaml", "json"],
        default="yaml",
        help="Serialization format for command output.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    status_parser = subparsers.add_parser("status", help="Compare child and parent delegation data.")
    status_parser.add_argument("--zone", required=True, help="Child zone name.")
    status_parser.add_argument("--discover", action="store_true", help="Also look up the parent's update target.")

    sync_parser = subparsers.add_parser("sync", help="Update or notify the parent when the delegation differs.")
    sync_parser.add_argument("--zone", required=True, help="Child zone name.")
    sync_parser.add_argument("--scheme", choices=["update", "notify"], help="Force one sync scheme.")

    upload_parser = subparsers.add_parser("upload-key", help="Publish the active SIG(0) key at the parent.")
    upload_parser.add_argument("--zone", required=True, help="Child zone name.")

    roll_parser = subparsers.add_parser("roll-key", help="Replace the active SIG(0) key at the parent.")
    roll_parser.add_argument("--zone", required=True, help="Child zone name.")

    keys_parser = subparsers.add_parser("keys", help="Manage the key store.")
    keys = keys_parser.add_subparsers(dest="keys_command", required=True)

    generate_parser = keys.add_parser("generate", help="Generate a key pair.")
    generate_parser.add_argument("--zone", required=True, help="Key owner.")
    generate_parser.add_argument("--algorithm", help="DNSSEC algorithm (default from config).")
    generate_parser.add_argument("--type", dest="keytype", choices=["KEY", "DNSKEY"], default="KEY")

    import_parser = keys.add_parser("import", help="Import a BIND key pair or a public key.")
    import_parser.add_argument("--owner", help="Key owner (required for bare key rdata).")
    source = import_parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--file", help="Path to a BIND K*.key or K*.private file.")
    source.add_argument("--key", help="KEY record text.")

    list_parser = keys.add_parser("list", help="List stored keys.")
    list_parser.add_argument("--owner", help="Only list keys of this owner.")

    for name, help_text in (
        ("delete", "Delete a key."),
        ("trust", "Trust a validated key."),
        ("untrust", "Stop trusting a key."),
        ("verify", "Verify a key and mark it validated."),
    ):
        sub = keys.add_parser(name, help=help_text)
        _register_key_arguments(sub)

    trusted_parser = keys.add_parser("load-trusted", help="Import and trust the keys listed in a trusted keys file.")
    trusted_parser.add_argument("--file", help="Trusted keys YAML (default TRUSTED_KEYS_FILE).")

    state_parser = keys.add_parser("set-state", help="Change the lifecycle state of a key.")
    _register_key_arguments(state_parser)
    state_parser.add_argument("--state", required=True, choices=[state.value for state in KeyState])

    return parser


def _register_key_arguments(subparser: argparse.ArgumentParser) -> None:
    """Register arguments identifying a single stored key."""
    subparser.add_argument("--owner", required=True, help="Key owner.")
    subparser.add_argument("--keyid", required=True, type=int, help="Key tag.")


def _request_from_args(args: argparse.Namespace) -> Any:
    """Translate parsed arguments into an operation request."""
    if args.command == "status":
        return DelegationStatus(zone=args.zone, discover=args.discover)
    if args.command == "sync":
        return DelegationSync(zone=args.zone, scheme=args.scheme)
    if args.command == "upload-key":
        return KeyUpload(zone=args.zone)
    if args.command == "roll-key":
        return KeyRoll(zone=args.zone)
    sub = args.keys_command
    if sub == "generate":
        return KeyGenerate(zone=args.zone, algorithm=args.algorithm, keytype=args.keytype)
    if sub == "import":
        return KeyImport(owner=args.owner, path=Path(args.file) if args.file else None, text=args.key)
    if sub == "load-trusted":
        return KeyLoadTrusted(path=Path(args.file) if args.file else None)
    if sub == "list":
        return KeyList(owner=args.owner)
    if sub == "delete":
        return KeyDelete(owner=args.owner, keyid=args.keyid)
    if sub == "set-state":
        return KeySetState(owner=args.owner, keyid=args.keyid, state=KeyState(args.state))
    if sub in {"trust", "untrust"}:
        return KeyTrust(owner=args.owner, keyid=args.keyid, trusted=sub == "trust")
    return KeyVerify(owner=args.owner, keyid=args.keyid)


def _emit(result: Any, fmt: str) -> None:
    """Print a command result, showing status reports as text."""
    if isinstance(result, dict) and "report" in result:
        print(result.pop("report"), end="")
        if fmt == "json":
            print(dump(result, fmt))
        return
    print(dump(result, fmt), end="" if fmt == "yaml" else "\n")


def main() -> None:
    """CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args()
    try:
        config = load_config()
        configure_logging(args.log_level or config.log_level)
        controller = DelegationController(config, KeyStore(config.keystore_path))
        response = dispatch(controller, _request_from_args(args))
        if response.error:
            raise DelegSyncError(response.error_msg)
        _emit(response.result, args.format)
    except DelegSyncError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)
    except Exception as exc:  # noqa: BLE001
        print(f"Unexpected error: {exc}", file=sys.stderr)
        sys.exit(3)


if __name__ == "__main__":
    main()
