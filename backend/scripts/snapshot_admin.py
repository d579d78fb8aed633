#!/usr/bin/env python3
"""Inspect, purge or re-bootstrap persisted tenant snapshots."""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
import sys
from typing import Any, Dict

# Ensure `datasync` package is importable when script is run directly.
CURRENT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = CURRENT_DIR.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from datasync.core.config import get_settings
from datasync.core.logging import configure_logging
from datasync.core.tenancy import SessionIdentity, storage_key
from datasync.services.change_events import ALL_COLLECTIONS
from datasync.services.data_store import DataStore
from datasync.services.remote_bootstrap import BootstrapLoader
from datasync.services.snapshot_store import SQLiteSnapshotStore


def summarize(snapshot: Dict[str, Any]) -> Dict[str, Any]:
    counts = {
        name: len(snapshot.get(name) or [])
        for name in ALL_COLLECTIONS
        if isinstance(snapshot.get(name), list)
    }
    return {"saved_at": snapshot.get("savedAt"), "counts": counts}


def _identity(args: argparse.Namespace) -> SessionIdentity:
    return SessionIdentity(
        org_id=(args.org or "").strip() or None,
        user_id=(args.user or "").strip() or None,
        role="admin",
        session_id=(getattr(args, "token", "") or "").strip() or None,
    )


def cmd_list(snapshots: SQLiteSnapshotStore, args: argparse.Namespace) -> Dict[str, Any]:
    keys = snapshots.keys()
    return {"keys": keys, "total": len(keys)}


def cmd_show(snapshots: SQLiteSnapshotStore, args: argparse.Namespace) -> Dict[str, Any]:
    key = storage_key(get_settings().storage_key_base, _identity(args))
    snapshot = snapshots.load(key)
    if snapshot is None:
        return {"key": key, "found": False}
    return {"key": key, "found": True, **summarize(snapshot)}


def cmd_purge(snapshots: SQLiteSnapshotStore, args: argparse.Namespace) -> Dict[str, Any]:
    key = storage_key(get_settings().storage_key_base, _identity(args))
    if key is None:
        raise SystemExit("A user id is required to address a tenant snapshot")
    existed = snapshots.load(key) is not None
    snapshots.delete(key)
    return {"key": key, "deleted": existed}


def cmd_bootstrap(snapshots: SQLiteSnapshotStore, args: argparse.Namespace) -> Dict[str, Any]:
    identity = _identity(args)
    if not identity.authenticated:
        raise SystemExit("A user id is required to bootstrap a tenant")
    store = DataStore(snapshots).activate(identity)
    try:
        state = asyncio.run(BootstrapLoader().run(store))
        return {"key": store.storage_key, "state": state.model_dump(), **summarize(store.snapshot())}
    finally:
        store.teardown()


COMMANDS = {
    "list": cmd_list,
    "show": cmd_show,
    "purge": cmd_purge,
    "bootstrap": cmd_bootstrap,
}


def main() -> None:
    parser = argparse.ArgumentParser(description="Manage persisted tenant data snapshots")
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Snapshot database (defaults to SNAPSHOT_DB_PATH)",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("list", help="List stored tenant keys")
    for name, help_text in (
        ("show", "Show collection counts for a tenant"),
        ("purge", "Delete a tenant snapshot"),
        ("bootstrap", "Fetch fleet/CRM data for a tenant and persist it"),
    ):
        command = sub.add_parser(name, help=help_text)
        command.add_argument("--org", type=str, default="", help="Organization id")
        command.add_argument("--user", type=str, required=True, help="User id")
        if name == "bootstrap":
            command.add_argument("--token", type=str, default="", help="Session token sent to the data endpoints")
    args = parser.parse_args()

    settings = get_settings()
    configure_logging("WARNING")
    db_path = (args.db or Path(settings.snapshot_db_path)).expanduser()
    snapshots = SQLiteSnapshotStore(db_path)
    try:
        result = COMMANDS[args.command](snapshots, args)
    finally:
        snapshots.close()
    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    main()
