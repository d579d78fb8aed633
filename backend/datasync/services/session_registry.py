"""Per-session data store instances shared by the API."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Optional, Tuple

from datasync.core.config import Settings, get_settings
from datasync.core.logging import logger
from datasync.core.tenancy import SessionIdentity
from datasync.services.broadcast import LocalBroadcastHub
from datasync.services.data_store import DataStore
from datasync.services.remote_bootstrap import BootstrapLoader
from datasync.services.snapshot_store import SQLiteSnapshotStore


@dataclass
class SessionEntry:
    store: DataStore
    loader: BootstrapLoader


class StoreRegistry:
    """Hands out one activated ``DataStore`` per tenant and tears it down on logout."""

    def __init__(
        self,
        snapshots: Optional[SQLiteSnapshotStore] = None,
        hub: Optional[LocalBroadcastHub] = None,
        *,
        settings: Optional[Settings] = None,
        loader_factory: Callable[[], BootstrapLoader] = BootstrapLoader,
    ) -> None:
        self.settings = settings or get_settings()
        self.auto_bootstrap = self.settings.bootstrap_enabled()
        self._loader_factory = loader_factory
        self.snapshots = snapshots or SQLiteSnapshotStore(self.settings.snapshot_db_path)
        self.hub = hub or LocalBroadcastHub()
        self._lock = Lock()
        self._sessions: Dict[Tuple[str, str], SessionEntry] = {}

    def _new_entry(self, identity: SessionIdentity) -> SessionEntry:
        store = DataStore(self.snapshots, self.hub.channel, settings=self.settings)
        store.activate(identity)
        return SessionEntry(store=store, loader=self._loader_factory())

    def entry(self, identity: SessionIdentity) -> SessionEntry:
        key = identity.tenant_key
        with self._lock:
            entry = self._sessions.get(key)
            if entry is None:
                entry = self._new_entry(identity)
                self._sessions[key] = entry
            elif entry.store.identity != identity:
                # Same tenant, new session/profile: start from the persisted state again.
                entry.loader.cancel()
                entry.loader = self._loader_factory()
                entry.store.activate(identity)
            return entry

    def start_bootstrap(self, entry: SessionEntry) -> Optional[asyncio.Task]:
        """Kick off the remote load for a signed-in session the first time it is seen."""
        if not self.auto_bootstrap:
            return None
        return entry.loader.start(entry.store)

    def close(self, identity: SessionIdentity) -> bool:
        with self._lock:
            entry = self._sessions.pop(identity.tenant_key, None)
        if entry is None:
            return False
        entry.loader.cancel()
        entry.store.teardown()
        logger.info("Session closed", org_id=identity.org_id, user_id=identity.user_id)
        return True

    def close_all(self) -> None:
        with self._lock:
            entries = list(self._sessions.values())
            self._sessions.clear()
        for entry in entries:
            entry.loader.cancel()
            entry.store.teardown()
