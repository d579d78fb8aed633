"""Remote bootstrap of fleet and CRM collections at session start."""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel

from datasync.core.config import get_settings
from datasync.core.logging import logger
from datasync.core.tenancy import SessionIdentity
from datasync.services.data_store import DataStore
from datasync.services.remote_mapping import (
    FLEET_SOURCE,
    map_customer_row,
    map_fuel_row,
    map_lead_row,
    map_rows,
    map_vehicle_row,
)


class BootstrapError(Exception):
    """Raised when a bootstrap endpoint cannot be read."""


class BootstrapState(BaseModel):
    """Loader outcome as data; errors are strings the UI may render."""

    loading: bool = False
    fleet_loaded: bool = False
    crm_loaded: bool = False
    fleet_error: Optional[str] = None
    crm_error: Optional[str] = None
    cancelled: bool = False
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    @property
    def has_error(self) -> bool:
        return bool(self.fleet_error or self.crm_error)


class RemoteDataClient:
    """Reads the fleet/CRM bootstrap payloads for a signed-in session."""

    def __init__(
        self,
        *,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = get_settings()
        self._timeout = timeout if timeout is not None else self.settings.bootstrap_timeout_seconds
        self._transport = transport

    def _headers(self, identity: SessionIdentity) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if identity.session_id:
            headers["Authorization"] = f"Bearer {identity.session_id}"
        if identity.org_id:
            headers["X-Org-ID"] = identity.org_id
        return headers

    async def fetch_json(self, url: str, identity: SessionIdentity) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(url, headers=self._headers(identity))
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise BootstrapError(f"Request to {url} failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise BootstrapError(f"Request failed ({response.status_code}) {url}: {response.text[:200]}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise BootstrapError(f"Invalid JSON from {url}") from exc
        if not isinstance(payload, dict):
            raise BootstrapError(f"Unexpected payload shape from {url}")
        if payload.get("ok") is False:
            raise BootstrapError(str(payload.get("error") or f"Request rejected by {url}"))
        return payload


class BootstrapLoader:
    """Fetch both domains concurrently and seed the store.

    Domains load and fail independently. Results that arrive after
    ``cancel()`` or after the store switched identity are discarded.
    """

    def __init__(
        self,
        client: Optional[RemoteDataClient] = None,
        *,
        fleet_url: Optional[str] = None,
        crm_url: Optional[str] = None,
    ) -> None:
        settings = get_settings()
        self.client = client or RemoteDataClient()
        self.fleet_url = (fleet_url if fleet_url is not None else settings.fleet_data_url).strip()
        self.crm_url = (crm_url if crm_url is not None else settings.crm_data_url).strip()
        self.state = BootstrapState()
        self._generation = 0
        self._task: Optional[asyncio.Task] = None

    def start(self, store: DataStore) -> Optional[asyncio.Task]:
        """Schedule ``run`` on the running loop once per loader; None if skipped."""
        if self._task is not None or not store.identity.authenticated:
            return None
        self._task = asyncio.get_running_loop().create_task(self.run(store))
        return self._task

    def cancel(self) -> None:
        self._generation += 1
        if self.state.loading:
            self.state.cancelled = True
            self.state.loading = False

    def _is_current(self, generation: int, store: DataStore, identity: SessionIdentity) -> bool:
        return generation == self._generation and store.identity == identity

    async def run(self, store: DataStore) -> BootstrapState:
        identity = store.identity
        if not identity.authenticated:
            logger.info("Skipping bootstrap without an authenticated session")
            return self.state

        self._generation += 1
        generation = self._generation
        self.state = BootstrapState(loading=True, started_at=datetime.now(timezone.utc).isoformat())
        state = self.state

        await asyncio.gather(
            self._load_fleet(store, identity, generation, state),
            self._load_crm(store, identity, generation, state),
        )

        if self._is_current(generation, store, identity):
            state.loading = False
            state.finished_at = datetime.now(timezone.utc).isoformat()
            logger.info(
                "Bootstrap finished",
                storage_key=store.storage_key,
                fleet_loaded=state.fleet_loaded,
                crm_loaded=state.crm_loaded,
                fleet_error=state.fleet_error,
                crm_error=state.crm_error,
            )
        else:
            state.loading = False
            state.cancelled = True
        return state

    async def _load_fleet(
        self, store: DataStore, identity: SessionIdentity, generation: int, state: BootstrapState
    ) -> None:
        if not self.fleet_url:
            return
        try:
            payload = await self.client.fetch_json(self.fleet_url, identity)
        except BootstrapError as exc:
            if self._is_current(generation, store, identity):
                state.fleet_error = str(exc)
                logger.warning("Fleet bootstrap failed", error=str(exc))
            return
        if not self._is_current(generation, store, identity):
            return

        vehicles = map_rows(payload.get("vehicles"), map_vehicle_row)
        fuel = map_rows(payload.get("fuel"), map_fuel_row)
        applied = store.replace_collection("vehicles", vehicles, expected_identity=identity)
        applied = applied and store.replace_collection(
            "expenses",
            fuel,
            expected_identity=identity,
            keep=lambda row: row.get("source") != FLEET_SOURCE,
        )
        state.fleet_loaded = applied

    async def _load_crm(
        self, store: DataStore, identity: SessionIdentity, generation: int, state: BootstrapState
    ) -> None:
        if not self.crm_url:
            return
        try:
            payload = await self.client.fetch_json(self.crm_url, identity)
        except BootstrapError as exc:
            if self._is_current(generation, store, identity):
                state.crm_error = str(exc)
                logger.warning("CRM bootstrap failed", error=str(exc))
            return
        if not self._is_current(generation, store, identity):
            return

        leads = map_rows(payload.get("leads"), map_lead_row)
        customers = map_rows(payload.get("customers"), map_customer_row)
        applied = store.replace_collection("leads", leads, expected_identity=identity)
        applied = applied and store.replace_collection("customers", customers, expected_identity=identity)
        state.crm_loaded = applied
