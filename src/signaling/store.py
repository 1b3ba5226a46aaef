"""Appointment store adapters.

The appointment table is owned by the booking backend. Signaling only reads
single rows by equality on one column. Two adapters are provided:

- PostgrestAppointmentStore: hosted Supabase project via its PostgREST API
- InMemoryAppointmentStore: local development and tests
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any

import aiohttp

from src.signaling.config import StoreConfig
from src.signaling.errors import StoreError

logger = logging.getLogger(__name__)

APPOINTMENT_COLUMNS = (
    "id,user_id,doctor_id,appointment_date,appointment_time,status,meeting_room_id"
)


class AppointmentStore(ABC):
    """Read-only view of the appointments table."""

    @abstractmethod
    async def select_one(self, column: str, value: str) -> dict[str, Any] | None:
        """Select at most one appointment row where ``column == value``.

        Args:
            column: Column to filter on (``id`` or ``meeting_room_id``)
            value: Exact value to match

        Returns:
            Row mapping, or None if no row matches

        Raises:
            StoreError: If the store rejects the query or is unreachable
        """

    async def close(self) -> None:
        """Release store resources."""
        return None


class InMemoryAppointmentStore(AppointmentStore):
    """Appointment store backed by a list of rows.

    Rows are mutable through ``upsert`` and ``update`` so tests can change
    appointment status between events, the way the booking backend would.
    """

    def __init__(self, rows: list[dict[str, Any]] | None = None) -> None:
        self._rows: dict[str, dict[str, Any]] = {}
        for row in rows or []:
            self.upsert(row)
        self.fail_with: StoreError | None = None

    def upsert(self, row: dict[str, Any]) -> None:
        self._rows[str(row["id"])] = dict(row)

    def update(self, appointment_id: str, **changes: Any) -> None:
        if appointment_id not in self._rows:
            raise StoreError("PGRST116", f"No appointment with id {appointment_id}")
        self._rows[appointment_id].update(changes)

    async def select_one(self, column: str, value: str) -> dict[str, Any] | None:
        if self.fail_with is not None:
            raise self.fail_with

        matches = [
            row
            for row in self._rows.values()
            if row.get(column) is not None and str(row[column]) == value
        ]
        if len(matches) > 1:
            raise StoreError("PGRST116", f"Multiple rows match {column}={value}")
        return dict(matches[0]) if matches else None


class PostgrestAppointmentStore(AppointmentStore):
    """Appointment store backed by a Supabase (PostgREST) REST endpoint."""

    def __init__(
        self,
        url: str,
        api_key: str,
        table: str = "appointments",
        request_timeout_s: float = 5.0,
    ) -> None:
        """Initialize PostgREST store.

        Args:
            url: Supabase project URL (e.g. https://xyz.supabase.co)
            api_key: Service role or anon key
            table: Appointments table name
            request_timeout_s: Per-request timeout in seconds
        """
        self._endpoint = f"{url.rstrip('/')}/rest/v1/{table}"
        self._headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Accept": "application/json",
        }
        self._timeout = aiohttp.ClientTimeout(total=request_timeout_s)
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self._headers, timeout=self._timeout)
        return self._session

    async def select_one(self, column: str, value: str) -> dict[str, Any] | None:
        session = await self._get_session()
        params = {"select": APPOINTMENT_COLUMNS, column: f"eq.{value}", "limit": "2"}

        try:
            async with session.get(self._endpoint, params=params) as response:
                if response.status >= 400:
                    raise await self._error_from(response)
                body = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise StoreError("UNAVAILABLE", f"Appointment store unreachable: {e}") from e
        except ValueError as e:
            raise StoreError("BAD_RESPONSE", f"Appointment store sent invalid JSON: {e}") from e

        if not isinstance(body, list):
            raise StoreError("BAD_RESPONSE", f"Expected a row list, got {type(body).__name__}")
        if len(body) > 1:
            raise StoreError("PGRST116", f"Multiple rows match {column}={value}")

        logger.debug(
            "Appointment store query",
            extra={"column": column, "matched": bool(body)},
        )
        return body[0] if body else None

    @staticmethod
    async def _error_from(response: aiohttp.ClientResponse) -> StoreError:
        """Build a StoreError from an error response.

        PostgREST answers with a JSON ``{code, message}`` object; proxies in
        front of it may answer with HTML or plain text instead.
        """
        text = await response.text()
        try:
            body = json.loads(text)
        except ValueError:
            body = None
        if isinstance(body, dict):
            return StoreError(
                str(body.get("code", response.status)),
                body.get("message") or f"HTTP {response.status}",
            )
        return StoreError(str(response.status), f"HTTP {response.status}: {text[:200]}")

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


def create_store(config: StoreConfig) -> AppointmentStore:
    """Create the appointment store selected by configuration.

    Raises:
        ValueError: If the postgrest backend is selected without url/api_key
    """
    if config.backend == "postgrest":
        if not config.url or not config.api_key:
            raise ValueError(
                "store.backend is 'postgrest' but store.url or store.api_key is missing. "
                "Set SUPABASE_URL and SUPABASE_KEY or configure them in the YAML file."
            )
        return PostgrestAppointmentStore(
            url=config.url,
            api_key=config.api_key,
            table=config.table,
            request_timeout_s=config.request_timeout_s,
        )

    logger.info(
        "Using in-memory appointment store",
        extra={"seeded_rows": len(config.seed_appointments)},
    )
    return InMemoryAppointmentStore(config.seed_appointments)
