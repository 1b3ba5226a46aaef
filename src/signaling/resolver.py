"""Room key to appointment resolution."""

import logging
import re

from src.signaling.errors import NotFound, StoreError, StoreUnavailable
from src.signaling.models import Appointment
from src.signaling.store import AppointmentStore

logger = logging.getLogger(__name__)

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


def looks_like_uuid(value: str) -> bool:
    """Check whether a room key has the shape of an appointment UUID.

    Only used to pick the lookup order, never as an access check.
    """
    return bool(UUID_PATTERN.match(value))


class IdentityResolver:
    """Resolves a room key to its appointment.

    A room key is either the appointment's meeting-room token or the
    appointment id. Both lookups are tried; UUID-shaped keys try the id first.
    """

    def __init__(self, store: AppointmentStore) -> None:
        self._store = store

    async def resolve(self, room_key: object) -> Appointment:
        """Resolve a room key to an appointment with a fresh store read.

        Args:
            room_key: Untrusted room key from the client

        Returns:
            The matching appointment

        Raises:
            NotFound: If no appointment matches the key
            StoreUnavailable: If no match was found and a lookup failed
        """
        key = str(room_key if room_key is not None else "").strip()
        if not key:
            raise NotFound("Appointment not found. Room ID is empty.")

        if looks_like_uuid(key):
            order = ("id", "meeting_room_id")
        else:
            order = ("meeting_room_id", "id")

        failure: StoreError | None = None
        for column in order:
            try:
                row = await self._store.select_one(column, key)
            except StoreError as e:
                logger.warning(
                    "Appointment lookup failed",
                    extra={"room_key": key, "column": column, "code": e.code, "error": e.message},
                )
                failure = e
                continue

            if row is not None:
                try:
                    appointment = Appointment.from_row(row)
                except KeyError as e:
                    raise StoreUnavailable(f"Appointment row is missing column {e}") from e
                logger.debug(
                    "Resolved room key",
                    extra={"room_key": key, "column": column, "appointment_id": appointment.id},
                )
                return appointment

        if failure is not None:
            raise StoreUnavailable(
                "Could not look up the appointment right now. Please try again."
            )

        logger.info("No appointment for room key", extra={"room_key": key})
        raise NotFound(
            f"Appointment not found. Please check the appointment ID. Room ID: {key}"
        )

    async def refresh(self, appointment_id: str) -> Appointment:
        """Re-read an already resolved appointment by id.

        Raises:
            NotFound: If the appointment no longer exists
            StoreUnavailable: If the store could not be read
        """
        try:
            row = await self._store.select_one("id", appointment_id)
        except StoreError as e:
            logger.warning(
                "Appointment refresh failed",
                extra={"appointment_id": appointment_id, "code": e.code, "error": e.message},
            )
            raise StoreUnavailable(
                "Could not look up the appointment right now. Please try again."
            ) from e

        if row is None:
            raise NotFound(f"Appointment not found. Room ID: {appointment_id}")
        try:
            return Appointment.from_row(row)
        except KeyError as e:
            raise StoreUnavailable(f"Appointment row is missing column {e}") from e
