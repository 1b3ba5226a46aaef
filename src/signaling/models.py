"""Domain types for call signaling.

Defines roles, appointments as read from the appointment store, participant
handles, and the per-room call state variant.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Role(Enum):
    """Closed set of participant roles.

    Unknown role strings parse to PATIENT so that an unrecognised role never
    gains clinician capabilities.
    """

    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: str | None) -> "Role":
        """Parse a client-supplied role string (case-insensitive)."""
        if not value:
            return cls.PATIENT
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.PATIENT


class AppointmentStatus(Enum):
    """Appointment status values written by the booking backend."""

    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    RESCHEDULED = "rescheduled"


@dataclass(frozen=True)
class Appointment:
    """Read-only appointment record."""

    id: str
    user_id: str
    doctor_id: str
    status: str = AppointmentStatus.SCHEDULED.value
    meeting_room_id: str | None = None
    appointment_date: str | None = None
    appointment_time: str | None = None

    @property
    def is_completed(self) -> bool:
        return (self.status or "").strip().lower() == AppointmentStatus.COMPLETED.value

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Appointment":
        """Build an appointment from a store row.

        Args:
            row: Row mapping with at least id, user_id and doctor_id

        Raises:
            KeyError: If a required column is missing
        """
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            doctor_id=str(row["doctor_id"]),
            status=str(row.get("status") or AppointmentStatus.SCHEDULED.value),
            meeting_room_id=row.get("meeting_room_id"),
            appointment_date=_optional_str(row.get("appointment_date")),
            appointment_time=_optional_str(row.get("appointment_time")),
        )


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)


@dataclass(frozen=True)
class Identity:
    """Verified identity attached to a connection by authentication."""

    user_id: str
    role: Role | None = None


@dataclass
class ParticipantHandle:
    """Server-side record of one connection's presence in a room."""

    connection_id: str
    user_id: str
    user_name: str
    role: Role
    room_key: str
    appointment_id: str
    joined_seq: int = 0

    def to_roster_entry(self) -> dict[str, str]:
        """Roster entry as sent in room-users events."""
        return {
            "socketId": self.connection_id,
            "userId": self.user_id,
            "userName": self.user_name,
        }


@dataclass(frozen=True)
class Inactive:
    """No call in progress."""

    is_active: bool = field(default=False, init=False)

    @property
    def started_by(self) -> None:
        return None


@dataclass(frozen=True)
class Active:
    """A call is in progress, started by the given user."""

    started_by: str
    started_by_name: str = ""
    is_active: bool = field(default=True, init=False)


CallState = Inactive | Active

INACTIVE = Inactive()


@dataclass
class Room:
    """Connections sharing one appointment's call session."""

    key: str
    participants: dict[str, ParticipantHandle] = field(default_factory=dict)
    call_state: CallState = INACTIVE

    @property
    def is_empty(self) -> bool:
        return not self.participants

    @property
    def is_evictable(self) -> bool:
        """Empty rooms without an active call can be dropped."""
        return self.is_empty and not self.call_state.is_active

    def summary(self) -> dict[str, Any]:
        """Room summary for health reporting."""
        return {
            "room_key": self.key,
            "participants": len(self.participants),
            "is_active": self.call_state.is_active,
            "started_by": self.call_state.started_by,
        }
