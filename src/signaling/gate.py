"""Authorization decisions for joining, starting and ending calls.

All checks are pure functions of (appointment, user, role). Role permissions
come from a capability table so that every role must be listed explicitly.
"""

from dataclasses import dataclass
from enum import Enum

from src.signaling.errors import Forbidden, InvalidState, SignalingError
from src.signaling.models import Appointment, Role


class Capability(Enum):
    """Call permissions granted to a role."""

    JOIN_ANY = "join_any"  # join rooms of appointments the user is not part of
    START_OWN = "start_own"  # start calls for appointments assigned to the user
    START_ANY = "start_any"
    END = "end"


CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.PATIENT: frozenset(),
    Role.DOCTOR: frozenset({Capability.JOIN_ANY, Capability.START_OWN, Capability.END}),
    Role.ADMIN: frozenset(
        {Capability.JOIN_ANY, Capability.START_OWN, Capability.START_ANY, Capability.END}
    ),
}


@dataclass(frozen=True)
class Decision:
    """Outcome of an authorization check."""

    allowed: bool
    reason: str = ""
    error: type[SignalingError] | None = None

    @classmethod
    def allow(cls) -> "Decision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, error: type[SignalingError], reason: str) -> "Decision":
        return cls(allowed=False, reason=reason, error=error)

    def raise_for_denial(self) -> None:
        """Raise the denial as its signaling error. No-op when allowed."""
        if not self.allowed:
            error = self.error or Forbidden
            raise error(self.reason)


def has_capability(role: Role, capability: Capability) -> bool:
    """Check a role against the capability table.

    Raises:
        KeyError: If the role has no capability table entry
    """
    return capability in CAPABILITIES[role]


def can_join(appointment: Appointment, user_id: str, role: Role) -> Decision:
    """Decide whether a user may join the appointment's room."""
    if appointment.is_completed:
        return Decision.deny(
            InvalidState, "Cannot join this appointment. It has already been completed."
        )

    is_participant = user_id in (appointment.user_id, appointment.doctor_id)
    if is_participant or has_capability(role, Capability.JOIN_ANY):
        return Decision.allow()

    return Decision.deny(Forbidden, "You do not have permission to join this appointment.")


def can_start(appointment: Appointment, user_id: str, role: Role) -> Decision:
    """Decide whether a user may start the appointment's call.

    Past-dated appointments may still be started; only completion blocks it.
    """
    start_any = has_capability(role, Capability.START_ANY)
    if not start_any and not has_capability(role, Capability.START_OWN):
        return Decision.deny(Forbidden, "Only doctors can start the call")

    if appointment.is_completed:
        return Decision.deny(
            InvalidState, "Cannot start call. This appointment has already been completed."
        )

    if not start_any and user_id != appointment.doctor_id:
        return Decision.deny(Forbidden, "You are not authorized to start this appointment call.")

    return Decision.allow()


def can_end(role: Role) -> Decision:
    """Decide whether a role may end a call.

    Any doctor or admin in the room may end it, including a call started by
    another doctor.
    """
    if has_capability(role, Capability.END):
        return Decision.allow()
    return Decision.deny(Forbidden, "Only doctors can end the call")
