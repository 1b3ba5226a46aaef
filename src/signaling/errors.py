"""Signaling error taxonomy.

Every error here is local to a single client event: the coordinator reports it
to the caller as an ``error`` message and the connection stays open.
"""


class SignalingError(Exception):
    """Base class for errors reported to the calling connection."""

    code = "SIGNALING_ERROR"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class NotFound(SignalingError):
    """Room key resolves to no appointment."""

    code = "NOT_FOUND"


class Forbidden(SignalingError):
    """Role or ownership check failed."""

    code = "FORBIDDEN"


class InvalidState(SignalingError):
    """Appointment is not in a callable state (completed)."""

    code = "INVALID_STATE"


class TargetUnreachable(SignalingError):
    """Relay target connection is gone. Never surfaced to clients."""

    code = "TARGET_UNREACHABLE"


class InvalidMessage(SignalingError):
    """Client message could not be parsed or validated."""

    code = "INVALID_MESSAGE"


class StoreUnavailable(SignalingError):
    """Appointment store could not be read."""

    code = "STORE_UNAVAILABLE"


class StoreError(Exception):
    """Structured failure returned by the appointment store."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message
