"""WebSocket message protocol definitions.

Defines Pydantic models for the signaling events exchanged over WebSocket.
Every frame is a JSON object whose ``type`` names the event; the remaining
fields use the camelCase names browser clients already send.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from src.signaling.errors import InvalidMessage


class _Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class _RoomMessage(_Message):
    room_id: str = Field(..., alias="roomId", min_length=1, description="Room key")

    @field_validator("room_id", mode="before")
    @classmethod
    def coerce_room_id(cls, v: Any) -> Any:
        """Accept numeric room ids and strip whitespace."""
        if isinstance(v, int | float) and not isinstance(v, bool):
            v = str(v)
        if isinstance(v, str):
            return v.strip()
        return v


# ---------------------------------------------------------------------------
# Client → Server
# ---------------------------------------------------------------------------


class JoinRoomMessage(_RoomMessage):
    """Client → Server: join an appointment's room."""

    type: Literal["join-room"] = "join-room"
    user_id: str | None = Field(default=None, alias="userId", description="Claimed user id")
    user_name: str = Field(default="Participant", alias="userName", max_length=200)
    user_role: str | None = Field(default=None, alias="userRole", description="Claimed role")


class StartCallMessage(_RoomMessage):
    """Client → Server: start the call (doctor/admin)."""

    type: Literal["start-call"] = "start-call"


class EndCallMessage(_RoomMessage):
    """Client → Server: end the call (doctor/admin)."""

    type: Literal["end-call"] = "end-call"


class LeaveRoomMessage(_Message):
    """Client → Server: leave the current room without disconnecting."""

    type: Literal["leave-room"] = "leave-room"


class OfferMessage(_Message):
    """Client → Server: SDP offer for one peer."""

    type: Literal["offer"] = "offer"
    target: str = Field(..., min_length=1, description="Target connection id")
    offer: Any = Field(..., description="Opaque SDP offer")


class AnswerMessage(_Message):
    """Client → Server: SDP answer for one peer."""

    type: Literal["answer"] = "answer"
    target: str = Field(..., min_length=1, description="Target connection id")
    answer: Any = Field(..., description="Opaque SDP answer")


class IceCandidateMessage(_Message):
    """Client → Server: ICE candidate for one peer."""

    type: Literal["ice-candidate"] = "ice-candidate"
    target: str = Field(..., min_length=1, description="Target connection id")
    candidate: Any = Field(..., description="Opaque ICE candidate")


class AudioStatusMessage(_Message):
    """Client → Server: microphone mute flag."""

    type: Literal["user-audio-status"] = "user-audio-status"
    is_muted: bool = Field(..., alias="isMuted")


class VideoStatusMessage(_Message):
    """Client → Server: camera off flag."""

    type: Literal["user-video-status"] = "user-video-status"
    is_video_off: bool = Field(..., alias="isVideoOff")


# Union type for all client → server messages
ClientMessage = Annotated[
    JoinRoomMessage
    | StartCallMessage
    | EndCallMessage
    | LeaveRoomMessage
    | OfferMessage
    | AnswerMessage
    | IceCandidateMessage
    | AudioStatusMessage
    | VideoStatusMessage,
    Field(discriminator="type"),
]

_client_message_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


def parse_client_message(data: dict[str, Any]) -> ClientMessage:
    """Validate a decoded client frame.

    Args:
        data: Decoded JSON object

    Returns:
        The matching client message model

    Raises:
        InvalidMessage: If the type is unknown or fields fail validation
    """
    try:
        return _client_message_adapter.validate_python(data)
    except ValidationError as e:
        errors = e.errors()
        if errors and errors[0].get("type") == "union_tag_invalid":
            raise InvalidMessage(f"Unknown event type: {data.get('type')!r}") from e
        if errors and errors[0].get("type") == "union_tag_not_found":
            raise InvalidMessage("Message is missing the 'type' field") from e
        fields = ", ".join(".".join(str(p) for p in err["loc"][1:]) for err in errors)
        raise InvalidMessage(f"Invalid {data.get('type')} message: {fields}") from e


# ---------------------------------------------------------------------------
# Server → Client
# ---------------------------------------------------------------------------


class RosterEntry(_Message):
    socket_id: str = Field(..., alias="socketId")
    user_id: str = Field(..., alias="userId")
    user_name: str = Field(..., alias="userName")


class ConnectedMessage(_Message):
    """Server → Client: connection accepted, carries the client's own id."""

    type: Literal["connected"] = "connected"
    socket_id: str = Field(..., alias="socketId")


class CallStateMessage(_Message):
    """Server → Client: current call state, sent to a joiner only."""

    type: Literal["call-state"] = "call-state"
    is_active: bool = Field(..., alias="isActive")
    started_by: str | None = Field(default=None, alias="startedBy")


class UserJoinedMessage(_Message):
    """Server → Client: a participant joined an active call."""

    type: Literal["user-joined"] = "user-joined"
    user_id: str = Field(..., alias="userId")
    user_name: str = Field(..., alias="userName")
    socket_id: str = Field(..., alias="socketId")


class UserLeftMessage(_Message):
    """Server → Client: a participant left the room."""

    type: Literal["user-left"] = "user-left"
    user_id: str = Field(..., alias="userId")
    user_name: str = Field(..., alias="userName")
    socket_id: str = Field(..., alias="socketId")


class RoomUsersMessage(_Message):
    """Server → Client: roster of connections in the room.

    Sent as ``{"type": "room-users", "users": [...]}`` rather than a bare
    array, so every frame is an object carrying its event ``type``.
    """

    type: Literal["room-users"] = "room-users"
    users: list[RosterEntry] = Field(default_factory=list)


class CallStartedMessage(_Message):
    """Server → Client: the call started."""

    type: Literal["call-started"] = "call-started"
    started_by: str = Field(..., alias="startedBy")
    started_by_name: str = Field(..., alias="startedByName")


class CallEndedMessage(_Message):
    """Server → Client: the call ended."""

    type: Literal["call-ended"] = "call-ended"
    ended_by: str = Field(..., alias="endedBy")
    ended_by_name: str = Field(..., alias="endedByName")


class _RelayedMessage(_Message):
    sender: str = Field(..., description="Sender connection id")
    sender_id: str | None = Field(default=None, alias="senderId")
    sender_name: str | None = Field(default=None, alias="senderName")


class RelayedOfferMessage(_RelayedMessage):
    type: Literal["offer"] = "offer"
    offer: Any


class RelayedAnswerMessage(_RelayedMessage):
    type: Literal["answer"] = "answer"
    answer: Any


class RelayedIceCandidateMessage(_RelayedMessage):
    type: Literal["ice-candidate"] = "ice-candidate"
    candidate: Any


class AudioStatusBroadcast(_Message):
    type: Literal["user-audio-status"] = "user-audio-status"
    user_id: str = Field(..., alias="userId")
    user_name: str = Field(..., alias="userName")
    is_muted: bool = Field(..., alias="isMuted")


class VideoStatusBroadcast(_Message):
    type: Literal["user-video-status"] = "user-video-status"
    user_id: str = Field(..., alias="userId")
    user_name: str = Field(..., alias="userName")
    is_video_off: bool = Field(..., alias="isVideoOff")


class ErrorMessage(_Message):
    """Server → Client: Error notification.

    Sent when a client event is rejected. The connection stays open.
    """

    type: Literal["error"] = "error"
    message: str = Field(..., description="Error description")
    code: str = Field(default="INTERNAL_ERROR", description="Error code")


# Union type for all server → client messages
ServerMessage = (
    ConnectedMessage
    | CallStateMessage
    | UserJoinedMessage
    | UserLeftMessage
    | RoomUsersMessage
    | CallStartedMessage
    | CallEndedMessage
    | RelayedOfferMessage
    | RelayedAnswerMessage
    | RelayedIceCandidateMessage
    | AudioStatusBroadcast
    | VideoStatusBroadcast
    | ErrorMessage
)


def encode_message(message: ServerMessage) -> str:
    """Serialize a server message with wire (camelCase) field names."""
    return message.model_dump_json(by_alias=True)
