"""Session coordination and signaling relay.

Handles every client event on a connection: joining rooms, starting and
ending calls, relaying WebRTC negotiation to a single peer, broadcasting
presence and media status, and cleaning up on disconnect.

Per-room state machine:
- EMPTY → IDLE (first join)
- IDLE → LIVE (start-call by the assigned doctor or an admin)
- LIVE → IDLE (end-call by a doctor or admin)
- IDLE → EMPTY (last participant leaves; the room is evicted)

A disconnect never ends a call. LIVE rooms survive an all-disconnect gap so
a doctor can reconnect without the patient seeing the call end.

Thread-safety: This class is NOT thread-safe. Use from a single event loop.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal

from src.signaling.errors import Forbidden, InvalidMessage, SignalingError, TargetUnreachable
from src.signaling.gate import can_end, can_join, can_start
from src.signaling.models import INACTIVE, Active, ParticipantHandle, Role
from src.signaling.registry import RoomRegistry
from src.signaling.resolver import IdentityResolver, looks_like_uuid
from src.signaling.transport.base import Connection
from src.signaling.transport.websocket_protocol import (
    AnswerMessage,
    AudioStatusBroadcast,
    AudioStatusMessage,
    CallEndedMessage,
    CallStartedMessage,
    CallStateMessage,
    ClientMessage,
    ConnectedMessage,
    EndCallMessage,
    ErrorMessage,
    IceCandidateMessage,
    JoinRoomMessage,
    LeaveRoomMessage,
    OfferMessage,
    RelayedAnswerMessage,
    RelayedIceCandidateMessage,
    RelayedOfferMessage,
    RoomUsersMessage,
    ServerMessage,
    StartCallMessage,
    UserJoinedMessage,
    UserLeftMessage,
    VideoStatusBroadcast,
    VideoStatusMessage,
    parse_client_message,
)

logger = logging.getLogger(__name__)

MismatchPolicy = Literal["warn", "reject"]

_FAILURE_MESSAGES = {
    "join-room": "An error occurred while joining the appointment. Please try again.",
    "start-call": "An error occurred while starting the call. Please try again.",
    "end-call": "An error occurred while ending the call. Please try again.",
}


def _names_room(room_id: str, room_key: str, meeting_room_id: str | None) -> bool:
    """Check whether an event's roomId names the joined room.

    Appointment ids are UUIDs, which the store compares case-insensitively.
    Meeting tokens are compared exactly.
    """
    if meeting_room_id is not None and room_id == meeting_room_id:
        return True
    if looks_like_uuid(room_id):
        return room_id.lower() == room_key.lower()
    return room_id == room_key


@dataclass
class ConnectionState:
    """Per-connection signaling state."""

    connection: Connection
    handle: ParticipantHandle | None = None
    meeting_room_id: str | None = None

    @property
    def connection_id(self) -> str:
        return self.connection.connection_id


class SessionCoordinator:
    """Coordinates call sessions across all connections.

    The registry and resolver are injected; the coordinator keeps only the
    connection table used to address relay and broadcast targets.
    """

    def __init__(
        self,
        registry: RoomRegistry,
        resolver: IdentityResolver,
        identity_mismatch_policy: MismatchPolicy = "warn",
    ) -> None:
        """Initialize session coordinator.

        Args:
            registry: Room registry owning all room state
            resolver: Resolves room keys to appointments
            identity_mismatch_policy: How join-room treats a userId that
                differs from the authenticated identity
        """
        self.registry = registry
        self._resolver = resolver
        self._mismatch_policy = identity_mismatch_policy
        self._connections: dict[str, ConnectionState] = {}

        self._handlers: dict[str, Callable[[ConnectionState, Any], Awaitable[None]]] = {
            "join-room": self.join_room,
            "start-call": self.start_call,
            "end-call": self.end_call,
            "leave-room": self.leave_room,
            "offer": self.relay,
            "answer": self.relay,
            "ice-candidate": self.relay,
            "user-audio-status": self.broadcast_audio_status,
            "user-video-status": self.broadcast_video_status,
        }

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def get_state(self, connection_id: str) -> ConnectionState | None:
        return self._connections.get(connection_id)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def handle_connection(self, connection: Connection) -> None:
        """Serve one connection until it closes.

        Events from a single connection are handled strictly in order.
        """
        self.attach(connection)
        try:
            await self._send(connection, ConnectedMessage(socket_id=connection.connection_id))
            async for data in connection.receive_events():
                await self.handle_event(connection.connection_id, data)
        except ConnectionError as e:
            logger.info(
                "Connection lost",
                extra={"connection_id": connection.connection_id, "error": str(e)},
            )
        finally:
            await self.disconnect(connection.connection_id)

    def attach(self, connection: Connection) -> ConnectionState:
        """Register a connection so it can send and receive events.

        Raises:
            ValueError: If a connection with the same id is already attached
        """
        if connection.connection_id in self._connections:
            raise ValueError(f"Connection {connection.connection_id} is already attached")

        state = ConnectionState(connection=connection)
        self._connections[connection.connection_id] = state
        logger.info(
            "Connection attached",
            extra={
                "connection_id": connection.connection_id,
                "connections": len(self._connections),
            },
        )
        return state

    async def handle_event(self, connection_id: str, data: dict[str, Any]) -> None:
        """Validate and dispatch one client event.

        Signaling errors are reported to the caller only; unexpected errors
        are logged and reported as a generic error. Neither closes the
        connection.
        """
        state = self._connections.get(connection_id)
        if state is None:
            logger.warning("Event for unknown connection", extra={"connection_id": connection_id})
            return

        event_type = data.get("type")
        try:
            message = parse_client_message(data)
            await self._dispatch(state, message)
        except SignalingError as e:
            logger.info(
                "Event rejected",
                extra={
                    "connection_id": connection_id,
                    "event": event_type,
                    "code": e.code,
                    "reason": e.message,
                },
            )
            await self._send(state.connection, ErrorMessage(message=e.message, code=e.code))
        except Exception:
            logger.exception(
                "Error handling event",
                extra={"connection_id": connection_id, "event": event_type},
            )
            message_text = _FAILURE_MESSAGES.get(
                str(event_type), "An error occurred while processing your request."
            )
            await self._send(
                state.connection, ErrorMessage(message=message_text, code="INTERNAL_ERROR")
            )

    async def _dispatch(self, state: ConnectionState, message: ClientMessage) -> None:
        handler = self._handlers.get(message.type)
        if handler is None:
            raise InvalidMessage(f"Unsupported event type: {message.type}")
        await handler(state, message)

    async def disconnect(self, connection_id: str) -> None:
        """Forget a connection and leave its room. Idempotent."""
        state = self._connections.pop(connection_id, None)
        if state is None:
            return

        await self._leave(state)
        logger.info(
            "Connection detached",
            extra={"connection_id": connection_id, "connections": len(self._connections)},
        )

    # ------------------------------------------------------------------
    # Room membership
    # ------------------------------------------------------------------

    async def join_room(self, state: ConnectionState, message: JoinRoomMessage) -> None:
        """Join the room of the appointment addressed by the room key."""
        user_id, role = self._effective_identity(state, message)

        # The first read finds the canonical room key, the second one under
        # the room lock is the snapshot the join decision is based on.
        appointment = await self._resolver.resolve(message.room_id)
        key = appointment.id

        previous = state.handle
        lock_keys = [key] if previous is None else [key, previous.room_key]

        async with self.registry.room_locks(*lock_keys):
            appointment = await self._resolver.refresh(key)
            can_join(appointment, user_id, role).raise_for_denial()

            if previous is not None and previous.room_key != key:
                await self._leave_locked(state)

            handle = ParticipantHandle(
                connection_id=state.connection_id,
                user_id=user_id,
                user_name=message.user_name,
                role=role,
                room_key=key,
                appointment_id=appointment.id,
            )
            self.registry.add_participant(key, handle)
            state.handle = handle
            state.meeting_room_id = appointment.meeting_room_id

            logger.info(
                "User joined room",
                extra={
                    "connection_id": state.connection_id,
                    "room_key": key,
                    "user_id": user_id,
                    "role": role.value,
                },
            )

            call_state = self.registry.get_call_state(key)
            await self._send(
                state.connection,
                CallStateMessage(is_active=call_state.is_active, started_by=call_state.started_by),
            )

            if call_state.is_active:
                await self._broadcast(
                    key,
                    UserJoinedMessage(
                        user_id=user_id,
                        user_name=handle.user_name,
                        socket_id=state.connection_id,
                    ),
                    exclude=state.connection_id,
                )
                await self._send(
                    state.connection,
                    self._roster(key, exclude=state.connection_id),
                )

    async def leave_room(self, state: ConnectionState, message: LeaveRoomMessage) -> None:
        """Leave the current room without closing the connection."""
        await self._leave(state)

    def _effective_identity(
        self, state: ConnectionState, message: JoinRoomMessage
    ) -> tuple[str, Role]:
        identity = state.connection.identity
        claimed_id = message.user_id.strip() if message.user_id else None

        if identity is None:
            if not claimed_id:
                raise InvalidMessage("join-room requires userId")
            return claimed_id, Role.parse(message.user_role)

        if claimed_id and claimed_id != identity.user_id:
            logger.warning(
                "join-room userId differs from authenticated identity",
                extra={
                    "connection_id": state.connection_id,
                    "claimed_user_id": claimed_id,
                    "user_id": identity.user_id,
                    "policy": self._mismatch_policy,
                },
            )
            if self._mismatch_policy == "reject":
                raise Forbidden("User id does not match the authenticated user.")

        user_id = claimed_id or identity.user_id
        role = identity.role if identity.role is not None else Role.parse(message.user_role)
        return user_id, role

    async def _leave(self, state: ConnectionState) -> None:
        handle = state.handle
        if handle is None:
            return
        async with self.registry.room_lock(handle.room_key):
            await self._leave_locked(state)

    async def _leave_locked(self, state: ConnectionState) -> None:
        handle = state.handle
        state.handle = None
        state.meeting_room_id = None
        if handle is None:
            return

        removed = self.registry.remove_participant(handle.room_key, handle.connection_id)
        if removed is None:
            return

        logger.info(
            "User left room",
            extra={
                "connection_id": handle.connection_id,
                "room_key": handle.room_key,
                "user_id": handle.user_id,
            },
        )
        await self._broadcast(
            handle.room_key,
            UserLeftMessage(
                user_id=handle.user_id,
                user_name=handle.user_name,
                socket_id=handle.connection_id,
            ),
        )

    # ------------------------------------------------------------------
    # Call lifecycle
    # ------------------------------------------------------------------

    async def start_call(self, state: ConnectionState, message: StartCallMessage) -> None:
        """Start the call in the caller's room.

        The appointment is re-read so a status change made since the join is
        honoured. Starting an already active call keeps the original starter.
        """
        handle = self._require_joined(state, "start the call")
        key = handle.room_key

        async with self.registry.room_lock(key):
            appointment = await self._resolver.resolve(message.room_id)
            if appointment.id != key:
                raise Forbidden("You can only start the call for the room you joined.")

            can_start(appointment, handle.user_id, handle.role).raise_for_denial()

            current = self.registry.get_call_state(key)
            if isinstance(current, Active):
                active = current
                logger.info(
                    "start-call on an active call, keeping starter",
                    extra={"room_key": key, "started_by": active.started_by},
                )
            else:
                active = Active(started_by=handle.user_id, started_by_name=handle.user_name)
                self.registry.set_call_state(key, active)
                logger.info(
                    "Call started", extra={"room_key": key, "started_by": active.started_by}
                )

            await self._broadcast(
                key,
                CallStartedMessage(
                    started_by=active.started_by,
                    started_by_name=active.started_by_name,
                ),
            )
            await self._broadcast(key, self._roster(key))

    async def end_call(self, state: ConnectionState, message: EndCallMessage) -> None:
        """End the call in the caller's room. Ending an idle room is allowed."""
        handle = self._require_joined(state, "end the call")
        can_end(handle.role).raise_for_denial()

        key = handle.room_key
        if not _names_room(message.room_id, key, state.meeting_room_id):
            raise Forbidden("You can only end the call for the room you joined.")

        async with self.registry.room_lock(key):
            self.registry.set_call_state(key, INACTIVE)
            logger.info("Call ended", extra={"room_key": key, "ended_by": handle.user_id})
            await self._broadcast(
                key,
                CallEndedMessage(ended_by=handle.user_id, ended_by_name=handle.user_name),
            )

    def _require_joined(self, state: ConnectionState, action: str) -> ParticipantHandle:
        if state.handle is None:
            raise Forbidden(f"You must join the room before you can {action}.")
        return state.handle

    # ------------------------------------------------------------------
    # Relay and status
    # ------------------------------------------------------------------

    async def relay(
        self,
        state: ConnectionState,
        message: OfferMessage | AnswerMessage | IceCandidateMessage,
    ) -> None:
        """Forward a negotiation payload to exactly one target connection.

        A missing target is dropped silently; the sender learns about it
        through user-left.
        """
        try:
            target = self._relay_target(message.target)
        except TargetUnreachable as e:
            logger.debug(
                "Dropping relay",
                extra={
                    "connection_id": state.connection_id,
                    "event": message.type,
                    "reason": e.message,
                },
            )
            return

        sender_id, sender_name = self._sender_identity(state)
        relayed: ServerMessage
        if isinstance(message, OfferMessage):
            relayed = RelayedOfferMessage(
                offer=message.offer,
                sender=state.connection_id,
                sender_id=sender_id,
                sender_name=sender_name,
            )
        elif isinstance(message, AnswerMessage):
            relayed = RelayedAnswerMessage(
                answer=message.answer,
                sender=state.connection_id,
                sender_id=sender_id,
                sender_name=sender_name,
            )
        else:
            relayed = RelayedIceCandidateMessage(
                candidate=message.candidate,
                sender=state.connection_id,
                sender_id=sender_id,
                sender_name=sender_name,
            )

        await self._send(target.connection, relayed)

    def _relay_target(self, connection_id: str) -> ConnectionState:
        target = self._connections.get(connection_id)
        if target is None or not target.connection.is_connected:
            raise TargetUnreachable(f"Connection {connection_id} is gone")
        return target

    def _sender_identity(self, state: ConnectionState) -> tuple[str | None, str | None]:
        if state.handle is not None:
            return state.handle.user_id, state.handle.user_name
        identity = state.connection.identity
        return (identity.user_id if identity else None), None

    async def broadcast_audio_status(
        self, state: ConnectionState, message: AudioStatusMessage
    ) -> None:
        """Tell the rest of the room the caller muted or unmuted."""
        handle = state.handle
        if handle is None:
            logger.debug(
                "Ignoring audio status before join", extra={"connection_id": state.connection_id}
            )
            return
        await self._broadcast(
            handle.room_key,
            AudioStatusBroadcast(
                user_id=handle.user_id, user_name=handle.user_name, is_muted=message.is_muted
            ),
            exclude=state.connection_id,
        )

    async def broadcast_video_status(
        self, state: ConnectionState, message: VideoStatusMessage
    ) -> None:
        """Tell the rest of the room the caller turned video on or off."""
        handle = state.handle
        if handle is None:
            logger.debug(
                "Ignoring video status before join", extra={"connection_id": state.connection_id}
            )
            return
        await self._broadcast(
            handle.room_key,
            VideoStatusBroadcast(
                user_id=handle.user_id,
                user_name=handle.user_name,
                is_video_off=message.is_video_off,
            ),
            exclude=state.connection_id,
        )

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _roster(self, key: str, exclude: str | None = None) -> RoomUsersMessage:
        entries = [
            handle.to_roster_entry()
            for handle in self.registry.list_participants(key)
            if handle.connection_id != exclude
        ]
        return RoomUsersMessage.model_validate({"users": entries})

    async def _broadcast(
        self, key: str, message: ServerMessage, exclude: str | None = None
    ) -> None:
        """Send a message to every member of a room, optionally skipping one."""
        recipients = []
        for handle in self.registry.list_participants(key):
            if handle.connection_id == exclude:
                continue
            state = self._connections.get(handle.connection_id)
            if state is not None:
                recipients.append(state.connection)

        if recipients:
            await asyncio.gather(*(self._send(conn, message) for conn in recipients))

    async def _send(self, connection: Connection, message: ServerMessage) -> None:
        """Send to one connection. A broken connection is logged, not raised."""
        try:
            await connection.send(message)
        except ConnectionError as e:
            logger.debug(
                "Send failed",
                extra={
                    "connection_id": connection.connection_id,
                    "event": getattr(message, "type", None),
                    "error": str(e),
                },
            )
