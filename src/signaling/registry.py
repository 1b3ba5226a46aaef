"""In-process room registry.

Owns every room's membership and call state. Rooms are created lazily on
first reference and evicted once empty with no active call. Mutations that
depend on an external read are serialized per room key with ``room_lock``.

Thread-safety: This class is NOT thread-safe. Use from a single event loop.
"""

import asyncio
import itertools
import logging
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

from src.signaling.models import INACTIVE, CallState, ParticipantHandle, Room

logger = logging.getLogger(__name__)


class RoomRegistry:
    """Mapping from room key to room state."""

    def __init__(self) -> None:
        self._rooms: dict[str, Room] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._join_seq = itertools.count(1)

    @asynccontextmanager
    async def room_lock(self, key: str) -> AsyncIterator[None]:
        """Hold the per-room lock for a read-then-mutate sequence.

        Lock entries are reference counted and dropped when no task holds or
        waits on them, so the lock map never outgrows the set of busy rooms.
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    @asynccontextmanager
    async def room_locks(self, *keys: str) -> AsyncIterator[None]:
        """Hold several room locks at once, acquired in sorted key order."""
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys)):
                await stack.enter_async_context(self.room_lock(key))
            yield

    def get_room(self, key: str) -> Room | None:
        """Get a room without creating it."""
        return self._rooms.get(key)

    def get_or_create_room(self, key: str) -> Room:
        room = self._rooms.get(key)
        if room is None:
            room = Room(key=key)
            self._rooms[key] = room
            logger.debug("Room created", extra={"room_key": key})
        return room

    def add_participant(self, key: str, handle: ParticipantHandle) -> None:
        """Register a participant handle in a room, creating the room if needed."""
        room = self.get_or_create_room(key)
        handle.room_key = key
        handle.joined_seq = next(self._join_seq)
        room.participants[handle.connection_id] = handle

        logger.info(
            "Participant added",
            extra={
                "room_key": key,
                "connection_id": handle.connection_id,
                "user_id": handle.user_id,
                "participants": len(room.participants),
            },
        )

    def remove_participant(self, key: str, connection_id: str) -> ParticipantHandle | None:
        """Remove a participant from a room.

        Unknown rooms or connections are a no-op, since disconnects can race
        with room cleanup.

        Returns:
            The removed handle, or None if nothing was removed
        """
        room = self._rooms.get(key)
        if room is None:
            return None

        handle = room.participants.pop(connection_id, None)
        if handle is not None:
            logger.info(
                "Participant removed",
                extra={
                    "room_key": key,
                    "connection_id": connection_id,
                    "participants": len(room.participants),
                },
            )
        self._evict_if_idle(room)
        return handle

    def set_call_state(self, key: str, state: CallState) -> None:
        room = self.get_or_create_room(key)
        previous = room.call_state
        room.call_state = state

        logger.info(
            "Call state changed",
            extra={
                "room_key": key,
                "was_active": previous.is_active,
                "is_active": state.is_active,
                "started_by": state.started_by,
            },
        )
        self._evict_if_idle(room)

    def get_call_state(self, key: str) -> CallState:
        """Current call state. Unknown rooms are inactive and stay unmaterialized."""
        room = self._rooms.get(key)
        return room.call_state if room is not None else INACTIVE

    def list_participants(self, key: str) -> list[ParticipantHandle]:
        """Participants of a room ordered by join sequence."""
        room = self._rooms.get(key)
        if room is None:
            return []
        return sorted(room.participants.values(), key=lambda h: h.joined_seq)

    def get_participant(self, key: str, connection_id: str) -> ParticipantHandle | None:
        room = self._rooms.get(key)
        if room is None:
            return None
        return room.participants.get(connection_id)

    def sweep(self) -> int:
        """Evict every empty room without an active call.

        Returns:
            Number of rooms evicted
        """
        idle = [room for room in self._rooms.values() if room.is_evictable]
        for room in idle:
            self._evict_if_idle(room)

        if idle:
            logger.info("Swept idle rooms", extra={"evicted": len(idle)})
        return len(idle)

    def _evict_if_idle(self, room: Room) -> None:
        # Active rooms survive an all-disconnect gap so participants can rejoin.
        if room.is_evictable and self._rooms.get(room.key) is room:
            del self._rooms[room.key]
            logger.debug("Room evicted", extra={"room_key": room.key})

    def __contains__(self, key: object) -> bool:
        return key in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)

    def rooms(self) -> list[Room]:
        return list(self._rooms.values())

    def stats(self) -> dict[str, Any]:
        """Aggregate counts for health reporting."""
        return {
            "rooms": len(self._rooms),
            "participants": sum(len(r.participants) for r in self._rooms.values()),
            "active_calls": sum(1 for r in self._rooms.values() if r.call_state.is_active),
        }
