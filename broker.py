import asyncio
import math
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from backend import RoomType
from constants import DISCONNECT_GRACE_SECONDS
from errors import InvalidInput, InvalidPrediction, StoreFailure
from logging_config import get_logger

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def escape_markup(text: str) -> str:
    return text.replace("<", "&lt;").replace(">", "&gt;")


def is_positive_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    try:
        number = float(value)
    except OverflowError:
        # Integers beyond float range cannot be averaged
        return False
    return math.isfinite(number) and number > 0


def _clean(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _require_room_id(room_id: Any) -> str:
    room_id = _clean(room_id)
    if room_id is None:
        raise InvalidInput("Room ID is required")
    return room_id


@dataclass
class Participant:
    connection: Any
    name: str
    contact: str

    def as_dict(self) -> dict:
        return {"name": self.name, "email": self.contact}


class _Room:
    def __init__(self, room_id: str):
        self.room_id = room_id
        # connection_id -> Participant, in join order
        self.members: Dict[str, Participant] = {}
        self.lock = asyncio.Lock()


class SessionBroker:
    """Tracks which live connections sit in which room and fans room events out to them.

    A connection is any object with a ``connection_id`` attribute and an
    ``async send(message: dict)`` method. Each room has its own lock; roster
    changes and the broadcast that follows them happen under it, so members
    see a room's events in the order the broker accepted them. Store round
    trips happen before the lock is taken.

    A room emptied by a disconnect is kept for ``grace_delay`` seconds so a
    reconnecting client finds its old roster; an explicit leave drops an
    empty room at once.
    """

    def __init__(self, directory, notifier=None, grace_delay: float = DISCONNECT_GRACE_SECONDS):
        self.directory = directory
        self.notifier = notifier
        self.grace_delay = grace_delay
        self._rooms: Dict[str, _Room] = {}
        self._connection_rooms: Dict[str, str] = {}
        self._evictions: Dict[str, asyncio.Task] = {}
        self._notifications = set()
        self._cleanups = set()

    @asynccontextmanager
    async def _locked_room(self, room_id: str, create: bool = False):
        while True:
            room = self._rooms.get(room_id)
            if room is None:
                if not create:
                    yield None
                    return
                room = self._rooms[room_id] = _Room(room_id)
            async with room.lock:
                # The room may have been evicted while we waited for its lock
                if self._rooms.get(room_id) is room:
                    yield room
                    return

    async def _send(self, connection, message: dict):
        try:
            await connection.send(message)
        except Exception as e:
            logger.warning(f"Error sending {message.get('type')} to connection {connection.connection_id}: {e}")

    async def _broadcast(self, room: _Room, message: dict):
        members = list(room.members.values())
        await asyncio.gather(*(self._send(member.connection, message) for member in members))
        logger.debug(f"Broadcast {message.get('type')} to {len(members)} connections in room {room.room_id}")

    async def _broadcast_roster(self, room: _Room):
        await self._broadcast(room, {
            "type": "user_list",
            "room_id": room.room_id,
            "users": [member.as_dict() for member in room.members.values()],
        })

    async def broadcast(self, room_id: str, message: dict):
        """Send `message` to every connection currently in the room. No-op for rooms without connections."""
        async with self._locked_room(room_id) as room:
            if room is not None:
                await self._broadcast(room, message)

    def roster(self, room_id: str) -> List[dict]:
        room = self._rooms.get(room_id)
        if room is None:
            return []
        return [member.as_dict() for member in room.members.values()]

    def active_count(self, room_id: str) -> int:
        room = self._rooms.get(room_id)
        return len(room.members) if room else 0

    def has_room(self, room_id: str) -> bool:
        return room_id in self._rooms

    def room_of(self, connection) -> Optional[str]:
        return self._connection_rooms.get(connection.connection_id)

    def contact_of(self, connection, room_id: str) -> Optional[str]:
        room_id = _clean(room_id)
        room = self._rooms.get(room_id) if room_id else None
        member = room.members.get(connection.connection_id) if room else None
        return member.contact if member else None

    # Room directory front

    async def create_room(self, room_type=RoomType.GENERAL) -> dict:
        room_id, invite_code = await self.directory.create_room(room_type)
        return {"room_id": room_id, "invite_code": invite_code}

    async def room_details(self, room_id: str) -> Optional[dict]:
        room = await self.directory.get_room(room_id)
        if room is None:
            return None
        return {
            "room_id": room_id,
            "room_type": room.get("room_type"),
            "created_at": room.get("created_at", ""),
            "active_participants": self.active_count(room_id),
        }

    # Membership

    @staticmethod
    def _validate_member(invite_code, name, contact):
        invite_code, name, contact = _clean(invite_code), _clean(name), _clean(contact)
        if invite_code is None or name is None or contact is None:
            raise InvalidInput("Invalid join data")
        if not EMAIL_PATTERN.match(contact):
            raise InvalidInput("Invalid email format")
        return invite_code, name, contact

    async def register_member(self, invite_code, name, contact) -> str:
        """Record durable membership without a live connection (HTTP join)."""
        invite_code, name, contact = self._validate_member(invite_code, name, contact)
        room_id = await self.directory.resolve_invite_code(invite_code)
        await self.directory.record_membership(room_id, name, contact)
        logger.info(f"{name} registered in room {room_id}")
        return room_id

    async def join(self, connection, invite_code, name, contact) -> str:
        invite_code, name, contact = self._validate_member(invite_code, name, contact)
        room_id = await self.directory.resolve_invite_code(invite_code)
        try:
            await self.directory.record_membership(room_id, name, contact)
        except StoreFailure:
            logger.warning(f"Could not record membership of {contact} in room {room_id}, admitting anyway")

        connection_id = connection.connection_id
        previous_room_id = self._connection_rooms.get(connection_id)
        if previous_room_id is not None and previous_room_id != room_id:
            await self._remove_member(connection, previous_room_id)

        async with self._locked_room(room_id, create=True) as room:
            self._cancel_eviction(room_id)
            member = room.members.get(connection_id)
            if member is None:
                room.members[connection_id] = Participant(connection, name, contact)
            else:
                member.name, member.contact = name, contact
            self._connection_rooms[connection_id] = room_id
            logger.info(f"{name} joined room {room_id} on connection {connection_id} ({len(room.members)} active)")
            await self._send(connection, {"type": "room_joined", "room_id": room_id})
            await self._broadcast_roster(room)
        return room_id

    async def _remove_member(self, connection, room_id: str):
        connection_id = connection.connection_id
        async with self._locked_room(room_id) as room:
            if room is None or connection_id not in room.members:
                logger.debug(f"Connection {connection_id} is not in room {room_id}, nothing to remove")
                return
            del room.members[connection_id]
            if self._connection_rooms.get(connection_id) == room_id:
                del self._connection_rooms[connection_id]
            if room.members:
                await self._broadcast_roster(room)
            else:
                self._drop_room(room)

    async def leave(self, connection, room_id) -> None:
        room_id = _require_room_id(room_id)
        await self._remove_member(connection, room_id)
        logger.info(f"Connection {connection.connection_id} left room {room_id}")

    async def disconnect(self, connection) -> None:
        connection_id = connection.connection_id
        self._connection_rooms.pop(connection_id, None)
        room_ids = [room_id for room_id, room in list(self._rooms.items()) if connection_id in room.members]
        for room_id in room_ids:
            try:
                async with self._locked_room(room_id) as room:
                    if room is None or room.members.pop(connection_id, None) is None:
                        continue
                    logger.info(f"Connection {connection_id} dropped from room {room_id} ({len(room.members)} active)")
                    if room.members:
                        await self._broadcast_roster(room)
                    else:
                        self._schedule_eviction(room_id)
            except Exception as e:
                logger.error(f"Error cleaning up connection {connection_id} in room {room_id}: {e}", exc_info=True)

    def schedule_disconnect(self, connection) -> asyncio.Task:
        """Run `disconnect` as a broker-owned task.

        The task outlives the caller, so a cancelled socket handler still
        removes the connection and tells the rest of the room.
        """
        task = asyncio.create_task(self.disconnect(connection))
        self._cleanups.add(task)
        task.add_done_callback(self._cleanups.discard)
        return task

    # Room eviction

    def _drop_room(self, room: _Room):
        self._cancel_eviction(room.room_id)
        if self._rooms.get(room.room_id) is room:
            del self._rooms[room.room_id]
            logger.info(f"Room {room.room_id} is empty, removed from active rooms")

    def _schedule_eviction(self, room_id: str):
        self._cancel_eviction(room_id)
        self._evictions[room_id] = asyncio.create_task(self._evict_after_grace(room_id))
        logger.debug(f"Room {room_id} is empty, evicting in {self.grace_delay}s unless someone rejoins")

    def _cancel_eviction(self, room_id: str):
        task = self._evictions.pop(room_id, None)
        if task is not None and not task.done():
            task.cancel()
            logger.debug(f"Cancelled pending eviction of room {room_id}")

    async def _evict_after_grace(self, room_id: str):
        try:
            await asyncio.sleep(self.grace_delay)
            async with self._locked_room(room_id) as room:
                if room is None:
                    return
                if room.members:
                    logger.debug(f"Room {room_id} was rejoined, skipping eviction")
                    return
                del self._rooms[room_id]
                logger.info(f"Room {room_id} evicted after {self.grace_delay}s grace period")
        finally:
            if self._evictions.get(room_id) is asyncio.current_task():
                del self._evictions[room_id]

    # Estimation

    async def submit_prediction(self, room_id, role, value, participant: str = None) -> dict:
        room_id = _require_room_id(room_id)
        role = _clean(role)
        if role is None or not is_positive_number(value):
            raise InvalidPrediction()
        participant = _clean(participant)

        write = asyncio.ensure_future(self.directory.submit_prediction(room_id, role, value, participant))
        event = {"type": "prediction_submitted", "room_id": room_id, "role": role, "value": value}
        try:
            await self.broadcast(room_id, event)
        finally:
            await write
        return {"role": role, "value": value}

    async def get_and_clear_predictions(self, room_id) -> List[dict]:
        room_id = _require_room_id(room_id)
        averages = await self.directory.get_and_clear_predictions(room_id)
        return [{"role": role, "average": average} for role, average in averages]

    async def reveal_results(self, room_id) -> List[dict]:
        room_id = _require_room_id(room_id)
        predictions = await self.get_and_clear_predictions(room_id)
        await self.broadcast(room_id, {"type": "results_revealed", "room_id": room_id, "predictions": predictions})
        return predictions

    async def reset_session(self, room_id) -> None:
        room_id = _require_room_id(room_id)
        await self.directory.clear_predictions(room_id)
        await self.broadcast(room_id, {"type": "session_reset", "room_id": room_id})
        logger.info(f"Estimation round reset in room {room_id}")

    # Retrospective

    async def broadcast_comment(self, room_id, text) -> str:
        room_id = _require_room_id(room_id)
        if _clean(text) is None:
            raise InvalidInput("Invalid comment data")
        comment = escape_markup(text)
        await self.directory.save_comment(room_id, comment)
        await self.broadcast(room_id, {"type": "new_comment", "room_id": room_id, "comment": comment})
        return comment

    async def create_action_item(self, room_id, assignee_name, description) -> dict:
        room_id, assignee_name, description = _clean(room_id), _clean(assignee_name), _clean(description)
        if room_id is None or assignee_name is None or description is None:
            raise InvalidInput("Invalid action data")
        contact = await self.directory.create_action_item(room_id, assignee_name, description)
        action = {"room_id": room_id, "user_name": assignee_name, "description": description}
        await self.broadcast(room_id, {"type": "action_created", **action})
        self._spawn_notification(contact, assignee_name, description)
        return action

    def _spawn_notification(self, contact: str, user_name: str, description: str):
        if self.notifier is None:
            return
        task = asyncio.create_task(self._notify(contact, user_name, description))
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)

    async def _notify(self, contact: str, user_name: str, description: str):
        try:
            await self.notifier.send_action_notification(contact, user_name, description)
        except Exception as e:
            logger.error(f"Failed to send action notification to {contact}: {e}", exc_info=True)

    async def close(self):
        if self._cleanups:
            await asyncio.gather(*list(self._cleanups), return_exceptions=True)
        pending = list(self._evictions.values()) + list(self._notifications)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._evictions.clear()
        logger.info(f"Session broker closed ({len(self._rooms)} rooms still active)")
