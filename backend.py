import json
import secrets
import string
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from constants import (
    INVITE_CODE_LENGTH,
    INVITE_CODE_MAX_ATTEMPTS,
    REDIS_DB,
    REDIS_HOST,
    REDIS_PASSWORD,
    REDIS_PORT,
)
from errors import AssigneeNotFound, RoomNotFound, StoreFailure
from logging_config import get_logger
from redis_keys import (
    REDIS_ACTIONS_KEY,
    REDIS_COMMENTS_KEY,
    REDIS_INVITE_KEY,
    REDIS_MEMBERS_KEY,
    REDIS_META_KEY,
    REDIS_PREDICTIONS_KEY,
)

logger = get_logger(__name__)

INVITE_CODE_ALPHABET = string.ascii_letters + string.digits


class RoomType(str, Enum):
    REFINEMENT = "refinement"
    RETRO = "retro"
    GENERAL = "general"


def generate_invite_code(length: int = INVITE_CODE_LENGTH) -> str:
    return ''.join(secrets.choice(INVITE_CODE_ALPHABET) for _ in range(length))


def create_redis_client() -> redis.Redis:
    logger.info(f"Creating Redis client for {REDIS_HOST}:{REDIS_PORT} (db {REDIS_DB})")
    return redis.Redis(
        host=REDIS_HOST,
        port=REDIS_PORT,
        password=REDIS_PASSWORD,
        db=REDIS_DB,
        decode_responses=True,
    )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _prediction_field(role: str, participant: Optional[str]) -> str:
    # One field per role, or per (role, participant) when the submitter is known
    return json.dumps([role, participant or ""])


def _find_contact(members: Dict[str, str], name: str) -> Optional[str]:
    for contact, member_name in members.items():
        if member_name == name:
            return contact
    return None


class RedisDirectory:
    """Durable room records kept in Redis.

    Holds rooms, their invite codes, durable membership, the working
    prediction set, comments and action items. Every write that depends on a
    read runs in a WATCH/MULTI transaction, so several server processes can
    share one store.
    """

    def __init__(self, redis_client: redis.Redis, code_generator=generate_invite_code,
                 max_code_attempts: int = INVITE_CODE_MAX_ATTEMPTS):
        self.redis_client = redis_client
        self.code_generator = code_generator
        self.max_code_attempts = max_code_attempts

    @asynccontextmanager
    async def _store_operation(self, operation: str, room_id: str = None):
        try:
            yield
        except RedisError as e:
            logger.error(f"Redis failure during {operation} (room {room_id}): {e}", exc_info=True)
            raise StoreFailure() from e

    async def ping(self):
        async with self._store_operation("ping"):
            await self.redis_client.ping()
        logger.info("Redis client connected successfully")

    async def close(self):
        await self.redis_client.aclose()
        logger.debug("Redis connection pool closed")

    async def create_room(self, room_type: RoomType = RoomType.GENERAL) -> Tuple[str, str]:
        room_type = RoomType(room_type)
        room_id = uuid.uuid4().hex
        meta_key = REDIS_META_KEY.format(slug=room_id)
        async with self._store_operation("create_room", room_id):
            for attempt in range(1, self.max_code_attempts + 1):
                invite_code = self.code_generator()
                invite_key = REDIS_INVITE_KEY.format(code=invite_code)
                async with self.redis_client.pipeline(transaction=True) as pipe:
                    try:
                        await pipe.watch(invite_key)
                        if await pipe.exists(invite_key):
                            logger.debug(f"Invite code collision on attempt {attempt}, regenerating")
                            continue
                        pipe.multi()
                        pipe.set(invite_key, room_id)
                        pipe.hset(meta_key, mapping={
                            "room_id": room_id,
                            "invite_code": invite_code,
                            "room_type": room_type.value,
                            "created_at": _now(),
                        })
                        await pipe.execute()
                    except WatchError:
                        logger.debug(f"Invite code {invite_code} claimed concurrently, regenerating")
                        continue
                logger.info(f"Room {room_id} created: type={room_type.value}, invite_code={invite_code}")
                return room_id, invite_code
        logger.error(f"Could not find a free invite code after {self.max_code_attempts} attempts")
        raise StoreFailure()

    async def resolve_invite_code(self, invite_code: str) -> str:
        async with self._store_operation("resolve_invite_code"):
            room_id = await self.redis_client.get(REDIS_INVITE_KEY.format(code=invite_code))
        if not room_id:
            logger.debug(f"Invite code {invite_code!r} does not match any room")
            raise RoomNotFound()
        return room_id

    async def get_room(self, room_id: str) -> Optional[dict]:
        async with self._store_operation("get_room", room_id):
            room = await self.redis_client.hgetall(REDIS_META_KEY.format(slug=room_id))
        return room or None

    async def record_membership(self, room_id: str, name: str, contact: str) -> bool:
        """Store that `contact` joined the room. Returns False when it was already recorded."""
        async with self._store_operation("record_membership", room_id):
            added = await self.redis_client.hsetnx(REDIS_MEMBERS_KEY.format(slug=room_id), contact, name)
        if added:
            logger.debug(f"Recorded membership of {contact} in room {room_id}")
        else:
            logger.debug(f"Membership of {contact} in room {room_id} already recorded")
        return bool(added)

    async def find_member_contact(self, room_id: str, name: str) -> Optional[str]:
        async with self._store_operation("find_member_contact", room_id):
            members = await self.redis_client.hgetall(REDIS_MEMBERS_KEY.format(slug=room_id))
        return _find_contact(members, name)

    async def _write_if_room_exists(self, room_id: str, operation: str, write):
        meta_key = REDIS_META_KEY.format(slug=room_id)
        async with self._store_operation(operation, room_id):
            async with self.redis_client.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(meta_key)
                        if not await pipe.exists(meta_key):
                            raise RoomNotFound()
                        pipe.multi()
                        write(pipe)
                        await pipe.execute()
                        return
                    except WatchError:
                        continue

    async def submit_prediction(self, room_id: str, role: str, value: float, participant: str = None):
        field = _prediction_field(role, participant)
        payload = json.dumps({"role": role, "participant": participant, "value": value})
        key = REDIS_PREDICTIONS_KEY.format(slug=room_id)
        await self._write_if_room_exists(room_id, "submit_prediction", lambda pipe: pipe.hset(key, field, payload))
        logger.debug(f"Stored prediction for role {role} in room {room_id}")

    async def get_and_clear_predictions(self, room_id: str) -> List[Tuple[str, float]]:
        key = REDIS_PREDICTIONS_KEY.format(slug=room_id)
        async with self._store_operation("get_and_clear_predictions", room_id):
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.hgetall(key)
                pipe.delete(key)
                entries, _ = await pipe.execute()

        values_by_role: Dict[str, List[float]] = {}
        for raw in entries.values():
            entry = json.loads(raw)
            values_by_role.setdefault(entry["role"], []).append(entry["value"])
        averages = [(role, sum(values) / len(values)) for role, values in sorted(values_by_role.items())]
        logger.info(f"Cleared {len(entries)} predictions in room {room_id} into {len(averages)} role averages")
        return averages

    async def clear_predictions(self, room_id: str):
        async with self._store_operation("clear_predictions", room_id):
            await self.redis_client.delete(REDIS_PREDICTIONS_KEY.format(slug=room_id))

    async def save_comment(self, room_id: str, comment: str):
        key = REDIS_COMMENTS_KEY.format(slug=room_id)
        payload = json.dumps({"comment": comment, "created_at": _now()})
        await self._write_if_room_exists(room_id, "save_comment", lambda pipe: pipe.rpush(key, payload))

    async def get_comments(self, room_id: str) -> List[dict]:
        async with self._store_operation("get_comments", room_id):
            entries = await self.redis_client.lrange(REDIS_COMMENTS_KEY.format(slug=room_id), 0, -1)
        return [json.loads(entry) for entry in entries]

    async def create_action_item(self, room_id: str, assignee_name: str, description: str) -> str:
        """Store an action item for a room member and return the assignee's contact address."""
        meta_key = REDIS_META_KEY.format(slug=room_id)
        members_key = REDIS_MEMBERS_KEY.format(slug=room_id)
        actions_key = REDIS_ACTIONS_KEY.format(slug=room_id)
        async with self._store_operation("create_action_item", room_id):
            async with self.redis_client.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(meta_key, members_key)
                        if not await pipe.exists(meta_key):
                            raise RoomNotFound()
                        contact = _find_contact(await pipe.hgetall(members_key), assignee_name)
                        if contact is None:
                            raise AssigneeNotFound()
                        pipe.multi()
                        pipe.rpush(actions_key, json.dumps({
                            "user_name": assignee_name,
                            "email": contact,
                            "description": description,
                            "created_at": _now(),
                        }))
                        await pipe.execute()
                        break
                    except WatchError:
                        continue
        logger.info(f"Action item created in room {room_id} for {assignee_name}")
        return contact

    async def get_action_items(self, room_id: str) -> List[dict]:
        async with self._store_operation("get_action_items", room_id):
            entries = await self.redis_client.lrange(REDIS_ACTIONS_KEY.format(slug=room_id), 0, -1)
        return [json.loads(entry) for entry in entries]
