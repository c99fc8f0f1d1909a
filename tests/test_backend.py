import asyncio
import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from backend import RedisDirectory, RoomType, generate_invite_code, INVITE_CODE_ALPHABET
from errors import AssigneeNotFound, RoomNotFound, StoreFailure
from redis_keys import REDIS_ACTIONS_KEY, REDIS_INVITE_KEY, REDIS_MEMBERS_KEY, REDIS_PREDICTIONS_KEY

from conftest import make_directory


def codes(*values):
    it = iter(values)
    return lambda: next(it)


def test_generate_invite_code_uses_alphabet():
    code = generate_invite_code(12)
    assert len(code) == 12
    assert set(code) <= set(INVITE_CODE_ALPHABET)


def test_create_room_code_resolves_to_room():
    async def scenario():
        directory = make_directory()
        room_id, invite_code = await directory.create_room(RoomType.REFINEMENT)
        assert await directory.resolve_invite_code(invite_code) == room_id
        room = await directory.get_room(room_id)
        assert room["room_type"] == "refinement"
        assert room["invite_code"] == invite_code
        assert room["created_at"]

    asyncio.run(scenario())


def test_create_room_accepts_plain_string_type():
    async def scenario():
        directory = make_directory()
        room_id, _ = await directory.create_room("retro")
        assert (await directory.get_room(room_id))["room_type"] == "retro"

    asyncio.run(scenario())


def test_create_room_retries_on_code_collision():
    async def scenario():
        directory = make_directory(code_generator=codes("AAAA1111", "AAAA1111", "BBBB2222"))
        first_id, first_code = await directory.create_room()
        second_id, second_code = await directory.create_room()
        assert first_code == "AAAA1111"
        assert second_code == "BBBB2222"
        assert first_id != second_id
        assert await directory.resolve_invite_code("AAAA1111") == first_id
        assert await directory.resolve_invite_code("BBBB2222") == second_id

    asyncio.run(scenario())


def test_create_room_gives_up_after_max_attempts():
    async def scenario():
        directory = make_directory(code_generator=lambda: "SAMECODE", max_code_attempts=3)
        await directory.create_room()
        with pytest.raises(StoreFailure):
            await directory.create_room()
        # Only the first room holds the code
        keys = await directory.redis_client.keys("room:meta:*")
        assert len(keys) == 1

    asyncio.run(scenario())


def test_resolve_invite_code_is_case_sensitive():
    async def scenario():
        directory = make_directory(code_generator=codes("AbCdEf12"))
        await directory.create_room()
        with pytest.raises(RoomNotFound):
            await directory.resolve_invite_code("abcdef12")

    asyncio.run(scenario())


def test_record_membership_is_idempotent():
    async def scenario():
        directory = make_directory()
        room_id, _ = await directory.create_room()
        assert await directory.record_membership(room_id, "Alice", "a@x.com") is True
        assert await directory.record_membership(room_id, "Alice Again", "a@x.com") is False
        members = await directory.redis_client.hgetall(REDIS_MEMBERS_KEY.format(slug=room_id))
        assert members == {"a@x.com": "Alice"}
        assert await directory.find_member_contact(room_id, "Alice") == "a@x.com"
        assert await directory.find_member_contact(room_id, "Alice Again") is None

    asyncio.run(scenario())


def test_predictions_are_upserted_per_role_and_averaged():
    async def scenario():
        directory = make_directory()
        room_id, _ = await directory.create_room(RoomType.REFINEMENT)
        await directory.submit_prediction(room_id, "qa", 3)
        await directory.submit_prediction(room_id, "qa", 8)
        await directory.submit_prediction(room_id, "dev", 5, participant="a@x.com")
        await directory.submit_prediction(room_id, "dev", 6, participant="b@x.com")
        await directory.submit_prediction(room_id, "dev", 8, participant="b@x.com")

        assert await directory.get_and_clear_predictions(room_id) == [("dev", 6.5), ("qa", 8.0)]
        assert await directory.get_and_clear_predictions(room_id) == []
        assert not await directory.redis_client.exists(REDIS_PREDICTIONS_KEY.format(slug=room_id))

    asyncio.run(scenario())


def test_submit_prediction_to_unknown_room_writes_nothing():
    async def scenario():
        directory = make_directory()
        with pytest.raises(RoomNotFound):
            await directory.submit_prediction("missing", "dev", 5)
        assert not await directory.redis_client.exists(REDIS_PREDICTIONS_KEY.format(slug="missing"))

    asyncio.run(scenario())


def test_clear_predictions_drops_working_set():
    async def scenario():
        directory = make_directory()
        room_id, _ = await directory.create_room(RoomType.REFINEMENT)
        await directory.submit_prediction(room_id, "dev", 5)
        await directory.clear_predictions(room_id)
        assert await directory.get_and_clear_predictions(room_id) == []

    asyncio.run(scenario())


def test_comments_are_appended_in_order():
    async def scenario():
        directory = make_directory()
        room_id, _ = await directory.create_room(RoomType.RETRO)
        await directory.save_comment(room_id, "went well")
        await directory.save_comment(room_id, "needs work")
        assert [entry["comment"] for entry in await directory.get_comments(room_id)] == ["went well", "needs work"]
        with pytest.raises(RoomNotFound):
            await directory.save_comment("missing", "hello")

    asyncio.run(scenario())


def test_create_action_item_returns_assignee_contact():
    async def scenario():
        directory = make_directory()
        room_id, _ = await directory.create_room(RoomType.RETRO)
        await directory.record_membership(room_id, "Alice", "a@x.com")
        contact = await directory.create_action_item(room_id, "Alice", "Fix the build")
        assert contact == "a@x.com"
        items = await directory.get_action_items(room_id)
        assert len(items) == 1
        assert items[0]["user_name"] == "Alice"
        assert items[0]["email"] == "a@x.com"
        assert items[0]["description"] == "Fix the build"

    asyncio.run(scenario())


def test_create_action_item_for_non_member_writes_nothing():
    async def scenario():
        directory = make_directory()
        room_id, _ = await directory.create_room(RoomType.RETRO)
        await directory.record_membership(room_id, "Alice", "a@x.com")
        with pytest.raises(AssigneeNotFound):
            await directory.create_action_item(room_id, "Bob", "Fix the build")
        assert not await directory.redis_client.exists(REDIS_ACTIONS_KEY.format(slug=room_id))

    asyncio.run(scenario())


def test_create_action_item_for_unknown_room_is_room_not_found():
    async def scenario():
        directory = make_directory()
        with pytest.raises(RoomNotFound):
            await directory.create_action_item("missing", "Alice", "Fix the build")

        # Leftover members without a room record do not make the room exist
        await directory.record_membership("gone", "Alice", "a@x.com")
        with pytest.raises(RoomNotFound):
            await directory.create_action_item("gone", "Alice", "Fix the build")
        assert not await directory.redis_client.exists(REDIS_ACTIONS_KEY.format(slug="gone"))

    asyncio.run(scenario())


class BrokenRedis:
    async def get(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")

    async def hsetnx(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")


def test_redis_errors_surface_as_store_failure():
    async def scenario():
        directory = RedisDirectory(BrokenRedis())
        with pytest.raises(StoreFailure):
            await directory.resolve_invite_code("abc")
        with pytest.raises(StoreFailure):
            await directory.record_membership("room", "Alice", "a@x.com")

    asyncio.run(scenario())


def test_invite_index_points_at_room():
    async def scenario():
        directory = make_directory(code_generator=codes("Code1234"))
        room_id, _ = await directory.create_room()
        assert await directory.redis_client.get(REDIS_INVITE_KEY.format(code="Code1234")) == room_id

    asyncio.run(scenario())


def test_stored_prediction_payload_keeps_value():
    async def scenario():
        directory = make_directory()
        room_id, _ = await directory.create_room()
        await directory.submit_prediction(room_id, "dev", 2.5)
        raw = await directory.redis_client.hgetall(REDIS_PREDICTIONS_KEY.format(slug=room_id))
        [entry] = [json.loads(value) for value in raw.values()]
        assert entry == {"role": "dev", "participant": None, "value": 2.5}

    asyncio.run(scenario())
