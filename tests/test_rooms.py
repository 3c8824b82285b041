import asyncio

import pytest

from chathub.constants import T_CHAT_MESSAGE, T_LOAD_HISTORY, T_SWITCH_ROOM
from chathub.errors import NotFound
from chathub.models import Message
from chathub.rooms import DEFAULT_ROOM_NAME, RoomRouter
from chathub.sqlite_store import SqliteStore
from chathub.store import MemoryStore

from helpers import make_config, login, packet, running_hub


def test_empty_directory_gets_default_room() -> None:
    async def scenario():
        router = RoomRouter(MemoryStore())
        rooms = await router.list_rooms()
        assert [r.name for r in rooms] == [DEFAULT_ROOM_NAME]
        assert [r.name for r in await router.list_rooms()] == [DEFAULT_ROOM_NAME]

    asyncio.run(scenario())


def test_switch_returns_history_oldest_first_and_limited() -> None:
    async def scenario():
        store = MemoryStore()
        room = await store.create_room("general")
        for i in range(6):
            await store.append_message(
                Message(room=room.id, author="a", text=f"m{i}", color="#000", timestamp=100 + i)
            )
        router = RoomRouter(store, make_config(history_limit=4))
        room_id, history = await router.switch_room("c1", room.id)
        assert room_id == room.id
        assert [m.text for m in history] == ["m2", "m3", "m4", "m5"]
        assert router.members(room.id) == ["c1"]

    asyncio.run(scenario())


def test_switch_by_legacy_name_and_membership_moves() -> None:
    async def scenario():
        store = MemoryStore()
        general = await store.create_room("general")
        random = await store.create_room("random")
        router = RoomRouter(store)
        await router.switch_room("c1", general.id)
        room_id, _ = await router.switch_room("c1", "#random")
        assert room_id == random.id
        assert router.current_room("c1") == random.id
        assert router.members(general.id) == []
        assert router.members(random.id) == ["c1"]

        assert router.leave("c1") == random.id
        assert router.members(random.id) == []
        assert router.current_room("c1") is None

    asyncio.run(scenario())


def test_unknown_room_leaves_membership_unchanged() -> None:
    async def scenario():
        store = MemoryStore()
        general = await store.create_room("general")
        router = RoomRouter(store)
        await router.switch_room("c1", general.id)
        with pytest.raises(NotFound):
            await router.switch_room("c1", 9999)
        with pytest.raises(NotFound):
            await router.switch_room("c1", "nowhere")
        assert router.current_room("c1") == general.id

    asyncio.run(scenario())


def test_configured_default_room() -> None:
    async def scenario():
        store = MemoryStore()
        await store.create_room("general", position=0)
        lobby = await store.create_room("lobby", position=5)
        router = RoomRouter(store, make_config(default_room="lobby"))
        room_id, history = await router.join_default("c1")
        assert room_id == lobby.id
        assert history == []

    asyncio.run(scenario())


def test_message_during_switch_delivered_exactly_once(tmp_path) -> None:
    async def scenario():
        async with running_hub(store=SqliteStore(str(tmp_path / "hub.db"))) as hub:
            random = await hub.store.create_room("random")
            await login(hub, "carol", "carol")
            await hub.handle_packet("carol", packet(T_SWITCH_ROOM, {"room": random.id}))
            await login(hub, "bob", "bob")

            posts = [
                hub.handle_packet("carol", packet(T_CHAT_MESSAGE, {"text": f"n{i}"}))
                for i in range(5)
            ]
            await asyncio.gather(
                *posts[:2],
                hub.handle_packet("bob", packet(T_SWITCH_ROOM, {"room": random.id})),
                *posts[2:],
            )
            await hub.flush()

            t = hub.transport
            replayed = [
                m["text"]
                for body in t.events("bob", T_LOAD_HISTORY)
                if body["room"] == random.id
                for m in body["messages"]
            ]
            live = [body["text"] for body in t.events("bob", T_CHAT_MESSAGE)]
            seen = replayed + live
            assert sorted(seen) == [f"n{i}" for i in range(5)]

    asyncio.run(scenario())


def test_room_stats() -> None:
    async def scenario():
        store = MemoryStore()
        general = await store.create_room("general")
        router = RoomRouter(store)
        await router.switch_room("a", general.id)
        await router.switch_room("b", general.id)
        stats = router.get_stats()
        assert stats["rooms_active"] == 1
        assert stats["memberships"] == 2
        assert stats["top_rooms"] == [(general.id, 2)]

    asyncio.run(scenario())
