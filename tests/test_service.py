import asyncio

from chathub import __version__
from chathub.codec import encode
from chathub.constants import (
    CLIENT_DESKTOP,
    CLIENT_WEB,
    K_T,
    T_BLOCK_USER,
    T_CHAT_MESSAGE,
    T_ERROR,
    T_HELLO,
    T_LOAD_HISTORY,
    T_NOTIFICATION,
    T_PING,
    T_PONG,
    T_ROOM_LIST,
    T_SWITCH_ROOM,
    T_TYPING,
    T_TYPING_USERS,
    T_UPDATE_USER_LIST,
    T_WELCOME,
)
from chathub.models import Ban, SessionRecord, User
from chathub.sqlite_store import SqliteStore

from helpers import add_user, login, packet, running_hub


def test_handshake_sends_welcome_rooms_and_history() -> None:
    async def scenario():
        async with running_hub(hub_name="testhub", greeting="hello there") as hub:
            await login(hub, "a", "alice")
            t = hub.transport
            assert t.types("a")[0] == T_WELCOME
            welcome = t.events("a", T_WELCOME)[0]
            assert welcome["hub"] == "testhub"
            assert welcome["version"] == __version__
            assert welcome["user"]["username"] == "alice"
            assert welcome["client"] == CLIENT_WEB
            assert welcome["greeting"] == "hello there"

            room_list = t.events("a", T_ROOM_LIST)[0]
            assert [r["name"] for r in room_list["rooms"]] == ["general"]
            assert room_list["current"] == room_list["rooms"][0]["id"]
            assert t.events("a", T_LOAD_HISTORY) == [
                {"room": room_list["current"], "messages": []}
            ]
            users = t.events("a", T_UPDATE_USER_LIST)[-1]["users"]
            assert [u["username"] for u in users] == ["alice"]
            assert t.types("a").index(T_ROOM_LIST) < t.types("a").index(T_LOAD_HISTORY)

    asyncio.run(scenario())


def test_end_to_end_chat_with_mention_and_replay() -> None:
    async def scenario():
        async with running_hub() as hub:
            await login(hub, "a", "alice")
            await login(hub, "b", "bob")
            general = hub.rooms.current_room("a")

            await hub.handle_packet("a", packet(T_SWITCH_ROOM, {"room": general}))
            await hub.handle_packet("a", packet(T_CHAT_MESSAGE, {"text": "hi @bob"}))
            await hub.flush()

            t = hub.transport
            for conn in ("a", "b"):
                msgs = t.events(conn, T_CHAT_MESSAGE)
                assert len(msgs) == 1
                assert msgs[0]["author"] == "alice"
                assert msgs[0]["text"] == "hi @bob"
                assert msgs[0]["mentions"] == ["bob"]
                assert t.rooms_of(conn, T_CHAT_MESSAGE) == [general]

            notes = [n for n in t.events("b", T_NOTIFICATION) if n["type"] == "mention"]
            assert len(notes) == 1 and notes[0]["from"] == "alice"

            await login(hub, "c", "carol")
            replay = t.events("c", T_LOAD_HISTORY)[0]["messages"]
            assert [m["text"] for m in replay] == ["hi @bob"]

    asyncio.run(scenario())


def test_token_login_defaults_to_desktop() -> None:
    async def scenario():
        async with running_hub() as hub:
            user = await hub.store.add_user(User("dave", "Dave"))
            token = hub.identity.issue_token(user)
            hub.on_connect("d")
            await hub.handle_packet("d", packet(T_HELLO, {"token": token}))
            welcome = hub.transport.events("d", T_WELCOME)[0]
            assert welcome["client"] == CLIENT_DESKTOP
            assert hub.sessions.get("d").principal.display_name == "Dave"

    asyncio.run(scenario())


def test_banned_user_rejected_before_join() -> None:
    async def scenario():
        async with running_hub() as hub:
            await hub.store.add_user(User("mallory"))
            await hub.store.add_ban(Ban("mallory", "root", "spam", permanent=True))
            await login(hub, "m", "mallory")

            t = hub.transport
            errors = t.events("m", T_ERROR)
            assert errors[0]["type"] == "banned"
            assert errors[0]["ban"]["reason"] == "spam"
            assert "m" in t.closed
            assert T_WELCOME not in t.types("m")
            assert not hub.presence.is_online("mallory")
            assert hub.rooms.current_room("m") is None
            assert hub.sessions.get("m") is None
            assert hub.stats.get("bans_rejected") == 1

    asyncio.run(scenario())


def test_bad_credentials_close_the_connection() -> None:
    async def scenario():
        async with running_hub() as hub:
            hub.on_connect("x")
            await hub.handle_packet("x", packet(T_HELLO, {"session": "nope"}))
            assert hub.transport.events("x", T_ERROR)[0]["type"] == "unauthenticated"
            assert "x" in hub.transport.closed
            assert hub.stats.get("auth_failed") == 1

    asyncio.run(scenario())


def test_hello_must_come_first() -> None:
    async def scenario():
        async with running_hub() as hub:
            hub.on_connect("x")
            await hub.handle_packet("x", packet(T_CHAT_MESSAGE, {"text": "hi"}))
            err = hub.transport.events("x", T_ERROR)[0]
            assert err["type"] == "validation"
            assert "x" not in hub.transport.closed

            await login(hub, "a", "alice")
            await hub.handle_packet("a", packet(T_HELLO, {"session": "sid-a"}))
            assert hub.transport.events("a", T_ERROR)[0]["message"] == "already authenticated"

    asyncio.run(scenario())


def test_bad_packets_are_reported() -> None:
    async def scenario():
        async with running_hub() as hub:
            await login(hub, "a", "alice")
            await hub.handle_packet("a", b"\xff\x00garbage")
            await hub.handle_packet("a", encode({K_T: 20}))
            await hub.handle_packet("a", packet(999, {}))
            errors = hub.transport.events("a", T_ERROR)
            assert [e["type"] for e in errors] == ["validation"] * 3
            assert errors[0]["message"].startswith("bad message")
            assert hub.stats.get("pkts_bad") == 2

    asyncio.run(scenario())


def test_rate_limit() -> None:
    async def scenario():
        async with running_hub(rate_limit_msgs_per_minute=3) as hub:
            await login(hub, "a", "alice")
            for i in range(4):
                await hub.handle_packet("a", packet(T_CHAT_MESSAGE, {"text": f"m{i}"}))
            errors = hub.transport.events("a", T_ERROR)
            assert [e["type"] for e in errors] == ["rate_limited", "rate_limited"]
            assert len(hub.transport.events("a", T_CHAT_MESSAGE)) == 2

    asyncio.run(scenario())


def test_ping_pong() -> None:
    async def scenario():
        async with running_hub() as hub:
            await login(hub, "a", "alice")
            await hub.handle_packet("a", packet(T_PING, {"n": 7}))
            assert hub.transport.events("a", T_PONG) == [{"n": 7}]

            conn = hub.sessions.get("a")
            conn.awaiting_pong = 1.0
            await hub.handle_packet("a", packet(T_PONG))
            assert conn.awaiting_pong is None

    asyncio.run(scenario())


def test_typing_fanout_and_disconnect_cleanup() -> None:
    async def scenario():
        async with running_hub() as hub:
            await login(hub, "a", "alice")
            await login(hub, "b", "bob")
            room = hub.rooms.current_room("a")
            hub.transport.clear()

            await hub.handle_packet("a", packet(T_TYPING, {"typing": True}))
            assert hub.transport.events("b", T_TYPING_USERS) == [{"room": room, "users": ["alice"]}]

            hub.on_disconnect("a")
            assert hub.transport.events("b", T_TYPING_USERS)[-1] == {"room": room, "users": []}
            users = hub.transport.events("b", T_UPDATE_USER_LIST)[-1]["users"]
            assert [u["username"] for u in users] == ["bob"]
            assert hub.rooms.members(room) == ["b"]

            hub.on_disconnect("a")
            assert hub.sessions.get("a") is None

    asyncio.run(scenario())


def test_switch_room_replays_target_and_typing() -> None:
    async def scenario():
        async with running_hub() as hub:
            random = await hub.store.create_room("random")
            await login(hub, "a", "alice")
            await login(hub, "b", "bob")
            await hub.switch_room("b", random.id)
            await hub.handle_packet("b", packet(T_TYPING, True))
            hub.transport.clear()

            await hub.handle_packet("a", packet(T_SWITCH_ROOM, room="random"))
            t = hub.transport
            assert t.events("a", T_LOAD_HISTORY) == [{"room": random.id, "messages": []}]
            assert t.events("a", T_TYPING_USERS)[-1] == {"room": random.id, "users": ["bob"]}

            await hub.handle_packet("a", packet(T_SWITCH_ROOM, {"room": 4242}))
            assert t.events("a", T_ERROR)[-1]["type"] == "not_found"
            assert hub.rooms.current_room("a") == random.id
            assert hub.sessions.get("a").current_room == random.id

    asyncio.run(scenario())


def test_ban_sweep_disconnects_newly_banned_users() -> None:
    async def scenario():
        async with running_hub() as hub:
            await login(hub, "a", "alice")
            await login(hub, "b", "bob")
            await hub.store.add_ban(Ban("alice", "root", "later", permanent=True))

            assert await hub.sweep_bans() == 1
            assert "a" in hub.transport.closed
            assert hub.transport.events("a", T_ERROR)[-1]["type"] == "banned"
            assert not hub.presence.is_online("alice")
            assert hub.presence.is_online("bob")

    asyncio.run(scenario())


def test_banned_after_connect_cannot_send() -> None:
    async def scenario():
        async with running_hub() as hub:
            await login(hub, "a", "alice")
            await hub.store.add_ban(Ban("alice", "root", "later", permanent=True))
            await hub.handle_packet("a", packet(T_CHAT_MESSAGE, {"text": "still here?"}))
            assert hub.transport.events("a", T_ERROR)[-1]["type"] == "banned"
            assert "a" in hub.transport.closed
            assert hub.transport.events("a", T_CHAT_MESSAGE) == []

    asyncio.run(scenario())


def test_block_ack() -> None:
    async def scenario():
        async with running_hub() as hub:
            await login(hub, "a", "alice")
            await login(hub, "b", "bob")
            await hub.handle_packet("a", packet(T_BLOCK_USER, {"username": "bob"}))
            assert hub.transport.events("a", T_BLOCK_USER) == [{"username": "bob", "blocked": True}]
            assert await hub.store.is_blocked("alice", "bob")

    asyncio.run(scenario())


def test_stop_closes_everything() -> None:
    async def scenario():
        async with running_hub() as hub:
            await login(hub, "a", "alice")
            transport = hub.transport
        assert "a" in transport.closed
        assert not transport.started
        assert hub.sessions.get("a") is None

    asyncio.run(scenario())


def test_concurrent_hello_runs_one_handshake(tmp_path) -> None:
    async def scenario():
        async with running_hub(store=SqliteStore(str(tmp_path / "hub.db"))) as hub:
            user = await add_user(hub.store, "alice")
            await hub.store.add_session(SessionRecord("sid", user))
            hub.on_connect("a")
            hello = packet(T_HELLO, {"session": "sid"})

            await asyncio.gather(hub.handle_packet("a", hello), hub.handle_packet("a", hello))

            t = hub.transport
            assert len(t.events("a", T_WELCOME)) == 1
            assert len(t.events("a", T_ROOM_LIST)) == 1
            assert len(t.events("a", T_LOAD_HISTORY)) == 1
            assert [e["type"] for e in t.events("a", T_ERROR)] == ["validation"]
            assert "a" not in t.closed

    asyncio.run(scenario())
