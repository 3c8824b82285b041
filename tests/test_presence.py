from chathub.models import Principal
from chathub.presence import PresenceTracker

ALICE = Principal("alice", "Alice")
BOB = Principal("bob", "Bob")


def test_multi_device_presence() -> None:
    snapshots = []
    tracker = PresenceTracker(on_online_changed=snapshots.append)

    tracker.register("a1", ALICE)
    tracker.register("a2", ALICE)
    assert tracker.list_online() == {"alice"}
    assert tracker.principal_for("a2") == ALICE
    assert sorted(tracker.connections_for("alice")) == ["a1", "a2"]

    tracker.unregister("a1")
    assert tracker.list_online() == {"alice"}

    tracker.unregister("a2")
    assert tracker.list_online() == set()
    assert len(snapshots) == 4
    assert [p.username for p in snapshots[1]] == ["alice"]
    assert snapshots[-1] == []


def test_online_principals_sorted_and_deduplicated() -> None:
    tracker = PresenceTracker()
    tracker.register("b", BOB)
    tracker.register("a1", ALICE)
    tracker.register("a2", ALICE)
    assert [p.username for p in tracker.online_principals()] == ["alice", "bob"]


def test_unregister_unknown_is_noop() -> None:
    calls = []
    tracker = PresenceTracker(on_online_changed=calls.append)
    assert tracker.unregister("ghost") is None
    assert calls == []


def test_typing_keyed_by_room_and_connection() -> None:
    changes = []
    tracker = PresenceTracker(on_typing_changed=lambda room, users: changes.append((room, users)))
    tracker.register("a1", ALICE)
    tracker.register("a2", ALICE)
    tracker.register("b", BOB)

    assert tracker.set_typing(1, "a1", True)
    assert tracker.set_typing(2, "a2", True)
    assert tracker.set_typing(1, "b", True)
    assert not tracker.set_typing(1, "b", True)
    assert tracker.list_typing(1) == ["alice", "bob"]
    assert tracker.list_typing(2) == ["alice"]

    assert tracker.set_typing(1, "b", False)
    assert not tracker.set_typing(1, "b", False)
    assert tracker.list_typing(1) == ["alice"]
    assert changes[-1] == (1, ["alice"])


def test_disconnect_purges_typing_and_rebroadcasts() -> None:
    changes = []
    tracker = PresenceTracker(on_typing_changed=lambda room, users: changes.append((room, users)))
    tracker.register("a1", ALICE)
    tracker.set_typing(1, "a1", True)
    tracker.set_typing(2, "a1", True)
    changes.clear()

    tracker.unregister("a1")

    assert tracker.list_typing(1) == []
    assert tracker.list_typing(2) == []
    assert sorted(changes) == [(1, []), (2, [])]


def test_unregistered_connection_cannot_type() -> None:
    tracker = PresenceTracker()
    assert not tracker.set_typing(1, "ghost", True)
    assert tracker.list_typing(1) == []
