from __future__ import annotations

import pytest

from conftest import FIXED_TS, BrokenChannel, RecordingChannel, raw
from roomrelay.core import proto
from roomrelay.core.router import Router
from roomrelay.core.store import DMS, ROOMS, MemoryStore, StoreError


def assert_consistent(router):
    """session.room == r  <=>  session in directory[r]"""
    for session in router.sessions.sessions():
        for room in router.rooms.names():
            member = session in router.rooms.members(room)
            assert member == (session.room == room), (session.id, room)


# -----------------------------
# Connection + login
# -----------------------------

@pytest.mark.asyncio
async def test_login_sequence(router, connect, store):
    session, ch = connect()
    assert ch.types() == ["welcome"]

    await router.handle(session, raw(type="login", username="alice"))

    assert ch.types() == ["welcome", "login_success", "history", "presence", "notification"]
    ok = ch.of_type("login_success")[0]
    assert ok["username"] == "alice"
    assert ok["room"] == "lobby"
    assert ok["rooms"] == ["lobby"]
    assert ok["users"] == [{"username": "alice", "room": "lobby"}]
    assert ch.of_type("history")[0] == {"type": "history", "room": "lobby", "messages": []}
    assert {"username": "alice", "room": "lobby"} in ch.of_type("presence")[0]["users"]
    assert ch.of_type("notification")[0]["text"] == "alice joined lobby"
    assert (await store.read_all())[ROOMS] == {"lobby": []}
    assert_consistent(router)


@pytest.mark.asyncio
async def test_login_defaults_and_trims_name(router, connect):
    s1, _ = connect()
    s2, _ = connect()
    await router.handle(s1, raw(type="login", username="   "))
    await router.handle(s2, raw(type="login", username="  bob  "))
    assert s1.username == f"User{s1.id}"
    assert s2.username == "bob"


@pytest.mark.asyncio
async def test_relogin_keeps_single_membership(router, login):
    alice, ch = await login("alice")
    bob, b = await login("bob")
    await router.handle(alice, raw(type="join_room", room="general"))
    await router.handle(bob, raw(type="join_room", room="general"))
    b.clear()
    await router.handle(alice, raw(type="login", username="alice"))
    await router.handle(alice, raw(type="login", username="alice"))

    rooms_with_alice = [r for r in router.rooms.names() if alice in router.rooms.members(r)]
    assert rooms_with_alice == ["lobby"]
    assert alice.room == "lobby"
    assert bob.room == "general"
    assert b.of_type("notification") == [proto.notification("alice left general")]
    assert_consistent(router)


@pytest.mark.asyncio
async def test_login_history_is_last_200(router, connect, store):
    for i in range(250):
        await store.append(ROOMS, "lobby", {"username": "x", "text": str(i), "ts": i})
    session, ch = connect()
    await router.handle(session, raw(type="login", username="alice"))
    messages = ch.of_type("history")[0]["messages"]
    assert len(messages) == 200
    assert messages[0]["text"] == "50"
    assert messages[-1]["text"] == "249"


# -----------------------------
# Guards
# -----------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize(
    "event",
    [
        {"type": "create_room", "room": "x"},
        {"type": "join_room", "room": "x"},
        {"type": "leave_room"},
        {"type": "message", "text": "hi"},
        {"type": "dm", "to": "bob", "text": "hi"},
        {"type": "typing", "isTyping": True},
        {"type": "history", "room": "lobby"},
    ],
)
async def test_actions_require_login(router, connect, store, event):
    session, ch = connect()
    ch.clear()
    await router.handle(session, raw(**event))
    assert ch.frames == [proto.error(proto.E_LOGIN_REQUIRED)]
    assert router.rooms.names() == []
    assert await store.read_all() == {"rooms": {}, "dms": {}}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    ["not json", "[1, 2]", '"login"', '{"type": "shout"}', '{"username": "x"}', '{"type": "message", "text": {"a": 1}}'],
)
async def test_malformed_frames_are_dropped(router, connect, payload):
    session, ch = connect()
    ch.clear()
    await router.handle(session, payload)
    assert ch.frames == []
    assert session.username is None


@pytest.mark.asyncio
async def test_frames_after_disconnect_are_ignored(router, connect):
    session, ch = connect()
    router.disconnect(session)
    ch.clear()
    await router.handle(session, raw(type="login", username="ghost"))
    assert ch.frames == []
    assert router.sessions.snapshot() == []


# -----------------------------
# Rooms
# -----------------------------

@pytest.mark.asyncio
async def test_create_room_broadcasts_room_list(router, login, connect, store):
    alice, a = await login("alice")
    _, anon = connect()
    anon.clear()

    await router.handle(alice, raw(type="create_room", room="  general "))

    expected = proto.room_list(["lobby", "general"])
    assert a.frames == [expected]
    assert anon.frames == [expected]
    assert "general" in (await store.read_all())[ROOMS]
    assert alice.room == "lobby"


@pytest.mark.asyncio
async def test_create_room_rejects_blank_name(router, login):
    alice, a = await login("alice")
    await router.handle(alice, raw(type="create_room", room="  "))
    assert a.frames == [proto.error(proto.E_ROOM_REQUIRED)]
    assert router.rooms.names() == ["lobby"]


@pytest.mark.asyncio
async def test_join_room_moves_membership_and_notifies(router, login, store):
    alice, a = await login("alice")
    bob, b = await login("bob")
    await store.append(ROOMS, "general", {"username": "carol", "text": "old", "ts": 1})
    a.clear()
    b.clear()

    await router.handle(alice, raw(type="join_room", room="general"))

    assert alice.room == "general"
    assert alice not in router.rooms.members("lobby")
    assert b.of_type("notification") == [proto.notification("alice left lobby")]
    assert a.of_type("history") == [proto.history("general", [{"username": "carol", "text": "old", "ts": 1}])]
    assert a.of_type("notification") == [proto.notification("alice joined general")]
    assert b.of_type("room_list") == [proto.room_list(["lobby", "general"])]
    assert {"username": "alice", "room": "general"} in b.of_type("presence")[-1]["users"]
    assert_consistent(router)


@pytest.mark.asyncio
async def test_join_current_room_only_resends_history(router, login):
    alice, a = await login("alice")
    await router.handle(alice, raw(type="join_room", room="lobby"))
    assert a.types() == ["history"]


@pytest.mark.asyncio
async def test_leave_room(router, login):
    alice, a = await login("alice")
    bob, b = await login("bob")
    a.clear()
    b.clear()

    await router.handle(alice, raw(type="leave_room"))

    assert alice.room is None
    assert router.rooms.members("lobby") == [bob]
    assert "lobby" in router.rooms.names()
    assert b.of_type("notification") == [proto.notification("alice left lobby")]
    assert a.of_type("notification") == []
    users = b.of_type("presence")[0]["users"]
    assert {"username": "alice", "room": None} in users
    assert_consistent(router)


# -----------------------------
# Messages
# -----------------------------

@pytest.mark.asyncio
async def test_room_message_reaches_room_only(router, login, store):
    alice, a = await login("alice")
    bob, b = await login("bob")
    carol, c = await login("carol")
    await router.handle(carol, raw(type="join_room", room="elsewhere"))
    for ch in (a, b, c):
        ch.clear()

    await router.handle(alice, raw(type="message", text="hi"))

    expected = proto.room_message("lobby", "alice", "hi", FIXED_TS)
    assert a.frames == [expected]
    assert b.frames == [expected]
    assert c.frames == []
    assert await store.read(ROOMS, "lobby") == [{"username": "alice", "text": "hi", "ts": FIXED_TS}]


@pytest.mark.asyncio
async def test_message_to_explicit_room(router, login, store):
    alice, a = await login("alice")
    bob, b = await login("bob")
    await router.handle(bob, raw(type="join_room", room="general"))
    b.clear()
    a.clear()

    await router.handle(alice, raw(type="message", room="general", text="yo"))

    assert b.frames == [proto.room_message("general", "alice", "yo", FIXED_TS)]
    assert a.frames == []
    assert len(await store.read(ROOMS, "general")) == 1


@pytest.mark.asyncio
async def test_message_without_room_is_an_error(router, login, store):
    alice, a = await login("alice")
    await router.handle(alice, raw(type="leave_room"))
    before = await store.read_all()
    a.clear()

    await router.handle(alice, raw(type="message", text="anyone?"))

    assert a.frames == [proto.error(proto.E_NOT_IN_ROOM)]
    assert await store.read_all() == before


@pytest.mark.asyncio
async def test_room_retention_drops_oldest(router, login, store):
    router.max_messages = 5
    alice, _ = await login("alice")
    for i in range(6):
        await router.handle(alice, raw(type="message", text=f"m{i}"))
    texts = [m["text"] for m in await store.read(ROOMS, "lobby")]
    assert texts == ["m1", "m2", "m3", "m4", "m5"]


@pytest.mark.asyncio
async def test_room_retention_default_cap(store):
    router = Router(store, now=lambda: FIXED_TS)
    for i in range(2000):
        await store.append(ROOMS, "lobby", {"username": "x", "text": str(i), "ts": i})
    session = router.connect(RecordingChannel())
    await router.handle(session, raw(type="login", username="alice"))
    await router.handle(session, raw(type="message", text="2000"))

    log_ = await store.read(ROOMS, "lobby")
    assert len(log_) == 2000
    assert log_[0]["text"] == "1"
    assert [m["text"] for m in log_[-2:]] == ["1999", "2000"]


# -----------------------------
# Direct messages
# -----------------------------

@pytest.mark.asyncio
async def test_dm_online_target(router, login, store):
    alice, a = await login("alice")
    bob, b = await login("bob")
    a.clear()
    b.clear()

    await router.handle(alice, raw(type="dm", to="bob", text="hey"))

    expected = proto.dm_message("alice", "bob", "hey", FIXED_TS)
    assert a.frames == [expected]
    assert b.frames == [expected]


@pytest.mark.asyncio
async def test_dm_offline_target_still_persisted(router, login, store):
    alice, a = await login("alice")
    await router.handle(alice, raw(type="dm", to="bob", text="hey"))

    assert a.frames == [proto.dm_message("alice", "bob", "hey", FIXED_TS)]
    assert await store.read(DMS, "alice|bob") == [
        {"from": "alice", "to": "bob", "text": "hey", "ts": FIXED_TS}
    ]


@pytest.mark.asyncio
async def test_dm_key_is_direction_independent(router, login, store):
    alice, _ = await login("alice")
    bob, _ = await login("bob")
    await router.handle(alice, raw(type="dm", to="bob", text="1"))
    await router.handle(bob, raw(type="dm", to="alice", text="2"))

    assert list((await store.read_all())[DMS]) == ["alice|bob"]
    assert [m["text"] for m in await store.read(DMS, "alice|bob")] == ["1", "2"]


@pytest.mark.asyncio
async def test_dm_duplicate_names_first_connected_wins(router, login):
    alice, _ = await login("alice")
    bob1, b1 = await login("bob")
    bob2, b2 = await login("bob")

    await router.handle(alice, raw(type="dm", to="bob", text="which one"))

    assert len(b1.of_type("dm_message")) == 1
    assert b2.of_type("dm_message") == []


@pytest.mark.asyncio
async def test_dm_requires_recipient(router, login, store):
    alice, a = await login("alice")
    await router.handle(alice, raw(type="dm", to="  ", text="?"))
    assert a.frames == [proto.error(proto.E_RECIPIENT_REQUIRED)]
    assert (await store.read_all())[DMS] == {}


# -----------------------------
# Typing + history
# -----------------------------

@pytest.mark.asyncio
async def test_typing_goes_to_other_room_members(router, login):
    alice, a = await login("alice")
    bob, b = await login("bob")
    carol, c = await login("carol")
    await router.handle(carol, raw(type="join_room", room="other"))
    for ch in (a, b, c):
        ch.clear()

    await router.handle(alice, raw(type="typing", room="lobby", isTyping=True))

    assert alice.typing is True
    assert a.frames == []
    assert b.frames == [proto.typing("lobby", "alice", True)]
    assert c.frames == []


@pytest.mark.asyncio
async def test_typing_outside_a_room_only_sets_flag(router, login):
    alice, a = await login("alice")
    bob, b = await login("bob")
    await router.handle(alice, raw(type="leave_room"))
    a.clear()
    b.clear()

    await router.handle(alice, raw(type="typing", room="lobby", isTyping=True))

    assert alice.typing is True
    assert alice.room is None
    assert a.frames == []
    assert b.frames == []


@pytest.mark.asyncio
async def test_history_returns_full_log(router, login, store):
    alice, a = await login("alice")
    for i in range(300):
        await store.append(ROOMS, "archive", {"username": "x", "text": str(i), "ts": i})

    await router.handle(alice, raw(type="history", room="archive"))

    messages = a.of_type("history")[0]["messages"]
    assert len(messages) == 300


@pytest.mark.asyncio
async def test_history_requires_room(router, login):
    alice, a = await login("alice")
    await router.handle(alice, raw(type="history"))
    assert a.frames == [proto.error(proto.E_ROOM_REQUIRED)]


# -----------------------------
# Disconnect
# -----------------------------

@pytest.mark.asyncio
async def test_disconnect_notifies_room_and_updates_presence(router, login):
    alice, a = await login("alice")
    bob, b = await login("bob")
    await router.handle(alice, raw(type="join_room", room="general"))
    await router.handle(bob, raw(type="join_room", room="general"))
    b.clear()

    router.disconnect(alice)

    assert b.types() == ["presence", "notification"]
    assert b.frames[0]["users"] == [{"username": "bob", "room": "general"}]
    assert b.frames[1] == proto.notification("alice disconnected")
    assert alice not in router.sessions
    assert router.rooms.members("general") == [bob]
    assert_consistent(router)


def test_disconnect_before_login(router, connect):
    s1, c1 = connect()
    s2, c2 = connect()
    c1.clear()

    router.disconnect(s2)

    assert c1.frames == [proto.presence([])]
    assert len(router.sessions) == 1


# -----------------------------
# Failure isolation
# -----------------------------

@pytest.mark.asyncio
async def test_broken_channel_does_not_block_others(router, connect, login):
    broken, _ = connect(BrokenChannel())
    await router.handle(broken, raw(type="login", username="mallory"))
    alice, a = await login("alice")
    bob, b = await login("bob")

    await router.handle(alice, raw(type="message", text="still works"))

    assert b.of_type("room_message")[0]["text"] == "still works"


class FailingStore(MemoryStore):
    async def append(self, bucket, key, entry, cap=2000):
        raise StoreError("disk full")

    async def ensure(self, bucket, key):
        raise StoreError("disk full")

    async def read(self, bucket, key, limit=None):
        raise StoreError("disk full")


@pytest.mark.asyncio
async def test_store_failure_keeps_relay_running():
    router = Router(FailingStore(), now=lambda: FIXED_TS)
    alice_ch, bob_ch = RecordingChannel(), RecordingChannel()
    alice = router.connect(alice_ch)
    bob = router.connect(bob_ch)
    await router.handle(alice, raw(type="login", username="alice"))
    await router.handle(bob, raw(type="login", username="bob"))

    assert alice_ch.of_type("history")[0]["messages"] == []
    bob_ch.clear()
    await router.handle(alice, raw(type="message", text="unsaved"))
    assert bob_ch.frames == [proto.room_message("lobby", "alice", "unsaved", FIXED_TS)]
