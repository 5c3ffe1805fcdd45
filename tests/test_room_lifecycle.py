import asyncio

import pytest

from errors import RoomNotFound, PersistenceFailure
from conftest import Gate, connect


def assert_consistent(engine, room_id):
    occupied = engine.rooms.has_members(room_id)
    assert (room_id in engine.playback.states) == occupied
    assert (room_id in engine.hosts.assignments) == occupied


@pytest.mark.asyncio
async def test_join_seeds_room_state_from_store(engine, backend, transport):
    await backend.create_room("r1", episode_id=7, episode=3)
    await connect(engine, "s1", 1)

    await engine.join_room("s1", "r1")

    assert transport.received("s1", "room_state") == [{
        "episode": {"id": 7, "number": 3},
        "playbackState": {"action": "pause", "time": 0},
    }]
    assert transport.received("s1", "host_status") == [{"isHost": True}]
    assert transport.received("s1", "viewer_count_update") == [{"count": 1}]
    assert transport.received("s1", "user_joined") == [
        {"user": {"id": 1, "username": "user1", "avatar": "/public/images/no-avatar.jpeg"}}
    ]
    assert (await backend.get_room("r1")).current_viewers == 1
    assert_consistent(engine, "r1")


@pytest.mark.asyncio
async def test_join_unknown_room_mutates_nothing(engine, transport):
    await connect(engine, "s1", 1)
    transport.clear()

    with pytest.raises(RoomNotFound):
        await engine.join_room("s1", "missing")

    assert not engine.rooms.has_members("missing")
    assert_consistent(engine, "missing")
    assert transport.sent == []


@pytest.mark.asyncio
async def test_join_with_failing_store_mutates_nothing(engine, backend, transport, monkeypatch):
    await backend.create_room("r1", episode_id=1, episode=1)
    await connect(engine, "s1", 1)

    async def broken(room_id):
        raise PersistenceFailure("increment_viewers")

    monkeypatch.setattr(backend, "increment_viewers", broken)

    with pytest.raises(PersistenceFailure):
        await engine.join_room("s1", "r1")
    assert_consistent(engine, "r1")
    assert not engine.rooms.has_members("r1")


@pytest.mark.asyncio
async def test_rejoin_does_not_count_twice(engine, backend, transport):
    await backend.create_room("r1", episode_id=1, episode=1)
    await connect(engine, "s1", 1)

    await engine.join_room("s1", "r1")
    await engine.join_room("s1", "r1")

    assert (await backend.get_room("r1")).current_viewers == 1
    assert len(transport.received("s1", "room_state")) == 2
    assert len(transport.events("user_joined")) == 1


@pytest.mark.asyncio
async def test_second_joiner_reuses_cached_state(engine, backend, transport):
    await backend.create_room("r1", episode_id=7, episode=3)
    await connect(engine, "s1", 1)
    await connect(engine, "s2", 2)
    await engine.join_room("s1", "r1")
    await engine.video_control("s1", "r1", "play", 42.5)

    await engine.join_room("s2", "r1")

    assert transport.received("s2", "room_state")[-1]["playbackState"] == {"action": "play", "time": 42.5}
    assert transport.received("s2", "host_status") == [{"isHost": False}]
    assert transport.received("s1", "viewer_count_update")[-1] == {"count": 2}


@pytest.mark.asyncio
async def test_last_leave_clears_room(engine, backend, transport):
    await backend.create_room("r1", episode_id=1, episode=1)
    await connect(engine, "s1", 1)
    await connect(engine, "s2", 2)
    await engine.join_room("s1", "r1")
    await engine.join_room("s2", "r1")

    await engine.leave_room("s2", "r1")
    assert_consistent(engine, "r1")
    assert engine.rooms.has_members("r1")
    assert transport.received("s1", "user_left")[-1] == {"user": {"id": 2, "username": "user2"}}
    assert transport.received("s1", "viewer_count_update")[-1] == {"count": 1}
    assert "s2" not in transport.rooms["r1"]

    await engine.leave_room("s1", "r1")
    assert_consistent(engine, "r1")
    assert not engine.rooms.has_members("r1")
    assert (await backend.get_room("r1")).current_viewers == 0


@pytest.mark.asyncio
async def test_leave_without_membership_keeps_count(engine, backend):
    await backend.create_room("r1", episode_id=1, episode=1)
    await connect(engine, "s1", 1)

    await engine.leave_room("s1", "r1")

    assert (await backend.get_room("r1")).current_viewers == 0


@pytest.mark.asyncio
async def test_disconnect_applies_leave_to_every_room(engine, backend, transport):
    await backend.create_room("r1", episode_id=1, episode=1)
    await backend.create_room("r2", episode_id=2, episode=2)
    await connect(engine, "s1", 1)
    await connect(engine, "s2", 2)
    for room_id in ("r1", "r2"):
        await engine.join_room("s1", room_id)
    await engine.join_room("s2", "r1")

    await engine.disconnect("s1")
    # the in-memory part is immediate
    assert engine.rooms.rooms_of("s1") == []
    assert_consistent(engine, "r1")
    assert_consistent(engine, "r2")
    assert engine.connections.get("s1") is None

    await engine.tasks.drain()
    assert (await backend.get_room("r1")).current_viewers == 1
    assert (await backend.get_room("r2")).current_viewers == 0
    assert transport.received("s2", "user_left")[-1]["user"]["id"] == 1


@pytest.mark.asyncio
async def test_disconnect_survives_store_failure(engine, backend, transport, monkeypatch):
    await backend.create_room("r1", episode_id=1, episode=1)
    await connect(engine, "s1", 1)
    await connect(engine, "s2", 2)
    await engine.join_room("s1", "r1")
    await engine.join_room("s2", "r1")

    async def broken(room_id):
        raise PersistenceFailure("decrement_viewers")

    monkeypatch.setattr(backend, "decrement_viewers", broken)

    await engine.disconnect("s2")
    await engine.tasks.drain()

    assert engine.rooms.members_of("r1") == ["s1"]
    assert transport.received("s1", "user_left")[-1]["user"]["id"] == 2


@pytest.mark.asyncio
async def test_end_live_by_host_deletes_room(engine, backend, transport):
    await backend.create_room("r1", episode_id=1, episode=1)
    await connect(engine, "s1", 1)
    await connect(engine, "s2", 2)
    await engine.join_room("s1", "r1")
    await engine.join_room("s2", "r1")
    await engine.room_message("s2", "r1", "hello")

    await engine.end_live("s1", "r1")

    assert await backend.get_room("r1") is None
    assert await backend.get_room_message("r1", 1) is None
    assert transport.received("s2", "room_ended") == [{"roomId": "r1"}]
    assert transport.rooms["r1"] == set()
    assert_consistent(engine, "r1")
    assert not engine.rooms.has_members("r1")


@pytest.mark.asyncio
async def test_end_live_by_moderator(engine, backend, transport):
    await backend.create_room("r1", episode_id=1, episode=1)
    await connect(engine, "s1", 1)
    await connect(engine, "mod", 9, roles=2)
    await engine.join_room("s1", "r1")

    await engine.end_live("mod", "r1")

    assert await backend.get_room("r1") is None


@pytest.mark.asyncio
async def test_end_live_rejected_for_plain_member(engine, backend):
    from errors import Unauthorized

    await backend.create_room("r1", episode_id=1, episode=1)
    await connect(engine, "s1", 1)
    await connect(engine, "s2", 2)
    await engine.join_room("s1", "r1")
    await engine.join_room("s2", "r1")

    with pytest.raises(Unauthorized):
        await engine.end_live("s2", "r1")
    assert await backend.get_room("r1") is not None
    assert engine.rooms.has_members("r1")


@pytest.mark.asyncio
async def test_disconnect_during_room_lookup_leaves_no_member(engine, backend, transport, monkeypatch):
    await backend.create_room("r1", episode_id=1, episode=1)
    await connect(engine, "s1", 1)
    gate = Gate(backend.get_room)
    monkeypatch.setattr(backend, "get_room", gate)

    joining = asyncio.create_task(engine.join_room("s1", "r1"))
    await gate.entered.wait()
    await engine.disconnect("s1")
    gate.release()

    assert await joining is None
    await engine.tasks.drain()
    assert engine.rooms.members_of("r1") == []
    assert_consistent(engine, "r1")
    assert (await backend.get_room("r1")).current_viewers == 0
    assert transport.received("s1", "room_state") == []


@pytest.mark.asyncio
async def test_disconnect_during_viewer_increment_undoes_it(engine, backend, monkeypatch):
    await backend.create_room("r1", episode_id=1, episode=1)
    await connect(engine, "s1", 1)
    gate = Gate(backend.increment_viewers)
    monkeypatch.setattr(backend, "increment_viewers", gate)

    joining = asyncio.create_task(engine.join_room("s1", "r1"))
    await gate.entered.wait()
    await engine.disconnect("s1")
    gate.release()

    assert await joining is None
    await engine.tasks.drain()
    assert not engine.rooms.has_members("r1")
    assert_consistent(engine, "r1")
    assert (await backend.get_room("r1")).current_viewers == 0


@pytest.mark.asyncio
async def test_simultaneous_first_joins_agree_on_state_and_host(engine, backend, transport, monkeypatch):
    await backend.create_room("r1", episode_id=7, episode=3)
    await connect(engine, "s1", 1)
    await connect(engine, "s2", 2)
    gate = Gate(backend.get_room)
    monkeypatch.setattr(backend, "get_room", gate)

    joins = asyncio.gather(engine.join_room("s1", "r1"), engine.join_room("s2", "r1"))
    await gate.wait_for_calls(2)
    gate.release()
    first, second = await joins

    assert first == second
    assert first.to_dict() == {"episode": {"id": 7, "number": 3}, "playbackState": {"action": "pause", "time": 0}}
    assert sorted(engine.rooms.members_of("r1")) == ["s1", "s2"]
    assert engine.hosts.current("r1") in (1, 2)
    statuses = transport.received("s1", "host_status") + transport.received("s2", "host_status")
    assert sorted(s["isHost"] for s in statuses) == [False, True]
    assert (await backend.get_room("r1")).current_viewers == 2


@pytest.mark.asyncio
async def test_same_connection_joining_twice_at_once_counts_once(engine, backend, transport, monkeypatch):
    await backend.create_room("r1", episode_id=1, episode=1)
    await connect(engine, "s1", 1)
    gate = Gate(backend.get_room)
    monkeypatch.setattr(backend, "get_room", gate)

    joins = asyncio.gather(engine.join_room("s1", "r1"), engine.join_room("s1", "r1"))
    await gate.wait_for_calls(2)
    gate.release()
    await joins
    await engine.tasks.drain()

    assert engine.rooms.members_of("r1") == ["s1"]
    assert (await backend.get_room("r1")).current_viewers == 1
    assert len(transport.events("user_joined")) == 1
