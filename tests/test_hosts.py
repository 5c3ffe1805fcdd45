import asyncio

import pytest

from errors import Unauthorized
from conftest import Gate, connect


async def setup_room(engine, backend, host_id=None, members=(1, 2)):
    await backend.create_room("r1", host_id=host_id, episode_id=1, episode=1)
    for user_id in members:
        await connect(engine, f"s{user_id}", user_id)
        await engine.join_room(f"s{user_id}", "r1")


@pytest.mark.asyncio
async def test_first_joiner_becomes_host(engine, backend, transport):
    await setup_room(engine, backend)

    assert engine.hosts.current("r1") == 1
    assert engine.hosts.assignments["r1"].confirmed is False
    assert transport.received("s1", "host_status") == [{"isHost": True}]
    assert transport.received("s2", "host_status") == [{"isHost": False}]


@pytest.mark.asyncio
async def test_stored_host_takes_precedence(engine, backend, transport):
    await setup_room(engine, backend, host_id=2)

    assert engine.hosts.current("r1") == 2
    assert engine.hosts.assignments["r1"].confirmed is True
    assert transport.received("s1", "host_status") == [{"isHost": False}]
    assert transport.received("s2", "host_status") == [{"isHost": True}]


@pytest.mark.asyncio
async def test_stored_host_replaces_locally_elected_one(engine, backend, transport):
    await setup_room(engine, backend, members=(1,))
    assert engine.hosts.current("r1") == 1

    await backend.set_host("r1", 5)
    await connect(engine, "s2", 2)
    await engine.join_room("s2", "r1")

    assert engine.hosts.current("r1") == 5
    assert transport.received("s2", "host_status") == [{"isHost": False}]


@pytest.mark.asyncio
async def test_transfer_by_host_updates_every_member(engine, backend, transport):
    await setup_room(engine, backend, members=(1, 2, 3))
    transport.clear()

    await engine.transfer_host("s1", "r1", 3)

    assert engine.hosts.current("r1") == 3
    assert (await backend.get_room("r1")).host_id == 3
    assert transport.received("s2", "host_changed") == [{"newHostId": 3}]
    for user_id in (1, 2, 3):
        assert transport.received(f"s{user_id}", "host_status") == [{"isHost": user_id == 3}]


@pytest.mark.asyncio
async def test_transfer_by_non_host_is_rejected(engine, backend, transport):
    await setup_room(engine, backend)
    transport.clear()

    with pytest.raises(Unauthorized):
        await engine.transfer_host("s2", "r1", 2)

    assert engine.hosts.current("r1") == 1
    assert (await backend.get_room("r1")).host_id is None
    assert transport.sent == []


@pytest.mark.asyncio
async def test_failover_to_remaining_member(engine, backend, transport):
    await setup_room(engine, backend)
    transport.clear()

    await engine.leave_room("s1", "r1")

    assert engine.hosts.current("r1") == 2
    assert transport.received("s2", "host_changed") == [{"newHostId": 2}]
    assert transport.received("s2", "host_status") == [{"isHost": True}]


@pytest.mark.asyncio
async def test_failover_picks_earliest_joined_member(engine, backend):
    await setup_room(engine, backend, members=(1, 3, 2))

    await engine.leave_room("s1", "r1")

    assert engine.hosts.current("r1") == 3


@pytest.mark.asyncio
async def test_sole_host_leaving_clears_room_without_failover(engine, backend, transport):
    await setup_room(engine, backend, members=(1,))
    transport.clear()

    await engine.leave_room("s1", "r1")

    assert "r1" not in engine.hosts.assignments
    assert "r1" not in engine.playback.states
    assert transport.events("host_changed") == []


@pytest.mark.asyncio
async def test_no_failover_while_host_has_another_connection(engine, backend, transport):
    await setup_room(engine, backend)
    await connect(engine, "s1-phone", 1)
    await engine.join_room("s1-phone", "r1")
    transport.clear()

    await engine.leave_room("s1", "r1")

    assert engine.hosts.current("r1") == 1
    assert transport.events("host_changed") == []


@pytest.mark.asyncio
async def test_failover_of_stored_host_is_persisted(engine, backend):
    await setup_room(engine, backend, host_id=1)

    await engine.disconnect("s1")
    await engine.tasks.drain()

    assert engine.hosts.current("r1") == 2
    assert (await backend.get_room("r1")).host_id == 2


@pytest.mark.asyncio
async def test_join_while_failover_write_in_flight_keeps_new_host(engine, backend, transport, monkeypatch):
    await setup_room(engine, backend, host_id=1)
    gate = Gate(backend.set_host)
    monkeypatch.setattr(backend, "set_host", gate)

    await engine.disconnect("s1")
    await connect(engine, "s3", 3)
    await engine.join_room("s3", "r1")

    assert engine.hosts.current("r1") == 2
    assert transport.received("s3", "host_status") == [{"isHost": False}]

    gate.release()
    await engine.tasks.drain()
    assert (await backend.get_room("r1")).host_id == 2
    assert engine.hosts.current("r1") == 2
    assert "r1" not in engine.hosts.persisting


@pytest.mark.asyncio
async def test_join_that_read_the_record_before_failover_keeps_new_host(engine, backend, transport, monkeypatch):
    await setup_room(engine, backend, host_id=1)
    await connect(engine, "s3", 3)
    gate = Gate(backend.get_room, after=True)
    monkeypatch.setattr(backend, "get_room", gate)

    joining = asyncio.create_task(engine.join_room("s3", "r1"))
    await gate.entered.wait()
    await engine.disconnect("s1")
    await engine.tasks.drain()
    gate.release()
    await joining

    assert engine.hosts.current("r1") == 2
    assert transport.received("s3", "host_status") == [{"isHost": False}]
    online = {engine.connections.get(sid).id for sid in engine.rooms.members_of("r1")}
    assert engine.hosts.current("r1") in online


@pytest.mark.asyncio
async def test_transfer_after_failover_is_authoritative(engine, backend):
    await setup_room(engine, backend, host_id=1, members=(1, 2, 3))
    await engine.disconnect("s1")
    await engine.tasks.drain()

    await engine.transfer_host("s2", "r1", 3)
    await connect(engine, "s4", 4)
    await engine.join_room("s4", "r1")

    assert engine.hosts.current("r1") == 3
    assert (await backend.get_room("r1")).host_id == 3
