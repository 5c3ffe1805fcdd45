import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

import fakeredis
import pytest
import pytest_asyncio

from backend import RedisBackend
from engine.service import RoomEngine


@dataclass
class Emission:
    event: str
    data: Any
    to: Optional[str]
    room: Optional[str]
    recipients: Optional[frozenset]  # None means every connection


@dataclass
class FakeTransport:
    """Records what the engine sends, resolving room targets at emit time."""

    rooms: Dict[str, Set[str]] = field(default_factory=dict)
    sent: List[Emission] = field(default_factory=list)
    disconnected: List[str] = field(default_factory=list)

    async def emit(self, event, data=None, to=None, room=None, **kwargs):
        if to is not None:
            recipients = frozenset({to})
        elif room is not None:
            recipients = frozenset(self.rooms.get(room, set()))
        else:
            recipients = None
        self.sent.append(Emission(event, data, to, room, recipients))

    async def enter_room(self, sid, room, namespace=None):
        self.rooms.setdefault(room, set()).add(sid)

    async def leave_room(self, sid, room, namespace=None):
        self.rooms.get(room, set()).discard(sid)

    async def disconnect(self, sid, namespace=None):
        self.disconnected.append(sid)
        for members in self.rooms.values():
            members.discard(sid)

    def events(self, name: str) -> List[Emission]:
        return [e for e in self.sent if e.event == name]

    def received(self, sid: str, name: str) -> List[Any]:
        return [
            e.data for e in self.sent
            if e.event == name and (e.recipients is None or sid in e.recipients)
        ]

    def clear(self):
        self.sent.clear()


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Gate:
    """Suspends calls to a store coroutine until ``release()``.

    With ``after=True`` the wrapped call runs first and only its result is
    held back, so the caller resumes with a value read before the release.
    """

    def __init__(self, func, after: bool = False):
        self.func = func
        self.after = after
        self.calls = 0
        self.entered = asyncio.Event()
        self._released = asyncio.Event()

    async def __call__(self, *args, **kwargs):
        self.calls += 1
        if self.after:
            result = await self.func(*args, **kwargs)
            self.entered.set()
            await self._released.wait()
            return result
        self.entered.set()
        await self._released.wait()
        return await self.func(*args, **kwargs)

    def release(self) -> None:
        self._released.set()

    async def wait_for_calls(self, count: int) -> None:
        while self.calls < count:
            await asyncio.sleep(0)


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def backend(redis_client):
    return RedisBackend(redis_client)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(backend, transport, clock):
    return RoomEngine(backend, transport, clock=clock)


async def connect(engine, sid, user_id, username=None, roles=0):
    auth = {"id": user_id, "username": username or f"user{user_id}", "roles": roles}
    return await engine.connect(sid, auth)
