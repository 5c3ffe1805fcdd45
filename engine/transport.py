from typing import Any, Optional, Protocol


class Transport(Protocol):
    """The part of ``socketio.AsyncServer`` the engine relies on.

    ``emit`` with ``to`` targets one connection, with ``room`` every
    connection in that room, and with neither every connection.
    """

    async def emit(self, event: str, data: Any = None, to: Optional[str] = None,
                   room: Optional[str] = None, **kwargs) -> None: ...

    async def enter_room(self, sid: str, room: str, namespace: Optional[str] = None) -> None: ...

    async def leave_room(self, sid: str, room: str, namespace: Optional[str] = None) -> None: ...

    async def disconnect(self, sid: str, namespace: Optional[str] = None) -> None: ...
