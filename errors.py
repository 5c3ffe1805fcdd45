"""
Error taxonomy for the room engine.

Every error carries a human-readable message; the socket layer forwards it to
the initiating connection as a generic ``error`` event.
"""


class EngineError(Exception):
    """Base class for failures reported back to the initiating connection."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(EngineError):
    pass


class RoomNotFound(NotFound):
    def __init__(self, room_id: str):
        super().__init__("Room not found")
        self.room_id = room_id


class MessageNotFound(NotFound):
    def __init__(self, message_id):
        super().__init__("Message not found")
        self.message_id = message_id


class UnknownConnection(NotFound):
    def __init__(self, sid: str):
        super().__init__("Unknown connection")
        self.sid = sid


class Unauthorized(EngineError):
    pass


class RateLimited(EngineError):
    def __init__(self, retry_after_ms: int):
        super().__init__("Slow down! Wait a few seconds.")
        self.retry_after_ms = retry_after_ms


class InvalidMessage(EngineError):
    pass


class PersistenceFailure(EngineError):
    def __init__(self, operation: str):
        super().__init__(f"Storage operation failed: {operation}")
        self.operation = operation


class NoState(EngineError):
    def __init__(self, room_id: str):
        super().__init__("No room state available")
        self.room_id = room_id


class NoHostState(EngineError):
    def __init__(self, room_id: str):
        super().__init__("No host playback state available")
        self.room_id = room_id
