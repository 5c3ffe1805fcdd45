import functools
import json
from dataclasses import dataclass
from typing import Dict, Optional

import redis
import redis.asyncio as aioredis

from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, REDIS_DB
from errors import PersistenceFailure
from logging_config import get_logger
from redis_keys import (
    REDIS_ROOM_KEY,
    REDIS_ROOM_MESSAGE_KEY,
    REDIS_ROOM_MESSAGES_KEY,
    REDIS_ROOM_MESSAGE_SEQ,
    REDIS_MESSAGE_KEY,
    REDIS_MESSAGES_KEY,
    REDIS_USER_MESSAGES_KEY,
    REDIS_MESSAGE_SEQ,
)

logger = get_logger(__name__)


@dataclass
class RoomRecord:
    """Persisted view of a room."""
    room_id: str
    host_id: Optional[int] = None
    episode_id: Optional[int] = None
    episode: Optional[int] = None
    current_viewers: int = 0
    status: str = "waiting"

    def to_dict(self) -> dict:
        return {
            "room_id": self.room_id,
            "host_id": self.host_id,
            "episode_id": self.episode_id,
            "episode": self.episode,
            "current_viewers": self.current_viewers,
            "status": self.status,
        }


def _to_int(value) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _encode_mapping(data: dict) -> Dict[str, str]:
    # Convert dict values to strings for a Redis hash, skip None values
    encoded = {}
    for k, v in data.items():
        if v is None:
            continue
        if isinstance(v, (dict, list)):
            encoded[k] = json.dumps(v)
        elif isinstance(v, bool):
            encoded[k] = "1" if v else "0"
        else:
            encoded[k] = str(v)
    return encoded


def persistence_call(operation: str):
    """Re-raise redis errors from the wrapped coroutine as PersistenceFailure."""
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except redis.RedisError as e:
                logger.error(f"Redis operation '{operation}' failed: {e}", exc_info=True)
                raise PersistenceFailure(operation) from e
        return wrapper
    return decorator


class RedisBackend:
    """Durable store for rooms, viewer counts, room chat and global chat."""

    def __init__(self, redis_client: Optional[aioredis.Redis] = None):
        if redis_client is None:
            logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")
            redis_client = aioredis.Redis(
                host=REDIS_HOST,
                port=REDIS_PORT,
                password=REDIS_PASSWORD,
                db=REDIS_DB,
                decode_responses=True,
            )
        self.redis_client = redis_client

    @persistence_call("ping")
    async def ping(self) -> bool:
        return await self.redis_client.ping()

    async def close(self) -> None:
        await self.redis_client.aclose()

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    @persistence_call("create_room")
    async def create_room(
        self,
        room_id: str,
        host_id: Optional[int] = None,
        episode_id: Optional[int] = None,
        episode: Optional[int] = None,
        status: str = "waiting",
    ) -> RoomRecord:
        logger.info(f"Creating room {room_id} (host={host_id}, episode_id={episode_id}, episode={episode})")
        record = RoomRecord(
            room_id=room_id,
            host_id=host_id,
            episode_id=episode_id,
            episode=episode,
            current_viewers=0,
            status=status,
        )
        key = REDIS_ROOM_KEY.format(room_id=room_id)
        await self.redis_client.hset(key, mapping=_encode_mapping(record.to_dict()))
        return record

    @persistence_call("get_room")
    async def get_room(self, room_id: str) -> Optional[RoomRecord]:
        logger.debug(f"Fetching room {room_id}")
        raw = await self.redis_client.hgetall(REDIS_ROOM_KEY.format(room_id=room_id))
        if not raw:
            logger.debug(f"Room {room_id} not found in Redis")
            return None
        return RoomRecord(
            room_id=raw.get("room_id", room_id),
            host_id=_to_int(raw.get("host_id")),
            episode_id=_to_int(raw.get("episode_id")),
            episode=_to_int(raw.get("episode")),
            current_viewers=_to_int(raw.get("current_viewers")) or 0,
            status=raw.get("status", "waiting"),
        )

    @persistence_call("delete_room")
    async def delete_room(self, room_id: str) -> bool:
        logger.info(f"Deleting room {room_id}")
        deleted = await self.redis_client.delete(REDIS_ROOM_KEY.format(room_id=room_id))
        return bool(deleted)

    @persistence_call("increment_viewers")
    async def increment_viewers(self, room_id: str) -> Optional[int]:
        """Add one viewer; returns the new count, or None if the room is gone."""
        key = REDIS_ROOM_KEY.format(room_id=room_id)
        if not await self.redis_client.exists(key):
            return None
        count = await self.redis_client.hincrby(key, "current_viewers", 1)
        logger.debug(f"Room {room_id} viewer count is now {count}")
        return count

    @persistence_call("decrement_viewers")
    async def decrement_viewers(self, room_id: str) -> Optional[int]:
        """Remove one viewer, clamped at zero; returns the new count, or None if the room is gone."""
        key = REDIS_ROOM_KEY.format(room_id=room_id)
        if not await self.redis_client.exists(key):
            return None
        count = await self.redis_client.hincrby(key, "current_viewers", -1)
        if count < 0:
            await self.redis_client.hset(key, "current_viewers", 0)
            count = 0
        logger.debug(f"Room {room_id} viewer count is now {count}")
        return count

    @persistence_call("set_host")
    async def set_host(self, room_id: str, host_id: int) -> None:
        key = REDIS_ROOM_KEY.format(room_id=room_id)
        if await self.redis_client.exists(key):
            await self.redis_client.hset(key, "host_id", host_id)
            logger.debug(f"Persisted host {host_id} for room {room_id}")

    @persistence_call("set_status")
    async def set_status(self, room_id: str, status: str) -> None:
        key = REDIS_ROOM_KEY.format(room_id=room_id)
        if await self.redis_client.exists(key):
            await self.redis_client.hset(key, "status", status)
            logger.debug(f"Room {room_id} status set to {status}")

    @persistence_call("update_episode")
    async def update_episode(self, room_id: str, episode_id: int, episode: int, status: Optional[str] = None) -> None:
        key = REDIS_ROOM_KEY.format(room_id=room_id)
        if not await self.redis_client.exists(key):
            return
        await self.redis_client.hset(
            key, mapping=_encode_mapping({"episode_id": episode_id, "episode": episode, "status": status})
        )
        logger.debug(f"Room {room_id} episode set to {episode_id} (#{episode})")

    # ------------------------------------------------------------------
    # Room chat
    # ------------------------------------------------------------------

    @persistence_call("insert_room_message")
    async def insert_room_message(
        self,
        room_id: str,
        user_id: int,
        username: str,
        message: str,
        time: str,
        reply_id: Optional[int] = None,
    ) -> int:
        message_id = await self.redis_client.incr(REDIS_ROOM_MESSAGE_SEQ)
        fields = {
            "id": message_id,
            "room_id": room_id,
            "user_id": user_id,
            "username": username,
            "message": message,
            "time": time,
            "reply_id": reply_id,
        }
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.hset(REDIS_ROOM_MESSAGE_KEY.format(message_id=message_id), mapping=_encode_mapping(fields))
            pipe.sadd(REDIS_ROOM_MESSAGES_KEY.format(room_id=room_id), message_id)
            await pipe.execute()
        logger.debug(f"Stored room message {message_id} in room {room_id}")
        return message_id

    @persistence_call("get_room_message")
    async def get_room_message(self, room_id: str, message_id: int) -> Optional[dict]:
        raw = await self.redis_client.hgetall(REDIS_ROOM_MESSAGE_KEY.format(message_id=message_id))
        if not raw or raw.get("room_id") != str(room_id):
            return None
        return {
            "id": _to_int(raw.get("id")),
            "room_id": raw.get("room_id"),
            "user_id": _to_int(raw.get("user_id")) or 0,
            "username": raw.get("username", ""),
            "message": raw.get("message", ""),
            "time": raw.get("time"),
            "reply_id": _to_int(raw.get("reply_id")),
        }

    @persistence_call("delete_room_message")
    async def delete_room_message(self, room_id: str, message_id: int) -> bool:
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.delete(REDIS_ROOM_MESSAGE_KEY.format(message_id=message_id))
            pipe.srem(REDIS_ROOM_MESSAGES_KEY.format(room_id=room_id), message_id)
            deleted, _ = await pipe.execute()
        return bool(deleted)

    @persistence_call("delete_room_messages")
    async def delete_room_messages(self, room_id: str) -> int:
        index_key = REDIS_ROOM_MESSAGES_KEY.format(room_id=room_id)
        message_ids = await self.redis_client.smembers(index_key)
        keys = [REDIS_ROOM_MESSAGE_KEY.format(message_id=mid) for mid in message_ids]
        deleted = await self.redis_client.delete(*keys) if keys else 0
        await self.redis_client.delete(index_key)
        logger.info(f"Deleted {deleted} messages of room {room_id}")
        return deleted

    # ------------------------------------------------------------------
    # Global chat
    # ------------------------------------------------------------------

    @persistence_call("insert_message")
    async def insert_message(self, user_id: int, time_ms: float, fields: dict) -> int:
        """Store a global message; ``fields`` holds the author's display snapshot and text."""
        message_id = await self.redis_client.incr(REDIS_MESSAGE_SEQ)
        record = dict(fields, id=message_id, user_id=user_id, time_ms=int(time_ms), pinned=False)
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.hset(REDIS_MESSAGE_KEY.format(message_id=message_id), mapping=_encode_mapping(record))
            pipe.zadd(REDIS_MESSAGES_KEY, {message_id: int(time_ms)})
            pipe.zadd(REDIS_USER_MESSAGES_KEY.format(user_id=user_id), {message_id: int(time_ms)})
            await pipe.execute()
        logger.debug(f"Stored global message {message_id} from user {user_id}")
        return message_id

    @persistence_call("get_message")
    async def get_message(self, message_id: int) -> Optional[dict]:
        raw = await self.redis_client.hgetall(REDIS_MESSAGE_KEY.format(message_id=message_id))
        if not raw:
            return None
        message = dict(raw)
        message["id"] = _to_int(raw.get("id"))
        message["user_id"] = _to_int(raw.get("user_id")) or 0
        message["time_ms"] = _to_int(raw.get("time_ms")) or 0
        message["reply_id"] = _to_int(raw.get("reply_id"))
        message["pinned"] = raw.get("pinned") == "1"
        message["pinned_by"] = _to_int(raw.get("pinned_by"))
        return message

    @persistence_call("last_message_time")
    async def last_message_time(self, user_id: int) -> Optional[int]:
        """Send time (ms) of the user's most recent stored global message."""
        latest = await self.redis_client.zrevrange(
            REDIS_USER_MESSAGES_KEY.format(user_id=user_id), 0, 0, withscores=True
        )
        if not latest:
            return None
        _, score = latest[0]
        return int(score)

    @persistence_call("pin_message")
    async def pin_message(self, message_id: int, pinned_by: Optional[int]) -> bool:
        """Mark a message pinned; False when no such message exists."""
        key = REDIS_MESSAGE_KEY.format(message_id=message_id)
        if not await self.redis_client.exists(key):
            return False
        await self.redis_client.hset(key, mapping=_encode_mapping({"pinned": True, "pinned_by": pinned_by}))
        return True

    @persistence_call("unpin_message")
    async def unpin_message(self, message_id: int) -> bool:
        key = REDIS_MESSAGE_KEY.format(message_id=message_id)
        if not await self.redis_client.exists(key):
            return False
        await self.redis_client.hset(key, "pinned", "0")
        await self.redis_client.hdel(key, "pinned_by")
        return True

    @persistence_call("delete_message")
    async def delete_message(self, message_id: int) -> bool:
        key = REDIS_MESSAGE_KEY.format(message_id=message_id)
        user_id = await self.redis_client.hget(key, "user_id")
        if user_id is None:
            return False
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.delete(key)
            pipe.zrem(REDIS_MESSAGES_KEY, message_id)
            pipe.zrem(REDIS_USER_MESSAGES_KEY.format(user_id=user_id), message_id)
            await pipe.execute()
        return True

    @persistence_call("delete_all_except_pinned")
    async def delete_all_except_pinned(self) -> int:
        deleted = 0
        for message_id in await self.redis_client.zrange(REDIS_MESSAGES_KEY, 0, -1):
            key = REDIS_MESSAGE_KEY.format(message_id=message_id)
            pinned, user_id = await self.redis_client.hmget(key, ["pinned", "user_id"])
            if pinned == "1":
                continue
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                pipe.zrem(REDIS_MESSAGES_KEY, message_id)
                if user_id is not None:
                    pipe.zrem(REDIS_USER_MESSAGES_KEY.format(user_id=user_id), message_id)
                await pipe.execute()
            deleted += 1
        logger.info(f"Deleted {deleted} non-pinned global messages")
        return deleted
