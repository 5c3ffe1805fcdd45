"""
Message Fanout: room chat and global chat.

Every message is stored first and only broadcast once the store returned its
id. Global chat is rate limited per user; pinning is admin only, deletion is
open to the author and to moderators.
"""
import time
from datetime import datetime, timezone
from typing import Dict, Optional

from constants import DEFAULT_AVATAR, GLOBAL_MESSAGE_INTERVAL_MS
from errors import InvalidMessage, MessageNotFound, RateLimited, Unauthorized
from logging_config import get_logger
from roles import Permission, can
from sanitize import clean_message, sanitize

logger = get_logger(__name__)


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


class MessageFanout:
    def __init__(self, store, transport, connections,
                 interval_ms: int = GLOBAL_MESSAGE_INTERVAL_MS, clock=time.time):
        self.store = store
        self.transport = transport
        self.connections = connections
        self.interval_ms = interval_ms
        self.clock = clock
        # user id -> send time (ms) of the last accepted global message
        self._last_sent: Dict[int, float] = {}

    # ------------------------------------------------------------------
    # Room chat
    # ------------------------------------------------------------------

    async def send_room_message(self, room_id: str, author, text, reply_to_id: Optional[int] = None) -> dict:
        message = clean_message(text)
        if not message:
            raise InvalidMessage("Message cannot be empty")

        reply = None
        if reply_to_id:
            original = await self.store.get_room_message(room_id, reply_to_id)
            reply = {
                "id": reply_to_id,
                "username": original["username"] if original else None,
                "text": original["message"] if original else None,
            }

        sent_at = _iso(self.clock())
        message_id = await self.store.insert_room_message(
            room_id, author.id, author.username, message, sent_at, reply_to_id or None
        )

        payload = {
            "id": message_id,
            "user": author.summary(),
            "message": message,
            "time": sent_at,
            "createdAt": _iso(self.clock()),
            "replyTo": reply,
        }
        await self.transport.emit("new_room_message", payload, room=room_id)
        logger.debug(f"Room message {message_id} from user {author.id} in room {room_id}")
        return payload

    async def delete_room_message(self, room_id: str, requester, message_id: int) -> None:
        original = await self.store.get_room_message(room_id, message_id)
        if original is None:
            raise MessageNotFound(message_id)
        if requester.id != original["user_id"] and not can(requester.role, Permission.MODERATE_MESSAGES):
            logger.warning(f"User {requester.id} may not delete room message {message_id}")
            raise Unauthorized("Unauthorized: You cannot delete this message")

        await self.store.delete_room_message(room_id, message_id)
        await self.transport.emit("room_message_deleted", {"id": message_id}, room=room_id)
        logger.info(f"Room message {message_id} in room {room_id} deleted by user {requester.id}")

    # ------------------------------------------------------------------
    # Global chat
    # ------------------------------------------------------------------

    def _reserve_slot(self, user_id: int, stored_last_ms: Optional[int], now_ms: float) -> Optional[float]:
        """Claim the user's send slot; returns the previous reservation for rollback."""
        previous = self._last_sent.get(user_id)
        last_ms = max(stored_last_ms or 0, previous or 0)
        elapsed = now_ms - last_ms
        if elapsed < self.interval_ms:
            raise RateLimited(int(self.interval_ms - elapsed))
        self._last_sent[user_id] = now_ms
        return previous

    def _release_slot(self, user_id: int, previous: Optional[float]) -> None:
        if previous is None:
            self._last_sent.pop(user_id, None)
        else:
            self._last_sent[user_id] = previous

    async def send_global_message(self, author, text, avatar: Optional[str] = None,
                                  deco: Optional[str] = None, reply_id: Optional[int] = None) -> dict:
        message = clean_message(text)
        if not message:
            raise InvalidMessage("Message cannot be empty")

        stored_last_ms = await self.store.last_message_time(author.id)
        now = self.clock()
        now_ms = now * 1000
        previous = self._reserve_slot(author.id, stored_last_ms, now_ms)

        username = sanitize(author.username) or "paca"
        avatar_path = sanitize(avatar) or author.avatar or DEFAULT_AVATAR
        deco_path = sanitize(deco) or ""
        sent_at = _iso(now)
        try:
            message_id = await self.store.insert_message(author.id, now_ms, {
                "username": username,
                "message": message,
                "time": sent_at,
                "avatar": avatar_path,
                "deco": deco_path,
                "classname": author.classname,
                "icon": author.icon,
                "levelText": author.level_text,
                "reply_id": reply_id or None,
            })
        except Exception:
            self._release_slot(author.id, previous)
            raise

        reply = None
        if reply_id:
            original = await self.store.get_message(reply_id)
            if original is not None:
                reply = {
                    "sender": {"name": sanitize(original.get("username"))},
                    "message": sanitize(original.get("message")),
                }

        payload = {
            "id": message_id,
            "sender": {
                "id": author.id,
                "name": username,
                "classname": author.classname,
                "icon": author.icon,
                "levelText": author.level_text,
                "avatar": {"path": avatar_path},
                "deco": {"path": deco_path},
                "roles": author.roles,
            },
            "message": message,
            "time": sent_at,
            "reply": reply,
        }
        await self.transport.emit("new_message", payload)
        logger.debug(f"Global message {message_id} from user {author.id}")
        return payload

    async def pin_message(self, requester, message_id: int, pinned_by: Optional[int] = None) -> dict:
        if not can(requester.role, Permission.PIN_MESSAGES):
            logger.warning(f"User {requester.id} may not pin messages")
            raise Unauthorized("Unauthorized: Only admins can pin messages")

        pinned_by = pinned_by if pinned_by is not None else requester.id
        if not await self.store.pin_message(message_id, pinned_by):
            raise MessageNotFound(message_id)

        pinned = await self.store.get_message(message_id)
        if pinned is None:
            # deleted between the pin and the read
            raise MessageNotFound(message_id)

        pinner = self.connections.find_user(pinned_by)
        payload = {
            "id": pinned["id"],
            "sender": {
                "name": sanitize(pinned.get("username")),
                "avatar": {"path": sanitize(pinned.get("avatar")) or DEFAULT_AVATAR},
            },
            "message": sanitize(pinned.get("message")),
            "time": pinned.get("time"),
            "pinnedBy": {"name": sanitize(pinner.username) if pinner else "Unknown"},
        }
        await self.transport.emit("new_pinned_message", payload)
        logger.info(f"Message {message_id} pinned by user {pinned_by}")
        return payload

    async def unpin_message(self, requester, message_id: int) -> None:
        if not can(requester.role, Permission.PIN_MESSAGES):
            logger.warning(f"User {requester.id} may not unpin messages")
            raise Unauthorized("Unauthorized: Only admins can unpin messages")

        if not await self.store.unpin_message(message_id):
            raise MessageNotFound(message_id)
        await self.transport.emit("unpin_message", {"id": message_id})
        logger.info(f"Message {message_id} unpinned by user {requester.id}")

    async def delete_message(self, requester, message_id: int) -> None:
        original = await self.store.get_message(message_id)
        if original is None:
            raise MessageNotFound(message_id)
        if requester.id != original["user_id"] and not can(requester.role, Permission.MODERATE_MESSAGES):
            logger.warning(f"User {requester.id} may not delete message {message_id}")
            raise Unauthorized("Unauthorized: You cannot delete this message")

        await self.store.delete_message(message_id)
        await self.transport.emit("delete_message", {"id": message_id})
        logger.info(f"Message {message_id} deleted by user {requester.id}")

    async def delete_all_except_pinned(self) -> int:
        deleted = await self.store.delete_all_except_pinned()
        await self.transport.emit("all_messages_deleted_except_pinned")
        return deleted
