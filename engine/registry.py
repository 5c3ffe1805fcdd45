"""
Connection Registry and Presence Broadcaster.

The registry maps every live connection (socket id) to the identity that came
with its handshake, and keeps the reverse index user id -> socket ids so one
user may be connected from several devices. Presence is derived from it,
one entry per distinct user id.
"""
import random
import string
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Tuple

from constants import DEFAULT_AVATAR
from engine.transport import Transport
from logging_config import get_logger
from roles import Role, CLASSNAMES, ICONS, LEVEL_TEXTS

logger = get_logger(__name__)

@dataclass
class ConnectedClient:
    sid: str
    id: int
    username: str
    avatar: str
    profile: str
    roles: int
    classname: str
    icon: str
    level_text: str
    connected_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def role(self) -> Role:
        return Role.coerce(self.roles)

    def to_public(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "avatar": self.avatar,
            "profile": self.profile,
            "roles": self.roles,
            "classname": self.classname,
            "icon": self.icon,
            "levelText": self.level_text,
            "connectedAt": self.connected_at,
            "socketId": self.sid,
        }

    def summary(self, with_avatar: bool = True) -> dict:
        user = {"id": self.id, "username": self.username}
        if with_avatar:
            user["avatar"] = self.avatar
        return user

def _parse_int(value) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 0

def _text(value) -> str:
    return str(value).strip() if value is not None else ""

def resolve_identity(sid: str, auth: Optional[dict]) -> ConnectedClient:
    """Build the client record from whatever identity arrived with the handshake."""
    auth = auth if isinstance(auth, dict) else {}
    user_id = _parse_int(auth.get("id"))
    roles = _parse_int(auth.get("roles"))
    role = Role.coerce(roles)

    username = _text(auth.get("username"))
    if not username:
        if user_id:
            username = f"user_{user_id}"
        else:
            username = "guest_" + "".join(random.choices(string.ascii_lowercase + string.digits, k=8))

    return ConnectedClient(
        sid=sid,
        id=user_id,
        username=username,
        avatar=_text(auth.get("avatar")) or DEFAULT_AVATAR,
        profile=f"/community/user/{user_id}" if user_id else "#",
        roles=roles,
        classname=_text(auth.get("classname")) or CLASSNAMES[role],
        icon=_text(auth.get("icon")) or ICONS[role],
        level_text=_text(auth.get("levelText")) or LEVEL_TEXTS[role],
    )

class ConnectionRegistry:
    def __init__(self):
        # socket id -> client
        self.clients: Dict[str, ConnectedClient] = {}
        # user id -> socket ids
        self.user_sockets: Dict[int, Set[str]] = {}

    def register(self, client: ConnectedClient) -> None:
        self.clients[client.sid] = client
        self.user_sockets.setdefault(client.id, set()).add(client.sid)
        logger.debug(f"Registered connection {client.sid} for user {client.id} "
                     f"({len(self.user_sockets[client.id])} connections)")

    def unregister(self, sid: str) -> Tuple[Optional[ConnectedClient], bool]:
        """Drop a connection; returns the client and whether it was the user's last one."""
        client = self.clients.pop(sid, None)
        if client is None:
            return None, False
        sockets = self.user_sockets.get(client.id)
        last = True
        if sockets is not None:
            sockets.discard(sid)
            if sockets:
                last = False
            else:
                del self.user_sockets[client.id]
        logger.debug(f"Unregistered connection {sid} for user {client.id} (last={last})")
        return client, last

    def get(self, sid: str) -> Optional[ConnectedClient]:
        return self.clients.get(sid)

    def find_user(self, user_id: int) -> Optional[ConnectedClient]:
        for sid in self.user_sockets.get(user_id, ()):
            client = self.clients.get(sid)
            if client is not None:
                return client
        return None

    def online_users(self) -> List[ConnectedClient]:
        """One client per distinct user id, the user's earliest live connection first."""
        unique: Dict[int, ConnectedClient] = {}
        for client in self.clients.values():
            unique.setdefault(client.id, client)
        return list(unique.values())

class PresenceBroadcaster:
    def __init__(self, registry: ConnectionRegistry, transport: Transport):
        self.registry = registry
        self.transport = transport

    def snapshot(self) -> dict:
        users = [client.to_public() for client in self.registry.online_users()]
        return {"users": users, "count": len(users)}

    async def publish(self) -> None:
        snapshot = self.snapshot()
        await self.transport.emit("online_users", snapshot)
        logger.debug(f"Published presence: {snapshot['count']} users online")
