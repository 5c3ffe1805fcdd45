"""
Roles, the per-operation authorization policy, and the static display labels
used when a connection does not bring its own.
"""
from enum import Enum, IntEnum
from typing import Dict, FrozenSet


class Role(IntEnum):
    USER = 0
    ADMIN = 1
    MODERATOR = 2

    @classmethod
    def coerce(cls, value) -> "Role":
        """Map a raw role number onto a Role.

        Unknown positive numbers get moderator rights (any non-zero role may
        moderate, only 1 is admin); anything else is a plain user.
        """
        try:
            number = int(value)
        except (TypeError, ValueError):
            return cls.USER
        try:
            return cls(number)
        except ValueError:
            return cls.MODERATOR if number > 0 else cls.USER


class Permission(Enum):
    MODERATE_MESSAGES = "moderate_messages"  # delete messages written by others
    PIN_MESSAGES = "pin_messages"
    END_ANY_LIVE = "end_any_live"  # end a room without being its host


POLICY: Dict[Permission, FrozenSet[Role]] = {
    Permission.MODERATE_MESSAGES: frozenset({Role.ADMIN, Role.MODERATOR}),
    Permission.PIN_MESSAGES: frozenset({Role.ADMIN}),
    Permission.END_ANY_LIVE: frozenset({Role.ADMIN, Role.MODERATOR}),
}


def can(role: Role, permission: Permission) -> bool:
    return role in POLICY[permission]


CLASSNAMES: Dict[Role, str] = {
    Role.USER: "is-user",
    Role.ADMIN: "is-admin",
    Role.MODERATOR: "is-moderator",
}

ICONS: Dict[Role, str] = {
    Role.USER: "<i class='icon-user'></i>",
    Role.ADMIN: "<i class='icon-admin'></i>",
    Role.MODERATOR: "<i class='icon-moderator'></i>",
}

LEVEL_TEXTS: Dict[Role, str] = {
    Role.USER: "<span class='level-user'>User</span>",
    Role.ADMIN: "<span class='level-admin'>Admin</span>",
    Role.MODERATOR: "<span class='level-moderator'>Moderator</span>",
}
