from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class Role(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"

    @property
    def other(self) -> "Role":
        return Role.SELLER if self is Role.BUYER else Role.BUYER


class JoinAction(str, Enum):
    JOIN = "join"
    RECONNECT = "reconnect"
    SWITCH_ROLE = "switch_role"


def parse_role(value: Any) -> Optional[Role]:
    if isinstance(value, Role):
        return value
    if not isinstance(value, str):
        return None
    try:
        return Role(value.strip().lower())
    except ValueError:
        return None
