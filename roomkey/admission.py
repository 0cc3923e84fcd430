"""Who may occupy the buyer and seller slots of a room.

Everything here is a pure function of a room occupancy snapshot and the roles
an identity already holds; nothing touches storage.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

from roomkey.errors import Reason
from roomkey.roles import JoinAction, Role


@dataclass(frozen=True)
class RoomOccupancy:
    is_free: bool
    has_any_buyer: bool
    has_any_seller: bool


@dataclass(frozen=True)
class JoinDecision:
    can_join: bool
    action: Optional[JoinAction] = None
    reason: Optional[Reason] = None
    alternative_role: Optional[Role] = None
    existing_role: Optional[Role] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "can_join": self.can_join,
            "action": self.action.value if self.action else None,
            "reason": self.reason.value if self.reason else None,
            "alternative_role": self.alternative_role.value if self.alternative_role else None,
            "existing_role": self.existing_role.value if self.existing_role else None,
        }


def is_role_available(occupancy: RoomOccupancy, role: Role) -> bool:
    # Offline sessions still hold their slot; only leaving or a room reset frees it.
    if role is Role.BUYER:
        return occupancy.is_free or not occupancy.has_any_buyer
    return occupancy.has_any_buyer and not occupancy.has_any_seller


def alternative_role(occupancy: RoomOccupancy, requested: Role) -> Optional[Role]:
    other = requested.other
    if is_role_available(occupancy, other):
        return other
    return None


def decide(
    occupancy: RoomOccupancy,
    held_roles: Sequence[Role],
    requested: Role,
) -> JoinDecision:
    """Decide whether an identity holding ``held_roles`` may take ``requested``.

    ``held_roles`` lists the roles the identity already has sessions for in
    this room, most relevant (online) first.
    """
    if requested in held_roles:
        return JoinDecision(can_join=True, action=JoinAction.RECONNECT, existing_role=requested)

    if held_roles:
        current = held_roles[0]
        if is_role_available(occupancy, requested):
            return JoinDecision(
                can_join=True,
                action=JoinAction.SWITCH_ROLE,
                existing_role=current,
            )
        return JoinDecision(
            can_join=False,
            reason=Reason.ROLE_UNAVAILABLE,
            existing_role=current,
        )

    if is_role_available(occupancy, requested):
        return JoinDecision(can_join=True, action=JoinAction.JOIN)
    return JoinDecision(
        can_join=False,
        reason=Reason.ROLE_UNAVAILABLE,
        alternative_role=alternative_role(occupancy, requested),
    )
