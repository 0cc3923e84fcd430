from __future__ import annotations

from roomkey.admission import RoomOccupancy, alternative_role, decide, is_role_available
from roomkey.errors import Reason
from roomkey.roles import JoinAction, Role

FREE = RoomOccupancy(is_free=True, has_any_buyer=False, has_any_seller=False)
BUYER_ONLY = RoomOccupancy(is_free=False, has_any_buyer=True, has_any_seller=False)
FULL = RoomOccupancy(is_free=False, has_any_buyer=True, has_any_seller=True)


def test_free_room_only_offers_buyer() -> None:
    assert is_role_available(FREE, Role.BUYER)
    assert not is_role_available(FREE, Role.SELLER)


def test_existing_buyer_opens_seller_slot() -> None:
    # Holds whether the buyer is online or not; occupancy counts both.
    assert not is_role_available(BUYER_ONLY, Role.BUYER)
    assert is_role_available(BUYER_ONLY, Role.SELLER)


def test_full_room() -> None:
    assert not is_role_available(FULL, Role.BUYER)
    assert not is_role_available(FULL, Role.SELLER)
    assert alternative_role(FULL, Role.BUYER) is None


def test_new_identity_joins_or_gets_alternative() -> None:
    assert decide(FREE, [], Role.BUYER) == decide(FREE, (), Role.BUYER)
    assert decide(FREE, [], Role.BUYER).action is JoinAction.JOIN

    rejected = decide(BUYER_ONLY, [], Role.BUYER)
    assert not rejected.can_join
    assert rejected.reason == Reason.ROLE_UNAVAILABLE
    assert rejected.alternative_role is Role.SELLER

    seller_first = decide(FREE, [], Role.SELLER)
    assert not seller_first.can_join
    assert seller_first.alternative_role is Role.BUYER


def test_held_role_reconnects() -> None:
    decision = decide(FULL, [Role.BUYER], Role.BUYER)
    assert decision.can_join
    assert decision.action is JoinAction.RECONNECT
    assert decision.existing_role is Role.BUYER


def test_switch_role_requires_free_target() -> None:
    switch = decide(BUYER_ONLY, [Role.BUYER], Role.SELLER)
    assert switch.action is JoinAction.SWITCH_ROLE
    assert switch.existing_role is Role.BUYER

    blocked = decide(FULL, [Role.SELLER], Role.BUYER)
    assert not blocked.can_join
    assert blocked.reason == Reason.ROLE_UNAVAILABLE
    assert blocked.alternative_role is None


def test_decision_as_dict() -> None:
    assert decide(BUYER_ONLY, [], Role.BUYER).as_dict() == {
        "can_join": False,
        "action": None,
        "reason": "role_unavailable",
        "alternative_role": "seller",
        "existing_role": None,
    }
