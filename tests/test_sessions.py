from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from roomkey.errors import Reason
from roomkey.models import Room, RoomUser
from roomkey.roles import JoinAction, Role
from roomkey.services import rooms as room_service
from roomkey.services import sessions as session_service

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


async def _join(session: AsyncSession, room: Room, role: Role, identity: str, name: str = "Ana"):
    return await session_service.join_room(
        session, room_id=room.id, role=role, identity=identity, name=name, now=T0
    )


def test_identity_and_cookie_names() -> None:
    identity = session_service.mint_identity(now=1_700_000_000)
    assert identity.startswith("user_")
    assert identity.endswith("_1700000000")
    assert session_service.mint_identity() != session_service.mint_identity()

    name = session_service.cookie_name(7, Role.BUYER, identity)
    assert name == session_service.cookie_name(7, "buyer", identity)
    assert name != session_service.cookie_name(7, Role.BUYER, identity + "x")
    assert session_service.parse_cookie_name(name) == (7, Role.BUYER)
    assert session_service.parse_cookie_name("room_session_token") is None


def test_session_token_shape() -> None:
    token = session_service.session_token(3, Role.SELLER, "user_abc")
    assert session_service.validate_session_token(token)
    assert not session_service.validate_session_token(token[:32])
    assert not session_service.validate_session_token("z" * 64)
    assert not session_service.validate_session_token(None)


async def test_room_seven_scenario(session: AsyncSession, room: Room) -> None:
    first = await session_service.can_join_room(session, room.id, Role.BUYER, "user_a")
    assert first.can_join
    assert first.action is JoinAction.JOIN

    joined = await _join(session, room, Role.BUYER, "user_a")
    assert joined.ok
    assert joined.room_user is not None
    assert joined.room_user.is_online
    assert room.status == "in_use"

    blocked = await session_service.can_join_room(session, room.id, Role.BUYER, "user_b")
    assert not blocked.can_join
    assert blocked.reason == Reason.ROLE_UNAVAILABLE
    assert blocked.alternative_role is Role.SELLER

    seller = await session_service.can_join_room(session, room.id, Role.SELLER, "user_b")
    assert seller.can_join
    assert seller.action is JoinAction.JOIN


async def test_unknown_room_and_role(session: AsyncSession, room: Room) -> None:
    missing = await session_service.can_join_room(session, room.id + 100, Role.BUYER, "user_a")
    assert missing.reason == Reason.ROOM_NOT_FOUND
    odd = await session_service.can_join_room(session, room.id, "broker", "user_a")
    assert odd.reason == Reason.UNKNOWN_ROLE


async def test_reconnect_is_idempotent(session: AsyncSession, room: Room) -> None:
    joined = await _join(session, room, Role.BUYER, "user_a")
    assert joined.room_user is not None

    for _ in range(2):
        decision = await session_service.can_join_room(session, room.id, Role.BUYER, "user_a")
        assert decision.action is JoinAction.RECONNECT

    again = await _join(session, room, Role.BUYER, "user_a")
    assert again.action is JoinAction.RECONNECT
    assert again.room_user is not None
    assert again.room_user.id == joined.room_user.id


async def test_offline_buyer_still_holds_slot(session: AsyncSession, room: Room) -> None:
    joined = await _join(session, room, Role.BUYER, "user_a")
    assert joined.room_user is not None
    await session_service.mark_offline(session, joined.room_user)

    buyer = await session_service.can_join_room(session, room.id, Role.BUYER, "user_b")
    seller = await session_service.can_join_room(session, room.id, Role.SELLER, "user_b")
    assert not buyer.can_join
    assert seller.can_join


async def test_leave_frees_role(session: AsyncSession, room: Room) -> None:
    joined = await _join(session, room, Role.BUYER, "user_a")
    assert joined.room_user is not None
    await session_service.leave_room(session, joined.room_user)

    assert joined.room_user.left_at is not None
    decision = await session_service.can_join_room(session, room.id, Role.BUYER, "user_b")
    assert decision.can_join
    assert decision.action is JoinAction.JOIN


async def test_concurrent_claim_loses_to_unique_index(
    sessionmaker: async_sessionmaker[AsyncSession],
) -> None:
    async with sessionmaker() as first, sessionmaker() as second:
        room = await room_service.create_room(first, room_number="12")
        room_id = room.id
        stale_room = await room_service.get_room(second, room_id)
        assert stale_room is not None

        # Both requests saw the buyer slot as open before either wrote.
        assert (await session_service.can_join_room(first, room_id, Role.BUYER, "user_a")).can_join
        assert (await session_service.can_join_room(second, room_id, Role.BUYER, "user_b")).can_join

        winner = await session_service.claim_role(
            first, room=room, role=Role.BUYER, identity="user_a", name="A"
        )
        loser = await session_service.claim_role(
            second, room=stale_room, role=Role.BUYER, identity="user_b", name="B"
        )

    assert winner is not None
    assert loser is None

    async with sessionmaker() as check:
        result = await check.execute(
            select(RoomUser).where(RoomUser.room_id == room_id, RoomUser.is_online.is_(True))
        )
        online = result.scalars().all()
    assert [row.user_identifier for row in online] == ["user_a"]


async def test_switch_role_keeps_history(session: AsyncSession, room: Room) -> None:
    joined = await _join(session, room, Role.BUYER, "user_a")
    buyer_row = joined.room_user
    assert buyer_row is not None
    buyer_id = buyer_row.id

    switched = await _join(session, room, Role.SELLER, "user_a")
    assert switched.action is JoinAction.SWITCH_ROLE
    seller_row = switched.room_user
    assert seller_row is not None
    assert seller_row.id != buyer_id
    assert seller_row.session_token != buyer_row.session_token
    assert seller_row.name == buyer_row.name
    assert buyer_row.is_online is False
    assert buyer_row.left_at is None

    back = await session_service.switch_role(session, seller_row, Role.BUYER)
    assert back is not None
    assert back.id == buyer_id
    assert back.is_online
    assert seller_row.is_online is False

    rows = await session.execute(select(RoomUser).where(RoomUser.room_id == room.id))
    assert len(rows.scalars().all()) == 2


async def test_resolve_identity_from_session_cookie(session: AsyncSession, room: Room) -> None:
    joined = await _join(session, room, Role.BUYER, "user_a")
    assert joined.room_user is not None
    name = session_service.cookie_name(room.id, Role.BUYER, "user_a")

    assert await session_service.resolve_identity(session, {}) is None
    assert await session_service.resolve_identity(session, {"roomkey_user_identifier": "user_z"}) == "user_z"
    found = await session_service.resolve_identity(session, {name: joined.room_user.session_token})
    assert found == "user_a"
    assert await session_service.resolve_identity(session, {name: "f" * 64}) is None

    identity, is_new = await session_service.ensure_identity(session, {})
    assert is_new
    assert identity.startswith("user_")


async def test_user_sessions_listing(session: AsyncSession, room: Room) -> None:
    await _join(session, room, Role.BUYER, "user_a")
    other = await room_service.create_room(session, room_number="8")
    await _join(session, other, Role.BUYER, "user_a")

    listed = await session_service.get_user_sessions(session, "user_a")
    assert sorted(item["room_number"] for item in listed) == ["7", "8"]
    assert listed[0]["cookie_name"].startswith("roomkey_session_")
    assert await session_service.get_user_sessions(session, "user_b") == []


def _legacy_row(room: Room, token: str, *, migrated: bool = False) -> RoomUser:
    return RoomUser(
        room_id=room.id,
        role=Role.BUYER.value,
        name="Old Timer",
        session_token=token,
        user_identifier=None,
        session_context={},
        is_online=True,
        joined_at=T0,
        last_seen=T0,
        migrated_at=T0 if migrated else None,
    )


async def test_migrate_legacy_session(session: AsyncSession, room: Room) -> None:
    legacy_token = "a" * 32
    row = _legacy_row(room, legacy_token)
    session.add(row)
    await session.commit()

    migrated = await session_service.migrate_legacy_session(session, legacy_token)
    assert migrated is not None
    assert migrated.room_id == room.id
    assert migrated.role == "buyer"
    assert len(migrated.session_token) == 64
    assert migrated.cookie_name == session_service.cookie_name(room.id, "buyer", migrated.user_identifier)
    assert row.user_identifier == migrated.user_identifier
    assert row.migrated_at is not None
    assert row.session_context["migrated_from_legacy"] is True

    assert await session_service.migrate_legacy_session(session, legacy_token) is None
    assert await session_service.migrate_legacy_session(session, migrated.session_token) is None


async def test_migrate_skips_already_migrated(session: AsyncSession, room: Room) -> None:
    row = _legacy_row(room, "b" * 32, migrated=True)
    session.add(row)
    await session.commit()

    assert await session_service.migrate_legacy_session(session, "b" * 32) is None
    assert row.session_token == "b" * 32
    assert row.user_identifier is None


async def test_migrate_all_sessions(session: AsyncSession, room: Room) -> None:
    session.add(_legacy_row(room, "c" * 32))
    await session.commit()

    assert await session_service.migrate_all_sessions(session, dry_run=True) == 1
    assert await session_service.migrate_all_sessions(session) == 1
    assert await session_service.migrate_all_sessions(session, dry_run=True) == 0

    result = await session.execute(select(RoomUser).where(RoomUser.room_id == room.id))
    row = result.scalars().one()
    assert row.user_identifier is not None
    assert session_service.validate_session_token(row.session_token)


async def test_find_room_session_migrates_legacy_cookie(session: AsyncSession, room: Room) -> None:
    session.add(_legacy_row(room, "d" * 32))
    await session.commit()

    lookup = await session_service.find_room_session(
        session, room_id=room.id, identity=None, cookies={"room_session_token": "d" * 32}
    )
    assert lookup.room_user is not None
    assert lookup.identity is not None
    assert lookup.set_cookies["roomkey_user_identifier"] == lookup.identity
    assert "room_session_token" in lookup.clear_cookies


async def test_find_room_session_upgrades_room_cookie(session: AsyncSession, room: Room) -> None:
    session.add(_legacy_row(room, "e" * 64))
    await session.commit()
    old_name = f"room_session_{room.id}"

    lookup = await session_service.find_room_session(
        session, room_id=room.id, identity="user_q", cookies={old_name: "e" * 64}
    )
    assert lookup.room_user is not None
    assert lookup.room_user.user_identifier == "user_q"
    assert session_service.cookie_name(room.id, "buyer", "user_q") in lookup.set_cookies
    assert lookup.clear_cookies == [old_name]

    again = await session_service.find_room_session(
        session, room_id=room.id, identity="user_q", cookies={}
    )
    assert again.room_user is not None
    assert again.room_user.id == lookup.room_user.id


async def test_find_room_session_ignores_foreign_cookie(session: AsyncSession, room: Room) -> None:
    joined = await _join(session, room, Role.BUYER, "user_a")
    assert joined.room_user is not None
    name = session_service.cookie_name(room.id, Role.BUYER, "user_b")

    lookup = await session_service.find_room_session(
        session, room_id=room.id, identity="user_b", cookies={name: joined.room_user.session_token}
    )
    assert lookup.room_user is None


async def test_cleanup_expired_sessions(session: AsyncSession, room: Room) -> None:
    joined = await _join(session, room, Role.BUYER, "user_a")
    assert joined.room_user is not None

    early = await session_service.cleanup_expired_sessions(session, now=T0 + timedelta(hours=1))
    assert early == 0

    later = T0 + timedelta(hours=3)
    pending = await session_service.find_expired_sessions(session, now=later)
    assert len(pending) == 1
    assert await session_service.cleanup_expired_sessions(session, now=later) == 1

    await session.refresh(joined.room_user)
    assert joined.room_user.is_online is False
    assert joined.room_user.offline_at is not None

    assert await session_service.reset_empty_rooms(session) == 1
    await session.refresh(room)
    assert room.status == "free"


async def test_reset_room_releases_everyone(session: AsyncSession, room: Room) -> None:
    await _join(session, room, Role.BUYER, "user_a")
    await _join(session, room, Role.SELLER, "user_b")

    assert await session_service.reset_room(session, room) == 2
    decision = await session_service.can_join_room(session, room.id, Role.BUYER, "user_c")
    assert decision.action is JoinAction.JOIN
