from __future__ import annotations

import hashlib
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from roomkey.admission import JoinDecision, decide
from roomkey.config import get_settings
from roomkey.crypto import Signer, get_signer, random_string
from roomkey.errors import Reason
from roomkey.logger import get_logger
from roomkey.models.room import ROOM_STATUS_FREE, ROOM_STATUS_IN_USE, Room
from roomkey.models.room_user import RoomUser
from roomkey.roles import JoinAction, Role, parse_role
from roomkey.services import rooms as room_service
from roomkey.utils import normalize_utc, utcnow

IDENTITY_COOKIE_NAME = "roomkey_user_identifier"
SESSION_COOKIE_PREFIX = "roomkey_session_"
LEGACY_SESSION_COOKIE_NAME = "room_session_token"
OLD_ROOM_COOKIE_PREFIX = "room_session_"
IDENTITY_PREFIX = "user_"
IDENTITY_RANDOM_LENGTH = 16
SESSION_TOKEN_LENGTH = 64
LEGACY_SESSION_TOKEN_LENGTH = 32
COOKIE_FRAGMENT_LENGTH = 8

_HEX_PATTERN = re.compile(r"^[0-9a-fA-F]+$")
_SESSION_COOKIE_PATTERN = re.compile(
    rf"^{SESSION_COOKIE_PREFIX}(\d+)_(buyer|seller)_([0-9a-z]+)$"
)

_logger = get_logger("services.sessions")


@dataclass(frozen=True)
class JoinResult:
    ok: bool
    room_user: Optional[RoomUser] = None
    action: Optional[JoinAction] = None
    reason: Optional[Reason] = None
    alternative_role: Optional[Role] = None


@dataclass(frozen=True)
class MigrationResult:
    user_identifier: str
    session_token: str
    cookie_name: str
    room_id: int
    role: str


@dataclass
class SessionLookup:
    room_user: Optional[RoomUser] = None
    identity: Optional[str] = None
    set_cookies: Dict[str, str] = field(default_factory=dict)
    clear_cookies: List[str] = field(default_factory=list)


def mint_identity(*, now: Optional[int] = None) -> str:
    # The timestamp only helps humans reading logs; the random part carries the entropy.
    issued_at = now if now is not None else int(time.time())
    return f"{IDENTITY_PREFIX}{random_string(IDENTITY_RANDOM_LENGTH)}_{issued_at}"


def _identity_fragment(identity: Optional[str]) -> str:
    if not identity:
        return "anon"
    return hashlib.sha256(identity.encode("utf-8")).hexdigest()[:COOKIE_FRAGMENT_LENGTH]


def cookie_name(room_id: int, role: Role | str, identity: Optional[str]) -> str:
    role_value = role.value if isinstance(role, Role) else str(role)
    return f"{SESSION_COOKIE_PREFIX}{room_id}_{role_value}_{_identity_fragment(identity)}"


def parse_cookie_name(name: str) -> Optional[Tuple[int, Role]]:
    match = _SESSION_COOKIE_PATTERN.match(name or "")
    if match is None:
        return None
    return int(match.group(1)), Role(match.group(2))


def session_token(
    room_id: int,
    role: Role | str,
    identity: str,
    *,
    signer: Optional[Signer] = None,
) -> str:
    role_value = role.value if isinstance(role, Role) else str(role)
    material = "|".join(
        [str(room_id), role_value, identity, str(int(time.time())), random_string(16)]
    )
    return (signer or get_signer()).sign(material.encode("utf-8"))


def validate_session_token(token: Optional[str]) -> bool:
    """Shape check only; the matching RoomUser row is what proves the token."""
    return bool(token) and len(token) == SESSION_TOKEN_LENGTH and bool(_HEX_PATTERN.match(token))


def device_fingerprint(
    user_agent: Optional[str],
    ip_address: Optional[str],
    accept_language: Optional[str],
) -> str:
    raw = f"{user_agent or ''}{ip_address or ''}{accept_language or ''}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


async def resolve_identity(session: AsyncSession, cookies: Mapping[str, str]) -> Optional[str]:
    identity = cookies.get(IDENTITY_COOKIE_NAME)
    if identity:
        return identity

    # Clients from before the identity cookie only carry per-room session cookies.
    for name, value in cookies.items():
        if not value:
            continue
        parsed = parse_cookie_name(name)
        if parsed is None:
            continue
        room_id, role = parsed
        result = await session.execute(
            select(RoomUser.user_identifier).where(
                RoomUser.room_id == room_id,
                RoomUser.role == role.value,
                RoomUser.session_token == value,
            )
        )
        found = result.scalars().first()
        if found:
            _logger.info(
                "identity.reconcile",
                "Recovered identity from room session cookie",
                room_id=room_id,
                role=role.value,
            )
            return found
    return None


async def ensure_identity(session: AsyncSession, cookies: Mapping[str, str]) -> Tuple[str, bool]:
    identity = await resolve_identity(session, cookies)
    if identity:
        return identity, False
    return mint_identity(), True


async def _held_sessions(session: AsyncSession, room_id: int, identity: str) -> List[RoomUser]:
    result = await session.execute(
        select(RoomUser)
        .where(
            RoomUser.room_id == room_id,
            RoomUser.user_identifier == identity,
            RoomUser.left_at.is_(None),
        )
        .order_by(RoomUser.is_online.desc(), RoomUser.last_seen.desc(), RoomUser.id.desc())
    )
    return list(result.scalars().all())


async def can_join_room(
    session: AsyncSession,
    room_id: int,
    role: Role | str,
    identity: str,
) -> JoinDecision:
    requested = parse_role(role)
    if requested is None:
        return JoinDecision(can_join=False, reason=Reason.UNKNOWN_ROLE)
    room = await room_service.get_room(session, room_id)
    if room is None:
        return JoinDecision(can_join=False, reason=Reason.ROOM_NOT_FOUND)

    occupancy = await room_service.get_occupancy(session, room)
    held: List[Role] = []
    for row in await _held_sessions(session, room_id, identity):
        held_role = parse_role(row.role)
        if held_role is not None and held_role not in held:
            held.append(held_role)

    decision = decide(occupancy, held, requested)
    _logger.debug(
        "admission.decide",
        "Evaluated room admission",
        room_id=room_id,
        role=requested.value,
        can_join=decision.can_join,
        action=decision.action.value if decision.action else None,
        reason=decision.reason.value if decision.reason else None,
    )
    return decision


async def claim_role(
    session: AsyncSession,
    *,
    room: Room,
    role: Role,
    identity: str,
    name: str,
    phone: Optional[str] = None,
    fingerprint: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[RoomUser]:
    """Insert an online role-session; None when another session won the slot."""
    current = now or utcnow()
    room_id = room.id
    room_user = RoomUser(
        room_id=room_id,
        role=role.value,
        name=name.strip(),
        phone=phone,
        session_token=session_token(room_id, role, identity),
        user_identifier=identity,
        device_fingerprint=fingerprint,
        session_context={},
        is_online=True,
        joined_at=current,
        last_seen=current,
    )
    session.add(room_user)
    if role is Role.BUYER and room.status == ROOM_STATUS_FREE:
        room.status = ROOM_STATUS_IN_USE
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        _logger.warning(
            "session.claim.conflict",
            "Role was claimed by a concurrent session",
            room_id=room_id,
            role=role.value,
        )
        return None
    _logger.info(
        "session.claim",
        "Created role session",
        room_id=room_id,
        role=role.value,
        room_user_id=room_user.id,
    )
    return room_user


async def _activate(session: AsyncSession, room_user: RoomUser, *, now: datetime) -> bool:
    room_user_id = room_user.id
    room_user.is_online = True
    room_user.last_seen = now
    room_user.offline_at = None
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        _logger.warning(
            "session.activate.conflict",
            "Another session is online in this role",
            room_user_id=room_user_id,
        )
        return False
    return True


async def switch_role(
    session: AsyncSession,
    room_user: RoomUser,
    new_role: Role | str,
    *,
    now: Optional[datetime] = None,
) -> Optional[RoomUser]:
    target = parse_role(new_role)
    if target is None:
        raise ValueError(f"unsupported role: {new_role!r}")
    current = now or utcnow()
    source_id = room_user.id
    room_id = room_user.room_id

    result = await session.execute(
        select(RoomUser).where(
            RoomUser.room_id == room_id,
            RoomUser.user_identifier == room_user.user_identifier,
            RoomUser.role == target.value,
            RoomUser.left_at.is_(None),
        )
    )
    dormant = result.scalars().first()

    if dormant is not None:
        next_session = dormant
        next_session.is_online = True
        next_session.last_seen = current
        next_session.offline_at = None
    else:
        next_session = RoomUser(
            room_id=room_id,
            role=target.value,
            name=room_user.name,
            phone=room_user.phone,
            session_token=session_token(room_id, target, room_user.user_identifier or ""),
            user_identifier=room_user.user_identifier,
            device_fingerprint=room_user.device_fingerprint,
            session_context=dict(room_user.session_context or {}),
            is_online=True,
            joined_at=current,
            last_seen=current,
        )
        session.add(next_session)

    room_user.is_online = False
    room_user.offline_at = current
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        _logger.warning(
            "session.switch.conflict",
            "Target role was taken during switch",
            room_id=room_id,
            from_room_user_id=source_id,
            role=target.value,
        )
        return None
    _logger.info(
        "session.switch",
        "Switched role within room",
        room_id=room_id,
        from_room_user_id=source_id,
        to_room_user_id=next_session.id,
        role=target.value,
        reactivated=dormant is not None,
    )
    return next_session


async def join_room(
    session: AsyncSession,
    *,
    room_id: int,
    role: Role | str,
    identity: str,
    name: str,
    phone: Optional[str] = None,
    fingerprint: Optional[str] = None,
    now: Optional[datetime] = None,
) -> JoinResult:
    current = now or utcnow()
    async with _logger.operation("session.join", "Joining room", room_id=room_id) as op:
        decision = await can_join_room(session, room_id, role, identity)
        op.step("admission", "Checked admission", can_join=decision.can_join)
        if not decision.can_join or decision.action is None:
            return JoinResult(
                ok=False,
                reason=decision.reason,
                alternative_role=decision.alternative_role,
            )

        requested = parse_role(role)
        if requested is None:
            return JoinResult(ok=False, reason=Reason.UNKNOWN_ROLE)
        if decision.action is JoinAction.JOIN:
            room = await room_service.get_room(session, room_id)
            if room is None:
                return JoinResult(ok=False, reason=Reason.ROOM_NOT_FOUND)
            claimed = await claim_role(
                session,
                room=room,
                role=requested,
                identity=identity,
                name=name,
                phone=phone,
                fingerprint=fingerprint,
                now=current,
            )
            if claimed is None:
                return JoinResult(ok=False, reason=Reason.ROLE_UNAVAILABLE)
            return JoinResult(ok=True, room_user=claimed, action=JoinAction.JOIN)

        held = await _held_sessions(session, room_id, identity)
        if decision.action is JoinAction.RECONNECT:
            row = next(item for item in held if item.role == requested.value)
            if not row.is_online and not await _activate(session, row, now=current):
                return JoinResult(ok=False, reason=Reason.ROLE_UNAVAILABLE)
            op.step("reconnect", "Reconnected existing session", room_user_id=row.id)
            return JoinResult(ok=True, room_user=row, action=JoinAction.RECONNECT)

        switched = await switch_role(session, held[0], requested, now=current)
        if switched is None:
            return JoinResult(ok=False, reason=Reason.ROLE_UNAVAILABLE)
        return JoinResult(ok=True, room_user=switched, action=JoinAction.SWITCH_ROLE)


async def touch(session: AsyncSession, room_user: RoomUser, *, now: Optional[datetime] = None) -> bool:
    return await _activate(session, room_user, now=now or utcnow())


async def mark_offline(
    session: AsyncSession, room_user: RoomUser, *, now: Optional[datetime] = None
) -> None:
    current = now or utcnow()
    room_user.is_online = False
    room_user.last_seen = current
    room_user.offline_at = current
    await session.commit()
    _logger.info("session.offline", "Marked session offline", room_user_id=room_user.id)


async def leave_room(
    session: AsyncSession, room_user: RoomUser, *, now: Optional[datetime] = None
) -> None:
    current = now or utcnow()
    room_user.is_online = False
    room_user.offline_at = current
    room_user.left_at = current
    await session.commit()
    _logger.info(
        "session.leave",
        "Released role in room",
        room_id=room_user.room_id,
        role=room_user.role,
        room_user_id=room_user.id,
    )


async def reset_room(session: AsyncSession, room: Room, *, now: Optional[datetime] = None) -> int:
    current = now or utcnow()
    result = await session.execute(
        update(RoomUser)
        .where(RoomUser.room_id == room.id, RoomUser.left_at.is_(None))
        .values(is_online=False, offline_at=current, left_at=current)
        .execution_options(synchronize_session=False)
    )
    room.status = ROOM_STATUS_FREE
    await session.commit()
    released = result.rowcount or 0
    _logger.info("room.reset", "Reset room occupancy", room_id=room.id, released=released)
    return released


async def get_user_sessions(session: AsyncSession, identity: str) -> List[Dict[str, Any]]:
    result = await session.execute(
        select(RoomUser, Room.room_number)
        .join(Room, Room.id == RoomUser.room_id)
        .where(RoomUser.user_identifier == identity, RoomUser.is_online.is_(True))
        .order_by(RoomUser.joined_at)
    )
    sessions: List[Dict[str, Any]] = []
    for room_user, room_number in result.all():
        sessions.append(
            {
                "room_id": room_user.room_id,
                "room_number": room_number,
                "role": room_user.role,
                "name": room_user.name,
                "joined_at": normalize_utc(room_user.joined_at),
                "last_seen": normalize_utc(room_user.last_seen),
                "cookie_name": cookie_name(room_user.room_id, room_user.role, identity),
            }
        )
    return sessions


async def _find_by_token(
    session: AsyncSession, token: str, *, room_id: Optional[int] = None
) -> Optional[RoomUser]:
    stmt = select(RoomUser).where(RoomUser.session_token == token)
    if room_id is not None:
        stmt = stmt.where(RoomUser.room_id == room_id)
    result = await session.execute(stmt)
    return result.scalars().first()


async def migrate_legacy_session(
    session: AsyncSession,
    old_token: str,
    *,
    now: Optional[datetime] = None,
) -> Optional[MigrationResult]:
    if not old_token or len(old_token) != LEGACY_SESSION_TOKEN_LENGTH:
        return None
    room_user = await _find_by_token(session, old_token)
    if room_user is None:
        _logger.debug("session.migrate.miss", "No session for legacy token", reason=Reason.SESSION_NOT_FOUND.value)
        return None
    if room_user.migrated_at is not None:
        _logger.info(
            "session.migrate.skip",
            "Session already migrated",
            room_user_id=room_user.id,
            reason=Reason.ALREADY_MIGRATED.value,
        )
        return None

    current = now or utcnow()
    identity = mint_identity()
    new_token = session_token(room_user.room_id, room_user.role, identity)
    room_user.user_identifier = identity
    room_user.session_token = new_token
    room_user.migrated_at = current
    room_user.session_context = {
        **(room_user.session_context or {}),
        "migrated_from_legacy": True,
        "migration_date": current.isoformat(),
    }
    await session.commit()
    _logger.info(
        "session.migrate",
        "Migrated legacy session",
        room_id=room_user.room_id,
        role=room_user.role,
        room_user_id=room_user.id,
    )
    return MigrationResult(
        user_identifier=identity,
        session_token=new_token,
        cookie_name=cookie_name(room_user.room_id, room_user.role, identity),
        room_id=room_user.room_id,
        role=room_user.role,
    )


async def migrate_all_sessions(
    session: AsyncSession,
    *,
    dry_run: bool = False,
    now: Optional[datetime] = None,
) -> int:
    current = now or utcnow()
    result = await session.execute(
        select(RoomUser).where(
            (RoomUser.user_identifier.is_(None)) | (RoomUser.migrated_at.is_(None))
        )
    )
    pending = list(result.scalars().all())
    if dry_run:
        return len(pending)

    for room_user in pending:
        if not room_user.user_identifier:
            room_user.user_identifier = mint_identity()
        if not validate_session_token(room_user.session_token):
            room_user.session_token = session_token(
                room_user.room_id, room_user.role, room_user.user_identifier
            )
        room_user.session_context = {
            **(room_user.session_context or {}),
            "migrated_from_legacy": True,
            "migration_date": current.isoformat(),
            "original_joined_at": normalize_utc(room_user.joined_at).isoformat(),
        }
        room_user.migrated_at = current
    await session.commit()
    _logger.info("session.migrate_all", "Migrated room sessions", count=len(pending))
    return len(pending)


async def find_expired_sessions(
    session: AsyncSession,
    *,
    inactivity_seconds: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[RoomUser]:
    threshold = _inactivity_threshold(inactivity_seconds, now)
    result = await session.execute(
        select(RoomUser).where(RoomUser.last_seen < threshold, RoomUser.is_online.is_(True))
    )
    return list(result.scalars().all())


def _inactivity_threshold(inactivity_seconds: Optional[int], now: Optional[datetime]) -> datetime:
    seconds = inactivity_seconds or get_settings().session_inactivity_seconds
    return (now or utcnow()) - timedelta(seconds=seconds)


async def cleanup_expired_sessions(
    session: AsyncSession,
    *,
    inactivity_seconds: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    current = now or utcnow()
    threshold = _inactivity_threshold(inactivity_seconds, current)
    result = await session.execute(
        update(RoomUser)
        .where(RoomUser.last_seen < threshold, RoomUser.is_online.is_(True))
        .values(is_online=False, offline_at=current)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    count = result.rowcount or 0
    _logger.info(
        "session.cleanup",
        "Marked inactive sessions offline",
        count=count,
        threshold=threshold.isoformat(),
    )
    return count


async def reset_empty_rooms(session: AsyncSession) -> int:
    online_rooms = select(RoomUser.room_id).where(RoomUser.is_online.is_(True))
    result = await session.execute(
        update(Room)
        .where(Room.status != ROOM_STATUS_FREE, Room.id.not_in(online_rooms))
        .values(status=ROOM_STATUS_FREE)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    count = result.rowcount or 0
    if count:
        _logger.info("room.reset_empty", "Reset empty rooms to free", count=count)
    return count


async def find_room_session(
    session: AsyncSession,
    *,
    room_id: int,
    identity: Optional[str],
    cookies: Mapping[str, str],
) -> SessionLookup:
    """Find the caller's role-session in a room, upgrading old cookie styles."""
    lookup = SessionLookup(identity=identity)

    if identity:
        held = await _held_sessions(session, room_id, identity)
        for row in held:
            if row.is_online and validate_session_token(row.session_token):
                lookup.room_user = row
                return lookup

    legacy_token = cookies.get(LEGACY_SESSION_COOKIE_NAME)
    if legacy_token and await _find_by_token(session, legacy_token, room_id=room_id) is not None:
        migrated = await migrate_legacy_session(session, legacy_token)
        if migrated is not None:
            lookup.room_user = await _find_by_token(session, migrated.session_token)
            lookup.identity = migrated.user_identifier
            lookup.set_cookies[migrated.cookie_name] = migrated.session_token
            lookup.set_cookies[IDENTITY_COOKIE_NAME] = migrated.user_identifier
            lookup.clear_cookies.append(LEGACY_SESSION_COOKIE_NAME)
            return lookup

    if identity:
        for role in Role:
            token = cookies.get(cookie_name(room_id, role, identity))
            if not token:
                continue
            row = await _find_by_token(session, token, room_id=room_id)
            if row is None:
                continue
            if row.user_identifier and row.user_identifier != identity:
                continue
            if not row.user_identifier:
                row.user_identifier = identity
                await session.commit()
            lookup.room_user = row
            return lookup

    old_name = f"{OLD_ROOM_COOKIE_PREFIX}{room_id}"
    old_token = cookies.get(old_name)
    if old_token and identity:
        row = await _find_by_token(session, old_token, room_id=room_id)
        if row is not None:
            row.user_identifier = identity
            await session.commit()
            lookup.room_user = row
            lookup.set_cookies[cookie_name(room_id, row.role, identity)] = old_token
            lookup.clear_cookies.append(old_name)
            _logger.info(
                "session.cookie.upgrade",
                "Upgraded room-scoped cookie to namespaced cookie",
                room_id=room_id,
                room_user_id=row.id,
            )
    return lookup

