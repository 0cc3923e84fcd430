from __future__ import annotations

from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from roomkey.admission import RoomOccupancy
from roomkey.logger import get_logger
from roomkey.models.room import ROOM_STATUS_FREE, Room
from roomkey.models.room_user import RoomUser
from roomkey.roles import Role
from roomkey.tokens import TokenCodec

_logger = get_logger("services.rooms")


async def create_room(session: AsyncSession, *, room_number: str) -> Room:
    room = Room(room_number=room_number.strip(), status=ROOM_STATUS_FREE)
    session.add(room)
    await session.commit()
    _logger.info("room.create", "Created room", room_id=room.id, room_number=room.room_number)
    return room


async def get_room(session: AsyncSession, room_id: int) -> Optional[Room]:
    return await session.get(Room, room_id)


async def resolve_room_ref(
    session: AsyncSession,
    room_ref: str,
    *,
    codec: TokenCodec,
) -> Optional[Room]:
    """Look up a room from a URL segment holding an opaque or a plain numeric id."""
    room_id = codec.decode_room_id(room_ref)
    if room_id is None:
        _logger.debug("room.ref.reject", "Room reference did not decode", room_ref=room_ref[:12])
        return None
    return await get_room(session, room_id)


async def get_occupancy(session: AsyncSession, room: Room) -> RoomOccupancy:
    result = await session.execute(
        select(RoomUser.role, func.count(RoomUser.id))
        .where(RoomUser.room_id == room.id, RoomUser.left_at.is_(None))
        .group_by(RoomUser.role)
    )
    counts = {role: count for role, count in result.all()}
    return RoomOccupancy(
        is_free=room.status == ROOM_STATUS_FREE,
        has_any_buyer=counts.get(Role.BUYER.value, 0) > 0,
        has_any_seller=counts.get(Role.SELLER.value, 0) > 0,
    )
