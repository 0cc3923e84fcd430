from __future__ import annotations

from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from roomkey.admission import is_role_available
from roomkey.config import Settings, get_settings
from roomkey.dependencies import get_codec, get_cookies, get_db_session
from roomkey.errors import Reason
from roomkey.logger import get_logger
from roomkey.models.room import Room
from roomkey.models.room_user import RoomUser
from roomkey.roles import JoinAction, Role
from roomkey.routes.common import (
    apply_lookup_cookies,
    raise_for_reason,
    raise_link_unavailable,
    set_session_cookie,
)
from roomkey.schemas.invitations import InvitationCreate, InvitationPackageOut
from roomkey.schemas.rooms import JoinOut, RoomOut, ShareLinksOut, SwitchRoleRequest
from roomkey.services import invitations as invitation_service
from roomkey.services import rooms as room_service
from roomkey.services import sessions as session_service
from roomkey.tokens import TokenCodec, room_path, share_links

router = APIRouter(prefix="/rooms", tags=["rooms"])
_logger = get_logger("api.rooms")


async def _room_or_404(session: AsyncSession, room_ref: str, codec: TokenCodec) -> Room:
    room = await room_service.resolve_room_ref(session, room_ref, codec=codec)
    if room is None:
        raise_link_unavailable()
    return room


async def _current_session(
    session: AsyncSession,
    room: Room,
    cookies: Dict[str, str],
    response: Response,
    settings: Settings,
) -> tuple[RoomUser, Optional[str]]:
    identity = await session_service.resolve_identity(session, cookies)
    lookup = await session_service.find_room_session(
        session, room_id=room.id, identity=identity, cookies=cookies
    )
    if lookup.room_user is None:
        raise_for_reason(Reason.SESSION_NOT_FOUND, status_code=status.HTTP_401_UNAUTHORIZED)
    apply_lookup_cookies(response, settings, lookup)
    return lookup.room_user, lookup.identity


@router.get("/{room_ref}", response_model=RoomOut)
async def show_room(
    room_ref: str,
    session: AsyncSession = Depends(get_db_session),
    codec: TokenCodec = Depends(get_codec),
) -> RoomOut:
    room = await _room_or_404(session, room_ref, codec)
    occupancy = await room_service.get_occupancy(session, room)
    return RoomOut(
        id=room.id,
        room_number=room.room_number,
        status=room.status,
        buyer_available=is_role_available(occupancy, Role.BUYER),
        seller_available=is_role_available(occupancy, Role.SELLER),
    )


@router.get("/{room_ref}/links", response_model=ShareLinksOut)
async def room_links(
    room_ref: str,
    pin: Optional[str] = Query(default=None, max_length=12),
    session: AsyncSession = Depends(get_db_session),
    codec: TokenCodec = Depends(get_codec),
    settings: Settings = Depends(get_settings),
) -> ShareLinksOut:
    room = await _room_or_404(session, room_ref, codec)
    try:
        links = share_links(codec, room.id, pin or None, base_url=settings.base_url)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return ShareLinksOut(
        room_url=room_path(codec, room.id, base_url=settings.base_url),
        links=links,
    )


@router.post("/{room_ref}/switch-role", response_model=JoinOut)
async def switch_role(
    room_ref: str,
    payload: SwitchRoleRequest,
    response: Response,
    session: AsyncSession = Depends(get_db_session),
    codec: TokenCodec = Depends(get_codec),
    cookies: Dict[str, str] = Depends(get_cookies),
    settings: Settings = Depends(get_settings),
) -> JoinOut:
    room = await _room_or_404(session, room_ref, codec)
    room_user, identity = await _current_session(session, room, cookies, response, settings)
    if not identity:
        raise_for_reason(Reason.SESSION_NOT_FOUND, status_code=status.HTTP_401_UNAUTHORIZED)

    decision = await session_service.can_join_room(session, room.id, payload.role, identity)
    if not decision.can_join:
        raise_for_reason(decision.reason, status_code=status.HTTP_409_CONFLICT)
    if decision.action is JoinAction.RECONNECT and room_user.role == payload.role.value:
        target = room_user
    else:
        switched = await session_service.switch_role(session, room_user, payload.role)
        if switched is None:
            raise_for_reason(Reason.ROLE_UNAVAILABLE, status_code=status.HTTP_409_CONFLICT)
        target = switched

    name = session_service.cookie_name(target.room_id, target.role, identity)
    set_session_cookie(response, settings, name, target.session_token)
    return JoinOut(
        room_id=target.room_id,
        role=target.role,
        action=JoinAction.SWITCH_ROLE.value,
        name=target.name,
        cookie_name=name,
    )


@router.post("/{room_ref}/leave", status_code=status.HTTP_204_NO_CONTENT)
async def leave(
    room_ref: str,
    session: AsyncSession = Depends(get_db_session),
    codec: TokenCodec = Depends(get_codec),
    cookies: Dict[str, str] = Depends(get_cookies),
    settings: Settings = Depends(get_settings),
) -> Response:
    room = await _room_or_404(session, room_ref, codec)
    response = Response(status_code=status.HTTP_204_NO_CONTENT)
    room_user, identity = await _current_session(session, room, cookies, response, settings)
    name = session_service.cookie_name(room_user.room_id, room_user.role, identity)
    await session_service.leave_room(session, room_user)
    response.delete_cookie(name, path="/")
    return response


@router.post(
    "/{room_ref}/invitations",
    response_model=InvitationPackageOut,
    status_code=status.HTTP_201_CREATED,
)
async def create_invitation(
    room_ref: str,
    payload: InvitationCreate,
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    codec: TokenCodec = Depends(get_codec),
    cookies: Dict[str, str] = Depends(get_cookies),
    settings: Settings = Depends(get_settings),
) -> InvitationPackageOut:
    room = await _room_or_404(session, room_ref, codec)
    identity = await session_service.resolve_identity(session, cookies)
    lookup = await session_service.find_room_session(
        session, room_id=room.id, identity=identity, cookies=cookies
    )
    if lookup.room_user is None:
        raise_for_reason(Reason.SESSION_NOT_FOUND, status_code=status.HTTP_401_UNAUTHORIZED)
    inviter = lookup.room_user.name or lookup.identity or "unknown"

    invitation = await invitation_service.create_invitation(
        session,
        room=room,
        inviter_id=inviter,
        email=payload.email,
        role=payload.role,
        ttl_hours=payload.ttl_hours,
    )
    _logger.info(
        "invitation.issue",
        "Issued invitation",
        room_id=room.id,
        role=payload.role.value,
        client=request.client.host if request.client else None,
    )
    return InvitationPackageOut(
        **invitation_service.invitation_package(invitation, room=room, base_url=settings.base_url)
    )
