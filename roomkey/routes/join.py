from __future__ import annotations

import hmac
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from roomkey.config import Settings, get_settings
from roomkey.dependencies import client_ip, get_codec, get_cookies, get_db_session
from roomkey.errors import Reason, public_message
from roomkey.logger import get_logger
from roomkey.routes.common import (
    apply_lookup_cookies,
    raise_for_reason,
    raise_link_unavailable,
    set_identity_cookie,
    set_session_cookie,
)
from roomkey.roles import JoinAction
from roomkey.schemas.rooms import JoinDecisionOut, JoinOut, JoinRequest
from roomkey.services import sessions as session_service
from roomkey.tokens import AccessToken, TokenCodec

router = APIRouter(tags=["join"])
_logger = get_logger("api.join")


def _authorize_link(codec: TokenCodec, token: str, pin: Optional[str]) -> AccessToken:
    result = codec.decode(token)
    if not result.ok or result.token is None:
        _logger.warning(
            "link.reject",
            "Rejected access link",
            reason=result.reason.value if result.reason else None,
        )
        raise_link_unavailable()
    access = result.token
    if access.pin is not None:
        supplied = (pin or "").strip()
        if not supplied:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=public_message(Reason.PIN_REQUIRED),
            )
        if not hmac.compare_digest(access.pin.encode("utf-8"), supplied.encode("utf-8")):
            _logger.warning("link.pin_invalid", "Access link PIN mismatch", room_id=access.room_id)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=public_message(Reason.PIN_INVALID),
            )
    return access


@router.get("/join/{token}", response_model=JoinDecisionOut)
async def check_join(
    token: str,
    response: Response,
    pin: Optional[str] = Query(default=None, max_length=16),
    session: AsyncSession = Depends(get_db_session),
    codec: TokenCodec = Depends(get_codec),
    cookies: Dict[str, str] = Depends(get_cookies),
    settings: Settings = Depends(get_settings),
) -> JoinDecisionOut:
    access = _authorize_link(codec, token, pin)
    identity, is_new = await session_service.ensure_identity(session, cookies)
    decision = await session_service.can_join_room(session, access.room_id, access.role, identity)
    if decision.reason == Reason.ROOM_NOT_FOUND:
        raise_link_unavailable()
    if is_new:
        set_identity_cookie(response, settings, identity)
    payload = decision.as_dict()
    return JoinDecisionOut(
        **payload,
        message=public_message(decision.reason) if decision.reason else None,
        room_id=access.room_id,
        role=access.role.value,
    )


@router.post("/join/{token}", response_model=JoinOut)
async def join_with_link(
    token: str,
    payload: JoinRequest,
    request: Request,
    response: Response,
    pin: Optional[str] = Query(default=None, max_length=16),
    session: AsyncSession = Depends(get_db_session),
    codec: TokenCodec = Depends(get_codec),
    cookies: Dict[str, str] = Depends(get_cookies),
    settings: Settings = Depends(get_settings),
) -> JoinOut:
    access = _authorize_link(codec, token, pin)
    identity, is_new = await session_service.ensure_identity(session, cookies)
    fingerprint = session_service.device_fingerprint(
        request.headers.get("user-agent"),
        client_ip(request),
        request.headers.get("accept-language"),
    )
    joined = await session_service.join_room(
        session,
        room_id=access.room_id,
        role=access.role,
        identity=identity,
        name=payload.name,
        phone=payload.phone,
        fingerprint=fingerprint,
    )
    if not joined.ok or joined.room_user is None or joined.action is None:
        if joined.reason == Reason.ROLE_UNAVAILABLE:
            raise_for_reason(joined.reason, status_code=status.HTTP_409_CONFLICT)
        raise_link_unavailable()

    room_user = joined.room_user
    name = session_service.cookie_name(room_user.room_id, room_user.role, identity)
    if is_new:
        set_identity_cookie(response, settings, identity)
    set_session_cookie(response, settings, name, room_user.session_token)
    return JoinOut(
        room_id=room_user.room_id,
        role=room_user.role,
        action=joined.action.value,
        name=room_user.name,
        cookie_name=name,
    )


@router.get("/enter/{token}", response_model=JoinOut)
async def enter_with_link(
    token: str,
    response: Response,
    pin: Optional[str] = Query(default=None, max_length=16),
    session: AsyncSession = Depends(get_db_session),
    codec: TokenCodec = Depends(get_codec),
    cookies: Dict[str, str] = Depends(get_cookies),
    settings: Settings = Depends(get_settings),
) -> JoinOut:
    """Re-enter a room the caller already holds a role in."""
    access = _authorize_link(codec, token, pin)
    identity = await session_service.resolve_identity(session, cookies)
    lookup = await session_service.find_room_session(
        session, room_id=access.room_id, identity=identity, cookies=cookies
    )
    room_user = lookup.room_user
    if room_user is None or room_user.role != access.role.value:
        raise_for_reason(Reason.SESSION_NOT_FOUND, status_code=status.HTTP_401_UNAUTHORIZED)
    if not await session_service.touch(session, room_user):
        raise_for_reason(Reason.ROLE_UNAVAILABLE, status_code=status.HTTP_409_CONFLICT)

    apply_lookup_cookies(response, settings, lookup)
    return JoinOut(
        room_id=room_user.room_id,
        role=room_user.role,
        action=JoinAction.RECONNECT.value,
        name=room_user.name,
        cookie_name=session_service.cookie_name(
            room_user.room_id, room_user.role, lookup.identity
        ),
    )
