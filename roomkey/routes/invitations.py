from __future__ import annotations

from typing import Dict

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from roomkey.config import Settings, get_settings
from roomkey.dependencies import client_ip, get_cookies, get_db_session
from roomkey.errors import LINK_FAILURE_REASONS, Reason, public_message
from roomkey.logger import get_logger
from roomkey.routes.common import (
    raise_for_reason,
    raise_link_unavailable,
    set_identity_cookie,
    set_session_cookie,
)
from roomkey.schemas.invitations import RedeemOut, RedeemRequest
from roomkey.schemas.rooms import JoinOut, JoinRequest
from roomkey.services import invitations as invitation_service
from roomkey.services import sessions as session_service

router = APIRouter(prefix="/invite", tags=["invitations"])
_logger = get_logger("api.invitations")

_REDEEM_STATUS = {
    Reason.PIN_REQUIRED: status.HTTP_403_FORBIDDEN,
    Reason.PIN_INVALID: status.HTTP_403_FORBIDDEN,
    Reason.PIN_LOCKED: status.HTTP_423_LOCKED,
}


@router.post("/{token}/redeem", response_model=RedeemOut)
async def redeem_invitation(
    token: str,
    payload: RedeemRequest,
    request: Request,
    response: Response,
    session: AsyncSession = Depends(get_db_session),
    cookies: Dict[str, str] = Depends(get_cookies),
    settings: Settings = Depends(get_settings),
) -> RedeemOut | JSONResponse:
    identity, is_new = await session_service.ensure_identity(session, cookies)
    result = await invitation_service.redeem(
        session,
        token,
        payload.pin,
        invitee_id=identity,
        session_id=identity,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    if result.reason in LINK_FAILURE_REASONS:
        raise_link_unavailable()

    body = RedeemOut(
        accepted=result.accepted,
        room_id=result.invitation.room_id if result.invitation else None,
        role=result.invitation.role if result.invitation else None,
        reason=result.reason.value if result.reason else None,
        message=public_message(result.reason, locked_until=result.locked_until)
        if result.reason
        else None,
        locked_until=result.locked_until,
        attempts_remaining=result.attempts_remaining,
    )
    if not result.accepted:
        rejected = JSONResponse(
            status_code=_REDEEM_STATUS.get(result.reason, status.HTTP_400_BAD_REQUEST),
            content=body.model_dump(mode="json"),
        )
        if is_new:
            set_identity_cookie(rejected, settings, identity)
        return rejected
    if is_new:
        set_identity_cookie(response, settings, identity)
    return body


@router.post("/{token}/join", response_model=JoinOut)
async def join_with_invitation(
    token: str,
    payload: JoinRequest,
    request: Request,
    response: Response,
    session: AsyncSession = Depends(get_db_session),
    cookies: Dict[str, str] = Depends(get_cookies),
    settings: Settings = Depends(get_settings),
) -> JoinOut:
    invitation, _ = await invitation_service.find_by_token(session, token)
    if invitation is None:
        raise_link_unavailable()
    identity = await session_service.resolve_identity(session, cookies)
    if (
        invitation.accepted_at is None
        or not identity
        or not invitation_service.validate_session(invitation, identity)
    ):
        _logger.warning(
            "invitation.join.reject",
            "Invitation not redeemed by this browser",
            invitation_id=invitation.id,
        )
        raise_for_reason(Reason.PIN_REQUIRED, status_code=status.HTTP_403_FORBIDDEN)

    fingerprint = session_service.device_fingerprint(
        request.headers.get("user-agent"),
        client_ip(request),
        request.headers.get("accept-language"),
    )
    joined = await session_service.join_room(
        session,
        room_id=invitation.room_id,
        role=invitation.role,
        identity=identity,
        name=payload.name,
        phone=payload.phone,
        fingerprint=fingerprint,
    )
    if not joined.ok or joined.room_user is None or joined.action is None:
        if joined.reason == Reason.ROLE_UNAVAILABLE:
            raise_for_reason(joined.reason, status_code=status.HTTP_409_CONFLICT)
        raise_link_unavailable()
    await invitation_service.mark_joined(session, invitation)

    room_user = joined.room_user
    name = session_service.cookie_name(room_user.room_id, room_user.role, identity)
    set_session_cookie(response, settings, name, room_user.session_token)
    return JoinOut(
        room_id=room_user.room_id,
        role=room_user.role,
        action=joined.action.value,
        name=room_user.name,
        cookie_name=name,
    )
