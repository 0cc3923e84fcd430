from __future__ import annotations

from typing import Dict

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from roomkey.dependencies import get_cookies, get_db_session
from roomkey.schemas.rooms import SessionListOut, SessionOut
from roomkey.services import sessions as session_service

router = APIRouter(tags=["sessions"])


@router.get("/sessions", response_model=SessionListOut)
async def list_sessions(
    session: AsyncSession = Depends(get_db_session),
    cookies: Dict[str, str] = Depends(get_cookies),
) -> SessionListOut:
    identity = await session_service.resolve_identity(session, cookies)
    if not identity:
        return SessionListOut()
    rows = await session_service.get_user_sessions(session, identity)
    return SessionListOut(
        user_identifier=identity,
        sessions=[SessionOut(**row) for row in rows],
    )
