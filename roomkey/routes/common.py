from __future__ import annotations

from typing import NoReturn, Optional

from fastapi import HTTPException, Response, status

from roomkey.config import Settings
from roomkey.errors import LINK_UNAVAILABLE_MESSAGE, Reason, public_message
from roomkey.services.sessions import IDENTITY_COOKIE_NAME, SessionLookup


def raise_link_unavailable() -> NoReturn:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=LINK_UNAVAILABLE_MESSAGE)


def raise_for_reason(reason: Optional[Reason], *, status_code: int) -> NoReturn:
    raise HTTPException(
        status_code=status_code,
        detail=public_message(reason) if reason else LINK_UNAVAILABLE_MESSAGE,
    )


def set_identity_cookie(response: Response, settings: Settings, identity: str) -> None:
    response.set_cookie(
        key=IDENTITY_COOKIE_NAME,
        value=identity,
        max_age=settings.identity_cookie_ttl_seconds,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/",
    )


def set_session_cookie(response: Response, settings: Settings, name: str, token: str) -> None:
    response.set_cookie(
        key=name,
        value=token,
        max_age=settings.session_cookie_ttl_seconds,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/",
    )


def apply_lookup_cookies(response: Response, settings: Settings, lookup: SessionLookup) -> None:
    for name, value in lookup.set_cookies.items():
        if name == IDENTITY_COOKIE_NAME:
            set_identity_cookie(response, settings, value)
        else:
            set_session_cookie(response, settings, name, value)
    for name in lookup.clear_cookies:
        response.delete_cookie(name, path="/")
