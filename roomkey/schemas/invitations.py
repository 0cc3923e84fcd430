from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from roomkey.roles import Role


class InvitationCreate(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    role: Role
    ttl_hours: Optional[int] = Field(default=None, ge=1, le=24 * 30)


class InvitationPackageOut(BaseModel):
    url: str
    pin: str
    role: str
    room_number: str
    expires_at: Optional[datetime] = None
    email: str
    inviter: str


class RedeemRequest(BaseModel):
    pin: str = Field(default="", max_length=16)


class RedeemOut(BaseModel):
    accepted: bool
    room_id: Optional[int] = None
    role: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    locked_until: Optional[datetime] = None
    attempts_remaining: Optional[int] = None
