from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from roomkey.roles import Role


class RoomOut(BaseModel):
    id: int
    room_number: str
    status: str
    buyer_available: bool
    seller_available: bool


class ShareLinksOut(BaseModel):
    room_url: str
    links: Dict[str, Dict[str, str]]


class JoinDecisionOut(BaseModel):
    can_join: bool
    action: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    alternative_role: Optional[str] = None
    existing_role: Optional[str] = None
    room_id: Optional[int] = None
    role: Optional[str] = None


class JoinRequest(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    phone: Optional[str] = Field(default=None, max_length=32)


class JoinOut(BaseModel):
    room_id: int
    role: str
    action: str
    name: str
    cookie_name: str


class SwitchRoleRequest(BaseModel):
    role: Role


class SessionOut(BaseModel):
    room_id: int
    room_number: str
    role: str
    name: str
    joined_at: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    cookie_name: str


class SessionListOut(BaseModel):
    user_identifier: Optional[str] = None
    sessions: List[SessionOut] = Field(default_factory=list)
