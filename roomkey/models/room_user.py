from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from roomkey.models.base import Base, TimestampMixin


class RoomUser(TimestampMixin, Base):
    """One identity holding one role in one room.

    Rows are never deleted when a role is switched or left; ``is_online`` and
    ``left_at`` carry the state. The partial unique index allows at most one
    online row per (room, role).
    """

    __tablename__ = "room_users"
    __table_args__ = (
        Index(
            "uq_room_users_online_role",
            "room_id",
            "role",
            unique=True,
            sqlite_where=text("is_online = 1"),
            postgresql_where=text("is_online"),
        ),
        Index("ix_room_users_room_identity", "room_id", "user_identifier"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    room_id: Mapped[int] = mapped_column(ForeignKey("rooms.id", ondelete="CASCADE"), index=True)
    role: Mapped[str] = mapped_column(String(16))
    name: Mapped[str] = mapped_column(String(128))
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    session_token: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    user_identifier: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    device_fingerprint: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    session_context: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    is_online: Mapped[bool] = mapped_column(Boolean, default=False)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_seen: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    offline_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    migrated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    left_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
