"""initial schema

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "rooms",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("room_number", sa.String(length=32), nullable=False),
        sa.Column(
            "status", sa.String(length=16), nullable=False, server_default=sa.text("'free'")
        ),
        *_timestamps(),
    )
    op.create_index("ix_rooms_room_number", "rooms", ["room_number"], unique=True)

    op.create_table(
        "room_users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "room_id",
            sa.Integer(),
            sa.ForeignKey("rooms.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("session_token", sa.String(length=64), nullable=False),
        sa.Column("user_identifier", sa.String(length=64), nullable=True),
        sa.Column("device_fingerprint", sa.String(length=64), nullable=True),
        sa.Column("session_context", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("is_online", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=False),
        sa.Column("offline_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("migrated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("left_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_room_users_room_id", "room_users", ["room_id"])
    op.create_index("ix_room_users_session_token", "room_users", ["session_token"], unique=True)
    op.create_index("ix_room_users_user_identifier", "room_users", ["user_identifier"])
    op.create_index(
        "ix_room_users_room_identity", "room_users", ["room_id", "user_identifier"]
    )
    # At most one online session per (room, role).
    op.create_index(
        "uq_room_users_online_role",
        "room_users",
        ["room_id", "role"],
        unique=True,
        sqlite_where=sa.text("is_online = 1"),
        postgresql_where=sa.text("is_online"),
    )

    op.create_table(
        "room_invitations",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "room_id",
            sa.Integer(),
            sa.ForeignKey("rooms.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("inviter_id", sa.String(length=64), nullable=False),
        sa.Column("invitee_id", sa.String(length=64), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("pin", sa.String(length=6), nullable=False),
        sa.Column("encrypted_token", sa.String(length=1024), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("session_id", sa.String(length=128), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        sa.Column("pin_attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("pin_locked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        *_timestamps(),
    )
    op.create_index("ix_room_invitations_room_id", "room_invitations", ["room_id"])
    op.create_index("ix_room_invitations_email", "room_invitations", ["email"])
    op.create_index(
        "ix_room_invitations_encrypted_token", "room_invitations", ["encrypted_token"]
    )


def downgrade() -> None:
    op.drop_index("ix_room_invitations_encrypted_token", table_name="room_invitations")
    op.drop_index("ix_room_invitations_email", table_name="room_invitations")
    op.drop_index("ix_room_invitations_room_id", table_name="room_invitations")
    op.drop_table("room_invitations")

    op.drop_index("uq_room_users_online_role", table_name="room_users")
    op.drop_index("ix_room_users_room_identity", table_name="room_users")
    op.drop_index("ix_room_users_user_identifier", table_name="room_users")
    op.drop_index("ix_room_users_session_token", table_name="room_users")
    op.drop_index("ix_room_users_room_id", table_name="room_users")
    op.drop_table("room_users")

    op.drop_index("ix_rooms_room_number", table_name="rooms")
    op.drop_table("rooms")
