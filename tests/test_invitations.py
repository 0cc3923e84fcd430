from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from roomkey.errors import Reason, public_message
from roomkey.models import Room, RoomInvitation
from roomkey.roles import Role
from roomkey.services import invitations as invitation_service
from roomkey.tokens import is_invitation_token
from roomkey.utils import normalize_utc

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


async def _invite(session: AsyncSession, room: Room, **kwargs) -> RoomInvitation:
    return await invitation_service.create_invitation(
        session,
        room=room,
        inviter_id="user_host",
        email="Guest@Example.com",
        role=kwargs.pop("role", Role.SELLER),
        now=T0,
        **kwargs,
    )


def _wrong_pin(invitation: RoomInvitation) -> str:
    return "000000" if invitation.pin != "000000" else "111111"


def test_generate_pin() -> None:
    pins = {invitation_service.generate_pin() for _ in range(50)}
    assert all(len(pin) == 6 and pin.isdigit() for pin in pins)
    assert len(pins) > 1


async def test_create_and_package(session: AsyncSession, room: Room) -> None:
    invitation = await _invite(session, room)

    assert invitation.email == "guest@example.com"
    assert invitation.pin_attempts == 0
    assert normalize_utc(invitation.expires_at) == T0 + timedelta(hours=168)
    token = invitation_service.invitation_token(invitation)
    assert is_invitation_token(token)

    package = invitation_service.invitation_package(invitation, room=room, base_url="https://r.example")
    assert package["url"] == f"https://r.example/invite/{token}"
    assert package["pin"] == invitation.pin
    assert package["room_number"] == "7"
    assert package["role"] == "seller"

    with pytest.raises(ValueError):
        await _invite(session, room, role="landlord")


async def test_find_by_token(session: AsyncSession, room: Room) -> None:
    invitation = await _invite(session, room)
    token = invitation_service.invitation_token(invitation)

    found, reason = await invitation_service.find_by_token(session, token, now=T0)
    assert reason is None
    assert found is not None and found.id == invitation.id

    missing, reason = await invitation_service.find_by_token(session, "inv_bm9wZQ", now=T0)
    assert missing is None
    assert reason in {Reason.MALFORMED_TOKEN, Reason.TAMPERED_TOKEN}

    _, reason = await invitation_service.find_by_token(session, "rm_abc", now=T0)
    assert reason == Reason.MALFORMED_TOKEN


async def test_correct_pin_accepts_and_records_metadata(session: AsyncSession, room: Room) -> None:
    invitation = await _invite(session, room)
    token = invitation_service.invitation_token(invitation)

    result = await invitation_service.redeem(
        session,
        token,
        invitation.pin,
        invitee_id="user_guest",
        session_id="user_guest",
        ip_address="203.0.113.5",
        user_agent="pytest",
        now=T0 + timedelta(minutes=1),
    )
    assert result.accepted
    assert result.reason is None
    assert invitation.accepted_at is not None
    assert invitation.invitee_id == "user_guest"
    assert invitation.ip_address == "203.0.113.5"
    assert invitation_service.validate_session(invitation, "user_guest")
    assert not invitation_service.validate_session(invitation, "user_other")


async def test_accepted_invitation_keeps_first_browser(session: AsyncSession, room: Room) -> None:
    invitation = await _invite(session, room)
    token = invitation_service.invitation_token(invitation)
    await invitation_service.redeem(
        session,
        token,
        invitation.pin,
        invitee_id="user_guest",
        session_id="user_guest",
        ip_address="203.0.113.5",
        now=T0,
    )

    again = await invitation_service.redeem(
        session, token, invitation.pin, invitee_id="user_guest", session_id="user_guest", now=T0
    )
    assert again.accepted

    other = await invitation_service.redeem(
        session,
        token,
        invitation.pin,
        invitee_id="user_other",
        session_id="user_other",
        ip_address="198.51.100.9",
        now=T0,
    )
    assert not other.accepted
    assert other.reason == Reason.INVITATION_INACTIVE
    assert invitation.invitee_id == "user_guest"
    assert invitation.session_id == "user_guest"
    assert invitation.ip_address == "203.0.113.5"
    assert not invitation_service.validate_session(invitation, "user_other")


async def test_joined_invitation_cannot_be_redeemed(session: AsyncSession, room: Room) -> None:
    invitation = await _invite(session, room)
    token = invitation_service.invitation_token(invitation)
    await invitation_service.redeem(
        session, token, invitation.pin, invitee_id="user_guest", session_id="user_guest", now=T0
    )
    assert await invitation_service.mark_joined(session, invitation, now=T0)

    result = await invitation_service.redeem(
        session, token, invitation.pin, invitee_id="user_other", session_id="user_other", now=T0
    )
    assert not result.accepted
    assert result.reason == Reason.INVITATION_INACTIVE
    assert invitation.session_id == "user_guest"


async def test_missing_pin(session: AsyncSession, room: Room) -> None:
    invitation = await _invite(session, room)
    token = invitation_service.invitation_token(invitation)

    result = await invitation_service.redeem(session, token, "  ", now=T0)
    assert result.reason == Reason.PIN_REQUIRED
    assert invitation.pin_attempts == 0


async def test_correct_pin_resets_attempts(session: AsyncSession, room: Room) -> None:
    invitation = await _invite(session, room)
    token = invitation_service.invitation_token(invitation)
    wrong = _wrong_pin(invitation)

    for expected_remaining in (4, 3, 2, 1):
        result = await invitation_service.redeem(session, token, wrong, now=T0)
        assert result.reason == Reason.PIN_INVALID
        assert result.attempts_remaining == expected_remaining
    assert invitation.pin_attempts == 4

    accepted = await invitation_service.redeem(session, token, invitation.pin, now=T0)
    assert accepted.accepted
    assert invitation.pin_attempts == 0
    assert invitation.pin_locked_until is None


async def test_five_wrong_pins_lock_invitation(session: AsyncSession, room: Room) -> None:
    invitation = await _invite(session, room)
    token = invitation_service.invitation_token(invitation)
    wrong = _wrong_pin(invitation)
    attempt_at = T0 + timedelta(minutes=1)

    results = [
        await invitation_service.redeem(session, token, wrong, now=attempt_at) for _ in range(5)
    ]
    assert all(result.reason == Reason.PIN_INVALID for result in results)
    fifth = results[-1]
    assert fifth.attempts_remaining == 0
    assert fifth.locked_until == attempt_at + timedelta(minutes=30)
    assert invitation_service.is_pin_locked(invitation, now=attempt_at)
    assert not invitation_service.can_attempt_pin(invitation, now=attempt_at)

    sixth = await invitation_service.redeem(session, token, invitation.pin, now=attempt_at)
    assert not sixth.accepted
    assert sixth.reason == Reason.PIN_LOCKED
    assert sixth.locked_until == attempt_at + timedelta(minutes=30)
    message = public_message(sixth.reason, locked_until=sixth.locked_until)
    assert "Too many attempts" in message
    assert "12:31" in message


async def test_lock_lapses(session: AsyncSession, room: Room) -> None:
    invitation = await _invite(session, room)
    token = invitation_service.invitation_token(invitation)
    wrong = _wrong_pin(invitation)
    for _ in range(5):
        await invitation_service.redeem(session, token, wrong, now=T0)

    after = T0 + timedelta(minutes=31)
    assert invitation_service.can_attempt_pin(invitation, now=after)
    retry = await invitation_service.redeem(session, token, wrong, now=after)
    assert retry.reason == Reason.PIN_INVALID
    assert retry.attempts_remaining == 0
    assert invitation.pin_attempts >= 5
    assert retry.locked_until == after + timedelta(minutes=30)

    relocked = await invitation_service.redeem(session, token, invitation.pin, now=after)
    assert relocked.reason == Reason.PIN_LOCKED

    later = after + timedelta(minutes=31)
    accepted = await invitation_service.redeem(session, token, invitation.pin, now=later)
    assert accepted.accepted
    assert invitation.pin_attempts == 0
    assert invitation.pin_locked_until is None


async def test_concurrent_wrong_pins_lock_once(
    sessionmaker: async_sessionmaker[AsyncSession], session: AsyncSession, room: Room
) -> None:
    invitation = await _invite(session, room)
    token = invitation_service.invitation_token(invitation)
    wrong = _wrong_pin(invitation)
    for _ in range(4):
        await invitation_service.redeem(session, token, wrong, now=T0)

    async with sessionmaker() as first, sessionmaker() as second:
        assert (await first.get(RoomInvitation, invitation.id)).pin_attempts == 4
        assert (await second.get(RoomInvitation, invitation.id)).pin_attempts == 4

        results = [
            await invitation_service.redeem(first, token, wrong, now=T0),
            await invitation_service.redeem(second, token, wrong, now=T0),
        ]

    assert [result.reason for result in results] == [Reason.PIN_INVALID, Reason.PIN_LOCKED]
    async with sessionmaker() as fresh:
        stored = await fresh.get(RoomInvitation, invitation.id)
        assert stored.pin_attempts == 5
        assert normalize_utc(stored.pin_locked_until) == T0 + timedelta(minutes=30)


async def test_expired_invitation(session: AsyncSession, room: Room) -> None:
    invitation = await _invite(session, room, ttl_hours=1)
    token = invitation_service.invitation_token(invitation)

    result = await invitation_service.redeem(
        session, token, invitation.pin, now=T0 + timedelta(hours=2)
    )
    assert not result.accepted
    assert result.reason == Reason.EXPIRED_TOKEN
    assert public_message(result.reason) == "This link no longer works."


async def test_deactivated_invitation(session: AsyncSession, room: Room) -> None:
    invitation = await _invite(session, room)
    token = invitation_service.invitation_token(invitation)
    await invitation_service.deactivate(session, invitation)

    result = await invitation_service.redeem(session, token, invitation.pin, now=T0)
    assert result.reason == Reason.INVITATION_INACTIVE


async def test_mark_joined_requires_acceptance(session: AsyncSession, room: Room) -> None:
    invitation = await _invite(session, room)
    token = invitation_service.invitation_token(invitation)

    assert not await invitation_service.mark_joined(session, invitation, now=T0)
    await invitation_service.redeem(session, token, invitation.pin, now=T0)
    assert await invitation_service.mark_joined(session, invitation, now=T0)
    assert invitation.joined_at is not None
    assert not await invitation_service.mark_joined(
        session, invitation, now=T0 + timedelta(days=8)
    )


async def test_list_for_room(session: AsyncSession, room: Room) -> None:
    await _invite(session, room)
    await _invite(session, room, role=Role.BUYER)

    listed = await invitation_service.list_for_room(session, room.id)
    assert {item.role for item in listed} == {"buyer", "seller"}
