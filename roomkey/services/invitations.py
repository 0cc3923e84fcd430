from __future__ import annotations

import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import DateTime, case, func, literal, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from roomkey.config import get_settings
from roomkey.crypto import Signer, b64url_decode, b64url_encode, get_signer, random_string
from roomkey.errors import Reason
from roomkey.logger import get_logger
from roomkey.models.room import Room
from roomkey.models.room_invitation import RoomInvitation
from roomkey.roles import Role, parse_role
from roomkey.tokens import INVITATION_PREFIX
from roomkey.utils import normalize_utc, utcnow

PIN_LENGTH = 6
_REQUIRED_PAYLOAD_KEYS = ("room_id", "role", "email", "expires_at")

_logger = get_logger("services.invitations")


@dataclass(frozen=True)
class RedeemResult:
    accepted: bool
    reason: Optional[Reason] = None
    invitation: Optional[RoomInvitation] = None
    locked_until: Optional[datetime] = None
    attempts_remaining: Optional[int] = None


def generate_pin() -> str:
    return f"{secrets.randbelow(10**PIN_LENGTH):0{PIN_LENGTH}d}"


def is_expired(invitation: RoomInvitation, *, now: Optional[datetime] = None) -> bool:
    expires_at = normalize_utc(invitation.expires_at)
    return expires_at is None or expires_at <= (now or utcnow())


def is_pin_locked(invitation: RoomInvitation, *, now: Optional[datetime] = None) -> bool:
    locked_until = normalize_utc(invitation.pin_locked_until)
    return locked_until is not None and locked_until > (now or utcnow())


def can_attempt_pin(invitation: RoomInvitation, *, now: Optional[datetime] = None) -> bool:
    """Not locked, and either under the attempt cap or past an earlier lock.

    An elapsed lock reopens entry without clearing ``pin_attempts``; the next
    wrong PIN locks again straight away. Only a correct PIN resets the count.
    """
    current = now or utcnow()
    if is_pin_locked(invitation, now=current):
        return False
    if invitation.pin_attempts < get_settings().pin_max_attempts:
        return True
    return invitation.pin_locked_until is not None


def _encrypt_payload(invitation: RoomInvitation, signer: Signer) -> str:
    expires_at = normalize_utc(invitation.expires_at)
    payload = {
        "room_id": invitation.room_id,
        "role": invitation.role,
        "email": invitation.email,
        "expires_at": int(expires_at.timestamp()) if expires_at else 0,
        "nonce": random_string(16),
    }
    return signer.encrypt(json.dumps(payload, separators=(",", ":")).encode("utf-8"))


async def create_invitation(
    session: AsyncSession,
    *,
    room: Room,
    inviter_id: str,
    email: str,
    role: Role | str,
    ttl_hours: Optional[int] = None,
    signer: Optional[Signer] = None,
    now: Optional[datetime] = None,
) -> RoomInvitation:
    checked_role = parse_role(role)
    if checked_role is None:
        raise ValueError(f"unsupported role: {role!r}")
    hours = ttl_hours or get_settings().invitation_ttl_hours
    current = now or utcnow()

    async with _logger.operation(
        "invitation.create",
        "Creating room invitation",
        room_id=room.id,
        role=checked_role.value,
    ) as op:
        invitation = RoomInvitation(
            room_id=room.id,
            inviter_id=inviter_id,
            email=email.strip().lower(),
            role=checked_role.value,
            pin=generate_pin(),
            expires_at=current + timedelta(hours=hours),
            pin_attempts=0,
            is_active=True,
            extra={},
        )
        session.add(invitation)
        await session.flush()
        op.step("row.insert", "Inserted invitation row", invitation_id=invitation.id)

        invitation.encrypted_token = _encrypt_payload(invitation, signer or get_signer())
        await session.commit()
        _logger.info(
            "invitation.create",
            "Created room invitation",
            invitation_id=invitation.id,
            room_id=room.id,
            role=checked_role.value,
            expires_at=invitation.expires_at.isoformat(),
        )
        return invitation


def invitation_token(invitation: RoomInvitation) -> str:
    if not invitation.encrypted_token:
        raise ValueError("invitation has no encrypted token")
    return INVITATION_PREFIX + b64url_encode(invitation.encrypted_token.encode("ascii"))


def build_url(invitation: RoomInvitation, *, base_url: str = "") -> str:
    return base_url.rstrip("/") + f"/invite/{invitation_token(invitation)}"


def decode_invitation_token(
    token: str,
    *,
    signer: Optional[Signer] = None,
    now: Optional[datetime] = None,
) -> Tuple[Optional[Dict[str, Any]], Optional[str], Optional[Reason]]:
    """Return ``(payload, encrypted_token, reason)`` for an ``inv_`` token."""
    raw = (token or "").strip()
    if not raw.startswith(INVITATION_PREFIX):
        return None, None, Reason.MALFORMED_TOKEN
    decoded = b64url_decode(raw[len(INVITATION_PREFIX) :])
    if decoded is None:
        return None, None, Reason.MALFORMED_TOKEN
    try:
        encrypted = decoded.decode("ascii")
    except UnicodeDecodeError:
        return None, None, Reason.MALFORMED_TOKEN

    plaintext = (signer or get_signer()).decrypt(encrypted)
    if plaintext is None:
        return None, None, Reason.TAMPERED_TOKEN
    try:
        payload = json.loads(plaintext)
    except (ValueError, UnicodeDecodeError):
        return None, None, Reason.MALFORMED_TOKEN
    if not isinstance(payload, dict) or any(key not in payload for key in _REQUIRED_PAYLOAD_KEYS):
        return None, None, Reason.MALFORMED_TOKEN
    if parse_role(payload.get("role")) is None:
        return None, None, Reason.UNKNOWN_ROLE

    try:
        expires_at = int(payload["expires_at"])
    except (TypeError, ValueError):
        return None, None, Reason.MALFORMED_TOKEN
    if expires_at <= int((now or utcnow()).timestamp()):
        return None, None, Reason.EXPIRED_TOKEN
    return payload, encrypted, None


async def find_by_token(
    session: AsyncSession,
    token: str,
    *,
    signer: Optional[Signer] = None,
    now: Optional[datetime] = None,
) -> Tuple[Optional[RoomInvitation], Optional[Reason]]:
    current = now or utcnow()
    payload, encrypted, reason = decode_invitation_token(token, signer=signer, now=current)
    if payload is None or encrypted is None:
        return None, reason

    result = await session.execute(
        select(RoomInvitation).where(RoomInvitation.encrypted_token == encrypted)
    )
    invitation = result.scalar_one_or_none()
    if invitation is None or not invitation.is_active:
        return None, Reason.INVITATION_INACTIVE
    if is_expired(invitation, now=current):
        return None, Reason.EXPIRED_TOKEN
    return invitation, None


def _attemptable(now: datetime, max_attempts: int) -> Any:
    lapsed = RoomInvitation.pin_locked_until <= now
    return (
        or_(RoomInvitation.pin_locked_until.is_(None), lapsed),
        or_(RoomInvitation.pin_attempts < max_attempts, lapsed),
    )


async def record_pin_failure(
    session: AsyncSession,
    invitation: RoomInvitation,
    *,
    now: Optional[datetime] = None,
) -> bool:
    """Count one wrong PIN in a single conditional UPDATE.

    Returns False when the row was already locked by a concurrent attempt.
    """
    settings = get_settings()
    current = now or utcnow()
    max_attempts = settings.pin_max_attempts
    lock_until = current + timedelta(seconds=settings.pin_lockout_seconds)

    result = await session.execute(
        update(RoomInvitation)
        .where(RoomInvitation.id == invitation.id, *_attemptable(current, max_attempts))
        .values(
            pin_attempts=RoomInvitation.pin_attempts + 1,
            pin_locked_until=case(
                (
                    RoomInvitation.pin_attempts + 1 >= max_attempts,
                    literal(lock_until, DateTime(timezone=True)),
                ),
                else_=RoomInvitation.pin_locked_until,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    await session.refresh(invitation)
    return (result.rowcount or 0) > 0


async def accept(
    session: AsyncSession,
    invitation: RoomInvitation,
    *,
    invitee_id: Optional[str] = None,
    session_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Mark the invitation accepted, keeping the first browser binding.

    A claimed invitation is never rebound; later redeems only reset the
    PIN counter.
    """
    current = now or utcnow()
    result = await session.execute(
        update(RoomInvitation)
        .where(
            RoomInvitation.id == invitation.id,
            RoomInvitation.joined_at.is_(None),
            *_attemptable(current, get_settings().pin_max_attempts),
        )
        .values(
            pin_attempts=0,
            pin_locked_until=None,
            invitee_id=func.coalesce(RoomInvitation.invitee_id, invitee_id),
            accepted_at=func.coalesce(
                RoomInvitation.accepted_at, literal(current, DateTime(timezone=True))
            ),
            session_id=func.coalesce(RoomInvitation.session_id, session_id),
            ip_address=func.coalesce(RoomInvitation.ip_address, ip_address),
            user_agent=func.coalesce(
                RoomInvitation.user_agent, (user_agent or "")[:512] or None
            ),
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    await session.refresh(invitation)
    return (result.rowcount or 0) > 0


async def redeem(
    session: AsyncSession,
    token: str,
    supplied_pin: Optional[str],
    *,
    invitee_id: Optional[str] = None,
    session_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    signer: Optional[Signer] = None,
    now: Optional[datetime] = None,
) -> RedeemResult:
    current = now or utcnow()
    max_attempts = get_settings().pin_max_attempts

    invitation, reason = await find_by_token(session, token, signer=signer, now=current)
    if invitation is None:
        _logger.warning("invitation.redeem.reject", "Rejected invitation token", reason=reason)
        return RedeemResult(accepted=False, reason=reason)

    if invitation.joined_at is not None:
        _logger.warning(
            "invitation.redeem.reject",
            "Invitation already claimed",
            invitation_id=invitation.id,
        )
        return RedeemResult(
            accepted=False, reason=Reason.INVITATION_INACTIVE, invitation=invitation
        )

    if not can_attempt_pin(invitation, now=current):
        _logger.warning(
            "invitation.redeem.locked",
            "PIN entry is locked",
            invitation_id=invitation.id,
        )
        return RedeemResult(
            accepted=False,
            reason=Reason.PIN_LOCKED,
            invitation=invitation,
            locked_until=normalize_utc(invitation.pin_locked_until),
            attempts_remaining=0,
        )

    pin = (supplied_pin or "").strip()
    if not pin:
        return RedeemResult(accepted=False, reason=Reason.PIN_REQUIRED, invitation=invitation)

    if not hmac.compare_digest(invitation.pin.encode("utf-8"), pin.encode("utf-8")):
        counted = await record_pin_failure(session, invitation, now=current)
        locked_until = normalize_utc(invitation.pin_locked_until)
        _logger.warning(
            "invitation.redeem.pin_invalid",
            "Rejected invitation PIN",
            invitation_id=invitation.id,
            attempts=invitation.pin_attempts,
            locked=locked_until is not None,
        )
        if not counted:
            return RedeemResult(
                accepted=False,
                reason=Reason.PIN_LOCKED,
                invitation=invitation,
                locked_until=locked_until,
                attempts_remaining=0,
            )
        return RedeemResult(
            accepted=False,
            reason=Reason.PIN_INVALID,
            invitation=invitation,
            locked_until=locked_until,
            attempts_remaining=max(0, max_attempts - invitation.pin_attempts),
        )

    if not await accept(
        session,
        invitation,
        invitee_id=invitee_id,
        session_id=session_id,
        ip_address=ip_address,
        user_agent=user_agent,
        now=current,
    ):
        if invitation.joined_at is not None:
            return RedeemResult(
                accepted=False, reason=Reason.INVITATION_INACTIVE, invitation=invitation
            )
        return RedeemResult(
            accepted=False,
            reason=Reason.PIN_LOCKED,
            invitation=invitation,
            locked_until=normalize_utc(invitation.pin_locked_until),
            attempts_remaining=0,
        )
    if not validate_session(invitation, session_id):
        _logger.warning(
            "invitation.redeem.reject",
            "Invitation bound to another browser",
            invitation_id=invitation.id,
        )
        return RedeemResult(
            accepted=False, reason=Reason.INVITATION_INACTIVE, invitation=invitation
        )
    _logger.info(
        "invitation.redeem",
        "Accepted invitation",
        invitation_id=invitation.id,
        room_id=invitation.room_id,
        role=invitation.role,
        client_ip=ip_address,
    )
    return RedeemResult(accepted=True, invitation=invitation, attempts_remaining=max_attempts)


def validate_session(invitation: RoomInvitation, session_id: Optional[str]) -> bool:
    if invitation.session_id and invitation.session_id != session_id:
        return False
    return True


async def mark_joined(
    session: AsyncSession,
    invitation: RoomInvitation,
    *,
    now: Optional[datetime] = None,
) -> bool:
    current = now or utcnow()
    if invitation.accepted_at is None or is_expired(invitation, now=current):
        return False
    if invitation.joined_at is None:
        invitation.joined_at = current
        await session.commit()
        _logger.info("invitation.joined", "Invitation role claimed", invitation_id=invitation.id)
    return True


async def deactivate(session: AsyncSession, invitation: RoomInvitation) -> None:
    invitation.is_active = False
    await session.commit()
    _logger.info("invitation.deactivate", "Deactivated invitation", invitation_id=invitation.id)


async def list_for_room(session: AsyncSession, room_id: int) -> List[RoomInvitation]:
    result = await session.execute(
        select(RoomInvitation)
        .where(RoomInvitation.room_id == room_id)
        .order_by(RoomInvitation.created_at.desc())
    )
    return list(result.scalars().all())


def invitation_package(
    invitation: RoomInvitation,
    *,
    room: Room,
    base_url: str = "",
) -> Dict[str, Any]:
    expires_at = normalize_utc(invitation.expires_at)
    return {
        "url": build_url(invitation, base_url=base_url),
        "pin": invitation.pin,
        "role": invitation.role,
        "room_number": room.room_number,
        "expires_at": expires_at.isoformat() if expires_at else None,
        "email": invitation.email,
        "inviter": invitation.inviter_id,
    }
