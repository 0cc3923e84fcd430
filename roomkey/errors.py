from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional


class Reason(str, Enum):
    MALFORMED_TOKEN = "malformed_token"
    TAMPERED_TOKEN = "tampered_token"
    EXPIRED_TOKEN = "expired_token"
    UNKNOWN_ROLE = "unknown_role"
    PIN_REQUIRED = "pin_required"
    PIN_INVALID = "pin_invalid"
    PIN_LOCKED = "pin_locked"
    ROLE_UNAVAILABLE = "role_unavailable"
    SESSION_NOT_FOUND = "session_not_found"
    ALREADY_MIGRATED = "already_migrated"
    ROOM_NOT_FOUND = "room_not_found"
    INVITATION_INACTIVE = "invitation_inactive"


LINK_UNAVAILABLE_MESSAGE = "This link no longer works."
PIN_REQUIRED_MESSAGE = "A PIN is required to use this link."
PIN_INVALID_MESSAGE = "The PIN you entered is incorrect."
SESSION_NOT_FOUND_MESSAGE = "No active session was found for this room."

# Reasons that must look identical to the client so the link checks reveal nothing.
LINK_FAILURE_REASONS = frozenset(
    {
        Reason.MALFORMED_TOKEN,
        Reason.TAMPERED_TOKEN,
        Reason.EXPIRED_TOKEN,
        Reason.UNKNOWN_ROLE,
        Reason.ROLE_UNAVAILABLE,
        Reason.ROOM_NOT_FOUND,
        Reason.INVITATION_INACTIVE,
    }
)


def public_message(reason: Reason, *, locked_until: Optional[datetime] = None) -> str:
    """Return the text shown to an end user for a rejection reason."""
    if reason in LINK_FAILURE_REASONS:
        return LINK_UNAVAILABLE_MESSAGE
    if reason == Reason.PIN_LOCKED:
        if locked_until is None:
            return "Too many attempts. Try again later."
        return f"Too many attempts. Try again after {locked_until.strftime('%Y-%m-%d %H:%M')} UTC."
    if reason == Reason.PIN_REQUIRED:
        return PIN_REQUIRED_MESSAGE
    if reason == Reason.PIN_INVALID:
        return PIN_INVALID_MESSAGE
    if reason == Reason.SESSION_NOT_FOUND:
        return SESSION_NOT_FOUND_MESSAGE
    return ""
