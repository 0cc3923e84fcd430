"""Room access tokens and opaque room ids.

Two access-token formats are accepted:

* compact: ``b64url("room_id|role|issued_at|nonce|pin|sig")`` where ``sig`` is
  the first 16 hex chars of HMAC-SHA256 over the first five fields;
* legacy: a Fernet blob holding a JSON map with an integrity ``hash`` over the
  same fields, usually wrapped in base64url, sometimes raw.

Decoding walks an ordered list of parsers. New formats are appended to that
list; existing parsers are never changed.
"""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List, Optional, Protocol, Sequence
from urllib.parse import urlencode

from roomkey.config import get_settings
from roomkey.crypto import Signer, b64url_decode, b64url_encode, get_signer, random_string
from roomkey.errors import Reason
from roomkey.logger import get_logger
from roomkey.roles import Role, parse_role

ROOM_ID_PREFIX = "rm_"
INVITATION_PREFIX = "inv_"
SIGNATURE_LENGTH = 16
COMPACT_NONCE_LENGTH = 6
LEGACY_NONCE_LENGTH = 16
ROOM_ID_NONCE_LENGTH = 8
ROOM_ID_PAYLOAD_TYPE = "room_id"
FIELD_DELIMITER = "|"

_PIN_PATTERN = re.compile(r"^[A-Za-z0-9]{1,12}$")
_DIGITS_PATTERN = re.compile(r"^[0-9]+$")

_logger = get_logger("tokens")


@dataclass(frozen=True)
class AccessToken:
    room_id: int
    role: Role
    issued_at: int
    pin: Optional[str] = None
    format: str = "compact"


@dataclass(frozen=True)
class TokenResult:
    token: Optional[AccessToken] = None
    reason: Optional[Reason] = None

    @property
    def ok(self) -> bool:
        return self.token is not None


class TokenParser(Protocol):
    name: str

    def parse(self, raw: str, *, now: int) -> TokenResult:
        ...


def _now_epoch(now: Optional[int]) -> int:
    return now if now is not None else int(time.time())


def _parse_positive_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and _DIGITS_PATTERN.match(value):
        parsed = int(value)
        return parsed if parsed > 0 else None
    return None


def _signing_input(room_id: Any, role: Any, issued_at: Any, nonce: Any, pin: Optional[str]) -> bytes:
    fields = [str(room_id), str(role), str(issued_at), str(nonce), pin or ""]
    return FIELD_DELIMITER.join(fields).encode("utf-8")


def _check_claims(
    *,
    room_id_raw: Any,
    role_raw: Any,
    issued_at_raw: Any,
    pin: Optional[str],
    ttl_seconds: int,
    now: int,
    token_format: str,
) -> TokenResult:
    room_id = _parse_positive_int(room_id_raw)
    issued_at = _parse_positive_int(issued_at_raw)
    if room_id is None or issued_at is None:
        return TokenResult(reason=Reason.MALFORMED_TOKEN)
    if now - issued_at > ttl_seconds:
        return TokenResult(reason=Reason.EXPIRED_TOKEN)
    role = parse_role(role_raw)
    if role is None:
        return TokenResult(reason=Reason.UNKNOWN_ROLE)
    return TokenResult(
        token=AccessToken(
            room_id=room_id,
            role=role,
            issued_at=issued_at,
            pin=pin or None,
            format=token_format,
        )
    )


class CompactTokenParser:
    name = "compact"

    def __init__(self, signer: Signer, *, ttl_seconds: int) -> None:
        self._signer = signer
        self._ttl_seconds = ttl_seconds

    def parse(self, raw: str, *, now: int) -> TokenResult:
        decoded = b64url_decode(raw)
        if decoded is None:
            return TokenResult(reason=Reason.MALFORMED_TOKEN)
        try:
            text = decoded.decode("utf-8")
        except UnicodeDecodeError:
            return TokenResult(reason=Reason.MALFORMED_TOKEN)
        if FIELD_DELIMITER not in text:
            return TokenResult(reason=Reason.MALFORMED_TOKEN)

        parts = text.split(FIELD_DELIMITER)
        if len(parts) != 6:
            return TokenResult(reason=Reason.MALFORMED_TOKEN)
        room_id_raw, role_raw, issued_at_raw, nonce, pin, signature = parts
        if not (room_id_raw and role_raw and issued_at_raw and nonce and signature):
            return TokenResult(reason=Reason.MALFORMED_TOKEN)

        signed = _signing_input(room_id_raw, role_raw, issued_at_raw, nonce, pin)
        if not self._signer.verify(signed, signature, length=SIGNATURE_LENGTH):
            return TokenResult(reason=Reason.TAMPERED_TOKEN)

        return _check_claims(
            room_id_raw=room_id_raw,
            role_raw=role_raw,
            issued_at_raw=issued_at_raw,
            pin=pin,
            ttl_seconds=self._ttl_seconds,
            now=now,
            token_format=self.name,
        )


class EncryptedTokenParser:
    name = "legacy"

    def __init__(self, signer: Signer, *, ttl_seconds: int) -> None:
        self._signer = signer
        self._ttl_seconds = ttl_seconds

    def _candidates(self, raw: str) -> List[str]:
        candidates: List[str] = []
        decoded = b64url_decode(raw)
        if decoded is not None:
            try:
                candidates.append(decoded.decode("ascii"))
            except UnicodeDecodeError:
                pass
        # Older links carried the ciphertext without the base64url wrapper.
        candidates.append(raw)
        return candidates

    def _parse_payload(self, payload: Any, *, now: int) -> TokenResult:
        if not isinstance(payload, dict):
            return TokenResult(reason=Reason.MALFORMED_TOKEN)
        required = ("room_id", "role", "timestamp", "random_key", "hash")
        if any(payload.get(key) in (None, "") for key in required):
            return TokenResult(reason=Reason.MALFORMED_TOKEN)
        pin = payload.get("pin")
        if pin is not None and not isinstance(pin, str):
            return TokenResult(reason=Reason.MALFORMED_TOKEN)
        integrity = payload["hash"]
        if not isinstance(integrity, str):
            return TokenResult(reason=Reason.TAMPERED_TOKEN)

        signed = _signing_input(
            payload["room_id"], payload["role"], payload["timestamp"], payload["random_key"], pin
        )
        if not self._signer.verify(signed, integrity):
            return TokenResult(reason=Reason.TAMPERED_TOKEN)

        return _check_claims(
            room_id_raw=payload["room_id"],
            role_raw=payload["role"],
            issued_at_raw=payload["timestamp"],
            pin=pin,
            ttl_seconds=self._ttl_seconds,
            now=now,
            token_format=self.name,
        )

    def parse(self, raw: str, *, now: int) -> TokenResult:
        failure = TokenResult(reason=Reason.MALFORMED_TOKEN)
        for candidate in self._candidates(raw):
            plaintext = self._signer.decrypt(candidate)
            if plaintext is None:
                continue
            try:
                payload = json.loads(plaintext)
            except (ValueError, UnicodeDecodeError):
                continue
            result = self._parse_payload(payload, now=now)
            if result.ok:
                return result
            if failure.reason == Reason.MALFORMED_TOKEN:
                failure = result
        return failure


class TokenCodec:
    def __init__(
        self,
        signer: Signer,
        *,
        ttl_seconds: int,
        room_id_ttl_seconds: int,
        parsers: Optional[Sequence[TokenParser]] = None,
    ) -> None:
        self._signer = signer
        self.ttl_seconds = ttl_seconds
        self.room_id_ttl_seconds = room_id_ttl_seconds
        if parsers is None:
            parsers = (
                CompactTokenParser(signer, ttl_seconds=ttl_seconds),
                EncryptedTokenParser(signer, ttl_seconds=ttl_seconds),
            )
        self._parsers = tuple(parsers)

    def encode(
        self,
        room_id: int,
        role: Role | str,
        pin: Optional[str] = None,
        *,
        compact: bool = True,
        now: Optional[int] = None,
    ) -> str:
        checked_room_id = _parse_positive_int(room_id)
        if checked_room_id is None:
            raise ValueError("room_id must be a positive integer")
        checked_role = parse_role(role)
        if checked_role is None:
            raise ValueError(f"unsupported role: {role!r}")
        if pin is not None and not _PIN_PATTERN.match(pin):
            raise ValueError("pin must be 1-12 alphanumeric characters")

        issued_at = _now_epoch(now)
        if compact:
            nonce = random_string(COMPACT_NONCE_LENGTH)
            signed = _signing_input(checked_room_id, checked_role.value, issued_at, nonce, pin)
            signature = self._signer.sign(signed)[:SIGNATURE_LENGTH]
            return b64url_encode(signed + f"{FIELD_DELIMITER}{signature}".encode("ascii"))

        nonce = random_string(LEGACY_NONCE_LENGTH)
        payload = {
            "room_id": checked_room_id,
            "role": checked_role.value,
            "timestamp": issued_at,
            "random_key": nonce,
            "pin": pin,
            "hash": self._signer.sign(
                _signing_input(checked_room_id, checked_role.value, issued_at, nonce, pin)
            ),
        }
        ciphertext = self._signer.encrypt(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
        return b64url_encode(ciphertext.encode("ascii"))

    def decode(self, token: str, *, now: Optional[int] = None) -> TokenResult:
        current = _now_epoch(now)
        raw = (token or "").strip()
        if not raw:
            return TokenResult(reason=Reason.MALFORMED_TOKEN)

        failure = TokenResult(reason=Reason.MALFORMED_TOKEN)
        for parser in self._parsers:
            result = parser.parse(raw, now=current)
            if result.ok:
                return result
            # Report the first parser that recognised the format; a structural
            # miss from every parser stays MALFORMED.
            if failure.reason == Reason.MALFORMED_TOKEN:
                failure = result
        _logger.debug("token.decode.reject", "Rejected access token", reason=failure.reason)
        return failure

    def is_token_expired(self, issued_at: int, *, now: Optional[int] = None) -> bool:
        return _now_epoch(now) - issued_at > self.ttl_seconds

    def encode_room_id(self, room_id: int, *, now: Optional[int] = None) -> str:
        checked_room_id = _parse_positive_int(room_id)
        if checked_room_id is None:
            raise ValueError("room_id must be a positive integer")
        payload = {
            "room_id": checked_room_id,
            "timestamp": _now_epoch(now),
            "random_key": random_string(ROOM_ID_NONCE_LENGTH),
            "type": ROOM_ID_PAYLOAD_TYPE,
        }
        ciphertext = self._signer.encrypt(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
        return ROOM_ID_PREFIX + b64url_encode(ciphertext.encode("ascii"))

    def decode_room_id(self, value: str, *, now: Optional[int] = None) -> Optional[int]:
        raw = (value or "").strip()
        if not raw.startswith(ROOM_ID_PREFIX):
            # Plain numeric ids from links minted before obfuscation.
            return _parse_positive_int(raw)

        decoded = b64url_decode(raw[len(ROOM_ID_PREFIX) :])
        if decoded is None:
            return None
        try:
            plaintext = self._signer.decrypt(decoded.decode("ascii"))
        except UnicodeDecodeError:
            return None
        if plaintext is None:
            return None
        try:
            payload = json.loads(plaintext)
        except (ValueError, UnicodeDecodeError):
            return None
        if not isinstance(payload, dict) or payload.get("type") != ROOM_ID_PAYLOAD_TYPE:
            return None
        room_id = _parse_positive_int(payload.get("room_id"))
        issued_at = _parse_positive_int(payload.get("timestamp"))
        if room_id is None or issued_at is None:
            return None
        if _now_epoch(now) - issued_at > self.room_id_ttl_seconds:
            return None
        return room_id


def is_opaque_room_id(value: str) -> bool:
    return (value or "").startswith(ROOM_ID_PREFIX)


def is_invitation_token(value: str) -> bool:
    return (value or "").startswith(INVITATION_PREFIX)


def _with_query(path: str, pin: Optional[str]) -> str:
    if not pin:
        return path
    return f"{path}?{urlencode({'pin': pin})}"


def join_path(token: str, pin: Optional[str] = None, *, base_url: str = "") -> str:
    return base_url.rstrip("/") + _with_query(f"/join/{token}", pin)


def enter_path(token: str, pin: Optional[str] = None, *, base_url: str = "") -> str:
    return base_url.rstrip("/") + _with_query(f"/enter/{token}", pin)


def room_path(codec: TokenCodec, room_id: int, *, base_url: str = "") -> str:
    return base_url.rstrip("/") + f"/rooms/{codec.encode_room_id(room_id)}"


def share_links(
    codec: TokenCodec,
    room_id: int,
    pin: Optional[str] = None,
    *,
    base_url: str = "",
) -> Dict[str, Dict[str, str]]:
    links: Dict[str, Dict[str, str]] = {}
    for role in Role:
        links[role.value] = {
            "join": join_path(codec.encode(room_id, role, pin), pin, base_url=base_url),
            "enter": enter_path(codec.encode(room_id, role, pin), pin, base_url=base_url),
        }
    return links


@lru_cache
def get_token_codec() -> TokenCodec:
    settings = get_settings()
    return TokenCodec(
        get_signer(),
        ttl_seconds=settings.access_token_ttl_seconds,
        room_id_ttl_seconds=settings.room_id_ttl_seconds,
    )
