from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import re
import secrets
import string
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from roomkey.config import get_settings

_B64URL_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
_RANDOM_ALPHABET = string.ascii_letters + string.digits


def b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def b64url_decode(value: str) -> Optional[bytes]:
    """Strict base64url decode; returns None instead of raising."""
    if not value or not _B64URL_PATTERN.match(value) or len(value) % 4 == 1:
        return None
    padding = "=" * ((4 - len(value) % 4) % 4)
    try:
        return base64.urlsafe_b64decode(value + padding)
    except (binascii.Error, ValueError):
        return None


def random_string(length: int) -> str:
    return "".join(secrets.choice(_RANDOM_ALPHABET) for _ in range(length))


class Signer:
    """Keyed signing plus authenticated encryption derived from one shared secret.

    ``sign`` is HMAC-SHA256 (hex). ``encrypt``/``decrypt`` use Fernet, which
    authenticates the ciphertext, so any modification makes ``decrypt`` return
    None rather than garbage.
    """

    def __init__(self, secret_key: str) -> None:
        if not secret_key:
            raise ValueError("secret key must not be empty")
        self._mac_key = secret_key.encode("utf-8")
        fernet_key = base64.urlsafe_b64encode(hashlib.sha256(self._mac_key).digest())
        self._fernet = Fernet(fernet_key)

    def sign(self, data: bytes) -> str:
        return hmac.new(self._mac_key, data, hashlib.sha256).hexdigest()

    def verify(self, data: bytes, tag: str, *, length: Optional[int] = None) -> bool:
        expected = self.sign(data)
        if length is not None:
            expected = expected[:length]
        return hmac.compare_digest(expected.encode("ascii"), tag.encode("utf-8", "replace"))

    def encrypt(self, data: bytes) -> str:
        return self._fernet.encrypt(data).decode("ascii")

    def decrypt(self, ciphertext: str) -> Optional[bytes]:
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8"))
        except (InvalidToken, ValueError, TypeError):
            return None


@lru_cache
def get_signer() -> Signer:
    return Signer(get_settings().app_key)
