from __future__ import annotations

import io
import logging

import pytest
from pydantic import ValidationError

from roomkey.config import DEFAULT_APP_KEY, Settings
from roomkey.errors import LINK_FAILURE_REASONS, Reason, public_message
from roomkey.logger import configure_logging, get_logger, mask_secret


def test_mask_secret() -> None:
    assert mask_secret("abcdefghijklmnop") == "abcdefgh..."
    assert mask_secret("short") == "***"
    assert mask_secret(None) == ""


def test_credentials_are_masked_in_output() -> None:
    configure_logging("DEBUG", None)
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    root = logging.getLogger("roomkey")
    handler.setFormatter(root.handlers[0].formatter)
    root.addHandler(handler)
    try:
        logger = get_logger("tests")
        with logger.context(request_id="req-1"):
            logger.info("link.issue", "Issued", token="abcdefghijklmnopqrstuvwxyz", room_id=4)
    finally:
        root.removeHandler(handler)

    line = stream.getvalue()
    assert "(*) link.issue | Issued" in line
    assert "token: abcdefgh..." in line
    assert "qrstuvwxyz" not in line
    assert "room_id: 4" in line
    assert "request_id: req-1" in line


def test_link_failures_share_one_message() -> None:
    messages = {public_message(reason) for reason in LINK_FAILURE_REASONS}
    assert messages == {"This link no longer works."}
    assert public_message(Reason.PIN_LOCKED) == "Too many attempts. Try again later."


def _settings(**overrides: object) -> Settings:
    values = {"database_url": "sqlite+aiosqlite:///:memory:", **overrides}
    return Settings(_env_file=None, **values)


def test_settings_defaults() -> None:
    settings = _settings()
    assert settings.access_token_ttl_seconds == 7 * 24 * 3600
    assert settings.pin_max_attempts == 5
    assert settings.pin_lockout_seconds == 1800
    assert settings.session_inactivity_seconds == 7200


def test_database_url_required() -> None:
    with pytest.raises(ValidationError):
        _settings(database_url="")


def test_production_rejects_unsafe_values() -> None:
    with pytest.raises(ValidationError):
        _settings(app_env="production", app_key=DEFAULT_APP_KEY, cookie_secure=True)
    with pytest.raises(ValidationError):
        _settings(app_env="prod", app_key="x" * 40, cookie_secure=False)
    with pytest.raises(ValidationError):
        _settings(
            app_env="prod",
            app_key="x" * 40,
            cookie_secure=True,
            access_token_ttl_seconds=5 * 365 * 24 * 3600,
        )

    settings = _settings(app_env="production", app_key="x" * 40, cookie_secure=True)
    assert settings.cookie_secure
