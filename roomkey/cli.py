from __future__ import annotations

import argparse
import asyncio
import json
import sys
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, AsyncIterator, Dict, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from roomkey.config import get_settings
from roomkey.dependencies import get_engine, get_sessionmaker
from roomkey.logger import configure_logging
from roomkey.services import rooms as room_service
from roomkey.services import sessions as session_service
from roomkey.tokens import get_token_codec, room_path, share_links


def _print_json(data: Dict[str, Any]) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


@asynccontextmanager
async def _db_session() -> AsyncIterator[AsyncSession]:
    # Each command runs in its own event loop; pooled connections must not outlive it.
    database_url = get_settings().database_url
    try:
        async with get_sessionmaker(database_url)() as session:
            yield session
    finally:
        await get_engine(database_url).dispose()


async def _cleanup_expired(args: argparse.Namespace) -> Dict[str, Any]:
    inactivity_seconds = int(args.hours * 3600) if args.hours else None
    async with _db_session() as session:
        if args.dry_run:
            expired = await session_service.find_expired_sessions(
                session, inactivity_seconds=inactivity_seconds
            )
            return {
                "dry_run": True,
                "expired": len(expired),
                "sessions": [
                    {"room_id": row.room_id, "role": row.role, "name": row.name} for row in expired
                ],
            }
        count = await session_service.cleanup_expired_sessions(
            session, inactivity_seconds=inactivity_seconds
        )
        reset = await session_service.reset_empty_rooms(session) if args.reset_rooms else 0
        return {"dry_run": False, "expired": count, "rooms_reset": reset}


async def _migrate_sessions(args: argparse.Namespace) -> Dict[str, Any]:
    async with _db_session() as session:
        count = await session_service.migrate_all_sessions(session, dry_run=args.dry_run)
    return {"dry_run": args.dry_run, "sessions": count}


async def _create_room(args: argparse.Namespace) -> Dict[str, Any]:
    async with _db_session() as session:
        room = await room_service.create_room(session, room_number=args.room_number)
        return {"id": room.id, "room_number": room.room_number, "status": room.status}


def cmd_cleanup_expired(args: argparse.Namespace) -> int:
    _print_json(asyncio.run(_cleanup_expired(args)))
    return 0


def cmd_migrate_sessions(args: argparse.Namespace) -> int:
    _print_json(asyncio.run(_migrate_sessions(args)))
    return 0


def cmd_create_room(args: argparse.Namespace) -> int:
    _print_json(asyncio.run(_create_room(args)))
    return 0


def cmd_share_links(args: argparse.Namespace) -> int:
    codec = get_token_codec()
    base_url = args.base_url if args.base_url is not None else get_settings().base_url
    _print_json(
        {
            "room_url": room_path(codec, args.room_id, base_url=base_url),
            "links": share_links(codec, args.room_id, args.pin, base_url=base_url),
        }
    )
    return 0


def cmd_decode_token(args: argparse.Namespace) -> int:
    result = get_token_codec().decode(args.token)
    if not result.ok or result.token is None:
        _print_json({"ok": False, "reason": result.reason.value if result.reason else None})
        return 1
    payload = asdict(result.token)
    payload["role"] = result.token.role.value
    payload["pin"] = "set" if result.token.pin else None
    _print_json({"ok": True, "token": payload})
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="roomkey", description="RoomKey maintenance CLI")

    sub = parser.add_subparsers(dest="command", required=True)

    cleanup = sub.add_parser("cleanup-expired", help="Mark inactive room sessions offline")
    cleanup.add_argument("--hours", type=float, default=None)
    cleanup.add_argument("--dry-run", action="store_true")
    cleanup.add_argument("--reset-rooms", action="store_true")
    cleanup.set_defaults(func=cmd_cleanup_expired)

    migrate = sub.add_parser("migrate-sessions", help="Attach identities to legacy room sessions")
    migrate.add_argument("--dry-run", action="store_true")
    migrate.set_defaults(func=cmd_migrate_sessions)

    create_room = sub.add_parser("create-room", help="Create a free room")
    create_room.add_argument("room_number")
    create_room.set_defaults(func=cmd_create_room)

    links = sub.add_parser("share-links", help="Print buyer and seller links for a room")
    links.add_argument("room_id", type=int)
    links.add_argument("--pin", default=None)
    links.add_argument("--base-url", default=None)
    links.set_defaults(func=cmd_share_links)

    decode = sub.add_parser("decode-token", help="Verify an access token and show its claims")
    decode.add_argument("token")
    decode.set_defaults(func=cmd_decode_token)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_file)
    try:
        exit_code = args.func(args)
    except Exception as exc:  # noqa: BLE001
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
