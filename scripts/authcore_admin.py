#!/usr/bin/env python3
"""Maintenance commands for an authcore deployment.

Usage:
    python scripts/authcore_admin.py sweep-sessions
    python scripts/authcore_admin.py moderate alice suspend --reason "spam"
    python scripts/authcore_admin.py status alice
    python scripts/authcore_admin.py revoke-sessions alice@example.com

A user may be given by id, username or email. Settings come from the
environment and .env, the same as the API server.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from authcore.service.errors import NotFoundError, ServiceError  # noqa: E402
from authcore.service.users import MODERATION_ACTIONS  # noqa: E402


async def resolve_user_id(runtime, ref: str) -> str:
    """Accept a user id, username or email and return the user id."""
    store = runtime.store
    for lookup in (store.get_user, store.get_user_by_username, store.get_user_by_email):
        user = await asyncio.to_thread(lookup, ref)
        if user:
            return user.id
    raise NotFoundError(f"no user matches '{ref}'", detail={"user": ref})


async def sweep_sessions(runtime) -> dict:
    count = await runtime.sessions.sweep_expired()
    return {"swept": count}


async def moderate(runtime, ref: str, action: str, reason: Optional[str]) -> dict:
    user_id = await resolve_user_id(runtime, ref)
    await runtime.users.moderate(user_id, action, reason=reason, moderator_id="cli")
    return await runtime.users.moderation_status(user_id)


async def status(runtime, ref: str) -> dict:
    user_id = await resolve_user_id(runtime, ref)
    return await runtime.users.moderation_status(user_id)


async def revoke_sessions(runtime, ref: str) -> dict:
    user_id = await resolve_user_id(runtime, ref)
    count = await runtime.sessions.invalidate_all_for_user(user_id)
    # Mirrors whose durable rows were already gone are only reachable by scanning
    stray = await runtime.sessions.purge_cached_sessions(user_id)
    return {"user_id": user_id, "revoked": count, "stray_mirrors_purged": stray}


async def run(args: argparse.Namespace, runtime=None) -> dict:
    if runtime is None:
        from authcore.service.runtime import get_runtime

        runtime = get_runtime()
    try:
        if args.command == "sweep-sessions":
            return await sweep_sessions(runtime)
        if args.command == "moderate":
            return await moderate(runtime, args.user, args.action, args.reason)
        if args.command == "status":
            return await status(runtime, args.user)
        return await revoke_sessions(runtime, args.user)
    finally:
        await runtime.sessions.wait_for_background()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Maintenance commands for authcore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("sweep-sessions", help="Delete expired session rows")

    mod = sub.add_parser("moderate", help="Apply a moderation action to a user")
    mod.add_argument("user", help="User id, username or email")
    mod.add_argument("action", choices=MODERATION_ACTIONS)
    mod.add_argument("--reason", default=None, help="Reason recorded with the action")

    stat = sub.add_parser("status", help="Show moderation and lockout state")
    stat.add_argument("user", help="User id, username or email")

    revoke = sub.add_parser("revoke-sessions", help="Sign a user out everywhere")
    revoke.add_argument("user", help="User id, username or email")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        result = asyncio.run(run(args))
    except ServiceError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1
    except RuntimeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
