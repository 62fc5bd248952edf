"""Tests for the maintenance command line."""

import importlib.util
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from authcore.service.errors import NotFoundError
from authcore.service.runtime import Runtime

STRONG_PASSWORD = "Correct-Horse-9"

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "authcore_admin.py"
_spec = importlib.util.spec_from_file_location("authcore_admin", _SCRIPT)
admin = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(admin)


@pytest.fixture
def runtime(settings):
    return Runtime(settings)


def _args(*argv):
    return admin.build_parser().parse_args(list(argv))


class TestCommands:
    """Tests for each subcommand against a live runtime."""

    @pytest.mark.asyncio
    async def test_status_by_username_email_or_id(self, runtime):
        """Users may be named any of three ways."""
        result = await runtime.auth.register("alice", "alice@example.com", STRONG_PASSWORD)

        by_name = await admin.run(_args("status", "alice"), runtime)
        by_email = await admin.run(_args("status", "alice@example.com"), runtime)
        by_id = await admin.run(_args("status", result.user.id), runtime)

        assert by_name["user_id"] == by_email["user_id"] == by_id["user_id"] == result.user.id
        assert by_name["is_suspended"] is False

    @pytest.mark.asyncio
    async def test_moderate_suspend(self, runtime):
        """Suspending records the reason and signs the user out."""
        await runtime.auth.register("alice", "alice@example.com", STRONG_PASSWORD)
        signed_in = await runtime.auth.sign_in("alice", STRONG_PASSWORD)

        status = await admin.run(_args("moderate", "alice", "suspend", "--reason", "spam"), runtime)

        assert status["is_suspended"] is True
        assert status["suspension_reason"] == "spam"
        assert await runtime.sessions.validate(signed_in.session_token) is None

    @pytest.mark.asyncio
    async def test_revoke_sessions(self, runtime):
        """Every session of the user is revoked."""
        await runtime.auth.register("alice", "alice@example.com", STRONG_PASSWORD)
        await runtime.auth.sign_in("alice", STRONG_PASSWORD)
        await runtime.auth.sign_in("alice", STRONG_PASSWORD)

        result = await admin.run(_args("revoke-sessions", "alice@example.com"), runtime)
        assert result["revoked"] == 2
        assert result["stray_mirrors_purged"] == 0

    @pytest.mark.asyncio
    async def test_revoke_sessions_purges_stray_mirrors(self, settings, store, cache, fake_redis):
        """Cached sessions with no durable row left are swept by key scan."""
        runtime = Runtime(settings, store=store, cache=cache)
        result = await runtime.auth.register("alice", "alice@example.com", STRONG_PASSWORD)
        expires = datetime.now(timezone.utc) + timedelta(days=1)
        await cache.set_session("orphan", {"user_id": result.user.id}, expires)
        await cache.set_session("someone-else", {"user_id": "other"}, expires)

        revoked = await admin.run(_args("revoke-sessions", "alice"), runtime)

        assert revoked["stray_mirrors_purged"] == 1
        assert "session:orphan" not in fake_redis.data
        assert "session:someone-else" in fake_redis.data

    @pytest.mark.asyncio
    async def test_sweep_sessions(self, runtime):
        """The sweep reports how many rows it removed."""
        assert await admin.run(_args("sweep-sessions"), runtime) == {"swept": 0}

    @pytest.mark.asyncio
    async def test_unknown_user(self, runtime):
        """Unmatched references are not found."""
        with pytest.raises(NotFoundError):
            await admin.run(_args("status", "ghost"), runtime)


class TestParser:
    """Tests for argument parsing and exit codes."""

    def test_rejects_unknown_action(self):
        """Only the moderation actions are accepted."""
        with pytest.raises(SystemExit):
            _args("moderate", "alice", "delete")

    def test_main_prints_json(self, capsys):
        """Successful commands print JSON and exit zero."""
        assert admin.main(["sweep-sessions"]) == 0
        assert json.loads(capsys.readouterr().out) == {"swept": 0}

    def test_main_reports_errors(self, capsys):
        """Service errors print a message and exit non-zero."""
        assert admin.main(["status", "ghost"]) == 1
        assert "no user matches 'ghost'" in capsys.readouterr().err
