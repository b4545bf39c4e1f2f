"""
Unit tests for SessionRecovery: one refresh per auth failure, session cleared
when the refresh fails, concurrent callers share one refresh.
"""
import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from resilience.session_recovery import SessionRecovery


class TestRecover:
    @pytest.mark.asyncio
    async def test_successful_refresh(self):
        refresh = AsyncMock(return_value=True)
        clear = MagicMock()
        recovery = SessionRecovery(refresh, clear)

        result = await recovery.recover()
        assert result.refreshed is True
        assert result.reauth_required is False
        refresh.assert_awaited_once()
        clear.assert_not_called()

    @pytest.mark.asyncio
    async def test_refresh_returning_none_counts_as_success(self):
        recovery = SessionRecovery(AsyncMock(return_value=None))
        result = await recovery.recover()
        assert result.refreshed is True

    @pytest.mark.asyncio
    async def test_refresh_returning_false_clears_session(self):
        clear = MagicMock()
        recovery = SessionRecovery(AsyncMock(return_value=False), clear)

        result = await recovery.recover()
        assert result.refreshed is False
        assert result.reauth_required is True
        assert recovery.reauth_required is True
        clear.assert_called_once()

    @pytest.mark.asyncio
    async def test_refresh_error_clears_session_once(self):
        refresh = AsyncMock(side_effect=RuntimeError("refresh token revoked"))
        clear = AsyncMock()
        recovery = SessionRecovery(refresh, clear)

        result = await recovery.recover()
        assert result.reauth_required is True
        assert result.error == "refresh token revoked"
        refresh.assert_awaited_once()
        clear.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failing_clear_is_logged_not_raised(self):
        clear = MagicMock(side_effect=OSError("storage locked"))
        recovery = SessionRecovery(AsyncMock(return_value=False), clear)
        result = await recovery.recover()
        assert result.reauth_required is True

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self):
        gate = asyncio.Event()

        async def slow_refresh():
            await gate.wait()
            return True

        recovery = SessionRecovery(slow_refresh)
        first = asyncio.create_task(recovery.recover())
        second = asyncio.create_task(recovery.recover())
        await asyncio.sleep(0)
        gate.set()

        results = await asyncio.gather(first, second)
        assert all(r.refreshed for r in results)
        assert recovery.refresh_attempts == 1

    @pytest.mark.asyncio
    async def test_mark_authenticated(self):
        recovery = SessionRecovery(AsyncMock(return_value=False))
        await recovery.recover()
        recovery.mark_authenticated()
        assert recovery.reauth_required is False
