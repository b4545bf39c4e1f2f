"""
Pulseboard Resilience - Session Recovery

Single-shot recovery for auth-class failures: try one credential refresh; if
that fails, clear the cached session and require re-authentication. Runs
outside RetryPolicy: a refresh is never retried.

Usage:
    recovery = SessionRecovery(refresh=auth.refresh_session, clear=auth.clear_session)
    result = await recovery.recover()
    if result.reauth_required:
        ...  # redirect to sign-in
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger("pulseboard.resilience.session_recovery")


@dataclass(frozen=True)
class RecoveryResult:
    refreshed: bool
    reauth_required: bool
    error: Optional[str] = None


class SessionRecovery:
    """
    One refresh attempt per auth failure. Concurrent callers that hit auth
    failures at the same time share a single in-flight refresh.
    """

    def __init__(self, refresh: Callable[[], Awaitable[Any]],
                 clear: Optional[Callable[[], Any]] = None):
        self._refresh = refresh
        self._clear = clear
        self._inflight: Optional[asyncio.Future] = None
        self.reauth_required = False
        self.refresh_attempts = 0

    async def recover(self) -> RecoveryResult:
        if self._inflight is not None and not self._inflight.done():
            return await asyncio.shield(self._inflight)

        loop = asyncio.get_running_loop()
        self._inflight = loop.create_future()
        try:
            result = await self._attempt()
        except BaseException as e:
            self._inflight.set_exception(e)
            # Mark retrieved so a lone caller doesn't trigger "never retrieved" warnings
            self._inflight.exception()
            raise
        self._inflight.set_result(result)
        return result

    async def _attempt(self) -> RecoveryResult:
        self.refresh_attempts += 1
        error = None
        try:
            refreshed = await self._refresh()
            ok = refreshed is not False
        except asyncio.CancelledError:
            raise
        except Exception as e:
            ok = False
            error = str(e) or type(e).__name__

        if ok:
            self.reauth_required = False
            logger.info("Session refreshed after auth failure")
            return RecoveryResult(refreshed=True, reauth_required=False)

        logger.warning(f"Session refresh failed{f': {error}' if error else ''}; clearing session")
        await self._clear_session()
        self.reauth_required = True
        return RecoveryResult(refreshed=False, reauth_required=True, error=error)

    async def _clear_session(self):
        if self._clear is None:
            return
        try:
            outcome = self._clear()
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error(f"Clearing cached session failed: {e}")

    def mark_authenticated(self):
        """Called by the sign-in flow once the user has re-authenticated."""
        self.reauth_required = False
