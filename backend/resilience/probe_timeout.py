"""
Pulseboard Resilience - Probe Timeouts & Cancellable Sleep

Wraps awaitables with configurable per-probe timeouts so a hung health probe
cannot stall a monitoring cycle, and provides the sleep primitive that token
waits and retry backoff use so callers can abandon them.

Usage:
    result = await with_timeout(probe.run(), timeout_sec=5, probe_name="backend")
    cancelled = await cancellable_sleep(1.5, cancel_event)
"""
import asyncio
import fnmatch
import logging
from typing import Callable, Optional

from config import _section
from resilience.errors import ProbeTimeoutError

logger = logging.getLogger("pulseboard.resilience.probe_timeout")


# Default timeouts (seconds) per probe name pattern.
# config.json "probe_timeouts" overrides these.
_BUILTIN_TIMEOUTS = {
    "backend*": 10,
    "api*": 10,
    "local_storage": 2,
    "runtime": 2,
    "liveness*": 5,
    "default": 5,
}

_timeout_cfg = _section("probe_timeouts")


def get_probe_timeout(probe_name: str) -> float:
    """
    Get the timeout for a specific probe.
    Checks config.json overrides first, then built-in patterns.
    """
    # Exact match in user config
    if probe_name in _timeout_cfg:
        return float(_timeout_cfg[probe_name])

    # Glob pattern match in user config (e.g. "backend*": 3)
    for pattern, timeout in _timeout_cfg.items():
        if pattern != "default" and fnmatch.fnmatch(probe_name, pattern):
            return float(timeout)

    # User default
    if "default" in _timeout_cfg:
        return float(_timeout_cfg["default"])

    # Built-in pattern match
    for pattern, timeout in _BUILTIN_TIMEOUTS.items():
        if pattern != "default" and fnmatch.fnmatch(probe_name, pattern):
            return float(timeout)

    return float(_BUILTIN_TIMEOUTS["default"])


async def with_timeout(coro, timeout_sec: float = 0, probe_name: str = "unknown"):
    """
    Await `coro` with a time limit.

    If timeout_sec is 0, looks up the timeout from config by probe_name.
    Raises ProbeTimeoutError when the limit is hit.
    """
    if timeout_sec <= 0:
        timeout_sec = get_probe_timeout(probe_name)

    try:
        return await asyncio.wait_for(coro, timeout=timeout_sec)
    except asyncio.TimeoutError:
        logger.debug(f"Probe '{probe_name}' timed out after {timeout_sec}s")
        raise ProbeTimeoutError(probe_name, timeout_sec) from None


async def cancellable_sleep(seconds: float, cancel: Optional[asyncio.Event] = None,
                            sleep: Callable[[float], object] = asyncio.sleep) -> bool:
    """
    Sleep for `seconds`, returning True early if `cancel` is set.

    The injected `sleep` always sets the pace; with a cancel event it races
    against `cancel.wait()`. Without one, task cancellation is the only way out.
    """
    if cancel is None:
        await sleep(seconds)
        return False
    if cancel.is_set():
        return True

    sleeper = asyncio.ensure_future(sleep(seconds))
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (sleeper, waiter):
            if not task.done():
                task.cancel()
    if sleeper.done() and not sleeper.cancelled() and sleeper.exception() is not None:
        raise sleeper.exception()
    return cancel.is_set()
