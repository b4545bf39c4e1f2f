"""
Pulseboard - Upstream Client
Rate-limited, retrying httpx client for the quota-constrained upstream API.

Every request follows the same path:
  1. skip if the health circuit says the system is untrustworthy
  2. wait for rate-limit tokens (one per attempt)
  3. send, then feed status + quota headers back into the limiter
  4. retry transient failures with backoff; never retry auth failures
  5. on an auth failure, run single-shot session recovery and repeat once
"""
import asyncio
import logging
import time
from typing import Optional

import httpx

from config import UPSTREAM_URL, UPSTREAM_API_KEY, UPSTREAM_TIMEOUT
from resilience.errors import (
    AuthFailure,
    ErrorKind,
    OperationCancelled,
    RateLimitExceeded,
    ResilienceError,
    TransientNetworkError,
)
from resilience.rate_limiter import AdaptiveRateLimiter
from resilience.retry import RetryOutcome, RetryPolicy
from upstream.models import UpstreamResult

logger = logging.getLogger("pulseboard.upstream.client")


class UpstreamClient:
    """Async client that routes every call through the resilience control plane."""

    def __init__(self, limiter: AdaptiveRateLimiter, retry_policy: RetryPolicy,
                 monitor=None, session=None, base_url: str = "", api_key: str = "",
                 timeout: float = 0, max_attempts: int = 0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = (base_url or UPSTREAM_URL).rstrip("/")
        self._api_key = api_key or UPSTREAM_API_KEY
        self._limiter = limiter
        self._retry = retry_policy
        self._monitor = monitor
        self._session = session
        self._max_attempts = max_attempts
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or UPSTREAM_TIMEOUT,
            transport=transport,
        )
        self._request_count = 0
        self._error_count = 0

    async def close(self):
        await self._client.aclose()

    # ────────────────────── Main API ──────────────────────

    async def request(self, method: str, path: str, cost: float = 1,
                      cancel: Optional[asyncio.Event] = None, **kwargs) -> UpstreamResult:
        """Perform one logical request. Never raises for remote failures."""
        self._limiter.bucket.validate_cost(cost)
        self._request_count += 1
        start = time.perf_counter()

        if self._monitor is not None and not self._monitor.is_trustworthy():
            logger.info(f"Skipping {method} {path}: health circuit open")
            return UpstreamResult.failure("Health circuit open", ErrorKind.SERVICE_UNHEALTHY)

        async def send():
            return await self._send(method, path, cost, cancel, **kwargs)

        outcome = await self._retry.execute(send, self._max_attempts, cancel=cancel)
        reauth_required = False

        if not outcome.ok and outcome.classification and outcome.classification.auth_class \
                and self._session is not None:
            recovery = await self._session.recover()
            if recovery.refreshed:
                logger.info(f"Repeating {method} {path} once after session refresh")
                repeat = await self._retry.execute(send, 1, cancel=cancel)
                repeat.attempts += outcome.attempts
                outcome = repeat
            else:
                reauth_required = True

        result = self._to_result(outcome, reauth_required)
        result.elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
        if not result.ok and not result.cancelled:
            self._error_count += 1
            if self._monitor is not None:
                self._monitor.record_error(f"{method} {path}: {result.error}")
        return result

    async def get(self, path: str, **kwargs) -> UpstreamResult:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs) -> UpstreamResult:
        return await self.request("POST", path, **kwargs)

    async def check_health(self) -> bool:
        """Cheap reachability check used by the liveness probe (bypasses the limiter)."""
        try:
            resp = await self._client.head("/", headers=self._headers())
            return resp.status_code < 500
        except httpx.HTTPError:
            return False

    # ────────────────────── Internals ──────────────────────

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}

    async def _send(self, method: str, path: str, cost: float,
                    cancel: Optional[asyncio.Event], **kwargs) -> httpx.Response:
        if not await self._limiter.wait_for_tokens(cost, cancel):
            raise OperationCancelled("Request abandoned while waiting for rate limit")

        options = dict(kwargs)
        headers = {**self._headers(), **(options.pop("headers", None) or {})}
        resp = await self._client.request(method, path, headers=headers, **options)
        self._limiter.adapt_from_headers(resp.status_code, resp.headers)

        code = resp.status_code
        if resp.is_success:
            return resp
        detail = f"HTTP {code}"
        if code in (401, 403):
            raise AuthFailure(detail, status_code=code)
        if code == 429:
            raise RateLimitExceeded(detail, status_code=code,
                                    retry_after_ms=_retry_after_ms(resp.headers.get("retry-after")))
        if code == 408 or code >= 500:
            raise TransientNetworkError(detail, status_code=code)
        raise ResilienceError(detail, status_code=code)

    @staticmethod
    def _to_result(outcome: RetryOutcome, reauth_required: bool) -> UpstreamResult:
        if outcome.ok:
            resp: httpx.Response = outcome.value
            try:
                data = resp.json()
            except ValueError:
                data = resp.text
            return UpstreamResult(ok=True, status_code=resp.status_code, data=data,
                                  attempts=outcome.attempts)

        error = outcome.error
        cancelled = outcome.cancelled or isinstance(error, OperationCancelled)
        kind = outcome.classification.kind if outcome.classification else ErrorKind.UNKNOWN
        return UpstreamResult.failure(
            str(error) or type(error).__name__ if error else "Request failed",
            kind,
            status_code=getattr(error, "status_code", None) or 0,
            attempts=outcome.attempts,
            reauth_required=reauth_required,
            cancelled=cancelled,
        )

    def get_stats(self) -> dict:
        return {
            "base_url": self.base_url,
            "requests": self._request_count,
            "errors": self._error_count,
        }


def _retry_after_ms(raw: Optional[str]) -> Optional[int]:
    if not raw:
        return None
    try:
        return int(float(raw) * 1000)
    except ValueError:
        return None
