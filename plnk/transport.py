"""Shared HTTP transport policy: concurrency, rate limiting and retry timing."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime

logger = logging.getLogger(__name__)

MAX_RETRY_AFTER = timedelta(seconds=30)

_U64_MASK = (1 << 64) - 1
_RETRYABLE_STATUSES = frozenset({429, 502, 503, 504})
_SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


class InvalidOptionValue(ValueError):
    """A configuration option is out of range or conflicts with another one."""

    error_type = "InvalidOptionValue"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"Invalid value for {field}: {message}")


# ─── Jitter ─────────────────────────────────────────────────────────

_jitter_lock = threading.Lock()
_jitter_counter = 0


def splitmix64(value: int) -> int:
    """Mix a 64-bit integer with the SplitMix64 finaliser."""
    value = (value + 0x9E37_79B9_7F4A_7C15) & _U64_MASK
    value = ((value ^ (value >> 30)) * 0xBF58_476D_1CE4_E5B9) & _U64_MASK
    value = ((value ^ (value >> 27)) * 0x94D0_49BB_1331_11EB) & _U64_MASK
    return value ^ (value >> 31)


def jitter_offset(spread: int) -> int:
    """Return a pseudo-random offset in ``[0, spread]``."""
    global _jitter_counter
    if spread <= 0:
        return 0
    with _jitter_lock:
        if _jitter_counter == 0:
            _jitter_counter = time.time_ns() % 1_000_000_000
        counter = _jitter_counter
        _jitter_counter = (_jitter_counter + 1) & _U64_MASK
    return splitmix64(counter) % min(spread + 1, _U64_MASK)


# ─── Policy ─────────────────────────────────────────────────────────


def _header(headers: Mapping[str, str], name: str) -> str | None:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def _parse_seconds(raw: str) -> int | None:
    text = raw[1:] if raw.startswith("+") else raw
    if text and text.isascii() and text.isdigit():
        return int(text)
    return None


@dataclass(frozen=True)
class TransportPolicy:
    """HTTP transport policy shared by every request of one client."""

    max_in_flight: int = 8
    rate_limit_per_second: int | None = 10
    burst_size: int | None = 10
    retry_attempts: int = 2
    retry_base_delay_ms: int = 250
    retry_max_delay_ms: int = 2_000
    retry_jitter: bool = True
    retry_safe_methods_only: bool = True

    def validate(self) -> None:
        """Raise InvalidOptionValue if any field is out of range or inconsistent."""
        if self.max_in_flight < 1:
            raise InvalidOptionValue("transport.max_in_flight", "must be at least 1")
        if self.rate_limit_per_second is not None and self.rate_limit_per_second < 1:
            raise InvalidOptionValue(
                "transport.rate_limit_per_second", "must be at least 1 when set"
            )
        if self.burst_size is not None and self.burst_size < 1:
            raise InvalidOptionValue("transport.burst_size", "must be at least 1 when set")
        if self.burst_size is not None and self.rate_limit_per_second is None:
            raise InvalidOptionValue(
                "transport.burst_size", "requires rate_limit_per_second to also be set"
            )
        if self.retry_base_delay_ms < 1:
            raise InvalidOptionValue("transport.retry_base_delay_ms", "must be at least 1")
        if self.retry_max_delay_ms < self.retry_base_delay_ms:
            raise InvalidOptionValue(
                "transport.retry_max_delay_ms",
                "must be greater than or equal to retry_base_delay_ms",
            )

    def retries_allowed_for_method(self, method: str) -> bool:
        if self.retry_attempts == 0:
            return False
        if not self.retry_safe_methods_only:
            return True
        return method.upper() in _SAFE_METHODS

    def retry_delay(self, retry_number: int) -> timedelta:
        """Exponential backoff for the given retry (1-based), capped and optionally jittered."""
        shift = min(max(retry_number - 1, 0), 64)
        exponential_ms = min(self.retry_base_delay_ms << shift, _U64_MASK)
        capped_ms = min(exponential_ms, self.retry_max_delay_ms)
        if self.retry_jitter:
            lower_bound = capped_ms // 2
            spread = capped_ms - lower_bound
            return timedelta(milliseconds=lower_bound + jitter_offset(spread))
        return timedelta(milliseconds=capped_ms)

    @staticmethod
    def parse_retry_after(headers: Mapping[str, str]) -> timedelta | None:
        """Read a Retry-After header (seconds or HTTP date), clamped to 30 seconds."""
        raw = _header(headers, "Retry-After")
        if raw is None:
            return None
        raw = raw.strip()
        seconds = _parse_seconds(raw)
        if seconds is not None:
            delay = timedelta(seconds=min(seconds, 10**9))
        else:
            try:
                deadline = parsedate_to_datetime(raw)
            except (TypeError, ValueError, IndexError):
                return None
            if deadline is None:
                return None
            if deadline.tzinfo is None:
                deadline = deadline.replace(tzinfo=timezone.utc)
            delay = deadline - datetime.now(timezone.utc)
            if delay < timedelta(0):
                return None
        return min(delay, MAX_RETRY_AFTER)

    def should_retry_status(self, method: str, status: int) -> bool:
        return self.retries_allowed_for_method(method) and int(status) in _RETRYABLE_STATUSES

    def should_retry_error(self, method: str, error: BaseException) -> bool:
        transient = isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError))
        return self.retries_allowed_for_method(method) and transient


# ─── Rate limiting ──────────────────────────────────────────────────


class RateLimiter:
    """Token bucket shared by all requests of one runtime."""

    def __init__(self, rate_limit_per_second: int, burst_size: int) -> None:
        self.rate_per_second = float(rate_limit_per_second)
        self.burst_size = float(burst_size)
        self._available_tokens = float(burst_size)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a token is available and take it."""
        while True:
            async with self._lock:
                now = time.monotonic()
                elapsed = now - self._last_refill
                if elapsed > 0:
                    self._available_tokens = min(
                        self._available_tokens + elapsed * self.rate_per_second,
                        self.burst_size,
                    )
                    self._last_refill = now
                if self._available_tokens >= 1.0:
                    self._available_tokens -= 1.0
                    return
                wait = (1.0 - self._available_tokens) / self.rate_per_second
            logger.debug("waiting %.0f ms for HTTP rate-limit token", wait * 1000)
            await asyncio.sleep(wait)


# ─── Runtime ────────────────────────────────────────────────────────


class TransportGuard:
    """Holds one concurrency permit; release it when the request is done."""

    def __init__(self, semaphore: asyncio.Semaphore) -> None:
        self._semaphore: asyncio.Semaphore | None = semaphore

    def release(self) -> None:
        """Return the permit. Calling it again does nothing."""
        if self._semaphore is not None:
            self._semaphore.release()
            self._semaphore = None

    def __enter__(self) -> TransportGuard:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


class TransportRuntime:
    """Runtime state shared by every request issued through one client."""

    def __init__(self, policy: TransportPolicy) -> None:
        policy.validate()
        self._policy = policy
        self._concurrency = asyncio.Semaphore(policy.max_in_flight)
        self._rate_limiter: RateLimiter | None = None
        if policy.rate_limit_per_second is not None:
            burst = policy.burst_size if policy.burst_size is not None else policy.rate_limit_per_second
            self._rate_limiter = RateLimiter(policy.rate_limit_per_second, burst)

    def policy(self) -> TransportPolicy:
        return self._policy

    async def acquire(self) -> TransportGuard:
        """Wait for a concurrency permit and, if configured, a rate-limit token."""
        if self._concurrency.locked():
            logger.debug(
                "waiting for HTTP concurrency permit (max_in_flight=%d)",
                self._policy.max_in_flight,
            )
        await self._concurrency.acquire()
        guard = TransportGuard(self._concurrency)
        if self._rate_limiter is not None:
            try:
                await self._rate_limiter.acquire()
            except BaseException:
                guard.release()
                raise
        return guard

    def retries_allowed_for_method(self, method: str) -> bool:
        return self._policy.retries_allowed_for_method(method)

    def should_retry_status(self, method: str, status: int) -> bool:
        return self._policy.should_retry_status(method, status)

    def should_retry_error(self, method: str, error: BaseException) -> bool:
        return self._policy.should_retry_error(method, error)

    def retry_delay_for_attempt(self, retry_number: int) -> timedelta:
        return self._policy.retry_delay(retry_number)

    def retry_delay_from_headers(self, headers: Mapping[str, str]) -> timedelta | None:
        return TransportPolicy.parse_retry_after(headers)

    async def sleep_before_retry(
        self, method: str, path: str, retry_number: int, delay: timedelta, source: str
    ) -> None:
        logger.debug(
            "retrying %s %s (retry=%d max_retries=%d delay_ms=%d source=%s)",
            method,
            path,
            retry_number,
            self._policy.retry_attempts,
            int(delay.total_seconds() * 1000),
            source,
        )
        await asyncio.sleep(delay.total_seconds())