"""
TASKGATE Rate Limiter — sliding one-minute admission gate.

Every call to the AI backend passes through `check_rate_limit()` first
and `record_usage()` afterwards (estimate beforehand, record truth
afterward). The limiter never blocks forever: after a bounded number of
waits it admits the call anyway.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from loguru import logger

from taskgate.config_loader import RateLimitConfig
from taskgate.event_bus import EventBus, EventType


class RateLimitExceeded(Exception):
    """Raised only when admit-after-max-attempts is switched off."""
    pass


class LimiterState(str, Enum):
    CHECKING = "checking"
    WAITING = "waiting"
    ADMITTED = "admitted"


# ---------------------------------------------------------------------------
# Usage Tracking
# ---------------------------------------------------------------------------

@dataclass
class UsageRecord:
    tokens: int
    timestamp: float
    request_id: str


@dataclass
class UsageSnapshot:
    tokens: int
    requests: int
    percent_used: int
    time_until_reset: float  # seconds


# ---------------------------------------------------------------------------
# Limiter
# ---------------------------------------------------------------------------

class RateLimiter:
    """
    Token + request budget over a trailing window.

    `clock` and `sleep` are injectable so the window can be driven
    deterministically in tests.
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        bus: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or RateLimitConfig()
        self.bus = bus
        self._clock = clock
        self._sleep = sleep
        self._usage: list[UsageRecord] = []
        self._waiting: dict[str, asyncio.Event] = {}

        logger.debug(
            f"[RATE] Limiter initialized: {self.config.tokens_per_minute} tokens/min, "
            f"{self.config.requests_per_minute} requests/min"
        )

    # -- admission -----------------------------------------------------------

    async def check_rate_limit(self, estimated_tokens: int, request_id: str | None = None) -> bool:
        """Wait until `estimated_tokens` fits the window, then admit.

        Returns:
            bool: Always True once admitted.

        Raises:
            RateLimitExceeded: Only if `admit_after_max_attempts` is off and
                the budget is still exhausted after `max_attempts` waits.
        """
        request_id = request_id or self._new_request_id()
        attempts = 0
        state = LimiterState.CHECKING

        while True:
            self._cleanup_old_usage()
            tokens, requests = self._window_usage()
            over_tokens = tokens + estimated_tokens > self.config.tokens_per_minute
            over_requests = requests >= self.config.requests_per_minute

            logger.debug(
                f"[RATE] {state.value}: {estimated_tokens} tokens requested, "
                f"window {tokens}/{self.config.tokens_per_minute} tokens, "
                f"{requests}/{self.config.requests_per_minute} requests (attempt {attempts + 1})"
            )

            if not (over_tokens or over_requests):
                state = LimiterState.ADMITTED
                self._emit(EventType.RATE_LIMIT_ADMITTED, {"request_id": request_id, "attempts": attempts})
                return True

            if attempts >= self.config.max_attempts:
                break

            wait = self._calculate_wait_time(estimated_tokens)
            if wait <= self.config.min_wait_seconds:
                logger.debug(f"[RATE] Wait minimal ({wait:.2f}s), admitting {request_id}")
                state = LimiterState.ADMITTED
                self._emit(EventType.RATE_LIMIT_ADMITTED, {"request_id": request_id, "attempts": attempts})
                return True

            state = LimiterState.WAITING
            logger.warning(f"[RATE] Limit reached. Waiting {wait:.0f}s for {estimated_tokens} tokens")
            self._emit(EventType.RATE_LIMIT_WAIT, {
                "request_id": request_id,
                "wait_seconds": round(wait, 2),
                "attempt": attempts + 1,
            })
            await self._wait_for_rate_limit(wait, request_id)
            attempts += 1
            state = LimiterState.CHECKING

        if not self.config.admit_after_max_attempts:
            raise RateLimitExceeded(
                f"Rate limit still exhausted after {attempts} waits ({request_id})"
            )

        logger.warning(f"[RATE] Max wait attempts reached, admitting {request_id} anyway")
        self._emit(EventType.RATE_LIMIT_ADMITTED, {"request_id": request_id, "attempts": attempts, "forced": True})
        return True

    def record_usage(self, actual_tokens: int, request_id: str | None = None) -> None:
        """Record the backend-reported token count for a finished call."""
        request_id = request_id or self._new_request_id()
        self._usage.append(UsageRecord(tokens=actual_tokens, timestamp=self._clock(), request_id=request_id))

        snapshot = self.get_current_usage()
        logger.debug(
            f"[RATE] Recorded {actual_tokens} tokens ({request_id}) — "
            f"{snapshot.tokens}/{self.config.tokens_per_minute} ({snapshot.percent_used}%), "
            f"{snapshot.requests} requests"
        )
        if snapshot.tokens >= (self.config.burst_threshold or self.config.tokens_per_minute):
            logger.warning(f"[RATE] Approaching rate limit ({snapshot.percent_used}% used)")

        self._emit(EventType.USAGE_RECORDED, {
            "request_id": request_id,
            "tokens": actual_tokens,
            "window_tokens": snapshot.tokens,
            "percent_used": snapshot.percent_used,
        })

    def get_current_usage(self) -> UsageSnapshot:
        """Observability only. Never used for admission."""
        self._cleanup_old_usage()
        tokens, requests = self._window_usage()
        now = self._clock()
        oldest = min((u.timestamp for u in self._usage), default=now)
        return UsageSnapshot(
            tokens=tokens,
            requests=requests,
            percent_used=round(tokens / self.config.tokens_per_minute * 100),
            time_until_reset=max(0.0, self.config.window_seconds - (now - oldest)),
        )

    # -- lifecycle -----------------------------------------------------------

    def cancel_waiting_requests(self) -> None:
        """Release every waiter immediately."""
        for request_id, released in self._waiting.items():
            logger.debug(f"[RATE] Releasing waiting request {request_id}")
            released.set()
        self._waiting.clear()

    def reset(self) -> None:
        self._usage = []
        self.cancel_waiting_requests()
        logger.info("[RATE] Limiter reset")

    def get_config(self) -> RateLimitConfig:
        return self.config.model_copy()

    def update_config(self, **changes) -> None:
        if "tokens_per_minute" in changes and "burst_threshold" not in changes:
            changes["burst_threshold"] = None
        self.config = RateLimitConfig.model_validate({**self.config.model_dump(), **changes})
        logger.info(
            f"[RATE] Config updated: {self.config.tokens_per_minute} tokens/min, "
            f"{self.config.requests_per_minute} requests/min"
        )

    def dispose(self) -> None:
        self.cancel_waiting_requests()

    @property
    def waiting_count(self) -> int:
        return len(self._waiting)

    # -- internals -----------------------------------------------------------

    async def _wait_for_rate_limit(self, wait_seconds: float, request_id: str) -> None:
        """Cooperative poll until the wait elapses or the waiter is released."""
        released = asyncio.Event()
        self._waiting[request_id] = released
        deadline = self._clock() + wait_seconds
        try:
            while not released.is_set():
                remaining = deadline - self._clock()
                if remaining <= 0:
                    break
                await self._sleep(min(self.config.poll_interval_seconds, remaining))
                remaining = deadline - self._clock()
                if remaining > 0:
                    self._emit(EventType.RATE_LIMIT_PROGRESS, {
                        "request_id": request_id,
                        "remaining_seconds": round(remaining, 2),
                    })
        finally:
            self._waiting.pop(request_id, None)
        logger.debug(f"[RATE] Wait complete for {request_id}")

    def _calculate_wait_time(self, estimated_tokens: int) -> float:
        """Seconds until enough of the oldest usage leaves the window."""
        if not self._usage:
            return 0.0

        now = self._clock()
        ordered = sorted(self._usage, key=lambda u: u.timestamp)
        tokens, requests = self._window_usage()
        needed = tokens + estimated_tokens - self.config.tokens_per_minute

        if needed <= 0:
            # Only the request-count budget is exhausted
            if requests >= self.config.requests_per_minute:
                return max(0.0, ordered[0].timestamp + self.config.window_seconds - now)
            return 0.0

        releasing = ordered[-1]
        for usage in ordered:
            needed -= usage.tokens
            releasing = usage
            if needed <= 0:
                break

        return max(0.0, releasing.timestamp + self.config.window_seconds - now)

    def _window_usage(self) -> tuple[int, int]:
        cutoff = self._clock() - self.config.window_seconds
        recent = [u for u in self._usage if u.timestamp > cutoff]
        return sum(u.tokens for u in recent), len(recent)

    def _cleanup_old_usage(self) -> None:
        cutoff = self._clock() - self.config.window_seconds
        before = len(self._usage)
        self._usage = [u for u in self._usage if u.timestamp > cutoff]
        if len(self._usage) < before:
            logger.debug(f"[RATE] Purged {before - len(self._usage)} expired usage records")

    def _emit(self, event_type: EventType, payload: dict) -> None:
        if self.bus:
            self.bus.emit(event_type, "rate_limiter", payload)

    @staticmethod
    def _new_request_id() -> str:
        return f"req_{uuid.uuid4().hex[:9]}"
