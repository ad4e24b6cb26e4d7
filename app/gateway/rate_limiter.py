"""Adaptive Rate Limiter: per-provider RPM tracking with sliding window.

Tracks requests-per-minute (RPM) and in-flight requests for each provider.
When a limit is hit, returns the wait time until the next available slot.

Safe for concurrent tasks via asyncio.Lock (one lock per provider).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field

from app.gateway.types import ProviderConfig, ProviderName, default_provider_configs

logger = logging.getLogger(__name__)


@dataclass
class _ProviderBucket:
    """Sliding window bucket for a single provider."""

    config: ProviderConfig
    entries: deque[float] = field(default_factory=deque)  # time.monotonic() per request
    active_count: int = 0  # Currently in-flight requests
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def _prune(self, now: float) -> None:
        """Remove entries older than 60 seconds (1-minute window)."""
        cutoff = now - 60.0
        while self.entries and self.entries[0] < cutoff:
            self.entries.popleft()

    @property
    def current_rpm(self) -> int:
        return len(self.entries)

    def wait_time(self, now: float) -> float:
        """How long to wait before the next request is allowed. 0 = go."""
        self._prune(now)

        if self.active_count >= self.config.max_concurrent:
            return 0.5  # Brief wait for a slot to open

        if self.current_rpm >= self.config.rpm_limit:
            # Wait until the oldest entry expires from the window
            wait = (self.entries[0] + 60.0) - now
            return max(wait, 0.1)

        return 0.0

    def record_request(self, now: float) -> None:
        self.entries.append(now)
        self.active_count += 1

    def record_completion(self) -> None:
        self.active_count = max(0, self.active_count - 1)


class AdaptiveRateLimiter:
    """Per-provider rate limiter with a sliding one-minute window.

    Usage:
        limiter = AdaptiveRateLimiter(configs)

        if await limiter.acquire_blocking(provider):
            try:
                ...  # send
            finally:
                limiter.release(provider)
    """

    def __init__(self, configs: dict[ProviderName, ProviderConfig] | None = None):
        configs = configs or default_provider_configs()
        self._buckets: dict[ProviderName, _ProviderBucket] = {
            provider: _ProviderBucket(config=config) for provider, config in configs.items()
        }

    def _get_bucket(self, provider: ProviderName) -> _ProviderBucket:
        if provider not in self._buckets:
            self._buckets[provider] = _ProviderBucket(config=ProviderConfig(provider=provider))
        return self._buckets[provider]

    async def acquire(self, provider: ProviderName) -> float:
        """Try to take a slot.

        Returns:
            Wait time in seconds. 0 means the slot was taken and the request
            can proceed immediately.
        """
        bucket = self._get_bucket(provider)
        async with bucket.lock:
            now = time.monotonic()
            wait = bucket.wait_time(now)

            if wait <= 0:
                bucket.record_request(now)
                return 0.0

            return wait

    async def acquire_blocking(self, provider: ProviderName, timeout: float = 120.0) -> bool:
        """Block until a slot is available.

        Returns True if acquired, False if timeout exceeded.
        """
        deadline = time.monotonic() + timeout

        while time.monotonic() < deadline:
            wait = await self.acquire(provider)
            if wait <= 0:
                return True
            sleep_time = min(wait, deadline - time.monotonic())
            if sleep_time <= 0:
                return False
            await asyncio.sleep(sleep_time)

        logger.warning("Rate limit slot for %s not acquired within %.0fs", provider.value, timeout)
        return False

    def release(self, provider: ProviderName) -> None:
        self._get_bucket(provider).record_completion()

    def get_stats(self, provider: ProviderName) -> dict:
        bucket = self._get_bucket(provider)
        bucket._prune(time.monotonic())
        return {
            "provider": provider.value,
            "current_rpm": bucket.current_rpm,
            "rpm_limit": bucket.config.rpm_limit,
            "active_requests": bucket.active_count,
            "max_concurrent": bucket.config.max_concurrent,
        }

    def get_all_stats(self) -> list[dict]:
        return [self.get_stats(p) for p in self._buckets]
