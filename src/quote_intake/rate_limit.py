# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Sliding-window rate limiter for form submissions.

Each client key (normally the remote address) owns a record holding the
timestamps of its admitted submissions. On every check the record is pruned
to the trailing window; the submission is admitted only while fewer than
``max_requests`` timestamps remain.

The check and the append happen inside a single
:meth:`~quote_intake.kvstore.KeyValueStore.update` transaction, so two
simultaneous submissions from the same key cannot both take the last free
slot. Rejected attempts are not recorded and do not extend the window.

Example:
    Using the rate limiter::

        limiter = RateLimiter(store, RateLimitConfig(max_requests=3))
        admission = await limiter.admit(client_ip)
        if not admission.allowed:
            return redirect_with_error(admission.reason)
"""

from __future__ import annotations

from dataclasses import dataclass

from .config import RateLimitConfig
from .filestore import Clock, system_clock
from .kvstore import KeyValueStore
from .logger import get_logger

logger = get_logger("RateLimiter")

BLOCKED_MESSAGE = "Too many requests. Please try again in 1 hour."


@dataclass(frozen=True)
class Admission:
    """Decision for one submission attempt.

    Attributes:
        allowed: True if the submission may proceed.
        reason: Human-readable explanation when blocked.
        retry_after: Seconds until a slot frees up, when known.
    """

    allowed: bool
    reason: str | None = None
    retry_after: float | None = None

    @classmethod
    def allow(cls) -> Admission:
        return cls(allowed=True)

    @classmethod
    def block(cls, reason: str, retry_after: float | None = None) -> Admission:
        return cls(allowed=False, reason=reason, retry_after=retry_after)


class RateLimiter:
    """Per-key sliding-window limiter backed by a :class:`KeyValueStore`.

    Attributes:
        store: Persisted records, one JSON list of timestamps per key.
        config: Window length, request budget, whitelist and block list.
    """

    def __init__(self, store: KeyValueStore, config: RateLimitConfig, clock: Clock = system_clock):
        self.store = store
        self.config = config
        self.clock = clock

    async def init(self) -> None:
        await self.store.init()

    @staticmethod
    def record_key(key: str) -> str:
        return f"rate:{key}"

    async def admit(self, key: str, now: float | None = None) -> Admission:
        """Decide whether ``key`` may submit now.

        Args:
            key: Client identifier.
            now: Evaluation time in epoch seconds; the clock is used if omitted.

        Returns:
            An :class:`Admission`. Whitelisted keys are always admitted and
            never recorded; blocked keys are always refused.
        """
        if not self.config.enabled or key in self.config.whitelist:
            return Admission.allow()
        if key in self.config.blocked:
            logger.warning("Submission from blocked client %s refused", key)
            return Admission.block("Requests from this address are not accepted.")

        now = self.clock() if now is None else now
        window = self.config.window_seconds
        max_requests = self.config.max_requests

        def plan(current: list[float] | None) -> tuple[list[float] | None, Admission]:
            recent = [ts for ts in (current or []) if now - ts < window]
            if len(recent) >= max_requests:
                retry_after = max(min(recent) + window - now, 0.0)
                return None, Admission.block(BLOCKED_MESSAGE, retry_after)
            recent.append(now)
            return recent, Admission.allow()

        admission = await self.store.update(self.record_key(key), plan)
        if not admission.allowed:
            logger.warning(
                "Rate limit exceeded for %s: %d requests in %ds", key, max_requests, window
            )
        return admission

    async def recent_requests(self, key: str, now: float | None = None) -> list[float]:
        """Return the timestamps of ``key`` still inside the window."""
        now = self.clock() if now is None else now
        current = await self.store.get(self.record_key(key)) or []
        return [ts for ts in current if now - ts < self.config.window_seconds]
