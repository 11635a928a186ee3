"""Fixed-interval retry decisions for synchronization stages."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol, Union

from insight_sync.services.application_settings import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETRY_INTERVAL_MINUTES,
    MAX_ATTEMPTS_KEY,
    RETRY_BACKOFF_KEY,
    RETRY_INTERVAL_KEY,
)
from insight_sync.services.sync_state import JobUnitState

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SettingsSource(Protocol):
    def get(self, key: str) -> str | None: ...

    def get_int(self, key: str, default: int) -> int: ...


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_interval_minutes: int = DEFAULT_RETRY_INTERVAL_MINUTES
    exponential: bool = False

    def delay_for(self, attempt_count: int) -> timedelta:
        minutes = max(0, self.retry_interval_minutes)
        if self.exponential:
            minutes = minutes * (2 ** max(0, attempt_count))
        return timedelta(minutes=minutes)


@dataclass(frozen=True)
class Retry:
    delay: timedelta
    run_at: datetime
    attempt_count: int


@dataclass(frozen=True)
class GiveUp:
    error: str
    attempt_count: int


RetryDecision = Union[Retry, GiveUp]


class RetryController:
    """Decide whether a failed unit is re-submitted or transitions to ``failed``.

    The unit's ``attempt_count`` counts re-attempts already scheduled. While it
    is below the configured maximum a new one-shot attempt is scheduled
    ``retry_interval_minutes`` from now; otherwise the unit gives up.
    """

    def __init__(self, settings: SettingsSource, *, clock: Clock = utcnow) -> None:
        self._settings = settings
        self._clock = clock

    def policy(self) -> RetryPolicy:
        max_attempts = self._settings.get_int(MAX_ATTEMPTS_KEY, DEFAULT_MAX_ATTEMPTS)
        interval = self._settings.get_int(RETRY_INTERVAL_KEY, DEFAULT_RETRY_INTERVAL_MINUTES)
        backoff = (self._settings.get(RETRY_BACKOFF_KEY) or "fixed").strip().lower()
        return RetryPolicy(
            max_attempts=max(0, max_attempts),
            retry_interval_minutes=max(0, interval),
            exponential=backoff == "exponential",
        )

    def attempt(self, unit: JobUnitState) -> RetryDecision:
        policy = self.policy()
        if unit.attempt_count < policy.max_attempts:
            delay = policy.delay_for(unit.attempt_count)
            decision = Retry(
                delay=delay,
                run_at=self._clock() + delay,
                attempt_count=unit.attempt_count + 1,
            )
            logger.info(
                "Scheduling retry %s/%s for %s at %s",
                decision.attempt_count,
                policy.max_attempts,
                unit.logical_key,
                decision.run_at.isoformat(),
            )
            return decision

        logger.warning(
            "Giving up on %s after %s re-attempt(s): %s",
            unit.logical_key,
            unit.attempt_count,
            unit.last_error,
        )
        return GiveUp(error=unit.last_error or "", attempt_count=unit.attempt_count)


__all__ = ["GiveUp", "Retry", "RetryController", "RetryDecision", "RetryPolicy", "utcnow"]
