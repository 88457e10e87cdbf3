"""Rate-limit-safe fetch protocol.

Every upstream request made by the sync phases goes through one
:class:`RateLimitSafeFetcher` instance.  It owns all throttle state (the
consecutive-throttle counter, the escalating backoff multiplier, the
protection cache and the counters), so there is no process-wide tracker:
callers share a fetcher by passing the instance around.

Two entry points:

- :meth:`RateLimitSafeFetcher.call` -- retry-only wrapper for requests with
  no meaningful expected size (page listing windows, page details).
- :meth:`RateLimitSafeFetcher.fetch` -- the full protocol for collections
  with an expected size (vote histories).  Adds skip-if-unchanged, a
  data-quality gate, and the data-protection fallback: an incomplete fetch
  never replaces complete local data.

Retry timing is driven by an injected :class:`RetryPolicy`; the sleep
function is injectable too, so tests can assert on waits without waiting.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from wikimirror.config.settings import Settings
from wikimirror.models.fetch import (
    FetcherStats,
    FetchOutcome,
    FetchReason,
    FetchResult,
    QualityVerdict,
    RateLimitBudget,
)
from wikimirror.utils.errors import (
    ProviderUnavailableError,
    RateLimitError,
    WikiMirrorError,
)
from wikimirror.utils.logging import get_logger

_T = TypeVar("_T")

SleepFn = Callable[[float], Awaitable[None]]


# ---------------------------------------------------------------------------
# Policy objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded-retry timing.

    ``rate_limit_delay(attempt, multiplier)`` is
    ``min(base_delay * factor ** (attempt - 1) * multiplier, max_delay)``.
    """

    max_attempts: int = 10
    base_delay: float = 60.0
    backoff_factor: float = 1.5
    max_delay: float = 300.0
    multiplier_growth: float = 1.5
    max_multiplier: float = 10.0
    protection_after_attempts: int = 3
    step_delay: float = 2.0

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.rate_limit_base_delay,
            backoff_factor=settings.backoff_factor,
            max_delay=settings.max_delay,
            multiplier_growth=settings.backoff_factor,
            max_multiplier=settings.max_backoff_multiplier,
            protection_after_attempts=settings.protection_after_attempts,
            step_delay=settings.quality_retry_delay,
        )

    def rate_limit_delay(self, attempt: int, multiplier: float = 1.0) -> float:
        delay = self.base_delay * (self.backoff_factor ** max(0, attempt - 1)) * multiplier
        return min(delay, self.max_delay)

    def step(self, attempt: int) -> float:
        """Linear wait used between quality retries and transient-error retries."""
        return min(self.step_delay * max(1, attempt), self.max_delay)

    def next_multiplier(self, current: float) -> float:
        return min(current * self.multiplier_growth, self.max_multiplier)


@dataclass(frozen=True)
class QualityThresholds:
    """Tolerances for comparing a fetched collection with its expected size.

    These reflect the upstream's fuzzy counters and are configuration, not
    constants.
    """

    skip_unchanged: int = 2
    undercount_ratio: float = 0.30
    absolute: int = 5
    relative: float = 0.10
    fuzzy: float = 0.20

    @classmethod
    def from_settings(cls, settings: Settings) -> QualityThresholds:
        return cls(
            skip_unchanged=settings.skip_unchanged_tolerance,
            undercount_ratio=settings.undercount_ratio,
            absolute=settings.absolute_tolerance,
            relative=settings.relative_tolerance,
            fuzzy=settings.fuzzy_tolerance,
        )


def assess_quality(actual: int, expected: int, thresholds: QualityThresholds) -> QualityVerdict:
    """Judge a fetched size against the expected size.

    An empty or severely short payload is the signature of a throttled
    partial response and asks for a retry.  Anything at or above the
    expected size is complete.  Between those, small absolute or relative
    differences are accepted and large ones are rejected without retry.
    """

    def verdict(acceptable: bool, retry: bool, reason: FetchReason) -> QualityVerdict:
        return QualityVerdict(
            acceptable=acceptable, should_retry=retry, reason=reason, actual=actual, expected=expected
        )

    if expected <= 0:
        return verdict(True, False, FetchReason.COMPLETE)
    if actual <= 0:
        return verdict(False, True, FetchReason.EMPTY_RESPONSE)
    if actual < expected * thresholds.undercount_ratio:
        return verdict(False, True, FetchReason.SIGNIFICANT_UNDERCOUNT)
    if actual >= expected:
        return verdict(True, False, FetchReason.COMPLETE)

    difference = expected - actual
    ratio = difference / expected
    if difference <= thresholds.absolute or ratio <= thresholds.relative:
        return verdict(True, False, FetchReason.ACCEPTABLE_DIFFERENCE)
    if ratio <= thresholds.fuzzy:
        return verdict(True, False, FetchReason.FUZZY_DATA_NATURE)
    return verdict(False, False, FetchReason.LARGE_DISCREPANCY)


# ---------------------------------------------------------------------------
# Fetcher
# ---------------------------------------------------------------------------


@dataclass
class _CacheEntry:
    data: Any
    stored_at: float
    expected: int


class RateLimitSafeFetcher:
    """Wraps upstream calls with throttle handling and data protection.

    Parameters
    ----------
    policy:
        Retry timing and attempt limits.
    thresholds:
        Data-quality tolerances.
    budget_probe:
        Optional callable returning the latest upstream rate-limit budget
        (usually ``provider.last_budget``); when the remaining quota drops
        to ``budget_low_water`` the fetcher waits for the reset time.
    budget_low_water:
        Remaining-quota level at which to pause.
    sleep:
        Awaitable sleep function (``asyncio.sleep`` by default).
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        thresholds: QualityThresholds | None = None,
        budget_probe: Callable[[], RateLimitBudget | None] | None = None,
        budget_low_water: int = 0,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._policy = policy or RetryPolicy()
        self._thresholds = thresholds or QualityThresholds()
        self._budget_probe = budget_probe
        self._budget_low_water = budget_low_water
        self._sleep = sleep
        self._clock = clock

        self._consecutive_rate_limits = 0
        self._backoff_multiplier = 1.0
        self._cache: dict[str, _CacheEntry] = {}
        self.stats = FetcherStats()
        self._logger: structlog.BoundLogger = get_logger(__name__)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        budget_probe: Callable[[], RateLimitBudget | None] | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> RateLimitSafeFetcher:
        return cls(
            policy=RetryPolicy.from_settings(settings),
            thresholds=QualityThresholds.from_settings(settings),
            budget_probe=budget_probe,
            budget_low_water=settings.budget_low_water,
            sleep=sleep,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def thresholds(self) -> QualityThresholds:
        return self._thresholds

    @property
    def consecutive_rate_limits(self) -> int:
        return self._consecutive_rate_limits

    @property
    def backoff_multiplier(self) -> float:
        return self._backoff_multiplier

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def call(self, operation: Callable[[], Awaitable[_T]], label: str = "") -> _T:
        """Run *operation* with retry on throttling and transient errors.

        Raises
        ------
        RateLimitError, ProviderUnavailableError
            The last transient error once attempts are exhausted.
        WikiMirrorError
            Any non-transient error, immediately.
        """
        last_error: WikiMirrorError | None = None
        for attempt in range(1, self._policy.max_attempts + 1):
            await self._respect_budget(label)
            self.stats.requests += 1
            try:
                result = await operation()
            except RateLimitError as exc:
                last_error = exc
                await self._on_rate_limited(exc, label, attempt)
                continue
            except ProviderUnavailableError as exc:
                last_error = exc
                await self._on_transient(exc, label, attempt)
                continue

            if attempt > 1:
                self.stats.successful_retries += 1
            self.reset_rate_limit_tracker()
            return result

        self.stats.failed_after_retries += 1
        self._logger.error(
            "fetch_call_exhausted",
            key=label,
            attempts=self._policy.max_attempts,
            error=str(last_error),
        )
        raise last_error or ProviderUnavailableError(f"{label}: no attempts made")

    async def fetch(
        self,
        target: Callable[[], Awaitable[Any]],
        expected_size: int,
        existing_size: int = 0,
        key: str = "",
        size_of: Callable[[Any], int] = len,
    ) -> FetchResult:
        """Fetch a collection and decide whether it may replace local data.

        Parameters
        ----------
        target:
            Zero-argument coroutine function performing the upstream fetch.
        expected_size:
            Size the upstream's counters claim.
        existing_size:
            Size of the locally stored collection (0 when none).
        key:
            Page identity for logs and the protection cache.
        size_of:
            Measures the fetched payload.

        Returns
        -------
        FetchResult
            ``ACCEPT_NEW`` with data, ``USE_EXISTING`` with a reason code,
            or ``FAILED`` when nothing usable exists.
        """
        if existing_size > 0 and abs(expected_size - existing_size) <= self._thresholds.skip_unchanged:
            self.stats.skipped_unchanged += 1
            self._logger.debug(
                "fetch_skipped_unchanged", key=key, expected=expected_size, existing=existing_size
            )
            return FetchResult(
                outcome=FetchOutcome.USE_EXISTING,
                reason=FetchReason.UNCHANGED,
                is_complete=True,
            )

        last_reason = FetchReason.MAX_RETRIES_EXCEEDED
        for attempt in range(1, self._policy.max_attempts + 1):
            await self._respect_budget(key)
            self.stats.requests += 1
            try:
                data = await target()
            except RateLimitError as exc:
                if existing_size > 0 and attempt >= self._policy.protection_after_attempts:
                    self._note_rate_limit()
                    return self._protect(key, existing_size, FetchReason.RATE_LIMIT_PROTECTION, attempt)
                await self._on_rate_limited(exc, key, attempt)
                continue
            except ProviderUnavailableError as exc:
                await self._on_transient(exc, key, attempt)
                continue
            except WikiMirrorError as exc:
                self._logger.warning("fetch_failed", key=key, attempt=attempt, error=str(exc))
                return self._give_up(key, existing_size, FetchReason.FETCH_FAILED, attempt)

            self.reset_rate_limit_tracker()
            actual = size_of(data)
            verdict = assess_quality(actual, expected_size, self._thresholds)

            if verdict.acceptable:
                if attempt > 1:
                    self.stats.successful_retries += 1
                self._cache[key] = _CacheEntry(data=data, stored_at=self._clock(), expected=expected_size)
                is_complete = verdict.reason in (FetchReason.COMPLETE, FetchReason.ACCEPTABLE_DIFFERENCE)
                self._logger.debug(
                    "fetch_accepted",
                    key=key,
                    actual=actual,
                    expected=expected_size,
                    reason=verdict.reason.value,
                    attempt=attempt,
                )
                return FetchResult(
                    outcome=FetchOutcome.ACCEPT_NEW,
                    reason=verdict.reason,
                    data=data,
                    is_complete=is_complete,
                    attempts=attempt,
                )

            last_reason = verdict.reason
            if not verdict.should_retry:
                # Large discrepancy: nothing better will come from retrying.
                if existing_size > 0:
                    return self._protect(key, existing_size, verdict.reason, attempt)
                self._logger.warning(
                    "fetch_accepted_partial",
                    key=key,
                    actual=actual,
                    expected=expected_size,
                    reason=verdict.reason.value,
                )
                return FetchResult(
                    outcome=FetchOutcome.ACCEPT_NEW,
                    reason=verdict.reason,
                    data=data,
                    is_complete=False,
                    attempts=attempt,
                )

            self._logger.info(
                "fetch_quality_retry",
                key=key,
                actual=actual,
                expected=expected_size,
                reason=verdict.reason.value,
                attempt=attempt,
            )
            if attempt < self._policy.max_attempts:
                await self._sleep(self._policy.step(attempt))

        self.stats.failed_after_retries += 1
        self._logger.warning(
            "fetch_retries_exhausted",
            key=key,
            attempts=self._policy.max_attempts,
            last_reason=last_reason.value,
        )
        return self._give_up(key, existing_size, FetchReason.MAX_RETRIES_EXCEEDED, self._policy.max_attempts)

    def reset_rate_limit_tracker(self) -> None:
        self._consecutive_rate_limits = 0
        self._backoff_multiplier = 1.0

    def cached(self, key: str) -> Any | None:
        entry = self._cache.get(key)
        return entry.data if entry else None

    def cleanup_cache(self, max_age: float) -> int:
        """Drop protection-cache entries older than *max_age* seconds."""
        cutoff = self._clock() - max_age
        stale = [k for k, entry in self._cache.items() if entry.stored_at < cutoff]
        for k in stale:
            del self._cache[k]
        return len(stale)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _note_rate_limit(self) -> None:
        self._consecutive_rate_limits += 1
        self._backoff_multiplier = self._policy.next_multiplier(self._backoff_multiplier)
        self.stats.requests_with_rate_limit += 1

    async def _on_rate_limited(self, exc: RateLimitError, key: str, attempt: int) -> None:
        self._note_rate_limit()
        delay = self._policy.rate_limit_delay(attempt, self._backoff_multiplier)
        if exc.retry_after is not None:
            delay = min(max(delay, exc.retry_after), self._policy.max_delay)
        self._logger.warning(
            "fetch_rate_limited",
            key=key,
            attempt=attempt,
            consecutive=self._consecutive_rate_limits,
            multiplier=round(self._backoff_multiplier, 3),
            backoff_s=round(delay, 3),
        )
        if attempt < self._policy.max_attempts:
            await self._sleep(delay)

    async def _on_transient(self, exc: ProviderUnavailableError, key: str, attempt: int) -> None:
        delay = self._policy.step(attempt)
        self._logger.warning(
            "fetch_transient_error", key=key, attempt=attempt, error=str(exc), backoff_s=delay
        )
        if attempt < self._policy.max_attempts:
            await self._sleep(delay)

    async def _respect_budget(self, key: str) -> None:
        if self._budget_probe is None:
            return
        budget = self._budget_probe()
        if budget is None or budget.remaining is None or budget.reset_at is None:
            return
        if budget.remaining > self._budget_low_water:
            return
        now = datetime.now(tz=timezone.utc)  # noqa: UP017
        wait = (budget.reset_at - now).total_seconds()
        if wait <= 0:
            return
        wait = min(wait, self._policy.max_delay)
        self._logger.info("fetch_budget_wait", key=key, remaining=budget.remaining, wait_s=round(wait, 1))
        await self._sleep(wait)

    def _protect(self, key: str, existing_size: int, reason: FetchReason, attempt: int) -> FetchResult:
        self.stats.data_protection_activated += 1
        self._logger.warning(
            "fetch_data_protection",
            key=key,
            existing=existing_size,
            reason=reason.value,
            attempt=attempt,
        )
        return FetchResult(
            outcome=FetchOutcome.USE_EXISTING,
            reason=reason,
            is_complete=False,
            attempts=attempt,
        )

    def _give_up(self, key: str, existing_size: int, reason: FetchReason, attempt: int) -> FetchResult:
        if existing_size > 0:
            return self._protect(key, existing_size, reason, attempt)
        self._logger.error("fetch_failed_no_existing", key=key, reason=reason.value, attempt=attempt)
        return FetchResult(outcome=FetchOutcome.FAILED, reason=reason, attempts=attempt)
