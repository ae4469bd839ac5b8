"""Adaptive Rate Tracker — per-model minimum spacing between requests.

Each model starts at its configured base delay. A quota error (429) widens
the delay (backoff multiplier, or the provider's own "retry in Ns" hint when
that is longer), capped at MAX_DELAY_MULTIPLIER x base. A streak of successes
halves the distance back toward base.

Adapted delays are persisted as {model_id: current_delay_ms} so a restarted
process does not immediately hammer a provider that was throttling it.

Concurrent wait_if_needed() calls for the same model are serialised with one
asyncio.Lock per model.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
import time
from typing import Callable

from bulletin_ai.core.metrics import AI_RATE_BACKOFFS
from bulletin_ai.gateway.cancellation import CancelToken, cancellable_sleep
from bulletin_ai.gateway.catalog import DEFAULT_RATE_LIMIT, RATE_LIMITS
from bulletin_ai.gateway.storage import STORAGE_ERRORS, KeyValueStore, build_store
from bulletin_ai.gateway.types import ModelRateLimit, RateState

logger = logging.getLogger(__name__)

STORAGE_KEY = "bulletin_ai:adaptive_rate_limits"

GENERATION_ESTIMATE_MS = 2000
SUCCESS_STREAK_THRESHOLD = 3
MAX_DELAY_MULTIPLIER = 5
BACKOFF_MULTIPLIER = 2

# Longer suggestions are not worth blocking the caller for
MAX_RETRY_AFTER_WAIT_MS = 120_000

_RETRY_AFTER_RE = re.compile(r"retry in (\d+(?:\.\d+)?)s", re.IGNORECASE)


def extract_retry_after(message: str | None) -> int | None:
    """Parse "retry in <seconds>s" from a provider error message.

    Returns milliseconds with a 0.5 s safety margin, or None when the
    message carries no suggestion.
    """
    if not message:
        return None
    match = _RETRY_AFTER_RE.search(message)
    if not match:
        return None
    return math.ceil((float(match.group(1)) + 0.5) * 1000)


def format_time(ms: int | float) -> str:
    """Human-readable duration: "45 sec", "2 min", "1 min 30 sec"."""
    total_seconds = math.ceil(ms / 1000)
    if total_seconds < 60:
        return f"{total_seconds} sec"
    minutes, seconds = divmod(total_seconds, 60)
    if seconds:
        return f"{minutes} min {seconds} sec"
    return f"{minutes} min"


class RateTracker:
    """Per-model adaptive pacing.

    Usage:
        tracker = RateTracker.from_settings(settings)
        await tracker.wait_if_needed("gemini-2.5-flash")
        ... call the provider ...
        tracker.mark_success("gemini-2.5-flash")  # or mark_error_429(model, message)
    """

    def __init__(
        self,
        rate_limits: dict[str, ModelRateLimit] | None = None,
        store: KeyValueStore | None = None,
        *,
        default_delay_ms: int = DEFAULT_RATE_LIMIT.base_delay_ms,
        generation_estimate_ms: int = GENERATION_ESTIMATE_MS,
        success_streak_threshold: int = SUCCESS_STREAK_THRESHOLD,
        max_delay_multiplier: int = MAX_DELAY_MULTIPLIER,
        backoff_multiplier: int = BACKOFF_MULTIPLIER,
        clock: Callable[[], float] = time.monotonic,
        sleep=asyncio.sleep,
    ):
        self.rate_limits = RATE_LIMITS if rate_limits is None else rate_limits
        self.store = store
        self.default_delay_ms = default_delay_ms
        self.generation_estimate_ms = generation_estimate_ms
        self.success_streak_threshold = success_streak_threshold
        self.max_delay_multiplier = max_delay_multiplier
        self.backoff_multiplier = backoff_multiplier
        self._clock = clock
        self._sleep = sleep
        self._states: dict[str, RateState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._load()

    @classmethod
    def from_settings(cls, settings, store: KeyValueStore | None = None, **kwargs) -> RateTracker:
        return cls(
            store=store if store is not None else build_store(settings),
            default_delay_ms=settings.default_delay_ms,
            generation_estimate_ms=settings.generation_estimate_ms,
            success_streak_threshold=settings.success_streak_threshold,
            max_delay_multiplier=settings.max_delay_multiplier,
            backoff_multiplier=settings.backoff_multiplier,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Delays
    # ------------------------------------------------------------------

    def get_base_delay(self, model_id: str) -> int:
        limit = self.rate_limits.get(model_id)
        return limit.base_delay_ms if limit else self.default_delay_ms

    def get_max_delay(self, model_id: str) -> int:
        return self.max_delay_multiplier * self.get_base_delay(model_id)

    def get_delay(self, model_id: str) -> int:
        state = self._states.get(model_id)
        if state is not None:
            return state.current_delay_ms
        return self.get_base_delay(model_id)

    def get_wait_time(self, model_id: str) -> int:
        """Milliseconds to wait before the next request to this model (0 = go)."""
        state = self._states.get(model_id)
        if state is None or state.last_request_at is None:
            return 0
        elapsed_ms = (self._clock() - state.last_request_at) * 1000
        return max(0, math.ceil(state.current_delay_ms - elapsed_ms))

    def _state(self, model_id: str) -> RateState:
        state = self._states.get(model_id)
        if state is None:
            base = self.get_base_delay(model_id)
            state = RateState(base_delay_ms=base, current_delay_ms=base)
            self._states[model_id] = state
        return state

    def _lock(self, model_id: str) -> asyncio.Lock:
        lock = self._locks.get(model_id)
        if lock is None:
            lock = self._locks[model_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------

    async def wait_if_needed(
        self,
        model_id: str,
        on_wait: Callable[[int], None] | None = None,
        cancel_token: CancelToken | None = None,
    ) -> int:
        """Sleep until the model's spacing has elapsed, then record the request.

        Returns the number of milliseconds waited. Raises OperationCancelled
        if the token fires during the sleep.
        """
        async with self._lock(model_id):
            wait_ms = self.get_wait_time(model_id)
            if wait_ms > 0:
                if on_wait is not None:
                    on_wait(wait_ms)
                logger.debug("Rate tracker: waiting %d ms before %s", wait_ms, model_id)
                await cancellable_sleep(wait_ms / 1000, cancel_token, self._sleep)
            self._state(model_id).last_request_at = self._clock()
            return wait_ms

    async def wait_for_retry_after(
        self,
        message: str,
        on_wait: Callable[[int], None] | None = None,
        cancel_token: CancelToken | None = None,
    ) -> bool:
        """Honour a provider's "retry in Ns" hint when it is reasonably short."""
        wait_ms = extract_retry_after(message)
        if not wait_ms or wait_ms >= MAX_RETRY_AFTER_WAIT_MS:
            return False
        if on_wait is not None:
            on_wait(wait_ms)
        logger.info("Provider asked to retry in %d ms, waiting", wait_ms)
        await cancellable_sleep(wait_ms / 1000, cancel_token, self._sleep)
        return True

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    def mark_success(self, model_id: str) -> int:
        """Record a success; every N-th consecutive one moves the delay back toward base."""
        state = self._state(model_id)
        state.success_streak += 1

        if state.success_streak >= self.success_streak_threshold:
            state.success_streak = 0
            if state.is_adapted:
                previous = state.current_delay_ms
                state.current_delay_ms = state.base_delay_ms + (previous - state.base_delay_ms) // 2
                logger.info(
                    "Rate tracker: %s delay reduced %d -> %d ms",
                    model_id,
                    previous,
                    state.current_delay_ms,
                )

        self._persist()
        return state.current_delay_ms

    def mark_error_429(self, model_id: str, raw_message: str = "") -> int:
        """Record a quota error and widen the model's delay. Returns the new delay."""
        state = self._state(model_id)
        state.success_streak = 0

        suggested = extract_retry_after(raw_message) or 0
        widened = max(self.backoff_multiplier * state.current_delay_ms, suggested)
        new_delay = min(self.get_max_delay(model_id), max(state.base_delay_ms, widened))

        logger.warning(
            "Rate tracker: quota error on %s, delay %d -> %d ms (suggested %d ms)",
            model_id,
            state.current_delay_ms,
            new_delay,
            suggested,
        )
        state.current_delay_ms = new_delay
        AI_RATE_BACKOFFS.labels(model=model_id).inc()

        self._persist()
        return new_delay

    # ------------------------------------------------------------------
    # Estimates & stats
    # ------------------------------------------------------------------

    def estimate_time(self, count: int, model_id: str) -> dict:
        """Rough duration of generating `count` items back to back."""
        delay = self.get_delay(model_id)
        per_item = delay + self.generation_estimate_ms
        total = count * per_item
        return {
            "total_ms": total,
            "per_item_ms": per_item,
            "delay_ms": delay,
            "total_minutes": math.ceil(total / 60_000 * 10) / 10,
        }

    format_time = staticmethod(format_time)

    def get_stats(self, model_id: str) -> dict:
        state = self._states.get(model_id)
        base = self.get_base_delay(model_id)
        current = self.get_delay(model_id)
        return {
            "model": model_id,
            "base_delay": base,
            "current_delay": current,
            "success_streak": state.success_streak if state else 0,
            "is_adapted": current != base,
            "adaptation_ratio": f"{round(current / base * 100)}%" if base else "n/a",
        }

    def get_all_stats(self) -> list[dict]:
        return [self.get_stats(model_id) for model_id in sorted(self._states)]

    # ------------------------------------------------------------------
    # Reset
    # ------------------------------------------------------------------

    def reset(self, model_id: str | None = None) -> None:
        """Forget all state (delay, streak, last request) for one or all models."""
        if model_id is None:
            self._states.clear()
        else:
            self._states.pop(model_id, None)
        self._persist()

    def reset_adaptive_delays(self, model_id: str | None = None) -> None:
        """Restore the base delay, keeping streak and last-request timestamps."""
        targets = [model_id] if model_id is not None else list(self._states)
        for name in targets:
            state = self._states.get(name)
            if state is not None:
                state.current_delay_ms = state.base_delay_ms
        self._persist()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(self) -> None:
        if self.store is None:
            return
        data = {name: s.current_delay_ms for name, s in self._states.items() if s.is_adapted}
        try:
            self.store.set(STORAGE_KEY, json.dumps(data))
        except STORAGE_ERRORS as e:
            logger.warning("Rate tracker: could not save adaptive delays: %s", e)

    def _load(self) -> None:
        if self.store is None:
            return
        try:
            raw = self.store.get(STORAGE_KEY)
            data = json.loads(raw) if raw else {}
        except STORAGE_ERRORS as e:
            logger.warning("Rate tracker: ignoring unreadable adaptive delays: %s", e)
            return

        if not isinstance(data, dict):
            logger.warning("Rate tracker: ignoring malformed adaptive delays (%s)", type(data).__name__)
            return

        for model_id, delay in data.items():
            if isinstance(delay, bool) or not isinstance(delay, (int, float)):
                logger.warning("Rate tracker: ignoring non-numeric delay for %s", model_id)
                continue
            base = self.get_base_delay(model_id)
            clamped = int(min(self.get_max_delay(model_id), max(base, delay)))
            self._states[model_id] = RateState(base_delay_ms=base, current_delay_ms=clamped)

        if self._states:
            logger.info("Rate tracker: restored adaptive delays for %d model(s)", len(self._states))
