"""Admission control for outbound LLM calls.

The controller grants at most ``max(1, floor(rpm_cap * safety_factor))``
permits in any rolling window (60 seconds by default). Every permit goes
back into the pool exactly one window after it was granted: a token bucket
whose tokens refill one by one.

Token usage is tracked as an exponential moving average per model. It is
advisory: it feeds logging and, when a tokens-per-minute ceiling is
configured, delays admission while the window's token total is too high.

An optional requests-per-day ceiling caps permits per model per UTC day;
the counts reset when the UTC date changes.
"""

from __future__ import annotations

import itertools
import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Iterable

from quizpipe.errors import RateLimitTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_MODEL_KEY = "default"


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


def _seconds_until_utc_midnight() -> float:
    now = datetime.now(timezone.utc)
    tomorrow = now.date() + timedelta(days=1)
    midnight = datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=timezone.utc)
    return (midnight - now).total_seconds()


@dataclass(frozen=True)
class Permit:
    """Proof that one provider request was admitted."""

    id: int
    granted_at: float
    model: str
    estimated_tokens: int


@dataclass
class _Grant:
    permit_id: int
    granted_at: float
    tokens: int


class TokenEstimator:
    """Per-model moving estimate of tokens consumed by one request."""

    def __init__(self, initial: int, *, alpha: float = 0.2, minimum: int = 0) -> None:
        self._initial = initial
        self._alpha = alpha
        self._minimum = minimum
        self._averages: dict[str, float] = {}

    def estimate(self, model: str = DEFAULT_MODEL_KEY) -> int:
        value = self._averages.get(model, self._initial)
        return max(self._minimum, math.ceil(value))

    def observe(self, model: str, tokens: int) -> None:
        previous = self._averages.get(model, self._initial)
        self._averages[model] = self._alpha * tokens + (1 - self._alpha) * previous

    def reset_initial(self, initial: int) -> None:
        """Change the starting guess; models already measured keep their average."""
        self._initial = initial

    @property
    def measured_models(self) -> list[str]:
        return sorted(self._averages)


class AdmissionController:
    """Gate every provider call behind a rolling-window permit."""

    def __init__(
        self,
        rpm_cap: int,
        safety_factor: float,
        token_estimate_initial: int,
        *,
        tpm_ceiling: int | None = None,
        min_tokens_per_request: int = 0,
        ema_alpha: float = 0.2,
        rpd_ceiling: int | None = None,
        window_seconds: float = 60.0,
        poll_interval: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        today: Callable[[], date] = _utc_today,
    ) -> None:
        self._cond = threading.Condition()
        self._rpm_cap = rpm_cap
        self._safety_factor = safety_factor
        self._tpm_ceiling = tpm_ceiling
        self._rpd_ceiling = rpd_ceiling
        self._today = today
        self._day: date | None = None
        self._daily: dict[str, int] = {}
        self._window = window_seconds
        self._poll_interval = poll_interval
        self._clock = clock
        self._grants: deque[_Grant] = deque()
        self._ids = itertools.count(1)
        self._closed = False
        self._estimator = TokenEstimator(
            token_estimate_initial, alpha=ema_alpha, minimum=min_tokens_per_request
        )

    @classmethod
    def from_settings(cls, app_settings, config) -> AdmissionController:
        return cls(
            app_settings.rpm_cap,
            app_settings.rate_limit_safety_factor,
            app_settings.token_estimate_initial,
            tpm_ceiling=config.tpm_ceiling,
            min_tokens_per_request=config.min_tokens_per_request,
            ema_alpha=config.token_ema_alpha,
            rpd_ceiling=config.rpd_ceiling,
            poll_interval=config.worker_poll_seconds,
        )

    @property
    def capacity(self) -> int:
        return max(1, math.floor(self._rpm_cap * self._safety_factor))

    def _prune(self, now: float) -> None:
        while self._grants and now - self._grants[0].granted_at >= self._window:
            self._grants.popleft()

    def _seconds_until_free(self, now: float, estimate: int) -> float:
        if len(self._grants) >= self.capacity:
            return self._grants[0].granted_at + self._window - now
        if self._tpm_ceiling and self._grants:
            used = sum(g.tokens for g in self._grants)
            if used + estimate > self._tpm_ceiling:
                return self._grants[0].granted_at + self._window - now
        return 0.0

    def _roll_day(self) -> None:
        today = self._today()
        if today != self._day:
            if self._day is not None and self._daily:
                logger.info("UTC day changed, daily request counts reset")
            self._day = today
            self._daily.clear()

    def _daily_exhausted(self, model: str) -> bool:
        if self._rpd_ceiling is None:
            return False
        return self._daily.get(model, 0) >= self._rpd_ceiling

    def acquire(
        self,
        timeout: float | None = None,
        *,
        model: str = DEFAULT_MODEL_KEY,
        cancel: threading.Event | Iterable[threading.Event] | None = None,
    ) -> Permit:
        """Block until a permit is free.

        Raises RateLimitTimeoutError when ``timeout`` seconds pass first, when
        any event in ``cancel`` is set, or when the controller is closed.
        ``timeout=0`` makes a single non-blocking attempt. When the model's
        daily ceiling is used up the wait lasts until the next UTC midnight.
        """
        events = (cancel,) if isinstance(cancel, threading.Event) else tuple(cancel or ())
        deadline = None if timeout is None else self._clock() + timeout
        waited = False
        with self._cond:
            while True:
                if self._closed:
                    raise RateLimitTimeoutError("Admission controller is closed")
                if any(event.is_set() for event in events):
                    raise RateLimitTimeoutError("Admission wait cancelled")

                now = self._clock()
                self._prune(now)
                self._roll_day()
                estimate = self._estimator.estimate(model)
                if self._daily_exhausted(model):
                    wait = max(_seconds_until_utc_midnight(), self._poll_interval)
                else:
                    wait = self._seconds_until_free(now, estimate)
                if wait <= 0:
                    permit = Permit(
                        id=next(self._ids),
                        granted_at=now,
                        model=model,
                        estimated_tokens=estimate,
                    )
                    self._grants.append(_Grant(permit.id, now, estimate))
                    self._daily[model] = self._daily.get(model, 0) + 1
                    if waited:
                        logger.debug("Permit %d granted after waiting", permit.id)
                    return permit

                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        if self._daily_exhausted(model):
                            raise RateLimitTimeoutError(
                                f"Daily request ceiling of {self._rpd_ceiling} "
                                f"reached for model {model}"
                            )
                        raise RateLimitTimeoutError(
                            f"No admission permit within {timeout:.1f}s "
                            f"({len(self._grants)}/{self.capacity} in window)"
                        )
                    wait = min(wait, remaining)
                if not waited:
                    logger.debug("Admission full, waiting up to %.1fs", wait)
                    waited = True
                self._cond.wait(min(wait, self._poll_interval))

    def record(self, permit: Permit, actual_tokens: int) -> None:
        """Feed the real token usage of an admitted request back in."""
        with self._cond:
            self._estimator.observe(permit.model, actual_tokens)
            for grant in self._grants:
                if grant.permit_id == permit.id:
                    grant.tokens = actual_tokens
                    break
            self._cond.notify_all()
        logger.debug(
            "Permit %d used %d tokens (estimate now %d)",
            permit.id,
            actual_tokens,
            self._estimator.estimate(permit.model),
        )

    def revoke(self, permit: Permit) -> bool:
        """Hand back a permit whose request was never sent."""
        with self._cond:
            for grant in self._grants:
                if grant.permit_id == permit.id:
                    self._grants.remove(grant)
                    break
            else:
                return False
            if self._daily.get(permit.model, 0) > 0:
                self._daily[permit.model] -= 1
            self._cond.notify_all()
        logger.debug("Permit %d revoked unused", permit.id)
        return True

    def reconfigure(
        self, rpm_cap: int, safety_factor: float, token_estimate_initial: int
    ) -> None:
        """Apply new limits to future acquisitions; granted permits stay valid."""
        with self._cond:
            self._rpm_cap = rpm_cap
            self._safety_factor = safety_factor
            self._estimator.reset_initial(token_estimate_initial)
            self._cond.notify_all()
        logger.info("Admission ceiling now %d permits per window", self.capacity)

    def close(self) -> None:
        """Wake and fail every waiter; used on shutdown."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def stats(self) -> dict:
        with self._cond:
            self._prune(self._clock())
            self._roll_day()
            return {
                "capacity": self.capacity,
                "windowSeconds": self._window,
                "inWindow": len(self._grants),
                "tokensInWindow": sum(g.tokens for g in self._grants),
                "tokenEstimate": self._estimator.estimate(),
                "modelEstimates": {
                    m: self._estimator.estimate(m) for m in self._estimator.measured_models
                },
                "tpmCeiling": self._tpm_ceiling,
                "rpdCeiling": self._rpd_ceiling,
                "requestsToday": dict(self._daily),
            }
