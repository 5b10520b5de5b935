"""Tests for the admission controller."""

from __future__ import annotations

import threading
from datetime import date, timedelta

import pytest

from quizpipe.errors import RateLimitTimeoutError
from quizpipe.generation.admission import AdmissionController, TokenEstimator


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def make_controller(clock: FakeClock, **kwargs) -> AdmissionController:
    params = dict(rpm_cap=60, safety_factor=0.8, token_estimate_initial=2000)
    params.update(kwargs)
    return AdmissionController(
        params.pop("rpm_cap"),
        params.pop("safety_factor"),
        params.pop("token_estimate_initial"),
        clock=clock,
        **params,
    )


def drain(controller: AdmissionController, attempts: int) -> tuple[int, int]:
    granted = timeouts = 0
    for _ in range(attempts):
        try:
            controller.acquire(timeout=0)
            granted += 1
        except RateLimitTimeoutError:
            timeouts += 1
    return granted, timeouts


def test_burst_is_capped_at_effective_rpm(clock: FakeClock) -> None:
    controller = make_controller(clock)

    granted, timeouts = drain(controller, 60)

    assert controller.capacity == 48
    assert (granted, timeouts) == (48, 12)


def test_permits_return_one_window_after_grant(clock: FakeClock) -> None:
    controller = make_controller(clock, rpm_cap=2, safety_factor=1.0)
    controller.acquire(timeout=0)
    clock.advance(30)
    controller.acquire(timeout=0)

    clock.advance(29.9)
    with pytest.raises(RateLimitTimeoutError):
        controller.acquire(timeout=0)

    clock.advance(0.2)
    controller.acquire(timeout=0)
    with pytest.raises(RateLimitTimeoutError):
        controller.acquire(timeout=0)


def test_rolling_window_never_exceeds_ceiling(clock: FakeClock) -> None:
    controller = make_controller(clock, rpm_cap=10, safety_factor=0.5)
    grant_times: list[float] = []

    for _ in range(600):
        try:
            controller.acquire(timeout=0)
            grant_times.append(clock.now)
        except RateLimitTimeoutError:
            pass
        clock.advance(0.7)

    for start in grant_times:
        in_window = [t for t in grant_times if start <= t < start + 60]
        assert len(in_window) <= 5


def test_capacity_floor_is_one(clock: FakeClock) -> None:
    controller = make_controller(clock, rpm_cap=1, safety_factor=0.1)

    assert controller.capacity == 1
    assert drain(controller, 3) == (1, 2)


def test_reconfigure_applies_to_future_acquisitions(clock: FakeClock) -> None:
    controller = make_controller(clock, rpm_cap=10, safety_factor=1.0)
    first = controller.acquire(timeout=0)
    assert drain(controller, 20) == (9, 11)

    controller.reconfigure(20, 1.0, 2000)

    assert drain(controller, 20) == (10, 10)
    # Permits granted before the change stay valid
    controller.record(first, 500)


def test_timeout_raises_after_deadline() -> None:
    controller = AdmissionController(1, 1.0, 2000, poll_interval=0.01)
    controller.acquire(timeout=0)

    with pytest.raises(RateLimitTimeoutError, match="No admission permit"):
        controller.acquire(timeout=0.05)


def test_cancel_event_interrupts_wait() -> None:
    controller = AdmissionController(1, 1.0, 2000, poll_interval=0.01)
    controller.acquire(timeout=0)
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(RateLimitTimeoutError, match="cancelled"):
        controller.acquire(timeout=5, cancel=cancel)


def test_cancel_accepts_several_events() -> None:
    controller = AdmissionController(1, 1.0, 2000, poll_interval=0.01)
    controller.acquire(timeout=0)
    stop, job_cancelled = threading.Event(), threading.Event()
    errors: list[Exception] = []

    def waiter() -> None:
        try:
            controller.acquire(timeout=10, cancel=(stop, job_cancelled))
        except RateLimitTimeoutError as exc:
            errors.append(exc)

    thread = threading.Thread(target=waiter)
    thread.start()
    job_cancelled.set()
    thread.join(timeout=2)

    assert not thread.is_alive()
    assert "cancelled" in str(errors[0])


def test_close_wakes_waiters() -> None:
    controller = AdmissionController(1, 1.0, 2000, poll_interval=0.01)
    controller.acquire(timeout=0)
    errors: list[Exception] = []

    def waiter() -> None:
        try:
            controller.acquire(timeout=10)
        except RateLimitTimeoutError as exc:
            errors.append(exc)

    thread = threading.Thread(target=waiter)
    thread.start()
    controller.close()
    thread.join(timeout=2)

    assert not thread.is_alive()
    assert len(errors) == 1


def test_record_updates_estimate(clock: FakeClock) -> None:
    controller = make_controller(clock, ema_alpha=0.5)
    permit = controller.acquire(timeout=0, model="claude-test")

    assert permit.estimated_tokens == 2000
    controller.record(permit, 4000)

    stats = controller.stats()
    assert stats["modelEstimates"] == {"claude-test": 3000}
    assert stats["tokensInWindow"] == 4000
    assert stats["inWindow"] == 1


def test_token_ceiling_delays_admission(clock: FakeClock) -> None:
    controller = make_controller(clock, tpm_ceiling=5000)
    controller.acquire(timeout=0)
    controller.acquire(timeout=0)

    with pytest.raises(RateLimitTimeoutError):
        controller.acquire(timeout=0)

    clock.advance(60)
    controller.acquire(timeout=0)


def test_token_ceiling_never_blocks_an_empty_window(clock: FakeClock) -> None:
    controller = make_controller(clock, tpm_ceiling=100)

    controller.acquire(timeout=0)


def test_estimator_respects_minimum() -> None:
    estimator = TokenEstimator(1000, alpha=1.0, minimum=1500)

    assert estimator.estimate() == 1500
    estimator.observe("m", 200)
    assert estimator.estimate("m") == 1500
    estimator.observe("m", 3000)
    assert estimator.estimate("m") == 3000


def test_estimator_reset_keeps_measured_models() -> None:
    estimator = TokenEstimator(1000, alpha=1.0)
    estimator.observe("m", 700)

    estimator.reset_initial(5000)

    assert estimator.estimate("m") == 700
    assert estimator.estimate("other") == 5000


def test_revoke_returns_permit_to_pool(clock: FakeClock) -> None:
    controller = make_controller(clock, rpm_cap=1, safety_factor=1.0)
    permit = controller.acquire(timeout=0)
    with pytest.raises(RateLimitTimeoutError):
        controller.acquire(timeout=0)

    assert controller.revoke(permit) is True
    assert controller.stats()["inWindow"] == 0
    controller.acquire(timeout=0)
    assert controller.revoke(permit) is False


class FakeCalendar:
    def __init__(self) -> None:
        self.today = date(2025, 3, 14)

    def __call__(self) -> date:
        return self.today


def test_daily_ceiling_is_per_model_and_resets_at_day_change(clock: FakeClock) -> None:
    calendar = FakeCalendar()
    controller = make_controller(clock, rpd_ceiling=2, today=calendar)

    controller.acquire(timeout=0, model="claude-a")
    controller.acquire(timeout=0, model="claude-a")
    with pytest.raises(RateLimitTimeoutError, match="Daily request ceiling"):
        controller.acquire(timeout=0, model="claude-a")
    controller.acquire(timeout=0, model="claude-b")
    assert controller.stats()["requestsToday"] == {"claude-a": 2, "claude-b": 1}

    calendar.today += timedelta(days=1)

    controller.acquire(timeout=0, model="claude-a")
    assert controller.stats()["requestsToday"] == {"claude-a": 1}


def test_revoked_permit_does_not_count_against_daily_ceiling(clock: FakeClock) -> None:
    controller = make_controller(clock, rpd_ceiling=1, today=FakeCalendar())
    permit = controller.acquire(timeout=0)

    controller.revoke(permit)

    controller.acquire(timeout=0)
    assert controller.stats()["rpdCeiling"] == 1
