from __future__ import annotations

import pytest

from expense_triage.errors import NonRetriableError, TransientClassifierError
from expense_triage.workflows.signals import Signal
from expense_triage.workflows.substrate import (
    FunctionSpec,
    LocalSubstrate,
    StepContext,
    ThrottleGate,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _substrate(sleeps: list[float] | None = None) -> LocalSubstrate:
    out = sleeps if sleeps is not None else []
    return LocalSubstrate(jitter_pct=0.0, sleep=out.append)


def test_throttle_gate_bounds_starts_per_window() -> None:
    clock = FakeClock()
    gate = ThrottleGate(2, 15.0, clock=clock, sleep=clock.sleep)

    assert gate.acquire("b1") == 0.0
    assert gate.acquire("b1") == 0.0
    assert gate.acquire("b2") == 0.0  # keys are independent
    assert gate.acquire("b1") == pytest.approx(15.0)
    assert clock.sleeps == [pytest.approx(15.0)]


def test_throttle_gate_disabled_with_zero_limit() -> None:
    clock = FakeClock()
    gate = ThrottleGate(0, 15.0, clock=clock, sleep=clock.sleep)
    for _ in range(10):
        assert gate.acquire() == 0.0
    assert clock.sleeps == []


def test_steps_are_memoized_across_retries() -> None:
    sub = _substrate()
    executions = {"fetch": 0, "attempts": 0}

    def handler(ctx: StepContext) -> None:
        executions["attempts"] += 1

        def _fetch() -> str:
            executions["fetch"] += 1
            return "value"

        assert ctx.run("fetch", _fetch) == "value"
        if ctx.attempt < 3:
            raise TransientClassifierError("flaky")

    sub.register(FunctionSpec(fn_id="f", trigger="go", handler=handler, max_attempts=5))
    sub.dispatch(Signal(name="go", data={}))

    assert executions == {"fetch": 1, "attempts": 3}
    assert sub.failures == []


def test_retry_budget_and_backoff_then_on_failure() -> None:
    sleeps: list[float] = []
    sub = _substrate(sleeps)
    failures: list[tuple[int, str]] = []

    def handler(ctx: StepContext) -> None:
        raise TransientClassifierError("timeout")

    def on_failure(ctx: StepContext, exc: BaseException) -> None:
        failures.append((ctx.attempt, type(exc).__name__))

    sub.register(
        FunctionSpec(
            fn_id="f", trigger="go", handler=handler, max_attempts=5, on_failure=on_failure
        )
    )
    sub.dispatch(Signal(name="go", data={}))

    assert sleeps == [0.5, 2.0, 5.0, 10.0]
    assert failures == [(5, "TransientClassifierError")]
    (failed,) = sub.failures
    assert failed.attempts == 5


def test_non_retriable_errors_fail_immediately() -> None:
    sleeps: list[float] = []
    sub = _substrate(sleeps)
    attempts: list[int] = []

    def handler(ctx: StepContext) -> None:
        attempts.append(ctx.attempt)
        raise NonRetriableError("bad input")

    sub.register(FunctionSpec(fn_id="f", trigger="go", handler=handler, max_attempts=5))
    sub.dispatch(Signal(name="go", data={}))

    assert attempts == [1]
    assert sleeps == []
    assert sub.failures[0].error.startswith("NonRetriableError")


def test_sends_are_not_repeated_on_retry() -> None:
    sub = _substrate()
    received: list[dict] = []

    def producer(ctx: StepContext) -> None:
        ctx.send("emit", Signal(name="out", data={"n": 1}))
        if ctx.attempt == 1:
            raise TransientClassifierError("after send")

    def consumer(ctx: StepContext) -> None:
        received.append(ctx.event.data)

    sub.register(FunctionSpec(fn_id="p", trigger="go", handler=producer, max_attempts=2))
    sub.register(FunctionSpec(fn_id="c", trigger="out", handler=consumer))
    sub.dispatch(Signal(name="go", data={}))

    assert received == [{"n": 1}]


def test_batched_subscribers_receive_grouped_signals() -> None:
    sub = _substrate()
    batches: list[list[int]] = []

    def fan_out(ctx: StepContext) -> None:
        ctx.send("items", [Signal(name="item", data={"n": n}) for n in range(5)])

    def collect(ctx: StepContext) -> None:
        batches.append([s.data["n"] for s in ctx.signals])

    sub.register(FunctionSpec(fn_id="fan", trigger="go", handler=fan_out))
    sub.register(FunctionSpec(fn_id="col", trigger="item", handler=collect, batch_size=2))
    sub.dispatch(Signal(name="go", data={}))

    assert batches == [[0, 1], [2, 3], [4]]


def test_nested_dispatch_runs_fifo() -> None:
    sub = _substrate()
    order: list[str] = []

    def first(ctx: StepContext) -> None:
        order.append("first:start")
        ctx.send("next", Signal(name="second", data={}))
        order.append("first:end")

    def second(ctx: StepContext) -> None:
        order.append("second")

    sub.register(FunctionSpec(fn_id="a", trigger="first", handler=first))
    sub.register(FunctionSpec(fn_id="b", trigger="second", handler=second))
    sub.dispatch(Signal(name="first", data={}))

    assert order == ["first:start", "first:end", "second"]


def test_wait_for_signal_matches_past_and_filters() -> None:
    sub = _substrate()
    sub.dispatch(Signal(name="batch/categorization.done", data={"batchId": "b1"}))

    hit = sub.wait_for_signal("batch/categorization.done", match={"batchId": "b1"}, timeout=0)
    miss = sub.wait_for_signal("batch/categorization.done", match={"batchId": "b2"}, timeout=0)

    assert hit is not None and hit.data == {"batchId": "b1"}
    assert miss is None


def test_duplicate_registration_is_rejected() -> None:
    sub = _substrate()
    spec = FunctionSpec(fn_id="f", trigger="go", handler=lambda ctx: None)
    sub.register(spec)
    with pytest.raises(ValueError):
        sub.register(spec)


def test_thread_pool_mode_drains() -> None:
    sub = LocalSubstrate(max_workers=4, sleep=lambda _s: None)
    seen: list[int] = []

    def handler(ctx: StepContext) -> None:
        seen.append(ctx.event.data["n"])

    sub.register(FunctionSpec(fn_id="f", trigger="go", handler=handler))
    try:
        for n in range(20):
            sub.dispatch(Signal(name="go", data={"n": n}))
        assert sub.drain(timeout=10)
    finally:
        sub.close()
    assert sorted(seen) == list(range(20))
