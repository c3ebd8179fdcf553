"""Durable-execution substrate interface and an in-process implementation.

The workflows only rely on four capabilities:

- ``register(spec)``: subscribe a durable function to a signal name.
- ``dispatch(signal)``: fire-and-forget emission to every subscriber.
- ``wait_for_signal(name, match=..., timeout=...)``: suspend until a matching
  signal arrives (or has already arrived) or the timeout elapses.
- ``StepContext.run(name, fn)``: memoized step execution; a retried function
  replays completed steps from memory instead of re-running them.

:class:`LocalSubstrate` provides these in-process. It runs subscribers either
inline (FIFO, on the dispatching thread, the default) or on a bounded
``ThreadPoolExecutor``. It retries failing functions with increasing backoff
and jitter up to ``max_attempts``, gates function starts through per-key
sliding-window throttles, and groups signals for batched subscribers.
Exceptions deriving from :class:`~expense_triage.errors.NonRetriableError`
fail the function on the first attempt.
"""

from __future__ import annotations

import random
import threading
import time
import uuid
from collections import defaultdict, deque
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

from ..errors import NonRetriableError
from ..logging_setup import get_logger
from .signals import Signal

# ---- Tunables (private) ------------------------------------------------------

_BACKOFF_SCHEDULE_SEC: tuple[float, ...] = (0.5, 2.0, 5.0, 10.0)
_JITTER_PCT: float = 0.20
_SIGNAL_LOG_CAP: int = 10_000

T = TypeVar("T")

_logger = get_logger("expense_triage.workflows.substrate")


# ---- Throttling --------------------------------------------------------------


class ThrottleGate:
    """Sliding-window limiter: at most ``limit`` starts per ``period`` seconds per key.

    ``limit <= 0`` or ``period <= 0`` disables throttling. ``acquire`` blocks
    (via ``sleep``) until a slot frees up and returns the seconds waited.
    """

    def __init__(
        self,
        limit: int,
        period: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.limit = limit
        self.period = period
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._starts: dict[str, deque[float]] = defaultdict(deque)

    def acquire(self, key: str = "") -> float:
        if self.limit <= 0 or self.period <= 0:
            return 0.0
        waited = 0.0
        while True:
            with self._lock:
                now = self._clock()
                window = self._starts[key]
                while window and now - window[0] >= self.period:
                    window.popleft()
                if len(window) < self.limit:
                    window.append(now)
                    return waited
                delay = self.period - (now - window[0])
            self._sleep(delay)
            waited += delay


# ---- Function registration ---------------------------------------------------


@dataclass(frozen=True, slots=True)
class FunctionSpec:
    """A durable function subscribed to ``trigger``.

    ``batch_size`` (when set) delivers up to that many queued signals per
    invocation; otherwise each signal starts its own invocation.
    ``on_failure`` runs once after the final failed attempt.
    """

    fn_id: str
    trigger: str
    handler: Callable[[StepContext], Any]
    max_attempts: int = 1
    on_failure: Callable[[StepContext, BaseException], None] | None = None
    throttle: ThrottleGate | None = None
    throttle_key: Callable[[Signal], str] | None = None
    batch_size: int | None = None


@dataclass(frozen=True, slots=True)
class FailedRun:
    fn_id: str
    run_id: str
    signals: tuple[Signal, ...]
    attempts: int
    error: str


class StepContext:
    """Per-invocation handle passed to durable function handlers.

    The context outlives individual attempts: step results recorded by
    :meth:`run` are replayed on later attempts of the same invocation.
    """

    def __init__(
        self,
        *,
        fn_id: str,
        signals: Iterable[Signal],
        dispatch: Callable[[Signal], None],
        run_id: str | None = None,
    ) -> None:
        self.fn_id = fn_id
        self.signals: tuple[Signal, ...] = tuple(signals)
        self.run_id = run_id or uuid.uuid4().hex
        self.attempt = 0
        self._dispatch = dispatch
        self._memo: dict[str, Any] = {}
        self._seen: dict[str, int] = {}

    @property
    def event(self) -> Signal:
        return self.signals[0]

    def begin_attempt(self, attempt: int) -> None:
        self.attempt = attempt
        self._seen.clear()

    def run(self, name: str, fn: Callable[[], T]) -> T:
        """Run ``fn`` once per invocation under ``name``; later attempts reuse the result.

        Repeated names within one attempt are disambiguated by call order.
        """

        n = self._seen.get(name, 0)
        self._seen[name] = n + 1
        key = name if n == 0 else f"{name}:{n}"
        if key in self._memo:
            return self._memo[key]
        value = fn()
        self._memo[key] = value
        return value

    def send(self, name: str, signals: Signal | Iterable[Signal]) -> None:
        """Dispatch ``signals`` as a memoized step (at most once per invocation)."""

        batch = (signals,) if isinstance(signals, Signal) else tuple(signals)

        def _emit() -> int:
            for s in batch:
                self._dispatch(s)
            return len(batch)

        self.run(f"send:{name}", _emit)


class Substrate(Protocol):
    def register(self, spec: FunctionSpec) -> None: ...

    def dispatch(self, signal: Signal) -> None: ...

    def wait_for_signal(
        self, name: str, *, match: Mapping[str, Any], timeout: float
    ) -> Signal | None: ...

    def drain(self, timeout: float | None = None) -> bool: ...


# ---- In-process implementation ----------------------------------------------


class LocalSubstrate:
    """In-process :class:`Substrate`.

    Parameters
    ----------
    max_workers:
        ``0`` (default) runs subscribers inline: ``dispatch`` drains the work
        queue on the calling thread before returning, and nested dispatches
        from handlers are queued FIFO. A positive value runs subscribers on a
        thread pool; use :meth:`drain` to wait for quiescence.
    backoff_schedule:
        Base delay (seconds) before retry ``n`` (the last value repeats).
    jitter_pct:
        Uniform jitter applied to each delay, as a fraction of the base.
    """

    def __init__(
        self,
        *,
        max_workers: int = 0,
        backoff_schedule: tuple[float, ...] = _BACKOFF_SCHEDULE_SEC,
        jitter_pct: float = _JITTER_PCT,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._backoff = backoff_schedule or (0.0,)
        self._jitter_pct = jitter_pct
        self._sleep = sleep
        self._lock = threading.RLock()
        self._cond = threading.Condition(self._lock)
        self._specs: dict[str, list[FunctionSpec]] = defaultdict(list)
        self._fn_ids: set[str] = set()
        self._queue: deque[Callable[[], None]] = deque()
        self._buffers: dict[str, list[Signal]] = defaultdict(list)
        self._flush_pending: set[str] = set()
        self._log: deque[Signal] = deque(maxlen=_SIGNAL_LOG_CAP)
        self._inflight = 0
        self._drain_lock = threading.Lock()
        self._local = threading.local()
        self._executor = (
            ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="et-substrate")
            if max_workers > 0
            else None
        )
        self.failures: list[FailedRun] = []

    # -- registration / emission --

    def register(self, spec: FunctionSpec) -> None:
        with self._lock:
            if spec.fn_id in self._fn_ids:
                raise ValueError(f"function already registered: {spec.fn_id!r}")
            self._fn_ids.add(spec.fn_id)
            self._specs[spec.trigger].append(spec)

    def dispatch(self, signal: Signal) -> None:
        with self._cond:
            self._log.append(signal)
            self._cond.notify_all()
            specs = list(self._specs.get(signal.name, ()))
        _logger.debug("dispatch name=%s subscribers=%d", signal.name, len(specs))
        for spec in specs:
            if spec.batch_size:
                self._buffer(spec, signal)
            else:
                self._schedule(lambda spec=spec: self._invoke(spec, [signal]))
        self._drain_inline()

    def wait_for_signal(
        self, name: str, *, match: Mapping[str, Any], timeout: float
    ) -> Signal | None:
        """Return the most recent matching signal, waiting up to ``timeout`` seconds.

        Signals dispatched before the wait began also match.
        """

        self._drain_inline()
        deadline = time.monotonic() + max(0.0, timeout)
        with self._cond:
            while True:
                for s in reversed(self._log):
                    if s.name == name and all(s.data.get(k) == v for k, v in match.items()):
                        return s
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(remaining)

    def drain(self, timeout: float | None = None) -> bool:
        """Block until no work is queued or running. Returns ``False`` on timeout."""

        self._drain_inline()
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._inflight > 0:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining)
        return True

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)

    # -- scheduling --

    def _schedule(self, task: Callable[[], None]) -> None:
        with self._lock:
            self._inflight += 1
            if self._executor is None:
                self._queue.append(task)
                return
        self._executor.submit(self._run_task, task)

    def _run_task(self, task: Callable[[], None]) -> None:
        try:
            task()
        finally:
            with self._cond:
                self._inflight -= 1
                self._cond.notify_all()

    def _drain_inline(self) -> None:
        if self._executor is not None or getattr(self._local, "draining", False):
            return
        with self._drain_lock:
            self._local.draining = True
            try:
                while True:
                    with self._lock:
                        if not self._queue:
                            break
                        task = self._queue.popleft()
                    self._run_task(task)
            finally:
                self._local.draining = False

    def _buffer(self, spec: FunctionSpec, signal: Signal) -> None:
        with self._lock:
            self._buffers[spec.fn_id].append(signal)
            if spec.fn_id in self._flush_pending:
                return
            self._flush_pending.add(spec.fn_id)
        self._schedule(lambda: self._flush(spec))

    def _flush(self, spec: FunctionSpec) -> None:
        size = spec.batch_size or 1
        with self._lock:
            pending = self._buffers[spec.fn_id]
            take, self._buffers[spec.fn_id] = pending[:size], pending[size:]
            more = bool(self._buffers[spec.fn_id])
            if not more:
                self._flush_pending.discard(spec.fn_id)
        if more:
            self._schedule(lambda: self._flush(spec))
        if take:
            self._invoke(spec, take)

    # -- execution --

    def _sleep_backoff(self, attempt_no: int) -> None:
        if attempt_no - 1 < len(self._backoff):
            base = self._backoff[attempt_no - 1]
        else:
            base = self._backoff[-1]
        jitter = base * self._jitter_pct
        delay = base + random.uniform(-jitter, jitter)
        self._sleep(max(0.0, delay))

    def _invoke(self, spec: FunctionSpec, signals: list[Signal]) -> None:
        ctx = StepContext(fn_id=spec.fn_id, signals=signals, dispatch=self.dispatch)
        if spec.throttle is not None:
            key = spec.throttle_key(signals[0]) if spec.throttle_key is not None else ""
            waited = spec.throttle.acquire(key)
            if waited:
                _logger.debug(
                    "invoke:throttled fn_id=%s key=%s waited_sec=%.2f", spec.fn_id, key, waited
                )

        attempt = 1
        while True:
            ctx.begin_attempt(attempt)
            t0 = time.perf_counter()
            try:
                spec.handler(ctx)
                return
            except Exception as e:  # noqa: BLE001 - the retry policy decides
                dt_ms = (time.perf_counter() - t0) * 1000.0
                terminal = isinstance(e, NonRetriableError) or attempt >= spec.max_attempts
                if not terminal:
                    _logger.warning(
                        "invoke:retry fn_id=%s run_id=%s attempt=%d latency_ms=%.2f error=%s",
                        spec.fn_id,
                        ctx.run_id,
                        attempt,
                        dt_ms,
                        e.__class__.__name__,
                    )
                    self._sleep_backoff(attempt)
                    attempt += 1
                    continue
                _logger.error(
                    "invoke:failed_terminal fn_id=%s run_id=%s attempts=%d error=%s message=%s",
                    spec.fn_id,
                    ctx.run_id,
                    attempt,
                    e.__class__.__name__,
                    e,
                )
                self._fail(spec, ctx, e, attempt)
                return

    def _fail(
        self, spec: FunctionSpec, ctx: StepContext, exc: BaseException, attempts: int
    ) -> None:
        with self._lock:
            self.failures.append(
                FailedRun(
                    fn_id=spec.fn_id,
                    run_id=ctx.run_id,
                    signals=ctx.signals,
                    attempts=attempts,
                    error=f"{exc.__class__.__name__}: {exc}",
                )
            )
        if spec.on_failure is None:
            return
        try:
            spec.on_failure(ctx, exc)
        except Exception as e:  # noqa: BLE001 - failure handlers must not kill the worker
            _logger.exception("invoke:on_failure_error fn_id=%s run_id=%s", spec.fn_id, ctx.run_id)
            with self._lock:
                self.failures.append(
                    FailedRun(
                        fn_id=f"{spec.fn_id}:on_failure",
                        run_id=ctx.run_id,
                        signals=ctx.signals,
                        attempts=1,
                        error=f"{e.__class__.__name__}: {e}",
                    )
                )


__all__ = [
    "FailedRun",
    "FunctionSpec",
    "LocalSubstrate",
    "StepContext",
    "Substrate",
    "ThrottleGate",
]
