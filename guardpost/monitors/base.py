"""Probe contract, debounce state machine, and the per-monitor poll loop."""

from __future__ import annotations

import abc
import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from types import TracebackType

import structlog

from guardpost.core.types import MonitorState, MonitorStatus, Outcome, StateTransition

logger = structlog.stdlib.get_logger()

# Type alias for transition callbacks
TransitionCallback = Callable[[StateTransition], Awaitable[None] | None]

# Extra time granted to an in-flight probe on shutdown, beyond its timeout.
_STOP_GRACE_SECS = 1.0


class Probe(abc.ABC):
    """A single synchronous health check.

    ``check()`` may block on I/O; the monitor runs it in a worker thread
    under a timeout. Raising is allowed and counts as a failed outcome.
    """

    @abc.abstractmethod
    def check(self) -> Outcome:
        """Run the check once and report the outcome."""

    def close(self) -> None:
        """Release resources held across checks (HTTP clients, etc.)."""


class StatusTracker:
    """Threshold-gated status state machine for one monitor.

    Failures move the status to FAILED after ``fail_threshold`` consecutive
    failed outcomes (DEGRADED first, when ``degrade_threshold`` is set).
    Successes move it to HEALTHY after ``recovery_threshold`` consecutive
    successful outcomes. A transition is returned only when the gated status
    differs from the recorded one.
    """

    def __init__(
        self,
        state: MonitorState,
        fail_threshold: int = 3,
        recovery_threshold: int = 2,
        degrade_threshold: int | None = None,
        failed_message: str = "",
        recovered_message: str = "",
    ) -> None:
        if fail_threshold < 1 or recovery_threshold < 1:
            raise ValueError("thresholds must be >= 1")
        if degrade_threshold is not None and not 1 <= degrade_threshold < fail_threshold:
            raise ValueError("degrade_threshold must be in [1, fail_threshold)")
        self._state = state
        self._fail_threshold = fail_threshold
        self._recovery_threshold = recovery_threshold
        self._degrade_threshold = degrade_threshold
        self._failed_message = failed_message
        self._recovered_message = recovered_message

    @property
    def state(self) -> MonitorState:
        return self._state

    def _gated_status(self) -> MonitorStatus:
        s = self._state
        if s.consecutive_failures >= self._fail_threshold:
            return MonitorStatus.FAILED
        if (
            self._degrade_threshold is not None
            and s.consecutive_failures >= self._degrade_threshold
            and s.current_status != MonitorStatus.FAILED
        ):
            return MonitorStatus.DEGRADED
        if s.consecutive_successes >= self._recovery_threshold:
            return MonitorStatus.HEALTHY
        return s.current_status

    def _message_for(self, status: MonitorStatus) -> str:
        if status == MonitorStatus.HEALTHY:
            return self._recovered_message
        if status in (MonitorStatus.FAILED, MonitorStatus.DEGRADED):
            return self._failed_message
        return ""

    def record(self, outcome: Outcome) -> StateTransition | None:
        """Apply one outcome; return the transition if the status changed."""
        s = self._state
        if outcome.ok:
            s.consecutive_successes += 1
            s.consecutive_failures = 0
        else:
            s.consecutive_failures += 1
            s.consecutive_successes = 0

        new_status = self._gated_status()
        if new_status == s.current_status:
            return None

        transition = StateTransition(
            monitor_name=s.name,
            from_status=s.current_status,
            to_status=new_status,
            timestamp=outcome.timestamp,
            detail=outcome.detail,
            message=self._message_for(new_status),
        )
        s.current_status = new_status
        s.last_transition_at = outcome.timestamp
        s.last_alert_sent_at = outcome.timestamp
        return transition


class Monitor:
    """Polls one Probe on its own timer and emits debounced transitions.

    Each monitor runs its own asyncio task; the probe itself runs in a
    worker thread so a blocking check never stalls other monitors.

    Usage::

        monitor = Monitor("internet", TcpProbe("1.1.1.1", 53), interval_secs=60)
        monitor.on_transition(intake.on_transition)
        async with monitor:
            await asyncio.sleep(3600)
    """

    def __init__(
        self,
        name: str,
        probe: Probe,
        interval_secs: float = 60.0,
        timeout_secs: float = 10.0,
        jitter_secs: float = 0.0,
        fail_threshold: int = 3,
        recovery_threshold: int = 2,
        degrade_threshold: int | None = None,
        failed_message: str = "",
        recovered_message: str = "",
    ) -> None:
        self._name = name
        self._probe = probe
        self._interval_secs = interval_secs
        self._timeout_secs = timeout_secs
        self._jitter_secs = jitter_secs
        self._tracker = StatusTracker(
            MonitorState(name=name),
            fail_threshold=fail_threshold,
            recovery_threshold=recovery_threshold,
            degrade_threshold=degrade_threshold,
            failed_message=failed_message,
            recovered_message=recovered_message,
        )
        self._callbacks: list[TransitionCallback] = []
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self._running = False
        self._poll_count = 0
        self._error_count = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def timeout_secs(self) -> float:
        return self._timeout_secs

    @property
    def state(self) -> MonitorState:
        return self._tracker.state

    @property
    def running(self) -> bool:
        return self._running

    @property
    def poll_count(self) -> int:
        return self._poll_count

    @property
    def error_count(self) -> int:
        """Polls that ended in a probe exception or timeout."""
        return self._error_count

    def on_transition(self, callback: TransitionCallback) -> None:
        """Register a callback for state transitions."""
        self._callbacks.append(callback)

    async def _emit(self, transition: StateTransition) -> None:
        for cb in self._callbacks:
            try:
                result = cb(transition)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception(
                    "monitor_transition_callback_error",
                    monitor=self._name,
                    to_status=transition.to_status,
                )

    async def poll_once(self) -> Outcome:
        """Run the probe once under its timeout; never raises."""
        try:
            outcome = await asyncio.wait_for(
                asyncio.to_thread(self._probe.check),
                timeout=self._timeout_secs,
            )
        except asyncio.TimeoutError:
            self._error_count += 1
            outcome = Outcome(
                ok=False,
                detail=f"probe timed out after {self._timeout_secs:g}s",
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._error_count += 1
            outcome = Outcome(
                ok=False,
                detail=f"probe error: {type(exc).__name__}: {exc}",
            )
        self._poll_count += 1
        return outcome

    async def step(self) -> StateTransition | None:
        """Poll once, apply the outcome, and emit any resulting transition."""
        outcome = await self.poll_once()
        logger.debug(
            "monitor_polled",
            monitor=self._name,
            ok=outcome.ok,
            detail=outcome.detail,
        )
        transition = self._tracker.record(outcome)
        if transition is not None:
            logger.info(
                "monitor_transition",
                monitor=self._name,
                from_status=transition.from_status,
                to_status=transition.to_status,
                detail=transition.detail,
            )
            await self._emit(transition)
        return transition

    def next_delay(self) -> float:
        if self._jitter_secs <= 0:
            return self._interval_secs
        return self._interval_secs + random.uniform(0, self._jitter_secs)

    async def start(self) -> None:
        """Start the background poll loop."""
        if self._running:
            return
        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._poll_loop(), name=f"monitor:{self._name}")
        logger.info(
            "monitor_started",
            monitor=self._name,
            interval_secs=self._interval_secs,
        )

    async def stop(self) -> None:
        """Stop the loop, letting an in-flight probe finish up to its timeout, then close it."""
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(
                    asyncio.shield(self._task),
                    timeout=self._timeout_secs + _STOP_GRACE_SECS,
                )
            except asyncio.TimeoutError:
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
                logger.warning("monitor_stop_timeout", monitor=self._name)
            self._task = None
        try:
            self._probe.close()
        except Exception:
            logger.exception("probe_close_error", monitor=self._name)
        logger.info(
            "monitor_stopped",
            monitor=self._name,
            status=self.state.current_status,
            poll_count=self._poll_count,
        )

    async def _poll_loop(self) -> None:
        """Poll, record, sleep; repeat until stopped."""
        assert self._stop_event is not None
        started = time.monotonic()
        while self._running:
            try:
                await self.step()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("monitor_loop_error", monitor=self._name)

            if not self._running:
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.next_delay())
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
        logger.debug(
            "monitor_loop_exited",
            monitor=self._name,
            uptime_secs=round(time.monotonic() - started, 3),
        )

    async def __aenter__(self) -> Monitor:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()
