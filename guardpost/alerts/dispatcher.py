"""Central alert dispatcher — FIFO queue, dedup, fan-out with retry."""

from __future__ import annotations

import asyncio
import time

import structlog

from guardpost.alerts.escalation import Escalator
from guardpost.alerts.providers import Provider
from guardpost.alerts.suppression import SuppressionTable
from guardpost.alerts.types import (
    AlertEvent,
    DeliveryAttempt,
    DeliveryStatus,
    DispatchReport,
)
from guardpost.core.config import RetryConfig
from guardpost.core.exceptions import PermanentDeliveryError, TransientDeliveryError
from guardpost.core.types import AlertSeverity

# Dedicated structured logger for decision records.
decision_logger = structlog.get_logger("decision_log")

logger = structlog.get_logger(__name__)

# Queue sentinel that wakes the consumer on shutdown.
_STOP = object()


class AlertDispatcher:
    """Delivers AlertEvents to providers in enqueue order.

    - Every dequeued event is logged via *decision_logger*.
    - Events below *min_delivery_severity* are log-only.
    - An event whose dedup_key was delivered within the suppression
      window is dropped.
    - Otherwise every provider is attempted concurrently; each provider
      retries sequentially with capped exponential backoff. A permanent
      error stops that provider's retries for the event.
    - The event counts as delivered when at least one required provider
      acked. If all required providers failed, the Escalator is invoked.
    """

    def __init__(
        self,
        providers: list[Provider] | None = None,
        suppression: SuppressionTable | None = None,
        retry: RetryConfig | None = None,
        escalator: Escalator | None = None,
        min_delivery_severity: AlertSeverity = AlertSeverity.RECOVERY,
        shutdown_timeout_secs: float = 30.0,
    ) -> None:
        self._providers: list[Provider] = providers or []
        self._suppression = suppression or SuppressionTable()
        self._retry = retry or RetryConfig()
        self._escalator = escalator or Escalator()
        self._min_delivery_severity = min_delivery_severity
        self._shutdown_timeout_secs = shutdown_timeout_secs

        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self._running = False
        self._closed = False
        self._current: AlertEvent | None = None

        self._delivered_count = 0
        self._suppressed_count = 0
        self._failed_count = 0

    # ── Properties ───────────────────────────────────────────────

    @property
    def providers(self) -> list[Provider]:
        return list(self._providers)

    @property
    def suppression(self) -> SuppressionTable:
        return self._suppression

    @property
    def escalator(self) -> Escalator:
        return self._escalator

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def stats(self) -> dict[str, int]:
        return {
            "delivered": self._delivered_count,
            "suppressed": self._suppressed_count,
            "total_failures": self._failed_count,
            "pending": self.pending,
        }

    # ── Intake ───────────────────────────────────────────────────

    def enqueue(self, event: AlertEvent) -> None:
        """Queue an event without blocking; safe to call from any thread."""
        if self._closed:
            logger.warning(
                "alert_abandoned_on_shutdown",
                dedup_key=event.dedup_key,
                title=event.title,
                reason="dispatcher stopped",
            )
            return

        loop = self._loop
        if loop is not None and not loop.is_closed():
            try:
                current = asyncio.get_running_loop()
            except RuntimeError:
                current = None
            if current is not loop:
                loop.call_soon_threadsafe(self._queue.put_nowait, event)
                return
        self._queue.put_nowait(event)

    async def join(self) -> None:
        """Wait until every queued event has been processed."""
        await self._queue.join()

    # ── Dispatch ─────────────────────────────────────────────────

    async def dispatch(self, event: AlertEvent) -> DispatchReport:
        """Process one event end to end and report what happened."""
        self._log_decision(event)
        report = DispatchReport(event=event)

        if event.severity < self._min_delivery_severity:
            logger.info("alert_log_only", dedup_key=event.dedup_key, title=event.title)
            return report

        if self._suppression.is_suppressed(event.dedup_key):
            self._suppressed_count += 1
            report.suppressed = True
            logger.info(
                "alert_suppressed",
                dedup_key=event.dedup_key,
                title=event.title,
                window_secs=self._suppression.window_secs,
            )
            return report

        results = await asyncio.gather(
            *(self._deliver(p, event) for p in self._providers)
        )
        for provider, attempts in zip(self._providers, results):
            report.attempts[provider.name] = attempts

        acked = set(report.acked_providers())
        required = [p for p in self._providers if p.required]
        if required:
            report.delivered = any(p.name in acked for p in required)
        else:
            report.delivered = bool(acked)

        if report.delivered:
            self._delivered_count += 1
            self._suppression.record(event.dedup_key)
            missing = [p.name for p in required if p.name not in acked]
            if missing:
                logger.warning(
                    "required_provider_failed",
                    dedup_key=event.dedup_key,
                    providers=missing,
                )
            logger.info(
                "alert_delivered",
                dedup_key=event.dedup_key,
                title=event.title,
                providers=sorted(acked),
            )
        elif self._stopping.is_set():
            report.abandoned = True
            self._log_abandoned(event, "retries abandoned")
        else:
            self._failed_count += 1
            report.total_failure = True
            await self._escalator.escalate(report)

        return report

    def backoff_delay(self, attempt_number: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        r = self._retry
        delay = r.base_delay_secs * (r.multiplier ** (attempt_number - 1))
        return min(delay, r.max_delay_secs)

    async def _deliver(self, provider: Provider, event: AlertEvent) -> list[DeliveryAttempt]:
        attempts: list[DeliveryAttempt] = []
        max_attempts = self._retry.max_attempts

        for n in range(1, max_attempts + 1):
            attempt = DeliveryAttempt(provider_name=provider.name, attempt_number=n)
            attempts.append(attempt)
            try:
                ack = await asyncio.wait_for(
                    provider.send(event),
                    timeout=self._retry.attempt_timeout_secs,
                )
            except PermanentDeliveryError as exc:
                attempt.status = DeliveryStatus.FAILED
                attempt.reason = exc.reason
                logger.warning(
                    "delivery_failed_permanent",
                    provider=provider.name,
                    dedup_key=event.dedup_key,
                    attempt=n,
                    reason=exc.reason,
                )
                return attempts
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                attempt.status = DeliveryStatus.FAILED
                attempt.reason = f"timed out after {self._retry.attempt_timeout_secs:g}s"
            except TransientDeliveryError as exc:
                attempt.status = DeliveryStatus.FAILED
                attempt.reason = exc.reason
            except Exception as exc:
                attempt.status = DeliveryStatus.FAILED
                attempt.reason = f"{type(exc).__name__}: {exc}"
            else:
                attempt.status = DeliveryStatus.ACKED
                attempt.reason = ack.reference
                logger.debug(
                    "delivery_acked",
                    provider=provider.name,
                    dedup_key=event.dedup_key,
                    attempt=n,
                )
                return attempts

            logger.debug(
                "delivery_attempt_failed",
                provider=provider.name,
                dedup_key=event.dedup_key,
                attempt=n,
                reason=attempt.reason,
            )
            if n == max_attempts:
                break
            if not await self._backoff(self.backoff_delay(n)):
                logger.warning(
                    "delivery_retries_abandoned",
                    provider=provider.name,
                    dedup_key=event.dedup_key,
                    attempts=n,
                )
                return attempts

        logger.warning(
            "delivery_retries_exhausted",
            provider=provider.name,
            required=provider.required,
            dedup_key=event.dedup_key,
            attempts=len(attempts),
            reason=attempts[-1].reason,
        )
        return attempts

    async def _backoff(self, delay: float) -> bool:
        """Sleep before a retry. Returns False when shutdown interrupts it."""
        if self._stopping.is_set():
            return False
        if delay <= 0:
            return True
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False

    def _log_decision(self, event: AlertEvent) -> None:
        decision_logger.info(
            "decision",
            dedup_key=event.dedup_key,
            severity=event.severity.name,
            title=event.title,
            body=event.body,
            source=event.source,
            created_at=event.created_at,
        )

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the single consumer task."""
        if self._running:
            return
        self._running = True
        self._closed = False
        self._stopping.clear()
        self._loop = asyncio.get_running_loop()
        self._task = asyncio.create_task(self._consume(), name="alert-dispatcher")
        logger.info(
            "dispatcher_started",
            providers=[p.name for p in self._providers],
            required=[p.name for p in self._providers if p.required],
        )

    async def stop(self) -> None:
        """Finish the current attempt, abandon retries and queued events."""
        if not self._running:
            return
        self._running = False
        self._closed = True
        self._stopping.set()
        self._queue.put_nowait(_STOP)

        if self._task is not None:
            try:
                await asyncio.wait_for(
                    asyncio.shield(self._task), timeout=self._shutdown_timeout_secs
                )
            except asyncio.TimeoutError:
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
                if self._current is not None:
                    self._log_abandoned(self._current, "shutdown timeout")
            self._task = None

        while not self._queue.empty():
            item = self._queue.get_nowait()
            self._queue.task_done()
            if isinstance(item, AlertEvent):
                self._log_abandoned(item, "queued at shutdown")

        logger.info("dispatcher_stopped", **self.stats())

    async def close(self) -> None:
        await self.stop()
        for p in self._providers:
            try:
                await p.close()
            except Exception:
                logger.exception("provider_close_error", provider=p.name)
        await self._escalator.close()

    async def _consume(self) -> None:
        while not self._stopping.is_set():
            item = await self._queue.get()
            try:
                if item is _STOP or not isinstance(item, AlertEvent):
                    break
                self._current = item
                try:
                    await self.dispatch(item)
                except Exception:
                    logger.exception("dispatch_error", dedup_key=item.dedup_key)
                finally:
                    self._current = None
            finally:
                self._queue.task_done()

    @staticmethod
    def _log_abandoned(event: AlertEvent, reason: str) -> None:
        logger.warning(
            "alert_abandoned_on_shutdown",
            dedup_key=event.dedup_key,
            severity=event.severity.name,
            title=event.title,
            reason=reason,
        )
