"""Tests for AlertDispatcher — dedup, fan-out, retry, escalation, ordering, shutdown."""

from __future__ import annotations

import asyncio
import json
import threading
import time
from pathlib import Path
from typing import Any
from unittest.mock import patch

from guardpost.alerts.dispatcher import AlertDispatcher
from guardpost.alerts.escalation import Escalator
from guardpost.alerts.intake import AlertIntake
from guardpost.alerts.providers import Provider, SmsGatewayProvider
from guardpost.alerts.suppression import SuppressionTable
from guardpost.alerts.types import AlertEvent, DeliveryAck, DeliveryStatus
from guardpost.core.config import RetryConfig, SmsGatewayConfig
from guardpost.core.exceptions import PermanentDeliveryError, TransientDeliveryError
from guardpost.core.types import AlertSeverity, Incident, MonitorStatus, StateTransition

# ── Helpers ─────────────────────────────────────────────────────


class FakeProvider(Provider):
    """Scripted provider. ``fail`` is "transient", "permanent", "slow" or None."""

    def __init__(
        self,
        name: str = "fake",
        required: bool = True,
        fail: str | None = None,
        fail_times: int | None = None,
    ) -> None:
        super().__init__(name, required)
        self.sent: list[AlertEvent] = []
        self.calls = 0
        self.closed = False
        self._fail = fail
        self._fail_times = fail_times

    async def send(self, event: AlertEvent) -> DeliveryAck:
        self.calls += 1
        failing = self._fail is not None and (
            self._fail_times is None or self.calls <= self._fail_times
        )
        if failing:
            if self._fail == "permanent":
                raise PermanentDeliveryError("bad recipient", provider_name=self.name)
            if self._fail == "slow":
                await asyncio.sleep(10)
            raise TransientDeliveryError("gateway busy", provider_name=self.name)
        self.sent.append(event)
        return DeliveryAck(provider_name=self.name, reference=f"ref-{self.calls}")

    async def close(self) -> None:
        self.closed = True


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _event(key: str = "k1", severity: AlertSeverity = AlertSeverity.CRITICAL, **kw: object) -> AlertEvent:
    defaults: dict[str, object] = {
        "dedup_key": key,
        "severity": severity,
        "title": f"alert {key}",
        "body": "body",
        "created_at": 1000.0,
        "source": "test",
    }
    defaults.update(kw)
    return AlertEvent(**defaults)  # type: ignore[arg-type]


def _fast_retry(**kw: object) -> RetryConfig:
    defaults: dict[str, object] = {
        "max_attempts": 3,
        "base_delay_secs": 0,
        "attempt_timeout_secs": 1.0,
    }
    defaults.update(kw)
    return RetryConfig(**defaults)  # type: ignore[arg-type]


def _sms_gateway(sent: list[str], slow: str, timeout_secs: float = 15.0) -> SmsGatewayProvider:
    """SMS provider whose gateway hangs for one number."""
    sms = SmsGatewayProvider(
        SmsGatewayConfig(name="sms", recipients=["+1", "+2"]), timeout_secs
    )

    async def post(url: str, **kwargs: Any) -> tuple[int, str]:
        sent.append(kwargs["json"]["to"])
        if kwargs["json"]["to"] == slow:
            await asyncio.sleep(1.0)
        return 200, "ok"

    sms._post = post  # type: ignore[method-assign]
    return sms


def _dispatcher(
    providers: list[Provider],
    clock: FakeClock | None = None,
    escalator: Escalator | None = None,
    **kw: object,
) -> AlertDispatcher:
    return AlertDispatcher(
        providers=providers,
        suppression=SuppressionTable(300, clock=clock or FakeClock()),
        retry=kw.pop("retry", None) or _fast_retry(),  # type: ignore[arg-type]
        escalator=escalator or Escalator(),
        **kw,  # type: ignore[arg-type]
    )


# ── Dedup ───────────────────────────────────────────────────────


class TestDedup:
    async def test_repeat_within_window_suppressed(self) -> None:
        p = FakeProvider()
        clock = FakeClock()
        disp = _dispatcher([p], clock)

        first = await disp.dispatch(_event())
        clock.now += 10
        second = await disp.dispatch(_event())

        assert first.delivered is True
        assert second.suppressed is True
        assert len(p.sent) == 1
        assert disp.stats()["suppressed"] == 1

    async def test_repeat_after_window_delivered(self) -> None:
        p = FakeProvider()
        clock = FakeClock()
        disp = _dispatcher([p], clock)

        await disp.dispatch(_event())
        clock.now += 301
        report = await disp.dispatch(_event())

        assert report.delivered is True
        assert len(p.sent) == 2

    async def test_distinct_keys_not_suppressed(self) -> None:
        p = FakeProvider()
        disp = _dispatcher([p])
        await disp.dispatch(_event("a"))
        await disp.dispatch(_event("b"))
        assert len(p.sent) == 2

    async def test_recovery_does_not_clear_failure_key(self) -> None:
        p = FakeProvider()
        clock = FakeClock()
        disp = _dispatcher([p], clock)

        await disp.dispatch(_event("cctv:FAILED"))
        clock.now += 30
        await disp.dispatch(_event("cctv:HEALTHY", severity=AlertSeverity.RECOVERY))
        clock.now += 30
        report = await disp.dispatch(_event("cctv:FAILED"))

        assert report.suppressed is True
        assert [e.dedup_key for e in p.sent] == ["cctv:FAILED", "cctv:HEALTHY"]

    async def test_failed_delivery_not_recorded(self) -> None:
        p = FakeProvider(fail="transient", fail_times=3)
        disp = _dispatcher([p])

        first = await disp.dispatch(_event())
        second = await disp.dispatch(_event())

        assert first.total_failure is True
        assert second.suppressed is False
        assert second.delivered is True

    async def test_scenario_two_incidents_one_alert(self) -> None:
        """Same source and category within the window yields one alert."""
        p = FakeProvider()
        clock = FakeClock()
        disp = _dispatcher([p], clock)
        intake = AlertIntake(disp)

        intake.submit(Incident(source="cctv", payload="NVR lost", category="offline"))
        clock.now += 60
        intake.submit(Incident(source="cctv", payload="NVR lost", category="offline"))
        while disp.pending:
            await disp.dispatch(disp._queue.get_nowait())  # type: ignore[arg-type]

        assert len(p.sent) == 1


# ── Severity gate ──────────────────────────────────────────────


class TestSeverityGate:
    async def test_info_is_log_only(self) -> None:
        p = FakeProvider()
        disp = _dispatcher([p])
        with patch("guardpost.alerts.dispatcher.decision_logger") as mock_log:
            report = await disp.dispatch(_event(severity=AlertSeverity.INFO))

        mock_log.info.assert_called_once()
        assert p.calls == 0
        assert report.delivered is False
        assert report.total_failure is False

    async def test_recovery_delivered_by_default(self) -> None:
        p = FakeProvider()
        disp = _dispatcher([p])
        await disp.dispatch(_event(severity=AlertSeverity.RECOVERY))
        assert p.calls == 1

    async def test_threshold_configurable(self) -> None:
        p = FakeProvider()
        disp = _dispatcher([p], min_delivery_severity=AlertSeverity.CRITICAL)
        await disp.dispatch(_event(severity=AlertSeverity.WARNING))
        assert p.calls == 0

    async def test_every_event_logged(self) -> None:
        p = FakeProvider()
        clock = FakeClock()
        disp = _dispatcher([p], clock)
        with patch("guardpost.alerts.dispatcher.decision_logger") as mock_log:
            await disp.dispatch(_event())
            await disp.dispatch(_event())
        assert mock_log.info.call_count == 2


# ── Fan-out and retry ──────────────────────────────────────────


class TestFanOut:
    async def test_all_providers_attempted(self) -> None:
        a = FakeProvider("a")
        b = FakeProvider("b", required=False)
        disp = _dispatcher([a, b])
        report = await disp.dispatch(_event())
        assert len(a.sent) == 1
        assert len(b.sent) == 1
        assert sorted(report.acked_providers()) == ["a", "b"]

    async def test_one_provider_failure_does_not_affect_another(self) -> None:
        bad = FakeProvider("bad", fail="transient")
        good = FakeProvider("good")
        disp = _dispatcher([bad, good])

        report = await disp.dispatch(_event())

        assert report.delivered is True
        assert report.attempt_count("bad") == 3
        assert report.attempt_count("good") == 1

    async def test_slow_provider_does_not_block_others(self) -> None:
        slow = FakeProvider("slow", required=False, fail="slow")
        fast = FakeProvider("fast")
        disp = _dispatcher([slow, fast], retry=_fast_retry(max_attempts=1, attempt_timeout_secs=0.2))

        started = time.monotonic()
        report = await disp.dispatch(_event())

        assert time.monotonic() - started < 2.0
        assert report.delivered is True
        assert "timed out" in report.attempts["slow"][-1].reason

    async def test_transient_retried_until_success(self) -> None:
        p = FakeProvider(fail="transient", fail_times=2)
        disp = _dispatcher([p])
        report = await disp.dispatch(_event())
        statuses = [a.status for a in report.attempts["fake"]]
        assert statuses == [DeliveryStatus.FAILED, DeliveryStatus.FAILED, DeliveryStatus.ACKED]
        assert report.delivered is True

    async def test_permanent_error_stops_retries(self) -> None:
        p = FakeProvider(fail="permanent")
        disp = _dispatcher([p], retry=_fast_retry(max_attempts=8))
        report = await disp.dispatch(_event())
        assert p.calls == 1
        assert report.attempts["fake"][0].reason == "bad recipient"

    async def test_unexpected_exception_treated_as_transient(self) -> None:
        class Broken(FakeProvider):
            async def send(self, event: AlertEvent) -> DeliveryAck:
                self.calls += 1
                raise RuntimeError("bug")

        p = Broken()
        disp = _dispatcher([p])
        report = await disp.dispatch(_event())
        assert p.calls == 3
        assert "RuntimeError" in report.attempts["fake"][-1].reason

    async def test_sms_retry_does_not_retext_accepted_recipient(self) -> None:
        sent: list[str] = []
        sms = _sms_gateway(sent, slow="+2")
        disp = _dispatcher([sms], retry=_fast_retry(attempt_timeout_secs=0.3))

        report = await disp.dispatch(_event())

        assert report.attempt_count("sms") == 3
        assert sent.count("+1") == 1
        assert sent.count("+2") == 3

    async def test_sms_slow_recipient_inside_request_budget(self) -> None:
        sent: list[str] = []
        sms = _sms_gateway(sent, slow="+2", timeout_secs=0.2)
        disp = _dispatcher([sms], retry=_fast_retry(attempt_timeout_secs=0.3))

        report = await disp.dispatch(_event())

        assert report.delivered is True
        assert report.acked_providers() == ["sms"]
        assert sent == ["+1", "+2"]

    def test_backoff_schedule(self) -> None:
        disp = _dispatcher([], retry=RetryConfig())
        delays = [disp.backoff_delay(n) for n in range(1, 8)]
        assert delays == [2, 4, 8, 16, 32, 64, 90]


# ── Required / best-effort and escalation ──────────────────────


class TestEscalation:
    async def test_required_fails_best_effort_acks(self, tmp_path: Path) -> None:
        sms = FakeProvider("sms", required=True, fail="transient")
        push = FakeProvider("push", required=False)
        log_path = tmp_path / "escalations.jsonl"
        escalator = Escalator(log_path=log_path)
        disp = _dispatcher([sms, push], escalator=escalator)

        report = await disp.dispatch(_event())

        assert report.delivered is False
        assert report.total_failure is True
        assert escalator.count == 1
        record = json.loads(log_path.read_text().splitlines()[0])
        assert record["acked_best_effort"] == ["push"]
        assert record["failures"]["sms"] == "gateway busy"
        assert record["alert"]["dedup_key"] == "k1"

    async def test_required_timeouts_escalate_despite_best_effort(self) -> None:
        sms = FakeProvider("sms", required=True, fail="slow")
        push = FakeProvider("push", required=False)
        escalator = Escalator()
        disp = _dispatcher(
            [sms, push],
            escalator=escalator,
            retry=_fast_retry(max_attempts=3, attempt_timeout_secs=0.05),
        )

        report = await disp.dispatch(_event())

        assert sms.calls == 3
        assert len(push.sent) == 1
        assert report.total_failure is True
        assert escalator.count == 1

    async def test_one_required_ack_is_enough(self) -> None:
        a = FakeProvider("a", fail="permanent")
        b = FakeProvider("b")
        escalator = Escalator()
        disp = _dispatcher([a, b], escalator=escalator)
        report = await disp.dispatch(_event())
        assert report.delivered is True
        assert escalator.count == 0

    async def test_best_effort_failure_not_escalated(self) -> None:
        sms = FakeProvider("sms")
        push = FakeProvider("push", required=False, fail="transient")
        escalator = Escalator()
        disp = _dispatcher([sms, push], escalator=escalator)
        report = await disp.dispatch(_event())
        assert report.delivered is True
        assert escalator.count == 0

    async def test_side_channel_notified(self) -> None:
        side = FakeProvider("side", required=False)
        escalator = Escalator(side_channel=side)
        disp = _dispatcher([FakeProvider("sms", fail="permanent")], escalator=escalator)

        await disp.dispatch(_event())

        assert len(side.sent) == 1
        assert side.sent[0].title.startswith("UNDELIVERED: ")


# ── Queue, ordering, threads ───────────────────────────────────


class TestQueue:
    async def test_fifo_order(self) -> None:
        p = FakeProvider()
        disp = _dispatcher([p])
        await disp.start()
        for key in ("a", "b", "c", "d"):
            disp.enqueue(_event(key))
        await disp.join()
        await disp.stop()
        assert [e.dedup_key for e in p.sent] == ["a", "b", "c", "d"]

    async def test_enqueue_from_worker_thread(self) -> None:
        p = FakeProvider()
        disp = _dispatcher([p])
        await disp.start()

        threads = [
            threading.Thread(target=disp.enqueue, args=(_event(f"t{n}"),))
            for n in range(5)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        for _ in range(50):
            if len(p.sent) == 5:
                break
            await asyncio.sleep(0.01)
        await disp.stop()

        assert sorted(e.dedup_key for e in p.sent) == [f"t{n}" for n in range(5)]

    async def test_intake_transition_enqueued(self) -> None:
        p = FakeProvider()
        disp = _dispatcher([p])
        intake = AlertIntake(disp)
        await disp.start()
        event = intake.on_transition(
            StateTransition(
                monitor_name="internet",
                from_status=MonitorStatus.HEALTHY,
                to_status=MonitorStatus.FAILED,
            )
        )
        await disp.join()
        await disp.stop()
        assert p.sent == [event]

    async def test_initial_healthy_announced_as_recovery(self) -> None:
        p = FakeProvider()
        disp = _dispatcher([p])
        event = AlertIntake(disp).on_transition(
            StateTransition(
                monitor_name="internet",
                from_status=MonitorStatus.UNKNOWN,
                to_status=MonitorStatus.HEALTHY,
            )
        )
        assert event is not None
        assert event.severity == AlertSeverity.RECOVERY
        assert disp.pending == 1

    async def test_initial_healthy_can_be_silenced(self) -> None:
        disp = _dispatcher([FakeProvider()])
        intake = AlertIntake(disp, announce_initial_healthy=False)
        with patch("guardpost.alerts.intake.logger") as mock_log:
            event = intake.on_transition(
                StateTransition(
                    monitor_name="internet",
                    from_status=MonitorStatus.UNKNOWN,
                    to_status=MonitorStatus.HEALTHY,
                )
            )
        assert event is None
        assert disp.pending == 0
        assert mock_log.info.call_args.args[0] == "initial_healthy_not_announced"

    async def test_consumer_survives_dispatch_error(self) -> None:
        p = FakeProvider()
        disp = _dispatcher([p])
        await disp.start()
        with patch.object(disp, "_log_decision", side_effect=[RuntimeError("bug"), None]):
            disp.enqueue(_event("a"))
            disp.enqueue(_event("b"))
            await disp.join()
        await disp.stop()
        assert [e.dedup_key for e in p.sent] == ["b"]


# ── Shutdown ────────────────────────────────────────────────────


class TestShutdown:
    async def test_stop_abandons_retries_and_queue(self) -> None:
        p = FakeProvider(fail="transient")
        escalator = Escalator()
        disp = _dispatcher(
            [p],
            escalator=escalator,
            retry=_fast_retry(max_attempts=8, base_delay_secs=30),
        )
        await disp.start()
        disp.enqueue(_event("a"))
        disp.enqueue(_event("b"))
        await asyncio.sleep(0.05)

        with patch("guardpost.alerts.dispatcher.logger") as mock_log:
            started = time.monotonic()
            await disp.stop()

        assert time.monotonic() - started < 2.0
        assert p.calls == 1
        events = [c.args[0] for c in mock_log.warning.call_args_list]
        assert "delivery_retries_abandoned" in events
        abandoned = [
            (c.kwargs["dedup_key"], c.kwargs["reason"])
            for c in mock_log.warning.call_args_list
            if c.args[0] == "alert_abandoned_on_shutdown"
        ]
        assert abandoned == [("a", "retries abandoned"), ("b", "queued at shutdown")]
        assert escalator.count == 0
        assert disp.stats()["total_failures"] == 0

    async def test_abandoned_report_not_escalated(self) -> None:
        p = FakeProvider(fail="transient")
        escalator = Escalator()
        disp = _dispatcher([p], escalator=escalator)
        disp._stopping.set()

        report = await disp.dispatch(_event())

        assert report.abandoned is True
        assert report.total_failure is False
        assert escalator.count == 0

    async def test_enqueue_after_stop_is_dropped(self) -> None:
        p = FakeProvider()
        disp = _dispatcher([p])
        await disp.start()
        await disp.stop()

        with patch("guardpost.alerts.dispatcher.logger") as mock_log:
            disp.enqueue(_event())

        assert mock_log.warning.call_args.args[0] == "alert_abandoned_on_shutdown"
        assert disp.pending == 0
        assert p.calls == 0

    async def test_close_closes_providers(self) -> None:
        p = FakeProvider()
        disp = _dispatcher([p])
        await disp.start()
        await disp.close()
        assert p.closed is True
        assert not disp.running

    async def test_stop_idempotent(self) -> None:
        disp = _dispatcher([FakeProvider()])
        await disp.start()
        await disp.stop()
        await disp.stop()
        assert not disp.running
