"""Surfacing of total delivery failures outside the normal provider set."""

from __future__ import annotations

import asyncio
from pathlib import Path

import structlog

from guardpost.alerts.providers import Provider
from guardpost.alerts.types import AlertEvent, DispatchReport
from guardpost.core.logging import close_record_logger, record_logger

logger = structlog.get_logger(__name__)


class Escalator:
    """Records undeliverable alerts where an operator can still find them.

    Every escalation is logged at critical level and written as one JSON
    line to ``log_path`` through a dedicated record logger. If a
    side-channel provider is configured it gets a single best-effort
    attempt.
    """

    def __init__(
        self,
        log_path: str | Path | None = None,
        side_channel: Provider | None = None,
        side_channel_timeout_secs: float = 15.0,
    ) -> None:
        self._log_path = Path(log_path) if log_path else None
        self._record_name = f"guardpost.escalations:{self._log_path}"
        self._side_channel = side_channel
        self._side_channel_timeout_secs = side_channel_timeout_secs
        self._count = 0

    @property
    def count(self) -> int:
        return self._count

    @property
    def side_channel(self) -> Provider | None:
        return self._side_channel

    async def escalate(self, report: DispatchReport) -> None:
        self._count += 1
        event = report.event
        failures = {
            name: attempts[-1].reason
            for name, attempts in report.attempts.items()
            if attempts
        }
        logger.critical(
            "total_delivery_failure",
            dedup_key=event.dedup_key,
            severity=event.severity.name,
            title=event.title,
            failures=failures,
        )
        if self._log_path is not None:
            try:
                await asyncio.to_thread(self._write_record, report, failures)
            except OSError:
                logger.exception("escalation_log_write_error", path=str(self._log_path))
        if self._side_channel is not None:
            await self._notify_side_channel(event)

    def _write_record(self, report: DispatchReport, failures: dict[str, str]) -> None:
        assert self._log_path is not None
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        record_logger(self._record_name, self._log_path).critical(
            "undelivered_alert",
            alert=report.event.model_dump(mode="json"),
            failures=failures,
            acked_best_effort=report.acked_providers(),
        )

    async def _notify_side_channel(self, event: AlertEvent) -> None:
        assert self._side_channel is not None
        notice = event.model_copy(
            update={
                "title": f"UNDELIVERED: {event.title}",
                "body": "Primary alert providers failed.\n" + event.body,
            }
        )
        try:
            await asyncio.wait_for(
                self._side_channel.send(notice),
                timeout=self._side_channel_timeout_secs,
            )
        except Exception:
            logger.exception("escalation_side_channel_error", provider=self._side_channel.name)

    async def close(self) -> None:
        if self._side_channel is not None:
            await self._side_channel.close()
        if self._log_path is not None:
            close_record_logger(self._record_name)
