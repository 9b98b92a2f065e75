"""Entry point where transitions and incidents join the alert queue."""

from __future__ import annotations

import structlog

from guardpost.alerts.dispatcher import AlertDispatcher
from guardpost.alerts.normalizer import normalize
from guardpost.alerts.types import AlertEvent
from guardpost.core.types import Incident, MonitorStatus, StateTransition

logger = structlog.get_logger(__name__)


class AlertIntake:
    """Normalizes inputs and enqueues them on the dispatcher.

    Both methods are synchronous and never wait on delivery, so they are
    safe to call from monitor callbacks, HTTP handlers, or other threads.

    With ``announce_initial_healthy`` off, a monitor's first confirmation
    after startup (UNKNOWN -> HEALTHY) is logged but not enqueued.
    """

    def __init__(
        self,
        dispatcher: AlertDispatcher,
        announce_initial_healthy: bool = True,
    ) -> None:
        self._dispatcher = dispatcher
        self._announce_initial_healthy = announce_initial_healthy

    def on_transition(self, transition: StateTransition) -> AlertEvent | None:
        event = normalize(transition)
        if (
            not self._announce_initial_healthy
            and transition.from_status == MonitorStatus.UNKNOWN
            and transition.to_status == MonitorStatus.HEALTHY
        ):
            logger.info(
                "initial_healthy_not_announced",
                monitor=transition.monitor_name,
                dedup_key=event.dedup_key,
            )
            return None
        self._dispatcher.enqueue(event)
        return event

    def submit(self, incident: Incident) -> AlertEvent:
        """Incident source interface used by the webhook layer."""
        event = normalize(incident)
        logger.info(
            "incident_submitted",
            source=incident.source,
            dedup_key=event.dedup_key,
            severity=event.severity.name,
        )
        self._dispatcher.enqueue(event)
        return event
