"""Domain types for the alerting / delivery subsystem."""

from __future__ import annotations

import time
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from guardpost.core.types import AlertSeverity


class AlertEvent(BaseModel):
    """Normalised alert, the unit the dispatcher queues and delivers."""

    model_config = ConfigDict(frozen=True)

    dedup_key: str
    severity: AlertSeverity
    title: str
    body: str = ""
    created_at: float = Field(default_factory=time.time)
    source: str = ""


class DeliveryStatus(StrEnum):
    """State of a single delivery attempt."""

    PENDING = "PENDING"
    ACKED = "ACKED"
    FAILED = "FAILED"


class DeliveryAttempt(BaseModel):
    """Bookkeeping for one provider attempt on one event (in memory only)."""

    provider_name: str
    attempt_number: int
    status: DeliveryStatus = DeliveryStatus.PENDING
    reason: str = ""
    attempted_at: float = Field(default_factory=time.time)


class DeliveryAck(BaseModel):
    """Positive acknowledgement returned by a provider."""

    provider_name: str
    reference: str = ""


class DispatchReport(BaseModel):
    """What happened to one AlertEvent inside the dispatcher."""

    event: AlertEvent
    suppressed: bool = False
    delivered: bool = False
    total_failure: bool = False
    # Shutdown cut retries short; not escalated.
    abandoned: bool = False
    attempts: dict[str, list[DeliveryAttempt]] = Field(default_factory=dict)

    def acked_providers(self) -> list[str]:
        return [
            name
            for name, attempts in self.attempts.items()
            if attempts and attempts[-1].status == DeliveryStatus.ACKED
        ]

    def attempt_count(self, provider_name: str) -> int:
        return len(self.attempts.get(provider_name, []))
