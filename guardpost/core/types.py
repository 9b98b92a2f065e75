"""Domain types for probes, monitor state and incidents."""

from __future__ import annotations

import time
from enum import IntEnum, StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AlertSeverity(IntEnum):
    """Alert severity, ordered so comparisons work naturally."""

    INFO = 0
    RECOVERY = 1
    WARNING = 2
    CRITICAL = 3

    @classmethod
    def parse(cls, value: object) -> AlertSeverity:
        """Accept a member, its int value or its (case-insensitive) name."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str) and not value.isdigit():
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"unknown severity {value!r}") from None
        try:
            return cls(int(value))  # type: ignore[arg-type]
        except TypeError:
            raise ValueError(f"unknown severity {value!r}") from None


class MonitorStatus(StrEnum):
    """Debounced status of a monitored resource."""

    UNKNOWN = "UNKNOWN"
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    FAILED = "FAILED"


class Outcome(BaseModel):
    """Result of a single probe execution."""

    ok: bool
    detail: str = ""
    timestamp: float = Field(default_factory=time.time)


class MonitorState(BaseModel):
    """Per-monitor debounce state, owned by that monitor's loop."""

    name: str
    current_status: MonitorStatus = MonitorStatus.UNKNOWN
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    last_transition_at: float = Field(default_factory=time.time)
    last_alert_sent_at: float | None = None


class StateTransition(BaseModel):
    """Emitted when a monitor's gated status changes."""

    model_config = ConfigDict(frozen=True)

    monitor_name: str
    from_status: MonitorStatus
    to_status: MonitorStatus
    timestamp: float = Field(default_factory=time.time)
    detail: str = ""
    # Operator-facing text configured on the monitor, e.g. "NVR offline".
    message: str = ""


class Incident(BaseModel):
    """Externally reported event (webhook), not derived from polling."""

    model_config = ConfigDict(frozen=True)

    source: str
    payload: str | dict[str, Any] = ""
    received_at: float = Field(default_factory=time.time)
    severity: AlertSeverity | None = None
    category: str | None = None

    @field_validator("severity", mode="before")
    @classmethod
    def _parse_severity(cls, v: object) -> AlertSeverity | None:
        if v is None:
            return None
        return AlertSeverity.parse(v)
