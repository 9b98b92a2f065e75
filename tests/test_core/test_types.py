"""Tests for core domain types — severity parsing, immutability, defaults."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from guardpost.core.types import (
    AlertSeverity,
    Incident,
    MonitorState,
    MonitorStatus,
    StateTransition,
)


class TestAlertSeverity:
    def test_ordering(self) -> None:
        assert AlertSeverity.INFO < AlertSeverity.RECOVERY < AlertSeverity.WARNING
        assert AlertSeverity.WARNING < AlertSeverity.CRITICAL

    def test_parse_name_case_insensitive(self) -> None:
        assert AlertSeverity.parse("critical") == AlertSeverity.CRITICAL
        assert AlertSeverity.parse(" Warning ") == AlertSeverity.WARNING

    def test_parse_int_and_member(self) -> None:
        assert AlertSeverity.parse(1) == AlertSeverity.RECOVERY
        assert AlertSeverity.parse("3") == AlertSeverity.CRITICAL
        assert AlertSeverity.parse(AlertSeverity.INFO) is AlertSeverity.INFO

    def test_parse_unknown_raises(self) -> None:
        with pytest.raises(ValueError):
            AlertSeverity.parse("alarm")


class TestMonitorState:
    def test_starts_unknown(self) -> None:
        state = MonitorState(name="internet")
        assert state.current_status == MonitorStatus.UNKNOWN
        assert state.consecutive_failures == 0
        assert state.consecutive_successes == 0
        assert state.last_alert_sent_at is None


class TestImmutability:
    def test_transition_frozen(self) -> None:
        t = StateTransition(
            monitor_name="cctv",
            from_status=MonitorStatus.HEALTHY,
            to_status=MonitorStatus.FAILED,
        )
        with pytest.raises(ValidationError):
            t.to_status = MonitorStatus.HEALTHY  # type: ignore[misc]

    def test_incident_frozen(self) -> None:
        inc = Incident(source="cctv", payload="offline")
        with pytest.raises(ValidationError):
            inc.source = "alarm"  # type: ignore[misc]


class TestIncident:
    def test_severity_from_name(self) -> None:
        inc = Incident(source="alarm", payload={}, severity="warning")  # type: ignore[arg-type]
        assert inc.severity == AlertSeverity.WARNING

    def test_severity_defaults_none(self) -> None:
        inc = Incident(source="alarm")
        assert inc.severity is None
        assert inc.category is None
