"""Pure functions that convert transitions and incidents into AlertEvents."""

from __future__ import annotations

import hashlib
import re
from typing import Any

from guardpost.alerts.types import AlertEvent
from guardpost.core.types import AlertSeverity, Incident, MonitorStatus, StateTransition

_UNCLASSIFIED = "unclassified"
_CATEGORY_MAX_LEN = 64

# Payload keys consulted, in order, when an incident carries no category.
_CATEGORY_KEYS = ("category", "event_type", "event", "type", "input1")

_DIGITS = re.compile(r"\d+")
_WHITESPACE = re.compile(r"\s+")


def dedup_key(*parts: str) -> str:
    """Stable identity for an alert; never includes a timestamp."""
    joined = "\x1f".join(p.strip().lower() for p in parts)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:24]


def classify_payload(payload: str | dict[str, Any]) -> str:
    """Coarse category of an incident payload.

    Mappings use the first known category-like key. Text is lower-cased
    with digit runs masked, so messages differing only in ids or clock
    times classify the same.
    """
    if isinstance(payload, dict):
        lowered = {str(k).lower(): v for k, v in payload.items()}
        for key in _CATEGORY_KEYS:
            value = lowered.get(key)
            if value not in (None, ""):
                return _normalise_text(str(value))
        return _UNCLASSIFIED
    return _normalise_text(payload)


def _normalise_text(text: str) -> str:
    text = _DIGITS.sub("#", text.lower())
    text = _WHITESPACE.sub(" ", text).strip()
    return text[:_CATEGORY_MAX_LEN] or _UNCLASSIFIED


def _payload_text(payload: str | dict[str, Any]) -> str:
    if isinstance(payload, str):
        return payload
    return ", ".join(f"{k}={v}" for k, v in payload.items())


# ── Transitions ─────────────────────────────────────────────────


def _transition_severity(t: StateTransition) -> AlertSeverity:
    if t.to_status == MonitorStatus.FAILED:
        return AlertSeverity.CRITICAL
    if t.to_status == MonitorStatus.DEGRADED:
        return AlertSeverity.WARNING
    # Includes the first confirmation after startup (UNKNOWN -> HEALTHY).
    if t.to_status == MonitorStatus.HEALTHY and t.from_status != MonitorStatus.HEALTHY:
        return AlertSeverity.RECOVERY
    return AlertSeverity.INFO


def normalize_transition(t: StateTransition) -> AlertEvent:
    """Convert a StateTransition to an AlertEvent."""
    severity = _transition_severity(t)
    title = f"{t.monitor_name} is {t.to_status.value}"
    lines = [line for line in (t.message, t.detail) if line]
    lines.append(f"was {t.from_status.value}")
    return AlertEvent(
        dedup_key=dedup_key("monitor", t.monitor_name, t.to_status.value),
        severity=severity,
        title=title,
        body="\n".join(lines),
        created_at=t.timestamp,
        source=t.monitor_name,
    )


# ── Incidents ───────────────────────────────────────────────────


def normalize_incident(incident: Incident) -> AlertEvent:
    """Convert an externally reported Incident to an AlertEvent."""
    severity = incident.severity if incident.severity is not None else AlertSeverity.CRITICAL
    category = (
        _normalise_text(incident.category)
        if incident.category
        else classify_payload(incident.payload)
    )
    return AlertEvent(
        dedup_key=dedup_key("incident", incident.source, category),
        severity=severity,
        title=f"{incident.source} incident: {category}",
        body=_payload_text(incident.payload),
        created_at=incident.received_at,
        source=incident.source,
    )


def normalize(item: StateTransition | Incident) -> AlertEvent:
    """Normalize either input kind; safe to call from any thread or task."""
    if isinstance(item, StateTransition):
        return normalize_transition(item)
    if isinstance(item, Incident):
        return normalize_incident(item)
    raise TypeError(f"cannot normalize {type(item).__name__}")
