"""Core module — config, types, logging, exceptions."""

from guardpost.core.config import Settings, get_settings, load_settings, reset_settings
from guardpost.core.exceptions import (
    ConfigError,
    DeliveryError,
    DuplicateMonitorError,
    GuardpostError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from guardpost.core.logging import setup_logging
from guardpost.core.types import (
    AlertSeverity,
    Incident,
    MonitorState,
    MonitorStatus,
    Outcome,
    StateTransition,
)

__all__ = [
    "AlertSeverity",
    "ConfigError",
    "DeliveryError",
    "DuplicateMonitorError",
    "GuardpostError",
    "Incident",
    "MonitorState",
    "MonitorStatus",
    "Outcome",
    "PermanentDeliveryError",
    "Settings",
    "StateTransition",
    "TransientDeliveryError",
    "get_settings",
    "load_settings",
    "reset_settings",
    "setup_logging",
]
