"""Periodic health probes with debounced state transitions."""

from guardpost.monitors.base import Monitor, Probe, StatusTracker
from guardpost.monitors.heartbeat import HeartbeatPinger
from guardpost.monitors.probes import HttpProbe, PowerProbe, SystemctlProbe, TcpProbe
from guardpost.monitors.registry import MonitorRegistry, build_monitor, build_monitors

__all__ = [
    "HeartbeatPinger",
    "HttpProbe",
    "Monitor",
    "MonitorRegistry",
    "PowerProbe",
    "Probe",
    "StatusTracker",
    "SystemctlProbe",
    "TcpProbe",
    "build_monitor",
    "build_monitors",
]
