"""Builds monitors from config and enforces one monitor per name."""

from __future__ import annotations

from collections.abc import Iterator

import structlog

from guardpost.core.config import (
    BaseMonitorConfig,
    HttpMonitorConfig,
    PowerMonitorConfig,
    Settings,
    SystemctlMonitorConfig,
    TcpMonitorConfig,
)
from guardpost.core.exceptions import ConfigError, DuplicateMonitorError
from guardpost.monitors.base import Monitor, Probe
from guardpost.monitors.probes import HttpProbe, PowerProbe, SystemctlProbe, TcpProbe

logger = structlog.stdlib.get_logger()


class MonitorRegistry:
    """Name-keyed set of monitors; a repeated name is a startup error."""

    def __init__(self) -> None:
        self._monitors: dict[str, Monitor] = {}

    def add(self, monitor: Monitor) -> None:
        if monitor.name in self._monitors:
            raise DuplicateMonitorError(f"monitor {monitor.name!r} is configured twice")
        self._monitors[monitor.name] = monitor

    def get(self, name: str) -> Monitor | None:
        return self._monitors.get(name)

    @property
    def names(self) -> list[str]:
        return list(self._monitors)

    def __len__(self) -> int:
        return len(self._monitors)

    def __iter__(self) -> Iterator[Monitor]:
        return iter(self._monitors.values())

    async def start_all(self) -> None:
        for monitor in self._monitors.values():
            await monitor.start()

    async def stop_all(self) -> None:
        for monitor in self._monitors.values():
            try:
                await monitor.stop()
            except Exception:
                logger.exception("monitor_stop_error", monitor=monitor.name)


def build_probe(config: BaseMonitorConfig) -> Probe:
    """Instantiate the probe for a monitor config."""
    if isinstance(config, TcpMonitorConfig):
        return TcpProbe(config.host, config.port, timeout_secs=config.timeout_secs)
    if isinstance(config, SystemctlMonitorConfig):
        return SystemctlProbe(
            config.unit, restart=config.restart, timeout_secs=config.timeout_secs
        )
    if isinstance(config, PowerMonitorConfig):
        return PowerProbe(config.path, expected=config.expected)
    if isinstance(config, HttpMonitorConfig):
        return HttpProbe(
            config.url,
            timeout_secs=config.timeout_secs,
            expected_status=config.expected_status,
        )
    raise ConfigError(f"unsupported monitor kind for {config.name!r}")


def build_monitor(config: BaseMonitorConfig, probe: Probe | None = None) -> Monitor:
    timeout = config.timeout_secs
    if isinstance(config, SystemctlMonitorConfig) and config.restart:
        # is-active and restart each get the full timeout.
        timeout *= 2
    return Monitor(
        name=config.name,
        probe=probe or build_probe(config),
        interval_secs=config.interval_secs,
        timeout_secs=timeout,
        jitter_secs=config.jitter_secs,
        fail_threshold=config.fail_threshold,
        recovery_threshold=config.recovery_threshold,
        degrade_threshold=config.degrade_threshold,
        failed_message=config.failed_message,
        recovered_message=config.recovered_message,
    )


def build_monitors(settings: Settings) -> MonitorRegistry:
    """Build every enabled, non-disabled monitor.

    Raises:
        DuplicateMonitorError: if two monitor configs share a name, even
            when one of them is disabled.
    """
    registry = MonitorRegistry()
    disabled = set(settings.disabled_monitors)
    seen: set[str] = set()

    for cfg in settings.monitors:
        if cfg.name in seen:
            raise DuplicateMonitorError(f"monitor {cfg.name!r} is configured twice")
        seen.add(cfg.name)

        if not cfg.enabled or cfg.name in disabled:
            logger.warning("monitor_disabled", monitor=cfg.name, kind=cfg.kind)
            continue
        registry.add(build_monitor(cfg))
        logger.debug("monitor_built", monitor=cfg.name, kind=cfg.kind)

    return registry
