#!/usr/bin/env python3
"""Main entrypoint — wires monitors, alert dispatch and webhooks, runs until stopped.

Usage::

    # Run with default config
    python scripts/run.py

    # Custom config file
    python scripts/run.py --config config/settings.yaml

    # Override log level
    python scripts/run.py --log-level DEBUG
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys

import structlog
from aiohttp import web
from pydantic import ValidationError

from guardpost.alerts.factory import create_alert_stack
from guardpost.core.config import load_settings
from guardpost.core.exceptions import ConfigError
from guardpost.core.logging import setup_logging
from guardpost.monitors.heartbeat import HeartbeatPinger
from guardpost.monitors.registry import build_monitors
from guardpost.webhooks.server import start_webhook_server

logger = structlog.get_logger(__name__)


async def run(args: argparse.Namespace) -> int:
    """Start all components and run until interrupted."""
    try:
        settings = load_settings(args.config)
    except ValidationError as exc:
        print(f"Invalid configuration:\n{exc}", file=sys.stderr)
        return 2
    setup_logging(level=args.log_level)

    # ── Startup validation (refuse to run with ambiguous state) ──
    try:
        monitors = build_monitors(settings)
        dispatcher, intake = create_alert_stack(settings.alerts)
    except ConfigError as exc:
        logger.error("startup_refused", error=str(exc))
        return 2

    if len(monitors) == 0 and not settings.webhooks.enabled:
        logger.error("nothing_to_run")
        print(
            "No monitors or webhooks enabled. Configure at least one monitor "
            "or set webhooks.enabled in config/settings.yaml.",
            file=sys.stderr,
        )
        await dispatcher.close()
        return 1

    for monitor in monitors:
        monitor.on_transition(intake.on_transition)

    logger.info(
        "guardpost_starting",
        monitors=monitors.names,
        providers=[p.name for p in dispatcher.providers],
        webhooks=settings.webhooks.enabled,
        heartbeat=settings.heartbeat.enabled,
    )

    # ── Start everything ─────────────────────────────────────────
    await dispatcher.start()
    await monitors.start_all()

    runner: web.AppRunner | None = None
    if settings.webhooks.enabled:
        runner = await start_webhook_server(intake, settings.webhooks)

    heartbeat: HeartbeatPinger | None = None
    if settings.heartbeat.enabled and settings.heartbeat.url:
        heartbeat = HeartbeatPinger(settings.heartbeat)
        await heartbeat.start()

    # ── Wait for shutdown signal ─────────────────────────────────
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("shutdown_signal_received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Windows: signal handlers not supported on ProactorEventLoop
            pass

    try:
        await stop_event.wait()
    except KeyboardInterrupt:
        logger.info("keyboard_interrupt")

    # ── Graceful shutdown ────────────────────────────────────────
    logger.info("guardpost_shutting_down")

    if runner is not None:
        await runner.cleanup()
    if heartbeat is not None:
        await heartbeat.stop()
    await monitors.stop_all()
    await dispatcher.close()

    logger.info(
        "guardpost_stopped",
        escalations=dispatcher.escalator.count,
        **dispatcher.stats(),
    )
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Run the guardpost health monitor and alert dispatcher.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to settings YAML (default: config/settings.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level override: DEBUG, INFO, WARNING, ERROR",
    )
    args = parser.parse_args()

    code = asyncio.run(run(args))
    sys.exit(code)


if __name__ == "__main__":
    main()
