"""Outbound heartbeat — pings a remote cron/healthcheck URL on an interval.

The remote service alerts independently when pings stop arriving, which
covers the case where this whole process (or the site's uplink) is down.
After a failed ping the next one is sent at half the interval.
"""

from __future__ import annotations

import asyncio

import httpx
import structlog

from guardpost.core.config import HeartbeatConfig

logger = structlog.stdlib.get_logger()


class HeartbeatPinger:
    """Background task that GETs ``config.url`` every ``interval_secs``."""

    def __init__(
        self,
        config: HeartbeatConfig,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._client = client
        self._owns_client = client is None
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._ping_count = 0
        self._failure_count = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def ping_count(self) -> int:
        return self._ping_count

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def error_interval_secs(self) -> float:
        return max(self._config.interval_secs / 2, 1.0)

    async def ping(self) -> bool:
        """Send one heartbeat. Returns True on a 2xx response."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.timeout_secs)
            )
        self._ping_count += 1
        try:
            resp = await self._client.get(self._config.url)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._failure_count += 1
            logger.warning("heartbeat_bad_status", status=exc.response.status_code)
            return False
        except httpx.HTTPError as exc:
            self._failure_count += 1
            logger.warning("heartbeat_error", error=str(exc))
            return False
        logger.debug("heartbeat_sent")
        return True

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("heartbeat_started", interval_secs=self._config.interval_secs)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _loop(self) -> None:
        while self._running:
            try:
                ok = await self.ping()
            except asyncio.CancelledError:
                return
            except Exception:
                logger.exception("heartbeat_loop_error")
                ok = False
            delay = self._config.interval_secs if ok else self.error_interval_secs
            await asyncio.sleep(delay)
