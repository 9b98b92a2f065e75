"""Concrete synchronous probes — TCP reachability, systemd units, power, HTTP."""

from __future__ import annotations

import socket
import subprocess
from pathlib import Path

import httpx
import structlog

from guardpost.core.types import Outcome
from guardpost.monitors.base import Probe

logger = structlog.stdlib.get_logger()


class TcpProbe(Probe):
    """Succeeds when a TCP connection to ``host:port`` opens within the timeout.

    Used for the internet link (a well-known public endpoint) and for LAN
    devices such as the CCTV NVR.
    """

    def __init__(self, host: str, port: int = 80, timeout_secs: float = 10.0) -> None:
        self._host = host
        self._port = port
        self._timeout_secs = timeout_secs

    @property
    def target(self) -> str:
        return f"{self._host}:{self._port}"

    def check(self) -> Outcome:
        try:
            with socket.create_connection(
                (self._host, self._port), timeout=self._timeout_secs
            ):
                return Outcome(ok=True, detail=f"connected to {self.target}")
        except OSError as exc:
            return Outcome(ok=False, detail=f"connect to {self.target} failed: {exc}")


class SystemctlProbe(Probe):
    """Checks a systemd unit with ``systemctl is-active``.

    With ``restart`` set, an inactive unit gets one ``systemctl restart``
    attempt per failed poll, and each systemctl call gets the full timeout.
    The poll still counts as a failure; a successful restart shows up as
    success on the next poll.
    """

    def __init__(
        self,
        unit: str,
        restart: bool = False,
        timeout_secs: float = 10.0,
        systemctl: str = "systemctl",
    ) -> None:
        self._unit = unit
        self._restart = restart
        self._timeout_secs = timeout_secs
        self._systemctl = systemctl

    def _run(self, action: str) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            [self._systemctl, action, self._unit],
            capture_output=True,
            text=True,
            timeout=self._timeout_secs,
            check=False,
        )

    def check(self) -> Outcome:
        result = self._run("is-active")
        state = result.stdout.strip() or "unknown"
        if result.returncode == 0:
            return Outcome(ok=True, detail=f"{self._unit} is {state}")

        detail = f"{self._unit} is {state}"
        if self._restart:
            try:
                restarted = self._run("restart")
            except subprocess.TimeoutExpired:
                logger.warning(
                    "systemctl_restart_timeout", unit=self._unit, timeout_secs=self._timeout_secs
                )
                return Outcome(ok=False, detail=f"{detail}; restart timed out")
            if restarted.returncode == 0:
                logger.info("systemctl_unit_restarted", unit=self._unit)
                detail += "; restart issued"
            else:
                err = restarted.stderr.strip() or f"exit {restarted.returncode}"
                logger.warning("systemctl_restart_failed", unit=self._unit, error=err)
                detail += f"; restart failed: {err}"
        return Outcome(ok=False, detail=detail)


class PowerProbe(Probe):
    """Reads a sysfs power-supply or GPIO value file.

    Mains present when the stripped file content equals ``expected``
    (``/sys/class/power_supply/AC/online`` reads ``1`` on mains).
    """

    def __init__(self, path: str | Path, expected: str = "1") -> None:
        self._path = Path(path)
        self._expected = expected

    def check(self) -> Outcome:
        value = self._path.read_text().strip()
        if value == self._expected:
            return Outcome(ok=True, detail="on mains power")
        return Outcome(ok=False, detail=f"power input reads {value!r}, running on battery")


class HttpProbe(Probe):
    """GETs a URL; ok on any 2xx, or exactly ``expected_status`` when set."""

    def __init__(
        self,
        url: str,
        timeout_secs: float = 10.0,
        expected_status: int | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self._url = url
        self._expected_status = expected_status
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout_secs))

    def check(self) -> Outcome:
        try:
            resp = self._client.get(self._url)
        except httpx.HTTPError as exc:
            return Outcome(ok=False, detail=f"GET {self._url} failed: {exc}")

        if self._expected_status is not None:
            ok = resp.status_code == self._expected_status
        else:
            ok = resp.is_success
        return Outcome(ok=ok, detail=f"GET {self._url} -> {resp.status_code}")

    def close(self) -> None:
        self._client.close()
