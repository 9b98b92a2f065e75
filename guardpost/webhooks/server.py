"""Inbound incident webhooks over HTTP.

Runs as an ``aiohttp`` web server alongside the monitors.
Exposes:
- ``POST /webhooks/{source}`` → parse JSON body into an Incident and submit it
- ``GET /health``            → liveness

Each source authenticates with its own token in the ``Authorization``
header (a bare token or ``Bearer <token>``).
"""

from __future__ import annotations

import hmac
from typing import Any

import structlog
from aiohttp import web

from guardpost.alerts.intake import AlertIntake
from guardpost.core.config import IncidentSourceConfig, WebhookConfig
from guardpost.core.types import Incident

logger = structlog.get_logger(__name__)

_SOURCES_KEY: web.AppKey[dict[str, IncidentSourceConfig]] = web.AppKey("sources")
_INTAKE_KEY: web.AppKey[AlertIntake] = web.AppKey("intake")


def _error(status: int, message: str) -> web.Response:
    return web.json_response(
        {"success": False, "error_message": message},
        status=status,
    )


def _check_token(request: web.Request, expected: str) -> bool:
    """Constant-time comparison of the Authorization header."""
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        header = header[7:]
    if not expected or not header:
        return False
    return hmac.compare_digest(header.encode("utf-8"), expected.encode("utf-8"))


def build_incident(source: IncidentSourceConfig, body: dict[str, Any]) -> Incident:
    """Map a webhook body onto an Incident using the source's field names."""
    lowered = {str(k).lower(): v for k, v in body.items()}
    category = lowered.get(source.category_field.lower())
    message = lowered.get(source.message_field.lower())
    payload: str | dict[str, Any] = str(message) if message not in (None, "") else body
    return Incident(
        source=source.name,
        payload=payload,
        severity=source.severity,
        category=str(category) if category not in (None, "") else None,
    )


async def _handle_webhook(request: web.Request) -> web.Response:
    name = request.match_info["source"]
    source = request.app[_SOURCES_KEY].get(name)
    if source is None:
        return _error(404, "Unknown webhook source")

    if "Authorization" not in request.headers:
        return _error(400, "Missing required header")
    if not _check_token(request, source.token.get_secret_value()):
        logger.warning("webhook_auth_failed", source=name, remote=request.remote)
        return _error(401, "Invalid Authorization header")

    try:
        body = await request.json()
    except ValueError:
        return _error(400, "Invalid request body")
    if not isinstance(body, dict):
        return _error(400, "Invalid request body")

    logger.info("webhook_received", source=name)
    incident = build_incident(source, body)
    event = request.app[_INTAKE_KEY].submit(incident)
    return web.json_response({
        "status": "success",
        "message": f"{name} webhook processed",
        "dedup_key": event.dedup_key,
    })


async def _handle_health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


def create_webhook_app(
    intake: AlertIntake,
    sources: list[IncidentSourceConfig],
) -> web.Application:
    """Create the aiohttp web application."""
    app = web.Application(client_max_size=64 * 1024)
    app[_SOURCES_KEY] = {s.name: s for s in sources}
    app[_INTAKE_KEY] = intake
    app.router.add_post("/webhooks/{source}", _handle_webhook)
    app.router.add_get("/health", _handle_health)
    return app


async def start_webhook_server(
    intake: AlertIntake,
    config: WebhookConfig,
) -> web.AppRunner:
    """Start the webhook listener and return its runner (call ``cleanup()`` to stop)."""
    app = create_webhook_app(intake, config.sources)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, config.host, config.port)
    await site.start()
    logger.info(
        "webhook_server_started",
        host=config.host,
        port=config.port,
        sources=[s.name for s in config.sources],
    )
    return runner
