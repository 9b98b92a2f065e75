"""Inbound incident webhooks."""

from guardpost.webhooks.server import build_incident, create_webhook_app, start_webhook_server

__all__ = ["build_incident", "create_webhook_app", "start_webhook_server"]
