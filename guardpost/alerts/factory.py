"""Convenience factory for wiring the alert stack from config."""

from __future__ import annotations

from guardpost.alerts.dispatcher import AlertDispatcher
from guardpost.alerts.escalation import Escalator
from guardpost.alerts.intake import AlertIntake
from guardpost.alerts.providers import (
    Provider,
    PushoverProvider,
    SmsGatewayProvider,
    TextAnywhereProvider,
)
from guardpost.alerts.suppression import SuppressionTable
from guardpost.core.config import (
    AlertsConfig,
    BaseProviderConfig,
    PushoverConfig,
    SmsGatewayConfig,
    TextAnywhereConfig,
)
from guardpost.core.exceptions import ConfigError

# Provider HTTP requests end before the dispatcher cancels the attempt.
_REQUEST_TIMEOUT_SHARE = 0.8


def build_provider(config: BaseProviderConfig, timeout_secs: float = 15.0) -> Provider:
    """Instantiate the provider for a provider config."""
    if isinstance(config, PushoverConfig):
        return PushoverProvider(config, timeout_secs)
    if isinstance(config, SmsGatewayConfig):
        return SmsGatewayProvider(config, timeout_secs)
    if isinstance(config, TextAnywhereConfig):
        return TextAnywhereProvider(config, timeout_secs)
    raise ConfigError(f"unsupported provider config {type(config).__name__}")


def create_alert_stack(
    config: AlertsConfig,
    providers: list[Provider] | None = None,
) -> tuple[AlertDispatcher, AlertIntake]:
    """Build a dispatcher + intake from config.

    Args:
        config: Alert settings.
        providers: Pre-built providers; built from ``config.providers``
            when None.

    Returns:
        (dispatcher, intake)

    Raises:
        ConfigError: if no enabled provider is marked required. With no
            required provider a total delivery failure could never be
            detected, so startup is refused.
    """
    timeout = config.retry.attempt_timeout_secs
    request_timeout = timeout * _REQUEST_TIMEOUT_SHARE
    if providers is None:
        providers = [
            build_provider(p, request_timeout) for p in config.providers if p.enabled
        ]

    if not any(p.required for p in providers):
        raise ConfigError("at least one enabled provider must be marked required")

    side_channel: Provider | None = None
    if config.escalation.side_channel is not None:
        side_channel = build_provider(config.escalation.side_channel, request_timeout)
        side_channel.required = False

    escalator = Escalator(
        log_path=config.escalation.log_path or None,
        side_channel=side_channel,
        side_channel_timeout_secs=timeout,
    )
    dispatcher = AlertDispatcher(
        providers=providers,
        suppression=SuppressionTable(window_secs=config.suppression_window_secs),
        retry=config.retry,
        escalator=escalator,
        min_delivery_severity=config.min_delivery_severity,
        shutdown_timeout_secs=config.shutdown_timeout_secs,
    )
    return dispatcher, AlertIntake(dispatcher, config.announce_initial_healthy)
