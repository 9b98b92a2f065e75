"""Exception hierarchy for guardpost."""

from __future__ import annotations


class GuardpostError(Exception):
    """Base exception for all guardpost errors."""


class ConfigError(GuardpostError):
    """Configuration is invalid; the process must refuse to start."""


class DuplicateMonitorError(ConfigError):
    """Two monitors were configured with the same name."""


class DeliveryError(GuardpostError):
    """A provider failed to deliver an alert."""

    def __init__(self, reason: str, provider_name: str = "") -> None:
        super().__init__(reason)
        self.reason = reason
        self.provider_name = provider_name


class TransientDeliveryError(DeliveryError):
    """Retryable failure (network error, timeout, rate limit, 5xx)."""


class PermanentDeliveryError(DeliveryError):
    """Non-retryable failure (invalid recipient, rejected payload)."""
