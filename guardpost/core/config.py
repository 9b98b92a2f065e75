"""Pydantic settings loaded from YAML configuration."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal, Union

import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

from guardpost.core.types import AlertSeverity

_settings: Settings | None = None

_DEFAULT_CONFIG_PATH = Path("config/settings.yaml")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"
    # Optional persistent log file, written in addition to stderr.
    file: str = ""


# ── Monitors ─────────────────────────────────────────────────────


class BaseMonitorConfig(BaseModel):
    """Schedule and debounce settings shared by every monitor kind."""

    name: str
    enabled: bool = True
    interval_secs: float = Field(default=60.0, gt=0)
    jitter_secs: float = Field(default=0.0, ge=0)
    timeout_secs: float = Field(default=10.0, gt=0)
    fail_threshold: int = Field(default=3, ge=1)
    recovery_threshold: int = Field(default=2, ge=1)
    degrade_threshold: int | None = None
    failed_message: str = ""
    recovered_message: str = ""

    @model_validator(mode="after")
    def _check_thresholds(self) -> BaseMonitorConfig:
        if self.degrade_threshold is not None and not (
            1 <= self.degrade_threshold < self.fail_threshold
        ):
            raise ValueError(
                f"monitor {self.name!r}: degrade_threshold must be in "
                f"[1, fail_threshold) (got {self.degrade_threshold}, "
                f"fail_threshold={self.fail_threshold})"
            )
        return self


class TcpMonitorConfig(BaseMonitorConfig):
    """TCP reachability (internet link, CCTV NVR, router)."""

    kind: Literal["tcp"] = "tcp"
    host: str
    port: int = Field(default=80, ge=1, le=65535)


class SystemctlMonitorConfig(BaseMonitorConfig):
    """systemd unit liveness, with optional restart on failure."""

    kind: Literal["systemctl"] = "systemctl"
    unit: str
    restart: bool = False


class PowerMonitorConfig(BaseMonitorConfig):
    """Mains power state read from a sysfs / GPIO value file."""

    kind: Literal["power"] = "power"
    path: str = "/sys/class/power_supply/AC/online"
    expected: str = "1"


class HttpMonitorConfig(BaseMonitorConfig):
    """Local HTTP service liveness."""

    kind: Literal["http"] = "http"
    url: str
    expected_status: int | None = None


MonitorConfig = Annotated[
    Union[
        TcpMonitorConfig,
        SystemctlMonitorConfig,
        PowerMonitorConfig,
        HttpMonitorConfig,
    ],
    Field(discriminator="kind"),
]


# ── Providers ────────────────────────────────────────────────────


class BaseProviderConfig(BaseModel):
    """Fields shared by every notification provider."""

    name: str = ""
    enabled: bool = True
    required: bool = True


class PushoverConfig(BaseProviderConfig):
    """Pushover push-notification API."""

    kind: Literal["pushover"] = "pushover"
    api_url: str = "https://api.pushover.net/1/messages.json"
    app_token: SecretStr = SecretStr("")
    user_key: SecretStr = SecretStr("")
    sound: str = ""


class SmsRecipient(BaseModel):
    """A phone number and the lowest severity it should be texted for."""

    number: str
    min_severity: AlertSeverity = AlertSeverity.INFO

    @field_validator("min_severity", mode="before")
    @classmethod
    def _parse_severity(cls, v: object) -> AlertSeverity:
        return AlertSeverity.parse(v)

    def wants(self, severity: AlertSeverity) -> bool:
        return severity >= self.min_severity


class SmsGatewayConfig(BaseProviderConfig):
    """Self-hosted HTTP SMS gateway (modem on the local network)."""

    kind: Literal["sms_gateway"] = "sms_gateway"
    base_url: str = "http://127.0.0.1:3000"
    auth: SecretStr = SecretStr("")
    recipients: list[SmsRecipient] = Field(default_factory=list)
    max_length: int = Field(default=160, ge=1)

    @field_validator("recipients", mode="before")
    @classmethod
    def _bare_numbers(cls, v: object) -> object:
        # A bare string is a recipient who gets every severity.
        if isinstance(v, list):
            return [{"number": r} if isinstance(r, str) else r for r in v]
        return v


class TextAnywhereConfig(BaseProviderConfig):
    """TextAnywhere HTTP SMS service."""

    kind: Literal["text_anywhere"] = "text_anywhere"
    api_url: str = "https://ws.textanywhere.net/HTTPRX/SendSMSEx.aspx"
    originator: str = ""
    username: str = ""
    password: SecretStr = SecretStr("")
    destinations: list[str] = Field(default_factory=list)
    # 1 = test mode, 2 = live delivery.
    connection: int = 2


ProviderConfig = Annotated[
    Union[PushoverConfig, SmsGatewayConfig, TextAnywhereConfig],
    Field(discriminator="kind"),
]


class RetryConfig(BaseModel):
    """Per-provider retry with capped exponential backoff."""

    max_attempts: int = Field(default=8, ge=1)
    base_delay_secs: float = Field(default=2.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_delay_secs: float = Field(default=90.0, ge=0)
    attempt_timeout_secs: float = Field(default=15.0, gt=0)


class EscalationConfig(BaseModel):
    """Where total delivery failures are surfaced."""

    log_path: str = "logs/escalations.jsonl"
    side_channel: ProviderConfig | None = None


class AlertsConfig(BaseModel):
    """Alert dispatch configuration."""

    suppression_window_secs: float = Field(default=300.0, ge=0)
    min_delivery_severity: AlertSeverity = AlertSeverity.RECOVERY
    # UNKNOWN -> HEALTHY after startup is a RECOVERY; False keeps it log-only.
    announce_initial_healthy: bool = True
    shutdown_timeout_secs: float = Field(default=30.0, gt=0)
    retry: RetryConfig = RetryConfig()
    providers: list[ProviderConfig] = Field(default_factory=list)
    escalation: EscalationConfig = EscalationConfig()

    @field_validator("min_delivery_severity", mode="before")
    @classmethod
    def _parse_severity(cls, v: object) -> AlertSeverity:
        return AlertSeverity.parse(v)

    @model_validator(mode="after")
    def _name_providers(self) -> AlertsConfig:
        seen: set[str] = set()
        for p in self.providers:
            if not p.name:
                p.name = p.kind
            if p.name in seen:
                raise ValueError(f"duplicate provider name {p.name!r}")
            seen.add(p.name)
        return self


# ── Webhooks / heartbeat ─────────────────────────────────────────


class IncidentSourceConfig(BaseModel):
    """A webhook caller allowed to report incidents."""

    name: str
    token: SecretStr = SecretStr("")
    severity: AlertSeverity = AlertSeverity.CRITICAL
    category_field: str = "category"
    message_field: str = "message"

    @field_validator("severity", mode="before")
    @classmethod
    def _parse_severity(cls, v: object) -> AlertSeverity:
        return AlertSeverity.parse(v)


class WebhookConfig(BaseModel):
    """Inbound incident webhook listener."""

    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 9050
    sources: list[IncidentSourceConfig] = Field(default_factory=list)


class HeartbeatConfig(BaseModel):
    """Outbound dead-man's-switch ping (cron / healthcheck service)."""

    enabled: bool = False
    url: str = ""
    interval_secs: float = Field(default=180.0, gt=0)
    timeout_secs: float = Field(default=10.0, gt=0)


class Settings(BaseModel):
    """Root settings container."""

    logging: LoggingConfig = LoggingConfig()
    monitors: list[MonitorConfig] = Field(default_factory=list)
    disabled_monitors: list[str] = Field(default_factory=list)
    alerts: AlertsConfig = AlertsConfig()
    webhooks: WebhookConfig = WebhookConfig()
    heartbeat: HeartbeatConfig = HeartbeatConfig()


def load_settings(path: str | Path | None = None) -> Settings:
    """Load settings from a YAML file and cache globally.

    Args:
        path: Path to YAML config. Defaults to config/settings.yaml.

    Returns:
        Parsed Settings instance.
    """
    global _settings  # noqa: PLW0603

    config_path = Path(path) if path else _DEFAULT_CONFIG_PATH

    data: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f)
            if isinstance(raw, dict):
                data = raw

    _settings = Settings(**data)
    return _settings


def get_settings() -> Settings:
    """Return the cached settings, loading defaults if not yet loaded."""
    global _settings  # noqa: PLW0603
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Reset the cached settings (useful for testing)."""
    global _settings  # noqa: PLW0603
    _settings = None
