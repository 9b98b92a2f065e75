"""Alert normalization, dedup, and delivery subsystem."""

from guardpost.alerts.dispatcher import AlertDispatcher
from guardpost.alerts.escalation import Escalator
from guardpost.alerts.factory import build_provider, create_alert_stack
from guardpost.alerts.intake import AlertIntake
from guardpost.alerts.normalizer import classify_payload, dedup_key, normalize
from guardpost.alerts.providers import (
    Provider,
    PushoverProvider,
    SmsGatewayProvider,
    TextAnywhereProvider,
)
from guardpost.alerts.suppression import SuppressionTable
from guardpost.alerts.types import (
    AlertEvent,
    DeliveryAck,
    DeliveryAttempt,
    DeliveryStatus,
    DispatchReport,
)

__all__ = [
    "AlertDispatcher",
    "AlertEvent",
    "AlertIntake",
    "DeliveryAck",
    "DeliveryAttempt",
    "DeliveryStatus",
    "DispatchReport",
    "Escalator",
    "Provider",
    "PushoverProvider",
    "SmsGatewayProvider",
    "SuppressionTable",
    "TextAnywhereProvider",
    "build_provider",
    "classify_payload",
    "create_alert_stack",
    "dedup_key",
    "normalize",
]
