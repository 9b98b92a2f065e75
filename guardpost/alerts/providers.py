"""Notification providers — Pushover push and SMS delivery."""

from __future__ import annotations

import abc
import asyncio
import itertools
import json
from typing import Any

import aiohttp
import structlog

from guardpost.alerts.types import AlertEvent, DeliveryAck
from guardpost.core.config import PushoverConfig, SmsGatewayConfig, TextAnywhereConfig
from guardpost.core.exceptions import PermanentDeliveryError, TransientDeliveryError
from guardpost.core.types import AlertSeverity

logger = structlog.get_logger(__name__)

SMS_MAX_LENGTH = 160

# Events whose accepted SMS recipients are remembered for retries.
_ACCEPTED_CACHE_SIZE = 128

# Pushover priority keyed by severity (-1 quiet, 0 normal, 1 high).
_PUSHOVER_PRIORITY: dict[AlertSeverity, int] = {
    AlertSeverity.INFO: -1,
    AlertSeverity.RECOVERY: 0,
    AlertSeverity.WARNING: 0,
    AlertSeverity.CRITICAL: 1,
}


def format_sms(event: AlertEvent, max_length: int = SMS_MAX_LENGTH) -> str:
    """Single-line SMS text, truncated to ``max_length``."""
    first_line = event.body.splitlines()[0] if event.body else ""
    text = f"[{event.severity.name}] {event.title}"
    if first_line:
        text = f"{text}: {first_line}"
    if len(text) > max_length:
        text = text[: max_length - 3].rstrip() + "..."
    return text


def _is_retryable_status(status: int) -> bool:
    return status == 429 or status >= 500


class Provider(abc.ABC):
    """Base class for alert delivery transports.

    ``required`` providers must deliver or the dispatcher escalates;
    best-effort providers are attempted but may fail quietly.
    """

    def __init__(self, name: str, required: bool = True) -> None:
        self.name = name
        self.required = required

    @abc.abstractmethod
    async def send(self, event: AlertEvent) -> DeliveryAck:
        """Deliver one event.

        Raises:
            TransientDeliveryError: retryable failure.
            PermanentDeliveryError: retrying this event cannot succeed.
        """

    async def close(self) -> None:
        """Release resources (HTTP sessions, etc.)."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, required={self.required})"


class HttpProvider(Provider):
    """Provider with a lazily created aiohttp session."""

    def __init__(
        self,
        name: str,
        required: bool = True,
        timeout_secs: float = 15.0,
    ) -> None:
        super().__init__(name, required)
        self._timeout_secs = timeout_secs
        self._timeout = aiohttp.ClientTimeout(total=timeout_secs)
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def _post(self, url: str, **kwargs: Any) -> tuple[int, str]:
        """POST and return (status, body); network errors become transient."""
        try:
            session = self._get_session()
            async with session.post(url, **kwargs) as resp:
                return resp.status, await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientDeliveryError(
                f"{type(exc).__name__}: {exc}", provider_name=self.name
            ) from exc

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None


class PushoverProvider(HttpProvider):
    """Delivers alerts as Pushover push notifications."""

    def __init__(self, config: PushoverConfig, timeout_secs: float = 15.0) -> None:
        super().__init__(config.name or "pushover", config.required, timeout_secs)
        self._api_url = config.api_url
        self._token = config.app_token.get_secret_value()
        self._user_key = config.user_key.get_secret_value()
        self._sound = config.sound

    def build_payload(self, event: AlertEvent) -> dict[str, str]:
        payload = {
            "token": self._token,
            "user": self._user_key,
            "title": f"[{event.severity.name}] {event.title}",
            "message": event.body or event.title,
            "priority": str(_PUSHOVER_PRIORITY.get(event.severity, 0)),
            "timestamp": str(int(event.created_at)),
        }
        if self._sound:
            payload["sound"] = self._sound
        return payload

    async def send(self, event: AlertEvent) -> DeliveryAck:
        status, body = await self._post(self._api_url, data=self.build_payload(event))
        if 200 <= status < 300:
            try:
                data = json.loads(body)
            except ValueError:
                data = {}
            if isinstance(data, dict) and data.get("status") == 1:
                return DeliveryAck(provider_name=self.name, reference=str(data.get("request", "")))
            raise TransientDeliveryError(
                f"unexpected pushover response: {body[:200]}", provider_name=self.name
            )
        if _is_retryable_status(status):
            raise TransientDeliveryError(f"pushover HTTP {status}", provider_name=self.name)
        raise PermanentDeliveryError(
            f"pushover rejected message (HTTP {status}): {body[:200]}",
            provider_name=self.name,
        )


class SmsGatewayProvider(HttpProvider):
    """Sends SMS through a self-hosted HTTP gateway, one request per recipient.

    Recipients are texted concurrently and only for severities at or above
    their ``min_severity``. Any recipient accepting the message counts as
    delivered. Numbers that accepted an event are remembered, so a retry of
    the same event only goes to the ones still outstanding.
    """

    def __init__(self, config: SmsGatewayConfig, timeout_secs: float = 15.0) -> None:
        super().__init__(config.name or "sms_gateway", config.required, timeout_secs)
        self._url = config.base_url.rstrip("/") + "/sms/send"
        self._auth = config.auth.get_secret_value()
        self._recipients = list(config.recipients)
        self._max_length = config.max_length
        self._accepted: dict[tuple[str, float], set[str]] = {}

    def _accepted_for(self, event: AlertEvent) -> set[str]:
        key = (event.dedup_key, event.created_at)
        accepted = self._accepted.get(key)
        if accepted is None:
            accepted = self._accepted[key] = set()
            while len(self._accepted) > _ACCEPTED_CACHE_SIZE:
                del self._accepted[next(iter(self._accepted))]
        return accepted

    async def _send_one(
        self, number: str, text: str, headers: dict[str, str], accepted: set[str]
    ) -> int:
        try:
            status, body = await self._post(
                self._url,
                json={"to": number, "content": text},
                headers=headers,
            )
        except TransientDeliveryError as exc:
            logger.warning("sms_gateway_send_error", recipient=number, error=exc.reason)
            return 0
        if 200 <= status < 300:
            accepted.add(number)
        else:
            logger.warning(
                "sms_gateway_send_failed",
                recipient=number,
                status=status,
                body=body[:200],
            )
        return status

    async def send(self, event: AlertEvent) -> DeliveryAck:
        if not self._recipients:
            raise PermanentDeliveryError("no SMS recipients configured", provider_name=self.name)

        targets = [r.number for r in self._recipients if r.wants(event.severity)]
        if not targets:
            logger.debug(
                "sms_gateway_no_recipients_for_severity",
                severity=event.severity.name,
                dedup_key=event.dedup_key,
            )
            return DeliveryAck(provider_name=self.name, reference="")

        accepted = self._accepted_for(event)
        outstanding = [n for n in targets if n not in accepted]
        text = format_sms(event, self._max_length)
        headers = {"Authorization": self._auth} if self._auth else {}
        statuses: list[int] = []

        if outstanding:
            tasks = [
                asyncio.create_task(self._send_one(n, text, headers, accepted))
                for n in outstanding
            ]
            try:
                done, _ = await asyncio.wait(tasks, timeout=self._timeout_secs)
            finally:
                for task in tasks:
                    task.cancel()
            for task, number in zip(tasks, outstanding):
                if task in done:
                    statuses.append(task.result())
                else:
                    logger.warning("sms_gateway_send_timeout", recipient=number)
                    statuses.append(0)

        delivered = [n for n in targets if n in accepted]
        if delivered:
            return DeliveryAck(provider_name=self.name, reference=",".join(delivered))
        if all(400 <= s < 500 and s != 429 for s in statuses):
            raise PermanentDeliveryError(
                f"gateway rejected all recipients: {statuses}", provider_name=self.name
            )
        raise TransientDeliveryError(
            f"no SMS recipient accepted: {statuses}", provider_name=self.name
        )


class TextAnywhereProvider(HttpProvider):
    """Legacy TextAnywhere HTTP SMS service.

    The response body lists ``number:status`` pairs; status ``1`` means
    accepted.
    """

    def __init__(self, config: TextAnywhereConfig, timeout_secs: float = 15.0) -> None:
        super().__init__(config.name or "text_anywhere", config.required, timeout_secs)
        self._api_url = config.api_url
        self._originator = config.originator
        self._username = config.username
        self._password = config.password.get_secret_value()
        self._destinations = ",".join(config.destinations)
        self._connection = config.connection
        self._counter = itertools.count()

    def build_form(self, body: str) -> dict[str, str]:
        return {
            "Client_ID": self._username,
            "Client_Pass": self._password,
            "Originator": self._originator,
            "Client_Ref": f"alert-{next(self._counter)}",
            "Billing_Ref": "guardpost",
            "Connection": str(self._connection),
            "OType": "1",
            "DestinationEx": self._destinations,
            "Body": body,
            "SMS_Type": "0",
            "Reply_Type": "0",
        }

    @staticmethod
    def parse_result(text: str) -> list[tuple[str, str]]:
        pairs: list[tuple[str, str]] = []
        for item in text.split(","):
            number, sep, status = item.partition(":")
            if sep:
                pairs.append((number.strip(), status.strip()))
        return pairs

    async def send(self, event: AlertEvent) -> DeliveryAck:
        body = f"[{event.severity.name}] {event.title}"
        if len(body) > SMS_MAX_LENGTH:
            raise PermanentDeliveryError("SMS body is too long", provider_name=self.name)

        status, text = await self._post(self._api_url, data=self.build_form(body))
        if not 200 <= status < 300:
            raise TransientDeliveryError(f"textanywhere HTTP {status}", provider_name=self.name)

        accepted = []
        for number, result in self.parse_result(text):
            if result == "1":
                accepted.append(number)
            else:
                logger.warning("textanywhere_destination_failed", number=number, status=result)

        # Every destination failing means the account or message is bad.
        if not accepted:
            raise PermanentDeliveryError(
                f"textanywhere accepted no destinations: {text[:200]}",
                provider_name=self.name,
            )
        return DeliveryAck(provider_name=self.name, reference=",".join(accepted))
