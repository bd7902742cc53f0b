from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from .config import Settings
from .models import CHANNELS, Channel


@dataclass(frozen=True)
class ChannelContent:
    user_id: str
    obligation_id: str
    tier: str
    subject: str
    body: str


@dataclass(frozen=True)
class ChannelReceipt:
    message_id: str | None = None


class ChannelDeliveryError(Exception):
    """Raised by a channel sender when a message could not be handed to the provider."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class ChannelSender(Protocol):
    def send(self, recipient: str, content: ChannelContent) -> ChannelReceipt: ...


class StubChannelSender:
    def __init__(self, *, channel: Channel, enabled: bool = True, fail: bool = False) -> None:
        self._channel = channel
        self._enabled = enabled
        self._fail = fail

    def send(self, recipient: str, content: ChannelContent) -> ChannelReceipt:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            raise ChannelDeliveryError("channel_disabled", f"{self._channel} live delivery is disabled")

        if self._fail or "fail" in recipient.lower():
            raise ChannelDeliveryError("stub_delivery_failed", "Stub sender forced failure for recipient")

        return ChannelReceipt(
            message_id=f"stub-{self._channel}-{content.obligation_id}-{content.tier}-{int(attempted_at.timestamp())}"
        )


class HttpChannelSender:
    """Delivers one channel's messages through the HTTP messaging gateway."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        channel: Channel,
        timeout_seconds: int = 10,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._channel = channel
        self._timeout_seconds = timeout_seconds

    def send(self, recipient: str, content: ChannelContent) -> ChannelReceipt:
        request_payload = {
            "channel": self._channel,
            "recipient": recipient,
            "subject": content.subject,
            "message": content.body,
            "idempotency_key": f"{content.user_id}:{content.obligation_id}:{content.tier}:{self._channel}",
        }
        response_data = self._post(request_payload)
        message_id = response_data.get("message_id")
        return ChannelReceipt(message_id=message_id if isinstance(message_id, str) else None)

    def _post(self, body: dict[str, str]) -> dict[str, object]:
        url = f"{self._base_url}/v1/messages/send"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise ChannelDeliveryError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise ChannelDeliveryError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise ChannelDeliveryError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc


def build_channel_senders(settings: Settings) -> dict[Channel, ChannelSender]:
    if settings.channel_sender_type == "http":
        return {
            channel: HttpChannelSender(
                base_url=settings.channel_api_base_url,
                api_key=settings.channel_api_key,
                channel=channel,
                timeout_seconds=settings.channel_timeout_seconds,
            )
            for channel in CHANNELS
        }
    failing = set(settings.stub_failing_channels)
    return {
        channel: StubChannelSender(channel=channel, enabled=settings.channels_enabled, fail=channel in failing)
        for channel in CHANNELS
    }


def mask_contact_target(contact_target: str, channel: Channel) -> str:
    normalized = contact_target.strip()
    if not normalized:
        return "***"

    if channel == "email" and "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"

    if channel in {"sms", "whatsapp"}:
        digits = "".join(ch for ch in normalized if ch.isdigit())
        if len(digits) >= 4:
            return f"***{digits[-4:]}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"
