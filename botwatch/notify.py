"""
Status notifications for the supervised worker.

Fans a status message out to every active channel (Telegram chats and
Discord-style webhooks). Dispatches are throttled per status kind, not per
channel, so a flapping worker cannot flood every configured destination.
"""

import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, model_validator

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"

COLOR_UP = 0x00FF00
COLOR_DOWN = 0xFF0000


class StatusKind(str, Enum):
    UP = "UP"
    DOWN = "DOWN"
    RESOURCE = "RESOURCE"


class ChannelType(str, Enum):
    TELEGRAM = "telegram"
    WEBHOOK = "webhook"


class NotificationChannel(BaseModel):
    """A configured notification destination."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: ChannelType
    active: bool = True
    token: Optional[str] = Field(None, description="Telegram bot token")
    chat_id: Optional[str] = Field(None, alias="chatId", description="Telegram chat id")
    url: Optional[str] = Field(None, description="Webhook URL")
    disable_notification: bool = Field(
        False, alias="disableNotification", description="Deliver silently (do not disturb)"
    )

    @model_validator(mode="before")
    @classmethod
    def _stringify_chat_id(cls, data):
        # Telegram chat ids are often written as bare numbers in config files
        if isinstance(data, dict):
            for key in ("chatId", "chat_id"):
                if isinstance(data.get(key), int):
                    data = {**data, key: str(data[key])}
        return data

    @model_validator(mode="after")
    def _check_credentials(self):
        if self.type == ChannelType.TELEGRAM and not (self.token and self.chat_id):
            raise ValueError("telegram channels need both token and chatId")
        if self.type == ChannelType.WEBHOOK and not self.url:
            raise ValueError("webhook channels need a url")
        return self

    def describe(self) -> str:
        if self.type == ChannelType.TELEGRAM:
            return f"telegram:{self.chat_id}"
        return f"webhook:{httpx.URL(self.url).host}"


class NotificationDispatcher:
    """Sends throttled status notifications to all active channels."""

    def __init__(
        self,
        channels: list[NotificationChannel],
        throttle_minutes: float = 10,
        timeout: float = 10.0,
        footer: str = "botwatch monitor",
        clock: Callable[[], float] = time.monotonic,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.channels = list(channels)
        self.throttle_seconds = throttle_minutes * 60
        self.timeout = timeout
        self.footer = footer
        self._clock = clock
        self._transport = transport
        self._last_sent: dict[StatusKind, float] = {}

    @property
    def active_channels(self) -> list[NotificationChannel]:
        return [c for c in self.channels if c.active]

    def last_sent(self, kind: StatusKind) -> float | None:
        """Clock reading of the last dispatch attempt for a status kind."""
        return self._last_sent.get(kind)

    async def notify(self, detail: str, kind: StatusKind) -> bool:
        """
        Send a status message to every active channel.

        Returns False when the message was dropped by the throttle window.
        Delivery failures are logged per channel and never raised.
        """
        now = self._clock()
        last = self._last_sent.get(kind)
        if last is not None and now - last < self.throttle_seconds:
            logger.debug(f"Throttled {kind.value} notification: {detail}")
            return False

        # Record before any await so a concurrent notify sees the window
        self._last_sent[kind] = now

        channels = self.active_channels
        if not channels:
            return True

        sent_at = datetime.now(timezone.utc)
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for channel in channels:
                try:
                    await self._deliver(client, channel, detail, kind, sent_at)
                except Exception as e:
                    logger.error(f"Failed to notify {channel.describe()}: {delivery_error(e)}")

        return True

    async def _deliver(
        self,
        client: httpx.AsyncClient,
        channel: NotificationChannel,
        detail: str,
        kind: StatusKind,
        sent_at: datetime,
    ):
        if channel.type == ChannelType.TELEGRAM:
            url = f"{TELEGRAM_API_URL}/bot{channel.token}/sendMessage"
            payload = telegram_payload(channel, detail, kind)
        else:
            url = channel.url
            payload = webhook_payload(detail, kind, sent_at, self.footer)

        response = await client.post(url, json=payload)
        response.raise_for_status()
        logger.debug(f"Sent {kind.value} notification to {channel.describe()}")


def telegram_payload(channel: NotificationChannel, detail: str, kind: StatusKind) -> dict:
    return {
        "chat_id": channel.chat_id,
        "text": f"*Bot Status: {kind.value}*\n{detail}",
        "parse_mode": "Markdown",
        "disable_notification": channel.disable_notification,
    }


def webhook_payload(detail: str, kind: StatusKind, sent_at: datetime, footer: str) -> dict:
    return {
        "embeds": [
            {
                "title": f"🤖 Bot Status: {kind.value}",
                "description": detail,
                "color": COLOR_UP if kind == StatusKind.UP else COLOR_DOWN,
                "timestamp": sent_at.isoformat(),
                "footer": {"text": footer},
            }
        ]
    }


def delivery_error(error: Exception) -> str:
    """Describe a failed delivery without the request URL, which embeds channel credentials."""
    if isinstance(error, httpx.HTTPStatusError):
        return f"HTTP {error.response.status_code}"
    return type(error).__name__
