"""
PaySys Approvals - Notification Dispatcher

Best-effort delivery of composed notifications over push and the two chat-bot
channels. Delivery runs in background tasks so a transition returns to its
caller without waiting; failures are retried with exponential backoff and then
logged. Nothing in here raises into the approval path.

Providers:
- MockPushProvider: logs and records pushes (development / pilot default)
- WebPushGatewayProvider: POSTs to a web-push gateway service
- TelegramProvider: Telegram Bot API (chat bot A)
- WhatsAppGatewayProvider: HTTP gateway in front of the WhatsApp client (chat bot B)
"""

import os
import uuid
import base64
import asyncio
import logging
from collections import deque
from enum import Enum
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional, Dict, List, Any, Iterable, Set

import httpx

from services.notification_composer import Channel, Notification

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

NOTIFY_MAX_ATTEMPTS = int(os.environ.get("NOTIFY_MAX_ATTEMPTS", "3"))
NOTIFY_BACKOFF_SECONDS = float(os.environ.get("NOTIFY_BACKOFF_SECONDS", "0.5"))
NOTIFY_REQUEST_TIMEOUT = float(os.environ.get("NOTIFY_REQUEST_TIMEOUT", "10"))
NOTIFY_HISTORY_SIZE = int(os.environ.get("NOTIFY_HISTORY_SIZE", "500"))  # kept failures / mock pushes


class PushProvider(str, Enum):
    """Supported push providers."""
    MOCK = "mock"
    GATEWAY = "gateway"


CURRENT_PUSH_PROVIDER = PushProvider(os.environ.get("PUSH_PROVIDER", "mock").lower())
PUSH_GATEWAY_URL = os.environ.get("PUSH_GATEWAY_URL", "")
TELEGRAM_BOT_TOKEN = os.environ.get("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_API_BASE = os.environ.get("TELEGRAM_API_BASE", "https://api.telegram.org")
WHATSAPP_GATEWAY_URL = os.environ.get("WHATSAPP_GATEWAY_URL", "")
WHATSAPP_GATEWAY_TOKEN = os.environ.get("WHATSAPP_GATEWAY_TOKEN", "")


@dataclass
class DispatchResult:
    """Result of a single delivery attempt (or of the last attempt after retries)."""
    success: bool
    channel: str
    target: str
    message_id: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 1
    timestamp: str = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# PROVIDERS
# =============================================================================

class MockPushProvider:
    """
    Records pushes in memory and, when a database is given, in 'push_logs'.
    """

    channel = Channel.PUSH.value

    def __init__(self, db=None, history_size: int = None):
        self.db = db
        self._sent: deque = deque(maxlen=history_size or NOTIFY_HISTORY_SIZE)

    async def send(self, target: str, message: str, attachment: bytes = None, title: str = None) -> DispatchResult:
        message_id = f"mock_{uuid.uuid4().hex[:12]}"
        record = {
            "message_id": message_id,
            "provider": "mock",
            "target": target,
            "title": title,
            "body": message,
            "has_attachment": attachment is not None,
            "sent_at": datetime.now(timezone.utc).isoformat(),
        }
        logger.info("[MOCK PUSH] To: %s | Title: %s | ID: %s", target, title, message_id)
        self._sent.append(record)

        if self.db is not None:
            try:
                await self.db.push_logs.insert_one(dict(record))
            except Exception as e:
                logger.warning("Failed to log push to MongoDB: %s", str(e))

        return DispatchResult(success=True, channel=self.channel, target=target, message_id=message_id)

    def get_sent(self) -> List[Dict[str, Any]]:
        return list(self._sent)


class _HttpProvider:
    """Shared httpx plumbing for HTTP-backed providers."""

    channel: str = ""

    def __init__(self, timeout: float = None, transport: httpx.AsyncBaseTransport = None):
        self.timeout = timeout or NOTIFY_REQUEST_TIMEOUT
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _result(self, target: str, resp: httpx.Response, message_id: str = None) -> DispatchResult:
        if 200 <= resp.status_code < 300:
            return DispatchResult(success=True, channel=self.channel, target=target, message_id=message_id)
        return DispatchResult(
            success=False,
            channel=self.channel,
            target=target,
            error=f"HTTP {resp.status_code}: {resp.text[:200]}"
        )


class WebPushGatewayProvider(_HttpProvider):
    """Hands pushes to a gateway that owns the VAPID keys and subscriptions."""

    channel = Channel.PUSH.value

    def __init__(self, gateway_url: str = None, **kwargs):
        super().__init__(**kwargs)
        self.gateway_url = gateway_url or PUSH_GATEWAY_URL

    async def send(self, target: str, message: str, attachment: bytes = None, title: str = None) -> DispatchResult:
        if not self.gateway_url:
            return DispatchResult(success=False, channel=self.channel, target=target, error="PUSH_GATEWAY_URL not configured")
        kind, _, value = target.partition(":")
        async with self._client() as client:
            resp = await client.post(
                self.gateway_url,
                json={"type": kind.upper(), "value": value, "title": title, "body": message}
            )
        return self._result(target, resp)


class TelegramProvider(_HttpProvider):
    """Telegram Bot API: sendMessage, or sendDocument when an attachment is given."""

    channel = Channel.TELEGRAM.value

    def __init__(self, token: str = None, api_base: str = None, **kwargs):
        super().__init__(**kwargs)
        self.token = token if token is not None else TELEGRAM_BOT_TOKEN
        self.api_base = (api_base or TELEGRAM_API_BASE).rstrip("/")

    async def send(self, target: str, message: str, attachment: bytes = None, title: str = None) -> DispatchResult:
        if not self.token:
            return DispatchResult(success=False, channel=self.channel, target=target, error="TELEGRAM_BOT_TOKEN not configured")
        base = f"{self.api_base}/bot{self.token}"
        async with self._client() as client:
            if attachment is not None:
                resp = await client.post(
                    f"{base}/sendDocument",
                    data={"chat_id": target, "caption": message[:1024]},
                    files={"document": ("document.pdf", attachment)}
                )
            else:
                resp = await client.post(f"{base}/sendMessage", json={"chat_id": target, "text": message})

        message_id = None
        if resp.status_code == 200:
            payload = resp.json()
            if not payload.get("ok", False):
                return DispatchResult(
                    success=False, channel=self.channel, target=target,
                    error=payload.get("description", "Telegram returned ok=false")
                )
            message_id = str((payload.get("result") or {}).get("message_id", ""))
        return self._result(target, resp, message_id)


class WhatsAppGatewayProvider(_HttpProvider):
    """HTTP gateway that relays to the WhatsApp client session."""

    channel = Channel.WHATSAPP.value

    def __init__(self, gateway_url: str = None, token: str = None, **kwargs):
        super().__init__(**kwargs)
        self.gateway_url = gateway_url or WHATSAPP_GATEWAY_URL
        self.token = token if token is not None else WHATSAPP_GATEWAY_TOKEN

    async def send(self, target: str, message: str, attachment: bytes = None, title: str = None) -> DispatchResult:
        if not self.gateway_url:
            return DispatchResult(success=False, channel=self.channel, target=target, error="WHATSAPP_GATEWAY_URL not configured")
        body = {"to": target, "message": message}
        if attachment is not None:
            body["attachment"] = base64.b64encode(attachment).decode("ascii")
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        async with self._client() as client:
            resp = await client.post(self.gateway_url, json=body, headers=headers)
        return self._result(target, resp)


def build_default_providers(db=None) -> Dict[str, Any]:
    """Providers from environment configuration. Chat channels need credentials."""
    providers: Dict[str, Any] = {}
    if CURRENT_PUSH_PROVIDER == PushProvider.GATEWAY:
        providers[Channel.PUSH.value] = WebPushGatewayProvider()
    else:
        providers[Channel.PUSH.value] = MockPushProvider(db=db)
    if TELEGRAM_BOT_TOKEN:
        providers[Channel.TELEGRAM.value] = TelegramProvider()
    else:
        logger.info("Telegram: no bot token configured, channel disabled")
    if WHATSAPP_GATEWAY_URL:
        providers[Channel.WHATSAPP.value] = WhatsAppGatewayProvider()
    else:
        logger.info("WhatsApp: no gateway configured, channel disabled")
    return providers


# =============================================================================
# DISPATCHER
# =============================================================================

class NotificationDispatcher:
    """
    Routes notifications to providers by channel.

    Usage:
        dispatcher = NotificationDispatcher(build_default_providers(db))
        dispatcher.dispatch(notifications)   # returns immediately
        await dispatcher.drain()             # on shutdown
    """

    def __init__(
        self,
        providers: Dict[str, Any] = None,
        max_attempts: int = None,
        backoff_seconds: float = None,
        history_size: int = None
    ):
        self.providers = providers if providers is not None else {}
        self.max_attempts = max_attempts or NOTIFY_MAX_ATTEMPTS
        self.backoff_seconds = NOTIFY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        self._tasks: Set[asyncio.Task] = set()
        # most recent dropped deliveries only
        self.failures: deque = deque(maxlen=history_size or NOTIFY_HISTORY_SIZE)

    async def send(
        self,
        channel: str,
        target: str,
        message: str,
        attachment: bytes = None,
        title: str = None
    ) -> DispatchResult:
        """Single delivery attempt. Provider exceptions become failed results."""
        channel = channel.value if isinstance(channel, Channel) else channel
        provider = self.providers.get(channel)
        if provider is None:
            return DispatchResult(success=False, channel=channel, target=target, error=f"No provider for channel '{channel}'")
        try:
            return await provider.send(target, message, attachment=attachment, title=title)
        except Exception as e:
            return DispatchResult(success=False, channel=channel, target=target, error=f"{type(e).__name__}: {e}")

    async def deliver(self, notification: Notification, attachment: bytes = None) -> DispatchResult:
        """Deliver with bounded retries and exponential backoff; never raises."""
        if notification.channel not in self.providers:
            logger.debug("Skipping notification for disabled channel %s", notification.channel)
            return DispatchResult(
                success=False, channel=notification.channel, target=notification.target,
                error="channel disabled", attempts=0
            )

        result = None
        for attempt in range(1, self.max_attempts + 1):
            result = await self.send(
                notification.channel, notification.target, notification.message,
                attachment=attachment, title=notification.title
            )
            result.attempts = attempt
            if result.success:
                return result
            if attempt < self.max_attempts:
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Notification delivery failed: channel=%s, target=%s, attempt=%d, error=%s; retrying in %.2fs",
                    notification.channel, notification.target, attempt, result.error, delay
                )
                await asyncio.sleep(delay)

        logger.error(
            "Notification dropped after %d attempts: channel=%s, target=%s, error=%s",
            self.max_attempts, notification.channel, notification.target, result.error
        )
        self.failures.append(result)
        return result

    async def deliver_all(self, notifications: Iterable[Notification]) -> List[DispatchResult]:
        return list(await asyncio.gather(*(self.deliver(n) for n in notifications)))

    def dispatch(self, notifications: Iterable[Notification]) -> Optional[asyncio.Task]:
        """Schedule delivery in the background and return immediately."""
        notifications = list(notifications)
        if not notifications:
            return None
        task = asyncio.get_running_loop().create_task(self.deliver_all(notifications))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self):
        """Wait for all background deliveries scheduled so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)
