"""
Tests for the notification dispatcher and its providers.
HTTP providers run against httpx.MockTransport.
"""
import json
import pytest
import httpx

from services.notification_composer import Notification
from services.notification_dispatcher import (
    NotificationDispatcher,
    DispatchResult,
    MockPushProvider,
    WebPushGatewayProvider,
    TelegramProvider,
    WhatsAppGatewayProvider,
)


class FailingProvider:
    """Fails ``failures`` times, then succeeds."""

    channel = "telegram"

    def __init__(self, failures, raises=False):
        self.failures = failures
        self.raises = raises
        self.calls = 0

    async def send(self, target, message, attachment=None, title=None):
        self.calls += 1
        if self.calls <= self.failures:
            if self.raises:
                raise ConnectionError("bot API unreachable")
            return DispatchResult(success=False, channel=self.channel, target=target, error="HTTP 502")
        return DispatchResult(success=True, channel=self.channel, target=target, message_id="m1")


class TestDispatcher:

    @pytest.mark.asyncio
    async def test_deliver_to_push(self, dispatcher, mock_push):
        result = await dispatcher.deliver(Notification("push", "role:ceo", "hello", "Hi"))
        assert result.success
        assert mock_push.get_sent()[0]["target"] == "role:ceo"

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        provider = FailingProvider(failures=2)
        dispatcher = NotificationDispatcher({"telegram": provider}, max_attempts=3, backoff_seconds=0)

        result = await dispatcher.deliver(Notification("telegram", "111", "hello"))

        assert result.success
        assert result.attempts == 3
        assert list(dispatcher.failures) == []

    @pytest.mark.asyncio
    async def test_gives_up_and_logs(self, caplog):
        provider = FailingProvider(failures=10, raises=True)
        dispatcher = NotificationDispatcher({"telegram": provider}, max_attempts=3, backoff_seconds=0)

        result = await dispatcher.deliver(Notification("telegram", "111", "hello"))

        assert not result.success
        assert provider.calls == 3
        assert "ConnectionError" in result.error
        assert list(dispatcher.failures) == [result]
        assert "Notification dropped after 3 attempts" in caplog.text

    @pytest.mark.asyncio
    async def test_failure_history_is_bounded(self):
        provider = FailingProvider(failures=100)
        dispatcher = NotificationDispatcher({"telegram": provider}, max_attempts=1, backoff_seconds=0, history_size=2)

        for target in ("1", "2", "3"):
            await dispatcher.deliver(Notification("telegram", target, "hello"))

        assert [r.target for r in dispatcher.failures] == ["2", "3"]

    @pytest.mark.asyncio
    async def test_disabled_channel_skipped(self, dispatcher):
        result = await dispatcher.deliver(Notification("whatsapp", "98912000", "hello"))
        assert not result.success
        assert result.attempts == 0
        assert list(dispatcher.failures) == []

    @pytest.mark.asyncio
    async def test_send_without_provider(self, dispatcher):
        result = await dispatcher.send("telegram", "111", "hello")
        assert not result.success
        assert "No provider" in result.error

    @pytest.mark.asyncio
    async def test_dispatch_runs_in_background(self, dispatcher, mock_push):
        task = dispatcher.dispatch([
            Notification("push", "role:ceo", "a"),
            Notification("push", "user:sara", "b"),
        ])
        assert task is not None
        await dispatcher.drain()
        assert dispatcher.pending == 0
        assert {s["target"] for s in mock_push.get_sent()} == {"role:ceo", "user:sara"}

    @pytest.mark.asyncio
    async def test_dispatch_nothing(self, dispatcher):
        assert dispatcher.dispatch([]) is None


class TestHttpProviders:

    @pytest.mark.asyncio
    async def test_telegram_send_message(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"ok": True, "result": {"message_id": 42}})

        provider = TelegramProvider(token="T0K", api_base="https://bot.test", transport=httpx.MockTransport(handler))
        result = await provider.send("111", "Payment order #1001 awaits your approval")

        assert result.success
        assert result.message_id == "42"
        assert seen["url"] == "https://bot.test/botT0K/sendMessage"
        assert seen["body"] == {"chat_id": "111", "text": "Payment order #1001 awaits your approval"}

    @pytest.mark.asyncio
    async def test_telegram_send_document(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            return httpx.Response(200, json={"ok": True, "result": {"message_id": 7}})

        provider = TelegramProvider(token="T0K", api_base="https://bot.test", transport=httpx.MockTransport(handler))
        result = await provider.send("111", "Exit permit #1001", attachment=b"%PDF-1.4")

        assert result.success
        assert seen["url"].endswith("/sendDocument")

    @pytest.mark.asyncio
    async def test_telegram_not_ok(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(200, json={"ok": False, "description": "chat not found"}))
        provider = TelegramProvider(token="T0K", api_base="https://bot.test", transport=transport)
        result = await provider.send("111", "hello")
        assert not result.success
        assert result.error == "chat not found"

    @pytest.mark.asyncio
    async def test_telegram_without_token(self):
        result = await TelegramProvider(token="").send("111", "hello")
        assert not result.success

    @pytest.mark.asyncio
    async def test_whatsapp_gateway(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"queued": True})

        provider = WhatsAppGatewayProvider(
            gateway_url="https://wa.test/send", token="secret", transport=httpx.MockTransport(handler)
        )
        result = await provider.send("98912000", "hello", attachment=b"abc")

        assert result.success
        assert seen["auth"] == "Bearer secret"
        assert seen["body"] == {"to": "98912000", "message": "hello", "attachment": "YWJj"}

    @pytest.mark.asyncio
    async def test_gateway_error_status(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(503, text="busy"))
        provider = WebPushGatewayProvider(gateway_url="https://push.test", transport=transport)
        result = await provider.send("role:ceo", "hello", title="Hi")
        assert not result.success
        assert result.error.startswith("HTTP 503")

    @pytest.mark.asyncio
    async def test_push_gateway_payload(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(201)

        provider = WebPushGatewayProvider(gateway_url="https://push.test", transport=httpx.MockTransport(handler))
        result = await provider.send("role:ceo", "hello", title="Hi")

        assert result.success
        assert seen["body"] == {"type": "ROLE", "value": "ceo", "title": "Hi", "body": "hello"}

    @pytest.mark.asyncio
    async def test_mock_push_keeps_recent_only(self):
        provider = MockPushProvider(history_size=2)
        for target in ("user:a", "user:b", "user:c"):
            await provider.send(target, "hello")
        assert [s["target"] for s in provider.get_sent()] == ["user:b", "user:c"]

    @pytest.mark.asyncio
    async def test_mock_push_logs_to_db(self):
        class PushLogs:
            def __init__(self):
                self.records = []

            async def insert_one(self, record):
                self.records.append(record)

        class Db:
            push_logs = PushLogs()

        db = Db()
        provider = MockPushProvider(db=db)
        await provider.send("user:sara", "hello")
        assert db.push_logs.records[0]["target"] == "user:sara"
