import unittest
from types import SimpleNamespace
from unittest.mock import patch

import httpx

from realty_agent.realty_core.notifier import (
    NoopAgentNotifier,
    NotificationDispatcher,
    NotifyResult,
    TelegramAgentNotifier,
    build_agent_notifier,
)


class _MockHttpxResponse:
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        self.text = "{}"
        self.request = httpx.Request("POST", "https://telegram.example")

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            response = httpx.Response(self.status_code, request=self.request, text=self.text)
            raise httpx.HTTPStatusError("error", request=self.request, response=response)


class _MockAsyncHttpxClient:
    def __init__(self, response: _MockHttpxResponse) -> None:
        self.response = response
        self.calls = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def post(self, *args, **kwargs):
        self.calls.append((args, kwargs))
        return self.response


class _RecordingNotifier:
    provider = "telegram"

    def __init__(self, result=None, exc: Exception = None) -> None:
        self.result = result or NotifyResult(success=True)
        self.exc = exc
        self.texts = []

    async def notify(self, text: str) -> NotifyResult:
        self.texts.append(text)
        if self.exc is not None:
            raise self.exc
        return self.result


class TelegramAgentNotifierTests(unittest.IsolatedAsyncioTestCase):
    async def test_notify_posts_send_message(self) -> None:
        notifier = TelegramAgentNotifier(bot_token="123:abc", chat_id="-100200", base_url="https://telegram.example")
        mock_client = _MockAsyncHttpxClient(_MockHttpxResponse(200))
        with patch("realty_agent.realty_core.notifier.httpx.AsyncClient", return_value=mock_client):
            result = await notifier.notify("New viewing booked")

        self.assertTrue(result.success)
        args, kwargs = mock_client.calls[0]
        self.assertEqual(args[0], "https://telegram.example/bot123:abc/sendMessage")
        self.assertEqual(kwargs["json"], {"chat_id": "-100200", "text": "New viewing booked"})

    async def test_notify_http_error(self) -> None:
        notifier = TelegramAgentNotifier(bot_token="123:abc", chat_id="-100200")
        mock_client = _MockAsyncHttpxClient(_MockHttpxResponse(403))
        with patch("realty_agent.realty_core.notifier.httpx.AsyncClient", return_value=mock_client):
            result = await notifier.notify("hello")
        self.assertFalse(result.success)
        self.assertEqual(result.error, "Telegram HTTP error: 403")

    async def test_notify_without_chat_id(self) -> None:
        result = await TelegramAgentNotifier(bot_token="123:abc", chat_id="").notify("hello")
        self.assertFalse(result.success)


class NotificationDispatcherTests(unittest.IsolatedAsyncioTestCase):
    async def test_dispatch_delivers_in_background(self) -> None:
        notifier = _RecordingNotifier()
        dispatcher = NotificationDispatcher(notifier)
        dispatcher.dispatch("first")
        dispatcher.dispatch("second")
        await dispatcher.drain()
        self.assertEqual(notifier.texts, ["first", "second"])

    async def test_failed_delivery_is_logged_not_raised(self) -> None:
        dispatcher = NotificationDispatcher(_RecordingNotifier(NotifyResult(success=False, error="down")))
        with self.assertLogs("realty_agent.realty_core.notifier", level="WARNING") as logs:
            dispatcher.dispatch("hello")
            await dispatcher.drain()
        self.assertIn("down", "\n".join(logs.output))

    async def test_raising_notifier_is_contained(self) -> None:
        dispatcher = NotificationDispatcher(_RecordingNotifier(exc=RuntimeError("boom")))
        with self.assertLogs("realty_agent.realty_core.notifier", level="ERROR"):
            task = dispatcher.dispatch("hello")
            await dispatcher.drain()
        self.assertIsNone(task.exception())


class NotifierFactoryTests(unittest.TestCase):
    def test_noop_without_agent_chat(self) -> None:
        settings = SimpleNamespace(agent_telegram_chat_id="", telegram_bot_token="123:abc", outbound_timeout_seconds=5.0)
        self.assertIsInstance(build_agent_notifier(settings), NoopAgentNotifier)

    def test_telegram_notifier_when_configured(self) -> None:
        settings = SimpleNamespace(agent_telegram_chat_id="-100200", telegram_bot_token="123:abc", outbound_timeout_seconds=5.0)
        notifier = build_agent_notifier(settings)
        self.assertIsInstance(notifier, TelegramAgentNotifier)
        self.assertEqual(notifier.chat_id, "-100200")


if __name__ == "__main__":
    unittest.main()
