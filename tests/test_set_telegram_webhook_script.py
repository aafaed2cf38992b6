import unittest
from io import StringIO
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

from telegram.error import TelegramError

from scripts import set_telegram_webhook


def _settings(**overrides):
    payload = {
        "telegram_bot_token": "123:abc",
        "telegram_webhook_path": "/api/telegram/webhook",
        "telegram_webhook_secret": "tg-secret",
    }
    payload.update(overrides)
    return SimpleNamespace(**payload)


class SetTelegramWebhookScriptTests(unittest.TestCase):
    def test_build_webhook_url(self) -> None:
        self.assertEqual(
            set_telegram_webhook.build_webhook_url("https://realty.example/", "api/telegram/webhook"),
            "https://realty.example/api/telegram/webhook",
        )

    def test_main_registers_webhook_with_secret(self) -> None:
        bot = AsyncMock()
        bot.set_webhook.return_value = True
        with patch.object(set_telegram_webhook, "get_settings", return_value=_settings()), patch.object(
            set_telegram_webhook, "Bot", return_value=bot
        ), patch("sys.stdout", new_callable=StringIO) as stdout:
            result = set_telegram_webhook.main(["--base-url", "https://realty.example", "--drop-pending"])

        self.assertEqual(result, 0)
        kwargs = bot.set_webhook.await_args.kwargs
        self.assertEqual(kwargs["url"], "https://realty.example/api/telegram/webhook")
        self.assertEqual(kwargs["secret_token"], "tg-secret")
        self.assertEqual(kwargs["allowed_updates"], ["message", "callback_query"])
        self.assertTrue(kwargs["drop_pending_updates"])
        self.assertIn("[OK] Webhook set to https://realty.example/api/telegram/webhook", stdout.getvalue())

    def test_main_requires_token_and_https(self) -> None:
        with patch.object(set_telegram_webhook, "get_settings", return_value=_settings(telegram_bot_token="")), patch(
            "sys.stderr", new_callable=StringIO
        ) as stderr:
            self.assertEqual(set_telegram_webhook.main(["--base-url", "https://realty.example"]), 1)
        self.assertIn("TELEGRAM_BOT_TOKEN", stderr.getvalue())

        with patch.object(set_telegram_webhook, "get_settings", return_value=_settings()), patch(
            "sys.stderr", new_callable=StringIO
        ) as stderr:
            self.assertEqual(set_telegram_webhook.main(["--base-url", "http://realty.example"]), 1)
        self.assertIn("https", stderr.getvalue())

    def test_main_reports_telegram_error(self) -> None:
        bot = AsyncMock()
        bot.set_webhook.side_effect = TelegramError("Unauthorized")
        with patch.object(set_telegram_webhook, "get_settings", return_value=_settings()), patch.object(
            set_telegram_webhook, "Bot", return_value=bot
        ), patch("sys.stderr", new_callable=StringIO) as stderr:
            result = set_telegram_webhook.main(["--base-url", "https://realty.example"])
        self.assertEqual(result, 1)
        self.assertIn("Unauthorized", stderr.getvalue())


if __name__ == "__main__":
    unittest.main()
