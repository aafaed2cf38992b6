#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from telegram import Bot
from telegram.error import TelegramError

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from realty_agent.realty_core.config import get_settings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Point the Telegram bot webhook at this deployment")
    parser.add_argument("--base-url", required=True, help="Public https base URL, e.g. https://realty.example.com")
    parser.add_argument("--drop-pending", action="store_true", help="Discard updates queued while the bot was offline")
    return parser.parse_args(argv)


def build_webhook_url(base_url: str, webhook_path: str) -> str:
    path = webhook_path if webhook_path.startswith("/") else f"/{webhook_path}"
    return f"{base_url.rstrip('/')}{path}"


async def _register(bot: Bot, url: str, secret: str, drop_pending: bool) -> bool:
    async with bot:
        return await bot.set_webhook(
            url=url,
            secret_token=secret or None,
            allowed_updates=["message", "callback_query"],
            drop_pending_updates=drop_pending,
        )


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    if not settings.telegram_bot_token:
        print("[ERROR] TELEGRAM_BOT_TOKEN is empty.", file=sys.stderr)
        return 1
    if not args.base_url.startswith("https://"):
        print("[ERROR] Telegram requires an https webhook URL.", file=sys.stderr)
        return 1

    url = build_webhook_url(args.base_url, settings.telegram_webhook_path)
    try:
        ok = asyncio.run(
            _register(Bot(token=settings.telegram_bot_token), url, settings.telegram_webhook_secret, args.drop_pending)
        )
    except TelegramError as exc:
        print(f"[ERROR] Telegram rejected the webhook: {exc}", file=sys.stderr)
        return 1
    if not ok:
        print("[ERROR] Telegram did not confirm the webhook.", file=sys.stderr)
        return 1
    if not settings.telegram_webhook_secret:
        print("[WARN] TELEGRAM_WEBHOOK_SECRET is empty; the webhook accepts unauthenticated posts.")
    print(f"[OK] Webhook set to {url}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
