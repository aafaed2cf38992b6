from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Sequence, Tuple

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup

from realty_agent.realty_core.conversation import InboundMessage

logger = logging.getLogger(__name__)

CHANNEL = "telegram"
MAX_MESSAGE_LENGTH = 4096


@dataclass
class TelegramUpdate:
    inbound: InboundMessage
    chat_id: int
    callback_query_id: Optional[str] = None


def _received_at(raw: Any) -> datetime:
    if isinstance(raw, int):
        return datetime.fromtimestamp(raw, tz=timezone.utc)
    return datetime.now(timezone.utc)


def _display_name(sender: Any) -> Optional[str]:
    if not isinstance(sender, dict):
        return None
    parts = [str(sender.get(key) or "").strip() for key in ("first_name", "last_name")]
    name = " ".join(part for part in parts if part)
    return name or sender.get("username") or None


def parse_update(payload: Any) -> Optional[TelegramUpdate]:
    """Normalize a Telegram webhook update; None for anything that is not a chat turn."""
    if not isinstance(payload, dict):
        return None
    update_id = payload.get("update_id")
    delivery_id = str(update_id) if isinstance(update_id, int) else None

    callback = payload.get("callback_query")
    if isinstance(callback, dict):
        message = callback.get("message") if isinstance(callback.get("message"), dict) else {}
        chat = message.get("chat") if isinstance(message.get("chat"), dict) else {}
        chat_id = chat.get("id")
        data = callback.get("data")
        if not isinstance(chat_id, int) or not isinstance(data, str):
            return None
        inbound = InboundMessage(
            channel=CHANNEL,
            external_user_id=str(chat_id),
            text="",
            received_at=datetime.now(timezone.utc),
            raw_button_id=data,
            message_id=delivery_id,
            display_name=_display_name(callback.get("from")),
        )
        callback_id = callback.get("id")
        return TelegramUpdate(
            inbound=inbound,
            chat_id=chat_id,
            callback_query_id=str(callback_id) if callback_id else None,
        )

    message = payload.get("message")
    if not isinstance(message, dict):
        return None
    chat = message.get("chat") if isinstance(message.get("chat"), dict) else {}
    chat_id = chat.get("id")
    text = message.get("text")
    if not isinstance(chat_id, int) or not isinstance(text, str) or not text.strip():
        return None
    inbound = InboundMessage(
        channel=CHANNEL,
        external_user_id=str(chat_id),
        text=text.strip(),
        received_at=_received_at(message.get("date")),
        message_id=delivery_id,
        display_name=_display_name(message.get("from")),
    )
    return TelegramUpdate(inbound=inbound, chat_id=chat_id)


def build_keyboard(buttons: Sequence[Tuple[str, str]]) -> Optional[InlineKeyboardMarkup]:
    if not buttons:
        return None
    return InlineKeyboardMarkup(
        [[InlineKeyboardButton(text=title, callback_data=payload)] for title, payload in buttons]
    )


class TelegramSender:
    def __init__(
        self,
        bot_token: str = "",
        timeout_seconds: float = 10.0,
        bot: Optional[Bot] = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self._bot = bot
        self._initialized = bot is not None
        if self._bot is None and bot_token.strip():
            self._bot = Bot(token=bot_token.strip())

    def is_configured(self) -> bool:
        return self._bot is not None

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self._bot.initialize()
            self._initialized = True

    async def send(self, chat_id: int, text: str, buttons: Sequence[Tuple[str, str]] = ()) -> bool:
        if self._bot is None:
            logger.warning("TELEGRAM_BOT_TOKEN is empty; dropping reply to chat %s", chat_id)
            return False
        try:
            await self._ensure_initialized()
            await asyncio.wait_for(
                self._bot.send_message(
                    chat_id=chat_id,
                    text=text[:MAX_MESSAGE_LENGTH],
                    reply_markup=build_keyboard(buttons),
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Telegram send to chat %s timed out", chat_id)
            return False
        except Exception:
            logger.exception("Telegram send to chat %s failed", chat_id)
            return False
        return True

    async def answer_callback(self, callback_query_id: str) -> None:
        if self._bot is None:
            return
        try:
            await self._ensure_initialized()
            await asyncio.wait_for(
                self._bot.answer_callback_query(callback_query_id=callback_query_id),
                timeout=self.timeout_seconds,
            )
        except Exception:
            logger.warning("Could not answer Telegram callback %s", callback_query_id, exc_info=True)

    async def aclose(self) -> None:
        if self._bot is None or not self._initialized:
            return
        try:
            await self._bot.shutdown()
        except Exception:
            logger.warning("Telegram bot shutdown failed", exc_info=True)
