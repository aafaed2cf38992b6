from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Set

import httpx

from realty_agent.realty_core.config import Settings, get_settings

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"


@dataclass
class NotifyResult:
    success: bool
    error: Optional[str] = None


class AgentNotifier(Protocol):
    provider: str

    async def notify(self, text: str) -> NotifyResult:
        ...


class TelegramAgentNotifier:
    """Sends agent alerts through the Bot API ``sendMessage`` method."""

    provider = "telegram"

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        timeout_seconds: float = 10.0,
        base_url: str = TELEGRAM_API_URL,
    ) -> None:
        self.bot_token = bot_token.strip()
        self.chat_id = chat_id.strip()
        self.timeout_seconds = timeout_seconds
        self.base_url = base_url.rstrip("/")

    def _is_configured(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    async def notify(self, text: str) -> NotifyResult:
        if not self._is_configured():
            return NotifyResult(success=False, error="Agent notifications need TELEGRAM_BOT_TOKEN and AGENT_TELEGRAM_CHAT_ID.")
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    f"{self.base_url}/bot{self.bot_token}/sendMessage",
                    json={"chat_id": self.chat_id, "text": text},
                )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            return NotifyResult(success=False, error=f"Telegram HTTP error: {exc.response.status_code}")
        except httpx.RequestError as exc:
            return NotifyResult(success=False, error=f"Telegram connection error: {exc}")
        return NotifyResult(success=True)


class NoopAgentNotifier:
    provider = "none"

    async def notify(self, text: str) -> NotifyResult:
        logger.info("Agent notification skipped (no agent chat configured): %s", text.splitlines()[0] if text else "")
        return NotifyResult(success=False, error="Agent notifications are disabled.")


def build_agent_notifier(settings: Optional[Settings] = None) -> AgentNotifier:
    cfg = settings or get_settings()
    if cfg.agent_telegram_chat_id and cfg.telegram_bot_token:
        return TelegramAgentNotifier(
            bot_token=cfg.telegram_bot_token,
            chat_id=cfg.agent_telegram_chat_id,
            timeout_seconds=cfg.outbound_timeout_seconds,
        )
    return NoopAgentNotifier()


class NotificationDispatcher:
    """Fire-and-forget delivery: the turn never waits for the agent alert."""

    def __init__(self, notifier: AgentNotifier) -> None:
        self.notifier = notifier
        self._tasks: Set["asyncio.Task[None]"] = set()

    def dispatch(self, text: str) -> "asyncio.Task[None]":
        task = asyncio.create_task(self._deliver(text))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(self, text: str) -> None:
        try:
            result = await self.notifier.notify(text)
        except Exception:
            logger.exception("Agent notification raised unexpectedly")
            return
        if not result.success and self.notifier.provider != "none":
            logger.warning("Agent notification failed: %s", result.error)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
