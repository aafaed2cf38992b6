from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from realty_agent.realty_core.conversation import InboundMessage

logger = logging.getLogger(__name__)

CHANNEL = "whatsapp"
GRAPH_API_URL = "https://graph.facebook.com"
MAX_BUTTONS = 3
MAX_BUTTON_TITLE = 20
MAX_BODY_LENGTH = 1024


@dataclass
class SendResult:
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


def verify_subscription(mode: Optional[str], token: Optional[str], challenge: Optional[str], expected: str) -> Optional[str]:
    """Return the challenge to echo when Meta's subscription handshake checks out."""
    if mode != "subscribe" or not expected or token != expected:
        return None
    return challenge or ""


def _received_at(raw: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(raw), tz=timezone.utc)
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)


def _contact_names(value: Dict[str, Any]) -> Dict[str, str]:
    names: Dict[str, str] = {}
    for contact in value.get("contacts") or []:
        if not isinstance(contact, dict):
            continue
        wa_id = contact.get("wa_id")
        profile = contact.get("profile") if isinstance(contact.get("profile"), dict) else {}
        if isinstance(wa_id, str) and profile.get("name"):
            names[wa_id] = str(profile["name"])
    return names


def _parse_message(raw: Dict[str, Any], names: Dict[str, str]) -> Optional[InboundMessage]:
    sender = raw.get("from")
    if not isinstance(sender, str) or not sender.strip():
        return None
    message_type = raw.get("type")
    text = ""
    button_id: Optional[str] = None
    if message_type == "text":
        body = raw.get("text") if isinstance(raw.get("text"), dict) else {}
        text = str(body.get("body") or "").strip()
    elif message_type == "interactive":
        interactive = raw.get("interactive") if isinstance(raw.get("interactive"), dict) else {}
        reply = interactive.get("button_reply") or interactive.get("list_reply")
        if isinstance(reply, dict):
            button_id = str(reply.get("id") or "") or None
            text = str(reply.get("title") or "").strip()
    elif message_type == "button":
        # Quick-reply buttons on template messages.
        button = raw.get("button") if isinstance(raw.get("button"), dict) else {}
        button_id = str(button.get("payload") or "") or None
        text = str(button.get("text") or "").strip()
    else:
        logger.info("Ignoring WhatsApp message of type %s from %s", message_type, sender)
        return None

    if not text and not button_id:
        return None
    message_id = raw.get("id")
    return InboundMessage(
        channel=CHANNEL,
        external_user_id=sender.strip(),
        text=text,
        received_at=_received_at(raw.get("timestamp")),
        raw_button_id=button_id,
        message_id=str(message_id) if message_id else None,
        display_name=names.get(sender.strip()),
    )


def extract_messages(payload: Any) -> List[InboundMessage]:
    """Walk entry -> changes -> value -> messages; status callbacks yield nothing."""
    if not isinstance(payload, dict):
        return []
    messages: List[InboundMessage] = []
    for entry in payload.get("entry") or []:
        if not isinstance(entry, dict):
            continue
        for change in entry.get("changes") or []:
            if not isinstance(change, dict):
                continue
            value = change.get("value")
            if not isinstance(value, dict):
                continue
            names = _contact_names(value)
            for raw in value.get("messages") or []:
                if not isinstance(raw, dict):
                    continue
                parsed = _parse_message(raw, names)
                if parsed is not None:
                    messages.append(parsed)
    return messages


def build_message_payload(to: str, text: str, buttons: Sequence[Tuple[str, str]] = ()) -> Dict[str, Any]:
    body = text[:MAX_BODY_LENGTH]
    if not buttons or len(buttons) > MAX_BUTTONS:
        # Longer option lists are already numbered in the text.
        return {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": text},
        }
    return {
        "messaging_product": "whatsapp",
        "to": to,
        "type": "interactive",
        "interactive": {
            "type": "button",
            "body": {"text": body},
            "action": {
                "buttons": [
                    {"type": "reply", "reply": {"id": payload, "title": title[:MAX_BUTTON_TITLE]}}
                    for title, payload in buttons
                ]
            },
        },
    }


def _safe_error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return f"HTTP {response.status_code}: {error['message']}"
    return f"HTTP {response.status_code}"


class WhatsAppSender:
    def __init__(
        self,
        phone_number_id: str,
        access_token: str,
        api_version: str = "v18.0",
        timeout_seconds: float = 10.0,
        base_url: str = GRAPH_API_URL,
    ) -> None:
        self.phone_number_id = phone_number_id.strip()
        self.access_token = access_token.strip()
        self.api_version = api_version.strip() or "v18.0"
        self.timeout_seconds = timeout_seconds
        self.base_url = base_url.rstrip("/")

    def is_configured(self) -> bool:
        return bool(self.phone_number_id and self.access_token)

    @property
    def messages_url(self) -> str:
        return f"{self.base_url}/{self.api_version}/{self.phone_number_id}/messages"

    async def _post(self, payload: Dict[str, Any]) -> SendResult:
        if not self.is_configured():
            return SendResult(success=False, error="WhatsApp is not configured.")
        headers = {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(self.messages_url, json=payload, headers=headers)
        except httpx.RequestError as exc:
            return SendResult(success=False, error=f"WhatsApp connection error: {exc}")
        if response.status_code >= 400:
            return SendResult(success=False, status_code=response.status_code, error=_safe_error_message(response))
        return SendResult(success=True, status_code=response.status_code)

    async def send(self, to: str, text: str, buttons: Sequence[Tuple[str, str]] = ()) -> SendResult:
        result = await self._post(build_message_payload(to, text, buttons))
        if not result.success:
            logger.warning("WhatsApp send to %s failed: %s", to, result.error)
        return result

    async def mark_read(self, message_id: str) -> SendResult:
        result = await self._post(
            {"messaging_product": "whatsapp", "status": "read", "message_id": message_id}
        )
        if not result.success:
            logger.info("WhatsApp mark-read for %s failed: %s", message_id, result.error)
        return result
