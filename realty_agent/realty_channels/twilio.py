from __future__ import annotations

import base64
import hashlib
import hmac
from datetime import datetime, timezone
from typing import Mapping, Optional
from xml.sax.saxutils import escape

from realty_agent.realty_core.conversation import InboundMessage, OutboundReply
from realty_agent.realty_core.flow import PICK_PREFIX

CHANNEL = "twilio"
WHATSAPP_PREFIX = "whatsapp:"
EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


def strip_whatsapp_prefix(address: str) -> str:
    value = (address or "").strip()
    if value.lower().startswith(WHATSAPP_PREFIX):
        value = value[len(WHATSAPP_PREFIX) :]
    return value.strip()


def parse_form(form: Mapping[str, str]) -> Optional[InboundMessage]:
    sender = strip_whatsapp_prefix(str(form.get("From") or ""))
    body = str(form.get("Body") or "").strip()
    button_payload = str(form.get("ButtonPayload") or "").strip() or None
    if not sender or (not body and not button_payload):
        return None
    message_sid = str(form.get("MessageSid") or "").strip() or None
    return InboundMessage(
        channel=CHANNEL,
        external_user_id=sender,
        text=body,
        received_at=datetime.now(timezone.utc),
        raw_button_id=button_payload,
        message_id=message_sid,
        display_name=str(form.get("ProfileName") or "").strip() or None,
    )


def compute_signature(auth_token: str, url: str, params: Mapping[str, str]) -> str:
    """Twilio request signature: url followed by sorted key/value pairs, HMAC-SHA1, base64."""
    data = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), data.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def validate_signature(auth_token: str, url: str, params: Mapping[str, str], signature: Optional[str]) -> bool:
    if not auth_token:
        return True
    if not signature:
        return False
    expected = compute_signature(auth_token, url, params)
    return hmac.compare_digest(expected, signature.strip())


def render_twiml(reply: Optional[OutboundReply]) -> str:
    if reply is None or not reply.text:
        return EMPTY_TWIML
    text = reply.text
    # Twilio sandbox replies are plain text; pick buttons are already numbered in the prompt.
    options = [title for title, payload in reply.buttons if not payload.startswith(f"{PICK_PREFIX}:")]
    if options:
        text = f"{text}\n\nOptions: {' / '.join(options)}"
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f"<Response><Message>{escape(text)}</Message></Response>"
    )
