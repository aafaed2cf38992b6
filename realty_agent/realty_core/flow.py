from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from realty_agent.realty_core.catalog import MATCH_AMBIGUOUS, MATCH_EXACT, match_property, select_candidate
from realty_agent.realty_core.temporal import (
    format_display_date,
    format_display_time,
    local_today,
    parse_date,
    parse_time,
    resolve_timezone,
)
from realty_agent.realty_core.validators import normalize_email, normalize_name, normalize_phone


STATE_IDLE = "idle"
STATE_BOOK_PROPERTY = "book_property"
STATE_BOOK_NAME = "book_name"
STATE_BOOK_PHONE = "book_phone"
STATE_BOOK_EMAIL = "book_email"
STATE_BOOK_DATE = "book_date"
STATE_BOOK_TIME = "book_time"
STATE_BOOK_CONFIRM = "book_confirm"
STATE_RESCHEDULE_PROPERTY = "reschedule_property"
STATE_RESCHEDULE_NAME = "reschedule_name"
STATE_RESCHEDULE_NEW_DATE = "reschedule_new_date"
STATE_RESCHEDULE_NEW_TIME = "reschedule_new_time"
STATE_RESCHEDULE_CONFIRM = "reschedule_confirm"
STATE_CANCEL_PROPERTY = "cancel_property"
STATE_CANCEL_NAME = "cancel_name"
STATE_CANCEL_CONFIRM = "cancel_confirm"

ALL_STATES = (
    STATE_IDLE,
    STATE_BOOK_PROPERTY,
    STATE_BOOK_NAME,
    STATE_BOOK_PHONE,
    STATE_BOOK_EMAIL,
    STATE_BOOK_DATE,
    STATE_BOOK_TIME,
    STATE_BOOK_CONFIRM,
    STATE_RESCHEDULE_PROPERTY,
    STATE_RESCHEDULE_NAME,
    STATE_RESCHEDULE_NEW_DATE,
    STATE_RESCHEDULE_NEW_TIME,
    STATE_RESCHEDULE_CONFIRM,
    STATE_CANCEL_PROPERTY,
    STATE_CANCEL_NAME,
    STATE_CANCEL_CONFIRM,
)

ACTION_CREATE_BOOKING = "create_booking"
ACTION_RESCHEDULE_BOOKING = "reschedule_booking"
ACTION_CANCEL_BOOKING = "cancel_booking"

MENU_BOOK = "menu:book"
MENU_RESCHEDULE = "menu:reschedule"
MENU_CANCEL = "menu:cancel"
FLOW_CONFIRM = "flow:confirm"
FLOW_EDIT = "flow:edit"
FLOW_CANCEL = "flow:cancel"
PICK_PREFIX = "pick"

MENU_BUTTONS: List[Tuple[str, str]] = [
    ("Book a viewing", MENU_BOOK),
    ("Reschedule", MENU_RESCHEDULE),
    ("Cancel booking", MENU_CANCEL),
]
CONFIRM_BUTTONS: List[Tuple[str, str]] = [
    ("Confirm", FLOW_CONFIRM),
    ("Edit", FLOW_EDIT),
    ("Cancel", FLOW_CANCEL),
]

CONFIRM_WORDS = {"confirm", "confirmed", "yes", "y", "ok", "okay", "yep", "yes please", "sure"}
EDIT_WORDS = {"edit", "change", "modify"}
KEEP_WORDS = {"same", "keep", "unchanged"}
MENU_WORDS = {"menu", "/start", "start", "/menu", "options"}

_PUNCTUATION_RE = re.compile(r"[^\w\s/]")
_RESCHEDULE_INTENT_RE = re.compile(r"\bre-?schedul\w*|\b(change|move)\b.*\b(booking|viewing|appointment)\b")
_CANCEL_INTENT_RE = re.compile(r"\bcancel\w*\b.*\b(booking|viewing|appointment)\b")
_CANCEL_WORD_RE = re.compile(r"\b(cancel|stop|nevermind|never mind|quit)\b")
_BOOK_INTENT_RE = re.compile(
    r"\bbook(ing)?\b|\b(schedule|arrange|set up)\b.*\b(viewing|visit|appointment)\b"
)


@dataclass
class ConversationState:
    step: str = STATE_IDLE
    data: Dict[str, Any] = field(default_factory=dict)
    choices: List[str] = field(default_factory=list)
    funnel_stage: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "data": dict(self.data),
            "choices": list(self.choices),
            "funnel_stage": self.funnel_stage,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: Optional[Dict[str, Any]]) -> "ConversationState":
        if not isinstance(payload, dict):
            return cls()
        step = payload.get("step")
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        choices = payload.get("choices") if isinstance(payload.get("choices"), list) else []
        if step not in ALL_STATES:
            step, data, choices = STATE_IDLE, {}, []
        funnel_stage = payload.get("funnel_stage")
        updated_at = payload.get("updated_at")
        return cls(
            step=step,
            data=dict(data),
            choices=[str(item) for item in choices],
            funnel_stage=funnel_stage if isinstance(funnel_stage, str) else None,
            updated_at=updated_at if isinstance(updated_at, str) else None,
        )

    def copy(self) -> "ConversationState":
        return ConversationState.from_dict(self.to_dict())


@dataclass
class FlowStep:
    message: str
    next_state: str
    state: ConversationState
    buttons: List[Tuple[str, str]] = field(default_factory=list)
    action: Optional[str] = None
    action_data: Dict[str, Any] = field(default_factory=dict)
    handled: bool = True


StateInput = Union[ConversationState, Dict[str, Any], None]


def ensure_state(state: StateInput) -> ConversationState:
    if isinstance(state, ConversationState):
        return state.copy()
    return ConversationState.from_dict(state)


def _normalize_text(text: str) -> str:
    return " ".join(_PUNCTUATION_RE.sub(" ", text.lower()).split())


def _parse_callback(callback_data: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    if not callback_data or ":" not in callback_data:
        return None, None
    prefix, value = callback_data.split(":", 1)
    return prefix, value


def detect_menu_action(text: str, callback_data: Optional[str] = None) -> Optional[str]:
    """Map a button payload or idle free text to a menu action, if any."""
    if callback_data in {MENU_BOOK, MENU_RESCHEDULE, MENU_CANCEL}:
        return callback_data
    normalized = _normalize_text(text)
    if not normalized:
        return None
    if normalized in MENU_WORDS:
        return "menu"
    if _CANCEL_INTENT_RE.search(normalized):
        return MENU_CANCEL
    if _RESCHEDULE_INTENT_RE.search(normalized):
        return MENU_RESCHEDULE
    if _BOOK_INTENT_RE.search(normalized):
        return MENU_BOOK
    return None


def _is_global_cancel(normalized: str, callback_data: Optional[str]) -> bool:
    if callback_data in {FLOW_CANCEL, MENU_CANCEL}:
        return True
    return bool(_CANCEL_WORD_RE.search(normalized))


def _is_confirm(normalized: str, callback_data: Optional[str]) -> bool:
    return callback_data == FLOW_CONFIRM or normalized in CONFIRM_WORDS


def _is_edit(normalized: str, callback_data: Optional[str]) -> bool:
    return callback_data == FLOW_EDIT or normalized in EDIT_WORDS


def _reset(state: ConversationState) -> ConversationState:
    state.step = STATE_IDLE
    state.data = {}
    state.choices = []
    return state


def _pick_buttons(candidates: Sequence[str]) -> List[Tuple[str, str]]:
    return [(name, f"{PICK_PREFIX}:{index}") for index, name in enumerate(candidates, start=1)]


def _numbered(candidates: Sequence[str]) -> str:
    return "\n".join(f"{index}. {name}" for index, name in enumerate(candidates, start=1))


def _current_hint(state: ConversationState, slot: str) -> str:
    value = state.data.get(slot)
    if not value:
        return ""
    if slot == "date":
        try:
            value = format_display_date(date.fromisoformat(str(value)))
        except ValueError:
            pass
    elif slot == "time":
        value = format_display_time(str(value))
    elif slot == "phone":
        value = f"+{value}"
    return f" (currently {value}, reply 'same' to keep it)"


def _format_summary(data: Dict[str, Any], slots: Sequence[str]) -> str:
    labels = {
        "property": "Property",
        "name": "Name",
        "phone": "Phone",
        "email": "Email",
        "date": "Date",
        "time": "Time",
    }
    lines = []
    for slot in slots:
        value = data.get(slot)
        if value is None:
            continue
        if slot == "date":
            try:
                value = format_display_date(date.fromisoformat(str(value)))
            except ValueError:
                pass
        elif slot == "time":
            value = format_display_time(str(value))
        elif slot == "phone":
            value = f"+{value}"
        lines.append(f"{labels[slot]}: {value}")
    return "\n".join(lines)


BOOKING_SLOTS = ("property", "name", "phone", "email", "date", "time")
RESCHEDULE_SLOTS = ("property", "name", "date", "time")
CANCEL_SLOTS = ("property", "name")


def build_prompt(state: ConversationState, property_names: Sequence[str] = ()) -> FlowStep:
    step = state.step

    if step in {STATE_BOOK_PROPERTY, STATE_RESCHEDULE_PROPERTY, STATE_CANCEL_PROPERTY}:
        if step == STATE_BOOK_PROPERTY:
            question = "Which property would you like to view?"
        elif step == STATE_RESCHEDULE_PROPERTY:
            question = "Which property is the viewing you'd like to reschedule?"
        else:
            question = "Which property is the viewing you'd like to cancel?"
        names = list(property_names)
        message = f"{question}{_current_hint(state, 'property')}"
        if names:
            message = f"{message}\n\n{_numbered(names)}"
        state.choices = names
        return FlowStep(message=message, next_state=step, state=state, buttons=_pick_buttons(names))
    if step in {STATE_BOOK_NAME, STATE_RESCHEDULE_NAME, STATE_CANCEL_NAME}:
        if step == STATE_BOOK_NAME:
            question = "Great choice. What name should I put the booking under?"
        else:
            question = "What name is the booking under?"
        return FlowStep(
            message=f"{question}{_current_hint(state, 'name')}",
            next_state=step,
            state=state,
        )
    if step == STATE_BOOK_PHONE:
        return FlowStep(
            message=f"Thanks. What's the best phone number to reach you?{_current_hint(state, 'phone')}",
            next_state=step,
            state=state,
        )
    if step == STATE_BOOK_EMAIL:
        return FlowStep(
            message=f"And your email address?{_current_hint(state, 'email')}",
            next_state=step,
            state=state,
        )
    if step in {STATE_BOOK_DATE, STATE_RESCHEDULE_NEW_DATE}:
        question = "Which date works for you?" if step == STATE_BOOK_DATE else "What's the new date?"
        return FlowStep(
            message=f"{question} You can say today, tomorrow, a weekday or something like 21 Oct."
            f"{_current_hint(state, 'date')}",
            next_state=step,
            state=state,
        )
    if step in {STATE_BOOK_TIME, STATE_RESCHEDULE_NEW_TIME}:
        question = "What time suits you?" if step == STATE_BOOK_TIME else "And the new time?"
        return FlowStep(
            message=f"{question} For example 2pm, 10:30 or morning.{_current_hint(state, 'time')}",
            next_state=step,
            state=state,
        )
    if step == STATE_BOOK_CONFIRM:
        return FlowStep(
            message=f"Here's your viewing:\n{_format_summary(state.data, BOOKING_SLOTS)}\n\nShall I confirm it?",
            next_state=step,
            state=state,
            buttons=list(CONFIRM_BUTTONS),
        )
    if step == STATE_RESCHEDULE_CONFIRM:
        return FlowStep(
            message=(
                "I'll move your viewing to:\n"
                f"{_format_summary(state.data, RESCHEDULE_SLOTS)}\n\nShall I confirm the new slot?"
            ),
            next_state=step,
            state=state,
            buttons=list(CONFIRM_BUTTONS),
        )
    if step == STATE_CANCEL_CONFIRM:
        return FlowStep(
            message=(
                "You'd like to cancel this viewing:\n"
                f"{_format_summary(state.data, CANCEL_SLOTS)}\n\nShall I go ahead?"
            ),
            next_state=step,
            state=state,
            buttons=list(CONFIRM_BUTTONS),
        )

    return FlowStep(
        message="How can I help? You can book, reschedule or cancel a viewing.",
        next_state=STATE_IDLE,
        state=state,
        buttons=list(MENU_BUTTONS),
    )


def _reprompt(state: ConversationState, message: str, property_names: Sequence[str] = ()) -> FlowStep:
    prompt = build_prompt(state, property_names)
    prompt.message = message
    return prompt


def _start_flow(state: ConversationState, first_step: str, property_names: Sequence[str]) -> FlowStep:
    _reset(state)
    state.step = first_step
    return build_prompt(state, property_names)


def _resolve_property(
    state: ConversationState,
    text: str,
    callback_data: Optional[str],
    property_names: Sequence[str],
) -> Tuple[Optional[str], Optional[FlowStep]]:
    """Return (property, None) on success or (None, corrective prompt)."""
    callback_prefix, callback_value = _parse_callback(callback_data)
    if callback_prefix == PICK_PREFIX and state.choices:
        picked = select_candidate(callback_value, state.choices)
        if picked:
            return picked, None
    if text and state.choices:
        picked = select_candidate(text, state.choices)
        if picked:
            return picked, None
    if _normalize_text(text) in KEEP_WORDS and state.data.get("property"):
        return str(state.data["property"]), None

    result = match_property(text, property_names)
    if result.kind == MATCH_EXACT and result.value:
        return result.value, None
    if result.kind == MATCH_AMBIGUOUS:
        state.choices = list(result.candidates)
        return None, FlowStep(
            message=f"I found a few matches:\n{_numbered(result.candidates)}\n\nWhich one did you mean?",
            next_state=state.step,
            state=state,
            buttons=_pick_buttons(result.candidates),
        )
    listing = _numbered(property_names)
    message = "I couldn't find that property."
    if listing:
        message = f"{message} Here's what we have:\n{listing}\n\nReply with the name or number."
    step = build_prompt(state, property_names)
    step.message = message
    return None, step


def _keep_or(state: ConversationState, normalized: str, slot: str) -> Optional[Any]:
    if normalized in KEEP_WORDS and state.data.get(slot):
        return state.data[slot]
    return None


def _advance_property(
    state: ConversationState,
    text: str,
    callback_data: Optional[str],
    property_names: Sequence[str],
    next_step: str,
) -> FlowStep:
    value, corrective = _resolve_property(state, text, callback_data, property_names)
    if corrective is not None:
        return corrective
    state.data["property"] = value
    state.choices = []
    state.step = next_step
    return build_prompt(state, property_names)


def _advance_name(state: ConversationState, text: str, normalized: str, next_step: str) -> FlowStep:
    name = _keep_or(state, normalized, "name") or normalize_name(text)
    if not name:
        return _reprompt(state, "Please send your full name (at least 2 letters).")
    state.data["name"] = name
    state.step = next_step
    return build_prompt(state)


def _advance_date(
    state: ConversationState,
    text: str,
    normalized: str,
    next_step: str,
    now: Optional[datetime],
    tz: Optional[str],
) -> FlowStep:
    kept = _keep_or(state, normalized, "date")
    if kept:
        state.step = next_step
        return build_prompt(state)
    parsed = parse_date(text, now=now, tz=tz)
    if parsed is None:
        return _reprompt(
            state,
            "Sorry, I couldn't read that date. Try 'tomorrow', 'Saturday' or '21 Oct'.",
        )
    if parsed < local_today(now, tz):
        return _reprompt(state, "That date has already passed. Which upcoming date works for you?")
    state.data["date"] = parsed.isoformat()
    state.step = next_step
    return build_prompt(state)


def _slot_in_past(slot_date: str, slot_time: str, now: Optional[datetime], tz: Optional[str]) -> bool:
    today = local_today(now, tz)
    if slot_date != today.isoformat():
        return False
    zone = resolve_timezone(tz)
    if now is None:
        local_now = datetime.now(zone)
    elif now.tzinfo is None:
        local_now = now
    else:
        local_now = now.astimezone(zone)
    return slot_time <= local_now.strftime("%H:%M")


def _advance_time(
    state: ConversationState,
    text: str,
    normalized: str,
    next_step: str,
    now: Optional[datetime],
    tz: Optional[str],
) -> FlowStep:
    parsed = _keep_or(state, normalized, "time") or parse_time(text)
    if parsed is None:
        return _reprompt(state, "Sorry, I couldn't read that time. Try '2pm', '10:30' or 'morning'.")
    if _slot_in_past(str(state.data.get("date", "")), parsed, now, tz):
        return _reprompt(state, "That time has already passed today. Please pick a later time.")
    state.data["time"] = parsed
    state.step = next_step
    return build_prompt(state)


def _confirm_step(
    state: ConversationState,
    normalized: str,
    callback_data: Optional[str],
    action: str,
    slots: Sequence[str],
    edit_step: str,
    acknowledgement: str,
    property_names: Sequence[str],
) -> FlowStep:
    if _is_confirm(normalized, callback_data):
        action_data = {slot: state.data.get(slot) for slot in slots}
        _reset(state)
        return FlowStep(
            message=acknowledgement,
            next_state=STATE_IDLE,
            state=state,
            action=action,
            action_data=action_data,
        )
    if _is_edit(normalized, callback_data):
        state.step = edit_step
        prompt = build_prompt(state, property_names)
        prompt.message = f"Sure, let's go through it again.\n{prompt.message}"
        return prompt
    prompt = build_prompt(state, property_names)
    prompt.message = f"{prompt.message}\nPlease reply confirm, edit or cancel."
    return prompt


def advance_flow(
    state: StateInput,
    message_text: Optional[str] = None,
    callback_data: Optional[str] = None,
    property_names: Sequence[str] = (),
    now: Optional[datetime] = None,
    tz: Optional[str] = None,
) -> FlowStep:
    """Compute the next dialogue step for one inbound message.

    Pure: the given state is never mutated, the returned ``FlowStep.state`` is
    the state to persist. When ``handled`` is False the conversation is idle and
    the message is free text for the reply generator.
    """
    current = ensure_state(state)
    text = (message_text or "").strip()
    normalized = _normalize_text(text)
    names = list(property_names)

    if current.step == STATE_IDLE:
        menu_action = detect_menu_action(text, callback_data)
        if menu_action == MENU_BOOK:
            return _start_flow(current, STATE_BOOK_PROPERTY, names)
        if menu_action == MENU_RESCHEDULE:
            return _start_flow(current, STATE_RESCHEDULE_PROPERTY, names)
        if menu_action == MENU_CANCEL:
            return _start_flow(current, STATE_CANCEL_PROPERTY, names)
        if menu_action == "menu":
            return build_prompt(current, names)
        return FlowStep(message="", next_state=STATE_IDLE, state=current, handled=False)

    if _is_global_cancel(normalized, callback_data):
        _reset(current)
        return FlowStep(
            message="No problem, I've stopped that. Nothing was changed. Anything else I can help with?",
            next_state=STATE_IDLE,
            state=current,
            buttons=list(MENU_BUTTONS),
        )
    if callback_data == MENU_BOOK:
        return _start_flow(current, STATE_BOOK_PROPERTY, names)
    if callback_data == MENU_RESCHEDULE:
        return _start_flow(current, STATE_RESCHEDULE_PROPERTY, names)

    step = current.step
    if step == STATE_BOOK_PROPERTY:
        return _advance_property(current, text, callback_data, names, STATE_BOOK_NAME)
    if step == STATE_BOOK_NAME:
        return _advance_name(current, text, normalized, STATE_BOOK_PHONE)
    if step == STATE_BOOK_PHONE:
        phone = _keep_or(current, normalized, "phone") or normalize_phone(text)
        if not phone:
            return _reprompt(
                current,
                "That doesn't look like a valid phone number. Please send it again, e.g. 9123 4567.",
            )
        current.data["phone"] = phone
        current.step = STATE_BOOK_EMAIL
        return build_prompt(current)
    if step == STATE_BOOK_EMAIL:
        email = _keep_or(current, normalized, "email") or normalize_email(text)
        if not email:
            return _reprompt(
                current,
                "That email doesn't look right. Please send it again, e.g. name@example.com.",
            )
        current.data["email"] = email
        current.step = STATE_BOOK_DATE
        return build_prompt(current)
    if step == STATE_BOOK_DATE:
        return _advance_date(current, text, normalized, STATE_BOOK_TIME, now, tz)
    if step == STATE_BOOK_TIME:
        return _advance_time(current, text, normalized, STATE_BOOK_CONFIRM, now, tz)
    if step == STATE_BOOK_CONFIRM:
        return _confirm_step(
            current,
            normalized,
            callback_data,
            action=ACTION_CREATE_BOOKING,
            slots=BOOKING_SLOTS,
            edit_step=STATE_BOOK_PROPERTY,
            acknowledgement="You're all set! Your viewing is confirmed.",
            property_names=names,
        )

    if step == STATE_RESCHEDULE_PROPERTY:
        return _advance_property(current, text, callback_data, names, STATE_RESCHEDULE_NAME)
    if step == STATE_RESCHEDULE_NAME:
        return _advance_name(current, text, normalized, STATE_RESCHEDULE_NEW_DATE)
    if step == STATE_RESCHEDULE_NEW_DATE:
        return _advance_date(current, text, normalized, STATE_RESCHEDULE_NEW_TIME, now, tz)
    if step == STATE_RESCHEDULE_NEW_TIME:
        return _advance_time(current, text, normalized, STATE_RESCHEDULE_CONFIRM, now, tz)
    if step == STATE_RESCHEDULE_CONFIRM:
        return _confirm_step(
            current,
            normalized,
            callback_data,
            action=ACTION_RESCHEDULE_BOOKING,
            slots=RESCHEDULE_SLOTS,
            edit_step=STATE_RESCHEDULE_PROPERTY,
            acknowledgement="Done! Your viewing has been rescheduled.",
            property_names=names,
        )

    if step == STATE_CANCEL_PROPERTY:
        return _advance_property(current, text, callback_data, names, STATE_CANCEL_NAME)
    if step == STATE_CANCEL_NAME:
        return _advance_name(current, text, normalized, STATE_CANCEL_CONFIRM)
    if step == STATE_CANCEL_CONFIRM:
        return _confirm_step(
            current,
            normalized,
            callback_data,
            action=ACTION_CANCEL_BOOKING,
            slots=CANCEL_SLOTS,
            edit_step=STATE_CANCEL_PROPERTY,
            acknowledgement="Your viewing has been cancelled.",
            property_names=names,
        )

    return build_prompt(_reset(current), names)
