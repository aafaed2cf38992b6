from __future__ import annotations

import re
from enum import Enum
from typing import Any, Iterable, List, Mapping, Optional, Union

BASE_SCORE = 20
KEYWORD_WINDOW = 5
BUYING_SIGNAL_BONUS = 10
URGENCY_SIGNAL_BONUS = 15
HOT_THRESHOLD = 70
WARM_THRESHOLD = 40

# (minimum message count exclusive, bonus), highest tier first.
VOLUME_BONUSES = ((10, 25), (5, 15), (2, 10))

BUYING_SIGNALS = (
    "buy",
    "purchase",
    "viewing",
    "schedule",
    "interested",
    "price",
    "budget",
    "loan",
    "approve",
    "condo",
    "property",
    "apartment",
)
URGENCY_SIGNALS = ("now", "immediately", "urgent", "asap", "this week", "ready to")

# Buying signals also match suffixed forms ("buying", "approved", "scheduled");
# urgency signals are whole words so "know" or "snow" do not count as "now".
_BUYING_PATTERNS = {keyword: re.compile(rf"\b{re.escape(keyword)}\w*") for keyword in BUYING_SIGNALS}
_URGENCY_PATTERNS = {keyword: re.compile(rf"\b{re.escape(keyword)}\b") for keyword in URGENCY_SIGNALS}


class LeadStatus(str, Enum):
    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    CONVERTED = "converted"


class PriorityTier(str, Enum):
    HOT = "hot"
    WARM = "warm"
    COLD = "cold"


MessageLike = Union[str, Mapping[str, Any]]


def _message_text(message: MessageLike) -> str:
    if isinstance(message, str):
        return message
    value = message.get("text")
    return value if isinstance(value, str) else ""


def _volume_bonus(count: int) -> int:
    for threshold, bonus in VOLUME_BONUSES:
        if count > threshold:
            return bonus
    return 0


def matched_signals(text: str) -> List[str]:
    lowered = text.lower()
    found = [keyword for keyword, pattern in _BUYING_PATTERNS.items() if pattern.search(lowered)]
    found.extend(keyword for keyword, pattern in _URGENCY_PATTERNS.items() if pattern.search(lowered))
    return found


def score_lead(messages: Iterable[MessageLike], message_count: Optional[int] = None) -> int:
    """Score a lead from its inbound messages.

    ``message_count`` is the lead's total inbound count when ``messages`` holds
    only the most recent ones; it defaults to ``len(messages)``.
    """
    history = list(messages)
    count = len(history) if message_count is None else max(len(history), int(message_count))
    score = BASE_SCORE + _volume_bonus(count)

    recent_text = " ".join(_message_text(item) for item in history[-KEYWORD_WINDOW:]).lower()
    for pattern in _BUYING_PATTERNS.values():
        if pattern.search(recent_text):
            score += BUYING_SIGNAL_BONUS
    for pattern in _URGENCY_PATTERNS.values():
        if pattern.search(recent_text):
            score += URGENCY_SIGNAL_BONUS

    return max(0, min(100, score))


def priority_tier(score: int) -> PriorityTier:
    if score >= HOT_THRESHOLD:
        return PriorityTier.HOT
    if score >= WARM_THRESHOLD:
        return PriorityTier.WARM
    return PriorityTier.COLD
