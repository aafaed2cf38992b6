from __future__ import annotations

import logging
import random
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from realty_agent.realty_core.catalog import Property
from realty_agent.realty_core.llm_client import HISTORY_LIMIT, LLMClient

logger = logging.getLogger(__name__)

HISTORY_WINDOW = HISTORY_LIMIT

FUNNEL_BUDGET = "budget"
FUNNEL_LOCATION = "location"
FUNNEL_BEDROOMS = "bedrooms"
FUNNEL_TENURE = "tenure"
FUNNEL_VIEWING = "viewing"

CATEGORY_GREETING = "greeting"
CATEGORY_PROPERTY_INTEREST = "property_interest"
CATEGORY_BUDGET = "budget"
CATEGORY_BOOKING_INTENT = "booking_intent"
CATEGORY_GRATITUDE = "gratitude"
CATEGORY_ACKNOWLEDGEMENT = "acknowledgement"

AREA_KEYWORDS = (
    "east",
    "west",
    "north",
    "south",
    "central",
    "tampines",
    "bedok",
    "jurong",
    "pasir",
    "sentosa",
    "punggol",
    "woodlands",
    "bishan",
    "orchard",
)

SYSTEM_PROMPT_TEMPLATE = """You are a friendly, professional personal assistant for a real estate agent in Singapore. \
Your goal is to help potential clients find properties and schedule viewings.

IMPORTANT:
- Keep responses SHORT and NATURAL. Like texting a friend.
- Never use bullet points or numbered lists.
- Respond to questions naturally.
- If they ask about properties, ask about their budget and preferred area.
- When they seem ready, suggest booking a viewing. They can type "book a viewing" to start.
- Sound like a real person, not a bot.

The agent you work for is named {agent_name}. You handle inquiries for them.

Current property listings:
{listings}"""

# Ordered by priority: the first matching category wins.
CATEGORY_PATTERNS: Tuple[Tuple[str, "re.Pattern[str]"], ...] = (
    (CATEGORY_GREETING, re.compile(r"\b(hi|hello|hey|hiya|howdy|good (morning|afternoon|evening))\b")),
    (
        CATEGORY_PROPERTY_INTEREST,
        re.compile(r"\b(looking for|property|properties|house|condo|apartment|flat|hdb|listings?|home)\b"),
    ),
    (CATEGORY_BUDGET, re.compile(r"\$|\b(price|prices|cost|budget|million|how much|afford|loan|psf)\b")),
    (
        CATEGORY_BOOKING_INTENT,
        re.compile(r"\b(viewing|view it|visit|see it|see the|appointment|available|tour|showing)\b"),
    ),
    (CATEGORY_GRATITUDE, re.compile(r"\b(thanks?|thank you|thx|cheers|appreciate)\b")),
    (CATEGORY_ACKNOWLEDGEMENT, re.compile(r"\b(ok|okay|sure|great|cool|alright|noted|got it|sounds good|nice)\b")),
)

# (reply, funnel stage the reply asks about, show the action menu)
CATEGORY_POOLS: Dict[str, List[Tuple[str, Optional[str], bool]]] = {
    CATEGORY_GREETING: [
        ("Hey! {agent_name} asked me to help out. What kind of property are you looking for?", None, False),
        ("Hi there! I'm helping {agent_name} with enquiries. What's your budget for the property?", FUNNEL_BUDGET, False),
        ("Hello! Happy to help you find a place. What's your estimated budget?", FUNNEL_BUDGET, False),
    ],
    CATEGORY_PROPERTY_INTEREST: [
        ("Nice. What's your budget for the property?", FUNNEL_BUDGET, False),
        ("Happy to help with that. What's your estimated budget?", FUNNEL_BUDGET, False),
    ],
    CATEGORY_BUDGET: [
        ("Here's what we have right now:\n{listings}\n\nWhich area do you prefer?", FUNNEL_LOCATION, False),
        ("Prices start from {lowest_price}. Which area or location are you keen on?", FUNNEL_LOCATION, False),
    ],
    CATEGORY_BOOKING_INTENT: [
        ("Let's do it. Tap 'Book a viewing' and I'll take down the details.", None, True),
        ("Sure thing, I can set up a viewing for you. Tap 'Book a viewing' to start.", None, True),
    ],
    CATEGORY_GRATITUDE: [
        ("You're welcome! Let me know if you'd like to schedule a viewing.", None, True),
        ("Anytime! Just message me when you're ready to view.", None, False),
    ],
    CATEGORY_ACKNOWLEDGEMENT: [
        ("Great. Would you like to book a viewing?", None, True),
        ("Cool. Anything else you'd like to know about the listings?", None, False),
    ],
}

DEFAULT_REPLY = "Thanks for your message. I've passed it on to {agent_name}, who'll get back to you shortly."

FUNNEL_PROMPTS: Dict[str, Tuple[str, str]] = {
    # stage: (question when the answer was missing, next question once answered)
    FUNNEL_BUDGET: ("What's your estimated budget?", "Got it! Which area or location do you prefer?"),
    FUNNEL_LOCATION: (
        "Which area interests you, like East, West, North or Central?",
        "Great! How many bedrooms do you need?",
    ),
    FUNNEL_BEDROOMS: ("How many bedrooms, 1, 2 or 3?", "Would you prefer new launch or resale?"),
    FUNNEL_TENURE: (
        "Would you prefer new launch or resale?",
        "I'll arrange a viewing. What date and time works for you?",
    ),
    FUNNEL_VIEWING: (
        "What date and time works for you?",
        "Perfect. Tap 'Book a viewing' and I'll lock in the details with {agent_name}.",
    ),
}
FUNNEL_NEXT_STAGE = {
    FUNNEL_BUDGET: FUNNEL_LOCATION,
    FUNNEL_LOCATION: FUNNEL_BEDROOMS,
    FUNNEL_BEDROOMS: FUNNEL_TENURE,
    FUNNEL_TENURE: FUNNEL_VIEWING,
    FUNNEL_VIEWING: None,
}

_QUESTION_RE = re.compile(r"[^.?!\n]*\?")
_DIGIT_RE = re.compile(r"\d")
_BUDGET_ANSWER_RE = re.compile(r"\$|\bmillion\b|\bmil\b|\d\s*(k|m)\b|\d")
_BEDROOM_WORDS_RE = re.compile(r"\d|\b(one|two|three|four|five|studio)\b")
_TENURE_ANSWER_RE = re.compile(r"\b(new|launch|resale|either|both|any|whichever|no preference)\b")
_DATE_TIME_HINT_RE = re.compile(
    r"\d|\b(today|tomorrow|tmr|morning|afternoon|evening|weekend|"
    r"mon|tue|wed|thu|fri|sat|sun|monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b"
)


@dataclass
class GeneratedReply:
    text: str
    funnel_stage: Optional[str] = None
    used_fallback: bool = True
    show_menu: bool = False
    category: Optional[str] = None
    error: Optional[str] = None


def last_outbound_text(history: Sequence[Dict[str, Any]]) -> str:
    for item in reversed(list(history)):
        if item.get("direction") == "outbound":
            return str(item.get("text") or "")
    return ""


def infer_asked_stage(outbound_text: str) -> Optional[str]:
    """Which funnel question, if any, the given outbound message asked."""
    questions = " ".join(_QUESTION_RE.findall(outbound_text.lower()))
    if not questions:
        return None
    if "budget" in questions:
        return FUNNEL_BUDGET
    if "location" in questions or "area" in questions:
        return FUNNEL_LOCATION
    if "bedroom" in questions:
        return FUNNEL_BEDROOMS
    if "new launch" in questions or "resale" in questions:
        return FUNNEL_TENURE
    if "date" in questions or "time works" in questions:
        return FUNNEL_VIEWING
    return None


def answers_stage(stage: str, lowered: str) -> bool:
    if stage == FUNNEL_BUDGET:
        return bool(_BUDGET_ANSWER_RE.search(lowered))
    if stage == FUNNEL_LOCATION:
        return any(re.search(rf"\b{keyword}", lowered) for keyword in AREA_KEYWORDS)
    if stage == FUNNEL_BEDROOMS:
        return bool(_BEDROOM_WORDS_RE.search(lowered))
    if stage == FUNNEL_TENURE:
        return bool(_TENURE_ANSWER_RE.search(lowered))
    if stage == FUNNEL_VIEWING:
        return bool(_DATE_TIME_HINT_RE.search(lowered))
    return False


def classify_message(text: str) -> Optional[str]:
    lowered = text.lower()
    for category, pattern in CATEGORY_PATTERNS:
        if pattern.search(lowered):
            return category
    return None


class ReplyGenerator:
    def __init__(
        self,
        llm_client: Optional[LLMClient] = None,
        properties: Sequence[Property] = (),
        agent_name: str = "your agent",
        rng: Optional[random.Random] = None,
    ) -> None:
        self.llm_client = llm_client
        self.properties = list(properties)
        self.agent_name = agent_name
        self.rng = rng or random.Random()

    def system_prompt(self) -> str:
        listings = "\n".join(f"- {item.listing_line()}" for item in self.properties) or "- (no listings loaded)"
        return SYSTEM_PROMPT_TEMPLATE.format(agent_name=self.agent_name, listings=listings)

    def _render(self, template: str) -> str:
        listings = "\n".join(f"{index}. {item.name} - {item.price}" for index, item in enumerate(self.properties, 1))
        prices = sorted((item.price for item in self.properties), key=_price_sort_key)
        return template.format(
            agent_name=self.agent_name,
            listings=listings or "New listings are coming soon.",
            lowest_price=prices[0] if prices else "a range of budgets",
        )

    async def reply(
        self,
        user_text: str,
        history: Sequence[Dict[str, Any]] = (),
        funnel_stage: Optional[str] = None,
    ) -> GeneratedReply:
        error: Optional[str] = None
        if self.llm_client is not None and self.llm_client.is_configured():
            try:
                result = await self.llm_client.generate(self.system_prompt(), history, user_text)
            except Exception as exc:
                logger.exception("LLM collaborator raised unexpectedly")
                error = f"LLM error: {exc}"
            else:
                if result.text:
                    return GeneratedReply(
                        text=result.text,
                        funnel_stage=infer_asked_stage(result.text),
                        used_fallback=False,
                    )
                error = result.error
                logger.warning("LLM reply unavailable, using fallback: %s", error)

        fallback = self.fallback_reply(user_text, history, funnel_stage)
        fallback.error = error
        return fallback

    def fallback_reply(
        self,
        user_text: str,
        history: Sequence[Dict[str, Any]] = (),
        funnel_stage: Optional[str] = None,
    ) -> GeneratedReply:
        """Deterministic rule-based reply; never raises, never empty."""
        try:
            return self._fallback_reply(user_text or "", history, funnel_stage)
        except Exception:
            logger.exception("Fallback reply failed; using default reply")
            return GeneratedReply(text=DEFAULT_REPLY.format(agent_name=self.agent_name))

    def _fallback_reply(
        self,
        user_text: str,
        history: Sequence[Dict[str, Any]],
        funnel_stage: Optional[str],
    ) -> GeneratedReply:
        lowered = user_text.lower()
        asked = infer_asked_stage(last_outbound_text(history)) or funnel_stage

        if asked in FUNNEL_PROMPTS:
            missing_question, next_question = FUNNEL_PROMPTS[asked]
            if answers_stage(asked, lowered):
                next_stage = FUNNEL_NEXT_STAGE[asked]
                return GeneratedReply(
                    text=self._render(next_question),
                    funnel_stage=next_stage,
                    show_menu=next_stage is None,
                    category="funnel",
                )
            if classify_message(user_text) is None:
                return GeneratedReply(text=missing_question, funnel_stage=asked, category="funnel")

        category = classify_message(user_text)
        if category is None:
            return GeneratedReply(text=self._render(DEFAULT_REPLY), show_menu=True)

        template, stage, show_menu = self.rng.choice(CATEGORY_POOLS[category])
        return GeneratedReply(
            text=self._render(template),
            funnel_stage=stage,
            show_menu=show_menu,
            category=category,
        )


def _price_sort_key(price: str) -> float:
    match = re.search(r"(\d+(?:\.\d+)?)\s*([mk])?", price.lower())
    if not match:
        return float("inf")
    value = float(match.group(1))
    unit = match.group(2)
    if unit == "m":
        value *= 1_000_000
    elif unit == "k":
        value *= 1_000
    return value
