from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from realty_agent.realty_core.bookings import Booking, BookingStore
from realty_agent.realty_core.calendar_client import CalendarClient, CalendarResult, build_calendar_client
from realty_agent.realty_core.catalog import Property, load_catalog
from realty_agent.realty_core.config import Settings, get_settings
from realty_agent.realty_core.db import (
    claim_message_id,
    count_inbound_messages,
    get_connection,
    get_lead,
    init_db,
    list_inbound_messages,
    list_recent_messages,
    log_message,
    update_lead_status,
    upsert_lead,
)
from realty_agent.realty_core.flow import (
    ACTION_CANCEL_BOOKING,
    ACTION_CREATE_BOOKING,
    ACTION_RESCHEDULE_BOOKING,
    MENU_BUTTONS,
    FlowStep,
    advance_flow,
)
from realty_agent.realty_core.lead_scoring import KEYWORD_WINDOW, LeadStatus, priority_tier, score_lead
from realty_agent.realty_core.llm_client import LLMClient
from realty_agent.realty_core.notifier import NotificationDispatcher, build_agent_notifier
from realty_agent.realty_core.replies import HISTORY_WINDOW, ReplyGenerator
from realty_agent.realty_core.state_store import ConversationStateStore, build_kv_backend, identity_key
from realty_agent.realty_core.temporal import format_display_date, format_display_time
from realty_agent.realty_core.validators import normalize_phone

logger = logging.getLogger(__name__)

PHONE_CHANNELS = {"whatsapp", "twilio"}


@dataclass
class InboundMessage:
    channel: str
    external_user_id: str
    text: str
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    raw_button_id: Optional[str] = None
    message_id: Optional[str] = None
    display_name: Optional[str] = None

    @property
    def identity(self) -> str:
        return identity_key(self.channel, self.external_user_id)


@dataclass
class OutboundReply:
    text: str
    buttons: List[Tuple[str, str]] = field(default_factory=list)


def _sender_phone(inbound: InboundMessage) -> Optional[str]:
    if inbound.channel not in PHONE_CHANNELS:
        return None
    return normalize_phone(inbound.external_user_id)


def _when(booking: Booking) -> str:
    try:
        day = format_display_date(date.fromisoformat(booking.date))
    except ValueError:
        day = booking.date
    return f"{day} at {format_display_time(booking.time)}"


class ConversationService:
    """Runs one turn per inbound message: dedupe, lock, flow or free reply, side effects."""

    def __init__(
        self,
        db_path: Path,
        state_store: ConversationStateStore,
        bookings: BookingStore,
        calendar: CalendarClient,
        notifications: NotificationDispatcher,
        reply_generator: ReplyGenerator,
        properties: Sequence[Property] = (),
        display_timezone: str = "Asia/Singapore",
        agent_name: str = "your agent",
    ) -> None:
        self.db_path = db_path
        self.state_store = state_store
        self.bookings = bookings
        self.calendar = calendar
        self.notifications = notifications
        self.reply_generator = reply_generator
        self.properties = list(properties)
        self.property_names = [item.name for item in self.properties]
        self.display_timezone = display_timezone
        self.agent_name = agent_name

    async def handle(self, inbound: InboundMessage) -> Optional[OutboundReply]:
        """Process one inbound message; returns None for an already-processed delivery."""
        if inbound.message_id and not self._claim(inbound):
            logger.info("Ignoring duplicate %s message_id=%s", inbound.channel, inbound.message_id)
            return None

        async with self.state_store.turn(inbound.identity):
            return await self._handle_locked(inbound)

    def _claim(self, inbound: InboundMessage) -> bool:
        conn = get_connection(self.db_path)
        try:
            return claim_message_id(conn, inbound.channel, str(inbound.message_id))
        finally:
            conn.close()

    async def _handle_locked(self, inbound: InboundMessage) -> OutboundReply:
        state = await self.state_store.load(inbound.identity)
        history = self._record_inbound(inbound)

        step = advance_flow(
            state,
            message_text=inbound.text,
            callback_data=inbound.raw_button_id,
            property_names=self.property_names,
            now=inbound.received_at,
            tz=self.display_timezone,
        )

        if step.handled:
            next_state = step.state
            next_state.funnel_stage = None
            # Persist the reset before side effects so a replayed confirmation finds an idle flow.
            await self.state_store.save(inbound.identity, next_state)
            reply = OutboundReply(text=step.message, buttons=list(step.buttons))
            if step.action:
                reply = await self._run_action(inbound, step)
        else:
            generated = await self.reply_generator.reply(inbound.text, history, state.funnel_stage)
            next_state = step.state
            next_state.funnel_stage = generated.funnel_stage
            await self.state_store.save(inbound.identity, next_state)
            reply = OutboundReply(
                text=generated.text,
                buttons=list(MENU_BUTTONS) if generated.show_menu else [],
            )

        self._record_outbound(inbound, reply, next_state.step)
        return reply

    def _record_inbound(self, inbound: InboundMessage) -> List[Dict[str, Any]]:
        conn = get_connection(self.db_path)
        try:
            history = list_recent_messages(conn, inbound.channel, inbound.external_user_id, limit=HISTORY_WINDOW)
            log_message(
                conn,
                inbound.channel,
                inbound.external_user_id,
                "inbound",
                inbound.text,
                meta={"button": inbound.raw_button_id, "message_id": inbound.message_id},
            )
            message_count = count_inbound_messages(conn, inbound.channel, inbound.external_user_id)
            recent = list_inbound_messages(conn, inbound.channel, inbound.external_user_id, limit=KEYWORD_WINDOW)
            score = score_lead(recent, message_count=message_count)
            upsert_lead(
                conn,
                inbound.channel,
                inbound.external_user_id,
                score=score,
                tier=priority_tier(score).value,
                message_count=message_count,
                phone=inbound.external_user_id if inbound.channel in PHONE_CHANNELS else None,
            )
        finally:
            conn.close()
        return history

    def _record_outbound(self, inbound: InboundMessage, reply: OutboundReply, step: str) -> None:
        conn = get_connection(self.db_path)
        try:
            log_message(
                conn,
                inbound.channel,
                inbound.external_user_id,
                "outbound",
                reply.text,
                meta={"step": step, "buttons": [payload for _, payload in reply.buttons]},
            )
            lead = get_lead(conn, inbound.channel, inbound.external_user_id)
            if lead and lead.get("status") == LeadStatus.NEW.value:
                update_lead_status(conn, inbound.channel, inbound.external_user_id, LeadStatus.CONTACTED.value)
        finally:
            conn.close()

    def _mark_qualified(self, inbound: InboundMessage, phone: Optional[str]) -> None:
        conn = get_connection(self.db_path)
        try:
            lead = get_lead(conn, inbound.channel, inbound.external_user_id)
            status = lead.get("status") if lead else None
            if status == LeadStatus.CONVERTED.value:
                return
            update_lead_status(conn, inbound.channel, inbound.external_user_id, LeadStatus.QUALIFIED.value, phone=phone)
        finally:
            conn.close()

    async def _calendar_call(self, operation: str, *args: Any) -> CalendarResult:
        try:
            return await getattr(self.calendar, operation)(*args)
        except Exception as exc:
            logger.exception("Calendar %s raised", operation)
            return CalendarResult(success=False, error=str(exc) or exc.__class__.__name__)

    def _with_calendar_warning(self, text: str, result: CalendarResult) -> str:
        if result.success or self.calendar.provider == "none":
            return text
        logger.warning("Calendar sync failed: %s", result.error)
        return f"{text}\nHeads up: I couldn't update the calendar, but {self.agent_name} has the details."

    async def _run_action(self, inbound: InboundMessage, step: FlowStep) -> OutboundReply:
        if step.action == ACTION_CREATE_BOOKING:
            return await self._create_booking(inbound, step)
        if step.action == ACTION_RESCHEDULE_BOOKING:
            return await self._reschedule_booking(inbound, step)
        if step.action == ACTION_CANCEL_BOOKING:
            return await self._cancel_booking(inbound, step)
        logger.warning("Unknown flow action: %s", step.action)
        return OutboundReply(text=step.message, buttons=list(step.buttons))

    async def _create_booking(self, inbound: InboundMessage, step: FlowStep) -> OutboundReply:
        booking = self.bookings.create(inbound.channel, inbound.external_user_id, step.action_data)
        result = await self._calendar_call("create_event", booking)
        if result.success:
            self.bookings.attach_calendar_event(booking, result.event_id, result.link)
        self._mark_qualified(inbound, booking.phone)

        self.notifications.dispatch(
            "\n".join(
                [
                    "New viewing booked",
                    f"Property: {booking.property}",
                    f"Client: {booking.name}",
                    f"Phone: +{booking.phone}",
                    f"Email: {booking.email}",
                    f"When: {_when(booking)}",
                    f"Channel: {booking.channel}",
                ]
            )
        )
        text = f"{step.message}\n{booking.property}, {_when(booking)}. See you there!"
        return OutboundReply(text=self._with_calendar_warning(text, result))

    def _not_found(self, step: FlowStep) -> OutboundReply:
        data = step.action_data
        return OutboundReply(
            text=(
                f"I couldn't find an active booking for {data.get('name')} at {data.get('property')}. "
                "Would you like to book a new viewing?"
            ),
            buttons=list(MENU_BUTTONS),
        )

    async def _reschedule_booking(self, inbound: InboundMessage, step: FlowStep) -> OutboundReply:
        data = step.action_data
        booking = self.bookings.find_active(
            inbound.channel,
            inbound.external_user_id,
            str(data.get("property") or ""),
            str(data.get("name") or ""),
            phone=_sender_phone(inbound),
        )
        if booking is None:
            return self._not_found(step)

        previous = _when(booking)
        booking = self.bookings.reschedule(booking, str(data["date"]), str(data["time"]))
        result = await self._calendar_call("update_event", booking)
        if result.success and result.event_id and result.event_id != booking.calendar_event_id:
            self.bookings.attach_calendar_event(booking, result.event_id, result.link or booking.calendar_link)

        self.notifications.dispatch(
            "\n".join(
                [
                    "Viewing rescheduled",
                    f"Property: {booking.property}",
                    f"Client: {booking.name}",
                    f"Phone: +{booking.phone}",
                    f"Was: {previous}",
                    f"Now: {_when(booking)}",
                ]
            )
        )
        text = f"{step.message}\n{booking.property}, {_when(booking)}."
        return OutboundReply(text=self._with_calendar_warning(text, result))

    async def _cancel_booking(self, inbound: InboundMessage, step: FlowStep) -> OutboundReply:
        data = step.action_data
        booking = self.bookings.find_active(
            inbound.channel,
            inbound.external_user_id,
            str(data.get("property") or ""),
            str(data.get("name") or ""),
            phone=_sender_phone(inbound),
        )
        if booking is None:
            return self._not_found(step)

        booking = self.bookings.cancel(booking)
        result = await self._calendar_call("delete_event", booking.phone, booking.calendar_event_id)

        self.notifications.dispatch(
            "\n".join(
                [
                    "Viewing cancelled",
                    f"Property: {booking.property}",
                    f"Client: {booking.name}",
                    f"Phone: +{booking.phone}",
                    f"Was: {_when(booking)}",
                ]
            )
        )
        text = f"{step.message} Just message me whenever you'd like to book again."
        return OutboundReply(text=self._with_calendar_warning(text, result))

    async def aclose(self) -> None:
        await self.notifications.drain()
        await self.state_store.aclose()


def build_conversation_service(settings: Optional[Settings] = None) -> ConversationService:
    cfg = settings or get_settings()
    init_db(cfg.database_path)
    catalog = load_catalog(cfg.catalog_path)
    state_store = ConversationStateStore(
        build_kv_backend(cfg),
        ttl_seconds=cfg.state_ttl_seconds or None,
        max_cache_entries=cfg.state_cache_size,
    )
    llm_client = LLMClient(
        api_key=cfg.llm_api_key,
        model=cfg.llm_model,
        endpoint=cfg.llm_endpoint,
        timeout_seconds=cfg.outbound_timeout_seconds,
    )
    return ConversationService(
        db_path=cfg.database_path,
        state_store=state_store,
        bookings=BookingStore(cfg.database_path),
        calendar=build_calendar_client(cfg),
        notifications=NotificationDispatcher(build_agent_notifier(cfg)),
        reply_generator=ReplyGenerator(
            llm_client=llm_client,
            properties=catalog.properties,
            agent_name=cfg.agent_name,
        ),
        properties=catalog.properties,
        display_timezone=cfg.display_timezone,
        agent_name=cfg.agent_name,
    )
