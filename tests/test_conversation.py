import random
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from realty_agent.realty_core.bookings import BOOKING_CANCELLED, BOOKING_CONFIRMED, BOOKING_RESCHEDULED, BookingStore
from realty_agent.realty_core.calendar_client import CalendarResult, NoopCalendarClient
from realty_agent.realty_core.catalog import load_catalog
from realty_agent.realty_core.conversation import ConversationService, InboundMessage
from realty_agent.realty_core.db import get_connection, get_lead, init_db
from realty_agent.realty_core.flow import (
    FLOW_CONFIRM,
    MENU_BOOK,
    MENU_BUTTONS,
    MENU_CANCEL,
    MENU_RESCHEDULE,
    STATE_BOOK_NAME,
    STATE_IDLE,
)
from realty_agent.realty_core.notifier import NotificationDispatcher, NotifyResult
from realty_agent.realty_core.replies import ReplyGenerator
from realty_agent.realty_core.state_store import ConversationStateStore, InMemoryKeyValueBackend

# Monday 19 Oct 2026, 9am in Singapore.
NOW = datetime(2026, 10, 19, 1, 0, tzinfo=timezone.utc)


class _FakeCalendar:
    provider = "google"

    def __init__(self, success: bool = True, exc: Exception = None) -> None:
        self.success = success
        self.exc = exc
        self.calls = []

    def _result(self, event_id: str) -> CalendarResult:
        if self.exc is not None:
            raise self.exc
        if not self.success:
            return CalendarResult(success=False, error="Google Calendar HTTP error: 500")
        return CalendarResult(success=True, event_id=event_id, link=f"https://calendar.example/{event_id}")

    async def create_event(self, booking):
        self.calls.append(("create", booking.id))
        return self._result("evt-1")

    async def update_event(self, booking):
        self.calls.append(("update", booking.calendar_event_id))
        return self._result(booking.calendar_event_id or "evt-1")

    async def delete_event(self, phone, event_id=None):
        self.calls.append(("delete", phone, event_id))
        return self._result(event_id or "evt-1")


class _RecordingNotifier:
    provider = "telegram"

    def __init__(self) -> None:
        self.texts = []

    async def notify(self, text: str) -> NotifyResult:
        self.texts.append(text)
        return NotifyResult(success=True)


class ConversationServiceTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = Path(self.tmpdir.name) / "realty.db"
        init_db(self.db_path)
        self.backend = InMemoryKeyValueBackend()
        self.calendar = _FakeCalendar()
        self.notifier = _RecordingNotifier()
        self.bookings = BookingStore(self.db_path)
        self.service = self._service(self.calendar)
        self._counter = 0

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def _service(self, calendar) -> ConversationService:
        properties = load_catalog().properties
        return ConversationService(
            db_path=self.db_path,
            state_store=ConversationStateStore(self.backend),
            bookings=self.bookings,
            calendar=calendar,
            notifications=NotificationDispatcher(self.notifier),
            reply_generator=ReplyGenerator(properties=properties, agent_name="Sarah", rng=random.Random(5)),
            properties=properties,
            display_timezone="Asia/Singapore",
            agent_name="Sarah",
        )

    async def _say(self, text: str = "", button: str = None, user: str = "42", message_id: str = None):
        self._counter += 1
        return await self.service.handle(
            InboundMessage(
                channel="telegram",
                external_user_id=user,
                text=text,
                received_at=NOW,
                raw_button_id=button,
                message_id=message_id or f"m{self._counter}",
            )
        )

    async def _book(self, user: str = "42"):
        await self._say(button=MENU_BOOK, user=user)
        await self._say(button="pick:3", user=user)
        for text in ["Jane Tan", "9123 4567", "jane@example.com", "wednesday", "2pm"]:
            await self._say(text, user=user)
        return await self._say(button=FLOW_CONFIRM, user=user)

    def _lead(self, user: str = "42"):
        conn = get_connection(self.db_path)
        try:
            return get_lead(conn, "telegram", user)
        finally:
            conn.close()

    async def test_full_booking_creates_one_booking(self) -> None:
        reply = await self._book()
        await self.service.notifications.drain()

        self.assertEqual(
            reply.text,
            "You're all set! Your viewing is confirmed.\nPasir Ris Rise, Wed, 21 Oct 2026 at 2pm. See you there!",
        )
        bookings = self.bookings.list()
        self.assertEqual(len(bookings), 1)
        booking = bookings[0]
        self.assertEqual(booking.phone, "6591234567")
        self.assertEqual(booking.calendar_event_id, "evt-1")
        self.assertEqual(booking.starts_at("Asia/Singapore").isoformat(), "2026-10-21T14:00:00+08:00")

        state = self.service.state_store.cached("telegram:42")
        self.assertEqual(state.step, STATE_IDLE)
        self.assertEqual(state.data, {})
        self.assertTrue(self.notifier.texts[0].startswith("New viewing booked"))
        self.assertIn("When: Wed, 21 Oct 2026 at 2pm", self.notifier.texts[0])

        lead = self._lead()
        self.assertEqual(lead["status"], "qualified")
        self.assertEqual(lead["phone"], "6591234567")

    async def test_replayed_confirmation_does_not_double_book(self) -> None:
        await self._book()
        replay = await self._say(button=FLOW_CONFIRM)
        self.assertIsNotNone(replay)
        self.assertEqual(len(self.bookings.list()), 1)

    async def test_duplicate_message_id_is_ignored(self) -> None:
        first = await self._say(button=MENU_BOOK, message_id="dup-1")
        second = await self._say(button=MENU_BOOK, message_id="dup-1")
        self.assertIsNotNone(first)
        self.assertIsNone(second)

    async def test_calendar_failure_keeps_booking_and_warns(self) -> None:
        self.service = self._service(_FakeCalendar(success=False))
        reply = await self._book()
        self.assertTrue(
            reply.text.endswith("Heads up: I couldn't update the calendar, but Sarah has the details.")
        )
        booking = self.bookings.list()[0]
        self.assertIsNone(booking.calendar_event_id)

    async def test_calendar_exception_is_contained(self) -> None:
        self.service = self._service(_FakeCalendar(exc=RuntimeError("socket closed")))
        with self.assertLogs("realty_agent.realty_core.conversation", level="ERROR"):
            reply = await self._book()
        self.assertIn("Heads up", reply.text)
        self.assertEqual(len(self.bookings.list()), 1)

    async def test_disabled_calendar_adds_no_warning(self) -> None:
        self.service = self._service(NoopCalendarClient())
        reply = await self._book()
        self.assertNotIn("Heads up", reply.text)

    async def test_free_text_uses_reply_generator(self) -> None:
        reply = await self._say("qwerty")
        self.assertEqual(
            reply.text,
            "Thanks for your message. I've passed it on to Sarah, who'll get back to you shortly.",
        )
        self.assertEqual(reply.buttons, MENU_BUTTONS)
        self.assertEqual(self._lead()["status"], "contacted")

    async def test_state_is_persisted_between_turns(self) -> None:
        await self._say(button=MENU_BOOK)
        await self._say(button="pick:1")
        stored = self.backend.items["conv:telegram:42"]
        self.assertEqual(stored["step"], STATE_BOOK_NAME)
        self.assertEqual(stored["data"], {"property": "Bedok Resale Condo"})

    async def test_reschedule_updates_booking(self) -> None:
        await self._book()
        await self._say(button=MENU_RESCHEDULE)
        for text in ["pasir ris", "Jane Tan", "friday", "11am"]:
            await self._say(text)
        reply = await self._say(button=FLOW_CONFIRM)

        self.assertEqual(reply.text, "Done! Your viewing has been rescheduled.\nPasir Ris Rise, Fri, 23 Oct 2026 at 11am.")
        booking = self.bookings.list()[0]
        self.assertEqual(booking.status, BOOKING_RESCHEDULED)
        self.assertEqual((booking.date, booking.time), ("2026-10-23", "11:00"))
        self.assertIn(("update", "evt-1"), self.calendar.calls)

    async def test_cancel_marks_booking_cancelled(self) -> None:
        await self._book()
        await self._say(button=MENU_CANCEL)
        await self._say("3")
        await self._say("jane tan")
        reply = await self._say(button=FLOW_CONFIRM)

        self.assertEqual(
            reply.text,
            "Your viewing has been cancelled. Just message me whenever you'd like to book again.",
        )
        self.assertEqual(self.bookings.list()[0].status, BOOKING_CANCELLED)
        self.assertIn(("delete", "6591234567", "evt-1"), self.calendar.calls)

    async def test_other_sender_cannot_cancel_booking_by_name(self) -> None:
        await self._book(user="42")
        await self._say(button=MENU_CANCEL, user="999")
        await self._say("3", user="999")
        await self._say("jane tan", user="999")
        reply = await self._say(button=FLOW_CONFIRM, user="999")

        self.assertTrue(reply.text.startswith("I couldn't find an active booking for Jane Tan at Pasir Ris Rise."))
        booking = self.bookings.list()[0]
        self.assertEqual(booking.status, BOOKING_CONFIRMED)
        self.assertEqual(booking.external_user_id, "42")
        self.assertNotIn("delete", [call[0] for call in self.calendar.calls])

    async def test_cancel_without_booking_reports_not_found(self) -> None:
        await self._say(button=MENU_CANCEL)
        await self._say("bedok")
        await self._say("Jane Tan")
        reply = await self._say(button=FLOW_CONFIRM)

        self.assertEqual(
            reply.text,
            "I couldn't find an active booking for Jane Tan at Bedok Resale Condo. "
            "Would you like to book a new viewing?",
        )
        self.assertEqual(reply.buttons, MENU_BUTTONS)

    async def test_identities_do_not_share_state(self) -> None:
        await self._say(button=MENU_BOOK, user="1")
        reply = await self._say("qwerty", user="2")
        self.assertIn("Sarah", reply.text)
        self.assertEqual(self.service.state_store.cached("telegram:2").step, STATE_IDLE)


if __name__ == "__main__":
    unittest.main()
