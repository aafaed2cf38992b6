from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date, datetime, time, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from realty_agent.realty_core.db import get_booking, get_connection, insert_booking, list_bookings, update_booking
from realty_agent.realty_core.temporal import resolve_timezone

BOOKING_CONFIRMED = "confirmed"
BOOKING_RESCHEDULED = "rescheduled"
BOOKING_CANCELLED = "cancelled"
ACTIVE_STATUSES = (BOOKING_CONFIRMED, BOOKING_RESCHEDULED)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Booking:
    id: str
    channel: str
    external_user_id: str
    property: str
    name: str
    phone: str
    email: str
    date: str
    time: str
    status: str = BOOKING_CONFIRMED
    calendar_event_id: Optional[str] = None
    calendar_link: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def starts_at(self, tz: Optional[str] = None) -> datetime:
        return datetime.combine(
            date.fromisoformat(self.date),
            time.fromisoformat(self.time),
            tzinfo=resolve_timezone(tz),
        )

    def to_record(self) -> Dict[str, Any]:
        record = asdict(self)
        record["external_id"] = record.pop("external_user_id")
        return record

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> "Booking":
        return cls(
            id=str(row["id"]),
            channel=str(row["channel"]),
            external_user_id=str(row["external_id"]),
            property=str(row["property"]),
            name=str(row["name"]),
            phone=str(row["phone"]),
            email=str(row["email"]),
            date=str(row["date"]),
            time=str(row["time"]),
            status=str(row.get("status") or BOOKING_CONFIRMED),
            calendar_event_id=row.get("calendar_event_id"),
            calendar_link=row.get("calendar_link"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


class BookingStore:
    """Append-only booking list; bookings change status but are never deleted."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def create(self, channel: str, external_user_id: str, slots: Dict[str, Any]) -> Booking:
        now = _utc_now()
        booking = Booking(
            id=uuid4().hex,
            channel=channel,
            external_user_id=external_user_id,
            property=str(slots["property"]),
            name=str(slots["name"]),
            phone=str(slots["phone"]),
            email=str(slots["email"]),
            date=str(slots["date"]),
            time=str(slots["time"]),
            status=BOOKING_CONFIRMED,
            created_at=now,
            updated_at=now,
        )
        conn = get_connection(self.db_path)
        try:
            insert_booking(conn, booking.to_record())
        finally:
            conn.close()
        return booking

    def get(self, booking_id: str) -> Optional[Booking]:
        conn = get_connection(self.db_path)
        try:
            row = get_booking(conn, booking_id)
        finally:
            conn.close()
        return Booking.from_record(row) if row else None

    def list(self, limit: int = 100, statuses: Optional[List[str]] = None) -> List[Booking]:
        conn = get_connection(self.db_path)
        try:
            rows = list_bookings(conn, limit=limit, statuses=statuses)
        finally:
            conn.close()
        return [Booking.from_record(row) for row in rows]

    def _update(self, booking: Booking, **fields: Any) -> Booking:
        fields["updated_at"] = _utc_now()
        conn = get_connection(self.db_path)
        try:
            update_booking(conn, booking.id, fields)
        finally:
            conn.close()
        for key, value in fields.items():
            setattr(booking, key, value)
        return booking

    def attach_calendar_event(self, booking: Booking, event_id: Optional[str], link: Optional[str]) -> Booking:
        return self._update(booking, calendar_event_id=event_id, calendar_link=link)

    def reschedule(self, booking: Booking, new_date: str, new_time: str) -> Booking:
        return self._update(booking, date=new_date, time=new_time, status=BOOKING_RESCHEDULED)

    def cancel(self, booking: Booking) -> Booking:
        return self._update(booking, status=BOOKING_CANCELLED)

    def find_active(
        self,
        channel: str,
        external_user_id: str,
        property_name: str,
        name: str,
        phone: Optional[str] = None,
        limit: int = 500,
    ) -> Optional[Booking]:
        """Latest active booking for the property owned by the sender.

        A booking belongs to the sender when it was made from the same identity
        or, when ``phone`` is given, carries that phone number. A name match
        only ranks the sender's own bookings.
        """
        wanted_property = property_name.strip().lower()
        wanted_name = " ".join(name.split()).lower()
        owned: List[Booking] = []
        for booking in self.list(limit=limit, statuses=list(ACTIVE_STATUSES)):
            if booking.property.lower() != wanted_property:
                continue
            same_sender = booking.channel == channel and booking.external_user_id == external_user_id
            if not same_sender and not (phone and booking.phone == phone):
                continue
            if " ".join(booking.name.split()).lower() == wanted_name:
                return booking
            owned.append(booking)
        return owned[0] if owned else None
