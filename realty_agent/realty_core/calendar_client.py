from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Protocol
from urllib.parse import quote

import httpx

from realty_agent.realty_core.bookings import Booking
from realty_agent.realty_core.config import Settings, get_settings

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_URL = "https://www.googleapis.com/calendar/v3"


@dataclass
class CalendarResult:
    success: bool
    event_id: Optional[str] = None
    link: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


class CalendarClient(Protocol):
    provider: str

    async def create_event(self, booking: Booking) -> CalendarResult:
        ...

    async def update_event(self, booking: Booking) -> CalendarResult:
        ...

    async def delete_event(self, phone: str, event_id: Optional[str] = None) -> CalendarResult:
        ...


class GoogleCalendarClient:
    provider = "google"

    def __init__(
        self,
        access_token: str,
        calendar_id: str = "primary",
        timezone_name: str = "Asia/Singapore",
        duration_minutes: int = 60,
        timeout_seconds: float = 10.0,
        base_url: str = GOOGLE_CALENDAR_API_URL,
    ) -> None:
        self.access_token = access_token.strip()
        self.calendar_id = calendar_id.strip() or "primary"
        self.timezone_name = timezone_name
        self.duration_minutes = duration_minutes
        self.timeout_seconds = timeout_seconds
        self.base_url = base_url.rstrip("/")

    def _is_configured(self) -> bool:
        return bool(self.access_token)

    def _events_url(self, event_id: Optional[str] = None) -> str:
        url = f"{self.base_url}/calendars/{quote(self.calendar_id, safe='')}/events"
        if event_id:
            url = f"{url}/{quote(event_id, safe='')}"
        return url

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _safe_error_message(exc: Exception) -> str:
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code
            body = exc.response.text.strip()
            if body:
                return f"Google Calendar HTTP error: {status} ({body[:300]})"
            return f"Google Calendar HTTP error: {status}"
        if isinstance(exc, httpx.RequestError):
            return f"Google Calendar connection error: {exc}"
        return f"Google Calendar error: {exc}"

    def build_event_payload(self, booking: Booking) -> Dict[str, Any]:
        start = booking.starts_at(self.timezone_name)
        end = start + timedelta(minutes=self.duration_minutes)
        return {
            "summary": f"Property Viewing - {booking.name}",
            "location": booking.property,
            "description": "\n".join(
                [
                    f"Client: {booking.name}",
                    f"Phone: +{booking.phone}",
                    f"Email: {booking.email}",
                    f"Property: {booking.property}",
                    f"Booking: {booking.id}",
                ]
            ),
            "start": {"dateTime": start.isoformat(), "timeZone": self.timezone_name},
            "end": {"dateTime": end.isoformat(), "timeZone": self.timezone_name},
            "reminders": {
                "useDefault": False,
                "overrides": [
                    {"method": "popup", "minutes": 60},
                    {"method": "popup", "minutes": 1440},
                ],
            },
        }

    async def _request(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.request(method, url, headers=self._headers(), **kwargs)
        response.raise_for_status()
        data = response.json() if response.text else {}
        return data if isinstance(data, dict) else {}

    async def find_event_id_by_phone(self, phone: str) -> Optional[str]:
        """Fallback lookup for bookings stored without an event id."""
        payload = await self._request(
            "GET",
            self._events_url(),
            params={
                "q": phone,
                "singleEvents": "true",
                "orderBy": "startTime",
                "timeMin": datetime.now(timezone.utc).isoformat(),
            },
        )
        items = payload.get("items")
        if not isinstance(items, list):
            return None
        for item in items:
            if isinstance(item, dict) and phone in str(item.get("description") or "") and item.get("id"):
                return str(item["id"])
        return None

    async def create_event(self, booking: Booking) -> CalendarResult:
        if not self._is_configured():
            return CalendarResult(success=False, error="Google Calendar is not configured. Fill GOOGLE_CALENDAR_ACCESS_TOKEN.")
        try:
            payload = await self._request("POST", self._events_url(), json=self.build_event_payload(booking))
        except Exception as exc:
            return CalendarResult(success=False, error=self._safe_error_message(exc))
        event_id = payload.get("id")
        if not event_id:
            return CalendarResult(success=False, raw=payload, error="Google Calendar returned no event id.")
        return CalendarResult(success=True, event_id=str(event_id), link=payload.get("htmlLink"), raw=payload)

    async def update_event(self, booking: Booking) -> CalendarResult:
        if not self._is_configured():
            return CalendarResult(success=False, error="Google Calendar is not configured. Fill GOOGLE_CALENDAR_ACCESS_TOKEN.")
        try:
            event_id = booking.calendar_event_id or await self.find_event_id_by_phone(booking.phone)
            if not event_id:
                return CalendarResult(success=False, error="No calendar event found for this booking.")
            event = self.build_event_payload(booking)
            payload = await self._request(
                "PATCH",
                self._events_url(event_id),
                json={"start": event["start"], "end": event["end"], "description": event["description"]},
            )
        except Exception as exc:
            return CalendarResult(success=False, error=self._safe_error_message(exc))
        return CalendarResult(
            success=True,
            event_id=str(payload.get("id") or event_id),
            link=payload.get("htmlLink"),
            raw=payload,
        )

    async def delete_event(self, phone: str, event_id: Optional[str] = None) -> CalendarResult:
        if not self._is_configured():
            return CalendarResult(success=False, error="Google Calendar is not configured. Fill GOOGLE_CALENDAR_ACCESS_TOKEN.")
        try:
            target = event_id or await self.find_event_id_by_phone(phone)
            if not target:
                return CalendarResult(success=False, error="No calendar event found for this booking.")
            await self._request("DELETE", self._events_url(target))
        except Exception as exc:
            return CalendarResult(success=False, error=self._safe_error_message(exc))
        return CalendarResult(success=True, event_id=target)


class NoopCalendarClient:
    provider = "none"

    def __init__(self, reason: Optional[str] = None) -> None:
        self.reason = reason or "Calendar integration is disabled (CALENDAR_PROVIDER=none)."

    async def create_event(self, booking: Booking) -> CalendarResult:
        return CalendarResult(success=False, error=self.reason)

    async def update_event(self, booking: Booking) -> CalendarResult:
        return CalendarResult(success=False, error=self.reason)

    async def delete_event(self, phone: str, event_id: Optional[str] = None) -> CalendarResult:
        return CalendarResult(success=False, error=self.reason)


def build_calendar_client(settings: Optional[Settings] = None) -> CalendarClient:
    cfg = settings or get_settings()
    if cfg.calendar_provider == "google":
        if not cfg.google_calendar_access_token:
            logger.warning("CALENDAR_PROVIDER=google but GOOGLE_CALENDAR_ACCESS_TOKEN is empty.")
        return GoogleCalendarClient(
            access_token=cfg.google_calendar_access_token,
            calendar_id=cfg.google_calendar_id,
            timezone_name=cfg.display_timezone,
            duration_minutes=cfg.viewing_duration_minutes,
            timeout_seconds=cfg.outbound_timeout_seconds,
        )
    return NoopCalendarClient()
