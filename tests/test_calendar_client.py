import unittest
from types import SimpleNamespace
from unittest.mock import patch

import httpx

from realty_agent.realty_core.bookings import Booking
from realty_agent.realty_core.calendar_client import (
    GoogleCalendarClient,
    NoopCalendarClient,
    build_calendar_client,
)


class _MockHttpxResponse:
    def __init__(self, status_code: int, payload, text: str = "{}") -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text
        self.request = httpx.Request("POST", "https://calendar.example")

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            response = httpx.Response(self.status_code, request=self.request, text=self.text)
            raise httpx.HTTPStatusError("error", request=self.request, response=response)

    def json(self):
        return self._payload


class _MockAsyncHttpxClient:
    def __init__(self, responses) -> None:
        self.responses = list(responses)
        self.calls = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        return self.responses.pop(0)


def _booking(**overrides) -> Booking:
    payload = {
        "id": "b1",
        "channel": "telegram",
        "external_user_id": "42",
        "property": "Pasir Ris Rise",
        "name": "Jane Tan",
        "phone": "6591234567",
        "email": "jane@example.com",
        "date": "2026-10-21",
        "time": "14:00",
    }
    payload.update(overrides)
    return Booking(**payload)


class GoogleCalendarClientTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.client = GoogleCalendarClient(
            access_token="token-1",
            calendar_id="agent@example.com",
            base_url="https://calendar.example/v3",
        )

    def test_event_payload(self) -> None:
        payload = self.client.build_event_payload(_booking())
        self.assertEqual(payload["summary"], "Property Viewing - Jane Tan")
        self.assertEqual(payload["location"], "Pasir Ris Rise")
        self.assertEqual(payload["start"]["dateTime"], "2026-10-21T14:00:00+08:00")
        self.assertEqual(payload["end"]["dateTime"], "2026-10-21T15:00:00+08:00")
        self.assertIn("Phone: +6591234567", payload["description"])

    async def test_create_event_returns_id_and_link(self) -> None:
        mock_client = _MockAsyncHttpxClient(
            [_MockHttpxResponse(200, {"id": "evt-1", "htmlLink": "https://calendar.example/evt-1"})]
        )
        with patch("realty_agent.realty_core.calendar_client.httpx.AsyncClient", return_value=mock_client):
            result = await self.client.create_event(_booking())

        self.assertTrue(result.success)
        self.assertEqual(result.event_id, "evt-1")
        self.assertEqual(result.link, "https://calendar.example/evt-1")
        call = mock_client.calls[0]
        self.assertEqual(call["method"], "POST")
        self.assertEqual(call["url"], "https://calendar.example/v3/calendars/agent%40example.com/events")
        self.assertEqual(call["headers"]["Authorization"], "Bearer token-1")

    async def test_create_event_http_error(self) -> None:
        mock_client = _MockAsyncHttpxClient([_MockHttpxResponse(401, {}, text="unauthorized")])
        with patch("realty_agent.realty_core.calendar_client.httpx.AsyncClient", return_value=mock_client):
            result = await self.client.create_event(_booking())
        self.assertFalse(result.success)
        self.assertEqual(result.error, "Google Calendar HTTP error: 401 (unauthorized)")

    async def test_update_uses_stored_event_id(self) -> None:
        mock_client = _MockAsyncHttpxClient([_MockHttpxResponse(200, {"id": "evt-1"})])
        with patch("realty_agent.realty_core.calendar_client.httpx.AsyncClient", return_value=mock_client):
            result = await self.client.update_event(_booking(calendar_event_id="evt-1", time="10:30"))
        self.assertTrue(result.success)
        call = mock_client.calls[0]
        self.assertEqual(call["method"], "PATCH")
        self.assertTrue(call["url"].endswith("/events/evt-1"))
        self.assertEqual(call["json"]["start"]["dateTime"], "2026-10-21T10:30:00+08:00")

    async def test_update_falls_back_to_phone_search(self) -> None:
        mock_client = _MockAsyncHttpxClient(
            [
                _MockHttpxResponse(
                    200,
                    {"items": [{"id": "other", "description": "Phone: +6500000000"}, {"id": "evt-9", "description": "Phone: +6591234567"}]},
                ),
                _MockHttpxResponse(200, {"id": "evt-9"}),
            ]
        )
        with patch("realty_agent.realty_core.calendar_client.httpx.AsyncClient", return_value=mock_client):
            result = await self.client.update_event(_booking())
        self.assertTrue(result.success)
        self.assertEqual(result.event_id, "evt-9")
        self.assertEqual(mock_client.calls[0]["method"], "GET")
        self.assertEqual(mock_client.calls[0]["params"]["q"], "6591234567")

    async def test_delete_without_matching_event(self) -> None:
        mock_client = _MockAsyncHttpxClient([_MockHttpxResponse(200, {"items": []})])
        with patch("realty_agent.realty_core.calendar_client.httpx.AsyncClient", return_value=mock_client):
            result = await self.client.delete_event("6591234567")
        self.assertFalse(result.success)
        self.assertEqual(result.error, "No calendar event found for this booking.")

    async def test_delete_by_event_id(self) -> None:
        mock_client = _MockAsyncHttpxClient([_MockHttpxResponse(204, {}, text="")])
        with patch("realty_agent.realty_core.calendar_client.httpx.AsyncClient", return_value=mock_client):
            result = await self.client.delete_event("6591234567", event_id="evt-1")
        self.assertTrue(result.success)
        self.assertEqual(mock_client.calls[0]["method"], "DELETE")

    async def test_unconfigured_client_does_not_call_network(self) -> None:
        client = GoogleCalendarClient(access_token="")
        with patch("realty_agent.realty_core.calendar_client.httpx.AsyncClient") as mock_cls:
            result = await client.create_event(_booking())
        mock_cls.assert_not_called()
        self.assertFalse(result.success)


class CalendarFactoryTests(unittest.IsolatedAsyncioTestCase):
    def _settings(self, **overrides):
        payload = {
            "calendar_provider": "none",
            "google_calendar_access_token": "",
            "google_calendar_id": "primary",
            "display_timezone": "Asia/Singapore",
            "viewing_duration_minutes": 45,
            "outbound_timeout_seconds": 5.0,
        }
        payload.update(overrides)
        return SimpleNamespace(**payload)

    async def test_noop_by_default(self) -> None:
        client = build_calendar_client(self._settings())
        self.assertIsInstance(client, NoopCalendarClient)
        result = await client.create_event(_booking())
        self.assertFalse(result.success)
        self.assertIn("CALENDAR_PROVIDER=none", result.error)

    def test_google_provider(self) -> None:
        client = build_calendar_client(self._settings(calendar_provider="google", google_calendar_access_token="t"))
        self.assertIsInstance(client, GoogleCalendarClient)
        self.assertEqual(client.duration_minutes, 45)


if __name__ == "__main__":
    unittest.main()
