"""Tests for Google Calendar event fetching and standardization."""

from datetime import datetime, timezone

import httpx
import pytest

from libs.calendar.google_calendar import (
    UNTITLED_EVENT,
    GoogleCalendarService,
    access_token_from,
    standardize_event,
    subtract_months,
)

NOW = datetime(2024, 3, 31, 12, 0, tzinfo=timezone.utc)


def raw_event(event_id, **extra):
    return {
        "id": event_id,
        "summary": f"Event {event_id}",
        "start": {"dateTime": "2024-03-01T10:00:00Z"},
        "end": {"dateTime": "2024-03-01T11:00:00Z"},
        **extra,
    }


class TestAccessToken:
    @pytest.mark.parametrize(
        "tokens",
        ["abc", {"access_token": "abc"}, {"accessToken": "abc"}, {"tokens": {"access_token": "abc"}}],
    )
    def test_accepted_shapes(self, tokens):
        assert access_token_from(tokens) == "abc"

    @pytest.mark.parametrize("tokens", ["", {}, {"refresh_token": "r"}, None])
    def test_missing_token(self, tokens):
        with pytest.raises(ValueError):
            access_token_from(tokens)


class TestSubtractMonths:
    def test_clamps_day(self):
        assert subtract_months(NOW, 1) == datetime(2024, 2, 29, 12, 0, tzinfo=timezone.utc)

    def test_crosses_year(self):
        assert subtract_months(NOW, 6) == datetime(2023, 9, 30, 12, 0, tzinfo=timezone.utc)


class TestStandardizeEvent:
    def test_full_event(self):
        event = standardize_event(raw_event(
            "e1",
            description="Agenda inside",
            location="Room 4",
            organizer={"email": "bob@example.com", "displayName": "Bob"},
            attendees=[
                {"email": "alice@example.com", "responseStatus": "accepted"},
                {"displayName": "Room resource"},
            ],
            attachments=[
                {"fileId": "f1", "title": "Agenda", "fileUrl": "https://drive/f1", "mimeType": "text/plain"},
                {"title": "Broken attachment"},
            ],
            hangoutLink="https://meet/abc",
        ))

        assert event["googleEventId"] == "e1"
        assert event["startTime"] == "2024-03-01T10:00:00Z"
        assert event["organizer"] == {"email": "bob@example.com", "name": "Bob"}
        assert event["attendees"] == [{"email": "alice@example.com", "name": "alice", "responseStatus": "accepted"}]
        assert event["attachments"] == [
            {"id": "f1", "title": "Agenda", "url": "https://drive/f1", "mimeType": "text/plain"}
        ]
        assert event["hangoutLink"] == "https://meet/abc"

    def test_all_day_untitled_event(self):
        event = standardize_event({"id": "e2", "start": {"date": "2024-03-02"}, "end": {"date": "2024-03-03"}})

        assert event["title"] == UNTITLED_EVENT
        assert event["startTime"] == "2024-03-02"
        assert event["organizer"] is None
        assert event["attendees"] == []


class TestGetCalendarEvents:
    @pytest.mark.asyncio
    async def test_follows_pagination(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if "pageToken" not in request.url.params:
                return httpx.Response(200, json={"items": [raw_event("e1"), {"summary": "no id"}], "nextPageToken": "p2"})
            return httpx.Response(200, json={"items": [raw_event("e2")]})

        service = GoogleCalendarService(transport=httpx.MockTransport(handler), clock=lambda: NOW)

        events = await service.get_calendar_events({"access_token": "abc"}, months_back=1, batch_size=50)

        assert [e["googleEventId"] for e in events] == ["e1", "e2"]
        assert len(requests) == 2
        first = requests[0]
        assert first.url.path == "/calendar/v3/calendars/primary/events"
        assert first.headers["Authorization"] == "Bearer abc"
        assert first.url.params["maxResults"] == "50"
        assert first.url.params["singleEvents"] == "true"
        assert first.url.params["orderBy"] == "startTime"
        assert first.url.params["timeMin"] == "2024-02-29T12:00:00+00:00"
        assert first.url.params["timeMax"] == NOW.isoformat()
        assert requests[1].url.params["pageToken"] == "p2"

    @pytest.mark.asyncio
    async def test_api_errors_raise(self):
        service = GoogleCalendarService(
            transport=httpx.MockTransport(lambda request: httpx.Response(401, json={"error": "invalid_token"})),
            clock=lambda: NOW,
        )

        with pytest.raises(httpx.HTTPStatusError):
            await service.get_calendar_events("expired")

    @pytest.mark.asyncio
    async def test_defaults_from_settings(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(request.url.params)
            return httpx.Response(200, json={"items": []})

        service = GoogleCalendarService(transport=httpx.MockTransport(handler), clock=lambda: NOW)

        assert await service.get_calendar_events("abc") == []
        assert seen["maxResults"] == "100"
