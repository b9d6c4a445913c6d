"""
Google Calendar access for the cataloging worker.

Pages through ``events.list`` on the user's primary calendar (Calendar v3
REST API) and standardizes each event into the shape the graph store
ingests.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import httpx
import structlog

from libs.common.settings import get_settings

logger = structlog.get_logger(__name__)

GOOGLE_CALENDAR_BASE_URL = "https://www.googleapis.com/calendar/v3"
EVENTS_PATH = "/calendars/primary/events"
UNTITLED_EVENT = "Untitled Event"

UserTokens = Union[str, Dict[str, Any]]


def access_token_from(user_tokens: UserTokens) -> str:
    """Pull the OAuth access token out of a token string or token dict."""
    if isinstance(user_tokens, str):
        token = user_tokens
    elif isinstance(user_tokens, dict):
        nested = user_tokens.get("tokens") if isinstance(user_tokens.get("tokens"), dict) else {}
        token = (
            user_tokens.get("access_token")
            or user_tokens.get("accessToken")
            or nested.get("access_token")
        )
    else:
        token = None

    if not token:
        raise ValueError("User tokens do not contain an access token")
    return token


def subtract_months(moment: datetime, months: int) -> datetime:
    """Calendar-month subtraction, clamping the day to the target month's length."""
    month_index = moment.year * 12 + (moment.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    first_of_next = datetime(year + (month == 12), month % 12 + 1, 1)
    last_day = (first_of_next - timedelta(days=1)).day
    return moment.replace(year=year, month=month, day=min(moment.day, last_day))


def _display_name(person: Dict[str, Any]) -> str:
    email = person.get("email") or ""
    return person.get("displayName") or email.split("@")[0]


def standardize_event(event: Dict[str, Any]) -> Dict[str, Any]:
    """Map a raw Calendar API event to the ingestion format."""
    start = event.get("start") or {}
    end = event.get("end") or {}

    organizer = None
    raw_organizer = event.get("organizer") or {}
    if raw_organizer.get("email"):
        organizer = {"email": raw_organizer["email"], "name": _display_name(raw_organizer)}

    attendees = [
        {
            "email": attendee["email"],
            "name": _display_name(attendee),
            "responseStatus": attendee.get("responseStatus"),
        }
        for attendee in event.get("attendees") or []
        if attendee.get("email")
    ]

    attachments = [
        {
            "id": attachment.get("fileId") or attachment.get("fileUrl"),
            "title": attachment.get("title") or "Untitled Document",
            "url": attachment.get("fileUrl"),
            "mimeType": attachment.get("mimeType"),
        }
        for attachment in event.get("attachments") or []
        if attachment.get("fileId") or attachment.get("fileUrl")
    ]

    return {
        "googleEventId": event.get("id"),
        "title": event.get("summary") or UNTITLED_EVENT,
        "description": event.get("description") or "",
        "startTime": start.get("dateTime") or start.get("date"),
        "endTime": end.get("dateTime") or end.get("date"),
        "location": event.get("location") or "",
        "organizer": organizer,
        "attendees": attendees,
        "attachments": attachments,
        "hangoutLink": event.get("hangoutLink"),
        "htmlLink": event.get("htmlLink"),
    }


class GoogleCalendarService:
    """Reads the authenticated user's primary calendar."""

    def __init__(
        self,
        base_url: str = GOOGLE_CALENDAR_BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.base_url = base_url
        self.transport = transport
        self.timeout = timeout
        self.clock = clock

    def time_window(self, months_back: int) -> Tuple[datetime, datetime]:
        end = self.clock()
        return subtract_months(end, months_back), end

    async def get_calendar_events(
        self,
        user_tokens: UserTokens,
        months_back: Optional[int] = None,
        batch_size: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Fetch and standardize every event from ``months_back`` months ago until now.

        Raises ``httpx.HTTPStatusError`` on API errors; pagination follows
        ``nextPageToken`` until exhausted.
        """
        settings = get_settings()
        months_back = settings.worker_months_back if months_back is None else months_back
        batch_size = batch_size or settings.worker_batch_size
        start, end = self.time_window(months_back)
        token = access_token_from(user_tokens)

        logger.info(
            "Fetching calendar events",
            time_min=start.isoformat(),
            time_max=end.isoformat(),
            batch_size=batch_size,
        )

        raw_events: List[Dict[str, Any]] = []
        page_token = None
        async with httpx.AsyncClient(
            base_url=self.base_url, transport=self.transport, timeout=self.timeout
        ) as client:
            while True:
                params: Dict[str, Any] = {
                    "timeMin": start.isoformat(),
                    "timeMax": end.isoformat(),
                    "maxResults": batch_size,
                    "singleEvents": "true",
                    "orderBy": "startTime",
                }
                if page_token:
                    params["pageToken"] = page_token

                response = await client.get(
                    EVENTS_PATH,
                    headers={"Authorization": f"Bearer {token}"},
                    params=params,
                )
                response.raise_for_status()
                data = response.json()

                items = data.get("items") or []
                raw_events.extend(items)
                logger.debug("Fetched calendar page", page_events=len(items), total=len(raw_events))

                page_token = data.get("nextPageToken")
                if not page_token:
                    break

        events = self.process_events(raw_events)
        logger.info("Calendar events fetched", total=len(events))
        return events

    @staticmethod
    def process_events(events: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Standardize raw events, dropping ones without an id."""
        return [standardize_event(event) for event in events if event.get("id")]


_calendar_service: Optional[GoogleCalendarService] = None


def get_calendar_service() -> GoogleCalendarService:
    """Get or create the global calendar service."""
    global _calendar_service
    if _calendar_service is None:
        _calendar_service = GoogleCalendarService()
    return _calendar_service
