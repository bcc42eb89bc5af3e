"""Google Calendar API client"""
import asyncio
import os
from typing import Optional
import logging

from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from config.settings import settings
from models.calendar import CalendarEvent, CalendarListEntry
from utils.time_utils import now_utc, parse_datetime, plus_days_iso, to_iso

logger = logging.getLogger(__name__)


class CalendarNotConfiguredError(RuntimeError):
    """Raised when no calendar service could be built."""


class EventNotFoundError(LookupError):
    """Raised when the provider reports 404 for an event."""


def normalize_google_event(raw: dict) -> Optional[CalendarEvent]:
    """Flatten a Google event payload; returns None when id/start/end are missing."""
    if not isinstance(raw, dict):
        return None
    start_obj = raw.get("start") or {}
    end_obj = raw.get("end") or {}
    start = start_obj.get("dateTime") or start_obj.get("date")
    end = end_obj.get("dateTime") or end_obj.get("date")
    event_id = raw.get("id")
    if not event_id or not start or not end:
        return None

    return CalendarEvent(
        id=event_id,
        summary=raw.get("summary") or "(untitled)",
        description=raw.get("description"),
        location=raw.get("location"),
        start=start,
        end=end,
        status=raw.get("status"),
        html_link=raw.get("htmlLink"),
        attendees=[a["email"] for a in raw.get("attendees") or [] if a.get("email")],
    )


class GoogleCalendarClient:
    """Wrapper for Google Calendar API"""

    def __init__(self, service=None):
        self.service = service
        self.calendar_id = settings.GOOGLE_CALENDAR_ID or "primary"
        self._managed_calendar_id: Optional[str] = None
        if self.service is None:
            self._initialize()

    def _initialize(self):
        """Initialize Google Calendar service"""
        try:
            if not os.path.exists(settings.GOOGLE_SERVICE_ACCOUNT_FILE):
                logger.warning(f"Service account file not found: {settings.GOOGLE_SERVICE_ACCOUNT_FILE}")
                logger.warning("Calendar operations will fail until credentials are configured")
                return

            credentials = service_account.Credentials.from_service_account_file(
                settings.GOOGLE_SERVICE_ACCOUNT_FILE,
                scopes=['https://www.googleapis.com/auth/calendar']
            )
            self.service = build('calendar', 'v3', credentials=credentials, cache_discovery=False)
            logger.info("✓ Google Calendar client initialized")

        except Exception as e:
            logger.error(f"Failed to initialize Google Calendar client: {e}")

    @property
    def is_configured(self) -> bool:
        return self.service is not None

    def _require_service(self):
        if not self.service:
            raise CalendarNotConfiguredError("Google Calendar service not initialized")
        return self.service

    # ------------------------------------------------------------------
    # Calendars
    # ------------------------------------------------------------------

    async def list_calendars(self) -> list[CalendarListEntry]:
        """List calendars the account can read."""
        service = self._require_service()
        # Google API client is synchronous; run in a thread to avoid
        # blocking the asyncio event loop.
        payload = await asyncio.to_thread(service.calendarList().list().execute)

        calendars = []
        for item in payload.get("items", []):
            if not item.get("id"):
                continue
            calendars.append(CalendarListEntry(
                id=item["id"],
                summary=item.get("summary") or "(untitled calendar)",
                description=item.get("description"),
                primary=bool(item.get("primary")),
            ))
        return calendars

    async def ensure_managed_calendar(self) -> str:
        """Return the id of the calendar this service writes to, creating it if missing."""
        if self._managed_calendar_id:
            return self._managed_calendar_id

        for calendar in await self.list_calendars():
            if calendar.summary == settings.MANAGED_CALENDAR_NAME:
                self._managed_calendar_id = calendar.id
                return calendar.id

        service = self._require_service()
        created = await asyncio.to_thread(
            service.calendars().insert(body={
                "summary": settings.MANAGED_CALENDAR_NAME,
                "description": "Events scheduled by the concierge assistant.",
                "timeZone": settings.DEFAULT_TIMEZONE,
            }).execute
        )
        if not created.get("id"):
            raise RuntimeError("Failed to create managed calendar — no ID returned.")
        logger.info(f"Created managed calendar {created['id']}")
        self._managed_calendar_id = created["id"]
        return created["id"]

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def list_events(
        self,
        calendar_id: Optional[str] = None,
        time_min: Optional[str] = None,
        time_max: Optional[str] = None,
        max_results: int = 20,
        query: Optional[str] = None,
    ) -> list[CalendarEvent]:
        """List single events in a window, optionally filtered by provider full-text query."""
        service = self._require_service()
        params = {
            "calendarId": calendar_id or self.calendar_id,
            "timeMin": to_iso(time_min, "timeMin") if time_min else now_utc().isoformat(),
            "timeMax": to_iso(time_max, "timeMax") if time_max else plus_days_iso(7),
            "maxResults": min(max(int(max_results), 1), 100),
            "singleEvents": True,
            "orderBy": "startTime",
        }
        if query:
            params["q"] = query

        payload = await asyncio.to_thread(service.events().list(**params).execute)
        events = []
        for raw in payload.get("items", []):
            event = normalize_google_event(raw)
            if event:
                events.append(event)
        return events

    async def get_event(self, event_id: str, calendar_id: Optional[str] = None) -> CalendarEvent:
        service = self._require_service()
        target = calendar_id or await self.ensure_managed_calendar()
        try:
            raw = await asyncio.to_thread(
                service.events().get(calendarId=target, eventId=event_id).execute
            )
        except HttpError as e:
            if getattr(e.resp, "status", None) in (404, 410):
                raise EventNotFoundError(f"Event {event_id} not found (404)")
            raise

        event = normalize_google_event(raw)
        if event is None or event.status == "cancelled":
            raise EventNotFoundError(f"Event {event_id} not found")
        event.calendar_id = target
        return event

    async def create_event(
        self,
        summary: str,
        start: str,
        end: str,
        calendar_id: Optional[str] = None,
        description: Optional[str] = None,
        location: Optional[str] = None,
        time_zone: Optional[str] = None,
        attendees: Optional[list[str]] = None,
    ) -> CalendarEvent:
        """Create a calendar event (managed calendar unless calendar_id is given)."""
        service = self._require_service()
        target = calendar_id or await self.ensure_managed_calendar()
        start_iso = to_iso(start, "start")
        end_iso = to_iso(end, "end")
        if parse_datetime(end_iso) <= parse_datetime(start_iso):
            raise ValueError("Event end must be later than start.")

        body = {
            "summary": summary,
            "description": description,
            "location": location,
            "start": {"dateTime": start_iso, "timeZone": time_zone},
            "end": {"dateTime": end_iso, "timeZone": time_zone},
        }
        if attendees:
            body["attendees"] = [{"email": email} for email in attendees]

        raw = await asyncio.to_thread(
            service.events().insert(calendarId=target, body=body).execute
        )
        event = normalize_google_event(raw)
        if event is None:
            raise RuntimeError("Google Calendar returned an invalid event payload.")
        event.calendar_id = target
        return event

    async def update_event(
        self,
        event_id: str,
        calendar_id: Optional[str] = None,
        summary: Optional[str] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
        description: Optional[str] = None,
        location: Optional[str] = None,
        time_zone: Optional[str] = None,
        attendees: Optional[list[str]] = None,
    ) -> CalendarEvent:
        """Patch only the supplied fields of an event."""
        service = self._require_service()
        target = calendar_id or await self.ensure_managed_calendar()

        patch: dict = {}
        if summary is not None:
            patch["summary"] = summary
        if description is not None:
            patch["description"] = description
        if location is not None:
            patch["location"] = location
        if attendees is not None:
            patch["attendees"] = [{"email": email} for email in attendees]
        if start is not None:
            patch["start"] = {"dateTime": to_iso(start, "start"), "timeZone": time_zone}
        if end is not None:
            patch["end"] = {"dateTime": to_iso(end, "end"), "timeZone": time_zone}
        if not patch:
            raise ValueError("No update fields provided.")

        raw = await asyncio.to_thread(
            service.events().patch(calendarId=target, eventId=event_id, body=patch).execute
        )
        event = normalize_google_event(raw)
        if event is None:
            raise RuntimeError("Google Calendar returned an invalid event payload.")
        event.calendar_id = target
        return event

    async def delete_event(self, event_id: str, calendar_id: Optional[str] = None) -> str:
        """Delete an event; returns the calendar id it was removed from."""
        service = self._require_service()
        target = calendar_id or await self.ensure_managed_calendar()
        await asyncio.to_thread(
            service.events().delete(calendarId=target, eventId=event_id).execute
        )
        return target

    async def free_busy(
        self,
        time_min: str,
        time_max: str,
        calendar_id: Optional[str] = None,
    ) -> list[dict]:
        """Busy intervals for one calendar, sorted by start."""
        service = self._require_service()
        target = calendar_id or self.calendar_id
        payload = await asyncio.to_thread(
            service.freebusy().query(body={
                "timeMin": time_min,
                "timeMax": time_max,
                "items": [{"id": target}],
            }).execute
        )
        busy = [
            {"start": to_iso(slot["start"], "busy.start"), "end": to_iso(slot["end"], "busy.end")}
            for slot in payload.get("calendars", {}).get(target, {}).get("busy", [])
            if slot.get("start") and slot.get("end")
        ]
        return sorted(busy, key=lambda slot: parse_datetime(slot["start"]))