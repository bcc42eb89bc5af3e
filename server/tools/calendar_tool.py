"""Google Calendar tool"""
import asyncio
from datetime import timedelta
from typing import Dict, Any, List, Optional
import logging

from tools.base import BaseTool, ToolSchema, ToolParameter, ToolMetadata
from integrations.google_calendar.client import GoogleCalendarClient, EventNotFoundError
from core.calendar_resolver import CalendarEventResolver, select_best_calendar_name_match
from services.scope_guard import ScopeGuard
from utils.time_utils import now_utc, parse_datetime, plus_days_iso

logger = logging.getLogger(__name__)

INTEGRATION = "google_calendar"

OPERATION_SCOPES = {
    "list": "read",
    "list_calendars": "read",
    "list_multi": "read",
    "find": "read",
    "get": "read",
    "availability": "read",
    "create": "write",
    "update": "write",
    "delete": "delete",
}

WRITE_OPERATIONS = ("create", "update", "delete")


def _str_arg(kwargs: dict, key: str) -> Optional[str]:
    value = kwargs.get(key)
    return value if isinstance(value, str) and value.strip() else None


def _int_arg(kwargs: dict, key: str, default: int, low: int, high: int) -> int:
    value = kwargs.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return min(max(round(value), low), high)


def _str_list_arg(kwargs: dict, key: str) -> Optional[List[str]]:
    value = kwargs.get(key)
    if not isinstance(value, list):
        return None
    return [v for v in value if isinstance(v, str) and v.strip()]


def compute_free_slots(busy: List[dict], time_min: str, time_max: str, duration_minutes: int) -> List[dict]:
    """Gaps between sorted busy intervals that are at least duration_minutes long."""
    window_start = parse_datetime(time_min)
    window_end = parse_datetime(time_max)
    min_gap = timedelta(minutes=duration_minutes)
    slots = []
    cursor = window_start

    for interval in busy:
        busy_start = parse_datetime(interval["start"])
        busy_end = parse_datetime(interval["end"])
        if busy_start - cursor >= min_gap:
            slots.append({"start": cursor.isoformat(), "end": busy_start.isoformat()})
        cursor = max(cursor, busy_end)

    if window_end - cursor >= min_gap:
        slots.append({"start": cursor.isoformat(), "end": window_end.isoformat()})
    return slots


class CalendarTool(BaseTool):
    """Read and manage Google Calendar events across every readable calendar"""

    def __init__(self, calendar_client: GoogleCalendarClient, scope_guard: ScopeGuard):
        self.calendar_client = calendar_client
        self.scope_guard = scope_guard
        self.resolver = CalendarEventResolver(calendar_client)

    def _build_schema(self) -> ToolSchema:
        return ToolSchema(
            name="google_calendar_events",
            description=(
                "Read and manage Google Calendar events. CREATE/UPDATE/DELETE go to the "
                "managed calendar by default (auto-created if missing). LIST and "
                "AVAILABILITY read the primary calendar unless calendarId is given. "
                "Use LIST_CALENDARS to discover calendar IDs, LIST_MULTI to search all "
                "readable calendars, FIND to resolve an event by a loose title (returns "
                "eventId and calendarId for a follow-up update/delete), and GET to read "
                "one event by id. A calendar display name may be passed as calendarId."
            ),
            metadata=ToolMetadata(
                destructive_hint=True,
                read_only_hint=False,
                idempotent_hint=False,
                open_world_hint=True,
                requires_auth_hint=True,
            ),
            integration=INTEGRATION,
            operation_scopes=OPERATION_SCOPES,
            parameters=[
                ToolParameter(
                    name="operation",
                    type="string",
                    description="Calendar operation to perform.",
                    required=True,
                    enum=list(OPERATION_SCOPES.keys()),
                ),
                ToolParameter(
                    name="calendarId",
                    type="string",
                    description="Calendar ID or display name. Omit for default behavior.",
                ),
                ToolParameter(name="eventId", type="string", description="Required for get/update/delete."),
                ToolParameter(name="summary", type="string", description="Event title (required for create)."),
                ToolParameter(name="description", type="string"),
                ToolParameter(name="location", type="string"),
                ToolParameter(name="start", type="string", description="ISO datetime string."),
                ToolParameter(name="end", type="string", description="ISO datetime string."),
                ToolParameter(name="timeZone", type="string", description="IANA timezone (optional)."),
                ToolParameter(
                    name="attendees",
                    type="array",
                    items={"type": "string"},
                    description="Optional attendee emails.",
                ),
                ToolParameter(name="timeMin", type="string", description="ISO lower bound for list/find/availability."),
                ToolParameter(name="timeMax", type="string", description="ISO upper bound for list/find/availability."),
                ToolParameter(name="maxResults", type="integer", description="Max events for list (1-100)."),
                ToolParameter(name="query", type="string", description="Full-text query for list/list_multi/find."),
                ToolParameter(
                    name="calendarIds",
                    type="array",
                    items={"type": "string"},
                    description="For list_multi: calendar IDs to include. Omit to search all.",
                ),
                ToolParameter(name="durationMinutes", type="integer", description="Min free slot length for availability."),
                ToolParameter(
                    name="maxResultsPerCalendar",
                    type="integer",
                    description="For list_multi: max events per calendar (1-100).",
                ),
            ],
        )

    async def execute(self, **kwargs) -> Dict[str, Any]:
        """
        Run one calendar operation.

        The integration scope for the operation is checked before any
        provider call. Every failure comes back as {'error': str}.
        """
        operation = kwargs.get("operation") if isinstance(kwargs.get("operation"), str) else ""
        handler = getattr(self, f"_op_{operation}", None) if operation in OPERATION_SCOPES else None
        if handler is None:
            return {
                "error": "Unknown operation. Use one of: " + ", ".join(OPERATION_SCOPES.keys()) + "."
            }

        try:
            await self.scope_guard.assert_scope(INTEGRATION, OPERATION_SCOPES[operation])
            return await handler(kwargs)
        except Exception as e:
            logger.error(f"Calendar tool error ({operation}): {e}")
            return {"error": str(e) or "Google Calendar tool failed."}

    async def _resolve_calendar_id(self, calendar_id: Optional[str]) -> Dict[str, Any]:
        """
        Accept either a calendar id or a display name.

        Returns {'calendarId': ...} or a confirmation request when only a
        near match exists.
        """
        if not calendar_id or calendar_id == "primary" or "@" in calendar_id:
            return {"calendarId": calendar_id}

        calendars = await self.calendar_client.list_calendars()
        if any(c.id == calendar_id for c in calendars):
            return {"calendarId": calendar_id}

        match = select_best_calendar_name_match(calendar_id, calendars)
        if match.matched_id:
            return {"calendarId": match.matched_id}
        if match.suggestions:
            closest = match.suggestions[0]
            return {
                "requiresUserConfirmation": True,
                "reason": "calendar_name_near_match",
                "requestedCalendarName": calendar_id,
                "suggestedCalendarName": closest,
                "suggestions": match.suggestions,
                "prompt": (
                    f"I didn’t find a calendar named \"{calendar_id}\". "
                    f"The closest match is \"{closest}\". Do you want me to check that one?"
                ),
            }
        return {"error": f"No calendar named \"{calendar_id}\" was found."}

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def _op_list_calendars(self, kwargs: dict) -> Dict[str, Any]:
        calendars = await self.calendar_client.list_calendars()
        return {"count": len(calendars), "calendars": [c.to_payload() for c in calendars]}

    async def _op_list(self, kwargs: dict) -> Dict[str, Any]:
        resolved = await self._resolve_calendar_id(_str_arg(kwargs, "calendarId"))
        if "calendarId" not in resolved:
            return resolved
        calendar_id = resolved["calendarId"] or self.calendar_client.calendar_id

        events = await self.calendar_client.list_events(
            calendar_id=calendar_id,
            time_min=_str_arg(kwargs, "timeMin"),
            time_max=_str_arg(kwargs, "timeMax"),
            max_results=_int_arg(kwargs, "maxResults", 20, 1, 100),
            query=_str_arg(kwargs, "query"),
        )
        return {
            "calendarId": calendar_id,
            "count": len(events),
            "events": [e.to_payload() for e in events],
        }

    async def _op_list_multi(self, kwargs: dict) -> Dict[str, Any]:
        calendars = await self.calendar_client.list_calendars()
        requested = _str_list_arg(kwargs, "calendarIds")
        targets = [c for c in calendars if c.id in requested] if requested else calendars
        per_calendar = _int_arg(kwargs, "maxResultsPerCalendar", 20, 1, 100)

        results = await asyncio.gather(
            *[
                self.calendar_client.list_events(
                    calendar_id=calendar.id,
                    time_min=_str_arg(kwargs, "timeMin"),
                    time_max=_str_arg(kwargs, "timeMax"),
                    max_results=per_calendar,
                    query=_str_arg(kwargs, "query"),
                )
                for calendar in targets
            ],
            return_exceptions=True,
        )

        events = []
        failures = []
        for calendar, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(f"list_multi: calendar {calendar.id} failed: {result}")
                failures.append({
                    "calendarId": calendar.id,
                    "calendarName": calendar.summary,
                    "error": str(result),
                })
                continue
            for event in result:
                event.calendar_id = calendar.id
                event.calendar_name = calendar.summary
                event.primary = calendar.primary
                events.append(event.to_payload())

        if targets and len(failures) == len(targets):
            return {
                "error": "Failed to list events from all selected calendars",
                "partialFailures": failures,
            }

        payload = {
            "calendarCount": len(targets),
            "calendars": [c.to_payload() for c in targets],
            "count": len(events),
            "events": events,
        }
        if failures:
            payload["partialFailures"] = failures
        return payload

    async def _op_find(self, kwargs: dict) -> Dict[str, Any]:
        query = _str_arg(kwargs, "query") or _str_arg(kwargs, "summary")
        if not query:
            return {"error": "find requires query"}

        resolution = await self.resolver.resolve(
            query,
            time_min=_str_arg(kwargs, "timeMin"),
            time_max=_str_arg(kwargs, "timeMax"),
        )
        closest = [
            {**c.event.to_payload(), "score": round(c.score, 2)}
            for c in resolution.candidates[:5]
        ]
        if resolution.match is None:
            return {
                "found": False,
                "query": query,
                "strategy": resolution.strategy,
                "closestCandidates": closest,
            }
        return {
            "found": True,
            "event": resolution.match.to_payload(),
            "eventId": resolution.match.id,
            "calendarId": resolution.match.calendar_id,
            "strategy": resolution.strategy,
            "confidence": round(resolution.confidence, 2),
            "closestCandidates": closest,
        }

    async def _op_get(self, kwargs: dict) -> Dict[str, Any]:
        event_id = _str_arg(kwargs, "eventId")
        if not event_id:
            return {"error": "get requires eventId"}
        resolved = await self._resolve_calendar_id(_str_arg(kwargs, "calendarId"))
        if "calendarId" not in resolved:
            return resolved
        try:
            event = await self.calendar_client.get_event(event_id, resolved["calendarId"])
        except EventNotFoundError as e:
            return {"error": str(e)}
        return {"calendarId": event.calendar_id, "event": event.to_payload()}

    async def _op_create(self, kwargs: dict) -> Dict[str, Any]:
        summary = _str_arg(kwargs, "summary")
        start = _str_arg(kwargs, "start")
        end = _str_arg(kwargs, "end")
        if not (summary and start and end):
            return {"error": "create requires summary, start, and end"}
        resolved = await self._resolve_calendar_id(_str_arg(kwargs, "calendarId"))
        if "calendarId" not in resolved:
            return resolved

        event = await self.calendar_client.create_event(
            summary=summary,
            start=start,
            end=end,
            calendar_id=resolved["calendarId"],
            description=_str_arg(kwargs, "description"),
            location=_str_arg(kwargs, "location"),
            time_zone=_str_arg(kwargs, "timeZone"),
            attendees=_str_list_arg(kwargs, "attendees"),
        )
        logger.info(f"Created calendar event: {summary} at {start}")
        return {"calendarId": event.calendar_id, "eventId": event.id, "event": event.to_payload()}

    async def _op_update(self, kwargs: dict) -> Dict[str, Any]:
        event_id = _str_arg(kwargs, "eventId")
        if not event_id:
            return {"error": "update requires eventId"}
        resolved = await self._resolve_calendar_id(_str_arg(kwargs, "calendarId"))
        if "calendarId" not in resolved:
            return resolved

        event = await self.calendar_client.update_event(
            event_id=event_id,
            calendar_id=resolved["calendarId"],
            summary=_str_arg(kwargs, "summary"),
            start=_str_arg(kwargs, "start"),
            end=_str_arg(kwargs, "end"),
            description=_str_arg(kwargs, "description"),
            location=_str_arg(kwargs, "location"),
            time_zone=_str_arg(kwargs, "timeZone"),
            attendees=_str_list_arg(kwargs, "attendees"),
        )
        logger.info(f"Updated calendar event {event_id}")
        return {"calendarId": event.calendar_id, "eventId": event.id, "event": event.to_payload()}

    async def _op_delete(self, kwargs: dict) -> Dict[str, Any]:
        event_id = _str_arg(kwargs, "eventId")
        if not event_id:
            return {"error": "delete requires eventId"}
        resolved = await self._resolve_calendar_id(_str_arg(kwargs, "calendarId"))
        if "calendarId" not in resolved:
            return resolved

        calendar_id = await self.calendar_client.delete_event(event_id, resolved["calendarId"])
        logger.info(f"Deleted calendar event {event_id}")
        return {"calendarId": calendar_id, "eventId": event_id, "deleted": True}

    async def _op_availability(self, kwargs: dict) -> Dict[str, Any]:
        resolved = await self._resolve_calendar_id(_str_arg(kwargs, "calendarId"))
        if "calendarId" not in resolved:
            return resolved

        time_min = parse_datetime(_str_arg(kwargs, "timeMin")) or now_utc()
        time_max = parse_datetime(_str_arg(kwargs, "timeMax")) or parse_datetime(plus_days_iso(7, time_min))
        if time_max <= time_min:
            return {"error": "availability requires timeMax later than timeMin"}
        duration = _int_arg(kwargs, "durationMinutes", 60, 15, 480)

        busy = await self.calendar_client.free_busy(
            time_min.isoformat(), time_max.isoformat(), resolved["calendarId"],
        )
        return {
            "calendarId": resolved["calendarId"] or self.calendar_client.calendar_id,
            "timeMin": time_min.isoformat(),
            "timeMax": time_max.isoformat(),
            "durationMinutes": duration,
            "busy": busy,
            "freeSlots": compute_free_slots(busy, time_min.isoformat(), time_max.isoformat(), duration),
        }
