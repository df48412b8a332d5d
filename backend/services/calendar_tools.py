# services/calendar_tools.py
# Calendar tools exposed to the orchestrator (backed by the calendar_events table)

import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple

from pydantic import Field

from database import session_scope
from schemas.event_schema import CamelModel, EventCreate, EventFilters, EventUpdate, TimeRange
from schemas.orchestration_schema import ToolResult
from services import event_service
from services.calendar_time import is_date_only, parse_dt
from services.event_service import EventNotFoundError
from services.tool_registry import ToolDefinition, ToolRegistry

logger = logging.getLogger(__name__)

CATEGORY = "calendar"


class GetEventsParams(CamelModel):
    time_range: Optional[TimeRange] = None
    filters: Optional[EventFilters] = None


class SearchEventsParams(CamelModel):
    query: str = Field(min_length=1)
    time_range: Optional[TimeRange] = None


class CreateEventParams(CamelModel):
    event_data: EventCreate


class UpdateEventParams(CamelModel):
    event_id: str
    changes: EventUpdate


class DeleteEventParams(CamelModel):
    event_id: str


def _window(time_range: Optional[TimeRange]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """
    Resolve a time range; a date-only end covers that whole day.

    :raises ValueError: unparseable bound
    """
    if time_range is None:
        return None, None
    start = end = None
    if time_range.start:
        start = parse_dt(time_range.start)
        if start is None:
            raise ValueError(f"unparseable timeRange.start: {time_range.start}")
    if time_range.end:
        end = parse_dt(time_range.end)
        if end is None:
            raise ValueError(f"unparseable timeRange.end: {time_range.end}")
        if is_date_only(time_range.end):
            end = end + timedelta(days=1)
    return start, end


def _event_id(raw: str) -> int:
    try:
        return int(str(raw).strip())
    except ValueError:
        raise EventNotFoundError(raw)


def _failure(e: Exception, action: str) -> ToolResult:
    if isinstance(e, EventNotFoundError):
        return ToolResult(success=False, error=str(e), message="Event not found")
    logger.warning(f"Calendar {action} failed: {e}")
    return ToolResult(success=False, error=str(e), message=f"Could not {action} the event")


def register_calendar_tools(registry: ToolRegistry, session_factory) -> None:
    """
    Register get/search/create/update/delete event tools.

    :param registry: target registry
    :type registry: ToolRegistry
    :param session_factory: SQLAlchemy session factory
    """

    def get_events(params: GetEventsParams) -> ToolResult:
        filters = params.filters or EventFilters()
        try:
            date_from, date_to = _window(params.time_range)
        except ValueError as e:
            return _failure(e, "list")
        with session_scope(session_factory) as db:
            items = event_service.get_list(
                db,
                q=filters.query,
                date_from=date_from,
                date_to=date_to,
                max_results=filters.max_results,
                order_by=filters.order_by,
            )
            data = [event_service.pack(e) for e in items]
        return ToolResult(success=True, data=data, message=f"Found {len(data)} events")

    def search_events(params: SearchEventsParams) -> ToolResult:
        try:
            date_from, date_to = _window(params.time_range)
        except ValueError as e:
            return _failure(e, "search")
        with session_scope(session_factory) as db:
            items = event_service.get_list(db, q=params.query.strip(), date_from=date_from, date_to=date_to)
            data = [event_service.pack(e) for e in items]
        return ToolResult(success=True, data=data, message=f"Found {len(data)} events matching '{params.query}'")

    def create_event(params: CreateEventParams) -> ToolResult:
        with session_scope(session_factory) as db:
            try:
                ev = event_service.create(db, params.event_data)
            except ValueError as e:
                return _failure(e, "create")
            data = event_service.pack(ev)
        logger.info(f"Event created: id={data['id']} summary={data['summary']}")
        return ToolResult(success=True, data=data, message=f"Event created: {data['summary']}")

    def update_event(params: UpdateEventParams) -> ToolResult:
        with session_scope(session_factory) as db:
            try:
                ev = event_service.update(db, _event_id(params.event_id), params.changes)
            except (EventNotFoundError, ValueError) as e:
                return _failure(e, "update")
            data = event_service.pack(ev)
        return ToolResult(success=True, data=data, message=f"Event updated: {data['summary']}")

    def delete_event(params: DeleteEventParams) -> ToolResult:
        with session_scope(session_factory) as db:
            try:
                data = event_service.delete(db, _event_id(params.event_id))
            except EventNotFoundError as e:
                return _failure(e, "delete")
        return ToolResult(success=True, data=data, message=f"Event deleted: {data['summary']}")

    registry.register_tool(
        ToolDefinition(
            name="get_events",
            description="List calendar events, optionally inside a time range and filtered by text. Read-only.",
            category=CATEGORY,
            parameters_model=GetEventsParams,
            parameter_hint=(
                '{ time_range?: { start?: str (ISO), end?: str (ISO) }, '
                'filters?: { query?: str, max_results?: int, order_by?: "startTime" | "updated" } }'
            ),
        ),
        get_events,
    )
    registry.register_tool(
        ToolDefinition(
            name="search_events",
            description="Search events whose title, description or location contains a term. Read-only.",
            category=CATEGORY,
            parameters_model=SearchEventsParams,
            parameter_hint="{ query: str (required), time_range?: { start?: str (ISO), end?: str (ISO) } }",
        ),
        search_events,
    )
    registry.register_tool(
        ToolDefinition(
            name="create_event",
            description="Create a calendar event. Timed events default to one hour, all-day events to one day.",
            category=CATEGORY,
            parameters_model=CreateEventParams,
            parameter_hint=(
                "{ event_data: { summary: str (required), description?: str, "
                "start: { date_time?: str (ISO) | date?: str (YYYY-MM-DD) }, "
                "end?: { date_time?: str (ISO) | date?: str (YYYY-MM-DD) }, location?: str, "
                "attendees?: [{ email: str, display_name?: str }] } }"
            ),
        ),
        create_event,
    )
    registry.register_tool(
        ToolDefinition(
            name="update_event",
            description="Change fields of an existing event (title, time, location, attendees).",
            category=CATEGORY,
            parameters_model=UpdateEventParams,
            parameter_hint="{ event_id: str (required), changes: partial event_data (required) }",
        ),
        update_event,
    )
    registry.register_tool(
        ToolDefinition(
            name="delete_event",
            description="Delete an event by id.",
            category=CATEGORY,
            parameters_model=DeleteEventParams,
        ),
        delete_event,
    )
