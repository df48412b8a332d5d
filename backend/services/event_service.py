# services/event_service.py
from sqlalchemy.orm import Session
from sqlalchemy import or_
from typing import List, Optional, Tuple, Dict, Any
from datetime import datetime, timedelta

from models.calendar_event import CalendarEvent
from schemas.event_schema import Attendee, EventCreate, EventTime, EventUpdate
from services.calendar_time import (
    add_days,
    parse_date,
    parse_dt,
    start_of_day,
    to_iso,
    to_storage,
)


class EventNotFoundError(LookupError):
    def __init__(self, event_id):
        super().__init__(f"Event {event_id} not found")
        self.event_id = event_id


def _to_str(att: Optional[List[Attendee]]) -> Optional[str]:
    return ",".join(a.email for a in att) if att else None

def _to_list(att: Optional[str]) -> List[str]:
    return [a for a in att.split(",") if a] if att else []

def _date_of(t: Optional[EventTime]):
    if t is None:
        return None
    if t.date:
        return parse_date(t.date)
    dt = parse_dt(t.date_time)
    return dt.date() if dt else None

def _datetime_of(t: Optional[EventTime]) -> Optional[datetime]:
    if t is None:
        return None
    if t.date_time:
        dt = parse_dt(t.date_time)
        if dt is None:
            raise ValueError(f"unparseable date-time: {t.date_time}")
        return to_storage(dt)
    if t.date:
        d = parse_date(t.date)
        if d is None:
            raise ValueError(f"unparseable date: {t.date}")
        return start_of_day(d)
    return None

def resolve_times(start: Optional[EventTime], end: Optional[EventTime]) -> Tuple[datetime, datetime, bool]:
    """
    Turn start/end payloads into stored (start, end, all_day).

    - start date only           -> all-day, ends the next day
    - start date-time only      -> ends one hour later
    - end only                  -> start inferred one day / one hour earlier
    - end before start          -> ValueError
    """
    all_day = bool(start and start.date) or (not (start and start.date_time) and bool(end and end.date))

    if all_day:
        s_day = _date_of(start)
        e_day = _date_of(end)
        if s_day is None and e_day is None:
            raise ValueError("start or end is required")
        if s_day is None:
            s_day = add_days(e_day, -1)
        if e_day is None or e_day == s_day:
            e_day = add_days(s_day, 1)
        if e_day < s_day:
            raise ValueError("end must be after start")
        return start_of_day(s_day), start_of_day(e_day), True

    s_dt = _datetime_of(start)
    e_dt = _datetime_of(end)
    if s_dt is None and e_dt is None:
        raise ValueError("start or end is required")
    if s_dt is None:
        s_dt = e_dt - timedelta(hours=1)
    if e_dt is None:
        e_dt = s_dt + timedelta(hours=1)
    if e_dt < s_dt:
        raise ValueError("end must be after start")
    return s_dt, e_dt, False

def pack(e: CalendarEvent) -> Dict[str, Any]:
    """
    Minimal event view handed to the model and the REST clients.

    :param e: stored event
    :type e: CalendarEvent
    :return: {id, summary, start, end, all_day, description, location, attendees}
    :rtype: Dict[str, Any]
    """
    return {
        "id": str(e.id),
        "summary": e.summary,
        "start": to_iso(e.start, all_day=e.all_day),
        "end": to_iso(e.end, all_day=e.all_day),
        "all_day": bool(e.all_day),
        "description": e.description,
        "location": e.location,
        "attendees": _to_list(e.attendees),
    }

def create(db: Session, payload: EventCreate) -> CalendarEvent:
    start, end, all_day = resolve_times(payload.start, payload.end)
    ev = CalendarEvent(
        summary=payload.summary.strip(),
        start=start,
        end=end,
        all_day=all_day,
        description=payload.description,
        location=payload.location,
        attendees=_to_str(payload.attendees),
    )
    db.add(ev); db.commit(); db.refresh(ev)
    return ev

def get_list(
    db: Session,
    q: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    max_results: Optional[int] = None,
    order_by: str = "startTime",
) -> List[CalendarEvent]:
    """Events overlapping [date_from, date_to), optionally matching ``q`` in summary/description/location."""
    query = db.query(CalendarEvent)
    if date_from: query = query.filter(CalendarEvent.end > to_storage(date_from))
    if date_to:   query = query.filter(CalendarEvent.start < to_storage(date_to))
    if q:
        like = f"%{q}%"
        query = query.filter(or_(
            CalendarEvent.summary.ilike(like),
            CalendarEvent.description.ilike(like),
            CalendarEvent.location.ilike(like),
        ))
    if order_by == "updated":
        query = query.order_by(CalendarEvent.updated_at.desc())
    else:
        query = query.order_by(CalendarEvent.start.asc())
    if max_results:
        query = query.limit(max_results)
    return query.all()

def get(db: Session, event_id: int) -> CalendarEvent:
    ev = db.get(CalendarEvent, event_id)
    if not ev: raise EventNotFoundError(event_id)
    return ev

def update(db: Session, event_id: int, patch: EventUpdate) -> CalendarEvent:
    ev = get(db, event_id)
    data = patch.model_dump(exclude_unset=True, exclude={"start", "end", "attendees"})
    for k, v in data.items():
        setattr(ev, k, v)
    if "attendees" in patch.model_fields_set:
        ev.attendees = _to_str(patch.attendees)
    if patch.start is not None and patch.end is None:
        # moving the start keeps the event's duration
        duration = ev.end - ev.start
        start, end, all_day = resolve_times(patch.start, None)
        if all_day == ev.all_day:
            end = start + duration
        ev.start, ev.end, ev.all_day = start, end, all_day
    elif patch.end is not None:
        start = patch.start
        if start is None:
            if ev.all_day:
                start = EventTime(date=ev.start.date().isoformat())
            else:
                start = EventTime(date_time=ev.start.isoformat())
        ev.start, ev.end, ev.all_day = resolve_times(start, patch.end)
    db.commit(); db.refresh(ev)
    return ev

def delete(db: Session, event_id: int) -> Dict[str, Any]:
    ev = get(db, event_id)
    snapshot = pack(ev)
    db.delete(ev); db.commit()
    return snapshot
