# routes/events.py
# Calendar event REST API (same store the calendar tools use)

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from database import get_db
from schemas.event_schema import EventCreate, EventUpdate
from services import event_service
from services.calendar_time import parse_dt
from services.event_service import EventNotFoundError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/schedules/events", tags=["events"])


def _bound(value: Optional[str], name: str):
    if not value:
        return None
    dt = parse_dt(value)
    if dt is None:
        raise HTTPException(422, f"invalid {name}: {value}")
    return dt


@router.get("")
def list_events(
    q: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    max_results: Optional[int] = Query(None, ge=1, le=250),
    db: Session = Depends(get_db),
) -> List[Dict[str, Any]]:
    items = event_service.get_list(
        db,
        q=q,
        date_from=_bound(date_from, "date_from"),
        date_to=_bound(date_to, "date_to"),
        max_results=max_results,
    )
    return [event_service.pack(e) for e in items]


@router.post("", status_code=201)
def create_event(payload: EventCreate, db: Session = Depends(get_db)) -> Dict[str, Any]:
    try:
        ev = event_service.create(db, payload)
    except ValueError as e:
        raise HTTPException(422, str(e))
    logger.info(f"Event created via API: id={ev.id}")
    return event_service.pack(ev)


@router.get("/{event_id}")
def get_event(event_id: int, db: Session = Depends(get_db)) -> Dict[str, Any]:
    try:
        return event_service.pack(event_service.get(db, event_id))
    except EventNotFoundError as e:
        raise HTTPException(404, str(e))


@router.patch("/{event_id}")
def update_event(event_id: int, patch: EventUpdate, db: Session = Depends(get_db)) -> Dict[str, Any]:
    try:
        ev = event_service.update(db, event_id, patch)
    except EventNotFoundError as e:
        raise HTTPException(404, str(e))
    except ValueError as e:
        raise HTTPException(422, str(e))
    return event_service.pack(ev)


@router.delete("/{event_id}")
def delete_event(event_id: int, db: Session = Depends(get_db)) -> Dict[str, Any]:
    try:
        return event_service.delete(db, event_id)
    except EventNotFoundError as e:
        raise HTTPException(404, str(e))
