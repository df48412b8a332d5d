# schemas/event_schema.py
import re
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# simple email pattern (local@domain.tld)
EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}$")


class CamelModel(BaseModel):
    """Base for event payloads and tool parameters."""
    # tools accept both snake_case and the camelCase the model tends to write
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class EventTime(CamelModel):
    date_time: Optional[str] = None
    date: Optional[str] = Field(None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    time_zone: Optional[str] = None


class Attendee(CamelModel):
    email: str
    display_name: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _valid_email(cls, v):
        v = v.strip().lower()
        if not EMAIL_RE.match(v):
            raise ValueError(f"invalid attendee email: {v}")
        return v


class EventCreate(CamelModel):
    summary: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    start: Optional[EventTime] = None
    end: Optional[EventTime] = None
    location: Optional[str] = None
    attendees: Optional[List[Attendee]] = None

    @model_validator(mode="after")
    def _needs_a_time(self):
        has = lambda t: t is not None and (t.date_time or t.date)
        if not has(self.start) and not has(self.end):
            raise ValueError("start or end is required")
        return self


class EventUpdate(CamelModel):
    summary: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    start: Optional[EventTime] = None
    end: Optional[EventTime] = None
    location: Optional[str] = None
    attendees: Optional[List[Attendee]] = None


class TimeRange(CamelModel):
    start: Optional[str] = None
    end: Optional[str] = None


class EventFilters(CamelModel):
    query: Optional[str] = None
    max_results: Optional[int] = Field(None, ge=1, le=250)
    order_by: Literal["startTime", "updated"] = "startTime"


class EventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    summary: str
    start: datetime
    end: datetime
    all_day: bool
    description: Optional[str]
    location: Optional[str]
    attendees: Optional[List[str]]

    @field_validator("attendees", mode="before")
    @classmethod
    def _split(cls, v):
        if isinstance(v, str):
            return [a for a in v.split(",") if a]
        return v
