from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class CalendarEventUpdate(BaseModel):
    title: Optional[str] = Field(default=None, max_length=160)
    description: Optional[str] = Field(default=None, max_length=4000)
    date: Optional[str] = None
    time: Optional[str] = None
    duration_minutes: Optional[int] = Field(default=None, ge=15, le=720)
    status: Optional[str] = None
    location: Optional[str] = Field(default=None, max_length=255)


class CalendarEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: Optional[str] = None
    starts_at: datetime
    ends_at: Optional[datetime] = None
    timezone: str
    status: str
    location: Optional[str] = None
    event_metadata: dict[str, Any] = Field(default_factory=dict, serialization_alias="metadata")


class TaskUpdate(BaseModel):
    description: Optional[str] = Field(default=None, max_length=4000)
    status: Optional[str] = None
    sync_with_calendar: Optional[bool] = None
    company_calendar_event_id: Optional[int] = None


class TaskOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    description: str
    status: str
    board_column: str
    sync_with_calendar: bool
    company_calendar_event_id: Optional[int] = None
    scheduled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class DeletedOut(BaseModel):
    id: int
    deleted: bool = True
