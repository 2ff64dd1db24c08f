from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class WidgetMessageIn(BaseModel):
    session_id: str = Field(min_length=1, max_length=120)
    text: str = Field(min_length=1, max_length=4000)
    visitor_name: Optional[str] = None
    visitor_email: Optional[str] = None
    visitor_phone: Optional[str] = None
    page_url: Optional[str] = None
    client_message_id: Optional[str] = Field(default=None, max_length=120)


class WidgetMessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    direction: str
    sender_type: str
    message_type: str
    text: Optional[str] = None
    media_url: Optional[str] = None
    link_url: Optional[str] = None
    sent_at: Optional[datetime] = None


class WidgetConfigOut(BaseModel):
    widget_key: str
    assistant_name: str
    company_name: str
    is_active: bool
    title: Optional[str] = None
    welcome_message: Optional[str] = None
    accent_color: Optional[str] = None


class WidgetPostResponse(BaseModel):
    ok: bool = True
    duplicate: bool = False
    message: Optional[WidgetMessageOut] = None
    reply: Optional[WidgetMessageOut] = None


class WidgetHistoryResponse(BaseModel):
    session_id: str
    messages: list[WidgetMessageOut] = Field(default_factory=list)
