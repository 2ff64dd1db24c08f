from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class InstagramChange(BaseModel):
    field: Optional[str] = None
    value: Optional[dict[str, Any]] = None

    model_config = ConfigDict(extra="ignore")


class InstagramEntry(BaseModel):
    id: Optional[str] = None
    time: Optional[int] = None
    messaging: list[dict[str, Any]] = Field(default_factory=list)
    changes: list[InstagramChange] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")


class InstagramWebhook(BaseModel):
    """Meta webhook envelope; events arrive in either entry[].messaging[] or entry[].changes[].value."""

    object: Optional[str] = None
    entry: list[InstagramEntry] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")

    def events(self) -> list[dict[str, Any]]:
        events = []
        for entry in self.entry:
            events.extend(event for event in entry.messaging if isinstance(event, dict))
            events.extend(change.value for change in entry.changes if isinstance(change.value, dict))
        return events
