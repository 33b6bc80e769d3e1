from __future__ import annotations
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
import time

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# reserved labels
UNKNOWN_FIELD = "unknown"
PAGE_FIELD = "page"
FORM_FIELD = "form"


class EventType(str, Enum):
    FOCUS = "focus"
    BLUR = "blur"
    INPUT = "input"
    SUBMIT = "submit"
    ABANDON = "abandon"


# only these carry a focus duration
TIMED_TYPES = (EventType.BLUR, EventType.ABANDON)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def epoch_ms(ts: datetime) -> int:
    return int(round(ts.timestamp() * 1000))


class Event(BaseModel):
    # minimal, privacy-first: never a field value, never a persistent user id
    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(..., alias="projectId", min_length=1, description="opaque tenant id")
    session_id: str = Field(..., alias="sessionId", min_length=1, description="per-page-load id")
    type: EventType = Field(..., description="focus/blur/input/submit/abandon")
    field_name: Optional[str] = Field(None, alias="fieldName")
    duration: Optional[float] = Field(None, ge=0, allow_inf_nan=False, description="focus time in ms")
    occurred_at: datetime = Field(default_factory=utcnow, alias="occurredAt")
    received_at: Optional[datetime] = Field(None, alias="receivedAt")

    @field_validator("project_id", "session_id", "field_name", "duration", mode="before")
    @classmethod
    def _blank_is_missing(cls, v):
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @field_validator("occurred_at", mode="before")
    @classmethod
    def _default_clock(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return utcnow()
        return v

    @field_validator("occurred_at", "received_at")
    @classmethod
    def _aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode="after")
    def _duration_only_when_timed(self) -> "Event":
        if self.type not in TIMED_TYPES:
            self.duration = None
        return self

    def wire_item(self) -> Dict[str, Any]:
        """One entry of a batch's ``events`` list, as the capture agent sends it."""
        return {
            "type": self.type.value,
            "fieldName": self.field_name,
            "duration": self.duration,
            "occurredAt": epoch_ms(self.occurred_at),
        }


def encode_batch(project_id: str, session_id: str, events: Iterable[Event],
                 sent_at: Optional[float] = None) -> Dict[str, Any]:
    """Batched wire shape: {projectId, sessionId, events[], sentAt}."""
    return {
        "projectId": project_id,
        "sessionId": session_id,
        "events": [e.wire_item() for e in events],
        "sentAt": int((sent_at if sent_at is not None else time.time()) * 1000),
    }


def events_to_records(events: Iterable[Event]) -> List[Dict[str, Any]]:
    """Flat rows for DataFrame construction (snake_case columns)."""
    return [
        {
            "project_id": e.project_id,
            "session_id": e.session_id,
            "type": e.type.value,
            "field_name": e.field_name,
            "duration": e.duration,
            "occurred_at": e.occurred_at,
        }
        for e in events
    ]
