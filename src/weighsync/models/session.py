"""Queue sessions, daily tare configuration, and activity log entries."""

from __future__ import annotations

import enum
import uuid
from datetime import date, datetime
from typing import Any

from pydantic import Field, field_validator

from weighsync.models._base import Kilograms, OptionalKilograms, WeighBaseModel, utcnow


def new_id() -> str:
    return str(uuid.uuid4())


class SessionStatus(enum.StrEnum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"


class TareConfiguration(WeighBaseModel):
    """Tare weight for one operating day (``YYYY-MM-DD``)."""

    id: str = Field(default_factory=new_id)
    date: str
    tare_weight: Kilograms = Field(ge=0)
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("date", mode="before")
    @classmethod
    def _normalize_date(cls, value: Any) -> str:
        if isinstance(value, datetime):
            return value.date().isoformat()
        if isinstance(value, date):
            return value.isoformat()
        text = str(value).strip()
        # Validates the format; raises ValueError on garbage.
        return date.fromisoformat(text).isoformat()


class LorrySession(WeighBaseModel):
    """One vehicle's queue entry and weighing lifecycle.

    ``tare_weight`` is copied from the operating day's tare configuration
    when the session is activated, so later tare edits never change the
    net weight of captures already taken.
    """

    id: str = Field(default_factory=new_id)
    lorry_number: str = Field(min_length=1)
    line: str = Field(min_length=1)
    line_manager: str = Field(min_length=1)
    phone: str | None = None
    tare_weight: OptionalKilograms = None
    status: SessionStatus = SessionStatus.WAITING
    total_bags: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("lorry_number", "line", "line_manager")
    @classmethod
    def _strip(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("must be non-empty")
        return text

    @property
    def is_terminal(self) -> bool:
        return self.status == SessionStatus.COMPLETED


class ActivityStatus(enum.StrEnum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class Activity(WeighBaseModel):
    """Operator-facing log entry written alongside each lifecycle step."""

    id: str = Field(default_factory=new_id)
    type: str
    message: str
    status: ActivityStatus = ActivityStatus.SUCCESS
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
