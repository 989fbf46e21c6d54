"""
Pydantic models for the campus notification domain.

Pydantic-модели: события хранилища, сущности кампуса, бронирования и
внутреннее состояние конвейера уведомлений.
"""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .timeinterval import to_minutes


class ChangeKind(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


class ChangeEvent(BaseModel):
    """Single change delivered by a collection's change feed."""

    model_config = ConfigDict(frozen=True)

    collection: str
    kind: ChangeKind
    entity_id: str
    payload: dict[str, Any] = Field(default_factory=dict)


class Role(str, Enum):
    """Closed set of client roles; each one gets its own schedule scope."""

    LEARNER = "learner"
    STAFF = "staff"
    ADMIN = "admin"

    @classmethod
    def from_raw(cls, raw: Optional[str]) -> "Role":
        value = (raw or "").strip().lower()
        if value in ("student", "learner"):
            return cls.LEARNER
        if value in ("teacher", "lecturer", "staff"):
            return cls.STAFF
        return cls.ADMIN


class UserProfile(BaseModel):
    id: str = ""
    name: str = ""
    role: Role = Role.ADMIN


class _Record(BaseModel):
    """Base for documents read from the store (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = ""


class CampusEvent(_Record):
    title: str = ""
    location: str = ""
    start_date: str = Field(default="", alias="startDate")
    start_time: str = Field(default="", alias="startTime")


class ClassSchedule(_Record):
    module_title: str = Field(default="", alias="moduleTitle")
    lecturer_name: str = Field(default="", alias="lecturerName")
    classroom_number: str = Field(default="", alias="classroomNumber")
    date: str = ""
    start_time: str = Field(default="", alias="startTime")
    end_time: str = Field(default="", alias="endTime")


class Course(_Record):
    title: str = ""
    code: str = ""
    modules: list[str] = Field(default_factory=list)


class BookingRequest(BaseModel):
    """Reservation candidate built by the booking form, not yet persisted."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    resource_id: str = Field(alias="classroomId")
    date: dt.date
    start_minute: int = Field(ge=0, le=24 * 60 - 1)
    end_minute: int = Field(ge=0, le=24 * 60 - 1)
    owner_ref: str = Field(default="", alias="bookedBy")
    booked_for: str = Field(default="", alias="bookedFor")
    title: str = ""
    description: str = ""
    booking_type: str = Field(default="class", alias="bookingType")

    @model_validator(mode="before")
    @classmethod
    def _parse_clock_times(cls, data: Any) -> Any:
        # Форма и хранилище передают время строками HH:MM
        if isinstance(data, Mapping):
            data = dict(data)
            for clock_keys, minute_key in (
                (("startTime", "start_time"), "start_minute"),
                (("endTime", "end_time"), "end_minute"),
            ):
                for clock_key in clock_keys:
                    if clock_key in data and minute_key not in data:
                        data[minute_key] = to_minutes(str(data.pop(clock_key)))
        return data

    @property
    def start_time(self) -> str:
        return _format_minutes(self.start_minute)

    @property
    def end_time(self) -> str:
        return _format_minutes(self.end_minute)

    def to_record(self) -> dict[str, Any]:
        return {
            "classroomId": self.resource_id,
            "date": self.date.isoformat(),
            "startTime": self.start_time,
            "endTime": self.end_time,
            "bookedBy": self.owner_ref,
            "bookedFor": self.booked_for or self.owner_ref,
            "title": self.title,
            "description": self.description,
            "bookingType": self.booking_type,
        }


class Reservation(BookingRequest):
    """Persisted booking of one classroom for one day."""

    id: Optional[str] = None
    status: str = "confirmed"

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Reservation":
        """Build from a store record; raises ValueError on malformed times or dates."""
        return cls.model_validate(record)


class NotificationKey(BaseModel):
    """Composite identity of one user-facing notification."""

    model_config = ConfigDict(frozen=True)

    domain: str
    entity_id: str
    bucket: str
    kind: str

    def __str__(self) -> str:
        return f"{self.domain}|{self.entity_id}|{self.bucket}|{self.kind}"


class DedupEntry(BaseModel):
    key: str
    first_seen_at: float


class QueueItem(BaseModel):
    message: str
    enqueued_at: float


class PipelineState(BaseModel):
    """State of the notification pipeline, used for /status."""

    is_running: bool = False
    started_at: Optional[dt.datetime] = None
    changes_seen: int = 0
    catch_up_items: int = 0
    notifications_enqueued: int = 0
    notifications_suppressed: int = 0
    deliveries: int = 0
    last_error: Optional[str] = None


def _format_minutes(value: int) -> str:
    return f"{value // 60:02d}:{value % 60:02d}"


__all__ = [
    "ChangeKind",
    "ChangeEvent",
    "Role",
    "UserProfile",
    "CampusEvent",
    "ClassSchedule",
    "Course",
    "BookingRequest",
    "Reservation",
    "NotificationKey",
    "DedupEntry",
    "QueueItem",
    "PipelineState",
]
