from __future__ import annotations

import enum
import logging
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


logger = logging.getLogger("taskbridge.schemas")


class TaskStatus(str, enum.Enum):
    todo = "todo"
    inprogress = "inprogress"
    review = "review"
    done = "done"


class Priority(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class Frequency(str, enum.Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"


class UserRole(str, enum.Enum):
    admin = "Admin"
    supervisor = "Supervisor"
    analyst = "Analyst"


WEEKDAY_NAMES = ("sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday")

# Collection names used on the wire ("type") and in the local store.
ENTITY_TASK = "task"
ENTITY_USER = "user"
ENTITY_CLIENT = "client"
ENTITY_TYPES = (ENTITY_TASK, ENTITY_USER, ENTITY_CLIENT)

COLLECTIONS = ("tasks", "users", "clients")
ENTITY_OF_COLLECTION = {"tasks": ENTITY_TASK, "users": ENTITY_USER, "clients": ENTITY_CLIENT}

OPERATIONS = ("create", "update", "delete")

# Locally derived fields that are never written to the store.
EPHEMERAL_TASK_FIELDS = {"instances"}


class _WireModel(BaseModel):
    class Config:
        populate_by_name = True
        use_enum_values = True
        # Enum defaults must be stored as plain values too.
        validate_default = True


class RecurrenceRule(_WireModel):
    enabled: bool = True
    frequency: Frequency
    days_of_week: List[str] = Field(default_factory=list, alias="daysOfWeek")
    day_of_month: Optional[int] = Field(default=None, alias="dayOfMonth", ge=1, le=31)
    interval: int = Field(default=1, ge=1)
    end_date: Optional[str] = Field(default=None, alias="endDate")

    @field_validator("days_of_week")
    @classmethod
    def _lower_day_names(cls, v: List[str]) -> List[str]:
        out: list[str] = []
        for name in v:
            key = str(name).strip().lower()
            if key not in WEEKDAY_NAMES:
                # Unknown names never match a day; the rest of the rule stands.
                logger.warning("Ignoring unknown weekday %r in recurrence", name)
                continue
            if key not in out:
                out.append(key)
        return out

    @field_validator("end_date", mode="before")
    @classmethod
    def _blank_end_date(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        return v


class Task(_WireModel):
    id: str = Field(..., min_length=1)
    title: str = ""
    description: str = ""
    status: TaskStatus = TaskStatus.todo
    priority: Priority = Priority.medium
    # Legacy single-assignee consumers read the first assignee from here.
    assignee_id: Optional[str] = Field(default=None, alias="assigneeId")
    assignee_ids: List[str] = Field(default_factory=list, alias="assigneeIds")
    client_id: Optional[str] = Field(default=None, alias="clientId")
    start_date: str = Field(default="", alias="startDate")
    due_date: str = Field(default="", alias="dueDate")
    tags: List[str] = Field(default_factory=list)
    completed_date: Optional[str] = Field(default=None, alias="completedDate")

    is_recurring: bool = Field(default=False, alias="isRecurring")
    recurrence: Optional[RecurrenceRule] = None
    # Stored rule text that could not be read; written back untouched.
    recurrence_raw: Optional[str] = Field(default=None, alias="recurrenceRaw")
    parent_task_id: Optional[str] = Field(default=None, alias="parentTaskId")

    # Upcoming occurrence dates, computed locally for display only.
    instances: List[str] = Field(default_factory=list)

    @field_validator("assignee_id", "client_id", "parent_task_id", "completed_date", "recurrence_raw", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @model_validator(mode="after")
    def _consistency(self) -> "Task":
        if self.parent_task_id:
            # Occurrences never carry a rule of their own.
            self.is_recurring = False
            self.recurrence = None
            self.recurrence_raw = None
        elif self.recurrence is not None:
            self.recurrence_raw = None
        if self.assignee_ids:
            self.assignee_id = self.assignee_ids[0]
        elif self.assignee_id:
            self.assignee_ids = [self.assignee_id]
        return self

    @property
    def is_mother(self) -> bool:
        return bool(self.is_recurring and self.recurrence is not None and not self.parent_task_id)

    @property
    def is_child(self) -> bool:
        return bool(self.parent_task_id)

    def to_wire(self) -> dict[str, Any]:
        """Payload for the mutation gateway (camelCase, without derived fields)."""
        return self.model_dump(by_alias=True, exclude=EPHEMERAL_TASK_FIELDS, mode="json")


class User(_WireModel):
    id: str = Field(..., min_length=1)
    name: str = ""
    email: str = ""
    password: str = ""
    role: UserRole = UserRole.analyst
    avatar: str = ""

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class Client(_WireModel):
    id: str = Field(..., min_length=1)
    name: str = ""

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class MutationRequest(BaseModel):
    operation: Literal["create", "update", "delete"]
    type: Literal["task", "client", "user"]
    item: dict[str, Any]


class MutationResponse(BaseModel):
    success: bool
    error: Optional[str] = None


class SweepOut(BaseModel):
    day: str
    examined: int
    created: List[str]
    skipped: List[str]


class SweepRequest(BaseModel):
    day: Optional[str] = None


class LoggingLevelUpdate(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "debug", "info", "warning", "error", "critical"]


class LogFileOut(BaseModel):
    filename: str
    size_bytes: int
    modified_at_iso: str
