"""Task models - agent follow-ups, created by hand or by automation rules."""

import json
from enum import Enum
from typing import Optional, Any
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from src.utils.dates import parse_timestamp


class TaskType(str, Enum):
    CALL = "call"
    EMAIL = "email"
    SHOWING = "showing"
    FOLLOW_UP = "follow-up"
    MEETING = "meeting"
    DOCUMENT = "document"


class TaskPriority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TaskStatus(str, Enum):
    """Task status. OVERDUE is derived on read and never written."""
    PENDING = "pending"
    COMPLETED = "completed"
    DISMISSED = "dismissed"
    OVERDUE = "overdue"


WRITABLE_STATUSES = (TaskStatus.PENDING, TaskStatus.COMPLETED, TaskStatus.DISMISSED)

TRIGGER_SCHEMA_VERSION = 1


class AutomationTrigger(BaseModel):
    """Contents of tasks.automation_trigger (a JSON text column)."""
    trigger: str = Field(..., description="Rule trigger key, e.g. hot_lead")
    schema_version: int = TRIGGER_SCHEMA_VERSION
    generated_at: Optional[datetime] = None
    description: Optional[str] = None
    score: Optional[int] = None

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["AutomationTrigger"]:
        """Parse the stored column; older rows used ``triggerType``."""
        if raw is None or raw == "":
            return None
        if isinstance(raw, cls):
            return raw
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError:
                return cls(trigger=raw, schema_version=0)
        if not isinstance(raw, dict):
            return None
        trigger = raw.get("trigger") or raw.get("triggerType")
        if not trigger:
            return None
        return cls(
            trigger=trigger,
            schema_version=raw.get("schema_version", 0),
            generated_at=parse_timestamp(raw.get("generated_at") or raw.get("generatedAt")),
            description=raw.get("description"),
            score=raw.get("score"),
        )

    def to_storage(self) -> str:
        return self.model_dump_json(exclude_none=True)


class Task(BaseModel):
    """One row of the tasks table."""
    id: str = Field(..., description="Task ID")
    type: str = Field(..., description="call, email, showing, follow-up, meeting, document")
    title: str
    description: Optional[str] = None
    deal_id: Optional[str] = Field(None, description="Deal (links table FK)")
    client_id: Optional[str] = None
    agent_id: Optional[str] = None
    priority: str = Field(default=TaskPriority.MEDIUM.value)
    status: str = Field(default=TaskStatus.PENDING.value)
    due_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    is_automated: bool = False
    automation_trigger: Optional[AutomationTrigger] = None

    @field_validator("due_date", "completed_at", "created_at", mode="before")
    @classmethod
    def _parse_timestamps(cls, value: Any) -> Optional[datetime]:
        return parse_timestamp(value)

    @field_validator("automation_trigger", mode="before")
    @classmethod
    def _parse_trigger(cls, value: Any) -> Optional[AutomationTrigger]:
        return AutomationTrigger.from_raw(value)

    @field_validator("is_automated", mode="before")
    @classmethod
    def _null_false(cls, value: Any) -> Any:
        return bool(value)

    def is_overdue(self, now: datetime) -> bool:
        return (
            self.status == TaskStatus.PENDING.value
            and self.due_date is not None
            and self.due_date < now
        )

    def effective_status(self, now: datetime) -> str:
        if self.is_overdue(now):
            return TaskStatus.OVERDUE.value
        return self.status

    def to_response(self, now: datetime) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data["effective_status"] = self.effective_status(now)
        data["is_overdue"] = self.is_overdue(now)
        return data


class TaskCreate(BaseModel):
    """POST /api/crm/tasks body. Accepts camelCase or snake_case keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: TaskType
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    deal_id: Optional[str] = None
    client_id: Optional[str] = None
    agent_id: Optional[str] = None
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: Optional[datetime] = None
    is_automated: bool = False
    automation_trigger: Optional[AutomationTrigger] = None

    @field_validator("due_date", mode="before")
    @classmethod
    def _parse_due_date(cls, value: Any) -> Optional[datetime]:
        return parse_timestamp(value)

    @field_validator("automation_trigger", mode="before")
    @classmethod
    def _parse_trigger(cls, value: Any) -> Optional[AutomationTrigger]:
        return AutomationTrigger.from_raw(value)


class TaskUpdate(BaseModel):
    """PATCH /api/crm/tasks/{id} body."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    status: Optional[TaskStatus] = None
    notes: Optional[str] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = None

    @field_validator("status")
    @classmethod
    def _writable_status(cls, value: Optional[TaskStatus]) -> Optional[TaskStatus]:
        if value is not None and value not in WRITABLE_STATUSES:
            raise ValueError("overdue is derived from the due date and cannot be set")
        return value

    @field_validator("due_date", mode="before")
    @classmethod
    def _parse_due_date(cls, value: Any) -> Optional[datetime]:
        return parse_timestamp(value)

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_unset=True)
