"""Activity model - one client interaction with a shared link (activities table)."""

from enum import Enum
from typing import Optional, Any
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from src.utils.dates import parse_timestamp


class ActionKind(str, Enum):
    """Interaction kinds recorded by the swipe client."""
    VIEW = "view"
    LIKE = "like"
    DISLIKE = "dislike"
    CONSIDER = "consider"
    DETAIL = "detail"
    SWIPE = "swipe"
    SESSION_START = "session_start"


class Activity(BaseModel):
    """Append-only activity row. Never updated after insert."""
    id: Optional[str] = Field(None, description="Activity ID")
    link_id: str = Field(..., description="Deal (links table FK)")
    property_id: Optional[str] = Field(None, description="Property FK")
    session_id: Optional[str] = Field(None, description="Session FK")
    action: str = Field(..., description="view, like, dislike, consider, detail, swipe, session_start")
    created_at: datetime = Field(..., description="When the interaction happened")
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("created_at", mode="before")
    @classmethod
    def _parse_created_at(cls, value: Any) -> Optional[datetime]:
        return parse_timestamp(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _null_metadata(cls, value: Any) -> Any:
        return value or {}

    @property
    def kind(self) -> Optional[ActionKind]:
        """Parsed action, or None for kinds this service does not know."""
        try:
            return ActionKind(self.action)
        except ValueError:
            return None


class ActivityCreate(BaseModel):
    """Request body for recording an activity. Accepts camelCase or snake_case keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    link_id: str = Field(..., min_length=1)
    action: ActionKind
    property_id: Optional[str] = None
    session_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
