"""Session model - one client visit to a shared link (sessions table)."""

from typing import Optional, Any
from datetime import datetime
from pydantic import BaseModel, Field, field_validator

from src.utils.dates import parse_timestamp


class Session(BaseModel):
    """Client browsing session."""
    id: str = Field(..., description="Session ID generated by the client")
    link_id: Optional[str] = Field(None, description="Deal (links table FK)")
    device_info: dict[str, Any] = Field(default_factory=dict)
    started_at: Optional[datetime] = None
    last_active: Optional[datetime] = None

    @field_validator("started_at", "last_active", mode="before")
    @classmethod
    def _parse_timestamps(cls, value: Any) -> Optional[datetime]:
        return parse_timestamp(value)

    @field_validator("device_info", mode="before")
    @classmethod
    def _null_device_info(cls, value: Any) -> Any:
        return value or {}

    def is_active(self, now: datetime, idle_minutes: int = 30) -> bool:
        """True while the client has interacted within the idle window."""
        seen = self.last_active or self.started_at
        if seen is None:
            return False
        return (now - seen).total_seconds() <= idle_minutes * 60
