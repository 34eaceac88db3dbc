"""Deal model - a shared property link tracked through the sales pipeline (links table)."""

import json
from enum import Enum
from typing import Optional, Any, Literal
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.utils.dates import parse_timestamp


class DealStage(str, Enum):
    """Pipeline stages, declared in pipeline order."""
    CREATED = "created"
    SHARED = "shared"
    ACCESSED = "accessed"
    ENGAGED = "engaged"
    QUALIFIED = "qualified"
    ADVANCED = "advanced"
    CLOSED = "closed"

    @property
    def rank(self) -> int:
        return STAGE_ORDER.index(self)

    @classmethod
    def coerce(cls, value: Any) -> "DealStage":
        """Parse a stored stage; unknown or missing values fall back to CREATED."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.CREATED


STAGE_ORDER: list[DealStage] = list(DealStage)


class DealStatus(str, Enum):
    """Deal status values."""
    ACTIVE = "active"
    QUALIFIED = "qualified"
    NURTURING = "nurturing"
    CLOSED_WON = "closed-won"
    CLOSED_LOST = "closed-lost"


CLOSING_STATUSES = frozenset({DealStatus.CLOSED_WON, DealStatus.CLOSED_LOST})


class Temperature(str, Enum):
    """Lead temperature derived from engagement score."""
    HOT = "hot"
    WARM = "warm"
    COLD = "cold"


class StageChange(BaseModel):
    """One entry of a deal's stage history."""
    model_config = ConfigDict(populate_by_name=True)

    from_stage: DealStage = Field(..., alias="from")
    to_stage: DealStage = Field(..., alias="to")
    at: datetime
    source: Literal["agent", "resolver"] = "resolver"
    notes: Optional[str] = None


METADATA_SCHEMA_VERSION = 1


class DealMetadata(BaseModel):
    """Typed view of the CRM fields kept in links.metadata.

    Version 0 payloads were flat dicts written by the old dashboard
    (``{"qualified": true}`` or ``{"confirmed_stage": "advanced"}``); they are
    migrated on read. Keys this model does not know are kept in ``extra`` and
    written back untouched.
    """
    schema_version: int = METADATA_SCHEMA_VERSION
    agent_confirmed_stage: Optional[DealStage] = None
    stage_history: list[StageChange] = Field(default_factory=list)
    notes: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    extra: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: Any) -> "DealMetadata":
        if raw is None or raw == "":
            return cls()
        if isinstance(raw, cls):
            return raw
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError:
                return cls(extra={"legacy_text": raw})
        if not isinstance(raw, dict):
            return cls()

        data = dict(raw)
        version = data.pop("schema_version", 0)
        if version == 0:
            data = _migrate_v0(data)

        known = {name: data.pop(name) for name in list(data) if name in _KNOWN_FIELDS}
        extra = dict(known.pop("extra", None) or {})
        extra.update(data)
        return cls(**known, extra=extra)

    def last_regression_at(self) -> Optional[datetime]:
        """When an agent last moved the deal backward, if ever."""
        for change in reversed(self.stage_history):
            if change.source == "agent" and change.to_stage.rank < change.from_stage.rank:
                return change.at
        return None

    def to_storage(self) -> dict[str, Any]:
        """Flatten back into the JSON shape stored in the column."""
        stored = dict(self.extra)
        stored.update(self.model_dump(mode="json", by_alias=True, exclude={"extra"}))
        return stored


_KNOWN_FIELDS = {"agent_confirmed_stage", "stage_history", "notes", "tags", "extra"}


def _migrate_v0(data: dict) -> dict:
    confirmed = data.pop("confirmed_stage", None)
    if confirmed is None and data.pop("qualified", False):
        confirmed = DealStage.QUALIFIED.value
    if confirmed is not None:
        data["agent_confirmed_stage"] = confirmed
    if isinstance(data.get("tags"), str):
        data["tags"] = [t.strip() for t in data["tags"].split(",") if t.strip()]
    return data


class Deal(BaseModel):
    """Deal model - one row of the links table with its CRM columns."""
    id: str = Field(..., description="Link ID")
    code: Optional[str] = Field(None, description="Share code used in the public link URL")
    name: Optional[str] = Field(None, description="Collection name")
    agent_id: Optional[str] = Field(None, description="Owning agent")
    client_id: Optional[str] = Field(None, description="Client (clients table FK)")
    property_ids: list[str] = Field(default_factory=list, description="Properties in the collection")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    last_activity: Optional[datetime] = None
    deal_stage: DealStage = DealStage.CREATED
    deal_status: DealStatus = DealStatus.ACTIVE
    temperature: Temperature = Temperature.COLD
    engagement_score: int = Field(default=0, ge=0, le=100)
    deal_value: float = Field(default=0.0, ge=0)
    metadata: DealMetadata = Field(default_factory=DealMetadata)

    @field_validator("deal_stage", mode="before")
    @classmethod
    def _coerce_stage(cls, value: Any) -> DealStage:
        return DealStage.coerce(value)

    @field_validator("deal_status", mode="before")
    @classmethod
    def _coerce_status(cls, value: Any) -> Any:
        return value or DealStatus.ACTIVE

    @field_validator("temperature", mode="before")
    @classmethod
    def _coerce_temperature(cls, value: Any) -> Any:
        return value or Temperature.COLD

    @field_validator("engagement_score", "deal_value", mode="before")
    @classmethod
    def _null_to_zero(cls, value: Any) -> Any:
        return 0 if value is None else value

    @field_validator("property_ids", mode="before")
    @classmethod
    def _parse_property_ids(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return json.loads(value)
        return value

    @field_validator("created_at", "updated_at", "expires_at", "last_activity", mode="before")
    @classmethod
    def _parse_timestamps(cls, value: Any) -> Optional[datetime]:
        return parse_timestamp(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _parse_metadata(cls, value: Any) -> DealMetadata:
        return DealMetadata.from_raw(value)

    @property
    def is_closed(self) -> bool:
        return self.deal_stage == DealStage.CLOSED or self.deal_status in CLOSING_STATUSES

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now
