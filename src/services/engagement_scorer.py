"""Engagement scoring - weighted, recency-adjusted score and temperature per deal.

Scoring is pure: the same activity log and reference time always give the
same result, so the score stored on a deal is only a cache of this function.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional
from pydantic import BaseModel, Field

from src.models.activity import Activity, ActionKind
from src.models.deal import Temperature
from src.utils.dates import ensure_utc


DEFAULT_ACTION_WEIGHTS: dict[str, float] = {
    ActionKind.VIEW.value: 1.0,
    ActionKind.DETAIL.value: 2.0,
    ActionKind.LIKE.value: 3.0,
    ActionKind.CONSIDER.value: 2.0,
    ActionKind.DISLIKE.value: -1.0,
    ActionKind.SWIPE.value: 0.0,
    ActionKind.SESSION_START.value: 0.0,
}

# (max_age_days, multiplier), checked in order
DEFAULT_RECENCY_BANDS: tuple[tuple[float, float], ...] = (
    (7.0, 1.0),
    (30.0, 0.5),
)


@dataclass(frozen=True)
class ScoringConfig:
    """Scoring parameters.

    action_weights:
        Points per action kind; unknown kinds score 0.
    recency_bands:
        Ascending ``(max_age_days, multiplier)`` pairs. An activity takes the
        multiplier of the first band its age fits in.
    recency_default:
        Multiplier for activities older than every band.
    max_raw_score:
        Raw points that map to a score of 100.
    """
    action_weights: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_ACTION_WEIGHTS))
    recency_bands: tuple[tuple[float, float], ...] = DEFAULT_RECENCY_BANDS
    recency_default: float = 0.25
    max_raw_score: float = 50.0
    hot_threshold: int = 70
    warm_threshold: int = 40

    def __post_init__(self):
        if self.max_raw_score <= 0:
            raise ValueError("max_raw_score must be positive")
        if self.warm_threshold > self.hot_threshold:
            raise ValueError("warm_threshold must not exceed hot_threshold")


class EngagementResult(BaseModel):
    """Score breakdown for one deal."""
    score: int = Field(..., ge=0, le=100)
    temperature: Temperature
    raw_score: float
    action_counts: dict[str, int] = Field(default_factory=dict)
    activity_count: int = 0
    last_activity_at: Optional[datetime] = None


def recency_multiplier(age_days: float, config: ScoringConfig) -> float:
    """Time-decay multiplier for an activity age_days old."""
    for max_age, multiplier in config.recency_bands:
        if age_days <= max_age:
            return multiplier
    return config.recency_default


def temperature_for_score(score: int, config: Optional[ScoringConfig] = None) -> Temperature:
    config = config or ScoringConfig()
    if score >= config.hot_threshold:
        return Temperature.HOT
    if score >= config.warm_threshold:
        return Temperature.WARM
    return Temperature.COLD


def scale_raw_score(raw_score: float, config: ScoringConfig) -> int:
    """Map raw points onto 0-100, rounding half up."""
    scaled = max(raw_score, 0.0) * 100.0 / config.max_raw_score
    return max(0, min(100, int(math.floor(scaled + 0.5))))


def compute_engagement(
    activities: Iterable[Activity],
    now: datetime,
    config: Optional[ScoringConfig] = None,
) -> EngagementResult:
    """Score a deal from its activity log as seen at ``now``."""
    config = config or ScoringConfig()
    now = ensure_utc(now)
    ordered = sorted(activities, key=lambda a: a.created_at)

    raw_score = 0.0
    counts: dict[str, int] = {}
    for activity in ordered:
        counts[activity.action] = counts.get(activity.action, 0) + 1
        weight = config.action_weights.get(activity.action, 0.0)
        if weight == 0:
            continue
        # future-dated rows (client clock skew) count as fresh
        age_days = max(0.0, (now - activity.created_at).total_seconds() / 86_400)
        raw_score += weight * recency_multiplier(age_days, config)

    raw_score = round(raw_score, 4)
    score = scale_raw_score(raw_score, config)

    return EngagementResult(
        score=score,
        temperature=temperature_for_score(score, config),
        raw_score=raw_score,
        action_counts=counts,
        activity_count=len(ordered),
        last_activity_at=ordered[-1].created_at if ordered else None,
    )


def engagement_columns(result: EngagementResult) -> dict:
    """Columns written back to the links row."""
    columns = {
        "engagement_score": result.score,
        "temperature": result.temperature.value,
    }
    if result.last_activity_at is not None:
        columns["last_activity"] = result.last_activity_at.isoformat()
    return columns


def generate_engagement_insights(result: EngagementResult) -> dict:
    """Plain-language reading of a score for the agent dashboard."""
    insights: list[str] = []
    recommendations: list[str] = []
    counts = result.action_counts

    if result.temperature == Temperature.HOT:
        insights.append("Strong signals of serious buyer intent")
        recommendations.append("Contact the client immediately")
    elif result.temperature == Temperature.WARM:
        insights.append("Client is showing steady interest")
        recommendations.append("Schedule a follow-up call within 24 hours")
    elif result.activity_count:
        insights.append("Client browsed briefly through the collection")
        recommendations.append("Re-engage with a more targeted property selection")
    else:
        insights.append("Client has not opened the link yet")
        recommendations.append("Check the link was delivered and resend if needed")

    likes = counts.get(ActionKind.LIKE.value, 0)
    dislikes = counts.get(ActionKind.DISLIKE.value, 0)
    details = counts.get(ActionKind.DETAIL.value, 0)

    if likes and likes > dislikes:
        insights.append(f"Liked {likes} propert{'y' if likes == 1 else 'ies'}")
        recommendations.append("Offer showings for the liked properties")
    elif dislikes > likes:
        insights.append("More properties passed than liked")
        recommendations.append("Revisit budget and location preferences")

    if details >= 3:
        insights.append("Opened property details repeatedly")
        recommendations.append("Send full listing packs for the viewed properties")

    return {
        "temperature": result.temperature.value,
        "insights": insights,
        "recommendations": recommendations,
    }
