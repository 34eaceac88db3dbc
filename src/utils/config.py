"""CRM configuration from environment variables."""

import os
import json
from typing import Optional

from src.utils.errors import SwipeLinkError


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise SwipeLinkError(f"{name} must be an integer, got {raw!r}")


def _env_weights(name: str) -> Optional[dict[str, float]]:
    raw = os.environ.get(name)
    if not raw:
        return None
    try:
        weights = json.loads(raw)
    except json.JSONDecodeError as e:
        raise SwipeLinkError(f"{name} must be a JSON object: {e}")
    if not isinstance(weights, dict):
        raise SwipeLinkError(f"{name} must be a JSON object")
    return {str(k): float(v) for k, v in weights.items()}


class CRMConfig:
    """Scoring, pipeline and cache settings, overridable per deployment."""

    SUPABASE_URL = os.environ.get("SUPABASE_URL")
    SUPABASE_SERVICE_ROLE_KEY = os.environ.get("SUPABASE_SERVICE_ROLE_KEY")

    HOT_THRESHOLD = _env_int("CRM_HOT_THRESHOLD", 70)
    WARM_THRESHOLD = _env_int("CRM_WARM_THRESHOLD", 40)
    ENGAGED_THRESHOLD = _env_int("CRM_ENGAGED_THRESHOLD", 40)
    MAX_RAW_SCORE = _env_int("CRM_MAX_RAW_SCORE", 50)
    ACTION_WEIGHTS = _env_weights("CRM_ACTION_WEIGHTS")

    CACHE_TTL_SECONDS = _env_int("CRM_CACHE_TTL_SECONDS", 30)
    TASK_LIST_LIMIT = _env_int("CRM_TASK_LIST_LIMIT", 50)

    @classmethod
    def scoring_config(cls):
        """Build the scorer configuration from the current settings."""
        from src.services.engagement_scorer import DEFAULT_ACTION_WEIGHTS, ScoringConfig

        weights = dict(DEFAULT_ACTION_WEIGHTS)
        if cls.ACTION_WEIGHTS:
            weights.update(cls.ACTION_WEIGHTS)

        if cls.WARM_THRESHOLD > cls.HOT_THRESHOLD:
            raise SwipeLinkError("CRM_WARM_THRESHOLD must not exceed CRM_HOT_THRESHOLD")

        return ScoringConfig(
            action_weights=weights,
            hot_threshold=cls.HOT_THRESHOLD,
            warm_threshold=cls.WARM_THRESHOLD,
            max_raw_score=cls.MAX_RAW_SCORE,
        )
