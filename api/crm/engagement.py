"""CRM engagement endpoint.

POST /api/crm/engagement with ``action``:
    track    record ``activity`` (an ActivityCreate object), then refresh the deal
    refresh  recompute score, temperature and stage for a deal
    score    score a posted activity list without writing anything
"""

from http.server import BaseHTTPRequestHandler
from typing import Optional

from src.models.activity import Activity, ActivityCreate
from src.services.activity_tracker import track_activity
from src.services.cache import TTLCache, get_shared_cache
from src.services.deal_pipeline import refresh_deal
from src.services.engagement_scorer import compute_engagement, generate_engagement_insights
from src.utils.config import CRMConfig
from src.utils.dates import parse_timestamp, utc_now
from src.utils.errors import InvalidRequestError
from src.utils.http import serve, success


def _deal_id(body: dict) -> str:
    deal_id = body.get("dealId") or body.get("deal_id") or body.get("linkId") or body.get("link_id")
    if not deal_id:
        raise InvalidRequestError("dealId is required")
    return str(deal_id)


async def handle_track(body: dict, cache: Optional[TTLCache]) -> tuple[int, dict]:
    payload = body.get("activity")
    if not isinstance(payload, dict):
        raise InvalidRequestError("activity is required")
    request = ActivityCreate.model_validate(payload)
    activity = await track_activity(request)
    result = await refresh_deal(request.link_id, cache=cache)
    return success({
        "activity": activity.model_dump(mode="json"),
        "deal": result.to_response(),
    })


async def handle_refresh(body: dict, cache: Optional[TTLCache]) -> tuple[int, dict]:
    result = await refresh_deal(_deal_id(body), cache=cache)
    return success(result.to_response())


async def handle_score(body: dict) -> tuple[int, dict]:
    items = body.get("activities")
    if not isinstance(items, list):
        raise InvalidRequestError("activities must be a list")

    now = parse_timestamp(body.get("now")) or utc_now()
    activities = [
        Activity.model_validate({"link_id": body.get("dealId") or "", **item})
        for item in items
    ]
    result = compute_engagement(activities, now, CRMConfig.scoring_config())
    return success({
        **result.model_dump(mode="json"),
        **generate_engagement_insights(result),
    })


async def handle_engagement(params: dict, body: dict, cache: Optional[TTLCache] = None) -> tuple[int, dict]:
    action = body.get("action")
    if action == "track":
        return await handle_track(body, cache)
    if action == "refresh":
        return await handle_refresh(body, cache)
    if action == "score":
        return await handle_score(body)
    raise InvalidRequestError("Invalid action. Supported actions: track, refresh, score")


class handler(BaseHTTPRequestHandler):
    """Vercel serverless function handler for engagement events."""

    cache = get_shared_cache()

    def do_POST(self):
        serve(self, handle_engagement, "Failed to process engagement event", cache=self.cache)
