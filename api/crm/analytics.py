"""CRM analytics endpoint.

GET /api/crm/analytics?type=dashboard|pipeline|performance&agentId
"""

from http.server import BaseHTTPRequestHandler
from typing import Optional

from src.services.cache import TTLCache, get_shared_cache
from src.services.crm_dashboard import get_dashboard_snapshot, get_deal_analytics
from src.utils.http import failure, serve, success

ANALYTICS_TYPES = ("dashboard", "pipeline", "performance")


async def handle_analytics(params: dict, body: dict, cache: Optional[TTLCache] = None) -> tuple[int, dict]:
    kind = params.get("type") or "dashboard"
    agent_id = params.get("agentId") or None

    if kind not in ANALYTICS_TYPES:
        return failure("Invalid analytics type", 400)

    if kind == "dashboard":
        snapshot = await get_dashboard_snapshot(agent_id, cache=cache)
        return success(snapshot.model_dump(mode="json"))

    return success(await get_deal_analytics(kind, agent_id, cache=cache))


class handler(BaseHTTPRequestHandler):
    """Vercel serverless function handler for CRM analytics."""

    cache = get_shared_cache()

    def do_GET(self):
        serve(self, handle_analytics, "Failed to fetch analytics", read_body=False, cache=self.cache)
