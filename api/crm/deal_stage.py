"""Deal stage endpoint.

PATCH /api/crm/deals/{id}/stage   (rewritten to ?id=)

Body: ``{"stage": ..., "confirmBackward": bool, "notes": ...}`` for an
explicit stage change, or ``{"status": ...}`` for a status change.
"""

from http.server import BaseHTTPRequestHandler
from typing import Optional

from src.models.deal import DealStage, DealStatus
from src.services.cache import TTLCache, get_shared_cache
from src.services.deal_pipeline import change_deal_stage, change_deal_status
from src.services.pipeline_stage import STAGE_REQUIREMENTS, next_suggested_stage
from src.utils.errors import InvalidRequestError
from src.utils.http import serve, success


def _parse_enum(enum_cls, value, field: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise InvalidRequestError(f"Invalid {field}: {value}. Allowed: {allowed}")


async def handle_stage_change(params: dict, body: dict, cache: Optional[TTLCache] = None) -> tuple[int, dict]:
    deal_id = params.get("id")
    if not deal_id:
        raise InvalidRequestError("Deal ID is required")

    if body.get("stage"):
        stage = _parse_enum(DealStage, body["stage"], "stage")
        result = await change_deal_stage(
            deal_id,
            stage,
            confirm_backward=bool(body.get("confirmBackward", False)),
            notes=body.get("notes"),
            cache=cache,
        )
    elif body.get("status"):
        status = _parse_enum(DealStatus, body["status"], "status")
        result = await change_deal_status(deal_id, status, cache=cache)
    else:
        raise InvalidRequestError("stage or status is required")

    suggested = next_suggested_stage(result.stage)
    data = result.to_response()
    data["requirements"] = list(STAGE_REQUIREMENTS[result.stage])
    data["next_stage"] = suggested.value if suggested else None
    return success(data, message=f"Deal moved to {result.stage.value}")


class handler(BaseHTTPRequestHandler):
    """Vercel serverless function handler for deal stage changes."""

    cache = get_shared_cache()

    def do_PATCH(self):
        serve(self, handle_stage_change, "Failed to update deal stage", cache=self.cache)

    def do_POST(self):
        self.do_PATCH()
