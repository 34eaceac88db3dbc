"""CRM tasks endpoint.

GET    /api/crm/tasks?agentId&dealId&status&priority&automated&limit
POST   /api/crm/tasks
PATCH  /api/crm/tasks/{id}   (rewritten to ?id=)
DELETE /api/crm/tasks/{id}
"""

from http.server import BaseHTTPRequestHandler
from typing import Optional

from src.services import task_service
from src.services.cache import TTLCache, get_shared_cache
from src.services.crm_dashboard import DASHBOARD_CACHE_PREFIX
from src.utils.http import serve, success
from src.utils.errors import InvalidRequestError


async def handle_list(params: dict, body: dict, cache: Optional[TTLCache] = None) -> tuple[int, dict]:
    return success(await task_service.list_tasks(params))


async def handle_create(params: dict, body: dict, cache: Optional[TTLCache] = None) -> tuple[int, dict]:
    if not body.get("type") or not body.get("title"):
        raise InvalidRequestError("Missing required fields: type, title")
    task = await task_service.create_task(body)
    if cache is not None:
        cache.invalidate_prefix(DASHBOARD_CACHE_PREFIX)
    return success(task, status=201, message="Task created successfully")


async def handle_update(params: dict, body: dict, cache: Optional[TTLCache] = None) -> tuple[int, dict]:
    task = await task_service.update_task(params.get("id", ""), body)
    if cache is not None:
        cache.invalidate_prefix(DASHBOARD_CACHE_PREFIX)
    return success(task, message="Task updated successfully")


async def handle_delete(params: dict, body: dict, cache: Optional[TTLCache] = None) -> tuple[int, dict]:
    await task_service.delete_task(params.get("id", ""))
    if cache is not None:
        cache.invalidate_prefix(DASHBOARD_CACHE_PREFIX)
    return success(message="Task deleted successfully")


class handler(BaseHTTPRequestHandler):
    """Vercel serverless function handler for CRM tasks."""

    cache = get_shared_cache()

    def do_GET(self):
        serve(self, handle_list, "Failed to fetch tasks", read_body=False, cache=self.cache)

    def do_POST(self):
        serve(self, handle_create, "Failed to create task", cache=self.cache)

    def do_PATCH(self):
        serve(self, handle_update, "Failed to update task", cache=self.cache)

    def do_DELETE(self):
        serve(self, handle_delete, "Failed to delete task", read_body=False, cache=self.cache)
