"""Task service - CRUD for agent tasks with overdue derived on read."""

from datetime import datetime
from typing import Optional, Any
from pydantic import ValidationError
from ulid import ULID

from src.models.task import (
    Task,
    TaskCreate,
    TaskPriority,
    TaskStatus,
    TaskUpdate,
)
from src.services import supabase_client as db
from src.utils.config import CRMConfig
from src.utils.dates import utc_now
from src.utils.errors import InvalidRequestError, NotFoundError
from src.utils.logging import get_structured_logger, get_correlation_id

logger = get_structured_logger(__name__)

MAX_LIST_LIMIT = 200

_TRUE = {"true", "1", "yes"}
_FALSE = {"false", "0", "no"}


def generate_task_id() -> str:
    """Generate a text-based task ID."""
    return str(ULID())


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise InvalidRequestError(f"Invalid {name}: {value}")


def _parse_limit(value: Optional[str]) -> int:
    if value is None or value == "":
        return CRMConfig.TASK_LIST_LIMIT
    try:
        limit = int(value)
    except ValueError:
        raise InvalidRequestError(f"Invalid limit: {value}")
    if limit < 1:
        raise InvalidRequestError("limit must be positive")
    return min(limit, MAX_LIST_LIMIT)


def parse_task_filters(params: dict[str, str]) -> tuple[dict[str, Any], Optional[str], int]:
    """Turn query parameters into (column filters, status filter, limit).

    ``status=overdue`` is not a stored value, so it is returned separately and
    applied after the overdue flag has been derived.
    """
    filters: dict[str, Any] = {}
    if params.get("agentId"):
        filters["agent_id"] = params["agentId"]
    if params.get("dealId"):
        filters["deal_id"] = params["dealId"]

    priority = params.get("priority")
    if priority:
        try:
            filters["priority"] = TaskPriority(priority).value
        except ValueError:
            raise InvalidRequestError(f"Invalid priority: {priority}")

    status = params.get("status")
    if status:
        try:
            status = TaskStatus(status).value
        except ValueError:
            raise InvalidRequestError(f"Invalid status: {status}")
        if status != TaskStatus.OVERDUE.value:
            filters["status"] = status

    automated = params.get("automated")
    if automated:
        filters["is_automated"] = _parse_bool("automated", automated)

    return filters, status or None, _parse_limit(params.get("limit"))


def count_by_status(tasks: list[Task], now: datetime) -> dict[str, int]:
    counts = {status.value: 0 for status in TaskStatus}
    for task in tasks:
        status = task.effective_status(now)
        counts[status] = counts.get(status, 0) + 1
    return counts


async def list_tasks(params: dict[str, str], now: Optional[datetime] = None) -> dict[str, Any]:
    """List tasks for the query parameters, with derived overdue and counts."""
    now = now or utc_now()
    filters, status, limit = parse_task_filters(params)

    # overdue tasks are stored as pending
    if status == TaskStatus.OVERDUE.value:
        filters["status"] = TaskStatus.PENDING.value

    rows = await db.list_tasks(filters, limit=limit)
    tasks = [Task(**row) for row in rows]
    if status == TaskStatus.OVERDUE.value:
        tasks = [t for t in tasks if t.is_overdue(now)]

    return {
        "tasks": [t.to_response(now) for t in tasks],
        "total": len(tasks),
        "tasksByStatus": count_by_status(tasks, now),
    }


async def create_task(body: dict[str, Any], now: Optional[datetime] = None) -> dict[str, Any]:
    """Validate and insert a task."""
    now = now or utc_now()
    try:
        request = TaskCreate.model_validate(body)
    except ValidationError as e:
        raise InvalidRequestError("Invalid task", {"errors": e.errors(include_url=False, include_context=False)})

    row = {
        "id": generate_task_id(),
        "type": request.type.value,
        "title": request.title.strip(),
        "description": request.description,
        "deal_id": request.deal_id,
        "client_id": request.client_id,
        "agent_id": request.agent_id,
        "priority": request.priority.value,
        "status": TaskStatus.PENDING.value,
        "due_date": request.due_date.isoformat() if request.due_date else None,
        "is_automated": request.is_automated,
        "automation_trigger": request.automation_trigger.to_storage() if request.automation_trigger else None,
        "created_at": now.isoformat(),
    }
    created = await db.create_task(row)

    logger.info(
        "Task created",
        correlation_id=get_correlation_id(),
        task_id=created.get("id"),
        deal_id=request.deal_id,
        task_type=request.type.value
    )
    return Task(**created).to_response(now)


def build_task_updates(request: TaskUpdate, now: datetime) -> dict[str, Any]:
    updates: dict[str, Any] = {}
    fields = request.model_dump(exclude_unset=True)

    if "status" in fields and request.status is not None:
        updates["status"] = request.status.value
        if request.status == TaskStatus.COMPLETED:
            updates["completed_at"] = now.isoformat()
        else:
            updates["completed_at"] = None
    if "notes" in fields:
        updates["description"] = request.notes
    if "priority" in fields and request.priority is not None:
        updates["priority"] = request.priority.value
    if "due_date" in fields:
        updates["due_date"] = request.due_date.isoformat() if request.due_date else None

    return updates


async def update_task(task_id: str, body: dict[str, Any], now: Optional[datetime] = None) -> dict[str, Any]:
    """Apply a partial update; completing a task stamps completed_at."""
    now = now or utc_now()
    if not task_id:
        raise InvalidRequestError("Task ID is required")
    try:
        request = TaskUpdate.model_validate(body)
    except ValidationError as e:
        raise InvalidRequestError("Invalid task update", {"errors": e.errors(include_url=False, include_context=False)})
    if request.is_empty():
        raise InvalidRequestError("No fields to update")

    updates = build_task_updates(request, now)
    row = await db.update_task(task_id, updates)
    if row is None:
        raise NotFoundError(f"Task not found: {task_id}")

    logger.info(
        "Task updated",
        correlation_id=get_correlation_id(),
        task_id=task_id,
        fields=sorted(updates)
    )
    return Task(**row).to_response(now)


async def delete_task(task_id: str) -> None:
    if not task_id:
        raise InvalidRequestError("Task ID is required")
    deleted = await db.delete_task(task_id)
    if not deleted:
        raise NotFoundError(f"Task not found: {task_id}")
    logger.info("Task deleted", correlation_id=get_correlation_id(), task_id=task_id)
