"""Supabase client wrapper with async context manager support."""

from typing import Any, Callable, Optional
from supabase import create_client, Client
from supabase.client import ClientOptions
from src.utils.config import CRMConfig
from src.utils.errors import SupabaseError
from src.utils.logging import get_structured_logger

logger = get_structured_logger(__name__)

PAGE_SIZE = 1000

_client: Optional[Client] = None


def get_supabase_client() -> Client:
    """Get or create the Supabase client for this process."""
    global _client

    if _client is None:
        url = CRMConfig.SUPABASE_URL
        key = CRMConfig.SUPABASE_SERVICE_ROLE_KEY

        if not url or not key:
            raise SupabaseError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")

        options = ClientOptions(
            auto_refresh_token=False,
            persist_session=False,
        )

        _client = create_client(url, key, options)
        logger.info("Supabase client initialized", supabase_url=url)

    return _client


def reset_supabase_client() -> None:
    """Drop the cached client (tests, credential rotation)."""
    global _client
    _client = None


class SupabaseClient:
    """Async context manager for Supabase client."""

    def __init__(self):
        self.client: Optional[Client] = None

    async def __aenter__(self) -> Client:
        self.client = get_supabase_client()
        return self.client

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type:
            logger.error(
                "Supabase operation error",
                error=str(exc_val),
                error_type=exc_type.__name__
            )
        return False


def _first(result: Any) -> Optional[dict]:
    return result.data[0] if result.data and len(result.data) > 0 else None


def _all_pages(build_query: Callable[[], Any], page_size: int = PAGE_SIZE) -> list[dict]:
    """Read every row a query matches, one ``range`` page at a time.

    PostgREST caps each response at its max-rows setting, so a single
    ``execute()`` can silently drop rows. The query is rebuilt for each page
    and must carry a stable order.
    """
    rows: list[dict] = []
    start = 0
    while True:
        result = build_query().range(start, start + page_size - 1).execute()
        page = result.data or []
        rows.extend(page)
        if len(page) < page_size:
            return rows
        start += page_size


# Deals (links table)
async def get_deal(deal_id: str) -> Optional[dict]:
    """Get one deal by id."""
    async with SupabaseClient() as client:
        try:
            result = client.table("links").select("*").eq("id", deal_id).limit(1).execute()
            return _first(result)
        except Exception as e:
            raise SupabaseError(f"Failed to get deal: {e}")


async def list_deals(agent_id: Optional[str] = None) -> list[dict]:
    """Get all deals, optionally for one agent."""
    def build_query():
        query = client.table("links").select("*")
        if agent_id:
            query = query.eq("agent_id", agent_id)
        return query.order("created_at", desc=True).order("id")

    async with SupabaseClient() as client:
        try:
            return _all_pages(build_query)
        except Exception as e:
            raise SupabaseError(f"Failed to list deals: {e}")


async def update_deal(deal_id: str, updates: dict) -> dict:
    """Update CRM columns on a deal."""
    async with SupabaseClient() as client:
        try:
            result = client.table("links").update(updates).eq("id", deal_id).execute()
            row = _first(result)
            if row is None:
                raise SupabaseError(f"Failed to update deal: {deal_id}")
            return row
        except SupabaseError:
            raise
        except Exception as e:
            raise SupabaseError(f"Failed to update deal: {e}")


# Activities table (append-only)
async def get_activities_for_deal(deal_id: str) -> list[dict]:
    """Get a deal's full activity log, oldest first."""
    async with SupabaseClient() as client:
        try:
            return _all_pages(
                lambda: client.table("activities").select("*").eq("link_id", deal_id).order("created_at").order("id")
            )
        except Exception as e:
            raise SupabaseError(f"Failed to get activities: {e}")


async def list_activities(deal_ids: Optional[list[str]] = None, since: Optional[str] = None) -> list[dict]:
    """Get activities across deals, optionally restricted to some deals or a start time."""
    if deal_ids is not None and not deal_ids:
        return []

    def build_query():
        query = client.table("activities").select("id,link_id,session_id,action,created_at")
        if deal_ids is not None:
            query = query.in_("link_id", deal_ids)
        if since:
            query = query.gte("created_at", since)
        return query.order("created_at").order("id")

    async with SupabaseClient() as client:
        try:
            return _all_pages(build_query)
        except Exception as e:
            raise SupabaseError(f"Failed to list activities: {e}")


async def insert_activity(activity_data: dict) -> dict:
    """Append an activity row."""
    async with SupabaseClient() as client:
        try:
            result = client.table("activities").insert(activity_data).execute()
            row = _first(result)
            if row is None:
                raise SupabaseError("Failed to insert activity: no data returned")
            return row
        except SupabaseError:
            raise
        except Exception as e:
            raise SupabaseError(f"Failed to insert activity: {e}")


# Sessions table
async def get_session(session_id: str) -> Optional[dict]:
    async with SupabaseClient() as client:
        try:
            result = client.table("sessions").select("*").eq("id", session_id).limit(1).execute()
            return _first(result)
        except Exception as e:
            raise SupabaseError(f"Failed to get session: {e}")


async def create_session(session_data: dict) -> dict:
    async with SupabaseClient() as client:
        try:
            result = client.table("sessions").insert(session_data).execute()
            row = _first(result)
            if row is None:
                raise SupabaseError("Failed to create session: no data returned")
            return row
        except SupabaseError:
            raise
        except Exception as e:
            raise SupabaseError(f"Failed to create session: {e}")


async def list_sessions(deal_ids: Optional[list[str]] = None, active_since: Optional[str] = None) -> list[dict]:
    """Get sessions, optionally for some deals and last seen after a time."""
    if deal_ids is not None and not deal_ids:
        return []

    def build_query():
        query = client.table("sessions").select("id,link_id,started_at,last_active")
        if deal_ids is not None:
            query = query.in_("link_id", deal_ids)
        if active_since:
            query = query.gte("last_active", active_since)
        return query.order("id")

    async with SupabaseClient() as client:
        try:
            return _all_pages(build_query)
        except Exception as e:
            raise SupabaseError(f"Failed to list sessions: {e}")


async def update_session(session_id: str, updates: dict) -> Optional[dict]:
    async with SupabaseClient() as client:
        try:
            result = client.table("sessions").update(updates).eq("id", session_id).execute()
            return _first(result)
        except Exception as e:
            raise SupabaseError(f"Failed to update session: {e}")


# Tasks table
async def list_tasks(filters: Optional[dict] = None, limit: int = 50) -> list[dict]:
    """Get tasks matching equality filters, newest first."""
    async with SupabaseClient() as client:
        try:
            query = client.table("tasks").select("*")
            for column, value in (filters or {}).items():
                query = query.eq(column, value)
            result = query.order("created_at", desc=True).limit(limit).execute()
            return result.data if result.data else []
        except Exception as e:
            raise SupabaseError(f"Failed to list tasks: {e}")


async def count_tasks(filters: Optional[dict] = None, due_before: Optional[str] = None) -> int:
    """Exact number of tasks matching equality filters, optionally due before a time."""
    async with SupabaseClient() as client:
        try:
            query = client.table("tasks").select("id", count="exact")
            for column, value in (filters or {}).items():
                query = query.eq(column, value)
            if due_before:
                query = query.lt("due_date", due_before)
            result = query.limit(1).execute()
            return result.count or 0
        except Exception as e:
            raise SupabaseError(f"Failed to count tasks: {e}")


async def create_task(task_data: dict) -> dict:
    """Create a new task."""
    async with SupabaseClient() as client:
        try:
            result = client.table("tasks").insert(task_data).execute()
            row = _first(result)
            if row is None:
                raise SupabaseError("Failed to create task: no data returned")
            return row
        except SupabaseError:
            raise
        except Exception as e:
            raise SupabaseError(f"Failed to create task: {e}")


async def update_task(task_id: str, updates: dict) -> Optional[dict]:
    """Update a task; returns None when no row matched."""
    async with SupabaseClient() as client:
        try:
            result = client.table("tasks").update(updates).eq("id", task_id).execute()
            return _first(result)
        except Exception as e:
            raise SupabaseError(f"Failed to update task: {e}")


async def delete_task(task_id: str) -> bool:
    """Delete a task; returns False when no row matched."""
    async with SupabaseClient() as client:
        try:
            result = client.table("tasks").delete().eq("id", task_id).execute()
            return bool(result.data)
        except Exception as e:
            raise SupabaseError(f"Failed to delete task: {e}")


async def get_automated_tasks_for_deal(deal_id: str) -> list[dict]:
    """Get the automated tasks already created for a deal."""
    async with SupabaseClient() as client:
        try:
            result = (
                client.table("tasks")
                .select("id,automation_trigger,status")
                .eq("deal_id", deal_id)
                .eq("is_automated", True)
                .execute()
            )
            return result.data if result.data else []
        except Exception as e:
            raise SupabaseError(f"Failed to get automated tasks: {e}")
