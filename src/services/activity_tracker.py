"""Activity tracking - append client interactions and keep sessions current."""

from datetime import datetime
from typing import Optional, Any
from ulid import ULID

from src.models.activity import Activity, ActivityCreate, ActionKind
from src.models.session import Session
from src.services.supabase_client import (
    create_session,
    get_session,
    insert_activity,
    update_session,
)
from src.utils.dates import utc_now
from src.utils.logging import get_structured_logger, get_correlation_id, mask_identifier

logger = get_structured_logger(__name__)


def generate_activity_id() -> str:
    """Generate a text-based activity ID."""
    return str(ULID())


async def start_session(
    session_id: str,
    link_id: str,
    device_info: Optional[dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Session:
    """Insert a new session row."""
    now = now or utc_now()
    row = await create_session({
        "id": session_id,
        "link_id": link_id,
        "device_info": device_info or {},
        "started_at": now.isoformat(),
        "last_active": now.isoformat(),
    })
    logger.info(
        "Session started",
        correlation_id=get_correlation_id(),
        session_id=mask_identifier(session_id),
        link_id=link_id
    )
    return Session(**row)


async def touch_session(session_id: str, now: Optional[datetime] = None) -> Optional[Session]:
    """Set last_active on a session; None when the session does not exist."""
    now = now or utc_now()
    row = await update_session(session_id, {"last_active": now.isoformat()})
    return Session(**row) if row else None


async def track_activity(request: ActivityCreate, now: Optional[datetime] = None) -> Activity:
    """Append one activity and keep its session current.

    A ``session_start`` for an unknown session creates it; any other action
    with a session id only refreshes ``last_active``.
    """
    now = now or utc_now()
    correlation_id = get_correlation_id()

    if request.session_id:
        if request.action == ActionKind.SESSION_START:
            existing = await get_session(request.session_id)
            if existing is None:
                await start_session(
                    request.session_id,
                    request.link_id,
                    request.metadata.get("device_info"),
                    now,
                )
            else:
                await touch_session(request.session_id, now)
        else:
            touched = await touch_session(request.session_id, now)
            if touched is None:
                logger.warning(
                    "Activity references unknown session",
                    correlation_id=correlation_id,
                    session_id=mask_identifier(request.session_id),
                    link_id=request.link_id
                )

    row = await insert_activity({
        "id": generate_activity_id(),
        "link_id": request.link_id,
        "property_id": request.property_id,
        "session_id": request.session_id,
        "action": request.action.value,
        "metadata": request.metadata,
        "created_at": now.isoformat(),
    })

    logger.info(
        "Activity recorded",
        correlation_id=correlation_id,
        link_id=request.link_id,
        action=request.action.value,
        property_id=request.property_id
    )
    return Activity(**row)
