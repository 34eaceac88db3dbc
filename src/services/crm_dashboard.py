"""CRM dashboard and analytics aggregation.

Read-only. Every data source is fetched on its own; a source that fails
leaves its section at zero defaults and is named in ``degraded_sections``
instead of failing the whole response.
"""

from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional
from pydantic import BaseModel, Field

from src.models.activity import Activity, ActionKind
from src.models.deal import Deal, DealStage, DealStatus, Temperature, STAGE_ORDER
from src.models.session import Session
from src.models.task import Task, TaskStatus
from src.services import supabase_client as db
from src.services.cache import TTLCache
from src.utils.dates import ensure_utc, same_month, utc_now
from src.utils.logging import get_structured_logger, get_correlation_id, log_timing

logger = get_structured_logger(__name__)

ACTIVITY_WINDOW_DAYS = 30
ACTIVE_SESSION_MINUTES = 30
TASK_FETCH_LIMIT = 200
TASK_LIST_SIZE = 10
DASHBOARD_CACHE_PREFIX = "dashboard:"

OPEN_STAGES = [stage for stage in STAGE_ORDER if stage != DealStage.CLOSED]
OPEN_STATUSES = (DealStatus.ACTIVE, DealStatus.QUALIFIED, DealStatus.NURTURING)


class DealSummary(BaseModel):
    total: int = 0
    active: int = 0
    by_stage: dict[str, int] = Field(default_factory=lambda: {s.value: 0 for s in OPEN_STAGES})
    hot_leads: int = 0
    month_revenue: float = 0.0
    pipeline_value: float = 0.0


class TaskSummary(BaseModel):
    pending: int = 0
    overdue: int = 0
    pending_tasks: list[dict] = Field(default_factory=list)
    overdue_tasks: list[dict] = Field(default_factory=list)


class TaskCounts(BaseModel):
    """Exact datastore counts of pending tasks, independent of how many were fetched."""
    pending: int = 0
    overdue: int = 0


class EngagementSummary(BaseModel):
    window_days: int = ACTIVITY_WINDOW_DAYS
    total_activities: int = 0
    views: int = 0
    likes: int = 0
    active_sessions: int = 0


class DashboardSnapshot(BaseModel):
    generated_at: datetime
    deals: DealSummary = Field(default_factory=DealSummary)
    tasks: TaskSummary = Field(default_factory=TaskSummary)
    engagement: EngagementSummary = Field(default_factory=EngagementSummary)
    degraded_sections: list[str] = Field(default_factory=list)


def summarize_deals(deals: list[Deal], now: datetime) -> DealSummary:
    summary = DealSummary(total=len(deals))
    for deal in deals:
        # value of every deal touched this month, whatever its status
        if same_month(deal.updated_at, now):
            summary.month_revenue += deal.deal_value
        if deal.is_closed:
            continue
        summary.active += 1
        summary.by_stage[deal.deal_stage.value] += 1
        summary.pipeline_value += deal.deal_value
        if deal.temperature == Temperature.HOT:
            summary.hot_leads += 1
    return summary


def _due_key(task: Task) -> tuple:
    return (task.due_date is None, task.due_date or datetime.max)


def summarize_tasks(
    tasks: list[Task],
    now: datetime,
    list_size: int = TASK_LIST_SIZE,
    counts: Optional[TaskCounts] = None,
) -> TaskSummary:
    """Split pending tasks into on-time and overdue, soonest due first.

    ``tasks`` may be a bounded sample; when ``counts`` is given the totals
    come from it rather than from the sample.
    """
    pending = sorted((t for t in tasks if t.status == TaskStatus.PENDING.value and not t.is_overdue(now)), key=_due_key)
    overdue = sorted((t for t in tasks if t.is_overdue(now)), key=_due_key)
    if counts is None:
        counts = TaskCounts(pending=len(pending), overdue=len(overdue))
    return TaskSummary(
        pending=counts.pending,
        overdue=counts.overdue,
        pending_tasks=[t.to_response(now) for t in pending[:list_size]],
        overdue_tasks=[t.to_response(now) for t in overdue[:list_size]],
    )


def summarize_engagement(activities: list[Activity], sessions: list[Session], now: datetime) -> EngagementSummary:
    return EngagementSummary(
        total_activities=len(activities),
        views=sum(1 for a in activities if a.kind == ActionKind.VIEW),
        likes=sum(1 for a in activities if a.kind == ActionKind.LIKE),
        active_sessions=sum(1 for s in sessions if s.is_active(now, ACTIVE_SESSION_MINUTES)),
    )


def build_dashboard_snapshot(
    deals: Optional[list[Deal]],
    tasks: Optional[list[Task]],
    activities: Optional[list[Activity]],
    now: datetime,
    degraded_sections: Optional[list[str]] = None,
    sessions: Optional[list[Session]] = None,
    task_counts: Optional[TaskCounts] = None,
) -> DashboardSnapshot:
    """Compose a snapshot; a None source keeps its section at defaults."""
    now = ensure_utc(now)
    snapshot = DashboardSnapshot(generated_at=now, degraded_sections=list(degraded_sections or []))
    if deals is not None:
        snapshot.deals = summarize_deals(deals, now)
    if tasks is not None:
        snapshot.tasks = summarize_tasks(tasks, now, counts=task_counts)
    if activities is not None:
        snapshot.engagement = summarize_engagement(activities, sessions or [], now)
    return snapshot


async def _fetch_section(
    section: str,
    fetch: Callable[[], Awaitable[Any]],
    degraded: list[str],
) -> Optional[Any]:
    try:
        return await fetch()
    except Exception as e:
        logger.warning(
            "Dashboard section unavailable",
            correlation_id=get_correlation_id(),
            section=section,
            error=str(e)
        )
        degraded.append(section)
        return None


async def _load_deals(agent_id: Optional[str]) -> list[Deal]:
    return [Deal(**row) for row in await db.list_deals(agent_id)]


async def load_dashboard(agent_id: Optional[str], now: datetime) -> DashboardSnapshot:
    degraded: list[str] = []

    deals = await _fetch_section("deals", lambda: _load_deals(agent_id), degraded)

    async def fetch_tasks() -> tuple[list[Task], TaskCounts]:
        filters = {"status": TaskStatus.PENDING.value}
        if agent_id:
            filters["agent_id"] = agent_id
        rows = await db.list_tasks(filters, limit=TASK_FETCH_LIMIT)
        total = await db.count_tasks(filters)
        overdue = await db.count_tasks(filters, due_before=now.isoformat())
        counts = TaskCounts(pending=total - overdue, overdue=overdue)
        return [Task(**row) for row in rows], counts

    async def fetch_engagement() -> tuple[list[Activity], list[Session]]:
        if agent_id and deals is None:
            raise RuntimeError("agent deals unavailable")
        deal_ids = [d.id for d in deals] if agent_id else None
        since = (now - timedelta(days=ACTIVITY_WINDOW_DAYS)).isoformat()
        active_since = (now - timedelta(minutes=ACTIVE_SESSION_MINUTES)).isoformat()
        activity_rows = await db.list_activities(deal_ids=deal_ids, since=since)
        session_rows = await db.list_sessions(deal_ids=deal_ids, active_since=active_since)
        return [Activity(**row) for row in activity_rows], [Session(**row) for row in session_rows]

    tasks, task_counts = await _fetch_section("tasks", fetch_tasks, degraded) or (None, None)
    activities, sessions = await _fetch_section("engagement", fetch_engagement, degraded) or (None, None)

    return build_dashboard_snapshot(deals, tasks, activities, now, degraded, sessions, task_counts)


async def get_dashboard_snapshot(
    agent_id: Optional[str] = None,
    now: Optional[datetime] = None,
    cache: Optional[TTLCache] = None,
) -> DashboardSnapshot:
    """Dashboard for one agent (or all agents). Degraded snapshots are not cached."""
    now = now or utc_now()

    async def compute() -> DashboardSnapshot:
        with log_timing("dashboard_snapshot", logger=logger, agent_id=agent_id):
            return await load_dashboard(agent_id, now)

    if cache is None:
        return await compute()
    return await cache.get_or_compute(
        DASHBOARD_CACHE_PREFIX + (agent_id or "all"),
        compute,
        cacheable=lambda snapshot: not snapshot.degraded_sections,
    )


# Pipeline analytics

def _rate(numerator: float, denominator: float) -> float:
    return round(numerator / denominator, 4) if denominator > 0 else 0.0


def stage_conversion_rates(deals: list[Deal]) -> dict[str, float]:
    """Share of deals that reached a stage and went on to reach the next one."""
    reached = {stage: 0 for stage in STAGE_ORDER}
    for deal in deals:
        for stage in STAGE_ORDER[:deal.deal_stage.rank + 1]:
            reached[stage] += 1
    rates = {}
    for current, following in zip(STAGE_ORDER, STAGE_ORDER[1:]):
        rates[f"{current.value}_to_{following.value}"] = _rate(reached[following], reached[current])
    return rates


def average_deal_cycle_days(deals: list[Deal]) -> Optional[float]:
    """Mean days from creation to last update for closed deals."""
    cycles = [
        (deal.updated_at - deal.created_at).total_seconds() / 86_400
        for deal in deals
        if deal.is_closed and deal.created_at and deal.updated_at
    ]
    if not cycles:
        return None
    return round(sum(cycles) / len(cycles), 1)


def pipeline_health(total: int, active: int, overall_rate: float, cycle_days: Optional[float]) -> tuple[str, list[str]]:
    health = "good"
    recommendations = []
    if total == 0:
        return "unknown", ["Create and share links to start building the pipeline"]

    if overall_rate < 0.1:
        health = "critical"
        recommendations.append("Conversion rate is critically low. Review link quality and follow-up processes.")
    elif overall_rate < 0.2:
        health = "needs-attention"
        recommendations.append("Conversion rate could be improved. Focus on lead qualification.")

    if active < 10:
        if health == "good":
            health = "needs-attention"
        recommendations.append("Pipeline volume is low. Increase link creation and marketing efforts.")

    if cycle_days is not None and cycle_days > 60:
        recommendations.append("Deal cycle is lengthy. Streamline follow-up processes.")

    if overall_rate > 0.3 and active > 20:
        health = "excellent"
        recommendations.append("Excellent performance. Consider scaling current strategies.")

    return health, recommendations


def build_pipeline_analytics(deals: list[Deal]) -> dict[str, Any]:
    total = len(deals)
    by_stage = {stage.value: 0 for stage in STAGE_ORDER}
    by_status = {status.value: 0 for status in DealStatus}
    for deal in deals:
        by_stage[deal.deal_stage.value] += 1
        by_status[deal.deal_status.value] += 1

    active = sum(1 for d in deals if d.deal_status in OPEN_STATUSES and not d.is_closed)
    engaged = sum(1 for d in deals if d.deal_stage.rank >= DealStage.ENGAGED.rank)
    qualified = sum(
        1 for d in deals
        if d.deal_stage.rank >= DealStage.QUALIFIED.rank or d.deal_status == DealStatus.QUALIFIED
    )
    won = by_status[DealStatus.CLOSED_WON.value]

    total_value = sum(d.deal_value for d in deals)
    average_value = total_value / total if total else 0.0
    overall_rate = _rate(won, total)
    cycle_days = average_deal_cycle_days(deals)
    health, recommendations = pipeline_health(total, active, overall_rate, cycle_days)

    return {
        "total_deals": total,
        "active_deals": active,
        "deals_by_stage": by_stage,
        "deals_by_status": by_status,
        "conversion_rates": stage_conversion_rates(deals),
        "link_to_engagement_rate": _rate(engaged, total),
        "engagement_to_qualified_rate": _rate(qualified, engaged),
        "qualified_to_closed_rate": _rate(won, qualified),
        "overall_conversion_rate": overall_rate,
        "total_pipeline_value": round(total_value, 2),
        "average_deal_value": round(average_value, 2),
        "projected_revenue": round(active * average_value * overall_rate, 2),
        "average_deal_cycle_days": cycle_days,
        "health": health,
        "recommendations": recommendations,
    }


# Performance analytics

def month_start(value: datetime) -> datetime:
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def previous_month_start(value: datetime) -> datetime:
    return month_start(month_start(value) - timedelta(days=1))


def _period_metrics(deals: list[Deal]) -> dict[str, Any]:
    won = [d for d in deals if d.deal_status == DealStatus.CLOSED_WON]
    return {
        "deals_created": len(deals),
        "deals_closed": len(won),
        "revenue": round(sum(d.deal_value for d in won), 2),
        "conversion_rate": _rate(len(won), len(deals)),
    }


def _delta(current: float, previous: float) -> Optional[float]:
    """Relative change; None when there is nothing to compare against."""
    if previous == 0:
        return None
    return round((current - previous) / previous, 4)


def build_performance_analytics(deals: list[Deal], now: datetime) -> dict[str, Any]:
    now = ensure_utc(now)
    this_start = month_start(now)
    last_start = previous_month_start(now)

    this_month = [d for d in deals if d.created_at and d.created_at >= this_start]
    last_month = [d for d in deals if d.created_at and last_start <= d.created_at < this_start]
    current = _period_metrics(this_month)
    previous = _period_metrics(last_month)
    overall = _period_metrics(deals)

    recent = [d for d in deals if d.created_at and d.created_at >= now - timedelta(days=30)]
    kpis = {
        "total_revenue": overall["revenue"],
        "average_deal_size": round(overall["revenue"] / overall["deals_closed"], 2) if overall["deals_closed"] else 0.0,
        "conversion_rate": overall["conversion_rate"],
        "deal_velocity": round(len(recent) / 30, 4),
    }

    insights = []
    recommendations = []
    if deals:
        if overall["conversion_rate"] > 0.3:
            insights.append("Excellent conversion rate indicates strong lead qualification")
        elif overall["conversion_rate"] < 0.1:
            insights.append("Low conversion rate suggests lead quality or follow-up issues")
            recommendations.append("Review lead qualification criteria and follow-up timelines")

        hot_share = sum(1 for d in deals if d.temperature == Temperature.HOT) / len(deals)
        if hot_share > 0.2:
            insights.append("High share of hot leads indicates effective engagement")
        elif hot_share < 0.1:
            recommendations.append("Nurture cold leads with more targeted property selections")

        if current["deals_created"] < previous["deals_created"]:
            recommendations.append("Fewer links created than last month. Increase sharing activity.")

    return {
        "this_month": current,
        "last_month": previous,
        "trends": {name: _delta(current[name], previous[name]) for name in current},
        "kpis": kpis,
        "insights": insights,
        "recommendations": recommendations,
    }


async def get_deal_analytics(
    kind: str,
    agent_id: Optional[str] = None,
    now: Optional[datetime] = None,
    cache: Optional[TTLCache] = None,
) -> dict[str, Any]:
    """Pipeline or performance analytics; falls back to empty deals on failure."""
    now = now or utc_now()

    async def compute() -> dict[str, Any]:
        degraded: list[str] = []
        deals = await _fetch_section("deals", lambda: _load_deals(agent_id), degraded)

        if kind == "pipeline":
            data = build_pipeline_analytics(deals or [])
        else:
            data = build_performance_analytics(deals or [], now)
        data["degraded_sections"] = degraded
        return data

    if cache is None:
        return await compute()
    return await cache.get_or_compute(
        TTLCache.make_key(DASHBOARD_CACHE_PREFIX + kind, agent_id or "all"),
        compute,
        cacheable=lambda data: not data["degraded_sections"],
    )
