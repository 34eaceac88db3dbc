"""Tests for dashboard and analytics aggregation."""

import pytest
from contextlib import ExitStack
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch
from src.models.activity import Activity
from src.models.deal import Deal
from src.models.session import Session
from src.models.task import Task
from src.services.cache import TTLCache
from src.services.crm_dashboard import (
    TaskCounts,
    build_dashboard_snapshot,
    build_performance_analytics,
    build_pipeline_analytics,
    get_dashboard_snapshot,
    get_deal_analytics,
    previous_month_start,
    stage_conversion_rates,
    summarize_deals,
    summarize_engagement,
    summarize_tasks,
)
from tests.utils.factories import create_activity_data, create_deal_data, create_task_data


def deals_from(*rows):
    return [Deal(**row) for row in rows]


@pytest.fixture
def sources():
    """Patch every datastore read the dashboard makes; all return empty by default."""
    names = ("list_deals", "list_tasks", "count_tasks", "list_activities", "list_sessions")
    with ExitStack() as stack:
        mocks = {
            name: stack.enter_context(
                patch(f"src.services.crm_dashboard.db.{name}", new_callable=AsyncMock)
            )
            for name in names
        }
        for name in names:
            mocks[name].return_value = 0 if name == "count_tasks" else []
        yield SimpleNamespace(**mocks)


@pytest.fixture
def deal_rows():
    return [
        create_deal_data(deal_id="d1", agent_id="agent-1", deal_stage="engaged", temperature="hot",
                         deal_value=500000, updated_at="2024-12-05T10:00:00Z"),
        create_deal_data(deal_id="d2", agent_id="agent-1", deal_stage="qualified", temperature="warm",
                         deal_value=300000),
        create_deal_data(deal_id="d3", agent_id="agent-1", deal_stage="closed", deal_status="closed-won",
                         deal_value=400000, updated_at="2024-12-02T10:00:00Z"),
        create_deal_data(deal_id="d4", agent_id="agent-1", deal_stage="closed", deal_status="closed-lost",
                         deal_value=250000, updated_at="2024-12-03T10:00:00Z"),
    ]


@pytest.mark.unit
def test_summarize_deals(deal_rows, now):
    summary = summarize_deals(deals_from(*deal_rows), now)

    assert summary.total == 4
    assert summary.active == 2
    assert summary.hot_leads == 1
    assert summary.pipeline_value == 800000
    assert summary.month_revenue == 1150000
    assert summary.by_stage == {
        "created": 0, "shared": 0, "accessed": 0, "engaged": 1, "qualified": 1, "advanced": 0,
    }


@pytest.mark.unit
def test_month_revenue_counts_every_status(now):
    deals = deals_from(
        create_deal_data(deal_value=100, updated_at="2024-12-04T10:00:00Z"),
        create_deal_data(deal_value=50, deal_status="closed-lost", deal_stage="closed",
                         updated_at="2024-12-06T10:00:00Z"),
        create_deal_data(deal_value=75, updated_at="2024-11-30T23:00:00Z"),
    )

    assert summarize_deals(deals, now).month_revenue == 150


@pytest.mark.unit
def test_empty_deals_zero_filled(now):
    summary = summarize_deals([], now)

    assert summary.total == 0
    assert set(summary.by_stage.values()) == {0}


@pytest.mark.unit
def test_summarize_tasks_splits_overdue(now):
    tasks = [
        Task(**create_task_data(title="late", due_date="2024-12-01T00:00:00Z")),
        Task(**create_task_data(title="soon", due_date="2024-12-10T00:00:00Z")),
        Task(**create_task_data(title="later", due_date="2024-12-20T00:00:00Z")),
        Task(**create_task_data(title="undated", due_date=None)),
    ]

    summary = summarize_tasks(tasks, now)

    assert summary.overdue == 1
    assert summary.pending == 3
    assert [t["title"] for t in summary.pending_tasks] == ["soon", "later", "undated"]
    assert summary.overdue_tasks[0]["effective_status"] == "overdue"


@pytest.mark.unit
def test_summarize_tasks_prefers_exact_counts(now):
    sample = [Task(**create_task_data(due_date="2024-12-10T00:00:00Z")) for _ in range(3)]

    summary = summarize_tasks(sample, now, counts=TaskCounts(pending=250, overdue=40))

    assert summary.pending == 250
    assert summary.overdue == 40
    assert len(summary.pending_tasks) == 3


@pytest.mark.unit
def test_summarize_engagement_counts_active_sessions(now):
    activities = [
        Activity(**create_activity_data("d1", "view", now, hours_ago=0.1, session_id="s1")),
        Activity(**create_activity_data("d1", "like", now, hours_ago=0.2, session_id="s1")),
        Activity(**create_activity_data("d2", "view", now, hours_ago=0.3, session_id="s2")),
        Activity(**create_activity_data("d2", "like", now, hours_ago=5, session_id="s3")),
        Activity(**create_activity_data("d2", "teleport", now, hours_ago=5, session_id="s3")),
    ]
    sessions = [
        Session(id="s1", link_id="d1", started_at="2024-12-09T11:00:00Z", last_active="2024-12-09T11:50:00Z"),
        Session(id="s2", link_id="d2", started_at="2024-12-09T11:40:00Z"),
        Session(id="s3", link_id="d2", started_at="2024-12-09T06:00:00Z", last_active="2024-12-09T07:00:00Z"),
    ]

    summary = summarize_engagement(activities, sessions, now)

    assert summary.total_activities == 5
    assert summary.views == 2
    assert summary.likes == 2
    assert summary.active_sessions == 2


@pytest.mark.unit
def test_snapshot_with_missing_source_keeps_defaults(deal_rows, now):
    snapshot = build_dashboard_snapshot(deals_from(*deal_rows), [], None, now, ["engagement"])

    assert snapshot.deals.total == 4
    assert snapshot.engagement.total_activities == 0
    assert snapshot.degraded_sections == ["engagement"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_failing_activities_degrade_only_engagement(deal_rows, now, sources):
    """Activities failing while links succeed: zero engagement, real deal numbers."""
    sources.list_deals.return_value = deal_rows
    sources.list_activities.side_effect = RuntimeError("activities unavailable")

    snapshot = await get_dashboard_snapshot("agent-1", now=now)

    assert snapshot.degraded_sections == ["engagement"]
    assert snapshot.engagement.total_activities == 0
    assert snapshot.engagement.views == 0
    assert snapshot.engagement.active_sessions == 0
    assert snapshot.deals.total == 4
    assert snapshot.deals.pipeline_value == 800000


@pytest.mark.unit
@pytest.mark.asyncio
async def test_agent_activities_scoped_to_agent_deals(deal_rows, now, sources):
    sources.list_deals.return_value = deal_rows

    await get_dashboard_snapshot("agent-1", now=now)

    kwargs = sources.list_activities.call_args.kwargs
    assert kwargs["deal_ids"] == ["d1", "d2", "d3", "d4"]
    assert kwargs["since"].startswith("2024-11-09")
    assert sources.list_sessions.call_args.kwargs["active_since"].startswith("2024-12-09T11:30")
    assert sources.list_tasks.call_args[0][0] == {"status": "pending", "agent_id": "agent-1"}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_task_totals_come_from_exact_counts(now, sources):
    sources.list_tasks.return_value = [create_task_data(due_date="2024-12-10T00:00:00Z")]
    sources.count_tasks.side_effect = lambda filters, due_before=None: 12 if due_before else 1500

    snapshot = await get_dashboard_snapshot("agent-1", now=now)

    assert snapshot.tasks.pending == 1488
    assert snapshot.tasks.overdue == 12
    assert len(snapshot.tasks.pending_tasks) == 1
    assert sources.count_tasks.call_args_list[1].kwargs["due_before"] == now.isoformat()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_failing_deals_degrade_agent_engagement(now, sources):
    sources.list_deals.side_effect = RuntimeError("links unavailable")
    sources.list_tasks.return_value = [create_task_data()]
    sources.count_tasks.side_effect = lambda filters, due_before=None: 0 if due_before else 1

    snapshot = await get_dashboard_snapshot("agent-1", now=now)

    sources.list_activities.assert_not_awaited()
    assert snapshot.degraded_sections == ["deals", "engagement"]
    assert snapshot.tasks.pending == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_snapshot_cached_unless_degraded(deal_rows, now, sources):
    cache = TTLCache(ttl_seconds=30)
    sources.list_deals.return_value = deal_rows
    sources.list_activities.side_effect = RuntimeError("activities unavailable")

    await get_dashboard_snapshot("agent-1", now=now, cache=cache)
    assert cache.get("dashboard:agent-1") is None

    sources.list_activities.side_effect = None
    first = await get_dashboard_snapshot("agent-1", now=now, cache=cache)
    second = await get_dashboard_snapshot("agent-1", now=now, cache=cache)

    assert second is first
    assert sources.list_deals.await_count == 2


@pytest.mark.unit
def test_stage_conversion_rates():
    deals = deals_from(
        create_deal_data(deal_stage="created"),
        create_deal_data(deal_stage="shared"),
        create_deal_data(deal_stage="engaged"),
        create_deal_data(deal_stage="qualified"),
    )

    rates = stage_conversion_rates(deals)

    assert rates["created_to_shared"] == 0.75
    assert rates["accessed_to_engaged"] == 1.0
    assert rates["engaged_to_qualified"] == 0.5
    assert rates["advanced_to_closed"] == 0.0


@pytest.mark.unit
def test_pipeline_analytics(deal_rows):
    data = build_pipeline_analytics(deals_from(*deal_rows))

    assert data["total_deals"] == 4
    assert data["active_deals"] == 2
    assert data["deals_by_status"]["closed-won"] == 1
    assert data["overall_conversion_rate"] == 0.25
    assert data["total_pipeline_value"] == 1450000
    assert data["health"] == "needs-attention"


@pytest.mark.unit
def test_pipeline_analytics_without_deals():
    data = build_pipeline_analytics([])

    assert data["total_deals"] == 0
    assert data["overall_conversion_rate"] == 0.0
    assert data["average_deal_cycle_days"] is None
    assert data["health"] == "unknown"


@pytest.mark.unit
def test_previous_month_start_wraps_year(now):
    assert previous_month_start(now.replace(month=1)).month == 12
    assert previous_month_start(now.replace(month=1)).year == 2023


@pytest.mark.unit
def test_performance_analytics_compares_months(now):
    deals = deals_from(
        create_deal_data(created_at="2024-12-02T10:00:00Z", deal_status="closed-won", deal_stage="closed",
                         deal_value=100000),
        create_deal_data(created_at="2024-12-03T10:00:00Z"),
        create_deal_data(created_at="2024-11-10T10:00:00Z", deal_status="closed-won", deal_stage="closed",
                         deal_value=200000),
    )

    data = build_performance_analytics(deals, now)

    assert data["this_month"]["deals_created"] == 2
    assert data["this_month"]["revenue"] == 100000
    assert data["last_month"]["deals_created"] == 1
    assert data["trends"]["deals_created"] == 1.0
    assert data["trends"]["revenue"] == -0.5
    assert data["kpis"]["total_revenue"] == 300000
    assert data["kpis"]["average_deal_size"] == 150000


@pytest.mark.unit
@pytest.mark.asyncio
async def test_analytics_degrade_to_empty(now):
    with patch("src.services.crm_dashboard.db.list_deals", new_callable=AsyncMock) as mock_deals:
        mock_deals.side_effect = RuntimeError("links unavailable")
        data = await get_deal_analytics("pipeline", agent_id="agent-1", now=now)

    assert data["total_deals"] == 0
    assert data["degraded_sections"] == ["deals"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_analytics_cached_under_dashboard_prefix(deal_rows, now):
    cache = TTLCache(ttl_seconds=30)

    with patch("src.services.crm_dashboard.db.list_deals", new_callable=AsyncMock) as mock_deals:
        mock_deals.return_value = deal_rows
        first = await get_deal_analytics("pipeline", agent_id="agent-1", now=now, cache=cache)
        second = await get_deal_analytics("pipeline", agent_id="agent-1", now=now, cache=cache)
        assert cache.invalidate_prefix("dashboard:") == 1
        await get_deal_analytics("pipeline", agent_id="agent-1", now=now, cache=cache)

    assert second is first
    assert mock_deals.await_count == 2
