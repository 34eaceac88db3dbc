"""Tests for the CRM analytics endpoint."""

import pytest
from unittest.mock import AsyncMock, patch
from api.crm.analytics import handler
from src.services.crm_dashboard import DashboardSnapshot
from tests.utils.helpers import call_handler


@pytest.fixture(autouse=True)
def clear_cache():
    handler.cache.clear()
    yield
    handler.cache.clear()


@pytest.mark.unit
def test_dashboard_is_default(now):
    with patch("api.crm.analytics.get_dashboard_snapshot", new_callable=AsyncMock) as mock_snapshot:
        mock_snapshot.return_value = DashboardSnapshot(generated_at=now, degraded_sections=["engagement"])
        status, payload, _ = call_handler(handler, "GET", "/api/crm/analytics?agentId=agent-1")

    assert status == 200
    data = payload["data"]
    assert data["deals"]["total"] == 0
    assert data["engagement"]["views"] == 0
    assert data["degraded_sections"] == ["engagement"]
    assert mock_snapshot.call_args[0][0] == "agent-1"


@pytest.mark.unit
@pytest.mark.parametrize("kind", ["pipeline", "performance"])
def test_deal_analytics(kind):
    with patch("api.crm.analytics.get_deal_analytics", new_callable=AsyncMock) as mock_analytics:
        mock_analytics.return_value = {"total_deals": 3, "degraded_sections": []}
        status, payload, _ = call_handler(handler, "GET", f"/api/crm/analytics?type={kind}")

    assert status == 200
    assert payload["data"]["total_deals"] == 3
    assert mock_analytics.call_args[0] == (kind, None)


@pytest.mark.unit
def test_unknown_type_rejected():
    status, payload, _ = call_handler(handler, "GET", "/api/crm/analytics?type=forecast")

    assert status == 400
    assert payload == {"success": False, "error": "Invalid analytics type"}


@pytest.mark.unit
def test_unexpected_failure_is_500():
    with patch("api.crm.analytics.get_dashboard_snapshot", new_callable=AsyncMock) as mock_snapshot:
        mock_snapshot.side_effect = RuntimeError("boom")
        status, payload, _ = call_handler(handler, "GET", "/api/crm/analytics")

    assert status == 500
    assert payload["error"] == "Failed to fetch analytics"
