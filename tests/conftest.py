"""Shared pytest fixtures and configuration."""

import os
import pytest
from unittest.mock import MagicMock
from datetime import datetime, timezone
from freezegun import freeze_time

# Set test environment variables
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-key")
os.environ.setdefault("LOG_FORMAT", "text")

from tests.utils.helpers import make_query_client  # noqa: E402
from tests.utils.factories import (  # noqa: E402
    create_activity_data,
    create_deal_data,
    create_task_data,
)

FROZEN_NOW = "2024-12-09 12:00:00"


@pytest.fixture
def now() -> datetime:
    """Reference time shared by scoring and dashboard tests."""
    return datetime(2024, 12, 9, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def mock_supabase_client():
    """Mock Supabase client whose query chains return no rows."""
    return make_query_client([])


@pytest.fixture
def mock_supabase_factory():
    """Build a mock Supabase client returning the given rows."""
    return make_query_client


@pytest.fixture
def sample_deal(now):
    return create_deal_data(deal_id="link-1", agent_id="agent-1", code="abc123")


@pytest.fixture
def sample_activities(now):
    """[view, view, detail, like] all within the last day."""
    return [
        create_activity_data("link-1", "view", now, hours_ago=5),
        create_activity_data("link-1", "view", now, hours_ago=4),
        create_activity_data("link-1", "detail", now, hours_ago=3),
        create_activity_data("link-1", "like", now, hours_ago=2),
    ]


@pytest.fixture
def sample_task(now):
    return create_task_data(deal_id="link-1", agent_id="agent-1")


@pytest.fixture
def freeze_time_fixture():
    """Fixture for freezing time in tests."""
    with freeze_time(FROZEN_NOW) as frozen_time:
        yield frozen_time


@pytest.fixture
def unused_client():
    """A Supabase client that fails the test if any query is built."""
    client = MagicMock()
    client.table.side_effect = AssertionError("datastore should not be queried")
    return client
