"""Pytest fixtures for test suite."""

import sys
from pathlib import Path

import httpx
import pytest
from httpx import AsyncClient, ASGITransport

# Add backend to path for imports
backend_path = Path(__file__).parent.parent
sys.path.insert(0, str(backend_path))

from config import settings


@pytest.fixture(autouse=True)
def fast_delays():
    """Zero out pacing delays so tests don't sleep for real."""
    originals = (
        settings.page_delay_seconds,
        settings.chunk_delay_seconds,
        settings.stream_poll_interval_seconds,
        settings.stream_close_delay_seconds,
    )
    settings.page_delay_seconds = 0
    settings.chunk_delay_seconds = 0
    settings.stream_poll_interval_seconds = 0.01
    settings.stream_close_delay_seconds = 0.01
    yield
    (
        settings.page_delay_seconds,
        settings.chunk_delay_seconds,
        settings.stream_poll_interval_seconds,
        settings.stream_close_delay_seconds,
    ) = originals


@pytest.fixture
def registry():
    """The process-wide job registry, emptied around each test."""
    from services.job_registry import job_registry

    job_registry.clear()
    yield job_registry
    job_registry.clear()


@pytest.fixture
def gate():
    """A private cooldown gate so tests never share backoff state."""
    from services.cooldown import CooldownGate

    return CooldownGate(cooldown_seconds=120)


@pytest.fixture
async def test_client(registry):
    """Create a test HTTP client for API testing."""
    from main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def make_task(task_id, title="Task", description="<p>Details</p>", status_id=None, closed=False):
    """Productive task resource as returned by the API."""
    relationships = {}
    if status_id:
        relationships["workflow_status"] = {"data": {"type": "workflow_statuses", "id": status_id}}
    return {
        "id": str(task_id),
        "type": "tasks",
        "attributes": {
            "title": title,
            "description": description,
            "closed": closed,
            "task_number": str(task_id),
            "created_at": "2024-01-10T09:00:00.000+01:00",
            "type_id": 1,
        },
        "relationships": relationships,
    }


def make_comment(comment_id, body, created_at, creator_id=None):
    relationships = {}
    if creator_id:
        relationships["creator"] = {"data": {"type": "people", "id": creator_id}}
    return {
        "id": str(comment_id),
        "type": "comments",
        "attributes": {"body": body, "created_at": created_at},
        "relationships": relationships,
    }


def page_response(items, total_pages):
    return httpx.Response(200, json={"data": items, "meta": {"total_pages": total_pages}})


@pytest.fixture
def sample_tasks():
    return [make_task(i, title=f"Task {i}") for i in range(1, 8)]


@pytest.fixture
def sample_comments():
    """Comments deliberately out of chronological order."""
    return [
        make_comment("c2", "<p>Second</p>", "2024-02-02T10:00:00Z", creator_id="p1"),
        make_comment("c1", "<p>First <a href=\"https://example.com/brief.pdf\">brief</a></p>", "2024-02-01T10:00:00Z", creator_id="p2"),
        make_comment("c3", "<p>Third</p>", "2024-02-03T10:00:00Z", creator_id="p1"),
    ]
