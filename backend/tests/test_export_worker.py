"""Tests for the export pipeline (batch processing, filters, replication)."""

import csv
import io
from unittest.mock import AsyncMock, patch

import pytest

from conftest import make_task
from errors import FetchExhaustedError, GraphQLError
from fakes import FakeLinear, FakeProductive, RecordingRegistry, bundle
from models.job import COMPLETED, FAILED, ExportJob, ExportOptions
from models.productive import WorkflowStatus
from services.export_worker import (
    NO_TASKS_MESSAGE,
    STOPPED_MESSAGE,
    build_issue_description,
    chunked,
    process_export_job,
)
from services.job_registry import generate_job_id


def create_job(registry, **options):
    job = ExportJob(
        id=generate_job_id(),
        api_token="token",
        organization_id="org-1",
        project_id="proj-9",
        options=ExportOptions(**options),
    )
    return registry.create(job)


def csv_rows(job):
    rows = list(csv.reader(io.StringIO(job.csv_data)))
    header = rows[0]
    return [dict(zip(header, row)) for row in rows[1:]]


def messages(job, log_type=None):
    return [entry.message for entry in job.logs if log_type is None or entry.type == log_type]


def twelve_tasks():
    return [make_task(i, title=f"Task {i}") for i in range(1, 13)]


def test_chunked():
    assert chunked(list(range(12)), 5) == [[0, 1, 2, 3, 4], [5, 6, 7, 8, 9], [10, 11]]
    assert chunked([], 5) == []


def test_issue_description_footer():
    url = "https://app.productive.io/org-1/tasks/1"
    assert build_issue_description("Body", url) == f"Body\n\n---\nImported from Productive: {url}"
    assert build_issue_description("", url) == f"Imported from Productive: {url}"


@pytest.mark.asyncio
async def test_active_requests_published_per_chunk():
    """12 tasks at width 5: 5, 0, 5, 0, 2, 0."""
    registry = RecordingRegistry()
    job = create_job(registry)

    await process_export_job(job.id, registry, FakeProductive(tasks=twelve_tasks()))

    assert registry.active_values == [5, 0, 5, 0, 2, 0]
    assert job.status == COMPLETED
    assert job.progress.active_requests == 0


@pytest.mark.asyncio
async def test_progress_is_monotonic_and_complete():
    registry = RecordingRegistry()
    job = create_job(registry)
    comments = {"1": bundle("a", "b"), "7": bundle("c"), "12": bundle("d", "e", "f")}

    await process_export_job(job.id, registry, FakeProductive(tasks=twelve_tasks(), comments=comments))

    processed = [snapshot.tasks_processed for snapshot in registry.snapshots]
    assert processed == sorted(processed)
    assert job.progress.tasks_processed == job.progress.total_tasks == 12
    assert job.progress.comments_processed == 6
    assert job.progress.start_time > 0
    assert "Progress: 12/12 tasks processed (100%)" in messages(job)


@pytest.mark.asyncio
async def test_fatal_task_fetch_fails_job():
    registry = RecordingRegistry()
    job = create_job(registry)
    error = FetchExhaustedError(
        "API Error after 5 retries: 500 Internal Server Error", resource="tasks", page=1, status_code=500
    )

    await process_export_job(job.id, registry, FakeProductive(fetch_error=error))

    assert job.status == FAILED
    assert job.error == "API Error after 5 retries: 500 Internal Server Error"
    assert job.csv_data is None
    assert "Export failed: API Error after 5 retries: 500 Internal Server Error" in messages(job, "error")


@pytest.mark.asyncio
async def test_no_tasks_fails_job():
    registry = RecordingRegistry()
    job = create_job(registry)

    await process_export_job(job.id, registry, FakeProductive(tasks=[]))

    assert job.status == FAILED
    assert job.error == NO_TASKS_MESSAGE


@pytest.mark.asyncio
async def test_item_failure_is_isolated():
    registry = RecordingRegistry()
    job = create_job(registry)
    productive = FakeProductive(tasks=twelve_tasks(), fail_tasks={"3"})

    await process_export_job(job.id, registry, productive)

    assert job.status == COMPLETED
    rows = csv_rows(job)
    assert len(rows) == 12
    assert rows[2]["Title"] == "Task 3"
    assert rows[2]["Comments"] == ""
    assert any("Failed to process task 3" in m for m in messages(job, "error"))
    assert job.progress.tasks_processed == 12


@pytest.mark.asyncio
async def test_stop_finishes_chunk_then_fails_job():
    registry = RecordingRegistry()
    job = create_job(registry)
    productive = FakeProductive(tasks=twelve_tasks())
    productive.on_comments = lambda task_id: registry.stop(job.id)

    await process_export_job(job.id, registry, productive)

    assert job.status == FAILED
    assert job.error == STOPPED_MESSAGE
    assert job.csv_data is None
    # The first task had already started; its chunk siblings saw the flag
    assert productive.comment_calls == ["1"]
    assert job.progress.tasks_processed == 5
    assert len([m for m in messages(job, "warning") if "not processed" in m]) == 4


@pytest.mark.asyncio
async def test_job_swept_mid_run_is_discarded():
    registry = RecordingRegistry()
    job = create_job(registry)
    productive = FakeProductive(tasks=twelve_tasks())
    productive.on_comments = lambda task_id: registry.delete(job.id)

    await process_export_job(job.id, registry, productive)

    assert job.id not in registry
    assert job.csv_data is None


@pytest.mark.asyncio
async def test_only_not_done_tasks_filter():
    registry = RecordingRegistry()
    job = create_job(registry, only_not_done_tasks=True)
    tasks = [
        make_task(1, title="Open one", status_id="s-open"),
        make_task(2, title="Finished", status_id="s-done"),
        make_task(3, title="Closed flag", closed=True),
        make_task(4, title="Cancelled", status_id="s-cancel"),
        make_task(5, title="Open two"),
    ]
    statuses = {"s-open": "In Progress", "s-done": "Done", "s-cancel": "Canceled"}

    await process_export_job(job.id, registry, FakeProductive(tasks=tasks, statuses=statuses))

    assert job.status == COMPLETED
    assert [row["Title"] for row in csv_rows(job)] == ["Open one", "Open two"]
    assert job.progress.total_tasks == 2
    assert "Skipping 3 done/closed tasks, 2 tasks remaining" in messages(job)


@pytest.mark.asyncio
async def test_filter_leaving_nothing_completes_with_header_only():
    registry = RecordingRegistry()
    job = create_job(registry, only_not_done_tasks=True)

    await process_export_job(job.id, registry, FakeProductive(tasks=[make_task(1, closed=True)]))

    assert job.status == COMPLETED
    assert csv_rows(job) == []
    assert job.progress.total_tasks == 0


@pytest.mark.asyncio
async def test_test_mode_samples_tasks_with_description_and_comments():
    registry = RecordingRegistry()
    job = create_job(registry, test_mode=True)
    tasks = [
        make_task(1, description=""),
        make_task(2),
        make_task(3),
        make_task(4),
        make_task(5),
    ]
    comments = {"3": bundle("x"), "4": bundle("y"), "5": bundle("z")}
    productive = FakeProductive(tasks=tasks, comments=comments)

    with patch("services.export_worker.settings.test_mode_sample_size", 2):
        await process_export_job(job.id, registry, productive)

    assert job.status == COMPLETED
    assert [row["Task number"] for row in csv_rows(job)] == ["3", "4"]
    # Sampled bundles are reused, not fetched again
    assert productive.comment_calls == ["2", "3", "4"]
    assert job.progress.total_tasks == 2


@pytest.mark.asyncio
async def test_replication_flow():
    registry = RecordingRegistry()
    job = create_job(registry, import_to_linear=True, linear_team_id="team-1", linear_api_key="lin_key")
    tasks = [
        make_task(1, title="Build API", status_id="s-prog",
                  description='<p>Brief: <a href="https://x.com/brief.pdf">https://x.com/brief.pdf</a></p>'),
        make_task(2, title="Old work", status_id="s-done"),
    ]
    statuses = {"s-prog": "In Progress", "s-done": "Done"}
    productive = FakeProductive(tasks=tasks, statuses=statuses, comments={"1": bundle("first", "second")})
    linear = FakeLinear()

    await process_export_job(job.id, registry, productive, linear)

    assert job.status == COMPLETED
    created = {entry["title"]: entry for entry in linear.created}
    build = created["Build API"]
    assert build["state_id"] == "s-progress"
    assert build["origin_url"] == "https://app.productive.io/org-1/tasks/1"
    assert build["description"] == (
        "Brief: https://x.com/brief.pdf\n\n---\n"
        "Imported from Productive: https://app.productive.io/org-1/tasks/1"
    )
    assert build["skip_duplicate_check"] is False

    build_issue = build["issue"]
    assert linear.comments[build_issue.id] == ["**Jane Doe** - first", "**Jane Doe** - second"]
    assert linear.uploads == [(build_issue.id, "brief.pdf")]

    old_issue = created["Old work"]["issue"]
    assert created["Old work"]["state_id"] is None
    assert linear.archived == [[old_issue.id]]

    issues = {row["Title"]: row["Linear issue"] for row in csv_rows(job)}
    assert issues == {"Build API": build_issue.identifier, "Old work": old_issue.identifier}


@pytest.mark.asyncio
async def test_replication_failure_is_isolated():
    registry = RecordingRegistry()
    job = create_job(registry, import_to_linear=True, linear_team_id="team-1", linear_api_key="lin_key")
    tasks = [make_task(1, title="Good"), make_task(2, title="Bad")]
    linear = FakeLinear(fail_titles={"Bad"})

    await process_export_job(job.id, registry, FakeProductive(tasks=tasks), linear)

    assert job.status == COMPLETED
    issues = {row["Title"]: row["Linear issue"] for row in csv_rows(job)}
    assert issues["Good"] == "ENG-1"
    assert issues["Bad"] == ""
    assert any("Failed to process task 2" in m for m in messages(job, "error"))


@pytest.mark.asyncio
async def test_team_state_failure_degrades():
    registry = RecordingRegistry()
    job = create_job(registry, import_to_linear=True, linear_team_id="team-1", linear_api_key="lin_key")
    linear = FakeLinear()
    linear.get_team_states = AsyncMock(side_effect=GraphQLError("Team not found"))

    await process_export_job(job.id, registry, FakeProductive(tasks=[make_task(1)]), linear)

    assert job.status == COMPLETED
    assert linear.created[0]["state_id"] is None
    assert any("Could not load Linear workflow states" in m for m in messages(job, "warning"))


@pytest.mark.asyncio
async def test_missing_job_is_ignored():
    registry = RecordingRegistry()
    productive = FakeProductive(tasks=twelve_tasks())

    await process_export_job("does-not-exist", registry, productive)

    assert productive.comment_calls == []


@pytest.mark.asyncio
async def test_closed_category_status_is_archived():
    registry = RecordingRegistry()
    job = create_job(registry, import_to_linear=True, linear_team_id="team-1", linear_api_key="lin_key")
    statuses = {"s-ship": WorkflowStatus(id="s-ship", name="Shipped", category_id=3)}
    productive = FakeProductive(tasks=[make_task(1, title="Released", status_id="s-ship")], statuses=statuses)
    linear = FakeLinear()

    await process_export_job(job.id, registry, productive, linear)

    assert job.status == COMPLETED
    released = linear.created[0]
    assert released["state_id"] is None
    assert linear.archived == [[released["issue"].id]]
