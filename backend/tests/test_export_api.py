"""Tests for the export and Linear API endpoints."""

import asyncio
import re
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from conftest import make_task
from fakes import FakeProductive, bundle

VALID_BODY = {"apiToken": "secret-token", "organizationId": "org-1", "projectId": "proj-9"}


@pytest.mark.asyncio
async def test_create_export_returns_job_id(test_client, registry):
    """A valid submission creates a pending job and starts processing."""
    with patch("api.export.start_export") as mock_start:
        response = await test_client.post("/api/export", json=VALID_BODY)

    assert response.status_code == 200
    job_id = response.json()["jobId"]
    assert re.fullmatch(r"[0-9a-f]{32}", job_id)
    mock_start.assert_called_once_with(job_id)

    job = registry.get(job_id)
    assert job.status == "pending"
    assert job.project_id == "proj-9"
    assert job.options.import_to_linear is False


@pytest.mark.asyncio
async def test_linear_import_without_team_is_rejected(test_client, registry):
    """importToLinear without linearTeamId fails validation and creates no job."""
    body = dict(VALID_BODY, importToLinear=True, linearApiKey="lin_key")
    with patch("api.export.start_export") as mock_start:
        response = await test_client.post("/api/export", json=body)

    assert response.status_code == 400
    assert "linearTeamId" in response.json()["error"]
    assert len(registry) == 0
    mock_start.assert_not_called()


@pytest.mark.asyncio
async def test_linear_import_without_key_is_rejected(test_client, registry):
    body = dict(VALID_BODY, importToLinear=True, linearTeamId="team-1")
    response = await test_client.post("/api/export", json=body)

    assert response.status_code == 400
    assert "linearApiKey" in response.json()["error"]


@pytest.mark.asyncio
@pytest.mark.parametrize("missing", ["apiToken", "organizationId", "projectId"])
async def test_missing_required_field_is_rejected(test_client, registry, missing):
    body = {k: v for k, v in VALID_BODY.items() if k != missing}
    response = await test_client.post("/api/export", json=body)

    assert response.status_code == 400
    assert f"({missing})" in response.json()["error"]
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_empty_token_is_rejected(test_client, registry):
    response = await test_client.post("/api/export", json=dict(VALID_BODY, apiToken=""))
    assert response.status_code == 400
    assert response.json()["error"] == "API token is required (apiToken)"


@pytest.mark.asyncio
async def test_invalid_json_is_rejected(test_client):
    response = await test_client.post(
        "/api/export", content=b"{not json", headers={"content-type": "application/json"}
    )
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid JSON body"}


@pytest.mark.asyncio
async def test_unknown_job_endpoints_return_404(test_client):
    for path in ("/api/export/missing/status", "/api/export/missing/stream", "/api/export/missing/download"):
        response = await test_client.get(path)
        assert response.status_code == 404
        assert response.json() == {"error": "Job not found"}


@pytest.mark.asyncio
async def test_status_and_stop(test_client, registry):
    with patch("api.export.start_export"):
        job_id = (await test_client.post("/api/export", json=VALID_BODY)).json()["jobId"]

    status = await test_client.get(f"/api/export/{job_id}/status")
    assert status.status_code == 200
    assert status.json()["status"] == "pending"
    assert status.json()["progress"]["tasksProcessed"] == 0

    stop = await test_client.post(f"/api/export/{job_id}/stop")
    assert stop.json() == {"success": True}
    assert registry.get(job_id).should_stop is True

    # Stopping an unknown job is not an error
    assert (await test_client.post("/api/export/missing/stop")).json() == {"success": True}


@pytest.mark.asyncio
async def test_download_before_completion_is_rejected(test_client, registry):
    with patch("api.export.start_export"):
        job_id = (await test_client.post("/api/export", json=VALID_BODY)).json()["jobId"]

    response = await test_client.get(f"/api/export/{job_id}/download")

    assert response.status_code == 400
    assert response.json() == {"error": "Export not ready yet"}


@pytest.mark.asyncio
async def test_end_to_end_export_stream_and_download(test_client, registry):
    """Submit, follow the stream to completion, then download the CSV."""
    from services.export_worker import process_export_job

    productive = FakeProductive(
        tasks=[make_task(1, title="Alpha"), make_task(2, title="Beta, with comma")],
        comments={"1": bundle("hello")},
    )
    running = []

    def start(job_id):
        running.append(asyncio.create_task(process_export_job(job_id, registry, productive)))

    with patch("api.export.start_export", side_effect=start):
        job_id = (await test_client.post("/api/export", json=VALID_BODY)).json()["jobId"]

    stream = await test_client.get(f"/api/export/{job_id}/stream")
    assert stream.status_code == 200
    assert stream.headers["content-type"].startswith("text/event-stream")
    assert stream.text.startswith('data: {"type": "init"')
    assert '"status": "completed"' in stream.text

    await asyncio.gather(*running)
    download = await test_client.get(f"/api/export/{job_id}/download")

    assert download.status_code == 200
    assert download.headers["content-type"].startswith("text/csv")
    disposition = download.headers["content-disposition"]
    today = datetime.now(timezone.utc).date().isoformat()
    assert disposition == f'attachment; filename="export_proj-9_{today}.csv"'
    assert '"Beta, with comma"' in download.text
    assert "**Jane Doe** - hello" in download.text


@pytest.mark.asyncio
async def test_linear_test_requires_key(test_client):
    response = await test_client.post("/api/linear/test", json={})
    assert response.status_code == 400
    assert response.json()["authenticated"] is False


@pytest.mark.asyncio
async def test_linear_test_reports_viewer(test_client):
    with patch("api.linear.LinearClient.test_auth", new_callable=AsyncMock,
               return_value={"authenticated": True, "user": {"id": "u1"}}):
        response = await test_client.post("/api/linear/test", json={"linearApiKey": "lin_key"})

    assert response.status_code == 200
    assert response.json() == {"authenticated": True, "user": {"id": "u1"}}


@pytest.mark.asyncio
async def test_linear_teams(test_client):
    from errors import GraphQLError

    teams = [{"id": "t1", "name": "Engineering", "key": "ENG"}]
    with patch("api.linear.LinearClient.get_teams", new_callable=AsyncMock, return_value=teams):
        response = await test_client.post("/api/linear/teams", json={"linearApiKey": "lin_key"})
    assert response.json() == {"teams": teams}

    with patch("api.linear.LinearClient.get_teams", new_callable=AsyncMock,
               side_effect=GraphQLError("GraphQL errors: Authentication required")):
        response = await test_client.post("/api/linear/teams", json={"linearApiKey": "bad"})
    assert response.status_code == 400
    assert response.json() == {"error": "GraphQL errors: Authentication required"}
