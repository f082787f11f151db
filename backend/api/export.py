"""Export job API endpoints."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Set

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from errors import DataValidationError
from models.job import COMPLETED, ExportJob, ExportOptions
from services.export_worker import process_export_job
from services.job_registry import generate_job_id, job_registry
from services.progress_stream import stream_job_events
from services.text_format import mask_secret

logger = logging.getLogger(__name__)

router = APIRouter()

# Strong references so running jobs are not garbage collected
_background_tasks: Set[asyncio.Task] = set()

FIELD_LABELS = {
    "apiToken": "API token",
    "organizationId": "Organization ID",
    "projectId": "Project ID",
}


class ExportRequest(BaseModel):
    """Body of POST /api/export."""

    model_config = ConfigDict(populate_by_name=True)

    api_token: str = Field(alias="apiToken", min_length=1)
    organization_id: str = Field(alias="organizationId", min_length=1)
    project_id: str = Field(alias="projectId", min_length=1)
    import_to_linear: bool = Field(False, alias="importToLinear")
    linear_team_id: Optional[str] = Field(None, alias="linearTeamId")
    linear_api_key: Optional[str] = Field(None, alias="linearApiKey")
    test_mode: bool = Field(False, alias="testMode")
    skip_duplicate_check: bool = Field(False, alias="skipDuplicateCheck")
    only_not_done_tasks: bool = Field(False, alias="onlyNotDoneTasks")

    def check_linear_settings(self) -> None:
        if not self.import_to_linear:
            return
        if not self.linear_api_key:
            raise DataValidationError(
                "linearApiKey is required when importToLinear is enabled", field="linearApiKey"
            )
        if not self.linear_team_id:
            raise DataValidationError(
                "linearTeamId is required when importToLinear is enabled", field="linearTeamId"
            )


def validation_message(error: ValidationError) -> str:
    first = error.errors()[0]
    field = ".".join(str(part) for part in first.get("loc", ())) or "body"
    label = FIELD_LABELS.get(field)
    if label and first.get("type") in ("missing", "string_too_short"):
        return f"{label} is required ({field})"
    return f"{field}: {first.get('msg', 'Invalid value')}"


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _log_task_result(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.error(f"Export task crashed: {task.exception()}")


def start_export(job_id: str) -> asyncio.Task:
    task = asyncio.create_task(process_export_job(job_id))
    _background_tasks.add(task)
    task.add_done_callback(_log_task_result)
    return task


@router.post("")
async def create_export(request: Request):
    """Create an export job and start processing it in the background."""
    try:
        body = await request.json()
    except ValueError:
        return error_response(400, "Invalid JSON body")
    if not isinstance(body, dict):
        return error_response(400, "Invalid request")

    try:
        data = ExportRequest.model_validate(body)
        data.check_linear_settings()
    except ValidationError as e:
        return error_response(400, validation_message(e))
    except DataValidationError as e:
        return error_response(400, str(e))

    logger.info(
        f"Export request received: project={data.project_id} "
        f"token={mask_secret(data.api_token)} importToLinear={data.import_to_linear} "
        f"linearApiKey={mask_secret(data.linear_api_key)} linearTeamId={data.linear_team_id}"
    )

    job = ExportJob(
        id=generate_job_id(),
        api_token=data.api_token,
        organization_id=data.organization_id,
        project_id=data.project_id,
        options=ExportOptions(
            import_to_linear=data.import_to_linear,
            linear_team_id=data.linear_team_id,
            linear_api_key=data.linear_api_key,
            test_mode=data.test_mode,
            skip_duplicate_check=data.skip_duplicate_check,
            only_not_done_tasks=data.only_not_done_tasks,
        ),
    )
    job_registry.create(job)
    start_export(job.id)

    return {"jobId": job.id}


@router.get("/{job_id}/stream")
async def stream_export(job_id: str):
    """Server-sent events with job snapshots every poll interval."""
    if job_registry.get(job_id) is None:
        return error_response(404, "Job not found")

    return StreamingResponse(
        stream_job_events(job_id, job_registry),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.get("/{job_id}/status")
async def export_status(job_id: str):
    """Polling fallback for the event stream."""
    job = job_registry.get(job_id)
    if job is None:
        return error_response(404, "Job not found")
    return job.to_snapshot()


@router.post("/{job_id}/stop")
async def stop_export(job_id: str):
    """Raise the job's cooperative stop flag."""
    if job_registry.stop(job_id):
        logger.info(f"[{job_id[:8]}] Stop requested")
    return {"success": True}


@router.get("/{job_id}/download")
async def download_export(job_id: str):
    """Download the finished CSV."""
    job = job_registry.get(job_id)
    if job is None:
        return error_response(404, "Job not found")
    if job.status != COMPLETED or job.csv_data is None:
        return error_response(400, "Export not ready yet")

    filename = f"export_{job.project_id}_{datetime.now(timezone.utc).date().isoformat()}.csv"
    return Response(
        content=job.csv_data,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
