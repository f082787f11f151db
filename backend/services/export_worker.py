"""Export job processing: fetch, enrich, optionally replicate, build CSV.

Tasks are processed in fixed-width chunks. Every task in a chunk runs
concurrently and the whole chunk settles before the next one starts, which
bounds the load on both APIs and keeps progress accounting simple:

    fetch tasks -> pre-filter -> [chunk: enrich + replicate each task]
                -> archive finished issues -> progress -> next chunk
                -> CSV -> completed

Only a failure of the primary task fetch fails the job. Per-task errors are
logged and the task continues with whatever data was gathered.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional

import httpx

from config import settings
from errors import ExporterError, JobStoppedError
from models.job import COMPLETED, ERROR, FAILED, INFO, RUNNING, SUCCESS, WARNING
from models.linear import LinearState, ReplicationResult
from models.productive import CommentBundle, Task, WorkflowStatus
from services.attachments import attach_url, discover_attachment_urls
from services.csv_export import ExportRecord, generate_csv
from services.job_registry import JobLogSink, JobRegistry, job_registry
from services.linear_client import LinearClient
from services.productive_client import ProductiveClient
from services.state_mapping import is_task_done, map_state, task_status_name
from services.text_format import html_to_plain_text, task_origin_url

logger = logging.getLogger(__name__)

NO_TASKS_MESSAGE = "No tasks found for this project"
STOPPED_MESSAGE = "Export stopped by user"


def build_issue_description(description_text: str, origin_url: str) -> str:
    """Issue body: task description plus the origin link used for de-duplication."""
    footer = f"Imported from Productive: {origin_url}"
    if description_text:
        return f"{description_text}\n\n---\n{footer}"
    return footer


def chunked(items: List, size: int) -> List[List]:
    return [items[index:index + size] for index in range(0, len(items), size)]


class ExportPipeline:
    """Runs one export job end to end."""

    def __init__(
        self,
        job_id: str,
        registry: JobRegistry,
        productive: ProductiveClient,
        linear: Optional[LinearClient] = None,
    ):
        self.job_id = job_id
        self.registry = registry
        self.productive = productive
        self.linear = linear
        self.log = JobLogSink(registry, job_id)
        self.concurrency = settings.export_concurrency
        self.statuses: Dict[str, WorkflowStatus] = {}
        self.team_states: List[LinearState] = []
        self._comment_cache: Dict[str, CommentBundle] = {}

        job = registry.get(job_id)
        self.organization_id = job.organization_id
        self.project_id = job.project_id
        self.options = job.options

    # ========== Setup ==========

    async def _load_workflow_statuses(self) -> None:
        try:
            self.statuses = await self.productive.fetch_workflow_statuses(self.log)
        except ExporterError as e:
            self.log(f"Could not load workflow statuses, using task closed flags: {e}", WARNING)

    async def _load_team_states(self) -> None:
        try:
            self.team_states = await self.linear.get_team_states()
            self.log(f"Loaded {len(self.team_states)} Linear workflow states", INFO)
        except (ExporterError, httpx.HTTPError) as e:
            self.log(f"Could not load Linear workflow states, issues keep the team default: {e}", WARNING)

    # ========== Pre-filters ==========

    def _filter_not_done(self, tasks: List[Task]) -> List[Task]:
        remaining = [task for task in tasks if not is_task_done(task, self.statuses)]
        self.log(
            f"Skipping {len(tasks) - len(remaining)} done/closed tasks, "
            f"{len(remaining)} tasks remaining",
            INFO,
        )
        return remaining

    async def _select_test_sample(self, tasks: List[Task]) -> List[Task]:
        """First N tasks that have a description and at least one comment."""
        size = settings.test_mode_sample_size
        sample = []
        for task in tasks:
            if len(sample) >= size:
                break
            if not task.has_description:
                continue
            try:
                bundle = await self.productive.fetch_task_comments(task.id, self.log)
            except ExporterError as e:
                self.log(f"Skipping task {task.id} for test sample: {e}", WARNING)
                continue
            if bundle.count:
                self._comment_cache[task.id] = bundle
                sample.append(task)
        self.log(
            f"Test mode: selected {len(sample)} tasks with a description and comments",
            INFO,
        )
        return sample

    # ========== Per-task work ==========

    async def _replicate(self, record: ExportRecord) -> ReplicationResult:
        task = record.task
        origin_url = task_origin_url(self.organization_id, task.id)
        mapping = map_state(
            task_status_name(task, self.statuses),
            self.team_states,
            done=is_task_done(task, self.statuses),
        )

        issue = await self.linear.create_or_replace(
            title=task.title or "Untitled",
            description=build_issue_description(record.description_text, origin_url),
            state_id=mapping.state_id,
            origin_url=origin_url,
            skip_duplicate_check=self.options.skip_duplicate_check,
        )
        result = ReplicationResult(issue=issue, archive=mapping.archive)
        if issue is None:
            self.log(f"Linear did not create an issue for task {task.id}", WARNING)
            return result

        bodies = [comment.display for comment in record.comments.comments]
        if bodies:
            try:
                outcomes = await self.linear.add_comments(issue.id, bodies)
                result.comments_added = sum(1 for ok in outcomes if ok)
            except (ExporterError, httpx.HTTPError) as e:
                self.log(f"Failed to add comments to {issue.identifier or issue.id}: {e}", WARNING)

        urls = discover_attachment_urls(
            record.description_text,
            [comment.body_text for comment in record.comments.comments],
        )
        for url in urls:
            stage = await attach_url(self.productive, self.linear, issue.id, url, self.log)
            if stage != "failed":
                result.attachments_added += 1

        self.log(
            f"Created Linear issue {issue.identifier or issue.id} for task {task.id} "
            f"({result.comments_added} comments, {result.attachments_added} attachments)",
            SUCCESS,
        )
        return result

    async def process_task(self, task: Task) -> ExportRecord:
        """Enrich (and replicate) one task. Never raises."""
        record = ExportRecord(task=task)
        try:
            if self.registry.is_stopped(self.job_id):
                raise JobStoppedError(self.job_id)

            record.description_text = html_to_plain_text(task.description)
            if task.id in self._comment_cache:
                record.comments = self._comment_cache.pop(task.id)
            else:
                record.comments = await self.productive.fetch_task_comments(task.id, self.log)
            self.registry.increment_progress(self.job_id, comments_processed=record.comments.count)

            if self.linear is not None:
                record.replication = await self._replicate(record)
        except JobStoppedError as e:
            self.log(f"Task {task.id} not processed: {e}", WARNING)
        except Exception as e:
            self.log(f"Failed to process task {task.id} ({task.title}): {e}", ERROR)
        return record

    async def _archive_finished(self, records: List[ExportRecord]) -> None:
        issue_ids = [
            record.replication.issue.id
            for record in records
            if record.replication and record.replication.issue and record.replication.archive
        ]
        if not issue_ids:
            return
        try:
            results = await self.linear.archive_issues(issue_ids)
        except (ExporterError, httpx.HTTPError) as e:
            self.log(f"Failed to archive {len(issue_ids)} finished issues: {e}", ERROR)
            return
        archived = sum(1 for ok in results if ok)
        self.log(
            f"Archived {archived}/{len(issue_ids)} issues for finished tasks",
            SUCCESS if archived == len(issue_ids) else WARNING,
        )

    async def process_chunk(self, chunk: List[Task]) -> List[ExportRecord]:
        self.registry.update_progress(self.job_id, active_requests=len(chunk))
        records = await asyncio.gather(*(self.process_task(task) for task in chunk))
        if self.linear is not None:
            await self._archive_finished(records)
        self.registry.increment_progress(self.job_id, tasks_processed=len(chunk))
        self.registry.update_progress(self.job_id, active_requests=0)
        return list(records)

    # ========== Job ==========

    async def run(self) -> None:
        self.registry.update(self.job_id, status=RUNNING)
        start_time = time.time()
        self.registry.update_progress(self.job_id, start_time=int(start_time * 1000))
        self.log("Starting export process...", INFO)

        self.log(f"Fetching tasks for project {self.project_id}...", INFO)
        tasks = await self.productive.fetch_project_tasks(self.project_id, self.log)
        self.registry.update_progress(self.job_id, total_tasks=len(tasks))
        self.log(f"Total tasks found: {len(tasks)}", SUCCESS)

        if not tasks:
            self.log(NO_TASKS_MESSAGE, ERROR)
            self.registry.update(self.job_id, status=FAILED, error=NO_TASKS_MESSAGE)
            return

        await self._load_workflow_statuses()
        if self.linear is not None:
            await self._load_team_states()

        if self.options.only_not_done_tasks:
            tasks = self._filter_not_done(tasks)
        if self.options.test_mode:
            tasks = await self._select_test_sample(tasks)
        self.registry.update_progress(self.job_id, total_tasks=len(tasks))

        self.log(
            f"Processing {len(tasks)} tasks ({self.concurrency} concurrent requests)...",
            INFO,
        )
        records: List[ExportRecord] = []
        chunks = chunked(tasks, self.concurrency)
        for index, chunk in enumerate(chunks):
            if self.registry.is_stopped(self.job_id):
                self.log("Stop requested, no further tasks will be processed", WARNING)
                break

            records.extend(await self.process_chunk(chunk))
            percent = round(len(records) / len(tasks) * 100)
            self.log(f"Progress: {len(records)}/{len(tasks)} tasks processed ({percent}%)", SUCCESS)

            if index < len(chunks) - 1:
                await asyncio.sleep(settings.chunk_delay_seconds)

        job = self.registry.get(self.job_id)
        if job is None:
            logger.info(f"[{self.job_id[:8]}] Job removed while processing, discarding results")
            return
        if job.should_stop:
            self.log(STOPPED_MESSAGE, WARNING)
            self.registry.update(self.job_id, status=FAILED, error=STOPPED_MESSAGE)
            return

        elapsed = time.time() - start_time
        self.log(f"Finished processing all tasks in {elapsed:.1f}s!", SUCCESS)

        self.log("Generating CSV file...", INFO)
        csv_data = generate_csv(records, self.statuses)
        self.log("CSV ready for download!", SUCCESS)
        self.registry.update(self.job_id, status=COMPLETED, csv_data=csv_data)


async def process_export_job(
    job_id: str,
    registry: Optional[JobRegistry] = None,
    productive: Optional[ProductiveClient] = None,
    linear: Optional[LinearClient] = None,
) -> None:
    """Run an export job to its terminal state. Fatal errors fail the job."""
    registry = registry or job_registry
    job = registry.get(job_id)
    if job is None:
        logger.warning(f"Export job {job_id} not found")
        return

    owned = []
    if productive is None:
        productive = ProductiveClient(job.api_token, job.organization_id)
        owned.append(productive)
    if linear is None and job.options.import_to_linear:
        linear = LinearClient(job.options.linear_api_key, job.options.linear_team_id)
        owned.append(linear)

    try:
        await ExportPipeline(job_id, registry, productive, linear).run()
    except Exception as e:
        message = (e.message if isinstance(e, ExporterError) else str(e)) or "Unknown error occurred"
        JobLogSink(registry, job_id)(f"Export failed: {message}", ERROR)
        current = registry.get(job_id)
        if current is not None and not current.is_terminal:
            registry.update(job_id, status=FAILED, error=message)
    finally:
        for client in owned:
            await client.close()
