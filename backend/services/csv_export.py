"""CSV export of processed tasks."""

import csv
import io
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from models.linear import LinearIssue, ReplicationResult
from models.productive import CommentBundle, Task, WorkflowStatus
from services.state_mapping import task_status_name

CSV_HEADERS = [
    "Title",
    "Task list",
    "Status",
    "Due date",
    "Assignee",
    "Last activity",
    "Creator",
    "Date",
    "Date closed",
    "Date created",
    "Dependencies",
    "Description",
    "Followers",
    "Last actor",
    "Overdue",
    "Parent task",
    "Planned date",
    "Pricing type",
    "Private",
    "Repeat schedule",
    "Start date",
    "State",
    "Workflow status",
    "Subtasks count",
    "Tags",
    "Task number",
    "Visibility",
    "Todos",
    "Type",
    "Comments",
    "Linear issue",
]


@dataclass
class ExportRecord:
    """One processed task as it leaves the batch processor."""

    task: Task
    comments: CommentBundle = field(default_factory=CommentBundle)
    description_text: str = ""
    replication: Optional[ReplicationResult] = None

    @property
    def issue(self) -> Optional[LinearIssue]:
        return self.replication.issue if self.replication else None


def task_row(
    record: ExportRecord,
    statuses: Optional[Dict[str, WorkflowStatus]] = None,
    now: Optional[datetime] = None,
) -> List[str]:
    task = record.task
    status_name = task_status_name(task, statuses) if task.workflow_status_id else ""
    comments = "\n\n".join(c.display for c in record.comments.comments)
    return [
        task.title,
        task.task_list_id or "",
        status_name or task.workflow_status_id or "",
        task.due_date or "",
        task.assignee_id or "",
        task.updated_at or "",
        task.creator_id or "",
        task.updated_at or "",
        task.closed_at or "",
        task.created_at or "",
        "",
        record.description_text,
        "",
        task.last_actor_id or "",
        "Yes" if task.is_overdue(now) else "No",
        task.parent_task_id or "",
        "",
        "",
        "",
        task.repeat_schedule_id or "",
        task.start_date or "",
        "Closed" if task.closed else "Open",
        task.workflow_status_id or "",
        str(task.subtask_count or 0),
        "; ".join(task.tag_list),
        str(task.task_number) if task.task_number is not None else "",
        "Private" if task.private else "Public",
        f"{task.open_todo_count or 0}/{task.todo_count or 0}",
        "Task" if task.type_id == 1 else "Milestone",
        comments,
        (record.issue.identifier or record.issue.id) if record.issue else "",
    ]


def generate_csv(
    records: List[ExportRecord],
    statuses: Optional[Dict[str, WorkflowStatus]] = None,
    now: Optional[datetime] = None,
) -> str:
    """Serialize records with RFC 4180 quoting (comma, quote, newline)."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n", quoting=csv.QUOTE_MINIMAL)
    writer.writerow(CSV_HEADERS)
    for record in records:
        writer.writerow(task_row(record, statuses, now))
    return buffer.getvalue()
