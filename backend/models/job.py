"""In-memory export job records.

Jobs live only for the process lifetime. Each job is mutated exclusively by
its own processing routine (through the registry) and read by any number of
observers via ``to_snapshot()``.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from errors import JobStateError

# Status values: "pending" -> "running" -> "completed" | "failed"
PENDING = "pending"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"

TERMINAL_STATUSES = (COMPLETED, FAILED)

_ALLOWED_TRANSITIONS = {
    PENDING: (RUNNING, FAILED),
    RUNNING: (COMPLETED, FAILED),
    COMPLETED: (),
    FAILED: (),
}

# Log severities
INFO = "info"
SUCCESS = "success"
WARNING = "warning"
ERROR = "error"

LOG_TYPES = (INFO, SUCCESS, WARNING, ERROR)


def format_log_time(moment: Optional[datetime] = None) -> str:
    """Human-readable wall clock time, e.g. ``4:05:12 PM``."""
    moment = moment or datetime.now()
    return moment.strftime("%I:%M:%S %p").lstrip("0")


@dataclass(frozen=True)
class LogEntry:
    """A single log line shown to job observers. Immutable once appended."""

    timestamp: str
    message: str
    type: str = INFO

    @classmethod
    def create(cls, message: str, log_type: str = INFO) -> "LogEntry":
        if log_type not in LOG_TYPES:
            log_type = INFO
        return cls(timestamp=format_log_time(), message=message, type=log_type)

    def to_dict(self) -> dict:
        return {"timestamp": self.timestamp, "message": self.message, "type": self.type}


@dataclass(frozen=True)
class ProgressStats:
    """Progress snapshot; replaced wholesale on every update."""

    tasks_processed: int = 0
    total_tasks: int = 0
    comments_processed: int = 0
    active_requests: int = 0
    start_time: int = 0  # Epoch milliseconds

    def to_dict(self) -> dict:
        return {
            "tasksProcessed": self.tasks_processed,
            "totalTasks": self.total_tasks,
            "commentsProcessed": self.comments_processed,
            "activeRequests": self.active_requests,
            "startTime": self.start_time,
        }


@dataclass
class ExportOptions:
    """Selection filters and downstream settings chosen at submission."""

    import_to_linear: bool = False
    linear_team_id: Optional[str] = None
    linear_api_key: Optional[str] = None
    test_mode: bool = False
    skip_duplicate_check: bool = False
    only_not_done_tasks: bool = False


@dataclass
class ExportJob:
    """Unit of work: export one Productive project, optionally into Linear."""

    id: str
    api_token: str
    organization_id: str
    project_id: str
    options: ExportOptions = field(default_factory=ExportOptions)
    status: str = PENDING
    logs: List[LogEntry] = field(default_factory=list)
    progress: ProgressStats = field(default_factory=ProgressStats)
    csv_data: Optional[str] = None
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    should_stop: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition_to(self, status: str) -> None:
        """Move to ``status``, rejecting anything but forward transitions."""
        if status == self.status and status == RUNNING:
            return
        allowed = _ALLOWED_TRANSITIONS.get(self.status, ())
        if status not in allowed:
            raise JobStateError(
                f"Illegal job transition {self.status} -> {status}",
                current=self.status,
                requested=status,
            )
        self.status = status

    def age_seconds(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.created_at

    def to_snapshot(self) -> dict:
        """Shape streamed to observers and returned by the status endpoint."""
        return {
            "id": self.id,
            "status": self.status,
            "logs": [entry.to_dict() for entry in self.logs],
            "progress": self.progress.to_dict(),
            "error": self.error,
        }
