"""In-memory export job registry.

Single process-wide instance (``job_registry``). Jobs are created by the
submission endpoint, mutated only by their own worker, read by observers
and removed by the retention sweep.
"""

import logging
import secrets
import time
from dataclasses import replace
from typing import Dict, List, Optional

from config import settings
from models.job import ERROR, INFO, SUCCESS, WARNING, ExportJob, LogEntry

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    INFO: logging.INFO,
    SUCCESS: logging.INFO,
    WARNING: logging.WARNING,
    ERROR: logging.ERROR,
}


def generate_job_id() -> str:
    """Random, collision-resistant job id (32 hex chars)."""
    return secrets.token_hex(16)


class JobRegistry:
    """Mapping from job id to ExportJob with partial-update semantics."""

    def __init__(self):
        self._jobs: Dict[str, ExportJob] = {}

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    def create(self, job: ExportJob) -> ExportJob:
        self._jobs[job.id] = job
        return job

    def get(self, job_id: str) -> Optional[ExportJob]:
        return self._jobs.get(job_id)

    def list_all(self) -> List[ExportJob]:
        return list(self._jobs.values())

    def delete(self, job_id: str) -> bool:
        return self._jobs.pop(job_id, None) is not None

    def clear(self) -> None:
        self._jobs.clear()

    def update(self, job_id: str, **updates) -> Optional[ExportJob]:
        """Shallow-merge ``updates`` into the job.

        ``status`` goes through the job's transition check. Updates to a job
        that no longer exists (e.g. swept) are ignored.
        """
        job = self._jobs.get(job_id)
        if job is None:
            return None

        status = updates.pop("status", None)
        if status is not None:
            job.transition_to(status)
        for name, value in updates.items():
            if not hasattr(job, name):
                raise AttributeError(f"ExportJob has no field {name!r}")
            setattr(job, name, value)
        return job

    def update_progress(self, job_id: str, **fields) -> None:
        """Replace progress with a copy carrying ``fields``."""
        job = self._jobs.get(job_id)
        if job is None:
            return
        job.progress = replace(job.progress, **fields)

    def increment_progress(self, job_id: str, **deltas: int) -> None:
        """Add ``deltas`` to counters; safe for concurrent sibling tasks."""
        job = self._jobs.get(job_id)
        if job is None:
            return
        current = job.progress
        job.progress = replace(
            current,
            **{name: getattr(current, name) + delta for name, delta in deltas.items()},
        )

    def append_log(self, job_id: str, message: str, log_type: str = INFO) -> Optional[LogEntry]:
        job = self._jobs.get(job_id)
        if job is None:
            return None
        entry = LogEntry.create(message, log_type)
        job.logs.append(entry)
        return entry

    def stop(self, job_id: str) -> bool:
        """Raise the cooperative stop flag. Returns False for unknown jobs."""
        job = self._jobs.get(job_id)
        if job is None:
            return False
        job.should_stop = True
        return True

    def is_stopped(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        return job is None or job.should_stop

    def sweep_expired(self, now: Optional[float] = None, ttl_seconds: Optional[float] = None) -> int:
        """Delete jobs older than the TTL or flagged stopped."""
        now = now if now is not None else time.time()
        ttl = ttl_seconds if ttl_seconds is not None else settings.job_ttl_hours * 3600
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.should_stop or job.age_seconds(now) > ttl
        ]
        for job_id in expired:
            del self._jobs[job_id]
        if expired:
            logger.info(f"Swept {len(expired)} expired export jobs ({len(self._jobs)} remaining)")
        return len(expired)


class JobLogSink:
    """Log sink bound to one job.

    Appends severity-tagged entries to the job and mirrors them to the
    module logger with a short job id prefix for correlation.
    """

    def __init__(self, registry: JobRegistry, job_id: str):
        self.registry = registry
        self.job_id = job_id

    def __call__(self, message: str, log_type: str = INFO) -> None:
        self.registry.append_log(self.job_id, message, log_type)
        logger.log(_LOG_LEVELS.get(log_type, logging.INFO), f"[{self.job_id[:8]}] {message}")


job_registry = JobRegistry()
