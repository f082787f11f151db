"""Typed records for jobs and external resources."""

from .job import ExportJob, ExportOptions, LogEntry, ProgressStats
from .linear import LinearIssue, LinearState, ReplicationResult, StateMapping
from .productive import Comment, CommentBundle, EnrichedComment, Person, Task, WorkflowStatus

__all__ = [
    "ExportJob",
    "ExportOptions",
    "LogEntry",
    "ProgressStats",
    "LinearIssue",
    "LinearState",
    "ReplicationResult",
    "StateMapping",
    "Comment",
    "CommentBundle",
    "EnrichedComment",
    "Person",
    "Task",
    "WorkflowStatus",
]
