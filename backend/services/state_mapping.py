"""Workflow state heuristics.

``is_done_status`` decides whether a Productive status name means the task
is finished (done/closed/cancelled family). It is approximate by nature:
custom status names can be misclassified either way.

``map_state`` turns a source status into a Linear target: a team state id
picked by bucket keywords, or an archive directive for finished tasks.
"""

from typing import Iterable, List, Optional

from models.linear import LinearState, StateMapping
from models.productive import Task, WorkflowStatus

DONE_VOCABULARY = (
    "done",
    "closed",
    "cancelled",
    "canceled",
    "complete",
    "completed",
    "finished",
    "resolved",
    "archived",
)

# Max length difference tolerated when a vocabulary word is contained in the name
FUZZY_LENGTH_TOLERANCE = 3

BACKLOG = "backlog"
IN_PROGRESS = "in_progress"
IN_REVIEW = "in_review"
DONE = "done"

BUCKET_KEYWORDS = {
    IN_REVIEW: ("in review", "review", "qa", "testing", "verify", "approval"),
    IN_PROGRESS: ("in progress", "progress", "doing", "started", "active", "working", "development"),
    DONE: ("done", "complete", "completed", "closed", "finished", "resolved"),
    BACKLOG: ("backlog", "todo", "to do", "not started", "open", "new"),
}

# Checked in this order; review before progress so "In progress review" lands in review
BUCKET_ORDER = (IN_REVIEW, IN_PROGRESS, DONE, BACKLOG)

BUCKET_STATE_TYPES = {
    BACKLOG: ("backlog", "unstarted"),
    IN_PROGRESS: ("started",),
    IN_REVIEW: ("started",),
    DONE: ("completed",),
}


def _normalize(name: Optional[str]) -> str:
    return " ".join((name or "").lower().replace("_", " ").replace("-", " ").split())


def is_done_status(name: Optional[str], vocabulary: Iterable[str] = DONE_VOCABULARY) -> bool:
    """Case-insensitive exact, prefix or near-length containment match."""
    normalized = _normalize(name)
    if not normalized:
        return False
    for word in vocabulary:
        if normalized == word:
            return True
        if normalized.startswith(word):
            return True
        if word in normalized and len(normalized) - len(word) <= FUZZY_LENGTH_TOLERANCE:
            return True
    return False


def task_status_name(task: Task, statuses: Optional[dict] = None) -> str:
    """Workflow status name for a task, falling back to its closed flag."""
    if statuses and task.workflow_status_id:
        status: Optional[WorkflowStatus] = statuses.get(task.workflow_status_id)
        if status is not None and status.name:
            return status.name
    return "Closed" if task.closed else "Open"


def is_task_done(task: Task, statuses: Optional[dict] = None) -> bool:
    if task.closed:
        return True
    if statuses and task.workflow_status_id:
        status = statuses.get(task.workflow_status_id)
        if status is not None and status.is_closed_category:
            return True
    return is_done_status(task_status_name(task, statuses))


def classify_bucket(name: Optional[str]) -> str:
    normalized = _normalize(name)
    for bucket in BUCKET_ORDER:
        if any(keyword in normalized for keyword in BUCKET_KEYWORDS[bucket]):
            return bucket
    return BACKLOG


def find_team_state(states: List[LinearState], bucket: str) -> Optional[LinearState]:
    """Best team state for a bucket: name keyword match first, then state type."""
    for state in states:
        normalized = _normalize(state.name)
        if any(keyword in normalized for keyword in BUCKET_KEYWORDS[bucket]):
            return state
    for state in states:
        if (state.type or "") in BUCKET_STATE_TYPES[bucket]:
            return state
    return None


def default_state(states: List[LinearState]) -> Optional[LinearState]:
    """Backlog-like fallback state."""
    for state_type in ("backlog", "unstarted"):
        for state in states:
            if state.type == state_type:
                return state
    return states[0] if states else None


def map_state(
    source_status: Optional[str],
    states: List[LinearState],
    done: Optional[bool] = None,
) -> StateMapping:
    """Target for a source status; ``done`` overrides the name heuristic when known."""
    if done is None:
        done = is_done_status(source_status)
    if done:
        return StateMapping(archive=True, bucket=DONE)

    bucket = classify_bucket(source_status)
    state = find_team_state(states, bucket) or default_state(states)
    return StateMapping(state_id=state.id if state else None, bucket=bucket)
