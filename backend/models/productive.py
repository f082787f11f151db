"""Typed records for Productive JSON:API resources.

Productive returns resources as ``{"id", "type", "attributes", "relationships"}``.
Each record below lists the fields the exporter relies on; missing attributes
fall back to the documented defaults instead of failing the parse.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from dateutil.parser import isoparse

# Productive workflow status categories
CATEGORY_NOT_STARTED = 1
CATEGORY_STARTED = 2
CATEGORY_CLOSED = 3


def _attrs(resource: dict) -> dict:
    return resource.get("attributes") or {}


def relationship_id(resource: dict, name: str) -> Optional[str]:
    """Return the id referenced by a to-one relationship, if any."""
    rel = (resource.get("relationships") or {}).get(name) or {}
    data = rel.get("data")
    if isinstance(data, dict) and data.get("id") is not None:
        return str(data["id"])
    return None


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO timestamp into an aware UTC datetime."""
    if not value:
        return None
    try:
        parsed = isoparse(str(value))
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Task:
    """A Productive task."""

    id: str
    title: str = ""
    description: str = ""  # HTML
    due_date: Optional[str] = None
    start_date: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    closed_at: Optional[str] = None
    closed: bool = False
    task_number: Optional[str] = None
    tag_list: List[str] = field(default_factory=list)
    private: bool = False
    todo_count: int = 0
    open_todo_count: int = 0
    type_id: Optional[int] = None
    subtask_count: int = 0
    repeat_schedule_id: Optional[str] = None
    task_list_id: Optional[str] = None
    workflow_status_id: Optional[str] = None
    assignee_id: Optional[str] = None
    creator_id: Optional[str] = None
    last_actor_id: Optional[str] = None
    parent_task_id: Optional[str] = None

    @classmethod
    def from_api_response(cls, data: dict) -> "Task":
        attrs = _attrs(data)
        tags = attrs.get("tag_list")
        return cls(
            id=str(data.get("id")),
            title=attrs.get("title") or "",
            description=attrs.get("description") or "",
            due_date=attrs.get("due_date"),
            start_date=attrs.get("start_date"),
            created_at=attrs.get("created_at"),
            updated_at=attrs.get("updated_at"),
            closed_at=attrs.get("closed_at"),
            closed=bool(attrs.get("closed")),
            task_number=attrs.get("task_number"),
            tag_list=list(tags) if isinstance(tags, list) else [],
            private=bool(attrs.get("private")),
            todo_count=attrs.get("todo_count") or 0,
            open_todo_count=attrs.get("open_todo_count") or 0,
            type_id=attrs.get("type_id"),
            subtask_count=attrs.get("subtask_count") or 0,
            repeat_schedule_id=attrs.get("repeat_schedule_id"),
            task_list_id=relationship_id(data, "task_list"),
            workflow_status_id=relationship_id(data, "workflow_status"),
            assignee_id=relationship_id(data, "assignee"),
            creator_id=relationship_id(data, "creator"),
            last_actor_id=relationship_id(data, "last_actor"),
            parent_task_id=relationship_id(data, "parent_task"),
        )

    @property
    def has_description(self) -> bool:
        return bool(self.description and self.description.strip())

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        if self.closed or not self.due_date:
            return False
        due = parse_timestamp(self.due_date)
        if due is None:
            return False
        return due < (now or datetime.now(timezone.utc))


@dataclass
class Comment:
    """A comment on a Productive task."""

    id: str
    body: str = ""  # HTML
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    creator_id: Optional[str] = None

    @classmethod
    def from_api_response(cls, data: dict) -> "Comment":
        attrs = _attrs(data)
        return cls(
            id=str(data.get("id")),
            body=attrs.get("body") or "",
            created_at=attrs.get("created_at"),
            updated_at=attrs.get("updated_at"),
            creator_id=relationship_id(data, "creator"),
        )

    @property
    def created(self) -> Optional[datetime]:
        return parse_timestamp(self.created_at or self.updated_at)


@dataclass(frozen=True)
class Person:
    """Comment author identity."""

    id: Optional[str]
    name: str = "Unknown"
    email: Optional[str] = None

    @classmethod
    def from_api_response(cls, data: dict) -> "Person":
        attrs = _attrs(data)
        name = " ".join(
            part for part in (attrs.get("first_name"), attrs.get("last_name")) if part
        ).strip()
        return cls(
            id=str(data.get("id")) if data.get("id") is not None else None,
            name=name or attrs.get("name") or "Unknown",
            email=attrs.get("email") or None,
        )

    @classmethod
    def unknown(cls, person_id: Optional[str] = None) -> "Person":
        return cls(id=person_id, name="Unknown")


@dataclass(frozen=True)
class WorkflowStatus:
    """A workflow status a task can be in."""

    id: str
    name: str
    category_id: Optional[int] = None

    @classmethod
    def from_api_response(cls, data: dict) -> "WorkflowStatus":
        attrs = _attrs(data)
        return cls(
            id=str(data.get("id")),
            name=attrs.get("name") or "",
            category_id=attrs.get("category_id"),
        )

    @property
    def is_closed_category(self) -> bool:
        return self.category_id == CATEGORY_CLOSED


@dataclass
class EnrichedComment:
    """A comment with resolved author and formatted display text."""

    comment: Comment
    author: Person
    body_text: str
    display: str


@dataclass
class CommentBundle:
    """Result of fetching a task's comments, sorted oldest first."""

    comments: List[EnrichedComment] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.comments)


@dataclass
class DownloadedFile:
    """Binary payload fetched from an attachment URL."""

    content: bytes
    content_type: Optional[str] = None
    filename: Optional[str] = None
