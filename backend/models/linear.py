"""Typed records for Linear GraphQL objects."""

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class LinearIssue:
    """Reference to an issue in Linear."""

    id: str
    identifier: Optional[str] = None
    url: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_api_response(cls, data: dict) -> "LinearIssue":
        return cls(
            id=data["id"],
            identifier=data.get("identifier"),
            url=data.get("url"),
            title=data.get("title"),
            description=data.get("description"),
        )


@dataclass(frozen=True)
class LinearState:
    """A team workflow state (type is backlog/unstarted/started/completed/canceled/triage)."""

    id: str
    name: str
    type: Optional[str] = None

    @classmethod
    def from_api_response(cls, data: dict) -> "LinearState":
        return cls(id=data["id"], name=data.get("name") or "", type=data.get("type"))


@dataclass(frozen=True)
class StateMapping:
    """Where a replicated issue should land.

    Either ``state_id`` is set (assign that state) or ``archive`` is True
    (archive the issue after creation instead of assigning a state).
    """

    state_id: Optional[str] = None
    archive: bool = False
    bucket: Optional[str] = None


@dataclass
class GraphQLOperation:
    """One aliased mutation field for a batched request.

    ``variables`` maps variable name to ``(graphql_type, value)``; references
    in ``field`` use ``$name`` and are renamed per alias when batching.
    """

    alias: str
    field: str
    variables: Dict[str, Tuple[str, object]] = field(default_factory=dict)


@dataclass
class ReplicationResult:
    """Outcome of mirroring one task into Linear."""

    issue: Optional[LinearIssue] = None
    archive: bool = False
    comments_added: int = 0
    attachments_added: int = 0
