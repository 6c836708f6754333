"""Action vocabulary, proposal shape checks, and typed payloads.

Proposals coming from a model are accepted on shape alone. Whether the type
is one we support, and whether the payload carries the fields the mutation
needs, is decided only when the action is executed.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Mapping

from workbench_agent.errors import (
    ActionValidationError,
    MalformedActionsError,
    MalformedPayloadError,
    MissingFieldError,
    UnsupportedActionError,
)

TODO_CREATE = "todo.create"
TODO_UPDATE = "todo.update"
TODO_DELETE = "todo.delete"
PROJECT_CREATE = "project.create"
PROJECT_UPDATE_PROGRESS = "project.update_progress"
PROJECT_DELETE = "project.delete"
EVENT_CREATE = "event.create"
EVENT_UPDATE = "event.update"
EVENT_DELETE = "event.delete"
PERSONAL_CREATE = "personal.create"
PERSONAL_UPDATE = "personal.update"
PERSONAL_DELETE = "personal.delete"
QUERY_SNAPSHOT = "query.snapshot"

ACTION_TYPES: tuple[str, ...] = (
    TODO_CREATE,
    TODO_UPDATE,
    TODO_DELETE,
    PROJECT_CREATE,
    PROJECT_UPDATE_PROGRESS,
    PROJECT_DELETE,
    EVENT_CREATE,
    EVENT_UPDATE,
    EVENT_DELETE,
    PERSONAL_CREATE,
    PERSONAL_UPDATE,
    PERSONAL_DELETE,
    QUERY_SNAPSHOT,
)


@dataclass
class ActionProposal:
    """One mutation the agent wants to perform."""

    id: str
    type: str
    title: str
    reason: str
    payload: Any = field(default_factory=dict)
    requires_approval: bool = True

    @classmethod
    def from_dict(cls, data: Any) -> ActionProposal:
        """Check the proposal shape and build it.

        Raises MalformedActionsError when the element is not a proposal.
        """
        if not isinstance(data, Mapping):
            raise MalformedActionsError(
                f"action must be an object, got {type(data).__name__}"
            )
        for key in ("id", "type", "title", "reason"):
            if not isinstance(data.get(key), str):
                raise MalformedActionsError(f"action field '{key}' must be a string")
        if "payload" not in data:
            raise MalformedActionsError("action field 'payload' is missing")
        requires_approval = data.get("requiresApproval", data.get("requires_approval"))
        if not isinstance(requires_approval, bool):
            raise MalformedActionsError("action field 'requiresApproval' must be a boolean")
        return cls(
            id=data["id"],
            type=data["type"],
            title=data["title"],
            reason=data["reason"],
            payload=data["payload"],
            requires_approval=requires_approval,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "reason": self.reason,
            "payload": self.payload,
            "requiresApproval": self.requires_approval,
        }


def validate(action_type: str, payload: Any) -> None:
    """Structural check: known type and a key-value payload."""
    if action_type not in ACTION_TYPES:
        raise UnsupportedActionError(action_type)
    if not isinstance(payload, Mapping):
        raise MalformedPayloadError(
            f"{action_type} payload must be an object, got {type(payload).__name__}"
        )


# --- Typed payloads ---


@dataclass(frozen=True)
class TodoCreate:
    title: str
    priority: str = "normal"


@dataclass(frozen=True)
class TodoUpdate:
    id: str
    title: str | None = None
    completed: bool | None = None
    priority: str | None = None


@dataclass(frozen=True)
class ProjectCreate:
    title: str
    deadline: str


@dataclass(frozen=True)
class ProjectProgress:
    id: str
    progress: int


@dataclass(frozen=True)
class EventCreate:
    title: str
    date: str
    color: str = "blue"
    note: str | None = None


@dataclass(frozen=True)
class EventUpdate:
    id: str
    title: str | None = None
    date: str | None = None
    color: str | None = None
    note: str | None = None


@dataclass(frozen=True)
class PersonalCreate:
    title: str
    budget: float | None = None
    date: str | None = None
    location: str | None = None
    note: str | None = None


@dataclass(frozen=True)
class PersonalUpdate:
    id: str
    title: str | None = None
    budget: float | None = None
    date: str | None = None
    location: str | None = None
    note: str | None = None


@dataclass(frozen=True)
class EntityRef:
    """Payload of every ``*.delete`` action."""

    id: str


@dataclass(frozen=True)
class SnapshotQuery:
    pass


def _required_str(payload: Mapping, key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise MissingFieldError(key)
    return value


def _optional_str(payload: Mapping, key: str) -> str | None:
    value = payload.get(key)
    if isinstance(value, str) and value.strip():
        return value
    return None


def _optional_bool(payload: Mapping, key: str) -> bool | None:
    value = payload.get(key)
    return value if isinstance(value, bool) else None


def _optional_float(payload: Mapping, key: str) -> float | None:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        number = float(value)
    except OverflowError:
        number = math.inf
    if not math.isfinite(number):
        raise MalformedPayloadError(f"{key} must be a finite number")
    return number


def _require_any(action_type: str, fields: dict) -> None:
    if all(v is None for k, v in fields.items() if k != "id"):
        raise ActionValidationError(f"{action_type} has no updatable fields")


def parse_payload(action_type: str, payload: Mapping) -> Any:
    """Convert a validated payload into the typed struct for its action."""
    if action_type == TODO_CREATE:
        return TodoCreate(
            title=_required_str(payload, "title"),
            priority=_optional_str(payload, "priority") or "normal",
        )
    if action_type == TODO_UPDATE:
        fields = {
            "id": _required_str(payload, "id"),
            "title": _optional_str(payload, "title"),
            "completed": _optional_bool(payload, "completed"),
            "priority": _optional_str(payload, "priority"),
        }
        _require_any(action_type, fields)
        return TodoUpdate(**fields)
    if action_type == PROJECT_CREATE:
        return ProjectCreate(
            title=_required_str(payload, "title"),
            deadline=_required_str(payload, "deadline"),
        )
    if action_type == PROJECT_UPDATE_PROGRESS:
        project_id = _required_str(payload, "id")
        progress = payload.get("progress")
        if isinstance(progress, float) and progress.is_integer():
            progress = int(progress)
        if isinstance(progress, bool) or not isinstance(progress, int):
            raise MissingFieldError("progress")
        if not 0 <= progress <= 100:
            raise ActionValidationError(f"progress must be between 0 and 100, got {progress}")
        return ProjectProgress(id=project_id, progress=progress)
    if action_type == EVENT_CREATE:
        return EventCreate(
            title=_required_str(payload, "title"),
            date=_required_str(payload, "date"),
            color=_optional_str(payload, "color") or "blue",
            note=_optional_str(payload, "note"),
        )
    if action_type == EVENT_UPDATE:
        fields = {
            "id": _required_str(payload, "id"),
            "title": _optional_str(payload, "title"),
            "date": _optional_str(payload, "date"),
            "color": _optional_str(payload, "color"),
            "note": _optional_str(payload, "note"),
        }
        _require_any(action_type, fields)
        return EventUpdate(**fields)
    if action_type == PERSONAL_CREATE:
        return PersonalCreate(
            title=_required_str(payload, "title"),
            budget=_optional_float(payload, "budget"),
            date=_optional_str(payload, "date"),
            location=_optional_str(payload, "location"),
            note=_optional_str(payload, "note"),
        )
    if action_type == PERSONAL_UPDATE:
        fields = {
            "id": _required_str(payload, "id"),
            "title": _optional_str(payload, "title"),
            "budget": _optional_float(payload, "budget"),
            "date": _optional_str(payload, "date"),
            "location": _optional_str(payload, "location"),
            "note": _optional_str(payload, "note"),
        }
        _require_any(action_type, fields)
        return PersonalUpdate(**fields)
    if action_type in (TODO_DELETE, PROJECT_DELETE, EVENT_DELETE, PERSONAL_DELETE):
        return EntityRef(id=_required_str(payload, "id"))
    if action_type == QUERY_SNAPSHOT:
        return SnapshotQuery()
    raise UnsupportedActionError(action_type)
