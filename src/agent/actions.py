"""Agent action kinds and their parameter schemas."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from errors import AgentValidationError

TaskStatus = Literal["todo", "in_progress", "in_review", "blocked", "done"]
TaskPriority = Literal["low", "medium", "high", "urgent"]
TaskBucket = Literal["none", "inbox", "waiting", "someday"]
ResearchType = Literal["hypothesis", "experiment", "paper"]

_PARAMS_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
    extra="ignore",
)


class ScopedParams(BaseModel):
    """Parameters every write carries after scope injection."""

    model_config = _PARAMS_CONFIG

    workspace_id: str
    space_id: str


class TaskCreateParams(ScopedParams):
    title: str = Field(min_length=1)
    description: str | None = None
    status: TaskStatus = "todo"
    priority: TaskPriority = "medium"
    bucket: TaskBucket = "none"
    due_date: datetime | None = None
    project_id: str | None = None
    labels: list[str] = Field(default_factory=list)


class TaskUpdateParams(ScopedParams):
    task_id: str = Field(min_length=1)
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    bucket: TaskBucket | None = None
    due_date: datetime | None = None


class PageCreateParams(ScopedParams):
    title: str = Field(min_length=1)
    content: dict[str, Any] | None = None


class ProjectCreateParams(ScopedParams):
    name: str = Field(min_length=1)
    description: str | None = None


class ResearchCreateParams(ScopedParams):
    title: str = Field(min_length=1)
    type: ResearchType = "hypothesis"
    content: dict[str, Any] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


PARAM_SCHEMAS: dict[str, type[ScopedParams]] = {
    "task.create": TaskCreateParams,
    "task.update": TaskUpdateParams,
    "page.create": PageCreateParams,
    "project.create": ProjectCreateParams,
    "research.create": ResearchCreateParams,
}


def validate_params(method: str, params: Mapping[str, Any]) -> ScopedParams:
    """Validate params against the method schema.

    Raises:
        AgentValidationError: when the method is unknown or params are invalid.
    """
    schema = PARAM_SCHEMAS.get(method)
    if schema is None:
        raise AgentValidationError(f"Unsupported method: {method}")
    try:
        return schema.model_validate(dict(params))
    except ValidationError as exc:
        problems = [
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        ]
        raise AgentValidationError(
            f"Invalid params for {method}: {'; '.join(problems)}",
            data={"method": method, "errors": problems},
        ) from exc


@dataclass(frozen=True)
class _ProposedAction:
    """Write action proposed by a generated plan."""

    method: ClassVar[str]
    default_title: ClassVar[str | None] = None

    params: dict[str, Any] = field(default_factory=dict)
    rationale: str | None = None

    def prepare(self, workspace_id: str, space_id: str) -> dict[str, Any]:
        """Return params scoped to the space and normalized for dispatch."""
        params = dict(self.params)
        params["workspaceId"] = workspace_id
        params["spaceId"] = space_id
        if self.default_title and not params.get("title"):
            params["title"] = self.default_title
        return params


def _lowercase_enums(params: dict[str, Any]) -> dict[str, Any]:
    for key in ("status", "priority", "bucket"):
        if isinstance(params.get(key), str):
            params[key] = params[key].lower()
    return params


@dataclass(frozen=True)
class TaskCreateAction(_ProposedAction):
    method: ClassVar[str] = "task.create"
    default_title: ClassVar[str | None] = "New task"

    def prepare(self, workspace_id: str, space_id: str) -> dict[str, Any]:
        return _lowercase_enums(super().prepare(workspace_id, space_id))


@dataclass(frozen=True)
class TaskUpdateAction(_ProposedAction):
    method: ClassVar[str] = "task.update"

    def prepare(self, workspace_id: str, space_id: str) -> dict[str, Any]:
        return _lowercase_enums(super().prepare(workspace_id, space_id))


@dataclass(frozen=True)
class PageCreateAction(_ProposedAction):
    method: ClassVar[str] = "page.create"
    default_title: ClassVar[str | None] = "Untitled page"

    def prepare(self, workspace_id: str, space_id: str) -> dict[str, Any]:
        params = super().prepare(workspace_id, space_id)
        if "content" in params and not isinstance(params["content"], dict):
            del params["content"]
        return params


@dataclass(frozen=True)
class ProjectCreateAction(_ProposedAction):
    method: ClassVar[str] = "project.create"


@dataclass(frozen=True)
class ResearchCreateAction(_ProposedAction):
    method: ClassVar[str] = "research.create"


@dataclass(frozen=True)
class UnsupportedAction:
    """Proposed action whose method is outside the supported set."""

    method: str = "unknown"
    params: dict[str, Any] = field(default_factory=dict)
    rationale: str | None = None


ActionRequest = Union[
    TaskCreateAction,
    TaskUpdateAction,
    PageCreateAction,
    ProjectCreateAction,
    ResearchCreateAction,
    UnsupportedAction,
]

ACTION_KINDS: dict[str, type[_ProposedAction]] = {
    kind.method: kind
    for kind in (
        TaskCreateAction,
        TaskUpdateAction,
        PageCreateAction,
        ProjectCreateAction,
        ResearchCreateAction,
    )
}


def parse_action(raw: Any) -> ActionRequest:
    """Map one raw plan entry onto its action kind."""
    if not isinstance(raw, Mapping):
        return UnsupportedAction()
    method = raw.get("method")
    params = raw.get("params")
    params = dict(params) if isinstance(params, Mapping) else {}
    rationale = raw.get("rationale")
    rationale = str(rationale) if rationale is not None else None
    kind = ACTION_KINDS.get(method) if isinstance(method, str) else None
    if kind is None:
        return UnsupportedAction(
            method=method if isinstance(method, str) and method else "unknown",
            params=params,
            rationale=rationale,
        )
    return kind(params=params, rationale=rationale)


@dataclass(frozen=True)
class ActionResult:
    """Terminal outcome for one proposed action."""

    method: str
    status: str
    phase: Literal["validated", "approval", "executed", "failed", "denied", "skipped"]
    attempts: int | None = None
    error: str | None = None
    reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        """Serialize without unset optional fields."""
        data: dict[str, Any] = {
            "method": self.method,
            "status": self.status,
            "phase": self.phase,
        }
        if self.attempts is not None:
            data["attempts"] = self.attempts
        if self.error is not None:
            data["error"] = self.error
        if self.reason is not None:
            data["reason"] = self.reason
        return data
