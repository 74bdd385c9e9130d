"""JSON-RPC 2.0 request processor for agent write methods."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from agent.actions import (
    PageCreateParams,
    ProjectCreateParams,
    ResearchCreateParams,
    TaskCreateParams,
    TaskUpdateParams,
    validate_params,
)
from agent.approvals import ApprovalLedger
from agent.policy import AgentPolicyService
from agent.workspace import UNSET, WorkspaceRepository
from errors import AgentError, AgentNotFoundError, AgentValidationError
from time_utils import isoformat_utc

logger = logging.getLogger(__name__)

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
APPROVAL_REQUIRED = -32001
PERMISSION_DENIED = -32003
RESOURCE_NOT_FOUND = -32004


@dataclass(frozen=True)
class Actor:
    """Authenticated identity a request runs as."""

    id: str
    workspace_id: str
    email: str | None = None


class RpcError(Exception):
    """JSON-RPC error raised inside request handling."""

    def __init__(self, code: int, message: str, data: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    def as_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


class RequestProcessor:
    """Route JSON-RPC envelopes to write handlers behind policy and approval."""

    def __init__(
        self,
        workspace: WorkspaceRepository,
        policy: AgentPolicyService,
        approvals: ApprovalLedger,
    ) -> None:
        """Initialize the processor with its collaborators."""
        self._workspace = workspace
        self._policy = policy
        self._approvals = approvals
        self._handlers: dict[str, Callable[[dict[str, Any], Actor], Any]] = {
            "task.create": self._create_task,
            "task.update": self._update_task,
            "page.create": self._create_page,
            "project.create": self._create_project,
            "research.create": self._create_research,
        }

    def process_request(self, request: Any, actor: Actor) -> dict[str, Any]:
        """Process one envelope and return a result or error response."""
        request_id = request.get("id") if isinstance(request, Mapping) else None
        try:
            method, params = self._validate_envelope(request)
            logger.debug("rpc request: method=%s user_id=%s", method, actor.id)
            handler = self._handlers.get(method)
            if handler is None:
                raise RpcError(METHOD_NOT_FOUND, f"Method not found: {method}")
            self._authorize(method, params, actor)
            result = handler(params, actor)
        except RpcError as exc:
            return {"jsonrpc": "2.0", "id": request_id, "error": exc.as_dict()}
        except AgentValidationError as exc:
            error = RpcError(INVALID_PARAMS, exc.message, exc.data or None)
            return {"jsonrpc": "2.0", "id": request_id, "error": error.as_dict()}
        except AgentNotFoundError as exc:
            error = RpcError(RESOURCE_NOT_FOUND, exc.message)
            return {"jsonrpc": "2.0", "id": request_id, "error": error.as_dict()}
        except AgentError as exc:
            error = RpcError(INTERNAL_ERROR, exc.message)
            return {"jsonrpc": "2.0", "id": request_id, "error": error.as_dict()}
        except Exception as exc:
            logger.exception("rpc request failed")
            error = RpcError(INTERNAL_ERROR, str(exc) or "Internal error")
            return {"jsonrpc": "2.0", "id": request_id, "error": error.as_dict()}
        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    def _validate_envelope(self, request: Any) -> tuple[str, dict[str, Any]]:
        if not isinstance(request, Mapping):
            raise RpcError(INVALID_REQUEST, "Request must be an object")
        if request.get("jsonrpc") != "2.0":
            raise RpcError(INVALID_REQUEST, "jsonrpc must be '2.0'")
        method = request.get("method")
        if not isinstance(method, str) or "." not in method:
            raise RpcError(INVALID_REQUEST, "method must be '<resource>.<operation>'")
        params = request.get("params") or {}
        if not isinstance(params, Mapping):
            raise RpcError(INVALID_REQUEST, "params must be an object")
        return method, dict(params)

    def _authorize(self, method: str, params: dict[str, Any], actor: Actor) -> None:
        """Apply workspace policy and approval tokens before a write runs."""
        agent_settings = self._workspace.get_agent_settings(actor.workspace_id)
        decision = self._policy.evaluate(method, agent_settings)
        if decision.decision == "deny":
            raise RpcError(
                PERMISSION_DENIED,
                "Denied by agent policy",
                {"method": method, "reason": decision.reason},
            )

        token = params.get("approvalToken") or params.get("approval_token")
        if token:
            approved = self._approvals.consume_approval(
                str(token),
                user_id=actor.id,
                method=method,
                params=params,
            )
            if not approved:
                raise RpcError(
                    APPROVAL_REQUIRED,
                    "Approval token invalid or expired",
                    {"method": method},
                )
            return

        if decision.decision == "approval" or self._approvals.requires_approval(method):
            grant = self._approvals.create_approval(actor.id, method, params)
            raise RpcError(
                APPROVAL_REQUIRED,
                "Approval required for this operation",
                {
                    "approvalToken": grant.token,
                    "expiresAt": isoformat_utc(grant.expires_at),
                    "method": method,
                    "reason": decision.reason,
                },
            )

    def _scoped(self, method: str, params: dict[str, Any], actor: Actor):
        validated = validate_params(method, params)
        if validated.workspace_id != actor.workspace_id:
            raise RpcError(PERMISSION_DENIED, "Workspace mismatch", {"method": method})
        return validated

    def _create_task(self, params: dict[str, Any], actor: Actor) -> dict[str, Any]:
        data: TaskCreateParams = self._scoped("task.create", params, actor)
        task = self._workspace.create_task(
            workspace_id=data.workspace_id,
            space_id=data.space_id,
            title=data.title,
            creator_id=actor.id,
            description=data.description,
            status=data.status,
            priority=data.priority,
            bucket=data.bucket,
            due_date=data.due_date,
            project_id=data.project_id,
            labels=data.labels,
        )
        return {"id": task.id, "title": task.title, "status": task.status}

    def _update_task(self, params: dict[str, Any], actor: Actor) -> dict[str, Any]:
        data: TaskUpdateParams = self._scoped("task.update", params, actor)
        changes = data.model_dump(
            include={"title", "description", "status", "priority", "bucket", "due_date"},
            exclude_unset=True,
        )
        if not changes:
            raise AgentValidationError("task.update requires at least one field to change")
        task = self._workspace.update_task(
            data.task_id,
            data.workspace_id,
            title=changes.get("title", UNSET),
            description=changes.get("description", UNSET),
            status=changes.get("status", UNSET),
            priority=changes.get("priority", UNSET),
            bucket=changes.get("bucket", UNSET),
            due_date=changes.get("due_date", UNSET),
        )
        return {"id": task.id, "title": task.title, "status": task.status}

    def _create_page(self, params: dict[str, Any], actor: Actor) -> dict[str, Any]:
        data: PageCreateParams = self._scoped("page.create", params, actor)
        page = self._workspace.create_page(
            workspace_id=data.workspace_id,
            space_id=data.space_id,
            title=data.title,
            creator_id=actor.id,
            content=data.content,
        )
        return {"id": page.id, "title": page.title}

    def _create_project(self, params: dict[str, Any], actor: Actor) -> dict[str, Any]:
        data: ProjectCreateParams = self._scoped("project.create", params, actor)
        project = self._workspace.create_project(
            workspace_id=data.workspace_id,
            space_id=data.space_id,
            name=data.name,
            creator_id=actor.id,
            description=data.description,
        )
        return {"id": project.id, "name": project.name}

    def _create_research(self, params: dict[str, Any], actor: Actor) -> dict[str, Any]:
        data: ResearchCreateParams = self._scoped("research.create", params, actor)
        page = self._workspace.create_page(
            workspace_id=data.workspace_id,
            space_id=data.space_id,
            title=data.title,
            creator_id=actor.id,
            content=data.content,
            page_type=data.type,
            metadata=data.metadata,
        )
        return {"id": page.id, "title": page.title, "type": page.page_type}
