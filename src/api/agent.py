"""Agent and pattern HTTP endpoints."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from agent.approvals import ApprovalRecord
from agent.container import AgentComponents
from agent.dispatch import Actor
from agent.workspace import SpaceWithSettings
from errors import AgentAccessError, AgentError, AgentNotFoundError
from time_utils import isoformat_utc, week_key

logger = logging.getLogger(__name__)

agent_router = APIRouter(prefix="/agent", tags=["agent"])
patterns_router = APIRouter(prefix="/patterns", tags=["patterns"])
approvals_router = APIRouter(prefix="/approvals", tags=["approvals"])


class _Body(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class ChatRequest(_Body):
    space_id: str
    message: str = Field(min_length=1)
    page_id: str | None = None


class PlanRequest(_Body):
    space_id: str
    horizon: str = "daily"


class SpaceRequest(_Body):
    space_id: str


class PlanReviewRequest(_Body):
    plan_id: str
    space_id: str | None = None
    reason: str | None = None


class HandoffRequest(_Body):
    name: str | None = None


class ReviewPromptsRequest(_Body):
    space_id: str
    week_key: str | None = None


class SuggestionsRequest(_Body):
    space_id: str
    limit: int = Field(default=5, ge=1, le=20)


class PatternListRequest(_Body):
    space_id: str | None = None
    status: str | None = None
    pattern_type: str | None = None
    limit: int = Field(default=100, ge=1, le=500)


class PatternStatusRequest(_Body):
    pattern_id: str


class ApprovalTokenRequest(_Body):
    approval_token: str = Field(min_length=1)


def get_components(request: Request) -> AgentComponents:
    """Return the components attached to the application."""
    return request.app.state.components


def get_request_context(request: Request) -> Actor:
    """Resolve the acting user from identity headers.

    Deployments put an authenticating middleware in front of this and override
    the dependency; the header form is the unauthenticated default.
    """
    user_id = (request.headers.get("x-user-id") or "").strip()
    workspace_id = (request.headers.get("x-workspace-id") or "").strip()
    if not user_id or not workspace_id:
        raise AgentAccessError("Missing user or workspace context")
    return Actor(id=user_id, workspace_id=workspace_id)


def agent_error_handler(request: Request, exc: AgentError) -> JSONResponse:
    """Map agent errors onto their HTTP status."""
    if exc.http_status >= 500:
        logger.error("agent request failed: path=%s error=%s", request.url.path, exc)
    return JSONResponse(
        status_code=exc.http_status,
        content={"error": {"code": exc.code, "message": exc.message, "data": exc.data}},
    )


def _space_with_settings(
    components: AgentComponents, space_id: str, actor: Actor
) -> SpaceWithSettings:
    for space in components.workspace.list_spaces_with_settings(actor.workspace_id):
        if space.space_id == space_id:
            return space
    raise AgentNotFoundError("Space not found")


def _require_space(components: AgentComponents, space_id: str, actor: Actor) -> None:
    if components.workspace.get_space(space_id, actor.workspace_id) is None:
        raise AgentNotFoundError("Space not found")


@agent_router.post("/rpc")
def rpc(
    body: dict[str, Any],
    actor: Actor = Depends(get_request_context),
    components: AgentComponents = Depends(get_components),
) -> dict[str, Any]:
    """Dispatch one JSON-RPC 2.0 request through the policy gate."""
    return components.processor.process_request(body, actor)


@agent_router.post("/chat")
def chat(
    body: ChatRequest,
    actor: Actor = Depends(get_request_context),
    components: AgentComponents = Depends(get_components),
) -> dict[str, Any]:
    reply = components.agent.chat(body.space_id, body.message, actor, page_id=body.page_id)
    return {"reply": reply}


@agent_router.post("/plan")
def generate_plan(
    body: PlanRequest,
    actor: Actor = Depends(get_request_context),
    components: AgentComponents = Depends(get_components),
) -> dict[str, Any]:
    space = _space_with_settings(components, body.space_id, actor)
    plan = components.planner.generate_plan_for_space(space, body.horizon)
    return {"plan": plan.as_dict() if plan else None}


@agent_router.post("/plan/cascade")
def plan_cascade(
    body: SpaceRequest,
    actor: Actor = Depends(get_request_context),
    components: AgentComponents = Depends(get_components),
) -> dict[str, Any]:
    space = _space_with_settings(components, body.space_id, actor)
    refreshed = components.planner.run_planning_cascade(space)
    return {"refreshed": refreshed or {}}


@agent_router.post("/plan/approve")
def approve_plan(
    body: PlanReviewRequest,
    actor: Actor = Depends(get_request_context),
    components: AgentComponents = Depends(get_components),
) -> dict[str, Any]:
    plan = components.planner.approve_plan(
        body.plan_id,
        workspace_id=actor.workspace_id,
        user_id=actor.id,
        space_id=body.space_id,
    )
    return {"plan": plan.as_dict()}


@agent_router.post("/plan/reject")
def reject_plan(
    body: PlanReviewRequest,
    actor: Actor = Depends(get_request_context),
    components: AgentComponents = Depends(get_components),
) -> dict[str, Any]:
    plan = components.planner.reject_plan(
        body.plan_id,
        workspace_id=actor.workspace_id,
        user_id=actor.id,
        space_id=body.space_id,
        reason=body.reason,
    )
    return {"plan": plan.as_dict()}


@agent_router.post("/loop/run")
def run_loop(
    body: SpaceRequest,
    actor: Actor = Depends(get_request_context),
    components: AgentComponents = Depends(get_components),
) -> dict[str, Any]:
    return components.loop.run_loop(body.space_id, actor).as_dict()


@agent_router.post("/loop/schedule-run")
def run_schedule(
    actor: Actor = Depends(get_request_context),
    components: AgentComponents = Depends(get_components),
) -> dict[str, Any]:
    ran = components.scheduler.run_manual(actor.workspace_id, actor)
    return {"ran": ran}


@agent_router.post("/handoff")
def create_handoff(
    body: HandoffRequest,
    actor: Actor = Depends(get_request_context),
    components: AgentComponents = Depends(get_components),
) -> dict[str, Any]:
    key = components.handoff.create_handoff_key(actor.workspace_id, actor.id, name=body.name)
    return {
        "id": key.id,
        "name": key.name,
        "apiKey": key.api_key,
        "createdAt": key.created_at.isoformat(),
    }


@agent_router.post("/review-prompts/list")
def list_review_prompts(
    body: ReviewPromptsRequest,
    actor: Actor = Depends(get_request_context),
    components: AgentComponents = Depends(get_components),
) -> dict[str, Any]:
    _require_space(components, body.space_id, actor)
    prompts = components.review_prompts.list_pending(
        workspace_id=actor.workspace_id,
        space_id=body.space_id,
        week_key=body.week_key or week_key(),
    )
    return {"items": [prompt.as_dict() for prompt in prompts]}


@agent_router.post("/review-prompts/consume")
def consume_review_prompts(
    body: ReviewPromptsRequest,
    actor: Actor = Depends(get_request_context),
    components: AgentComponents = Depends(get_components),
) -> dict[str, Any]:
    _require_space(components, body.space_id, actor)
    prompts = components.review_prompts.consume_pending(
        workspace_id=actor.workspace_id,
        space_id=body.space_id,
        week_key=body.week_key or week_key(),
    )
    return {"items": [prompt.as_dict() for prompt in prompts]}


@agent_router.post("/suggestions")
def suggestions(
    body: SuggestionsRequest,
    actor: Actor = Depends(get_request_context),
    components: AgentComponents = Depends(get_components),
) -> dict[str, Any]:
    items = components.agent.suggest_next_actions(body.space_id, actor, limit=body.limit)
    return {"items": [item.as_dict() for item in items]}


@patterns_router.post("/list")
def list_patterns(
    body: PatternListRequest,
    actor: Actor = Depends(get_request_context),
    components: AgentComponents = Depends(get_components),
) -> dict[str, Any]:
    records = components.patterns.list_by_workspace(
        actor.workspace_id,
        space_id=body.space_id,
        status=body.status,
        pattern_type=body.pattern_type,
        limit=body.limit,
    )
    return {"items": [record.as_dict() for record in records]}


def _move_pattern(
    components: AgentComponents, actor: Actor, pattern_id: str, status: str
) -> dict[str, Any]:
    record = components.patterns.find_by_id(pattern_id)
    if record is None or record.workspace_id != actor.workspace_id:
        raise AgentNotFoundError(f"Pattern not found: {pattern_id}")
    updated = components.patterns.update_status(pattern_id, status)
    return {"pattern": updated.as_dict()}


@patterns_router.post("/acknowledge")
def acknowledge_pattern(
    body: PatternStatusRequest,
    actor: Actor = Depends(get_request_context),
    components: AgentComponents = Depends(get_components),
) -> dict[str, Any]:
    return _move_pattern(components, actor, body.pattern_id, "acknowledged")


@patterns_router.post("/dismiss")
def dismiss_pattern(
    body: PatternStatusRequest,
    actor: Actor = Depends(get_request_context),
    components: AgentComponents = Depends(get_components),
) -> dict[str, Any]:
    return _move_pattern(components, actor, body.pattern_id, "dismissed")


def _approval_dict(record: ApprovalRecord) -> dict[str, Any]:
    return {
        "token": record.token,
        "method": record.method,
        "params": record.params,
        "expiresAt": isoformat_utc(record.expires_at),
    }


@approvals_router.post("/list")
def list_approvals(
    actor: Actor = Depends(get_request_context),
    components: AgentComponents = Depends(get_components),
) -> dict[str, Any]:
    """List the caller's pending approvals, soonest expiry first."""
    records = components.approvals.list_approvals(actor.id)
    return {"items": [_approval_dict(record) for record in records]}


@approvals_router.post("/confirm")
def confirm_approval(
    body: ApprovalTokenRequest,
    actor: Actor = Depends(get_request_context),
    components: AgentComponents = Depends(get_components),
) -> dict[str, Any]:
    """Replay the approved request with its token and record the outcome."""
    record = components.approvals.get_approval(body.approval_token, user_id=actor.id)
    if record is None:
        return {"approved": False, "error": "Approval token invalid or expired"}
    response = components.processor.process_request(
        {
            "jsonrpc": "2.0",
            "id": 1,
            "method": record.method,
            "params": {**record.params, "approvalToken": record.token},
        },
        actor,
    )
    error = response.get("error")
    if error:
        return {"approved": False, "error": error.get("message")}
    components.approvals.delete_approval(record.token, user_id=actor.id)
    space_id = record.params.get("spaceId")
    components.memory.ingest_memory(
        actor.workspace_id,
        source="approval-event",
        space_id=space_id if isinstance(space_id, str) else None,
        summary=f"Approval applied for {record.method}",
        content={"token": record.token, "method": record.method, "spaceId": space_id},
        tags=["approval-applied"],
    )
    logger.info("approval applied: method=%s user_id=%s", record.method, actor.id)
    return {"approved": True, "result": response.get("result")}


@approvals_router.post("/reject")
def reject_approval(
    body: ApprovalTokenRequest,
    actor: Actor = Depends(get_request_context),
    components: AgentComponents = Depends(get_components),
) -> dict[str, Any]:
    components.approvals.delete_approval(body.approval_token, user_id=actor.id)
    return {"deleted": True}
