"""Unit tests for agent action execution and JSON-RPC dispatch."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from agent.actions import PageCreateAction, TaskCreateAction, parse_action
from agent.approvals import ApprovalLedger
from agent.dispatch import (
    APPROVAL_REQUIRED,
    INTERNAL_ERROR,
    PERMISSION_DENIED,
    Actor,
    RequestProcessor,
)
from agent.events import ACTION_EXECUTED, APPROVAL_CREATED, EventOutbox
from agent.executor import ActionExecutor, ExecutionContext
from agent.policy import AgentPolicyService
from agent.settings import resolve_agent_settings
from agent.workspace import WorkspaceRepository
from config import ApprovalConfig
from models import Page, Task
from scheduler.retry_policy import RetryPolicy
from time_utils import week_key


@dataclass
class ScriptedProcessor:
    """Processor stub that returns one canned JSON-RPC error."""

    message: str
    calls: list[dict[str, Any]] = field(default_factory=list)

    def process_request(self, request, actor) -> dict[str, Any]:
        self.calls.append(request)
        return {
            "jsonrpc": "2.0",
            "id": request["id"],
            "error": {"code": INTERNAL_ERROR, "message": self.message},
        }


def _build(factory, processor=None, retry_policy=None):
    workspace = WorkspaceRepository(factory)
    approvals = ApprovalLedger(factory, ApprovalConfig())
    policy = AgentPolicyService(approvals)
    events = EventOutbox(factory)
    processor = processor or RequestProcessor(workspace, policy, approvals)
    executor = ActionExecutor(
        workspace, policy, approvals, processor, events, retry_policy=retry_policy
    )
    return executor, events, approvals


def _context(workspace, space, user, fixed_now) -> ExecutionContext:
    return ExecutionContext(
        workspace_id=workspace.id,
        space_id=space.id,
        actor=Actor(id=user.id, workspace_id=workspace.id),
        agent_settings=resolve_agent_settings(workspace.settings),
        now=fixed_now,
    )


def test_unsupported_method_is_skipped(sqlite_session_factory, seed, fixed_now) -> None:
    """Unknown methods produce a skipped result without dispatch."""
    workspace = seed.workspace()
    space = seed.space(workspace.id)
    user = seed.user(workspace.id)
    executor, _, _ = _build(sqlite_session_factory)

    result = executor.execute(
        parse_action({"method": "workspace.delete", "params": {}}),
        _context(workspace, space, user, fixed_now),
    )

    assert result.as_dict() == {
        "method": "workspace.delete",
        "status": "skipped:unsupported",
        "phase": "skipped",
        "reason": "unsupported-method",
    }


def test_disabled_writes_create_approval(sqlite_session_factory, seed, fixed_now) -> None:
    """Task writes turned off route the action to an approval token."""
    workspace = seed.workspace(agent={"allowTaskWrites": False})
    space = seed.space(workspace.id)
    user = seed.user(workspace.id)
    executor, events, approvals = _build(sqlite_session_factory)
    created = []
    events.subscribe(APPROVAL_CREATED, created.append)

    result = executor.execute(
        TaskCreateAction(params={"title": "Draft abstract"}),
        _context(workspace, space, user, fixed_now),
    )

    token = result.status.split(":", 1)[1]
    assert result.phase == "approval"
    assert result.reason == "writes-disabled"
    assert created[0].payload["token"] == token
    assert approvals.get_approval(token, user_id=user.id).method == "task.create"


def test_denied_method_is_reported(sqlite_session_factory, seed, fixed_now) -> None:
    """Denied methods return a denied status carrying the reason."""
    workspace = seed.workspace(
        agent={"allowTaskWrites": True, "policy": {"deny": ["task.create"]}}
    )
    space = seed.space(workspace.id)
    user = seed.user(workspace.id)
    executor, _, _ = _build(sqlite_session_factory)

    result = executor.execute(
        TaskCreateAction(params={"title": "Nope"}),
        _context(workspace, space, user, fixed_now),
    )

    assert result.status == "denied:policy-deny"
    assert result.phase == "denied"


def test_allowed_write_is_applied(sqlite_session_factory, seed, fixed_now) -> None:
    """Allowed writes run through the processor and persist the row."""
    workspace = seed.workspace(agent={"allowTaskWrites": True})
    space = seed.space(workspace.id)
    user = seed.user(workspace.id)
    executor, events, _ = _build(sqlite_session_factory)
    outcomes = []
    events.subscribe(ACTION_EXECUTED, outcomes.append)

    result = executor.execute(
        TaskCreateAction(params={"title": "Run ablation", "priority": "HIGH"}),
        _context(workspace, space, user, fixed_now),
    )

    assert (result.status, result.phase, result.attempts) == ("applied", "executed", 1)
    assert outcomes[0].payload["result"]["status"] == "applied"
    with sqlite_session_factory() as session:
        task = session.query(Task).one()
    assert (task.title, task.priority, task.creator_id) == ("Run ablation", "high", user.id)


def test_existing_daily_focus_skips_page(sqlite_session_factory, seed, fixed_now) -> None:
    """A second daily focus page for the same day is skipped."""
    workspace = seed.workspace(agent={"allowPageWrites": True})
    space = seed.space(workspace.id)
    user = seed.user(workspace.id)
    seed.page(workspace.id, space.id, "Daily Focus 2025-03-12")
    executor, _, _ = _build(sqlite_session_factory)

    result = executor.execute(
        PageCreateAction(params={"title": "Daily focus for today"}),
        _context(workspace, space, user, fixed_now),
    )

    assert result.status == "skipped:daily-focus-exists"
    assert result.phase == "skipped"


def test_second_daily_focus_run_is_skipped(sqlite_session_factory, seed, fixed_now) -> None:
    """Running the same daily focus action twice creates one page."""
    workspace = seed.workspace(agent={"allowPageWrites": True})
    space = seed.space(workspace.id)
    user = seed.user(workspace.id)
    executor, _, _ = _build(sqlite_session_factory)
    context = _context(workspace, space, user, fixed_now)

    first = executor.execute(PageCreateAction(params={"title": "Daily Focus"}), context)
    second = executor.execute(PageCreateAction(params={"title": "Daily Focus"}), context)

    assert (first.status, second.status) == ("applied", "skipped:daily-focus-exists")
    with sqlite_session_factory() as session:
        titles = [page.title for page in session.query(Page).all()]
    assert titles == ["Daily Focus 2025-03-12"]


def test_generated_title_is_normalized(sqlite_session_factory, seed, fixed_now) -> None:
    """Generated page kinds are created under their canonical title."""
    workspace = seed.workspace(agent={"allowPageWrites": True})
    space = seed.space(workspace.id)
    user = seed.user(workspace.id)
    executor, _, _ = _build(sqlite_session_factory)
    repo = WorkspaceRepository(sqlite_session_factory)

    result = executor.execute(
        PageCreateAction(params={"title": "weekly review draft"}),
        _context(workspace, space, user, fixed_now),
    )

    assert result.status == "applied"
    assert repo.page_title_exists(space.id, f"Weekly Review {week_key(fixed_now)}")


def test_transient_error_retries_once(sqlite_session_factory, seed, fixed_now) -> None:
    """Transient failures are retried up to the attempt limit."""
    workspace = seed.workspace(agent={"allowTaskWrites": True})
    space = seed.space(workspace.id)
    user = seed.user(workspace.id)
    processor = ScriptedProcessor("rate limit exceeded")
    executor, _, _ = _build(sqlite_session_factory, processor)

    result = executor.execute(
        TaskCreateAction(params={"title": "Retry me"}),
        _context(workspace, space, user, fixed_now),
    )

    assert (result.status, result.attempts, result.error) == ("failed", 2, "rate limit exceeded")
    assert len(processor.calls) == 2


def test_retry_policy_sets_attempt_limit(sqlite_session_factory, seed, fixed_now) -> None:
    """A supplied retry policy overrides the configured attempt limit."""
    workspace = seed.workspace(agent={"allowTaskWrites": True})
    space = seed.space(workspace.id)
    user = seed.user(workspace.id)
    processor = ScriptedProcessor("Service unavailable")
    policy = RetryPolicy(max_attempts=3, backoff_strategy="none", backoff_base_seconds=0)
    executor, _, _ = _build(sqlite_session_factory, processor, retry_policy=policy)

    result = executor.execute(
        TaskCreateAction(params={"title": "Retry me"}),
        _context(workspace, space, user, fixed_now),
    )

    assert (result.status, result.attempts) == ("failed", 3)
    assert len(processor.calls) == 3


def test_permanent_error_is_not_retried(sqlite_session_factory, seed, fixed_now) -> None:
    """Non-transient failures stop after the first attempt."""
    workspace = seed.workspace(agent={"allowTaskWrites": True})
    space = seed.space(workspace.id)
    user = seed.user(workspace.id)
    processor = ScriptedProcessor("invalid field")
    executor, _, _ = _build(sqlite_session_factory, processor)

    result = executor.execute(
        TaskCreateAction(params={"title": "Fail once"}),
        _context(workspace, space, user, fixed_now),
    )

    assert (result.status, result.attempts) == ("failed", 1)


def test_processor_requires_and_consumes_approval(sqlite_session_factory, seed) -> None:
    """Gated requests return a token that authorizes exactly one retry."""
    workspace = seed.workspace(agent={"allowTaskWrites": False})
    space = seed.space(workspace.id)
    user = seed.user(workspace.id)
    repo = WorkspaceRepository(sqlite_session_factory)
    approvals = ApprovalLedger(sqlite_session_factory, ApprovalConfig())
    processor = RequestProcessor(repo, AgentPolicyService(approvals), approvals)
    actor = Actor(id=user.id, workspace_id=workspace.id)
    params = {"workspaceId": workspace.id, "spaceId": space.id, "title": "Gated"}

    first = processor.process_request(
        {"jsonrpc": "2.0", "id": 1, "method": "task.create", "params": params}, actor
    )
    token = first["error"]["data"]["approvalToken"]
    second = processor.process_request(
        {
            "jsonrpc": "2.0",
            "id": 2,
            "method": "task.create",
            "params": {**params, "approvalToken": token},
        },
        actor,
    )
    replay = processor.process_request(
        {
            "jsonrpc": "2.0",
            "id": 3,
            "method": "task.create",
            "params": {**params, "approvalToken": token},
        },
        actor,
    )

    assert first["error"]["code"] == APPROVAL_REQUIRED
    assert first["error"]["data"]["reason"] == "writes-disabled"
    assert second["result"]["title"] == "Gated"
    assert replay["error"]["code"] == APPROVAL_REQUIRED


def test_processor_rejects_foreign_workspace(sqlite_session_factory, seed) -> None:
    """Params scoped to another workspace are refused."""
    workspace = seed.workspace(agent={"allowTaskWrites": True})
    space = seed.space(workspace.id)
    user = seed.user(workspace.id)
    repo = WorkspaceRepository(sqlite_session_factory)
    approvals = ApprovalLedger(sqlite_session_factory, ApprovalConfig())
    processor = RequestProcessor(repo, AgentPolicyService(approvals), approvals)

    response = processor.process_request(
        {
            "jsonrpc": "2.0",
            "id": 7,
            "method": "task.create",
            "params": {"workspaceId": "other", "spaceId": space.id, "title": "Sneaky"},
        },
        Actor(id=user.id, workspace_id=workspace.id),
    )

    assert response["id"] == 7
    assert response["error"]["code"] == PERMISSION_DENIED
