"""Apply proposed agent actions behind policy, approval and retry rules."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from agent.actions import ActionRequest, ActionResult, PageCreateAction, UnsupportedAction
from agent.approvals import ApprovalLedger
from agent.dispatch import APPROVAL_REQUIRED, Actor, RequestProcessor
from agent.events import EventOutbox, action_executed, approval_created
from agent.policy import AgentPolicyService
from agent.settings import AgentSettings
from agent.workspace import WorkspaceRepository
from config import settings
from scheduler.retry_policy import (
    RetryPolicy,
    error_message,
    is_transient_error,
    resolve_retry_policy,
    should_retry,
)
from time_utils import format_iso_date, format_year_month, utc_now, week_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionContext:
    """Scope and identity one batch of actions runs under."""

    workspace_id: str
    space_id: str
    actor: Actor
    agent_settings: AgentSettings
    now: datetime = field(default_factory=utc_now)
    approval_ttl_seconds: int | None = None


@dataclass(frozen=True)
class _TitleGuard:
    marker: str
    reason: str
    label: str


_TITLE_GUARDS = (
    _TitleGuard("daily focus", "daily-focus-exists", "Daily Focus"),
    _TitleGuard("weekly review", "weekly-review-exists", "Weekly Review"),
    _TitleGuard("monthly review", "monthly-review-exists", "Monthly Review"),
    _TitleGuard("project recap", "project-recap-exists", "Project Recap"),
)


def generated_page_title(guard_label: str, params: dict[str, Any], now: datetime) -> str:
    """Return the canonical title for an auto-generated page kind."""
    if guard_label == "Daily Focus":
        return f"Daily Focus {format_iso_date(now)}"
    if guard_label == "Weekly Review":
        return f"Weekly Review {week_key(now)}"
    if guard_label == "Monthly Review":
        return f"Monthly Review {format_year_month(now)}"
    project_id = params.get("projectId")
    if not isinstance(project_id, str):
        project_id = "general"
    return f"Project Recap {project_id} {format_iso_date(now)}"


class ActionExecutor:
    """Run one proposed action to a terminal :class:`ActionResult`."""

    def __init__(
        self,
        workspace: WorkspaceRepository,
        policy: AgentPolicyService,
        approvals: ApprovalLedger,
        processor: RequestProcessor,
        events: EventOutbox,
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        """Initialize the executor with its collaborators."""
        self._workspace = workspace
        self._policy = policy
        self._approvals = approvals
        self._processor = processor
        self._events = events
        self._retry_policy = resolve_retry_policy(retry_policy)

    def execute(self, action: ActionRequest, context: ExecutionContext) -> ActionResult:
        """Return the outcome for one action; never raises."""
        try:
            result = self._execute(action, context)
        except Exception as exc:
            logger.exception(
                "agent action crashed: method=%s space_id=%s",
                action.method,
                context.space_id,
            )
            result = ActionResult(
                method=action.method,
                status="failed",
                phase="failed",
                error=error_message(exc) or "Unknown error",
            )
        self._events.publish(
            action_executed(context.workspace_id, context.space_id, result.as_dict()),
            now=context.now,
        )
        logger.info(
            "agent action result",
            extra={
                "method": result.method,
                "status": result.status,
                "phase": result.phase,
                "space_id": context.space_id,
            },
        )
        return result

    def _execute(self, action: ActionRequest, context: ExecutionContext) -> ActionResult:
        if isinstance(action, UnsupportedAction) or not self._policy.is_supported_method(
            action.method
        ):
            return ActionResult(
                method=action.method or "unknown",
                status="skipped:unsupported",
                phase="skipped",
                reason="unsupported-method",
            )

        params = action.prepare(context.workspace_id, context.space_id)

        if isinstance(action, PageCreateAction) and isinstance(params.get("title"), str):
            skipped = self._apply_title_guard(params, context)
            if skipped is not None:
                return skipped

        decision = self._policy.evaluate(action.method, context.agent_settings)
        if decision.decision == "deny":
            return ActionResult(
                method=action.method,
                status=f"denied:{decision.reason}",
                phase="denied",
                reason=decision.reason,
            )
        if decision.decision == "approval":
            return self._request_approval(action.method, params, decision.reason, context)
        return self._dispatch(action.method, params, context)

    def _apply_title_guard(
        self,
        params: dict[str, Any],
        context: ExecutionContext,
    ) -> ActionResult | None:
        """Rewrite generated titles and skip when the page already exists."""
        lowered = params["title"].lower()
        for guard in _TITLE_GUARDS:
            if guard.marker not in lowered:
                continue
            title = generated_page_title(guard.label, params, context.now)
            if self._workspace.page_title_exists(context.space_id, title):
                return ActionResult(
                    method="page.create",
                    status=f"skipped:{guard.reason}",
                    phase="skipped",
                    reason=guard.reason,
                )
            params["title"] = title
            return None
        return None

    def _request_approval(
        self,
        method: str,
        params: dict[str, Any],
        reason: str,
        context: ExecutionContext,
    ) -> ActionResult:
        ttl = context.approval_ttl_seconds or settings.approvals.loop_ttl_seconds
        grant = self._approvals.create_approval(
            context.actor.id,
            method,
            params,
            ttl,
            now=context.now,
        )
        self._events.publish(
            approval_created(
                context.workspace_id,
                context.space_id,
                token=grant.token,
                method=method,
                reason=reason,
            ),
            now=context.now,
        )
        return ActionResult(
            method=method,
            status=f"approval:{grant.token}",
            phase="approval",
            reason=reason,
        )

    def _dispatch(
        self,
        method: str,
        params: dict[str, Any],
        context: ExecutionContext,
    ) -> ActionResult:
        attempt = 0
        last_error: Any = None
        while should_retry(attempt, self._retry_policy.max_attempts):
            attempt += 1
            request = {
                "jsonrpc": "2.0",
                "method": method,
                "params": params,
                "id": int(time.time() * 1000),
            }
            try:
                response = self._processor.process_request(request, context.actor)
            except Exception as exc:
                last_error = exc
            else:
                error = response.get("error")
                if not error:
                    return ActionResult(
                        method=method,
                        status="applied",
                        phase="executed",
                        attempts=attempt,
                    )
                if error.get("code") == APPROVAL_REQUIRED:
                    token = (error.get("data") or {}).get("approvalToken")
                    if token:
                        return ActionResult(
                            method=method,
                            status=f"approval:{token}",
                            phase="approval",
                            attempts=attempt,
                            reason="approval-required",
                        )
                last_error = error
            if not is_transient_error(last_error):
                break
            logger.info(
                "transient action failure, retrying: method=%s attempt=%s",
                method,
                attempt,
            )
        return ActionResult(
            method=method,
            status="failed",
            phase="failed",
            attempts=attempt,
            error=error_message(last_error) or "Unknown error",
        )
