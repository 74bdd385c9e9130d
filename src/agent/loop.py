"""Autonomous agent loop: plan with the LLM, then execute bounded actions."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from agent.actions import ActionResult, parse_action
from agent.dispatch import Actor
from agent.events import EventOutbox, loop_completed
from agent.executor import ActionExecutor, ExecutionContext
from agent.memory import MemoryContextBuilder
from agent.review_prompts import AgentReviewPromptsService
from agent.settings import AgentSettings
from agent.triage import TriageService
from agent.workspace import WorkspaceRepository
from config import AgentRuntimeConfig
from errors import AgentAccessError
from llm import TextGenerator
from time_utils import utc_now, week_key

logger = logging.getLogger(__name__)

MAX_ACTIONS = 3
NO_ACTIONS_SUMMARY = "No actions proposed."
_FALLBACK_SUMMARY_CHARS = 180
_LOOP_METHODS = ("task.create", "task.update", "page.create", "project.create")


@dataclass(frozen=True)
class LoopPlan:
    """Plan returned by the model for one loop run."""

    summary: str
    actions: list[Any] = field(default_factory=list)
    review_questions: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "actions": self.actions,
            "reviewQuestions": self.review_questions,
        }


@dataclass(frozen=True)
class LoopSummary:
    """Result returned to the caller of a loop run."""

    summary: str
    actions: list[ActionResult]

    def as_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "actions": [result.as_dict() for result in self.actions],
        }


def extract_json(text: str) -> dict[str, Any] | None:
    """Parse the span from the first ``{`` to the last ``}`` as a JSON object."""
    if not text:
        return None
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    try:
        parsed = json.loads(text[start : end + 1])
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def parse_plan(text: str) -> LoopPlan:
    """Turn raw model output into a plan, falling back to truncated text."""
    parsed = extract_json(text)
    if parsed and parsed.get("summary"):
        actions = parsed.get("actions")
        questions = parsed.get("reviewQuestions")
        return LoopPlan(
            summary=str(parsed["summary"]),
            actions=list(actions) if isinstance(actions, list) else [],
            review_questions=(
                [str(question) for question in questions]
                if isinstance(questions, list)
                else []
            ),
        )
    if text:
        return LoopPlan(summary=text[:_FALLBACK_SUMMARY_CHARS])
    return LoopPlan(summary=NO_ACTIONS_SUMMARY)


def build_loop_prompt(
    *,
    space_name: str,
    goals_summary: str,
    memory_summary: str,
    triage_summary: str,
    profile_context: str = "",
) -> str:
    """Build the planning prompt for one loop run."""
    lines = [
        "You are the workspace's autonomous agent.",
        "Generate a concise JSON plan with actionable next steps.",
        "Return ONLY JSON with fields: summary (string), actions (array), "
        "reviewQuestions (array, optional). No markdown.",
        f'Each action: {{ "method": "{"|".join(_LOOP_METHODS)}", '
        '"params": { ... }, "rationale": "..." }',
        f"Only include up to {MAX_ACTIONS} actions that are safe and helpful.",
        "If you have follow-up questions for the weekly review, include them in "
        "reviewQuestions (array of strings). Use an empty array if none.",
        f"Space: {space_name}",
        f"Goals: {goals_summary or 'none'}",
        f"Recent context: {memory_summary or 'none'}",
        f"Triage: {triage_summary}",
    ]
    if profile_context:
        lines.append(f"User profile: {profile_context}")
    return "\n".join(lines)


class AgentLoopService:
    """Run the plan-then-execute loop for one space."""

    def __init__(
        self,
        workspace: WorkspaceRepository,
        triage: TriageService,
        memory_context: MemoryContextBuilder,
        review_prompts: AgentReviewPromptsService,
        executor: ActionExecutor,
        events: EventOutbox,
        llm: TextGenerator,
        runtime: AgentRuntimeConfig | None = None,
    ) -> None:
        """Initialize the loop with its collaborators."""
        self._workspace = workspace
        self._triage = triage
        self._memory_context = memory_context
        self._review_prompts = review_prompts
        self._executor = executor
        self._events = events
        self._llm = llm
        self._runtime = runtime or AgentRuntimeConfig.from_settings()

    def run_loop(
        self,
        space_id: str,
        actor: Actor,
        *,
        agent_settings: AgentSettings | None = None,
        now: datetime | None = None,
    ) -> LoopSummary:
        """Plan and execute at most three actions in the actor's space.

        Raises:
            AgentAccessError: The agent or autonomous loop is disabled, or the
                space does not belong to the actor's workspace.
        """
        workspace_id = actor.workspace_id
        agent_settings = agent_settings or self._workspace.get_agent_settings(workspace_id)
        if not agent_settings.enabled or not agent_settings.enable_autonomous_loop:
            raise AgentAccessError("Autonomous loop disabled")
        space = self._workspace.get_space(space_id, workspace_id)
        if space is None:
            raise AgentAccessError("Space not found")
        current = now or utc_now()

        prompt = self._build_prompt(space.name, space_id, actor, agent_settings, current)
        plan = LoopPlan(summary=NO_ACTIONS_SUMMARY)
        raw_response = ""
        if self._llm.configured:
            try:
                raw_response = self._llm.generate_text(prompt)
                plan = parse_plan(raw_response)
            except Exception as exc:
                logger.warning("agent loop planning failed: space_id=%s error=%s", space_id, exc)

        if plan.review_questions:
            self._review_prompts.create_prompts(
                workspace_id=workspace_id,
                space_id=space_id,
                week_key=week_key(current),
                questions=plan.review_questions,
                source="agent-loop",
                now=current,
            )

        context = ExecutionContext(
            workspace_id=workspace_id,
            space_id=space_id,
            actor=actor,
            agent_settings=agent_settings,
            now=current,
        )
        results = [
            self._executor.execute(parse_action(raw), context)
            for raw in plan.actions[:MAX_ACTIONS]
        ]
        validation_notes = [_validation_note(result) for result in results]
        summary = plan.summary or "Agent loop executed"

        self._events.publish(
            loop_completed(
                workspace_id,
                space_id,
                summary=summary,
                content={
                    "plan": plan.as_dict(),
                    "actions": [result.as_dict() for result in results],
                    "rawResponse": raw_response,
                    "validationNotes": [note for note in validation_notes if note],
                    "phases": {
                        "planning": {"model": self._runtime.agent_model},
                        "execution": {"total": len(results)},
                    },
                },
            ),
            now=current,
        )
        logger.info(
            "agent loop finished: space_id=%s actions=%s",
            space_id,
            len(results),
        )
        return LoopSummary(summary=summary, actions=results)

    def _build_prompt(
        self,
        space_name: str,
        space_id: str,
        actor: Actor,
        agent_settings: AgentSettings,
        now: datetime,
    ) -> str:
        workspace_id = actor.workspace_id
        triage = self._triage.daily_triage_summary(
            space_id,
            workspace_id,
            agent_settings=agent_settings,
            now=now,
        )
        goals = self._workspace.list_goals(workspace_id, space_id, limit=10)
        memory = self._memory_context.build_context(
            workspace_id,
            space_id,
            user_id=actor.id,
            include_recent=False,
            include_project=False,
            include_topic=False,
            short_term_limit=10,
            profile_limit=1,
            now=now,
        )
        return build_loop_prompt(
            space_name=space_name,
            goals_summary=", ".join(f"{goal.name} ({goal.horizon})" for goal in goals),
            memory_summary=memory.short_term_summary(),
            triage_summary=triage.describe(),
            profile_context=memory.profile_summary(),
        )


def _validation_note(result: ActionResult) -> str | None:
    if result.phase == "skipped":
        if result.reason == "unsupported-method":
            return f"Skipped unsupported method: {result.method}"
        return f"Skipped {result.method}: {result.reason}"
    if result.phase == "denied":
        return f"Denied {result.method}: {result.reason}"
    if result.phase == "approval":
        return f"Approval required for {result.method}: {result.reason}"
    return None
