"""Horizon planning: quarterly, monthly, weekly and daily plans per space.

Plans are stored as agent memories tagged ``plan:<horizon>`` and
``plan-status:<status>``. Long and mid horizon plans start ``pending`` and
need an explicit approve or reject; short and daily plans are ``active``
immediately. A cascade pass regenerates every stale horizon plus any horizon
whose upstream was regenerated in the same pass.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from agent.events import EventOutbox, plan_generated, plan_reviewed
from agent.memory import AgentMemoryService, MemoryContextBuilder, MemoryRecord
from agent.review_prompts import AgentReviewPromptsService
from agent.settings import AgentSettings, resolve_agent_settings
from agent.triage import TriageService
from agent.workspace import SpaceWithSettings, WorkspaceRepository
from config import AgentRuntimeConfig
from errors import AgentNotFoundError, AgentValidationError
from llm import TextGenerator
from time_utils import isoformat_utc, to_utc, utc_now, week_key

logger = logging.getLogger(__name__)

HORIZONS = ("long", "mid", "short", "daily")
HORIZON_DAYS = {"long": 90, "mid": 30, "short": 7, "daily": 1}
HORIZON_LABELS = {
    "long": "Quarterly",
    "mid": "Monthly",
    "short": "Weekly",
    "daily": "Daily",
}
UPSTREAM = {"mid": "long", "short": "mid", "daily": "short"}
HORIZON_FOCUS = {
    "long": "Define strategic outcomes, themes, and major milestones for the next quarter.",
    "mid": "Define monthly objectives, milestones, and key risks.",
    "short": "Define weekly priorities, commitments, and sequencing.",
    "daily": "Define today's focus, plan, and timebox.",
}
PLAN_UNAVAILABLE = "Plan unavailable."
PLAN_SOURCE = "agent-plan"
_STATUS_TAG_PREFIX = "plan-status:"
_QUESTION_PREFIX = re.compile(r"^[\s*\d.-]+")
_MAX_QUESTIONS = 5


@dataclass(frozen=True)
class PlanDiff:
    """Line-level change summary between two plan texts."""

    summary: str
    added: int = 0
    removed: int = 0
    change_ratio: float = 0.0
    significance: str = "none"
    added_samples: list[str] = field(default_factory=list)
    removed_samples: list[str] = field(default_factory=list)

    def metrics(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "added": self.added,
            "removed": self.removed,
            "changeRatio": self.change_ratio,
            "significance": self.significance,
        }
        if self.significance not in ("none", "new"):
            data["addedSamples"] = self.added_samples
            data["removedSamples"] = self.removed_samples
        return data


@dataclass(frozen=True)
class PlanResult:
    """A stored plan and its review state."""

    id: str
    horizon: str
    status: str
    text: str
    change_summary: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "horizon": self.horizon,
            "status": self.status,
            "text": self.text,
            "changeSummary": self.change_summary,
        }


def _plan_lines(text: str) -> list[str]:
    return [line.strip() for line in text.split("\n") if line.strip()]


def summarize_plan_diff(previous_text: str | None, next_text: str | None) -> PlanDiff:
    """Compare two plans line by line.

    An empty next plan reports ``none``; a missing previous plan reports
    ``new`` with a ratio of 1. Otherwise the ratio is the count of added plus
    removed lines over the longer plan: 0.35 and up is major, 0.15 and up is
    moderate, anything less is minor.
    """
    if not next_text:
        return PlanDiff(summary=PLAN_UNAVAILABLE)
    if not previous_text:
        return PlanDiff(summary="New plan generated.", change_ratio=1.0, significance="new")

    previous_lines = _plan_lines(previous_text)
    next_lines = _plan_lines(next_text)
    previous_set = set(previous_lines)
    next_set = set(next_lines)
    added = [line for line in next_lines if line not in previous_set]
    removed = [line for line in previous_lines if line not in next_set]
    base = max(len(previous_lines), len(next_lines), 1)
    ratio = (len(added) + len(removed)) / base
    if ratio >= 0.35:
        significance = "major"
    elif ratio >= 0.15:
        significance = "moderate"
    else:
        significance = "minor"
    return PlanDiff(
        summary=f"Changes: +{len(added)}/-{len(removed)} ({significance}).",
        added=len(added),
        removed=len(removed),
        change_ratio=round(ratio, 2),
        significance=significance,
        added_samples=added[:3],
        removed_samples=removed[:3],
    )


def parse_questions(text: str) -> list[str]:
    """Strip bullet and number prefixes and keep up to five non-empty lines."""
    if not text:
        return []
    lines = [_QUESTION_PREFIX.sub("", line).strip() for line in text.split("\n")]
    return [line for line in lines if line][:_MAX_QUESTIONS]


def plan_settings_enabled(agent_settings: AgentSettings) -> bool:
    """Return True when planning may run for these settings."""
    return agent_settings.enabled and agent_settings.enable_planner_loop


def is_plan_fresh(memory: MemoryRecord | None, horizon: str, now: datetime) -> bool:
    """Return True when the plan is younger than its horizon window."""
    if memory is None or memory.timestamp is None:
        return False
    window = timedelta(days=HORIZON_DAYS.get(horizon, 1))
    return to_utc(now) - to_utc(memory.timestamp) < window


def build_plan_prompt(
    *,
    space_name: str,
    horizon: str,
    goals_summary: str,
    triage_summary: str,
    memory_summary: str,
    profile_context: str = "",
    upstream_summary: str = "",
    prior_summary: str = "",
) -> str:
    """Build the markdown planning prompt for one horizon."""
    label = HORIZON_LABELS[horizon]
    lines = [
        "You are the workspace's planning agent.",
        f"Space: {space_name}",
        f"{label} planning.",
        HORIZON_FOCUS[horizon],
        f"Goals: {goals_summary or 'none'}.",
        f"Triage: {triage_summary}.",
        f"Recent context: {memory_summary or 'none'}.",
    ]
    if profile_context:
        lines.append(f"User profile: {profile_context}.")
    if upstream_summary:
        lines.append(f"Upstream plan summary: {upstream_summary}.")
    if prior_summary:
        lines.append(f"Previous {label.lower()} plan: {prior_summary}.")
    lines.append("Return markdown with sections: Focus, Plan, Next Actions, Timebox, Risks.")
    return "\n".join(lines)


class AgentPlannerService:
    """Generate, cascade and review horizon plans."""

    def __init__(
        self,
        workspace: WorkspaceRepository,
        memory: AgentMemoryService,
        memory_context: MemoryContextBuilder,
        triage: TriageService,
        review_prompts: AgentReviewPromptsService,
        events: EventOutbox,
        llm: TextGenerator,
        runtime: AgentRuntimeConfig | None = None,
    ) -> None:
        """Initialize the planner with its collaborators."""
        self._workspace = workspace
        self._memory = memory
        self._memory_context = memory_context
        self._triage = triage
        self._review_prompts = review_prompts
        self._events = events
        self._llm = llm
        self._runtime = runtime or AgentRuntimeConfig.from_settings()

    def latest_plan(self, workspace_id: str, space_id: str, horizon: str) -> MemoryRecord | None:
        """Return the newest plan memory for a horizon."""
        entries = self._memory.query_memories(
            workspace_id,
            space_id=space_id,
            tags=[f"plan:{horizon}"],
            sources=[PLAN_SOURCE],
            limit=1,
        )
        return entries[0] if entries else None

    def generate_plan_for_space(
        self,
        space: SpaceWithSettings,
        horizon: str = "daily",
        *,
        cascade_from: str | None = None,
        now: datetime | None = None,
    ) -> PlanResult | None:
        """Generate and store one horizon plan, or None when planning is off."""
        if horizon not in HORIZONS:
            raise AgentValidationError(f"Unknown plan horizon: {horizon}")
        agent_settings = resolve_agent_settings(space.settings)
        if not plan_settings_enabled(agent_settings):
            return None
        current = to_utc(now or utc_now())

        triage = self._triage.daily_triage_summary(
            space.space_id,
            space.workspace_id,
            agent_settings=agent_settings,
            limit=5,
            now=current,
        )
        goals = self._workspace.list_goals(space.workspace_id, space.space_id)
        context = self._memory_context.build_context(
            space.workspace_id,
            space.space_id,
            include_recent=False,
            include_project=False,
            include_topic=False,
            short_term_limit=12,
            profile_tags=["user-profile"],
            profile_limit=1,
            now=current,
        )
        goals_summary = ", ".join(f"{goal.name} ({goal.horizon})" for goal in goals[:10])
        memory_summary = context.short_term_summary()

        prior = self.latest_plan(space.workspace_id, space.space_id, horizon)
        prior_text = _plan_text(prior)
        prior_summary = (prior.summary or "")[:300] if prior else ""
        upstream_summary = ""
        if cascade_from:
            upstream = self.latest_plan(space.workspace_id, space.space_id, cascade_from)
            upstream_summary = (upstream.summary or "")[:300] if upstream else ""

        prompt = build_plan_prompt(
            space_name=space.space_name,
            horizon=horizon,
            goals_summary=goals_summary,
            triage_summary=triage.describe(),
            memory_summary=memory_summary,
            profile_context=context.profile_summary(),
            upstream_summary=upstream_summary,
            prior_summary=prior_summary,
        )
        plan_text = self._generate(prompt, space.space_id, "planner") or PLAN_UNAVAILABLE

        label = HORIZON_LABELS[horizon]
        diff = summarize_plan_diff(prior_text, plan_text)
        status = "pending" if horizon in ("long", "mid") else "active"
        record = self._memory.ingest_memory(
            space.workspace_id,
            space_id=space.space_id,
            source=PLAN_SOURCE,
            summary=f"{label} plan for {space.space_name}",
            content={
                "text": plan_text,
                "horizon": horizon,
                "cascadeFrom": cascade_from,
                "windowDays": HORIZON_DAYS[horizon],
                "status": status,
                "changeSummary": diff.summary,
                "changeMetrics": diff.metrics(),
                "previousPlanId": prior.id if prior else None,
            },
            tags=["agent", "plan", f"plan:{horizon}", f"{_STATUS_TAG_PREFIX}{status}"],
            timestamp=current,
        )
        self._events.publish(
            plan_generated(
                space.workspace_id,
                space.space_id,
                plan_id=record.id,
                horizon=horizon,
                status=status,
                change_summary=diff.summary,
            ),
            now=current,
        )

        if status == "pending":
            self._review_prompts.create_prompts(
                workspace_id=space.workspace_id,
                space_id=space.space_id,
                week_key=week_key(current),
                questions=[
                    f"{label} plan update for {space.space_name}. {diff.summary} "
                    "Review and confirm adjustments."
                ],
                source="plan-cascade",
                metadata={
                    "planId": record.id,
                    "horizon": horizon,
                    "status": status,
                    "changeSummary": diff.summary,
                },
                now=current,
            )

        if agent_settings.enable_proactive_questions and horizon == "daily":
            self._ask_proactive_questions(
                space,
                triage_counts=(triage.inbox_count, triage.waiting_count, triage.someday_count),
                goal_focus=", ".join(
                    f"{goal.name}({goal.task_count})" for goal in triage.goal_focus
                ),
                goals_summary=goals_summary,
                memory_summary=memory_summary,
                now=current,
            )

        logger.info(
            "plan generated: space_id=%s horizon=%s status=%s change=%s",
            space.space_id,
            horizon,
            status,
            diff.significance,
        )
        return PlanResult(
            id=record.id,
            horizon=horizon,
            status=status,
            text=plan_text,
            change_summary=diff.summary,
        )

    def run_planning_cascade(
        self,
        space: SpaceWithSettings,
        *,
        now: datetime | None = None,
    ) -> dict[str, bool] | None:
        """Regenerate stale horizons, top down; return which were refreshed."""
        agent_settings = resolve_agent_settings(space.settings)
        if not plan_settings_enabled(agent_settings):
            return None
        current = to_utc(now or utc_now())
        refreshed = {horizon: False for horizon in HORIZONS}
        for horizon in HORIZONS:
            latest = self.latest_plan(space.workspace_id, space.space_id, horizon)
            upstream = UPSTREAM.get(horizon)
            stale = not is_plan_fresh(latest, horizon, current)
            if not stale and not (upstream and refreshed[upstream]):
                continue
            self.generate_plan_for_space(space, horizon, cascade_from=upstream, now=current)
            refreshed[horizon] = True
        return refreshed

    def approve_plan(
        self,
        plan_id: str,
        *,
        workspace_id: str,
        user_id: str,
        space_id: str | None = None,
        now: datetime | None = None,
    ) -> PlanResult:
        """Move a pending plan to active."""
        return self._review_plan(
            plan_id,
            status="active",
            workspace_id=workspace_id,
            user_id=user_id,
            space_id=space_id,
            now=now,
        )

    def reject_plan(
        self,
        plan_id: str,
        *,
        workspace_id: str,
        user_id: str,
        space_id: str | None = None,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> PlanResult:
        """Move a pending plan to rejected, keeping the reason."""
        return self._review_plan(
            plan_id,
            status="rejected",
            workspace_id=workspace_id,
            user_id=user_id,
            space_id=space_id,
            reason=reason,
            now=now,
        )

    def run_planner_loop(self, *, now: datetime | None = None) -> int:
        """Run the planning cascade for every space; return spaces processed."""
        if not self._runtime.llm_api_key_present:
            logger.debug("Skipping planner loop: no LLM API key configured")
            return 0
        processed = 0
        for space in self._workspace.list_spaces_with_settings():
            try:
                self.run_planning_cascade(space, now=now)
            except Exception as exc:
                logger.warning(
                    "planner loop failed: space_id=%s error=%s",
                    space.space_id,
                    exc,
                )
                continue
            processed += 1
        return processed

    def _review_plan(
        self,
        plan_id: str,
        *,
        status: str,
        workspace_id: str,
        user_id: str,
        space_id: str | None,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> PlanResult:
        record = self._memory.get_memory(plan_id)
        if (
            record is None
            or record.workspace_id != workspace_id
            or record.source != PLAN_SOURCE
            or (space_id and record.space_id != space_id)
        ):
            raise AgentNotFoundError("Plan not found")
        content = dict(record.content) if isinstance(record.content, dict) else {}
        current_status = content.get("status")
        if current_status != "pending":
            raise AgentValidationError(
                f"Plan is {current_status or 'unknown'}, only pending plans can be reviewed"
            )

        reviewed_at = isoformat_utc(to_utc(now or utc_now()))
        content["status"] = status
        if status == "active":
            content["approvedAt"] = reviewed_at
            content["approvedBy"] = user_id
        else:
            content["rejectedAt"] = reviewed_at
            content["rejectedBy"] = user_id
            content["rejectionReason"] = reason
        tags = [tag for tag in record.tags if not tag.startswith(_STATUS_TAG_PREFIX)]
        tags.append(f"{_STATUS_TAG_PREFIX}{status}")
        self._memory.update_memory(plan_id, content=content, tags=tags)

        self._events.publish(
            plan_reviewed(
                workspace_id,
                record.space_id,
                plan_id=plan_id,
                horizon=content.get("horizon"),
                status=status,
                user_id=user_id,
                reason=reason,
            ),
            now=now,
        )
        logger.info("plan reviewed: plan_id=%s status=%s", plan_id, status)
        return PlanResult(
            id=plan_id,
            horizon=str(content.get("horizon") or ""),
            status=status,
            text=str(content.get("text") or ""),
            change_summary=str(content.get("changeSummary") or ""),
        )

    def _ask_proactive_questions(
        self,
        space: SpaceWithSettings,
        *,
        triage_counts: tuple[int, int, int],
        goal_focus: str,
        goals_summary: str,
        memory_summary: str,
        now: datetime,
    ) -> list[str]:
        inbox, waiting, someday = triage_counts
        lines = [
            "You are the workspace's proactive assistant.",
            "Suggest 3-5 concise questions to clarify priorities or unblock work.",
            "Use this context:",
            f"Triage counts: inbox={inbox}, waiting={waiting}, someday={someday}.",
        ]
        if goal_focus:
            lines.append(f"Goal focus: {goal_focus}.")
        lines.extend(
            [
                f"Goals: {goals_summary or 'none'}.",
                f"Recent context: {memory_summary or 'none'}.",
                "Return the questions as a bullet list.",
            ]
        )
        questions = parse_questions(self._generate("\n".join(lines), space.space_id, "questions"))
        if questions:
            self._memory.ingest_memory(
                space.workspace_id,
                space_id=space.space_id,
                source="agent-proactive-questions",
                summary=f"Proactive questions for {space.space_name}",
                content={"questions": questions},
                tags=["agent", "proactive-question"],
                timestamp=now,
            )
        return questions

    def _generate(self, prompt: str, space_id: str, purpose: str) -> str:
        if not self._llm.configured:
            return ""
        try:
            return self._llm.generate_text(prompt)
        except Exception as exc:
            logger.warning(
                "planner completion failed: space_id=%s purpose=%s error=%s",
                space_id,
                purpose,
                exc,
            )
            return ""


def _plan_text(record: MemoryRecord | None) -> str:
    if record is None or not isinstance(record.content, dict):
        return ""
    return str(record.content.get("text") or "")
