"""Unit tests for horizon planning and plan review."""

from __future__ import annotations

from datetime import timedelta

import pytest

from agent.container import build_agent_components
from agent.planner import PLAN_UNAVAILABLE, parse_questions, summarize_plan_diff
from config import AgentRuntimeConfig
from conftest import StubLLM
from errors import AgentNotFoundError, AgentValidationError
from time_utils import week_key

RUNTIME = AgentRuntimeConfig(agent_model="test-model", llm_api_key_present=True)


def _space(components, workspace_id, space_id):
    return next(
        space
        for space in components.workspace.list_spaces_with_settings(workspace_id)
        if space.space_id == space_id
    )


def test_identical_plans_are_a_minor_change() -> None:
    """Unchanged plan text reports no added or removed lines."""
    diff = summarize_plan_diff("Focus\n- write\n", "Focus\n- write")

    assert (diff.added, diff.removed, diff.significance) == (0, 0, "minor")
    assert diff.summary == "Changes: +0/-0 (minor)."


def test_first_plan_is_new() -> None:
    """A plan without a predecessor is reported as new."""
    diff = summarize_plan_diff(None, "Focus")

    assert diff.significance == "new"
    assert diff.change_ratio == 1.0
    assert diff.summary == "New plan generated."


def test_diff_significance_thresholds() -> None:
    """Ratios at or above 0.35 are major and at or above 0.15 moderate."""
    previous = "\n".join(f"line {index}" for index in range(10))
    moderate = previous.replace("line 0", "changed 0")
    major = previous.replace("line 0", "x").replace("line 1", "y")

    assert summarize_plan_diff(previous, moderate).significance == "moderate"
    assert summarize_plan_diff(previous, major).significance == "major"
    assert summarize_plan_diff(previous, "").summary == PLAN_UNAVAILABLE


def test_parse_questions_strips_bullets() -> None:
    """Bullets and numbering are removed and at most five questions kept."""
    text = "\n".join(["- one?", "2. two?", "* three?", "", "four?", "five?", "six?"])

    assert parse_questions(text) == ["one?", "two?", "three?", "four?", "five?"]


def test_long_plan_is_pending_with_review_prompt(
    sqlite_session_factory, seed, fixed_now
) -> None:
    """Quarterly plans wait for review and raise a weekly review prompt."""
    workspace = seed.workspace()
    space = seed.space(workspace.id)
    components = build_agent_components(
        sqlite_session_factory, StubLLM(["## Focus\nShip v2"]), RUNTIME
    )

    plan = components.planner.generate_plan_for_space(
        _space(components, workspace.id, space.id), "long", now=fixed_now
    )
    prompts = components.review_prompts.list_pending(
        workspace_id=workspace.id, space_id=space.id, week_key=week_key(fixed_now)
    )

    assert plan.status == "pending"
    assert plan.change_summary == "New plan generated."
    assert prompts[0].question.startswith("Quarterly plan update for Research.")
    assert prompts[0].metadata["planId"] == plan.id


def test_daily_plan_without_model_is_unavailable(
    sqlite_session_factory, seed, fixed_now
) -> None:
    """An unconfigured model still stores an active fallback daily plan."""
    workspace = seed.workspace()
    space = seed.space(workspace.id)
    components = build_agent_components(
        sqlite_session_factory, StubLLM(configured=False), RUNTIME
    )

    plan = components.planner.generate_plan_for_space(
        _space(components, workspace.id, space.id), "daily", now=fixed_now
    )

    assert (plan.status, plan.text) == ("active", PLAN_UNAVAILABLE)


def test_planning_disabled_returns_none(sqlite_session_factory, seed, fixed_now) -> None:
    """Spaces with the planner loop off produce no plan."""
    workspace = seed.workspace(agent={"enablePlannerLoop": False})
    space = seed.space(workspace.id)
    components = build_agent_components(sqlite_session_factory, StubLLM(["plan"]), RUNTIME)
    target = _space(components, workspace.id, space.id)

    assert components.planner.generate_plan_for_space(target, "daily", now=fixed_now) is None
    assert components.planner.run_planning_cascade(target, now=fixed_now) is None


def test_unknown_horizon_is_rejected(sqlite_session_factory, seed, fixed_now) -> None:
    """Only the four planning horizons are accepted."""
    workspace = seed.workspace()
    space = seed.space(workspace.id)
    components = build_agent_components(sqlite_session_factory, StubLLM(["plan"]), RUNTIME)

    with pytest.raises(AgentValidationError):
        components.planner.generate_plan_for_space(
            _space(components, workspace.id, space.id), "yearly", now=fixed_now
        )


def test_cascade_refreshes_stale_and_downstream(sqlite_session_factory, seed, fixed_now) -> None:
    """A cascade regenerates stale horizons and everything below them."""
    workspace = seed.workspace(agent={"enableProactiveQuestions": False})
    space = seed.space(workspace.id)
    components = build_agent_components(sqlite_session_factory, StubLLM(["plan"]), RUNTIME)
    target = _space(components, workspace.id, space.id)

    first = components.planner.run_planning_cascade(target, now=fixed_now)
    fresh = components.planner.run_planning_cascade(target, now=fixed_now + timedelta(hours=1))
    later = components.planner.run_planning_cascade(target, now=fixed_now + timedelta(days=8))

    assert first == {"long": True, "mid": True, "short": True, "daily": True}
    assert fresh == {"long": False, "mid": False, "short": False, "daily": False}
    assert later == {"long": False, "mid": False, "short": True, "daily": True}


def test_approve_and_reject_only_pending_plans(sqlite_session_factory, seed, fixed_now) -> None:
    """Pending plans can be reviewed once; other plans are refused."""
    workspace = seed.workspace()
    space = seed.space(workspace.id)
    user = seed.user(workspace.id)
    components = build_agent_components(sqlite_session_factory, StubLLM(["plan"]), RUNTIME)
    target = _space(components, workspace.id, space.id)
    mid = components.planner.generate_plan_for_space(target, "mid", now=fixed_now)
    long = components.planner.generate_plan_for_space(target, "long", now=fixed_now)
    daily = components.planner.generate_plan_for_space(target, "daily", now=fixed_now)

    approved = components.planner.approve_plan(
        mid.id, workspace_id=workspace.id, user_id=user.id, now=fixed_now
    )
    rejected = components.planner.reject_plan(
        long.id, workspace_id=workspace.id, user_id=user.id, reason="too vague", now=fixed_now
    )

    assert approved.status == "active"
    assert rejected.status == "rejected"
    stored = components.memory.get_memory(long.id)
    assert stored.content["rejectionReason"] == "too vague"
    assert "plan-status:rejected" in stored.tags
    assert "plan-status:pending" not in stored.tags
    with pytest.raises(AgentValidationError):
        components.planner.approve_plan(mid.id, workspace_id=workspace.id, user_id=user.id)
    with pytest.raises(AgentValidationError):
        components.planner.approve_plan(daily.id, workspace_id=workspace.id, user_id=user.id)
    with pytest.raises(AgentNotFoundError):
        components.planner.approve_plan(mid.id, workspace_id="other", user_id=user.id)


def test_daily_plan_stores_proactive_questions(sqlite_session_factory, seed, fixed_now) -> None:
    """Daily plans ask the model for clarifying questions when enabled."""
    workspace = seed.workspace()
    space = seed.space(workspace.id)
    components = build_agent_components(
        sqlite_session_factory,
        StubLLM(["Focus on the draft", "- What blocks the draft?\n- Who reviews it?"]),
        RUNTIME,
    )

    components.planner.generate_plan_for_space(
        _space(components, workspace.id, space.id), "daily", now=fixed_now
    )
    stored = components.memory.query_memories(
        workspace.id, space_id=space.id, tags=["proactive-question"]
    )

    assert stored[0].content["questions"] == ["What blocks the draft?", "Who reviews it?"]


def test_planner_loop_requires_api_key(sqlite_session_factory, seed, fixed_now) -> None:
    """The scheduled planner loop is a no-op without an API key."""
    workspace = seed.workspace()
    seed.space(workspace.id)
    components = build_agent_components(
        sqlite_session_factory,
        StubLLM(["plan"]),
        AgentRuntimeConfig(agent_model="test-model", llm_api_key_present=False),
    )

    assert components.planner.run_planner_loop(now=fixed_now) == 0
