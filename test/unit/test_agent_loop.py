"""Unit tests for the autonomous agent loop."""

from __future__ import annotations

import json

import pytest

from agent.container import build_agent_components
from agent.dispatch import Actor
from config import AgentRuntimeConfig
from conftest import FailingLLM, StubLLM
from errors import AgentAccessError
from time_utils import week_key

RUNTIME = AgentRuntimeConfig(agent_model="test-model", llm_api_key_present=True)


def _loop_workspace(seed, **agent):
    workspace = seed.workspace(agent={"enableAutonomousLoop": True, **agent})
    space = seed.space(workspace.id)
    user = seed.user(workspace.id)
    return workspace, space, Actor(id=user.id, workspace_id=workspace.id)


def test_unconfigured_model_proposes_nothing(sqlite_session_factory, seed, fixed_now) -> None:
    """Without a model the loop returns the fallback summary and no actions."""
    _, space, actor = _loop_workspace(seed)
    components = build_agent_components(
        sqlite_session_factory, StubLLM(configured=False), RUNTIME
    )

    summary = components.loop.run_loop(space.id, actor, now=fixed_now)

    assert summary.as_dict() == {"summary": "No actions proposed.", "actions": []}


def test_model_failure_falls_back_to_no_actions(sqlite_session_factory, seed, fixed_now) -> None:
    """A raising model is treated as an empty plan."""
    _, space, actor = _loop_workspace(seed)
    components = build_agent_components(sqlite_session_factory, FailingLLM(), RUNTIME)

    summary = components.loop.run_loop(space.id, actor, now=fixed_now)

    assert summary.summary == "No actions proposed."
    assert summary.actions == []


def test_loop_executes_at_most_three_actions(sqlite_session_factory, seed, fixed_now) -> None:
    """Only the first three proposed actions are executed."""
    workspace, space, actor = _loop_workspace(seed, allowTaskWrites=True)
    plan = {
        "summary": "Tidy the inbox",
        "actions": [
            {"method": "task.create", "params": {"title": f"Task {index}"}}
            for index in range(5)
        ],
    }
    components = build_agent_components(
        sqlite_session_factory, StubLLM([json.dumps(plan)]), RUNTIME
    )

    summary = components.loop.run_loop(space.id, actor, now=fixed_now)

    assert summary.summary == "Tidy the inbox"
    assert [result.status for result in summary.actions] == ["applied"] * 3
    audit = components.memory.query_memories(workspace.id, space_id=space.id, tags=["loop"])
    assert audit[0].summary == "Tidy the inbox"
    assert len(audit[0].content["actions"]) == 3


def test_loop_records_review_questions(sqlite_session_factory, seed, fixed_now) -> None:
    """Review questions from the plan become pending prompts for the week."""
    workspace, space, actor = _loop_workspace(seed)
    plan = {
        "summary": "Check in",
        "actions": [{"method": "space.delete", "params": {}}],
        "reviewQuestions": ["Is the grant still the priority?"],
    }
    components = build_agent_components(
        sqlite_session_factory, StubLLM([f"Here you go: {json.dumps(plan)} thanks"]), RUNTIME
    )

    summary = components.loop.run_loop(space.id, actor, now=fixed_now)
    prompts = components.review_prompts.list_pending(
        workspace_id=workspace.id, space_id=space.id, week_key=week_key(fixed_now)
    )

    assert summary.actions[0].status == "skipped:unsupported"
    assert [prompt.question for prompt in prompts] == ["Is the grant still the priority?"]


def test_non_json_reply_becomes_truncated_summary(
    sqlite_session_factory, seed, fixed_now
) -> None:
    """Plain-text replies are kept as a truncated summary with no actions."""
    _, space, actor = _loop_workspace(seed)
    components = build_agent_components(
        sqlite_session_factory, StubLLM(["x" * 400]), RUNTIME
    )

    summary = components.loop.run_loop(space.id, actor, now=fixed_now)

    assert summary.summary == "x" * 180
    assert summary.actions == []


def test_disabled_loop_is_refused(sqlite_session_factory, seed, fixed_now) -> None:
    """Running the loop with autonomy off raises an access error."""
    workspace = seed.workspace(agent={"enableAutonomousLoop": False})
    space = seed.space(workspace.id)
    components = build_agent_components(sqlite_session_factory, StubLLM(), RUNTIME)

    with pytest.raises(AgentAccessError):
        components.loop.run_loop(
            space.id, Actor(id="u1", workspace_id=workspace.id), now=fixed_now
        )
