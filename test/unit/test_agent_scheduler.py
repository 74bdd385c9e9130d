"""Unit tests for autonomy cadences, manual runs and weekly review pages."""

from __future__ import annotations

from datetime import datetime, timezone

from agent.container import build_agent_components
from agent.dispatch import Actor
from agent.scheduler import CadenceDue, due_cadences
from agent.settings import AutonomySchedule
from agent.weekly_review import NO_QUESTIONS_TEXT
from config import AgentRuntimeConfig
from conftest import StubLLM
from time_utils import isoformat_utc, week_key

RUNTIME = AgentRuntimeConfig(agent_model="test-model", llm_api_key_present=True)

# 2025-03-12 09:30 UTC is a Wednesday, weekday 3 counting Sunday as 0.
DUE_SCHEDULE = {"dailyHour": 9, "weeklyDay": 3, "monthlyDay": 12}


def _text_nodes(node) -> list[str]:
    if isinstance(node, dict):
        if node.get("type") == "text":
            return [node["text"]]
        return [text for child in node.get("content", []) for text in _text_nodes(child)]
    return []


def test_every_cadence_fires_in_its_slot(fixed_now) -> None:
    """Daily, weekly, monthly and weekly review all fire when their slot matches."""
    due = due_cadences(AutonomySchedule.model_validate(DUE_SCHEDULE), fixed_now)

    assert (due.daily, due.weekly, due.monthly, due.weekly_review) == (True, True, True, True)
    assert due.loop


def test_nothing_fires_outside_the_hour(fixed_now) -> None:
    """Cadences only fire during the configured local hour."""
    schedule = AutonomySchedule.model_validate({**DUE_SCHEDULE, "dailyHour": 7})

    assert due_cadences(schedule, fixed_now) == CadenceDue()


def test_cadences_use_the_schedule_timezone() -> None:
    """Hours and weekdays are evaluated in the schedule's timezone."""
    schedule = AutonomySchedule.model_validate(
        {"dailyHour": 9, "weeklyDay": 3, "timezone": "America/New_York"}
    )

    # 13:30 UTC is 09:30 EDT.
    due = due_cadences(schedule, datetime(2025, 3, 12, 13, 30, tzinfo=timezone.utc))

    assert due.daily and due.weekly
    assert not due_cadences(schedule, datetime(2025, 3, 12, 9, 30, tzinfo=timezone.utc)).daily


def test_same_day_runs_are_suppressed(fixed_now) -> None:
    """A cadence stamped earlier on the same local day does not fire again."""
    schedule = AutonomySchedule.model_validate(
        {
            **DUE_SCHEDULE,
            "lastDailyRun": "2025-03-12T09:05:00.000Z",
            "lastWeeklyRun": "2025-03-05T09:05:00.000Z",
        }
    )

    due = due_cadences(schedule, fixed_now)

    assert not due.daily
    assert due.weekly


def test_disabled_cadences_never_fire(fixed_now) -> None:
    """Disabled cadence flags suppress their cadence and the weekly review."""
    schedule = AutonomySchedule.model_validate(
        {**DUE_SCHEDULE, "dailyEnabled": False, "weeklyEnabled": False, "monthlyEnabled": False}
    )

    due = due_cadences(schedule, fixed_now)

    assert not due.loop
    assert not due.weekly_review


def test_cadence_check_runs_loop_and_stamps(sqlite_session_factory, seed, fixed_now) -> None:
    """Due spaces run the loop, get a weekly review and record last-run stamps."""
    workspace = seed.workspace(
        agent={"enableAutonomousLoop": True, "autonomySchedule": DUE_SCHEDULE}
    )
    space = seed.space(workspace.id)
    owner = seed.user(workspace.id)
    components = build_agent_components(
        sqlite_session_factory, StubLLM(configured=False), RUNTIME
    )

    acted = components.scheduler.run_cadence_checks(fixed_now)
    again = components.scheduler.run_cadence_checks(fixed_now)

    schedule = components.workspace.get_agent_settings(workspace.id).autonomy_schedule
    stamp = isoformat_utc(fixed_now)
    assert (acted, again) == (1, 0)
    assert schedule.last_daily_run == stamp
    assert schedule.last_weekly_run == stamp
    assert schedule.last_monthly_run == stamp
    assert schedule.last_weekly_review_run == stamp
    assert components.workspace.find_page_by_title(
        space.id, f"Weekly Review {week_key(fixed_now)}", creator_id=owner.id
    )
    loops = components.memory.query_memories(workspace.id, space_id=space.id, tags=["loop"])
    assert loops[0].summary == "No actions proposed."


def test_weekly_review_runs_without_autonomy(sqlite_session_factory, seed, fixed_now) -> None:
    """The weekly review fires on its slot even when the loop is disabled."""
    workspace = seed.workspace(
        agent={"enableAutonomousLoop": False, "autonomySchedule": DUE_SCHEDULE}
    )
    seed.space(workspace.id)
    seed.user(workspace.id)
    components = build_agent_components(sqlite_session_factory, StubLLM(), RUNTIME)

    assert components.scheduler.run_cadence_checks(fixed_now) == 1

    schedule = components.workspace.get_agent_settings(workspace.id).autonomy_schedule
    assert schedule.last_weekly_review_run == isoformat_utc(fixed_now)
    assert schedule.last_daily_run is None


def test_space_override_receives_stamps(sqlite_session_factory, seed, fixed_now) -> None:
    """Stamps for an overridden space land in that space's override."""
    workspace = seed.workspace(agent={"enableAutonomousLoop": True})
    space = seed.space(workspace.id)
    seed.user(workspace.id)
    components = build_agent_components(
        sqlite_session_factory, StubLLM(configured=False), RUNTIME
    )
    components.workspace.update_agent_settings(
        workspace.id,
        {"spaceOverrides": {space.id: {"autonomySchedule": DUE_SCHEDULE}}},
    )

    components.scheduler.run_cadence_checks(fixed_now)

    settings = components.workspace.get_agent_settings(workspace.id)
    override = settings.schedule_for_space(space.id)
    assert override.last_daily_run == isoformat_utc(fixed_now)
    assert override.daily_hour == 9
    assert settings.autonomy_schedule.last_daily_run is None


def test_space_without_owner_is_skipped(sqlite_session_factory, seed, fixed_now) -> None:
    """Spaces whose workspace has no owner are not run."""
    workspace = seed.workspace(
        agent={"enableAutonomousLoop": True, "autonomySchedule": DUE_SCHEDULE}
    )
    seed.space(workspace.id)
    seed.user(workspace.id, role="member")
    components = build_agent_components(sqlite_session_factory, StubLLM(), RUNTIME)

    assert components.scheduler.run_cadence_checks(fixed_now) == 0


def test_manual_run_stamps_loop_cadences(sqlite_session_factory, seed, fixed_now) -> None:
    """Manual runs stamp daily, weekly and monthly runs but not the review."""
    workspace = seed.workspace(agent={"enableAutonomousLoop": True})
    seed.space(workspace.id, name="One")
    seed.space(workspace.id, name="Two")
    user = seed.user(workspace.id)
    components = build_agent_components(
        sqlite_session_factory, StubLLM(configured=False), RUNTIME
    )

    ran = components.scheduler.run_manual(
        workspace.id, Actor(id=user.id, workspace_id=workspace.id), now=fixed_now
    )

    schedule = components.workspace.get_agent_settings(workspace.id).autonomy_schedule
    assert ran == 2
    assert schedule.last_monthly_run == isoformat_utc(fixed_now)
    assert schedule.last_weekly_review_run is None
    stranger = Actor(id=user.id, workspace_id="missing")
    assert components.scheduler.run_manual("missing", stranger) == 0


def test_weekly_review_page_consumes_prompts(sqlite_session_factory, seed, fixed_now) -> None:
    """The review page lists pending questions once and is reused afterwards."""
    workspace = seed.workspace()
    space = seed.space(workspace.id)
    user = seed.user(workspace.id)
    components = build_agent_components(sqlite_session_factory, StubLLM(), RUNTIME)
    key = week_key(fixed_now)
    components.review_prompts.create_prompts(
        workspace_id=workspace.id,
        space_id=space.id,
        week_key=key,
        questions=["Is the grant still the priority?"],
        now=fixed_now,
    )

    created = components.weekly_review.ensure_weekly_review_page(
        space_id=space.id, workspace_id=workspace.id, user_id=user.id, date=fixed_now
    )
    repeat = components.weekly_review.ensure_weekly_review_page(
        space_id=space.id, workspace_id=workspace.id, user_id=user.id, date=fixed_now
    )

    texts = _text_nodes(created.page.content)
    assert created.status == "created"
    assert created.page.title == f"Weekly Review {key}"
    assert "Is the grant still the priority?" in texts
    assert "Week of 2025-03-10 - 2025-03-16" in texts
    assert (repeat.status, repeat.page.id) == ("exists", created.page.id)
    assert components.review_prompts.list_pending(
        workspace_id=workspace.id, space_id=space.id, week_key=key
    ) == []


def test_weekly_review_without_prompts(sqlite_session_factory, seed, fixed_now) -> None:
    """A week with no pending questions says so on the page."""
    workspace = seed.workspace()
    space = seed.space(workspace.id)
    user = seed.user(workspace.id)
    components = build_agent_components(sqlite_session_factory, StubLLM(), RUNTIME)

    result = components.weekly_review.ensure_weekly_review_page(
        space_id=space.id, workspace_id=workspace.id, user_id=user.id, date=fixed_now
    )

    assert NO_QUESTIONS_TEXT in _text_nodes(result.page.content)
