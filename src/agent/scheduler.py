"""Hourly autonomy cadence checks and manual loop runs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from agent.dispatch import Actor
from agent.loop import AgentLoopService
from agent.settings import AutonomySchedule, AgentSettings, resolve_agent_settings
from agent.weekly_review import WeeklyReviewService
from agent.workspace import SpaceWithSettings, WorkspaceRepository
from time_utils import is_same_day_in_zone, isoformat_utc, to_utc, utc_now, zoned_parts

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CadenceDue:
    """Which cadences fire for one space at one instant."""

    daily: bool = False
    weekly: bool = False
    monthly: bool = False
    weekly_review: bool = False

    @property
    def loop(self) -> bool:
        return self.daily or self.weekly or self.monthly


def due_cadences(schedule: AutonomySchedule, now: datetime) -> CadenceDue:
    """Evaluate every cadence of a schedule in its own timezone.

    All cadences fire at ``daily_hour``; weekly ones also need ``weekly_day``
    (0 is Sunday) and monthly ones need ``monthly_day``. A cadence that
    already ran on the same local day does not fire again.
    """
    zone = schedule.timezone or "UTC"
    parts = zoned_parts(now, zone)
    at_hour = parts.hour == schedule.daily_hour
    weekly_slot = schedule.weekly_enabled and at_hour and parts.weekday == schedule.weekly_day
    return CadenceDue(
        daily=(
            schedule.daily_enabled
            and at_hour
            and not is_same_day_in_zone(schedule.last_daily_run, now, zone)
        ),
        weekly=weekly_slot and not is_same_day_in_zone(schedule.last_weekly_run, now, zone),
        monthly=(
            schedule.monthly_enabled
            and at_hour
            and parts.day == schedule.monthly_day
            and not is_same_day_in_zone(schedule.last_monthly_run, now, zone)
        ),
        weekly_review=(
            weekly_slot
            and not is_same_day_in_zone(schedule.last_weekly_review_run, now, zone)
        ),
    )


class AgentLoopScheduler:
    """Decide when the autonomous loop and weekly review run per space."""

    def __init__(
        self,
        workspace: WorkspaceRepository,
        loop: AgentLoopService,
        weekly_review: WeeklyReviewService,
    ) -> None:
        """Initialize the scheduler with its collaborators."""
        self._workspace = workspace
        self._loop = loop
        self._weekly_review = weekly_review

    def run_cadence_checks(self, now: datetime | None = None) -> int:
        """Run due loops and weekly reviews; return the number of spaces acted on."""
        current = to_utc(now or utc_now())
        acted = 0
        for space in self._workspace.list_spaces_with_settings():
            try:
                if self._check_space(space, current):
                    acted += 1
            except Exception as exc:
                logger.warning(
                    "autonomy run failed: space_id=%s error=%s",
                    space.space_id,
                    exc,
                )
        logger.info("cadence checks complete: spaces_acted=%s", acted)
        return acted

    def run_manual(
        self,
        workspace_id: str,
        actor: Actor,
        *,
        now: datetime | None = None,
    ) -> int:
        """Run the loop for every eligible space now; return how many ran."""
        current = to_utc(now or utc_now())
        workspace = self._workspace.get_workspace(workspace_id)
        if workspace is None:
            return 0
        ran = 0
        for space in self._workspace.list_spaces_with_settings(workspace_id):
            agent_settings = resolve_agent_settings(space.settings)
            if not agent_settings.enabled or not agent_settings.enable_autonomous_loop:
                continue
            try:
                self._loop.run_loop(
                    space.space_id,
                    actor,
                    agent_settings=agent_settings,
                    now=current,
                )
            except Exception as exc:
                logger.warning(
                    "manual autonomy run failed: space_id=%s error=%s",
                    space.space_id,
                    exc,
                )
                continue
            ran += 1

        if ran:
            stamp = isoformat_utc(current)
            fresh = self._workspace.get_agent_settings(workspace_id)
            schedule = _schedule_blob(fresh.autonomy_schedule)
            schedule.update(lastDailyRun=stamp, lastWeeklyRun=stamp, lastMonthlyRun=stamp)
            self._workspace.update_agent_settings(workspace_id, {"autonomySchedule": schedule})
        return ran

    def _check_space(self, space: SpaceWithSettings, now: datetime) -> bool:
        agent_settings = resolve_agent_settings(space.settings)
        if not agent_settings.enabled:
            return False
        schedule = agent_settings.schedule_for_space(space.space_id)
        due = due_cadences(schedule, now)
        run_loop = agent_settings.enable_autonomous_loop and due.loop
        if not run_loop and not due.weekly_review:
            return False

        owner = self._workspace.get_workspace_owner(space.workspace_id)
        if owner is None:
            logger.warning("autonomy skipped: space_id=%s reason=no-owner", space.space_id)
            return False
        actor = Actor(id=owner.id, workspace_id=space.workspace_id, email=owner.email)

        if run_loop:
            self._loop.run_loop(
                space.space_id,
                actor,
                agent_settings=agent_settings,
                now=now,
            )
        if due.weekly_review:
            self._weekly_review.ensure_weekly_review_page(
                space_id=space.space_id,
                workspace_id=space.workspace_id,
                user_id=owner.id,
                date=now,
            )

        stamp = isoformat_utc(now)
        updates: dict[str, Any] = {}
        if run_loop and due.daily:
            updates["lastDailyRun"] = stamp
        if run_loop and due.weekly:
            updates["lastWeeklyRun"] = stamp
        if run_loop and due.monthly:
            updates["lastMonthlyRun"] = stamp
        if due.weekly_review:
            updates["lastWeeklyReviewRun"] = stamp
        self._record_runs(space, updates)
        return True

    def _record_runs(self, space: SpaceWithSettings, updates: dict[str, Any]) -> None:
        """Persist fired last-run stamps to the override or the workspace schedule."""
        if not updates:
            return
        # Re-read so earlier spaces in the same pass are not overwritten.
        fresh = self._workspace.get_agent_settings(space.workspace_id)
        schedule = _schedule_blob(fresh.schedule_for_space(space.space_id))
        schedule.update(updates)
        if fresh.has_schedule_override(space.space_id):
            overrides = _overrides_blob(fresh)
            overrides[space.space_id] = {"autonomySchedule": schedule}
            patch: dict[str, Any] = {"spaceOverrides": overrides}
        else:
            patch = {"autonomySchedule": schedule}
        self._workspace.update_agent_settings(space.workspace_id, patch)


def _schedule_blob(schedule: AutonomySchedule) -> dict[str, Any]:
    return schedule.model_dump(by_alias=True, exclude_none=True)


def _overrides_blob(agent_settings: AgentSettings) -> dict[str, Any]:
    return {
        space_id: override.model_dump(by_alias=True, exclude_none=True)
        for space_id, override in agent_settings.space_overrides.items()
    }
