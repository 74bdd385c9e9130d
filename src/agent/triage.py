"""Daily triage summary with goal-focus correlation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Any

from agent.settings import AgentSettings
from agent.workspace import WorkspaceRepository
from models import Task
from time_utils import to_utc, utc_now

_GOAL_FOCUS_TASK_SCAN = 20
_GOAL_FOCUS_LIMIT = 5


@dataclass(frozen=True)
class GoalFocus:
    """Goal matched by keyword against open tasks."""

    goal_id: str
    name: str
    horizon: str | None
    task_ids: list[str]
    task_titles: list[str]

    @property
    def task_count(self) -> int:
        return len(self.task_ids)


@dataclass(frozen=True)
class TriageSummary:
    """Open task slices and bucket counts for one space."""

    inbox: list[Task] = field(default_factory=list)
    due_today: list[Task] = field(default_factory=list)
    overdue: list[Task] = field(default_factory=list)
    inbox_count: int = 0
    waiting_count: int = 0
    someday_count: int = 0
    goal_focus: list[GoalFocus] = field(default_factory=list)

    def describe(self) -> str:
        """Render the one-line summary embedded in agent prompts."""
        text = (
            f"inbox={self.inbox_count}, waiting={self.waiting_count}, "
            f"someday={self.someday_count}, overdue={len(self.overdue)}, "
            f"dueToday={len(self.due_today)}"
        )
        if self.goal_focus:
            focus = ", ".join(f"{goal.name}({goal.task_count})" for goal in self.goal_focus)
            text = f"{text}, goalFocus={focus}"
        return text

    def as_dict(self) -> dict[str, Any]:
        """Serialize the summary for API responses."""
        return {
            "inbox": [_task_brief(task) for task in self.inbox],
            "dueToday": [_task_brief(task) for task in self.due_today],
            "overdue": [_task_brief(task) for task in self.overdue],
            "counts": {
                "inbox": self.inbox_count,
                "waiting": self.waiting_count,
                "someday": self.someday_count,
            },
            "goalFocus": [
                {
                    "goalId": goal.goal_id,
                    "name": goal.name,
                    "horizon": goal.horizon,
                    "taskCount": goal.task_count,
                    "taskIds": goal.task_ids,
                    "taskTitles": goal.task_titles,
                }
                for goal in self.goal_focus
            ],
        }


def _task_brief(task: Task) -> dict[str, Any]:
    return {
        "id": task.id,
        "title": task.title,
        "status": task.status,
        "priority": task.priority,
        "bucket": task.bucket,
    }


class TriageService:
    """Build triage summaries from open tasks."""

    def __init__(self, workspace: WorkspaceRepository) -> None:
        self._workspace = workspace

    def daily_triage_summary(
        self,
        space_id: str,
        workspace_id: str,
        *,
        agent_settings: AgentSettings,
        limit: int = 20,
        now: datetime | None = None,
    ) -> TriageSummary:
        """Return the triage summary, with goal focus when auto-triage is on."""
        current = to_utc(now or utc_now())
        start_of_day = datetime.combine(current.date(), time.min, tzinfo=current.tzinfo)
        end_of_day = start_of_day + timedelta(days=1)

        inbox = self._workspace.list_open_tasks(
            space_id,
            limit=limit,
            bucket=["none", "inbox"],
            unassigned_project=True,
        )
        due_today = self._workspace.list_open_tasks(
            space_id,
            limit=limit,
            due_from=start_of_day,
            due_before=end_of_day,
            order_by_due=True,
        )
        overdue = self._workspace.list_open_tasks(
            space_id,
            limit=limit,
            due_before=start_of_day,
            order_by_due=True,
        )
        summary = TriageSummary(
            inbox=inbox,
            due_today=due_today,
            overdue=overdue,
            inbox_count=self._workspace.count_open_tasks(
                space_id, bucket=["none", "inbox"], unassigned_project=True
            ),
            waiting_count=self._workspace.count_open_tasks(space_id, bucket=["waiting"]),
            someday_count=self._workspace.count_open_tasks(space_id, bucket=["someday"]),
        )
        if not agent_settings.enable_auto_triage:
            return summary
        return TriageSummary(
            inbox=summary.inbox,
            due_today=summary.due_today,
            overdue=summary.overdue,
            inbox_count=summary.inbox_count,
            waiting_count=summary.waiting_count,
            someday_count=summary.someday_count,
            goal_focus=self._goal_focus(workspace_id, space_id, inbox + due_today + overdue),
        )

    def _goal_focus(
        self,
        workspace_id: str,
        space_id: str,
        tasks: list[Task],
    ) -> list[GoalFocus]:
        if not tasks:
            return []
        goals = self._workspace.list_goals(workspace_id, space_id)
        matched: dict[str, tuple[Any, list[Task]]] = {}
        for task in tasks[:_GOAL_FOCUS_TASK_SCAN]:
            text = " ".join(part for part in (task.title, task.description) if part).lower()
            if not text:
                continue
            for goal in goals:
                keywords = goal.keywords if isinstance(goal.keywords, list) else []
                if any(keyword and str(keyword).lower() in text for keyword in keywords):
                    matched.setdefault(goal.id, (goal, []))[1].append(task)
        focus = [
            GoalFocus(
                goal_id=goal.id,
                name=goal.name,
                horizon=goal.horizon,
                task_ids=[task.id for task in goal_tasks],
                task_titles=[task.title for task in goal_tasks],
            )
            for goal, goal_tasks in matched.values()
        ]
        focus.sort(key=lambda entry: entry.task_count, reverse=True)
        return focus[:_GOAL_FOCUS_LIMIT]
