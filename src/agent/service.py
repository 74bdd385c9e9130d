"""Interactive agent features: chat replies and next-action suggestions."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from agent.dispatch import Actor
from agent.loop import extract_json
from agent.memory import AgentMemoryService
from agent.settings import AgentSettings
from agent.triage import TriageService
from agent.workspace import WorkspaceRepository
from errors import AgentAccessError
from llm import TextGenerator
from models import Space
from time_utils import isoformat_utc

logger = logging.getLogger(__name__)

CHAT_UNAVAILABLE = "Agent response unavailable."
DEFAULT_SUGGESTION_LIMIT = 5
_SUGGESTION_TASK_SCAN = 200


@dataclass(frozen=True)
class Suggestion:
    """One recommended next action."""

    task_id: str
    title: str
    reason: str | None = None
    project_id: str | None = None
    due_date: str | None = None
    updated_at: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "title": self.title,
            "reason": self.reason,
            "projectId": self.project_id,
            "dueDate": self.due_date,
            "updatedAt": self.updated_at,
        }


class AgentService:
    """Chat and suggestion entry points gated by ``allow_agent_chat``."""

    def __init__(
        self,
        workspace: WorkspaceRepository,
        memory: AgentMemoryService,
        triage: TriageService,
        llm: TextGenerator,
    ) -> None:
        self._workspace = workspace
        self._memory = memory
        self._triage = triage
        self._llm = llm

    def chat(
        self,
        space_id: str,
        message: str,
        actor: Actor,
        *,
        page_id: str | None = None,
    ) -> str:
        """Answer a chat message and record both sides as memories."""
        agent_settings, space = self._require_chat(space_id, actor, "Agent chat disabled")
        page = self._workspace.get_page(page_id) if page_id else None
        if page_id and (page is None or page.space_id != space_id):
            raise AgentAccessError("Page not found in space")

        triage = self._triage.daily_triage_summary(
            space_id,
            actor.workspace_id,
            agent_settings=agent_settings,
            limit=5,
        )
        chat_tag = f"agent-chat-page:{page_id}" if page_id else "agent-chat"
        recent = self._memory.query_memories(
            actor.workspace_id, space_id=space_id, tags=[chat_tag], limit=5
        )
        profile = self._memory.query_memories(
            actor.workspace_id, space_id=space_id, tags=["user-profile"], limit=1
        )

        lines = [
            "You are the workspace's agent. Provide clear, concise guidance.",
            f"Space: {space.name}",
        ]
        if page is not None and page.title:
            lines.append(f"Page: {page.title}")
        lines.append("Recent memories:")
        lines.append("\n".join(f"- {memory.summary}" for memory in recent) or "- none")
        lines.append(
            f"Triage: inbox={triage.inbox_count}, waiting={triage.waiting_count}, "
            f"someday={triage.someday_count}."
        )
        lines.append(f"Overdue: {_titles(triage.overdue)}.")
        lines.append(f"Due today: {_titles(triage.due_today)}.")
        if triage.goal_focus:
            focus = ", ".join(f"{goal.name}({goal.task_count})" for goal in triage.goal_focus)
            lines.append(f"Goal focus: {focus}.")
        if profile:
            lines.append(f"User profile: {profile[0].summary}.")
        lines.append(f"User message: {message}")
        lines.append(
            "Respond with next steps, optional questions, and suggest time blocks if relevant."
        )

        reply = CHAT_UNAVAILABLE
        if self._llm.configured:
            try:
                reply = self._llm.generate_text("\n".join(lines)) or CHAT_UNAVAILABLE
            except Exception as exc:
                logger.warning("agent chat failed: space_id=%s error=%s", space_id, exc)

        tags = ["agent-chat", chat_tag] if page_id else ["agent-chat"]
        self._memory.ingest_memory(
            actor.workspace_id,
            space_id=space_id,
            source="agent-chat",
            summary=f"User: {message[:80]}",
            content={"text": message},
            tags=[*tags, "user"],
        )
        self._memory.ingest_memory(
            actor.workspace_id,
            space_id=space_id,
            source="agent-chat",
            summary="Agent reply",
            content={"text": reply},
            tags=[*tags, "assistant"],
        )
        return reply

    def suggest_next_actions(
        self,
        space_id: str,
        actor: Actor,
        *,
        limit: int = DEFAULT_SUGGESTION_LIMIT,
    ) -> list[Suggestion]:
        """Pick up to ``limit`` inbox tasks to focus on next."""
        _, space = self._require_chat(space_id, actor, "Agent suggestions disabled")
        tasks = self._workspace.list_open_tasks(
            space_id,
            limit=_SUGGESTION_TASK_SCAN,
            bucket=["none", "inbox"],
        )
        if not tasks:
            return []
        by_id = {task.id: task for task in tasks}
        summaries = [
            {
                "id": task.id,
                "title": task.title,
                "projectId": task.project_id,
                "priority": task.priority,
                "status": task.status,
                "bucket": task.bucket,
                "dueDate": isoformat_utc(task.due_date) if task.due_date else None,
            }
            for task in tasks
        ]

        picks = self._model_picks(space, summaries, limit)
        if not picks:
            picks = [(task.id, "Top active task") for task in tasks[:limit]]

        items = [
            Suggestion(
                task_id=task_id,
                title=by_id[task_id].title,
                reason=reason,
                project_id=by_id[task_id].project_id,
                due_date=(
                    isoformat_utc(by_id[task_id].due_date) if by_id[task_id].due_date else None
                ),
                updated_at=(
                    isoformat_utc(by_id[task_id].updated_at)
                    if by_id[task_id].updated_at
                    else None
                ),
            )
            for task_id, reason in picks
            if task_id in by_id
        ]
        self._memory.ingest_memory(
            actor.workspace_id,
            space_id=space_id,
            source="agent-suggestions",
            summary=f"Agent suggested {len(items)} next actions",
            content={"suggestions": [item.as_dict() for item in items]},
            tags=["agent", "next-actions"],
        )
        return items

    def _model_picks(
        self,
        space: Space,
        summaries: list[dict[str, Any]],
        limit: int,
    ) -> list[tuple[str, str | None]]:
        if not self._llm.configured:
            return []
        prompt = "\n".join(
            [
                "You are the workspace's planning agent.",
                f"Pick up to {limit} next actions that the user should focus on.",
                "Only choose from the provided tasks.",
                'Return JSON with shape: {"suggestions":[{"taskId":"...","reason":"..."}]}.',
                f"Space: {space.name}",
                f"Tasks: {json.dumps(summaries)}",
            ]
        )
        try:
            parsed = extract_json(self._llm.generate_text(prompt)) or {}
        except Exception as exc:
            logger.warning("agent suggestions failed: space_id=%s error=%s", space.id, exc)
            return []
        entries = parsed.get("suggestions")
        if not isinstance(entries, list):
            return []
        picks = [
            (entry["taskId"], entry["reason"] if isinstance(entry.get("reason"), str) else None)
            for entry in entries
            if isinstance(entry, dict) and isinstance(entry.get("taskId"), str)
        ]
        return picks[:limit]

    def _require_chat(
        self,
        space_id: str,
        actor: Actor,
        disabled_message: str,
    ) -> tuple[AgentSettings, Space]:
        agent_settings = self._workspace.get_agent_settings(actor.workspace_id)
        if not agent_settings.enabled or not agent_settings.allow_agent_chat:
            raise AgentAccessError(disabled_message)
        space = self._workspace.get_space(space_id, actor.workspace_id)
        if space is None:
            raise AgentAccessError("Space not found")
        return agent_settings, space


def _titles(tasks) -> str:
    return ", ".join(task.title for task in tasks) or "none"
