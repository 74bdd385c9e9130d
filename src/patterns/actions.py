"""Dispatch the configured action for a newly detected pattern."""

from __future__ import annotations

import json
import logging

from agent.events import EventOutbox, pattern_detected
from agent.workspace import WorkspaceRepository
from patterns.repository import PatternRecord

logger = logging.getLogger(__name__)


class PatternActionService:
    """Turn a detection into a notification, a surfaced item or a task."""

    def __init__(self, workspace: WorkspaceRepository, events: EventOutbox) -> None:
        self._workspace = workspace
        self._events = events

    def execute_action(self, action: str, pattern: PatternRecord) -> None:
        if action == "notify":
            self._publish(pattern)
        elif action == "flag":
            # The stored detection is the flag.
            return
        elif action == "surface":
            self._publish(pattern, surface=True)
        elif action == "create_task":
            self._create_task(pattern)
        else:
            logger.warning(
                "Unknown pattern action: action=%s pattern_id=%s", action, pattern.id
            )

    def _publish(self, pattern: PatternRecord, *, surface: bool = False) -> None:
        self._events.publish(
            pattern_detected(
                pattern.workspace_id,
                pattern.space_id,
                pattern={
                    "patternId": pattern.id,
                    "workspaceId": pattern.workspace_id,
                    "patternType": pattern.pattern_type,
                    "severity": pattern.severity,
                    "title": pattern.title,
                    "details": pattern.details,
                },
                surface=surface,
            )
        )

    def _create_task(self, pattern: PatternRecord) -> None:
        space = self._workspace.oldest_active_space(pattern.workspace_id)
        if space is None:
            logger.warning(
                "No space available for pattern task: workspace_id=%s pattern_id=%s",
                pattern.workspace_id,
                pattern.id,
            )
            return
        task = self._workspace.create_task(
            workspace_id=pattern.workspace_id,
            space_id=space.id,
            title=f"[Auto] {pattern.title}",
            description=json.dumps(pattern.details, indent=2),
            status="todo",
        )
        logger.info(
            "pattern task created: pattern_id=%s task_id=%s", pattern.id, task.id
        )
