"""Per-workspace pattern detection job and its scheduling sweep."""

from __future__ import annotations

import logging
from datetime import datetime

from agent.workspace import WorkspaceRepository
from patterns.actions import PatternActionService
from patterns.detection import PatternDetectionService
from patterns.rules import resolve_intelligence_settings

logger = logging.getLogger(__name__)


class PatternDetectionJob:
    """Detect patterns for one workspace and act on the new detections."""

    def __init__(
        self,
        workspace: WorkspaceRepository,
        detection: PatternDetectionService,
        actions: PatternActionService,
    ) -> None:
        self._workspace = workspace
        self._detection = detection
        self._actions = actions

    def process(self, workspace_id: str, *, now: datetime | None = None) -> int:
        """Run detection for a workspace and return the number of new detections.

        Failures propagate so the task runner can retry the job.
        """
        workspace = self._workspace.get_workspace(workspace_id)
        if workspace is None:
            logger.warning("pattern job skipped, workspace missing: workspace_id=%s", workspace_id)
            return 0
        intelligence = resolve_intelligence_settings(workspace.settings)
        if not intelligence.enabled:
            logger.debug("pattern job skipped, intelligence disabled: workspace_id=%s", workspace_id)
            return 0

        try:
            created = self._detection.detect(workspace_id, intelligence, now=now)
            for pattern in created:
                rule = intelligence.rule_for(pattern.pattern_type)
                if rule is not None:
                    self._actions.execute_action(rule.action, pattern)
        except Exception:
            logger.exception("pattern job failed: workspace_id=%s", workspace_id)
            raise

        logger.info(
            "pattern job finished: workspace_id=%s detected=%s",
            workspace_id,
            len(created),
        )
        return len(created)

    def enabled_workspace_ids(self) -> list[str]:
        """Return ids of workspaces with intelligence enabled."""
        return [
            workspace.id
            for workspace in self._workspace.list_workspaces()
            if resolve_intelligence_settings(workspace.settings).enabled
        ]
