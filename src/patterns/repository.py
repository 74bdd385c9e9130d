"""Repository for recorded pattern detections."""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from errors import AgentNotFoundError, AgentValidationError
from models import PatternDetection
from time_utils import isoformat_utc, to_utc, utc_now

logger = logging.getLogger(__name__)

SEVERITIES = frozenset({"low", "medium", "high"})
# Allowed forward moves; nothing returns to "detected".
STATUS_TRANSITIONS = {
    "detected": frozenset({"acknowledged", "dismissed"}),
    "acknowledged": frozenset({"dismissed"}),
    "dismissed": frozenset(),
}


@dataclass(frozen=True)
class PatternRecord:
    """Read model for one detection."""

    id: str
    workspace_id: str
    space_id: str | None
    pattern_type: str
    severity: str
    title: str
    details: dict[str, Any]
    status: str
    detected_at: datetime
    acknowledged_at: datetime | None = None
    action_taken: dict[str, Any] | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workspaceId": self.workspace_id,
            "spaceId": self.space_id,
            "patternType": self.pattern_type,
            "severity": self.severity,
            "title": self.title,
            "details": self.details,
            "status": self.status,
            "detectedAt": isoformat_utc(self.detected_at),
            "acknowledgedAt": (
                isoformat_utc(self.acknowledged_at) if self.acknowledged_at else None
            ),
            "actionTaken": self.action_taken,
        }


class PatternDetectionRepository:
    """Create, look up and advance pattern detections."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        """Initialize the repository with a SQLAlchemy session factory."""
        self._session_factory = session_factory

    def create(
        self,
        *,
        workspace_id: str,
        pattern_type: str,
        severity: str,
        title: str,
        details: dict[str, Any],
        space_id: str | None = None,
        now: datetime | None = None,
    ) -> PatternRecord:
        """Insert a new detection in the ``detected`` status."""
        if severity not in SEVERITIES:
            raise AgentValidationError(f"Invalid pattern severity: {severity}")
        timestamp = to_utc(now or utc_now())

        def handler(session: Session) -> PatternRecord:
            row = PatternDetection(
                workspace_id=workspace_id,
                space_id=space_id,
                pattern_type=pattern_type,
                severity=severity,
                title=title,
                details=details,
                status="detected",
                detected_at=timestamp,
                updated_at=timestamp,
            )
            session.add(row)
            session.flush()
            return _to_record(row)

        return self._execute(handler)

    def find_by_id(self, pattern_id: str) -> PatternRecord | None:
        """Return a non-deleted detection by id."""

        def handler(session: Session) -> PatternRecord | None:
            row = session.get(PatternDetection, pattern_id)
            if row is None or row.deleted_at is not None:
                return None
            return _to_record(row)

        return self._execute(handler)

    def list_by_workspace(
        self,
        workspace_id: str,
        *,
        space_id: str | None = None,
        status: str | None = None,
        pattern_type: str | None = None,
        limit: int = 100,
    ) -> list[PatternRecord]:
        """List detections newest first with optional filters."""

        def handler(session: Session) -> list[PatternRecord]:
            statement = select(PatternDetection).where(
                PatternDetection.workspace_id == workspace_id,
                PatternDetection.deleted_at.is_(None),
            )
            if space_id:
                statement = statement.where(PatternDetection.space_id == space_id)
            if status:
                statement = statement.where(PatternDetection.status == status)
            if pattern_type:
                statement = statement.where(PatternDetection.pattern_type == pattern_type)
            rows = session.scalars(
                statement.order_by(PatternDetection.detected_at.desc()).limit(limit)
            ).all()
            return [_to_record(row) for row in rows]

        return self._execute(handler)

    def find_existing_pattern(
        self,
        workspace_id: str,
        pattern_type: str,
        details_key: str,
        details_value: Any,
    ) -> PatternRecord | None:
        """Return a live detection of the type whose ``details[key]`` matches."""

        def handler(session: Session) -> PatternRecord | None:
            rows = session.scalars(
                select(PatternDetection).where(
                    PatternDetection.workspace_id == workspace_id,
                    PatternDetection.pattern_type == pattern_type,
                    PatternDetection.status != "dismissed",
                    PatternDetection.deleted_at.is_(None),
                )
            ).all()
            # Details live in a JSON column, so the key is matched here.
            for row in rows:
                if (row.details or {}).get(details_key) == details_value:
                    return _to_record(row)
            return None

        return self._execute(handler)

    def update_status(
        self,
        pattern_id: str,
        status: str,
        *,
        action_taken: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> PatternRecord:
        """Advance a detection's status.

        Raises:
            AgentNotFoundError: No live detection has the id.
            AgentValidationError: The move is not a forward transition.
        """
        timestamp = to_utc(now or utc_now())

        def handler(session: Session) -> PatternRecord:
            row = session.get(PatternDetection, pattern_id)
            if row is None or row.deleted_at is not None:
                raise AgentNotFoundError(f"Pattern not found: {pattern_id}")
            if status not in STATUS_TRANSITIONS.get(row.status, frozenset()):
                raise AgentValidationError(
                    f"Cannot move pattern from {row.status} to {status}"
                )
            row.status = status
            row.updated_at = timestamp
            if status == "acknowledged":
                row.acknowledged_at = timestamp
            if action_taken is not None:
                row.action_taken = action_taken
            session.flush()
            return _to_record(row)

        record = self._execute(handler)
        logger.info("pattern status changed: pattern_id=%s status=%s", pattern_id, status)
        return record

    def _execute(self, handler):
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            try:
                result = handler(session)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return result


def _to_record(row: PatternDetection) -> PatternRecord:
    return PatternRecord(
        id=row.id,
        workspace_id=row.workspace_id,
        space_id=row.space_id,
        pattern_type=row.pattern_type,
        severity=row.severity,
        title=row.title,
        details=dict(row.details or {}),
        status=row.status,
        detected_at=to_utc(row.detected_at),
        acknowledged_at=to_utc(row.acknowledged_at) if row.acknowledged_at else None,
        action_taken=row.action_taken,
    )
