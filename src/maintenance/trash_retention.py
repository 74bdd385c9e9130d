"""Nightly purge of soft-deleted content past the retention window."""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session

from agent.approvals import ApprovalLedger
from config import AgentRuntimeConfig
from models import Page, PatternDetection, ResearchEdge, Task
from time_utils import to_utc, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrashPurgeResult:
    """Row counts removed by one purge run."""

    tasks: int = 0
    pages: int = 0
    edges: int = 0
    patterns: int = 0
    approvals: int = 0

    @property
    def total(self) -> int:
        return self.tasks + self.pages + self.edges + self.patterns + self.approvals


class TrashRetentionService:
    """Hard-delete trashed rows older than ``trash_retention_days``."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        runtime: AgentRuntimeConfig,
        approvals: ApprovalLedger | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._runtime = runtime
        self._approvals = approvals

    def purge(self, *, now: datetime | None = None) -> TrashPurgeResult:
        current = to_utc(now or utc_now())
        cutoff = current - timedelta(days=self._runtime.trash_retention_days)

        def handler(session: Session) -> TrashPurgeResult:
            page_ids = list(
                session.scalars(
                    select(Page.id).where(
                        Page.deleted_at.is_not(None), Page.deleted_at <= cutoff
                    )
                ).all()
            )
            edges = 0
            if page_ids:
                edges = session.execute(
                    delete(ResearchEdge).where(
                        or_(
                            ResearchEdge.from_page_id.in_(page_ids),
                            ResearchEdge.to_page_id.in_(page_ids),
                        )
                    )
                ).rowcount
                session.execute(delete(Page).where(Page.id.in_(page_ids)))
            tasks = session.execute(
                delete(Task).where(Task.deleted_at.is_not(None), Task.deleted_at <= cutoff)
            ).rowcount
            patterns = session.execute(
                delete(PatternDetection).where(
                    PatternDetection.deleted_at.is_not(None),
                    PatternDetection.deleted_at <= cutoff,
                )
            ).rowcount
            return TrashPurgeResult(
                tasks=int(tasks or 0),
                pages=len(page_ids),
                edges=int(edges or 0),
                patterns=int(patterns or 0),
            )

        result = self._execute(handler)
        if self._approvals is not None:
            result = TrashPurgeResult(
                tasks=result.tasks,
                pages=result.pages,
                edges=result.edges,
                patterns=result.patterns,
                approvals=self._approvals.purge_expired(now=current),
            )
        logger.info(
            "trash purged: tasks=%s pages=%s edges=%s patterns=%s approvals=%s",
            result.tasks,
            result.pages,
            result.edges,
            result.patterns,
            result.approvals,
            extra={"retention_days": self._runtime.trash_retention_days},
        )
        return result

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
