"""Pending weekly-review questions raised by the agent."""

from __future__ import annotations

import logging
import uuid
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from models import AgentReviewPrompt
from time_utils import to_utc, utc_now

logger = logging.getLogger(__name__)

_INSERTS = {
    "postgresql": postgresql_insert,
    "sqlite": sqlite_insert,
}


@dataclass(frozen=True)
class ReviewPromptRecord:
    """Read model for one review prompt."""

    id: str
    question: str
    status: str
    week_key: str
    created_at: datetime
    source: str | None = None
    metadata: dict[str, Any] | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "question": self.question,
            "status": self.status,
            "weekKey": self.week_key,
            "createdAt": self.created_at.isoformat(),
            "source": self.source,
            "metadata": self.metadata,
        }


class AgentReviewPromptsService:
    """Store review prompts once per (space, week, question)."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        """Initialize the service with a SQLAlchemy session factory."""
        self._session_factory = session_factory

    def create_prompts(
        self,
        *,
        workspace_id: str,
        space_id: str,
        week_key: str,
        questions: Iterable[str],
        source: str | None = None,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> list[str]:
        """Insert trimmed, non-blank questions, skipping ones already stored."""
        cleaned = [str(question).strip() for question in questions]
        cleaned = [question for question in cleaned if question]
        if not cleaned:
            return []
        created_at = to_utc(now or utc_now())
        rows = [
            {
                "id": _new_prompt_id(),
                "workspace_id": workspace_id,
                "space_id": space_id,
                "week_key": week_key,
                "question": question,
                "status": "pending",
                "source": source,
                "metadata": metadata,
                "created_at": created_at,
            }
            for question in cleaned
        ]

        def handler(session: Session) -> None:
            dialect = session.get_bind().dialect.name
            insert = _INSERTS.get(dialect)
            if insert is None:
                raise RuntimeError(f"Unsupported dialect for prompt upsert: {dialect}")
            statement = insert(AgentReviewPrompt.__table__).values(rows)
            session.execute(
                statement.on_conflict_do_nothing(
                    index_elements=["space_id", "week_key", "question"]
                )
            )

        self._execute(handler)
        logger.info(
            "review prompts stored: space_id=%s week_key=%s count=%s",
            space_id,
            week_key,
            len(cleaned),
        )
        return cleaned

    def list_pending(
        self,
        *,
        workspace_id: str,
        space_id: str,
        week_key: str,
    ) -> list[ReviewPromptRecord]:
        """List pending prompts for the week, oldest first."""

        def handler(session: Session) -> list[ReviewPromptRecord]:
            rows = session.scalars(
                select(AgentReviewPrompt)
                .where(
                    AgentReviewPrompt.workspace_id == workspace_id,
                    AgentReviewPrompt.space_id == space_id,
                    AgentReviewPrompt.week_key == week_key,
                    AgentReviewPrompt.status == "pending",
                )
                .order_by(AgentReviewPrompt.created_at.asc())
            ).all()
            return [_to_record(row) for row in rows]

        return self._execute(handler)

    def consume_pending(
        self,
        *,
        workspace_id: str,
        space_id: str,
        week_key: str,
        now: datetime | None = None,
    ) -> list[ReviewPromptRecord]:
        """Mark the week's pending prompts consumed and return them."""
        prompts = self.list_pending(
            workspace_id=workspace_id,
            space_id=space_id,
            week_key=week_key,
        )
        if not prompts:
            return []
        resolved_at = to_utc(now or utc_now())
        ids = [prompt.id for prompt in prompts]

        def handler(session: Session) -> None:
            session.execute(
                update(AgentReviewPrompt)
                .where(AgentReviewPrompt.id.in_(ids))
                .values(status="consumed", resolved_at=resolved_at)
                .execution_options(synchronize_session=False)
            )

        self._execute(handler)
        return prompts

    def _execute(self, handler):
        """Execute prompt work inside a managed session."""
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            try:
                result = handler(session)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return result


def _new_prompt_id() -> str:
    return str(uuid.uuid4())


def _to_record(row: AgentReviewPrompt) -> ReviewPromptRecord:
    return ReviewPromptRecord(
        id=row.id,
        question=row.question,
        status=row.status,
        week_key=row.week_key,
        created_at=to_utc(row.created_at),
        source=row.source,
        metadata=row.prompt_metadata,
    )
