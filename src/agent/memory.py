"""Agent memory storage, context slices, and the audit event projection."""

from __future__ import annotations

import json
import logging
import re
import uuid
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from agent.events import (
    APPROVAL_CREATED,
    LOOP_COMPLETED,
    PLAN_REVIEWED,
    AgentEvent,
    EventOutbox,
)
from models import AgentMemory
from time_utils import to_utc, utc_now

logger = logging.getLogger(__name__)

_SUMMARY_LIMIT = 160
_EVENT_NAMESPACE = uuid.UUID("6f1c2a52-4d8e-4b8b-9a55-3c1e0f7d2b10")
_WORD_PATTERN = re.compile(r"[a-z0-9]+")


@dataclass(frozen=True)
class MemoryRecord:
    """Read model for one stored memory entry."""

    id: str
    workspace_id: str
    space_id: str | None
    source: str
    summary: str
    content: Any
    tags: list[str]
    timestamp: datetime


def _content_text(content: Any) -> str:
    if not content:
        return ""
    if isinstance(content, str):
        return content
    return json.dumps(content, default=str)


def build_summary(content: Any, summary: str | None = None) -> str:
    """Return the explicit summary or a truncated rendering of the content."""
    if summary:
        return summary
    text = _content_text(content)
    if not text:
        return "Memory"
    if len(text) > _SUMMARY_LIMIT:
        return f"{text[:_SUMMARY_LIMIT - 3]}..."
    return text


class AgentMemoryService:
    """Repository for tagged agent memories."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        """Initialize the service with a SQLAlchemy session factory."""
        self._session_factory = session_factory

    def ingest_memory(
        self,
        workspace_id: str,
        *,
        source: str,
        space_id: str | None = None,
        summary: str | None = None,
        content: Any = None,
        tags: Iterable[str] | None = None,
        timestamp: datetime | None = None,
        memory_id: str | None = None,
    ) -> MemoryRecord:
        """Persist one memory entry and return its read model."""
        if isinstance(content, str):
            try:
                content = json.loads(content)
            except ValueError:
                content = {"text": content}

        def handler(session: Session) -> MemoryRecord:
            row = AgentMemory(
                id=memory_id or str(uuid.uuid4()),
                workspace_id=workspace_id,
                space_id=space_id,
                source=source,
                summary=build_summary(content, summary),
                content=content,
                tags=[str(tag) for tag in (tags or [])],
                timestamp=to_utc(timestamp or utc_now()),
            )
            session.add(row)
            session.flush()
            return _to_record(row)

        return self._execute(handler)

    def get_memory(self, memory_id: str) -> MemoryRecord | None:
        """Return one memory by id."""

        def handler(session: Session) -> MemoryRecord | None:
            row = session.get(AgentMemory, memory_id)
            return _to_record(row) if row else None

        return self._execute(handler)

    def update_memory(
        self,
        memory_id: str,
        *,
        content: Any = None,
        tags: Iterable[str] | None = None,
        summary: str | None = None,
    ) -> MemoryRecord | None:
        """Replace the given fields of a memory and return the updated record."""

        def handler(session: Session) -> MemoryRecord | None:
            row = session.get(AgentMemory, memory_id)
            if row is None:
                return None
            if content is not None:
                row.content = content
            if tags is not None:
                row.tags = [str(tag) for tag in tags]
            if summary is not None:
                row.summary = summary
            session.flush()
            return _to_record(row)

        return self._execute(handler)

    def query_memories(
        self,
        workspace_id: str,
        *,
        space_id: str | None = None,
        tags: Iterable[str] | None = None,
        sources: Iterable[str] | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 20,
        query_text: str | None = None,
    ) -> list[MemoryRecord]:
        """Return newest-first memories matching every provided filter.

        A memory matches ``tags`` when it carries any of them. When
        ``query_text`` is given, results are reordered by keyword overlap.
        """
        wanted_tags = set(tags or [])
        wanted_sources = list(sources or [])
        fetch_limit = max(limit * 5, 50)

        def handler(session: Session) -> list[MemoryRecord]:
            statement = select(AgentMemory).where(AgentMemory.workspace_id == workspace_id)
            if space_id:
                statement = statement.where(AgentMemory.space_id == space_id)
            if wanted_sources:
                statement = statement.where(AgentMemory.source.in_(wanted_sources))
            if since is not None:
                statement = statement.where(AgentMemory.timestamp >= to_utc(since))
            if until is not None:
                statement = statement.where(AgentMemory.timestamp <= to_utc(until))
            statement = statement.order_by(AgentMemory.timestamp.desc())
            if not wanted_tags:
                statement = statement.limit(fetch_limit)
            return [_to_record(row) for row in session.scalars(statement).all()]

        records = self._execute(handler)
        if wanted_tags:
            # Tags live in a JSON column, so membership is checked here.
            records = [record for record in records if wanted_tags.intersection(record.tags)]
            records = records[:fetch_limit]
        if query_text:
            terms = set(_WORD_PATTERN.findall(query_text.lower()))
            records = sorted(
                records,
                key=lambda record: _overlap_score(terms, record),
                reverse=True,
            )
        return records[:limit]

    def _execute(self, handler):
        """Execute memory work inside a managed session."""
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            try:
                result = handler(session)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return result


def _overlap_score(terms: set[str], record: MemoryRecord) -> int:
    if not terms:
        return 0
    words = set(_WORD_PATTERN.findall((record.summary or "").lower()))
    return len(terms & words)


def _to_record(row: AgentMemory) -> MemoryRecord:
    return MemoryRecord(
        id=row.id,
        workspace_id=row.workspace_id,
        space_id=row.space_id,
        source=row.source,
        summary=row.summary or "",
        content=row.content,
        tags=list(row.tags or []),
        timestamp=to_utc(row.timestamp),
    )


@dataclass(frozen=True)
class MemoryContext:
    """Memory slices assembled for one prompt."""

    recent: list[MemoryRecord] = field(default_factory=list)
    short_term: list[MemoryRecord] = field(default_factory=list)
    project: list[MemoryRecord] = field(default_factory=list)
    topic: list[MemoryRecord] = field(default_factory=list)
    profile: list[MemoryRecord] = field(default_factory=list)

    def profile_summary(self) -> str:
        """Return the profile summary of the first profile memory, if any."""
        if not self.profile:
            return ""
        memory = self.profile[0]
        content = memory.content if isinstance(memory.content, dict) else {}
        profile = content.get("profile") if isinstance(content.get("profile"), dict) else {}
        if profile.get("summary"):
            return str(profile["summary"])
        return memory.summary or ""

    def short_term_summary(self) -> str:
        """Join short-term memory summaries, or 'none' when empty."""
        if not self.short_term:
            return "none"
        return "; ".join(memory.summary for memory in self.short_term if memory.summary)


class MemoryContextBuilder:
    """Assemble bounded memory slices for agent prompts."""

    def __init__(self, memory: AgentMemoryService) -> None:
        self._memory = memory

    def build_context(
        self,
        workspace_id: str,
        space_id: str,
        *,
        user_id: str | None = None,
        page_id: str | None = None,
        project_id: str | None = None,
        message: str | None = None,
        recent_limit: int = 5,
        short_term_days: int = 14,
        short_term_limit: int = 8,
        project_limit: int = 6,
        topic_limit: int = 6,
        profile_limit: int = 1,
        profile_tags: Iterable[str] | None = None,
        include_recent: bool = True,
        include_project: bool = True,
        include_topic: bool = True,
        now: datetime | None = None,
    ) -> MemoryContext:
        """Return the memory slices for a space, honoring per-slice limits."""
        chat_tag = f"agent-chat-page:{page_id}" if page_id else "agent-chat"
        recent = (
            self._memory.query_memories(
                workspace_id, space_id=space_id, tags=[chat_tag], limit=recent_limit
            )
            if include_recent
            else []
        )
        since = to_utc(now or utc_now()) - timedelta(days=short_term_days)
        short_term = self._memory.query_memories(
            workspace_id, space_id=space_id, since=since, limit=short_term_limit
        )
        project = (
            self._memory.query_memories(
                workspace_id,
                space_id=space_id,
                tags=[f"project:{project_id}"],
                limit=project_limit,
            )
            if include_project and project_id
            else []
        )
        topic = (
            self._memory.query_memories(
                workspace_id, space_id=space_id, limit=topic_limit, query_text=message
            )
            if include_topic and message
            else []
        )
        profile_tags = list(profile_tags or ([f"user:{user_id}"] if user_id else []))
        profile = (
            self._memory.query_memories(
                workspace_id,
                space_id=space_id,
                tags=profile_tags,
                limit=profile_limit,
            )
            if profile_tags
            else []
        )
        return MemoryContext(
            recent=recent,
            short_term=short_term,
            project=project,
            topic=topic,
            profile=profile,
        )


class MemoryProjection:
    """Write audit memories for outbox events.

    Memory ids are derived from the outbox id, so redelivered events do not
    create duplicate memories.
    """

    def __init__(self, memory: AgentMemoryService) -> None:
        self._memory = memory

    def register(self, outbox: EventOutbox) -> None:
        """Subscribe to the audit event types on the outbox."""
        outbox.subscribe_many((APPROVAL_CREATED, LOOP_COMPLETED, PLAN_REVIEWED), self.handle)

    def handle(self, event: AgentEvent) -> None:
        """Project one event into a memory entry."""
        memory_id = None
        if event.event_id is not None:
            memory_id = str(uuid.uuid5(_EVENT_NAMESPACE, f"outbox:{event.event_id}"))
            if self._memory.get_memory(memory_id) is not None:
                return
        payload = event.payload
        if event.event_type == APPROVAL_CREATED:
            self._memory.ingest_memory(
                event.workspace_id,
                space_id=event.space_id,
                source="approval-event",
                summary=f"Approval created for {payload.get('method')}",
                content={
                    "token": payload.get("token"),
                    "method": payload.get("method"),
                    "spaceId": event.space_id,
                },
                tags=["approval-created"],
                memory_id=memory_id,
            )
        elif event.event_type == LOOP_COMPLETED:
            self._memory.ingest_memory(
                event.workspace_id,
                space_id=event.space_id,
                source="agent-loop",
                summary=payload.get("summary") or "Agent loop executed",
                content=payload.get("content"),
                tags=["agent", "loop"],
                memory_id=memory_id,
            )
        elif event.event_type == PLAN_REVIEWED:
            status = payload.get("status")
            self._memory.ingest_memory(
                event.workspace_id,
                space_id=event.space_id,
                source="plan-approval",
                summary=f"Plan {status}: {payload.get('horizon') or 'unknown'}",
                content=payload,
                tags=["agent", "plan", f"plan-status:{status}"],
                memory_id=memory_id,
            )
