"""Domain events published through a persisted outbox.

Publishing writes the event to ``agent_event_outbox`` and attempts delivery
right away. Subscribers that fail leave the entry queued with a ``retry_at``
so :meth:`EventOutbox.deliver_pending` can redeliver it later; an entry is
only marked delivered after every subscriber accepted it, so subscribers must
tolerate seeing the same event more than once.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import EventOutboxConfig, settings
from models import AgentEventOutbox
from scheduler.retry_policy import compute_retry_at
from time_utils import to_utc, utc_now

logger = logging.getLogger(__name__)

ACTION_EXECUTED = "agent.action_executed"
APPROVAL_CREATED = "agent.approval_created"
PLAN_GENERATED = "agent.plan_generated"
PLAN_REVIEWED = "agent.plan_reviewed"
LOOP_COMPLETED = "agent.loop_completed"
PATTERN_DETECTED = "pattern.detected"


@dataclass(frozen=True)
class AgentEvent:
    """Event envelope shared by every publisher."""

    event_type: str
    workspace_id: str
    space_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    event_id: int | None = None


EventHandler = Callable[[AgentEvent], None]


@dataclass(frozen=True)
class DeliveryReport:
    """Counts from one outbox delivery pass."""

    delivered: int = 0
    failed: int = 0


def action_executed(
    workspace_id: str,
    space_id: str | None,
    result: dict[str, Any],
) -> AgentEvent:
    """Build the event emitted for every action outcome."""
    return AgentEvent(ACTION_EXECUTED, workspace_id, space_id, {"result": result})


def approval_created(
    workspace_id: str,
    space_id: str | None,
    *,
    token: str,
    method: str,
    reason: str,
) -> AgentEvent:
    """Build the event emitted when an action is routed to approval."""
    return AgentEvent(
        APPROVAL_CREATED,
        workspace_id,
        space_id,
        {"token": token, "method": method, "reason": reason},
    )


def plan_generated(
    workspace_id: str,
    space_id: str | None,
    *,
    plan_id: str,
    horizon: str,
    status: str,
    change_summary: str,
) -> AgentEvent:
    """Build the event emitted after a horizon plan is stored."""
    return AgentEvent(
        PLAN_GENERATED,
        workspace_id,
        space_id,
        {
            "plan_id": plan_id,
            "horizon": horizon,
            "status": status,
            "change_summary": change_summary,
        },
    )


def plan_reviewed(
    workspace_id: str,
    space_id: str | None,
    *,
    plan_id: str,
    horizon: str | None,
    status: str,
    user_id: str,
    reason: str | None = None,
) -> AgentEvent:
    """Build the event emitted when a pending plan is approved or rejected."""
    return AgentEvent(
        PLAN_REVIEWED,
        workspace_id,
        space_id,
        {
            "plan_id": plan_id,
            "horizon": horizon,
            "status": status,
            "user_id": user_id,
            "reason": reason,
        },
    )


def loop_completed(
    workspace_id: str,
    space_id: str,
    *,
    summary: str,
    content: dict[str, Any],
) -> AgentEvent:
    """Build the audit event for one finished loop run."""
    return AgentEvent(
        LOOP_COMPLETED,
        workspace_id,
        space_id,
        {"summary": summary, "content": content},
    )


def pattern_detected(
    workspace_id: str,
    space_id: str | None,
    *,
    pattern: dict[str, Any],
    surface: bool = False,
) -> AgentEvent:
    """Build the event emitted by pattern notify/surface actions."""
    payload: dict[str, Any] = {"pattern": pattern}
    if surface:
        payload["surface"] = True
    return AgentEvent(PATTERN_DETECTED, workspace_id, space_id, payload)


class EventOutbox:
    """Persisted at-least-once event channel."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        config: EventOutboxConfig | None = None,
    ) -> None:
        """Initialize the outbox with a session factory and delivery config."""
        self._session_factory = session_factory
        self._config = config or settings.events
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for one event type."""
        self._subscribers[event_type].append(handler)

    def subscribe_many(self, event_types: Iterable[str], handler: EventHandler) -> None:
        """Register one handler for several event types."""
        for event_type in event_types:
            self.subscribe(event_type, handler)

    def publish(self, event: AgentEvent, *, now: datetime | None = None) -> int | None:
        """Queue an event and attempt immediate delivery.

        Returns the outbox id, or None when the event could not be queued.
        Neither queueing nor delivery failures propagate to the publisher.
        """
        timestamp = to_utc(now or utc_now())
        try:
            entry_id = self._enqueue(event, timestamp)
        except SQLAlchemyError:
            logger.exception(
                "event enqueue failed: event_type=%s workspace_id=%s",
                event.event_type,
                event.workspace_id,
            )
            return None
        self._deliver_ids([entry_id], timestamp)
        return entry_id

    def deliver_pending(
        self,
        *,
        now: datetime | None = None,
        limit: int | None = None,
    ) -> DeliveryReport:
        """Redeliver queued events whose retry time has passed."""
        timestamp = to_utc(now or utc_now())
        batch = limit or self._config.batch_size

        def handler(session: Session) -> list[int]:
            return list(
                session.scalars(
                    select(AgentEventOutbox.id)
                    .where(
                        AgentEventOutbox.delivered_at.is_(None),
                        AgentEventOutbox.retry_at <= timestamp,
                    )
                    .order_by(AgentEventOutbox.id.asc())
                    .limit(batch)
                ).all()
            )

        return self._deliver_ids(self._execute(handler), timestamp)

    def pending_count(self) -> int:
        """Return how many events are still awaiting delivery."""

        def handler(session: Session) -> int:
            return len(
                session.scalars(
                    select(AgentEventOutbox.id).where(AgentEventOutbox.delivered_at.is_(None))
                ).all()
            )

        return self._execute(handler)

    def _enqueue(self, event: AgentEvent, timestamp: datetime) -> int:
        def handler(session: Session) -> int:
            entry = AgentEventOutbox(
                event_type=event.event_type,
                workspace_id=event.workspace_id,
                space_id=event.space_id,
                payload=event.payload,
                attempts=0,
                queued_at=timestamp,
                retry_at=timestamp,
            )
            session.add(entry)
            session.flush()
            return entry.id

        return self._execute(handler)

    def _deliver_ids(self, entry_ids: list[int], timestamp: datetime) -> DeliveryReport:
        delivered = 0
        failed = 0
        for entry_id in entry_ids:
            if self._deliver_one(entry_id, timestamp):
                delivered += 1
            else:
                failed += 1
        return DeliveryReport(delivered=delivered, failed=failed)

    def _deliver_one(self, entry_id: int, timestamp: datetime) -> bool:
        try:
            event = self._load_undelivered(entry_id)
        except SQLAlchemyError:
            logger.exception("event load failed: event_id=%s", entry_id)
            return False
        if event is None:
            return True

        error: str | None = None
        try:
            for subscriber in self._subscribers.get(event.event_type, []):
                subscriber(event)
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            logger.warning(
                "event delivery failed: event_id=%s event_type=%s error=%s",
                entry_id,
                event.event_type,
                error,
            )

        def handler(session: Session) -> None:
            entry = session.get(AgentEventOutbox, entry_id)
            if entry is None:
                return
            entry.attempts = (entry.attempts or 0) + 1
            entry.last_error = error
            if error is None:
                entry.delivered_at = timestamp
            else:
                entry.retry_at = compute_retry_at(
                    timestamp,
                    entry.attempts,
                    backoff_strategy="fixed",
                    backoff_base_seconds=self._config.retry_delay_seconds,
                )

        try:
            self._execute(handler)
        except SQLAlchemyError:
            logger.exception("event delivery bookkeeping failed: event_id=%s", entry_id)
            return False
        return error is None

    def _load_undelivered(self, entry_id: int) -> AgentEvent | None:
        def handler(session: Session) -> AgentEvent | None:
            entry = session.get(AgentEventOutbox, entry_id)
            if entry is None or entry.delivered_at is not None:
                return None
            return AgentEvent(
                event_type=entry.event_type,
                workspace_id=entry.workspace_id,
                space_id=entry.space_id,
                payload=dict(entry.payload or {}),
                event_id=entry.id,
            )

        return self._execute(handler)

    def _execute(self, handler):
        """Execute outbox work inside a managed session."""
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            try:
                result = handler(session)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return result
