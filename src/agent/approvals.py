"""Single-use approval tokens for agent actions awaiting confirmation."""

from __future__ import annotations

import hashlib
import json
import logging
import secrets
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from config import ApprovalConfig, settings
from models import AgentApproval
from time_utils import to_utc, utc_now

logger = logging.getLogger(__name__)

DEFAULT_SENSITIVE_METHODS = frozenset(
    {
        "workspace.delete",
        "workspace.removeMember",
        "space.delete",
        "page.delete",
        "project.delete",
        "task.delete",
        "attachment.delete",
        "group.delete",
    }
)
_TOKEN_PARAM_KEYS = ("approval_token", "approvalToken")


@dataclass(frozen=True)
class ApprovalGrant:
    """Token handed back to the caller when an approval is created."""

    token: str
    expires_at: datetime


@dataclass(frozen=True)
class ApprovalRecord:
    """Stored approval details surfaced to approval reviewers."""

    token: str
    user_id: str
    method: str
    params: dict[str, Any]
    expires_at: datetime


def sanitize_params(params: Mapping[str, Any] | None) -> dict[str, Any]:
    """Drop the approval token from params before storing or hashing."""
    if not params:
        return {}
    return {key: value for key, value in params.items() if key not in _TOKEN_PARAM_KEYS}


def hash_params(params: Mapping[str, Any] | None) -> str:
    """Return a SHA-256 digest of the sanitized params in canonical JSON."""
    serialized = json.dumps(
        sanitize_params(params),
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


class ApprovalLedger:
    """Persisted approval tokens with atomic single-use consumption."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        config: ApprovalConfig | None = None,
    ) -> None:
        """Initialize the ledger with a session factory and approval config."""
        self._session_factory = session_factory
        self._config = config or settings.approvals

    def requires_approval(self, method: str) -> bool:
        """Return True when the method is statically classified as sensitive."""
        if not self._config.enabled:
            return False
        if self._config.methods is not None:
            return method in self._config.methods
        return method in DEFAULT_SENSITIVE_METHODS

    def create_approval(
        self,
        user_id: str,
        method: str,
        params: Mapping[str, Any] | None,
        ttl_seconds: int | None = None,
        *,
        now: datetime | None = None,
    ) -> ApprovalGrant:
        """Persist a fresh approval token for the method and params."""
        ttl = ttl_seconds if ttl_seconds is not None else self._config.default_ttl_seconds
        created_at = to_utc(now or utc_now())
        expires_at = created_at + timedelta(seconds=ttl)
        token = secrets.token_hex(16)

        def handler(session: Session) -> ApprovalGrant:
            session.add(
                AgentApproval(
                    token=token,
                    user_id=user_id,
                    method=method,
                    params=sanitize_params(params),
                    params_hash=hash_params(params),
                    expires_at=expires_at,
                    created_at=created_at,
                )
            )
            return ApprovalGrant(token=token, expires_at=expires_at)

        grant = self._execute(handler)
        logger.info(
            "approval created: method=%s user_id=%s ttl_seconds=%s",
            method,
            user_id,
            ttl,
        )
        return grant

    def consume_approval(
        self,
        token: str,
        *,
        user_id: str | None = None,
        method: str | None = None,
        params: Mapping[str, Any] | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Consume a token exactly once.

        The conditional update only matches an unconsumed, unexpired token, so
        two concurrent consumers can never both succeed.
        """
        if not token:
            return False
        consumed_at = to_utc(now or utc_now())
        conditions = [
            AgentApproval.token == token,
            AgentApproval.consumed_at.is_(None),
            AgentApproval.expires_at > consumed_at,
        ]
        if user_id is not None:
            conditions.append(AgentApproval.user_id == user_id)
        if method is not None:
            conditions.append(AgentApproval.method == method)
        if params is not None:
            conditions.append(AgentApproval.params_hash == hash_params(params))

        def handler(session: Session) -> bool:
            result = session.execute(
                update(AgentApproval)
                .where(*conditions)
                .values(consumed_at=consumed_at)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

        consumed = self._execute(handler)
        if not consumed:
            logger.info("approval consume rejected: method=%s user_id=%s", method, user_id)
        return consumed

    def get_approval(self, token: str, *, user_id: str | None = None) -> ApprovalRecord | None:
        """Return an approval when it exists and has not been consumed."""

        def handler(session: Session) -> ApprovalRecord | None:
            row = session.get(AgentApproval, token)
            if row is None or row.consumed_at is not None:
                return None
            if user_id is not None and row.user_id != user_id:
                return None
            return _to_record(row)

        return self._execute(handler)

    def list_approvals(
        self,
        user_id: str,
        *,
        now: datetime | None = None,
    ) -> list[ApprovalRecord]:
        """List the user's live approvals ordered by expiry."""
        cutoff = to_utc(now or utc_now())

        def handler(session: Session) -> list[ApprovalRecord]:
            rows = session.scalars(
                select(AgentApproval)
                .where(
                    AgentApproval.user_id == user_id,
                    AgentApproval.consumed_at.is_(None),
                    AgentApproval.expires_at > cutoff,
                )
                .order_by(AgentApproval.expires_at.asc())
            ).all()
            return [_to_record(row) for row in rows]

        return self._execute(handler)

    def delete_approval(self, token: str, *, user_id: str | None = None) -> None:
        """Delete a pending approval, typically when a reviewer rejects it."""

        def handler(session: Session) -> None:
            statement = delete(AgentApproval).where(AgentApproval.token == token)
            if user_id is not None:
                statement = statement.where(AgentApproval.user_id == user_id)
            session.execute(statement)

        self._execute(handler)

    def purge_expired(self, *, now: datetime | None = None) -> int:
        """Delete expired or consumed approvals and return the count removed."""
        cutoff = to_utc(now or utc_now())

        def handler(session: Session) -> int:
            result = session.execute(
                delete(AgentApproval).where(
                    (AgentApproval.expires_at <= cutoff)
                    | AgentApproval.consumed_at.is_not(None)
                )
            )
            return int(result.rowcount or 0)

        removed = self._execute(handler)
        if removed:
            logger.info("approvals purged: count=%s", removed)
        return removed

    def _execute(self, handler):
        """Execute ledger work inside a managed session."""
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            try:
                result = handler(session)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return result


def _to_record(row: AgentApproval) -> ApprovalRecord:
    return ApprovalRecord(
        token=row.token,
        user_id=row.user_id,
        method=row.method,
        params=dict(row.params or {}),
        expires_at=to_utc(row.expires_at),
    )
