"""One-time keys that let an external agent act for a user."""

from __future__ import annotations

import hashlib
import logging
import secrets
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from errors import AgentValidationError
from models import AgentHandoffKey
from time_utils import to_utc, utc_now

logger = logging.getLogger(__name__)

KEY_PREFIX = "agh_"
DEFAULT_KEY_NAME = "Agent handoff"


@dataclass(frozen=True)
class HandoffKey:
    """A freshly issued key; ``api_key`` is only available at creation."""

    id: str
    name: str
    api_key: str
    created_at: datetime


def hash_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


class AgentHandoffService:
    """Issue and verify hashed handoff keys."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        """Initialize the service with a SQLAlchemy session factory."""
        self._session_factory = session_factory

    def create_handoff_key(
        self,
        workspace_id: str,
        user_id: str,
        *,
        name: str | None = None,
        now: datetime | None = None,
    ) -> HandoffKey:
        """Store a hash of a new random key and return the raw key once."""
        label = (name or DEFAULT_KEY_NAME).strip()
        if not label:
            raise AgentValidationError("Handoff key name must not be blank")
        raw_key = f"{KEY_PREFIX}{secrets.token_urlsafe(32)}"
        created_at = to_utc(now or utc_now())

        def handler(session: Session) -> AgentHandoffKey:
            row = AgentHandoffKey(
                workspace_id=workspace_id,
                user_id=user_id,
                name=label,
                key_hash=hash_key(raw_key),
                created_at=created_at,
            )
            session.add(row)
            session.flush()
            return row

        row = self._execute(handler)
        logger.info("handoff key issued: workspace_id=%s user_id=%s", workspace_id, user_id)
        return HandoffKey(id=row.id, name=row.name, api_key=raw_key, created_at=created_at)

    def resolve_key(self, raw_key: str) -> AgentHandoffKey | None:
        """Return the key record for a raw key, or None."""

        def handler(session: Session) -> AgentHandoffKey | None:
            return session.scalars(
                select(AgentHandoffKey).where(AgentHandoffKey.key_hash == hash_key(raw_key))
            ).first()

        return self._execute(handler)

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
