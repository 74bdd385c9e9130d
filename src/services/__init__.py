"""Database services for the workspace agent."""

from services.database import get_sync_session, run_migrations_sync, session_scope

__all__ = [
    "get_sync_session",
    "run_migrations_sync",
    "session_scope",
]
