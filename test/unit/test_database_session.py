"""Unit tests for database session helpers."""

from __future__ import annotations

import pytest

from services import database


class FakeSession:
    """Session stub capturing commits, rollbacks and closes."""

    def __init__(self) -> None:
        """Initialize call tracking."""
        self.committed = False
        self.rolled_back = False
        self.closed = False

    def commit(self) -> None:
        """Mark commit as called."""
        self.committed = True

    def rollback(self) -> None:
        """Mark rollback as called."""
        self.rolled_back = True

    def close(self) -> None:
        """Mark close as called."""
        self.closed = True


def test_session_scope_commits_on_success(monkeypatch) -> None:
    """session_scope commits and closes after successful usage."""
    session = FakeSession()
    monkeypatch.setattr(database, "get_sync_session", lambda: session)

    with database.session_scope() as active_session:
        assert active_session is session

    assert session.committed is True
    assert session.rolled_back is False
    assert session.closed is True


def test_session_scope_rolls_back_on_error(monkeypatch) -> None:
    """session_scope rolls back when an exception is raised."""
    session = FakeSession()
    monkeypatch.setattr(database, "get_sync_session", lambda: session)

    with pytest.raises(RuntimeError, match="boom"):
        with database.session_scope():
            raise RuntimeError("boom")

    assert session.rolled_back is True
    assert session.committed is False
    assert session.closed is True


def test_async_driver_url_is_made_sync(monkeypatch) -> None:
    """Async Postgres URLs are rewritten for the synchronous engine."""
    monkeypatch.setattr(
        database.settings.database, "url", "postgresql+asyncpg://u:p@db:5432/raven"
    )

    assert database._get_db_url() == "postgresql://u:p@db:5432/raven"


def test_run_migrations_upgrades_to_head(monkeypatch) -> None:
    """Migrations run against the repo's alembic.ini and the configured URL."""
    calls = []
    monkeypatch.setattr(database.settings.database, "url", "sqlite:///agent.db")
    monkeypatch.setattr(
        database.command, "upgrade", lambda cfg, revision: calls.append((cfg, revision))
    )

    database.run_migrations_sync()

    cfg, revision = calls[0]
    assert revision == "head"
    assert cfg.config_file_name.endswith("alembic.ini")
    assert cfg.get_main_option("sqlalchemy.url") == "sqlite:///agent.db"
