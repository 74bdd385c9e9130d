"""Pytest configuration for the workspace agent test suite."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest


def _ensure_test_env() -> None:
    """Keep tests off real brokers and model providers."""
    os.environ.pop("LLM_API_KEY", None)
    os.environ.setdefault("DATABASE_URL", "sqlite://")
    os.environ.setdefault("CELERY_BROKER_URL", "memory://")
    os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")


_ensure_test_env()

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from models import (  # noqa: E402
    Base,
    Goal,
    Page,
    ResearchEdge,
    Space,
    Task,
    User,
    Workspace,
)

FIXED_NOW = datetime(2025, 3, 12, 9, 30, tzinfo=timezone.utc)


@dataclass
class StubLLM:
    """Completion stub returning canned responses in order."""

    responses: list[str] = field(default_factory=list)
    configured: bool = True
    prompts: list[str] = field(default_factory=list)

    def generate_text(self, prompt: str, system: str | None = None) -> str:
        self.prompts.append(prompt)
        if not self.responses:
            return ""
        if len(self.responses) == 1:
            return self.responses[0]
        return self.responses.pop(0)


@dataclass
class FailingLLM:
    """Completion stub that always raises."""

    configured: bool = True

    def generate_text(self, prompt: str, system: str | None = None) -> str:
        raise RuntimeError("model unavailable")


@pytest.fixture()
def sqlite_session_factory() -> sessionmaker:
    """Provide an in-memory SQLite session factory shared across connections."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine)
    yield factory
    engine.dispose()


class Seeder:
    """Insert workspace rows for tests."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def _add(self, row: Any) -> Any:
        with self._session_factory() as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            session.expunge(row)
        return row

    def workspace(
        self,
        *,
        agent: dict[str, Any] | None = None,
        intelligence: dict[str, Any] | None = None,
        name: str = "Lab",
    ) -> Workspace:
        blob: dict[str, Any] = {}
        if agent is not None:
            blob["agent"] = agent
        if intelligence is not None:
            blob["intelligence"] = intelligence
        return self._add(Workspace(name=name, settings=blob, created_at=FIXED_NOW))

    def space(self, workspace_id: str, *, name: str = "Research", **kwargs: Any) -> Space:
        kwargs.setdefault("created_at", FIXED_NOW)
        return self._add(Space(workspace_id=workspace_id, name=name, **kwargs))

    def user(self, workspace_id: str, *, role: str = "owner", email: str = "owner@example.com") -> User:
        return self._add(User(workspace_id=workspace_id, email=email, role=role))

    def page(self, workspace_id: str, space_id: str, title: str, **kwargs: Any) -> Page:
        kwargs.setdefault("created_at", FIXED_NOW)
        kwargs.setdefault("updated_at", FIXED_NOW)
        return self._add(
            Page(workspace_id=workspace_id, space_id=space_id, title=title, **kwargs)
        )

    def task(self, workspace_id: str, space_id: str, title: str, **kwargs: Any) -> Task:
        kwargs.setdefault("created_at", FIXED_NOW)
        kwargs.setdefault("updated_at", FIXED_NOW)
        return self._add(
            Task(workspace_id=workspace_id, space_id=space_id, title=title, **kwargs)
        )

    def goal(self, workspace_id: str, name: str, **kwargs: Any) -> Goal:
        return self._add(Goal(workspace_id=workspace_id, name=name, **kwargs))

    def edge(self, workspace_id: str, from_page_id: str, to_page_id: str, edge_type: str) -> ResearchEdge:
        return self._add(
            ResearchEdge(
                workspace_id=workspace_id,
                from_page_id=from_page_id,
                to_page_id=to_page_id,
                edge_type=edge_type,
            )
        )


@pytest.fixture()
def seed(sqlite_session_factory: sessionmaker) -> Seeder:
    """Provide a row seeder bound to the test database."""
    return Seeder(sqlite_session_factory)


@pytest.fixture()
def fixed_now() -> datetime:
    """Return the reference instant used across scheduling tests."""
    return FIXED_NOW
