"""Research graph queries used by the pattern evaluators.

The evaluators depend on :class:`ResearchGraph`; :class:`RelationalResearchGraph`
answers the same questions from the ``research_edges`` table.
"""

from __future__ import annotations

from collections import deque
from contextlib import closing
from dataclasses import dataclass, field
from typing import Callable, Iterable, Literal, Protocol

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import Page, ResearchEdge

Direction = Literal["outgoing", "incoming", "both"]


@dataclass(frozen=True)
class GraphEdge:
    """Directed, typed relationship between two pages."""

    from_id: str
    to_id: str
    edge_type: str


@dataclass(frozen=True)
class GraphNode:
    """Page reachable from another page."""

    id: str
    title: str


@dataclass(frozen=True)
class EvidenceChain:
    """Incoming evidence edges for a hypothesis."""

    supporting: list[GraphEdge] = field(default_factory=list)
    contradicting: list[GraphEdge] = field(default_factory=list)
    testing: list[GraphEdge] = field(default_factory=list)


class ResearchGraph(Protocol):
    """Graph queries the pattern engine needs."""

    def get_evidence_chain(self, hypothesis_id: str) -> EvidenceChain: ...

    def find_contradictions(self, workspace_id: str) -> list[GraphEdge]: ...

    def get_relationships(
        self,
        page_id: str,
        *,
        direction: Direction = "both",
        types: Iterable[str] | None = None,
    ) -> list[GraphEdge]: ...

    def get_related_pages(
        self,
        page_id: str,
        *,
        max_depth: int = 2,
        workspace_id: str | None = None,
    ) -> list[GraphNode]: ...


class RelationalResearchGraph:
    """ResearchGraph backed by the relational ``research_edges`` table."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        """Initialize the graph with a SQLAlchemy session factory."""
        self._session_factory = session_factory

    def add_edge(self, workspace_id: str, from_id: str, to_id: str, edge_type: str) -> bool:
        """Insert an edge; return False when it already exists."""

        def handler(session: Session) -> None:
            session.add(
                ResearchEdge(
                    workspace_id=workspace_id,
                    from_page_id=from_id,
                    to_page_id=to_id,
                    edge_type=edge_type,
                )
            )
            session.flush()

        try:
            self._execute(handler)
        except IntegrityError:
            return False
        return True

    def get_evidence_chain(self, hypothesis_id: str) -> EvidenceChain:
        """Group incoming VALIDATES, CONTRADICTS and TESTS_HYPOTHESIS edges."""
        edges = self.get_relationships(
            hypothesis_id,
            direction="incoming",
            types=("VALIDATES", "CONTRADICTS", "TESTS_HYPOTHESIS"),
        )
        return EvidenceChain(
            supporting=[edge for edge in edges if edge.edge_type == "VALIDATES"],
            contradicting=[edge for edge in edges if edge.edge_type == "CONTRADICTS"],
            testing=[edge for edge in edges if edge.edge_type == "TESTS_HYPOTHESIS"],
        )

    def find_contradictions(self, workspace_id: str) -> list[GraphEdge]:
        """Return every CONTRADICTS edge in the workspace."""

        def handler(session: Session) -> list[GraphEdge]:
            rows = session.scalars(
                select(ResearchEdge)
                .where(
                    ResearchEdge.workspace_id == workspace_id,
                    ResearchEdge.edge_type == "CONTRADICTS",
                )
                .order_by(ResearchEdge.id.asc())
            ).all()
            return [_to_edge(row) for row in rows]

        return self._execute(handler)

    def get_relationships(
        self,
        page_id: str,
        *,
        direction: Direction = "both",
        types: Iterable[str] | None = None,
    ) -> list[GraphEdge]:
        """Return edges touching a page, optionally filtered by type."""
        wanted = list(types or [])

        def handler(session: Session) -> list[GraphEdge]:
            statement = select(ResearchEdge)
            if direction == "outgoing":
                statement = statement.where(ResearchEdge.from_page_id == page_id)
            elif direction == "incoming":
                statement = statement.where(ResearchEdge.to_page_id == page_id)
            else:
                statement = statement.where(
                    or_(
                        ResearchEdge.from_page_id == page_id,
                        ResearchEdge.to_page_id == page_id,
                    )
                )
            if wanted:
                statement = statement.where(ResearchEdge.edge_type.in_(wanted))
            rows = session.scalars(statement.order_by(ResearchEdge.id.asc())).all()
            return [_to_edge(row) for row in rows]

        return self._execute(handler)

    def get_related_pages(
        self,
        page_id: str,
        *,
        max_depth: int = 2,
        workspace_id: str | None = None,
    ) -> list[GraphNode]:
        """Return distinct pages within ``max_depth`` hops, ignoring direction."""
        seen = {page_id}
        order: list[str] = []
        frontier = deque([(page_id, 0)])
        while frontier:
            current, depth = frontier.popleft()
            if depth >= max_depth:
                continue
            for edge in self.get_relationships(current):
                neighbour = edge.to_id if edge.from_id == current else edge.from_id
                if neighbour in seen:
                    continue
                seen.add(neighbour)
                order.append(neighbour)
                frontier.append((neighbour, depth + 1))
        if not order:
            return []

        def handler(session: Session) -> list[GraphNode]:
            statement = select(Page.id, Page.title).where(Page.id.in_(order))
            if workspace_id is not None:
                statement = statement.where(Page.workspace_id == workspace_id)
            titles = {row_id: title for row_id, title in session.execute(statement).all()}
            return [GraphNode(id=node, title=titles[node]) for node in order if node in titles]

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


def _to_edge(row: ResearchEdge) -> GraphEdge:
    return GraphEdge(from_id=row.from_page_id, to_id=row.to_page_id, edge_type=row.edge_type)
