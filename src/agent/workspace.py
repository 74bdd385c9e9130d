"""Repository helpers for the workspace records the agent reads and writes."""

from __future__ import annotations

from contextlib import closing
from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Callable, Iterable, Mapping

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from agent.settings import AgentSettings, merge_agent_settings, resolve_agent_settings
from errors import AgentNotFoundError, AgentValidationError
from models import Goal, Page, Project, Space, Task, User, Workspace
from time_utils import utc_now

logger = logging.getLogger(__name__)

UNSET = object()


@dataclass(frozen=True)
class SpaceWithSettings:
    """Space row joined with its workspace settings blob."""

    space_id: str
    workspace_id: str
    space_name: str
    settings: dict[str, Any]


class WorkspaceRepository:
    """Repository for workspace, space, page, task, project and goal rows."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        """Initialize repository with a SQLAlchemy session factory."""
        self._session_factory = session_factory

    def get_workspace(self, workspace_id: str) -> Workspace | None:
        """Fetch a non-deleted workspace by id."""

        def handler(session: Session) -> Workspace | None:
            workspace = session.get(Workspace, workspace_id)
            if workspace is None or workspace.deleted_at is not None:
                return None
            return workspace

        return self._execute(handler)

    def get_agent_settings(self, workspace_id: str) -> AgentSettings:
        """Resolve typed agent settings for a workspace."""
        workspace = self.get_workspace(workspace_id)
        if workspace is None:
            raise AgentNotFoundError(f"Workspace not found: {workspace_id}")
        return resolve_agent_settings(workspace.settings)

    def update_agent_settings(
        self,
        workspace_id: str,
        patch: Mapping[str, Any],
    ) -> AgentSettings:
        """Merge ``patch`` into the workspace agent settings and persist them."""

        def handler(session: Session) -> AgentSettings:
            workspace = session.get(Workspace, workspace_id)
            if workspace is None:
                raise AgentNotFoundError(f"Workspace not found: {workspace_id}")
            workspace.settings = merge_agent_settings(workspace.settings, patch)
            session.flush()
            return resolve_agent_settings(workspace.settings)

        return self._execute(handler)

    def get_space(self, space_id: str, workspace_id: str) -> Space | None:
        """Fetch a non-deleted space that belongs to the workspace."""

        def handler(session: Session) -> Space | None:
            space = session.get(Space, space_id)
            if space is None or space.deleted_at is not None:
                return None
            if space.workspace_id != workspace_id:
                return None
            return space

        return self._execute(handler)

    def list_spaces_with_settings(
        self,
        workspace_id: str | None = None,
    ) -> list[SpaceWithSettings]:
        """List non-deleted spaces joined with their workspace settings."""

        def handler(session: Session) -> list[SpaceWithSettings]:
            statement = (
                select(Space, Workspace.settings)
                .join(Workspace, Workspace.id == Space.workspace_id)
                .where(Space.deleted_at.is_(None), Workspace.deleted_at.is_(None))
                .order_by(Space.created_at.asc())
            )
            if workspace_id is not None:
                statement = statement.where(Space.workspace_id == workspace_id)
            return [
                SpaceWithSettings(
                    space_id=space.id,
                    workspace_id=space.workspace_id,
                    space_name=space.name,
                    settings=dict(blob or {}),
                )
                for space, blob in session.execute(statement).all()
            ]

        return self._execute(handler)

    def list_workspaces(self) -> list[Workspace]:
        """List non-deleted workspaces."""

        def handler(session: Session) -> list[Workspace]:
            return list(
                session.scalars(
                    select(Workspace)
                    .where(Workspace.deleted_at.is_(None))
                    .order_by(Workspace.created_at.asc())
                ).all()
            )

        return self._execute(handler)

    def oldest_active_space(self, workspace_id: str) -> Space | None:
        """Return the earliest-created non-deleted space in the workspace."""

        def handler(session: Session) -> Space | None:
            return session.scalars(
                select(Space)
                .where(Space.workspace_id == workspace_id, Space.deleted_at.is_(None))
                .order_by(Space.created_at.asc())
                .limit(1)
            ).first()

        return self._execute(handler)

    def get_workspace_owner(self, workspace_id: str) -> User | None:
        """Return the workspace owner used as the acting identity."""

        def handler(session: Session) -> User | None:
            return session.scalars(
                select(User)
                .where(User.workspace_id == workspace_id, User.role == "owner")
                .limit(1)
            ).first()

        return self._execute(handler)

    def page_title_exists(
        self,
        space_id: str,
        title: str,
        *,
        creator_id: str | None = None,
    ) -> bool:
        """Return True when a non-deleted page with the exact title exists."""

        def handler(session: Session) -> bool:
            statement = select(Page.id).where(
                Page.space_id == space_id,
                Page.title == title,
                Page.deleted_at.is_(None),
            )
            if creator_id is not None:
                statement = statement.where(Page.creator_id == creator_id)
            return session.scalars(statement.limit(1)).first() is not None

        return self._execute(handler)

    def get_page(self, page_id: str) -> Page | None:
        """Fetch a non-deleted page by id."""

        def handler(session: Session) -> Page | None:
            page = session.get(Page, page_id)
            if page is None or page.deleted_at is not None:
                return None
            return page

        return self._execute(handler)

    def find_page_by_title(
        self,
        space_id: str,
        title: str,
        *,
        creator_id: str | None = None,
    ) -> Page | None:
        """Return the first non-deleted page with the exact title."""

        def handler(session: Session) -> Page | None:
            statement = select(Page).where(
                Page.space_id == space_id,
                Page.title == title,
                Page.deleted_at.is_(None),
            )
            if creator_id is not None:
                statement = statement.where(Page.creator_id == creator_id)
            return session.scalars(statement.limit(1)).first()

        return self._execute(handler)

    def list_goals(
        self,
        workspace_id: str,
        space_id: str | None = None,
        *,
        limit: int | None = None,
    ) -> list[Goal]:
        """List workspace-wide goals plus goals scoped to the space, newest first."""

        def handler(session: Session) -> list[Goal]:
            statement = select(Goal).where(Goal.workspace_id == workspace_id)
            if space_id is not None:
                statement = statement.where(
                    or_(Goal.space_id == space_id, Goal.space_id.is_(None))
                )
            statement = statement.order_by(Goal.created_at.desc())
            if limit is not None:
                statement = statement.limit(limit)
            return list(session.scalars(statement).all())

        return self._execute(handler)

    def list_open_tasks(
        self,
        space_id: str,
        *,
        limit: int | None = None,
        bucket: list[str] | None = None,
        unassigned_project: bool = False,
        due_from=None,
        due_before=None,
        order_by_due: bool = False,
    ) -> list[Task]:
        """List non-deleted, not-done tasks in a space with optional filters."""

        def handler(session: Session) -> list[Task]:
            statement = select(Task).where(
                Task.space_id == space_id,
                Task.deleted_at.is_(None),
                Task.status != "done",
            )
            if bucket is not None:
                statement = statement.where(Task.bucket.in_(bucket))
            if unassigned_project:
                statement = statement.where(Task.project_id.is_(None))
            if due_from is not None:
                statement = statement.where(Task.due_date >= due_from)
            if due_before is not None:
                statement = statement.where(Task.due_date < due_before)
            if order_by_due:
                statement = statement.order_by(Task.due_date.asc())
            else:
                statement = statement.order_by(Task.created_at.desc())
            if limit is not None:
                statement = statement.limit(limit)
            return list(session.scalars(statement).all())

        return self._execute(handler)

    def count_open_tasks(
        self,
        space_id: str,
        *,
        bucket: list[str],
        unassigned_project: bool = False,
    ) -> int:
        """Count not-done tasks in the given buckets."""

        def handler(session: Session) -> int:
            statement = select(func.count(Task.id)).where(
                Task.space_id == space_id,
                Task.deleted_at.is_(None),
                Task.status != "done",
                Task.bucket.in_(bucket),
            )
            if unassigned_project:
                statement = statement.where(Task.project_id.is_(None))
            return int(session.scalar(statement) or 0)

        return self._execute(handler)

    def list_labelled_tasks(
        self,
        workspace_id: str,
        labels: Iterable[str],
        *,
        exclude_done: bool = False,
        updated_before: datetime | None = None,
    ) -> list[Task]:
        """List non-deleted workspace tasks carrying any label, case-insensitively."""
        wanted = {label.lower() for label in labels}

        def handler(session: Session) -> list[Task]:
            statement = select(Task).where(
                Task.workspace_id == workspace_id,
                Task.deleted_at.is_(None),
            )
            if exclude_done:
                statement = statement.where(Task.status != "done")
            if updated_before is not None:
                statement = statement.where(Task.updated_at < updated_before)
            rows = session.scalars(statement.order_by(Task.created_at.asc())).all()
            # Labels live in a JSON column, so membership is checked here.
            return [
                row
                for row in rows
                if wanted.intersection(str(label).lower() for label in (row.labels or []))
            ]

        return self._execute(handler)

    def list_pages_by_type(
        self,
        workspace_id: str,
        page_types: Iterable[str],
    ) -> list[Page]:
        """List non-deleted workspace pages of the given types, oldest first."""
        types = list(page_types)

        def handler(session: Session) -> list[Page]:
            return list(
                session.scalars(
                    select(Page)
                    .where(
                        Page.workspace_id == workspace_id,
                        Page.page_type.in_(types),
                        Page.deleted_at.is_(None),
                    )
                    .order_by(Page.created_at.asc())
                ).all()
            )

        return self._execute(handler)

    def page_titles(self, page_ids: Iterable[str]) -> dict[str, str]:
        """Map page ids to titles for the pages that exist."""
        ids = list(page_ids)
        if not ids:
            return {}

        def handler(session: Session) -> dict[str, str]:
            rows = session.execute(select(Page.id, Page.title).where(Page.id.in_(ids))).all()
            return {page_id: title for page_id, title in rows}

        return self._execute(handler)

    def get_task(self, task_id: str) -> Task | None:
        """Fetch a non-deleted task by id."""

        def handler(session: Session) -> Task | None:
            task = session.get(Task, task_id)
            if task is None or task.deleted_at is not None:
                return None
            return task

        return self._execute(handler)

    def create_task(
        self,
        *,
        workspace_id: str,
        space_id: str,
        title: str,
        creator_id: str | None = None,
        description: str | None = None,
        status: str = "todo",
        priority: str = "medium",
        bucket: str = "none",
        due_date=None,
        project_id: str | None = None,
        labels: list[str] | None = None,
    ) -> Task:
        """Create a task in a space that belongs to the workspace."""

        def handler(session: Session) -> Task:
            _require_space(session, space_id, workspace_id)
            if project_id is not None:
                project = session.get(Project, project_id)
                if (
                    project is None
                    or project.workspace_id != workspace_id
                    or project.space_id != space_id
                ):
                    raise AgentValidationError(
                        "Project not found or does not belong to the workspace/space"
                    )
            timestamp = utc_now()
            task = Task(
                workspace_id=workspace_id,
                space_id=space_id,
                project_id=project_id,
                title=title,
                description=description,
                status=status,
                priority=priority,
                bucket=bucket,
                due_date=due_date,
                labels=list(labels or []),
                creator_id=creator_id,
                created_at=timestamp,
                updated_at=timestamp,
            )
            session.add(task)
            session.flush()
            return task

        return self._execute(handler)

    def update_task(
        self,
        task_id: str,
        workspace_id: str,
        *,
        title: str | object = UNSET,
        description: str | None | object = UNSET,
        status: str | object = UNSET,
        priority: str | object = UNSET,
        bucket: str | object = UNSET,
        due_date=UNSET,
    ) -> Task:
        """Apply field updates to a task in the workspace."""

        def handler(session: Session) -> Task:
            task = session.get(Task, task_id)
            if task is None or task.deleted_at is not None or task.workspace_id != workspace_id:
                raise AgentNotFoundError(f"Task not found: {task_id}")
            if title is not UNSET:
                task.title = title
            if description is not UNSET:
                task.description = description
            if status is not UNSET:
                task.status = status
            if priority is not UNSET:
                task.priority = priority
            if bucket is not UNSET:
                task.bucket = bucket
            if due_date is not UNSET:
                task.due_date = due_date
            task.updated_at = utc_now()
            session.flush()
            return task

        return self._execute(handler)

    def create_page(
        self,
        *,
        workspace_id: str,
        space_id: str,
        title: str,
        creator_id: str | None = None,
        content: dict[str, Any] | None = None,
        page_type: str = "page",
        metadata: dict[str, Any] | None = None,
    ) -> Page:
        """Create a page in a space that belongs to the workspace."""

        def handler(session: Session) -> Page:
            _require_space(session, space_id, workspace_id)
            timestamp = utc_now()
            page = Page(
                workspace_id=workspace_id,
                space_id=space_id,
                title=title,
                page_type=page_type,
                content=content,
                page_metadata=metadata or {},
                creator_id=creator_id,
                created_at=timestamp,
                updated_at=timestamp,
            )
            session.add(page)
            session.flush()
            return page

        return self._execute(handler)

    def create_project(
        self,
        *,
        workspace_id: str,
        space_id: str,
        name: str,
        creator_id: str | None = None,
        description: str | None = None,
    ) -> Project:
        """Create a project in a space that belongs to the workspace."""

        def handler(session: Session) -> Project:
            _require_space(session, space_id, workspace_id)
            timestamp = utc_now()
            project = Project(
                workspace_id=workspace_id,
                space_id=space_id,
                name=name,
                description=description,
                creator_id=creator_id,
                created_at=timestamp,
                updated_at=timestamp,
            )
            session.add(project)
            session.flush()
            return project

        return self._execute(handler)

    def _execute(self, handler):
        """Execute repository work inside a managed session."""
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            try:
                result = handler(session)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return result


def _require_space(session: Session, space_id: str, workspace_id: str) -> Space:
    """Return the space or raise when it is missing or foreign."""
    space = session.get(Space, space_id)
    if space is None or space.deleted_at is not None or space.workspace_id != workspace_id:
        raise AgentNotFoundError(f"Space with id {space_id} not found")
    return space
