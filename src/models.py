"""Data models for the workspace agent."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

# SQLAlchemy base
Base = declarative_base()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


UserRoleEnum = Enum(
    "owner",
    "admin",
    "member",
    name="user_role",
    native_enum=False,
)
PageTypeEnum = Enum(
    "page",
    "hypothesis",
    "experiment",
    "paper",
    name="page_type",
    native_enum=False,
)
TaskStatusEnum = Enum(
    "todo",
    "in_progress",
    "in_review",
    "blocked",
    "done",
    name="task_status",
    native_enum=False,
)
TaskPriorityEnum = Enum(
    "low",
    "medium",
    "high",
    "urgent",
    name="task_priority",
    native_enum=False,
)
TaskBucketEnum = Enum(
    "none",
    "inbox",
    "waiting",
    "someday",
    name="task_bucket",
    native_enum=False,
)
ReviewPromptStatusEnum = Enum(
    "pending",
    "consumed",
    name="review_prompt_status",
    native_enum=False,
)
PatternSeverityEnum = Enum(
    "low",
    "medium",
    "high",
    name="pattern_severity",
    native_enum=False,
)
PatternStatusEnum = Enum(
    "detected",
    "acknowledged",
    "dismissed",
    name="pattern_status",
    native_enum=False,
)


class Workspace(Base):
    """Tenant root holding agent and intelligence settings."""

    __tablename__ = "workspaces"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(200), nullable=False)
    settings = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utc_now)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class Space(Base):
    """Workspace subdivision that owns pages, tasks, and plans."""

    __tablename__ = "spaces"

    id = Column(String(36), primary_key=True, default=_new_id)
    workspace_id = Column(String(36), ForeignKey("workspaces.id"), nullable=False)
    name = Column(String(200), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utc_now)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class User(Base):
    """Workspace member; owners act for scheduled runs."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_new_id)
    workspace_id = Column(String(36), ForeignKey("workspaces.id"), nullable=False)
    email = Column(String(320), nullable=False)
    role = Column(UserRoleEnum, nullable=False, default="member")


class Page(Base):
    """Document page, including research page types."""

    __tablename__ = "pages"

    id = Column(String(36), primary_key=True, default=_new_id)
    workspace_id = Column(String(36), ForeignKey("workspaces.id"), nullable=False)
    space_id = Column(String(36), ForeignKey("spaces.id"), nullable=False)
    title = Column(String(500), nullable=False)
    page_type = Column(PageTypeEnum, nullable=False, default="page")
    content = Column(JSON, nullable=True)
    page_metadata = Column("metadata", JSON, nullable=True)
    creator_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utc_now)
    updated_at = Column(DateTime(timezone=True), default=_utc_now)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_pages_space_title", "space_id", "title"),)


class Project(Base):
    """Project grouping tasks within a space."""

    __tablename__ = "projects"

    id = Column(String(36), primary_key=True, default=_new_id)
    workspace_id = Column(String(36), ForeignKey("workspaces.id"), nullable=False)
    space_id = Column(String(36), ForeignKey("spaces.id"), nullable=False)
    name = Column(String(300), nullable=False)
    description = Column(Text, nullable=True)
    creator_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utc_now)
    updated_at = Column(DateTime(timezone=True), default=_utc_now)


class Task(Base):
    """Actionable task tracked in a space."""

    __tablename__ = "tasks"

    id = Column(String(36), primary_key=True, default=_new_id)
    workspace_id = Column(String(36), ForeignKey("workspaces.id"), nullable=False)
    space_id = Column(String(36), ForeignKey("spaces.id"), nullable=False)
    project_id = Column(String(36), ForeignKey("projects.id"), nullable=True)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(TaskStatusEnum, nullable=False, default="todo")
    priority = Column(TaskPriorityEnum, nullable=False, default="medium")
    bucket = Column(TaskBucketEnum, nullable=False, default="none")
    due_date = Column(DateTime(timezone=True), nullable=True)
    labels = Column(JSON, nullable=True)
    creator_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utc_now)
    updated_at = Column(DateTime(timezone=True), default=_utc_now)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class Goal(Base):
    """Goal with keywords used for triage focus matching."""

    __tablename__ = "goals"

    id = Column(String(36), primary_key=True, default=_new_id)
    workspace_id = Column(String(36), ForeignKey("workspaces.id"), nullable=False)
    space_id = Column(String(36), ForeignKey("spaces.id"), nullable=True)
    name = Column(String(300), nullable=False)
    horizon = Column(String(50), nullable=False, default="short")
    keywords = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utc_now)


class AgentMemory(Base):
    """Tagged memory entry: audit trails, plans, chat turns, profiles."""

    __tablename__ = "agent_memories"

    id = Column(String(36), primary_key=True, default=_new_id)
    workspace_id = Column(String(36), ForeignKey("workspaces.id"), nullable=False)
    space_id = Column(String(36), nullable=True)
    source = Column(String(100), nullable=False)
    summary = Column(Text, nullable=True)
    content = Column(JSON, nullable=True)
    tags = Column(JSON, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=_utc_now, nullable=False)

    __table_args__ = (
        Index("ix_agent_memories_workspace_space", "workspace_id", "space_id"),
    )


class AgentApproval(Base):
    """Single-use approval token for a pending agent action."""

    __tablename__ = "agent_approvals"

    token = Column(String(64), primary_key=True)
    user_id = Column(String(36), nullable=False)
    method = Column(String(100), nullable=False)
    params = Column(JSON, nullable=True)
    params_hash = Column(String(64), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utc_now)

    __table_args__ = (Index("ix_agent_approvals_user_expires", "user_id", "expires_at"),)


class AgentReviewPrompt(Base):
    """Pending weekly review question raised by the agent."""

    __tablename__ = "agent_review_prompts"

    id = Column(String(36), primary_key=True, default=_new_id)
    workspace_id = Column(String(36), ForeignKey("workspaces.id"), nullable=False)
    space_id = Column(String(36), nullable=False)
    week_key = Column(String(10), nullable=False)
    question = Column(Text, nullable=False)
    status = Column(ReviewPromptStatusEnum, nullable=False, default="pending")
    source = Column(String(100), nullable=True)
    prompt_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utc_now)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "space_id",
            "week_key",
            "question",
            name="uq_agent_review_prompts_space_week_question",
        ),
    )


class AgentEventOutbox(Base):
    """Queued domain event awaiting delivery to subscribers."""

    __tablename__ = "agent_event_outbox"

    id = Column(Integer, primary_key=True)
    event_type = Column(String(100), nullable=False)
    workspace_id = Column(String(36), nullable=False)
    space_id = Column(String(36), nullable=True)
    payload = Column(JSON, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    queued_at = Column(DateTime(timezone=True), default=_utc_now, nullable=False)
    retry_at = Column(DateTime(timezone=True), default=_utc_now, nullable=False)
    delivered_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_agent_event_outbox_pending", "delivered_at", "retry_at"),)


class AgentHandoffKey(Base):
    """Hashed key issued for an external agent handoff."""

    __tablename__ = "agent_handoff_keys"

    id = Column(String(36), primary_key=True, default=_new_id)
    workspace_id = Column(String(36), ForeignKey("workspaces.id"), nullable=False)
    user_id = Column(String(36), nullable=False)
    name = Column(String(200), nullable=False)
    key_hash = Column(String(64), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), default=_utc_now)


class ResearchEdge(Base):
    """Typed relationship between two research pages."""

    __tablename__ = "research_edges"

    id = Column(Integer, primary_key=True)
    workspace_id = Column(String(36), ForeignKey("workspaces.id"), nullable=False)
    from_page_id = Column(String(36), ForeignKey("pages.id"), nullable=False)
    to_page_id = Column(String(36), ForeignKey("pages.id"), nullable=False)
    edge_type = Column(String(50), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utc_now)

    __table_args__ = (
        UniqueConstraint(
            "from_page_id",
            "to_page_id",
            "edge_type",
            name="uq_research_edges_from_to_type",
        ),
    )


class PatternDetection(Base):
    """Recorded structural condition found in research or task data."""

    __tablename__ = "pattern_detections"

    id = Column(String(36), primary_key=True, default=_new_id)
    workspace_id = Column(String(36), ForeignKey("workspaces.id"), nullable=False)
    space_id = Column(String(36), nullable=True)
    pattern_type = Column(String(50), nullable=False)
    severity = Column(PatternSeverityEnum, nullable=False)
    title = Column(Text, nullable=False)
    details = Column(JSON, nullable=False)
    status = Column(PatternStatusEnum, nullable=False, default="detected")
    action_taken = Column(JSON, nullable=True)
    detected_at = Column(DateTime(timezone=True), default=_utc_now, nullable=False)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=_utc_now)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_pattern_detections_workspace_type", "workspace_id", "pattern_type"),
    )
