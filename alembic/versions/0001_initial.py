"""Initial agent schema.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _enum(name: str, *values: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False)


def _ts(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    """Create workspace content, agent state and pattern tables."""
    op.create_table(
        "workspaces",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("settings", sa.JSON(), nullable=True),
        _ts("created_at"),
        _ts("deleted_at"),
    )
    op.create_table(
        "spaces",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("workspace_id", sa.String(length=36), sa.ForeignKey("workspaces.id"), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        _ts("created_at"),
        _ts("deleted_at"),
    )
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("workspace_id", sa.String(length=36), sa.ForeignKey("workspaces.id"), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("role", _enum("user_role", "owner", "admin", "member"), nullable=False),
    )
    op.create_table(
        "pages",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("workspace_id", sa.String(length=36), sa.ForeignKey("workspaces.id"), nullable=False),
        sa.Column("space_id", sa.String(length=36), sa.ForeignKey("spaces.id"), nullable=False),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column(
            "page_type",
            _enum("page_type", "page", "hypothesis", "experiment", "paper"),
            nullable=False,
        ),
        sa.Column("content", sa.JSON(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("creator_id", sa.String(length=36), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        _ts("deleted_at"),
    )
    op.create_index("ix_pages_space_title", "pages", ["space_id", "title"])
    op.create_table(
        "projects",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("workspace_id", sa.String(length=36), sa.ForeignKey("workspaces.id"), nullable=False),
        sa.Column("space_id", sa.String(length=36), sa.ForeignKey("spaces.id"), nullable=False),
        sa.Column("name", sa.String(length=300), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("creator_id", sa.String(length=36), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_table(
        "tasks",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("workspace_id", sa.String(length=36), sa.ForeignKey("workspaces.id"), nullable=False),
        sa.Column("space_id", sa.String(length=36), sa.ForeignKey("spaces.id"), nullable=False),
        sa.Column("project_id", sa.String(length=36), sa.ForeignKey("projects.id"), nullable=True),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "status",
            _enum("task_status", "todo", "in_progress", "in_review", "blocked", "done"),
            nullable=False,
        ),
        sa.Column(
            "priority",
            _enum("task_priority", "low", "medium", "high", "urgent"),
            nullable=False,
        ),
        sa.Column(
            "bucket",
            _enum("task_bucket", "none", "inbox", "waiting", "someday"),
            nullable=False,
        ),
        _ts("due_date"),
        sa.Column("labels", sa.JSON(), nullable=True),
        sa.Column("creator_id", sa.String(length=36), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        _ts("deleted_at"),
    )
    op.create_table(
        "goals",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("workspace_id", sa.String(length=36), sa.ForeignKey("workspaces.id"), nullable=False),
        sa.Column("space_id", sa.String(length=36), sa.ForeignKey("spaces.id"), nullable=True),
        sa.Column("name", sa.String(length=300), nullable=False),
        sa.Column("horizon", sa.String(length=50), nullable=False),
        sa.Column("keywords", sa.JSON(), nullable=True),
        _ts("created_at"),
    )
    op.create_table(
        "agent_memories",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("workspace_id", sa.String(length=36), sa.ForeignKey("workspaces.id"), nullable=False),
        sa.Column("space_id", sa.String(length=36), nullable=True),
        sa.Column("source", sa.String(length=100), nullable=False),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("content", sa.JSON(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=True),
        _ts("timestamp", nullable=False),
    )
    op.create_index(
        "ix_agent_memories_workspace_space",
        "agent_memories",
        ["workspace_id", "space_id"],
    )
    op.create_table(
        "agent_approvals",
        sa.Column("token", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("method", sa.String(length=100), nullable=False),
        sa.Column("params", sa.JSON(), nullable=True),
        sa.Column("params_hash", sa.String(length=64), nullable=False),
        _ts("expires_at", nullable=False),
        _ts("consumed_at"),
        _ts("created_at"),
    )
    op.create_index(
        "ix_agent_approvals_user_expires",
        "agent_approvals",
        ["user_id", "expires_at"],
    )
    op.create_table(
        "agent_review_prompts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("workspace_id", sa.String(length=36), sa.ForeignKey("workspaces.id"), nullable=False),
        sa.Column("space_id", sa.String(length=36), nullable=False),
        sa.Column("week_key", sa.String(length=10), nullable=False),
        sa.Column("question", sa.Text(), nullable=False),
        sa.Column(
            "status",
            _enum("review_prompt_status", "pending", "consumed"),
            nullable=False,
        ),
        sa.Column("source", sa.String(length=100), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        _ts("created_at"),
        _ts("resolved_at"),
        sa.UniqueConstraint(
            "space_id",
            "week_key",
            "question",
            name="uq_agent_review_prompts_space_week_question",
        ),
    )
    op.create_table(
        "agent_event_outbox",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("workspace_id", sa.String(length=36), nullable=False),
        sa.Column("space_id", sa.String(length=36), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        _ts("queued_at", nullable=False),
        _ts("retry_at", nullable=False),
        _ts("delivered_at"),
    )
    op.create_index(
        "ix_agent_event_outbox_pending",
        "agent_event_outbox",
        ["delivered_at", "retry_at"],
    )
    op.create_table(
        "agent_handoff_keys",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("workspace_id", sa.String(length=36), sa.ForeignKey("workspaces.id"), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("key_hash", sa.String(length=64), nullable=False, unique=True),
        _ts("created_at"),
    )
    op.create_table(
        "research_edges",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("workspace_id", sa.String(length=36), sa.ForeignKey("workspaces.id"), nullable=False),
        sa.Column("from_page_id", sa.String(length=36), sa.ForeignKey("pages.id"), nullable=False),
        sa.Column("to_page_id", sa.String(length=36), sa.ForeignKey("pages.id"), nullable=False),
        sa.Column("edge_type", sa.String(length=50), nullable=False),
        _ts("created_at"),
        sa.UniqueConstraint(
            "from_page_id",
            "to_page_id",
            "edge_type",
            name="uq_research_edges_from_to_type",
        ),
    )
    op.create_table(
        "pattern_detections",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("workspace_id", sa.String(length=36), sa.ForeignKey("workspaces.id"), nullable=False),
        sa.Column("space_id", sa.String(length=36), nullable=True),
        sa.Column("pattern_type", sa.String(length=50), nullable=False),
        sa.Column(
            "severity",
            _enum("pattern_severity", "low", "medium", "high"),
            nullable=False,
        ),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column(
            "status",
            _enum("pattern_status", "detected", "acknowledged", "dismissed"),
            nullable=False,
        ),
        sa.Column("action_taken", sa.JSON(), nullable=True),
        _ts("detected_at", nullable=False),
        _ts("acknowledged_at"),
        _ts("updated_at"),
        _ts("deleted_at"),
    )
    op.create_index(
        "ix_pattern_detections_workspace_type",
        "pattern_detections",
        ["workspace_id", "pattern_type"],
    )


def downgrade() -> None:
    """Drop all agent tables."""
    op.drop_index("ix_pattern_detections_workspace_type", table_name="pattern_detections")
    op.drop_table("pattern_detections")
    op.drop_table("research_edges")
    op.drop_table("agent_handoff_keys")
    op.drop_index("ix_agent_event_outbox_pending", table_name="agent_event_outbox")
    op.drop_table("agent_event_outbox")
    op.drop_table("agent_review_prompts")
    op.drop_index("ix_agent_approvals_user_expires", table_name="agent_approvals")
    op.drop_table("agent_approvals")
    op.drop_index("ix_agent_memories_workspace_space", table_name="agent_memories")
    op.drop_table("agent_memories")
    op.drop_table("goals")
    op.drop_table("tasks")
    op.drop_table("projects")
    op.drop_index("ix_pages_space_title", table_name="pages")
    op.drop_table("pages")
    op.drop_table("users")
    op.drop_table("spaces")
    op.drop_table("workspaces")
