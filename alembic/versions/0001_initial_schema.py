"""Initial TaskGate schema."""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None

# Enums are stored as their string values (non-native), so every enum
# column is a plain VARCHAR(32).
ENUM_LENGTH = 32


def upgrade() -> None:
    """Create tasks and audit_logs."""
    op.create_table(
        "tasks",
        sa.Column("task_id", sa.Uuid(), primary_key=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("priority", sa.String(length=ENUM_LENGTH), nullable=False),
        sa.Column(
            "tags",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=False,
        ),
        sa.Column("remark", sa.String(length=500), nullable=True),
        sa.Column("stage", sa.String(length=ENUM_LENGTH), nullable=False),
        sa.Column("status", sa.String(length=ENUM_LENGTH), nullable=False),
        sa.Column("project_id", sa.String(length=255), nullable=True),
        sa.Column("assignee_id", sa.String(length=255), nullable=True),
        sa.Column("creator_id", sa.String(length=255), nullable=False),
        sa.Column("team_id", sa.String(length=255), nullable=True),
        sa.Column("scheduled_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_tasks_project_stage", "tasks", ["project_id", "stage"])
    op.create_index("idx_tasks_team_stage", "tasks", ["team_id", "stage"])
    op.create_index("idx_tasks_assignee", "tasks", ["assignee_id"])
    op.create_index("idx_tasks_creator", "tasks", ["creator_id"])
    op.create_index("idx_tasks_created", "tasks", ["created_at"])

    op.create_table(
        "audit_logs",
        sa.Column("entry_id", sa.Uuid(), primary_key=True),
        sa.Column("action", sa.String(length=ENUM_LENGTH), nullable=False),
        sa.Column("resource_type", sa.String(length=ENUM_LENGTH), nullable=False),
        sa.Column("resource_id", sa.String(length=255), nullable=True),
        sa.Column("actor_id", sa.String(length=255), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=False),
        sa.Column("user_agent", sa.String(length=512), nullable=False),
        sa.Column("request_method", sa.String(length=16), nullable=True),
        sa.Column("request_url", sa.String(length=2048), nullable=True),
        sa.Column(
            "changes",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=False,
        ),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("integrity_hash", sa.String(length=64), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_audit_actor_time", "audit_logs", ["actor_id", "timestamp"])
    op.create_index(
        "idx_audit_resource_time",
        "audit_logs",
        ["resource_type", "resource_id", "timestamp"],
    )
    op.create_index("idx_audit_action_time", "audit_logs", ["action", "timestamp"])
    op.create_index("idx_audit_time", "audit_logs", ["timestamp"])
    op.create_index("idx_audit_ip_time", "audit_logs", ["ip_address", "timestamp"])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index("idx_audit_ip_time", table_name="audit_logs")
    op.drop_index("idx_audit_time", table_name="audit_logs")
    op.drop_index("idx_audit_action_time", table_name="audit_logs")
    op.drop_index("idx_audit_resource_time", table_name="audit_logs")
    op.drop_index("idx_audit_actor_time", table_name="audit_logs")
    op.drop_table("audit_logs")

    op.drop_index("idx_tasks_created", table_name="tasks")
    op.drop_index("idx_tasks_creator", table_name="tasks")
    op.drop_index("idx_tasks_assignee", table_name="tasks")
    op.drop_index("idx_tasks_team_stage", table_name="tasks")
    op.drop_index("idx_tasks_project_stage", table_name="tasks")
    op.drop_table("tasks")
