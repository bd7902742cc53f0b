"""Create reminder history, notification and dispatch lease tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "reminder_history",
        sa.Column("history_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("obligation_id", sa.String(length=128), nullable=False),
        sa.Column("tier", sa.String(length=16), nullable=False),
        sa.Column("days_overdue", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("raw_days_overdue", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("grace_period_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("template", sa.String(length=32), nullable=False),
        sa.Column("subject", sa.Text(), nullable=False, server_default=""),
        sa.Column("message", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("channel_results_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("notification_id", sa.String(length=64), nullable=True),
        sa.Column("amount", sa.Float(), nullable=False, server_default="0"),
        sa.Column("dedupe_key", sa.String(length=400), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("history_id"),
        sa.UniqueConstraint("dedupe_key"),
    )
    op.create_index("ix_reminder_history_user_id", "reminder_history", ["user_id"])
    op.create_index("ix_reminder_history_obligation_id", "reminder_history", ["obligation_id"])
    op.create_index("ix_reminder_history_status", "reminder_history", ["status"])
    op.create_index("ix_reminder_history_created_at", "reminder_history", ["created_at"])

    op.create_table(
        "reminder_dispatch_leases",
        sa.Column("lease_key", sa.String(length=400), nullable=False),
        sa.Column("owner", sa.String(length=64), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("lease_key"),
    )

    op.create_table(
        "reminder_notifications",
        sa.Column("notification_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=256), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("related_id", sa.String(length=128), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("response", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("meta_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("notification_id"),
    )
    op.create_index("ix_reminder_notifications_user_id", "reminder_notifications", ["user_id"])
    op.create_index("ix_reminder_notifications_related_id", "reminder_notifications", ["related_id"])


def downgrade() -> None:
    op.drop_index("ix_reminder_notifications_related_id", table_name="reminder_notifications")
    op.drop_index("ix_reminder_notifications_user_id", table_name="reminder_notifications")
    op.drop_table("reminder_notifications")
    op.drop_table("reminder_dispatch_leases")
    op.drop_index("ix_reminder_history_created_at", table_name="reminder_history")
    op.drop_index("ix_reminder_history_status", table_name="reminder_history")
    op.drop_index("ix_reminder_history_obligation_id", table_name="reminder_history")
    op.drop_index("ix_reminder_history_user_id", table_name="reminder_history")
    op.drop_table("reminder_history")
