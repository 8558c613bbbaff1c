"""Create notification queue table."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261016_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "notification_queue",
        sa.Column("id", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("delivery_methods", sa.JSON(), nullable=False),
        sa.Column("delivery_status", sa.JSON(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("send_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("template", sa.String(length=100), nullable=True),
        sa.Column("template_data", sa.JSON(), nullable=False),
        sa.Column("custom_message", sa.Text(), nullable=True),
        sa.Column("notification_metadata", sa.JSON(), nullable=False),
        sa.Column("reminder_schedule", sa.JSON(), nullable=False),
        sa.Column("reminder_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_reminder_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("triggered_by", sa.String(length=100), nullable=True),
        sa.Column("triggered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("episode_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("episode_kind", sa.String(length=16), nullable=False, server_default="delivery"),
        sa.Column("reminder_anchor_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("email_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("email_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("email_id", sa.String(length=256), nullable=True),
        sa.Column("email_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_email_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notification_queue_status", "notification_queue", ["status"])
    op.create_index("ix_notification_queue_send_after", "notification_queue", ["send_after"])
    op.create_index("ix_notification_queue_attempts", "notification_queue", ["attempts", "max_attempts"])
    op.create_index("ix_notification_queue_next_attempt_at", "notification_queue", ["next_attempt_at"])
    op.create_index("ix_notification_queue_reminders", "notification_queue", ["last_reminder_at", "reminder_count"])
    op.create_index("ix_notification_queue_template", "notification_queue", ["template"])
    op.create_index(
        "ix_notification_queue_eligibility",
        "notification_queue",
        ["status", "send_after", "expires_at"],
    )
    op.create_index("ix_notification_queue_claimed_at", "notification_queue", ["claimed_at"])


def downgrade() -> None:
    op.drop_index("ix_notification_queue_claimed_at", table_name="notification_queue")
    op.drop_index("ix_notification_queue_eligibility", table_name="notification_queue")
    op.drop_index("ix_notification_queue_template", table_name="notification_queue")
    op.drop_index("ix_notification_queue_reminders", table_name="notification_queue")
    op.drop_index("ix_notification_queue_next_attempt_at", table_name="notification_queue")
    op.drop_index("ix_notification_queue_attempts", table_name="notification_queue")
    op.drop_index("ix_notification_queue_send_after", table_name="notification_queue")
    op.drop_index("ix_notification_queue_status", table_name="notification_queue")
    op.drop_table("notification_queue")
