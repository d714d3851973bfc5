"""class reminders + push subscriptions

Revision ID: 0001_class_reminders_initial
Revises:
Create Date: 2025-10-20
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect

# Alembic identifiers
revision = "0001_class_reminders_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    existing = set(inspect(bind).get_table_names())

    if "class_reminders" not in existing:
        op.create_table(
            "class_reminders",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("student_id", sa.String(length=64), nullable=False),
            sa.Column("occurrence_id", sa.String(length=96), nullable=False),
            sa.Column("subject_name", sa.String(length=128), nullable=False),
            sa.Column("title", sa.String(length=128), nullable=False),
            sa.Column("message", sa.Text(), nullable=False),
            sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
            sa.Column("notify_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("state", sa.String(length=16), nullable=False),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_error", sa.String(length=255), nullable=True),
            sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id", name="pk_class_reminders"),
            sa.UniqueConstraint("student_id", "occurrence_id", name="uq_class_reminders_identity"),
        )
        op.create_index("ix_class_reminders_student_id", "class_reminders", ["student_id"])
        op.create_index("ix_class_reminders_updated_at", "class_reminders", ["updated_at"])
        op.create_index("ix_class_reminders_due", "class_reminders", ["state", "notify_at"])

    if "push_subscriptions" not in existing:
        op.create_table(
            "push_subscriptions",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("student_id", sa.String(length=64), nullable=False),
            sa.Column("endpoint", sa.Text(), nullable=False),
            sa.Column("p256dh", sa.String(length=255), nullable=False),
            sa.Column("auth", sa.String(length=255), nullable=False),
            sa.Column("user_agent", sa.String(length=500), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id", name="pk_push_subscriptions"),
            sa.UniqueConstraint("endpoint", name="uq_push_subscriptions_endpoint"),
        )
        op.create_index("ix_push_subscriptions_student_id", "push_subscriptions", ["student_id"])


def downgrade():
    bind = op.get_bind()
    existing = set(inspect(bind).get_table_names())

    if "push_subscriptions" in existing:
        op.drop_index("ix_push_subscriptions_student_id", table_name="push_subscriptions")
        op.drop_table("push_subscriptions")
    if "class_reminders" in existing:
        op.drop_index("ix_class_reminders_due", table_name="class_reminders")
        op.drop_index("ix_class_reminders_updated_at", table_name="class_reminders")
        op.drop_index("ix_class_reminders_student_id", table_name="class_reminders")
        op.drop_table("class_reminders")
