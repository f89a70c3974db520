"""tasks, reminders and display order counters

Revision ID: 202610190002
Revises: 202610190001
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610190002"
down_revision = "202610190001"
branch_labels = None
depends_on = None

_WORK_ITEM_INDEXES = ("created_by", "department", "display_order", "attached_id", "created_at", "updated_at")


def _work_item_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=False),
        sa.Column("department", sa.String(), nullable=True),
        sa.Column("display_order", sa.Integer(), nullable=False),
        sa.Column("priority", sa.String(length=20), nullable=False),
        sa.Column("attached_kind", sa.String(length=20), nullable=True),
        sa.Column("attached_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def _create_work_item_indexes(table: str) -> None:
    for column in _WORK_ITEM_INDEXES:
        op.create_index(f"ix_{table}_{column}", table, [column])
    op.create_index(f"ix_{table}_attached", table, ["attached_kind", "attached_id"])
    op.create_index(f"ix_{table}_department_order", table, ["department", "display_order"])


def _drop_work_item_indexes(table: str) -> None:
    op.drop_index(f"ix_{table}_department_order", table_name=table)
    op.drop_index(f"ix_{table}_attached", table_name=table)
    for column in reversed(_WORK_ITEM_INDEXES):
        op.drop_index(f"ix_{table}_{column}", table_name=table)


def upgrade() -> None:
    op.create_table(
        "tasks",
        *_work_item_columns(),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("assignee", sa.String(), nullable=False),
        sa.Column("review_status", sa.String(length=32), nullable=False),
        sa.Column("approver", sa.String(), nullable=True),
        sa.Column("review_comment", sa.String(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    _create_work_item_indexes("tasks")
    op.create_index("ix_tasks_due_at", "tasks", ["due_at"])
    op.create_index("ix_tasks_status", "tasks", ["status"])
    op.create_index("ix_tasks_assignee", "tasks", ["assignee"])
    op.create_index("ix_tasks_completed_at", "tasks", ["completed_at"])

    op.create_table(
        "reminders",
        *_work_item_columns(),
        sa.Column("remind_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    _create_work_item_indexes("reminders")
    op.create_index("ix_reminders_remind_at", "reminders", ["remind_at"])
    op.create_index("ix_reminders_status", "reminders", ["status"])

    op.create_table(
        "reminder_assignees",
        sa.Column("reminder_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["reminder_id"], ["reminders.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("reminder_id", "user_id"),
    )
    op.create_index("ix_reminder_assignees_user", "reminder_assignees", ["user_id"])

    op.create_table(
        "display_order_counters",
        sa.Column("creator_id", sa.String(), nullable=False),
        sa.Column("last_value", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("creator_id"),
    )


def downgrade() -> None:
    op.drop_table("display_order_counters")
    op.drop_index("ix_reminder_assignees_user", table_name="reminder_assignees")
    op.drop_table("reminder_assignees")
    op.drop_index("ix_reminders_status", table_name="reminders")
    op.drop_index("ix_reminders_remind_at", table_name="reminders")
    _drop_work_item_indexes("reminders")
    op.drop_table("reminders")
    op.drop_index("ix_tasks_completed_at", table_name="tasks")
    op.drop_index("ix_tasks_assignee", table_name="tasks")
    op.drop_index("ix_tasks_status", table_name="tasks")
    op.drop_index("ix_tasks_due_at", table_name="tasks")
    _drop_work_item_indexes("tasks")
    op.drop_table("tasks")
