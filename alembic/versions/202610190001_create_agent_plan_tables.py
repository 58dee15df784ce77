"""create agent plan tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:00:00
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "202610190001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "agent_plans",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("thread_id", sa.String(length=128), nullable=False),
        sa.Column("revision", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="active"),
        sa.Column(
            "data",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_agent_plans_thread_status", "agent_plans", ["thread_id", "status"], unique=False)

    op.create_table(
        "agent_plan_todos",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "plan_id",
            sa.BigInteger(),
            sa.ForeignKey("agent_plans.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("order_index", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(
        "ix_agent_plan_todos_plan_order",
        "agent_plan_todos",
        ["plan_id", "order_index"],
        unique=False,
    )

    op.create_table(
        "agent_plan_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "plan_id",
            sa.BigInteger(),
            sa.ForeignKey("agent_plans.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column(
            "data",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_agent_plan_events_plan_id", "agent_plan_events", ["plan_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_agent_plan_events_plan_id", table_name="agent_plan_events")
    op.drop_table("agent_plan_events")
    op.drop_index("ix_agent_plan_todos_plan_order", table_name="agent_plan_todos")
    op.drop_table("agent_plan_todos")
    op.drop_index("ix_agent_plans_thread_status", table_name="agent_plans")
    op.drop_table("agent_plans")
