from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB

from ..schemas.plans import MilestoneStatus, PlanStatus

metadata = MetaData()

agent_plans = Table(
    "agent_plans",
    metadata,
    Column("id", BigInteger, primary_key=True, autoincrement=True),
    Column("thread_id", String(length=128), nullable=False),
    Column("revision", Integer, nullable=False, server_default=text("1")),
    Column("status", String(length=32), nullable=False, server_default=PlanStatus.ACTIVE.value),
    Column("data", JSONB(astext_type=Text()), nullable=False, server_default=text("'{}'::jsonb")),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)
Index("ix_agent_plans_thread_status", agent_plans.c.thread_id, agent_plans.c.status)

agent_plan_todos = Table(
    "agent_plan_todos",
    metadata,
    Column("id", BigInteger, primary_key=True, autoincrement=True),
    Column("plan_id", BigInteger, ForeignKey("agent_plans.id", ondelete="CASCADE"), nullable=False),
    Column("title", Text, nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("order_index", Integer, nullable=False, server_default=text("0")),
    Column("status", String(length=32), nullable=False, server_default=MilestoneStatus.PENDING.value),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)
Index("ix_agent_plan_todos_plan_order", agent_plan_todos.c.plan_id, agent_plan_todos.c.order_index)

agent_plan_events = Table(
    "agent_plan_events",
    metadata,
    Column("id", BigInteger, primary_key=True, autoincrement=True),
    Column("plan_id", BigInteger, ForeignKey("agent_plans.id", ondelete="CASCADE"), nullable=False),
    Column("type", String(length=64), nullable=False),
    Column("data", JSONB(astext_type=Text()), nullable=False, server_default=text("'{}'::jsonb")),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)
Index("ix_agent_plan_events_plan_id", agent_plan_events.c.plan_id)
