from __future__ import annotations

from plangraph.db.models import agent_plan_events, agent_plan_todos, agent_plans, metadata


def test_plan_tables_are_registered() -> None:
    assert set(metadata.tables) == {"agent_plans", "agent_plan_todos", "agent_plan_events"}


def test_child_tables_cascade_with_plan() -> None:
    for table in (agent_plan_todos, agent_plan_events):
        [foreign_key] = list(table.c.plan_id.foreign_keys)
        assert foreign_key.column is agent_plans.c.id
        assert foreign_key.ondelete == "CASCADE"


def test_repository_columns_exist() -> None:
    assert {column.name for column in agent_plans.c} == {
        "id",
        "thread_id",
        "revision",
        "status",
        "data",
        "created_at",
        "updated_at",
    }
    assert {"title", "description", "order_index", "status"} <= {column.name for column in agent_plan_todos.c}
