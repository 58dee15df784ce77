from __future__ import annotations

import pytest
from pydantic import ValidationError

from plangraph.core.config import Settings, get_settings


def test_defaults_match_engine_constants() -> None:
    settings = Settings()

    assert settings.graph.max_same_node_loops == 15
    assert settings.graph.max_iterations == 1_000_000
    assert settings.graph.default_channel == "chat-controller-backend"
    assert settings.thread_store.ttl_seconds == 3600
    assert settings.planning.tactical_approval_score == 8
    assert settings.planning.strategic_approval_confidence == 90


def test_executor_budget_defaults_to_loop_ceiling() -> None:
    settings = Settings(graph={"max_same_node_loops": 6})

    assert settings.planning.max_executor_steps == 6


def test_nested_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PLANGRAPH_GRAPH__MAX_ITERATIONS", "50")
    monkeypatch.setenv("PLANGRAPH_HEARTBEAT__ENABLED", "true")
    monkeypatch.setenv("PLANGRAPH_PLANNING__MAX_EXECUTOR_STEPS", "4")

    settings = Settings()

    assert settings.graph.max_iterations == 50
    assert settings.heartbeat.enabled is True
    assert settings.planning.max_executor_steps == 4


def test_invalid_thresholds_are_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(planning={"tactical_approval_score": 11})


def test_get_settings_with_overrides_bypasses_cache() -> None:
    settings = get_settings({"environment": "test"})

    assert settings.environment == "test"
    assert get_settings() is get_settings()
