from __future__ import annotations

from typing import Any

import pytest

from plangraph.core.config import PlanningPolicySettings
from plangraph.orchestration import (
    CancellationToken,
    DecisionKind,
    FinalState,
    GraphCancelledError,
    OverlordDirective,
    new_thread_state,
)
from plangraph.orchestration.nodes import (
    MemoryRecallNode,
    NodeDependencies,
    OverlordPlannerNode,
    StrategicCriticNode,
    StrategicPlannerNode,
    TacticalCriticNode,
    TacticalExecutorNode,
    TacticalPlannerNode,
    parse_overlord_directive,
)
from plangraph.orchestration.state import HierarchicalThreadState, OverlordThreadState, TacticalStep
from plangraph.schemas.plans import MilestoneDraft, MilestoneStatus, PlanStatus
from plangraph.services.memory import StaticMemoryRetriever
from plangraph.services.plans import InMemoryPlanRepository
from plangraph.services.tools import ToolRegistry
from tests.helpers.stubs import RecordingEventSink, ScriptedChatModel, executor_done, milestone_plan


def _deps(scripts: dict[str, Any] | None = None, **overrides: Any) -> NodeDependencies:
    values: dict[str, Any] = {
        "model": ScriptedChatModel(scripts),
        "plans": InMemoryPlanRepository(),
        "events": RecordingEventSink(),
        "policy": PlanningPolicySettings(max_executor_steps=15),
    }
    values.update(overrides)
    return NodeDependencies(**values)


async def _with_plan(deps: NodeDependencies, *titles: str) -> HierarchicalThreadState:
    state = new_thread_state("write the quarterly report", thread_id="thread-nodes")
    plan, milestones = await deps.plans.create_plan(
        state.thread_id,
        data={"goal": "Quarterly report"},
        milestones=[MilestoneDraft(title=title, order_index=index) for index, title in enumerate(titles)],
    )
    state.planning.goal = "Quarterly report"
    state.planning.plan = plan
    state.planning.milestones = milestones
    return state


def _activate(state: HierarchicalThreadState, *actions: str) -> None:
    milestone = state.planning.ordered_milestones()[0]
    state.planning.active_milestone_id = milestone.id
    state.planning.steps = [TacticalStep(id=f"step_{index}", action=action) for index, action in enumerate(actions, 1)]
    state.planning.active_step_index = 0
    state.planning.executor_has_more_work = True


# -- memory recall ---------------------------------------------------------


@pytest.mark.asyncio
async def test_memory_recall_fills_context() -> None:
    retriever = StaticMemoryRetriever(["quarterly report lives in the finance folder", "unrelated note"])
    node = MemoryRecallNode(_deps(retriever=retriever))
    state = new_thread_state("write the quarterly report")

    state, decision = await node.execute(state)

    assert decision.kind is DecisionKind.CONTINUE
    assert state.planning.memory_context == "- quarterly report lives in the finance folder"


@pytest.mark.asyncio
async def test_memory_recall_failure_is_not_fatal() -> None:
    class BrokenRetriever:
        async def search(self, query: str, limit: int = 5) -> list[str]:
            raise ConnectionError("vector store offline")

    node = MemoryRecallNode(_deps(retriever=BrokenRetriever()))
    state, decision = await node.execute(new_thread_state("hello"))

    assert decision.kind is DecisionKind.CONTINUE
    assert state.planning.memory_context == ""


# -- strategic planner -----------------------------------------------------


@pytest.mark.asyncio
async def test_strategic_planner_creates_plan() -> None:
    deps = _deps({"Strategic Planner": milestone_plan("Collect data", "Write draft")})
    node = StrategicPlannerNode(deps)

    state, decision = await node.execute(new_thread_state("write the report", thread_id="thread-sp"))

    assert decision.kind is DecisionKind.CONTINUE
    planning = state.planning
    assert planning.goal == "Ship the report"
    assert planning.plan is not None and planning.plan.revision == 1
    assert [item.title for item in planning.milestones] == ["Collect data", "Write draft"]
    assert planning.final_state is FinalState.RUNNING
    events = await deps.plans.list_events(planning.plan.id)
    assert [event.type for event in events] == ["plan_created"]


@pytest.mark.asyncio
async def test_strategic_planner_answers_directly_when_no_plan_needed() -> None:
    deps = _deps({"Strategic Planner": {"goal": "Greet", "planNeeded": False, "response": "Hello there!"}})
    node = StrategicPlannerNode(deps)

    state, decision = await node.execute(new_thread_state("hi"))

    assert decision.kind is DecisionKind.END
    assert state.messages[-1].content == "Hello there!"
    assert state.planning.plan is None
    assert state.planning.final_state is FinalState.COMPLETED


@pytest.mark.asyncio
async def test_strategic_planner_retries_then_gives_up() -> None:
    deps = _deps({"Strategic Planner": "I am not sure what to do"})
    node = StrategicPlannerNode(deps)
    state = new_thread_state("write the report")

    state, first = await node.execute(state)
    state, second = await node.execute(state)
    state, third = await node.execute(state)

    assert first.kind is DecisionKind.GOTO and first.target == node.id
    assert second.kind is DecisionKind.GOTO
    assert third.kind is DecisionKind.END
    assert state.planning.llm_failures == 3
    assert state.planning.final_state is FinalState.FAILED


@pytest.mark.asyncio
async def test_strategic_planner_without_user_message_ends() -> None:
    node = StrategicPlannerNode(_deps())
    state = HierarchicalThreadState()

    state, decision = await node.execute(state)

    assert decision.kind is DecisionKind.END


@pytest.mark.asyncio
async def test_strategic_planner_revises_active_plan() -> None:
    deps = _deps({"Strategic Planner": milestone_plan("Redo analysis")})
    state = await _with_plan(deps, "Collect data")
    state.planning.strategic_revision_reason = "analysis was shallow"
    state.planning.milestone_revisions = {"1": 2}

    state, decision = await StrategicPlannerNode(deps).execute(state)

    assert decision.kind is DecisionKind.CONTINUE
    assert state.planning.plan.revision == 2
    assert [item.title for item in state.planning.milestones] == ["Redo analysis"]
    assert state.planning.strategic_revision_reason is None
    assert state.planning.milestone_revisions == {}
    prompt = deps.model.calls[-1][1][-1]["content"]
    assert "analysis was shallow" in prompt
    events = await deps.plans.list_events(state.planning.plan.id)
    assert events[-1].type == "plan_revised"


# -- tactical planner ------------------------------------------------------


@pytest.mark.asyncio
async def test_tactical_planner_activates_next_milestone() -> None:
    steps = {"steps": [{"id": "s1", "action": "Query sales"}, {"action": "Summarise", "toolHints": ["emit_chat_message"]}]}
    deps = _deps({"Tactical Planner": steps})
    state = await _with_plan(deps, "Collect data", "Write draft")

    state, decision = await TacticalPlannerNode(deps).execute(state)

    assert decision.kind is DecisionKind.CONTINUE
    active = state.planning.active_milestone()
    assert active is not None and active.title == "Collect data"
    assert active.status is MilestoneStatus.IN_PROGRESS
    stored = await deps.plans.get_milestone(active.id)
    assert stored is not None and stored.status is MilestoneStatus.IN_PROGRESS
    assert [(step.id, step.action) for step in state.planning.steps] == [("s1", "Query sales"), ("step_2", "Summarise")]
    assert state.planning.steps[1].tool_hints == ["emit_chat_message"]
    assert state.planning.executor_has_more_work is True


@pytest.mark.asyncio
async def test_tactical_planner_falls_back_to_single_step() -> None:
    deps = _deps()
    state = await _with_plan(deps, "Collect data")

    state, _ = await TacticalPlannerNode(deps).execute(state)

    assert [step.action for step in state.planning.steps] == ["Collect data"]


@pytest.mark.asyncio
async def test_tactical_planner_without_open_milestones_clears_tactics() -> None:
    deps = _deps()
    state = await _with_plan(deps, "Collect data")
    state.planning.milestones = [item.model_copy(update={"status": MilestoneStatus.DONE}) for item in state.planning.milestones]

    state, decision = await TacticalPlannerNode(deps).execute(state)

    assert decision.kind is DecisionKind.CONTINUE
    assert state.planning.active_milestone_id is None
    assert state.planning.steps == []


# -- tactical executor -----------------------------------------------------


@pytest.mark.asyncio
async def test_executor_runs_tools_and_finishes_last_step() -> None:
    deps = _deps({"Tactical Executor": executor_done("Here is the summary")})
    state = await _with_plan(deps, "Collect data")
    _activate(state, "Summarise")

    state, decision = await TacticalExecutorNode(deps).execute(state)

    assert decision.kind is DecisionKind.CONTINUE
    assert state.messages[-1].content == "Here is the summary"
    assert state.messages[-1].metadata == {"source": "emit_chat_message"}
    assert state.planning.steps[0].done is True
    assert state.planning.executor_has_more_work is False


@pytest.mark.asyncio
async def test_executor_keeps_working_on_unfinished_step() -> None:
    deps = _deps({"Tactical Executor": {"tools": [["emit_chat_message", "halfway"]], "markDone": False}})
    state = await _with_plan(deps, "Collect data")
    _activate(state, "Summarise")

    state, _ = await TacticalExecutorNode(deps).execute(state)

    assert state.planning.steps[0].done is False
    assert state.planning.executor_has_more_work is True


@pytest.mark.asyncio
async def test_executor_tool_failure_hands_over_to_critic() -> None:
    deps = _deps({"Tactical Executor": {"tools": [["send_email", "boss"]], "markDone": True}})
    state = await _with_plan(deps, "Collect data")
    _activate(state, "Email", "Archive")

    state, decision = await TacticalExecutorNode(deps).execute(state)

    assert decision.kind is DecisionKind.CONTINUE
    assert state.planning.executor_has_more_work is False
    assert state.planning.tactical_revision_reason == "send_email: Unknown tool: send_email"
    assert state.planning.steps[0].done is False


@pytest.mark.asyncio
async def test_executor_tolerates_missing_responses_up_to_limit() -> None:
    deps = _deps({"Tactical Executor": None}, policy=PlanningPolicySettings(max_llm_failures=2))
    state = await _with_plan(deps, "Collect data")
    _activate(state, "Summarise")
    node = TacticalExecutorNode(deps)

    state, _ = await node.execute(state)
    assert state.planning.executor_failures == 1
    assert state.planning.executor_has_more_work is True

    state, _ = await node.execute(state)
    assert state.planning.executor_has_more_work is False
    assert state.planning.tactical_revision_reason == "Executor received no usable model response"


@pytest.mark.asyncio
async def test_executor_without_steps_reports_no_more_work() -> None:
    deps = _deps()
    state = await _with_plan(deps, "Collect data")

    state, decision = await TacticalExecutorNode(deps).execute(state)

    assert decision.kind is DecisionKind.CONTINUE
    assert state.planning.executor_has_more_work is False
    assert deps.model.calls == []


# -- tactical critic -------------------------------------------------------


@pytest.mark.asyncio
async def test_tactical_critic_approves_high_score() -> None:
    deps = _deps({"Tactical Critic": {"successScore": 9, "reason": "data collected"}})
    state = await _with_plan(deps, "Collect data", "Write draft")
    _activate(state, "Query")
    milestone_id = state.planning.active_milestone_id

    state, decision = await TacticalCriticNode(deps).execute(state)

    assert decision.kind is DecisionKind.CONTINUE
    assert state.planning.active_milestone_id is None
    assert state.planning.tactical_verdict is not None and state.planning.tactical_verdict.score == 9
    stored = await deps.plans.get_milestone(milestone_id)
    assert stored is not None and stored.status is MilestoneStatus.DONE
    events = await deps.plans.list_events(state.planning.plan.id)
    assert [event.type for event in events] == ["milestone_completed"]


@pytest.mark.asyncio
async def test_tactical_critic_rejects_low_score() -> None:
    deps = _deps({"Tactical Critic": {"successScore": "3", "reason": "no numbers", "suggestedFix": "query the ledger"}})
    state = await _with_plan(deps, "Collect data")
    _activate(state, "Query")
    milestone_id = state.planning.active_milestone_id

    state, decision = await TacticalCriticNode(deps).execute(state)

    assert decision.kind is DecisionKind.REVISE
    assert state.planning.revisions_for(milestone_id) == 1
    assert state.planning.tactical_revision_reason == "query the ledger"
    assert state.planning.active_milestone().status is MilestoneStatus.BLOCKED


@pytest.mark.asyncio
async def test_tactical_critic_force_approves_after_revision_limit() -> None:
    deps = _deps({"Tactical Critic": {"successScore": 0}}, policy=PlanningPolicySettings(max_tactical_revisions=2))
    state = await _with_plan(deps, "Collect data")
    _activate(state, "Query")
    state.planning.milestone_revisions[str(state.planning.active_milestone_id)] = 2

    state, decision = await TacticalCriticNode(deps).execute(state)

    assert decision.kind is DecisionKind.CONTINUE
    assert state.planning.milestones[0].status is MilestoneStatus.DONE
    assert deps.model.calls == []


@pytest.mark.asyncio
async def test_tactical_critic_without_model_judges_step_progress() -> None:
    deps = _deps()
    state = await _with_plan(deps, "Collect data")
    _activate(state, "Query")
    state.planning.steps[0].done = True
    state.planning.active_step_index = 1

    state, decision = await TacticalCriticNode(deps).execute(state)

    assert decision.kind is DecisionKind.CONTINUE
    assert state.planning.milestones[0].status is MilestoneStatus.DONE


# -- strategic critic ------------------------------------------------------


@pytest.mark.asyncio
async def test_strategic_critic_approves_confident_verdict() -> None:
    deps = _deps({"Strategic Critic": {"decision": "approve", "confidence": 95, "reason": "report delivered"}})
    state = await _with_plan(deps, "Collect data")

    state, decision = await StrategicCriticNode(deps).execute(state)

    assert decision.kind is DecisionKind.CONTINUE
    assert state.planning.final_state is FinalState.COMPLETED
    assert state.planning.final_summary == "report delivered"
    assert state.planning.plan.status is PlanStatus.COMPLETED
    stored = await deps.plans.get_plan(state.planning.plan.id)
    assert stored is not None and stored.status is PlanStatus.COMPLETED


@pytest.mark.asyncio
async def test_strategic_critic_requests_revision_below_threshold() -> None:
    deps = _deps(
        {"Strategic Critic": {"decision": "approve", "confidence": "60%", "reason": "thin", "suggestions": "add charts"}}
    )
    state = await _with_plan(deps, "Collect data")

    state, decision = await StrategicCriticNode(deps).execute(state)

    assert decision.kind is DecisionKind.REVISE
    assert state.planning.strategic_revision_reason == "add charts"
    assert state.planning.strategic_verdict is not None and state.planning.strategic_verdict.score == 60
    events = await deps.plans.list_events(state.planning.plan.id)
    assert events[-1].type == "plan_revision_requested"


@pytest.mark.asyncio
async def test_strategic_critic_kill_switch_abandons_plan() -> None:
    deps = _deps({"Strategic Critic": {"decision": "reject", "confidence": 10, "reason": "unsafe", "killSwitch": True}})
    state = await _with_plan(deps, "Collect data")

    state, decision = await StrategicCriticNode(deps).execute(state)

    assert decision.kind is DecisionKind.CONTINUE
    assert state.planning.final_state is FinalState.FAILED
    assert state.planning.plan.status is PlanStatus.ABANDONED


@pytest.mark.asyncio
async def test_strategic_critic_without_plan_completes() -> None:
    state = new_thread_state("hi")

    state, decision = await StrategicCriticNode(_deps()).execute(state)

    assert decision.kind is DecisionKind.CONTINUE
    assert state.planning.final_state is FinalState.COMPLETED


# -- overlord --------------------------------------------------------------


def test_parse_overlord_directive() -> None:
    directive, rest = parse_overlord_directive("Thinking...\nOVERLORD_DECISION: next\nDraft the newsletter")

    assert directive is OverlordDirective.NEXT
    assert rest == "Thinking...\n\nDraft the newsletter"
    assert parse_overlord_directive("no directive here") == (OverlordDirective.CONTINUE, "no directive here")


@pytest.mark.asyncio
async def test_overlord_delegates_next_work() -> None:
    deps = _deps({"Overlord": "OVERLORD_DECISION: NEXT\nDraft the newsletter"})
    state = new_thread_state("heartbeat", state_cls=OverlordThreadState)
    state.planning.memory_context = "- newsletter due friday"
    state.planning.goal = "old goal"

    state, decision = await OverlordPlannerNode(deps).execute(state)

    assert decision.kind is DecisionKind.CONTINUE
    assert state.overlord.instructions == "Draft the newsletter"
    assert state.overlord.cycles == 1
    assert state.last_user_message().content == "Draft the newsletter"
    assert state.planning.goal is None
    assert state.planning.memory_context == "- newsletter due friday"


@pytest.mark.asyncio
async def test_overlord_end_and_continue_directives() -> None:
    deps = _deps({"Overlord": ["OVERLORD_DECISION: CONTINUE", "OVERLORD_DECISION: END\nAll quiet."]})
    node = OverlordPlannerNode(deps)
    state = new_thread_state("heartbeat", state_cls=OverlordThreadState)

    state, first = await node.execute(state)
    state, second = await node.execute(state)

    assert first.kind is DecisionKind.REVISE
    assert second.kind is DecisionKind.END
    assert state.planning.final_summary == "All quiet."
    assert state.overlord.directive is OverlordDirective.END


@pytest.mark.asyncio
async def test_overlord_without_response_reconsiders() -> None:
    state, decision = await OverlordPlannerNode(_deps()).execute(new_thread_state("beat", state_cls=OverlordThreadState))

    assert decision.kind is DecisionKind.REVISE


# -- shared behaviour ------------------------------------------------------


@pytest.mark.asyncio
async def test_json_embedded_in_prose_is_accepted() -> None:
    reply = 'Sure! ```json\n{"successScore": 10, "reason": "done"}\n``` hope that helps'
    deps = _deps({"Tactical Critic": reply})
    state = await _with_plan(deps, "Collect data")
    _activate(state, "Query")

    state, decision = await TacticalCriticNode(deps).execute(state)

    assert decision.kind is DecisionKind.CONTINUE
    assert deps.model.calls[0][1][-1]["content"].endswith("Do not wrap it in code fences or add commentary.")


@pytest.mark.asyncio
async def test_model_errors_count_as_missing_responses() -> None:
    def explode(messages: Any) -> Any:
        raise TimeoutError("model timed out")

    deps = _deps({"Strategic Planner": explode})
    state, decision = await StrategicPlannerNode(deps).execute(new_thread_state("write"))

    assert decision.kind is DecisionKind.GOTO
    assert state.planning.llm_failures == 1


@pytest.mark.asyncio
async def test_nodes_observe_cancellation_before_model_calls() -> None:
    token = CancellationToken()
    token.cancel("shutdown")
    deps = _deps({"Strategic Planner": milestone_plan("One")}, cancellation=token)

    with pytest.raises(GraphCancelledError):
        await StrategicPlannerNode(deps).execute(new_thread_state("write"))

    assert deps.model.calls == []


@pytest.mark.asyncio
async def test_milestone_progress_is_emitted_after_persistence() -> None:
    sink = RecordingEventSink()
    deps = _deps({"Tactical Planner": None}, events=sink, tools=ToolRegistry())
    state = await _with_plan(deps, "Collect data")

    await TacticalPlannerNode(deps).execute(state)

    statuses = [event.data.get("status") for event in sink.events if "milestone_id" in event.data and "status" in event.data]
    assert statuses == ["in_progress"]
