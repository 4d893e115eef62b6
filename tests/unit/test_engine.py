"""Workflow engine tests."""

from datetime import datetime, timedelta, timezone

import pytest

from zapflow.contracts import WorkflowSession
from zapflow.errors import SessionStateError, WorkflowNotFoundError
from zapflow.persistence import InMemoryWorkflowStore
from zapflow.workflow import (
    ConditionNode,
    Edge,
    IntegrationRegistry,
    MessageNode,
    WorkflowDraft,
    WorkflowEngine,
    WorkflowGraph,
    select_branch,
)
from zapflow.workflow.models import MessageContent

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


async def _engine_with(draft, **kwargs):
    store = InMemoryWorkflowStore()
    workflow = await store.create(draft)
    return WorkflowEngine(store, **kwargs), workflow


def _draft(start, nodes):
    return WorkflowDraft.model_validate({"name": "t", "startNodeId": start, "nodes": nodes})


@pytest.mark.asyncio
async def test_message_input_end_walkthrough(greeting_draft):
    engine, workflow = await _engine_with(greeting_draft)
    session = await engine.start(workflow.id, "5511999990000")
    assert session.current_node_id == "m1"
    assert session.workflow_version == 1

    result = await engine.step(session)
    assert result.output == "Hi {{name}}"
    assert not result.wait_for_input
    assert result.next_node_type == "input"
    assert session.current_node_id == "i1"

    result = await engine.step(session)
    assert result.output == "Name?"
    assert result.wait_for_input
    assert session.current_node_id == "i1"

    result = await engine.step(session, "Ana")
    assert session.variables["name"] == "Ana"
    assert session.current_node_id == "e1"
    assert result.output is None
    assert not result.wait_for_input

    result = await engine.step(session)
    assert result.output == "Bye Ana"
    assert result.is_complete
    assert not session.is_active
    assert session.current_node_id is None
    assert session.last_node_id == "e1"

    inputs = [h.input for h in session.history if h.input is not None]
    outputs = [h.output for h in session.history if h.output is not None]
    assert inputs == ["Ana"]
    assert outputs == ["Hi {{name}}", "Name?", "Bye Ana"]


@pytest.mark.asyncio
async def test_step_on_inactive_session_raises(greeting_draft):
    engine, workflow = await _engine_with(greeting_draft)
    session = await engine.start(workflow.id, "1")
    session.deactivate()
    with pytest.raises(SessionStateError):
        await engine.step(session)


@pytest.mark.asyncio
async def test_start_unknown_workflow_raises():
    engine = WorkflowEngine(InMemoryWorkflowStore())
    with pytest.raises(WorkflowNotFoundError):
        await engine.start("missing", "1")


def test_condition_picks_fallback_edge():
    node = ConditionNode(id="c", next=[Edge(id="a", condition="age>=18"), Edge(id="b")])
    assert select_branch(node, {"age": 16}) == "b"
    assert select_branch(node, {"age": 18}) == "a"


def test_condition_without_match_uses_last_edge():
    node = ConditionNode(
        id="c",
        next=[Edge(id="a", condition="x == 1"), Edge(id="b", condition="x == 2")],
    )
    assert select_branch(node, {"x": 3}) == "b"


def test_malformed_condition_is_skipped():
    node = ConditionNode(
        id="c",
        next=[Edge(id="a", condition="x >>> 1"), Edge(id="b", condition="x == 1"), Edge(id="z")],
    )
    assert select_branch(node, {"x": 1}) == "b"


def test_condition_without_edges_has_no_successor():
    assert select_branch(ConditionNode(id="c"), {}) is None


@pytest.mark.asyncio
async def test_step_is_deterministic_for_equal_sessions(greeting_draft):
    engine, workflow = await _engine_with(greeting_draft, clock=lambda: NOW)
    first = await engine.start(workflow.id, "1")
    second = first.model_copy(deep=True)

    r1 = await engine.step(first)
    r2 = await engine.step(second)
    assert r1 == r2
    assert first.model_dump() == second.model_dump()


@pytest.mark.asyncio
async def test_repeated_steps_converge_on_end():
    draft = _draft(
        "a",
        [
            {"id": "a", "type": "message", "content": {"text": "one"}, "next": [{"id": "b"}]},
            {"id": "b", "type": "condition", "next": [{"id": "c", "condition": "x == 1"}, {"id": "d"}]},
            {"id": "c", "type": "message", "content": {"text": "c"}, "next": [{"id": "e"}]},
            {"id": "d", "type": "message", "content": {"text": "d"}, "next": [{"id": "e"}]},
            {"id": "e", "type": "end"},
        ],
    )
    engine, workflow = await _engine_with(draft)
    session = await engine.start(workflow.id, "1")
    outputs = []
    for _ in range(len(draft.nodes)):
        result = await engine.step(session)
        if result.output:
            outputs.append(result.output)
        if result.is_complete:
            break
    assert not session.is_active
    assert outputs == ["one", "d", "Conversation finished"]


@pytest.mark.asyncio
async def test_message_without_successor_completes():
    engine, workflow = await _engine_with(
        _draft("only", [{"id": "only", "type": "message", "content": {"text": "bye"}}])
    )
    session = await engine.start(workflow.id, "1")
    result = await engine.step(session)
    assert result.output == "bye"
    assert result.is_complete
    assert not session.is_active


@pytest.mark.asyncio
async def test_unknown_node_type_terminates_session():
    node = MessageNode.model_construct(id="x", type="webhook", next=[], content=MessageContent())
    draft = WorkflowDraft.model_construct(
        name="broken", start_node_id="x", nodes=[node], tags=[], metadata={}
    )
    graph = WorkflowGraph(draft, validate=False)
    session = WorkflowSession(workflow_id="broken", contact_address="1", current_node_id="x")

    result = await WorkflowEngine().execute(graph, session)
    assert result.failed
    assert result.is_complete
    assert "webhook" in result.error
    assert not session.is_active


@pytest.mark.asyncio
async def test_missing_current_node_terminates_session(greeting_draft):
    engine, workflow = await _engine_with(greeting_draft)
    session = await engine.start(workflow.id, "1")
    session.current_node_id = "deleted-node"
    result = await engine.step(session)
    assert result.failed
    assert not session.is_active


@pytest.mark.asyncio
async def test_delay_schedules_resumption():
    draft = _draft(
        "m1",
        [
            {"id": "m1", "type": "message", "content": {"text": "Wait"}, "next": [{"id": "d1"}]},
            {"id": "d1", "type": "delay", "content": {"delayMs": 5000}, "next": [{"id": "m2"}]},
            {"id": "m2", "type": "message", "content": {"text": "Back"}, "next": [{"id": "e"}]},
            {"id": "e", "type": "end"},
        ],
    )
    engine, workflow = await _engine_with(draft, clock=lambda: NOW)
    session = await engine.start(workflow.id, "1")
    await engine.step(session)

    result = await engine.step(session)
    assert result.suspended
    assert result.output is None
    assert session.current_node_id == "m2"
    assert session.resume_at == NOW + timedelta(seconds=5)
    assert session.is_suspended(NOW)
    assert not session.is_suspended(NOW + timedelta(seconds=6))


@pytest.mark.asyncio
async def test_zero_delay_passes_through():
    draft = _draft(
        "d1",
        [
            {"id": "d1", "type": "delay", "content": {"delayMs": 0}, "next": [{"id": "e"}]},
            {"id": "e", "type": "end"},
        ],
    )
    engine, workflow = await _engine_with(draft)
    session = await engine.start(workflow.id, "1")
    result = await engine.step(session)
    assert not result.suspended
    assert session.resume_at is None
    assert session.current_node_id == "e"


@pytest.mark.asyncio
async def test_integration_stores_result_and_reports_status():
    draft = _draft(
        "crm",
        [
            {
                "id": "crm",
                "type": "integration",
                "content": {
                    "service": "crm.lookup",
                    "params": {"phone": "{{phone}}", "limit": 1},
                    "resultVariable": "customer",
                    "statusMessage": "Found {{customer}}",
                },
                "next": [{"id": "e"}],
            },
            {"id": "e", "type": "end"},
        ],
    )
    registry = IntegrationRegistry()
    calls = []

    @registry.handler("crm.lookup")
    async def lookup(params, variables):
        calls.append(dict(params))
        return "Ana"

    engine, workflow = await _engine_with(draft, integrations=registry)
    session = await engine.start(workflow.id, "1", variables={"phone": "5511"})
    result = await engine.step(session)

    assert calls == [{"phone": "5511", "limit": 1}]
    assert session.variables["customer"] == "Ana"
    assert result.output == "Found Ana"


@pytest.mark.asyncio
async def test_unregistered_integration_passes_through():
    draft = _draft(
        "crm",
        [
            {"id": "crm", "type": "integration", "content": {"service": "nope"}, "next": [{"id": "e"}]},
            {"id": "e", "type": "end"},
        ],
    )
    engine, workflow = await _engine_with(draft)
    session = await engine.start(workflow.id, "1")
    result = await engine.step(session)
    assert result.output is None
    assert session.current_node_id == "e"


@pytest.mark.asyncio
async def test_graph_is_cached_between_steps(greeting_draft):
    store = InMemoryWorkflowStore()
    workflow = await store.create(greeting_draft)
    engine = WorkflowEngine(store)
    session = await engine.start(workflow.id, "1")

    await store.delete(workflow.id)
    result = await engine.step(session)
    assert result.output == "Hi {{name}}"

    engine.invalidate(workflow.id)
    with pytest.raises(WorkflowNotFoundError):
        await engine.step(session)


@pytest.mark.asyncio
async def test_running_session_keeps_its_workflow_version(greeting_definition):
    engine, workflow = await _engine_with(WorkflowDraft.model_validate(greeting_definition))
    session = await engine.start(workflow.id, "1")
    await engine.step(session)
    await engine.step(session)
    assert session.current_node_id == "i1"

    nodes = greeting_definition["nodes"]
    changed = await engine.update_workflow(
        workflow.id, {"nodes": [nodes[0], {**nodes[1], "next": []}]}
    )
    assert changed.version == 2

    await engine.step(session, "Ana")
    result = await engine.step(session)
    assert result.output == "Bye Ana"
    assert result.is_complete
    assert session.workflow_version == 1

    fresh = await engine.start(workflow.id, "2")
    assert fresh.workflow_version == 2
    await engine.step(fresh)
    await engine.step(fresh)
    result = await engine.step(fresh, "Bia")
    assert result.is_complete
    assert result.output is None


@pytest.mark.asyncio
async def test_pinned_version_missing_from_store_is_not_found(greeting_draft):
    engine, workflow = await _engine_with(greeting_draft)
    session = WorkflowSession(
        workflow_id=workflow.id, workflow_version=7, contact_address="1", current_node_id="m1"
    )
    with pytest.raises(WorkflowNotFoundError, match="version 7"):
        await engine.step(session)
