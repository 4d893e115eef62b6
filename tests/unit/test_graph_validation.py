import pytest

from zapflow.errors import WorkflowValidationError
from zapflow.workflow import WorkflowDraft, WorkflowGraph, find_issues, validate_workflow


def _draft(start, nodes):
    return WorkflowDraft.model_validate({"name": "t", "startNodeId": start, "nodes": nodes})


def _codes(draft):
    return sorted(issue.code for issue in find_issues(draft))


def test_valid_workflow_has_no_issues(greeting_draft):
    assert find_issues(greeting_draft) == []
    validate_workflow(greeting_draft)


def test_missing_start_node():
    draft = _draft("nope", [{"id": "e", "type": "end"}])
    assert _codes(draft) == ["missing_start_node"]


def test_duplicate_node_ids():
    draft = _draft("a", [{"id": "a", "type": "end"}, {"id": "a", "type": "message"}])
    assert "duplicate_node_id" in _codes(draft)


def test_dangling_edge():
    draft = _draft("a", [{"id": "a", "type": "message", "next": [{"id": "ghost"}]}])
    issues = find_issues(draft)
    assert [i.code for i in issues] == ["dangling_edge"]
    assert issues[0].node_id == "a"


def test_cycle_without_input_is_rejected():
    draft = _draft(
        "a",
        [
            {"id": "a", "type": "message", "next": [{"id": "b"}]},
            {"id": "b", "type": "condition", "next": [{"id": "a", "condition": "x == 1"}, {"id": "c"}]},
            {"id": "c", "type": "end"},
        ],
    )
    assert _codes(draft) == ["input_free_cycle"]
    with pytest.raises(WorkflowValidationError) as excinfo:
        validate_workflow(draft)
    assert "a -> b -> a" in str(excinfo.value)


def test_cycle_through_input_is_allowed():
    draft = _draft(
        "ask",
        [
            {"id": "ask", "type": "input", "content": {"variableName": "x"}, "next": [{"id": "check"}]},
            {
                "id": "check",
                "type": "condition",
                "next": [{"id": "done", "condition": "x == ok"}, {"id": "ask"}],
            },
            {"id": "done", "type": "end"},
        ],
    )
    assert find_issues(draft) == []


def test_unknown_node_type_fails_on_load():
    with pytest.raises(ValueError):
        _draft("a", [{"id": "a", "type": "webhook"}])


def test_graph_indexes_nodes(greeting_draft):
    graph = WorkflowGraph(greeting_draft)
    assert len(graph) == 3
    assert "i1" in graph
    assert graph.get("i1").content.variable_name == "name"
    assert graph.node_type("e1") == "end"
    assert graph.get("missing") is None
    assert graph.get(None) is None


def test_graph_rejects_invalid_workflow():
    with pytest.raises(WorkflowValidationError):
        WorkflowGraph(_draft("nope", [{"id": "e", "type": "end"}]))
