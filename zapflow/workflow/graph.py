"""Workflow graph index and authoring-time validation."""

from __future__ import annotations

from typing import Dict, Iterator, List, Optional

from ..errors import ValidationIssue, WorkflowValidationError
from .models import Node, WorkflowDraft


def find_issues(workflow: WorkflowDraft) -> List[ValidationIssue]:
    """Return every structural problem in ``workflow`` (empty when valid)."""
    issues: List[ValidationIssue] = []
    index: Dict[str, Node] = {}

    for node in workflow.nodes:
        if node.id in index:
            issues.append(
                ValidationIssue(
                    code="duplicate_node_id",
                    node_id=node.id,
                    message=f"Node id '{node.id}' is used more than once",
                )
            )
            continue
        index[node.id] = node

    if workflow.start_node_id not in index:
        issues.append(
            ValidationIssue(
                code="missing_start_node",
                node_id=workflow.start_node_id,
                message=f"Start node '{workflow.start_node_id}' does not exist",
            )
        )

    for node in workflow.nodes:
        for edge in node.next:
            if edge.id not in index:
                issues.append(
                    ValidationIssue(
                        code="dangling_edge",
                        node_id=node.id,
                        message=f"Node '{node.id}' points to unknown node '{edge.id}'",
                    )
                )

    for cycle in _input_free_cycles(index):
        path = " -> ".join(cycle)
        issues.append(
            ValidationIssue(
                code="input_free_cycle",
                node_id=cycle[0],
                message=f"Cycle without an input node: {path}",
            )
        )
    return issues


def validate_workflow(workflow: WorkflowDraft) -> None:
    """Raise :class:`WorkflowValidationError` if ``workflow`` is not executable."""
    issues = find_issues(workflow)
    if issues:
        raise WorkflowValidationError(issues)


def _input_free_cycles(index: Dict[str, Node]) -> Iterator[List[str]]:
    """Yield cycles that never pass through an ``input`` node.

    Only input nodes stop the router from advancing, so any other loop would
    spin without waiting for the contact.
    """
    adjacency: Dict[str, List[str]] = {}
    for node_id, node in index.items():
        if node.type in ("input", "end"):
            continue
        adjacency[node_id] = [
            edge.id
            for edge in node.next
            if edge.id in index and index[edge.id].type != "input"
        ]

    state: Dict[str, int] = {}  # 1 = on stack, 2 = done
    for root in adjacency:
        if state.get(root):
            continue
        stack = [(root, iter(adjacency[root]))]
        path = [root]
        state[root] = 1
        while stack:
            node_id, children = stack[-1]
            child = next(children, None)
            if child is None:
                stack.pop()
                path.pop()
                state[node_id] = 2
                continue
            if child not in adjacency:
                continue
            if state.get(child) == 1:
                yield path[path.index(child):] + [child]
            elif not state.get(child):
                state[child] = 1
                path.append(child)
                stack.append((child, iter(adjacency[child])))


class WorkflowGraph:
    """Validated workflow with an id -> node index for constant-time lookups."""

    def __init__(self, workflow: WorkflowDraft, validate: bool = True) -> None:
        if validate:
            validate_workflow(workflow)
        self.workflow = workflow
        self._nodes: Dict[str, Node] = {node.id: node for node in workflow.nodes}

    @property
    def workflow_id(self) -> Optional[str]:
        return getattr(self.workflow, "id", None)

    @property
    def version(self) -> int:
        return getattr(self.workflow, "version", 1)

    @property
    def start_node_id(self) -> str:
        return self.workflow.start_node_id

    def get(self, node_id: Optional[str]) -> Optional[Node]:
        if node_id is None:
            return None
        return self._nodes.get(node_id)

    def node_type(self, node_id: Optional[str]) -> Optional[str]:
        node = self.get(node_id)
        return node.type if node is not None else None

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)
