"""Node-graph state machine driving automated conversations."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel

from ..constants import DEFAULT_END_MESSAGE, DEFAULT_INPUT_PROMPT
from ..contracts import HistoryEntry, WorkflowSession, utcnow
from ..errors import (
    ConditionSyntaxError,
    SessionStateError,
    WorkflowNotFoundError,
)
from .cache import GraphCache
from .conditions import evaluate
from .graph import WorkflowGraph
from .integrations import IntegrationRegistry
from .interpolation import interpolate
from .models import (
    ConditionNode,
    DelayNode,
    EndNode,
    InputNode,
    IntegrationNode,
    MessageNode,
    Node,
    Workflow,
)

if TYPE_CHECKING:
    from ..persistence import WorkflowStore

logger = logging.getLogger(__name__)


class StepResult(BaseModel):
    """Outcome of executing one node."""

    output: Optional[str] = None
    is_complete: bool = False
    wait_for_input: bool = False
    suspended: bool = False
    next_node_type: Optional[str] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class _Outcome:
    output: Optional[str] = None
    next_node_id: Optional[str] = None
    advance: bool = True
    terminal: bool = False
    resume_at: Optional[datetime] = None


NodeHandler = Callable[[Any, WorkflowSession, Optional[str], datetime], Awaitable[_Outcome]]


class WorkflowEngine:
    """Execute workflow nodes one at a time against a session.

    ``step`` mutates the session it is given; callers persist it afterwards.
    """

    def __init__(
        self,
        workflow_store: Optional["WorkflowStore"] = None,
        integrations: Optional[IntegrationRegistry] = None,
        cache: Optional[GraphCache] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._workflow_store = workflow_store
        self.integrations = integrations or IntegrationRegistry()
        self._cache = cache or GraphCache()
        self._clock = clock
        self._handlers: Dict[str, NodeHandler] = {
            "message": self._run_message,
            "input": self._run_input,
            "condition": self._run_condition,
            "delay": self._run_delay,
            "integration": self._run_integration,
            "end": self._run_end,
        }

    # ------------------------------------------------------------------
    async def load_graph(self, workflow_id: str, version: Optional[int] = None) -> WorkflowGraph:
        """Return the validated graph for ``workflow_id``, using the cache.

        Without ``version`` the latest definition is loaded; sessions pass the
        version they were started on so later edits never affect them.

        Raises:
            WorkflowNotFoundError: If the workflow or that version is gone.
            WorkflowDefinitionError: If the stored definition cannot be run.
        """
        graph = self._cache.get(workflow_id, version)
        if graph is not None:
            return graph
        label = workflow_id if version is None else f"{workflow_id} version {version}"
        if self._workflow_store is None:
            raise WorkflowNotFoundError(f"Workflow {label} not found")
        workflow = await self._workflow_store.get(workflow_id, version=version)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow {label} not found")
        graph = WorkflowGraph(workflow)
        self._cache.put(workflow_id, graph, latest=version is None)
        return graph

    async def update_workflow(self, workflow_id: str, changes: Dict[str, Any]) -> Workflow:
        """Store a new version of a workflow and drop cached graphs for it."""
        if self._workflow_store is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
        workflow = await self._workflow_store.update(workflow_id, changes)
        self.invalidate(workflow_id)
        logger.info(f"Workflow {workflow_id} updated to version {workflow.version}")
        return workflow

    def invalidate(self, workflow_id: str) -> None:
        self._cache.invalidate(workflow_id)

    def close(self) -> None:
        self._cache.close()

    async def start(
        self,
        workflow_id: str,
        contact_address: str,
        variables: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WorkflowSession:
        """Build a new, unsaved session positioned on the start node."""
        graph = await self.load_graph(workflow_id)
        now = self._clock()
        return WorkflowSession(
            workflow_id=workflow_id,
            workflow_version=graph.version,
            contact_address=contact_address,
            variables=dict(variables or {}),
            metadata=dict(metadata or {}),
            current_node_id=graph.start_node_id,
            created_at=now,
            updated_at=now,
        )

    async def step(
        self, session: WorkflowSession, input: Optional[str] = None
    ) -> StepResult:
        """Execute the session's current node, optionally consuming ``input``."""
        graph = await self.load_graph(session.workflow_id, session.workflow_version)
        return await self.execute(graph, session, input)

    async def execute(
        self,
        graph: WorkflowGraph,
        session: WorkflowSession,
        input: Optional[str] = None,
    ) -> StepResult:
        if not session.is_active:
            raise SessionStateError(f"Session {session.session_id} is not active")
        current_id = session.current_node_id
        if current_id is None:
            raise SessionStateError(f"Session {session.session_id} has no current node")

        now = self._clock()
        if input:
            session.history.append(HistoryEntry(node_id=current_id, timestamp=now, input=input))

        node = graph.get(current_id)
        if node is None:
            return self._fail(
                session, now, f"Node {current_id} not found in workflow {session.workflow_id}"
            )
        handler = self._handlers.get(node.type)
        if handler is None:
            return self._fail(session, now, f"Unknown node type: {node.type}")

        outcome = await handler(node, session, input, now)

        if outcome.output:
            session.history.append(
                HistoryEntry(node_id=current_id, timestamp=now, output=outcome.output)
            )

        session.updated_at = now
        if not outcome.advance:
            return StepResult(
                output=outcome.output or None,
                wait_for_input=True,
                next_node_type=node.type,
            )

        next_id = None if outcome.terminal else outcome.next_node_id
        if next_id is not None and next_id not in graph:
            logger.warning(
                f"Node {current_id} points to missing node {next_id}; "
                f"completing session {session.session_id}"
            )
            next_id = None

        session.last_node_id = current_id
        session.current_node_id = next_id
        if next_id is None:
            session.deactivate(now)
            logger.info(f"Session {session.session_id} completed at node {current_id}")
            return StepResult(output=outcome.output or None, is_complete=True)

        session.resume_at = outcome.resume_at
        return StepResult(
            output=outcome.output or None,
            suspended=outcome.resume_at is not None,
            next_node_type=graph.node_type(next_id),
        )

    def _fail(self, session: WorkflowSession, now: datetime, reason: str) -> StepResult:
        logger.error(f"Session {session.session_id} terminated: {reason}")
        session.last_node_id = session.current_node_id
        session.deactivate(now)
        return StepResult(is_complete=True, error=reason)

    # ------------------------------------------------------------------
    # Node types
    async def _run_message(
        self, node: MessageNode, session: WorkflowSession, input: Optional[str], now: datetime
    ) -> _Outcome:
        return _Outcome(
            output=interpolate(node.content.text, session.variables),
            next_node_id=node.first_successor(),
        )

    async def _run_input(
        self, node: InputNode, session: WorkflowSession, input: Optional[str], now: datetime
    ) -> _Outcome:
        if not input:
            prompt = node.content.prompt or DEFAULT_INPUT_PROMPT
            return _Outcome(output=interpolate(prompt, session.variables), advance=False)
        if node.content.variable_name:
            session.variables[node.content.variable_name] = input
        return _Outcome(next_node_id=node.first_successor())

    async def _run_condition(
        self, node: ConditionNode, session: WorkflowSession, input: Optional[str], now: datetime
    ) -> _Outcome:
        return _Outcome(next_node_id=select_branch(node, session.variables))

    async def _run_delay(
        self, node: DelayNode, session: WorkflowSession, input: Optional[str], now: datetime
    ) -> _Outcome:
        delay_ms = node.content.delay_ms
        next_id = node.first_successor()
        resume_at = None
        if delay_ms > 0 and next_id is not None:
            resume_at = now + timedelta(milliseconds=delay_ms)
            logger.info(
                f"Session {session.session_id} delayed {delay_ms}ms at node {node.id}, "
                f"resuming at {resume_at.isoformat()}"
            )
        return _Outcome(next_node_id=next_id, resume_at=resume_at)

    async def _run_integration(
        self, node: IntegrationNode, session: WorkflowSession, input: Optional[str], now: datetime
    ) -> _Outcome:
        content = node.content
        if content.service is not None:
            if content.service in self.integrations:
                params = {
                    key: interpolate(value, session.variables) if isinstance(value, str) else value
                    for key, value in content.params.items()
                }
                result = await self.integrations.call(
                    content.service, params, dict(session.variables)
                )
                if content.result_variable:
                    session.variables[content.result_variable] = result
            else:
                logger.warning(
                    f"No integration registered for service '{content.service}' "
                    f"(node {node.id}, session {session.session_id})"
                )
        output = None
        if content.status_message:
            output = interpolate(content.status_message, session.variables)
        return _Outcome(output=output, next_node_id=node.first_successor())

    async def _run_end(
        self, node: EndNode, session: WorkflowSession, input: Optional[str], now: datetime
    ) -> _Outcome:
        message = node.content.message or DEFAULT_END_MESSAGE
        return _Outcome(output=interpolate(message, session.variables), terminal=True)


def select_branch(node: Node, variables: Dict[str, Any]) -> Optional[str]:
    """Pick the successor of a condition node.

    The first edge without a condition, or whose condition holds, wins.
    Malformed conditions count as not matching. With no match the last edge
    is the fallback.
    """
    if not node.next:
        return None
    for edge in node.next:
        if not edge.condition or not edge.condition.strip():
            return edge.id
        try:
            if evaluate(edge.condition, variables):
                return edge.id
        except ConditionSyntaxError as exc:
            logger.warning(f"Skipping edge {node.id} -> {edge.id}: {exc}")
    return node.next[-1].id
