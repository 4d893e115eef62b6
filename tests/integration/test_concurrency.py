"""Concurrent messages for the same contact under optimistic concurrency."""

import asyncio

import pytest

from zapflow.config import RouterConfig
from zapflow.contracts import Message
from zapflow.errors import ConcurrencyConflictError
from zapflow.persistence import InMemorySessionStore, InMemoryWorkflowStore
from zapflow.providers import InMemoryProvider
from zapflow.router import MessageRouter
from zapflow.workflow import WorkflowDraft, WorkflowEngine

CONTACT = "5511999990000"


class InterleavingSessionStore(InMemorySessionStore):
    """Hold the first ``parties`` lookups until all of them have read the session.

    This forces two handlers to work from the same revision, the way two
    webhook deliveries processed in parallel would.
    """

    def __init__(self, parties: int = 2) -> None:
        super().__init__()
        self.parties = parties
        self._arrived = 0
        self._released = asyncio.Event()

    def arm(self) -> None:
        self._arrived = 0
        self._released = asyncio.Event()

    async def find_active_by_contact(self, contact_address):
        session = await super().find_active_by_contact(contact_address)
        if not self._released.is_set():
            self._arrived += 1
            if self._arrived >= self.parties:
                self._released.set()
                # let the earlier reader write first
                await asyncio.sleep(0)
            else:
                await self._released.wait()
        return session


@pytest.mark.asyncio
async def test_concurrent_replies_are_serialized(two_question_definition):
    workflows = InMemoryWorkflowStore()
    workflow = await workflows.create(WorkflowDraft.model_validate(two_question_definition))
    sessions = InterleavingSessionStore()
    provider = InMemoryProvider()
    router = MessageRouter(
        WorkflowEngine(workflows),
        sessions,
        provider,
        RouterConfig(default_workflow_id=workflow.id, retry_base_delay=0.0),
    )

    # first message runs alone and leaves the session waiting on "ask1"
    sessions._released.set()
    started = await router.on_inbound_message(Message(id="0", contact_address=CONTACT, text="oi"))
    assert started.outputs == ["First?"]

    sessions.arm()
    first, second = await asyncio.gather(
        router.on_inbound_message(Message(id="1", contact_address=CONTACT, text="A")),
        router.on_inbound_message(Message(id="2", contact_address=CONTACT, text="B")),
    )

    assert first.attempts == 1
    assert second.attempts == 2
    assert first.outputs == ["Got A", "Second?"]
    assert second.outputs == ["Thanks"]
    assert second.is_complete

    session = await sessions.get_by_id(started.session_id)
    inputs = [entry.input for entry in session.history if entry.input is not None]
    assert inputs == ["A", "B"]
    assert session.variables == {"initialMessage": "oi", "first": "A", "second": "B"}
    assert not session.is_active


@pytest.mark.asyncio
async def test_stale_save_is_rejected(two_question_definition):
    workflows = InMemoryWorkflowStore()
    workflow = await workflows.create(WorkflowDraft.model_validate(two_question_definition))
    sessions = InMemorySessionStore()
    engine = WorkflowEngine(workflows)

    session = await sessions.create(await engine.start(workflow.id, CONTACT))
    copy_a = await sessions.get_by_id(session.session_id)
    copy_b = await sessions.get_by_id(session.session_id)

    await engine.step(copy_a, "A")
    await engine.step(copy_b, "B")
    await sessions.save(copy_a)
    with pytest.raises(ConcurrencyConflictError):
        await sessions.save(copy_b)

    stored = await sessions.get_by_id(session.session_id)
    assert stored.variables == {"first": "A"}


@pytest.mark.asyncio
async def test_conflicts_give_up_after_configured_retries(two_question_definition):
    class AlwaysConflicting(InMemorySessionStore):
        async def save(self, session):
            raise ConcurrencyConflictError(session.session_id, session.revision)

    workflows = InMemoryWorkflowStore()
    workflow = await workflows.create(WorkflowDraft.model_validate(two_question_definition))
    sessions = AlwaysConflicting()
    provider = InMemoryProvider()
    router = MessageRouter(
        WorkflowEngine(workflows),
        sessions,
        provider,
        RouterConfig(default_workflow_id=workflow.id, conflict_retries=2, retry_base_delay=0.0),
    )
    await router.on_inbound_message(Message(id="0", contact_address=CONTACT, text="oi"))

    outcome = await router.on_inbound_message(Message(id="1", contact_address=CONTACT, text="A"))

    assert outcome.action == "failed"
    assert outcome.attempts == 3
    assert provider.texts_for(CONTACT)[-1] == router.config.fallback_message


@pytest.mark.asyncio
async def test_concurrent_first_messages_share_one_session(two_question_definition):
    workflows = InMemoryWorkflowStore()
    workflow = await workflows.create(WorkflowDraft.model_validate(two_question_definition))
    sessions = InterleavingSessionStore()
    provider = InMemoryProvider()
    router = MessageRouter(
        WorkflowEngine(workflows),
        sessions,
        provider,
        RouterConfig(default_workflow_id=workflow.id, retry_base_delay=0.0),
    )

    # both handlers see "no active session" before either creates one
    first, second = await asyncio.gather(
        router.on_inbound_message(Message(id="1", contact_address=CONTACT, text="oi")),
        router.on_inbound_message(Message(id="2", contact_address=CONTACT, text="B")),
    )

    assert first.action == "started"
    assert first.attempts == 1
    assert second.action == "continued"
    assert second.attempts == 2
    assert second.session_id == first.session_id
    assert second.outputs == ["Got B", "Second?"]

    active = await sessions.list(contact_address=CONTACT, active=True)
    assert [s.session_id for s in active] == [first.session_id]
    assert active[0].variables == {"initialMessage": "oi", "first": "B"}


@pytest.mark.asyncio
async def test_abort_reports_last_revision_read(two_question_definition):
    class AlwaysConflicting(InMemorySessionStore):
        async def save(self, session):
            raise ConcurrencyConflictError(session.session_id, session.revision)

    workflows = InMemoryWorkflowStore()
    workflow = await workflows.create(WorkflowDraft.model_validate(two_question_definition))
    sessions = AlwaysConflicting()
    router = MessageRouter(
        WorkflowEngine(workflows),
        sessions,
        InMemoryProvider(),
        RouterConfig(default_workflow_id=workflow.id, conflict_retries=1, retry_base_delay=0.0),
    )
    started = await router.on_inbound_message(Message(id="0", contact_address=CONTACT, text="oi"))
    stored = sessions._sessions[started.session_id]
    stored.revision = 4

    with pytest.raises(ConcurrencyConflictError) as excinfo:
        await router.abort_session(started.session_id)

    assert excinfo.value.session_id == started.session_id
    assert excinfo.value.expected_revision == 4
