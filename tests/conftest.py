import pytest

from zapflow.config import RouterConfig
from zapflow.persistence import InMemorySessionStore, InMemoryWorkflowStore
from zapflow.providers import InMemoryProvider
from zapflow.router import MessageRouter
from zapflow.workflow import WorkflowDraft, WorkflowEngine


@pytest.fixture
def greeting_definition() -> dict:
    """Message -> input -> end, in the editor's camelCase format."""
    return {
        "name": "Greeting",
        "startNodeId": "m1",
        "nodes": [
            {"id": "m1", "type": "message", "content": {"text": "Hi {{name}}"}, "next": [{"id": "i1"}]},
            {
                "id": "i1",
                "type": "input",
                "content": {"prompt": "Name?", "variableName": "name"},
                "next": [{"id": "e1"}],
            },
            {"id": "e1", "type": "end", "content": {"message": "Bye {{name}}"}},
        ],
    }


@pytest.fixture
def two_question_definition() -> dict:
    return {
        "name": "Two questions",
        "startNodeId": "ask1",
        "nodes": [
            {
                "id": "ask1",
                "type": "input",
                "content": {"prompt": "First?", "variableName": "first"},
                "next": [{"id": "ack"}],
            },
            {"id": "ack", "type": "message", "content": {"text": "Got {{first}}"}, "next": [{"id": "ask2"}]},
            {
                "id": "ask2",
                "type": "input",
                "content": {"prompt": "Second?", "variableName": "second"},
                "next": [{"id": "done"}],
            },
            {"id": "done", "type": "end", "content": {"message": "Thanks"}},
        ],
    }


@pytest.fixture
def greeting_draft(greeting_definition) -> WorkflowDraft:
    return WorkflowDraft.model_validate(greeting_definition)


@pytest.fixture
def workflow_store() -> InMemoryWorkflowStore:
    return InMemoryWorkflowStore()


@pytest.fixture
def session_store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def provider() -> InMemoryProvider:
    return InMemoryProvider()


@pytest.fixture
def make_router(workflow_store, session_store, provider):
    """Build a router over the in-memory fixtures with a fast retry policy."""

    def factory(default_workflow_id=None, **overrides) -> MessageRouter:
        config = RouterConfig(
            default_workflow_id=default_workflow_id, retry_base_delay=0.0, **overrides
        )
        return MessageRouter(WorkflowEngine(workflow_store), session_store, provider, config)

    return factory
