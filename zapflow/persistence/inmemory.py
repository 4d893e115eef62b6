"""In-memory implementation of the workflow and session stores."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, Iterable, Tuple

from ..contracts import WorkflowSession
from ..errors import (
    ActiveSessionExistsError,
    ConcurrencyConflictError,
    StorageError,
    WorkflowNotFoundError,
)
from ..workflow.models import Workflow, WorkflowDraft
from .repository import (
    SessionStore,
    WorkflowStore,
    build_workflow,
    matches_filter,
    merge_workflow,
    pick_most_recent,
)


class InMemoryWorkflowStore(WorkflowStore):
    """Keep workflow definitions in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._versions: Dict[Tuple[str, int], Workflow] = {}

    async def create(self, draft: WorkflowDraft) -> Workflow:
        workflow = build_workflow(draft)
        self._workflows[workflow.id] = workflow
        self._versions[(workflow.id, workflow.version)] = workflow
        return workflow.model_copy(deep=True)

    async def get(self, workflow_id: str, version: int | None = None) -> Workflow | None:
        if version is None:
            workflow = self._workflows.get(workflow_id)
        else:
            workflow = self._versions.get((workflow_id, version))
        return workflow.model_copy(deep=True) if workflow else None

    async def list(
        self,
        is_public: bool | None = None,
        tags: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> list[Workflow]:
        found = [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if matches_filter(wf, is_public, tags)
        ]
        return found[:limit] if limit else found

    async def update(self, workflow_id: str, changes: Dict[str, Any]) -> Workflow:
        existing = self._workflows.get(workflow_id)
        if existing is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
        workflow = merge_workflow(existing, changes)
        self._workflows[workflow_id] = workflow
        self._versions[(workflow_id, workflow.version)] = workflow
        return workflow.model_copy(deep=True)

    async def delete(self, workflow_id: str) -> bool:
        for key in [k for k in self._versions if k[0] == workflow_id]:
            del self._versions[key]
        return self._workflows.pop(workflow_id, None) is not None


class InMemorySessionStore(SessionStore):
    """Keep sessions in local memory with revision-checked writes."""

    def __init__(self) -> None:
        self._sessions: Dict[str, WorkflowSession] = {}
        self._lock = asyncio.Lock()

    async def create(self, session: WorkflowSession) -> WorkflowSession:
        async with self._lock:
            if session.session_id in self._sessions:
                raise StorageError(f"Session {session.session_id} already exists")
            if session.is_active:
                for other in self._sessions.values():
                    if other.is_active and other.contact_address == session.contact_address:
                        raise ActiveSessionExistsError(session.contact_address, other.session_id)
            session.revision = 0
            self._sessions[session.session_id] = session.model_copy(deep=True)
        return session

    async def get_by_id(self, session_id: str) -> WorkflowSession | None:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def find_active_by_contact(self, contact_address: str) -> WorkflowSession | None:
        active = [
            s
            for s in self._sessions.values()
            if s.is_active and s.contact_address == contact_address
        ]
        chosen = pick_most_recent(active)
        return chosen.model_copy(deep=True) if chosen else None

    async def save(self, session: WorkflowSession) -> WorkflowSession:
        async with self._lock:
            stored = self._sessions.get(session.session_id)
            if stored is None:
                raise StorageError(f"Session {session.session_id} does not exist")
            if stored.revision != session.revision:
                raise ConcurrencyConflictError(session.session_id, session.revision)
            session.revision += 1
            self._sessions[session.session_id] = session.model_copy(deep=True)
        return session

    async def list(
        self,
        contact_address: str | None = None,
        active: bool | None = None,
        limit: int | None = None,
    ) -> list[WorkflowSession]:
        found = [
            s.model_copy(deep=True)
            for s in self._sessions.values()
            if (contact_address is None or s.contact_address == contact_address)
            and (active is None or s.is_active == active)
        ]
        found.sort(key=lambda s: s.updated_at, reverse=True)
        return found[:limit] if limit else found

    async def find_due(self, now: datetime) -> list[WorkflowSession]:
        return [
            s.model_copy(deep=True)
            for s in self._sessions.values()
            if s.is_active and s.resume_at is not None and s.resume_at <= now
        ]
