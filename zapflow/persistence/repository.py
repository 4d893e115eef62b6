"""Store protocols for workflow definitions and conversation sessions."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol

from pydantic import ValidationError

from ..contracts import WorkflowSession, utcnow
from ..errors import WorkflowDefinitionError
from ..workflow.graph import validate_workflow
from ..workflow.models import Workflow, WorkflowDraft

_IMMUTABLE_FIELDS = {"id", "version", "createdAt", "updatedAt"}


class WorkflowStore(Protocol):
    """Protocol for workflow definition persistence backends."""

    async def create(self, draft: WorkflowDraft) -> Workflow:
        """Validate and persist a new workflow at version 1."""

    async def get(self, workflow_id: str, version: int | None = None) -> Workflow | None:
        """Retrieve the latest workflow, or the exact ``version`` if given.

        Every version ever stored stays retrievable until the workflow is
        deleted, so running sessions keep the definition they started on.
        """

    async def list(
        self,
        is_public: bool | None = None,
        tags: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> list[Workflow]:
        """Return workflows matching visibility and any of ``tags``."""

    async def update(self, workflow_id: str, changes: Dict[str, Any]) -> Workflow:
        """Apply ``changes``, bump the version and persist."""

    async def delete(self, workflow_id: str) -> bool:
        """Remove a workflow; returns ``False`` if it did not exist."""


class SessionStore(Protocol):
    """Protocol for session persistence with optimistic concurrency.

    ``save`` only succeeds when the stored ``revision`` matches the session's,
    and raises :class:`~zapflow.errors.ConcurrencyConflictError` otherwise.
    """

    async def create(self, session: WorkflowSession) -> WorkflowSession:
        """Persist a new session at revision 0.

        Raises :class:`~zapflow.errors.ActiveSessionExistsError` when the
        contact already has an active session.
        """

    async def get_by_id(self, session_id: str) -> WorkflowSession | None:
        """Retrieve a session by id."""

    async def find_active_by_contact(self, contact_address: str) -> WorkflowSession | None:
        """Most recently updated active session for a contact."""

    async def save(self, session: WorkflowSession) -> WorkflowSession:
        """Overwrite the stored session if nobody else changed it."""

    async def list(
        self,
        contact_address: str | None = None,
        active: bool | None = None,
        limit: int | None = None,
    ) -> list[WorkflowSession]:
        """Return sessions, most recently updated first."""

    async def find_due(self, now: datetime) -> list[WorkflowSession]:
        """Active sessions whose scheduled resumption time has passed."""


def build_workflow(draft: WorkflowDraft, now: datetime | None = None) -> Workflow:
    """Assign identity and version 1 to a validated draft."""
    validate_workflow(draft)
    now = now or utcnow()
    data = draft.model_dump(by_alias=True)
    return Workflow.model_validate(
        {**data, "id": str(uuid.uuid4()), "version": 1, "createdAt": now, "updatedAt": now}
    )


def merge_workflow(
    existing: Workflow, changes: Dict[str, Any], now: datetime | None = None
) -> Workflow:
    """Return ``existing`` with ``changes`` applied and the version bumped.

    ``changes`` may use snake_case or the editor's camelCase field names.
    Identity and bookkeeping fields cannot be changed.
    """
    data = existing.to_record()
    for key, value in changes.items():
        camel = _to_camel(key)
        if camel in _IMMUTABLE_FIELDS:
            continue
        data[camel] = value
    data["version"] = existing.version + 1
    data["updatedAt"] = now or utcnow()
    workflow = Workflow.model_validate(data)
    validate_workflow(workflow)
    return workflow


def parse_workflow(record: str | bytes, workflow_id: str) -> Workflow:
    """Decode a stored workflow record.

    Records written by other tools may hold nodes this engine does not
    understand; those surface as :class:`WorkflowDefinitionError`.
    """
    try:
        return Workflow.model_validate_json(record)
    except ValidationError as exc:
        raise WorkflowDefinitionError(
            f"Stored workflow {workflow_id} cannot be loaded: {exc.error_count()} invalid field(s)"
        ) from exc


def matches_filter(
    workflow: Workflow, is_public: Optional[bool], tags: Optional[Iterable[str]]
) -> bool:
    if is_public is not None and workflow.is_public != is_public:
        return False
    if tags:
        wanted = set(tags)
        if wanted and not wanted.intersection(workflow.tags):
            return False
    return True


def pick_most_recent(sessions: List[WorkflowSession]) -> WorkflowSession | None:
    """Tie-break between several active sessions of one contact."""
    if not sessions:
        return None
    return max(sessions, key=lambda s: (s.updated_at, s.created_at))


def _to_camel(key: str) -> str:
    if "_" not in key:
        return key
    head, *rest = key.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)
