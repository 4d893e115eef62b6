"""Exception hierarchy for zapflow."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel


class ZapflowError(Exception):
    """Base class for all zapflow errors."""


class WorkflowDefinitionError(ZapflowError):
    """A workflow definition cannot be executed as authored."""


class ValidationIssue(BaseModel):
    """One problem found while validating a workflow definition."""

    code: str
    message: str
    node_id: Optional[str] = None


class WorkflowValidationError(WorkflowDefinitionError):
    """Raised when a workflow fails authoring-time validation."""

    def __init__(self, issues: List[ValidationIssue]):
        self.issues = issues
        summary = "; ".join(issue.message for issue in issues)
        super().__init__(f"Invalid workflow: {summary}")


class WorkflowNotFoundError(ZapflowError):
    """No workflow exists with the requested id."""


class SessionNotFoundError(ZapflowError):
    """No session exists with the requested id."""


class SessionStateError(ZapflowError):
    """A step was requested on a session that cannot be stepped."""


class ConditionSyntaxError(ZapflowError):
    """A condition expression does not match the supported grammar."""


class DeliveryError(ZapflowError):
    """Outbound delivery through a provider failed."""

    def __init__(
        self, provider: str, message: str, status_code: Optional[int] = None
    ) -> None:
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"{provider}: {message}")


class StorageError(ZapflowError):
    """Persistence backend failure."""


class ConcurrencyConflictError(StorageError):
    """The stored session changed since it was read."""

    def __init__(
        self, session_id: str, expected_revision: int, message: Optional[str] = None
    ) -> None:
        self.session_id = session_id
        self.expected_revision = expected_revision
        super().__init__(
            message
            or f"Session {session_id} was modified concurrently "
            f"(expected revision {expected_revision})"
        )


class ActiveSessionExistsError(ConcurrencyConflictError):
    """Another handler created an active session for the contact first."""

    def __init__(self, contact_address: str, session_id: str) -> None:
        self.contact_address = contact_address
        super().__init__(
            session_id, 0, f"Contact {contact_address} already has an active session"
        )
