"""Core data contracts shared by the router, engine, stores and providers."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Message(BaseModel):
    """Canonical inbound message, independent of the messaging provider."""

    id: str
    contact_address: str
    from_self: bool = False
    text: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    type: str = "text"
    provider: Optional[str] = None


class HistoryEntry(BaseModel):
    """One input received or output produced while running a node."""

    node_id: str
    timestamp: datetime
    input: Optional[str] = None
    output: Optional[str] = None


class WorkflowSession(BaseModel):
    """Persisted execution state of one workflow run for one contact."""

    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    workflow_version: int = 1
    contact_address: str
    variables: Dict[str, Any] = Field(default_factory=dict)
    history: List[HistoryEntry] = Field(default_factory=list)
    current_node_id: Optional[str] = None
    last_node_id: Optional[str] = None
    is_active: bool = True
    resume_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    revision: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_suspended(self, now: Optional[datetime] = None) -> bool:
        """Return ``True`` while a scheduled resumption is still pending."""
        if self.resume_at is None:
            return False
        return self.resume_at > (now or utcnow())

    def deactivate(self, now: Optional[datetime] = None) -> None:
        self.is_active = False
        self.current_node_id = None
        self.resume_at = None
        self.updated_at = now or utcnow()


class ConnectionStatus(BaseModel):
    """Operational health reported by a provider."""

    provider: str
    connected: bool
    status: str


class SendReceipt(BaseModel):
    """Acknowledgement returned by a provider for an accepted message."""

    provider: str
    message_id: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)
