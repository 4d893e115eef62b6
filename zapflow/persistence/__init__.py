"""Persistence layer for workflow definitions and sessions."""

from __future__ import annotations

import os
from typing import Optional, Tuple

from ..config import ZapflowConfig, load_config
from .inmemory import InMemorySessionStore, InMemoryWorkflowStore
from .repository import SessionStore, WorkflowStore
from .sqlite import SQLiteSessionStore, SQLiteWorkflowStore


def resolve_database_url(
    database_url: Optional[str] = None, config: Optional[ZapflowConfig] = None
) -> Optional[str]:
    """Pick the database URL from the argument, environment or configuration."""
    if database_url:
        return database_url
    config = config or load_config()
    return (
        os.getenv("ZAPFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )


def get_stores(
    database_url: Optional[str] = None, config: Optional[ZapflowConfig] = None
) -> Tuple[WorkflowStore, SessionStore]:
    """Factory returning a ``(workflow_store, session_store)`` pair.

    The backend is selected from ``database_url``: ``sqlite://<path>``,
    ``postgres://``/``postgresql://`` or, when nothing is configured,
    in-memory stores. Each call builds new store objects.
    """
    database_url = resolve_database_url(database_url, config)

    if not database_url:
        return InMemoryWorkflowStore(), InMemorySessionStore()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteWorkflowStore(path), SQLiteSessionStore(path)
    if database_url.startswith("postgres://") or database_url.startswith("postgresql://"):
        from .postgres import PostgresSessionStore, PostgresWorkflowStore

        return PostgresWorkflowStore(database_url), PostgresSessionStore(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "InMemorySessionStore",
    "InMemoryWorkflowStore",
    "SQLiteSessionStore",
    "SQLiteWorkflowStore",
    "SessionStore",
    "WorkflowStore",
    "get_stores",
    "resolve_database_url",
]
