"""PostgreSQL implementation of the workflow and session stores."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, Iterable

import asyncpg

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
    merge_workflow,
    parse_workflow,
    pick_most_recent,
)


def _affected(status: str) -> int:
    """Row count from an asyncpg command status such as ``UPDATE 1``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


class _PostgresBase:
    _SCHEMA: tuple[str, ...] = ()

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        try:
            conn = await asyncpg.connect(self._dsn)
        except (OSError, asyncpg.PostgresError) as exc:
            raise StorageError(f"Could not connect to PostgreSQL: {exc}") from exc
        if not self._initialized:
            for statement in self._SCHEMA:
                await conn.execute(statement)
            self._initialized = True
        return conn


class PostgresWorkflowStore(_PostgresBase, WorkflowStore):
    """Persist workflow definitions using PostgreSQL."""

    _SCHEMA = (
        """
        CREATE TABLE IF NOT EXISTS workflows (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            is_public BOOLEAN NOT NULL,
            tags JSONB NOT NULL,
            version INTEGER NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL,
            record JSONB NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS workflow_versions (
            id TEXT NOT NULL,
            version INTEGER NOT NULL,
            record JSONB NOT NULL,
            PRIMARY KEY (id, version)
        )
        """,
    )

    _SNAPSHOT = (
        "INSERT INTO workflow_versions (id, version, record) "
        "SELECT id, version, record FROM workflows WHERE id = $1 AND version = $2"
    )

    async def create(self, draft: WorkflowDraft) -> Workflow:
        workflow = build_workflow(draft)
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    "INSERT INTO workflows (id, name, is_public, tags, version, updated_at, record) "
                    "VALUES ($1, $2, $3, $4, $5, $6, $7)",
                    workflow.id,
                    workflow.name,
                    workflow.is_public,
                    json.dumps(workflow.tags),
                    workflow.version,
                    workflow.updated_at,
                    json.dumps(workflow.to_record()),
                )
                await conn.execute(self._SNAPSHOT, workflow.id, workflow.version)
        finally:
            await conn.close()
        return workflow

    async def get(self, workflow_id: str, version: int | None = None) -> Workflow | None:
        conn = await self._connect()
        try:
            if version is None:
                row = await conn.fetchrow("SELECT record FROM workflows WHERE id = $1", workflow_id)
            else:
                row = await conn.fetchrow(
                    "SELECT record FROM workflow_versions WHERE id = $1 AND version = $2 "
                    "UNION ALL SELECT record FROM workflows WHERE id = $1 AND version = $2",
                    workflow_id,
                    version,
                )
        finally:
            await conn.close()
        return parse_workflow(row["record"], workflow_id) if row else None

    async def list(
        self,
        is_public: bool | None = None,
        tags: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> list[Workflow]:
        query = "SELECT id, record FROM workflows WHERE 1 = 1"
        params: list[Any] = []
        if is_public is not None:
            params.append(is_public)
            query += f" AND is_public = ${len(params)}"
        if tags:
            params.append(list(tags))
            query += f" AND tags ?| ${len(params)}::text[]"
        query += " ORDER BY updated_at DESC"
        if limit:
            params.append(limit)
            query += f" LIMIT ${len(params)}"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [parse_workflow(r["record"], r["id"]) for r in rows]

    async def update(self, workflow_id: str, changes: Dict[str, Any]) -> Workflow:
        existing = await self.get(workflow_id)
        if existing is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
        workflow = merge_workflow(existing, changes)
        conn = await self._connect()
        try:
            async with conn.transaction():
                status = await conn.execute(
                    """
                    UPDATE workflows
                    SET name = $1, is_public = $2, tags = $3, version = $4, updated_at = $5, record = $6
                    WHERE id = $7 AND version = $8
                    """,
                    workflow.name,
                    workflow.is_public,
                    json.dumps(workflow.tags),
                    workflow.version,
                    workflow.updated_at,
                    json.dumps(workflow.to_record()),
                    workflow_id,
                    existing.version,
                )
                await conn.execute(self._SNAPSHOT, workflow_id, workflow.version)
        finally:
            await conn.close()
        if _affected(status) == 0:
            raise StorageError(f"Workflow {workflow_id} was modified concurrently")
        return workflow

    async def delete(self, workflow_id: str) -> bool:
        conn = await self._connect()
        try:
            async with conn.transaction():
                status = await conn.execute("DELETE FROM workflows WHERE id = $1", workflow_id)
                await conn.execute("DELETE FROM workflow_versions WHERE id = $1", workflow_id)
        finally:
            await conn.close()
        return _affected(status) > 0


class PostgresSessionStore(_PostgresBase, SessionStore):
    """Persist sessions using PostgreSQL with revision-checked updates."""

    _SCHEMA = (
        """
        CREATE TABLE IF NOT EXISTS workflow_sessions (
            session_id TEXT PRIMARY KEY,
            workflow_id TEXT NOT NULL,
            contact_address TEXT NOT NULL,
            is_active BOOLEAN NOT NULL,
            resume_at TIMESTAMPTZ,
            revision INTEGER NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL,
            record JSONB NOT NULL
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_sessions_contact_active
        ON workflow_sessions (contact_address, is_active)
        """,
        """
        CREATE UNIQUE INDEX IF NOT EXISTS uq_sessions_one_active_per_contact
        ON workflow_sessions (contact_address) WHERE is_active
        """,
    )

    async def create(self, session: WorkflowSession) -> WorkflowSession:
        session.revision = 0
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO workflow_sessions
                (session_id, workflow_id, contact_address, is_active, resume_at, revision, updated_at, record)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                session.session_id,
                session.workflow_id,
                session.contact_address,
                session.is_active,
                session.resume_at,
                session.revision,
                session.updated_at,
                session.model_dump_json(),
            )
        except asyncpg.UniqueViolationError as exc:
            if exc.constraint_name != "uq_sessions_one_active_per_contact":
                raise StorageError(f"Session {session.session_id} already exists") from exc
            winner = await conn.fetchval(
                "SELECT session_id FROM workflow_sessions WHERE contact_address = $1 AND is_active",
                session.contact_address,
            )
            raise ActiveSessionExistsError(
                session.contact_address, winner or session.session_id
            ) from exc
        finally:
            await conn.close()
        return session

    async def get_by_id(self, session_id: str) -> WorkflowSession | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT record FROM workflow_sessions WHERE session_id = $1", session_id
            )
        finally:
            await conn.close()
        return WorkflowSession.model_validate_json(row["record"]) if row else None

    async def find_active_by_contact(self, contact_address: str) -> WorkflowSession | None:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT record FROM workflow_sessions WHERE contact_address = $1 AND is_active",
                contact_address,
            )
        finally:
            await conn.close()
        return pick_most_recent([WorkflowSession.model_validate_json(r["record"]) for r in rows])

    async def save(self, session: WorkflowSession) -> WorkflowSession:
        expected = session.revision
        candidate = session.model_copy(update={"revision": expected + 1})
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                UPDATE workflow_sessions
                SET workflow_id = $1, contact_address = $2, is_active = $3, resume_at = $4,
                    revision = $5, updated_at = $6, record = $7
                WHERE session_id = $8 AND revision = $9
                """,
                candidate.workflow_id,
                candidate.contact_address,
                candidate.is_active,
                candidate.resume_at,
                candidate.revision,
                candidate.updated_at,
                candidate.model_dump_json(),
                candidate.session_id,
                expected,
            )
            if _affected(status) == 0:
                exists = await conn.fetchval(
                    "SELECT 1 FROM workflow_sessions WHERE session_id = $1", session.session_id
                )
                if exists is None:
                    raise StorageError(f"Session {session.session_id} does not exist")
                raise ConcurrencyConflictError(session.session_id, expected)
        finally:
            await conn.close()
        session.revision = expected + 1
        return session

    async def list(
        self,
        contact_address: str | None = None,
        active: bool | None = None,
        limit: int | None = None,
    ) -> list[WorkflowSession]:
        query = "SELECT record FROM workflow_sessions WHERE 1 = 1"
        params: list[Any] = []
        if contact_address is not None:
            params.append(contact_address)
            query += f" AND contact_address = ${len(params)}"
        if active is not None:
            params.append(active)
            query += f" AND is_active = ${len(params)}"
        query += " ORDER BY updated_at DESC"
        if limit:
            params.append(limit)
            query += f" LIMIT ${len(params)}"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [WorkflowSession.model_validate_json(r["record"]) for r in rows]

    async def find_due(self, now: datetime) -> list[WorkflowSession]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT record FROM workflow_sessions WHERE is_active AND resume_at <= $1",
                now,
            )
        finally:
            await conn.close()
        return [WorkflowSession.model_validate_json(r["record"]) for r in rows]
