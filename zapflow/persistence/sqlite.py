"""SQLite implementation of the workflow and session stores."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable

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
    parse_workflow,
    pick_most_recent,
)


class _SQLiteBase:
    """Shared connection handling; statements run in a worker thread."""

    _SCHEMA: tuple[str, ...] = ()

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._mutex = threading.Lock()
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with self._mutex:
            cur = self._conn.cursor()
            for statement in self._SCHEMA:
                cur.execute(statement)
            self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._mutex:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StorageError(str(exc)) from exc
            return cur.rowcount

    def _execute_many(self, *statements: tuple[str, tuple]) -> list[int]:
        """Run ``statements`` in one transaction; returns each row count."""
        with self._mutex:
            try:
                cur = self._conn.cursor()
                counts = []
                for query, params in statements:
                    cur.execute(query, params)
                    counts.append(cur.rowcount)
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StorageError(str(exc)) from exc
            return counts

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._mutex:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._mutex:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def close(self) -> None:
        self._conn.close()


class SQLiteWorkflowStore(_SQLiteBase, WorkflowStore):
    """Persist workflow definitions using SQLite."""

    _SCHEMA = (
        """
        CREATE TABLE IF NOT EXISTS workflows (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            is_public INTEGER NOT NULL,
            version INTEGER NOT NULL,
            updated_at TEXT NOT NULL,
            record TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS workflow_versions (
            id TEXT NOT NULL,
            version INTEGER NOT NULL,
            record TEXT NOT NULL,
            PRIMARY KEY (id, version)
        )
        """,
    )

    _SNAPSHOT = (
        "INSERT INTO workflow_versions (id, version, record) "
        "SELECT id, version, record FROM workflows WHERE id = ? AND version = ?"
    )

    async def create(self, draft: WorkflowDraft) -> Workflow:
        workflow = build_workflow(draft)
        await asyncio.to_thread(
            self._execute_many,
            (
                "INSERT INTO workflows (id, name, is_public, version, updated_at, record) VALUES (?, ?, ?, ?, ?, ?)",
                (
                    workflow.id,
                    workflow.name,
                    int(workflow.is_public),
                    workflow.version,
                    workflow.updated_at.isoformat(),
                    json.dumps(workflow.to_record()),
                ),
            ),
            (self._SNAPSHOT, (workflow.id, workflow.version)),
        )
        return workflow

    async def get(self, workflow_id: str, version: int | None = None) -> Workflow | None:
        if version is None:
            row = await asyncio.to_thread(
                self._fetchone, "SELECT record FROM workflows WHERE id = ?", workflow_id
            )
        else:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT record FROM workflow_versions WHERE id = ? AND version = ? "
                "UNION ALL SELECT record FROM workflows WHERE id = ? AND version = ?",
                workflow_id,
                version,
                workflow_id,
                version,
            )
        if not row:
            return None
        return parse_workflow(row["record"], workflow_id)

    async def list(
        self,
        is_public: bool | None = None,
        tags: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> list[Workflow]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT id, record FROM workflows ORDER BY updated_at DESC"
        )
        found = [
            wf
            for wf in (parse_workflow(r["record"], r["id"]) for r in rows)
            if matches_filter(wf, is_public, tags)
        ]
        return found[:limit] if limit else found

    async def update(self, workflow_id: str, changes: Dict[str, Any]) -> Workflow:
        existing = await self.get(workflow_id)
        if existing is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
        workflow = merge_workflow(existing, changes)
        updated, _ = await asyncio.to_thread(
            self._execute_many,
            (
                """
                UPDATE workflows SET name = ?, is_public = ?, version = ?, updated_at = ?, record = ?
                WHERE id = ? AND version = ?
                """,
                (
                    workflow.name,
                    int(workflow.is_public),
                    workflow.version,
                    workflow.updated_at.isoformat(),
                    json.dumps(workflow.to_record()),
                    workflow_id,
                    existing.version,
                ),
            ),
            (self._SNAPSHOT, (workflow_id, workflow.version)),
        )
        if updated == 0:
            raise StorageError(f"Workflow {workflow_id} was modified concurrently")
        return workflow

    async def delete(self, workflow_id: str) -> bool:
        deleted, _ = await asyncio.to_thread(
            self._execute_many,
            ("DELETE FROM workflows WHERE id = ?", (workflow_id,)),
            ("DELETE FROM workflow_versions WHERE id = ?", (workflow_id,)),
        )
        return deleted > 0


class SQLiteSessionStore(_SQLiteBase, SessionStore):
    """Persist sessions using SQLite with revision-checked updates."""

    _SCHEMA = (
        """
        CREATE TABLE IF NOT EXISTS workflow_sessions (
            session_id TEXT PRIMARY KEY,
            workflow_id TEXT NOT NULL,
            contact_address TEXT NOT NULL,
            is_active INTEGER NOT NULL,
            resume_at TEXT,
            revision INTEGER NOT NULL,
            updated_at TEXT NOT NULL,
            record TEXT NOT NULL
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_sessions_contact_active
        ON workflow_sessions (contact_address, is_active)
        """,
        """
        CREATE UNIQUE INDEX IF NOT EXISTS uq_sessions_one_active_per_contact
        ON workflow_sessions (contact_address) WHERE is_active = 1
        """,
    )

    async def create(self, session: WorkflowSession) -> WorkflowSession:
        session.revision = 0
        try:
            await asyncio.to_thread(
                self._execute,
                """
                INSERT INTO workflow_sessions
                (session_id, workflow_id, contact_address, is_active, resume_at, revision, updated_at, record)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                *self._columns(session),
            )
        except StorageError as exc:
            if "workflow_sessions.contact_address" in str(exc):
                winner = await self.find_active_by_contact(session.contact_address)
                raise ActiveSessionExistsError(
                    session.contact_address, winner.session_id if winner else session.session_id
                ) from exc
            raise StorageError(f"Session {session.session_id} could not be created: {exc}") from exc
        return session

    async def get_by_id(self, session_id: str) -> WorkflowSession | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT record FROM workflow_sessions WHERE session_id = ?",
            session_id,
        )
        return WorkflowSession.model_validate_json(row["record"]) if row else None

    async def find_active_by_contact(self, contact_address: str) -> WorkflowSession | None:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT record FROM workflow_sessions WHERE contact_address = ? AND is_active = 1",
            contact_address,
        )
        return pick_most_recent([WorkflowSession.model_validate_json(r["record"]) for r in rows])

    async def save(self, session: WorkflowSession) -> WorkflowSession:
        expected = session.revision
        candidate = session.model_copy(update={"revision": expected + 1})
        session_id, workflow_id, contact, active, resume_at, revision, updated_at, record = (
            self._columns(candidate)
        )
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE workflow_sessions
            SET workflow_id = ?, contact_address = ?, is_active = ?, resume_at = ?,
                revision = ?, updated_at = ?, record = ?
            WHERE session_id = ? AND revision = ?
            """,
            workflow_id,
            contact,
            active,
            resume_at,
            revision,
            updated_at,
            record,
            session_id,
            expected,
        )
        if updated == 0:
            exists = await asyncio.to_thread(
                self._fetchone,
                "SELECT 1 FROM workflow_sessions WHERE session_id = ?",
                session.session_id,
            )
            if exists is None:
                raise StorageError(f"Session {session.session_id} does not exist")
            raise ConcurrencyConflictError(session.session_id, expected)
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
            query += " AND contact_address = ?"
            params.append(contact_address)
        if active is not None:
            query += " AND is_active = ?"
            params.append(int(active))
        query += " ORDER BY updated_at DESC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [WorkflowSession.model_validate_json(r["record"]) for r in rows]

    async def find_due(self, now: datetime) -> list[WorkflowSession]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT record FROM workflow_sessions WHERE is_active = 1 AND resume_at IS NOT NULL",
        )
        sessions = [WorkflowSession.model_validate_json(r["record"]) for r in rows]
        return [s for s in sessions if s.resume_at is not None and s.resume_at <= now]

    @staticmethod
    def _columns(session: WorkflowSession) -> tuple:
        return (
            session.session_id,
            session.workflow_id,
            session.contact_address,
            int(session.is_active),
            session.resume_at.isoformat() if session.resume_at else None,
            session.revision,
            session.updated_at.isoformat(),
            session.model_dump_json(),
        )
