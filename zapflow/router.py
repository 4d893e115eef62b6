"""Bind inbound provider messages to per-contact workflow sessions."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

from .config import RouterConfig
from .contracts import Message, WorkflowSession, utcnow
from .errors import (
    ConcurrencyConflictError,
    DeliveryError,
    SessionNotFoundError,
    SessionStateError,
    WorkflowDefinitionError,
    WorkflowNotFoundError,
)
from .persistence import SessionStore
from .providers import ProviderAdapter
from .utils.retry import schedule_retry
from .workflow import StepResult, WorkflowEngine

logger = logging.getLogger(__name__)

_BROKEN_WORKFLOW = (WorkflowDefinitionError, WorkflowNotFoundError, SessionStateError)


class RouteOutcome(BaseModel):
    """What the router did with one inbound message or resumption."""

    action: str
    contact_address: Optional[str] = None
    message_id: Optional[str] = None
    session_id: Optional[str] = None
    outputs: List[str] = Field(default_factory=list)
    delivered: int = 0
    is_complete: bool = False
    attempts: int = 1


class MessageRouter:
    """Drive the workflow engine from inbound messages.

    Each inbound message runs read -> step -> write against the session store.
    Writes are revision checked; on a conflict the whole cycle is repeated
    against the fresh session. Replies are sent only after the session has
    been committed, so a repeated cycle never sends twice.
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        sessions: SessionStore,
        provider: ProviderAdapter,
        config: Optional[RouterConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.sessions = sessions
        self.provider = provider
        self.config = config or RouterConfig()
        self._clock = clock

    # ------------------------------------------------------------------
    # Entry points
    async def handle_webhook(self, payload: Any) -> Optional[RouteOutcome]:
        """Normalize a provider webhook and route it; ``None`` if not ours."""
        if not isinstance(payload, Mapping):
            logger.warning(f"Ignoring webhook body of type {type(payload).__name__}")
            return None
        message = self.provider.normalize_webhook(payload)
        if message is None:
            return None
        return await self.on_inbound_message(message)

    async def on_inbound_message(self, message: Message) -> RouteOutcome:
        if message.from_self:
            logger.debug(f"Ignoring echo of own message {message.id}")
            return RouteOutcome(
                action="ignored", contact_address=message.contact_address, message_id=message.id
            )

        outcome = await self._run(
            lambda: self._advance_contact(message), message.contact_address
        )
        outcome.message_id = message.id
        await self._deliver(message.contact_address, outcome)
        return outcome

    async def start_session(
        self,
        workflow_id: str,
        contact_address: str,
        variables: Optional[Dict[str, Any]] = None,
    ) -> RouteOutcome:
        """Start ``workflow_id`` for a contact on the operator's initiative.

        Any session still active for the contact is aborted first.
        """

        async def operation() -> RouteOutcome:
            for existing in await self.sessions.list(contact_address=contact_address, active=True):
                await self.abort_session(existing.session_id)
            session = await self.engine.start(
                workflow_id, contact_address, variables=variables, metadata={"source": "operator"}
            )
            results = await self._drive(session, None)
            await self.sessions.create(session)
            return self._outcome("started", session, results)

        outcome = await self._run(operation, contact_address)
        await self._deliver(contact_address, outcome)
        return outcome

    async def abort_session(self, session_id: str) -> bool:
        """Deactivate a session. Returns ``False`` if it was already inactive.

        Raises:
            SessionNotFoundError: If no session has ``session_id``.
        """
        revision = 0
        for _ in range(self.config.conflict_retries + 1):
            session = await self.sessions.get_by_id(session_id)
            if session is None:
                raise SessionNotFoundError(f"Session {session_id} not found")
            if not session.is_active:
                return False
            revision = session.revision
            session.deactivate(self._clock())
            try:
                await self.sessions.save(session)
            except ConcurrencyConflictError:
                logger.info(f"Conflict while aborting session {session_id}; retrying")
                continue
            logger.info(f"Session {session_id} aborted")
            return True
        raise ConcurrencyConflictError(session_id, revision)

    async def resume_due_sessions(self, now: Optional[datetime] = None) -> List[RouteOutcome]:
        """Continue every session whose delay has elapsed."""
        now = now or self._clock()
        outcomes = []
        for due in await self.sessions.find_due(now):
            outcome = await self._run(
                lambda session_id=due.session_id: self._resume(session_id, now),
                due.contact_address,
            )
            if outcome.action == "skipped":
                continue
            await self._deliver(due.contact_address, outcome)
            outcomes.append(outcome)
        return outcomes

    # ------------------------------------------------------------------
    # Read -> step -> write cycles
    async def _advance_contact(self, message: Message) -> RouteOutcome:
        session = await self.sessions.find_active_by_contact(message.contact_address)

        if session is None:
            workflow_id = self.config.default_workflow_id
            if not workflow_id:
                logger.error("No default workflow configured; cannot start a conversation")
                return RouteOutcome(
                    action="no_workflow",
                    contact_address=message.contact_address,
                    outputs=[self.config.no_workflow_message],
                )
            session = await self.engine.start(
                workflow_id,
                message.contact_address,
                variables={"initialMessage": message.text},
                metadata={"source": "whatsapp", "provider": message.provider},
            )
            results = await self._drive(session, None)
            await self.sessions.create(session)
            return self._outcome("started", session, results)

        if session.resume_at is not None:
            logger.info(
                f"Inbound message cancels pending resumption of session {session.session_id}"
            )
            session.resume_at = None
        return await self._continue(session, message.text, "continued")

    async def _resume(self, session_id: str, now: datetime) -> RouteOutcome:
        session = await self.sessions.get_by_id(session_id)
        if session is None or not session.is_active or session.resume_at is None or session.resume_at > now:
            return RouteOutcome(action="skipped", session_id=session_id)
        session.resume_at = None
        return await self._continue(session, None, "resumed")

    async def _continue(
        self, session: WorkflowSession, input: Optional[str], action: str
    ) -> RouteOutcome:
        """Step an existing session and commit it.

        A session whose workflow can no longer be loaded or run is ended so
        the contact is not stuck on it.
        """
        try:
            results = await self._drive(session, input)
        except _BROKEN_WORKFLOW as exc:
            logger.error(f"Session {session.session_id} cannot continue: {exc}")
            session.deactivate(self._clock())
            await self.sessions.save(session)
            return RouteOutcome(
                action="failed",
                contact_address=session.contact_address,
                session_id=session.session_id,
                outputs=[self.config.fallback_message],
                is_complete=True,
            )
        await self.sessions.save(session)
        return self._outcome(action, session, results)

    async def _drive(self, session: WorkflowSession, input: Optional[str]) -> List[StepResult]:
        results = [await self.engine.step(session, input)]
        if not self.config.auto_advance:
            return results
        while len(results) < self.config.max_steps_per_message:
            last = results[-1]
            if not session.is_active or last.wait_for_input or last.suspended or last.failed:
                break
            results.append(await self.engine.step(session))
        else:
            last = results[-1]
            if session.is_active and not (last.wait_for_input or last.suspended):
                logger.warning(
                    f"Session {session.session_id} hit the limit of "
                    f"{self.config.max_steps_per_message} steps for one message"
                )
        return results

    def _outcome(
        self, action: str, session: WorkflowSession, results: List[StepResult]
    ) -> RouteOutcome:
        outputs = [r.output for r in results if r.output]
        if any(r.failed for r in results):
            action = "failed"
            outputs.append(self.config.fallback_message)
        return RouteOutcome(
            action=action,
            contact_address=session.contact_address,
            session_id=session.session_id,
            outputs=outputs,
            is_complete=not session.is_active,
        )

    async def _run(
        self, operation: Callable[[], Awaitable[RouteOutcome]], contact_address: str
    ) -> RouteOutcome:
        """Run ``operation``, repeating it on optimistic-concurrency conflicts.

        Failures never escape: the contact receives the fallback message and
        the previously committed session stays as it was.
        """
        attempts = self.config.conflict_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                outcome = await operation()
            except ConcurrencyConflictError as exc:
                if attempt < attempts:
                    logger.info(f"{exc}; retrying ({attempt}/{attempts - 1})")
                    continue
                logger.error(f"Giving up on {contact_address} after {attempts} conflicting writes")
            except _BROKEN_WORKFLOW as exc:
                logger.error(f"Workflow error for {contact_address}: {exc}")
            except Exception:
                logger.exception(f"Failed to process message for {contact_address}")
            else:
                outcome.attempts = attempt
                return outcome
            break
        return RouteOutcome(
            action="failed",
            contact_address=contact_address,
            outputs=[self.config.fallback_message],
            attempts=attempt,
        )

    # ------------------------------------------------------------------
    # Delivery
    async def _deliver(self, address: str, outcome: RouteOutcome) -> None:
        for index, text in enumerate(outcome.outputs):
            if not await self._send_with_retry(address, text):
                dropped = len(outcome.outputs) - index
                logger.error(f"Dropped {dropped} message(s) to {address} after delivery failures")
                return
            outcome.delivered += 1

    async def _send_with_retry(self, address: str, text: str) -> bool:
        attempts = max(1, self.config.send_attempts)
        for attempt in range(1, attempts + 1):
            try:
                await self.provider.send_text(address, text)
                return True
            except DeliveryError as exc:
                retryable = exc.status_code is None or exc.status_code >= 500 or exc.status_code == 429
                if not retryable or attempt == attempts:
                    logger.error(f"Delivery to {address} failed on attempt {attempt}: {exc}")
                    return False
                logger.warning(f"Delivery to {address} failed on attempt {attempt}: {exc}; retrying")
                await schedule_retry(attempt, base=self.config.retry_base_delay)
        return False
