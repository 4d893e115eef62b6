"""Command line interface for operating zapflow."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from pydantic import ValidationError

from zapflow import MessageRouter, WorkflowEngine, get_provider, get_stores
from zapflow.config import load_config
from zapflow.contracts import Message
from zapflow.errors import (
    DeliveryError,
    SessionNotFoundError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from zapflow.persistence import InMemorySessionStore, InMemoryWorkflowStore
from zapflow.providers import EvolutionProvider, InMemoryProvider
from zapflow.workflow import TEMPLATES, WorkflowDraft, build_template, find_issues
from zapflow.workflow.cache import GraphCache

app = typer.Typer(help="CLI for zapflow conversation workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflows")
session_app = typer.Typer(help="Commands for inspecting and controlling sessions")
provider_app = typer.Typer(help="Commands for the messaging provider")

app.add_typer(workflow_app, name="workflow")
app.add_typer(session_app, name="session")
app.add_typer(provider_app, name="provider")


@app.callback()
def main() -> None:
    """zapflow CLI entry point."""
    logging.basicConfig(
        level=load_config().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_draft(path: Path) -> WorkflowDraft:
    if not path.exists():
        typer.secho(f"File not found: {path}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    data = yaml.safe_load(path.read_text()) or {}
    try:
        return WorkflowDraft.model_validate(data)
    except ValidationError as exc:
        typer.secho(f"Malformed workflow definition in {path}:", fg=typer.colors.RED)
        for error in exc.errors():
            location = ".".join(str(part) for part in error["loc"])
            typer.echo(f"  {location}: {error['msg']}")
        raise typer.Exit(code=1)


def _echo_issues(exc: WorkflowValidationError) -> None:
    typer.secho("Workflow is invalid:", fg=typer.colors.RED)
    for issue in exc.issues:
        typer.echo(f"  [{issue.code}] {issue.message}")


# ----------------------------------------------------------------------
# Workflows
@workflow_app.command("list")
def workflow_list(
    public: Optional[bool] = typer.Option(None, "--public/--private", help="Filter by visibility"),
    tag: Optional[List[str]] = typer.Option(None, help="Only workflows carrying any of these tags"),
    limit: Optional[int] = None,
) -> None:
    """
    List stored workflows.

    Example:
        zapflow workflow list --public --tag sales
        # Output: 3f1c...    v2    Prospecting flow
    """
    workflows_store, _ = get_stores()
    workflows = asyncio.run(workflows_store.list(is_public=public, tags=tag, limit=limit))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\tv{wf.version}\t{wf.name}")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """Show a workflow definition with its nodes and edges."""
    workflows_store, _ = get_stores()
    wf = asyncio.run(workflows_store.get(workflow_id))
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    visibility = "public" if wf.is_public else "private"
    typer.echo(f"Workflow {wf.id}: {wf.name} (v{wf.version}, {visibility})")
    if wf.description:
        typer.echo(f"Description: {wf.description}")
    if wf.tags:
        typer.echo(f"Tags: {', '.join(wf.tags)}")
    for node in wf.nodes:
        marker = "*" if node.id == wf.start_node_id else "-"
        edges = ", ".join(
            f"{edge.id} [{edge.condition}]" if edge.condition else edge.id for edge in node.next
        )
        typer.echo(f"{marker} {node.id} ({node.type})" + (f" -> {edges}" if edges else ""))


@workflow_app.command("validate")
def workflow_validate(path: Path) -> None:
    """Check a workflow file (YAML or JSON) without storing it."""
    draft = _load_draft(path)
    issues = find_issues(draft)
    if issues:
        _echo_issues(WorkflowValidationError(issues))
        raise typer.Exit(code=1)
    typer.echo(f"Workflow '{draft.name}' is valid ({len(draft.nodes)} nodes)")


@workflow_app.command("import")
def workflow_import(path: Path) -> None:
    """Store a workflow file (YAML or JSON) as a new workflow."""
    draft = _load_draft(path)
    workflows_store, _ = get_stores()
    try:
        wf = asyncio.run(workflows_store.create(draft))
    except WorkflowValidationError as exc:
        _echo_issues(exc)
        raise typer.Exit(code=1)
    typer.echo(f"Created workflow {wf.id} ({wf.name})")


@workflow_app.command("template")
def workflow_template(
    template: str,
    name: Optional[str] = typer.Option(None, help="Name for the new workflow"),
) -> None:
    """Create a workflow from a built-in template."""
    if template not in TEMPLATES:
        typer.secho(
            f"Unknown template '{template}'. Available: {', '.join(sorted(TEMPLATES))}",
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)
    workflows_store, _ = get_stores()
    wf = asyncio.run(workflows_store.create(build_template(template, name=name)))
    typer.echo(f"Created workflow {wf.id} ({wf.name})")


@workflow_app.command("update")
def workflow_update(workflow_id: str, path: Path) -> None:
    """
    Replace a workflow's definition with a file, storing it as a new version.

    Conversations already running keep the version they started on.
    """
    draft = _load_draft(path)
    workflows_store, _ = get_stores()
    engine = WorkflowEngine(workflows_store)
    try:
        wf = asyncio.run(engine.update_workflow(workflow_id, draft.model_dump(by_alias=True)))
    except WorkflowNotFoundError:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    except WorkflowValidationError as exc:
        _echo_issues(exc)
        raise typer.Exit(code=1)
    typer.echo(f"Updated workflow {wf.id} to v{wf.version}")


@workflow_app.command("delete")
def workflow_delete(workflow_id: str) -> None:
    """Delete a workflow definition."""
    workflows_store, _ = get_stores()
    if not asyncio.run(workflows_store.delete(workflow_id)):
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Deleted workflow {workflow_id}")


# ----------------------------------------------------------------------
# Sessions
@session_app.command("list")
def session_list(
    contact: Optional[str] = typer.Option(None, help="Only sessions for this contact"),
    active: Optional[bool] = typer.Option(None, "--active/--inactive", help="Filter by state"),
    limit: Optional[int] = None,
) -> None:
    """List sessions, most recently updated first."""
    _, sessions_store = get_stores()
    sessions = asyncio.run(sessions_store.list(contact_address=contact, active=active, limit=limit))
    if not sessions:
        typer.echo("No sessions found")
        return
    for s in sessions:
        state = "ACTIVE" if s.is_active else "INACTIVE"
        typer.echo(f"{s.session_id}\t{s.contact_address}\t{state}\t{s.current_node_id or '-'}")


@session_app.command("show")
def session_show(session_id: str) -> None:
    """Show a session's variables and conversation history."""
    _, sessions_store = get_stores()
    s = asyncio.run(sessions_store.get_by_id(session_id))
    if s is None:
        typer.echo("Session not found")
        raise typer.Exit(code=1)
    state = "ACTIVE" if s.is_active else "INACTIVE"
    typer.echo(f"Session {s.session_id}: {state}")
    typer.echo(f"Workflow: {s.workflow_id} (v{s.workflow_version})")
    typer.echo(f"Contact: {s.contact_address}")
    typer.echo(f"Current node: {s.current_node_id or '-'}")
    if s.resume_at:
        typer.echo(f"Resumes at: {s.resume_at.isoformat()}")
    if s.variables:
        typer.echo(f"Variables: {s.variables}")
    for entry in s.history:
        if entry.input is not None:
            typer.echo(f"- {entry.timestamp.isoformat()} [{entry.node_id}] < {entry.input}")
        if entry.output is not None:
            typer.echo(f"- {entry.timestamp.isoformat()} [{entry.node_id}] > {entry.output}")


def _build_router() -> MessageRouter:
    config = load_config()
    workflows_store, sessions_store = get_stores(config=config)
    engine = WorkflowEngine(workflows_store, cache=GraphCache(ttl=config.engine.graph_cache_ttl))
    return MessageRouter(engine, sessions_store, get_provider(config=config), config.router)


@session_app.command("abort")
def session_abort(session_id: str) -> None:
    """Deactivate a session. Aborting an inactive session is a no-op."""
    router = _build_router()
    try:
        changed = asyncio.run(router.abort_session(session_id))
    except SessionNotFoundError:
        typer.echo("Session not found")
        raise typer.Exit(code=1)
    typer.echo(f"Session {session_id} aborted" if changed else f"Session {session_id} was already inactive")


@session_app.command("resume")
def session_resume() -> None:
    """
    Continue sessions whose delay node has elapsed.

    Meant to be run periodically by a scheduler (cron, Cloud Scheduler ...).
    """
    router = _build_router()

    async def run():
        try:
            return await router.resume_due_sessions()
        finally:
            await router.provider.close()

    outcomes = asyncio.run(run())
    typer.echo(f"Resumed {len(outcomes)} session(s)")
    for outcome in outcomes:
        typer.echo(f"{outcome.session_id}\t{outcome.action}\t{outcome.delivered} sent")


# ----------------------------------------------------------------------
# Provider
@provider_app.command("status")
def provider_status() -> None:
    """Show whether the configured provider instance is connected."""
    provider = get_provider()

    async def run():
        async with provider:
            return await provider.get_connection_status()

    status = asyncio.run(run())
    colour = typer.colors.GREEN if status.connected else typer.colors.RED
    typer.secho(f"{status.provider}: {status.status}", fg=colour)
    if not status.connected:
        raise typer.Exit(code=1)


@provider_app.command("qr")
def provider_qr() -> None:
    """Print the QR code that pairs the provider instance with a phone."""
    provider = get_provider()

    async def run():
        async with provider:
            return await provider.get_qr_code()

    try:
        qr = asyncio.run(run())
    except NotImplementedError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except DeliveryError as exc:
        typer.secho(f"Could not fetch QR code: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    # Evolution answers with base64/code, Z-API with value
    code = qr.get("base64") or qr.get("value") or qr.get("code")
    typer.echo(code or json.dumps(qr))


@provider_app.command("create-instance")
def provider_create_instance() -> None:
    """Create the configured Evolution API instance and register its webhook."""
    provider = get_provider()
    if not isinstance(provider, EvolutionProvider):
        typer.secho(f"{provider.name} does not support creating instances", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    async def run():
        async with provider:
            return await provider.create_instance()

    try:
        asyncio.run(run())
    except DeliveryError as exc:
        typer.secho(f"Could not create instance: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Created instance {provider.config.instance_name}")


@provider_app.command("send")
def provider_send(
    address: str,
    text: str,
    media_url: Optional[str] = typer.Option(None, help="Send this media with TEXT as caption"),
) -> None:
    """
    Send a message to a contact outside any workflow.

    Example:
        zapflow provider send 5511999990000 "Your order has shipped"
    """
    provider = get_provider()

    async def run():
        async with provider:
            if media_url:
                return await provider.send_media(address, media_url, caption=text)
            return await provider.send_text(address, text)

    try:
        receipt = asyncio.run(run())
    except NotImplementedError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except DeliveryError as exc:
        typer.secho(f"Delivery failed: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Sent to {address} via {receipt.provider} (id {receipt.message_id or '-'})")


# ----------------------------------------------------------------------
# Local simulation
@app.command("simulate")
def simulate(
    path: Path,
    contact: str = typer.Option("5500000000000", help="Contact address to simulate"),
) -> None:
    """
    Chat with a workflow file locally; type /quit to stop.

    Nothing is sent to a real provider and nothing is persisted.
    """
    draft = _load_draft(path)

    async def run() -> None:
        workflows_store = InMemoryWorkflowStore()
        try:
            wf = await workflows_store.create(draft)
        except WorkflowValidationError as exc:
            _echo_issues(exc)
            raise typer.Exit(code=1)
        provider = InMemoryProvider()
        router = MessageRouter(
            WorkflowEngine(workflows_store), InMemorySessionStore(), provider
        )
        outcome = await router.start_session(wf.id, contact)
        while True:
            for text in outcome.outputs:
                typer.echo(f"bot> {text}")
            if outcome.is_complete or outcome.action == "failed":
                typer.echo("(conversation finished)")
                return
            reply = typer.prompt("you")
            if reply.strip() == "/quit":
                return
            outcome = await router.on_inbound_message(
                Message(id=f"sim-{len(provider.sent)}", contact_address=contact, text=reply)
            )

    asyncio.run(run())


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
