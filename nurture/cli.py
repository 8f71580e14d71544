"""Command line interface for running Nurture automations."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

import typer

from nurture.auth import SERVICE_PRINCIPAL
from nurture.config import NurtureConfig, load_config
from nurture.contracts import RunnerAction, RunnerRequest
from nurture.errors import RequestError
from nurture.persistence import get_repository
from nurture.service import open_service

app = typer.Typer(help="CLI for Nurture automation workflows")

# Command groups
run_app = typer.Typer(help="Commands for running workflows")
workflow_app = typer.Typer(help="Commands for inspecting workflows")

app.add_typer(run_app, name="run")
app.add_typer(workflow_app, name="workflow")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, help="Path to a YAML config file"),
    log_level: str = typer.Option("INFO", help="Logging level"),
) -> None:
    """Nurture CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = load_config(str(config) if config else None)


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


def _dispatch(config: NurtureConfig, request: RunnerRequest) -> None:
    async def _run():
        async with open_service(config) as service:
            return await service.execute(request, SERVICE_PRINCIPAL)

    try:
        response = asyncio.run(_run())
    except RequestError as e:
        typer.secho(f"{e.status_code}: {e.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    _echo_json(response.model_dump(mode="json", by_alias=True, exclude_none=True))


def _run_action(ctx: typer.Context, action: RunnerAction, **fields: Any) -> None:
    request = RunnerRequest(action=action, **fields)
    _dispatch(ctx.obj, request)


@run_app.command("tick")
def run_tick(
    ctx: typer.Context,
    batch_size: Optional[int] = None,
    max_workflows: Optional[int] = None,
) -> None:
    """
    Run one scheduler tick over every live workflow.

    Example:
        nurture run tick
        nurture run tick --batch-size 20 --max-workflows 5
    """
    _run_action(ctx, "tick", batch_size=batch_size, max_workflows=max_workflows)


@run_app.command("run-all")
def run_all(
    ctx: typer.Context,
    batch_size: Optional[int] = None,
    max_workflows: Optional[int] = None,
) -> None:
    """Run live and paused workflows, forced."""
    _run_action(ctx, "run_all", batch_size=batch_size, max_workflows=max_workflows)


@run_app.command("now")
def run_now(ctx: typer.Context, workflow_id: str, batch_size: Optional[int] = None) -> None:
    """
    Run a single workflow immediately, whatever its status.

    Example:
        nurture run now 5f1c2a8e-0d7b-4b51-9d0e-3c1f0b7a9e21
    """
    _run_action(ctx, "run_now", workflow_id=workflow_id, batch_size=batch_size)


@run_app.command("enroll")
def run_enroll(ctx: typer.Context, workflow_id: str, limit: Optional[int] = None) -> None:
    """Enroll the trigger list's members into a workflow now."""
    _run_action(ctx, "enroll_now", workflow_id=workflow_id, limit=limit)


@run_app.command("ingest")
def run_ingest(
    ctx: typer.Context,
    workflow_id: str,
    payload: str = typer.Option("{}", help="JSON event payload"),
    secret: Optional[str] = typer.Option(None, help="Shared webhook secret"),
) -> None:
    """
    Deliver an inbound trigger event to a workflow.

    Example:
        nurture run ingest WORKFLOW_ID --payload '{"email": "ada@example.com", "event": "signup"}'
    """
    try:
        data = json.loads(payload)
    except ValueError:
        typer.secho("Payload is not valid JSON", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    async def _run():
        async with open_service(ctx.obj) as service:
            return await service.ingest(workflow_id, data, secret)

    try:
        result = asyncio.run(_run())
    except RequestError as e:
        typer.secho(f"{e.status_code}: {e.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    _echo_json(result.model_dump(mode="json", by_alias=True, exclude_none=True))


@workflow_app.command("list")
def workflow_list(ctx: typer.Context) -> None:
    """
    List workflows with their status and last run time.

    Example:
        nurture workflow list
        # Output: 5f1c2a8e-...    live    Welcome series    2026-01-01T10:00:00+00:00
    """
    repo = get_repository(config=ctx.obj)
    workflows = asyncio.run(repo.list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        last_run = wf.last_run_at.isoformat() if wf.last_run_at else "-"
        typer.echo(f"{wf.id}\t{wf.status.value}\t{wf.name}\t{last_run}")


@workflow_app.command("show")
def workflow_show(ctx: typer.Context, workflow_id: str) -> None:
    """Show a workflow's last run summary and its contacts."""
    repo = get_repository(config=ctx.obj)

    async def _load():
        return await repo.get_workflow(workflow_id), await repo.list_contacts(workflow_id)

    wf, contacts = asyncio.run(_load())
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {wf.id}: {wf.status.value} ({wf.trigger_type})")
    if wf.run_summary:
        typer.echo(f"Last run: {json.dumps(wf.run_summary, default=str)}")
    for contact in contacts:
        typer.echo(
            f"- {contact.email}: {contact.status.value} step {contact.current_step}"
            + (f" next {contact.next_run_at.isoformat()}" if contact.next_run_at else "")
            + (f" error: {contact.last_error}" if contact.last_error else "")
        )


@workflow_app.command("logs")
def workflow_logs(
    ctx: typer.Context,
    workflow_id: str,
    contact_id: Optional[str] = typer.Option(None, help="Only show one contact's events"),
) -> None:
    """Print the automation log of a workflow in insertion order."""
    repo = get_repository(config=ctx.obj)
    entries = asyncio.run(repo.list_logs(workflow_id, contact_id=contact_id))
    if not entries:
        typer.echo("No log entries found")
        return
    for entry in entries:
        typer.echo(
            f"{entry.created_at.isoformat()}\t{entry.event_type}\t"
            f"{entry.contact_id or '-'}\t{entry.message}"
        )


if __name__ == "__main__":
    app()
