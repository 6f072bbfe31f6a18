import asyncio
import logging
from datetime import timedelta
from zoneinfo import ZoneInfo

import click

from inboxagent.adapters.completion import ClaudeCompletion
from inboxagent.adapters.google import GmailMailbox, GoogleCalendar
from inboxagent.adapters.hubspot import HubSpotCrm
from inboxagent.config import Settings, settings
from inboxagent.db import (
    DbConnection,
    fail_task,
    get_owner,
    init_db,
    list_owners,
    list_tasks,
    upsert_owner,
)
from inboxagent.engine import TaskEngine
from inboxagent.errors import InboxAgentError
from inboxagent.interpreter import ReplyInterpreter
from inboxagent.models import Owner
from inboxagent.scanner import ReplyScanner, run_scanner
from inboxagent.sync import sync_contacts, sync_mailbox


def build_engine(db: DbConnection, config: Settings) -> TaskEngine:
    """Wire the production adapters from *config* into a :class:`TaskEngine`."""
    tz = ZoneInfo(config.timezone)
    completion = ClaudeCompletion(
        model=config.model, timeout=config.completion_timeout, cwd=config.data
    )
    return TaskEngine(
        db,
        mailbox=GmailMailbox(timeout=config.request_timeout),
        calendar=GoogleCalendar(tz=tz, timeout=config.request_timeout),
        interpreter=ReplyInterpreter(completion, tz),
        settings=config,
    )


def _get_db() -> DbConnection:
    return init_db(settings.db_path)


def _require_owner(db: DbConnection, owner_id: str) -> Owner:
    owner = get_owner(db, owner_id)
    if owner is None:
        raise click.ClickException(f"Unknown owner {owner_id!r}; see `inboxagent owners`.")
    return owner


def _lookback() -> timedelta:
    return timedelta(minutes=settings.scan_lookback_minutes)


@click.group(invoke_without_command=True)
@click.option("-v", "--verbose", is_flag=True, help="Log at DEBUG level.")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """inboxagent: email, calendar and CRM assistant with follow-up tasks"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not ctx.invoked_subcommand:
        click.echo(ctx.get_help())


@main.command()
@click.argument("owner_id")
def chat(owner_id: str) -> None:
    """Start an interactive conversation as OWNER_ID."""
    from inboxagent.agent import run_conversation

    db = _get_db()
    owner = _require_owner(db, owner_id)
    asyncio.run(
        run_conversation(
            db,
            owner,
            build_engine(db, settings),
            HubSpotCrm(timeout=settings.request_timeout),
            data_dir=settings.data,
            model=settings.model,
        )
    )


@main.command()
@click.argument("owner_id")
@click.argument("message")
def ask(owner_id: str, message: str) -> None:
    """Run a single agent turn for OWNER_ID and print the reply."""
    from inboxagent.agent_core import query_agent

    db = _get_db()
    owner = _require_owner(db, owner_id)

    async def _run() -> None:
        async for msg in query_agent(
            message,
            db=db,
            owner=owner,
            engine=build_engine(db, settings),
            crm=HubSpotCrm(timeout=settings.request_timeout),
            data_dir=settings.data,
            model=settings.model,
        ):
            if msg.type == "text" and msg.text:
                click.echo(msg.text, nl=False)
        click.echo()

    asyncio.run(_run())


@main.command()
def scan() -> None:
    """Match recent replies to waiting tasks once."""
    db = _get_db()
    scanner = ReplyScanner(db, build_engine(db, settings), lookback=_lookback())
    result = asyncio.run(scanner.run_scan())
    click.echo(
        f"Processed {result.processed_count} replies for {result.owners_scanned} owners."
    )


@main.command()
def scanner() -> None:
    """Run the reply scanner daemon on the configured cron schedule."""
    db = _get_db()
    reply_scanner = ReplyScanner(db, build_engine(db, settings), lookback=_lookback())
    asyncio.run(run_scanner(reply_scanner, settings.scan_schedule))


@main.command()
@click.option("--owner", "owner_id", help="Only sync this owner.")
def sync(owner_id: str | None) -> None:
    """Refresh the cached mailbox and CRM contacts."""
    db = _get_db()
    owners = [_require_owner(db, owner_id)] if owner_id else list_owners(db)
    mailbox = GmailMailbox(timeout=settings.request_timeout)
    crm = HubSpotCrm(timeout=settings.request_timeout)

    async def _run() -> None:
        for owner in owners:
            if owner.google_access_token:
                try:
                    count = await sync_mailbox(db, owner, mailbox, lookback=_lookback())
                    click.echo(f"{owner.id}: {count} new emails")
                except InboxAgentError as e:
                    click.echo(f"{owner.id}: mailbox sync failed: {e}", err=True)
            if owner.hubspot_access_token:
                try:
                    count = await sync_contacts(db, owner, crm)
                    click.echo(f"{owner.id}: {count} contacts")
                except InboxAgentError as e:
                    click.echo(f"{owner.id}: contact sync failed: {e}", err=True)

    asyncio.run(_run())


@main.command()
def owners() -> None:
    """List registered owners and their connected accounts."""
    db = _get_db()
    for owner in list_owners(db):
        connected = [
            name
            for name, token in (
                ("google", owner.google_access_token),
                ("hubspot", owner.hubspot_access_token),
            )
            if token
        ]
        click.echo(f"{owner.id} | {owner.email} | {', '.join(connected) or '-'}")


@main.command("add-owner")
@click.argument("owner_id")
@click.argument("email")
@click.option("--google-token", envvar="INBOXAGENT_GOOGLE_TOKEN")
@click.option("--hubspot-token", envvar="INBOXAGENT_HUBSPOT_TOKEN")
def add_owner(
    owner_id: str, email: str, google_token: str | None, hubspot_token: str | None
) -> None:
    """Register OWNER_ID or update their access tokens."""
    db = _get_db()
    upsert_owner(
        db,
        owner_id=owner_id,
        email=email,
        google_access_token=google_token,
        hubspot_access_token=hubspot_token,
    )
    click.echo(f"Owner {owner_id} saved.")


@main.command()
@click.option("--owner", "owner_id", help="Only show this owner's tasks.")
def tasks(owner_id: str | None) -> None:
    """List follow-up tasks and their status."""
    db = _get_db()
    all_tasks = list_tasks(db, owner_id)
    if not all_tasks:
        click.echo("No tasks.")
        return
    click.echo(
        f"{'ID':<34} {'Owner':<16} {'Type':<18} {'Status':<18} {'Waiting for'}"
    )
    click.echo("-" * 110)
    for task in all_tasks:
        click.echo(
            f"{task.id:<34} {task.owner_id[:16]:<16} {task.type:<18}"
            f" {task.status:<18} {task.waiting_for or ''}"
        )


@main.command("fail-task")
@click.argument("task_id")
@click.option("--reason", default="abandoned by operator")
def fail_task_command(task_id: str, reason: str) -> None:
    """Abandon TASK_ID by moving it to failed."""
    db = _get_db()
    try:
        fail_task(db, task_id, reason, failed_by="operator")
    except InboxAgentError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Task {task_id} failed.")


if __name__ == "__main__":
    main()
