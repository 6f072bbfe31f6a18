import atexit
import re
import readline
from pathlib import Path

import click
from claude_agent_sdk import ClaudeSDKClient

from inboxagent.adapters.base import Crm
from inboxagent.agent_core import build_system_prompt, make_options
from inboxagent.db import DbConnection
from inboxagent.engine import TaskEngine
from inboxagent.models import Owner
from inboxagent.sdk_consume import consume_sdk_response


def _setup_readline(history_path: Path) -> None:
    """Configure readline with persistent history."""
    history_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        readline.read_history_file(history_path)
    except FileNotFoundError:
        pass
    readline.set_history_length(1000)
    atexit.register(readline.write_history_file, str(history_path))


def _readline_prompt(styled: str) -> str:
    """Wrap ANSI escapes with readline markers so prompt width is correct."""
    return re.sub(r"\x1b\[[0-9;]*m", lambda m: f"\x01{m.group()}\x02", styled)


async def run_conversation(
    db: DbConnection,
    owner: Owner,
    engine: TaskEngine,
    crm: Crm,
    *,
    data_dir: Path,
    model: str,
) -> None:
    _setup_readline(data_dir / "history")

    # Context is retrieved once for the session from the most recent mail.
    options = make_options(
        db,
        owner,
        engine,
        crm,
        data_dir=data_dir,
        model=model,
        system_prompt=build_system_prompt(db, owner, "", engine.tz),
    )
    prompt = _readline_prompt(click.style("> ", fg="green", bold=True))

    async def _on_text(text: str) -> None:
        click.echo(click.style(text, fg="cyan"), nl=False)

    async def _on_tool(name: str) -> None:
        click.echo(click.style(f"[{name}]", dim=True))

    async with ClaudeSDKClient(options) as client:
        while True:
            try:
                user_input = input(prompt)
            except (EOFError, KeyboardInterrupt):
                click.echo()
                break

            if not user_input:
                continue

            await client.query(user_input)
            await consume_sdk_response(client, on_text=_on_text, on_tool=_on_tool)
            click.echo()
