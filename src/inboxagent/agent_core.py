"""Shared agent turn logic used by both the interactive chat and ``ask``."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from textwrap import dedent
from typing import Any, Literal

from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient, ResultMessage

from inboxagent.adapters.base import Crm
from inboxagent.db import DbConnection
from inboxagent.engine import TaskEngine
from inboxagent.models import Owner
from inboxagent.sdk_consume import consume_sdk_response
from inboxagent.search import format_context, retrieve_context
from inboxagent.tools import make_mcp_server

log = logging.getLogger(__name__)

logging.getLogger("claude_agent_sdk._internal.transport.subprocess_cli").setLevel(
    logging.WARNING
)

_ALLOWED_TOOLS = ["mcp__inboxagent__*"]

_BASE_PROMPT = dedent("""\
    You are an assistant for {email} with access to their Gmail, Google
    Calendar and HubSpot CRM through the inboxagent tools. The current time
    is {now} and the user's time zone is {tz}.

    When asked to set up a meeting with someone, use schedule_meeting: it
    proposes times by email and books the meeting once they reply, so do not
    create the calendar event yourself. Report tool failures to the user
    plainly.""")


@dataclass
class AgentMessage:
    """A simplified message yielded by :func:`query_agent`."""

    type: Literal["text", "tool", "result"]
    text: str | None = None
    session_id: str | None = None


def build_system_prompt(
    db: DbConnection, owner: Owner, query: str, tz: Any, now: datetime | None = None
) -> str:
    """Base instructions plus whatever cached mail and contacts match *query*."""
    now = (now or datetime.now(timezone.utc)).astimezone(tz)
    prompt = _BASE_PROMPT.format(email=owner.email, now=f"{now:%A %Y-%m-%d %H:%M}", tz=tz)
    context = format_context(retrieve_context(db, owner.id, query))
    if context:
        prompt += "\n\nContext from the user's mailbox and CRM:\n\n" + context
    return prompt


def make_options(
    db: DbConnection,
    owner: Owner,
    engine: TaskEngine,
    crm: Crm,
    *,
    data_dir: Path,
    model: str,
    system_prompt: str,
    resume_session_id: str | None = None,
) -> ClaudeAgentOptions:
    owner_dir = data_dir / "owners" / owner.id
    owner_dir.mkdir(parents=True, exist_ok=True)
    return ClaudeAgentOptions(
        cwd=str(owner_dir),
        mcp_servers={"inboxagent": make_mcp_server(db, owner, engine, crm)},
        model=model,
        allowed_tools=list(_ALLOWED_TOOLS),
        system_prompt=system_prompt,
        resume=resume_session_id,
    )


async def query_agent(
    prompt: str,
    *,
    db: DbConnection,
    owner: Owner,
    engine: TaskEngine,
    crm: Crm,
    data_dir: Path,
    model: str,
    resume_session_id: str | None = None,
) -> AsyncGenerator[AgentMessage, None]:
    """Run one agent turn for *owner* and yield its messages."""
    system_prompt = build_system_prompt(db, owner, prompt, engine.tz)
    options = make_options(
        db,
        owner,
        engine,
        crm,
        data_dir=data_dir,
        model=model,
        system_prompt=system_prompt,
        resume_session_id=resume_session_id,
    )

    collected: list[AgentMessage] = []

    async def _on_text(text: str) -> None:
        collected.append(AgentMessage(type="text", text=text))

    async def _on_tool(name: str) -> None:
        log.info("Agent called tool %s", name)
        collected.append(AgentMessage(type="tool", text=name))

    async def _on_result(msg: ResultMessage) -> None:
        collected.append(
            AgentMessage(type="result", session_id=msg.session_id, text=msg.result)
        )

    async with ClaudeSDKClient(options) as client:
        await client.query(prompt)
        await consume_sdk_response(
            client, on_text=_on_text, on_tool=_on_tool, on_result=_on_result
        )

    for msg in collected:
        yield msg
