"""Structured-completion service backed by the Claude Agent SDK."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient, ClaudeSDKError

from inboxagent.errors import ExternalServiceError, ExternalServiceTimeout
from inboxagent.sdk_consume import consume_sdk_response

log = logging.getLogger(__name__)

# Built-in CLI tools stay available unless denied by name.
BUILTIN_TOOLS = [
    "Bash",
    "BashOutput",
    "Edit",
    "ExitPlanMode",
    "Glob",
    "Grep",
    "KillShell",
    "LS",
    "MultiEdit",
    "NotebookEdit",
    "NotebookRead",
    "Read",
    "SlashCommand",
    "Skill",
    "Task",
    "TodoWrite",
    "WebFetch",
    "WebSearch",
    "Write",
]


class ClaudeCompletion:
    """One tool-less model turn per call, bounded by *timeout* seconds."""

    service = "Claude"

    def __init__(self, *, model: str, timeout: float, cwd: Path | None = None) -> None:
        self.model = model
        self.timeout = timeout
        self.cwd = cwd

    async def complete(self, prompt: str, *, system_prompt: str | None = None) -> str:
        options = ClaudeAgentOptions(
            model=self.model,
            system_prompt=system_prompt,
            allowed_tools=[],
            disallowed_tools=BUILTIN_TOOLS,
            max_turns=1,
            cwd=str(self.cwd) if self.cwd else None,
        )
        chunks: list[str] = []

        async def _on_text(text: str) -> None:
            chunks.append(text)

        try:
            async with asyncio.timeout(self.timeout):
                async with ClaudeSDKClient(options) as client:
                    await client.query(prompt)
                    result = await consume_sdk_response(client, on_text=_on_text)
        except TimeoutError as e:
            raise ExternalServiceTimeout(self.service, self.timeout) from e
        except ClaudeSDKError as e:
            raise ExternalServiceError(self.service, str(e)) from e

        if result is not None and result.is_error:
            raise ExternalServiceError(self.service, result.result or "model turn failed")
        text = "".join(chunks)
        log.debug("Completion returned %d chars", len(text))
        return text
