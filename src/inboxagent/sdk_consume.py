"""Iterate ``ClaudeSDKClient.receive_response()`` and pull out the reply text.

Used by the chat front-end (streaming to the terminal) and by the completion
adapter behind the reply interpreter.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeSDKClient,
    ResultMessage,
    TextBlock,
    ToolUseBlock,
)


async def consume_sdk_response(
    client: ClaudeSDKClient,
    *,
    on_text: Callable[[str], Awaitable[None]] | None = None,
    on_tool: Callable[[str], Awaitable[None]] | None = None,
    on_result: Callable[[ResultMessage], Awaitable[None]] | None = None,
) -> ResultMessage | None:
    """Dispatch streamed messages to the callbacks.

    * Each non-empty ``TextBlock`` goes to *on_text*. Text that resumes after
      a tool call is preceded by a blank line so runs do not run together.
    * Each ``ToolUseBlock`` name goes to *on_tool*.
    * When no text was streamed at all, ``ResultMessage.result`` is sent to
      *on_text* instead so the caller never ends up with an empty reply.
    * Returns the final ``ResultMessage`` or ``None`` if the stream was empty.
    """
    had_text = False
    after_tool = False
    final_result: ResultMessage | None = None

    async for message in client.receive_response():
        if isinstance(message, AssistantMessage):
            for block in message.content:
                if isinstance(block, TextBlock) and block.text:
                    if on_text is not None:
                        if after_tool and had_text:
                            await on_text("\n\n")
                        await on_text(block.text)
                    had_text = True
                    after_tool = False
                elif isinstance(block, ToolUseBlock):
                    after_tool = True
                    if on_tool is not None:
                        await on_tool(block.name)

        elif isinstance(message, ResultMessage):
            final_result = message
            if not had_text and message.result and on_text is not None:
                await on_text(message.result)
            if on_result is not None:
                await on_result(message)

    return final_result
