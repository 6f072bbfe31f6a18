"""Tests for the shared SDK response consumer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import pytest
from claude_agent_sdk import AssistantMessage, ResultMessage, TextBlock, ToolUseBlock

from inboxagent.sdk_consume import consume_sdk_response


@dataclass
class FakeClient:
    """Stub ClaudeSDKClient whose receive_response yields canned messages."""

    messages: list[Any] = field(default_factory=list)

    async def receive_response(self):  # noqa: ANN201
        for msg in self.messages:
            yield msg


def _result_msg(result: str = "", session_id: str = "sess-1") -> ResultMessage:
    return ResultMessage(
        subtype="success",
        duration_ms=100,
        duration_api_ms=80,
        is_error=False,
        num_turns=1,
        session_id=session_id,
        result=result,
    )


def _assistant_msg(*texts: str) -> AssistantMessage:
    return AssistantMessage(content=[TextBlock(text=t) for t in texts], model="test")


def _tool_use_msg(tool_name: str = "mcp__inboxagent__send_email") -> AssistantMessage:
    return AssistantMessage(
        content=[ToolUseBlock(id="tool-1", name=tool_name, input={})],
        model="test",
    )


class _Recorder:
    def __init__(self) -> None:
        self.texts: list[str] = []
        self.tools: list[str] = []

    async def on_text(self, text: str) -> None:
        self.texts.append(text)

    async def on_tool(self, name: str) -> None:
        self.tools.append(name)


@pytest.mark.asyncio
async def test_text_blocks_forwarded_without_duplicate_result() -> None:
    rec = _Recorder()
    client = FakeClient([_assistant_msg("Hello", "", "World"), _result_msg("Hello World")])

    result = await consume_sdk_response(client, on_text=rec.on_text)

    assert rec.texts == ["Hello", "World"]
    assert result is not None
    assert result.session_id == "sess-1"


@pytest.mark.asyncio
async def test_result_fallback_when_no_text_blocks() -> None:
    rec = _Recorder()
    await consume_sdk_response(FakeClient([_result_msg("Fallback text")]), on_text=rec.on_text)
    assert rec.texts == ["Fallback text"]


@pytest.mark.asyncio
async def test_empty_result_is_not_forwarded() -> None:
    rec = _Recorder()
    await consume_sdk_response(FakeClient([_result_msg("")]), on_text=rec.on_text)
    assert rec.texts == []


@pytest.mark.asyncio
async def test_callbacks_are_optional() -> None:
    expected = _result_msg("done")
    client = FakeClient([_assistant_msg("x"), _tool_use_msg(), expected])
    assert await consume_sdk_response(client) is expected


@pytest.mark.asyncio
async def test_no_messages_returns_none() -> None:
    assert await consume_sdk_response(FakeClient([])) is None


@pytest.mark.asyncio
async def test_on_result_called() -> None:
    expected = _result_msg("reply", session_id="sess-cb")
    results: list[ResultMessage] = []

    async def _on_result(msg: ResultMessage) -> None:
        results.append(msg)

    await consume_sdk_response(FakeClient([expected]), on_result=_on_result)

    assert results == [expected]


@pytest.mark.asyncio
async def test_tool_calls_reported_and_text_runs_separated() -> None:
    rec = _Recorder()
    client = FakeClient(
        [
            _assistant_msg("Checking your calendar."),
            _tool_use_msg("mcp__inboxagent__list_calendar_events"),
            _assistant_msg("You are free at 10."),
            _tool_use_msg("mcp__inboxagent__schedule_meeting"),
            _assistant_msg("Sent the options."),
            _result_msg("done"),
        ]
    )

    await consume_sdk_response(client, on_text=rec.on_text, on_tool=rec.on_tool)

    assert rec.tools == [
        "mcp__inboxagent__list_calendar_events",
        "mcp__inboxagent__schedule_meeting",
    ]
    assert "".join(rec.texts) == (
        "Checking your calendar.\n\nYou are free at 10.\n\nSent the options."
    )


@pytest.mark.asyncio
async def test_no_separator_without_tool_use() -> None:
    rec = _Recorder()
    client = FakeClient([_assistant_msg("Part one."), _assistant_msg("Part two.")])
    await consume_sdk_response(client, on_text=rec.on_text)
    assert rec.texts == ["Part one.", "Part two."]


@pytest.mark.asyncio
async def test_no_separator_when_tool_comes_first() -> None:
    rec = _Recorder()
    client = FakeClient([_tool_use_msg(), _assistant_msg("Result after tool."), _result_msg("x")])
    await consume_sdk_response(client, on_text=rec.on_text)
    assert rec.texts == ["Result after tool."]
