"""Classify an inbound reply against the options a task proposed.

The language understanding is delegated to a :class:`CompletionService`; this
module owns the contract around it. The model's JSON is validated into a
:class:`ReplyDecision` and then resolved into one of three tagged outcomes.
Anything malformed, ambiguous or out of range becomes
:class:`ClarificationNeeded` so the engine asks again instead of guessing.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from textwrap import dedent
from typing import Literal

from pydantic import AliasChoices, BaseModel, Field, ValidationError

from inboxagent.adapters.base import CompletionService
from inboxagent.models import InboundMessage, TimeSlot
from inboxagent.slots import format_options

log = logging.getLogger(__name__)

_SYSTEM_PROMPT = dedent("""\
    You read e-mail replies to meeting scheduling requests and report which
    proposed time the sender accepted. Answer with a single JSON object and
    nothing else.""")

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


class ReplyDecision(BaseModel):
    """Structured output expected from the model."""

    selected_index: int | None = Field(
        default=None,
        validation_alias=AliasChoices("selected_index", "selectedIndex", "selected_slot_index"),
    )
    custom_time: str | None = Field(
        default=None, validation_alias=AliasChoices("custom_time", "customTime")
    )
    needs_clarification: bool = Field(
        validation_alias=AliasChoices("needs_clarification", "needsClarification")
    )
    summary: str = Field(
        default="", validation_alias=AliasChoices("summary", "response_summary")
    )


@dataclass(frozen=True)
class SlotSelected:
    index: int
    slot: TimeSlot
    summary: str = ""
    kind: Literal["slot"] = "slot"


@dataclass(frozen=True)
class CustomTimeProposed:
    start: datetime
    summary: str = ""
    kind: Literal["custom"] = "custom"


@dataclass(frozen=True)
class ClarificationNeeded:
    reason: str
    summary: str = ""
    kind: Literal["clarify"] = "clarify"


Interpretation = SlotSelected | CustomTimeProposed | ClarificationNeeded


def parse_decision(raw: str) -> ReplyDecision | None:
    """Extract and validate the JSON object in *raw*; None if impossible."""
    match = _JSON_OBJECT_RE.search(raw or "")
    if not match:
        return None
    try:
        return ReplyDecision.model_validate_json(match.group(0))
    except ValidationError as e:
        log.warning("Reply decision failed validation: %s", e.errors()[:3])
        return None


def parse_timestamp(value: str, tz: tzinfo) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def resolve_decision(
    decision: ReplyDecision,
    proposed: list[TimeSlot],
    tz: tzinfo,
    now: datetime | None = None,
) -> Interpretation:
    summary = decision.summary
    if decision.needs_clarification:
        return ClarificationNeeded("reply is ambiguous", summary)

    if decision.selected_index is not None:
        index = decision.selected_index
        if 0 <= index < len(proposed):
            return SlotSelected(index, proposed[index], summary)
        return ClarificationNeeded(
            f"selected option {index} is outside the {len(proposed)} proposed", summary
        )

    if decision.custom_time:
        start = parse_timestamp(decision.custom_time, tz)
        if start is None:
            return ClarificationNeeded(
                f"could not parse proposed time {decision.custom_time!r}", summary
            )
        if start < (now or datetime.now(timezone.utc)):
            return ClarificationNeeded("proposed time is in the past", summary)
        return CustomTimeProposed(start, summary)

    return ClarificationNeeded("no time could be identified", summary)


def build_prompt(proposed: list[TimeSlot], message: InboundMessage, tz: tzinfo) -> str:
    return dedent("""\
        ORIGINAL PROPOSED TIMES:
        {options}

        EMAIL RESPONSE:
        From: {sender}
        Subject: {subject}
        Body:
        {body}

        Determine which proposed time the sender selected, or whether they
        suggested a different time. Respond with JSON:
        {{
          "selected_index": <0-based index of the selected option, or null>,
          "custom_time": "<ISO 8601 datetime if they proposed another time, else null>",
          "needs_clarification": <true if the reply is ambiguous>,
          "summary": "<one-sentence summary of the reply>"
        }}""").format(
        options=format_options(proposed, tz),
        sender=message.from_email,
        subject=message.subject,
        body=message.body,
    )


class ReplyInterpreter:
    def __init__(self, completion: CompletionService, tz: tzinfo) -> None:
        self.completion = completion
        self.tz = tz

    async def interpret(
        self, proposed: list[TimeSlot], message: InboundMessage
    ) -> Interpretation:
        raw = await self.completion.complete(
            build_prompt(proposed, message, self.tz), system_prompt=_SYSTEM_PROMPT
        )
        decision = parse_decision(raw)
        if decision is None:
            log.warning("Unusable reply classification for %s", message.message_id)
            return ClarificationNeeded("model output was not valid JSON")
        return resolve_decision(decision, proposed, self.tz)
