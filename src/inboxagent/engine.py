"""Task engine: starts durable workflows and advances them on inbound replies.

A workflow suspends by being stored as ``waiting_response`` with a
``waiting_for`` correlation key and resumes when the reply scanner hands it a
matching inbound message. Errors inside a resumed step never escape
:meth:`TaskEngine.handle_reply`; they turn the task ``failed`` with
diagnostics in ``metadata``.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from textwrap import dedent
from zoneinfo import ZoneInfo

from inboxagent.adapters.base import Calendar, Mailbox
from inboxagent.config import Settings
from inboxagent.db import (
    DbConnection,
    append_task_message,
    complete_task,
    create_task,
    fail_task,
    find_contacts_by_name,
    get_task,
    update_task,
)
from inboxagent.errors import AuthExpired, InboxAgentError, StorageError
from inboxagent.interpreter import (
    ClarificationNeeded,
    CustomTimeProposed,
    ReplyInterpreter,
    SlotSelected,
)
from inboxagent.models import (
    HistoryEntry,
    InboundMessage,
    Owner,
    ScheduleMeetingContext,
    Task,
    TaskStatus,
    TaskType,
    TimeSlot,
)
from inboxagent.slots import find_available_slots, format_options, format_slot

log = logging.getLogger(__name__)

WAITING_FOR_EMAIL_PREFIX = "email_reply_from:"


def email_reply_key(address: str) -> str:
    """Correlation key that wakes a task on mail from *address*."""
    return f"{WAITING_FOR_EMAIL_PREFIX}{address.strip().lower()}"


def _reply_subject(subject: str) -> str:
    subject = subject.strip() or "Meeting request"
    return subject if subject.lower().startswith("re:") else f"Re: {subject}"


@dataclass
class WorkflowResult:
    """Outcome of starting a workflow, phrased for the person who asked."""

    ok: bool
    message: str
    task: Task | None = None


ReplyHandler = Callable[[Owner, Task, InboundMessage], Awaitable[TaskStatus]]


class TaskEngine:
    def __init__(
        self,
        db: DbConnection,
        *,
        mailbox: Mailbox,
        calendar: Calendar,
        interpreter: ReplyInterpreter,
        settings: Settings,
    ) -> None:
        self.db = db
        self.mailbox = mailbox
        self.calendar = calendar
        self.interpreter = interpreter
        self.settings = settings
        self.tz = ZoneInfo(settings.timezone)
        self._reply_handlers: dict[str, ReplyHandler] = {
            TaskType.SCHEDULE_MEETING: self._advance_schedule_meeting,
        }

    # -- starting workflows --------------------------------------------------

    async def start_schedule_meeting(
        self,
        owner: Owner,
        *,
        contact_name: str | None = None,
        contact_email: str | None = None,
        duration_minutes: int | None = None,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> WorkflowResult:
        """Propose meeting times to a contact and wait for their reply."""
        contact = self._resolve_contact(owner, contact_name, contact_email)
        if isinstance(contact, WorkflowResult):
            return contact
        name, address = contact

        duration = duration_minutes or self.settings.default_meeting_minutes
        creds = owner.credentials()
        range_start = now or datetime.now(timezone.utc)
        range_end = range_start + timedelta(days=self.settings.proposal_window_days)

        try:
            busy = await self.calendar.list_busy(creds, range_start, range_end)
        except AuthExpired:
            return WorkflowResult(
                False, "Your Google Calendar access has expired. Please reconnect your account."
            )
        except InboxAgentError as e:
            return WorkflowResult(False, f"I couldn't read your calendar: {e}")

        candidates = find_available_slots(
            busy,
            range_start,
            range_end,
            duration,
            tz=self.tz,
            business_start_hour=self.settings.business_start_hour,
            business_end_hour=self.settings.business_end_hour,
            limit=self.settings.max_candidate_slots,
        )
        proposed = candidates[: self.settings.proposed_slot_count]
        if not proposed:
            log.info("No free slots for %s in the next %d days", owner.id, self.settings.proposal_window_days)
            return WorkflowResult(
                False,
                f"I couldn't find any free {duration}-minute slots in the next "
                f"{self.settings.proposal_window_days} days, so I did not contact {name}.",
            )

        context = ScheduleMeetingContext(
            contact_name=name,
            contact_email=address,
            duration=duration,
            proposed_times=proposed,
            notes=notes,
            subject=f"Meeting request from {owner.email}",
        )
        try:
            task = create_task(
                self.db,
                owner_id=owner.id,
                task_type=TaskType.SCHEDULE_MEETING,
                context=context.model_dump(mode="json"),
                conversation_history=[
                    HistoryEntry(role="user", content=f"Schedule a meeting with {name} <{address}>")
                ],
            )
        except StorageError as e:
            log.error("Could not start scheduling workflow: %s", e)
            return WorkflowResult(False, "I couldn't start the scheduling workflow. Please try again.")

        body = dedent("""\
            Hi {name},

            I'd like to find a time to meet. Would any of these work for you?

            {options}

            Just reply with the option that suits you best, or suggest another time.

            Best regards""").format(name=name, options=format_options(proposed, self.tz))
        try:
            await self.mailbox.send(creds, address, context.subject, body)
        except InboxAgentError as e:
            log.warning("Outreach for task %s failed: %s", task.id, e)
            fail_task(self.db, task.id, str(e), error_type=type(e).__name__)
            if isinstance(e, AuthExpired):
                return WorkflowResult(False, "Your Gmail access has expired. Please reconnect your account.")
            return WorkflowResult(False, f"I couldn't send the meeting request to {address}: {e}")

        append_task_message(self.db, task.id, "assistant", f"Sent {len(proposed)} time options to {address}")
        task = update_task(
            self.db,
            task.id,
            status=TaskStatus.WAITING_RESPONSE,
            waiting_for=email_reply_key(address),
            last_action="sent_time_proposals",
        )
        return WorkflowResult(
            True,
            f"I emailed {name} ({address}) with {len(proposed)} options:\n"
            f"{format_options(proposed, self.tz)}\n"
            "I'll book the meeting once they reply.",
            task,
        )

    def _resolve_contact(
        self, owner: Owner, contact_name: str | None, contact_email: str | None
    ) -> tuple[str, str] | WorkflowResult:
        if contact_email and contact_email.strip():
            address = contact_email.strip().lower()
            return (contact_name or address.split("@", 1)[0]).strip(), address
        if contact_name and contact_name.strip():
            matches = find_contacts_by_name(self.db, owner.id, contact_name)
            matches = [c for c in matches if c.email]
            if not matches:
                return WorkflowResult(
                    False, f"I couldn't find a contact named {contact_name!r} in your CRM."
                )
            if len(matches) > 1:
                log.info("%d contacts match %r, using %s", len(matches), contact_name, matches[0].email)
            return matches[0].name or contact_name, matches[0].email.lower()
        return WorkflowResult(False, "I need a contact name or email address to schedule a meeting.")

    # -- resuming workflows --------------------------------------------------

    async def handle_reply(
        self, owner: Owner, task: Task, message: InboundMessage
    ) -> TaskStatus | None:
        """Advance *task* with *message*; returns the resulting status.

        Returns None when the task was not eligible: unknown type, no longer
        waiting, or this message was already handled for it.
        """
        if task.owner_id != owner.id:
            log.error("Refusing to advance task %s for foreign owner %s", task.id, owner.id)
            return None
        handler = self._reply_handlers.get(task.type)
        if handler is None:
            log.warning("No reply handler for task type %r (task %s)", task.type, task.id)
            return None

        current = get_task(self.db, task.id)
        if current is None or current.status != TaskStatus.WAITING_RESPONSE:
            return None
        handled = current.metadata.get("handled_message_ids", [])
        if message.message_id in handled:
            log.debug("Message %s already handled for task %s", message.message_id, task.id)
            return None

        current = update_task(
            self.db,
            current.id,
            metadata={**current.metadata, "handled_message_ids": [*handled, message.message_id]},
        )
        log.info("Processing reply %s for task %s (%s)", message.message_id, current.id, current.type)
        try:
            return await handler(owner, current, message)
        except Exception as e:
            log.exception("Task %s failed while handling reply %s", current.id, message.message_id)
            self._record_failure(current, e, message)
            return TaskStatus.FAILED

    def _record_failure(self, task: Task, error: Exception, message: InboundMessage) -> None:
        try:
            fail_task(
                self.db,
                task.id,
                str(error) or type(error).__name__,
                error_type=type(error).__name__,
                reply_message_id=message.message_id,
                reply_body=message.body,
            )
        except InboxAgentError:
            log.exception("Could not mark task %s failed", task.id)

    async def _advance_schedule_meeting(
        self, owner: Owner, task: Task, message: InboundMessage
    ) -> TaskStatus:
        context = ScheduleMeetingContext.model_validate(task.context)
        creds = owner.credentials()

        outcome = await self.interpreter.interpret(context.proposed_times, message)
        append_task_message(
            self.db,
            task.id,
            "system",
            f"Received reply: {outcome.summary or message.body[:200]}",
        )

        if isinstance(outcome, ClarificationNeeded):
            log.info("Task %s needs clarification: %s", task.id, outcome.reason)
            body = dedent("""\
                Hi {name},

                Thanks for your response! Could you please clarify which time works best for you? Here are the options again:

                {options}

                Best regards""").format(
                name=context.contact_name,
                options=format_options(context.proposed_times, self.tz),
            )
            await self.mailbox.send(
                creds, context.contact_email, _reply_subject(message.subject), body
            )
            append_task_message(self.db, task.id, "assistant", "Sent clarification request")
            update_task(self.db, task.id, last_action="sent_clarification")
            return TaskStatus.WAITING_RESPONSE

        if isinstance(outcome, SlotSelected):
            start, end = outcome.slot.start, outcome.slot.end
        elif isinstance(outcome, CustomTimeProposed):
            start = outcome.start
            end = start + timedelta(minutes=context.duration)
        else:
            raise TypeError(f"Unexpected interpretation {outcome!r}")

        event = await self.calendar.create_event(
            creds,
            f"Meeting with {context.contact_name}",
            start,
            end,
            description=context.notes or "Scheduled via AI assistant",
            attendees=[context.contact_email],
        )
        append_task_message(self.db, task.id, "system", f"Created calendar event for {start.isoformat()}")

        when = format_slot(TimeSlot(start=start, end=end), self.tz)
        body = dedent("""\
            Hi {name},

            Perfect! I've scheduled our meeting for {when}.

            You should receive a calendar invitation shortly.

            Looking forward to it!

            Best regards""").format(name=context.contact_name, when=when)
        await self.mailbox.send(creds, context.contact_email, "Meeting Confirmed", body)
        append_task_message(self.db, task.id, "assistant", "Sent confirmation email")

        update_task(self.db, task.id, last_action="meeting_scheduled")
        final_context = {
            **task.context,
            "final_meeting_time": start.isoformat(),
            "completed_action": "meeting_scheduled",
            "calendar_event_id": event.id,
        }
        complete_task(self.db, task.id, final_context)
        log.info("Task %s: meeting with %s booked for %s", task.id, context.contact_email, start.isoformat())
        return TaskStatus.COMPLETED