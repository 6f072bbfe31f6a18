from datetime import datetime, timedelta, timezone
from textwrap import dedent
from typing import Any

from claude_agent_sdk import create_sdk_mcp_server, tool

from inboxagent.adapters.base import Crm
from inboxagent.db import DbConnection, list_tasks as db_list_tasks, upsert_contact
from inboxagent.engine import TaskEngine
from inboxagent.errors import AuthExpired, InboxAgentError
from inboxagent.interpreter import parse_timestamp
from inboxagent.models import Owner, TaskStatus

_GOOGLE_NOT_CONNECTED = (
    "Google account not connected. Please connect Gmail and Google Calendar first."
)
_HUBSPOT_NOT_CONNECTED = "HubSpot account not connected. Please connect HubSpot first."


def _text(message: str) -> dict[str, Any]:
    return {"content": [{"type": "text", "text": message}]}


def _failure(service: str, error: InboxAgentError) -> dict[str, Any]:
    if isinstance(error, AuthExpired):
        return _text(f"Your {service} access has expired. Please reconnect your account.")
    return _text(f"{service} request failed: {error}")


def make_mcp_server(db: DbConnection, owner: Owner, engine: TaskEngine, crm: Crm):
    """Build the in-process MCP server exposing *owner*'s mail, calendar and CRM."""
    creds = owner.credentials()
    tz = engine.tz

    @tool(
        "send_email",
        "Send a plain-text email from the user's Gmail account.",
        {
            "type": "object",
            "properties": {
                "to": {"type": "string", "description": "Recipient email address."},
                "subject": {"type": "string"},
                "body": {"type": "string", "description": "Plain-text message body."},
            },
            "required": ["to", "subject", "body"],
        },
    )
    async def send_email(args: dict[str, Any]) -> dict[str, Any]:
        if not creds.google_access_token:
            return _text(_GOOGLE_NOT_CONNECTED)
        try:
            message_id = await engine.mailbox.send(
                creds, args["to"], args["subject"], args["body"]
            )
        except InboxAgentError as e:
            return _failure("Gmail", e)
        return _text(f"Email sent to {args['to']} (message id {message_id}).")

    @tool(
        "create_crm_contact",
        "Create a contact in HubSpot, optionally with an initial note. "
        "Refuses to create a duplicate of an existing contact.",
        {
            "type": "object",
            "properties": {
                "email": {"type": "string"},
                "firstname": {"type": "string"},
                "lastname": {"type": "string"},
                "phone": {"type": "string"},
                "note": {
                    "type": "string",
                    "description": "Optional note attached to the new contact.",
                },
            },
            "required": ["email"],
        },
    )
    async def create_crm_contact(args: dict[str, Any]) -> dict[str, Any]:
        if not creds.hubspot_access_token:
            return _text(_HUBSPOT_NOT_CONNECTED)
        email = args["email"].strip().lower()
        try:
            existing = await crm.find_by_email(creds, email)
            if existing is not None:
                return _text(
                    f"A contact with email {email} already exists "
                    f"({existing.name or 'no name'}, id {existing.crm_id})."
                )
            contact = await crm.create_contact(
                creds,
                email,
                firstname=args.get("firstname", ""),
                lastname=args.get("lastname", ""),
                phone=args.get("phone", ""),
            )
            upsert_contact(db, owner.id, contact)
            msg = f"Created contact {contact.name or email} (id {contact.crm_id})."
            if args.get("note"):
                await crm.add_note(creds, contact.crm_id, args["note"])
                msg += " Added the note."
        except InboxAgentError as e:
            return _failure("HubSpot", e)
        return _text(msg)

    @tool(
        "add_crm_note",
        "Attach a note to an existing HubSpot contact, looked up by email.",
        {"contact_email": str, "note": str},
    )
    async def add_crm_note(args: dict[str, Any]) -> dict[str, Any]:
        if not creds.hubspot_access_token:
            return _text(_HUBSPOT_NOT_CONNECTED)
        email = args["contact_email"].strip().lower()
        try:
            contact = await crm.find_by_email(creds, email)
            if contact is None:
                return _text(f"No HubSpot contact found with email {email}.")
            note_id = await crm.add_note(creds, contact.crm_id, args["note"])
        except InboxAgentError as e:
            return _failure("HubSpot", e)
        return _text(f"Note {note_id} added to {contact.name or email}.")

    @tool(
        "list_calendar_events",
        "List upcoming events on the user's primary Google Calendar.",
        {
            "type": "object",
            "properties": {
                "days_ahead": {
                    "type": "integer",
                    "description": "How many days ahead to look (default 7).",
                },
                "max_results": {"type": "integer", "description": "Default 10."},
            },
        },
    )
    async def list_calendar_events(args: dict[str, Any]) -> dict[str, Any]:
        if not creds.google_access_token:
            return _text(_GOOGLE_NOT_CONNECTED)
        start = datetime.now(timezone.utc)
        end = start + timedelta(days=int(args.get("days_ahead", 7)))
        try:
            events = await engine.calendar.list_events(
                creds, start, end, max_results=int(args.get("max_results", 10))
            )
        except InboxAgentError as e:
            return _failure("Google Calendar", e)
        if not events:
            return _text("No upcoming events.")
        lines = ["Upcoming events:"]
        for event in events:
            line = f"  {event.start} - {event.end}: {event.summary or '(untitled)'}"
            if event.attendees:
                line += f" with {', '.join(event.attendees)}"
            lines.append(line)
        return _text("\n".join(lines))

    @tool(
        "create_calendar_event",
        dedent(f"""\
        Create an event on the user's primary Google Calendar and invite attendees.
        Times are ISO 8601; times without an offset are taken as {tz}."""),
        {
            "type": "object",
            "properties": {
                "title": {"type": "string"},
                "start_time": {"type": "string", "description": "ISO 8601 start."},
                "end_time": {"type": "string", "description": "ISO 8601 end."},
                "description": {"type": "string"},
                "attendees": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Attendee email addresses.",
                },
                "location": {"type": "string"},
            },
            "required": ["title", "start_time", "end_time"],
        },
    )
    async def create_calendar_event(args: dict[str, Any]) -> dict[str, Any]:
        if not creds.google_access_token:
            return _text(_GOOGLE_NOT_CONNECTED)
        start = parse_timestamp(args["start_time"], tz)
        end = parse_timestamp(args["end_time"], tz)
        if start is None or end is None:
            return _text("start_time and end_time must be ISO 8601 timestamps.")
        if end <= start:
            return _text("end_time must be after start_time.")
        try:
            event = await engine.calendar.create_event(
                creds,
                args["title"],
                start,
                end,
                description=args.get("description"),
                attendees=args.get("attendees"),
                location=args.get("location"),
            )
        except InboxAgentError as e:
            return _failure("Google Calendar", e)
        msg = f"Created event {event.summary!r} (id {event.id})."
        if event.html_link:
            msg += f" {event.html_link}"
        return _text(msg)

    @tool(
        "schedule_meeting",
        dedent("""\
        Start a meeting scheduling workflow: find free slots on the user's calendar,
        email the contact a few options and book the meeting when they reply.
        Give either the contact's email or a name known to the CRM."""),
        {
            "type": "object",
            "properties": {
                "contact_name": {"type": "string"},
                "contact_email": {"type": "string"},
                "duration_minutes": {
                    "type": "integer",
                    "description": "Meeting length in minutes (default 30).",
                },
                "notes": {
                    "type": "string",
                    "description": "Agenda, used as the calendar event description.",
                },
            },
        },
    )
    async def schedule_meeting(args: dict[str, Any]) -> dict[str, Any]:
        if not creds.google_access_token:
            return _text(_GOOGLE_NOT_CONNECTED)
        duration = args.get("duration_minutes")
        if duration is not None and int(duration) <= 0:
            return _text("duration_minutes must be positive.")
        result = await engine.start_schedule_meeting(
            owner,
            contact_name=args.get("contact_name"),
            contact_email=args.get("contact_email"),
            duration_minutes=int(duration) if duration is not None else None,
            notes=args.get("notes"),
        )
        return _text(result.message)

    @tool(
        "list_tasks",
        "List the user's follow-up tasks, newest first, optionally filtered by status.",
        {
            "type": "object",
            "properties": {
                "status": {
                    "type": "string",
                    "enum": [s.value for s in TaskStatus],
                },
            },
        },
    )
    async def list_tasks(args: dict[str, Any]) -> dict[str, Any]:
        tasks = db_list_tasks(db, owner.id)
        status = args.get("status")
        if status:
            tasks = [t for t in tasks if t.status == status]
        if not tasks:
            return _text("No tasks." if not status else f"No {status} tasks.")

        lines = ["Tasks:"]
        for task in tasks:
            who = task.context.get("contact_email", "")
            line = f"  {task.id[:8]}: {task.type} {who} ({task.status}"
            if task.last_action:
                line += f", last action: {task.last_action}"
            lines.append(line + ")")
        return _text("\n".join(lines))

    return create_sdk_mcp_server(
        name="inboxagent",
        tools=[
            send_email,
            create_crm_contact,
            add_crm_note,
            list_calendar_events,
            create_calendar_event,
            schedule_meeting,
            list_tasks,
        ],
    )
