"""Shared fixtures and in-memory stand-ins for the external services."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

import pytest

from inboxagent.config import Settings
from inboxagent.db import DbConnection, get_owner, init_db, upsert_owner
from inboxagent.engine import TaskEngine
from inboxagent.interpreter import ReplyInterpreter
from inboxagent.models import (
    CalendarEvent,
    Contact,
    InboundMessage,
    Owner,
    OwnerCredentials,
    TimeSlot,
)

NEW_YORK = ZoneInfo("America/New_York")


@dataclass
class SentMail:
    owner_id: str
    to: str
    subject: str
    body: str


@dataclass
class FakeMailbox:
    inbox: dict[str, list[InboundMessage]] = field(default_factory=dict)
    sent: list[SentMail] = field(default_factory=list)
    send_error: Exception | None = None
    list_error: Exception | None = None

    def deliver(self, owner_id: str, message: InboundMessage) -> None:
        self.inbox.setdefault(owner_id, []).append(message)

    async def list_inbound(
        self, creds: OwnerCredentials, since: datetime
    ) -> list[InboundMessage]:
        if self.list_error is not None:
            raise self.list_error
        messages = [m for m in self.inbox.get(creds.owner_id, []) if m.received_at >= since]
        return sorted(messages, key=lambda m: m.received_at, reverse=True)

    async def send(self, creds: OwnerCredentials, to: str, subject: str, body: str) -> str:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(SentMail(creds.owner_id, to, subject, body))
        return f"msg-{len(self.sent)}"


@dataclass
class FakeCalendar:
    busy: list[TimeSlot] = field(default_factory=list)
    events: list[dict[str, Any]] = field(default_factory=list)
    busy_error: Exception | None = None
    create_error: Exception | None = None

    async def list_busy(
        self, creds: OwnerCredentials, start: datetime, end: datetime
    ) -> list[TimeSlot]:
        if self.busy_error is not None:
            raise self.busy_error
        return [b for b in self.busy if b.start < end and b.end > start]

    async def list_events(
        self,
        creds: OwnerCredentials,
        start: datetime,
        end: datetime,
        max_results: int = 10,
    ) -> list[CalendarEvent]:
        return [
            CalendarEvent(
                id=e["id"],
                summary=e["title"],
                start=e["start"].isoformat(),
                end=e["end"].isoformat(),
                attendees=e["attendees"],
            )
            for e in self.events[:max_results]
        ]

    async def create_event(
        self,
        creds: OwnerCredentials,
        title: str,
        start: datetime,
        end: datetime,
        description: str | None = None,
        attendees: list[str] | None = None,
        location: str | None = None,
    ) -> CalendarEvent:
        if self.create_error is not None:
            raise self.create_error
        event_id = f"evt-{len(self.events) + 1}"
        self.events.append(
            {
                "id": event_id,
                "title": title,
                "start": start,
                "end": end,
                "description": description,
                "attendees": attendees or [],
            }
        )
        return CalendarEvent(
            id=event_id,
            summary=title,
            start=start.isoformat(),
            end=end.isoformat(),
            attendees=attendees or [],
        )


@dataclass
class FakeCrm:
    contacts: dict[str, Contact] = field(default_factory=dict)
    notes: list[tuple[str, str]] = field(default_factory=list)
    error: Exception | None = None

    async def list_contacts(self, creds: OwnerCredentials) -> list[Contact]:
        if self.error is not None:
            raise self.error
        return list(self.contacts.values())

    async def find_by_email(self, creds: OwnerCredentials, email: str) -> Contact | None:
        if self.error is not None:
            raise self.error
        return self.contacts.get(email.lower())

    async def create_contact(
        self,
        creds: OwnerCredentials,
        email: str,
        firstname: str = "",
        lastname: str = "",
        phone: str = "",
    ) -> Contact:
        contact = Contact(
            crm_id=str(100 + len(self.contacts)),
            email=email,
            firstname=firstname,
            lastname=lastname,
            phone=phone,
        )
        self.contacts[email.lower()] = contact
        return contact

    async def add_note(self, creds: OwnerCredentials, contact_id: str, note: str) -> str:
        self.notes.append((contact_id, note))
        return f"note-{len(self.notes)}"


class FakeCompletion:
    """Returns canned model output, either a fixed string or a decision dict."""

    def __init__(self, reply: str | dict[str, Any] = "", error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.prompts: list[str] = []

    async def complete(self, prompt: str, *, system_prompt: str | None = None) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        if isinstance(self.reply, dict):
            return json.dumps(self.reply)
        return self.reply


def make_message(
    sender: str,
    body: str,
    received_at: datetime,
    *,
    message_id: str = "m-1",
    subject: str = "Meeting request",
) -> InboundMessage:
    return InboundMessage(
        message_id=message_id,
        from_email=sender,
        from_name=sender.split("@")[0].title(),
        subject=subject,
        body=body,
        received_at=received_at,
    )


@pytest.fixture
def db(tmp_path: Path) -> DbConnection:
    return init_db(tmp_path / "test.db")


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(_env_file=None, data=tmp_path / "data", timezone="America/New_York")


def _add_owner(db: DbConnection, owner_id: str) -> Owner:
    upsert_owner(
        db,
        owner_id=owner_id,
        email=f"{owner_id}@example.com",
        google_access_token=f"google-{owner_id}",
        hubspot_access_token=f"hubspot-{owner_id}",
    )
    owner = get_owner(db, owner_id)
    assert owner is not None
    return owner


@pytest.fixture
def owner(db: DbConnection) -> Owner:
    return _add_owner(db, "alice")


@pytest.fixture
def other_owner(db: DbConnection) -> Owner:
    return _add_owner(db, "bob")


@pytest.fixture
def mailbox() -> FakeMailbox:
    return FakeMailbox()


@pytest.fixture
def calendar() -> FakeCalendar:
    return FakeCalendar()


@pytest.fixture
def completion() -> FakeCompletion:
    return FakeCompletion({"needs_clarification": True, "summary": "unclear"})


@pytest.fixture
def engine(
    db: DbConnection,
    mailbox: FakeMailbox,
    calendar: FakeCalendar,
    completion: FakeCompletion,
    settings: Settings,
) -> TaskEngine:
    return TaskEngine(
        db,
        mailbox=mailbox,
        calendar=calendar,
        interpreter=ReplyInterpreter(completion, NEW_YORK),
        settings=settings,
    )
