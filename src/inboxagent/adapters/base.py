"""Contracts of the external collaborators the task engine depends on.

Every call takes the owner's :class:`~inboxagent.models.OwnerCredentials`
explicitly; adapters keep no per-user state between calls.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from inboxagent.models import (
    CalendarEvent,
    Contact,
    InboundMessage,
    OwnerCredentials,
    TimeSlot,
)


@runtime_checkable
class Mailbox(Protocol):
    async def list_inbound(
        self, creds: OwnerCredentials, since: datetime
    ) -> list[InboundMessage]:
        """Messages received at or after *since*, newest first."""
        ...

    async def send(
        self, creds: OwnerCredentials, to: str, subject: str, body: str
    ) -> str:
        """Send a plain-text message and return its provider id."""
        ...


@runtime_checkable
class Calendar(Protocol):
    async def list_busy(
        self, creds: OwnerCredentials, start: datetime, end: datetime
    ) -> list[TimeSlot]: ...

    async def list_events(
        self,
        creds: OwnerCredentials,
        start: datetime,
        end: datetime,
        max_results: int = 10,
    ) -> list[CalendarEvent]: ...

    async def create_event(
        self,
        creds: OwnerCredentials,
        title: str,
        start: datetime,
        end: datetime,
        description: str | None = None,
        attendees: list[str] | None = None,
        location: str | None = None,
    ) -> CalendarEvent: ...


@runtime_checkable
class Crm(Protocol):
    async def list_contacts(self, creds: OwnerCredentials) -> list[Contact]: ...

    async def find_by_email(
        self, creds: OwnerCredentials, email: str
    ) -> Contact | None: ...

    async def create_contact(
        self,
        creds: OwnerCredentials,
        email: str,
        firstname: str = "",
        lastname: str = "",
        phone: str = "",
    ) -> Contact: ...

    async def add_note(
        self, creds: OwnerCredentials, contact_id: str, note: str
    ) -> str: ...


@runtime_checkable
class CompletionService(Protocol):
    async def complete(self, prompt: str, *, system_prompt: str | None = None) -> str:
        """Run one model turn without tools and return its text."""
        ...
