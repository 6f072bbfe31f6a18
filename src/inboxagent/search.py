"""Best-effort retrieval of cached mail and contacts for the agent prompt."""

from dataclasses import dataclass, field

from inboxagent.db import DbConnection, recent_emails, search_contacts, search_emails
from inboxagent.models import Contact, InboundMessage

_SNIPPET_CHARS = 300


@dataclass
class RetrievedContext:
    emails: list[InboundMessage] = field(default_factory=list)
    contacts: list[Contact] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.emails and not self.contacts


def retrieve_context(
    db: DbConnection, owner_id: str, query: str, limit: int = 5
) -> RetrievedContext:
    """Substring search over cached mail and contacts.

    Falls back to the most recent e-mails when nothing matches.
    """
    query = query.strip()
    emails: list[InboundMessage] = []
    contacts: list[Contact] = []
    if query:
        emails = search_emails(db, owner_id, query, limit)
        contacts = search_contacts(db, owner_id, query, limit)
    if not emails and not contacts:
        emails = recent_emails(db, owner_id, limit)
    return RetrievedContext(emails=emails, contacts=contacts)


def format_context(context: RetrievedContext) -> str:
    if context.empty:
        return ""
    sections: list[str] = []
    if context.emails:
        lines = ["Relevant emails:"]
        for email in context.emails:
            snippet = " ".join(email.body.split())[:_SNIPPET_CHARS]
            lines.append(
                f"- [{email.received_at:%Y-%m-%d %H:%M}] From {email.from_name or email.from_email}"
                f" <{email.from_email}>, subject {email.subject!r}: {snippet}"
            )
        sections.append("\n".join(lines))
    if context.contacts:
        lines = ["Relevant contacts:"]
        for contact in context.contacts:
            line = f"- {contact.name or '(no name)'} <{contact.email}> (CRM id {contact.crm_id})"
            if contact.notes:
                line += f": {contact.notes[:_SNIPPET_CHARS]}"
            lines.append(line)
        sections.append("\n".join(lines))
    return "\n\n".join(sections)
