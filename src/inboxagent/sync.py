"""Refresh the local mailbox and CRM caches that context retrieval reads."""

import logging
from datetime import datetime, timedelta, timezone

from inboxagent.adapters.base import Crm, Mailbox
from inboxagent.db import DbConnection, get_latest_email_time, store_email, upsert_contact
from inboxagent.models import Owner

log = logging.getLogger(__name__)

SYNC_OVERLAP = timedelta(minutes=5)
MAX_CACHED_BODY = 2000


async def sync_mailbox(
    db: DbConnection,
    owner: Owner,
    mailbox: Mailbox,
    *,
    lookback: timedelta,
    now: datetime | None = None,
) -> int:
    """Cache inbound mail received since the last sync; returns the new count."""
    latest = get_latest_email_time(db, owner.id)
    if latest is None:
        since = (now or datetime.now(timezone.utc)) - lookback
    else:
        since = latest - SYNC_OVERLAP

    messages = await mailbox.list_inbound(owner.credentials(), since)
    stored = 0
    for message in messages:
        trimmed = message.model_copy(
            update={"body": message.body[:MAX_CACHED_BODY], "owner_id": owner.id}
        )
        if store_email(db, owner.id, trimmed):
            stored += 1

    log.info("Mailbox sync for %s: %d new of %d fetched", owner.id, stored, len(messages))
    return stored


async def sync_contacts(db: DbConnection, owner: Owner, crm: Crm) -> int:
    contacts = await crm.list_contacts(owner.credentials())
    for contact in contacts:
        upsert_contact(db, owner.id, contact)
    log.info("CRM sync for %s: %d contacts", owner.id, len(contacts))
    return len(contacts)
