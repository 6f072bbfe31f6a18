from datetime import datetime, timedelta, timezone

from inboxagent.db import DbConnection, store_email, upsert_contact
from inboxagent.models import Contact, Owner
from inboxagent.search import RetrievedContext, format_context, retrieve_context

from conftest import make_message

NOW = datetime(2026, 10, 19, 16, 0, tzinfo=timezone.utc)


def _seed(db: DbConnection, owner: Owner) -> None:
    for i, (subject, body) in enumerate(
        [
            ("Budget", "Q3 budget attached"),
            ("Lunch", "Tacos on Friday?"),
            ("Contract", "Please sign the  renewal\nby Monday"),
        ]
    ):
        store_email(
            db,
            owner.id,
            make_message(
                "sara@x.com",
                body,
                NOW - timedelta(hours=i),
                message_id=f"m{i}",
                subject=subject,
            ),
        )
    upsert_contact(
        db,
        owner.id,
        Contact(crm_id="1", email="sara@x.com", firstname="Sara", notes="Handles the budget"),
    )


def test_matches_mail_and_contacts(db: DbConnection, owner: Owner) -> None:
    _seed(db, owner)

    context = retrieve_context(db, owner.id, "budget")

    assert [m.message_id for m in context.emails] == ["m0"]
    assert [c.crm_id for c in context.contacts] == ["1"]


def test_falls_back_to_recent_mail(db: DbConnection, owner: Owner) -> None:
    _seed(db, owner)

    context = retrieve_context(db, owner.id, "kubernetes", limit=2)

    assert context.contacts == []
    assert [m.message_id for m in context.emails] == ["m0", "m1"]
    assert [m.message_id for m in retrieve_context(db, owner.id, "  ").emails] == [
        "m0",
        "m1",
        "m2",
    ]


def test_search_is_owner_scoped(db: DbConnection, owner: Owner, other_owner: Owner) -> None:
    _seed(db, owner)
    assert retrieve_context(db, other_owner.id, "budget").empty


def test_format_context(db: DbConnection, owner: Owner) -> None:
    _seed(db, owner)

    text = format_context(retrieve_context(db, owner.id, "contract"))

    assert text.startswith("Relevant emails:\n- [2026-10-19 14:00] From Sara <sara@x.com>")
    assert "subject 'Contract': Please sign the renewal by Monday" in text
    assert format_context(RetrievedContext()) == ""
