import base64
import json
from datetime import datetime, timezone
from email import message_from_bytes
from zoneinfo import ZoneInfo

import httpx
import pytest

from inboxagent.adapters.base import Calendar, Crm, Mailbox
from inboxagent.adapters.google import GmailMailbox, GoogleCalendar, parse_gmail_message
from inboxagent.adapters.hubspot import HubSpotCrm
from inboxagent.errors import AuthExpired, ExternalServiceError, ExternalServiceTimeout, NotFound
from inboxagent.models import OwnerCredentials

NY = ZoneInfo("America/New_York")

CREDS = OwnerCredentials(
    owner_id="alice",
    email="alice@example.com",
    google_access_token="g-token",
    hubspot_access_token="h-token",
)


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


def _gmail_message(message_id: str, internal_ms: int, body: str) -> dict:
    return {
        "id": message_id,
        "internalDate": str(internal_ms),
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": [
                {"name": "From", "value": "Sara Lee <Sara@X.com>"},
                {"name": "Subject", "value": "Re: Meeting request"},
            ],
            "parts": [
                {"mimeType": "text/html", "body": {"data": _b64("<p>html</p>")}},
                {"mimeType": "text/plain", "body": {"data": _b64(body)}},
            ],
        },
    }


def test_adapters_satisfy_protocols() -> None:
    assert isinstance(GmailMailbox(), Mailbox)
    assert isinstance(GoogleCalendar(tz=NY), Calendar)
    assert isinstance(HubSpotCrm(), Crm)


def test_parse_gmail_message() -> None:
    message = parse_gmail_message(
        _gmail_message("abc", 1_792_000_000_000, "The 2nd one works\r\n\r\n\r\n\r\nThanks")
    )

    assert message.message_id == "abc"
    assert message.from_email == "sara@x.com"
    assert message.from_name == "Sara Lee"
    assert message.subject == "Re: Meeting request"
    assert message.body == "The 2nd one works\n\nThanks"
    assert message.received_at == datetime.fromtimestamp(1_792_000_000, tz=timezone.utc)


def test_parse_gmail_message_falls_back_to_date_header() -> None:
    data = {
        "id": "x",
        "payload": {
            "mimeType": "text/plain",
            "headers": [
                {"name": "From", "value": "tom@y.com"},
                {"name": "Date", "value": "Mon, 19 Oct 2026 10:00:00 -0400"},
            ],
            "body": {"data": _b64("hi")},
        },
    }
    message = parse_gmail_message(data)
    assert message.received_at == datetime(2026, 10, 19, 14, tzinfo=timezone.utc)
    assert message.body == "hi"


def test_parse_gmail_message_prefers_nested_plain_text() -> None:
    data = {
        "id": "x",
        "internalDate": "1792000000000",
        "payload": {
            "mimeType": "multipart/mixed",
            "headers": [{"name": "From", "value": "tom@y.com"}],
            "parts": [
                {"mimeType": "text/html", "body": {"data": _b64("<b>hi</b>")}},
                {
                    "mimeType": "multipart/alternative",
                    "parts": [{"mimeType": "text/plain", "body": {"data": _b64("hi")}}],
                },
            ],
        },
    }
    assert parse_gmail_message(data).body == "hi"


def test_parse_gmail_message_html_only_falls_back_to_leaf() -> None:
    data = {
        "id": "x",
        "internalDate": "1792000000000",
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": [{"name": "From", "value": "tom@y.com"}],
            "parts": [{"mimeType": "text/html", "body": {"data": _b64("<p>only</p>")}}],
        },
    }
    assert parse_gmail_message(data).body == "<p>only</p>"


def test_parse_gmail_message_unknown_zone_date_is_utc() -> None:
    data = {
        "id": "x",
        "payload": {
            "mimeType": "text/plain",
            "headers": [
                {"name": "From", "value": "tom@y.com"},
                {"name": "Date", "value": "Mon, 19 Oct 2026 10:00:00 -0000"},
            ],
            "body": {"data": _b64("hi")},
        },
    }
    received_at = parse_gmail_message(data).received_at
    assert received_at == datetime(2026, 10, 19, 10, tzinfo=timezone.utc)
    assert received_at.tzinfo is not None


def test_parse_gmail_message_without_any_date() -> None:
    data = {
        "id": "x",
        "payload": {
            "mimeType": "text/plain",
            "headers": [{"name": "From", "value": "tom@y.com"}],
            "body": {"data": _b64("hi")},
        },
    }
    before = datetime.now(timezone.utc)
    assert parse_gmail_message(data).received_at >= before


@pytest.mark.asyncio
async def test_gmail_list_inbound_filters_and_orders() -> None:
    since = datetime(2026, 10, 19, 12, tzinfo=timezone.utc)
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path.endswith("/messages"):
            return httpx.Response(
                200, json={"messages": [{"id": "old"}, {"id": "a"}, {"id": "b"}]}
            )
        message_id = request.url.path.rsplit("/", 1)[-1]
        stamps = {
            "old": since.timestamp() - 60,
            "a": since.timestamp() + 60,
            "b": since.timestamp() + 120,
        }
        return httpx.Response(
            200, json=_gmail_message(message_id, int(stamps[message_id] * 1000), "hi")
        )

    mailbox = GmailMailbox(transport=httpx.MockTransport(handler))
    messages = await mailbox.list_inbound(CREDS, since)

    assert [m.message_id for m in messages] == ["b", "a"]
    assert seen[0].headers["Authorization"] == "Bearer g-token"
    assert seen[0].url.path == "/gmail/v1/users/me/messages"
    assert seen[0].url.params["q"] == f"in:inbox after:{int(since.timestamp())}"


@pytest.mark.asyncio
async def test_gmail_send_builds_raw_message() -> None:
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = request.url.path
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "sent-1"})

    mailbox = GmailMailbox(transport=httpx.MockTransport(handler))
    message_id = await mailbox.send(CREDS, "sara@x.com", "Meeting Confirmed", "See you then")

    assert message_id == "sent-1"
    assert captured["path"] == "/gmail/v1/users/me/messages/send"
    raw = captured["body"]["raw"]
    parsed = message_from_bytes(base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4)))
    assert parsed["To"] == "sara@x.com"
    assert parsed["From"] == "alice@example.com"
    assert parsed["Subject"] == "Meeting Confirmed"
    assert parsed.get_payload().strip() == "See you then"


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 403])
async def test_auth_failures_raise_auth_expired(status: int) -> None:
    mailbox = GmailMailbox(
        transport=httpx.MockTransport(lambda request: httpx.Response(status))
    )
    with pytest.raises(AuthExpired):
        await mailbox.send(CREDS, "sara@x.com", "s", "b")


@pytest.mark.asyncio
async def test_missing_token_raises_auth_expired() -> None:
    creds = OwnerCredentials(owner_id="bob", email="bob@example.com")
    mailbox = GmailMailbox(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={}))
    )
    with pytest.raises(AuthExpired):
        await mailbox.list_inbound(creds, datetime.now(timezone.utc))


@pytest.mark.asyncio
async def test_not_found_and_server_errors() -> None:
    crm = HubSpotCrm(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
    with pytest.raises(NotFound):
        await crm.add_note(CREDS, "1", "note")

    crm = HubSpotCrm(
        transport=httpx.MockTransport(lambda request: httpx.Response(502, text="bad gateway"))
    )
    with pytest.raises(ExternalServiceError) as excinfo:
        await crm.list_contacts(CREDS)
    assert excinfo.value.status_code == 502


@pytest.mark.asyncio
async def test_timeout_raises_external_service_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    calendar = GoogleCalendar(tz=NY, timeout=2.5, transport=httpx.MockTransport(handler))
    with pytest.raises(ExternalServiceTimeout) as excinfo:
        await calendar.list_busy(
            CREDS, datetime(2026, 10, 19, tzinfo=NY), datetime(2026, 10, 26, tzinfo=NY)
        )
    assert excinfo.value.timeout == 2.5


@pytest.mark.asyncio
async def test_calendar_list_busy_pages_and_skips_free_events() -> None:
    pages = {
        None: {
            "items": [
                {
                    "id": "1",
                    "start": {"dateTime": "2026-10-19T09:00:00-04:00"},
                    "end": {"dateTime": "2026-10-19T10:00:00-04:00"},
                },
                {
                    "id": "2",
                    "transparency": "transparent",
                    "start": {"dateTime": "2026-10-19T11:00:00-04:00"},
                    "end": {"dateTime": "2026-10-19T12:00:00-04:00"},
                },
            ],
            "nextPageToken": "p2",
        },
        "p2": {
            "items": [
                {"id": "3", "start": {"date": "2026-10-20"}, "end": {"date": "2026-10-21"}},
                {
                    "id": "4",
                    "status": "cancelled",
                    "start": {"dateTime": "2026-10-21T09:00:00Z"},
                    "end": {"dateTime": "2026-10-21T10:00:00Z"},
                },
            ]
        },
    }

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=pages[request.url.params.get("pageToken")])

    calendar = GoogleCalendar(tz=NY, transport=httpx.MockTransport(handler))
    busy = await calendar.list_busy(
        CREDS, datetime(2026, 10, 19, tzinfo=NY), datetime(2026, 10, 26, tzinfo=NY)
    )

    assert [(b.start, b.end) for b in busy] == [
        (datetime(2026, 10, 19, 9, tzinfo=NY), datetime(2026, 10, 19, 10, tzinfo=NY)),
        (datetime(2026, 10, 20, tzinfo=NY), datetime(2026, 10, 21, tzinfo=NY)),
    ]


@pytest.mark.asyncio
async def test_calendar_create_event_invites_attendees() -> None:
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["params"] = dict(request.url.params)
        captured["body"] = json.loads(request.content)
        body = captured["body"]
        return httpx.Response(
            200,
            json={
                "id": "evt-9",
                "summary": body["summary"],
                "start": body["start"],
                "end": body["end"],
                "attendees": body["attendees"],
                "htmlLink": "https://calendar.example/evt-9",
            },
        )

    calendar = GoogleCalendar(tz=NY, transport=httpx.MockTransport(handler))
    start = datetime(2026, 10, 20, 10, tzinfo=NY)
    event = await calendar.create_event(
        CREDS,
        "Meeting with Sara",
        start,
        datetime(2026, 10, 20, 10, 30, tzinfo=NY),
        description="Quarterly review",
        attendees=["sara@x.com"],
    )

    assert captured["params"] == {"sendUpdates": "all"}
    assert captured["body"]["start"] == {
        "dateTime": "2026-10-20T10:00:00-04:00",
        "timeZone": "America/New_York",
    }
    assert captured["body"]["description"] == "Quarterly review"
    assert "location" not in captured["body"]
    assert event.id == "evt-9"
    assert event.attendees == ["sara@x.com"]
    assert event.html_link == "https://calendar.example/evt-9"


@pytest.mark.asyncio
async def test_hubspot_list_contacts_follows_paging() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("after") == "next-1":
            return httpx.Response(
                200,
                json={"results": [{"id": 2, "properties": {"email": "tom@y.com"}}]},
            )
        return httpx.Response(
            200,
            json={
                "results": [
                    {
                        "id": 1,
                        "properties": {"email": "sara@x.com", "firstname": "Sara", "lastname": None},
                    }
                ],
                "paging": {"next": {"after": "next-1"}},
            },
        )

    crm = HubSpotCrm(transport=httpx.MockTransport(handler))
    contacts = await crm.list_contacts(CREDS)

    assert [(c.crm_id, c.email, c.name) for c in contacts] == [
        ("1", "sara@x.com", "Sara"),
        ("2", "tom@y.com", ""),
    ]


@pytest.mark.asyncio
async def test_hubspot_find_by_email() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        query = json.loads(request.content)
        value = query["filterGroups"][0]["filters"][0]["value"]
        if value == "sara@x.com":
            return httpx.Response(
                200, json={"results": [{"id": "7", "properties": {"email": value}}]}
            )
        return httpx.Response(200, json={"results": []})

    crm = HubSpotCrm(transport=httpx.MockTransport(handler))

    found = await crm.find_by_email(CREDS, "sara@x.com")
    assert found is not None and found.crm_id == "7"
    assert await crm.find_by_email(CREDS, "nobody@x.com") is None


@pytest.mark.asyncio
async def test_hubspot_add_note_associates_contact() -> None:
    calls: list[tuple[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path))
        if request.method == "POST":
            return httpx.Response(201, json={"id": "55"})
        return httpx.Response(200, json={})

    crm = HubSpotCrm(transport=httpx.MockTransport(handler))
    note_id = await crm.add_note(CREDS, "7", "Met at the conference")

    assert note_id == "55"
    assert calls == [
        ("POST", "/crm/v3/objects/notes"),
        ("PUT", "/crm/v3/objects/notes/55/associations/contacts/7/note_to_contact"),
    ]
