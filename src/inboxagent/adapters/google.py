"""Gmail and Google Calendar REST adapters."""

from __future__ import annotations

import base64
import logging
import re
from datetime import date, datetime, time, timezone, tzinfo
from email.message import EmailMessage
from email.utils import parseaddr, parsedate_to_datetime
from typing import Any

import httpx

from inboxagent.adapters.http import RestClient
from inboxagent.models import CalendarEvent, InboundMessage, OwnerCredentials, TimeSlot

log = logging.getLogger(__name__)

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"
CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3/calendars/primary"

_MAX_BODY_CHARS = 8000


def _b64url_decode(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def _find_plain(part: dict[str, Any]) -> str:
    """Depth-first search for the first ``text/plain`` body."""
    body = part.get("body") or {}
    if part.get("mimeType") == "text/plain" and body.get("data"):
        return _b64url_decode(body["data"])
    for sub in part.get("parts") or []:
        text = _find_plain(sub)
        if text:
            return text
    return ""


def _find_any_leaf(part: dict[str, Any]) -> str:
    subparts = part.get("parts") or []
    if not subparts:
        data = (part.get("body") or {}).get("data")
        return _b64url_decode(data) if data else ""
    for sub in subparts:
        text = _find_any_leaf(sub)
        if text:
            return text
    return ""


def _extract_text(part: dict[str, Any]) -> str:
    """Plain-text body if any part has one, else the first leaf body."""
    return _find_plain(part) or _find_any_leaf(part)


def _clean_body(text: str) -> str:
    text = text.replace("\r\n", "\n")
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()[:_MAX_BODY_CHARS]


def _received_at(data: dict[str, Any], headers: dict[str, str]) -> datetime:
    if data.get("internalDate"):
        return datetime.fromtimestamp(int(data["internalDate"]) / 1000, tz=timezone.utc)
    received_at = None
    if headers.get("date"):
        try:
            received_at = parsedate_to_datetime(headers["date"])
        except (TypeError, ValueError):
            log.warning("Unparseable Date header on message %s", data.get("id"))
    if received_at is None:
        return datetime.now(timezone.utc)
    # "-0000" means UTC with unknown origin and parses naive.
    if received_at.tzinfo is None:
        received_at = received_at.replace(tzinfo=timezone.utc)
    return received_at


def parse_gmail_message(data: dict[str, Any]) -> InboundMessage:
    payload = data.get("payload") or {}
    headers = {
        h.get("name", "").lower(): h.get("value", "") for h in payload.get("headers") or []
    }
    from_name, from_email = parseaddr(headers.get("from", ""))

    received_at = _received_at(data, headers)

    return InboundMessage(
        message_id=data["id"],
        from_email=from_email.lower(),
        from_name=from_name,
        subject=headers.get("subject", ""),
        body=_clean_body(_extract_text(payload)),
        received_at=received_at,
    )


class GmailMailbox(RestClient):
    service = "Gmail"

    def __init__(
        self,
        *,
        timeout: float = 10.0,
        max_results: int = 50,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(GMAIL_API_BASE, timeout=timeout, transport=transport)
        self.max_results = max_results

    async def list_inbound(
        self, creds: OwnerCredentials, since: datetime
    ) -> list[InboundMessage]:
        token = creds.google_access_token
        # Gmail's after: operator has one-second granularity.
        query = f"in:inbox after:{int(since.timestamp())}"
        listing = await self.request(
            token,
            "GET",
            "/messages",
            params={"q": query, "maxResults": self.max_results},
        )
        messages: list[InboundMessage] = []
        for ref in (listing or {}).get("messages") or []:
            data = await self.request(
                token, "GET", f"/messages/{ref['id']}", params={"format": "full"}
            )
            message = parse_gmail_message(data)
            if message.received_at >= since:
                messages.append(message)
        messages.sort(key=lambda m: m.received_at, reverse=True)
        log.debug("Fetched %d inbound messages for %s", len(messages), creds.owner_id)
        return messages

    async def send(
        self, creds: OwnerCredentials, to: str, subject: str, body: str
    ) -> str:
        message = EmailMessage()
        message["To"] = to
        if creds.email:
            message["From"] = creds.email
        message["Subject"] = subject
        message.set_content(body)
        raw = base64.urlsafe_b64encode(message.as_bytes()).decode().rstrip("=")

        result = await self.request(
            creds.google_access_token, "POST", "/messages/send", json={"raw": raw}
        )
        message_id = (result or {}).get("id", "")
        log.info("Sent %r to %s (id=%s)", subject, to, message_id)
        return message_id


def _event_bound(value: dict[str, Any], tz: tzinfo) -> datetime:
    if value.get("dateTime"):
        return datetime.fromisoformat(value["dateTime"].replace("Z", "+00:00"))
    # All-day events only carry a date.
    return datetime.combine(date.fromisoformat(value["date"]), time(0), tzinfo=tz)


def _to_event(item: dict[str, Any]) -> CalendarEvent:
    start = item.get("start") or {}
    end = item.get("end") or {}
    return CalendarEvent(
        id=item.get("id", ""),
        summary=item.get("summary") or "No title",
        description=item.get("description") or "",
        start=start.get("dateTime") or start.get("date") or "",
        end=end.get("dateTime") or end.get("date") or "",
        attendees=[a["email"] for a in item.get("attendees") or [] if a.get("email")],
        location=item.get("location") or "",
        html_link=item.get("htmlLink"),
    )


class GoogleCalendar(RestClient):
    service = "Google Calendar"

    def __init__(
        self,
        *,
        tz: tzinfo,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(CALENDAR_API_BASE, timeout=timeout, transport=transport)
        self.tz = tz

    async def _list_items(
        self,
        creds: OwnerCredentials,
        start: datetime,
        end: datetime,
        max_results: int | None = None,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {
            "timeMin": start.isoformat(),
            "timeMax": end.isoformat(),
            "singleEvents": "true",
            "orderBy": "startTime",
        }
        if max_results is not None:
            params["maxResults"] = max_results

        items: list[dict[str, Any]] = []
        while True:
            page = await self.request(
                creds.google_access_token, "GET", "/events", params=params
            )
            items.extend((page or {}).get("items") or [])
            next_token = (page or {}).get("nextPageToken")
            if not next_token or (max_results is not None and len(items) >= max_results):
                break
            params["pageToken"] = next_token
        return items

    async def list_events(
        self,
        creds: OwnerCredentials,
        start: datetime,
        end: datetime,
        max_results: int = 10,
    ) -> list[CalendarEvent]:
        items = await self._list_items(creds, start, end, max_results)
        return [_to_event(item) for item in items[:max_results]]

    async def list_busy(
        self, creds: OwnerCredentials, start: datetime, end: datetime
    ) -> list[TimeSlot]:
        busy: list[TimeSlot] = []
        for item in await self._list_items(creds, start, end):
            if item.get("status") == "cancelled" or item.get("transparency") == "transparent":
                continue
            busy.append(
                TimeSlot(
                    start=_event_bound(item.get("start") or {}, self.tz),
                    end=_event_bound(item.get("end") or {}, self.tz),
                )
            )
        return busy

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
        tz_name = str(self.tz)
        body: dict[str, Any] = {
            "summary": title,
            "start": {"dateTime": start.isoformat(), "timeZone": tz_name},
            "end": {"dateTime": end.isoformat(), "timeZone": tz_name},
            "reminders": {"useDefault": True},
        }
        if description:
            body["description"] = description
        if location:
            body["location"] = location
        if attendees:
            body["attendees"] = [{"email": a} for a in attendees]

        created = await self.request(
            creds.google_access_token,
            "POST",
            "/events",
            params={"sendUpdates": "all"},
            json=body,
        )
        event = _to_event(created or {})
        log.info("Created calendar event %s at %s", event.id, start.isoformat())
        return event

