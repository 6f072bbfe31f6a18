"""HubSpot CRM v3 adapter."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from inboxagent.adapters.http import RestClient
from inboxagent.errors import ExternalServiceError
from inboxagent.models import Contact, OwnerCredentials

log = logging.getLogger(__name__)

HUBSPOT_API_BASE = "https://api.hubapi.com"

_CONTACT_PROPERTIES = ["email", "firstname", "lastname", "phone", "notes"]


def _to_contact(item: dict[str, Any]) -> Contact:
    props = item.get("properties") or {}
    return Contact(
        crm_id=str(item["id"]),
        email=props.get("email") or "",
        firstname=props.get("firstname") or "",
        lastname=props.get("lastname") or "",
        phone=props.get("phone") or "",
        notes=props.get("notes") or "",
    )


class HubSpotCrm(RestClient):
    service = "HubSpot"

    def __init__(
        self,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(HUBSPOT_API_BASE, timeout=timeout, transport=transport)

    async def list_contacts(self, creds: OwnerCredentials) -> list[Contact]:
        params: dict[str, Any] = {
            "limit": 100,
            "properties": ",".join(_CONTACT_PROPERTIES),
        }
        contacts: list[Contact] = []
        while True:
            page = await self.request(
                creds.hubspot_access_token,
                "GET",
                "/crm/v3/objects/contacts",
                params=params,
            )
            contacts.extend(_to_contact(item) for item in (page or {}).get("results") or [])
            after = ((page or {}).get("paging") or {}).get("next", {}).get("after")
            if not after:
                return contacts
            params["after"] = after

    async def find_by_email(
        self, creds: OwnerCredentials, email: str
    ) -> Contact | None:
        data = await self.request(
            creds.hubspot_access_token,
            "POST",
            "/crm/v3/objects/contacts/search",
            json={
                "filterGroups": [
                    {"filters": [{"propertyName": "email", "operator": "EQ", "value": email}]}
                ],
                "properties": _CONTACT_PROPERTIES,
            },
        )
        results = (data or {}).get("results") or []
        return _to_contact(results[0]) if results else None

    async def create_contact(
        self,
        creds: OwnerCredentials,
        email: str,
        firstname: str = "",
        lastname: str = "",
        phone: str = "",
    ) -> Contact:
        data = await self.request(
            creds.hubspot_access_token,
            "POST",
            "/crm/v3/objects/contacts",
            json={
                "properties": {
                    "email": email,
                    "firstname": firstname,
                    "lastname": lastname,
                    "phone": phone,
                }
            },
        )
        if not data or "id" not in data:
            raise ExternalServiceError(self.service, "contact create returned no id")
        log.info("Created HubSpot contact %s for %s", data["id"], email)
        return _to_contact(data)

    async def add_note(
        self, creds: OwnerCredentials, contact_id: str, note: str
    ) -> str:
        token = creds.hubspot_access_token
        created = await self.request(
            token,
            "POST",
            "/crm/v3/objects/notes",
            json={
                "properties": {
                    "hs_note_body": note,
                    "hs_timestamp": datetime.now(timezone.utc).isoformat(),
                }
            },
        )
        if not created or "id" not in created:
            raise ExternalServiceError(self.service, "note create returned no id")
        note_id = str(created["id"])
        await self.request(
            token,
            "PUT",
            f"/crm/v3/objects/notes/{note_id}/associations/contacts/{contact_id}/note_to_contact",
        )
        return note_id
