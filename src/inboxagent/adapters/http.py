"""Shared HTTP plumbing for the REST adapters."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from inboxagent.errors import AuthExpired, ExternalServiceError, ExternalServiceTimeout, NotFound

log = logging.getLogger(__name__)


class RestClient:
    """Bearer-token JSON client bound to one service.

    A fresh :class:`httpx.AsyncClient` is opened per call with the configured
    timeout; *transport* lets tests substitute :class:`httpx.MockTransport`.
    """

    service = "HTTP"

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self._transport = transport

    async def request(
        self,
        token: str | None,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> Any:
        if not token:
            raise AuthExpired(self.service, "account is not connected")

        headers = {"Authorization": f"Bearer {token}"}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise ExternalServiceTimeout(self.service, self.timeout) from e
        except httpx.HTTPError as e:
            raise ExternalServiceError(self.service, str(e)) from e

        if response.status_code in (401, 403):
            raise AuthExpired(self.service, f"HTTP {response.status_code}")
        if response.status_code == 404:
            raise NotFound(f"{self.service}: {method} {path} not found")
        if response.is_error:
            log.warning(
                "%s %s %s failed: %s %s",
                self.service,
                method,
                path,
                response.status_code,
                response.text[:200],
            )
            raise ExternalServiceError(
                self.service,
                f"{method} {path} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        if not response.content:
            return None
        return response.json()
