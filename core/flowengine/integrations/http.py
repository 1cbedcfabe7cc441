"""Outbound HTTP for webhook-out nodes."""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

logger = logging.getLogger(__name__)

BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})


@dataclass
class HttpResponse:
    status: int
    body: str = ""
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        """Parsed body, or None when the body is not JSON."""
        if not self.body:
            return None
        try:
            return json.loads(self.body)
        except json.JSONDecodeError:
            return None


class HttpClient(ABC):
    """Collaborator that performs one HTTP request. Transport failures raise."""

    @abstractmethod
    async def request(
        self,
        url: str,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        body: str | None = None,
        timeout_ms: int = 30000,
    ) -> HttpResponse:
        """
        Raises:
            httpx.TimeoutException: the request exceeded ``timeout_ms``
            httpx.TransportError: connection-level failure
        """


def build_auth_headers(auth_mode: str | None, credential: str | None) -> dict[str, str]:
    """``bearer`` -> Authorization header, ``api-key`` -> X-API-Key."""
    if not credential:
        return {}
    if auth_mode == "bearer":
        return {"Authorization": f"Bearer {credential}"}
    if auth_mode == "api-key":
        return {"X-API-Key": credential}
    return {}


class HttpxClient(HttpClient):
    """httpx-backed client. Pass a shared ``httpx.AsyncClient`` to reuse connections."""

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client

    async def request(
        self,
        url: str,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        body: str | None = None,
        timeout_ms: int = 30000,
    ) -> HttpResponse:
        method = method.upper()
        content = body if method in BODY_METHODS else None
        timeout = httpx.Timeout(timeout_ms / 1000)

        if self._client is not None:
            response = await self._client.request(
                method, url, headers=headers, content=content, timeout=timeout
            )
        else:
            async with httpx.AsyncClient() as client:
                response = await client.request(
                    method, url, headers=headers, content=content, timeout=timeout
                )

        logger.debug(f"{method} {url} -> {response.status_code}")
        return HttpResponse(
            status=response.status_code,
            body=response.text,
            headers=dict(response.headers),
        )
