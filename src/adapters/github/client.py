"""Thin GitHub REST client: one request helper plus status-code translation."""

from __future__ import annotations

import logging
from typing import Any, Iterable

import httpx

from core.domain.errors import (
    AlreadyExistsError,
    NotFoundError,
    PermissionDeniedError,
    ProviderError,
    ProvisioningError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)


def _message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if not isinstance(payload, dict):
        return str(payload)[:200]
    parts = [str(payload.get("message", ""))]
    for error in payload.get("errors") or []:
        if isinstance(error, dict):
            parts.append(str(error.get("message") or error.get("code") or ""))
        else:
            parts.append(str(error))
    return "; ".join(p for p in parts if p)


def translate_response(
    response: httpx.Response,
    *,
    action: str,
    exists_on: Iterable[int] = (),
) -> ProvisioningError:
    status = response.status_code
    message = _message(response)
    text = f"{action}: HTTP {status}: {message}"
    if status in tuple(exists_on):
        return AlreadyExistsError(text)
    if status == 422 and "already exists" in message.lower():
        return AlreadyExistsError(text)
    if status == 429 or (status == 403 and response.headers.get("x-ratelimit-remaining") == "0"):
        return TransientProviderError(text)
    if status >= 500:
        return TransientProviderError(text)
    if status in (401, 403):
        return PermissionDeniedError(text)
    if status == 404:
        return NotFoundError(text)
    return ProviderError(text)


class GitHubRestClient:
    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any | None = None,
        exists_on: Iterable[int] = (),
    ) -> httpx.Response:
        """Send one request; any non-2xx status raises a domain error."""

        action = f"{method} {path}"
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as exc:
            raise TransientProviderError(f"{action}: timed out") from exc
        except httpx.TransportError as exc:
            raise TransientProviderError(f"{action}: {exc}") from exc

        logger.debug("%s -> %s", action, response.status_code)
        if response.is_success:
            return response
        raise translate_response(response, action=action, exists_on=exists_on)

    async def find(self, path: str) -> httpx.Response | None:
        """GET that returns None instead of raising on 404."""

        try:
            return await self.request("GET", path)
        except NotFoundError:
            return None

    async def get_json(self, path: str) -> dict[str, Any]:
        response = await self.request("GET", path)
        return response.json()
