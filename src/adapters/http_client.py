"""Wrapper de httpx.

Por qué un wrapper:
- Estandariza timeouts, headers y autenticación para toda llamada REST.
- Facilita testeo: se pasa un `httpx.MockTransport` en lugar de la red.
"""

from __future__ import annotations

import httpx

from core.config import AppSettings

GITHUB_API_VERSION = "2022-11-28"


def build_async_client(
    settings: AppSettings | None = None,
    *,
    base_url: str = "",
    extra_headers: dict[str, str] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Crea un `httpx.AsyncClient` con valores por defecto seguros.

    Por qué un builder:
    - Centraliza timeouts/headers: el adaptador de GitHub y doctor se comportan igual.
    - Los tests inyectan un transport sin parchear nada.
    """

    settings = settings or AppSettings()
    headers: dict[str, str] = {"User-Agent": settings.user_agent}
    if extra_headers:
        headers.update(extra_headers)
    return httpx.AsyncClient(
        base_url=base_url,
        timeout=httpx.Timeout(settings.http_timeout_seconds),
        follow_redirects=True,
        headers=headers,
        transport=transport,
    )


def build_github_client(
    settings: AppSettings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    settings = settings or AppSettings()
    headers = {
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": GITHUB_API_VERSION,
    }
    if settings.github_token:
        headers["Authorization"] = f"Bearer {settings.github_token}"
    return build_async_client(
        settings,
        base_url=settings.github_api_url.rstrip("/"),
        extra_headers=headers,
        transport=transport,
    )
