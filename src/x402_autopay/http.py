"""HTTP collaborator used by the engine, plus the httpx-backed adapter."""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

import httpx

from .models import ResourceRequest, ResourceResponse

__all__ = ["HttpClient", "HttpxTransport"]


@runtime_checkable
class HttpClient(Protocol):
    async def send(self, request: ResourceRequest, *, timeout: Optional[float] = None) -> ResourceResponse:
        ...


class HttpxTransport:
    """Adapts an ``httpx.AsyncClient`` to :class:`HttpClient`.

    A client passed in stays owned by the caller; :meth:`aclose` only closes a
    client this adapter created.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, *, base_url: str = "") -> None:
        self._client = client
        self._owns_client = client is None
        self._base_url = base_url

    def _get_async_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self._base_url)
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send(self, request: ResourceRequest, *, timeout: Optional[float] = None) -> ResourceResponse:
        client = self._get_async_client()
        kwargs = {}
        if request.json is not None:
            kwargs["json"] = request.json
        elif request.content is not None:
            kwargs["content"] = request.content
        response = await client.request(
            request.method,
            request.url,
            headers=request.headers,
            timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            **kwargs,
        )
        return ResourceResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            content=response.content,
        )
