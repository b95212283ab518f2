"""Document host access: metadata and content fetches.

A source never retries. Permanent failures (the document is gone or not
visible to us) return None; transient failures raise so the poller can
apply its retry/backoff policy.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Protocol, runtime_checkable

import httpx

from docwatch.errors import TransientFetchError
from docwatch.logging import get_logger
from docwatch.models import DocMetadata

log = get_logger("sources")

# Status codes that mean "this document is not available to us"
PERMANENT_STATUSES = frozenset({403, 404, 410})


@runtime_checkable
class DocumentSource(Protocol):
    async def fetch_metadata(self, doc_token: str, doc_type: str) -> DocMetadata | None:
        """Current metadata, or None for not-found/permission-denied."""
        ...

    async def fetch_content(
        self, doc_token: str, doc_type: str
    ) -> str | bytes | dict[str, Any] | list[Any] | None:
        """Current content, or None when it cannot be read."""
        ...


class HttpDocumentSource:
    """Fetches metadata and content from a JSON document API.

    Endpoints (relative to ``base_url``):
        GET /documents/{token}/metadata?type={doc_type}  -> DocMetadata JSON
        GET /documents/{token}/content?type={doc_type}   -> text or JSON
    """

    def __init__(
        self,
        base_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        token: str | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = client
        self._timeout = timeout
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                yield client

    async def _get(self, doc_token: str, path: str, doc_type: str) -> httpx.Response | None:
        url = f"{self._base_url}/documents/{doc_token}/{path}"
        try:
            async with self._session() as client:
                response = await client.get(url, params={"type": doc_type}, headers=self._headers)
        except httpx.TransportError as e:
            raise TransientFetchError(f"{path} fetch for {doc_token} failed: {e}") from e

        if response.status_code in PERMANENT_STATUSES:
            log.warning("%s for %s unavailable (HTTP %d)", path, doc_token, response.status_code)
            return None
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientFetchError(
                f"{path} fetch for {doc_token} returned HTTP {response.status_code}"
            )
        response.raise_for_status()
        return response

    async def fetch_metadata(self, doc_token: str, doc_type: str) -> DocMetadata | None:
        response = await self._get(doc_token, "metadata", doc_type)
        if response is None:
            return None
        data = response.json()
        data.setdefault("doc_token", doc_token)
        data.setdefault("doc_type", doc_type)
        return DocMetadata.from_dict(data)

    async def fetch_content(
        self, doc_token: str, doc_type: str
    ) -> str | dict[str, Any] | list[Any] | None:
        response = await self._get(doc_token, "content", doc_type)
        if response is None:
            return None
        if response.headers.get("content-type", "").startswith("application/json"):
            return response.json()
        return response.text
