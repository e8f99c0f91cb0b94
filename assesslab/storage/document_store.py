"""
Document store: read previously extracted OCR text by document URL.

Intent:
    Skip OCR for question papers and answer keys whose text was already
    extracted at upload time. The store is read-only from this service's
    perspective.

Behavior:
    - `SupabaseDocumentStore` queries PostgREST
      `/rest/v1/{table}?select=ocr_text&document_url=eq."{url}"&limit=1`, first
      with the URL as given, then without its query string (signed URLs).
    - Transport and HTTP errors raise `DocumentAccessError`; the pipeline
      treats them as cache misses.
    - `NullDocumentStore` always misses.
"""
from __future__ import annotations

import logging
from typing import Optional

import httpx

from assesslab.evaluation.ports import DocumentAccessError, DocumentStoreProtocol
from assesslab.storage.config import DocumentStoreConfig
from assesslab.vision.image_fetch import clean_url

LOG = logging.getLogger(__name__)


def _postgrest_literal(value: str) -> str:
    """Double-quote a filter value so commas, dots and parentheses stay literal."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class NullDocumentStore:
    async def lookup(self, document_url: str) -> Optional[str]:
        return None

    async def aclose(self) -> None:
        return None


class SupabaseDocumentStore:
    def __init__(
        self,
        *,
        base_url: str,
        service_role_key: str,
        table: str,
        timeout: float = 10,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._endpoint = f"{base_url.rstrip('/')}/rest/v1/{table}"
        self._headers = {
            "apikey": service_role_key,
            "Authorization": f"Bearer {service_role_key}",
            "Accept": "application/json",
        }
        self._timeout = timeout
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def _query(self, document_url: str) -> Optional[str]:
        params = {"select": "ocr_text", "document_url": f"eq.{_postgrest_literal(document_url)}", "limit": "1"}
        try:
            response = await self._client.get(self._endpoint, params=params, headers=self._headers, timeout=self._timeout)
        except httpx.HTTPError as exc:
            raise DocumentAccessError(f"Document store unavailable: {type(exc).__name__}") from exc
        if not response.is_success:
            raise DocumentAccessError(f"Document store query failed ({response.status_code})")
        try:
            rows = response.json()
        except ValueError as exc:
            raise DocumentAccessError("Document store returned a non-JSON body") from exc
        if not isinstance(rows, list) or not rows:
            return None
        text = rows[0].get("ocr_text") if isinstance(rows[0], dict) else None
        if isinstance(text, str) and text.strip():
            return text
        return None

    async def lookup(self, document_url: str) -> Optional[str]:
        if not document_url:
            return None
        text = await self._query(document_url)
        base = clean_url(document_url)
        if text is None and base != document_url:
            text = await self._query(base)
        LOG.info("evaluation.documents.cache action=%s url=%s", "hit" if text else "miss", base)
        return text

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def build_document_store(
    config: DocumentStoreConfig, *, http_client: Optional[httpx.AsyncClient] = None
) -> DocumentStoreProtocol:
    """Supabase-backed store when configured, otherwise a store that always misses."""
    if not config.enabled:
        return NullDocumentStore()
    return SupabaseDocumentStore(
        base_url=config.supabase_url or "",
        service_role_key=config.service_role_key or "",
        table=config.table,
        timeout=config.timeout_seconds,
        http_client=http_client,
    )


__all__ = ["NullDocumentStore", "SupabaseDocumentStore", "build_document_store"]
