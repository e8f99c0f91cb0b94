"""
Document store configuration (cached OCR text).

Intent:
    Single source of truth for the Supabase endpoint, service key and the
    table that holds previously extracted OCR text.

Behavior:
    - `SUPABASE_URL` / `SUPABASE_SERVICE_ROLE_KEY` enable the PostgREST store;
      without them lookups always miss.
    - `OCR_CACHE_TABLE` overrides the default table `subject_documents`.

Permissions:
    Pure configuration; no external calls.
"""
from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Optional


OCR_CACHE_TABLE_DEFAULT = "subject_documents"


@dataclass(frozen=True)
class DocumentStoreConfig:
    supabase_url: Optional[str]
    service_role_key: Optional[str]
    table: str
    timeout_seconds: int = 10

    @property
    def enabled(self) -> bool:
        return bool(self.supabase_url and self.service_role_key)


def get_ocr_cache_table() -> str:
    return (os.getenv("OCR_CACHE_TABLE") or OCR_CACHE_TABLE_DEFAULT).strip()


def load_document_store_config() -> DocumentStoreConfig:
    url = (os.getenv("SUPABASE_URL") or "").strip().rstrip("/") or None
    key = (os.getenv("SUPABASE_SERVICE_ROLE_KEY") or "").strip() or None
    if url and not url.startswith(("http://", "https://")):
        raise ValueError("SUPABASE_URL must start with http:// or https://")
    return DocumentStoreConfig(supabase_url=url, service_role_key=key, table=get_ocr_cache_table())


__all__ = [
    "OCR_CACHE_TABLE_DEFAULT",
    "DocumentStoreConfig",
    "get_ocr_cache_table",
    "load_document_store_config",
]
