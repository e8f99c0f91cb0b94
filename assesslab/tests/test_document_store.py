from __future__ import annotations

import httpx
import pytest

from assesslab.evaluation.ports import DocumentAccessError
from assesslab.storage.config import load_document_store_config
from assesslab.storage.document_store import NullDocumentStore, SupabaseDocumentStore, build_document_store

pytestmark = pytest.mark.anyio("asyncio")

BASE = "https://project.supabase.co"
SIGNED = "https://project.supabase.co/storage/v1/object/sign/papers/q.png?token=abc"
UNSIGNED = "https://project.supabase.co/storage/v1/object/sign/papers/q.png"


def _store(handler) -> tuple[SupabaseDocumentStore, httpx.AsyncClient]:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    store = SupabaseDocumentStore(base_url=BASE, service_role_key="service-key", table="subject_documents", http_client=http)
    return store, http


async def test_lookup_queries_postgrest_with_service_key():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"ocr_text": "Q1. Define osmosis."}])

    store, http = _store(handler)
    try:
        text = await store.lookup(UNSIGNED)
    finally:
        await http.aclose()

    assert text == "Q1. Define osmosis."
    request = seen[0]
    assert request.url.path == "/rest/v1/subject_documents"
    assert request.url.params["select"] == "ocr_text"
    assert request.url.params["document_url"] == f'eq."{UNSIGNED}"'
    assert request.url.params["limit"] == "1"
    assert request.headers["apikey"] == "service-key"
    assert request.headers["authorization"] == "Bearer service-key"


async def test_signed_url_falls_back_to_clean_url():
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        key = request.url.params["document_url"]
        seen.append(key)
        if key == f'eq."{UNSIGNED}"':
            return httpx.Response(200, json=[{"ocr_text": "cached"}])
        return httpx.Response(200, json=[])

    store, http = _store(handler)
    try:
        text = await store.lookup(SIGNED)
    finally:
        await http.aclose()
    assert text == "cached"
    assert seen == [f'eq."{SIGNED}"', f'eq."{UNSIGNED}"']


async def test_reserved_characters_are_quoted():
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.params["document_url"])
        return httpx.Response(200, json=[])

    url = 'https://cdn.example.com/papers/(term 1),final\\"v2".png'
    store, http = _store(handler)
    try:
        assert await store.lookup(url) is None
    finally:
        await http.aclose()
    assert seen == ['eq."https://cdn.example.com/papers/(term 1),final\\\\\\"v2\\".png"']


async def test_blank_text_is_a_miss():
    store, http = _store(lambda request: httpx.Response(200, json=[{"ocr_text": "   "}]))
    try:
        assert await store.lookup(UNSIGNED) is None
    finally:
        await http.aclose()


async def test_http_error_raises_document_access_error():
    store, http = _store(lambda request: httpx.Response(500, text="boom"))
    try:
        with pytest.raises(DocumentAccessError, match="500"):
            await store.lookup(UNSIGNED)
    finally:
        await http.aclose()


async def test_null_store_always_misses():
    assert await NullDocumentStore().lookup(UNSIGNED) is None


def test_factory_uses_environment(monkeypatch: pytest.MonkeyPatch):
    assert isinstance(build_document_store(load_document_store_config()), NullDocumentStore)
    monkeypatch.setenv("SUPABASE_URL", BASE + "/")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "service-key")
    monkeypatch.setenv("OCR_CACHE_TABLE", "ocr_documents")
    config = load_document_store_config()
    assert config.supabase_url == BASE
    assert config.table == "ocr_documents"
    assert isinstance(build_document_store(config), SupabaseDocumentStore)


def test_invalid_supabase_url_rejected(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("SUPABASE_URL", "project.supabase.co")
    with pytest.raises(ValueError, match="SUPABASE_URL"):
        load_document_store_config()
