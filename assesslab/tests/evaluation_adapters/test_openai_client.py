from __future__ import annotations

import json

import httpx
import pytest

from assesslab.evaluation.adapters import build_model_client, openai_client
from assesslab.evaluation.adapters.bedrock_client import BedrockModelClient
from assesslab.evaluation.adapters.openai_client import OpenAIModelClient
from assesslab.evaluation.adapters.stub_model import StubModelClient
from assesslab.evaluation.ports import ConfigurationError, ImageContent, ModelResponseError

pytestmark = pytest.mark.anyio("asyncio")


async def test_vision_request_translates_images_to_data_urls():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"choices": [{"message": {"content": "text"}}]})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = OpenAIModelClient(api_key="sk-test", model="gpt-4o", base_url="https://llm.local/v1/chat", http_client=http)
    try:
        await client.invoke_vision(
            "Read", [ImageContent(index=0, url="u", base64="QUJD", media_type="image/png")], system="ocr"
        )
    finally:
        await http.aclose()

    request = seen[0]
    assert request.headers["authorization"] == "Bearer sk-test"
    body = json.loads(request.content)
    assert body["model"] == "gpt-4o"
    assert body["messages"][0] == {"role": "system", "content": "ocr"}
    parts = body["messages"][1]["content"]
    assert parts[0] == {"type": "text", "text": "Read"}
    assert parts[1] == {"type": "image_url", "image_url": {"url": "data:image/png;base64,QUJD"}}


async def test_text_request_leaves_response_format_free():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"choices": [{"message": {"content": "[]"}}]})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = OpenAIModelClient(api_key="sk-test", model="gpt-4o", base_url="https://llm.local/v1/chat", http_client=http)
    try:
        await client.invoke_text([{"role": "user", "content": "Match answers"}], system="grader")
    finally:
        await http.aclose()

    # Answer matching expects a top-level JSON array, which json_object mode cannot return.
    assert "response_format" not in seen[0]
    assert seen[0]["messages"][0] == {"role": "system", "content": "grader"}


async def test_error_status_is_reported():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, text="invalid api key")

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = OpenAIModelClient(api_key="bad", model="m", base_url="https://llm.local/v1/chat", http_client=http)
    try:
        with pytest.raises(ModelResponseError) as excinfo:
            await client.invoke_text([{"role": "user", "content": "hi"}])
    finally:
        await http.aclose()
    assert excinfo.value.status == 401


def test_build_requires_api_key(make_config):
    with pytest.raises(ConfigurationError, match="OPENAI_API_KEY"):
        openai_client.build(make_config(backend="openai"))


def test_factory_selects_backend(make_config):
    assert isinstance(build_model_client(make_config()), BedrockModelClient)
    assert isinstance(build_model_client(make_config(backend="openai", openai_api_key="k")), OpenAIModelClient)
    assert isinstance(build_model_client(make_config(backend="stub")), StubModelClient)


async def test_stub_answers_connectivity_probe():
    stub = StubModelClient()
    raw = await stub.invoke_text([{"role": "user", "content": "Test connection"}])
    assert raw["content"][0]["text"] == "OK"
