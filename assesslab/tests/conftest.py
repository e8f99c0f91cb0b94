"""
Pytest configuration for assesslab tests.

Why: Force AnyIO to use the asyncio backend, keep telemetry counters and
environment toggles from leaking between tests, and provide in-process fakes
for the model endpoint and remote file hosting (no test touches the network).
"""
from __future__ import annotations

from dataclasses import replace
from io import BytesIO
import json
from typing import Any, Callable, Optional

import httpx
import pytest
from PIL import Image

from assesslab.evaluation import telemetry
from assesslab.evaluation.config import DEFAULT_BEDROCK_MODEL, EvaluationConfig


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_telemetry_and_env(monkeypatch: pytest.MonkeyPatch):
    """Clear counters and env toggles that would change adapter selection."""
    telemetry.reset_for_tests()
    for var in (
        "ASSESSLAB_ENV",
        "AI_BACKEND",
        "AWS_ACCESS_KEY_ID",
        "AWS_SECRET_ACCESS_KEY",
        "AWS_REGION",
        "OPENAI_API_KEY",
        "SUPABASE_URL",
        "SUPABASE_SERVICE_ROLE_KEY",
        "VISION_BATCH_SIZE",
        "EVALUATION_TIMEOUT_SECONDS",
    ):
        monkeypatch.delenv(var, raising=False)
    yield
    telemetry.reset_for_tests()


# ----------------------------- Config ---------------------------------------


@pytest.fixture
def make_config() -> Callable[..., EvaluationConfig]:
    base = EvaluationConfig(
        backend="bedrock",
        aws_access_key_id="AKIDEXAMPLE",
        aws_secret_access_key="wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY",
        aws_region="us-east-1",
        signing_service="bedrock",
        endpoint_service="bedrock-runtime",
        bedrock_model_id=DEFAULT_BEDROCK_MODEL,
        openai_api_key=None,
        openai_base_url="https://api.openai.com/v1/chat/completions",
        openai_model="gpt-4o",
        timeout_model_seconds=30,
        timeout_fetch_seconds=30,
        timeout_head_seconds=15,
        evaluation_timeout_seconds=300,
        vision_batch_size=4,
        pdf_page_probe_limit=4,
    )

    def _make(**overrides: Any) -> EvaluationConfig:
        return replace(base, **overrides)

    return _make


# ----------------------------- Images ---------------------------------------


def _image_bytes(fmt: str) -> bytes:
    buf = BytesIO()
    Image.new("RGB", (4, 4), color=(255, 255, 255)).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def png_bytes() -> bytes:
    return _image_bytes("PNG")


@pytest.fixture
def jpeg_bytes() -> bytes:
    return _image_bytes("JPEG")


# --------------------------- Remote files -----------------------------------


class FakeFileHost:
    """Serve canned responses by URL (query string ignored) via httpx.MockTransport.

    Unknown URLs answer 404. HEAD requests get the same status and headers
    without a body. Every request is recorded as `(method, url)`.
    """

    def __init__(self) -> None:
        self.files: dict[str, tuple[int, dict, bytes]] = {}
        self.requests: list[tuple[str, str]] = []

    def add(self, url: str, body: bytes = b"", *, status: int = 200, content_type: Optional[str] = None) -> None:
        headers = {"content-type": content_type} if content_type else {}
        self.files[url] = (status, headers, body)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url).split("?", 1)[0]
        self.requests.append((request.method, url))
        status, headers, body = self.files.get(url, (404, {}, b"not found"))
        if request.method == "HEAD":
            return httpx.Response(status, headers=headers)
        return httpx.Response(status, headers=headers, content=body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self._handle))

    def count(self, method: str, url: str) -> int:
        return sum(1 for m, u in self.requests if m == method and u == url)


@pytest.fixture
def file_host() -> FakeFileHost:
    return FakeFileHost()


# ------------------------------ Model ---------------------------------------


def wrap_text(text: str) -> dict:
    return {"content": [{"type": "text", "text": text}]}


class FakeModel:
    """Scriptable `ModelClientProtocol` implementation.

    `on_text(system, messages)` and `on_vision(prompt, images)` return the
    response text, or an exception instance to raise, or an awaitable
    producing either.
    """

    def __init__(
        self,
        *,
        on_text: Optional[Callable[[Optional[str], list], Any]] = None,
        on_vision: Optional[Callable[[str, list], Any]] = None,
    ) -> None:
        self.on_text = on_text or (lambda system, messages: "OK")
        self.on_vision = on_vision or (lambda prompt, images: "Q1: Photosynthesis converts light to energy.")
        self.text_calls: list[dict] = []
        self.vision_calls: list[dict] = []
        self.closed = False

    async def _resolve(self, value: Any) -> dict:
        if hasattr(value, "__await__"):
            value = await value
        if isinstance(value, BaseException):
            raise value
        if isinstance(value, dict):
            return value
        return wrap_text(value)

    async def invoke_text(self, messages, *, max_tokens=4000, temperature=0.5, system=None) -> dict:
        self.text_calls.append({"system": system, "messages": list(messages), "max_tokens": max_tokens})
        return await self._resolve(self.on_text(system, list(messages)))

    async def invoke_vision(self, prompt, images, *, max_tokens=4000, temperature=0.2, system=None) -> dict:
        self.vision_calls.append({"prompt": prompt, "images": list(images), "system": system})
        return await self._resolve(self.on_vision(prompt, list(images)))

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_model_cls() -> type[FakeModel]:
    return FakeModel


SAMPLE_EVALUATION = {
    "student_name": "Asha",
    "roll_no": "17",
    "class": "10B",
    "subject": "Biology",
    "answers": [
        {
            "question_no": "1",
            "question": "What is photosynthesis?",
            "answer": "Photosynthesis converts light to energy.",
            "expected_answer": "Conversion of light energy into chemical energy.",
            "score": [4, 5],
            "remarks": "Mostly correct.",
            "confidence": 0.9,
            "match_method": "direct_numbering",
        }
    ],
    "summary": {"totalScore": [4, 5], "percentage": 80},
}


@pytest.fixture
def sample_evaluation() -> dict:
    return json.loads(json.dumps(SAMPLE_EVALUATION))


@pytest.fixture
def scripted_text(sample_evaluation: dict) -> Callable[..., Callable[[Optional[str], list], Any]]:
    """Build an `on_text` handler routing by system prompt family."""

    def _build(*, questions: Any = None, matches: Any = None, evaluation: Any = None) -> Callable:
        def _on_text(system: Optional[str], messages: list) -> Any:
            hint = (system or "").lower()
            if "extract questions" in hint:
                return questions if questions is not None else json.dumps({"questions": []})
            if "match student answers" in hint:
                return matches if matches is not None else "[]"
            if "evaluat" in hint:
                return evaluation if evaluation is not None else json.dumps(sample_evaluation)
            return "OK"

        return _on_text

    return _build
