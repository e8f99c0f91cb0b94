from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import json
from typing import Optional

import pytest

from assesslab.evaluation.pipeline import EvaluationPipeline, PipelineState, classify_connectivity_error
from assesslab.evaluation.ports import (
    ConfigurationError,
    ConnectivityError,
    DocumentAccessError,
    DocumentRef,
    EvaluationRequest,
    EvaluationTimeoutError,
    InputValidationError,
    ModelResponseError,
    ModelTimeoutError,
    StudentInfo,
)
from assesslab.storage.document_store import NullDocumentStore

pytestmark = pytest.mark.anyio("asyncio")

HOST = "https://files.example.com"
FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeStore:
    def __init__(self, texts: Optional[dict] = None, error: Optional[Exception] = None) -> None:
        self.texts = texts or {}
        self.error = error
        self.lookups: list[str] = []

    async def lookup(self, document_url: str) -> Optional[str]:
        self.lookups.append(document_url)
        if self.error is not None:
            raise self.error
        return self.texts.get(document_url)


def _pipeline(config, model, client, store=None) -> EvaluationPipeline:
    return EvaluationPipeline(
        config,
        model_client=model,
        document_store=store or NullDocumentStore(),
        fetch_client=client,
        clock=lambda: FIXED_NOW,
    )


def _request(**overrides) -> EvaluationRequest:
    params = dict(
        test_id="T-42",
        student_answer=DocumentRef(url=f"{HOST}/answer.png"),
        question_paper=DocumentRef(text="Q1. What is photosynthesis? (5 marks)"),
        answer_key=DocumentRef(text="Q1: Conversion of light energy into chemical energy."),
        student_info=StudentInfo(name="Asha", roll_number="17", class_name="10B", subject="Biology"),
    )
    params.update(overrides)
    return EvaluationRequest(**params)


@pytest.mark.parametrize(
    "exc, kind",
    [
        (ModelTimeoutError("Bedrock request timed out"), "timeout"),
        (asyncio.TimeoutError(), "timeout"),
        (ModelResponseError("Bedrock API error (403): denied", status=403), "auth"),
        (ModelResponseError("Bedrock API error (400): The security token included in the request is invalid"), "auth"),
        (ModelResponseError("Bedrock API error (404): nope", status=404), "not_found"),
        (ModelResponseError("Bedrock API error (400): The provided model identifier is invalid."), "not_found"),
        (ModelResponseError("Bedrock API error (500): boom", status=500), "unknown"),
    ],
)
def test_connectivity_errors_are_classified(exc, kind):
    error = classify_connectivity_error(exc)
    assert error.kind == kind
    assert error.help


async def test_single_png_end_to_end(file_host, png_bytes, fake_model_cls, scripted_text, make_config):
    file_host.add(f"{HOST}/answer.png", png_bytes, content_type="image/png")
    questions = json.dumps({"questions": [{"questionNumber": "1", "questionText": "What is photosynthesis?", "marks": 5}]})
    matches = json.dumps([{"question": "Q1", "answer": "Photosynthesis converts light to energy.", "similarityScore": 0.9}])
    model = fake_model_cls(on_text=scripted_text(questions=questions, matches=matches))

    async with file_host.client() as client:
        pipeline = _pipeline(make_config(), model, client)
        body = await pipeline.run(_request())

    assert len(model.vision_calls) == 1
    assert body["answers"][0]["score"] == [4, 5]
    assert body["summary"] == {"totalScore": [4, 5], "percentage": 80, "declaredTotalScore": [4, 5]}
    meta = body["metadata"]
    assert meta["test_id"] == "T-42"
    assert meta["evaluation_timestamp"] == FIXED_NOW.isoformat()
    assert meta["answer_sheet_url"] == f"{HOST}/answer.png"
    assert meta["questions_extracted"] == 1
    assert meta["evaluation_path"] == "extracted_questions"
    assert meta["text_sources"] == {"student_answer": "ocr", "question_paper": "provided", "answer_key": "provided"}
    assert meta["semantic_matches"][0]["similarityScore"] == 0.9
    assert body["text"] == "Q1: Photosynthesis converts light to energy."
    assert body["isOcrProcessed"] is True
    assert pipeline.trace.history == ["validate_input", "verify_connectivity", "resolve_cached_text", "extract", "evaluate", "respond"]


async def test_cached_question_paper_skips_ocr(file_host, png_bytes, fake_model_cls, scripted_text, make_config):
    paper_url = f"{HOST}/paper.png?token=abc"
    file_host.add(f"{HOST}/answer.png", png_bytes, content_type="image/png")
    file_host.add(f"{HOST}/paper.png", png_bytes, content_type="image/png")
    store = FakeStore({paper_url: "Q1. What is photosynthesis?"})
    model = fake_model_cls(on_text=scripted_text())

    async with file_host.client() as client:
        pipeline = _pipeline(make_config(), model, client, store)
        body = await pipeline.run(_request(question_paper=DocumentRef(url=paper_url)))

    assert store.lookups == [paper_url]
    assert len(model.vision_calls) == 1
    assert file_host.count("GET", f"{HOST}/paper.png") == 0
    assert file_host.count("HEAD", f"{HOST}/paper.png") == 0
    assert body["metadata"]["text_sources"]["question_paper"] == "cached"
    assert body["question_paper_text"] == "Q1. What is photosynthesis?"
    assert body["metadata"]["evaluation_path"] == "raw_text"


async def test_store_failure_counts_as_miss(file_host, png_bytes, fake_model_cls, scripted_text, make_config):
    file_host.add(f"{HOST}/answer.png", png_bytes, content_type="image/png")
    file_host.add(f"{HOST}/paper.png", png_bytes, content_type="image/png")
    store = FakeStore(error=DocumentAccessError("Document store unavailable: ConnectError"))
    model = fake_model_cls(on_text=scripted_text())

    async with file_host.client() as client:
        pipeline = _pipeline(make_config(), model, client, store)
        body = await pipeline.run(_request(question_paper=DocumentRef(url=f"{HOST}/paper.png")))

    assert body["metadata"]["text_sources"]["question_paper"] == "ocr"
    assert len(model.vision_calls) == 2
    assert "question_paper: cache lookup failed" in pipeline.trace.notes


async def test_unreadable_answer_key_degrades(file_host, png_bytes, fake_model_cls, scripted_text, make_config):
    file_host.add(f"{HOST}/answer.png", png_bytes, content_type="image/png")
    model = fake_model_cls(on_text=scripted_text())

    async with file_host.client() as client:
        pipeline = _pipeline(make_config(), model, client)
        body = await pipeline.run(_request(answer_key=DocumentRef(url=f"{HOST}/missing-key.png")))

    assert body["metadata"]["text_sources"]["answer_key"] == "failed"
    assert body["answer_key_text"] is None
    assert any(note.startswith("answer_key:") for note in pipeline.trace.notes)


async def test_unreadable_answer_sheet_fails(file_host, fake_model_cls, make_config):
    model = fake_model_cls()
    async with file_host.client() as client:
        pipeline = _pipeline(make_config(), model, client)
        with pytest.raises(DocumentAccessError):
            await pipeline.run(_request())
    assert pipeline.trace.state == PipelineState.FAIL
    assert pipeline.trace.diagnostics()["failedStage"] == "extract"


async def test_slow_model_hits_deadline(file_host, png_bytes, fake_model_cls, make_config):
    file_host.add(f"{HOST}/answer.png", png_bytes, content_type="image/png")

    async def slow(prompt, images):
        await asyncio.sleep(5)
        return "late"

    model = fake_model_cls(on_vision=lambda prompt, images: slow(prompt, images))
    async with file_host.client() as client:
        pipeline = _pipeline(make_config(evaluation_timeout_seconds=0.05), model, client)
        with pytest.raises(EvaluationTimeoutError, match="timed out"):
            await pipeline.run(_request())
    assert pipeline.trace.failed_state == PipelineState.EXTRACT


async def test_connectivity_failure_stops_before_documents(file_host, fake_model_cls, make_config):
    model = fake_model_cls(on_text=lambda system, messages: ModelResponseError("Bedrock API error (403): denied", status=403))
    async with file_host.client() as client:
        pipeline = _pipeline(make_config(), model, client)
        with pytest.raises(ConnectivityError) as excinfo:
            await pipeline.run(_request())
    assert excinfo.value.kind == "auth"
    assert file_host.requests == []
    assert model.vision_calls == []
    assert pipeline.trace.failed_state == PipelineState.VERIFY_CONNECTIVITY


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"test_id": " "}, "testId"),
        ({"student_answer": DocumentRef(topic="Biology")}, "studentAnswer"),
        ({"answer_key": DocumentRef()}, "answerKey"),
    ],
)
async def test_invalid_input_rejected(file_host, fake_model_cls, make_config, overrides, message):
    model = fake_model_cls()
    async with file_host.client() as client:
        pipeline = _pipeline(make_config(), model, client)
        with pytest.raises(InputValidationError, match=message):
            await pipeline.run(_request(**overrides))
    assert model.text_calls == []


async def test_missing_credentials_rejected_before_model_call(file_host, fake_model_cls, make_config):
    model = fake_model_cls()
    async with file_host.client() as client:
        pipeline = _pipeline(make_config(aws_secret_access_key=None), model, client)
        with pytest.raises(ConfigurationError):
            await pipeline.run(_request())
    assert model.text_calls == []


async def test_unparseable_question_extraction_falls_back_to_raw_text(
    file_host, png_bytes, fake_model_cls, scripted_text, make_config
):
    file_host.add(f"{HOST}/answer.png", png_bytes, content_type="image/png")
    model = fake_model_cls(on_text=scripted_text(questions="Sorry, I found no questions here."))

    async with file_host.client() as client:
        pipeline = _pipeline(make_config(), model, client)
        body = await pipeline.run(_request())

    assert body["metadata"]["questions_extracted"] == 0
    assert body["metadata"]["evaluation_path"] == "raw_text"
    assert any(note.startswith("question_extraction:") for note in pipeline.trace.notes)
    assert len(body["answers"]) == 1
