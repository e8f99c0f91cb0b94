"""
Evaluation pipeline: one request from validated input to graded result.

Intent:
    Drive the stages in a fixed order and keep a trace of where the request
    is, so failures can be reported precisely (and with diagnostics on retry
    attempts).

States:
    VALIDATE_INPUT -> VERIFY_CONNECTIVITY -> RESOLVE_CACHED_TEXT -> EXTRACT
    -> EVALUATE -> RESPOND, with FAIL reachable from any state.

Behavior:
    - The connectivity probe runs before any document work so a dead endpoint
      does not burn OCR cost.
    - EXTRACT and EVALUATE share one deadline (`asyncio.wait_for`); expiry
      cancels in-flight calls and raises `EvaluationTimeoutError`.
    - No internal retries: callers resubmit with `retryAttempt` incremented.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import logging
from typing import Callable, Optional

import httpx

from assesslab.evaluation import extractors, prompts
from assesslab.evaluation.config import EvaluationConfig
from assesslab.evaluation.evaluator import evaluate
from assesslab.evaluation.ports import (
    AnswerMatch,
    ConnectivityError,
    DocumentAccessError,
    DocumentRef,
    DocumentStoreProtocol,
    DocumentText,
    EvaluationError,
    EvaluationRequest,
    EvaluationTimeoutError,
    ExtractedQuestion,
    InputValidationError,
    ModelClientProtocol,
    ModelResponseError,
    ModelTimeoutError,
)
from assesslab.vision.orchestrator import VisionRunReport

LOG = logging.getLogger(__name__)


class PipelineState(str, Enum):
    VALIDATE_INPUT = "validate_input"
    VERIFY_CONNECTIVITY = "verify_connectivity"
    RESOLVE_CACHED_TEXT = "resolve_cached_text"
    EXTRACT = "extract"
    EVALUATE = "evaluate"
    RESPOND = "respond"
    FAIL = "fail"


CONNECTIVITY_HELP = {
    "auth": (
        "Check the AWS access key id and secret and make sure the IAM user is allowed to call "
        "bedrock:InvokeModel."
    ),
    "not_found": (
        "Check AWS_REGION and BEDROCK_MODEL_ID: the model must exist and be enabled for your account "
        "in this region."
    ),
    "timeout": "The model endpoint did not answer in time. Check network connectivity and try again.",
    "unknown": "Verify that the model endpoint is reachable and that credentials are configured correctly.",
}

_AUTH_MARKERS = ("signature", "credential", "access denied", "accessdenied", "unrecognizedclient", "security token", "forbidden")
_NOT_FOUND_MARKERS = ("not found", "notfound", "resourcenotfound", "model identifier is invalid")


def classify_connectivity_error(exc: Exception) -> ConnectivityError:
    """Map a failed connection probe to auth / not_found / timeout / unknown."""
    if isinstance(exc, (ModelTimeoutError, asyncio.TimeoutError)):
        kind = "timeout"
    else:
        status = getattr(exc, "status", None)
        text = f"{exc} {getattr(exc, 'body', '')}".lower()
        if status in (401, 403) or any(marker in text for marker in _AUTH_MARKERS):
            kind = "auth"
        elif status == 404 or any(marker in text for marker in _NOT_FOUND_MARKERS):
            kind = "not_found"
        elif "timed out" in text or "timeout" in text:
            kind = "timeout"
        else:
            kind = "unknown"
    return ConnectivityError(f"Failed to connect to the model endpoint: {exc}", kind=kind, help=CONNECTIVITY_HELP[kind])


@dataclass
class PipelineTrace:
    """What the pipeline did so far; rendered as diagnostics on retry attempts."""

    state: PipelineState = PipelineState.VALIDATE_INPUT
    history: list[str] = field(default_factory=list)
    failed_state: Optional[PipelineState] = None
    text_sources: dict[str, str] = field(default_factory=dict)
    text_lengths: dict[str, int] = field(default_factory=dict)
    notes: list[str] = field(default_factory=list)
    questions_extracted: int = 0
    evaluation_path: Optional[str] = None
    vision: dict[str, VisionRunReport] = field(default_factory=dict)

    def enter(self, state: PipelineState) -> None:
        self.state = state
        self.history.append(state.value)

    def fail(self) -> None:
        if self.state != PipelineState.FAIL:
            self.failed_state = self.state
            self.state = PipelineState.FAIL
            self.history.append(PipelineState.FAIL.value)

    def record_text(self, role: str, document: DocumentText) -> None:
        self.text_sources[role] = document.source
        self.text_lengths[role] = len(document.text)

    def diagnostics(self) -> dict:
        return {
            "failedStage": self.failed_state.value if self.failed_state else None,
            "stages": list(self.history),
            "textSources": dict(self.text_sources),
            "textLengths": dict(self.text_lengths),
            "questionsExtracted": self.questions_extracted,
            "evaluationPath": self.evaluation_path,
            "vision": {role: report.to_dict() for role, report in self.vision.items()},
            "notes": list(self.notes),
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EvaluationPipeline:
    """Run one evaluation request. Instances are request scoped."""

    def __init__(
        self,
        config: EvaluationConfig,
        *,
        model_client: ModelClientProtocol,
        document_store: DocumentStoreProtocol,
        fetch_client: httpx.AsyncClient,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = config
        self._model = model_client
        self._store = document_store
        self._fetch = fetch_client
        self._clock = clock or _utcnow
        self.trace = PipelineTrace()

    async def run(self, request: EvaluationRequest) -> dict:
        try:
            self.trace.enter(PipelineState.VALIDATE_INPUT)
            self.validate(request)

            self.trace.enter(PipelineState.VERIFY_CONNECTIVITY)
            await self.verify_connectivity()

            self.trace.enter(PipelineState.RESOLVE_CACHED_TEXT)
            cached = await self.resolve_cached_text(request)

            try:
                body = await asyncio.wait_for(
                    self._extract_and_evaluate(request, cached), timeout=self._config.evaluation_timeout_seconds
                )
            except asyncio.TimeoutError as exc:
                raise EvaluationTimeoutError(
                    f"Evaluation timed out after {self._config.evaluation_timeout_seconds} seconds"
                ) from exc
        except Exception:
            self.trace.fail()
            raise
        return body

    # -- stages ---------------------------------------------------------------

    def validate(self, request: EvaluationRequest) -> None:
        if not request.test_id or not str(request.test_id).strip():
            raise InputValidationError("Missing required field: testId")
        if request.student_answer is None or not request.student_answer.has_content():
            raise InputValidationError("Missing required field: studentAnswer (url, zip_url or text)")
        for name, ref in (("questionPaper", request.question_paper), ("answerKey", request.answer_key)):
            if ref is not None and not ref.has_source():
                raise InputValidationError(f"{name} must contain one of: url, zip_url, text, topic")
        self._config.require_credentials()

    async def verify_connectivity(self) -> None:
        try:
            await self._model.invoke_text(prompts.CONNECTION_TEST_MESSAGES, max_tokens=10, temperature=0.0)
        except (ModelResponseError, asyncio.TimeoutError) as exc:
            error = classify_connectivity_error(exc)
            LOG.warning("evaluation.pipeline.connectivity action=failed kind=%s", error.kind)
            raise error from exc
        LOG.info("evaluation.pipeline.connectivity action=ok model=%s", self._config.model_name)

    async def resolve_cached_text(self, request: EvaluationRequest) -> dict[str, str]:
        cached: dict[str, str] = {}
        for role, ref in (("question_paper", request.question_paper), ("answer_key", request.answer_key)):
            if ref is None or (ref.text and ref.text.strip()) or not ref.url:
                continue
            try:
                text = await self._store.lookup(ref.url)
            except DocumentAccessError as exc:
                LOG.warning("evaluation.pipeline.cache action=lookup_failed role=%s error=%s", role, exc)
                self.trace.notes.append(f"{role}: cache lookup failed")
                continue
            if text:
                cached[role] = text
        return cached

    async def _extract_optional(
        self, role: str, ref: Optional[DocumentRef], cached: dict[str, str]
    ) -> DocumentText:
        if role in cached:
            return DocumentText(text=cached[role], source="cached")
        report = VisionRunReport()
        self.trace.vision[role] = report
        try:
            return await extractors.extract_document_text(
                self._model, ref, role, fetch_client=self._fetch, config=self._config, report=report
            )
        except EvaluationError as exc:
            LOG.warning("evaluation.pipeline.extract action=degraded role=%s error=%s", role, type(exc).__name__)
            self.trace.notes.append(f"{role}: {exc}")
            return DocumentText(text="", source="failed")

    async def _extract_and_evaluate(self, request: EvaluationRequest, cached: dict[str, str]) -> dict:
        self.trace.enter(PipelineState.EXTRACT)
        report = VisionRunReport()
        self.trace.vision["student_answer"] = report
        student = await extractors.extract_document_text(
            self._model,
            request.student_answer,
            "student_answer",
            fetch_client=self._fetch,
            config=self._config,
            report=report,
        )
        self.trace.record_text("student_answer", student)
        if not student.text.strip():
            raise DocumentAccessError("No text could be extracted from the student's answer sheet")

        paper = await self._extract_optional("question_paper", request.question_paper, cached)
        self.trace.record_text("question_paper", paper)
        key = await self._extract_optional("answer_key", request.answer_key, cached)
        self.trace.record_text("answer_key", key)

        questions: list[ExtractedQuestion] = []
        matches: list[AnswerMatch] = []
        if paper.text.strip():
            extracted = await extractors.extract_questions(self._model, paper.text)
            questions = extracted.value if extracted.ok else []
            if not extracted.ok:
                self.trace.notes.append(f"question_extraction: {extracted.reason}")
            matched = await extractors.match_answers(self._model, paper.text, student.text)
            matches = matched.value if matched.ok else []
            if not matched.ok:
                self.trace.notes.append(f"answer_matching: {matched.reason}")
        self.trace.questions_extracted = len(questions)

        self.trace.enter(PipelineState.EVALUATE)
        use_questions = bool(questions) and bool(student.text.strip())
        self.trace.evaluation_path = "extracted_questions" if use_questions else "raw_text"
        result = await evaluate(
            self._model,
            test_id=request.test_id,
            questions=questions if use_questions else [],
            question_paper_text=paper.text,
            answer_key_text=key.text,
            answer_key_topic=request.answer_key.topic if request.answer_key else None,
            student_answer_text=student.text,
            student_info=request.student_info,
        )

        self.trace.enter(PipelineState.RESPOND)
        body = result.to_dict()
        body["metadata"] = {
            "test_id": request.test_id,
            "evaluation_timestamp": self._clock().isoformat(),
            "answer_sheet_url": request.student_answer.url or request.student_answer.zip_url,
            "question_paper_url": request.question_paper.url if request.question_paper else None,
            "answer_key_url": request.answer_key.url if request.answer_key else None,
            "ocr_processed": True,
            "questions_extracted": len(questions),
            "evaluation_path": self.trace.evaluation_path,
            "text_sources": dict(self.trace.text_sources),
            "semantic_matches": [
                {"question": m.question, "answer": m.answer, "similarityScore": m.similarity_score} for m in matches
            ],
        }
        body["question_paper_text"] = paper.text or None
        body["answer_key_text"] = key.text or None
        body["text"] = student.text
        body["isOcrProcessed"] = True
        LOG.info(
            "evaluation.pipeline action=completed test_id=%s answers=%s path=%s",
            request.test_id,
            len(result.answers),
            self.trace.evaluation_path,
        )
        return body


__all__ = [
    "CONNECTIVITY_HELP",
    "EvaluationPipeline",
    "PipelineState",
    "PipelineTrace",
    "classify_connectivity_error",
]
