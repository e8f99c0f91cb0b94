"""
Evaluate-paper HTTP entry point.

Intent:
    Accept one evaluation request, run the pipeline with request-scoped
    clients and map the error taxonomy onto HTTP status codes.

Status codes:
    200 graded result
    400 invalid JSON or missing testId / studentAnswer
    401 credentials for the selected model backend are missing
    503 the model endpoint is unreachable or rejects our credentials
    500 timeout, unreadable documents, unparseable model output, anything else
    499 the client disconnected; the pipeline is cancelled (never seen by the caller)
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
import traceback
from typing import Any, Awaitable, Callable, Optional

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError
from pydantic.functional_validators import field_validator

from assesslab.evaluation import telemetry
from assesslab.evaluation.adapters import build_model_client
from assesslab.evaluation.config import load_evaluation_config
from assesslab.evaluation.pipeline import EvaluationPipeline
from assesslab.evaluation.ports import (
    ConfigurationError,
    ConnectivityError,
    DocumentAccessError,
    DocumentRef,
    EvaluationRequest,
    EvaluationTimeoutError,
    InputValidationError,
    ModelResponseError,
    ParseError,
    StudentInfo,
)
from assesslab.storage.config import load_document_store_config
from assesslab.storage.document_store import build_document_store

logger = logging.getLogger("assesslab.web.evaluation")

evaluation_router = APIRouter(tags=["Evaluation"])

CREDENTIALS_HELP = (
    "Set AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY and AWS_REGION (or OPENAI_API_KEY when "
    "AI_BACKEND=openai) in the service environment."
)
DOCUMENT_HELP = "Verify that every document URL is publicly accessible and that PDFs were converted to page images."
DISCONNECT_POLL_SECONDS = 0.5


class ClientDisconnectedError(Exception):
    """The caller went away before the evaluation finished."""


# ----------------------------- Payloads -------------------------------------


class DocumentRefPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    url: str | None = None
    zip_url: str | None = Field(default=None, validation_alias=AliasChoices("zip_url", "zipUrl"))
    text: str | None = None
    topic: str | None = None

    @field_validator("url", "zip_url", "text", "topic", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    def to_ref(self) -> DocumentRef:
        return DocumentRef(url=self.url, zip_url=self.zip_url, text=self.text, topic=self.topic)


class StudentInfoPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str | None = None
    roll_number: str | None = Field(default=None, validation_alias=AliasChoices("roll_number", "rollNumber", "roll_no"))
    class_name: str | None = Field(default=None, validation_alias=AliasChoices("class", "class_name", "className"))
    subject: str | None = None

    @field_validator("name", "roll_number", "class_name", "subject", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Any:
        if v is None or isinstance(v, str):
            return v
        return str(v)

    def to_info(self) -> StudentInfo:
        return StudentInfo(
            name=self.name or "",
            roll_number=self.roll_number or "",
            class_name=self.class_name or "",
            subject=self.subject or "",
        )


class EvaluatePaperPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    testId: str | None = None
    questionPaper: DocumentRefPayload | None = None
    answerKey: DocumentRefPayload | None = None
    studentAnswer: DocumentRefPayload | None = None
    studentInfo: StudentInfoPayload | None = None
    retryAttempt: int = Field(default=0, ge=0)

    @field_validator("testId", mode="before")
    @classmethod
    def _normalize_test_id(cls, v: Any) -> Any:
        if v is None:
            return None
        value = str(v).strip()
        return value or None

    @field_validator("retryAttempt", mode="before")
    @classmethod
    def _default_retry(cls, v: Any) -> Any:
        return 0 if v is None else v

    def to_request(self) -> EvaluationRequest:
        return EvaluationRequest(
            test_id=self.testId or "",
            student_answer=self.studentAnswer.to_ref() if self.studentAnswer else DocumentRef(),
            question_paper=self.questionPaper.to_ref() if self.questionPaper else None,
            answer_key=self.answerKey.to_ref() if self.answerKey else None,
            student_info=self.studentInfo.to_info() if self.studentInfo else StudentInfo(),
            retry_attempt=self.retryAttempt,
        )


# ----------------------------- Helpers --------------------------------------


def _private_response(body: dict, *, status_code: int) -> JSONResponse:
    return JSONResponse(body, status_code=status_code, headers={"Cache-Control": "private, no-store"})


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _error(
    message: str,
    *,
    status_code: int,
    kind: str,
    details: Any = None,
    help: Optional[str] = None,
    retry_attempt: int = 0,
    diagnostics: Optional[dict] = None,
    stack: Optional[str] = None,
) -> JSONResponse:
    telemetry.increment_counter("evaluation_requests_total", outcome=kind)
    body: dict[str, Any] = {"error": message, "timestamp": _timestamp()}
    if details is not None:
        body["details"] = details
    if help:
        body["help"] = help
    if retry_attempt > 0:
        if diagnostics is not None:
            body["diagnostics"] = diagnostics
        if stack:
            body["stack"] = stack
    return _private_response(body, status_code=status_code)


def _new_fetch_client(timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout, follow_redirects=True)


async def _run_until_disconnected(
    work: Awaitable[Any],
    is_disconnected: Callable[[], Awaitable[bool]],
    *,
    poll_interval: float = DISCONNECT_POLL_SECONDS,
) -> Any:
    """Await `work`, cancelling it as soon as `is_disconnected()` reports true."""
    task = asyncio.ensure_future(work)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=poll_interval)
            if done:
                return task.result()
            if await is_disconnected():
                task.cancel()
                await asyncio.wait({task})
                raise ClientDisconnectedError("Client disconnected before the evaluation finished")
    finally:
        if not task.done():
            task.cancel()


# ----------------------------- Endpoint -------------------------------------


@evaluation_router.post("/functions/v1/evaluate-paper")
@evaluation_router.post("/api/evaluate-paper")
async def evaluate_paper(request: Request):
    """
    Grade one student answer sheet.

    Parameters:
        request: JSON body with `testId`, `studentAnswer`, optional
            `questionPaper`, `answerKey`, `studentInfo`, `retryAttempt`.

    Behavior:
        - Builds request-scoped HTTP clients and closes them afterwards.
        - Adds `diagnostics` and `stack` to error bodies only when
          `retryAttempt > 0`.
        - Cancels the pipeline when the client disconnects mid-evaluation.
    """
    try:
        raw = await request.json()
    except ValueError:
        return _error("Invalid JSON in request body", status_code=400, kind="bad_request")
    if not isinstance(raw, dict):
        return _error("Request body must be a JSON object", status_code=400, kind="bad_request")
    try:
        payload = EvaluatePaperPayload.model_validate(raw)
    except ValidationError as exc:
        details = [{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in exc.errors()]
        return _error("Invalid request body", status_code=400, kind="bad_request", details=details)
    if not payload.testId:
        return _error("Missing required field: testId", status_code=400, kind="bad_request")
    if payload.studentAnswer is None:
        return _error("Missing required field: studentAnswer", status_code=400, kind="bad_request")

    eval_request = payload.to_request()
    retry = eval_request.retry_attempt

    try:
        config = load_evaluation_config()
        store_config = load_document_store_config()
    except ValueError as exc:
        logger.error("evaluation.request action=config_invalid error=%s", exc)
        return _error("Invalid service configuration", status_code=500, kind="configuration", details=str(exc))

    try:
        config.require_credentials()
    except ConfigurationError as exc:
        return _error(
            "Missing model credentials", status_code=401, kind="credentials", details=str(exc), help=CREDENTIALS_HELP
        )

    fetch_client = _new_fetch_client(config.timeout_fetch_seconds)
    model_client = None
    document_store = None
    pipeline: Optional[EvaluationPipeline] = None
    try:
        model_client = build_model_client(config)
        document_store = build_document_store(store_config)
        pipeline = EvaluationPipeline(
            config, model_client=model_client, document_store=document_store, fetch_client=fetch_client
        )
        logger.info("evaluation.request action=start test_id=%s retry=%s backend=%s", eval_request.test_id, retry, config.backend)
        body = await _run_until_disconnected(pipeline.run(eval_request), request.is_disconnected)
    except ClientDisconnectedError:
        logger.warning("evaluation.request action=client_disconnected test_id=%s", eval_request.test_id)
        return _error("Client closed request", status_code=499, kind="client_disconnected")
    except InputValidationError as exc:
        return _error(str(exc), status_code=400, kind="bad_request")
    except ConfigurationError as exc:
        return _error(
            "Missing model credentials", status_code=401, kind="credentials", details=str(exc), help=CREDENTIALS_HELP
        )
    except ConnectivityError as exc:
        return _error(
            str(exc),
            status_code=503,
            kind="connectivity",
            details={"kind": exc.kind},
            help=exc.help,
            retry_attempt=retry,
            diagnostics=pipeline.trace.diagnostics() if pipeline else None,
        )
    except EvaluationTimeoutError as exc:
        logger.error("evaluation.request action=timeout test_id=%s", eval_request.test_id)
        return _error(
            str(exc),
            status_code=500,
            kind="timeout",
            details={"kind": "timeout"},
            help="The documents may be too large. Try fewer or smaller pages and resubmit.",
            retry_attempt=retry,
            diagnostics=pipeline.trace.diagnostics() if pipeline else None,
        )
    except (DocumentAccessError, ParseError, ModelResponseError) as exc:
        kind = {
            DocumentAccessError: "document_access",
            ParseError: "parse",
        }.get(type(exc), "upstream")
        logger.error("evaluation.request action=failed kind=%s test_id=%s error=%s", kind, eval_request.test_id, exc)
        details: dict[str, Any] = {"kind": kind}
        if isinstance(exc, ModelResponseError) and exc.status is not None:
            details["status"] = exc.status
        return _error(
            str(exc),
            status_code=500,
            kind=kind,
            details=details,
            help=DOCUMENT_HELP if kind == "document_access" else None,
            retry_attempt=retry,
            diagnostics=pipeline.trace.diagnostics() if pipeline else None,
            stack=traceback.format_exc(),
        )
    except Exception as exc:
        logger.exception("evaluation.request action=unhandled test_id=%s", eval_request.test_id)
        return _error(
            f"Unhandled error: {exc}",
            status_code=500,
            kind="unhandled",
            details={"kind": "unhandled", "type": type(exc).__name__},
            retry_attempt=retry,
            diagnostics=pipeline.trace.diagnostics() if pipeline else None,
            stack=traceback.format_exc(),
        )
    finally:
        await fetch_client.aclose()
        if model_client is not None:
            await model_client.aclose()
        if document_store is not None and hasattr(document_store, "aclose"):
            await document_store.aclose()

    telemetry.increment_counter("evaluation_requests_total", outcome="ok")
    return _private_response(body, status_code=200)


__all__ = ["evaluation_router", "EvaluatePaperPayload", "DocumentRefPayload", "StudentInfoPayload"]
