"""
Extractors: document text (OCR), structured questions and answer matching.

Intent:
    Turn document references into text and text into structure. OCR of the
    student's answer sheet is stage-critical and raises; question extraction
    and semantic matching are best effort and report failures through
    `StageOutcome(ok=False)` so the pipeline can degrade instead of abort.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from assesslab.evaluation import prompts
from assesslab.evaluation.adapters.responses import extract_text
from assesslab.evaluation.config import EvaluationConfig
from assesslab.evaluation.json_repair import parse_model_json
from assesslab.evaluation.ports import (
    AnswerMatch,
    DocumentRef,
    DocumentText,
    EvaluationError,
    ExtractedQuestion,
    ModelClientProtocol,
    StageOutcome,
)
from assesslab.vision.document_converter import is_zip_reference, resolve_pages_as_images
from assesslab.vision.orchestrator import (
    VisionRunReport,
    process_image_contents_with_vision,
    process_images_with_vision,
)
from assesslab.vision.zip_pages import fetch_zip_pages

LOG = logging.getLogger(__name__)


def _first(item: dict, *keys: str) -> Any:
    for key in keys:
        value = item.get(key)
        if value is not None and value != "":
            return value
    return None


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def normalize_questions(raw: Any) -> list[ExtractedQuestion]:
    """Accept `{"questions": [...]}` or a bare list; tolerate field variants."""
    items = raw.get("questions") if isinstance(raw, dict) else raw
    if not isinstance(items, list):
        return []
    questions: list[ExtractedQuestion] = []
    for idx, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            continue
        text = _first(item, "questionText", "question_text", "question", "text")
        if not text:
            continue
        number = _first(item, "questionNumber", "question_no", "number", "id")
        questions.append(
            ExtractedQuestion(
                number=str(number) if number is not None else str(idx),
                text=str(text).strip(),
                topic=str(_first(item, "topic") or ""),
                difficulty=str(_first(item, "difficulty") or ""),
                marks=_as_float(_first(item, "marks", "max_marks", "maxMarks")),
            )
        )
    return questions


async def extract_questions(model: ModelClientProtocol, question_paper_text: str) -> StageOutcome[list[ExtractedQuestion]]:
    """Best effort: never raises, returns an empty list on any failure."""
    if not question_paper_text or not question_paper_text.strip():
        return StageOutcome(value=[], ok=False, reason="no question paper text")
    try:
        raw = await model.invoke_text(
            [{"role": "user", "content": prompts.question_extraction_prompt(question_paper_text)}],
            max_tokens=4000,
            temperature=0.2,
            system=prompts.QUESTION_EXTRACTION_SYSTEM,
        )
        parsed = parse_model_json(extract_text(raw), stage="question_extraction")
    except EvaluationError as exc:
        LOG.warning("evaluation.extract.questions action=degraded error=%s", type(exc).__name__)
        return StageOutcome(value=[], ok=False, reason=str(exc))
    questions = normalize_questions(parsed.value)
    LOG.info("evaluation.extract.questions action=done count=%s strategy=%s", len(questions), parsed.strategy)
    return StageOutcome(value=questions, ok=bool(questions), reason="" if questions else "no questions found")


async def match_answers(
    model: ModelClientProtocol, question_text: str, student_answer_text: str
) -> StageOutcome[list[AnswerMatch]]:
    """Best effort semantic matching of answers to questions; never raises."""
    if not question_text.strip() or not student_answer_text.strip():
        return StageOutcome(value=[], ok=False, reason="missing text")
    try:
        raw = await model.invoke_text(
            [{"role": "user", "content": prompts.answer_match_prompt(question_text, student_answer_text)}],
            max_tokens=4000,
            temperature=0.2,
            system=prompts.ANSWER_MATCH_SYSTEM,
        )
        parsed = parse_model_json(extract_text(raw), expect=list, stage="answer_matching")
    except EvaluationError as exc:
        LOG.warning("evaluation.extract.matching action=degraded error=%s", type(exc).__name__)
        return StageOutcome(value=[], ok=False, reason=str(exc))
    matches: list[AnswerMatch] = []
    for item in parsed.value:
        if not isinstance(item, dict):
            continue
        score = _as_float(_first(item, "similarityScore", "similarity", "confidence")) or 0.0
        matches.append(
            AnswerMatch(
                question=str(_first(item, "question", "questionText") or ""),
                answer=str(_first(item, "answer", "answerText") or ""),
                similarity_score=min(1.0, max(0.0, score)),
            )
        )
    return StageOutcome(value=matches, ok=True)


async def extract_document_text(
    model: ModelClientProtocol,
    document: Optional[DocumentRef],
    role: str,
    *,
    fetch_client: httpx.AsyncClient,
    config: EvaluationConfig,
    report: Optional[VisionRunReport] = None,
) -> DocumentText:
    """
    Resolve one document reference to text.

    Order: inline `text`, then `zip_url`, then `url`. A reference carrying only
    a topic yields empty text with source "topic".

    Raises:
        DocumentAccessError: when the referenced files cannot be read.
    """
    if document is None:
        return DocumentText(text="", source="none")
    if document.text and document.text.strip():
        return DocumentText(text=document.text, source="provided")

    system, prompt = prompts.OCR_ROLES[role]
    vision_kwargs = dict(
        max_tokens=4000,
        temperature=0.2,
        system=system,
        batch_size=config.vision_batch_size,
        report=report,
    )

    if document.zip_url:
        if is_zip_reference(document.zip_url):
            outcome = await fetch_zip_pages(document.zip_url, client=fetch_client, timeout=config.timeout_fetch_seconds)
            text = await process_image_contents_with_vision(model, prompt, outcome, **vision_kwargs)
            return DocumentText(text=text, source="zip")
        text = await process_images_with_vision(
            model,
            prompt,
            document.zip_url,
            fetch_client=fetch_client,
            fetch_timeout=config.timeout_fetch_seconds,
            **vision_kwargs,
        )
        return DocumentText(text=text, source="ocr")

    if document.url:
        if document.url.strip().startswith("["):
            urls: Any = document.url
        else:
            urls = await resolve_pages_as_images(
                document.url,
                client=fetch_client,
                page_limit=config.pdf_page_probe_limit,
                timeout=config.timeout_head_seconds,
            )
        text = await process_images_with_vision(
            model,
            prompt,
            urls,
            fetch_client=fetch_client,
            fetch_timeout=config.timeout_fetch_seconds,
            **vision_kwargs,
        )
        LOG.info("evaluation.extract.document action=ocr role=%s chars=%s", role, len(text))
        return DocumentText(text=text, source="ocr")

    if document.topic:
        return DocumentText(text="", source="topic")
    return DocumentText(text="", source="none")


__all__ = [
    "extract_document_text",
    "extract_questions",
    "match_answers",
    "normalize_questions",
]
