"""
Evaluator: grade the student's answers with one model call.

Two prompt shapes:
    - with extracted questions (numbered list, match_method "extracted_question")
    - raw question paper text (match_method "direct_numbering" or
      "semantic_matching", chosen by the model)

The model's JSON is normalized before it leaves this module:
    - per-answer scores coerced to numbers, max >= 0, assigned clamped to [0, max]
    - confidence clamped to [0, 1]
    - summary totals recomputed from the answers; the model's declared total is
      kept only as `declaredTotalScore`
"""
from __future__ import annotations

import logging
import math
import re
from typing import Any, Optional, Sequence

from assesslab.evaluation import prompts
from assesslab.evaluation.adapters.responses import extract_text
from assesslab.evaluation.json_repair import parse_model_json, unwrap_code_block
from assesslab.evaluation.ports import (
    AnswerRecord,
    EvaluationResult,
    EvaluationSummary,
    ExtractedQuestion,
    ModelClientProtocol,
    ParseError,
    StudentInfo,
)

LOG = logging.getLogger(__name__)

_SCORE_FRACTION = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*/\s*(-?\d+(?:\.\d+)?)\s*$")


def _is_evaluation(obj: Any) -> bool:
    return isinstance(obj, dict) and isinstance(obj.get("answers"), list) and obj.get("summary") is not None


def _locate_evaluation(obj: Any) -> Optional[dict]:
    """Find the evaluation object, also when the model nested it one level deep."""
    if _is_evaluation(obj):
        return obj
    if isinstance(obj, dict):
        for value in obj.values():
            if _is_evaluation(value):
                return value
    return None


def _number(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool) or value is None:
        return default
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(result) or math.isinf(result):
        return default
    return result


def _clean(value: float) -> float | int:
    return int(value) if float(value).is_integer() else round(value, 2)


def parse_score(raw: Any, fallback_max: Optional[float] = None) -> tuple[float, float]:
    """Coerce the model's score into (assigned, max) with 0 <= assigned <= max."""
    assigned: float
    maximum: float
    if isinstance(raw, (list, tuple)) and raw:
        assigned = _number(raw[0])
        maximum = _number(raw[1]) if len(raw) > 1 else _number(fallback_max, assigned)
    elif isinstance(raw, dict):
        assigned = _number(raw.get("assigned", raw.get("score")))
        maximum = _number(raw.get("max", raw.get("maximum", fallback_max)))
    elif isinstance(raw, str) and _SCORE_FRACTION.match(raw):
        match = _SCORE_FRACTION.match(raw)
        assigned, maximum = float(match.group(1)), float(match.group(2))
    else:
        assigned = _number(raw)
        maximum = _number(fallback_max, assigned)
    maximum = max(0.0, maximum)
    assigned = min(max(0.0, assigned), maximum)
    return assigned, maximum


def percentage(assigned: float, maximum: float) -> int:
    """Rounded percentage (half up), 0 when nothing was gradable."""
    if maximum <= 0:
        return 0
    return int(math.floor(100 * assigned / maximum + 0.5))


def recompute_summary(answers: Sequence[AnswerRecord], declared: Any = None) -> EvaluationSummary:
    total_assigned = sum(answer.score[0] for answer in answers)
    total_max = sum(answer.score[1] for answer in answers)
    declared_total = None
    if isinstance(declared, dict) and isinstance(declared.get("totalScore"), list):
        declared_total = declared["totalScore"]
    return EvaluationSummary(
        total_assigned=_clean(total_assigned),
        total_max=_clean(total_max),
        percentage=percentage(total_assigned, total_max),
        declared_total=declared_total,
    )


def normalize_evaluation(
    raw: dict,
    student_info: StudentInfo,
    *,
    questions: Sequence[ExtractedQuestion] = (),
    default_match_method: str = "direct_numbering",
) -> EvaluationResult:
    marks_by_number = {q.number: q.marks for q in questions if q.marks is not None}
    answers: list[AnswerRecord] = []
    for idx, item in enumerate(raw.get("answers") or [], start=1):
        if not isinstance(item, dict):
            continue
        number = str(item.get("question_no") or item.get("questionNumber") or item.get("question_number") or idx)
        assigned, maximum = parse_score(
            item.get("score", item.get("marks")), fallback_max=item.get("max_score", marks_by_number.get(number))
        )
        confidence = min(1.0, max(0.0, _number(item.get("confidence"), 0.0)))
        answers.append(
            AnswerRecord(
                question_no=number,
                question=str(item.get("question") or item.get("questionText") or ""),
                answer=str(item.get("answer") or item.get("studentAnswer") or ""),
                expected_answer=str(item.get("expected_answer") or item.get("expectedAnswer") or ""),
                score=(_clean(assigned), _clean(maximum)),
                remarks=str(item.get("remarks") or item.get("feedback") or ""),
                confidence=confidence,
                match_method=str(item.get("match_method") or default_match_method),
            )
        )
    return EvaluationResult(
        student_name=str(raw.get("student_name") or student_info.name or ""),
        roll_no=str(raw.get("roll_no") or student_info.roll_number or ""),
        class_name=str(raw.get("class") or student_info.class_name or ""),
        subject=str(raw.get("subject") or student_info.subject or ""),
        answers=answers,
        summary=recompute_summary(answers, raw.get("summary")),
    )


async def evaluate(
    model: ModelClientProtocol,
    *,
    test_id: str,
    questions: Sequence[ExtractedQuestion],
    question_paper_text: Optional[str],
    answer_key_text: Optional[str],
    answer_key_topic: Optional[str],
    student_answer_text: str,
    student_info: StudentInfo,
) -> EvaluationResult:
    """
    Grade the student's answers.

    Raises:
        ParseError: when the model output lacks an `answers` list or `summary`.
        ModelResponseError: when the model call itself fails.
    """
    if questions:
        user_prompt = prompts.evaluation_prompt_with_questions(
            questions, answer_key_text, answer_key_topic, student_answer_text, student_info
        )
        default_method = "extracted_question"
    else:
        user_prompt = prompts.evaluation_prompt_raw(
            question_paper_text, answer_key_text, answer_key_topic, student_answer_text, student_info
        )
        default_method = "direct_numbering"

    raw = await model.invoke_text(
        [{"role": "user", "content": user_prompt}],
        max_tokens=4000,
        temperature=0.3,
        system=prompts.evaluation_system(test_id),
    )
    text = extract_text(raw)
    parsed = parse_model_json(text, expect=dict, stage="evaluation")
    evaluation = _locate_evaluation(parsed.value)
    if evaluation is None and parsed.strategy != "fenced":
        # The first decodable object may be prose-level JSON; the fenced block is authoritative.
        fenced = unwrap_code_block(text)
        if fenced != text.strip():
            evaluation = _locate_evaluation(parse_model_json(fenced, expect=dict, stage="evaluation_retry").value)
    if evaluation is None:
        raise ParseError("Invalid evaluation structure: expected an 'answers' list and a 'summary'")

    result = normalize_evaluation(evaluation, student_info, questions=questions, default_match_method=default_method)
    LOG.info(
        "evaluation.evaluate action=done test_id=%s answers=%s path=%s",
        test_id,
        len(result.answers),
        default_method,
    )
    return result


__all__ = [
    "evaluate",
    "normalize_evaluation",
    "parse_score",
    "percentage",
    "recompute_summary",
]
