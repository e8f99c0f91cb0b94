from __future__ import annotations

import pytest

from assesslab.evaluation import telemetry
from assesslab.evaluation.json_repair import parse_model_json, unwrap_code_block
from assesslab.evaluation.ports import ParseError

OBJECT_TEXT = '{"answers": [{"question_no": "1"}], "summary": {"totalScore": [1, 2]}}'
EXPECTED = {"answers": [{"question_no": "1"}], "summary": {"totalScore": [1, 2]}}


@pytest.mark.parametrize(
    "raw, strategy",
    [
        (OBJECT_TEXT, "direct"),
        (f"```json\n{OBJECT_TEXT}\n```", "fenced"),
        (f"Here is the evaluation you asked for:\n{OBJECT_TEXT}\nLet me know if anything is unclear.", "braced"),
    ],
)
def test_three_forms_yield_the_same_object(raw, strategy):
    parsed = parse_model_json(raw, expect=dict, stage="evaluation")
    assert parsed.value == EXPECTED
    assert parsed.strategy == strategy
    assert telemetry.counter_value("json_parse_total", stage="evaluation", strategy=strategy) == 1


def test_list_expected_uses_brackets():
    raw = 'Matches:\n[{"question": "Q1", "answer": "A", "similarityScore": 0.8}]\nDone.'
    parsed = parse_model_json(raw, expect=list, stage="answer_matching")
    assert parsed.value[0]["similarityScore"] == 0.8
    assert parsed.strategy == "braced"


def test_wrong_container_type_is_a_failure():
    with pytest.raises(ParseError):
        parse_model_json("[1, 2, 3]", expect=dict)


def test_any_container_when_nothing_expected():
    assert parse_model_json("noise [1, 2] noise").value == [1, 2]


@pytest.mark.parametrize("raw", ["", "   ", "I could not grade this paper.", "{broken: json"])
def test_unrecoverable_output_raises_and_counts(raw):
    with pytest.raises(ParseError):
        parse_model_json(raw, stage="question_extraction")
    if raw.strip():
        assert telemetry.counter_value("json_parse_total", stage="question_extraction", strategy="failed") == 1


def test_unwrap_code_block_without_fence_returns_stripped_text():
    assert unwrap_code_block("  plain  ") == "plain"
    assert unwrap_code_block("```\n[1]\n```") == "[1]"
