"""
Three-stage JSON recovery for model output.

Models often wrap JSON in Markdown fences or surround it with prose. Attempts,
in order, stopping at the first success:

1. `json.loads` on the stripped text ("direct")
2. strip triple-backtick fences and retry ("fenced")
3. take the substring from the first `{` to the last `}` (or `[` .. `]` when a
   list is expected) and retry ("braced")
"""
from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import re
from typing import Any, Optional

from assesslab.evaluation import telemetry
from assesslab.evaluation.ports import ParseError

logger = logging.getLogger(__name__)

_CODE_FENCE_PATTERN = re.compile(r"```(?:[a-zA-Z0-9_-]+)?\s*(.*?)\s*```", re.DOTALL)


@dataclass(frozen=True)
class ParsedJson:
    value: Any
    strategy: str  # "direct" | "fenced" | "braced"


def unwrap_code_block(raw: str) -> str:
    """Strip triple-backtick fences (```json ... ```) emitted by many LLMs."""
    stripped = raw.strip()
    match = _CODE_FENCE_PATTERN.search(stripped)
    if match:
        return match.group(1).strip()
    return stripped


def _delimited(raw: str, opener: str, closer: str) -> Optional[str]:
    start = raw.find(opener)
    end = raw.rfind(closer)
    if start == -1 or end <= start:
        return None
    return raw[start : end + 1]


def _matches(value: Any, expect: Optional[type]) -> bool:
    return expect is None or isinstance(value, expect)


def parse_model_json(raw: str, *, expect: Optional[type] = None, stage: str = "unknown") -> ParsedJson:
    """
    Recover a JSON value from model text.

    Parameters:
        expect: `dict` or `list` to require a container type; a decoded value
            of the wrong type counts as a failed attempt.
        stage: label used for telemetry and logs.

    Raises:
        ParseError: when all three attempts fail.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise ParseError(f"Empty model output ({stage})")

    attempts: list[tuple[str, Optional[str]]] = [("direct", raw.strip()), ("fenced", unwrap_code_block(raw))]
    if expect is list:
        attempts.append(("braced", _delimited(raw, "[", "]")))
    else:
        attempts.append(("braced", _delimited(raw, "{", "}")))
        if expect is None:
            attempts.append(("braced", _delimited(raw, "[", "]")))

    failures: list[str] = []
    for strategy, candidate in attempts:
        if candidate is None:
            failures.append(f"{strategy}: no candidate")
            continue
        try:
            value = json.loads(candidate)
        except ValueError as exc:
            failures.append(f"{strategy}: {exc}")
            continue
        if not _matches(value, expect):
            failures.append(f"{strategy}: expected {expect.__name__}, got {type(value).__name__}")
            continue
        telemetry.increment_counter("json_parse_total", stage=stage, strategy=strategy)
        if strategy != "direct":
            logger.info("evaluation.json_repair action=recovered stage=%s strategy=%s", stage, strategy)
        return ParsedJson(value=value, strategy=strategy)

    telemetry.increment_counter("json_parse_total", stage=stage, strategy="failed")
    logger.warning("evaluation.json_repair action=failed stage=%s chars=%s", stage, len(raw))
    raise ParseError(f"Could not parse model output as JSON ({stage}): " + "; ".join(failures))


__all__ = ["ParsedJson", "parse_model_json", "unwrap_code_block"]
