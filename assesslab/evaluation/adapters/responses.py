"""
Model response shapes and text extraction.

Intent:
    Model endpoints answer in several JSON shapes. Classify the raw body into
    one explicit variant first, then extract its text in one place so a new
    shape fails loudly instead of falling through silently.

Shapes (checked in this order):
    nested_output      {"output": {"content": [...] | "..."}}
    top_level_content  {"content": [...] | "..."}   (Anthropic messages)
    completion         {"completion": "..."}
    message            {"message": {"content": ...}}  (also OpenAI choices[0])
"""
from __future__ import annotations

from dataclasses import dataclass
import json
from typing import Any, Optional

from assesslab.evaluation.ports import ParseError


@dataclass(frozen=True)
class ModelResponse:
    kind: str
    content: Any


def _first_text_block(blocks: list) -> Optional[str]:
    for item in blocks:
        if isinstance(item, dict) and item.get("type") == "text" and isinstance(item.get("text"), str):
            return item["text"]
    return None


def classify_response(raw: Any) -> ModelResponse:
    """Tag the raw body with its shape. Raises `ParseError` on unknown shapes."""
    if not isinstance(raw, dict) or not raw:
        raise ParseError("Empty response from model endpoint")
    output = raw.get("output")
    if isinstance(output, dict) and output.get("content"):
        return ModelResponse("nested_output", output["content"])
    if raw.get("content"):
        return ModelResponse("top_level_content", raw["content"])
    if raw.get("completion"):
        return ModelResponse("completion", raw["completion"])
    message = raw.get("message")
    if isinstance(message, dict) and message.get("content"):
        return ModelResponse("message", message["content"])
    choices = raw.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0] if isinstance(choices[0], dict) else {}
        choice_message = first.get("message")
        if isinstance(choice_message, dict) and choice_message.get("content"):
            return ModelResponse("message", choice_message["content"])
    raise ParseError("Could not extract text from model response")


def extract_text(raw: Any) -> str:
    """Return the text carried by a model response body."""
    response = classify_response(raw)
    text: Optional[str]
    if response.kind in {"nested_output", "top_level_content"}:
        if isinstance(response.content, list):
            text = _first_text_block(response.content)
        elif isinstance(response.content, str):
            text = response.content
        else:
            text = None
    elif response.kind == "completion":
        text = response.content if isinstance(response.content, str) else None
    elif response.kind == "message":
        content = response.content
        text = content if isinstance(content, str) else json.dumps(content)
    else:  # pragma: no cover - classify_response only returns the kinds above
        raise ParseError(f"Unhandled response kind: {response.kind}")
    if not text:
        raise ParseError("Could not extract text from model response")
    return text


__all__ = ["ModelResponse", "classify_response", "extract_text"]
