"""
Deterministic model client for local development and tests.

Intent:
    Satisfy `ModelClientProtocol` without an external AI service so the whole
    pipeline can run offline.

Behavior:
    - Vision calls return a placeholder transcription.
    - Text calls answer with a minimal JSON body matching the prompt family
      (question extraction, answer matching, evaluation); anything else gets
      "OK", which also satisfies the connectivity probe.
"""
from __future__ import annotations

import json
from typing import Optional, Sequence

from assesslab.evaluation.ports import ImageContent


def _wrap(text: str) -> dict:
    return {"content": [{"type": "text", "text": text}]}


class StubModelClient:
    model_id = "stub"

    def __init__(self) -> None:
        self.calls: list[dict] = []

    async def invoke_text(
        self,
        messages: Sequence[dict],
        *,
        max_tokens: int = 4000,
        temperature: float = 0.5,
        system: Optional[str] = None,
    ) -> dict:
        self.calls.append({"kind": "text", "system": system, "messages": list(messages)})
        hint = (system or "").lower()
        if "extract questions" in hint:
            return _wrap(json.dumps({"questions": []}))
        if "match student answers" in hint:
            return _wrap("[]")
        if "evaluat" in hint:
            body = {
                "student_name": "",
                "roll_no": "",
                "class": "",
                "subject": "",
                "answers": [],
                "summary": {"totalScore": [0, 0], "percentage": 0},
            }
            return _wrap(json.dumps(body))
        return _wrap("OK")

    async def invoke_vision(
        self,
        prompt: str,
        images: Sequence[ImageContent],
        *,
        max_tokens: int = 4000,
        temperature: float = 0.2,
        system: Optional[str] = None,
    ) -> dict:
        self.calls.append({"kind": "vision", "system": system, "images": len(images)})
        return _wrap(f"## Vision placeholder\n\n_No OCR performed in stub mode ({len(images)} images)._")

    async def aclose(self) -> None:
        return None


def build() -> StubModelClient:
    """Factory used by `build_model_client` in stub mode."""
    return StubModelClient()
