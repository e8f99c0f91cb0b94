"""Model client adapters for the evaluation pipeline.

Intent:
    Keep runtime backends discoverable behind one factory so the pipeline can
    switch between the signed Bedrock endpoint, a bearer-token endpoint and the
    deterministic stub (mirrors `AI_BACKEND`).

Exports:
    The individual modules expose a `build()` function returning an object that
    implements `ModelClientProtocol`; `build_model_client()` picks one.
"""
from __future__ import annotations

from typing import Optional

import httpx

from assesslab.evaluation.config import EvaluationConfig
from assesslab.evaluation.ports import ModelClientProtocol


def build_model_client(
    config: EvaluationConfig, *, http_client: Optional[httpx.AsyncClient] = None
) -> ModelClientProtocol:
    """Instantiate the model client selected by `config.backend`."""
    if config.backend == "bedrock":
        from assesslab.evaluation.adapters import bedrock_client

        return bedrock_client.build(config, http_client=http_client)
    if config.backend == "openai":
        from assesslab.evaluation.adapters import openai_client

        return openai_client.build(config, http_client=http_client)
    from assesslab.evaluation.adapters import stub_model

    return stub_model.build()


__all__ = ["build_model_client"]
