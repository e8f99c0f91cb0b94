"""
Configuration parsing and validation for the evaluation pipeline.

Intent:
    Provide a single place to read environment variables that control
    backend selection, credentials, model names and timeouts.

Why:
    Centralising configuration keeps defaults explicit and lets tests exercise
    config behaviour without booting the web app. Missing credentials are not
    a load error: the pipeline reports them per request (`require_credentials`)
    so the caller receives actionable help text.
"""
from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Optional

from assesslab.evaluation.ports import ConfigurationError


DEFAULT_BEDROCK_MODEL = "anthropic.claude-3-5-sonnet-20240620-v1:0"
DEFAULT_OPENAI_URL = "https://api.openai.com/v1/chat/completions"
DEFAULT_OPENAI_MODEL = "gpt-4o"
BACKENDS = {"bedrock", "openai", "stub"}


@dataclass(frozen=True)
class EvaluationConfig:
    backend: str  # "bedrock" | "openai" | "stub"
    aws_access_key_id: Optional[str]
    aws_secret_access_key: Optional[str]
    aws_region: str
    signing_service: str
    endpoint_service: str
    bedrock_model_id: str
    openai_api_key: Optional[str]
    openai_base_url: str
    openai_model: str
    timeout_model_seconds: int
    timeout_fetch_seconds: int
    timeout_head_seconds: int
    evaluation_timeout_seconds: int
    vision_batch_size: int
    pdf_page_probe_limit: int

    @property
    def bedrock_host(self) -> str:
        return f"{self.endpoint_service}.{self.aws_region}.amazonaws.com"

    @property
    def model_name(self) -> str:
        if self.backend == "openai":
            return self.openai_model
        if self.backend == "stub":
            return "stub"
        return self.bedrock_model_id

    def require_credentials(self) -> None:
        """Raise `ConfigurationError` when the selected backend lacks credentials."""
        if self.backend == "bedrock":
            missing = [
                name
                for name, value in (
                    ("AWS_ACCESS_KEY_ID", self.aws_access_key_id),
                    ("AWS_SECRET_ACCESS_KEY", self.aws_secret_access_key),
                    ("AWS_REGION", self.aws_region),
                )
                if not value
            ]
            if missing:
                raise ConfigurationError("Missing AWS credentials: " + ", ".join(missing))
        elif self.backend == "openai" and not self.openai_api_key:
            raise ConfigurationError("Missing API key: OPENAI_API_KEY")


def _int_env(name: str, default: int, *, maximum: int = 300) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got: {raw!r}")
    if value <= 0 or value > maximum:
        raise ValueError(f"{name} out of range (1..{maximum}), got: {value}")
    return value


def _optional_env(name: str) -> Optional[str]:
    value = (os.getenv(name) or "").strip()
    return value or None


def is_prod_like() -> bool:
    env = (os.getenv("ASSESSLAB_ENV") or "dev").lower()
    return env in {"prod", "production", "stage", "staging"}


def load_evaluation_config() -> EvaluationConfig:
    """
    Parse and validate evaluation configuration from environment variables.

    Behavior:
        - `AI_BACKEND` selects "bedrock" (default), "openai" or "stub".
        - The stub backend is refused in production/staging.
        - Timeouts are validated (1..300 seconds, global deadline 1..900).
        - `VISION_BATCH_SIZE` is capped at 4 images per call.
    """
    backend = (os.getenv("AI_BACKEND") or "bedrock").strip().lower()
    if backend not in BACKENDS:
        raise ValueError("AI_BACKEND must be 'bedrock', 'openai' or 'stub'")
    if backend == "stub" and is_prod_like():
        raise ValueError("AI_BACKEND=stub is not allowed in production/staging environments.")

    batch_size = _int_env("VISION_BATCH_SIZE", 4, maximum=4)

    return EvaluationConfig(
        backend=backend,
        aws_access_key_id=_optional_env("AWS_ACCESS_KEY_ID"),
        aws_secret_access_key=_optional_env("AWS_SECRET_ACCESS_KEY"),
        aws_region=(os.getenv("AWS_REGION") or "us-east-1").strip(),
        signing_service=(os.getenv("BEDROCK_SIGNING_SERVICE") or "bedrock").strip(),
        endpoint_service=(os.getenv("BEDROCK_ENDPOINT_SERVICE") or "bedrock-runtime").strip(),
        bedrock_model_id=(os.getenv("BEDROCK_MODEL_ID") or DEFAULT_BEDROCK_MODEL).strip(),
        openai_api_key=_optional_env("OPENAI_API_KEY"),
        openai_base_url=(os.getenv("OPENAI_BASE_URL") or DEFAULT_OPENAI_URL).strip(),
        openai_model=(os.getenv("OPENAI_MODEL") or DEFAULT_OPENAI_MODEL).strip(),
        timeout_model_seconds=_int_env("AI_TIMEOUT_MODEL", 120),
        timeout_fetch_seconds=_int_env("AI_TIMEOUT_FETCH", 30),
        timeout_head_seconds=_int_env("AI_TIMEOUT_HEAD", 15),
        evaluation_timeout_seconds=_int_env("EVALUATION_TIMEOUT_SECONDS", 300, maximum=900),
        vision_batch_size=batch_size,
        pdf_page_probe_limit=_int_env("PDF_PAGE_PROBE_LIMIT", 4, maximum=50),
    )


__all__ = [
    "DEFAULT_BEDROCK_MODEL",
    "EvaluationConfig",
    "is_prod_like",
    "load_evaluation_config",
]
