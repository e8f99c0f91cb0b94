"""
Startup security checks for the evaluation service.

Why: A production deployment without model credentials, or one still running
the stub backend, would answer every request with an error or fake grades.
This module provides a single guard that fails fast on such configuration
without burdening local development.

Permissions: The caller needs no special privileges. The function reads
environment variables and raises `SystemExit` on fatal misconfiguration.
"""
from __future__ import annotations

import os


def _is_prod_like(env: str) -> bool:
    env_l = (env or "").lower()
    return env_l in {"prod", "production", "stage", "staging"}


def ensure_secure_config_on_startup() -> None:
    """Fail fast on insecure production configuration.

    Checks (prod/stage only):
    - AI_BACKEND must not be "stub".
    - Credentials for the selected backend must be set.
    - A configured Supabase URL needs a non-placeholder service role key.
    """
    env = os.getenv("ASSESSLAB_ENV", "dev")
    if not _is_prod_like(env):
        return

    backend = (os.getenv("AI_BACKEND") or "bedrock").strip().lower()
    if backend == "stub":
        raise SystemExit("Refusing to start: AI_BACKEND=stub is not allowed in production.")
    if backend == "bedrock":
        for name in ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_REGION"):
            if not (os.getenv(name) or "").strip():
                raise SystemExit(f"Refusing to start: {name} is unset in production.")
    if backend == "openai" and not (os.getenv("OPENAI_API_KEY") or "").strip():
        raise SystemExit("Refusing to start: OPENAI_API_KEY is unset in production.")

    if (os.getenv("SUPABASE_URL") or "").strip():
        srole = (os.getenv("SUPABASE_SERVICE_ROLE_KEY") or "").strip()
        if not srole or srole.upper() == "DUMMY_DO_NOT_USE":
            raise SystemExit(
                "Refusing to start: SUPABASE_SERVICE_ROLE_KEY is unset or a dummy placeholder in production."
            )
