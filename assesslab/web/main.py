"AssessLab evaluation service"
from __future__ import annotations

import os
import sys

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from assesslab.web import config as _cfg
from assesslab.web.routes.evaluation import evaluation_router
from assesslab.web.routes.operations import operations_router


def _should_load_dotenv() -> bool:
    """Decide if we should load a local .env file.

    - Never load under pytest to avoid contaminating test env.
    - Allow explicit opt-out via ASSESSLAB_ENABLE_DOTENV (default true
      outside pytest).
    """
    if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        return False
    flag = (os.getenv("ASSESSLAB_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


if _should_load_dotenv():
    from dotenv import load_dotenv

    load_dotenv()

# Minimal production safety checks (fail-fast on insecure config)
_cfg.ensure_secure_config_on_startup()


def _cors_origins() -> list[str]:
    raw = (os.getenv("CORS_ALLOW_ORIGINS") or "*").strip()
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


app = FastAPI(title="AssessLab evaluation", description="Automated grading of scanned exam papers", version="0.1.0")

# Browser clients call the function directly; preflights must succeed.
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_methods=["POST", "OPTIONS", "GET"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)

app.include_router(evaluation_router)
app.include_router(operations_router)


@app.get("/health")
async def health_check():
    # Minimal liveness endpoint used by orchestrators and tests.
    return JSONResponse({"status": "healthy"}, headers={"Cache-Control": "private, no-store"})


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "assesslab.web.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )
