"""Operations endpoints (readiness and counters for operators)."""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from assesslab.evaluation import health as evaluation_health
from assesslab.evaluation import telemetry

operations_router = APIRouter(tags=["Operations"])


def _private_response(body: dict, *, status_code: int) -> JSONResponse:
    return JSONResponse(body, status_code=status_code, headers={"Cache-Control": "private, no-store"})


@operations_router.get("/internal/health/evaluation")
async def evaluation_health_check():
    """
    Return readiness diagnostics and request counters for the evaluation service.

    Behavior:
        200 when every check passes, 503 otherwise. No model call is made.
    """
    probe = evaluation_health.EVALUATION_HEALTH_SERVICE.probe()
    body = {
        "status": probe.status,
        "backend": probe.backend,
        "checks": [
            {"check": check.check, "status": check.status, "detail": check.detail}
            for check in probe.checks
        ],
        "counters": telemetry.all_counters(),
    }
    status_code = 200 if probe.status == "healthy" else 503
    return _private_response(body, status_code=status_code)
