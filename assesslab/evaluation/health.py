"""
Readiness checks for the evaluation service.

Intent:
    Report whether the service can accept evaluation requests (configuration
    parses, credentials for the selected backend are present, cache store
    configured) without calling the metered model endpoint.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from assesslab.evaluation.config import load_evaluation_config
from assesslab.evaluation.ports import ConfigurationError
from assesslab.storage.config import load_document_store_config


@dataclass(frozen=True)
class HealthCheckResult:
    check: str
    status: str
    detail: Optional[str] = None


@dataclass(frozen=True)
class HealthProbeResult:
    status: str
    backend: Optional[str]
    checks: List[HealthCheckResult]


class EvaluationHealthService:
    def probe(self) -> HealthProbeResult:
        checks: List[HealthCheckResult] = []
        try:
            config = load_evaluation_config()
        except ValueError as exc:
            checks.append(HealthCheckResult(check="config", status="failed", detail=str(exc)))
            return HealthProbeResult(status="degraded", backend=None, checks=checks)
        checks.append(HealthCheckResult(check="config", status="ok", detail=f"model={config.model_name}"))

        try:
            config.require_credentials()
            checks.append(HealthCheckResult(check="credentials", status="ok"))
        except ConfigurationError as exc:
            checks.append(HealthCheckResult(check="credentials", status="failed", detail=str(exc)))

        try:
            store = load_document_store_config()
            detail = f"table={store.table}" if store.enabled else "disabled (every lookup misses)"
            checks.append(HealthCheckResult(check="document_store", status="ok", detail=detail))
        except ValueError as exc:
            checks.append(HealthCheckResult(check="document_store", status="failed", detail=str(exc)))

        overall = "healthy" if all(check.status == "ok" for check in checks) else "degraded"
        return HealthProbeResult(status=overall, backend=config.backend, checks=checks)


EVALUATION_HEALTH_SERVICE = EvaluationHealthService()

__all__ = [
    "HealthCheckResult",
    "HealthProbeResult",
    "EvaluationHealthService",
    "EVALUATION_HEALTH_SERVICE",
]
