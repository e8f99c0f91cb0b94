"""
In-memory telemetry counters for the evaluation pipeline.

Intent:
    Keep instrumentation simple while providing introspection hooks for unit
    tests and the health endpoint. Counters are process-local and reset on
    restart.

Counters:
    evaluation_requests_total{outcome}
    vision_images_total{status}
    vision_batches_total{status}
    json_parse_total{stage,strategy}
"""
from __future__ import annotations

from collections import defaultdict
from threading import Lock
from typing import Dict, Tuple

LabelKey = Tuple[Tuple[str, str], ...]
_counters: Dict[str, Dict[LabelKey, int]] = defaultdict(dict)
_lock = Lock()


def _label_key(labels: dict[str, str] | None) -> LabelKey:
    if not labels:
        return tuple()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def increment_counter(name: str, *, amount: int = 1, **labels: str) -> None:
    """Increase a named counter by `amount` (defaults to 1)."""
    if amount == 0:
        return
    key = _label_key(labels)
    with _lock:
        current = _counters[name].get(key, 0)
        _counters[name][key] = current + amount


def counter_snapshot(name: str) -> dict[LabelKey, int]:
    """Return a shallow copy of the stored counter values."""
    with _lock:
        return dict(_counters.get(name, {}))


def counter_value(name: str, **labels: str) -> int:
    key = _label_key(labels)
    with _lock:
        return _counters.get(name, {}).get(key, 0)


def all_counters() -> dict[str, dict[str, int]]:
    """Flatten every counter into `{name: {"k=v,k=v": value}}` for JSON output."""
    with _lock:
        return {
            name: {",".join(f"{k}={v}" for k, v in key) or "_": value for key, value in values.items()}
            for name, values in _counters.items()
        }


def reset_for_tests() -> None:
    """Clear all counters. Intended for pytest fixtures."""
    with _lock:
        _counters.clear()
