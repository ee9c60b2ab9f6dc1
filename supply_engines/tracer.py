"""
supply_engines.tracer -- Engine invocation tracer emitting SUPPLY_ENGINE_TRACE.

Responsibility:
    ``@traced_engine`` wraps a pure engine call with one structured trace log
    record: engine name and version, a deterministic fingerprint of selected
    keyword inputs, result size where the result has one, and duration.

Architecture position:
    Engines -- infrastructure support for the pure calculation layer.
    Emits a log record only; never touches inputs or outputs.

Invariants enforced:
    - Fingerprints are deterministic: dict keys are sorted, sequences keep
      their order, and the hash is SHA-256 truncated to 16 hex chars.
    - Missing fingerprint fields are recorded as "null".

Usage:
    from supply_engines.tracer import traced_engine

    @traced_engine("dispensed_usage_comparison", "1.0",
                   fingerprint_fields=("page", "limit"))
    def compare(self, *, dispensed, usage, page, limit):
        ...
"""

from __future__ import annotations

import functools
import hashlib
import logging
import time
from collections.abc import Callable
from dataclasses import asdict, is_dataclass
from typing import Any

# Lives under the kernel namespace so configure_logging() picks it up
_logger = logging.getLogger("supply_kernel.engines.tracer")


def _canonicalize(value: Any) -> str:
    """Stable string form of a value for fingerprinting."""
    if value is None:
        return "null"
    if isinstance(value, (bool, int, float)):
        return str(value)
    if isinstance(value, str):
        return value
    if is_dataclass(value) and not isinstance(value, type):
        return _canonicalize(asdict(value))
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        return "{" + ",".join(f"{k}:{_canonicalize(v)}" for k, v in items) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_canonicalize(v) for v in value) + "]"
    return str(value)


def compute_input_fingerprint(
    fingerprint_fields: tuple[str, ...],
    kwargs: dict[str, Any],
) -> str:
    """16-char SHA-256 prefix over the canonical form of the named kwargs."""
    parts = [f"{name}={_canonicalize(kwargs.get(name))}" for name in fingerprint_fields]
    canonical = "|".join(parts)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    """Decorator that emits SUPPLY_ENGINE_TRACE for pure engine invocations."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            fp = ""
            if fingerprint_fields:
                fp = compute_input_fingerprint(fingerprint_fields, kwargs)

            t0 = time.monotonic()
            result = func(*args, **kwargs)
            duration_ms = round((time.monotonic() - t0) * 1000, 2)

            _logger.info(
                "SUPPLY_ENGINE_TRACE",
                extra={
                    "trace_type": "SUPPLY_ENGINE_TRACE",
                    "engine_name": engine_name,
                    "engine_version": engine_version,
                    "input_fingerprint": fp,
                    "duration_ms": duration_ms,
                    "function": func.__qualname__,
                },
            )
            return result

        return wrapper

    return decorator
