"""
recon_engines.tracer -- RECON_ENGINE_TRACE records for engine calls.

Responsibility:
    ``@traced_engine`` wraps a pure engine entry point and emits one
    structured record per call carrying the engine name and version, a
    fingerprint of the keyword inputs named by the caller, and the elapsed
    time.  Two calls with equal inputs carry equal fingerprints, which is
    what lets a reviewer line up evaluations across reruns.

Architecture position:
    Engines -- support for the matching layer.  Emits log records only;
    reads no clock other than ``time.monotonic`` for the duration.

Failure modes:
    - Fingerprint fields that were not passed are hashed as ``null``.
    - Positional arguments are not fingerprinted; engines take keywords.
"""

from __future__ import annotations

import dataclasses
import functools
import hashlib
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

from recon_kernel.logging_config import get_logger

logger = get_logger("engines.tracer")

FINGERPRINT_LENGTH = 16


def _canonical(value: Any) -> str:
    """Render *value* so that equal inputs always give the same text."""
    if value is None:
        return "null"
    if isinstance(value, Enum):
        return _canonical(value.value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        body = ",".join(
            f"{f.name}={_canonical(getattr(value, f.name))}"
            for f in dataclasses.fields(value)
        )
        return f"{type(value).__name__}({body})"
    if isinstance(value, dict):
        pairs = sorted((str(k), _canonical(v)) for k, v in value.items())
        return "{" + ",".join(f"{k}:{v}" for k, v in pairs) + "}"
    if isinstance(value, (set, frozenset)):
        return "{" + ",".join(sorted(_canonical(v) for v in value)) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_canonical(v) for v in value) + "]"
    return str(value)


def fingerprint(names: tuple[str, ...], inputs: dict[str, Any]) -> str:
    """Short SHA-256 digest over the named entries of *inputs*."""
    digest = hashlib.sha256()
    for name in names:
        digest.update(f"{name}={_canonical(inputs.get(name))};".encode("utf-8"))
    return digest.hexdigest()[:FINGERPRINT_LENGTH]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    """Decorate an engine entry point so each call emits RECON_ENGINE_TRACE."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            started = time.monotonic()
            result = func(*args, **kwargs)
            elapsed = time.monotonic() - started

            found = getattr(result, "found", None)
            logger.debug(
                "RECON_ENGINE_TRACE",
                extra={
                    "trace_type": "RECON_ENGINE_TRACE",
                    "engine_name": engine_name,
                    "engine_version": engine_version,
                    "function": func.__qualname__,
                    "input_fingerprint": (
                        fingerprint(fingerprint_fields, kwargs) if fingerprint_fields else ""
                    ),
                    "found": found,
                    "duration_ms": round(elapsed * 1000, 2),
                },
            )
            return result

        return wrapper

    return decorator
