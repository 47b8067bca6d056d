"""
YAML loader for reconciliation configuration sets.

* ``load_yaml_file`` reads one file with ``yaml.safe_load``.
* ``parse_config`` turns the raw mapping into a frozen ``ReconConfig``.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the raw
  mapping so auditors can tie a run to the exact configuration used.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from recon_config.schema import ReconConfig, SeverityThresholds, ToleranceConfig
from recon_kernel.domain.match import DEFAULT_PASS_CONFIDENCE, MatchPass


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal(value: Any, field_name: str) -> Decimal:
    """Parse a YAML scalar as Decimal via its string form (never via float)."""
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"{field_name}: not a decimal number: {value!r}") from exc


def parse_tolerance(data: dict[str, Any]) -> ToleranceConfig:
    return ToleranceConfig(
        absolute=parse_decimal(data.get("absolute", "1.00"), "tolerance.absolute"),
        percent=parse_decimal(data.get("percent", "0.005"), "tolerance.percent"),
    )


def parse_severity(data: dict[str, Any]) -> SeverityThresholds:
    return SeverityThresholds(
        medium_at=parse_decimal(data.get("medium_at", "100.00"), "severity.medium_at"),
        high_at=parse_decimal(data.get("high_at", "1000.00"), "severity.high_at"),
    )


def parse_pass_confidence(data: dict[Any, Any]) -> dict[MatchPass, int]:
    confidence = dict(DEFAULT_PASS_CONFIDENCE)
    for key, value in data.items():
        try:
            pass_number = MatchPass(int(key))
        except ValueError as exc:
            raise ValueError(f"pass_confidence: unknown pass {key!r}") from exc
        confidence[pass_number] = int(value)
    return confidence


def parse_config(data: dict[str, Any]) -> ReconConfig:
    """
    Build a ``ReconConfig`` from a raw mapping.

    Missing keys fall back to defaults.

    Raises:
        ValueError: on any out-of-range or malformed value.
    """
    matching = data.get("matching", {}) or {}
    return ReconConfig(
        config_id=str(data.get("config_id", "default")),
        version=int(data.get("version", 1)),
        tolerance=parse_tolerance(data.get("tolerance", {}) or {}),
        date_window_days=int(matching.get("date_window_days", 7)),
        pass_confidence=parse_pass_confidence(matching.get("pass_confidence", {}) or {}),
        allow_partial=bool(matching.get("allow_partial", True)),
        severity=parse_severity(data.get("severity", {}) or {}),
        max_workers=int(matching.get("max_workers", 1)),
        checksum=compute_checksum(data),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
