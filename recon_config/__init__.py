"""
recon_config -- single public entrypoint for reconciliation configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  Engines and services receive the resulting
    ``ReconConfig`` as an argument; they never read files themselves.

Invariants enforced:
    - Deterministic: the same YAML always yields the same checksum.
    - Validation happens at load time; an invalid set never reaches the
      engine.

Failure modes:
    - ``FileNotFoundError`` -- the configuration file does not exist.
    - ``ValueError`` -- a value is malformed or out of range.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``RECON_CONFIG_TRACE`` log entry with the config_id, version and
    checksum.
"""

from __future__ import annotations

import logging
from pathlib import Path

from recon_config.loader import load_yaml_file, parse_config
from recon_config.schema import ReconConfig, SeverityThresholds, ToleranceConfig

_logger = logging.getLogger("recon_kernel.config")

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(config_path: Path | str | None = None) -> ReconConfig:
    """The ONLY public configuration entrypoint.

    Args:
        config_path: Override path to a YAML configuration set.
            Defaults to recon_config/sets/default.yaml.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If configuration validation fails.
    """
    path = Path(config_path) if config_path is not None else _DEFAULT_CONFIG_PATH
    config = parse_config(load_yaml_file(path))

    _logger.info(
        "RECON_CONFIG_TRACE",
        extra={
            "trace_type": "RECON_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "tolerance_absolute": str(config.tolerance.absolute),
            "tolerance_percent": str(config.tolerance.percent),
            "date_window_days": config.date_window_days,
            "allow_partial": config.allow_partial,
        },
    )
    return config


__all__ = [
    "ReconConfig",
    "SeverityThresholds",
    "ToleranceConfig",
    "get_active_config",
]
