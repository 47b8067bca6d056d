"""
Reconciliation configuration schema.

Frozen dataclasses the YAML configuration set is parsed into.  The same
``ToleranceConfig`` governs Pass 4 amount matching and the sign-off gate.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal

from recon_kernel.domain.match import DEFAULT_PASS_CONFIDENCE, MatchPass


@dataclass(frozen=True)
class ToleranceConfig:
    """Absolute and fractional amount tolerance (``percent`` 0.005 == 0.5%)."""

    absolute: Decimal = Decimal("1.00")
    percent: Decimal = Decimal("0.005")

    def __post_init__(self) -> None:
        if self.absolute < 0:
            raise ValueError(f"Tolerance absolute must be >= 0: {self.absolute}")
        if not Decimal("0") <= self.percent < Decimal("1"):
            raise ValueError(f"Tolerance percent must be within [0, 1): {self.percent}")

    def describe(self) -> str:
        return f"absolute={self.absolute}, percent={self.percent * 100:.2f}%"


@dataclass(frozen=True)
class SeverityThresholds:
    """Amounts at which an out-of-tolerance discrepancy becomes MEDIUM / HIGH."""

    medium_at: Decimal = Decimal("100.00")
    high_at: Decimal = Decimal("1000.00")

    def __post_init__(self) -> None:
        if self.medium_at < 0 or self.high_at < self.medium_at:
            raise ValueError(
                f"Severity thresholds must satisfy 0 <= medium_at <= high_at: "
                f"{self.medium_at}, {self.high_at}"
            )


@dataclass(frozen=True)
class ReconConfig:
    """The runtime configuration for the matching engine and sign-off gate."""

    config_id: str = "default"
    version: int = 1
    tolerance: ToleranceConfig = field(default_factory=ToleranceConfig)
    date_window_days: int = 7
    pass_confidence: Mapping[MatchPass, int] = field(
        default_factory=lambda: dict(DEFAULT_PASS_CONFIDENCE)
    )
    allow_partial: bool = True
    severity: SeverityThresholds = field(default_factory=SeverityThresholds)
    max_workers: int = 1
    checksum: str = ""

    def __post_init__(self) -> None:
        if self.date_window_days < 0:
            raise ValueError(f"date_window_days must be >= 0: {self.date_window_days}")
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1: {self.max_workers}")
        missing = [p for p in MatchPass if p not in self.pass_confidence]
        if missing:
            raise ValueError(f"pass_confidence missing passes: {[int(p) for p in missing]}")
        for pass_number, confidence in self.pass_confidence.items():
            if not 0 <= confidence <= 100:
                raise ValueError(
                    f"Confidence for pass {int(pass_number)} must be within 0..100: {confidence}"
                )

    def confidence_for(self, pass_number: MatchPass) -> int:
        return self.pass_confidence[pass_number]
