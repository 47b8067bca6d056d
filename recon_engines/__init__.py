"""
Matching engines -- pure calculation layer for statement reconciliation.

- normalizer: reference normalization and tolerance comparisons
- candidate_index: per-run lookup and consumption of candidate records
- cascade: the five-pass matching cascade
- tracer: RECON_ENGINE_TRACE decorator
"""

from recon_engines.candidate_index import CandidateIndex
from recon_engines.cascade import (
    CandidateSelection,
    LineEvaluation,
    MatchingCascade,
    MatchingPolicy,
    rank_candidates,
)
from recon_engines.normalizer import (
    amounts_within_tolerance,
    date_difference_days,
    dates_within_window,
    normalize_reference,
    quantize_amount,
)

__all__ = [
    "CandidateIndex",
    "CandidateSelection",
    "LineEvaluation",
    "MatchingCascade",
    "MatchingPolicy",
    "amounts_within_tolerance",
    "date_difference_days",
    "dates_within_window",
    "normalize_reference",
    "quantize_amount",
    "rank_candidates",
]
