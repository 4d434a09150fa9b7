"""Layered decision rule evaluation"""

from .engine import (
    RuleEvaluationEngine, RuleEvaluationResult, PackEvaluation, RuleHit,
    LAYER_ORDER, HIT_SCORE_ROUNDING, compute_hit_score, match_rule
)

__all__ = [
    "RuleEvaluationEngine",
    "RuleEvaluationResult",
    "PackEvaluation",
    "RuleHit",
    "LAYER_ORDER",
    "HIT_SCORE_ROUNDING",
    "compute_hit_score",
    "match_rule",
]
