"""Experiment variant routing"""

from .router import ExperimentRouter, RouteDecision, select_variant, traffic_bucket

__all__ = [
    "ExperimentRouter",
    "RouteDecision",
    "select_variant",
    "traffic_bucket",
]
