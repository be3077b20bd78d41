"""
Vigil Core Models

Tier-0 baseline statistics, Tier-1 anomaly scorers, fusion and policy.
"""

from core.models.baseline import BaselineStatsEngine
from core.models.fusion import RiskFusionEngine
from core.models.policy import PolicyState, PolicyStateMachine
from core.models.scorers import (
    AnomalyScorer,
    GaussianMixtureScorer,
    ReconstructionScorer,
    create_scorer,
)

__all__ = [
    "BaselineStatsEngine",
    "RiskFusionEngine",
    "PolicyState",
    "PolicyStateMachine",
    "AnomalyScorer",
    "GaussianMixtureScorer",
    "ReconstructionScorer",
    "create_scorer",
]
