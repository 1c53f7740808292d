"""
Belief layer

Independent Gaussian beliefs over psychological dimensions, updated from
typed observations, plus the adapter to the vector-valued estimators.
"""

from .engine import BeliefUpdateEngine
from .likelihood import DefaultLikelihoodModel, LikelihoodModel
from .models import BeliefComponent, BeliefObservation, BeliefState, ObservationType, RiskLevel

__all__ = [
    "BeliefUpdateEngine",
    "DefaultLikelihoodModel",
    "LikelihoodModel",
    "BeliefComponent",
    "BeliefObservation",
    "BeliefState",
    "ObservationType",
    "RiskLevel",
]
