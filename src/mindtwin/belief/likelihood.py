"""
Likelihood models for the belief engine: P(observation | state).
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

import numpy as np

from .models import BeliefObservation, ObservationType

MIN_LIKELIHOOD = 0.01
MAX_LIKELIHOOD = 0.99

TYPE_MULTIPLIERS: Dict[ObservationType, float] = {
    ObservationType.SELF_REPORT_EMOTION: 0.95,
    ObservationType.SELF_REPORT_MOOD: 0.90,
    ObservationType.ASSESSMENT: 0.98,
    ObservationType.TEXT_MESSAGE: 0.75,
    ObservationType.BEHAVIORAL: 0.70,
    ObservationType.CONTEXTUAL: 0.60,
    ObservationType.SENSOR: 0.80,
    ObservationType.INTERACTION: 0.65,
}
DEFAULT_TYPE_MULTIPLIER = 0.7


class LikelihoodModel(ABC):
    """Pluggable observation likelihood."""

    name: str = "LikelihoodModel"

    @abstractmethod
    def calculate_likelihood(
        self,
        observation: BeliefObservation,
        hypothesized_state: Optional[Mapping[str, float]] = None,
    ) -> float:
        """Likelihood of ``observation`` in (0, 1)."""
        pass

    def get_parameters(self) -> Dict[str, Any]:
        return {}


class DefaultLikelihoodModel(LikelihoodModel):
    """Reliability scaled by a per-type multiplier plus uniform noise.

    The noise term is ``(u - 0.5) * noise_level`` with ``u`` drawn from the
    supplied generator; the result is clamped to [0.01, 0.99]. Set
    ``noise_level=0`` for deterministic likelihoods.
    """

    name = "DefaultLikelihoodModel"

    def __init__(self, noise_level: float = 0.2, rng: Optional[np.random.Generator] = None):
        if noise_level < 0:
            raise ValueError("noise_level must be non-negative")
        self.noise_level = noise_level
        self.rng = rng if rng is not None else np.random.default_rng()

    def calculate_likelihood(
        self,
        observation: BeliefObservation,
        hypothesized_state: Optional[Mapping[str, float]] = None,
    ) -> float:
        likelihood = observation.reliability
        likelihood *= TYPE_MULTIPLIERS.get(observation.observation_type, DEFAULT_TYPE_MULTIPLIER)

        if self.noise_level > 0:
            likelihood += (float(self.rng.random()) - 0.5) * self.noise_level

        return max(MIN_LIKELIHOOD, min(MAX_LIKELIHOOD, likelihood))

    def get_parameters(self) -> Dict[str, Any]:
        return {"noise_level": self.noise_level}
