"""
Ensemble Kalman Filter.

Stochastic EnKF for propagation through nonlinear models: uncertainty is the
spread of ``ensemble_size`` state samples. The forecast step runs the
caller-supplied propagator on each member independently, optionally on an
executor since members share no state.
"""

import logging
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from ..common import linalg

logger = logging.getLogger(__name__)

Propagator = Callable[[np.ndarray], np.ndarray]
ObservationOperator = Callable[[np.ndarray], np.ndarray]


@dataclass(frozen=True)
class EnsembleKalmanConfig:
    """Ensemble size, covariance inflation and observation perturbation."""
    ensemble_size: int = 50
    inflation_factor: float = 1.0
    perturb_observations: bool = True

    def __post_init__(self):
        if self.ensemble_size < 2:
            raise ValueError("ensemble_size must be at least 2")
        if self.inflation_factor <= 0:
            raise ValueError("inflation_factor must be positive")


class EnsembleKalmanFilter:
    """Stochastic ensemble Kalman filter.

    Args:
        config: Ensemble configuration
        rng: Random generator used for initial perturbation and observation
            perturbation; pass a seeded generator for reproducible runs
    """

    def __init__(self, config: Optional[EnsembleKalmanConfig] = None, rng: Optional[np.random.Generator] = None):
        self.config = config or EnsembleKalmanConfig()
        self.rng = rng if rng is not None else np.random.default_rng()
        self._ensemble: Optional[np.ndarray] = None

    @property
    def ensemble(self) -> np.ndarray:
        """Copy of the members as an (N, n) array."""
        return self._require_ensemble().copy()

    @property
    def initialized(self) -> bool:
        return self._ensemble is not None

    def initialize(self, initial_state, initial_covariance) -> None:
        """Perturb ``initial_state`` by N(0, diag(P)) for every member."""
        x0 = linalg.as_vector(initial_state)
        P0 = linalg.as_matrix(initial_covariance)
        if P0.shape != (x0.shape[0], x0.shape[0]):
            raise ValueError(f"initial_covariance must be {x0.shape[0]}x{x0.shape[0]}")

        std = np.sqrt(np.clip(np.diag(P0), 0.0, None))
        noise = self.rng.standard_normal((self.config.ensemble_size, x0.shape[0]))
        self._ensemble = x0 + noise * std

    def forecast(self, propagator: Propagator, executor: Optional[Executor] = None) -> None:
        """Apply ``propagator`` to every member."""
        members = list(self._require_ensemble())
        if executor is not None:
            propagated = list(executor.map(propagator, members))
        else:
            propagated = [propagator(member) for member in members]
        self._ensemble = np.array([linalg.as_vector(m) for m in propagated])

    def analyze(self, measurement, observation_operator: ObservationOperator, measurement_noise) -> None:
        """Update every member towards ``measurement``.

        Uses ensemble sample covariances ``PHᵀ`` and ``HPHᵀ + R``; the latter
        is multiplied by the inflation factor before inversion.
        """
        ensemble = self._require_ensemble()
        z = linalg.as_vector(measurement)
        R = linalg.as_matrix(measurement_noise)
        n_members = ensemble.shape[0]

        predicted_obs = np.array([linalg.as_vector(observation_operator(member)) for member in ensemble])
        if predicted_obs.shape[1] != z.shape[0]:
            raise ValueError(
                f"Observation operator returned {predicted_obs.shape[1]} components, measurement has {z.shape[0]}"
            )
        if R.shape != (z.shape[0], z.shape[0]):
            raise ValueError(f"measurement_noise must be {z.shape[0]}x{z.shape[0]}")

        state_anomalies = ensemble - ensemble.mean(axis=0)
        obs_anomalies = predicted_obs - predicted_obs.mean(axis=0)

        PHt = state_anomalies.T @ obs_anomalies / (n_members - 1)
        HPHt = obs_anomalies.T @ obs_anomalies / (n_members - 1)
        S = linalg.scale(linalg.add(HPHt, R), self.config.inflation_factor)
        K = linalg.matmul(PHt, linalg.inverse(S))

        if self.config.perturb_observations:
            obs_std = np.sqrt(np.clip(np.diag(R), 0.0, None))
            perturbed = z + self.rng.standard_normal((n_members, z.shape[0])) * obs_std
        else:
            perturbed = np.tile(z, (n_members, 1))

        innovations = perturbed - predicted_obs
        self._ensemble = ensemble + innovations @ K.T

        logger.debug(
            "Ensemble analysis complete",
            extra={"members": n_members, "spread": float(np.trace(self.error_covariance()))}
        )

    def state_estimate(self) -> np.ndarray:
        """Ensemble mean."""
        return self._require_ensemble().mean(axis=0)

    def error_covariance(self) -> np.ndarray:
        """Unbiased ensemble covariance."""
        ensemble = self._require_ensemble()
        return linalg.sample_covariance(list(ensemble))

    def _require_ensemble(self) -> np.ndarray:
        if self._ensemble is None:
            raise RuntimeError("Ensemble has not been initialized")
        return self._ensemble
