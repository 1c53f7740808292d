"""
Kalman Filter Engine.

Linear-Gaussian predict/update cycle with the robustness extensions the
twin relies on:

* optional element-wise gain clipping to ``[-max_gain, max_gain]``
* outlier detection on the normalized innovation squared (NIS); outliers are
  attenuated to 10% of their innovation instead of being discarded
* adaptive process/measurement noise from a bounded innovation buffer
* Rauch-Tung-Striebel smoothing over a filtered sequence

States and configurations are immutable; every operation returns a new
``KalmanFilterState``.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

import numpy as np
from filterpy.common import Q_discrete_white_noise

from ..common import linalg

logger = logging.getLogger(__name__)

OUTLIER_ATTENUATION = 0.1
MIN_ADAPTATION_SAMPLES = 10


def _frozen(value) -> np.ndarray:
    arr = np.array(value, dtype=float)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, eq=False)
class KalmanFilterConfig:
    """Model matrices and tuning for one filter.

    Args:
        transition: State transition matrix ``A`` (n x n)
        observation: Observation matrix ``H`` (m x n)
        process_noise: Process noise covariance ``Q`` (n x n)
        measurement_noise: Measurement noise covariance ``R`` (m x m)
        initial_state: Initial estimate ``x0`` (n)
        initial_covariance: Initial error covariance ``P0`` (n x n)
        adaptive_q: Rescale ``Q`` from the innovation buffer
        adaptive_r: Blend ``R`` towards the sampled innovation covariance
        adaptation_rate: EMA weight used for ``R`` adaptation
        forgetting_factor: Weight kept on the static ``Q`` during adaptation
        outlier_threshold: NIS above which a measurement is an outlier
            (``None`` disables the test)
        max_gain: Absolute bound on every gain entry (``None`` disables)
        innovation_window: Number of innovations retained for adaptation
    """
    transition: np.ndarray
    observation: np.ndarray
    process_noise: np.ndarray
    measurement_noise: np.ndarray
    initial_state: np.ndarray
    initial_covariance: np.ndarray
    adaptive_q: bool = False
    adaptive_r: bool = False
    adaptation_rate: float = 0.1
    forgetting_factor: float = 0.95
    outlier_threshold: Optional[float] = 3.0
    max_gain: Optional[float] = None
    innovation_window: int = 50

    def __post_init__(self):
        object.__setattr__(self, "transition", _frozen(linalg.as_matrix(self.transition)))
        object.__setattr__(self, "observation", _frozen(linalg.as_matrix(self.observation)))
        object.__setattr__(self, "process_noise", _frozen(linalg.as_matrix(self.process_noise)))
        object.__setattr__(self, "measurement_noise", _frozen(linalg.as_matrix(self.measurement_noise)))
        object.__setattr__(self, "initial_state", _frozen(linalg.as_vector(self.initial_state)))
        object.__setattr__(self, "initial_covariance", _frozen(linalg.as_matrix(self.initial_covariance)))

        n = self.state_dim
        m = self.measurement_dim
        if self.transition.shape != (n, n):
            raise ValueError(f"transition must be {n}x{n}, got {self.transition.shape}")
        if self.observation.shape[1] != n:
            raise ValueError(f"observation must have {n} columns, got {self.observation.shape}")
        if self.process_noise.shape != (n, n):
            raise ValueError(f"process_noise must be {n}x{n}, got {self.process_noise.shape}")
        if self.measurement_noise.shape != (m, m):
            raise ValueError(f"measurement_noise must be {m}x{m}, got {self.measurement_noise.shape}")
        if self.initial_covariance.shape != (n, n):
            raise ValueError(f"initial_covariance must be {n}x{n}, got {self.initial_covariance.shape}")
        if not 0.0 < self.adaptation_rate <= 1.0:
            raise ValueError("adaptation_rate must be in (0, 1]")
        if not 0.0 <= self.forgetting_factor <= 1.0:
            raise ValueError("forgetting_factor must be in [0, 1]")
        if self.max_gain is not None and self.max_gain <= 0:
            raise ValueError("max_gain must be positive")
        if self.innovation_window < MIN_ADAPTATION_SAMPLES:
            raise ValueError(f"innovation_window must be at least {MIN_ADAPTATION_SAMPLES}")

    @property
    def state_dim(self) -> int:
        return int(self.initial_state.shape[0])

    @property
    def measurement_dim(self) -> int:
        return int(self.observation.shape[0])

    @classmethod
    def scalar(
        cls,
        value: float,
        variance: float,
        process_noise: float,
        measurement_noise: float,
        **kwargs
    ) -> "KalmanFilterConfig":
        """Random-walk model for a single directly observed variable."""
        return cls(
            transition=[[1.0]],
            observation=[[1.0]],
            process_noise=[[process_noise]],
            measurement_noise=[[measurement_noise]],
            initial_state=[value],
            initial_covariance=[[variance]],
            **kwargs
        )

    @classmethod
    def constant_velocity(
        cls,
        position: float,
        dt: float = 1.0,
        process_variance: float = 0.01,
        measurement_variance: float = 0.1,
        initial_variance: float = 0.1,
        velocity: float = 0.0,
        **kwargs
    ) -> "KalmanFilterConfig":
        """Position/velocity model observed through position only.

        The process noise block is the discrete white-noise acceleration
        model from filterpy.
        """
        return cls(
            transition=[[1.0, dt], [0.0, 1.0]],
            observation=[[1.0, 0.0]],
            process_noise=Q_discrete_white_noise(dim=2, dt=dt, var=process_variance),
            measurement_noise=[[measurement_variance]],
            initial_state=[position, velocity],
            initial_covariance=np.eye(2) * initial_variance,
            **kwargs
        )


@dataclass(frozen=True, eq=False)
class KalmanFilterState:
    """Snapshot of a filter after initialize/predict/update."""
    state_estimate: np.ndarray
    error_covariance: np.ndarray
    predicted_state: np.ndarray
    predicted_covariance: np.ndarray
    innovation: np.ndarray
    innovation_covariance: np.ndarray
    kalman_gain: np.ndarray
    normalized_innovation_squared: float = 0.0
    is_outlier: bool = False
    adapted_q: Optional[np.ndarray] = None
    adapted_r: Optional[np.ndarray] = None
    timestep: int = 0
    innovations: Tuple[np.ndarray, ...] = field(default_factory=tuple)
    timestamp: Optional[datetime] = None

    @property
    def estimate(self) -> float:
        """First state component, convenient for scalar filters."""
        return float(self.state_estimate[0])

    @property
    def variance(self) -> float:
        return float(self.error_covariance[0, 0])

    @property
    def gain(self) -> float:
        return float(self.kalman_gain[0, 0])


class KalmanFilterEngine:
    """Stateless predict/update/smooth operations over ``KalmanFilterState``."""

    def initialize(self, config: KalmanFilterConfig, timestamp: Optional[datetime] = None) -> KalmanFilterState:
        n = config.state_dim
        m = config.measurement_dim
        return KalmanFilterState(
            state_estimate=config.initial_state,
            error_covariance=config.initial_covariance,
            predicted_state=config.initial_state,
            predicted_covariance=config.initial_covariance,
            innovation=_frozen(np.zeros(m)),
            innovation_covariance=_frozen(np.zeros((m, m))),
            kalman_gain=_frozen(np.zeros((n, m))),
            timestamp=timestamp,
        )

    def predict(self, state: KalmanFilterState, config: KalmanFilterConfig) -> KalmanFilterState:
        """x⁻ = A·x, P⁻ = A·P·Aᵀ + Q (adapted Q when available)."""
        A = config.transition
        Q = state.adapted_q if (config.adaptive_q and state.adapted_q is not None) else config.process_noise

        x_pred = linalg.matvec(A, state.state_estimate)
        P_pred = linalg.add(linalg.matmul(linalg.matmul(A, state.error_covariance), linalg.transpose(A)), Q)
        P_pred = linalg.symmetrize(P_pred)

        return replace(
            state,
            state_estimate=_frozen(x_pred),
            error_covariance=_frozen(P_pred),
            predicted_state=_frozen(x_pred),
            predicted_covariance=_frozen(P_pred),
            timestep=state.timestep + 1,
        )

    def update(
        self,
        state: KalmanFilterState,
        measurement,
        config: KalmanFilterConfig,
        timestamp: Optional[datetime] = None,
    ) -> KalmanFilterState:
        """Correct a predicted state with a measurement.

        Outliers (NIS above the threshold) are applied with 10% of their
        innovation and flagged via ``is_outlier``.
        """
        z = linalg.as_vector(measurement)
        if z.shape[0] != config.measurement_dim:
            raise ValueError(
                f"Measurement has {z.shape[0]} components, expected {config.measurement_dim}"
            )

        H = config.observation
        R = state.adapted_r if (config.adaptive_r and state.adapted_r is not None) else config.measurement_noise
        x_pred = state.predicted_state
        P_pred = state.predicted_covariance

        innovation = linalg.vec_subtract(z, linalg.matvec(H, x_pred))
        PHt = linalg.matmul(P_pred, linalg.transpose(H))
        S = linalg.add(linalg.matmul(H, PHt), R)
        S_inv = linalg.inverse(S)

        gain = linalg.matmul(PHt, S_inv)
        if config.max_gain is not None:
            gain = np.clip(gain, -config.max_gain, config.max_gain)

        nis = self.normalized_innovation_squared(innovation, S)
        is_outlier = config.outlier_threshold is not None and nis > config.outlier_threshold
        if is_outlier:
            logger.debug(
                "Outlier measurement attenuated",
                extra={"nis": nis, "threshold": config.outlier_threshold}
            )
        applied = innovation * OUTLIER_ATTENUATION if is_outlier else innovation

        x_post = linalg.vec_add(x_pred, linalg.matvec(gain, applied))
        I = linalg.identity(config.state_dim)
        P_post = linalg.symmetrize(linalg.matmul(linalg.subtract(I, linalg.matmul(gain, H)), P_pred))

        innovations = (state.innovations + (_frozen(innovation),))[-config.innovation_window:]

        updated = replace(
            state,
            state_estimate=_frozen(x_post),
            error_covariance=_frozen(P_post),
            innovation=_frozen(innovation),
            innovation_covariance=_frozen(S),
            kalman_gain=_frozen(gain),
            normalized_innovation_squared=nis,
            is_outlier=is_outlier,
            innovations=innovations,
            timestamp=timestamp or state.timestamp,
        )

        adapted_q = state.adapted_q
        adapted_r = state.adapted_r
        if config.adaptive_q:
            adapted_q = _frozen(self.adapt_process_noise(updated, innovations, config))
        if config.adaptive_r:
            adapted_r = _frozen(self.adapt_measurement_noise(innovations, config))

        return replace(updated, adapted_q=adapted_q, adapted_r=adapted_r)

    def filter(
        self,
        state: KalmanFilterState,
        measurement,
        config: KalmanFilterConfig,
        timestamp: Optional[datetime] = None,
    ) -> KalmanFilterState:
        """Combined predict-update cycle."""
        return self.update(self.predict(state, config), measurement, config, timestamp=timestamp)

    def predict_ahead(self, state: KalmanFilterState, config: KalmanFilterConfig, steps: int) -> List[KalmanFilterState]:
        """Open-loop forecast ``steps`` cycles ahead without measurements."""
        if steps < 0:
            raise ValueError("steps must be non-negative")
        forecasts = []
        current = state
        for _ in range(steps):
            current = self.predict(current, config)
            forecasts.append(current)
        return forecasts

    def smooth(self, states: Sequence[KalmanFilterState], config: KalmanFilterConfig) -> List[KalmanFilterState]:
        """Rauch-Tung-Striebel backward pass over a filtered sequence.

        Each state must carry the predicted state/covariance produced by the
        predict step that preceded its update.
        """
        if len(states) < 2:
            return list(states)

        A = config.transition
        At = linalg.transpose(A)
        smoothed = list(states)

        for k in range(len(states) - 2, -1, -1):
            current = smoothed[k]
            nxt = smoothed[k + 1]

            C = linalg.matmul(linalg.matmul(current.error_covariance, At), linalg.inverse(nxt.predicted_covariance))

            state_diff = linalg.vec_subtract(nxt.state_estimate, nxt.predicted_state)
            x_s = linalg.vec_add(current.state_estimate, linalg.matvec(C, state_diff))

            cov_diff = linalg.subtract(nxt.error_covariance, nxt.predicted_covariance)
            P_s = linalg.add(current.error_covariance, linalg.matmul(linalg.matmul(C, cov_diff), linalg.transpose(C)))

            smoothed[k] = replace(current, state_estimate=_frozen(x_s), error_covariance=_frozen(linalg.symmetrize(P_s)))

        return smoothed

    def adapt_process_noise(
        self,
        state: KalmanFilterState,
        innovations: Sequence[np.ndarray],
        config: KalmanFilterConfig,
    ) -> np.ndarray:
        """Covariance-matching rescale of ``Q``.

        ``Q * (alpha + (1 - alpha) * tr(C_sample) / tr(H P Hᵀ + R))`` where
        alpha is the forgetting factor. Returns the static ``Q`` until
        ten innovations are available.
        """
        if len(innovations) < MIN_ADAPTATION_SAMPLES:
            return np.array(config.process_noise)

        H = config.observation
        sample_cov = linalg.sample_covariance(innovations)
        theoretical = linalg.add(
            linalg.matmul(linalg.matmul(H, state.error_covariance), linalg.transpose(H)),
            config.measurement_noise,
        )
        ratio = self._trace_ratio(sample_cov, theoretical)

        alpha = config.forgetting_factor
        return np.array(config.process_noise) * (alpha + (1.0 - alpha) * ratio)

    def adapt_measurement_noise(self, innovations: Sequence[np.ndarray], config: KalmanFilterConfig) -> np.ndarray:
        """EMA of ``R`` towards the sampled innovation covariance."""
        if len(innovations) < MIN_ADAPTATION_SAMPLES:
            return np.array(config.measurement_noise)

        sample_cov = linalg.sample_covariance(innovations)
        rate = config.adaptation_rate
        return (1.0 - rate) * np.array(config.measurement_noise) + rate * sample_cov

    def normalized_innovation_squared(self, innovation: np.ndarray, innovation_covariance: np.ndarray) -> float:
        """yᵀ S⁻¹ y"""
        y = linalg.as_vector(innovation)
        return float(y @ linalg.inverse(innovation_covariance) @ y)

    @staticmethod
    def _trace_ratio(numerator: np.ndarray, denominator: np.ndarray) -> float:
        denom = linalg.trace(denominator)
        if abs(denom) < linalg.PIVOT_TOLERANCE:
            return 1.0
        return linalg.trace(numerator) / denom


kalman_filter_engine = KalmanFilterEngine()
