"""
Estimation and detection engines

Pure numerical components: the adaptive Kalman filter and smoother, the
ensemble Kalman filter, early-warning indicators and the bifurcation
detector.
"""

from .kalman_filter import KalmanFilterConfig, KalmanFilterEngine, KalmanFilterState, kalman_filter_engine
from .ensemble_kalman import EnsembleKalmanConfig, EnsembleKalmanFilter
from .bifurcation import BifurcationEngine

__all__ = [
    "KalmanFilterConfig",
    "KalmanFilterEngine",
    "KalmanFilterState",
    "kalman_filter_engine",
    "EnsembleKalmanConfig",
    "EnsembleKalmanFilter",
    "BifurcationEngine",
]
