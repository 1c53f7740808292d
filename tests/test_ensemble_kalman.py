from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from mindtwin.engines.ensemble_kalman import EnsembleKalmanConfig, EnsembleKalmanFilter


def test_config_validation():
    with pytest.raises(ValueError):
        EnsembleKalmanConfig(ensemble_size=1)
    with pytest.raises(ValueError):
        EnsembleKalmanConfig(inflation_factor=0.0)


def test_requires_initialization(rng):
    enkf = EnsembleKalmanFilter(rng=rng)
    assert not enkf.initialized
    with pytest.raises(RuntimeError):
        enkf.state_estimate()


def test_zero_covariance_gives_identical_members(rng):
    enkf = EnsembleKalmanFilter(EnsembleKalmanConfig(ensemble_size=5), rng=rng)
    enkf.initialize([0.2, 0.4], np.zeros((2, 2)))
    assert np.allclose(enkf.ensemble, [[0.2, 0.4]] * 5)
    assert np.allclose(enkf.error_covariance(), 0.0)


def test_initial_covariance_shape_checked(rng):
    enkf = EnsembleKalmanFilter(rng=rng)
    with pytest.raises(ValueError):
        enkf.initialize([0.0, 0.0], np.eye(3))


def test_forecast_with_executor(rng):
    enkf = EnsembleKalmanFilter(EnsembleKalmanConfig(ensemble_size=20), rng=rng)
    enkf.initialize([1.0], [[0.0]])
    with ThreadPoolExecutor(max_workers=4) as executor:
        enkf.forecast(lambda member: member + 1.0, executor=executor)
    assert enkf.state_estimate()[0] == pytest.approx(2.0)


def test_ensemble_property_is_a_copy(rng):
    enkf = EnsembleKalmanFilter(EnsembleKalmanConfig(ensemble_size=3), rng=rng)
    enkf.initialize([0.0], [[0.0]])
    members = enkf.ensemble
    members[0, 0] = 10.0
    assert enkf.state_estimate()[0] == pytest.approx(0.0)


def test_analysis_pulls_toward_measurement(rng):
    enkf = EnsembleKalmanFilter(EnsembleKalmanConfig(ensemble_size=200), rng=rng)
    enkf.initialize([0.0], [[1.0]])
    prior_spread = enkf.error_covariance()[0, 0]

    enkf.analyze([1.0], lambda member: member, [[0.1]])

    mean = enkf.state_estimate()[0]
    assert 0.6 < mean < 1.2
    assert enkf.error_covariance()[0, 0] < prior_spread


def test_analysis_rejects_mismatched_measurement(rng):
    enkf = EnsembleKalmanFilter(EnsembleKalmanConfig(ensemble_size=10), rng=rng)
    enkf.initialize([0.0, 0.0], np.eye(2))
    with pytest.raises(ValueError):
        enkf.analyze([1.0, 2.0], lambda member: member[:1], [[0.1]])
