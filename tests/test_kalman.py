import math

import pytest
import torch

from bayes_mp.datasets import generate_rotation_data
from bayes_mp.distributions import MvNormalMeanCovariance
from bayes_mp.driver import UpdateDriver, mean_cov_update
from bayes_mp.errors import DimensionMismatchError, MalformedInputError
from bayes_mp.models.kalman import (
    KalmanStepEstimator, default_rotation_model, rotation_matrix,
    smooth_rotation_ssm)


@pytest.fixture
def rotation_problem():
    A, B, Q, P, x0 = default_rotation_model(math.pi / 35)
    real_x, y = generate_rotation_data(A, B, Q, P, 40, x0=(10.0, -10.0), seed=1234)
    return A, B, Q, P, x0, real_x, y


def kalman_filter(y, A, B, Q, P, m, V):
    """textbook predict / correct recursions"""
    means, covs = [], []
    for y_t in y:
        m = A @ m
        V = A @ V @ A.T + Q
        S = B @ V @ B.T + P
        K = V @ B.T @ torch.inverse(S)
        m = m + K @ (y_t - B @ m)
        V = V - K @ S @ K.T
        means.append(m)
        covs.append(V)
    return means, covs


def filter_history(A, B, Q, P, x0, y):
    return UpdateDriver(
        KalmanStepEstimator(A, B, Q, P), {"x": x0},
        autoupdate=mean_cov_update("x")).run(y)


def test_rotation_matrix_is_orthogonal():
    A = rotation_matrix(0.3)
    assert torch.allclose(A @ A.T, torch.eye(2))
    assert torch.allclose(torch.linalg.det(A), torch.tensor(1.0))


def test_filter_matches_textbook_recursions(rotation_problem):
    A, B, Q, P, x0, real_x, y = rotation_problem
    history = filter_history(A, B, Q, P, x0, y)
    means, covs = kalman_filter(y, A, B, Q, P, x0.mean(), x0.cov())
    assert len(history) == len(y)
    for q, m, V in zip(history["x"], means, covs):
        assert torch.allclose(q.mean(), m, atol=1e-6)
        assert torch.allclose(q.cov(), V, atol=1e-6)


def test_last_filtered_marginal_equals_last_smoothed_marginal(rotation_problem):
    A, B, Q, P, x0, real_x, y = rotation_problem
    history = filter_history(A, B, Q, P, x0, y)
    smoothed = smooth_rotation_ssm(y, A, B, Q, P, x0)
    assert smoothed.converged
    assert len(smoothed.posteriors["x"]) == len(y)
    assert torch.allclose(history["x"][-1].mean(), smoothed.posteriors["x"][-1].mean(), atol=1e-6)
    assert torch.allclose(history["x"][-1].cov(), smoothed.posteriors["x"][-1].cov(), atol=1e-6)
    # smoothing never loses information
    for f, s in zip(history["x"], smoothed.posteriors["x"]):
        assert torch.all(s.var() <= f.var() + 1e-9)


def test_filter_free_energy_adds_up_to_the_chain_evidence(rotation_problem):
    A, B, Q, P, x0, real_x, y = rotation_problem
    history = filter_history(A, B, Q, P, x0, y)
    smoothed = smooth_rotation_ssm(y, A, B, Q, P, x0)
    assert abs(sum(history.free_energy) - smoothed.free_energy[-1]) < 1e-6 * len(y)


def test_smoother_tracks_the_hidden_state(rotation_problem):
    A, B, Q, P, x0, real_x, y = rotation_problem
    smoothed = smooth_rotation_ssm(y, A, B, Q, P, x0)
    means = torch.stack([q.mean() for q in smoothed.posteriors["x"]])
    obs_rmse = torch.sqrt(torch.mean((y - real_x) ** 2))
    est_rmse = torch.sqrt(torch.mean((means - real_x) ** 2))
    assert est_rmse < obs_rmse


def test_dimension_checks(rotation_problem):
    A, B, Q, P, x0, real_x, y = rotation_problem
    driver = UpdateDriver(KalmanStepEstimator(A, B, Q, P), {"x": x0})
    with pytest.raises(DimensionMismatchError):
        driver.step(torch.zeros(3))
    with pytest.raises(DimensionMismatchError):
        UpdateDriver(
            KalmanStepEstimator(A, B, Q, P),
            {"x": MvNormalMeanCovariance(torch.zeros(3), torch.eye(3))})
    with pytest.raises(DimensionMismatchError):
        KalmanStepEstimator(A, torch.eye(3), Q, P)
    with pytest.raises(DimensionMismatchError):
        smooth_rotation_ssm(torch.zeros(5, 3), A, B, Q, P, x0)
    with pytest.raises(MalformedInputError):
        UpdateDriver(KalmanStepEstimator(A, B, Q, P), {"x": x0.marginal(0)})


def test_one_pass_filter_is_exact_and_converged(rotation_problem):
    A, B, Q, P, x0, real_x, y = rotation_problem
    history = UpdateDriver(
        KalmanStepEstimator(A, B, Q, P, iterations=1), {"x": x0},
        autoupdate=mean_cov_update("x"),
        on_nonconvergence="raise").run(y[:10])
    means, covs = kalman_filter(y[:10], A, B, Q, P, x0.mean(), x0.cov())
    assert all(history.converged)
    for q, m, V in zip(history["x"], means, covs):
        assert torch.allclose(q.mean(), m, atol=1e-6)
        assert torch.allclose(q.cov(), V, atol=1e-6)


def test_smoother_needs_a_single_sweep(rotation_problem):
    A, B, Q, P, x0, real_x, y = rotation_problem
    smoothed = smooth_rotation_ssm(y, A, B, Q, P, x0, iterations=1)
    assert smoothed.converged
    assert smoothed.n_iterations == 1
