"""
Linear Gaussian state space models

    x_0 ~ N(m_0, V_0)
    x_t ~ N(A x_{t-1}, Q)
    y_t ~ N(B x_t, P)

Two ways in:

* `smooth_rotation_ssm` builds the whole chain as one factor graph and
  returns every smoothed marginal, p(x_t | y_1..y_n).
* `KalmanStepEstimator` is the one-step graph x_{t-1} -> x_t -> y_t; driven
  by `UpdateDriver` with `mean_cov_update("x")` it is a Kalman filter,
  p(x_t | y_1..y_t).

Both report -log evidence as the free energy, and the per-step free energies
of the filter sum to the free energy of the whole chain.
"""
import math

import torch

from ..distributions import MvNormalMeanCovariance
from ..errors import DimensionMismatchError, MalformedInputError
from ..estimator import (
    InferenceResult, StateEstimator, StepResult, covariance_hyperparameter)
from ..gaussian_bp import FactorGraph, GBPSettings, LinearMeasModel, SquaredLoss
from ..utils import as_float_tensor


def rotation_matrix(theta):
    c, s = math.cos(theta), math.sin(theta)
    return torch.tensor([[c, -s], [s, c]], dtype=torch.get_default_dtype())


def default_rotation_model(theta=math.pi / 35):
    """
    The 2d rotating signal: known A, B, Q, P and a broad initial prior.
    """
    A = rotation_matrix(theta)
    B = torch.eye(2)
    Q = torch.eye(2)
    P = 25.0 * torch.eye(2)
    x0 = MvNormalMeanCovariance(torch.zeros(2), 100.0 * torch.eye(2))
    return A, B, Q, P, x0


class LinearGaussianSSM:
    """
    Holds and checks the model matrices.
    """
    def __init__(self, A, B, Q, P):
        A = as_float_tensor(A)
        B = as_float_tensor(B)
        if A.ndim != 2 or A.shape[0] != A.shape[1]:
            raise DimensionMismatchError(f"A must be square, got {tuple(A.shape)}")
        if B.ndim != 2 or B.shape[1] != A.shape[0]:
            raise DimensionMismatchError(
                f"B must have {A.shape[0]} columns, got {tuple(B.shape)}")
        self.A = A
        self.B = B
        self.state_dim = A.shape[0]
        self.obs_dim = B.shape[0]
        self.Q = covariance_hyperparameter("Q", Q, self.state_dim)
        self.P = covariance_hyperparameter("P", P, self.obs_dim)
        # x_t - A x_{t-1} ~ N(0, Q)
        self.J_transition = torch.cat([-A, torch.eye(self.state_dim)], dim=1)

    def add_transition(self, fg, prev, current):
        fg.add_factor(
            [prev, current], torch.zeros(self.state_dim),
            LinearMeasModel(self.J_transition, SquaredLoss(self.state_dim, self.Q)))

    def add_observation(self, fg, var, y):
        fg.add_factor(
            [var], y,
            LinearMeasModel(self.B, SquaredLoss(self.obs_dim, self.P)))

    def check_state_belief(self, name, belief):
        if not isinstance(belief, MvNormalMeanCovariance):
            raise MalformedInputError(
                f"{name} must be a MvNormalMeanCovariance, got {type(belief).__name__}")
        if belief.dim != self.state_dim:
            raise DimensionMismatchError(
                f"{name} has dimension {belief.dim}, the state has {self.state_dim}")


def smooth_rotation_ssm(
        y, A, B, Q, P, x0,
        iterations=10,
        tolerance=1e-6,
        verbose=0):
    """
    Smoothed marginals of every state given all of `y` (shape (n, obs_dim)).
    """
    ssm = LinearGaussianSSM(A, B, Q, P)
    ssm.check_state_belief("x0", x0.validate())
    y = as_float_tensor(y)
    if y.ndim != 2 or y.shape[1] != ssm.obs_dim:
        raise DimensionMismatchError(
            f"observations must have shape (n, {ssm.obs_dim}), got {tuple(y.shape)}")
    if not torch.all(torch.isfinite(y)):
        raise MalformedInputError("observations must be finite")

    fg = FactorGraph(GBPSettings(schedule="sweep", verbose=verbose))
    fg.add_var_node(ssm.state_dim, x0.mean(), x0.cov(), name="x_prior")
    prev = "x_prior"
    for i, y_i in enumerate(y):
        name = f"x_{i}"
        fg.add_var_node(ssm.state_dim, name=name)
        ssm.add_transition(fg, prev, name)
        ssm.add_observation(fg, name, y_i)
        prev = name
    report = fg.solve(
        n_iters=iterations, converged_threshold=tolerance,
        callback=lambda i, fg: fg.free_energy())
    posteriors = {
        "x": [
            fg.get_var_node(f"x_{i}").belief.to_belief()
            for i in range(y.shape[0])],
        "x_prior": fg.get_var_node("x_prior").belief.to_belief(),
    }
    return InferenceResult(
        posteriors, report.callback_log, report.converged, report.n_iters)


class KalmanStepEstimator(StateEstimator):
    """
    One filtering step. Prior: {"x": belief over x_{t-1}}.
    Posterior: {"x": belief over x_t}.
    """
    variables = ("x",)

    def __init__(self, A, B, Q, P, **kwargs):
        super().__init__(**kwargs)
        self.ssm = LinearGaussianSSM(A, B, Q, P)
        self.obs_dim = self.ssm.obs_dim

    def check_prior(self, prior):
        prior = super().check_prior(prior)
        self.ssm.check_state_belief("x", prior["x"])
        return prior

    def update(self, prior, observation):
        y = self.check_observation(observation)
        x_prev = prior["x"]
        fg = FactorGraph(self.gbp_settings())
        fg.add_var_node(self.ssm.state_dim, x_prev.mean(), x_prev.cov(), name="x_prev")
        fg.add_var_node(self.ssm.state_dim, name="x")
        self.ssm.add_transition(fg, "x_prev", "x")
        self.ssm.add_observation(fg, "x", y)
        report = fg.solve(n_iters=self.iterations, converged_threshold=self.tolerance)
        free_energy = fg.free_energy()
        return StepResult(
            {"x": fg.get_var_node("x").belief.to_belief()},
            free_energy, report.converged, report.n_iters, (free_energy,))
