"""
System identification

Two hidden random walks are observed only through a combination of them:

    x_t ~ N(x_{t-1}, 1/tau_x)
    w_t ~ N(w_{t-1}, 1/tau_w)
    s_t = f(x_t, w_t)
    y_t ~ N(s_t, 1/tau_y)

with Gamma priors on the three precisions. Inference alternates between

* q(x, w): a Gaussian BP solve with `f` linearised at the current means and
  the precisions fixed at their expected values;
* q(tau_x), q(tau_w), q(tau_y): conjugate Gamma updates given the
  expected squared residuals under q(x, w).

The linearisation point follows the posterior means, so for nonlinear `f`
this is an iterated linearisation. The variational free energy is tracked
across iterations.

`IdentificationEstimator` does this one observation at a time, on the chain
x0 - x - f - w - w0, for use with `UpdateDriver`. `identify_batch` does it for
the whole record at once, with the pair z_t = (x_t, w_t) as one variable so
that z_0 - z_1 - ... - z_n is still a tree, and returns smoothed marginals.
"""
import operator

import torch

from ..distributions import (
    GammaShapeRate, NormalMeanPrecision, NormalMeanVariance)
from ..driver import autoupdates, mean_precision_update, shape_rate_update
from ..errors import MalformedInputError
from ..estimator import InferenceResult, StateEstimator, StepResult
from ..gaussian_bp import (
    FactorGraph, GBPSettings, LinearMeasModel, NonlinearMeasModel, SquaredLoss)
from ..utils import as_float_tensor
from ..vmp import expected_normal_loglik, free_energy_converged, gamma_posterior

RANDOM_WALK = torch.tensor([[-1.0, 1.0]])
# z_t - z_{t-1} for z = (x, w)
PAIR_WALK = torch.cat([-torch.eye(2), torch.eye(2)], dim=1)

PRECISIONS = ("tau_x", "tau_w", "tau_y")

# joint ordering of the one-step graph
X0, X, W0, W = 0, 1, 2, 3


def smooth_min(x, y):
    """
    min(x, y) with a small slope on the larger argument, so neither
    partial derivative is ever exactly zero.
    """
    x = torch.as_tensor(x)
    y = torch.as_tensor(y)
    return torch.where(x < y, x + 1e-4 * y, y + 1e-4 * x)


def default_prior():
    return {
        "x": NormalMeanPrecision(2.0, 1.0),
        "w": NormalMeanPrecision(-2.0, 1.0),
        "tau_x": GammaShapeRate(1.0, 1.0),
        "tau_w": GammaShapeRate(1.0, 1.0),
        "tau_y": GammaShapeRate(1.0, 20.0),
    }


def default_autoupdate():
    return autoupdates(
        mean_precision_update("x"),
        mean_precision_update("w"),
        shape_rate_update("tau_x"),
        shape_rate_update("tau_w"),
        shape_rate_update("tau_y"),
    )


def check_prior_families(prior):
    for name in ("x", "w"):
        if not isinstance(prior[name], (NormalMeanPrecision, NormalMeanVariance)):
            raise MalformedInputError(
                f"{name} must be a univariate normal, got {type(prior[name]).__name__}")
    for name in PRECISIONS:
        if not isinstance(prior[name], GammaShapeRate):
            raise MalformedInputError(
                f"{name} must be a GammaShapeRate, got {type(prior[name]).__name__}")
    return prior


def _combine(z, f):
    return f(z[0], z[1]).reshape(1)


def _walk_sq_err(m, S, prev, cur):
    """E[(z_cur - z_prev)^2] under N(m, S)"""
    return (
        (m[cur] - m[prev]) ** 2
        + S[cur, cur] + S[prev, prev] - 2 * S[cur, prev])


def _combined_signal(factor, m):
    """
    Jacobian of `f` at the factor's linearisation point, and the mean of the
    linearised s = f(x, w) when (x, w) has mean `m`.
    """
    lin = factor.linpoint
    J = factor.meas_model.jac_fn(lin)
    pred = factor.meas_model.meas_fn(lin).detach()
    return J, (pred + J @ (m - lin))[0]


def _initial_state_energy(prior, m, S, ix):
    """E_q[-log p(x0) - log p(w0)], (x0, w0) at positions `ix` of m and S"""
    energy = 0.
    for name, i in zip(("x", "w"), ix):
        p = prior[name]
        energy -= expected_normal_loglik(
            (m[i] - p.mean()) ** 2 + S[i, i], p.precision())
    return energy


def _precision_energy(prior, q_tau, sq_err):
    """E_q[-log p(residuals | tau) - log p(tau)] for the three precisions"""
    energy = 0.
    for name in PRECISIONS:
        energy -= expected_normal_loglik(sq_err[name], q_tau[name]).sum()
        energy -= q_tau[name].expected_log_density(prior[name])
    return energy


class IdentificationEstimator(StateEstimator):
    """
    Prior: {"x", "w"} univariate normals over the previous hidden values,
    and {"tau_x", "tau_w", "tau_y"} Gamma beliefs over the precisions.
    Posterior: the same names, plus "s", the combined signal.
    """
    variables = ("x", "w", "tau_x", "tau_w", "tau_y")

    def __init__(self, f=operator.add, **kwargs):
        super().__init__(**kwargs)
        if not callable(f):
            raise MalformedInputError(f"f must be callable, got {f!r}")
        self.f = f

    def check_prior(self, prior):
        return check_prior_families(super().check_prior(prior))

    def build_graph(self, prior, y):
        fg = FactorGraph(self.gbp_settings())
        fg.add_var_node(1, prior["x"].mean(), prior["x"].var(), name="x0")
        fg.add_var_node(1, name="x")
        fg.add_var_node(1, prior["w"].mean(), prior["w"].var(), name="w0")
        fg.add_var_node(1, name="w")
        fg.add_factor(
            ["x0", "x"], torch.zeros(1),
            LinearMeasModel(RANDOM_WALK, SquaredLoss(1, 1.0)))
        fg.add_factor(
            ["x", "w"], y.reshape(1),
            NonlinearMeasModel(_combine, SquaredLoss(1, 1.0), self.f))
        fg.add_factor(
            ["w0", "w"], torch.zeros(1),
            LinearMeasModel(RANDOM_WALK, SquaredLoss(1, 1.0)))
        return fg

    def update(self, prior, observation):
        y = self.check_observation(observation)
        fg = self.build_graph(prior, y)
        trans_x, combine, trans_w = fg.factors
        q_tau = {k: prior[k] for k in PRECISIONS}
        linpoint = torch.stack([prior["x"].mean(), prior["w"].mean()])

        trace = []
        converged = False
        inner_converged = True
        it = 0
        while it < self.iterations and not converged:
            # q(x0, x, w0, w) at the expected precisions
            trans_x.meas_model.loss.set_cov(1.0 / q_tau["tau_x"].mean())
            trans_w.meas_model.loss.set_cov(1.0 / q_tau["tau_w"].mean())
            combine.meas_model.loss.set_cov(1.0 / q_tau["tau_y"].mean())
            trans_x.compute_factor(torch.zeros(2))
            trans_w.compute_factor(torch.zeros(2))
            combine.compute_factor(linpoint)
            report = fg.solve(n_iters=self.iterations, converged_threshold=self.tolerance)
            inner_converged = report.converged
            q_z = fg.joint_belief(["x0", "x", "w0", "w"])
            m, S = q_z.mean_cov()

            # expected squared residuals of the three Gaussian terms
            xw = torch.stack([m[X], m[W]])
            S_xw = S[[X, W]][:, [X, W]]
            J, s_mean = _combined_signal(combine, xw)
            s_var = (J @ S_xw @ J.T)[0, 0]
            sq_err = {
                "tau_x": _walk_sq_err(m, S, X0, X),
                "tau_w": _walk_sq_err(m, S, W0, W),
                "tau_y": (y - s_mean) ** 2 + s_var,
            }
            q_tau = {
                k: gamma_posterior(prior[k], 1, sq_err[k]) for k in q_tau}
            linpoint = xw

            free_energy = (
                _initial_state_energy(prior, m, S, (X0, W0))
                + _precision_energy(prior, q_tau, sq_err)
                - q_z.entropy() - sum(q.entropy() for q in q_tau.values()))
            trace.append(float(free_energy))
            it += 1
            if self.verbose:
                print(f"VMP iter {it}  --- Free energy {trace[-1]:.5f}")
            converged = free_energy_converged(trace, self.tolerance)

        posteriors = {
            "x": NormalMeanPrecision(m[X], 1.0 / S[X, X]),
            "w": NormalMeanPrecision(m[W], 1.0 / S[W, W]),
            "s": NormalMeanVariance(s_mean, s_var),
        }
        posteriors.update(q_tau)
        return StepResult(
            posteriors, trace[-1], converged and inner_converged, it, tuple(trace))


def identify_batch(
        y, f=operator.add,
        prior=None,
        linpoints=None,
        iterations=50,
        tolerance=1e-6,
        verbose=0):
    """
    Smoothed identification from the whole record `y` at once.

    `prior` has the same names as for `IdentificationEstimator`, with "x" and
    "w" over the initial values x0, w0. `linpoints`, shape (n, 2), are the
    first linearisation points of `f` at each step; by default the prior
    means. Returns per-step lists of marginals under "x", "w" and "s", the
    initial values under "x0" and "w0", and the three precisions.
    """
    if not callable(f):
        raise MalformedInputError(f"f must be callable, got {f!r}")
    prior = default_prior() if prior is None else dict(prior)
    missing = [name for name in ("x", "w") + PRECISIONS if name not in prior]
    if missing:
        raise MalformedInputError(f"prior is missing {missing}")
    check_prior_families(prior)
    for belief in prior.values():
        belief.validate()
    y = as_float_tensor(y).reshape(-1)
    n = y.shape[0]
    if n == 0:
        raise MalformedInputError("need at least one observation")
    if not torch.all(torch.isfinite(y)):
        raise MalformedInputError("observations must be finite")
    z0_mean = torch.stack([prior["x"].mean(), prior["w"].mean()])
    if linpoints is None:
        linpoints = z0_mean.repeat(n, 1)
    else:
        linpoints = as_float_tensor(linpoints)
        if linpoints.shape != torch.Size([n, 2]):
            raise MalformedInputError(
                f"linpoints must have shape ({n}, 2), got {tuple(linpoints.shape)}")

    fg = FactorGraph(GBPSettings(schedule="sweep", relinearise=False, verbose=verbose))
    fg.add_var_node(
        2, z0_mean, torch.stack([prior["x"].var(), prior["w"].var()]), name="z_0")
    transitions, combines = [], []
    for t in range(1, n + 1):
        fg.add_var_node(2, name=f"z_{t}")
        transitions.append(fg.factors[fg.add_factor(
            [f"z_{t - 1}", f"z_{t}"], torch.zeros(2),
            LinearMeasModel(PAIR_WALK, SquaredLoss(2, 1.0)))])
        combines.append(fg.factors[fg.add_factor(
            [f"z_{t}"], y[t - 1].reshape(1),
            NonlinearMeasModel(_combine, SquaredLoss(1, 1.0), f))])

    q_tau = {k: prior[k] for k in PRECISIONS}
    trace = []
    converged = False
    inner_converged = True
    it = 0
    while it < iterations and not converged:
        # q(z_0, ..., z_n) at the expected precisions
        walk_var = torch.stack([1.0 / q_tau["tau_x"].mean(), 1.0 / q_tau["tau_w"].mean()])
        for factor in transitions:
            factor.meas_model.loss.set_cov(walk_var)
            factor.compute_factor(torch.zeros(4))
        for factor, linpoint in zip(combines, linpoints):
            factor.meas_model.loss.set_cov(1.0 / q_tau["tau_y"].mean())
            factor.compute_factor(linpoint)
        report = fg.solve(n_iters=iterations, converged_threshold=tolerance)
        inner_converged = report.converged

        marginals = [var.belief.to_belief() for var in fg.var_nodes]
        pairs = [factor.belief().to_belief() for factor in transitions]
        D = PAIR_WALK.to(y.dtype)
        walk_sq = []
        for pair in pairs:
            m, S = pair.mean_cov()
            walk_sq.append(torch.diagonal(D @ S @ D.T) + (D @ m) ** 2)
        walk_sq = torch.stack(walk_sq)
        s_means, s_vars = [], []
        for factor, q in zip(combines, marginals[1:]):
            m, S = q.mean_cov()
            J, s_mean = _combined_signal(factor, m)
            s_means.append(s_mean)
            s_vars.append((J @ S @ J.T)[0, 0])
        s_means = torch.stack(s_means)
        s_vars = torch.stack(s_vars)
        sq_err = {
            "tau_x": walk_sq[:, 0],
            "tau_w": walk_sq[:, 1],
            "tau_y": (y - s_means) ** 2 + s_vars,
        }
        q_tau = {
            k: gamma_posterior(prior[k], n, sq_err[k].sum()) for k in q_tau}
        linpoints = torch.stack([q.mean() for q in marginals[1:]])

        # a Gaussian chain's entropy is its pairs' minus its inner nodes'
        entropy = (
            sum(pair.entropy() for pair in pairs)
            - sum(q.entropy() for q in marginals[1:-1])
            + sum(q.entropy() for q in q_tau.values()))
        m0, S0 = marginals[0].mean_cov()
        free_energy = (
            _initial_state_energy(prior, m0, S0, (0, 1))
            + _precision_energy(prior, q_tau, sq_err)
            - entropy)
        trace.append(float(free_energy))
        it += 1
        if verbose:
            print(f"VMP iter {it}  --- Free energy {trace[-1]:.5f}")
        converged = free_energy_converged(trace, tolerance)

    posteriors = {
        "x": [q.marginal(0) for q in marginals[1:]],
        "w": [q.marginal(1) for q in marginals[1:]],
        "s": [NormalMeanVariance(m, v) for m, v in zip(s_means, s_vars)],
        "x0": marginals[0].marginal(0),
        "w0": marginals[0].marginal(1),
    }
    posteriors.update(q_tau)
    return InferenceResult(posteriors, trace, converged and inner_converged, it)
