"""
Bayesian linear regression y_i = a x_i + b + noise.

The slope and intercept live together in one 2-dof variable node, so each
observation is a unary factor with design row [x_i, 1] and the graph is a
tree: GBP gives the exact Gaussian posterior.

With unknown noise variance s ~ InverseGamma we alternate, mean-field style,
between q(a, b) (a GBP solve at the expected noise precision) and q(s)
(a conjugate update), tracking the variational free energy.

The multivariate version regresses vector samples with per-component slopes
and intercepts, y_i = diag(x_i) a + b + noise, and an inverse Wishart over
the noise covariance in place of the inverse Gamma.
"""
import torch

from ..distributions import (
    InverseGamma, InverseWishart, MvNormalMeanCovariance, NormalMeanVariance,
    vague)
from ..errors import DimensionMismatchError, MalformedInputError
from ..estimator import InferenceResult
from ..gaussian_bp import FactorGraph, GBPSettings, LinearMeasModel, SquaredLoss
from ..math_helpers import symmetrize
from ..utils import as_float_tensor
from ..vmp import (
    expected_mvnormal_loglik, expected_normal_loglik, expected_sq_err,
    free_energy_converged, gaussian_cross_entropy, inverse_gamma_posterior,
    inverse_wishart_posterior)


def default_priors():
    return NormalMeanVariance(0.0, 1.0), NormalMeanVariance(0.0, 100.0)


def design_matrix(x):
    x = as_float_tensor(x).reshape(-1)
    return torch.stack([x, torch.ones_like(x)], dim=1)


def _check_data(x, y):
    x = as_float_tensor(x).reshape(-1)
    y = as_float_tensor(y).reshape(-1)
    if x.shape != y.shape:
        raise DimensionMismatchError(
            f"x has {x.shape[0]} samples but y has {y.shape[0]}")
    if not (torch.all(torch.isfinite(x)) and torch.all(torch.isfinite(y))):
        raise MalformedInputError("regression data must be finite")
    return x, y


def _joint_prior(prior_a, prior_b):
    prior_a.validate()
    prior_b.validate()
    return MvNormalMeanCovariance(
        torch.stack([prior_a.mean(), prior_b.mean()]),
        torch.diag(torch.stack([prior_a.var(), prior_b.var()])))


def build_regression_graph(x, y, prior_ab, noise_var, gbp_settings=None):
    fg = FactorGraph(gbp_settings)
    fg.add_var_node(2, prior_ab.mean(), prior_ab.cov(), name="ab")
    for phi, y_i in zip(design_matrix(x), y):
        fg.add_factor(
            ["ab"], y_i.reshape(1),
            LinearMeasModel(phi.unsqueeze(0), SquaredLoss(1, noise_var)))
    return fg


def _posteriors(q_ab):
    return {
        "ab": q_ab,
        "a": q_ab.marginal(0),
        "b": q_ab.marginal(1),
    }


def fit_linear_regression(
        x, y,
        noise_var=1.0,
        prior_a=None,
        prior_b=None,
        iterations=200,
        tolerance=1e-6,
        verbose=0):
    """
    Known noise variance. `free_energy` in the result has one entry per
    message passing iteration.
    """
    x, y = _check_data(x, y)
    if prior_a is None or prior_b is None:
        default_a, default_b = default_priors()
        prior_a = prior_a or default_a
        prior_b = prior_b or default_b
    prior_ab = _joint_prior(prior_a, prior_b)
    fg = build_regression_graph(
        x, y, prior_ab, noise_var,
        GBPSettings(verbose=verbose))
    report = fg.solve(
        n_iters=iterations, converged_threshold=tolerance,
        callback=lambda i, fg: fg.free_energy())
    return InferenceResult(
        _posteriors(fg.get_var_node("ab").belief.to_belief()),
        report.callback_log, report.converged, report.n_iters)


def fit_linear_regression_unknown_noise(
        x, y,
        prior_a=None,
        prior_b=None,
        prior_s=None,
        init_s=None,
        iterations=20,
        tolerance=1e-6,
        verbose=0):
    """
    Unknown noise variance s ~ InverseGamma(prior_s), factorised as
    q(a, b) q(s). `init_s` seeds q(s) for the first pass.
    """
    x, y = _check_data(x, y)
    if prior_a is None or prior_b is None:
        default_a, default_b = default_priors()
        prior_a = prior_a or default_a
        prior_b = prior_b or default_b
    if prior_s is None:
        prior_s = InverseGamma(1.0, 1.0)
    prior_s.validate()
    q_s = (init_s or vague(InverseGamma)).validate()
    prior_ab = _joint_prior(prior_a, prior_b)
    phi = design_matrix(x)
    n = y.shape[0]

    fg = build_regression_graph(
        x, y, prior_ab, 1.0 / q_s.mean_inv(), GBPSettings(schedule="sweep", verbose=verbose))
    trace = []
    converged = False
    inner_converged = True
    it = 0
    while it < iterations and not converged:
        # q(a, b) at the current expected noise precision
        noise_var = 1.0 / q_s.mean_inv()
        for factor in fg.factors:
            factor.meas_model.loss.set_cov(noise_var)
            factor.compute_factor()
        report = fg.solve(n_iters=iterations, converged_threshold=tolerance)
        inner_converged = report.converged
        q_ab = fg.get_var_node("ab").belief.to_belief()

        # q(s)
        sq_errs = expected_sq_err(y, phi, q_ab)
        q_s = inverse_gamma_posterior(prior_s, n, sq_errs.sum())

        free_energy = (
            -expected_normal_loglik(sq_errs, q_s).sum()
            + gaussian_cross_entropy(q_ab, prior_ab) - q_ab.entropy()
            - q_s.expected_log_density(prior_s) - q_s.entropy())
        trace.append(float(free_energy))
        it += 1
        if verbose:
            print(f"VMP iter {it}  --- Free energy {trace[-1]:.5f}")
        converged = free_energy_converged(trace, tolerance)

    posteriors = _posteriors(q_ab)
    posteriors["s"] = q_s
    return InferenceResult(posteriors, trace, converged and inner_converged, it)


def predictive(q_ab, x, noise_var=0.0):
    """
    Predictive mean and variance of y at inputs `x`.
    """
    phi = design_matrix(x)
    m, S = q_ab.mean_cov()
    return phi @ m, torch.einsum("ni,ij,nj->n", phi, S, phi) + noise_var


def default_multivariate_priors(dim):
    """
    Broad priors on the slopes a, intercepts b and noise covariance W.
    """
    return (
        MvNormalMeanCovariance(torch.zeros(dim), 100.0 * torch.eye(dim)),
        MvNormalMeanCovariance(torch.ones(dim), 100.0 * torch.eye(dim)),
        InverseWishart(dim + 2, 100.0 * torch.eye(dim)),
    )


def multivariate_design(x):
    """
    Design matrices [diag(x_i), I] for every row of `x`, shape (n, dim, 2 dim).
    """
    x = as_float_tensor(x)
    dim = x.shape[-1]
    eye = torch.eye(dim).expand(x.shape[0], dim, dim)
    return torch.cat([torch.diag_embed(x), eye], dim=2)


def _check_multivariate_data(x, y):
    x = as_float_tensor(x)
    y = as_float_tensor(y)
    if x.ndim != 2 or x.shape != y.shape:
        raise DimensionMismatchError(
            f"x and y must both have shape (n, dim), got {tuple(x.shape)} and {tuple(y.shape)}")
    if not (torch.all(torch.isfinite(x)) and torch.all(torch.isfinite(y))):
        raise MalformedInputError("regression data must be finite")
    return x, y


def _check_dim(name, belief, dim):
    belief.validate()
    if belief.dim != dim:
        raise DimensionMismatchError(f"{name} has dimension {belief.dim}, the data has {dim}")


def fit_multivariate_regression(
        x, y,
        prior_a=None,
        prior_b=None,
        prior_W=None,
        init_W=None,
        iterations=50,
        tolerance=1e-6,
        verbose=0):
    """
    Every sample is a vector, y_i = diag(x_i) a + b + e_i with
    e_i ~ N(0, W) and W ~ InverseWishart(prior_W); `x` and `y` have shape
    (n, dim). Factorised as q(a, b) q(W), with `init_W` seeding q(W) for
    the first pass.
    """
    x, y = _check_multivariate_data(x, y)
    n, dim = y.shape
    default_a, default_b, default_W = default_multivariate_priors(dim)
    prior_a = prior_a or default_a
    prior_b = prior_b or default_b
    prior_W = prior_W or default_W
    for name, belief in (("prior_a", prior_a), ("prior_b", prior_b), ("prior_W", prior_W)):
        _check_dim(name, belief, dim)
    q_W = init_W or prior_W
    _check_dim("init_W", q_W, dim)

    prior_ab = MvNormalMeanCovariance(
        torch.cat([prior_a.mean(), prior_b.mean()]),
        torch.block_diag(prior_a.cov(), prior_b.cov()))
    phi = multivariate_design(x)

    fg = FactorGraph(GBPSettings(schedule="sweep", verbose=verbose))
    fg.add_var_node(2 * dim, prior_ab.mean(), prior_ab.cov(), name="ab")
    noise_cov = symmetrize(torch.inverse(q_W.mean_inv()))
    for phi_i, y_i in zip(phi, y):
        fg.add_factor(
            ["ab"], y_i, LinearMeasModel(phi_i, SquaredLoss(dim, noise_cov)))

    trace = []
    converged = False
    inner_converged = True
    it = 0
    while it < iterations and not converged:
        # q(a, b) at the current E[W^-1]
        noise_cov = symmetrize(torch.inverse(q_W.mean_inv()))
        for factor in fg.factors:
            factor.meas_model.loss.set_cov(noise_cov)
            factor.compute_factor()
        report = fg.solve(n_iters=iterations, converged_threshold=tolerance)
        inner_converged = report.converged
        q_ab = fg.get_var_node("ab").belief.to_belief()

        # q(W)
        m, S = q_ab.mean_cov()
        resid = y - phi @ m
        outer_sum = resid.T @ resid + torch.einsum("nij,jk,nlk->il", phi, S, phi)
        q_W = inverse_wishart_posterior(prior_W, n, outer_sum)

        free_energy = (
            -expected_mvnormal_loglik(outer_sum, q_W, n)
            + gaussian_cross_entropy(q_ab, prior_ab) - q_ab.entropy()
            - q_W.expected_log_density(prior_W) - q_W.entropy())
        trace.append(float(free_energy))
        it += 1
        if verbose:
            print(f"VMP iter {it}  --- Free energy {trace[-1]:.5f}")
        converged = free_energy_converged(trace, tolerance)

    posteriors = {
        "ab": q_ab,
        "a": q_ab.block(slice(0, dim)),
        "b": q_ab.block(slice(dim, 2 * dim)),
        "W": q_W,
    }
    return InferenceResult(posteriors, trace, converged and inner_converged, it)
