"""
Mean-field variational message passing pieces shared by the models with
unknown noise: conjugate updates for precisions (Gamma), variances
(inverse Gamma) and covariance matrices (inverse Wishart), and the expected
log densities that make up the variational free energy

    F[q] = E_q[-log p(y, z)] - H[q]

All terms are computed in closed form.
"""
import math

import torch

from .distributions import GammaShapeRate, InverseGamma, InverseWishart

LOG_2PI = math.log(2 * math.pi)


def noise_statistics(noise):
    """
    (E[log precision], E[precision]) for a Gamma over a precision, an inverse
    Gamma over a variance, or a fixed positive precision.
    """
    if isinstance(noise, GammaShapeRate):
        return noise.mean_log(), noise.mean()
    elif isinstance(noise, InverseGamma):
        return -noise.mean_log(), noise.mean_inv()
    noise = torch.as_tensor(noise, dtype=torch.get_default_dtype())
    return torch.log(noise), noise


def expected_normal_loglik(sq_err, noise):
    """
    E[log N(y; s, 1/tau)] given E[(y - s)^2] and the belief over tau
    """
    mean_log_tau, mean_tau = noise_statistics(noise)
    return 0.5 * mean_log_tau - 0.5 * LOG_2PI - 0.5 * mean_tau * sq_err


def expected_mvnormal_loglik(outer_sum, noise, n=1):
    """
    Sum over `n` terms of E[log N(y; z, W)], given the summed expected outer
    products E[(y - z)(y - z)^T] and an InverseWishart belief over W.
    """
    d = noise.dim
    return (
        -0.5 * n * (d * LOG_2PI + noise.mean_logdet())
        - 0.5 * torch.trace(noise.mean_inv() @ outer_sum))


def gamma_posterior(prior, n, sq_err_sum):
    """
    Precision update from `n` Gaussian terms with summed expected squared
    error `sq_err_sum`.
    """
    return GammaShapeRate(
        prior.shape() + 0.5 * n,
        prior.rate() + 0.5 * sq_err_sum)


def inverse_gamma_posterior(prior, n, sq_err_sum):
    """
    Variance update, the inverse-Gamma twin of `gamma_posterior`.
    """
    return InverseGamma(
        prior.shape() + 0.5 * n,
        prior.scale() + 0.5 * sq_err_sum)


def inverse_wishart_posterior(prior, n, outer_sum):
    """
    Covariance update from `n` Gaussian vector terms whose expected outer
    products of residuals sum to `outer_sum`.
    """
    return InverseWishart(prior.df() + n, prior.scale() + outer_sum)


def gaussian_cross_entropy(q, p):
    """
    -E_q[log p(z)] for multivariate normals q and p.
    """
    m_q, S_q = q.mean_cov()
    m_p, S_p = p.mean_cov()
    diff = m_q - m_p
    return 0.5 * (
        q.dim * LOG_2PI
        + torch.logdet(S_p)
        + torch.trace(torch.linalg.solve(S_p, S_q))
        + diff @ torch.linalg.solve(S_p, diff))


def expected_sq_err(y, phi, q):
    """
    E_q[(y - phi @ z)^2] for a Gaussian q(z) and design row(s) `phi`.
    Returns one value per row.
    """
    m, S = q.mean_cov()
    phi = torch.atleast_2d(phi)
    resid = y - phi @ m
    return resid ** 2 + torch.einsum("ni,ij,nj->n", phi, S, phi)


def free_energy_converged(trace, tolerance):
    """
    True when the last two free energies agree within `tolerance`.
    """
    if len(trace) < 2:
        return False
    return abs(trace[-1] - trace[-2]) < tolerance
