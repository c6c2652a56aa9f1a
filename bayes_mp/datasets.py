"""
Synthetic data for the experiments.
Every generator takes a `seed` and draws from its own `torch.Generator`,
so the same arguments always give the same data.
"""
import math
import operator

import torch

from .utils import as_float_tensor, as_matrix


def _generator(seed):
    g = torch.Generator()
    g.manual_seed(seed)
    return g


def _randn(g, *shape):
    return torch.randn(*shape, generator=g, dtype=torch.get_default_dtype())


def generate_regression_data(a=1.5, b=1.0, v=1.0, n=250, seed=42):
    """
    y = a x + b + N(0, v) at evenly spaced x in [0, 10].
    """
    g = _generator(seed)
    x = torch.linspace(0, 10, n)
    y = a * x + b + math.sqrt(v) * _randn(g, n)
    return x, y


def generate_multivariate_regression_data(a, b, v, n=50, seed=42):
    """
    Independent regressions side by side, y[:, k] = a[k] x + b[k] + N(0, v[k]),
    all at x = 1, ..., n. Returns (x, y), both of shape (n, dim).
    """
    g = _generator(seed)
    a = as_float_tensor(a)
    b = as_float_tensor(b)
    v = as_float_tensor(v)
    dim = a.shape[0]
    x = torch.arange(1, n + 1, dtype=a.dtype).unsqueeze(1).expand(n, dim)
    y = a * x + b + v.sqrt() * _randn(g, n, dim)
    return x.clone(), y


def generate_coin_data(p=0.75, n=500, seed=42):
    g = _generator(seed)
    u = torch.rand(n, generator=g, dtype=torch.get_default_dtype())
    return (u < p).to(torch.get_default_dtype())


def generate_constant_mean_data(mean=3.0, var=1.0, n=200, seed=42):
    g = _generator(seed)
    return mean + math.sqrt(var) * _randn(g, n)


def _mvn_draw(g, cov):
    L = torch.linalg.cholesky(cov)
    return L @ _randn(g, cov.shape[0])


def generate_rotation_data(A, B, Q, P, n=300, x0=(10.0, -10.0), seed=1234):
    """
    Hidden states and observations of x_t = A x_{t-1} + N(0, Q),
    y_t = B x_t + N(0, P), started from x_0 = `x0`.
    Returns (x, y) of shapes (n, state_dim) and (n, obs_dim).
    """
    g = _generator(seed)
    A = as_float_tensor(A)
    B = as_float_tensor(B)
    Q = as_matrix(Q, A.shape[0])
    P = as_matrix(P, B.shape[0])
    x_prev = as_float_tensor(x0)
    xs, ys = [], []
    for _ in range(n):
        x = A @ x_prev + _mvn_draw(g, Q)
        y = B @ x + _mvn_draw(g, P)
        xs.append(x)
        ys.append(y)
        x_prev = x
    if n == 0:
        return torch.zeros(0, A.shape[0]), torch.zeros(0, B.shape[0])
    return torch.stack(xs), torch.stack(ys)


def generate_identification_data(
        f=operator.add, n=250, seed=123,
        x_i_min=-20.0, w_i_min=20.0,
        noise=20.0, real_x_tau=0.1, real_w_tau=1.0):
    """
    Two Gaussian random walks x, w with precisions `real_x_tau`,
    `real_w_tau`, started from `x_i_min`, `w_i_min`, and observations
    y = f(x, w) + N(0, noise). `noise` is a variance.
    """
    g = _generator(seed)
    real_x = torch.zeros(n)
    real_w = torch.zeros(n)
    real_y = torch.zeros(n)
    x_prev = torch.tensor(float(x_i_min))
    w_prev = torch.tensor(float(w_i_min))
    for i in range(n):
        real_x[i] = x_prev + math.sqrt(1.0 / real_x_tau) * _randn(g, ())
        real_w[i] = w_prev + math.sqrt(1.0 / real_w_tau) * _randn(g, ())
        real_y[i] = f(real_x[i], real_w[i]) + math.sqrt(noise) * _randn(g, ())
        x_prev = real_x[i]
        w_prev = real_w[i]
    return real_x, real_w, real_y
