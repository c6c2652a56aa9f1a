"""
Parametric belief families.

A belief holds the parameters of one distribution over one latent variable.
Beliefs are treated as immutable values: updates construct new beliefs.
Each family knows its own parameter domain (`validate`) and the summary
statistics that the update driver feeds back as priors
(`mean_precision`, `mean_var`, `shape`, `rate`, ...).
Densities and entropies are delegated to `torch.distributions` where it has
the family.
"""
import math

import torch
from torch.distributions import (
    Normal, MultivariateNormal, Gamma, Beta as TorchBeta, Wishart,
    TransformedDistribution, PowerTransform)

from .errors import InvalidBeliefError
from .math_helpers import is_spd, symmetrize
from .utils import as_float_tensor, as_scalar

HUGE = 1e12
TINY = 1e-12


def _check_finite(family, name, value):
    if not torch.all(torch.isfinite(value)):
        raise InvalidBeliefError(f"{family}: {name}={value} is not finite")


def _check_positive(family, name, value):
    _check_finite(family, name, value)
    if not torch.all(value > 0):
        raise InvalidBeliefError(f"{family}: {name}={value} must be positive")


class Belief:
    """
    Base class; subclasses store their parameters as tensors.
    """
    param_names = ()

    def params(self):
        return {k: getattr(self, "_" + k) for k in self.param_names}

    def validate(self):
        raise NotImplementedError

    def to_torch(self):
        raise NotImplementedError

    def mean(self):
        raise NotImplementedError

    def var(self):
        raise NotImplementedError

    def std(self):
        return self.var().sqrt()

    def mean_var(self):
        return self.mean(), self.var()

    def entropy(self):
        return self.to_torch().entropy()

    def log_prob(self, x):
        return self.to_torch().log_prob(as_float_tensor(x))

    def pdf(self, x):
        return self.log_prob(x).exp()

    def sample(self, n=None):
        """
        Draw samples; `torch.distributions` has no generator argument, so
        seeding goes through the global RNG.
        """
        shape = torch.Size() if n is None else torch.Size([n])
        return self.to_torch().sample(shape)

    def allclose(self, other, rtol=1e-5, atol=1e-8):
        if type(self) is not type(other):
            return False
        return all(
            torch.allclose(v, other.params()[k], rtol=rtol, atol=atol)
            for k, v in self.params().items())

    def __repr__(self):
        params = ", ".join(
            f"{k}={_fmt(v)}" for k, v in self.params().items())
        return f"{type(self).__name__}({params})"


def _fmt(v):
    if v.numel() == 1:
        return f"{v.item():.6g}"
    return str(v.tolist())


class _UnivariateNormal(Belief):
    """
    Storage is moments form; the two public subclasses differ only in how they
    are parameterised at construction.
    """
    def __init__(self, mean, var):
        self._mean = as_scalar(mean)
        self._var = as_scalar(var)

    def validate(self):
        family = type(self).__name__
        _check_finite(family, "mean", self._mean)
        _check_positive(family, "var", self._var)
        return self

    def to_torch(self):
        return Normal(self._mean, self._var.sqrt())

    def mean(self):
        return self._mean

    def var(self):
        return self._var

    def precision(self):
        return 1.0 / self._var

    def mean_precision(self):
        return self._mean, self.precision()

    def canonical(self):
        """
        information form (eta, lam)
        """
        lam = self.precision()
        return lam * self._mean, lam


class NormalMeanVariance(_UnivariateNormal):
    param_names = ("mean", "var")


class NormalMeanPrecision(_UnivariateNormal):
    param_names = ("mean", "precision")

    def __init__(self, mean, precision):
        precision = as_scalar(precision)
        super().__init__(mean, 1.0 / precision)
        self._precision = precision


class MvNormalMeanCovariance(Belief):
    param_names = ("mean", "cov")

    def __init__(self, mean, cov):
        self._mean = as_float_tensor(mean).reshape(-1)
        cov = as_float_tensor(cov)
        if cov.ndim == 1:
            cov = torch.diag(cov)
        self._cov = cov

    @classmethod
    def from_canonical(cls, eta, lam):
        lam = symmetrize(as_float_tensor(lam))
        cov = symmetrize(torch.inverse(lam))
        return cls(cov @ as_float_tensor(eta), cov)

    @property
    def dim(self):
        return self._mean.shape[0]

    def validate(self):
        family = type(self).__name__
        _check_finite(family, "mean", self._mean)
        if self._cov.shape != torch.Size([self.dim, self.dim]):
            raise InvalidBeliefError(
                f"{family}: cov shape {tuple(self._cov.shape)} "
                f"does not match mean dimension {self.dim}")
        if not is_spd(self._cov):
            raise InvalidBeliefError(
                f"{family}: cov is not symmetric positive definite")
        return self

    def to_torch(self):
        return MultivariateNormal(self._mean, covariance_matrix=self._cov)

    def mean(self):
        return self._mean

    def cov(self):
        return self._cov

    def var(self):
        return torch.diagonal(self._cov)

    def mean_cov(self):
        return self._mean, self._cov

    def precision(self):
        return torch.inverse(self._cov)

    def canonical(self):
        lam = self.precision()
        return lam @ self._mean, lam

    def marginal(self, i):
        """
        univariate marginal of component i
        """
        return NormalMeanVariance(self._mean[i], self._cov[i, i])

    def block(self, ix):
        """
        joint marginal of the components in `ix` (a slice or index list)
        """
        return MvNormalMeanCovariance(self._mean[ix], self._cov[ix][:, ix])


class GammaShapeRate(Belief):
    param_names = ("shape", "rate")

    def __init__(self, shape, rate):
        self._shape = as_scalar(shape)
        self._rate = as_scalar(rate)

    def validate(self):
        family = type(self).__name__
        _check_positive(family, "shape", self._shape)
        _check_positive(family, "rate", self._rate)
        return self

    def to_torch(self):
        return Gamma(concentration=self._shape, rate=self._rate)

    def shape(self):
        return self._shape

    def rate(self):
        return self._rate

    def scale(self):
        return 1.0 / self._rate

    def mean(self):
        return self._shape / self._rate

    def var(self):
        return self._shape / self._rate ** 2

    def mean_log(self):
        """E[log tau]"""
        return torch.digamma(self._shape) - torch.log(self._rate)

    def expected_log_density(self, other):
        """
        E_self[log other(tau)] for another Gamma `other`.
        """
        a, b = other.shape(), other.rate()
        return (
            a * torch.log(b) - torch.lgamma(a)
            + (a - 1) * self.mean_log()
            - b * self.mean())


class InverseGamma(Belief):
    """
    Inverse gamma over a variance; 1/s ~ Gamma(shape, rate=scale).
    """
    param_names = ("shape", "scale")

    def __init__(self, shape, scale):
        self._shape = as_scalar(shape)
        self._scale = as_scalar(scale)

    def validate(self):
        family = type(self).__name__
        _check_positive(family, "shape", self._shape)
        _check_positive(family, "scale", self._scale)
        return self

    def to_torch(self):
        return TransformedDistribution(
            Gamma(concentration=self._shape, rate=self._scale),
            [PowerTransform(torch.tensor(-1.0, dtype=self._shape.dtype))])

    def shape(self):
        return self._shape

    def scale(self):
        return self._scale

    def mean(self):
        if self._shape <= 1:
            return torch.tensor(float("inf"), dtype=self._shape.dtype)
        return self._scale / (self._shape - 1)

    def var(self):
        if self._shape <= 2:
            return torch.tensor(float("inf"), dtype=self._shape.dtype)
        return self._scale ** 2 / ((self._shape - 1) ** 2 * (self._shape - 2))

    def mean_inv(self):
        """E[1/s]"""
        return self._shape / self._scale

    def mean_log(self):
        """E[log s]"""
        return torch.log(self._scale) - torch.digamma(self._shape)

    def log_prob(self, x):
        a, b = self._shape, self._scale
        x = as_float_tensor(x)
        return a * torch.log(b) - torch.lgamma(a) - (a + 1) * torch.log(x) - b / x

    def entropy(self):
        a, b = self._shape, self._scale
        return a + torch.log(b) + torch.lgamma(a) - (1 + a) * torch.digamma(a)

    def expected_log_density(self, other):
        """
        E_self[log other(s)] for another InverseGamma `other`.
        """
        a, b = other.shape(), other.scale()
        return (
            a * torch.log(b) - torch.lgamma(a)
            - (a + 1) * self.mean_log()
            - b * self.mean_inv())


class InverseWishart(Belief):
    """
    Inverse Wishart over a covariance matrix; W^-1 ~ Wishart(df, scale^-1).
    """
    param_names = ("df", "scale")

    def __init__(self, df, scale):
        self._df = as_scalar(df)
        self._scale = as_float_tensor(scale)

    @property
    def dim(self):
        return self._scale.shape[-1]

    def validate(self):
        family = type(self).__name__
        _check_finite(family, "df", self._df)
        _check_finite(family, "scale", self._scale)
        if self._scale.ndim != 2 or self._scale.shape[0] != self._scale.shape[1]:
            raise InvalidBeliefError(
                f"{family}: scale must be a square matrix, got shape {tuple(self._scale.shape)}")
        if not is_spd(self._scale):
            raise InvalidBeliefError(f"{family}: scale is not symmetric positive definite")
        if not self._df > self.dim - 1:
            raise InvalidBeliefError(
                f"{family}: df={self._df.item()} must exceed dim - 1 = {self.dim - 1}")
        return self

    def df(self):
        return self._df

    def scale(self):
        return self._scale

    def mean(self):
        d = self.dim
        if self._df <= d + 1:
            return torch.full_like(self._scale, float("inf"))
        return self._scale / (self._df - d - 1)

    def var(self):
        """elementwise variances"""
        d, nu, psi = self.dim, self._df, self._scale
        if nu <= d + 3:
            return torch.full_like(psi, float("inf"))
        diag = torch.diagonal(psi)
        return (
            (nu - d + 1) * psi ** 2 + (nu - d - 1) * torch.outer(diag, diag)
        ) / ((nu - d) * (nu - d - 1) ** 2 * (nu - d - 3))

    def mean_inv(self):
        """E[W^-1]"""
        return self._df * torch.inverse(self._scale)

    def mean_logdet(self):
        """E[log |W|]"""
        d = self.dim
        i = torch.arange(1, d + 1, dtype=self._df.dtype)
        return (
            torch.logdet(self._scale) - d * math.log(2.0)
            - torch.digamma(0.5 * (self._df - i + 1)).sum())

    def log_prob(self, x):
        nu, psi, d = self._df, self._scale, self.dim
        x = as_float_tensor(x)
        return (
            0.5 * nu * torch.logdet(psi) - 0.5 * nu * d * math.log(2.0)
            - torch.mvlgamma(0.5 * nu, p=d)
            - 0.5 * (nu + d + 1) * torch.logdet(x)
            - 0.5 * torch.trace(psi @ torch.inverse(x)))

    def expected_log_density(self, other):
        """
        E_self[log other(W)] for another InverseWishart `other`.
        """
        nu, psi, d = other.df(), other.scale(), self.dim
        return (
            0.5 * nu * torch.logdet(psi) - 0.5 * nu * d * math.log(2.0)
            - torch.mvlgamma(0.5 * nu, p=d)
            - 0.5 * (nu + d + 1) * self.mean_logdet()
            - 0.5 * torch.trace(psi @ self.mean_inv()))

    def entropy(self):
        return -self.expected_log_density(self)

    def sample(self, n=None):
        shape = torch.Size() if n is None else torch.Size([n])
        return torch.inverse(
            Wishart(self._df, precision_matrix=self._scale).sample(shape))


class Beta(Belief):
    param_names = ("alpha", "beta")

    def __init__(self, alpha, beta):
        self._alpha = as_scalar(alpha)
        self._beta = as_scalar(beta)

    def validate(self):
        family = type(self).__name__
        _check_positive(family, "alpha", self._alpha)
        _check_positive(family, "beta", self._beta)
        return self

    def to_torch(self):
        return TorchBeta(self._alpha, self._beta)

    def alpha(self):
        return self._alpha

    def beta(self):
        return self._beta

    def mean(self):
        return self._alpha / (self._alpha + self._beta)

    def var(self):
        a, b = self._alpha, self._beta
        return a * b / ((a + b) ** 2 * (a + b + 1))


def log_beta_fn(a, b):
    return torch.lgamma(a) + torch.lgamma(b) - torch.lgamma(a + b)


def vague(family, dim=None):
    """
    An uninformative member of `family`.
    """
    if family is NormalMeanVariance:
        return NormalMeanVariance(0.0, HUGE)
    elif family is NormalMeanPrecision:
        return NormalMeanPrecision(0.0, TINY)
    elif family is MvNormalMeanCovariance:
        if dim is None:
            raise ValueError("vague multivariate normal needs a dimension")
        return MvNormalMeanCovariance(
            torch.zeros(dim), HUGE * torch.eye(dim))
    elif family is GammaShapeRate:
        return GammaShapeRate(1.0, TINY)
    elif family is InverseGamma:
        return InverseGamma(2.0, HUGE)
    elif family is InverseWishart:
        if dim is None:
            raise ValueError("vague inverse Wishart needs a dimension")
        return InverseWishart(dim + 2, HUGE * torch.eye(dim))
    elif family is Beta:
        return Beta(1.0, 1.0)
    raise TypeError(f"no vague member known for {family}")


def validate_all(beliefs):
    """
    validate a dict of beliefs, naming the offender
    """
    for name, belief in beliefs.items():
        if not isinstance(belief, Belief):
            raise InvalidBeliefError(f"{name}: {belief!r} is not a belief")
        try:
            belief.validate()
        except InvalidBeliefError as e:
            raise InvalidBeliefError(f"{name}: {e}") from e
    return beliefs
