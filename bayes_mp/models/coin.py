"""
Coin flips: theta ~ Beta(a, b), y_i ~ Bernoulli(theta).

Conjugate, so both the batch fit and the per-flip update are exact and the
free energy is the negative log evidence.
"""
import torch

from ..distributions import Beta, log_beta_fn
from ..errors import MalformedInputError
from ..estimator import InferenceResult, StateEstimator, StepResult
from ..utils import as_float_tensor

DEFAULT_PRIOR = (2.0, 7.0)


def default_prior():
    return Beta(*DEFAULT_PRIOR)


def check_flips(data):
    data = as_float_tensor(data).reshape(-1)
    if not torch.all((data == 0) | (data == 1)):
        raise MalformedInputError("coin flips must be 0 or 1")
    return data


def fit_coin(data, prior=None):
    """
    Posterior over the coin bias after all of `data`.
    """
    if prior is None:
        prior = default_prior()
    prior.validate()
    data = check_flips(data)
    a, b = prior.alpha(), prior.beta()
    heads = data.sum()
    tails = data.numel() - heads
    posterior = Beta(a + heads, b + tails)
    log_evidence = log_beta_fn(a + heads, b + tails) - log_beta_fn(a, b)
    return InferenceResult(
        {"theta": posterior}, [float(-log_evidence)], True, 1)


class BetaBernoulliEstimator(StateEstimator):
    """
    One flip at a time. The free energy of a step is -log p(y_t | y_<t).
    """
    variables = ("theta",)

    def check_observation(self, observation):
        obs = super().check_observation(observation)
        return check_flips(obs).reshape(())

    def update(self, prior, observation):
        y = self.check_observation(observation)
        q = prior["theta"]
        a, b = q.alpha(), q.beta()
        p_heads = a / (a + b)
        predictive = p_heads if y == 1 else 1 - p_heads
        free_energy = float(-torch.log(predictive))
        return StepResult(
            {"theta": Beta(a + y, b + 1 - y)},
            free_energy, True, 1, (free_energy,))
