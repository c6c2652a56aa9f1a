"""
Closed-loop recursive estimation.

The driver feeds observations one at a time to a `StateEstimator`, keeps the
returned posteriors in a `PosteriorHistory`, and turns each posterior into the
next prior through an autoupdate rule. An autoupdate rule is any callable

    rule(posteriors: dict) -> dict of prior beliefs

and the helpers below build the usual ones, e.g. feeding back the mean and
precision of q(x) as the next Gaussian prior on x:

    autoupdates(
        mean_precision_update("x"),
        shape_rate_update("tau_x"),
    )

Only forward filtering happens here; there is no backward correction.
"""
import warnings
from collections import deque

import torch

from .distributions import (
    Beta, GammaShapeRate, MvNormalMeanCovariance,
    NormalMeanPrecision, NormalMeanVariance, validate_all)
from .errors import (
    InvalidBeliefError, MalformedInputError, NonConvergenceError,
    NonConvergenceWarning)


class PosteriorHistory:
    """
    Append-only record of step results, oldest first.
    With `keep_last=k` only the k most recent steps are retained.
    """
    def __init__(self, keep_last=None):
        if keep_last is not None and keep_last < 1:
            raise ValueError(f"keep_last must be positive, got {keep_last}")
        self.keep_last = keep_last
        self._steps = deque(maxlen=keep_last)
        self.n_seen = 0

    def append(self, result):
        self._steps.append(result)
        self.n_seen += 1

    def __len__(self):
        return len(self._steps)

    def __iter__(self):
        return iter(self._steps)

    def __getitem__(self, key):
        """
        history["x"] is the list of posteriors of x, one per step;
        history[i] is the i-th retained step result.
        """
        if isinstance(key, str):
            return [step.posteriors[key] for step in self._steps]
        return list(self._steps)[key]

    def __repr__(self):
        return f"{type(self).__name__}(n_steps={len(self)}, keep_last={self.keep_last})"

    def names(self):
        if not self._steps:
            return []
        return list(self._steps[-1].posteriors.keys())

    def last(self):
        return self._steps[-1]

    @property
    def free_energy(self):
        return [step.free_energy for step in self._steps]

    @property
    def converged(self):
        return [step.converged for step in self._steps]

    def means(self, name):
        return torch.stack([b.mean() for b in self[name]])

    def vars(self, name):
        return torch.stack([b.var() for b in self[name]])

    def stds(self, name):
        return self.vars(name).sqrt()


def identity_update(posteriors):
    """
    each posterior becomes the next prior of the same variable
    """
    return dict(posteriors)


def mean_precision_update(source, target=None):
    target = target or source

    def rule(posteriors):
        m, tau = posteriors[source].mean_precision()
        return {target: NormalMeanPrecision(m, tau)}
    return rule


def mean_var_update(source, target=None):
    target = target or source

    def rule(posteriors):
        m, v = posteriors[source].mean_var()
        return {target: NormalMeanVariance(m, v)}
    return rule


def mean_cov_update(source, target=None):
    target = target or source

    def rule(posteriors):
        m, cov = posteriors[source].mean_cov()
        return {target: MvNormalMeanCovariance(m, cov)}
    return rule


def shape_rate_update(source, target=None):
    target = target or source

    def rule(posteriors):
        q = posteriors[source]
        return {target: GammaShapeRate(q.shape(), q.rate())}
    return rule


def beta_update(source, target=None):
    target = target or source

    def rule(posteriors):
        q = posteriors[source]
        return {target: Beta(q.alpha(), q.beta())}
    return rule


def autoupdates(*rules):
    """
    Combine rules; later rules win where they write the same variable.
    """
    def rule(posteriors):
        prior = {}
        for r in rules:
            prior.update(r(posteriors))
        return prior
    return rule


class UpdateDriver:
    """
    Owns the current prior. Each step:

    1. validates the observation,
    2. calls `estimator.update(prior, observation)`,
    3. checks the posteriors are inside their parameter domains,
    4. computes and checks the next prior from the posteriors via
       `autoupdate`; variables the rule does not mention keep their
       previous prior,
    5. appends the result to `history` and advances the prior.

    A step that fails in 2-4 leaves the history and the prior untouched.

    `on_nonconvergence` is one of "warn", "raise" or "ignore".
    With "raise" the failed step is still in the history and the prior has
    still been advanced; nothing is retried.
    """
    def __init__(
            self, estimator, prior,
            autoupdate=None,
            keep_last=None,
            on_nonconvergence="warn",
            verbose=0):
        if on_nonconvergence not in ("warn", "raise", "ignore"):
            raise ValueError(f"unknown on_nonconvergence {on_nonconvergence!r}")
        self.estimator = estimator
        self._prior = dict(estimator.check_prior(dict(prior)))
        self.autoupdate = autoupdate if autoupdate is not None else identity_update
        self.history = PosteriorHistory(keep_last=keep_last)
        self.on_nonconvergence = on_nonconvergence
        self.verbose = verbose
        self.n_steps = 0

    def __repr__(self):
        return f"{type(self).__name__}({self.estimator!r}, n_steps={self.n_steps})"

    @property
    def prior(self):
        return dict(self._prior)

    def step(self, observation):
        """
        Absorb one observation; returns its `StepResult`.
        """
        obs = self.estimator.check_observation(observation)
        result = self.estimator.update(self._prior, obs)
        try:
            validate_all(result.posteriors)
        except InvalidBeliefError as e:
            raise InvalidBeliefError(f"step {self.n_steps}: {e}") from e
        next_prior = dict(self._prior)
        next_prior.update(self.autoupdate(result.posteriors))
        try:
            next_prior = self.estimator.check_prior(next_prior)
        except InvalidBeliefError as e:
            raise InvalidBeliefError(f"step {self.n_steps}, next prior: {e}") from e

        self.history.append(result)
        self._prior = next_prior
        step = self.n_steps
        self.n_steps += 1

        if self.verbose:
            print(
                f"Step {step}  --- "
                f"Free energy {result.free_energy:.5f} --- "
                f"iterations {result.n_iterations}")
        if not result.converged:
            self._handle_nonconvergence(result, step)
        return result

    def _handle_nonconvergence(self, result, step):
        msg = (
            f"step {step} did not converge in {result.n_iterations} iterations"
            f" (free energy {result.free_energy})")
        if self.on_nonconvergence == "raise":
            raise NonConvergenceError(msg, result=result, step=step)
        elif self.on_nonconvergence == "warn":
            warnings.warn(msg, NonConvergenceWarning)

    def iterate(self, observations):
        """
        Lazily absorb a stream, yielding each step result.
        """
        for observation in observations:
            yield self.step(observation)

    def run(self, observations):
        """
        Absorb a whole sequence and return the history.
        Finite sequences are checked in full before the first update.
        """
        if isinstance(observations, torch.Tensor):
            if observations.ndim == 0:
                raise MalformedInputError("observations must be a sequence, got a scalar")
            observations = list(observations)
        if hasattr(observations, "__len__"):
            observations = [
                self.estimator.check_observation(o) for o in observations]
        for _ in self.iterate(observations):
            pass
        return self.history


def run_filter(estimator, prior, observations, **kwargs):
    """
    One-shot convenience: drive `estimator` over `observations` from `prior`.
    """
    driver = UpdateDriver(estimator, prior, **kwargs)
    return driver.run(observations)
