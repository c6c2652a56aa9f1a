"""
State estimators: one prior-to-posterior update per observation.

An estimator owns the model structure and its fixed hyperparameters.
`update(prior, observation)` builds the one-step model, hands it to the
inference engine, and returns a `StepResult`. It never retries: if the
engine runs out of iterations the last approximate posterior comes back with
`converged=False` and the caller decides what to do about it.
"""
from collections import namedtuple

import torch

from . import config
from .distributions import validate_all
from .errors import DimensionMismatchError, InvalidBeliefError, MalformedInputError
from .gaussian_bp import FactorGraph, GBPSettings, LinearMeasModel, SquaredLoss
from .math_helpers import is_spd
from .utils import as_float_tensor, as_matrix

StepResult = namedtuple(
    "StepResult",
    ["posteriors", "free_energy", "converged", "n_iterations", "free_energy_trace"],
    defaults=(None, True, 1, ()))

# batch (whole data set at once) counterpart; free_energy is the per-iteration trace
InferenceResult = namedtuple(
    "InferenceResult",
    ["posteriors", "free_energy", "converged", "n_iterations"])


def positive_hyperparameter(name, value):
    value = as_float_tensor(value)
    if not torch.all(torch.isfinite(value)) or not torch.all(value > 0):
        raise InvalidBeliefError(f"hyperparameter {name}={value} must be positive and finite")
    return value


def covariance_hyperparameter(name, value, dim):
    try:
        value = as_matrix(value, dim)
    except ValueError as e:
        raise DimensionMismatchError(f"hyperparameter {name}: {e}") from e
    if not is_spd(value):
        raise InvalidBeliefError(f"hyperparameter {name} must be symmetric positive definite")
    return value


class StateEstimator:
    """
    Base class. Subclasses set `variables` (names the prior must provide)
    and `obs_dim` (None for scalar observations), and implement `update`.
    """
    variables = ()
    obs_dim = None

    def __init__(self, iterations=None, tolerance=None, verbose=0):
        if iterations is None:
            iterations = config.ITERATIONS
        if tolerance is None:
            tolerance = config.TOLERANCE
        if int(iterations) < 1:
            raise MalformedInputError(f"iterations must be at least 1, got {iterations}")
        self.iterations = int(iterations)
        self.tolerance = float(tolerance)
        self.verbose = verbose

    def __repr__(self):
        return f"{type(self).__name__}(iterations={self.iterations}, tolerance={self.tolerance})"

    def check_prior(self, prior):
        missing = [name for name in self.variables if name not in prior]
        if missing:
            raise MalformedInputError(f"prior is missing {missing}")
        validate_all({name: prior[name] for name in self.variables})
        return prior

    def check_observation(self, observation):
        """
        Coerce one observation to a tensor of the model's shape,
        refusing anything that does not fit.
        """
        try:
            obs = torch.as_tensor(observation, dtype=torch.get_default_dtype())
        except (TypeError, ValueError, RuntimeError) as e:
            raise MalformedInputError(f"observation {observation!r} is not numeric") from e
        if self.obs_dim is None:
            if obs.numel() != 1:
                raise DimensionMismatchError(
                    f"{type(self).__name__} expects scalar observations, got shape {tuple(obs.shape)}")
            obs = obs.reshape(())
        elif obs.shape != torch.Size([self.obs_dim]):
            raise DimensionMismatchError(
                f"{type(self).__name__} expects observations of shape ({self.obs_dim},), "
                f"got {tuple(obs.shape)}")
        if not torch.all(torch.isfinite(obs)):
            raise MalformedInputError(f"observation {obs} is not finite")
        return obs

    def gbp_settings(self):
        # one-step graphs are trees, so a sweep is exact;
        # the estimator chooses any linearisation points
        return GBPSettings(schedule="sweep", relinearise=False, verbose=self.verbose)

    def update(self, prior, observation):
        raise NotImplementedError


class GaussianMeanEstimator(StateEstimator):
    """
    Constant latent mean observed in Gaussian noise of known variance:

        mu ~ N(m, v)
        y  ~ N(mu, noise_var)
    """
    variables = ("mu",)

    def __init__(self, noise_var=1.0, **kwargs):
        super().__init__(**kwargs)
        self.noise_var = positive_hyperparameter("noise_var", noise_var).reshape(())

    def update(self, prior, observation):
        y = self.check_observation(observation)
        fg = FactorGraph(self.gbp_settings())
        mu = prior["mu"]
        fg.add_var_node(1, mu.mean(), mu.var(), name="mu")
        fg.add_factor(
            ["mu"], y,
            LinearMeasModel(torch.ones(1, 1), SquaredLoss(1, self.noise_var)))
        report = fg.solve(n_iters=self.iterations, converged_threshold=self.tolerance)
        free_energy = fg.free_energy()
        return StepResult(
            {"mu": fg.marginal("mu")},
            free_energy, report.converged, report.n_iters, (free_energy,))
