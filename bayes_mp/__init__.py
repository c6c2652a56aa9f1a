"""
Recursive Bayesian estimation by message passing.

There are several pieces of note:

1. beliefs (`distributions`) are small immutable parameter holders for the
   families we can update in closed form or by Gaussian BP
2. a `StateEstimator` turns (prior beliefs, one observation) into posterior
   beliefs plus a free energy, through one call into the engine
   (`gaussian_bp`, `vmp`)
3. the `UpdateDriver` loops over observations, feeding posterior statistics
   back as the next prior through autoupdate rules, and keeps a
   `PosteriorHistory`

Batch counterparts (whole data set as one factor graph) live in `models`.
"""

from .distributions import (
    Beta, GammaShapeRate, InverseGamma, InverseWishart, MvNormalMeanCovariance,
    NormalMeanPrecision, NormalMeanVariance, vague)
from .driver import (
    PosteriorHistory, UpdateDriver, autoupdates, beta_update, identity_update,
    mean_cov_update, mean_precision_update, mean_var_update, run_filter,
    shape_rate_update)
from .errors import (
    BayesMPError, DimensionMismatchError, InvalidBeliefError,
    MalformedInputError, NonConvergenceError, NonConvergenceWarning,
    NumericalFailure)
from .estimator import (
    GaussianMeanEstimator, InferenceResult, StateEstimator, StepResult)
