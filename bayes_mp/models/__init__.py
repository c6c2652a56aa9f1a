"""
Concrete models: a batch fit and/or a one-step estimator for each.
"""

from .coin import BetaBernoulliEstimator, fit_coin
from .identification import IdentificationEstimator, identify_batch, smooth_min
from .kalman import KalmanStepEstimator, rotation_matrix, smooth_rotation_ssm
from .linear_regression import (
    fit_linear_regression, fit_linear_regression_unknown_noise,
    fit_multivariate_regression)
