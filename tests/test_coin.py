import pytest
import torch

from bayes_mp.datasets import generate_coin_data
from bayes_mp.distributions import Beta
from bayes_mp.driver import UpdateDriver, beta_update
from bayes_mp.errors import MalformedInputError
from bayes_mp.models.coin import BetaBernoulliEstimator, default_prior, fit_coin


def test_batch_posterior_counts_heads_and_tails():
    flips = torch.tensor([1.0, 0.0, 1.0, 1.0])
    result = fit_coin(flips)
    assert result.posteriors["theta"].allclose(Beta(5.0, 8.0))
    assert result.converged


def test_sequential_matches_batch():
    flips = generate_coin_data(0.75, 200, seed=5)
    batch = fit_coin(flips, default_prior())
    history = UpdateDriver(
        BetaBernoulliEstimator(), {"theta": default_prior()},
        autoupdate=beta_update("theta")).run(flips)
    assert len(history) == 200
    assert history.last().posteriors["theta"].allclose(batch.posteriors["theta"])
    # chain rule: the per-flip predictive surprises add up to -log evidence
    assert abs(sum(history.free_energy) - batch.free_energy[-1]) < 1e-8


def test_posterior_concentrates_on_the_bias():
    flips = generate_coin_data(0.75, 2000, seed=6)
    q = fit_coin(flips).posteriors["theta"]
    assert abs(q.mean().item() - 0.75) < 0.04
    assert q.std().item() < 0.02


def test_flips_must_be_binary():
    with pytest.raises(MalformedInputError):
        fit_coin([1.0, 0.5])
    driver = UpdateDriver(BetaBernoulliEstimator(), {"theta": default_prior()})
    with pytest.raises(MalformedInputError):
        driver.run([1, 0, 2])
    assert len(driver.history) == 0
