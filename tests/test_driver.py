import pytest
import torch

from bayes_mp.datasets import generate_constant_mean_data
from bayes_mp.distributions import (
    GammaShapeRate, NormalMeanPrecision, NormalMeanVariance)
from bayes_mp.driver import (
    PosteriorHistory, UpdateDriver, autoupdates, mean_precision_update,
    mean_var_update, run_filter, shape_rate_update)
from bayes_mp.errors import (
    DimensionMismatchError, InvalidBeliefError, MalformedInputError,
    NonConvergenceError, NonConvergenceWarning)
from bayes_mp.estimator import GaussianMeanEstimator, StateEstimator, StepResult


def mean_driver(**kwargs):
    return UpdateDriver(
        GaussianMeanEstimator(noise_var=1.0),
        {"mu": NormalMeanVariance(0.0, 100.0)},
        autoupdate=mean_var_update("mu"),
        **kwargs)


def test_history_has_one_entry_per_observation():
    y = generate_constant_mean_data(3.0, 1.0, 25, seed=0)
    history = mean_driver().run(y)
    assert len(history) == 25
    assert len(history["mu"]) == 25
    assert history.names() == ["mu"]
    assert all(history.converged)


def test_empty_stream_gives_empty_history():
    history = mean_driver().run([])
    assert len(history) == 0
    assert history.names() == []


def test_invalid_initial_prior_fails_even_without_data():
    with pytest.raises(InvalidBeliefError):
        UpdateDriver(GaussianMeanEstimator(), {"mu": NormalMeanVariance(0.0, -1.0)})
    with pytest.raises(InvalidBeliefError):
        GaussianMeanEstimator(noise_var=0.0)


def test_missing_prior_variable():
    with pytest.raises(MalformedInputError):
        UpdateDriver(GaussianMeanEstimator(), {"nu": NormalMeanVariance(0.0, 1.0)})


def test_closed_form_posterior_of_constant_mean():
    y = generate_constant_mean_data(3.0, 1.0, 500, seed=1)
    history = mean_driver().run(y)
    q = history.last().posteriors["mu"]
    precision = 1 / 100.0 + 500
    assert torch.allclose(q.var(), torch.tensor(1 / precision))
    assert torch.allclose(q.mean(), y.sum() / precision)
    assert abs(q.mean().item() - 3.0) < 0.2


def test_estimate_converges_to_the_true_mean():
    y = generate_constant_mean_data(-1.5, 4.0, 2000, seed=2)
    history = mean_driver().run(y)
    assert abs(history.means("mu")[-1].item() + 1.5) < 0.2
    stds = history.stds("mu")
    assert torch.all(stds[1:] <= stds[:-1])


def test_free_energies_sum_to_the_batch_evidence():
    y = generate_constant_mean_data(0.5, 1.0, 10, seed=3)
    history = mean_driver().run(y)
    cov = 100.0 * torch.ones(10, 10) + torch.eye(10)
    batch = torch.distributions.MultivariateNormal(torch.zeros(10), cov)
    assert abs(sum(history.free_energy) + batch.log_prob(y).item()) < 1e-6


def test_runs_are_deterministic():
    y = generate_constant_mean_data(3.0, 1.0, 30, seed=4)
    a = mean_driver().run(y)
    b = mean_driver().run(y)
    for qa, qb in zip(a["mu"], b["mu"]):
        assert qa.allclose(qb, rtol=0, atol=0)


def test_dimension_mismatch_fails_before_any_update():
    driver = mean_driver()
    observations = [1.0, 2.0, torch.tensor([1.0, 2.0])]
    with pytest.raises(DimensionMismatchError):
        driver.run(observations)
    assert len(driver.history) == 0


def test_non_finite_observation():
    with pytest.raises(MalformedInputError):
        mean_driver().run([1.0, float("nan")])
    with pytest.raises(MalformedInputError):
        mean_driver().run(torch.tensor(1.0))


def test_step_by_step_and_iterators():
    driver = mean_driver()
    driver.step(1.0)
    for result in driver.iterate(iter([2.0, 3.0])):
        assert result.converged
    assert driver.n_steps == 3
    assert len(driver.history) == 3


def test_keep_last():
    history = mean_driver(keep_last=5).run(torch.arange(12.0))
    assert len(history) == 5
    assert history.n_seen == 12
    with pytest.raises(ValueError):
        PosteriorHistory(keep_last=0)


def test_prior_advances_through_the_autoupdate():
    driver = mean_driver()
    driver.step(2.0)
    assert driver.prior["mu"].allclose(driver.history.last().posteriors["mu"])


class StalledEstimator(StateEstimator):
    """returns its prior, flagged as not converged"""
    variables = ("mu",)

    def update(self, prior, observation):
        return StepResult(dict(prior), 0.0, False, self.iterations)


def test_nonconvergence_policies():
    y = [0.5, 1.0]
    prior = {"mu": NormalMeanVariance(0.0, 1.0)}
    with pytest.warns(NonConvergenceWarning):
        UpdateDriver(StalledEstimator(iterations=3), prior).run(y)

    driver = UpdateDriver(StalledEstimator(iterations=3), prior, on_nonconvergence="raise")
    with pytest.raises(NonConvergenceError) as info:
        driver.run(y)
    assert info.value.step == 0
    assert info.value.result.converged is False
    assert len(driver.history) == 1

    history = UpdateDriver(
        StalledEstimator(iterations=3), prior, on_nonconvergence="ignore").run(y)
    assert history.converged == [False, False]


@pytest.mark.parametrize("iterations", [1, 2, 3])
def test_exact_update_is_converged_on_any_budget(iterations):
    driver = UpdateDriver(
        GaussianMeanEstimator(noise_var=1.0, iterations=iterations),
        {"mu": NormalMeanVariance(0.0, 1.0)},
        on_nonconvergence="raise")
    result = driver.step(2.0)
    assert result.converged
    assert result.n_iterations == 1
    assert torch.allclose(result.posteriors["mu"].mean(), torch.tensor(1.0))
    assert torch.allclose(result.posteriors["mu"].var(), torch.tensor(0.5))


def test_invalid_next_prior_leaves_the_driver_untouched():
    driver = UpdateDriver(
        GaussianMeanEstimator(),
        {"mu": NormalMeanVariance(0.0, 1.0)},
        autoupdate=lambda posteriors: {"mu": NormalMeanVariance(0.0, -1.0)})
    with pytest.raises(InvalidBeliefError, match="step 0"):
        driver.step(1.0)
    assert len(driver.history) == 0
    assert driver.n_steps == 0
    assert driver.prior["mu"].allclose(NormalMeanVariance(0.0, 1.0))


class NegativeVarianceEstimator(StateEstimator):
    variables = ("mu",)

    def update(self, prior, observation):
        return StepResult({"mu": NormalMeanVariance(0.0, -1.0)}, 0.0)


def test_invalid_posterior_is_a_numerical_failure():
    driver = UpdateDriver(NegativeVarianceEstimator(), {"mu": NormalMeanVariance(0.0, 1.0)})
    with pytest.raises(InvalidBeliefError, match="step 0"):
        driver.step(1.0)
    assert len(driver.history) == 0


def test_autoupdate_helpers():
    rule = autoupdates(
        mean_precision_update("x", "x_prior"),
        shape_rate_update("tau"))
    prior = rule({
        "x": NormalMeanVariance(1.0, 0.5),
        "tau": GammaShapeRate(2.0, 3.0),
    })
    assert isinstance(prior["x_prior"], NormalMeanPrecision)
    assert torch.allclose(prior["x_prior"].precision(), torch.tensor(2.0))
    assert prior["tau"].allclose(GammaShapeRate(2.0, 3.0))


def test_run_filter():
    history = run_filter(
        GaussianMeanEstimator(), {"mu": NormalMeanVariance(0.0, 1.0)},
        [1.0, 1.0], autoupdate=mean_var_update("mu"))
    assert len(history) == 2
