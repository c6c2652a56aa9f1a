import math

import pytest
import torch
from torch.distributions import Normal

from bayes_mp.gaussian_bp import (
    FactorGraph, GBPSettings, Gaussian, LinearMeasModel, NonlinearMeasModel,
    SquaredLoss)
from bayes_mp.math_helpers import jacobian_factory


def smoothing_chain(schedule, n=6):
    """
    1d chain with a prior on the first node, smoothness between neighbours,
    and a measurement on every other node
    """
    fg = FactorGraph(GBPSettings(schedule=schedule))
    fg.add_var_node(1, torch.tensor([0.0]), torch.tensor([[10.0]]))
    for i in range(n):
        if i > 0:
            fg.add_var_node(1)
            fg.add_factor(
                [i - 1, i], torch.zeros(1),
                LinearMeasModel(torch.tensor([[-1.0, 1.0]]), SquaredLoss(1, 0.1)))
        if i % 2 == 0:
            fg.add_factor(
                [i], torch.tensor([math.sin(i)]),
                LinearMeasModel(torch.ones(1, 1), SquaredLoss(1, 0.05)))
    return fg


@pytest.mark.parametrize("schedule", ["all", "sweep"])
def test_chain_means_reach_the_map(schedule):
    fg = smoothing_chain(schedule)
    report = fg.solve(n_iters=100, converged_threshold=1e-10)
    assert report.converged
    assert torch.allclose(fg.belief_means(), fg.MAP(), atol=1e-6)


def test_sweep_is_exact_in_one_pass_on_a_chain():
    fg = smoothing_chain("sweep")
    fg.sweep_iteration()
    joint_cov = fg.get_joint().cov()
    for i, cov in enumerate(fg.belief_covs()):
        assert torch.allclose(cov[0, 0], joint_cov[i, i], atol=1e-10)


def test_log_evidence_of_one_observation():
    m, v, r, y = 1.0, 2.0, 0.5, 2.2
    fg = FactorGraph()
    fg.add_var_node(1, torch.tensor([m]), torch.tensor([[v]]), name="mu")
    fg.add_factor(["mu"], torch.tensor([y]), LinearMeasModel(torch.ones(1, 1), SquaredLoss(1, r)))
    fg.solve(n_iters=5)
    expected = Normal(m, math.sqrt(v + r)).log_prob(torch.tensor(y))
    assert torch.allclose(fg.log_evidence(), expected)
    assert math.isclose(fg.free_energy(), -expected.item(), rel_tol=1e-9)


def test_marginal_posterior_of_one_observation():
    fg = FactorGraph()
    fg.add_var_node(1, torch.tensor([0.0]), torch.tensor([[1.0]]), name="mu")
    fg.add_factor(["mu"], torch.tensor([2.0]), LinearMeasModel(torch.ones(1, 1), SquaredLoss(1, 1.0)))
    fg.solve()
    q = fg.marginal("mu")
    assert math.isclose(q.mean().item(), 1.0)
    assert math.isclose(q.var().item(), 0.5)


def test_measurement_size_must_match_noise_model():
    fg = FactorGraph()
    fg.add_var_node(2, torch.zeros(2), torch.eye(2))
    with pytest.raises(ValueError):
        fg.add_factor([0], torch.zeros(3), LinearMeasModel(torch.eye(2), SquaredLoss(2, 1.0)))


def test_duplicate_variable_names():
    fg = FactorGraph()
    fg.add_var_node(1, name="x")
    with pytest.raises(ValueError):
        fg.add_var_node(1, name="x")


def test_jacobian_of_product():
    jac = jacobian_factory(lambda z: (z[0] * z[1]).reshape(1))
    J = jac(torch.tensor([2.0, 3.0]))
    assert torch.allclose(J, torch.tensor([[3.0, 2.0]]))


def test_nonlinear_factor_is_relinearised():
    model = NonlinearMeasModel(lambda z: (z ** 2).reshape(1), SquaredLoss(1, 0.01))
    fg = FactorGraph(GBPSettings(beta=0.0, min_linear_iters=1))
    fg.add_var_node(1, torch.tensor([1.0]), torch.tensor([[1.0]]))
    fg.add_factor([0], torch.tensor([4.0]), model)
    fg.solve(n_iters=50, converged_threshold=1e-10)
    assert abs(fg.belief_means()[0].item() - 2.0) < 0.05


def test_information_form():
    g = Gaussian(2)
    assert not g.is_proper()
    assert torch.equal(g.mean(), torch.zeros(2))
    g.set_with_cov_form(torch.tensor([1.0, 2.0]), torch.diag(torch.tensor([2.0, 4.0])))
    assert torch.allclose(g.mean(), torch.tensor([1.0, 2.0]))
    assert torch.allclose(g.to_belief().var(), torch.tensor([2.0, 4.0]))



def ring(n=5, **settings):
    """loop of 1d variables, each with its own prior, pulled towards its neighbours"""
    fg = FactorGraph(GBPSettings(**settings))
    for i in range(n):
        fg.add_var_node(1, torch.tensor([math.sin(i)]), torch.tensor([[1.0]]))
    for i in range(n):
        fg.add_factor(
            [i, (i + 1) % n], torch.zeros(1),
            LinearMeasModel(torch.tensor([[-1.0, 1.0]]), SquaredLoss(1, 0.5)))
    return fg


def test_tree_detection():
    assert smoothing_chain("all").is_tree()
    assert not ring().is_tree()
    assert not ring(schedule="sweep").exact_in_one_sweep()
    assert not smoothing_chain("all").exact_in_one_sweep()
    assert smoothing_chain("sweep").exact_in_one_sweep()


def test_exact_sweep_is_converged_after_one_pass():
    fg = smoothing_chain("sweep")
    report = fg.solve(n_iters=1)
    assert report.converged
    assert report.n_iters == 1
    assert torch.allclose(fg.belief_means(), fg.MAP(), atol=1e-8)


def test_sweep_is_exact_whatever_order_factors_were_added():
    n = 6
    fg = FactorGraph(GBPSettings(schedule="sweep"))
    for i in range(n):
        fg.add_var_node(1)
    fg.set_prior(3, torch.tensor([1.0]), 2.0)
    for i in reversed(range(1, n)):
        fg.add_factor(
            [i - 1, i], torch.zeros(1),
            LinearMeasModel(torch.tensor([[-1.0, 1.0]]), SquaredLoss(1, 0.3)))
    for i in (5, 0):
        fg.add_factor(
            [i], torch.tensor([float(i)]),
            LinearMeasModel(torch.ones(1, 1), SquaredLoss(1, 0.1)))
    fg.solve(n_iters=1)
    joint_cov = fg.get_joint().cov()
    for i, cov in enumerate(fg.belief_covs()):
        assert torch.allclose(cov[0, 0], joint_cov[i, i], atol=1e-10)
    assert torch.allclose(fg.belief_means(), fg.MAP(), atol=1e-8)


def test_factor_belief_is_the_pairwise_marginal():
    fg = smoothing_chain("sweep")
    fg.solve(n_iters=1)
    pair = fg.factors[1].belief().to_belief()
    assert fg.factors[1].adj_vIDs == [0, 1]
    mean, cov = fg.get_joint().mean_and_cov()
    assert torch.allclose(pair.mean(), mean[:2], atol=1e-8)
    assert torch.allclose(pair.cov(), cov[:2, :2], atol=1e-8)


def test_damped_solve_on_a_loop_reaches_the_map():
    fg = ring(damping=0.5, num_undamped_iters=2)
    assert fg.gbp_settings.get_damping(2) == 0.
    assert fg.gbp_settings.get_damping(3) == 0.5
    report = fg.solve(n_iters=500, converged_threshold=1e-10)
    assert report.converged
    assert torch.allclose(fg.belief_means(), fg.MAP(), atol=1e-6)


def test_loop_with_zero_tolerance_runs_out_of_iterations():
    report = ring().solve(n_iters=5, converged_threshold=0.)
    assert not report.converged
    assert report.n_iters == 5
    assert len(report.energies) == 6
