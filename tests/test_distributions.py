import math

import pytest
import torch
from torch.distributions import Gamma

from bayes_mp.distributions import (
    Beta, GammaShapeRate, InverseGamma, InverseWishart, MvNormalMeanCovariance,
    NormalMeanPrecision, NormalMeanVariance, vague, validate_all)
from bayes_mp.errors import InvalidBeliefError


def test_normal_parameterisations_agree():
    a = NormalMeanPrecision(1.0, 4.0)
    b = NormalMeanVariance(1.0, 0.25)
    assert torch.allclose(a.var(), b.var())
    m, tau = b.mean_precision()
    assert m.item() == 1.0
    assert math.isclose(tau.item(), 4.0)
    assert torch.allclose(a.log_prob(0.3), b.log_prob(0.3))


def test_negative_variance_is_invalid():
    with pytest.raises(InvalidBeliefError):
        NormalMeanVariance(0.0, -1.0).validate()
    with pytest.raises(InvalidBeliefError):
        NormalMeanVariance(float("nan"), 1.0).validate()


def test_mv_normal_rejects_non_spd():
    cov = torch.tensor([[1.0, 2.0], [2.0, 1.0]])
    with pytest.raises(InvalidBeliefError):
        MvNormalMeanCovariance(torch.zeros(2), cov).validate()
    with pytest.raises(InvalidBeliefError):
        MvNormalMeanCovariance(torch.zeros(3), torch.eye(2)).validate()


def test_mv_normal_canonical():
    cov = torch.tensor([[2.0, 0.5], [0.5, 1.0]])
    q = MvNormalMeanCovariance(torch.tensor([1.0, -1.0]), cov)
    eta, lam = q.canonical()
    r = MvNormalMeanCovariance.from_canonical(eta, lam)
    assert r.allclose(q)
    assert torch.allclose(q.marginal(1).var(), torch.tensor(1.0))


def test_gamma_statistics():
    q = GammaShapeRate(3.0, 2.0)
    assert math.isclose(q.mean().item(), 1.5)
    assert math.isclose(q.scale().item(), 0.5)
    samples = Gamma(3.0, 2.0).sample((200000,))
    assert abs(q.mean_log().item() - samples.log().mean().item()) < 0.01


def test_gamma_expected_log_density_of_itself_is_negative_entropy():
    q = GammaShapeRate(2.5, 0.7)
    assert torch.allclose(q.expected_log_density(q), -q.entropy())


def test_inverse_gamma():
    q = InverseGamma(3.0, 2.0)
    assert math.isclose(q.mean().item(), 1.0)
    assert math.isclose(q.mean_inv().item(), 1.5)
    assert torch.allclose(q.log_prob(0.8), q.to_torch().log_prob(torch.tensor(0.8)))
    assert torch.allclose(q.expected_log_density(q), -q.entropy())
    assert math.isinf(InverseGamma(1.0, 1.0).mean().item())


def test_beta():
    q = Beta(2.0, 7.0)
    assert math.isclose(q.mean().item(), 2 / 9)
    with pytest.raises(InvalidBeliefError):
        Beta(0.0, 1.0).validate()


def test_vague_members_are_valid():
    for family in (NormalMeanVariance, NormalMeanPrecision, GammaShapeRate, InverseGamma, Beta):
        vague(family).validate()
    assert vague(MvNormalMeanCovariance, dim=3).dim == 3
    with pytest.raises(ValueError):
        vague(MvNormalMeanCovariance)


def test_validate_all_names_the_offender():
    with pytest.raises(InvalidBeliefError, match="sigma"):
        validate_all({
            "mu": NormalMeanVariance(0.0, 1.0),
            "sigma": GammaShapeRate(-1.0, 1.0),
        })


def test_normal_samples():
    torch.manual_seed(0)
    samples = NormalMeanVariance(2.0, 4.0).sample(50000)
    assert samples.shape == (50000,)
    assert abs(samples.mean().item() - 2.0) < 0.05
    assert abs(samples.var().item() - 4.0) < 0.1


def test_mv_normal_block():
    cov = torch.tensor([[2.0, 0.5, 0.1], [0.5, 1.0, 0.2], [0.1, 0.2, 3.0]])
    q = MvNormalMeanCovariance(torch.tensor([1.0, 2.0, 3.0]), cov)
    r = q.block(slice(1, 3))
    assert torch.equal(r.mean(), torch.tensor([2.0, 3.0]))
    assert torch.equal(r.cov(), cov[1:, 1:])
    assert torch.equal(q.block([0, 2]).cov(), torch.tensor([[2.0, 0.1], [0.1, 3.0]]))


def test_one_dimensional_inverse_wishart_is_an_inverse_gamma():
    q = InverseWishart(5.0, torch.tensor([[3.0]]))
    r = InverseGamma(2.5, 1.5)
    assert torch.allclose(q.mean(), r.mean().reshape(1, 1))
    assert torch.allclose(q.mean_inv(), r.mean_inv().reshape(1, 1))
    assert torch.allclose(q.mean_logdet(), r.mean_log())
    assert torch.allclose(q.log_prob(torch.tensor([[0.8]])), r.log_prob(0.8))
    assert torch.allclose(q.entropy(), r.entropy())


def test_inverse_wishart_statistics():
    scale = torch.tensor([[2.0, 0.3], [0.3, 1.0]])
    q = InverseWishart(12.0, scale).validate()
    assert q.dim == 2
    assert torch.allclose(q.mean(), scale / 9.0)
    assert torch.allclose(q.expected_log_density(q), -q.entropy())
    torch.manual_seed(0)
    samples = q.sample(20000)
    assert samples.shape == (20000, 2, 2)
    assert torch.allclose(samples.mean(0), q.mean(), rtol=0.05, atol=0.01)
    assert torch.allclose(torch.inverse(samples).mean(0), q.mean_inv(), rtol=0.05, atol=0.05)
    assert abs(torch.logdet(samples).mean().item() - q.mean_logdet().item()) < 0.02
    assert math.isinf(InverseWishart(3.0, scale).mean()[0, 0].item())


def test_inverse_wishart_validation():
    with pytest.raises(InvalidBeliefError):
        InverseWishart(0.5, torch.eye(2)).validate()
    with pytest.raises(InvalidBeliefError):
        InverseWishart(4.0, torch.tensor([[1.0, 2.0], [2.0, 1.0]])).validate()
    with pytest.raises(InvalidBeliefError):
        InverseWishart(4.0, torch.ones(3)).validate()
    q = vague(InverseWishart, dim=2).validate()
    assert q.dim == 2
