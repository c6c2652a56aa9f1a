import os

import torch
from matplotlib import pyplot as plt

from bayes_mp.distributions import Beta, GammaShapeRate, NormalMeanVariance
from bayes_mp.plots import (
    belief_ribbon_plot, density_plot, free_energy_plot, save_fig, signal_plot)


def test_plots_save_under_the_figure_dir(tmp_path):
    fig, axs = plt.subplots(1, 4)
    belief_ribbon_plot(
        torch.linspace(0, 1, 10), 0.1 * torch.ones(10),
        truth=torch.zeros(10), observations=torch.ones(10), ax=axs[0])
    density_plot([NormalMeanVariance(0.0, 1.0), NormalMeanVariance(1.0, 0.5)], ax=axs[1])
    density_plot([Beta(2.0, 7.0), Beta(20.0, 10.0)], ax=axs[2])
    free_energy_plot([3.0, 2.0, 1.5], ax=axs[3], skip=1)
    path = save_fig(fig, "all", fig_dir=str(tmp_path))
    assert os.path.exists(path)
    assert os.path.exists(os.path.join(str(tmp_path), "all.png"))
    plt.close(fig)


def test_signal_plot():
    fig = plt.figure()
    signal_plot([torch.zeros(5), torch.ones(5)], ["x", "y"], scatter=("y",), title="t")
    density_plot([GammaShapeRate(2.0, 1.0)])
    plt.close(fig)
