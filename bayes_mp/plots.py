import os

import numpy as np
import torch
from matplotlib import pyplot as plt
from einops import asnumpy

from . import config
from .distributions import Beta, GammaShapeRate, InverseGamma


def _np(x):
    if isinstance(x, np.ndarray):
        return x
    if isinstance(x, (list, tuple)):
        return np.asarray([float(v) for v in x])
    return asnumpy(x.detach())


def belief_ribbon_plot(
        means, spreads, truth=None, label="estimate", ax=None, color=None,
        n_sd=1.0, observations=None):
    """
    Posterior means over time, with a band of `n_sd` spreads either side.
    `spreads` are whatever the caller wants in the band (std or var).
    """
    if ax is None:
        ax = plt.gca()
    m = _np(means)
    sd = _np(spreads)
    t = np.arange(len(m))
    line, = ax.plot(t, m, label=label, color=color)
    ax.fill_between(
        t, m - n_sd * sd, m + n_sd * sd,
        color=line.get_color(), alpha=0.25)
    if truth is not None:
        ax.plot(t, _np(truth), color="black", linestyle="dashed", alpha=0.5, label="truth")
    if observations is not None:
        ax.scatter(t, _np(observations), s=3, color="red", alpha=0.5, label="observations")
    ax.legend()
    return ax.get_figure()


def density_plot(beliefs, labels=None, support=None, n_points=400, ax=None):
    """
    pdfs of several univariate beliefs on a shared grid,
    e.g. prior against posterior
    """
    if ax is None:
        ax = plt.gca()
    if labels is None:
        labels = [type(b).__name__ for b in beliefs]
    if support is None:
        lo = min(float(b.mean() - 4 * b.std()) for b in beliefs)
        hi = max(float(b.mean() + 4 * b.std()) for b in beliefs)
        if all(isinstance(b, Beta) for b in beliefs):
            lo, hi = max(lo, 1e-3), min(hi, 1 - 1e-3)
        elif all(isinstance(b, (GammaShapeRate, InverseGamma)) for b in beliefs):
            lo = max(lo, 1e-6)
        support = (lo, hi)
    grid = torch.linspace(support[0], support[1], n_points)
    for belief, label in zip(beliefs, labels):
        ax.plot(_np(grid), _np(belief.pdf(grid)), label=label)
        ax.fill_between(_np(grid), _np(belief.pdf(grid)), alpha=0.2)
    ax.legend()
    return ax.get_figure()


def free_energy_plot(free_energy, ax=None, label=None, skip=0):
    """
    Free energy trace; `skip` drops the first few (often huge) values.
    """
    if ax is None:
        ax = plt.gca()
    fe = _np(free_energy)[skip:]
    ax.plot(np.arange(skip, skip + len(fe)), fe, label=label)
    ax.set_xlabel("iteration")
    ax.set_ylabel("free energy")
    if label is not None:
        ax.legend()
    return ax.get_figure()


def signal_plot(signals, labels=None, scatter=(), ax=None, title=None):
    """
    Line plot of several 1d signals; names in `scatter` are drawn as points.
    """
    if ax is None:
        ax = plt.gca()
    if labels is None:
        labels = [str(i) for i in range(len(signals))]
    for s, label in zip(signals, labels):
        s = _np(s)
        if label in scatter:
            ax.scatter(np.arange(len(s)), s, s=3, label=label, color="red")
        else:
            ax.plot(s, label=label)
    if title is not None:
        ax.set_title(title)
    ax.legend()
    return ax.get_figure()


def save_fig(fig, name, fig_dir=None, **kwargs):
    """
    Save under FIG_DIR as PDF and PNG; returns the PDF path.
    """
    if fig_dir is None:
        fig_dir = config.FIG_DIR
    os.makedirs(fig_dir, exist_ok=True)
    kwargs.setdefault("bbox_inches", "tight")
    path = os.path.join(fig_dir, name)
    fig.savefig(path + ".pdf", **kwargs)
    fig.savefig(path + ".png", **kwargs)
    return path + ".pdf"
