# %%
"""
Online identification of two random walks x, w seen only through
y = f(x, w) + noise, with unknown precisions everywhere.

Each observation is absorbed by a short VMP loop; the posteriors of x, w and
the three precisions become the priors for the next observation.
At the end the same data go through the batch smoother for comparison.
"""
# %load_ext autoreload
# %autoreload 2
import operator

import torch
from matplotlib import pyplot as plt
from tueplots import bundles

from bayes_mp.config import FIG_DIR, use_default_dtype
from bayes_mp.datasets import generate_identification_data
from bayes_mp.driver import UpdateDriver
from bayes_mp.models.identification import (
    IdentificationEstimator, default_autoupdate, default_prior, identify_batch,
    smooth_min)
from bayes_mp.plots import belief_ribbon_plot, free_energy_plot, save_fig, signal_plot

use_default_dtype()
import lovely_tensors as lt
lt.monkey_patch()
plt.rcParams.update(bundles.iclr2024())
plt.rcParams.update({"text.usetex": False})


def identify(f, real_y, iterations=10, tolerance=1e-4, verbose=0):
    driver = UpdateDriver(
        IdentificationEstimator(f, iterations=iterations, tolerance=tolerance),
        default_prior(),
        autoupdate=default_autoupdate(),
        keep_last=1000,
        on_nonconvergence="ignore",
        verbose=verbose)
    return driver.run(real_y)


def identification_plots(history, real_x, real_w, real_y, name):
    fig, axs = plt.subplots(1, 2)
    axs[0].set_title("Estimated hidden signals")
    belief_ribbon_plot(
        history.means("x"), history.vars("x"), truth=real_x, label="x", ax=axs[0])
    belief_ribbon_plot(
        history.means("w"), history.vars("w"), truth=real_w, label="w", ax=axs[0])
    axs[1].set_title("Estimated combined signal")
    belief_ribbon_plot(
        history.means("s"), history.stds("s"), observations=real_y,
        label="s", ax=axs[1])
    save_fig(fig, name, FIG_DIR)
    return fig


# %% y = x + w
n = 300
real_x, real_w, real_y = generate_identification_data(
    operator.add, n, seed=1, x_i_min=1.0, w_i_min=-1.0,
    noise=1.0, real_x_tau=1.0, real_w_tau=1.0)

signal_plot([real_x, real_w, real_y], ["x", "w", "y"], scatter=("y",), title="y = x + w")

# %%
history = identify(operator.add, real_y)
print(history[-1].posteriors["tau_y"], history[-1].posteriors["tau_y"].mean())
print(f"{sum(history.converged)} of {len(history)} steps converged")
identification_plots(history, real_x, real_w, real_y, "identification_sum")

# %% y = smooth_min(x, w)
min_real_x, min_real_w, min_real_y = generate_identification_data(
    smooth_min, n, seed=1, x_i_min=1.0, w_i_min=-1.0,
    noise=1.0, real_x_tau=1.0, real_w_tau=1.0)
min_history = identify(smooth_min, min_real_y)
identification_plots(min_history, min_real_x, min_real_w, min_real_y, "identification_min")

# %% per-step VMP traces of the last few steps
plt.figure()
for step in list(min_history)[-5:]:
    free_energy_plot(step.free_energy_trace)

# %% the whole record at once: smoothed rather than filtered
for f, y_, x_, w_, name in [
        (operator.add, real_y, real_x, real_w, "identification_sum_batch"),
        (smooth_min, min_real_y, min_real_x, min_real_w, "identification_min_batch")]:
    batch = identify_batch(y_, f, iterations=50, verbose=1)
    s_means = torch.stack([q.mean() for q in batch.posteriors["s"]])
    s_stds = torch.stack([q.std() for q in batch.posteriors["s"]])
    fig, axs = plt.subplots(1, 2)
    axs[0].set_title("Smoothed combined signal")
    belief_ribbon_plot(s_means, s_stds, truth=f(x_, w_), observations=y_, label="s", ax=axs[0])
    free_energy_plot(batch.free_energy, ax=axs[1])
    save_fig(fig, name, FIG_DIR)
