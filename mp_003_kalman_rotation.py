# %%
"""
Kalman filtering and smoothing of a slowly rotating 2d state:

    x_t = A x_{t-1} + N(0, Q),  A a rotation by pi/35
    y_t = B x_t + N(0, P)
"""
import math

import torch
from matplotlib import pyplot as plt
from tueplots import bundles

from bayes_mp.config import FIG_DIR, use_default_dtype
from bayes_mp.datasets import generate_rotation_data
from bayes_mp.driver import UpdateDriver, mean_cov_update
from bayes_mp.models.kalman import (
    KalmanStepEstimator, default_rotation_model, smooth_rotation_ssm)
from bayes_mp.plots import belief_ribbon_plot, save_fig

use_default_dtype()
import lovely_tensors as lt
lt.monkey_patch()
plt.rcParams.update(bundles.iclr2024())
plt.rcParams.update({"text.usetex": False})

# %%
n = 300
A, B, Q, P, x0 = default_rotation_model(math.pi / 35)
real_x, y = generate_rotation_data(A, B, Q, P, n, x0=(10.0, -10.0), seed=1234)

# %% smoothing: the whole chain as one graph
smoothed = smooth_rotation_ssm(y, A, B, Q, P, x0, iterations=10, verbose=0)
print(f"log evidence {-smoothed.free_energy[-1]:.3f}, converged {smoothed.converged}")
s_means = torch.stack([q.mean() for q in smoothed.posteriors["x"]])
s_stds = torch.stack([q.var().sqrt() for q in smoothed.posteriors["x"]])

# %% filtering: one step at a time
driver = UpdateDriver(
    KalmanStepEstimator(A, B, Q, P),
    {"x": x0},
    autoupdate=mean_cov_update("x"))
history = driver.run(y)
f_means = history.means("x")
f_stds = history.stds("x")
print(f"summed filter free energy {sum(history.free_energy):.3f}")

# %%
fig, axs = plt.subplots(2, 2, sharex=True)
for d in range(2):
    belief_ribbon_plot(
        f_means[:, d], f_stds[:, d], truth=real_x[:, d],
        observations=y[:, d], label="filtered", ax=axs[0, d])
    belief_ribbon_plot(
        s_means[:, d], s_stds[:, d], truth=real_x[:, d],
        observations=y[:, d], label="smoothed", ax=axs[1, d])
save_fig(fig, "kalman_rotation", FIG_DIR)
