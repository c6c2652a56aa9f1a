# %%
"""
Sweep the observation noise of the identification experiment.
"""
# %run mp_005_identification_wrapped.py
from mp_005_identification_wrapped import *

import numpy as np
from matplotlib import pyplot as plt
from tueplots import bundles

from bayes_mp.config import FIG_DIR
from bayes_mp.plots import save_fig

experiment_name = "identification_noise_sweep"
sweep_param = "noise"

base_kwargs = dict(
    combiner="sum",
    n=300,
    iterations=10,
    tolerance=1e-4,
    save_history=False,
)

executor = submitit.AutoExecutor(folder=LOG_DIR)
# executor = submitit.DebugExecutor(folder=LOG_DIR)
executor.update_parameters(
    timeout_min=59,
    slurm_account=os.getenv('SLURM_ACCOUNT'),
    slurm_array_parallelism=50,
    slurm_mem=4*1024,
)
sweep_values = np.geomspace(0.1, 100, num=8)
n_replicates = 20

# %%
experiment = sweep_params(
    run_run, base_kwargs, sweep_param, sweep_values, n_replicates,
    executor, experiment_name, log_dir=LOG_DIR, batch=True)

# %% possibly in another session
experiment = load_experiment(experiment_name, LOG_DIR)
results = reduce_experiment(experiment, compute_percentiles)
save_artefact(results, experiment_name, OUTPUT_DIR)
plot_data = prepare_data_for_plotting(results, sweep_param)

# %%
plt.rcParams.update(bundles.iclr2024())
plt.rcParams.update({"text.usetex": False})
fig, axs = plt.subplots(1, 2)
for ax, metric in zip(axs, ["x_rmse", "x_coverage"]):
    lo, mid, hi = (plot_data[metric][q] for q in range(3))
    ax.plot(mid[:, 0], mid[:, 1], label="median")
    ax.fill_between(lo[:, 0], lo[:, 1], hi[:, 1], alpha=0.25, label="95%")
    ax.set_xscale("log")
    ax.set_xlabel(sweep_param)
    ax.set_title(metric)
    ax.legend()
save_fig(fig, experiment_name, FIG_DIR)
