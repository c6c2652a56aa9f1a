# %%
"""
Replicable single run of the online identification experiment, for sweeps.

`run_run` returns a flat dict of scalar metrics so that replicates reduce
with `compute_percentiles`.
"""
import operator
import os

import torch
import submitit

from bayes_mp.config import LOG_DIR, OUTPUT_DIR, use_default_dtype
from bayes_mp.datasets import generate_identification_data
from bayes_mp.driver import UpdateDriver
from bayes_mp.jobs import *
from bayes_mp.models.identification import (
    IdentificationEstimator, default_autoupdate, default_prior, smooth_min)

use_default_dtype()

COMBINERS = {
    "sum": operator.add,
    "min": smooth_min,
}


def run_run(
        combiner="sum",
        n=300,
        x_i_min=1.0,
        w_i_min=-1.0,
        noise=1.0,
        real_x_tau=1.0,
        real_w_tau=1.0,
        ## inference params
        iterations=10,
        tolerance=1e-4,
        ## diagnostics
        verbose=0,
        save_history=False,
        job_name="identification",
        seed=1):
    use_default_dtype()
    f = COMBINERS[combiner]
    real_x, real_w, real_y = generate_identification_data(
        f, n, seed=seed, x_i_min=x_i_min, w_i_min=w_i_min,
        noise=noise, real_x_tau=real_x_tau, real_w_tau=real_w_tau)
    driver = UpdateDriver(
        IdentificationEstimator(f, iterations=iterations, tolerance=tolerance),
        default_prior(),
        autoupdate=default_autoupdate(),
        on_nonconvergence="ignore",
        verbose=verbose)
    history = driver.run(real_y)
    if save_history:
        save_artefact(history, f"{job_name}_{seed}", OUTPUT_DIR)

    x_err = history.means("x") - real_x
    w_err = history.means("w") - real_w
    return dict(
        x_rmse=torch.sqrt(torch.mean(x_err ** 2)).item(),
        w_rmse=torch.sqrt(torch.mean(w_err ** 2)).item(),
        # fraction of truths inside the 2 sd band
        x_coverage=torch.mean((x_err.abs() < 2 * history.stds("x")).double()).item(),
        w_coverage=torch.mean((w_err.abs() < 2 * history.stds("w")).double()).item(),
        tau_y_mean=history[-1].posteriors["tau_y"].mean().item(),
        free_energy=float(sum(history.free_energy)),
        converged_frac=sum(history.converged) / len(history),
    )


# %%
if __name__ == "__main__":
    executor = submitit.DebugExecutor(folder=LOG_DIR)
    job = executor.submit(run_run, verbose=0, seed=1)
    print(job.result())
