"""
Seeded replicate sweeps through submitit, and zipped pickles of whatever
they return.

A run may return a flat dict of scalar metrics, a `PosteriorHistory` from the
update driver, or a batch `InferenceResult`; `result_metrics` flattens the
latter two into the free energy and convergence numbers we usually sweep.
"""
import bz2
import os
import warnings
from collections import defaultdict, namedtuple

import cloudpickle
import numpy as np

from . import config
from .driver import PosteriorHistory
from .estimator import InferenceResult

Trial = namedtuple("Trial", ["params", "jobs"])
TrialSummary = namedtuple("TrialSummary", ["params", "results", "n_ok", "n_failed"])


def result_metrics(result):
    """
    Flat {name: float} view of one run's return value.
    """
    if isinstance(result, PosteriorHistory):
        converged = result.converged
        return {
            "free_energy": float(sum(result.free_energy)),
            "converged_frac": sum(converged) / max(len(converged), 1),
            "n_steps": float(result.n_seen),
        }
    elif isinstance(result, InferenceResult):
        return {
            "free_energy": float(result.free_energy[-1]),
            "converged": float(result.converged),
            "n_iterations": float(result.n_iterations),
        }
    return result


def compute_percentiles(results, percentiles=(0.025, 0.5, 0.975)):
    """
    {metric: array of percentiles across replicates}; NaN replicates are
    ignored.
    """
    metrics = [result_metrics(r) for r in results]
    summary = {}
    for key in metrics[0]:
        try:
            values = np.array([float(m[key]) for m in metrics])
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Failed to compute percentiles for key {key}") from e
        summary[key] = np.nanpercentile(values, [100 * p for p in percentiles])
    return summary


def run_trial(fn, trial_params, n_replicates, executor, batch=False):
    """
    Submit `fn(**trial_params, seed=s)` for s = 0, ..., n_replicates - 1.
    """
    def submit_all():
        return [
            executor.submit(fn, **trial_params, seed=seed)
            for seed in range(n_replicates)]
    if batch:
        with executor.batch():
            return submit_all()
    return submit_all()


def collect_results(jobs):
    """
    Wait for every job; returns the results of those that finished and the
    number that did not.
    """
    results, n_failed = [], 0
    for job in jobs:
        job.wait()
        if job.state in ('DONE', 'COMPLETED', 'FINISHED'):
            results.append(job.result())
        else:
            n_failed += 1
            warnings.warn(
                f"job {job.job_id} not completed ({job.state}): {job.stderr()}")
    return results, n_failed


def reduce_trial_jobs(jobs, reducer=compute_percentiles):
    results, _ = collect_results(jobs)
    if not results:
        raise ValueError("Empty trial")
    return reducer(results)


def sweep_params(
        fn, base_kwargs, sweep_param, sweep_values, n_replicates, executor,
        experiment_name, log_dir=None, batch=False):
    """
    One trial of `n_replicates` seeds per value of `sweep_param`.
    The job handles are pickled to `log_dir` so the reduction can happen
    in another session.
    """
    if log_dir is None:
        log_dir = config.LOG_DIR
    executor.update_parameters(name=experiment_name)
    trials = []
    for value in sweep_values:
        params = dict(base_kwargs, **{sweep_param: value})
        trials.append(Trial(params, run_trial(fn, params, n_replicates, executor, batch=batch)))
    save_experiment(trials, experiment_name, log_dir=log_dir)
    return trials


def reduce_experiment(trials, reducer=compute_percentiles):
    """
    One `TrialSummary` per trial with at least one finished job.
    """
    summaries = []
    for trial in trials:
        results, n_failed = collect_results(trial.jobs)
        if not results:
            warnings.warn(f"Null trial {trial.params}")
            continue
        summaries.append(TrialSummary(trial.params, reducer(results), len(results), n_failed))
    return summaries


def prepare_data_for_plotting(summaries, sweep_param):
    """
    {metric: {quantile index: array of (param value, quantile value)}}
    """
    plot_data = defaultdict(lambda: defaultdict(list))
    for summary in summaries:
        param_value = summary.params[sweep_param]
        for key, quantiles in summary.results.items():
            for quantile_index, quantile_value in enumerate(quantiles):
                plot_data[key][quantile_index].append((param_value, quantile_value))
    return {
        key: {q: np.array(points) for q, points in by_quantile.items()}
        for key, by_quantile in plot_data.items()}


def _dump(obj, file_path):
    os.makedirs(os.path.dirname(file_path) or ".", exist_ok=True)
    with bz2.open(file_path, "wb") as f:
        cloudpickle.dump(obj, f)
    return file_path


def _load(file_path):
    with bz2.open(file_path, "rb") as f:
        return cloudpickle.load(f)


def save_experiment(experiment, experiment_name, log_dir=None):
    "zipped pickler, defaulting to the log directory"
    if log_dir is None:
        log_dir = config.LOG_DIR
    return _dump(experiment, os.path.join(log_dir, experiment_name + ".experiment.pkl.bz2"))


def load_experiment(experiment_name, log_dir=None):
    "zipped unpickler, defaulting to the log directory"
    if log_dir is None:
        log_dir = config.LOG_DIR
    return _load(os.path.join(log_dir, experiment_name + ".experiment.pkl.bz2"))


def save_artefact(artefact, artefact_name, output_dir=None):
    "zipped pickler, defaulting to the output directory"
    if output_dir is None:
        output_dir = config.OUTPUT_DIR
    return _dump(artefact, os.path.join(output_dir, artefact_name + ".pkl.bz2"))


def load_artefact(artefact_name, output_dir=None):
    "zipped unpickler, defaulting to the output directory"
    if output_dir is None:
        output_dir = config.OUTPUT_DIR
    return _load(os.path.join(output_dir, artefact_name + ".pkl.bz2"))
