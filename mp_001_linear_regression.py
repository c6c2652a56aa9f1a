# %%
"""
Bayesian linear regression, y = a x + b + noise.

First with the noise variance known, then with an inverse-Gamma prior on it,
then several regressions at once sharing an inverse-Wishart noise covariance.
"""
# %load_ext autoreload
# %autoreload 2
import torch
from matplotlib import pyplot as plt
from tueplots import bundles

from bayes_mp.config import FIG_DIR, use_default_dtype
from bayes_mp.datasets import (
    generate_multivariate_regression_data, generate_regression_data)
from bayes_mp.distributions import InverseGamma, NormalMeanVariance
from bayes_mp.models.linear_regression import (
    default_priors, fit_linear_regression, fit_linear_regression_unknown_noise,
    fit_multivariate_regression, predictive)
from bayes_mp.plots import density_plot, free_energy_plot, save_fig

use_default_dtype()
import lovely_tensors as lt
lt.monkey_patch()
plt.rcParams.update(bundles.iclr2024())
plt.rcParams.update({"text.usetex": False})

# %%
reala = 0.5
realb = 25.0
N = 250

x, y = generate_regression_data(reala, realb, 1.0, N, seed=42)
plt.scatter(x, y, s=3, color="red", label="observations")
plt.plot(x, reala * x + realb, color="black", label="truth")
plt.legend()

# %% known noise
result = fit_linear_regression(x, y, noise_var=1.0, iterations=50, verbose=1)
print(result.posteriors["a"], result.posteriors["b"])
print(f"converged {result.converged} after {result.n_iterations} iterations")

prior_a, prior_b = default_priors()
fig, axs = plt.subplots(1, 3)
density_plot([prior_a, result.posteriors["a"]], ["prior a", "posterior a"], ax=axs[0])
axs[0].axvline(reala, color="black", linestyle="dashed")
density_plot([prior_b, result.posteriors["b"]], ["prior b", "posterior b"], ax=axs[1])
axs[1].axvline(realb, color="black", linestyle="dashed")
free_energy_plot(result.free_energy, ax=axs[2])
save_fig(fig, "linreg_known_noise", FIG_DIR)

# %% predictive band
pred_mean, pred_var = predictive(result.posteriors["ab"], x, noise_var=1.0)
plt.figure()
plt.scatter(x, y, s=3, color="red", label="observations")
plt.plot(x, pred_mean, label="predictive mean")
plt.fill_between(
    x, pred_mean - 2 * pred_var.sqrt(), pred_mean + 2 * pred_var.sqrt(), alpha=0.25)

# a few regression lines drawn from q(a, b)
for a, b in result.posteriors["ab"].sample(20):
    plt.plot(x, a * x + b, color="grey", alpha=0.2, linewidth=0.5)
plt.legend()

# %% unknown noise: same model, now y has variance 4
x, y = generate_regression_data(reala, realb, 4.0, N, seed=43)
result_s = fit_linear_regression_unknown_noise(
    x, y,
    prior_a=NormalMeanVariance(0.0, 1.0),
    prior_b=NormalMeanVariance(0.0, 100.0),
    prior_s=InverseGamma(1.0, 1.0),
    iterations=20,
    verbose=1)
print(result_s.posteriors["a"], result_s.posteriors["b"], result_s.posteriors["s"])
print(f"E[s] = {result_s.posteriors['s'].mean():.3f}")

fig, axs = plt.subplots(1, 2)
density_plot([result_s.posteriors["s"]], ["q(s)"], ax=axs[0])
axs[0].axvline(4.0, color="black", linestyle="dashed")
free_energy_plot(result_s.free_energy, ax=axs[1])
save_fig(fig, "linreg_unknown_noise", FIG_DIR)

# %% three regressions at once, noise covariance unknown
reala_mv = [0.5, -1.0, 2.0]
realb_mv = [3.0, -5.0, 10.0]
realv_mv = [1.0, 4.0, 9.0]
x_mv, y_mv = generate_multivariate_regression_data(
    reala_mv, realb_mv, realv_mv, n=200, seed=42)
result_mv = fit_multivariate_regression(x_mv, y_mv, iterations=100, tolerance=1e-10, verbose=1)
print(result_mv.posteriors["a"].mean(), result_mv.posteriors["b"].mean())
print("E[W] =", result_mv.posteriors["W"].mean())

fig, axs = plt.subplots(1, 2)
for k in range(3):
    axs[0].scatter(x_mv[:, k], y_mv[:, k], s=2, label=f"y{k}")
    a_k = result_mv.posteriors["a"].marginal(k).mean()
    b_k = result_mv.posteriors["b"].marginal(k).mean()
    axs[0].plot(x_mv[:, k], a_k * x_mv[:, k] + b_k, color="black", linewidth=0.5)
axs[0].legend()
free_energy_plot(result_mv.free_energy, ax=axs[1])
save_fig(fig, "linreg_multivariate", FIG_DIR)
