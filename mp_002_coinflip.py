# %%
"""
Coin toss: theta ~ Beta(2, 7), flips ~ Bernoulli(theta).
All at once, then one flip at a time.
"""
import torch
from matplotlib import pyplot as plt
from tueplots import bundles

from bayes_mp.config import FIG_DIR, use_default_dtype
from bayes_mp.datasets import generate_coin_data
from bayes_mp.driver import UpdateDriver, beta_update
from bayes_mp.models.coin import BetaBernoulliEstimator, default_prior, fit_coin
from bayes_mp.plots import belief_ribbon_plot, density_plot, save_fig

use_default_dtype()
import lovely_tensors as lt
lt.monkey_patch()
plt.rcParams.update(bundles.iclr2024())
plt.rcParams.update({"text.usetex": False})

# %%
n = 500
p = 0.75
flips = generate_coin_data(p, n, seed=42)

result = fit_coin(flips, default_prior())
print(result.posteriors["theta"])
print(f"-log evidence {result.free_energy[-1]:.3f}")

fig = plt.figure()
density_plot([default_prior(), result.posteriors["theta"]], ["prior", "posterior"])
plt.axvline(p, color="black", linestyle="dashed")
save_fig(fig, "coin_batch", FIG_DIR)

# %% online
driver = UpdateDriver(
    BetaBernoulliEstimator(),
    {"theta": default_prior()},
    autoupdate=beta_update("theta"))
history = driver.run(flips)
assert history[-1].posteriors["theta"].allclose(result.posteriors["theta"])
print(f"sum of per-flip free energies {sum(history.free_energy):.3f}")

fig = plt.figure()
belief_ribbon_plot(
    history.means("theta"), history.stds("theta"),
    truth=torch.full((n,), p), label="E[theta]", n_sd=2.0)
save_fig(fig, "coin_online", FIG_DIR)
