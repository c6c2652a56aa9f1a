# -*- coding: utf-8 -*-
"""Gaussian Belief Propagation

Information-form message passing on factor graphs, extended from

    https://colab.research.google.com/drive/1-nrE95X4UC9FBLR0-cTnsIP_XhA_PZKW

Author of the original library: [Joseph Ortiz](https://joeaortiz.github.io/)

License: [Creative Commons Attribution 4.0 International](https://github.com/gaussianBP/gaussianBP.github.io/blob/master/LICENSE)

Changes here: named variables, a sequential ("sweep") schedule that is exact
in a single leaves-to-root-and-back pass on trees, convergence reporting,
and the log evidence of the linear(ised) Gaussian model, whose negative is
the free energy reported by the estimators.
"""
import math
import warnings
from collections import deque, namedtuple
from typing import List, Callable, Optional, Union

import torch

from .distributions import MvNormalMeanCovariance, NormalMeanVariance
from .errors import NumericalFailure
from .math_helpers import jacobian_factory, logdet_2pi, symmetrize
from .utils import as_float_tensor, as_matrix

SolveReport = namedtuple(
    "SolveReport", ["energies", "n_iters", "converged", "callback_log"])


class Gaussian:
    """
    Gaussian in information form, eta = lam @ mean.
    A zero `lam` means "no information yet".
    """
    def __init__(
            self, dim: int, eta: Optional[torch.Tensor] = None,
            lam: Optional[torch.Tensor] = None,
            dtype: Optional[torch.dtype] = None):
        if dtype is None:
            dtype = torch.get_default_dtype()
        self.dim = dim

        if eta is not None and eta.shape == torch.Size([dim]):
            self.eta = eta.type(dtype)
        else:
            self.eta = torch.zeros(dim, dtype=dtype)

        if lam is not None and lam.shape == torch.Size([dim, dim]):
            self.lam = lam.type(dtype)
        else:
            self.lam = torch.zeros([dim, dim], dtype=dtype)

    @classmethod
    def from_belief(cls, belief):
        """
        information form of a univariate or multivariate normal belief
        """
        if isinstance(belief, MvNormalMeanCovariance):
            mean, cov = belief.mean_cov()
        else:
            mean = belief.mean().reshape(1)
            cov = belief.var().reshape(1, 1)
        g = cls(mean.shape[0])
        g.set_with_cov_form(mean, cov)
        return g

    def is_proper(self) -> bool:
        return bool(torch.any(self.lam != 0))

    def mean(self) -> torch.Tensor:
        if not self.is_proper():
            return torch.zeros_like(self.eta)
        return torch.linalg.solve(self.lam, self.eta)

    def cov(self) -> torch.Tensor:
        return symmetrize(torch.inverse(self.lam))

    def mean_and_cov(self) -> List[torch.Tensor]:
        cov = self.cov()
        mean = torch.matmul(cov, self.eta)
        return [mean, cov]

    def set_with_cov_form(self, mean: torch.Tensor, cov: torch.Tensor) -> None:
        self.lam = symmetrize(torch.inverse(cov))
        self.eta = self.lam @ mean

    def to_belief(self):
        return MvNormalMeanCovariance(*self.mean_and_cov())


class SquaredLoss:
    """
    Gaussian measurement noise: the squared loss 0.5 r^T cov^-1 r.
    """
    def __init__(self, dofs: int, cov: Union[float, torch.Tensor]) -> None:
        """
            dofs: dofs of the measurement
            cov: scalar, diagonal elements, or full covariance matrix
        """
        self.dofs = dofs
        self.set_cov(cov)

    def set_cov(self, cov) -> None:
        self.cov = as_matrix(cov, self.dofs)
        self.lam = symmetrize(torch.inverse(self.cov))


class MeasModel:
    def __init__(self, meas_fn: Callable, jac_fn: Callable, loss: SquaredLoss, *args, linear: bool = True) -> None:
        self._meas_fn = meas_fn
        self._jac_fn = jac_fn
        self.loss = loss
        self.args = args
        self.linear = linear

    def jac_fn(self, x: torch.Tensor) -> torch.Tensor:
        return self._jac_fn(x, *self.args)

    def meas_fn(self, x: torch.Tensor) -> torch.Tensor:
        return self._meas_fn(x, *self.args).reshape(-1)


def _linear_meas_fn(x: torch.Tensor, J: torch.Tensor):
    return J @ x


def _linear_jac_fn(x: torch.Tensor, J: torch.Tensor):
    return J


class LinearMeasModel(MeasModel):
    """
    h(x) = J x
    """
    def __init__(self, J: torch.Tensor, loss: SquaredLoss) -> None:
        J = as_float_tensor(J)
        if J.ndim == 1:
            J = J.unsqueeze(0)
        MeasModel.__init__(self, _linear_meas_fn, _linear_jac_fn, loss, J, linear=True)


class NonlinearMeasModel(MeasModel):
    """
    h(x) arbitrary and differentiable; Jacobians by autograd,
    so factors are relinearised as beliefs move.
    """
    def __init__(self, meas_fn: Callable, loss: SquaredLoss, *args) -> None:
        MeasModel.__init__(
            self, meas_fn, jacobian_factory(meas_fn), loss, *args, linear=False)


class GBPSettings:
    def __init__(self,
                 damping: float = 0.,
                 beta: float = 0.1,
                 num_undamped_iters: int = 5,
                 min_linear_iters: int = 10,
                 converged_patience: int = 3,
                 schedule: str = "all",
                 relinearise: bool = True,
                 verbose: int = 0) -> None:

        # Parameters for damping the messages
        self.damping = damping
        self.num_undamped_iters = num_undamped_iters  # Number of undamped iterations after relinearisation before damping is set to damping

        # Parameters for just in time factor relinearisation
        self.relinearise = relinearise  # False when the caller owns the linearisation points
        self.beta = beta  # Threshold absolute distance between linpoint and adjacent belief means for relinearisation.
        self.min_linear_iters = min_linear_iters  # Minimum number of linear iterations before a factor is allowed to realinearise.

        # Consecutive iterations below threshold before we call it converged
        self.converged_patience = converged_patience
        if schedule not in ("all", "sweep"):
            raise ValueError(f"unknown schedule {schedule!r}")
        # "all" is synchronous and robust for loopy graphs;
        # "sweep" is leaves to roots then back, exact after one pass on a tree.
        self.schedule = schedule
        self.verbose = verbose

    def get_damping(self, iters_since_relin: int) -> float:
        if iters_since_relin > self.num_undamped_iters:
            return self.damping
        else:
            return 0.


class FactorGraph:
    def __init__(self, gbp_settings: Optional[GBPSettings] = None) -> None:
        self.var_nodes = []
        self.factors = []
        self.var_names = {}
        if gbp_settings is None:
            gbp_settings = GBPSettings()
        self.gbp_settings = gbp_settings

    def add_var_node(self,
                     dofs: int,
                     prior_mean: Optional[torch.Tensor] = None,
                     prior_cov: Optional[Union[float, torch.Tensor]] = None,
                     name: Optional[str] = None) -> int:
        variableID = len(self.var_nodes)
        if name is None:
            name = f"v{variableID}"
        if name in self.var_names:
            raise ValueError(f"duplicate variable name {name!r}")
        self.var_nodes.append(VariableNode(variableID, dofs, name=name))
        self.var_names[name] = variableID
        if prior_mean is not None and prior_cov is not None:
            self.set_prior(variableID, prior_mean, prior_cov)
        return variableID

    def set_prior(self, var: Union[int, str], mean, cov) -> None:
        var_node = self.get_var_node(var)
        mean = as_float_tensor(mean).reshape(var_node.dofs)
        cov = as_matrix(cov, var_node.dofs)
        var_node.prior.set_with_cov_form(mean, cov)
        var_node.update_belief()

    def get_var_node(self, var: Union[int, str]):
        if isinstance(var, str):
            var = self.var_names[var]
        return self.var_nodes[var]

    def add_factor(self, adj_vars: List[Union[int, str]],
                   measurement: torch.Tensor,
                   meas_model: MeasModel) -> int:
        factorID = len(self.factors)
        adj_var_nodes = [self.get_var_node(v) for v in adj_vars]
        factor = Factor(factorID, adj_var_nodes, measurement, meas_model)
        if factor.measurement.shape[0] != meas_model.loss.dofs:
            raise ValueError(
                f"measurement of size {factor.measurement.shape[0]} does not "
                f"match the noise model of size {meas_model.loss.dofs}")
        self.factors.append(factor)
        for var in adj_var_nodes:
            var.adj_factors.append(factor)
        return factorID

    def update_all_beliefs(self) -> None:
        for var_node in self.var_nodes:
            var_node.update_belief()

    def compute_all_messages(self) -> None:
        for factor in self.factors:
            damping = self.gbp_settings.get_damping(factor.iters_since_relin)
            factor.compute_messages(damping)

    def linearise_all_factors(self) -> None:
        for factor in self.factors:
            factor.compute_factor()

    def jit_linearisation(self) -> None:
        """
            Check for all factors that the current estimate is close to the linearisation point.
            If not, relinearise the factor distribution.
            Relinearisation is only allowed at a maximum frequency of once every min_linear_iters iterations.
        """
        for factor in self.factors:
            factor.iters_since_relin += 1
            if self.gbp_settings.relinearise and not factor.meas_model.linear:
                adj_belief_means = factor.get_adj_means()
                if torch.norm(factor.linpoint - adj_belief_means) > self.gbp_settings.beta and factor.iters_since_relin >= self.gbp_settings.min_linear_iters:
                    factor.compute_factor()

    def synchronous_iteration(self) -> None:
        self.jit_linearisation()  # For linear factors, no compute is done
        self.compute_all_messages()
        self.update_all_beliefs()

    def sweep_order(self) -> List["Factor"]:
        """
            Factors in breadth first order from the first variable of each
            connected component. Reversed, this runs from the leaves towards
            the roots; forwards, from the roots back out.
        """
        order = []
        seen_vars, seen_factors = set(), set()
        for root in self.var_nodes:
            if root.variableID in seen_vars:
                continue
            seen_vars.add(root.variableID)
            queue = deque([root])
            while queue:
                var_node = queue.popleft()
                for factor in var_node.adj_factors:
                    if factor.factorID in seen_factors:
                        continue
                    seen_factors.add(factor.factorID)
                    order.append(factor)
                    for other in factor.adj_var_nodes:
                        if other.variableID not in seen_vars:
                            seen_vars.add(other.variableID)
                            queue.append(other)
        return order

    def is_tree(self) -> bool:
        """ True if the graph has no loops; a forest counts. """
        n_vars = len(self.var_nodes)
        parent = list(range(n_vars + len(self.factors)))

        def find(i):
            while parent[i] != i:
                parent[i] = parent[parent[i]]
                i = parent[i]
            return i

        for factor in self.factors:
            for var_node in factor.adj_var_nodes:
                a, b = find(var_node.variableID), find(n_vars + factor.factorID)
                if a == b:
                    return False
                parent[a] = b
        return True

    def exact_in_one_sweep(self) -> bool:
        """
            A sweep on a tree of fixed linear(ised) factors gives the exact
            marginals, so there is nothing left to converge.
        """
        if self.gbp_settings.schedule != "sweep" or self.gbp_settings.damping > 0:
            return False
        if self.gbp_settings.relinearise and not all(f.meas_model.linear for f in self.factors):
            return False
        return self.is_tree()

    def sweep_iteration(self, order: Optional[List["Factor"]] = None) -> None:
        """
            Send messages factor by factor, leaves to roots then back out,
            refreshing adjacent beliefs as we go.
        """
        if order is None:
            order = self.sweep_order()
        self.jit_linearisation()
        for factor in order[::-1] + order:
            damping = self.gbp_settings.get_damping(factor.iters_since_relin)
            factor.compute_messages(damping)
            for var_node in factor.adj_var_nodes:
                var_node.update_belief()

    def solve(self, n_iters: Optional[int] = 20, converged_threshold: Optional[float] = 1e-6, callback: Optional[Callable] = None) -> SolveReport:
        """
            Iterate until the energy and the belief means stop moving for
            `converged_patience` consecutive iterations, or `n_iters` runs out.
            Graphs that are exact in one sweep are converged after it.
        """
        verbose = self.gbp_settings.verbose
        energy_log = [self.energy()]
        means = self.belief_means()
        callback_log = []
        if verbose:
            print(f"\nInitial Energy {energy_log[0]:.5f}")
        exact = self.exact_in_one_sweep()
        order = self.sweep_order() if self.gbp_settings.schedule == "sweep" else None
        i = 0
        count = 0
        converged = False
        while not converged and i < n_iters:
            try:
                if order is not None:
                    self.sweep_iteration(order)
                else:
                    self.synchronous_iteration()
                energy_log.append(self.energy())
                new_means = self.belief_means()
            except torch.linalg.LinAlgError as e:
                raise NumericalFailure(f"singular system at iteration {i+1}") from e
            if not math.isfinite(energy_log[-1]):
                raise NumericalFailure(f"energy diverged at iteration {i+1}")
            i += 1
            if verbose:
                print(f"Iter {i}  --- Energy {energy_log[-1]:.5f}")
            if callback is not None:
                callback_rtn = callback(i, self)
                if callback_rtn is not None:
                    callback_log.append(callback_rtn)
            delta = max(
                abs(energy_log[-2] - energy_log[-1]),
                torch.max(torch.abs(new_means - means)).item() if means.numel() else 0.)
            means = new_means
            if exact:
                converged = True
            elif delta < converged_threshold:
                count += 1
                if count >= self.gbp_settings.converged_patience:
                    converged = True
            else:
                count = 0
        if not converged and verbose:
            warnings.warn(f"GBP did not converge in {n_iters} iterations")
        return SolveReport(energy_log, i, converged, callback_log)

    def energy(self) -> float:
        """ Computes the sum of all of the squared errors in the graph, priors included, at the current belief means. """
        energy = sum([factor.get_energy() for factor in self.factors], 0.)
        energy += sum([var.get_prior_energy() for var in self.var_nodes], 0.)
        return float(energy)

    def get_joint_dim(self) -> int:
        return sum([var.dofs for var in self.var_nodes])

    def var_index(self, var: Union[int, str]) -> slice:
        """ Slice of the joint vector belonging to a variable. """
        var_node = self.get_var_node(var)
        start = sum([v.dofs for v in self.var_nodes[:var_node.variableID]])
        return slice(start, start + var_node.dofs)

    def get_joint(self) -> Gaussian:
        """
            Get the joint distribution over all variables in the information form
            If nonlinear factors, it is taken at the current linearisation point.
        """
        joint = Gaussian(self.get_joint_dim())

        # Priors
        for var in self.var_nodes:
            ix = self.var_index(var.variableID)
            joint.eta[ix] += var.prior.eta
            joint.lam[ix, ix] += var.prior.lam

        # Other factors
        for factor in self.factors:
            factor_ix = 0
            for adj_var_node in factor.adj_var_nodes:
                ix = self.var_index(adj_var_node.variableID)
                f_ix = slice(factor_ix, factor_ix + adj_var_node.dofs)
                # Diagonal contribution of factor
                joint.eta[ix] += factor.factor.eta[f_ix]
                joint.lam[ix, ix] += factor.factor.lam[f_ix, f_ix]
                other_factor_ix = 0
                for other_adj_var_node in factor.adj_var_nodes:
                    if other_adj_var_node.variableID != adj_var_node.variableID:
                        # Off diagonal contributions of factor
                        other_ix = self.var_index(other_adj_var_node.variableID)
                        other_f_ix = slice(other_factor_ix, other_factor_ix + other_adj_var_node.dofs)
                        joint.lam[ix, other_ix] += factor.factor.lam[f_ix, other_f_ix]
                    other_factor_ix += other_adj_var_node.dofs
                factor_ix += adj_var_node.dofs

        return joint

    def MAP(self) -> torch.Tensor:
        return self.get_joint().mean()

    def belief_means(self) -> torch.Tensor:
        """ Get an array containing all current estimates of belief means. """
        if not self.var_nodes:
            return torch.zeros(0)
        return torch.cat([var.belief.mean() for var in self.var_nodes])

    def belief_covs(self) -> List[torch.Tensor]:
        """ Get a list containing all current estimates of belief covariances. """
        return [var.belief.cov() for var in self.var_nodes]

    def marginal(self, var: Union[int, str]):
        """
        Current belief of one variable as a belief object;
        univariate for 1-dof variables.
        """
        belief = self.get_var_node(var).belief.to_belief()
        if belief.dim == 1:
            return NormalMeanVariance(belief.mean()[0], belief.cov()[0, 0])
        return belief

    def joint_belief(self, vars: List[Union[int, str]]) -> MvNormalMeanCovariance:
        """
        Joint over several variables, read off the full joint.
        Exact for linear Gaussian graphs.
        """
        mean, cov = self.get_joint().mean_and_cov()
        ix = torch.cat([
            torch.arange(self.get_joint_dim())[self.var_index(v)]
            for v in vars])
        return MvNormalMeanCovariance(mean[ix], cov[ix][:, ix])

    def log_evidence(self) -> torch.Tensor:
        """
        log of the normalising constant of prior x likelihood,
        i.e. log p(measurements), with nonlinear factors taken at their
        current linearisation points.
        """
        joint = self.get_joint()
        const = 0.
        for var in self.var_nodes:
            if var.prior.is_proper():
                prior_mean, prior_cov = var.prior.mean_and_cov()
                const = const + 0.5 * prior_mean @ var.prior.lam @ prior_mean + 0.5 * logdet_2pi(prior_cov)
        for factor in self.factors:
            z = factor.effective_measurement
            const = const + 0.5 * z @ factor.meas_model.loss.lam @ z + 0.5 * logdet_2pi(factor.meas_model.loss.cov)
        mean = torch.linalg.solve(joint.lam, joint.eta)
        return (
            -const + 0.5 * joint.eta @ mean
            + 0.5 * joint.dim * math.log(2 * math.pi)
            - 0.5 * torch.logdet(joint.lam))

    def free_energy(self) -> float:
        """
        Bethe free energy at the fixed point; for a linear Gaussian tree this
        is exactly the negative log evidence.
        """
        return float(-self.log_evidence())


class VariableNode:
    def __init__(self, id: int, dofs: int, name: str = "") -> None:
        self.variableID = id
        self.name = name
        self.dofs = dofs
        self.adj_factors = []
        self.belief = Gaussian(dofs)
        self.prior = Gaussian(dofs)  # prior factor, implemented as part of variable node

    def update_belief(self) -> None:
        """ Update local belief estimate by taking product of all incoming messages along all edges. """
        self.belief.eta = self.prior.eta.clone()  # message from prior factor
        self.belief.lam = self.prior.lam.clone()
        for factor in self.adj_factors:  # messages from other adjacent variables
            message_ix = factor.adj_vIDs.index(self.variableID)
            self.belief.eta += factor.messages[message_ix].eta
            self.belief.lam += factor.messages[message_ix].lam

    def get_prior_energy(self) -> float:
        energy = 0.
        if self.prior.is_proper():
            residual = self.belief.mean() - self.prior.mean()
            energy += 0.5 * residual @ self.prior.lam @ residual
        return energy


class Factor:
    def __init__(self,
                 id: int,
                 adj_var_nodes: List[VariableNode],
                 measurement: torch.Tensor,
                 meas_model: MeasModel) -> None:

        self.factorID = id

        self.adj_var_nodes = adj_var_nodes
        self.dofs = sum([var.dofs for var in adj_var_nodes])
        self.adj_vIDs = [var.variableID for var in adj_var_nodes]
        self.messages = [Gaussian(var.dofs) for var in adj_var_nodes]

        self.factor = Gaussian(self.dofs)
        self.linpoint = torch.zeros(self.dofs, dtype=torch.get_default_dtype())

        self.measurement = as_float_tensor(measurement).reshape(-1)
        self.meas_model = meas_model
        self.effective_measurement = self.measurement.clone()

        # For smarter GBP implementations
        self.iters_since_relin = 0

        self.compute_factor()

    def get_adj_means(self) -> torch.Tensor:
        adj_belief_means = [var.belief.mean() for var in self.adj_var_nodes]
        return torch.cat(adj_belief_means)

    def get_residual(self) -> torch.Tensor:
        """ Compute the residual vector at the adjacent belief means. """
        return self.meas_model.meas_fn(self.get_adj_means()) - self.measurement

    def get_energy(self) -> float:
        """ Computes the squared error using the appropriate loss function. """
        residual = self.get_residual()
        return 0.5 * residual @ self.meas_model.loss.lam @ residual

    def belief(self) -> Gaussian:
        """
            Joint belief over the adjacent variables: the factor times the
            messages coming in from the rest of the graph. Exact on trees.
        """
        belief = Gaussian(self.dofs, self.factor.eta.clone(), self.factor.lam.clone())
        start = 0
        for var, message in zip(self.adj_var_nodes, self.messages):
            ix = slice(start, start + var.dofs)
            belief.eta[ix] += var.belief.eta - message.eta
            belief.lam[ix, ix] += var.belief.lam - message.lam
            start += var.dofs
        return belief

    def compute_factor(self, linpoint: Optional[torch.Tensor] = None) -> None:
        """
            Compute the factor at current adjacent beliefs.
            If measurement model is linear then factor will always be the same regardless of linearisation point.
        """
        if linpoint is None:
            linpoint = self.get_adj_means()
        self.linpoint = linpoint.detach()
        J = self.meas_model.jac_fn(self.linpoint)
        pred_measurement = self.meas_model.meas_fn(self.linpoint).detach()
        lam = self.meas_model.loss.lam
        # the linearised model is measurement ~ J x + (pred - J linpoint)
        self.effective_measurement = J @ self.linpoint + self.measurement - pred_measurement
        self.factor.lam = J.T @ lam @ J
        self.factor.eta = ((J.T @ lam) @ self.effective_measurement).flatten()
        self.iters_since_relin = 0

    def compute_messages(self, damping: float = 0.) -> None:
        """ Compute all outgoing messages from the factor. """
        if len(self.adj_var_nodes) == 1:
            # unary factors just send themselves
            self.messages[0].eta = (1 - damping) * self.factor.eta + damping * self.messages[0].eta
            self.messages[0].lam = (1 - damping) * self.factor.lam + damping * self.messages[0].lam
            return

        messages_eta, messages_lam = [], []

        start_dim = 0
        for v in range(len(self.adj_vIDs)):
            eta_factor, lam_factor = self.factor.eta.clone(), self.factor.lam.clone()

            # Take product of factor with incoming messages
            start = 0
            for var in range(len(self.adj_vIDs)):
                if var != v:
                    var_dofs = self.adj_var_nodes[var].dofs
                    eta_factor[start:start + var_dofs] += self.adj_var_nodes[var].belief.eta - self.messages[var].eta
                    lam_factor[start:start + var_dofs, start:start + var_dofs] += self.adj_var_nodes[var].belief.lam - self.messages[var].lam
                start += self.adj_var_nodes[var].dofs

            # Divide up parameters of distribution
            mess_dofs = self.adj_var_nodes[v].dofs
            keep = torch.zeros(self.dofs, dtype=torch.bool)
            keep[start_dim:start_dim + mess_dofs] = True
            eo = eta_factor[keep]
            eno = eta_factor[~keep]
            loo = lam_factor[keep][:, keep]
            lono = lam_factor[keep][:, ~keep]
            lnoo = lam_factor[~keep][:, keep]
            lnono = lam_factor[~keep][:, ~keep]

            # Marginalise out the other variables
            lnono_inv = torch.inverse(lnono)
            new_message_lam = loo - lono @ lnono_inv @ lnoo
            new_message_eta = eo - lono @ lnono_inv @ eno
            messages_eta.append((1 - damping) * new_message_eta + damping * self.messages[v].eta)
            messages_lam.append((1 - damping) * symmetrize(new_message_lam) + damping * self.messages[v].lam)
            start_dim += self.adj_var_nodes[v].dofs

        for v in range(len(self.adj_vIDs)):
            self.messages[v].lam = messages_lam[v]
            self.messages[v].eta = messages_eta[v]
