#   Copyright 2024 - present The abundmc Developers
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.
"""Random-walk Metropolis updates.

Continuous parameters are proposed on the unconstrained scale of their
prior's transform, with the log-Jacobian added to the target. The step size
of every continuous block is tuned during burn-in with :func:`tune` and
frozen afterwards. The latent abundance uses a fixed symmetric integer
kernel instead.
"""

import numpy as np

from abundmc.step_methods.compound import BlockedStep, PointType, StatsType

__all__ = [
    "Metropolis",
    "ElemwiseMetropolis",
    "AbundanceMetropolis",
    "metrop_select",
    "metrop_select_elemwise",
    "tune",
]


def metrop_select(
    mr: np.ndarray, q: np.ndarray, q0: np.ndarray, rng: np.random.Generator
) -> tuple[np.ndarray, bool]:
    """Perform rejection/acceptance step for Metropolis class samplers.

    Returns the new sample q if a uniform random number is less than the
    metropolis acceptance rate (`mr`), and the old sample otherwise, along
    with a boolean indicating whether the sample was accepted.

    Parameters
    ----------
    mr: float, Metropolis acceptance rate
    q: proposed sample
    q0: current sample
    rng: numpy.random.Generator
        A random number generator object

    Returns
    -------
    q or q0
    """
    # Compare acceptance ratio to uniform random number
    if np.isfinite(mr) and np.log(rng.uniform()) < mr:
        return q, True
    else:
        return q0, False


def metrop_select_elemwise(
    mr: np.ndarray, q: np.ndarray, q0: np.ndarray, rng: np.random.Generator
) -> tuple[np.ndarray, np.ndarray]:
    """Vectorized :func:`metrop_select` for independent elementwise proposals."""
    mr = np.asarray(mr, dtype="float64")
    with np.errstate(divide="ignore"):
        log_u = np.log(rng.uniform(size=mr.shape))
    accepted = np.isfinite(mr) & (log_u < mr)
    return np.where(accepted, q, q0), accepted


def tune(scale, acc_rate):
    """
    Tune the scaling parameter for the proposal distribution.

    Uses the acceptance rate over the last tune_interval.

    Rate    Variance adaptation
    ----    -------------------
    <0.001        x 0.1
    <0.05         x 0.5
    <0.2          x 0.9
    >0.5          x 1.1
    >0.75         x 2
    >0.95         x 10

    """
    return scale * np.where(
        acc_rate < 0.001,
        # reduce by 90 percent
        0.1,
        np.where(
            acc_rate < 0.05,
            # reduce by 50 percent
            0.5,
            np.where(
                acc_rate < 0.2,
                # reduce by ten percent
                0.9,
                np.where(
                    acc_rate > 0.95,
                    # increase by factor of ten
                    10.0,
                    np.where(
                        acc_rate > 0.75,
                        # increase by double
                        2.0,
                        np.where(
                            acc_rate > 0.5,
                            # increase by ten percent
                            1.1,
                            # Do not change
                            1.0,
                        ),
                    ),
                ),
            ),
        ),
    )


def _accept_prob(mr):
    with np.errstate(over="ignore", invalid="ignore"):
        return np.where(np.isfinite(mr), np.exp(np.minimum(mr, 0.0)), 0.0)


class Metropolis(BlockedStep):
    """Random-walk Metropolis step for one scalar parameter.

    Parameters
    ----------
    var: str
        Name of the parameter.
    scaling: float
        Initial standard deviation of the Normal proposal on the
        unconstrained scale. Defaults to 1.
    tune: bool
        Flag for tuning. Defaults to True.
    tune_interval: int
        The frequency of tuning. Defaults to 100 iterations.
    model: Model
        Optional model for sampling step. Defaults to None (taken from context).
    rng: RandomGenerator
        Seed or Generator of the proposals and acceptance draws.
    """

    name = "metropolis"

    stats_dtypes_shapes = {
        "accept": (np.float64, []),
        "accepted": (np.float64, []),
        "tune": (bool, []),
        "scaling": (np.float64, []),
    }

    def __init__(self, var, *, scaling=1.0, tune=True, tune_interval=100, model=None, rng=None):
        super().__init__([var], model=model, rng=rng)
        self.var = var
        self.transform = self.model.priors[var].transform
        self.scaling = float(scaling)
        self.tune = tune
        self.tune_interval = tune_interval
        self.steps_until_tune = tune_interval
        self.accepted_sum = 0

        # remember initial settings before tuning so they can be reset
        self._untuned_settings = {"scaling": self.scaling, "steps_until_tune": tune_interval}

    def reset_tuning(self):
        super().reset_tuning()
        self.scaling = float(self.scaling)
        self.accepted_sum = 0

    def _logp(self, point, x):
        return self.model.conditional_logp(self.var, point) + float(self.transform.log_jac_det(x))

    def step(self, point: PointType) -> tuple[PointType, StatsType]:
        if not self.steps_until_tune and self.tune:
            # Tune scaling parameter
            self.scaling = float(tune(self.scaling, self.accepted_sum / float(self.tune_interval)))
            # Reset counter
            self.steps_until_tune = self.tune_interval
            self.accepted_sum = 0

        var = self.var
        q0 = point[var]
        x0 = self.transform.forward(q0)
        x = x0 + self.rng.normal() * self.scaling
        q = np.asarray(self.transform.backward(x), dtype="float64")
        proposal = {**point, var: q}

        with np.errstate(divide="ignore", over="ignore", invalid="ignore"):
            accept_rate = self._logp(proposal, x) - self._logp(point, x0)
        q_new, accepted = metrop_select(accept_rate, q, q0, rng=self.rng)
        self.accepted_sum += accepted
        self.steps_until_tune -= 1

        stats = {
            "tune": self.tune,
            "scaling": self.scaling,
            "accept": float(_accept_prob(accept_rate)),
            "accepted": float(accepted),
        }
        return {**point, var: q_new}, [stats]


class ElemwiseMetropolis(BlockedStep):
    """Independent random-walk Metropolis proposals for every element of the dispersion vector.

    Each element keeps its own proposal scale and acceptance counter. An
    element whose visit has no vocalization count carries no likelihood, so
    its full conditional is the ``Gamma(a_phi, a_phi)`` prior and it is drawn
    from it exactly.
    """

    name = "elemwise_metropolis"

    stats_dtypes_shapes = {
        "accept": (np.float64, []),
        "accepted": (np.float64, []),
        "tune": (bool, []),
        "scaling": (np.float64, []),
    }

    def __init__(self, var="phi", *, scaling=1.0, tune=True, tune_interval=100, model=None, rng=None):
        super().__init__([var], model=model, rng=rng)
        self.var = var
        acoustic = self.model.data.acoustic
        self.active = acoustic.detected if self.model.config.vocal else np.zeros(len(acoustic), bool)
        self.scaling = np.full(self.active.sum(), float(scaling))
        self.tune = tune
        self.tune_interval = tune_interval
        self.steps_until_tune = tune_interval
        self.accepted_sum = np.zeros(self.scaling.shape, dtype=int)

        self._untuned_settings = {"scaling": self.scaling.copy(), "steps_until_tune": tune_interval}

    def reset_tuning(self):
        super().reset_tuning()
        self.accepted_sum[:] = 0

    def _logp(self, point, phi):
        # log-Jacobian of the log transform is log(phi)
        with np.errstate(divide="ignore", invalid="ignore"):
            return self.model.phi_conditional_logp(point, phi)[self.active] + np.log(phi[self.active])

    def step(self, point: PointType) -> tuple[PointType, StatsType]:
        if not self.steps_until_tune and self.tune:
            self.scaling = tune(self.scaling, self.accepted_sum / float(self.tune_interval))
            self.steps_until_tune = self.tune_interval
            self.accepted_sum[:] = 0

        var = self.var
        a_phi = point["a_phi"]
        q0 = np.asarray(point[var], dtype="float64")
        q = q0.copy()
        # exact prior draw where the visit has no likelihood term
        inactive = ~self.active
        q[inactive] = self.rng.gamma(a_phi, 1.0 / a_phi, size=inactive.sum())

        if self.active.any():
            q0 = q.copy()
            with np.errstate(divide="ignore", over="ignore"):
                q[self.active] = q0[self.active] * np.exp(
                    self.rng.normal(size=self.scaling.shape) * self.scaling
                )
            with np.errstate(divide="ignore", over="ignore", invalid="ignore"):
                accept_rate = self._logp(point, q) - self._logp(point, q0)
            q_active, accepted = metrop_select_elemwise(
                accept_rate, q[self.active], q0[self.active], rng=self.rng
            )
            q[self.active] = q_active
            self.accepted_sum += accepted
            stats = {
                "accept": float(np.mean(_accept_prob(accept_rate))),
                "accepted": float(np.mean(accepted)),
                "scaling": float(np.mean(self.scaling)),
            }
        else:
            stats = {"accept": 1.0, "accepted": 1.0, "scaling": 0.0}
        self.steps_until_tune -= 1
        stats["tune"] = self.tune
        return {**point, var: q}, [stats]


class AbundanceMetropolis(BlockedStep):
    """Site-wise Metropolis update of the latent abundance ``N``.

    Every site proposes ``N[i] + d`` with ``|d| = 1`` (probability
    ``p_small``) or ``|d| = 2`` and a random sign. Negative proposals are
    rejected. A proposal is accepted by the change in the sum of all terms
    that reference ``N[i]``: abundance prior, hurdle, vocalization count,
    point count and validation. Given the other parameters the sites are
    conditionally independent, so all of them are proposed and accepted in
    one vectorized pass.
    """

    name = "abundance_metropolis"

    stats_dtypes_shapes = {
        "accept": (np.float64, []),
        "accepted": (np.float64, []),
        "tune": (bool, []),
    }

    def __init__(self, var="N", *, p_small=0.8, model=None, rng=None):
        super().__init__([var], model=model, rng=rng)
        if not 0 < p_small <= 1:
            raise ValueError(f"p_small must be in (0, 1], got {p_small}")
        self.var = var
        self.p_small = p_small

    def propose(self, N0):
        size = N0.shape
        magnitude = np.where(self.rng.uniform(size=size) < self.p_small, 1, 2)
        sign = np.where(self.rng.uniform(size=size) < 0.5, -1, 1)
        return N0 + sign * magnitude

    def step(self, point: PointType) -> tuple[PointType, StatsType]:
        N0 = np.asarray(point[self.var], dtype="int64")
        N = self.propose(N0)
        negative = N < 0
        with np.errstate(divide="ignore", over="ignore", invalid="ignore"):
            accept_rate = self.model.site_logp(point, np.maximum(N, 0)) - self.model.site_logp(point, N0)
        accept_rate[negative] = -np.inf
        N_new, accepted = metrop_select_elemwise(accept_rate, N, N0, rng=self.rng)
        stats = {
            "tune": self.tune,
            "accept": float(np.mean(_accept_prob(accept_rate))),
            "accepted": float(np.mean(accepted)),
        }
        return {**point, self.var: N_new.astype("int64")}, [stats]
