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
"""Updates drawing from (or close to) a full conditional distribution."""

import numpy as np

from abundmc.distributions.discrete import binomial_logit_logp, hypergeometric_logp
from abundmc.math import invlogit
from abundmc.model import loglik
from abundmc.step_methods.compound import BlockedStep, PointType, StatsType
from abundmc.step_methods.metropolis import metrop_select_elemwise

__all__ = ["DayEffectGibbs", "PrecisionGibbs", "ValidationGibbs", "categorical"]


def categorical(logp: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    """Draw one column index per row of a matrix of unnormalized log-probabilities."""
    with np.errstate(invalid="ignore"):
        p = np.cumsum(np.exp(logp - np.max(logp, axis=1, keepdims=True)), axis=1)
    r = rng.uniform(size=p.shape[0]) * p[:, -1]
    return np.sum(p <= r[:, None], axis=1)


def _normal_logpdf(x, mean, prec):
    return 0.5 * np.log(prec) - 0.5 * prec * (x - mean) ** 2


class DayEffectGibbs(BlockedStep):
    """Update of the day random effects ``gamma_day``.

    Days without vocalization or validation data are drawn exactly from
    their ``Normal(0, 1 / sqrt(tau_day))`` full conditional. For the other
    days the log link of the vocalization rate breaks Normal conjugacy, so a
    Normal is fitted to the full conditional at the current value by one
    Newton step on the working residuals of the day's visits, a value is
    drawn from it and corrected by a Metropolis-Hastings ratio with the
    reverse fit. The chain therefore targets the exact full conditional.
    Days are conditionally independent and updated together.
    """

    name = "day_effect_gibbs"

    stats_dtypes_shapes = {
        "accepted": (np.float64, []),
        "tune": (bool, []),
    }

    def __init__(self, var="gamma_day", *, model=None, rng=None):
        super().__init__([var], model=model, rng=rng)
        self.var = var
        model = self.model
        data = model.data
        layers = model.config.active_layers
        has_data = np.zeros(data.n_days, dtype=bool)
        if "vocal" in layers:
            has_data[data.acoustic.day[data.acoustic.detected]] = True
        if "validation" in layers and len(data.validation):
            has_data[data.acoustic.day[data.validation.visit]] = True
        self.has_data = has_data

    def target_logp(self, point, gamma_day):
        trial = {**point, self.var: gamma_day}
        return loglik.day_logp(self.model, trial) + self.model.gamma_day_logp(trial)

    def gradient_hessian(self, point, gamma_day):
        """First and second derivative of the log full conditional of every day."""
        model = self.model
        data = model.data
        layers = model.config.active_layers
        n_days = data.n_days
        tau = point["tau_day"]
        trial = {**point, self.var: gamma_day}
        grad = -tau * gamma_day
        hess = np.full(n_days, -tau, dtype="float64")

        if "vocal" in layers:
            acoustic = data.acoustic
            detected = acoustic.detected
            N = np.asarray(point["N"])[acoustic.site]
            phi = np.broadcast_to(loglik.param_value(trial, "phi"), detected.shape)
            with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
                a = (np.exp(loglik.log_delta(model, trial)) * N * phi)[detected]
                mu = a + (point["omega"] * phi)[detected]
                inv_em1 = 1.0 / np.expm1(mu)
                v = acoustic.v[detected]
                # derivatives of the zero-truncated Poisson log-mass in mu
                l1 = v / mu - 1.0 - inv_em1
                l2 = -v / mu**2 + inv_em1 * (1.0 + inv_em1)
            day = acoustic.day[detected]
            grad = grad + np.bincount(day, l1 * a, minlength=n_days)
            hess = hess + np.bincount(day, l2 * a**2 + l1 * a, minlength=n_days)

        if "validation" in layers and len(data.validation):
            K = loglik.true_positive_counts(model, point, None)
            v = data.val_v
            tp = invlogit(loglik.logit_true_positive_rate(model, trial))
            day = data.acoustic.day[data.validation.visit]
            grad = grad + np.bincount(day, K - v * tp, minlength=n_days)
            hess = hess - np.bincount(day, v * tp * (1 - tp), minlength=n_days)
        return grad, hess

    def laplace(self, point, gamma_day):
        """Mean and precision of the Normal proposal fitted at ``gamma_day``."""
        tau = point["tau_day"]
        grad, hess = self.gradient_hessian(point, gamma_day)
        prec = np.maximum(-hess, tau)
        prec = np.where(np.isfinite(prec), prec, tau)
        mean = gamma_day + grad / prec
        mean = np.where(np.isfinite(mean), mean, gamma_day)
        return mean, prec

    def step(self, point: PointType) -> tuple[PointType, StatsType]:
        g0 = np.asarray(point[self.var], dtype="float64")
        tau = point["tau_day"]
        n_days = g0.shape[0]
        g = g0.copy()

        # exact Normal-Normal draw for days without data
        no_data = ~self.has_data
        g[no_data] = self.rng.normal(0.0, 1.0 / np.sqrt(tau), size=no_data.sum())

        accepted_frac = 1.0
        if self.has_data.any():
            current = {**point, self.var: g}
            mean0, prec0 = self.laplace(current, g)
            proposal = mean0 + self.rng.normal(size=n_days) / np.sqrt(prec0)
            proposal = np.where(self.has_data, proposal, g)
            mean1, prec1 = self.laplace(current, proposal)
            with np.errstate(invalid="ignore", over="ignore", divide="ignore"):
                log_ratio = (
                    self.target_logp(current, proposal)
                    + _normal_logpdf(g, mean1, prec1)
                    - self.target_logp(current, g)
                    - _normal_logpdf(proposal, mean0, prec0)
                )
            g_data, accepted = metrop_select_elemwise(
                log_ratio[self.has_data], proposal[self.has_data], g[self.has_data], rng=self.rng
            )
            g[self.has_data] = g_data
            accepted_frac = float(np.mean(accepted))

        return {**point, self.var: g}, [{"accepted": accepted_frac, "tune": self.tune}]


class PrecisionGibbs(BlockedStep):
    """Conjugate Gamma draw of the day-effect precision.

    ``tau_day | gamma_day ~ Gamma(a + D / 2, b + sum(gamma_day ** 2) / 2)``
    with the ``Gamma(a, b)`` prior of ``tau_day`` (shape, rate).
    """

    name = "precision_gibbs"

    stats_dtypes_shapes = {"tune": (bool, [])}

    def __init__(self, var="tau_day", *, effects="gamma_day", model=None, rng=None):
        super().__init__([var], model=model, rng=rng)
        self.var = var
        self.effects = effects
        prior = self.model.priors[var]
        self.alpha = prior.alpha
        self.beta = prior.beta

    def step(self, point: PointType) -> tuple[PointType, StatsType]:
        g = np.asarray(point[self.effects])
        shape = self.alpha + 0.5 * g.size
        rate = self.beta + 0.5 * np.sum(g**2)
        tau = self.rng.gamma(shape, 1.0 / rate)
        return {**point, self.var: np.asarray(tau, dtype="float64")}, [{"tune": self.tune}]


class ValidationGibbs(BlockedStep):
    """Exact draw of the latent true-positive counts ``K`` of the validated visits.

    The full conditional of ``K[r]`` is proportional to
    ``Binomial(K | v, tp) * Hypergeometric(k | K, v - K, n)`` on the support
    ``k <= K <= v - n + k``, which is enumerated on a padded grid.
    """

    name = "validation_gibbs"

    stats_dtypes_shapes = {"tune": (bool, [])}

    def __init__(self, var="K", *, model=None, rng=None):
        super().__init__([var], model=model, rng=rng)
        self.var = var
        data = self.model.data
        lower, upper = data.K_bounds()
        width = int(np.max(upper - lower)) + 1 if len(lower) else 1
        self.grid = lower[:, None] + np.arange(width)[None, :]
        self.in_support = self.grid <= upper[:, None]

    def step(self, point: PointType) -> tuple[PointType, StatsType]:
        data = self.model.data
        validation = data.validation
        v = data.val_v[:, None]
        grid = np.where(self.in_support, self.grid, validation.k[:, None])
        logit_tp = loglik.logit_true_positive_rate(self.model, point)[:, None]
        with np.errstate(divide="ignore", invalid="ignore"):
            logp = binomial_logit_logp(grid, v, logit_tp) + hypergeometric_logp(
                validation.k[:, None], grid, v - grid, validation.n[:, None]
            )
        logp = np.where(self.in_support, logp, -np.inf)
        idx = categorical(logp, self.rng)
        K = self.grid[np.arange(len(idx)), idx].astype("int64")
        return {**point, self.var: K}, [{"tune": self.tune}]
