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
"""Log-likelihood of the acoustic / point-count N-mixture model.

Every function takes the model and a point (a dict mapping parameter names
to their values on the constrained scale) and returns per-observation
arrays. Parameters of disabled model parts are absent from the point and
take their neutral value (no covariate effect, no day effect, no
dispersion). Out-of-support arguments give ``-inf``, never an exception.

The ``N`` and ``K`` keywords evaluate the terms at a proposed abundance or
true-positive vector instead of the one stored in the point.
"""

import numpy as np

from abundmc.distributions.discrete import (
    bernoulli_logit_logp,
    binomial_logit_logp,
    hypergeometric_logp,
    poisson_logp,
    zero_truncated_poisson_logp,
)
from abundmc.math import invlogit, logit

__all__ = [
    "log_lambda",
    "logit_p_acoustic",
    "log_delta",
    "vocal_rate",
    "logit_true_positive_rate",
    "true_positive_rate",
    "logit_p_count",
    "abundance_logp",
    "acoustic_logp",
    "vocal_logp",
    "count_logp",
    "validation_logp",
    "LAYERS",
    "layer_logps",
    "model_loglik",
    "site_logp",
    "day_logp",
]

NEUTRAL_VALUES = {
    "alpha2": 0.0,
    "gamma1": 0.0,
    "gamma_day": 0.0,
    "phi": 1.0,
}


def param_value(point, name):
    """Value of ``name`` in ``point``, or its neutral value when the parameter is disabled."""
    try:
        return point[name]
    except KeyError:
        return NEUTRAL_VALUES[name]


def _abundance(model, point, N):
    if N is None:
        N = point["N"]
    return np.asarray(N)


def true_positive_counts(model, point, K=None):
    """Latent ``K`` of the point, else the observed one."""
    if K is not None:
        return np.asarray(K)
    if "K" in point:
        return np.asarray(point["K"])
    return model.data.validation.K


def log_lambda(model, point):
    """Log expected abundance per site, ``beta0 + beta1 * x_lambda``."""
    return point["beta0"] + point["beta1"] * model.data.x_lambda


def logit_p_acoustic(model, point, N=None):
    """Logit of the hurdle detection probability per acoustic visit."""
    acoustic = model.data.acoustic
    N = _abundance(model, point, N)
    alpha0 = logit(point["mu_alpha"])
    return alpha0 + point["alpha1"] * N[acoustic.site] + param_value(point, "alpha2") * acoustic.x_alpha


def log_delta(model, point):
    """Log of the per-individual true vocalization rate per acoustic visit."""
    acoustic = model.data.acoustic
    gamma_day = np.asarray(param_value(point, "gamma_day"))
    day_effect = gamma_day[acoustic.day] if gamma_day.ndim else gamma_day
    return point["gamma0"] + param_value(point, "gamma1") * acoustic.x_delta + day_effect


def vocal_rate(model, point, N=None):
    """Vocalization rate ``(delta * N + omega) * phi`` per acoustic visit."""
    acoustic = model.data.acoustic
    N = _abundance(model, point, N)[acoustic.site]
    with np.errstate(over="ignore", invalid="ignore"):
        # an empty site emits no true vocalizations even when delta overflows
        delta_n = np.where(N > 0, np.exp(log_delta(model, point)) * N, 0.0)
        return (delta_n + point["omega"]) * param_value(point, "phi")


def logit_true_positive_rate(model, point, N=None):
    """Logit of ``delta * N / (delta * N + omega)`` per validation row."""
    data = model.data
    visit = data.validation.visit
    N = _abundance(model, point, N)[data.val_site]
    with np.errstate(divide="ignore", invalid="ignore"):
        res = log_delta(model, point)[visit] + np.log(N) - np.log(point["omega"])
    return np.where(N > 0, res, -np.inf)


def true_positive_rate(model, point, N=None):
    return invlogit(logit_true_positive_rate(model, point, N))


def logit_p_count(model, point):
    """Logit of the point-count detection probability per count visit."""
    return logit(point["mu_phi"]) + point["phi1"] * model.data.counts.x_phi


def abundance_logp(model, point, N=None):
    """``Poisson(N | lambda)`` per site."""
    return poisson_logp(_abundance(model, point, N), log_lambda(model, point))


def acoustic_logp(model, point, N=None):
    """Bernoulli-logit log-mass of the hurdle indicators per acoustic visit."""
    return bernoulli_logit_logp(model.data.acoustic.y, logit_p_acoustic(model, point, N))


def vocal_logp(model, point, N=None):
    """Zero-truncated Poisson log-mass of ``v`` per acoustic visit, 0 where ``y == 0``."""
    acoustic = model.data.acoustic
    out = np.zeros(len(acoustic))
    detected = acoustic.detected
    if detected.any():
        mu = np.broadcast_to(vocal_rate(model, point, N), out.shape)[detected]
        out[detected] = zero_truncated_poisson_logp(acoustic.v[detected], mu)
    return out


def count_logp(model, point, N=None):
    """``Binomial(c | N, p)`` per count visit."""
    counts = model.data.counts
    N = _abundance(model, point, N)
    return binomial_logit_logp(counts.c, N[counts.site], logit_p_count(model, point))


def validation_logp(model, point, N=None, K=None):
    """Two-stage validation log-mass per validation row.

    ``K ~ Binomial(v, tp)`` true positives among the recorded vocalizations,
    then ``k ~ Hypergeometric(K, v - K, n)`` confirmed among the ``n``
    inspected ones.
    """
    data = model.data
    validation = data.validation
    if len(validation) == 0:
        return np.zeros(0)
    K = true_positive_counts(model, point, K)
    v = data.val_v
    return binomial_logit_logp(
        K, v, logit_true_positive_rate(model, point, N)
    ) + hypergeometric_logp(validation.k, K, v - K, validation.n)


LAYERS = {
    "abundance": abundance_logp,
    "acoustic": acoustic_logp,
    "vocal": vocal_logp,
    "count": count_logp,
    "validation": validation_logp,
}


def layer_logps(model, point) -> dict[str, float]:
    """Summed log-likelihood contribution of every enabled layer."""
    return {
        name: float(np.sum(LAYERS[name](model, point))) for name in model.config.active_layers
    }


def model_loglik(model, point) -> float:
    return sum(layer_logps(model, point).values())


def site_logp(model, point, N=None):
    """Per-site sum of every enabled term that references ``N[i]``."""
    data = model.data
    layers = model.config.active_layers
    n_sites = data.n_sites
    res = np.zeros(n_sites)
    if "abundance" in layers:
        res += abundance_logp(model, point, N)
    if "acoustic" in layers:
        res += np.bincount(data.acoustic.site, acoustic_logp(model, point, N), minlength=n_sites)
    if "vocal" in layers:
        res += np.bincount(data.acoustic.site, vocal_logp(model, point, N), minlength=n_sites)
    if "count" in layers:
        res += np.bincount(data.counts.site, count_logp(model, point, N), minlength=n_sites)
    if "validation" in layers and len(data.validation):
        res += np.bincount(data.val_site, validation_logp(model, point, N), minlength=n_sites)
    return res


def day_logp(model, point):
    """Per-day sum of the likelihood terms that reference ``gamma_day[d]``."""
    data = model.data
    layers = model.config.active_layers
    n_days = data.n_days
    res = np.zeros(n_days)
    if "vocal" in layers:
        res += np.bincount(data.acoustic.day, vocal_logp(model, point), minlength=n_days)
    if "validation" in layers and len(data.validation):
        val_day = data.acoustic.day[data.validation.visit]
        res += np.bincount(val_day, validation_logp(model, point), minlength=n_days)
    return res
