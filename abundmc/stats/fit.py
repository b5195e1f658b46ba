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
"""Posterior-predictive goodness of fit.

Every retained draw contributes one observed and one replicated
Freeman-Tukey discrepancy per data layer. The Bayesian p-value of a layer
is the fraction of draws whose replicated discrepancy exceeds the observed
one: values near 0.5 indicate adequate fit, values near 0 or 1 lack of fit.
"""

import numpy as np

from arviz import InferenceData

from abundmc.backends.base import MultiTrace
from abundmc.backends.ndarray import NDArray
from abundmc.distributions.discrete import zero_truncated_poisson_mean
from abundmc.math import invlogit
from abundmc.model import loglik

__all__ = [
    "freeman_tukey",
    "expected_values",
    "fit_names",
    "fit_statistics",
    "bayesian_p_values",
    "FIT_LAYERS",
]

# data layer -> (observed array, replicate key)
FIT_LAYERS = {
    "acoustic": "y",
    "vocal": "v",
    "count": "c",
}


def freeman_tukey(observed, expected):
    """Elementwise Freeman-Tukey discrepancy ``(sqrt(o) - sqrt(e)) ** 2``."""
    return (np.sqrt(observed) - np.sqrt(expected)) ** 2


def fit_names(model) -> list[str]:
    """Names of the fit statistics recorded for the enabled layers."""
    names = []
    for layer, key in FIT_LAYERS.items():
        if getattr(model.config, layer):
            names += [f"fit_{key}", f"fit_{key}_pred"]
    return names


def expected_values(model, point) -> dict[str, np.ndarray]:
    """Expected value of every observation under ``point``.

    ``p_a`` for the hurdle indicators, the zero-truncated Poisson mean
    ``mu / (1 - exp(-mu))`` for the vocalization counts at detected visits
    and ``N * p`` for the point counts.
    """
    config = model.config
    data = model.data
    out = {}
    if config.acoustic:
        out["y"] = invlogit(loglik.logit_p_acoustic(model, point))
    if config.vocal:
        mu = np.broadcast_to(loglik.vocal_rate(model, point), data.acoustic.y.shape)
        out["v"] = zero_truncated_poisson_mean(mu[data.acoustic.detected])
    if config.count:
        N = np.asarray(point["N"])[data.counts.site]
        out["c"] = N * invlogit(loglik.logit_p_count(model, point))
    return out


def fit_statistics(model, point, replicate) -> dict[str, float]:
    """Observed and replicated Freeman-Tukey discrepancy of every enabled layer.

    Parameters
    ----------
    model: Model
    point: dict
        Parameter values of the draw.
    replicate: dict
        Replicated data of the same draw, from
        :func:`~abundmc.sampling.forward.draw_replicates`.
    """
    data = model.data
    expected = expected_values(model, point)
    observed = {
        "y": data.acoustic.y,
        "v": data.acoustic.v[data.acoustic.detected],
        "c": data.counts.c,
    }
    replicated = {
        "y": replicate.get("y_pred"),
        "v": None if "v_pred" not in replicate else replicate["v_pred"][data.acoustic.detected],
        "c": replicate.get("c_pred"),
    }
    out = {}
    for key, exp in expected.items():
        out[f"fit_{key}"] = float(np.sum(freeman_tukey(observed[key], exp)))
        out[f"fit_{key}_pred"] = float(np.sum(freeman_tukey(replicated[key], exp)))
    return out


def bayesian_p_values(source) -> dict[str, float]:
    """Bayesian p-value per data layer, ``P(fit_pred > fit)`` over the retained draws.

    Parameters
    ----------
    source: InferenceData, MultiTrace or NDArray
        Sampling results with recorded fit statistics.

    Returns
    -------
    dict mapping ``"y"``, ``"v"`` and ``"c"`` (for the enabled layers) to their p-value.
    """
    if isinstance(source, InferenceData):
        if not hasattr(source, "posterior_predictive"):
            raise ValueError("No fit statistics in the InferenceData (posterior_predictive group)")
        group = source["posterior_predictive"]

        def values(name):
            return np.asarray(group[name]).ravel() if name in group else None

    elif isinstance(source, MultiTrace | NDArray):

        def values(name):
            return source.get_fit_values(name) if name in source.fit_names else None

    else:
        raise TypeError(f"Cannot compute p-values from {type(source)}")

    p_values = {}
    for key in FIT_LAYERS.values():
        fit = values(f"fit_{key}")
        fit_pred = values(f"fit_{key}_pred")
        if fit is None or fit_pred is None or not len(fit):
            continue
        p_values[key] = float(np.mean(fit_pred > fit))
    return p_values
