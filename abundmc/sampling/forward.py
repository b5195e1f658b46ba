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
"""Forward simulation from the generative model.

Replicated datasets for the posterior-predictive checks, complete synthetic
surveys with their true latent state, and prior-predictive draws.
"""

import logging

import numpy as np

from arviz import InferenceData
from arviz.data.base import dict_to_dataset

import abundmc

from abundmc.backends.arviz import DIMS, _coords
from abundmc.data import AcousticVisits, CountVisits, DataStore, RaggedIndex, ValidationTable
from abundmc.distributions.discrete import zero_truncated_poisson_random
from abundmc.math import invlogit, logit
from abundmc.model import Model, ModelConfig, loglik, modelcontext
from abundmc.model.core import MAX_LOG_RATE
from abundmc.util import RandomGenerator, get_random_generator

__all__ = [
    "DEFAULT_PARAMS",
    "draw_replicates",
    "simulate_dataset",
    "sample_prior_predictive",
]

_log = logging.getLogger(__name__)

DEFAULT_PARAMS = {
    "beta0": 0.5,
    "beta1": 0.2,
    "mu_alpha": 0.3,
    "alpha1": 0.1,
    "alpha2": 0.0,
    "gamma0": 0.0,
    "gamma1": 0.0,
    "omega": 0.5,
    "tau_day": 1.0,
    "a_phi": 10.0,
    "mu_phi": 0.5,
    "phi1": 0.0,
}

_MAX_RATE = np.exp(MAX_LOG_RATE)


def draw_replicates(model, point, rng: np.random.Generator, condition_on_observed=True):
    """Draw one replicated dataset from the current parameters.

    Returns a dict with ``y_pred`` (hurdle indicators), ``v_pred``
    (zero-truncated Poisson vocalization counts, 0 at visits without
    detection) and ``c_pred`` (point counts), for the enabled layers.

    With ``condition_on_observed`` the vocalization counts are replicated at
    the visits where a detection was observed, the set the observed
    discrepancy is computed over; otherwise at the replicated detections.
    """
    config = model.config
    data = model.data
    out = {}
    y_pred = None
    if config.acoustic:
        p_a = invlogit(loglik.logit_p_acoustic(model, point))
        y_pred = (rng.uniform(size=p_a.shape) < p_a).astype("int64")
        out["y_pred"] = y_pred
    if config.vocal:
        if condition_on_observed or y_pred is None:
            detected = data.acoustic.detected
        else:
            detected = y_pred == 1
        mu = np.broadcast_to(loglik.vocal_rate(model, point), detected.shape)
        v_pred = np.zeros(detected.shape, dtype="int64")
        v_pred[detected] = zero_truncated_poisson_random(np.minimum(mu[detected], _MAX_RATE), rng)
        out["v_pred"] = v_pred
    if config.count:
        N = np.asarray(point["N"])[data.counts.site]
        p = invlogit(loglik.logit_p_count(model, point))
        out["c_pred"] = rng.binomial(N, p).astype("int64")
    return out


def simulate_dataset(
    n_sites: int | None = None,
    *,
    N=None,
    J=4,
    n_count=3,
    params: dict | None = None,
    config: ModelConfig | None = None,
    x_lambda=None,
    n_days: int = 1,
    validated_fraction: float = 0.5,
    inspected_fraction: float = 0.5,
    observe_K: bool = False,
    random_seed: RandomGenerator = None,
) -> tuple[DataStore, dict[str, np.ndarray]]:
    """Simulate a complete survey from the generative model.

    Parameters
    ----------
    n_sites: int, optional
        Number of sites; inferred from ``N`` or ``x_lambda`` when omitted.
    N: array of int, optional
        True abundance per site. Drawn from ``Poisson(lambda)`` when omitted.
    J, n_count: int or array of int
        Acoustic and point-count visits per site.
    params: dict
        Parameter values overriding :data:`DEFAULT_PARAMS`.
    config: ModelConfig
        Variant whose covariates, random effects and layers are simulated.
    x_lambda: array, optional
        Abundance covariate. Standard Normal draws when omitted.
    n_days: int
        Number of levels of the day random effect.
    validated_fraction: float
        Probability that a visit with a detection is validated.
    inspected_fraction: float
        Share of a validated visit's vocalizations that is inspected (at least one).
    observe_K: bool
        Whether the validation table reports the true ``K``.

    Returns
    -------
    data: DataStore
    truth: dict
        Parameter values and the true latent state (``N``, ``gamma_day``,
        ``phi``, ``K``).
    """
    rng = get_random_generator(random_seed)
    config = ModelConfig() if config is None else config
    params = {**DEFAULT_PARAMS, **(params or {})}
    unknown = set(params) - set(DEFAULT_PARAMS)
    if unknown:
        raise ValueError(f"Unknown parameters {sorted(unknown)}")

    if n_sites is None:
        if N is not None:
            n_sites = len(N)
        elif x_lambda is not None:
            n_sites = len(x_lambda)
        else:
            raise ValueError("One of n_sites, N or x_lambda is required")
    x_lambda = rng.normal(size=n_sites) if x_lambda is None else np.asarray(x_lambda, dtype=float)
    if N is None:
        log_lam = np.minimum(params["beta0"] + params["beta1"] * x_lambda, MAX_LOG_RATE)
        N = rng.poisson(np.exp(log_lam))
    N = np.asarray(N, dtype="int64")
    if N.shape != (n_sites,) or x_lambda.shape != (n_sites,):
        raise ValueError(f"N and x_lambda must have {n_sites} entries")

    index = RaggedIndex(np.broadcast_to(J, (n_sites,)))
    n_acoustic = index.size
    site = index.group
    x_alpha = rng.normal(size=n_acoustic) if config.alpha2 else np.zeros(n_acoustic)
    x_delta = rng.normal(size=n_acoustic) if config.gamma1 else np.zeros(n_acoustic)
    if config.day_effect:
        day = rng.integers(n_days, size=n_acoustic)
        gamma_day = rng.normal(0.0, 1.0 / np.sqrt(params["tau_day"]), size=n_days)
    else:
        n_days = 1
        day = np.zeros(n_acoustic, dtype="int64")
        gamma_day = np.zeros(1)
    if config.dispersion:
        phi = rng.gamma(params["a_phi"], 1.0 / params["a_phi"], size=n_acoustic)
    else:
        phi = np.ones(n_acoustic)

    logit_p = (
        logit(params["mu_alpha"]) + params["alpha1"] * N[site] + params["alpha2"] * x_alpha
    )
    y = (rng.uniform(size=n_acoustic) < invlogit(logit_p)).astype("int64")
    log_delta = params["gamma0"] + params["gamma1"] * x_delta + gamma_day[day]
    delta_n = np.exp(log_delta) * N[site]
    mu = (delta_n + params["omega"]) * phi
    v = np.zeros(n_acoustic, dtype="int64")
    detected = y == 1
    v[detected] = zero_truncated_poisson_random(np.minimum(mu[detected], _MAX_RATE), rng)
    acoustic = AcousticVisits(index, y=y, v=v, x_alpha=x_alpha, x_delta=x_delta, day=day)

    counts = None
    if config.count:
        count_index = RaggedIndex(np.broadcast_to(n_count, (n_sites,)))
        x_phi = rng.normal(size=count_index.size) if params["phi1"] != 0 else np.zeros(count_index.size)
        p = invlogit(logit(params["mu_phi"]) + params["phi1"] * x_phi)
        c = rng.binomial(N[count_index.group], p)
        counts = CountVisits(count_index, c=c, x_phi=x_phi)

    validation = None
    K_true = np.zeros(0, dtype="int64")
    if config.validation:
        visit = np.flatnonzero(detected & (rng.uniform(size=n_acoustic) < validated_fraction))
        tp = delta_n[visit] / (delta_n[visit] + params["omega"])
        K_true = rng.binomial(v[visit], tp)
        n = np.clip(np.round(inspected_fraction * v[visit]), 1, v[visit]).astype("int64")
        k = np.array(
            [rng.hypergeometric(K, vv - K, nn) for K, vv, nn in zip(K_true, v[visit], n)],
            dtype="int64",
        )
        validation = ValidationTable(visit=visit, k=k, n=n, K=K_true if observe_K else None)

    data = DataStore(
        x_lambda=x_lambda,
        acoustic=acoustic,
        counts=counts,
        validation=validation,
        n_days=n_days,
    )
    truth = {
        **params,
        "alpha0": logit(params["mu_alpha"]),
        "phi0": logit(params["mu_phi"]),
        "N": N,
        "gamma_day": gamma_day,
        "phi": phi,
        "K": K_true,
    }
    return data, truth


def sample_prior_predictive(
    draws: int = 500,
    model: Model | None = None,
    random_seed: RandomGenerator = None,
    return_inferencedata: bool = True,
) -> InferenceData | dict[str, np.ndarray]:
    """Generate samples from the prior predictive distribution.

    Parameters
    ----------
    draws : int
        Number of samples from the prior predictive to generate. Defaults to 500.
    model : Model (optional if in ``with`` context)
    random_seed : int, RandomState or Generator, optional
        Seed for the random number generator.
    return_inferencedata : bool
        Whether to return an :class:`arviz:arviz.InferenceData` (True) object or a dictionary (False).
        Defaults to True.

    Returns
    -------
    arviz.InferenceData or Dict
        The ``prior`` (parameters and latent state) and ``prior_predictive``
        (replicated ``y``, ``v`` and ``c``) groups, or one dict holding both.
    """
    model = modelcontext(model)
    rng = get_random_generator(random_seed)

    names = model.vars + model.deterministic_names
    _log.info(f"Sampling: {names}")
    prior = {name: [] for name in names}
    predictive = {}
    for _ in range(draws):
        point = model.draw_prior_point(rng)
        point.update(model.deterministics(point))
        for name in names:
            prior[name].append(point[name])
        for key, value in draw_replicates(model, point, rng, condition_on_observed=False).items():
            predictive.setdefault(key[: -len("_pred")], []).append(value)

    prior = {name: np.stack(values) for name, values in prior.items()}
    predictive = {name: np.stack(values) for name, values in predictive.items()}
    if not return_inferencedata:
        return {**prior, **predictive}

    coords = _coords(model)
    return InferenceData(
        prior=dict_to_dataset(
            {name: value[None] for name, value in prior.items()},
            library=abundmc,
            coords=coords,
            dims=DIMS,
        ),
        prior_predictive=dict_to_dataset(
            {name: value[None] for name, value in predictive.items()},
            library=abundmc,
            coords=coords,
            dims=DIMS,
        ),
    )
