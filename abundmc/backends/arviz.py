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
"""Conversion of the sampling results to :class:`arviz.InferenceData`."""

import logging

from collections.abc import Mapping
from typing import Any

import numpy as np

from arviz import InferenceData
from arviz.data.base import dict_to_dataset

import abundmc

from abundmc.backends.base import MultiTrace, _choose_chains
from abundmc.model import modelcontext

__all__ = ["to_inference_data", "find_observations", "DIMS"]

_log = logging.getLogger(__name__)

DIMS = {
    "N": ["site"],
    "lambda": ["site"],
    "K": ["validated_visit"],
    "gamma_day": ["day"],
    "phi": ["acoustic_visit"],
    "y": ["acoustic_visit"],
    "v": ["acoustic_visit"],
    "c": ["count_visit"],
    "k": ["validated_visit"],
    "n": ["validated_visit"],
}


def find_observations(model) -> dict[str, np.ndarray]:
    """Observed responses of the enabled data layers."""
    data = model.data
    config = model.config
    observations = {}
    if config.acoustic:
        observations["y"] = data.acoustic.y
    if config.vocal:
        observations["v"] = data.acoustic.v
    if config.count and len(data.counts):
        observations["c"] = data.counts.c
    if config.validation and len(data.validation):
        observations["k"] = data.validation.k
        observations["n"] = data.validation.n
    return observations


def _coords(model) -> dict[str, np.ndarray]:
    data = model.data
    return {
        "site": np.arange(data.n_sites),
        "day": np.arange(data.n_days),
        "acoustic_visit": np.arange(len(data.acoustic)),
        "count_visit": np.arange(len(data.counts)),
        "validated_visit": np.arange(len(data.validation)),
    }


def _stat_label(flat_name, sampler_names):
    prefix, stat = flat_name.split("__", 1)
    if sampler_names is None:
        return flat_name
    return f"{sampler_names[int(prefix[len('sampler_'):])]}_{stat}"


def to_inference_data(
    trace: MultiTrace,
    *,
    model=None,
    attrs: Mapping[str, Any] | None = None,
) -> InferenceData:
    """Convert the traces of a run into an InferenceData object.

    Groups: ``posterior`` (free variables and deterministics),
    ``sample_stats`` (per-block sampler statistics named ``<block>_<stat>``),
    ``posterior_predictive`` (the per-draw fit statistics, when recorded) and
    ``observed_data``. Chains of unequal length, after an interruption, are
    reduced by :func:`~abundmc.backends.base._choose_chains`.
    """
    model = modelcontext(model)
    straces = trace.straces if isinstance(trace, MultiTrace) else list(trace)
    lengths = {len(t) for t in straces}
    if len(lengths) > 1:
        straces, length = _choose_chains(straces)
        _log.warning(f"Chains have unequal lengths; keeping {len(straces)} chains of {length} draws")
    else:
        length = lengths.pop()

    coords = _coords(model)
    attrs = dict(attrs or {})
    attrs.setdefault("model_config", str(model.config))

    first = straces[0]
    posterior = {
        name: np.stack([t.get_values(name)[:length] for t in straces]) for name in first.varnames
    }
    stats = {
        _stat_label(name, first.sampler_names): np.stack(
            [t.get_sampler_stats(name)[:length] for t in straces]
        )
        for name in first.stat_names
    }
    fit = {name: np.stack([t.get_fit_values(name)[:length] for t in straces]) for name in first.fit_names}

    def to_dataset(values, **kwargs):
        return dict_to_dataset(
            values, library=abundmc, coords=coords, dims=DIMS, attrs=attrs, **kwargs
        )

    id_dict = {
        "posterior": to_dataset(posterior),
        "sample_stats": to_dataset(stats),
        "observed_data": to_dataset(find_observations(model), default_dims=[]),
    }
    if fit:
        id_dict["posterior_predictive"] = to_dataset(fit)
    return InferenceData(**id_dict)
