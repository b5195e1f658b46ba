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
import dataclasses
import enum
import logging

from collections.abc import Sequence
from typing import Any

import arviz
import numpy as np

from abundmc.backends.base import MultiTrace
from abundmc.backends.ndarray import NDArray

__all__ = [
    "WarningType",
    "SamplerWarning",
    "run_convergence_checks",
    "acceptance_rates",
    "warn_acceptance",
    "log_warning",
    "log_warnings",
]

_LEVELS = {
    "info": logging.INFO,
    "error": logging.ERROR,
    "warn": logging.WARN,
    "debug": logging.DEBUG,
    "critical": logging.CRITICAL,
}

logger = logging.getLogger(__name__)


@enum.unique
class WarningType(enum.Enum):
    # Problematic sampler parameters
    BAD_PARAMS = 5
    # Indications that chains did not converge, eg Rhat
    CONVERGENCE = 6
    BAD_ACCEPTANCE = 7


@dataclasses.dataclass
class SamplerWarning:
    kind: WarningType
    message: str
    level: str
    step: int | None = None
    exec_info: Any | None = None
    extra: Any | None = None


def run_convergence_checks(idata: arviz.InferenceData, model) -> list[SamplerWarning]:
    if not hasattr(idata, "posterior"):
        msg = "No posterior samples. Unable to run convergence checks"
        warn = SamplerWarning(WarningType.BAD_PARAMS, msg, "info", None, None, None)
        return [warn]

    if idata["posterior"].sizes["draw"] < 100:
        msg = "The number of samples is too small to check convergence reliably."
        warn = SamplerWarning(WarningType.BAD_PARAMS, msg, "info", None, None, None)
        return [warn]

    if idata["posterior"].sizes["chain"] == 1:
        msg = "Only one chain was sampled, this makes it impossible to run some convergence checks"
        warn = SamplerWarning(WarningType.BAD_PARAMS, msg, "info")
        return [warn]

    elif idata["posterior"].sizes["chain"] < 4:
        msg = (
            "We recommend running at least 4 chains for robust computation of "
            "convergence diagnostics"
        )
        warn = SamplerWarning(WarningType.BAD_PARAMS, msg, "info")
        return [warn]

    varnames = [name for name in model.free_vars if name in idata["posterior"]]

    ess = arviz.ess(idata, var_names=varnames)
    rhat = arviz.rhat(idata, var_names=varnames)

    warnings = []
    rhat_max = max(float(val.max()) for val in rhat.values())
    if rhat_max > 1.01:
        msg = (
            "The rhat statistic is larger than 1.01 for some "
            "parameters. This indicates problems during sampling. "
            "See https://arxiv.org/abs/1903.08008 for details"
        )
        warn = SamplerWarning(WarningType.CONVERGENCE, msg, "info", extra=rhat)
        warnings.append(warn)

    eff_min = min(float(val.min()) for val in ess.values())
    eff_per_chain = eff_min / idata["posterior"].sizes["chain"]
    if eff_per_chain < 100:
        msg = (
            "The effective sample size per chain is smaller than 100 for some parameters. "
            " A higher number is needed for reliable rhat and ess computation. "
            "See https://arxiv.org/abs/1903.08008 for details"
        )
        warn = SamplerWarning(WarningType.CONVERGENCE, msg, "error", extra=ess)
        warnings.append(warn)

    return warnings


def acceptance_rates(trace: NDArray | MultiTrace) -> dict[str, float]:
    """Fraction of accepted proposals of every Metropolis-type block over the retained draws.

    Retained draws all lie after the adaptation window, so the rates
    describe the frozen proposals. Rejections of non-finite proposals are
    counted as rejections.
    """
    straces = trace.straces if isinstance(trace, MultiTrace) else [trace]
    first = straces[0]
    if first.sampler_vars is None:
        return {}
    names = first.sampler_names or [f"sampler_{s}" for s in range(len(first.sampler_vars))]
    rates = {}
    for s, (name, stats) in enumerate(zip(names, first.sampler_vars)):
        if "accepted" not in stats:
            continue
        values = np.concatenate([t.get_sampler_stats("accepted", s) for t in straces])
        if len(values):
            rates[name] = float(np.mean(values))
    return rates


def warn_acceptance(
    trace: NDArray | MultiTrace, lower: float = 0.15, upper: float = 0.6, blocks=None
) -> list[SamplerWarning]:
    """Flag blocks whose post-tuning acceptance rate lies outside ``[lower, upper]``.

    ``blocks`` restricts the check, by default to the tuned Metropolis blocks
    (those reporting a ``scaling`` statistic).
    """
    straces = trace.straces if isinstance(trace, MultiTrace) else [trace]
    first = straces[0]
    if blocks is None and first.sampler_vars is not None and first.sampler_names is not None:
        blocks = [
            name
            for name, stats in zip(first.sampler_names, first.sampler_vars)
            if "scaling" in stats
        ]
    warnings = []
    for name, rate in acceptance_rates(trace).items():
        if blocks is not None and name not in blocks:
            continue
        if not lower <= rate <= upper:
            msg = (
                f"The acceptance rate of the {name} block ({rate:.3f}) lies outside "
                f"[{lower}, {upper}]. Consider a longer tuning phase or a different `scaling`."
            )
            warnings.append(SamplerWarning(WarningType.BAD_ACCEPTANCE, msg, "warn", extra=rate))
    return warnings


def log_warning(warn: SamplerWarning):
    level = _LEVELS.get(warn.level, logging.WARNING)
    logger.log(level, warn.message)


def log_warnings(warnings: Sequence[SamplerWarning]):
    for warn in warnings:
        log_warning(warn)
