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

"""Step methods of the sampler and the fixed-order sweep built from them."""

import logging

from abundmc.exceptions import ConfigurationError
from abundmc.model import SWEEP_ORDER, modelcontext
from abundmc.step_methods.compound import BlockedStep, CompoundStep, flatten_steps
from abundmc.step_methods.gibbs import DayEffectGibbs, PrecisionGibbs, ValidationGibbs
from abundmc.step_methods.metropolis import (
    AbundanceMetropolis,
    ElemwiseMetropolis,
    Metropolis,
    metrop_select,
    tune,
)

__all__ = [
    "BlockedStep",
    "CompoundStep",
    "flatten_steps",
    "Metropolis",
    "ElemwiseMetropolis",
    "AbundanceMetropolis",
    "DayEffectGibbs",
    "PrecisionGibbs",
    "ValidationGibbs",
    "metrop_select",
    "tune",
    "assign_step_methods",
    "TUNABLE_VARS",
]

_log = logging.getLogger(__name__)

GIBBS_STEPS = {
    "N": AbundanceMetropolis,
    "gamma_day": DayEffectGibbs,
    "tau_day": PrecisionGibbs,
    "K": ValidationGibbs,
}

# Blocks whose proposal scale is set by `scaling` and adapted during tuning
TUNABLE_VARS = tuple(name for name in SWEEP_ORDER if name not in GIBBS_STEPS)


def assign_step_methods(model=None, *, scaling=None, tune_interval=100, rng=None) -> CompoundStep:
    """Build the sweep over every free variable of the model.

    Blocks are visited in the fixed order
    N, beta0, beta1, mu_alpha, alpha1, alpha2, gamma0, gamma1, gamma_day,
    tau_day, omega, a_phi, phi, K, mu_phi, phi1; blocks of disabled or fixed
    parameters are skipped.

    Parameters
    ----------
    model: Model, optional
        Defaults to the model on the context stack.
    scaling: dict, optional
        Initial proposal standard deviation (unconstrained scale) per
        Metropolis block, e.g. ``{"beta0": 0.1}``. Defaults to 1.
    tune_interval: int
        Number of sweeps between step-size adaptations.
    rng: RandomGenerator
        Random stream shared by all blocks.
    """
    model = modelcontext(model)
    scaling = {} if scaling is None else dict(scaling)
    if tune_interval < 1:
        raise ConfigurationError(f"tune_interval must be >= 1, got {tune_interval}")
    tunable = [name for name in model.free_vars if name in TUNABLE_VARS]
    unknown = set(scaling) - set(tunable)
    if unknown:
        raise ConfigurationError(
            f"Cannot set the proposal scale of {sorted(unknown)}. Tunable blocks are {tunable}"
        )
    for name, value in scaling.items():
        if not value > 0:
            raise ConfigurationError(f"Proposal scale of {name} must be positive, got {value}")

    methods = []
    for name in model.free_vars:
        if name in GIBBS_STEPS:
            methods.append(GIBBS_STEPS[name](name, model=model, rng=rng))
        elif name == "phi":
            methods.append(
                ElemwiseMetropolis(
                    name,
                    scaling=scaling.get(name, 1.0),
                    tune_interval=tune_interval,
                    model=model,
                    rng=rng,
                )
            )
        else:
            methods.append(
                Metropolis(
                    name,
                    scaling=scaling.get(name, 1.0),
                    tune_interval=tune_interval,
                    model=model,
                    rng=rng,
                )
            )
    if not methods:
        raise ValueError("No free random variables to sample.")
    step = CompoundStep(methods)
    if rng is not None:
        step.set_rng(rng)
    return step
