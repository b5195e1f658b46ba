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
"""Base classes of the step methods and their composition into a sweep."""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

import numpy as np

from typing_extensions import TypeAlias

from abundmc.model import modelcontext
from abundmc.util import RandomGenerator, get_random_generator

__all__ = ("BlockedStep", "CompoundStep", "flatten_steps")

StatDtype: TypeAlias = type | np.dtype
StatShape: TypeAlias = Sequence[int | None] | None
PointType: TypeAlias = dict[str, np.ndarray]
StatsDict: TypeAlias = dict[str, Any]
StatsType: TypeAlias = list[StatsDict]


class BlockedStep(ABC):
    """Update of one block of the chain state.

    Subclasses implement :meth:`step`, which receives the current point and
    returns the updated point (a new dict, the input is never mutated) and a
    list with one dict of sampler statistics.
    """

    name = "blocked"

    stats_dtypes_shapes: dict[str, tuple[StatDtype, StatShape]] = {}
    """Maps stat names to dtypes and shapes.

    Shapes are interpreted in the following ways:
    - `[]` is a scalar.
    - `[3,]` is a length-3 vector.
    """

    vars: list[str] = []
    """Names of the variables that the step method is assigned to."""

    def __init__(self, vars, model=None, rng: RandomGenerator = None):
        self.model = modelcontext(model)
        if isinstance(vars, str):
            vars = [vars]
        if len(vars) == 0:
            raise ValueError("No free random variables to sample.")
        missing = [var for var in vars if var not in self.model.free_vars]
        if missing:
            raise ValueError(f"{missing} are not free variables of the model")
        self.vars = list(vars)
        self.tune = True
        self.rng = get_random_generator(rng)

    @abstractmethod
    def step(self, point: PointType) -> tuple[PointType, StatsType]:
        """Perform a single step of the sampler."""

    def set_rng(self, rng: RandomGenerator):
        self.rng = get_random_generator(rng, copy=False)

    def stop_tuning(self):
        if hasattr(self, "tune"):
            self.tune = False

    def reset_tuning(self):
        """Reset the tuned sampler parameters to their initial values."""
        for attr, initial_value in getattr(self, "_untuned_settings", {}).items():
            setattr(self, attr, np.copy(initial_value))
        self.tune = True

    def __repr__(self):
        return f"{type(self).__name__}({', '.join(self.vars)})"


class CompoundStep:
    """Step method composed of a list of several other step methods applied in sequence.

    Every method sees the values already updated by the methods before it in
    the same sweep.
    """

    def __init__(self, methods):
        self.methods = list(methods)
        self.name = f"Compound[{', '.join(getattr(m, 'name', 'UNNAMED_STEP') for m in self.methods)}]"
        self.tune = True

    def step(self, point: PointType) -> tuple[PointType, StatsType]:
        stats = []
        for method in self.methods:
            point, sts = method.step(point)
            stats.extend(sts)
        return point, stats

    def stop_tuning(self):
        for method in self.methods:
            method.stop_tuning()
        self.tune = False

    def reset_tuning(self):
        for method in self.methods:
            method.reset_tuning()
        self.tune = True

    def set_rng(self, rng: RandomGenerator):
        # One stream per chain shared by all blocks in their fixed order
        rng = get_random_generator(rng, copy=False)
        for method in self.methods:
            method.set_rng(rng)

    @property
    def vars(self) -> list[str]:
        return [var for method in self.methods for var in method.vars]

    def __repr__(self):
        return f"CompoundStep({', '.join(repr(m) for m in self.methods)})"


def flatten_steps(step: BlockedStep | CompoundStep) -> list[BlockedStep]:
    """Flatten a hierarchy of step methods to a list."""
    if isinstance(step, BlockedStep):
        return [step]
    steps = []
    if not isinstance(step, CompoundStep):
        raise ValueError(f"Unexpected type of step method: {step}")
    for sm in step.methods:
        steps += flatten_steps(sm)
    return steps
