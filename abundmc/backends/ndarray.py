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
"""NumPy array trace backend

Store retained draws in memory as preallocated NumPy arrays and keep
running summaries of every variable.
"""

from typing import Any

import numpy as np
import pandas as pd

from abundmc.model import modelcontext

__all__ = ["NDArray", "RunningMoments", "element_names"]


class RunningMoments:
    """Welford accumulator of the elementwise mean and variance of a stream of arrays."""

    def __init__(self, shape=()):
        self.count = 0
        self.mean = np.zeros(shape)
        self._m2 = np.zeros(shape)

    def update(self, value):
        value = np.asarray(value, dtype="float64")
        self.count += 1
        delta = value - self.mean
        self.mean = self.mean + delta / self.count
        self._m2 = self._m2 + delta * (value - self.mean)

    def combine(self, other: "RunningMoments") -> "RunningMoments":
        """Pooled moments of two streams (Chan et al.)."""
        out = RunningMoments(np.shape(self.mean))
        out.count = self.count + other.count
        if out.count == 0:
            return out
        delta = other.mean - self.mean
        out.mean = self.mean + delta * other.count / out.count
        out._m2 = self._m2 + other._m2 + delta**2 * self.count * other.count / out.count
        return out

    @property
    def variance(self):
        """Sample variance (``ddof=1``); NaN with fewer than two values."""
        if self.count < 2:
            return np.full(np.shape(self.mean), np.nan)
        return self._m2 / (self.count - 1)


def element_names(varname, shape) -> list[str]:
    """Row labels of the elements of a variable, e.g. ``N[0]``, ``N[1]``."""
    if not shape:
        return [varname]
    return [f"{varname}[{','.join(map(str, idx))}]" for idx in np.ndindex(*shape)]


class NDArray:
    """NDArray trace object

    Parameters
    ----------
    model: Model
        If None, the model is taken from the `with` context.
    vars: list of str
        Sampling values will be stored for these variables. If None,
        ``model.trace_vars`` (free variables and deterministics) is used.
    fit_names: list of str
        Names of the per-draw posterior-predictive fit statistics to store.
    """

    supports_sampler_stats = True

    def __init__(self, model=None, vars=None, fit_names=None):
        self.model = modelcontext(model)
        self.varnames = list(self.model.trace_vars if vars is None else vars)
        self.var_shapes = {name: self.model.shape(name) for name in self.varnames}
        self.var_dtypes = {name: self.model.dtype(name) for name in self.varnames}
        self.fit_names = list(fit_names or [])
        self.chain = None
        self.draw_idx = 0
        self.draws = None
        self.samples: dict[str, np.ndarray] = {}
        self.fit: dict[str, np.ndarray] = {}
        self.sampler_vars = None
        self.sampler_names = None
        self._stats = None
        self.moments = {name: RunningMoments(shape) for name, shape in self.var_shapes.items()}

    # Sampling methods

    def setup(self, draws, chain, sampler_vars=None, sampler_names=None) -> None:
        """Perform chain-specific setup.

        Parameters
        ----------
        draws: int
            Expected number of retained draws
        chain: int
            Chain number
        sampler_vars: list of dicts
            Names and dtypes of the variables that are
            exported by the samplers.
        sampler_names: list of str
            Block updated by each sampler, used to label its statistics.
        """
        self.chain = chain
        self.sampler_names = sampler_names
        self.draws = draws
        self.draw_idx = 0
        for varname, shape in self.var_shapes.items():
            self.samples[varname] = np.zeros((draws,) + shape, dtype=self.var_dtypes[varname])
        for name in self.fit_names:
            self.fit[name] = np.zeros(draws)

        self.sampler_vars = sampler_vars
        if sampler_vars is None:
            return
        self._stats = [
            {varname: np.zeros(draws, dtype=dtype) for varname, dtype in sampler.items()}
            for sampler in sampler_vars
        ]

    def record(self, point, sampler_stats=None, fit_stats=None) -> None:
        """Record one retained sweep.

        Parameters
        ----------
        point: dict
            Values mapped to variable names
        sampler_stats: list of dict
            One dict of statistics per step method
        fit_stats: dict
            Posterior-predictive fit statistics of this draw
        """
        if self.draw_idx >= self.draws:
            raise ValueError(f"Trace of chain {self.chain} is full ({self.draws} draws)")
        values = {**point, **self.model.deterministics(point)}
        for varname in self.varnames:
            value = values[varname]
            self.samples[varname][self.draw_idx] = value
            self.moments[varname].update(value)

        if self._stats is not None and sampler_stats is None:
            raise ValueError("Expected sampler_stats")
        if self._stats is None and sampler_stats is not None:
            raise ValueError("Unknown sampler_stats")
        if sampler_stats is not None:
            for data, vars in zip(self._stats, sampler_stats):
                for key, val in vars.items():
                    data[key][self.draw_idx] = val
        if fit_stats is not None:
            for name in self.fit_names:
                self.fit[name][self.draw_idx] = fit_stats[name]
        self.draw_idx += 1

    def close(self):
        if self.draw_idx == self.draws:
            return
        # Remove trailing zeros if interrupted before completed all
        # draws.
        self.samples = {var: vtrace[: self.draw_idx] for var, vtrace in self.samples.items()}
        self.fit = {name: values[: self.draw_idx] for name, values in self.fit.items()}
        if self._stats is not None:
            self._stats = [
                {var: trace[: self.draw_idx] for var, trace in stats.items()}
                for stats in self._stats
            ]

    # Selection methods

    def __len__(self):
        if not self.samples:  # `setup` has not been called.
            return 0
        return self.draw_idx

    def get_values(self, varname: str, burn=0, thin=1) -> np.ndarray:
        """Get values from trace.

        Parameters
        ----------
        varname: str
        burn: int
        thin: int

        Returns
        -------
        A NumPy array
        """
        return self.samples[varname][: self.draw_idx][burn::thin]

    def get_fit_values(self, name: str) -> np.ndarray:
        return self.fit[name][: self.draw_idx]

    @property
    def stat_names(self) -> list[str]:
        if self._stats is None:
            return []
        return [f"sampler_{s}__{name}" for s, stats in enumerate(self._stats) for name in stats]

    def get_sampler_stats(self, stat_name: str, sampler_idx: int | None = None, burn=0, thin=1):
        """Get sampler statistics from the trace.

        ``stat_name`` is either a flat name (``sampler_0__accepted``) or a
        plain statistic name combined with ``sampler_idx``. With neither a
        prefix nor an index, the values of every sampler emitting the
        statistic are stacked along a second axis.
        """
        if self._stats is None:
            raise KeyError(f"Unknown sampler statistic {stat_name}")
        if stat_name.startswith("sampler_") and "__" in stat_name:
            prefix, stat_name = stat_name.split("__", 1)
            sampler_idx = int(prefix[len("sampler_") :])
        if sampler_idx is not None:
            return self._stats[sampler_idx][stat_name][: self.draw_idx][burn::thin]
        vals = [
            stats[stat_name][: self.draw_idx][burn::thin]
            for stats in self._stats
            if stat_name in stats
        ]
        if not vals:
            raise KeyError(f"Unknown sampler statistic {stat_name}")
        if len(vals) == 1:
            return vals[0]
        return np.stack(vals, axis=-1)

    def point(self, idx) -> dict[str, Any]:
        """Return dictionary of point values at `idx` for current chain
        with variable names as keys.
        """
        idx = int(idx)
        if idx < 0:
            idx += len(self)
        if not 0 <= idx < len(self):
            raise IndexError(f"Draw {idx} out of range for a trace of length {len(self)}")
        return {varname: values[idx] for varname, values in self.samples.items()}

    # Summaries

    def mean(self, varname):
        return self.moments[varname].mean

    def var(self, varname):
        return self.moments[varname].variance

    def quantiles(self, varname, q=(0.025, 0.5, 0.975)) -> np.ndarray:
        """Empirical quantiles of the filled part of the table, along the draw axis."""
        return np.quantile(self.get_values(varname), q, axis=0)

    def summary(self, varnames=None, q=(0.025, 0.5, 0.975)) -> pd.DataFrame:
        """Mean, standard deviation and quantiles of every element of ``varnames``."""
        return _summary_frame(
            varnames or self.varnames,
            self.var_shapes,
            self.moments,
            lambda name: self.get_values(name),
            q,
        )


def _summary_frame(varnames, shapes, moments, values_fn, q):
    rows = []
    for name in varnames:
        values = values_fn(name)
        size = max(1, int(np.prod(shapes[name])))
        if len(values):
            quantiles = np.quantile(values, q, axis=0).reshape(len(q), -1)
        else:
            quantiles = np.full((len(q), size), np.nan)
        if moments[name].count:
            mean = np.ravel(moments[name].mean)
        else:
            mean = np.full(size, np.nan)
        sd = np.ravel(np.sqrt(moments[name].variance))
        for e, label in enumerate(element_names(name, shapes[name])):
            row = {"mean": mean[e], "sd": sd[e]}
            row.update({f"q{100 * qi:g}%": quantiles[j, e] for j, qi in enumerate(q)})
            rows.append((label, row))
    return pd.DataFrame([row for _, row in rows], index=[label for label, _ in rows])
