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
"""Aggregation of the traces of several chains."""

from collections.abc import Sequence
from typing import cast

import numpy as np
import pandas as pd

from abundmc.backends.ndarray import NDArray, _summary_frame

__all__ = ["MultiTrace"]


class MultiTrace:
    """Main interface for accessing values from MCMC results.

    The core method to select values is `get_values`. The method
    to select sampler statistics is `get_sampler_stats`. Indexing with a
    variable name returns the values of all chains concatenated, indexing
    with an integer returns the point at that draw of the last chain.

    Attributes
    ----------
    nchains: int
        Number of chains in the `MultiTrace`.
    chains: `List[int]`
        List of chain indices
    varnames: `List[str]`
        List of variable names in the trace(s)
    """

    def __init__(self, straces: Sequence[NDArray]):
        if len({t.chain for t in straces}) != len(straces):
            raise ValueError("Chains are not unique.")
        self._straces = {t.chain: t for t in straces}

    def __repr__(self):
        template = "<{}: {} chains, {} iterations, {} variables>"
        return template.format(self.__class__.__name__, self.nchains, len(self), len(self.varnames))

    @property
    def nchains(self) -> int:
        return len(self._straces)

    @property
    def chains(self) -> list[int]:
        return sorted(self._straces.keys())

    @property
    def straces(self) -> list[NDArray]:
        return [self._straces[chain] for chain in self.chains]

    def __getitem__(self, idx):
        try:
            return self.point(int(idx))
        except (ValueError, TypeError):  # Passed variable name.
            pass
        if idx in self.varnames:
            return self.get_values(idx)
        if idx in self.stat_names:
            return self.get_sampler_stats(idx)
        raise KeyError(f"Unknown variable {idx}")

    def __len__(self):
        """Length of the chains."""
        chain = self.chains[-1]
        return len(self._straces[chain])

    @property
    def varnames(self) -> list[str]:
        chain = self.chains[-1]
        return self._straces[chain].varnames

    @property
    def fit_names(self) -> list[str]:
        chain = self.chains[-1]
        return self._straces[chain].fit_names

    @property
    def stat_names(self) -> list[str]:
        if not self._straces:
            return []
        return self._straces[self.chains[-1]].stat_names

    def get_values(
        self,
        varname: str,
        burn: int = 0,
        thin: int = 1,
        combine: bool = True,
        chains: int | Sequence[int] | None = None,
        squeeze: bool = True,
    ) -> list[np.ndarray] | np.ndarray:
        """Get values from traces.

        Parameters
        ----------
        varname: str
        burn: int
        thin: int
        combine: bool
            If True, results from `chains` will be concatenated.
        chains: int or list of ints
            Chains to retrieve. If None, all chains are used. A single
            chain value can also be given.
        squeeze: bool
            Return a single array element if the resulting list of
            values only has one element. If False, the result will
            always be a list of arrays, even if `combine` is True.
        """
        if chains is None:
            chains = self.chains
        if isinstance(chains, int):
            chains = [chains]
        results = [self._straces[chain].get_values(varname, burn, thin) for chain in chains]
        return _squeeze_cat(results, combine, squeeze)

    def get_sampler_stats(
        self,
        stat_name: str,
        burn: int = 0,
        thin: int = 1,
        combine: bool = True,
        chains: int | Sequence[int] | None = None,
        squeeze: bool = True,
    ) -> list[np.ndarray] | np.ndarray:
        if chains is None:
            chains = self.chains
        if isinstance(chains, int):
            chains = [chains]
        results = [
            self._straces[chain].get_sampler_stats(stat_name, None, burn, thin) for chain in chains
        ]
        return _squeeze_cat(results, combine, squeeze)

    def get_fit_values(self, name: str, combine: bool = True) -> np.ndarray | list[np.ndarray]:
        results = [self._straces[chain].get_fit_values(name) for chain in self.chains]
        return _squeeze_cat(results, combine, squeeze=True)

    def point(self, idx: int, chain: int | None = None) -> dict[str, np.ndarray]:
        """Return a dictionary of point values at `idx`.

        Parameters
        ----------
        idx: int
        chain: int
            If a chain is not given, the highest chain number is used.
        """
        if chain is None:
            chain = self.chains[-1]
        return self._straces[chain].point(idx)

    def summary(self, varnames=None, q=(0.025, 0.5, 0.975)) -> pd.DataFrame:
        """Summary pooled over all chains, from the running moments of each chain."""
        traces = self.straces
        first = traces[0]
        moments = {}
        for name in varnames or first.varnames:
            pooled = traces[0].moments[name]
            for trace in traces[1:]:
                pooled = pooled.combine(trace.moments[name])
            moments[name] = pooled
        return _summary_frame(
            list(moments), first.var_shapes, moments, lambda name: self.get_values(name), q
        )


def _squeeze_cat(results, combine: bool, squeeze: bool):
    """Squeeze and/or concatenate the results."""
    if combine:
        results = np.concatenate(results)
        if not squeeze:
            results = [results]
    else:
        if squeeze and len(results) == 1:
            results = results[0]
    return results


def _choose_chains(traces: Sequence[NDArray]) -> tuple[list[NDArray], int]:
    """
    Filter and slice traces such that (n_traces * len(shortest_trace)) is maximized.

    We get here after an interruption or a deadline, and so the different
    traces have different lengths. We therefore pick the number of
    traces such that (number of traces) * (length of shortest trace)
    is maximised.
    """
    if not traces:
        raise ValueError("No traces to slice.")

    lengths = [len(trace) for trace in traces]
    if not sum(lengths):
        raise ValueError("Not enough samples to build a trace.")

    idxs = np.argsort(lengths)
    l_sort = np.array(lengths)[idxs]

    use_until = cast(int, np.argmax(l_sort * np.arange(1, l_sort.shape[0] + 1)[::-1]))
    final_length = int(l_sort[use_until])

    take_idx = cast(Sequence[int], idxs[use_until:])
    sliced_traces = [traces[idx] for idx in sorted(take_idx)]
    return sliced_traces, final_length
