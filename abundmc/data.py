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
"""Read-only containers for the survey data.

Per-site visit arrays are ragged (every site has its own number of acoustic
and point-count visits). They are stored as one flat value array per
quantity plus a :class:`RaggedIndex` offset/length table, so that every
likelihood term is a vectorized expression over the flat arrays and per-site
sums are a single ``bincount``.
"""

import logging

from collections.abc import Sequence
from dataclasses import dataclass, field

import numpy as np

from abundmc.exceptions import InvalidDataError

__all__ = [
    "RaggedIndex",
    "AcousticVisits",
    "CountVisits",
    "ValidationTable",
    "DataStore",
]

_log = logging.getLogger(__name__)


def _freeze(*arrays):
    for arr in arrays:
        if arr is not None:
            arr.flags.writeable = False


class RaggedIndex:
    """Offset/length table for a flat array holding one variable-length group per site.

    Parameters
    ----------
    lengths: array_like of int
        Number of entries of each group (``J[i]`` or ``n.count[i]``).
    """

    def __init__(self, lengths):
        lengths = np.asarray(lengths)
        if lengths.ndim != 1:
            raise InvalidDataError(f"Visit counts must be one-dimensional, got shape {lengths.shape}")
        if lengths.size and not np.all(np.mod(lengths, 1) == 0):
            raise InvalidDataError("Visit counts must be integers")
        lengths = lengths.astype("int64")
        if np.any(lengths < 0):
            raise InvalidDataError("Visit counts must be non-negative", index=int(np.argmin(lengths)))
        self.lengths = lengths
        self.offsets = np.concatenate([[0], np.cumsum(lengths)]).astype("int64")
        self.group = np.repeat(np.arange(lengths.size), lengths)
        _freeze(self.lengths, self.offsets, self.group)

    @property
    def n_groups(self) -> int:
        return self.lengths.size

    @property
    def size(self) -> int:
        return int(self.offsets[-1])

    @property
    def site_of(self) -> np.ndarray:
        """Group (site) of every flat position."""
        return self.group

    def slice(self, i: int) -> slice:
        return slice(int(self.offsets[i]), int(self.offsets[i + 1]))

    def position(self, i: int, j: int) -> int:
        """Flat position of entry ``j`` of group ``i``, bounds-checked."""
        if not 0 <= i < self.n_groups:
            raise InvalidDataError(f"Site index out of range [0, {self.n_groups})", index=i)
        if not 0 <= j < self.lengths[i]:
            raise InvalidDataError(
                f"Visit index beyond the declared visit count {self.lengths[i]} of site {i}",
                index=(i, j),
            )
        return int(self.offsets[i] + j)

    def flatten(self, padded, name="array") -> np.ndarray:
        """Collect the first ``lengths[i]`` entries of every row of a padded 2D array."""
        padded = np.asarray(padded)
        if padded.ndim == 1 and self.n_groups == 1:
            padded = padded[None, :]
        if padded.ndim != 2 or padded.shape[0] != self.n_groups:
            raise InvalidDataError(
                f"`{name}` must have one row per site ({self.n_groups}), got shape {padded.shape}"
            )
        width = padded.shape[1]
        too_short = np.flatnonzero(self.lengths > width)
        if too_short.size:
            raise InvalidDataError(
                f"`{name}` has {width} columns but a site declares {self.lengths[too_short[0]]} visits",
                index=int(too_short[0]),
            )
        mask = np.arange(width)[None, :] < self.lengths[:, None]
        return padded[mask]

    def to_nested(self, values) -> list[np.ndarray]:
        return [np.asarray(values)[self.slice(i)] for i in range(self.n_groups)]

    @classmethod
    def from_nested(cls, nested: Sequence[Sequence]) -> tuple["RaggedIndex", np.ndarray]:
        index = cls([len(group) for group in nested])
        if index.size == 0:
            return index, np.zeros(0)
        return index, np.concatenate([np.asarray(group) for group in nested])

    def __eq__(self, other):
        return isinstance(other, RaggedIndex) and np.array_equal(self.lengths, other.lengths)

    def __repr__(self):
        return f"RaggedIndex(n_groups={self.n_groups}, size={self.size})"


def _as_int(values, name, index_fn=None):
    values = np.asarray(values, dtype="float64")
    bad = np.flatnonzero(~np.isfinite(values) | (np.mod(values, 1) != 0))
    if bad.size:
        idx = index_fn(int(bad[0])) if index_fn else int(bad[0])
        raise InvalidDataError(f"`{name}` must hold finite integers", index=idx)
    return values.astype("int64")


@dataclass(frozen=True, eq=False)
class AcousticVisits:
    """Flat acoustic-visit records (site ``i``, visit ``j``).

    ``v`` is the vocalization count, defined only where the hurdle indicator
    ``y`` is 1 and stored as 0 elsewhere.
    """

    index: RaggedIndex
    y: np.ndarray
    v: np.ndarray
    x_alpha: np.ndarray = None
    x_delta: np.ndarray = None
    day: np.ndarray = None

    def __post_init__(self):
        n = self.index.size
        locate = self._locate

        y = _as_int(self.y, "y", locate)
        if y.shape != (n,):
            raise InvalidDataError(f"`y` must have {n} entries, got {y.shape}")
        bad = np.flatnonzero((y != 0) & (y != 1))
        if bad.size:
            raise InvalidDataError("`y` must be 0 or 1", index=locate(int(bad[0])))

        v = np.asarray(self.v, dtype="float64")
        if v.shape != (n,):
            raise InvalidDataError(f"`v` must have {n} entries, got {v.shape}")
        v = np.where(y == 1, v, 0.0)
        v = _as_int(v, "v", locate)
        bad = np.flatnonzero((y == 1) & (v < 1))
        if bad.size:
            raise InvalidDataError(
                "Vocalization count `v` must be >= 1 where `y` is 1", index=locate(int(bad[0]))
            )

        covariates = {}
        for name in ("x_alpha", "x_delta"):
            values = getattr(self, name)
            values = np.zeros(n) if values is None else np.asarray(values, dtype="float64")
            if values.shape != (n,):
                raise InvalidDataError(f"`{name}` must have {n} entries, got {values.shape}")
            bad = np.flatnonzero(~np.isfinite(values))
            if bad.size:
                raise InvalidDataError(f"`{name}` must be finite", index=locate(int(bad[0])))
            covariates[name] = values

        day = np.zeros(n, dtype="int64") if self.day is None else _as_int(self.day, "day", locate)
        if day.shape != (n,):
            raise InvalidDataError(f"`day` must have {n} entries, got {day.shape}")
        bad = np.flatnonzero(day < 0)
        if bad.size:
            raise InvalidDataError("`day` must be non-negative", index=locate(int(bad[0])))

        for name, value in (("y", y), ("v", v), ("day", day), *covariates.items()):
            object.__setattr__(self, name, value)
        _freeze(self.y, self.v, self.x_alpha, self.x_delta, self.day)

    def _locate(self, pos):
        if self.index.size == 0:
            return pos
        site = int(self.index.group[pos])
        return (site, pos - int(self.index.offsets[site]))

    @property
    def site(self) -> np.ndarray:
        return self.index.group

    @property
    def detected(self) -> np.ndarray:
        return self.y == 1

    def __len__(self):
        return self.index.size


@dataclass(frozen=True, eq=False)
class CountVisits:
    """Flat point-count records: observed count ``c`` and detection covariate ``x_phi``."""

    index: RaggedIndex
    c: np.ndarray
    x_phi: np.ndarray = None

    def __post_init__(self):
        n = self.index.size
        locate = self._locate
        c = _as_int(self.c, "c", locate)
        if c.shape != (n,):
            raise InvalidDataError(f"`c` must have {n} entries, got {c.shape}")
        bad = np.flatnonzero(c < 0)
        if bad.size:
            raise InvalidDataError("Counts `c` must be non-negative", index=locate(int(bad[0])))
        x_phi = np.zeros(n) if self.x_phi is None else np.asarray(self.x_phi, dtype="float64")
        if x_phi.shape != (n,):
            raise InvalidDataError(f"`x_phi` must have {n} entries, got {x_phi.shape}")
        bad = np.flatnonzero(~np.isfinite(x_phi))
        if bad.size:
            raise InvalidDataError("`x_phi` must be finite", index=locate(int(bad[0])))
        object.__setattr__(self, "c", c)
        object.__setattr__(self, "x_phi", x_phi)
        _freeze(self.c, self.x_phi)

    def _locate(self, pos):
        site = int(self.index.group[pos])
        return (site, pos - int(self.index.offsets[site]))

    @property
    def site(self) -> np.ndarray:
        return self.index.group

    def max_count(self) -> np.ndarray:
        """Largest observed count per site (0 for sites without count visits)."""
        out = np.zeros(self.index.n_groups, dtype="int64")
        np.maximum.at(out, self.site, self.c)
        return out

    def __len__(self):
        return self.index.size


@dataclass(frozen=True, eq=False)
class ValidationTable:
    """Join table of manually validated acoustic visits.

    Each row references one acoustic visit through its flat position
    ``visit`` (see :meth:`DataStore.from_arrays` for the conversion from
    site/visit index arrays). ``n`` vocalizations out of the ``v`` recorded at
    that visit were inspected and ``k`` of them were confirmed true positives.
    ``K``, the number of true positives among all ``v``, is latent unless
    supplied.
    """

    visit: np.ndarray
    k: np.ndarray
    n: np.ndarray
    K: np.ndarray | None = None

    def __post_init__(self):
        visit = _as_int(self.visit, "visit")
        m = visit.shape[0] if visit.ndim == 1 else -1
        if visit.ndim != 1:
            raise InvalidDataError(f"`visit` must be one-dimensional, got shape {visit.shape}")
        k = _as_int(self.k, "k")
        n = _as_int(self.n, "n")
        K = None if self.K is None else _as_int(self.K, "K")
        for name, arr in (("k", k), ("n", n), ("K", K)):
            if arr is not None and arr.shape != (m,):
                raise InvalidDataError(f"`{name}` must have {m} entries, got {arr.shape}")
        bad = np.flatnonzero((k < 0) | (n < 0))
        if bad.size:
            raise InvalidDataError("Validation counts must be non-negative", index=int(bad[0]))
        bad = np.flatnonzero(k > n)
        if bad.size:
            raise InvalidDataError("Validated true positives `k` exceed inspected `n`", index=int(bad[0]))
        if K is not None:
            bad = np.flatnonzero(k > K)
            if bad.size:
                raise InvalidDataError("`k` must not exceed `K`", index=int(bad[0]))
        object.__setattr__(self, "visit", visit)
        object.__setattr__(self, "k", k)
        object.__setattr__(self, "n", n)
        object.__setattr__(self, "K", K)
        _freeze(self.visit, self.k, self.n, self.K)

    @classmethod
    def empty(cls) -> "ValidationTable":
        return cls(visit=np.zeros(0), k=np.zeros(0), n=np.zeros(0))

    @property
    def observed_K(self) -> bool:
        return self.K is not None

    def __len__(self):
        return self.visit.shape[0]


@dataclass(frozen=True, eq=False)
class DataStore:
    """All survey data of one analysis, immutable once built.

    Parameters
    ----------
    x_lambda: array of shape (n_sites,)
        Abundance covariate per site.
    acoustic: AcousticVisits
    counts: CountVisits, optional
        Defaults to no point-count visits.
    validation: ValidationTable, optional
        Defaults to no validation.
    n_days: int, optional
        Number of levels of the day random effect. Defaults to the largest day
        index plus one.
    """

    x_lambda: np.ndarray
    acoustic: AcousticVisits
    counts: CountVisits = None
    validation: ValidationTable = None
    n_days: int = None
    val_site: np.ndarray = field(init=False, repr=False)

    def __post_init__(self):
        x_lambda = np.asarray(self.x_lambda, dtype="float64")
        if x_lambda.ndim == 2 and x_lambda.shape[1] == 2:
            # design matrix with an intercept column
            x_lambda = x_lambda[:, 1]
        if x_lambda.ndim != 1:
            raise InvalidDataError(f"`x_lambda` must be one-dimensional, got shape {x_lambda.shape}")
        bad = np.flatnonzero(~np.isfinite(x_lambda))
        if bad.size:
            raise InvalidDataError("`x_lambda` must be finite", index=int(bad[0]))
        n_sites = x_lambda.shape[0]
        object.__setattr__(self, "x_lambda", x_lambda)
        _freeze(self.x_lambda)

        if self.acoustic.index.n_groups != n_sites:
            raise InvalidDataError(
                f"Acoustic visits are declared for {self.acoustic.index.n_groups} sites "
                f"but `x_lambda` has {n_sites}"
            )
        counts = self.counts
        if counts is None:
            counts = CountVisits(RaggedIndex(np.zeros(n_sites, dtype=int)), c=np.zeros(0))
            object.__setattr__(self, "counts", counts)
        if counts.index.n_groups != n_sites:
            raise InvalidDataError(
                f"Count visits are declared for {counts.index.n_groups} sites "
                f"but `x_lambda` has {n_sites}"
            )

        n_days = self.n_days
        max_day = int(self.acoustic.day.max()) if len(self.acoustic) else -1
        if n_days is None:
            n_days = max(max_day + 1, 1)
        elif max_day >= n_days:
            raise InvalidDataError(
                f"Day index {max_day} out of range for {n_days} days",
                index=self.acoustic._locate(int(np.argmax(self.acoustic.day))),
            )
        object.__setattr__(self, "n_days", int(n_days))

        validation = self.validation
        if validation is None:
            validation = ValidationTable.empty()
            object.__setattr__(self, "validation", validation)
        self._check_validation(validation)
        val_site = self.acoustic.site[validation.visit]
        object.__setattr__(self, "val_site", val_site)
        _freeze(self.val_site)

    def _check_validation(self, validation):
        bad = np.flatnonzero((validation.visit < 0) | (validation.visit >= len(self.acoustic)))
        if bad.size:
            raise InvalidDataError(
                "Validation row references an acoustic visit that does not exist",
                index=int(bad[0]),
            )
        v = self.acoustic.v[validation.visit]
        bad = np.flatnonzero(self.acoustic.y[validation.visit] != 1)
        if bad.size:
            raise InvalidDataError(
                "Validation row references an acoustic visit without detection (y = 0)",
                index=int(bad[0]),
            )
        bad = np.flatnonzero(validation.n > v)
        if bad.size:
            raise InvalidDataError(
                "More vocalizations inspected (`n`) than recorded (`v`)", index=int(bad[0])
            )
        if validation.K is not None:
            bad = np.flatnonzero(validation.K > v)
            if bad.size:
                raise InvalidDataError("`K` must not exceed `v`", index=int(bad[0]))
            bad = np.flatnonzero(validation.k > np.minimum(validation.K, validation.n))
            if bad.size:
                raise InvalidDataError("`k` must not exceed min(`K`, `n`)", index=int(bad[0]))
            # k true positives among n inspected also need n - k false ones among v - K
            bad = np.flatnonzero(validation.n - validation.k > v - validation.K)
            if bad.size:
                raise InvalidDataError(
                    "Inspected false positives `n - k` exceed `v - K`", index=int(bad[0])
                )

    @property
    def n_sites(self) -> int:
        return self.x_lambda.shape[0]

    @property
    def val_v(self) -> np.ndarray:
        return self.acoustic.v[self.validation.visit]

    def K_bounds(self) -> tuple[np.ndarray, np.ndarray]:
        """Support ``[k, v - n + k]`` of the true-positive counts of the validation rows."""
        validation = self.validation
        return validation.k, self.val_v - validation.n + validation.k

    @classmethod
    def from_arrays(
        cls,
        X_lambda,
        J,
        y,
        v,
        *,
        X_p_a=None,
        X_delta=None,
        days=None,
        n_days=None,
        A_times=None,
        J_r=None,
        n_count=None,
        c=None,
        X_p=None,
        k=None,
        n=None,
        K=None,
        sites_a=None,
        val_times=None,
        J_val=None,
        index_base=0,
    ) -> "DataStore":
        """Build a :class:`DataStore` from padded ``[site, visit]`` arrays.

        Padded cells beyond a site's declared visit count are ignored (they may
        hold NaN).

        Parameters
        ----------
        X_lambda: array of shape (R,) or (R, 2)
            Abundance covariate (second column of a design matrix).
        J: array of shape (R,)
            Number of acoustic visits per site.
        y: array of shape (R, max J)
            Hurdle indicators.
        v: array
            Vocalization counts. Either of shape (R, max J) indexed by visit, or
            compressed to the detected visits when ``A_times`` and ``J_r`` are given:
            ``v[i, m]`` is then the count of visit ``A_times[i, m]`` for ``m < J_r[i]``.
        X_p_a, X_delta, days: arrays of shape (R, max J), optional
            Detection covariate, true-positive-rate covariate and day index.
        n_count: array of shape (R,), optional
            Number of point-count visits per site.
        c, X_p: arrays of shape (R, max n_count), optional
            Observed counts and count-detection covariate.
        k, n, K: arrays of shape (R_val, max J_val), optional
            Validation counts. ``K`` is optional and latent when omitted.
        sites_a: array of shape (R_val,)
            Site of each validation row.
        val_times: array of shape (R_val, max J_val)
            Direct acoustic-visit index (into ``y`` and ``v`` of site
            ``sites_a[r]``) of each validated visit.
        J_val: array of shape (R_val,), optional
            Validated visits per validation row; defaults to the non-NaN cells of ``k``.
        index_base: {0, 1}
            Base of the index arrays ``days``, ``A_times``, ``sites_a`` and ``val_times``.
            Use 1 for arrays prepared for a 1-based language.
        """
        if index_base not in (0, 1):
            raise ValueError(f"index_base must be 0 or 1, got {index_base}")

        index = RaggedIndex(J)
        n_sites = index.n_groups
        y_flat = index.flatten(y, "y")

        if A_times is not None:
            if J_r is None:
                raise InvalidDataError("`J_r` is required together with `A_times`")
            v = _expand_compressed(v, A_times, J_r, index, index_base)
        v_flat = index.flatten(v, "v")
        # undefined where y == 0
        v_flat = np.where(np.asarray(y_flat, dtype="float64") == 1, v_flat, 0)

        x_alpha = None if X_p_a is None else index.flatten(X_p_a, "X_p_a")
        x_delta = None if X_delta is None else index.flatten(X_delta, "X_delta")
        day = None
        if days is not None:
            day = np.asarray(index.flatten(days, "days"), dtype="float64") - index_base
        acoustic = AcousticVisits(index, y=y_flat, v=v_flat, x_alpha=x_alpha, x_delta=x_delta, day=day)

        counts = None
        if n_count is not None:
            count_index = RaggedIndex(n_count)
            if count_index.n_groups != n_sites:
                raise InvalidDataError(
                    f"`n_count` has {count_index.n_groups} entries for {n_sites} sites"
                )
            if count_index.size and c is None:
                raise InvalidDataError("`c` is required when `n_count` declares count visits")
            c_flat = count_index.flatten(c, "c") if count_index.size else np.zeros(0)
            x_phi = None if X_p is None else count_index.flatten(X_p, "X_p")
            counts = CountVisits(count_index, c=c_flat, x_phi=x_phi)

        validation = None
        if k is not None:
            validation = _validation_from_arrays(
                index, k, n, K, sites_a, val_times, J_val, index_base
            )

        _log.debug(
            f"Loaded {n_sites} sites, {index.size} acoustic visits, "
            f"{0 if counts is None else len(counts)} count visits, "
            f"{0 if validation is None else len(validation)} validated visits"
        )
        return cls(
            x_lambda=X_lambda,
            acoustic=acoustic,
            counts=counts,
            validation=validation,
            n_days=n_days,
        )


def _expand_compressed(v, A_times, J_r, index, index_base):
    v = np.asarray(v, dtype="float64")
    A_times = np.asarray(A_times, dtype="float64")
    r_index = RaggedIndex(J_r)
    if r_index.n_groups != index.n_groups:
        raise InvalidDataError(f"`J_r` has {r_index.n_groups} entries for {index.n_groups} sites")
    too_many = np.flatnonzero(r_index.lengths > index.lengths)
    if too_many.size:
        raise InvalidDataError(
            "More visits with vocalizations (`J_r`) than acoustic visits (`J`)",
            index=int(too_many[0]),
        )
    width = int(index.lengths.max()) if index.n_groups else 0
    out = np.zeros((index.n_groups, width))
    times = r_index.flatten(A_times, "A_times") - index_base
    values = r_index.flatten(v, "v")
    for pos, (t, val) in enumerate(zip(times, values)):
        site = int(r_index.group[pos])
        if not np.isfinite(t) or t != int(t):
            raise InvalidDataError("`A_times` must hold integers", index=(site, pos - int(r_index.offsets[site])))
        out[site, index.position(site, int(t)) - int(index.offsets[site])] = val
    return out


def _validation_from_arrays(index, k, n, K, sites_a, val_times, J_val, index_base):
    if n is None or sites_a is None or val_times is None:
        raise InvalidDataError("Validation needs `k`, `n`, `sites_a` and `val_times`")
    k = np.atleast_2d(np.asarray(k, dtype="float64"))
    sites_a = np.asarray(sites_a, dtype="float64").ravel() - index_base
    if J_val is None:
        J_val = np.sum(np.isfinite(k), axis=1)
    val_index = RaggedIndex(J_val)
    if val_index.n_groups != sites_a.shape[0]:
        raise InvalidDataError(
            f"`sites_a` has {sites_a.shape[0]} entries for {val_index.n_groups} validation rows"
        )
    k_flat = val_index.flatten(k, "k")
    n_flat = val_index.flatten(np.atleast_2d(n), "n")
    K_flat = None if K is None else val_index.flatten(np.atleast_2d(K), "K")
    times = np.asarray(val_index.flatten(np.atleast_2d(val_times), "val_times"), dtype="float64")
    times = times - index_base

    visit = np.empty(val_index.size, dtype="int64")
    for pos in range(val_index.size):
        row = int(val_index.group[pos])
        j = pos - int(val_index.offsets[row])
        site, t = sites_a[row], times[pos]
        if not (np.isfinite(site) and site == int(site) and np.isfinite(t) and t == int(t)):
            raise InvalidDataError("Validation index arrays must hold integers", index=(row, j))
        try:
            visit[pos] = index.position(int(site), int(t))
        except InvalidDataError as err:
            raise InvalidDataError(
                f"Validation index beyond the site's declared visit count ({err})", index=(row, j)
            ) from err
    return ValidationTable(visit=visit, k=k_flat, n=n_flat, K=K_flat)
