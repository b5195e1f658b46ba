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
"""Common helpers for the log-density functions.

Every function operates elementwise on NumPy arrays and never raises on
out-of-support values: those evaluate to ``-inf``.
"""

import numpy as np

from scipy.special import gammaln, xlogy


def check_parameters(logp, *conditions):
    """Replace ``logp`` by ``-inf`` wherever a condition fails or the value is NaN."""
    logp = np.asarray(logp, dtype="float64")
    ok = np.ones(logp.shape, dtype=bool)
    for cond in conditions:
        ok = ok & np.asarray(cond, dtype=bool)
    out = np.where(ok & ~np.isnan(logp), logp, -np.inf)
    if out.ndim == 0:
        return out[()]
    return out


def logpow(x, m):
    """Calculate log(x**m) since m*log(x) will fail when m, x = 0."""
    return xlogy(m, x)


def factln(n):
    return gammaln(np.asarray(n, dtype="float64") + 1)


def binomln(n, k):
    return factln(n) - factln(k) - factln(np.asarray(n) - np.asarray(k))


def betaln(x, y):
    return gammaln(x) + gammaln(y) - gammaln(np.asarray(x) + np.asarray(y))
