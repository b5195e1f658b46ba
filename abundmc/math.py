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

"""Numerically stable scalar transforms used by the likelihood and the step methods."""

import numpy as np
import scipy.special

__all__ = [
    "invlogit",
    "logit",
    "log_invlogit",
    "log1mexp",
]


def invlogit(x):
    """The inverse of the logit function, 1 / (1 + exp(-x))."""
    return scipy.special.expit(x)


def logit(p):
    return scipy.special.logit(p)


def log_invlogit(x):
    """Return log(invlogit(x)) without overflow for large ``|x|``."""
    return scipy.special.log_expit(x)


def log1mexp(x, *, negative_input=True):
    """Return log(1 - exp(x)).

    This function is numerically more stable than the naive approach.
    For details, see
    https://cran.r-project.org/web/packages/Rmpfr/vignettes/log1mexp-note.pdf

    With ``negative_input=False`` the input is negated first, so that
    ``log1mexp(mu, negative_input=False)`` is ``log(1 - exp(-mu))``.
    """
    x = np.asarray(x, dtype="float")
    if not negative_input:
        x = -x

    out = np.full_like(x, -np.inf)
    with np.errstate(divide="ignore", invalid="ignore"):
        mask = x < -0.6931471805599453  # log(1/2)
        out[mask] = np.log1p(-np.exp(x[mask]))
        mask = (x >= -0.6931471805599453) & (x < 0)
        out[mask] = np.log(-np.expm1(x[mask]))
    out[np.isnan(x) | (x > 0)] = np.nan
    if out.ndim == 0:
        return out[()]
    return out
