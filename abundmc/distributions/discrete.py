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
import numpy as np

from abundmc.distributions.dist_math import (
    betaln,
    binomln,
    check_parameters,
    factln,
    logpow,
)
from abundmc.math import log1mexp, log_invlogit

__all__ = [
    "poisson_logp",
    "bernoulli_logit_logp",
    "binomial_logit_logp",
    "zero_truncated_poisson_logp",
    "zero_truncated_poisson_mean",
    "zero_truncated_poisson_random",
    "hypergeometric_logp",
]


def poisson_logp(value, log_mu):
    r"""Poisson log-mass parametrized by the log of its rate.

    .. math:: \log f(x \mid \mu) = x \log\mu - \mu - \log x!

    Working on the log scale keeps large abundance rates finite, which matters
    because ``exp(beta0 + beta1 * x)`` may be far out in the tails during burn-in.
    """
    value = np.asarray(value)
    log_mu = np.asarray(log_mu, dtype="float64")
    with np.errstate(over="ignore", invalid="ignore"):
        res = np.where(value == 0, 0.0, value * log_mu) - np.exp(log_mu) - factln(value)
    return check_parameters(res, value >= 0, log_mu < np.inf)


def bernoulli_logit_logp(value, logit_p):
    """Bernoulli log-mass with success probability ``invlogit(logit_p)``."""
    value = np.asarray(value)
    logit_p = np.asarray(logit_p, dtype="float64")
    with np.errstate(invalid="ignore"):
        res = np.where(value == 1, log_invlogit(logit_p), log_invlogit(-logit_p))
    return check_parameters(res, (value == 0) | (value == 1))


def binomial_logit_logp(value, n, logit_p):
    """Binomial log-mass with success probability ``invlogit(logit_p)``.

    Working on the logit scale keeps the mass exact when the success
    probability is within rounding distance of 0 or 1.
    """
    value = np.asarray(value)
    n = np.asarray(n)
    logit_p = np.asarray(logit_p, dtype="float64")
    with np.errstate(divide="ignore", invalid="ignore"):
        res = (
            binomln(n, value)
            + np.where(value == 0, 0.0, value * log_invlogit(logit_p))
            + np.where(n - value == 0, 0.0, (n - value) * log_invlogit(-logit_p))
        )
    return check_parameters(res, value >= 0, value <= n, n >= 0)


def zero_truncated_poisson_logp(value, mu):
    r"""Log-mass of a Poisson conditioned on being at least one.

    .. math:: \log f(x \mid \mu) = x \log\mu - \mu - \log x! - \log(1 - e^{-\mu}),
              \quad x \geq 1

    The normalizer goes through :func:`~abundmc.math.log1mexp`, which stays
    accurate when ``mu`` is tiny and ``1 - exp(-mu)`` would cancel.
    """
    value = np.asarray(value)
    mu = np.asarray(mu, dtype="float64")
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        res = logpow(mu, value) - mu - factln(value) - log1mexp(-mu)
    return check_parameters(res, value >= 1, mu > 0, np.isfinite(mu))


def zero_truncated_poisson_mean(mu):
    """Expected value of the zero-truncated Poisson, ``mu / (1 - exp(-mu))``."""
    mu = np.asarray(mu, dtype="float64")
    with np.errstate(divide="ignore", invalid="ignore"):
        res = mu / -np.expm1(-mu)
    # Limit at mu -> 0 is 1
    return np.where(mu > 0, res, 1.0)


def zero_truncated_poisson_random(mu, rng: np.random.Generator, size=None):
    """Draw from the zero-truncated Poisson distribution.

    Uses the arrival-time construction: conditionally on at least one event
    of a unit-rate Poisson process on ``[0, mu]``, the first arrival ``T``
    is an exponential truncated to ``[0, mu]`` and the remaining events form
    an independent ``Poisson(mu - T)`` count. The draw is therefore exact,
    vectorized, never rejects and is never 0.
    """
    mu = np.asarray(mu, dtype="float64")
    if size is None:
        size = mu.shape
    u = rng.uniform(size=size)
    t = -np.log1p(u * np.expm1(-mu))
    # Rounding can push t a hair above mu
    rest = np.clip(mu - t, 0.0, None)
    return 1 + rng.poisson(rest, size=size)


def hypergeometric_logp(value, good, bad, n):
    """Log-mass of drawing ``value`` good items in ``n`` draws without replacement.

    The population holds ``good`` successes and ``bad`` failures; the support is
    ``max(0, n - bad) <= value <= min(good, n)``.
    """
    value = np.asarray(value)
    good = np.asarray(good)
    bad = np.asarray(bad)
    n = np.asarray(n)
    tot = good + bad
    with np.errstate(divide="ignore", invalid="ignore"):
        res = (
            betaln(good + 1, 1)
            + betaln(bad + 1, 1)
            + betaln(tot - n + 1, n + 1)
            - betaln(value + 1, good - value + 1)
            - betaln(n - value + 1, bad - n + value + 1)
            - betaln(tot + 1, 1)
        )
    lower = np.maximum(n - tot + good, 0)
    upper = np.minimum(good, n)
    return check_parameters(
        res,
        value >= lower,
        value <= upper,
        good >= 0,
        bad >= 0,
        n >= 0,
        n <= tot,
    )
