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
"""Closed-form priors of the top-level parameters.

Each prior knows its log-density, how to draw from itself and which
transform maps its support to the real line, so that the Metropolis step
methods can propose on the unconstrained scale and correct for the
Jacobian.
"""

import numpy as np

from abundmc.distributions import transforms
from abundmc.distributions.continuous import gamma_logp, normal_logp, uniform_logp

__all__ = ["Prior", "Normal", "Uniform", "Gamma"]


class Prior:
    transform: transforms.Transform = transforms.identity

    def logp(self, value):
        raise NotImplementedError

    def random(self, rng: np.random.Generator, size=None):
        raise NotImplementedError


class Normal(Prior):
    """Normal prior parametrized by mean and standard deviation.

    ``Normal(0, 10)`` is the vague prior with variance 100 used for the
    regression coefficients.
    """

    def __init__(self, mu=0.0, sigma=10.0):
        if sigma <= 0:
            raise ValueError(f"sigma must be positive, got {sigma}")
        self.mu = mu
        self.sigma = sigma

    def logp(self, value):
        return normal_logp(value, self.mu, self.sigma)

    def random(self, rng, size=None):
        return rng.normal(self.mu, self.sigma, size=size)

    def __repr__(self):
        return f"Normal(mu={self.mu}, sigma={self.sigma})"


class Uniform(Prior):
    """Uniform prior on ``[lower, upper]``.

    The default transform is chosen from the bounds: ``logodds`` on the unit
    interval and ``log`` when only the lower bound is zero. Upper bounds that
    the log transform does not encode are enforced by :meth:`logp`.
    """

    def __init__(self, lower=0.0, upper=1.0, transform=None):
        if not upper > lower:
            raise ValueError(f"upper ({upper}) must be larger than lower ({lower})")
        self.lower = lower
        self.upper = upper
        if transform is None:
            if lower == 0 and upper == 1:
                transform = transforms.logodds
            elif lower == 0:
                transform = transforms.log
            else:
                transform = transforms.identity
        self.transform = transform

    def logp(self, value):
        return uniform_logp(value, self.lower, self.upper)

    def random(self, rng, size=None):
        return rng.uniform(self.lower, self.upper, size=size)

    def __repr__(self):
        return f"Uniform(lower={self.lower}, upper={self.upper})"


class Gamma(Prior):
    """Gamma prior with shape ``alpha`` and rate ``beta``."""

    transform = transforms.log

    def __init__(self, alpha=0.01, beta=0.01):
        if alpha <= 0 or beta <= 0:
            raise ValueError(f"alpha and beta must be positive, got {alpha}, {beta}")
        self.alpha = alpha
        self.beta = beta

    def logp(self, value):
        return gamma_logp(value, self.alpha, self.beta)

    def random(self, rng, size=None):
        return rng.gamma(self.alpha, 1.0 / self.beta, size=size)

    def __repr__(self):
        return f"Gamma(alpha={self.alpha}, beta={self.beta})"
