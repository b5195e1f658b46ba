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

from scipy.special import gammaln

from abundmc.distributions.dist_math import check_parameters, logpow

__all__ = ["normal_logp", "uniform_logp", "gamma_logp"]

_LOG_2PI = np.log(2 * np.pi)


def normal_logp(value, mu, sigma):
    value = np.asarray(value, dtype="float64")
    sigma = np.asarray(sigma, dtype="float64")
    with np.errstate(divide="ignore", invalid="ignore"):
        res = -0.5 * ((value - mu) / sigma) ** 2 - np.log(sigma) - 0.5 * _LOG_2PI
    return check_parameters(res, sigma > 0)


def uniform_logp(value, lower, upper):
    value = np.asarray(value, dtype="float64")
    res = np.broadcast_to(-np.log(upper - lower), value.shape)
    return check_parameters(res, value >= lower, value <= upper)


def gamma_logp(value, alpha, beta):
    """Gamma log-density with shape ``alpha`` and rate ``beta``."""
    value = np.asarray(value, dtype="float64")
    alpha = np.asarray(alpha, dtype="float64")
    beta = np.asarray(beta, dtype="float64")
    with np.errstate(divide="ignore", invalid="ignore"):
        res = -gammaln(alpha) + logpow(beta, alpha) - beta * value + logpow(value, alpha - 1)
    return check_parameters(res, value > 0, alpha > 0, beta > 0)
