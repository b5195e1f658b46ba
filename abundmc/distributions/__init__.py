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

from abundmc.distributions.continuous import gamma_logp, normal_logp, uniform_logp
from abundmc.distributions.discrete import (
    bernoulli_logit_logp,
    binomial_logit_logp,
    hypergeometric_logp,
    poisson_logp,
    zero_truncated_poisson_logp,
    zero_truncated_poisson_mean,
    zero_truncated_poisson_random,
)
from abundmc.distributions.priors import Gamma, Normal, Prior, Uniform

__all__ = [
    "Prior",
    "Normal",
    "Uniform",
    "Gamma",
    "normal_logp",
    "uniform_logp",
    "gamma_logp",
    "poisson_logp",
    "bernoulli_logit_logp",
    "binomial_logit_logp",
    "zero_truncated_poisson_logp",
    "zero_truncated_poisson_mean",
    "zero_truncated_poisson_random",
    "hypergeometric_logp",
]
