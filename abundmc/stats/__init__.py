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

"""Convergence diagnostics and posterior-predictive fit statistics."""

from abundmc.stats.convergence import acceptance_rates, run_convergence_checks, warn_acceptance
from abundmc.stats.fit import bayesian_p_values, fit_statistics, freeman_tukey

__all__ = [
    "acceptance_rates",
    "run_convergence_checks",
    "warn_acceptance",
    "bayesian_p_values",
    "fit_statistics",
    "freeman_tukey",
]
