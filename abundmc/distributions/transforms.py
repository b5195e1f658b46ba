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
import abc

import numpy as np

from abundmc.math import log_invlogit, invlogit

__all__ = [
    "Transform",
    "identity",
    "log",
    "logodds",
]


class Transform(abc.ABC):
    """Map between a constrained value and the real line where random-walk proposals live."""

    name = ""

    @abc.abstractmethod
    def forward(self, value):
        """Apply the transformation."""

    @abc.abstractmethod
    def backward(self, value):
        """Invert the transformation."""

    @abc.abstractmethod
    def log_jac_det(self, value):
        """Log of the absolute Jacobian determinant of ``backward`` at ``value``."""

    def __str__(self):
        """Return a string representation of the object."""
        return f"{self.__class__.__name__}"


class IdentityTransform(Transform):
    name = "identity"

    def forward(self, value):
        return value

    def backward(self, value):
        return value

    def log_jac_det(self, value):
        return np.zeros_like(value, dtype="float64")


class LogTransform(Transform):
    name = "log"

    def forward(self, value):
        with np.errstate(divide="ignore"):
            return np.log(value)

    def backward(self, value):
        with np.errstate(over="ignore"):
            return np.exp(value)

    def log_jac_det(self, value):
        return np.asarray(value, dtype="float64")


class LogOddsTransform(Transform):
    name = "logodds"

    def forward(self, value):
        with np.errstate(divide="ignore"):
            return np.log(value) - np.log1p(-np.asarray(value))

    def backward(self, value):
        return invlogit(value)

    def log_jac_det(self, value):
        return log_invlogit(value) + log_invlogit(-np.asarray(value))


identity = IdentityTransform()

log = LogTransform()
log.__doc__ = """
Instantiation of :class:`LogTransform` for positive-support parameters.
"""

logodds = LogOddsTransform()
logodds.__doc__ = """
Instantiation of :class:`LogOddsTransform` for parameters on the probability scale.
"""
