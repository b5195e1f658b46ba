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

__all__ = [
    "SamplingError",
    "InvalidDataError",
    "ConfigurationError",
    "ShapeError",
]


class SamplingError(RuntimeError):
    pass


class InvalidDataError(ValueError):
    """Supplied data violates an invariant of the model.

    Raised before any sweep runs. ``index`` holds the offending index
    (a site, a ``(site, visit)`` pair or a validation row) when there is one.
    """

    def __init__(self, message, index=None):
        if index is not None:
            super().__init__(f"{message} (at index {index})")
        else:
            super().__init__(message)
        self.index = index


class ConfigurationError(ValueError):
    """Invalid sampler configuration (chains, iterations, thinning, step sizes)."""

    pass


class ShapeError(Exception):
    """Error that the shape of a variable is incorrect."""

    def __init__(self, message, actual=None, expected=None):
        if actual is not None and expected is not None:
            super().__init__(f"{message} (actual {actual} != expected {expected})")
        elif actual is not None and expected is None:
            super().__init__(f"{message} (actual {actual})")
        elif actual is None and expected is not None:
            super().__init__(f"{message} (expected {expected})")
        else:
            super().__init__(message)
