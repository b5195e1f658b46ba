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
from __future__ import annotations

import logging
import threading

from dataclasses import dataclass, fields, replace

import numpy as np

from abundmc.data import DataStore
from abundmc.distributions.continuous import gamma_logp, normal_logp
from abundmc.distributions.priors import Gamma, Normal, Prior, Uniform
from abundmc.exceptions import ConfigurationError, SamplingError, ShapeError
from abundmc.math import invlogit, logit
from abundmc.model import loglik
from abundmc.util import RandomGenerator, get_random_generator

__all__ = [
    "PRIORS",
    "SWEEP_ORDER",
    "ModelConfig",
    "Model",
    "modelcontext",
]

_log = logging.getLogger(__name__)

PRIORS: dict[str, Prior] = {
    "beta0": Normal(0, 10),
    "beta1": Normal(0, 10),
    "mu_alpha": Uniform(0, 1),
    "alpha1": Uniform(0, 1000),
    "alpha2": Normal(0, 10),
    "gamma0": Normal(0, 10),
    "gamma1": Normal(0, 10),
    "omega": Uniform(0, 1000),
    "tau_day": Gamma(0.01, 0.01),
    "a_phi": Uniform(0, 100),
    "mu_phi": Uniform(0, 1),
    "phi1": Normal(0, 10),
}

# Fixed order in which the blocks are visited within one sweep
SWEEP_ORDER = (
    "N",
    "beta0",
    "beta1",
    "mu_alpha",
    "alpha1",
    "alpha2",
    "gamma0",
    "gamma1",
    "gamma_day",
    "tau_day",
    "omega",
    "a_phi",
    "phi",
    "K",
    "mu_phi",
    "phi1",
)

DEFAULT_INITVALS = {
    "beta0": 0.0,
    "beta1": 0.0,
    "mu_alpha": 0.5,
    "alpha1": 0.1,
    "alpha2": 0.0,
    "gamma0": 0.0,
    "gamma1": 0.0,
    "omega": 1.0,
    "tau_day": 1.0,
    "a_phi": 1.0,
    "mu_phi": 0.5,
    "phi1": 0.0,
}

INTEGER_VARS = ("N", "K")

# Layers whose log-likelihood references each top-level parameter
LAYER_DEPENDENCIES = {
    "beta0": ("abundance",),
    "beta1": ("abundance",),
    "mu_alpha": ("acoustic",),
    "alpha1": ("acoustic",),
    "alpha2": ("acoustic",),
    "gamma0": ("vocal", "validation"),
    "gamma1": ("vocal", "validation"),
    "omega": ("vocal", "validation"),
    "tau_day": (),
    "a_phi": (),
    "mu_phi": ("count",),
    "phi1": ("count",),
}

# Hyperparameters and the vector whose prior they parametrize
HYPERPARAMETERS = {"tau_day": "gamma_day", "a_phi": "phi"}

# Poisson rates past this overflow numpy's sampler
MAX_LOG_RATE = 40.0


@dataclass(frozen=True)
class ModelConfig:
    """Switches selecting a variant of the abundance model.

    The first four flags choose the covariate structure; the remaining ones
    switch whole data layers on or off. Parameters of a disabled part are
    neither sampled nor recorded. With every data layer (and the abundance
    layer) disabled the target distribution is the prior of ``beta0`` and
    ``beta1``.
    """

    alpha2: bool = True
    day_effect: bool = True
    dispersion: bool = False
    gamma1: bool = True
    abundance: bool = True
    acoustic: bool = True
    vocal: bool = True
    count: bool = True
    validation: bool = True

    def __post_init__(self):
        data_layers = [name for name in ("acoustic", "vocal", "count", "validation") if getattr(self, name)]
        if data_layers and not self.abundance:
            raise ConfigurationError(
                f"Data layers {data_layers} reference the latent abundance; "
                "they cannot be enabled without the abundance layer"
            )

    @classmethod
    def covariate(cls, **kwargs) -> ModelConfig:
        """Variant with the ``alpha2`` and ``gamma1`` covariates and no random effects."""
        return cls(**{"alpha2": True, "day_effect": False, "dispersion": False, "gamma1": True, **kwargs})

    @classmethod
    def random_effects(cls, **kwargs) -> ModelConfig:
        """Single-covariate variant with the day random effect and per-visit dispersion."""
        return cls(**{"alpha2": False, "day_effect": True, "dispersion": True, "gamma1": False, **kwargs})

    @classmethod
    def prior_only(cls) -> ModelConfig:
        return cls(abundance=False, acoustic=False, vocal=False, count=False, validation=False)

    def replace(self, **kwargs) -> ModelConfig:
        return replace(self, **kwargs)

    @property
    def active_layers(self) -> tuple[str, ...]:
        return tuple(name for name in loglik.LAYERS if getattr(self, name))

    def __str__(self):
        on = [f.name for f in fields(self) if getattr(self, f.name)]
        return f"ModelConfig({', '.join(on) or 'prior only'})"


class ModelManager(threading.local):
    """Keeps track of currently active model contexts."""

    def __init__(self):
        self.active_contexts: list[Model] = []

    @property
    def current_context(self) -> Model | None:
        return self.active_contexts[-1] if self.active_contexts else None


# MODEL_MANAGER is instantiated at import, and serves as a truth for
# what any currently active model contexts are.
MODEL_MANAGER = ModelManager()


def modelcontext(model: Model | None) -> Model:
    """Return the given model or, if None was supplied, try to find one in the context stack."""
    if model is None:
        model = Model.get_context(error_if_none=False)

        if model is None:
            raise TypeError("No model on context stack.")
    return model


class Model:
    """The acoustic / point-count N-mixture model bound to one dataset.

    Parameters
    ----------
    data: DataStore
        The survey data.
    config: ModelConfig, optional
        Model variant. Defaults to ``ModelConfig()``.
    fixed: dict, optional
        Parameters held at the given values instead of being sampled.

    Examples
    --------
    .. code-block:: python

        with Model(data, ModelConfig.covariate()) as model:
            idata = abundmc.sample(draws=2000, tune=1000)
    """

    def __init__(self, data: DataStore, config: ModelConfig | None = None, *, fixed=None):
        if not isinstance(data, DataStore):
            raise TypeError(f"data must be a DataStore, got {type(data)}")
        self.data = data
        self.config = ModelConfig() if config is None else config
        self.vars = self._active_vars()
        self.priors = {name: PRIORS[name] for name in self.vars if name in PRIORS}

        fixed = {} if fixed is None else dict(fixed)
        unknown = set(fixed) - set(self.vars)
        if unknown:
            raise ConfigurationError(
                f"Cannot fix {sorted(unknown)}: not a parameter of this model. "
                f"Valid names are {list(self.vars)}"
            )
        self.fixed = {name: self._coerce(name, value) for name, value in fixed.items()}
        self.free_vars = [name for name in self.vars if name not in self.fixed]

    def _active_vars(self) -> list[str]:
        config = self.config
        data = self.data
        delta_used = config.vocal or config.validation
        active = {
            "N": config.abundance,
            "beta0": True,
            "beta1": True,
            "mu_alpha": config.acoustic,
            "alpha1": config.acoustic,
            "alpha2": config.acoustic and config.alpha2,
            "gamma0": delta_used,
            "gamma1": delta_used and config.gamma1,
            "gamma_day": delta_used and config.day_effect,
            "tau_day": delta_used and config.day_effect,
            "omega": delta_used,
            "a_phi": config.vocal and config.dispersion,
            "phi": config.vocal and config.dispersion and len(data.acoustic) > 0,
            "K": config.validation and len(data.validation) > 0 and not data.validation.observed_K,
            "mu_phi": config.count,
            "phi1": config.count,
        }
        return [name for name in SWEEP_ORDER if active[name]]

    def __enter__(self):
        MODEL_MANAGER.active_contexts.append(self)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        _ = MODEL_MANAGER.active_contexts.pop()

    @classmethod
    def get_context(cls, error_if_none=True) -> Model | None:
        model = MODEL_MANAGER.current_context
        if model is None and error_if_none:
            raise TypeError("No model on context stack")
        return model

    def __repr__(self):
        return (
            f"Model({self.data.n_sites} sites, {self.config}, "
            f"free={self.free_vars}, fixed={list(self.fixed)})"
        )

    # --- variables -----------------------------------------------------

    def shape(self, name) -> tuple[int, ...]:
        data = self.data
        return {
            "N": (data.n_sites,),
            "K": (len(data.validation),),
            "gamma_day": (data.n_days,),
            "phi": (len(data.acoustic),),
            "lambda": (data.n_sites,),
        }.get(name, ())

    def dtype(self, name) -> str:
        return "int64" if name in INTEGER_VARS else "float64"

    @property
    def deterministic_names(self) -> list[str]:
        names = []
        if "mu_alpha" in self.vars:
            names.append("alpha0")
        if "mu_phi" in self.vars:
            names.append("phi0")
        if "N" in self.vars:
            names.append("lambda")
        return names

    @property
    def trace_vars(self) -> list[str]:
        """Names recorded per retained draw: free variables then deterministics."""
        return self.free_vars + self.deterministic_names

    def deterministics(self, point) -> dict[str, np.ndarray]:
        out = {}
        if "mu_alpha" in self.vars:
            out["alpha0"] = logit(point["mu_alpha"])
        if "mu_phi" in self.vars:
            out["phi0"] = logit(point["mu_phi"])
        if "N" in self.vars:
            with np.errstate(over="ignore"):
                out["lambda"] = np.exp(loglik.log_lambda(self, point))
        return out

    def _coerce(self, name, value) -> np.ndarray:
        dtype = self.dtype(name)
        shape = self.shape(name)
        value = np.asarray(value)
        if value.shape != shape:
            if value.ndim == 0 and shape:
                value = np.full(shape, value)
            else:
                raise ShapeError(f"Invalid shape for {name}", actual=value.shape, expected=shape)
        if dtype == "int64":
            if not np.all(np.isfinite(value)) or not np.all(np.mod(value, 1) == 0):
                raise ConfigurationError(f"{name} must hold integers, got {value}")
        return value.astype(dtype)

    # --- log-densities -------------------------------------------------

    def gamma_day_logp(self, point, gamma_day=None):
        """Elementwise ``Normal(0, 1 / sqrt(tau_day))`` log-density of the day effects."""
        if gamma_day is None:
            gamma_day = point["gamma_day"]
        with np.errstate(divide="ignore"):
            sigma = 1.0 / np.sqrt(point["tau_day"])
        return normal_logp(gamma_day, 0.0, sigma)

    def phi_logp(self, point, phi=None):
        """Elementwise ``Gamma(a_phi, a_phi)`` log-density of the per-visit dispersion."""
        if phi is None:
            phi = point["phi"]
        return gamma_logp(phi, point["a_phi"], point["a_phi"])

    def prior_logps(self, point) -> dict[str, float]:
        out = {name: float(prior.logp(point[name])) for name, prior in self.priors.items()}
        if "gamma_day" in self.vars:
            out["gamma_day"] = float(np.sum(self.gamma_day_logp(point)))
        if "phi" in self.vars:
            out["phi"] = float(np.sum(self.phi_logp(point)))
        return out

    def prior_logp(self, point) -> float:
        return sum(self.prior_logps(point).values())

    def loglik(self, point) -> float:
        return loglik.model_loglik(self, point)

    def logp(self, point) -> float:
        """Unnormalized log posterior density at ``point``."""
        return self.prior_logp(point) + self.loglik(point)

    def point_logps(self, point, round_vals=2) -> dict[str, float]:
        """Log-density of every prior and data layer at ``point``, for debugging."""
        res = {**self.prior_logps(point), **loglik.layer_logps(self, point)}
        if round_vals is None:
            return res
        return {name: np.round(value, round_vals) for name, value in res.items()}

    def conditional_logp(self, name, point) -> float:
        """Sum of every term of the log posterior that references scalar parameter ``name``."""
        res = self.priors[name].logp(point[name])
        if not np.isfinite(res):
            return -np.inf
        for layer in LAYER_DEPENDENCIES[name]:
            if getattr(self.config, layer):
                res = res + np.sum(loglik.LAYERS[layer](self, point))
        child = HYPERPARAMETERS.get(name)
        if child == "gamma_day" and "gamma_day" in self.vars:
            res = res + np.sum(self.gamma_day_logp(point))
        elif child == "phi" and "phi" in self.vars:
            res = res + np.sum(self.phi_logp(point))
        return float(res)

    def phi_conditional_logp(self, point, phi):
        """Elementwise log full conditional of the per-visit dispersion at ``phi``."""
        res = self.phi_logp(point, phi)
        if self.config.vocal:
            res = res + loglik.vocal_logp(self, {**point, "phi": phi})
        return res

    def site_logp(self, point, N=None):
        return loglik.site_logp(self, point, N)

    # --- points --------------------------------------------------------

    def _default_value(self, name):
        data = self.data
        if name == "N":
            return data.counts.max_count() + 1
        if name == "K":
            lower, upper = data.K_bounds()
            return lower + (upper - lower) // 2
        if name == "gamma_day":
            return np.zeros(data.n_days)
        if name == "phi":
            return np.ones(len(data.acoustic))
        return DEFAULT_INITVALS[name]

    def initial_point(
        self,
        initvals: dict | None = None,
        *,
        jitter: bool = False,
        random_seed: RandomGenerator = None,
    ) -> dict[str, np.ndarray]:
        """Starting point of a chain.

        Defaults are overridden by ``initvals``. With ``jitter=True`` the free
        scalar parameters that were not supplied are moved by a ``U(-1, 1)``
        offset on their unconstrained scale.
        """
        initvals = {} if initvals is None else initvals
        unknown = set(initvals) - set(self.vars)
        if unknown:
            raise ConfigurationError(
                f"Some initial values do not belong to the model: {sorted(unknown)}. "
                f"Valid names are {list(self.vars)}"
            )
        clash = set(initvals) & set(self.fixed)
        if clash:
            raise ConfigurationError(f"Cannot set initial values of fixed parameters {sorted(clash)}")

        point = {name: self._coerce(name, self._default_value(name)) for name in self.vars}
        point.update(self.fixed)
        for name, value in initvals.items():
            point[name] = self._coerce(name, value)

        if jitter:
            rng = get_random_generator(random_seed)
            for name in self.free_vars:
                if name in initvals or name not in self.priors:
                    continue
                transform = self.priors[name].transform
                x = transform.forward(point[name]) + rng.uniform(-1, 1)
                point[name] = np.asarray(transform.backward(x), dtype="float64")
        return point

    def check_start_vals(self, point):
        """Raise :class:`SamplingError` if the log posterior is not finite at ``point``."""
        initial_eval = self.point_logps(point, round_vals=None)
        if not all(np.isfinite(v) for v in initial_eval.values()):
            raise SamplingError(
                "Initial evaluation of model at starting point failed!\n"
                f"Starting values:\n{point}\n\n"
                f"Logp initial evaluation results:\n{initial_eval}"
            )

    def draw_prior_point(self, random_seed: RandomGenerator = None) -> dict[str, np.ndarray]:
        """Draw every free parameter and latent variable from its prior."""
        rng = get_random_generator(random_seed)
        point = dict(self.fixed)

        def missing(name):
            return name in self.vars and name not in point

        for name, prior in self.priors.items():
            if missing(name):
                point[name] = np.asarray(prior.random(rng), dtype="float64")
        if missing("gamma_day"):
            sigma = 1.0 / np.sqrt(point["tau_day"])
            point["gamma_day"] = rng.normal(0.0, sigma, size=self.shape("gamma_day"))
        if missing("phi"):
            a_phi = point["a_phi"]
            point["phi"] = rng.gamma(a_phi, 1.0 / a_phi, size=self.shape("phi"))
        if missing("N"):
            log_lam = np.minimum(loglik.log_lambda(self, point), MAX_LOG_RATE)
            point["N"] = rng.poisson(np.exp(log_lam)).astype("int64")
        if missing("K"):
            tp = invlogit(loglik.logit_true_positive_rate(self, point))
            point["K"] = rng.binomial(self.data.val_v, tp).astype("int64")
        return point
