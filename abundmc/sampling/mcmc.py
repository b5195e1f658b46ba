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
"""Functions for MCMC sampling."""

import logging
import time

from collections.abc import Iterator, Mapping, Sequence
from typing import Any, Literal

import numpy as np

from arviz import InferenceData
from rich.theme import Theme
from threadpoolctl import threadpool_limits
from typing_extensions import Protocol, TypeAlias

from abundmc.backends.arviz import to_inference_data
from abundmc.backends.base import MultiTrace
from abundmc.backends.ndarray import NDArray
from abundmc.exceptions import ConfigurationError, SamplingError
from abundmc.model import Model, modelcontext
from abundmc.progress_bar import default_progress_theme, make_sampling_progress
from abundmc.sampling.forward import draw_replicates
from abundmc.sampling.parallel import Draw, _cpu_count, make_tasks, run_chains
from abundmc.stats.convergence import log_warnings, run_convergence_checks, warn_acceptance
from abundmc.stats.fit import bayesian_p_values, fit_names, fit_statistics
from abundmc.step_methods import assign_step_methods
from abundmc.step_methods.compound import BlockedStep, CompoundStep, flatten_steps
from abundmc.util import RandomSeed, get_rngs_per_chain

__all__ = ["sample", "init_traces"]

_log = logging.getLogger(__name__)

Step: TypeAlias = BlockedStep | CompoundStep


class SamplingIteratorCallback(Protocol):
    """Signature of the callable that may be passed to `sample(callback=...)`."""

    def __call__(self, trace: NDArray, draw: Draw):
        pass


def _print_step_hierarchy(s: Step, level: int = 0) -> None:
    if isinstance(s, CompoundStep):
        _log.info(">" * level + "CompoundStep")
        for i in s.methods:
            _print_step_hierarchy(i, level + 1)
    else:
        varnames = ", ".join(s.vars)
        _log.info(">" * level + f"{s.__class__.__name__}: [{varnames}]")


def _check_positive_int(name, value, minimum=1):
    if not isinstance(value, int | np.integer) or isinstance(value, bool) or value < minimum:
        raise ConfigurationError(f"Argument `{name}` must be an integer >= {minimum}, got {value!r}")


def init_traces(model: Model, step: Step, draws: int, compute_posterior_predictive: bool, chain: int):
    """Create and set up the trace backend of one chain."""
    steps = flatten_steps(step)
    trace = NDArray(
        model=model, fit_names=fit_names(model) if compute_posterior_predictive else None
    )
    trace.setup(
        draws,
        chain,
        sampler_vars=[
            {name: dtype for name, (dtype, _) in s.stats_dtypes_shapes.items()} for s in steps
        ],
        sampler_names=[s.vars[0] for s in steps],
    )
    return trace


def _initial_points(
    model: Model,
    initvals,
    rngs: Sequence[np.random.Generator],
    jitter: bool,
    jitter_max_retries: int,
) -> list[dict[str, np.ndarray]]:
    """Starting point of every chain, checked for a finite log posterior.

    Jittered points are redrawn up to ``jitter_max_retries`` times until
    the log posterior is finite. The jitter consumes the chain's own
    random stream, before any sweep.
    """
    chains = len(rngs)
    if initvals is None or isinstance(initvals, Mapping):
        initvals = [initvals] * chains
    elif len(initvals) != chains:
        raise ConfigurationError(
            f"Number of initval dicts ({len(initvals)}) does not match the number of chains ({chains})."
        )

    points = []
    for chain, (ivals, rng) in enumerate(zip(initvals, rngs)):
        attempts = jitter_max_retries + 1 if jitter else 1
        for attempt in range(attempts):
            seed = int(rng.integers(2**30)) if jitter else None
            point = model.initial_point(ivals, jitter=jitter, random_seed=seed)
            try:
                model.check_start_vals(point)
            except SamplingError:
                if attempt == attempts - 1:
                    raise
                _log.debug(f"Jittered start of chain {chain} is invalid, retrying")
            else:
                break
        points.append(point)
    return points


class ChainSampler:
    """Runs one chain of the sweep from a start point to a closed trace.

    Instances are pickled and sent to the workers when chains run in
    parallel, so they only hold the model, the sweep and the run settings.
    """

    def __init__(
        self,
        *,
        model: Model,
        step: Step,
        draws: int,
        tune: int,
        thin: int,
        compute_posterior_predictive: bool,
        deadline: float | None = None,
        callback: SamplingIteratorCallback | None = None,
    ):
        self.model = model
        self.step = step
        self.draws = draws
        self.tune = tune
        self.thin = thin
        self.compute_posterior_predictive = compute_posterior_predictive
        self.deadline = deadline
        self.callback = callback

    @property
    def total(self) -> int:
        return self.tune + self.draws * self.thin

    def __call__(self, *, chain, start, rng, cancel=None, progress=None) -> NDArray:
        trace = init_traces(
            self.model, self.step, self.draws, self.compute_posterior_predictive, chain
        )
        sweeps = _iter_sample(
            draws=self.draws,
            tune=self.tune,
            thin=self.thin,
            step=self.step,
            start=start,
            trace=trace,
            chain=chain,
            rng=rng,
            model=self.model,
            compute_posterior_predictive=self.compute_posterior_predictive,
            deadline=self.deadline,
            cancel=cancel,
        )
        try:
            for draw in sweeps:
                if progress is not None:
                    progress(draw)
                if self.callback is not None and not draw.tuning and draw.point is not None:
                    self.callback(trace=trace, draw=draw)
        except KeyboardInterrupt:
            _log.warning(f"Sampling of chain {chain} interrupted after {len(trace)} draws")
        finally:
            sweeps.close()
        return trace


def _iter_sample(
    *,
    draws: int,
    tune: int,
    thin: int,
    step: Step,
    start: dict[str, np.ndarray],
    trace: NDArray,
    chain: int = 0,
    rng: np.random.Generator,
    model: Model | None = None,
    compute_posterior_predictive: bool = True,
    deadline: float | None = None,
    cancel=None,
) -> Iterator[Draw]:
    """Sample one chain with a generator (singleprocess).

    Runs ``tune + draws * thin`` sweeps; every ``thin``-th sweep after the
    tuning phase is recorded in ``trace`` together with the fit statistics
    of a replicated dataset. ``deadline`` (a ``time.time()`` value) and
    ``cancel`` are checked before each sweep.

    Yields
    ------
    Draw
        One per sweep; ``point`` is None for sweeps that are not recorded.
    """
    model = modelcontext(model)
    total = tune + draws * thin

    step.set_rng(rng)
    point = start

    try:
        step.tune = bool(tune)
        step.reset_tuning()
        for i in range(total):
            if deadline is not None and time.time() >= deadline:
                _log.warning(
                    f"Chain {chain} reached the time limit after {i} sweeps ({len(trace)} draws)"
                )
                break
            if cancel is not None and cancel.is_set():
                _log.warning(f"Chain {chain} cancelled after {i} sweeps ({len(trace)} draws)")
                break
            if i == tune:
                step.stop_tuning()
            point, stats = step.step(point)
            tuning = i < tune
            if tuning or (i - tune + 1) % thin:
                yield Draw(chain, i == total - 1, i, tuning, stats, None)
                continue
            fit_stats = None
            if compute_posterior_predictive:
                replicate = draw_replicates(model, point, rng)
                fit_stats = fit_statistics(model, point, replicate)
            trace.record(point, stats, fit_stats)
            yield Draw(chain, i == total - 1, i, tuning, stats, point)
    finally:
        trace.close()


def sample(
    model: Model | None = None,
    *,
    draws: int = 1000,
    tune: int = 1000,
    chains: int | None = None,
    cores: int | None = None,
    thin: int = 1,
    random_seed: RandomSeed | np.random.Generator = None,
    initvals: Mapping[str, Any] | Sequence[Mapping[str, Any] | None] | None = None,
    scaling: Mapping[str, float] | None = None,
    tune_interval: int = 100,
    max_time: float | None = None,
    cancel=None,
    progressbar: bool = True,
    progressbar_theme: Theme | None = default_progress_theme,
    compute_posterior_predictive: bool = True,
    compute_convergence_checks: bool = True,
    return_inferencedata: bool = True,
    callback: SamplingIteratorCallback | None = None,
    jitter: bool = False,
    jitter_max_retries: int = 10,
    blas_cores: int | None | Literal["auto"] = "auto",
    mp_ctx=None,
) -> InferenceData | MultiTrace:
    r"""Draw samples from the posterior of the abundance model.

    Every chain runs ``tune`` adaptation sweeps followed by ``draws * thin``
    sweeps of which every ``thin``-th is retained. One sweep updates all
    active blocks in a fixed order: N, beta0, beta1, mu_alpha, alpha1,
    alpha2, gamma0, gamma1, gamma_day, tau_day, omega, a_phi, phi, K,
    mu_phi, phi1.

    Parameters
    ----------
    model : Model (optional if in ``with`` context)
        Model to sample from.
    draws : int
        The number of samples to retain per chain. Defaults to 1000.
    tune : int
        Number of burn-in sweeps, during which the Metropolis proposal
        scales are adapted. Tuning sweeps are discarded. Defaults to 1000.
    chains : int
        The number of chains to sample. Running independent chains is important for some
        convergence statistics and can also reveal multiple modes in the posterior. If ``None``,
        then set to either ``cores`` or 2, whichever is larger.
    cores : int
        The number of chains to run in parallel. If ``None``, set to the number of CPUs in the
        system, but at most 4. With ``cores == 1`` the chains run one after the other in this
        process; the draws do not depend on this choice.
    thin : int
        Keep one of every ``thin`` post-tuning sweeps.
    random_seed : int, array-like of int, or Generator, optional
        Random seed(s) used by the sampling steps. Each chain gets its own
        stream spawned from it. If a list or tuple is passed, it must have
        as many entries as there are chains.
    initvals : dict, or array of dict, optional
        Initial values that override the defaults, for all chains or per chain.
    scaling : dict, optional
        Initial proposal standard deviation per Metropolis block, e.g. ``{"beta0": 0.1}``.
    tune_interval : int
        Number of sweeps between proposal scale adaptations.
    max_time : float, optional
        Wall-clock limit in seconds. Chains stop at the first sweep
        boundary after the limit and keep the draws made so far.
    cancel : Event-like, optional
        Object with an ``is_set()`` method, e.g. :class:`threading.Event`.
        Setting it stops all chains at their next sweep boundary.
    progressbar : bool, optional default=True
        Whether or not to display a progress bar in the command line.
    progressbar_theme : Theme
        Optional custom theme for the progress bar.
    compute_posterior_predictive : bool, default=True
        Draw a replicated dataset at every retained draw and record the
        observed and replicated Freeman-Tukey discrepancies.
    compute_convergence_checks : bool, default=True
        Whether to compute sampler statistics like Gelman-Rubin and ``effective_n``.
    return_inferencedata : bool
        With ``True`` (default) return an :class:`arviz:arviz.InferenceData`,
        otherwise the :class:`~abundmc.backends.base.MultiTrace`.
    callback : function, default=None
        A function which gets called for every retained draw in the process
        running the chain. The ``trace`` argument is the chain's backend and
        ``draw`` a :class:`~abundmc.sampling.parallel.Draw`. Sampling of the
        chain can be interrupted by throwing a ``KeyboardInterrupt`` in the callback.
    jitter : bool
        Move the default start of the scalar parameters by a uniform offset
        on their unconstrained scale.
    jitter_max_retries : int
        Maximum number of repeated attempts (per chain) at creating a jittered
        start point with a finite log posterior.
    blas_cores: int or "auto" or None, default = "auto"
        The total number of threads blas and openmp functions should use during sampling.
        Setting it to "auto" will ensure that the total number of active blas threads is the
        same as the `cores` argument. If set to an integer, the sampler will try to use that total
        number of blas threads. If `blas_cores` is not divisible by `cores`, it might get rounded
        down. If set to None, this will keep the default behavior of whatever blas implementation
        is used at runtime.
    mp_ctx : multiprocessing.context.BaseContent
        A multiprocessing context for parallel sampling. Defaults to "spawn".

    Returns
    -------
    trace : abundmc.backends.base.MultiTrace or arviz.InferenceData
        A ``MultiTrace`` or ArviZ ``InferenceData`` object that contains the samples.

    Examples
    --------
    .. code-block:: ipython

        In [1]: import abundmc as am
           ...: data, truth = am.simulate_dataset(20, random_seed=1)
           ...: with am.Model(data):
           ...:     idata = am.sample(draws=500, tune=500, random_seed=1)
    """
    model = modelcontext(model)

    if cores is None:
        cores = min(4, _cpu_count())
    _check_positive_int("cores", cores)
    if chains is None:
        chains = max(2, cores)
    _check_positive_int("chains", chains)
    _check_positive_int("draws", draws)
    _check_positive_int("thin", thin)
    _check_positive_int("tune", tune, minimum=0)
    _check_positive_int("jitter_max_retries", jitter_max_retries, minimum=0)
    if max_time is not None and not max_time > 0:
        raise ConfigurationError(f"Argument `max_time` must be positive, got {max_time}")

    if blas_cores == "auto":
        blas_cores = cores
    elif blas_cores is not None:
        _check_positive_int("blas_cores", blas_cores)

    rngs = get_rngs_per_chain(random_seed, chains)
    step = assign_step_methods(model, scaling=scaling, tune_interval=tune_interval)
    initial_points = _initial_points(model, initvals, rngs, jitter, jitter_max_retries)

    t_start = time.time()
    sampler = ChainSampler(
        model=model,
        step=step,
        draws=draws,
        tune=tune,
        thin=thin,
        compute_posterior_predictive=compute_posterior_predictive,
        deadline=None if max_time is None else t_start + max_time,
        callback=callback,
    )

    parallel = cores > 1 and chains > 1
    if parallel:
        _log.info(f"Multiprocess sampling ({chains} chains in {cores} jobs)")
        _print_step_hierarchy(step)
        traces = _mp_sample(
            sampler,
            initial_points,
            rngs,
            cores=cores,
            cancel=cancel,
            blas_cores=None if blas_cores is None else max(1, blas_cores // cores),
            mp_ctx=mp_ctx,
            progressbar=progressbar,
            progressbar_theme=progressbar_theme,
        )
    else:
        _log.info(f"Sequential sampling ({chains} chains in 1 job)")
        _print_step_hierarchy(step)
        with threadpool_limits(limits=blas_cores):
            traces = _sample_many(
                sampler,
                initial_points,
                rngs,
                cancel=cancel,
                progressbar=progressbar,
                progressbar_theme=progressbar_theme,
            )

    t_sampling = time.time() - t_start
    if not traces or not any(len(t) for t in traces):
        raise SamplingError("No draws were retained before sampling stopped.")

    return _sample_return(
        traces=traces,
        tune=tune,
        t_sampling=t_sampling,
        compute_convergence_checks=compute_convergence_checks,
        return_inferencedata=return_inferencedata,
        model=model,
    )


def _sample_return(
    *,
    traces: Sequence[NDArray],
    tune: int,
    t_sampling: float,
    compute_convergence_checks: bool,
    return_inferencedata: bool,
    model: Model,
) -> InferenceData | MultiTrace:
    """Pick/slice chains and run diagnostics.

    This is a final processing step for the trace objects.
    """
    mtrace = MultiTrace(traces)
    n_chains = mtrace.nchains
    n_draws = len(mtrace)
    _log.info(
        f'Sampling {n_chains} chain{"s" if n_chains > 1 else ""} for {tune:_d} tune and {n_draws:_d} draw iterations '
        f"({tune*n_chains:_d} + {n_draws*n_chains:_d} draws total) "
        f"took {t_sampling:.0f} seconds."
    )

    idata = None
    if compute_convergence_checks or return_inferencedata:
        attrs = {"sampling_time": t_sampling, "tuning_steps": tune}
        idata = to_inference_data(mtrace, model=model, attrs=attrs)

    if compute_convergence_checks:
        warns = run_convergence_checks(idata, model)
        warns += warn_acceptance(mtrace)
        log_warnings(warns)

    if mtrace.fit_names:
        p_values = bayesian_p_values(mtrace)
        _log.info(
            "Bayesian p-values: " + ", ".join(f"{k}={v:.3f}" for k, v in p_values.items())
        )

    if return_inferencedata:
        return idata
    return mtrace


def _sample_many(
    sampler: ChainSampler,
    initial_points: Sequence[dict[str, np.ndarray]],
    rngs: Sequence[np.random.Generator],
    *,
    cancel=None,
    progressbar: bool = True,
    progressbar_theme: Theme | None = default_progress_theme,
) -> list[NDArray]:
    """Sample all chains one after the other in this process.

    An interrupted chain keeps its draws and the remaining chains are not started.
    """
    traces = []
    with make_sampling_progress(progressbar, progressbar_theme) as progress:
        for chain, (start, rng) in enumerate(zip(initial_points, rngs)):
            task = progress.add_task(
                "", total=sampler.total, chain=chain, tune="Tuning", accept_rate=0.0
            )
            update = _progress_updater(progress, task, sampler)
            trace = sampler(chain=chain, start=start, rng=rng, cancel=cancel, progress=update)
            traces.append(trace)
            if len(trace) < sampler.draws:
                break
    return traces


def _progress_updater(progress, task, sampler: ChainSampler):
    """Callback advancing the row of one chain; shows the running N-block acceptance."""
    steps = flatten_steps(sampler.step)
    n_idx = next((s for s, step in enumerate(steps) if step.vars == ["N"]), None)
    state = {"accepted": 0.0, "sweeps": 0}

    def update(draw: Draw):
        if n_idx is not None:
            state["accepted"] += draw.stats[n_idx]["accepted"]
            state["sweeps"] += 1
        progress.update(
            task,
            completed=draw.draw_idx + 1,
            tune="Tuning" if draw.tuning else "Sampling",
            accept_rate=state["accepted"] / max(state["sweeps"], 1),
        )

    return update


def _mp_sample(
    sampler: ChainSampler,
    initial_points: Sequence[dict[str, np.ndarray]],
    rngs: Sequence[np.random.Generator],
    *,
    cores: int,
    cancel=None,
    blas_cores: int | None = None,
    mp_ctx=None,
    progressbar: bool = True,
    progressbar_theme: Theme | None = default_progress_theme,
) -> list[NDArray]:
    """Sample all chains in a pool of ``cores`` worker processes.

    The progress display advances per finished chain.
    """
    chains = list(range(len(initial_points)))
    tasks = make_tasks(chains, initial_points, rngs)
    with make_sampling_progress(progressbar, progressbar_theme) as progress:
        rows = {
            chain: progress.add_task(
                "", total=sampler.total, chain=chain, tune="Running", accept_rate=0.0
            )
            for chain in chains
        }

        def on_done(trace: NDArray):
            accept_rate = 0.0
            if "N" in trace.sampler_names and len(trace):
                n_idx = trace.sampler_names.index("N")
                accept_rate = float(np.mean(trace.get_sampler_stats("accepted", n_idx)))
            progress.update(
                rows[trace.chain], completed=sampler.total, tune="Done", accept_rate=accept_rate
            )

        return run_chains(
            sampler,
            tasks,
            cores=cores,
            cancel=cancel,
            blas_cores=blas_cores,
            mp_ctx=mp_ctx,
            on_done=on_done,
        )
