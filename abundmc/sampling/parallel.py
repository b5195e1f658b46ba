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
"""Run chains in worker processes.

Every chain is an independent task: the model, the sweep and the chain's
random stream are pickled with cloudpickle and sent to a worker, which
returns the filled trace. A chain computes the same draws whether it runs
here or in the parent process.
"""

import logging
import multiprocessing
import threading

from collections import namedtuple
from concurrent.futures import ProcessPoolExecutor, as_completed

import cloudpickle

from threadpoolctl import threadpool_limits

from abundmc.util import get_state_from_generator, random_generator_from_state

__all__ = ["Draw", "ChainTask", "make_tasks", "run_chains"]

logger = logging.getLogger(__name__)

Draw = namedtuple("Draw", ["chain", "is_last", "draw_idx", "tuning", "stats", "point"])

ChainTask = namedtuple("ChainTask", ["chain", "start", "rng_state"])


def _cpu_count():
    """Try to guess the number of CPUs in the system.

    We use the number provided by multiprocessing, but assume
    that half of the cpus are only hardware threads and ignore those.
    """
    try:
        cpus = multiprocessing.cpu_count() // 2
    except NotImplementedError:
        cpus = 1
    return max(cpus, 1)


def _run_chain(pickled_sampler, task, cancel, blas_cores):
    sampler = cloudpickle.loads(pickled_sampler)
    rng = random_generator_from_state(task.rng_state)
    with threadpool_limits(limits=blas_cores):
        trace = sampler(chain=task.chain, start=task.start, rng=rng, cancel=cancel)
    return task.chain, cloudpickle.dumps(trace)


def _forward_cancel(source, target, done):
    while True:
        if source.is_set():
            target.set()
            return
        if done.wait(0.1):
            return


def run_chains(sampler, tasks, *, cores, cancel=None, blas_cores=None, mp_ctx=None, on_done=None):
    """Run ``sampler`` for every chain task in a pool of ``cores`` processes.

    Parameters
    ----------
    sampler: callable
        ``sampler(chain=, start=, rng=, cancel=)`` returning a closed trace.
        Must be serializable with cloudpickle.
    tasks: list of ChainTask
    cores: int
        Number of worker processes.
    cancel: Event-like, optional
        Stops every chain at its next sweep boundary once set. Mirrored into
        an event shared with the workers.
    on_done: callable, optional
        Called with each finished trace in completion order.

    Returns
    -------
    list of traces ordered by chain number.
    """
    if mp_ctx is None:
        mp_ctx = multiprocessing.get_context("spawn")
    elif isinstance(mp_ctx, str):
        mp_ctx = multiprocessing.get_context(mp_ctx)
    pickled_sampler = cloudpickle.dumps(sampler)

    results = {}
    with mp_ctx.Manager() as manager:
        shared_cancel = manager.Event()
        done = threading.Event()
        watcher = None
        if cancel is not None:
            watcher = threading.Thread(
                target=_forward_cancel, args=(cancel, shared_cancel, done), daemon=True
            )
            watcher.start()
        try:
            with ProcessPoolExecutor(max_workers=cores, mp_context=mp_ctx) as executor:
                futures = [
                    executor.submit(_run_chain, pickled_sampler, task, shared_cancel, blas_cores)
                    for task in tasks
                ]
                try:
                    for future in as_completed(futures):
                        chain, pickled_trace = future.result()
                        trace = cloudpickle.loads(pickled_trace)
                        results[chain] = trace
                        if on_done is not None:
                            on_done(trace)
                except KeyboardInterrupt:
                    logger.warning("Sampling interrupted, stopping the remaining chains")
                    shared_cancel.set()
                    # Workers stop at their next sweep and return what they have
                    for future in futures:
                        if future.cancelled() or future.exception() is not None:
                            continue
                        chain, pickled_trace = future.result()
                        results.setdefault(chain, cloudpickle.loads(pickled_trace))
        finally:
            done.set()
            if watcher is not None:
                watcher.join()
    return [results[task.chain] for task in tasks if task.chain in results]


def make_tasks(chains, starts, rngs):
    return [
        ChainTask(chain, start, get_state_from_generator(rng))
        for chain, start, rng in zip(chains, starts, rngs)
    ]
