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
import threading

import numpy as np
import numpy.testing as npt
import pytest

from abundmc.exceptions import SamplingError
from abundmc.model import Model
from abundmc.sampling.mcmc import sample
from abundmc.sampling.parallel import ChainTask, _cpu_count, make_tasks
from abundmc.util import get_rngs_per_chain, random_generator_from_state
from tests.models import simple_data


@pytest.fixture(scope="module")
def model():
    return Model(simple_data())


def test_cpu_count():
    assert _cpu_count() >= 1


def test_make_tasks(model):
    rngs = get_rngs_per_chain(3, 2)
    starts = [model.initial_point(), model.initial_point({"omega": 2.0})]
    tasks = make_tasks([0, 1], starts, rngs)
    assert all(isinstance(task, ChainTask) for task in tasks)
    assert [task.chain for task in tasks] == [0, 1]
    assert tasks[1].start["omega"] == 2.0
    restored = random_generator_from_state(tasks[0].rng_state)
    assert restored.uniform() == rngs[0].uniform()


def test_parallel_matches_sequential(model):
    kwargs = dict(
        draws=20,
        tune=20,
        chains=3,
        random_seed=42,
        progressbar=False,
        compute_convergence_checks=False,
        return_inferencedata=False,
    )
    sequential = sample(model, cores=1, **kwargs)
    parallel = sample(model, cores=2, **kwargs)
    assert parallel.chains == [0, 1, 2]
    for name in model.trace_vars:
        npt.assert_array_equal(parallel.get_values(name), sequential.get_values(name))
    npt.assert_array_equal(parallel.get_fit_values("fit_c"), sequential.get_fit_values("fit_c"))
    npt.assert_array_equal(
        parallel.get_sampler_stats("accepted"), sequential.get_sampler_stats("accepted")
    )


def test_parallel_inferencedata(model, caplog_info):
    idata = sample(model, draws=10, tune=10, chains=2, cores=2, random_seed=1, progressbar=True)
    assert idata.posterior.sizes["chain"] == 2
    assert "Multiprocess sampling (2 chains in 2 jobs)" in caplog_info.text


def test_parallel_cancel(model):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(SamplingError, match="No draws"):
        sample(model, draws=10, tune=0, chains=2, cores=2, cancel=cancel, progressbar=False)


def test_parallel_seeds_per_chain(model):
    kwargs = dict(draws=10, tune=5, progressbar=False, return_inferencedata=False)
    parallel = sample(model, chains=2, cores=2, random_seed=[7, 8], **kwargs)
    single = sample(model, chains=1, cores=1, random_seed=[8], **kwargs)
    npt.assert_array_equal(parallel.get_values("N", chains=1), single.get_values("N"))
    assert not np.array_equal(parallel.get_values("N", chains=0), parallel.get_values("N", chains=1))
