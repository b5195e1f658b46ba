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
import arviz as az
import numpy as np
import numpy.testing as npt
import pytest

from abundmc.backends.arviz import find_observations, to_inference_data
from abundmc.backends.base import MultiTrace
from abundmc.model import Model, ModelConfig
from tests.models import filled_trace, simple_data


@pytest.fixture
def model():
    return Model(simple_data(), ModelConfig.covariate(count=False, validation=False))


class TestToInferenceData:
    def test_groups(self, model):
        mtrace = MultiTrace([filled_trace(model, 10, chain=c, seed=c) for c in range(2)])
        idata = to_inference_data(mtrace, model=model, attrs={"sampling_time": 1.5})
        assert isinstance(idata, az.InferenceData)
        assert set(idata.groups()) == {
            "posterior",
            "sample_stats",
            "posterior_predictive",
            "observed_data",
        }
        assert set(idata.posterior.data_vars) == set(model.trace_vars)
        assert idata.posterior.sizes["chain"] == 2
        assert idata.posterior.sizes["draw"] == 10
        assert idata.posterior["N"].dims == ("chain", "draw", "site")
        assert idata.posterior["lambda"].dims == ("chain", "draw", "site")
        npt.assert_array_equal(idata.posterior["N"].values[1], mtrace.get_values("N", chains=1))
        assert idata.posterior.attrs["sampling_time"] == 1.5
        assert "model_config" in idata.posterior.attrs

    def test_sample_stats_are_labelled_by_block(self, model):
        mtrace = MultiTrace([filled_trace(model, 10)])
        idata = to_inference_data(mtrace, model=model)
        assert set(idata.sample_stats.data_vars) == {"N_accepted", "N_tune", "beta0_accepted"}
        npt.assert_array_equal(idata.sample_stats["beta0_accepted"].values[0], np.arange(10.0))

    def test_fit_statistics(self, model):
        idata = to_inference_data(MultiTrace([filled_trace(model, 10)]), model=model)
        npt.assert_array_equal(idata.posterior_predictive["fit_y"].values, [np.arange(10.0)])

    def test_observed_data(self, model):
        idata = to_inference_data(MultiTrace([filled_trace(model, 3)]), model=model)
        assert set(idata.observed_data.data_vars) == {"y", "v"}
        assert idata.observed_data["y"].dims == ("acoustic_visit",)
        npt.assert_array_equal(idata.observed_data["v"].values, [4, 0, 2, 6, 1])

    def test_unequal_chains(self, model, caplog):
        traces = [
            filled_trace(model, 10, chain=0, seed=0),
            filled_trace(model, 2, chain=1, draws=10, seed=1),
            filled_trace(model, 8, chain=2, draws=10, seed=2),
        ]
        for trace in traces:
            trace.close()
        with caplog.at_level("WARNING", logger="abundmc"):
            idata = to_inference_data(MultiTrace(traces), model=model)
        assert "unequal lengths" in caplog.text
        assert idata.posterior.sizes["chain"] == 2
        assert idata.posterior.sizes["draw"] == 8
        npt.assert_array_equal(idata.posterior.chain.values, [0, 1])

    def test_accepts_list_of_traces(self, model):
        idata = to_inference_data([filled_trace(model, 4)], model=model)
        assert idata.posterior.sizes["draw"] == 4

    def test_model_from_context(self, model):
        with model:
            idata = to_inference_data(MultiTrace([filled_trace(model, 4)]))
        assert idata.posterior.sizes["draw"] == 4


def test_find_observations():
    model = Model(simple_data())
    obs = find_observations(model)
    assert set(obs) == {"y", "v", "c", "k", "n"}
    npt.assert_array_equal(obs["c"], [1, 2, 3, 2, 4])
    npt.assert_array_equal(obs["k"], [2, 3])
    assert find_observations(Model(simple_data(), ModelConfig.prior_only())) == {}
