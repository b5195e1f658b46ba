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
import numpy.testing as npt
import pytest

from abundmc.backends.arviz import to_inference_data
from abundmc.backends.base import MultiTrace
from abundmc.backends.ndarray import NDArray
from abundmc.math import invlogit, logit
from abundmc.model import Model, ModelConfig
from abundmc.sampling.forward import draw_replicates
from abundmc.stats.fit import (
    bayesian_p_values,
    expected_values,
    fit_names,
    fit_statistics,
    freeman_tukey,
)
from tests.models import point_for, simple_data


def fit_trace(model, point, n, chain=0, seed=0):
    """Trace of ``n`` draws at a fixed point, each with a fresh replicate."""
    rng = np.random.default_rng(seed)
    trace = NDArray(model, fit_names=fit_names(model))
    trace.setup(n, chain)
    for _ in range(n):
        trace.record(point, fit_stats=fit_statistics(model, point, draw_replicates(model, point, rng)))
    return trace


def test_freeman_tukey():
    npt.assert_allclose(freeman_tukey(np.array([4, 0, 9]), np.array([1, 1, 4])), [1, 1, 1])
    assert freeman_tukey(2.0, 2.0) == 0


def test_fit_names():
    assert fit_names(Model(simple_data())) == [
        "fit_y",
        "fit_y_pred",
        "fit_v",
        "fit_v_pred",
        "fit_c",
        "fit_c_pred",
    ]
    assert fit_names(Model(simple_data(), ModelConfig(count=False))) == [
        "fit_y",
        "fit_y_pred",
        "fit_v",
        "fit_v_pred",
    ]
    assert fit_names(Model(simple_data(), ModelConfig.prior_only())) == []


class TestFitStatistics:
    @pytest.fixture
    def model(self):
        return Model(simple_data())

    @pytest.fixture
    def point(self, model):
        return point_for(model, N=[4, 6], mu_alpha=0.4, mu_phi=0.7, omega=0.5, gamma0=0.2)

    def test_expected_values(self, model, point):
        data = model.data
        expected = expected_values(model, point)
        npt.assert_allclose(
            expected["y"],
            invlogit(logit(0.4) + point["alpha1"] * point["N"][data.acoustic.site]),
        )
        delta = np.exp(0.2 + point["gamma1"] * data.acoustic.x_delta)
        mu = (delta * point["N"][data.acoustic.site] + 0.5)[data.acoustic.detected]
        npt.assert_allclose(expected["v"], mu / (1 - np.exp(-mu)))
        npt.assert_allclose(expected["c"], point["N"][data.counts.site] * 0.7)

    def test_observed_replicate_has_no_excess(self, model, point):
        data = model.data
        replicate = {"y_pred": data.acoustic.y, "v_pred": data.acoustic.v, "c_pred": data.counts.c}
        fit = fit_statistics(model, point, replicate)
        assert set(fit) == set(fit_names(model))
        for key in "yvc":
            assert fit[f"fit_{key}"] == fit[f"fit_{key}_pred"]
            assert fit[f"fit_{key}"] > 0

    def test_observed_discrepancy(self, model, point):
        data = model.data
        expected = expected_values(model, point)
        rng = np.random.default_rng(0)
        fit = fit_statistics(model, point, draw_replicates(model, point, rng))
        npt.assert_allclose(fit["fit_c"], np.sum((np.sqrt(data.counts.c) - np.sqrt(expected["c"])) ** 2))
        npt.assert_allclose(fit["fit_y"], np.sum((np.sqrt(data.acoustic.y) - np.sqrt(expected["y"])) ** 2))

    def test_disabled_layers(self, point):
        model = Model(simple_data(), ModelConfig(count=False, validation=False))
        point = {k: v for k, v in point.items() if k in model.vars}
        fit = fit_statistics(model, point, draw_replicates(model, point, np.random.default_rng(1)))
        assert set(fit) == {"fit_y", "fit_y_pred", "fit_v", "fit_v_pred"}


class TestBayesianPValues:
    @pytest.fixture
    def model(self):
        return Model(simple_data())

    def test_sources_agree(self, model):
        point = model.initial_point()
        traces = [fit_trace(model, point, 50, chain=c, seed=c) for c in range(2)]
        mtrace = MultiTrace(traces)
        from_mtrace = bayesian_p_values(mtrace)
        assert set(from_mtrace) == {"y", "v", "c"}
        assert all(0 <= p <= 1 for p in from_mtrace.values())
        idata = to_inference_data(mtrace, model=model)
        assert bayesian_p_values(idata) == pytest.approx(from_mtrace)
        fit = traces[0].get_fit_values("fit_c")
        fit_pred = traces[0].get_fit_values("fit_c_pred")
        assert bayesian_p_values(traces[0])["c"] == pytest.approx(np.mean(fit_pred > fit))

    def test_detects_lack_of_fit(self, model):
        # detection probability far too low for the observed counts
        point = point_for(model, mu_phi=0.02)
        p = bayesian_p_values(fit_trace(model, point, 200))
        assert p["c"] < 0.05

    def test_without_fit_statistics(self, model):
        trace = NDArray(model)
        trace.setup(3, 0)
        for _ in range(3):
            trace.record(model.initial_point())
        assert bayesian_p_values(trace) == {}
        idata = to_inference_data(MultiTrace([trace]), model=model)
        with pytest.raises(ValueError, match="No fit statistics"):
            bayesian_p_values(idata)

    def test_invalid_source(self):
        with pytest.raises(TypeError, match="Cannot compute p-values"):
            bayesian_p_values({"fit_y": [1.0]})
