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
import logging
import threading

import arviz as az
import numpy as np
import numpy.testing as npt
import pytest

from abundmc.backends.base import MultiTrace
from abundmc.exceptions import ConfigurationError, SamplingError
from abundmc.model import Model, ModelConfig
from abundmc.sampling.forward import simulate_dataset
from abundmc.sampling.mcmc import ChainSampler, _initial_points, init_traces, sample
from abundmc.stats.fit import bayesian_p_values
from abundmc.step_methods import assign_step_methods
from abundmc.util import get_rngs_per_chain
from tests.models import simple_data, simulated_data

FAST = {"cores": 1, "progressbar": False, "compute_convergence_checks": False}


@pytest.fixture
def model():
    return Model(simple_data())


class TestSample:
    def test_inferencedata(self, model):
        idata = sample(model, draws=30, tune=20, chains=2, random_seed=1, **FAST)
        assert isinstance(idata, az.InferenceData)
        assert idata.posterior.sizes["chain"] == 2
        assert idata.posterior.sizes["draw"] == 30
        assert set(idata.posterior.data_vars) == set(model.trace_vars)
        assert {"N_accepted", "beta0_scaling", "gamma_day_accepted", "K_tune"} <= set(
            idata.sample_stats.data_vars
        )
        assert not idata.sample_stats["beta0_tune"].values.any()
        assert set(idata.posterior_predictive.data_vars) == {
            "fit_y",
            "fit_y_pred",
            "fit_v",
            "fit_v_pred",
            "fit_c",
            "fit_c_pred",
        }
        assert idata.posterior.attrs["tuning_steps"] == 20
        assert "sampling_time" in idata.posterior.attrs

    def test_multitrace(self, model):
        mtrace = sample(model, draws=10, tune=5, chains=3, return_inferencedata=False, **FAST)
        assert isinstance(mtrace, MultiTrace)
        assert mtrace.nchains == 3
        assert len(mtrace) == 10
        assert mtrace.get_values("N").shape == (30, 2)

    def test_model_from_context(self, model):
        with model:
            idata = sample(draws=5, tune=0, chains=1, **FAST)
        assert idata.posterior.sizes["draw"] == 5

    def test_reproducible(self, model):
        kwargs = dict(draws=25, tune=25, chains=2, return_inferencedata=False, **FAST)
        a = sample(model, random_seed=123, **kwargs)
        b = sample(model, random_seed=123, **kwargs)
        c = sample(model, random_seed=124, **kwargs)
        for name in model.trace_vars:
            npt.assert_array_equal(a.get_values(name), b.get_values(name))
        npt.assert_array_equal(a.get_fit_values("fit_y_pred"), b.get_fit_values("fit_y_pred"))
        assert not np.array_equal(a.get_values("beta0"), c.get_values("beta0"))

    def test_seed_per_chain(self, model):
        kwargs = dict(draws=10, tune=10, return_inferencedata=False, **FAST)
        both = sample(model, chains=2, random_seed=[5, 6], **kwargs)
        single = sample(model, chains=1, random_seed=[6], **kwargs)
        npt.assert_array_equal(both.get_values("beta0", chains=1), single.get_values("beta0"))

    def test_thin(self, model):
        seen = []
        mtrace = sample(
            model,
            draws=6,
            tune=4,
            thin=3,
            chains=1,
            return_inferencedata=False,
            callback=lambda trace, draw: seen.append(draw.draw_idx),
            **FAST,
        )
        assert len(mtrace) == 6
        assert seen == [6, 9, 12, 15, 18, 21]

    def test_callback(self, model):
        calls = []

        def callback(trace, draw):
            assert draw.point is not None
            assert not draw.tuning
            calls.append((draw.chain, len(trace)))

        sample(model, draws=4, tune=3, chains=2, callback=callback, **FAST)
        assert calls == [(0, 1), (0, 2), (0, 3), (0, 4), (1, 1), (1, 2), (1, 3), (1, 4)]

    def test_abundance_stays_non_negative(self):
        data, _ = simulated_data(10, random_seed=3, params={"beta0": -1.0})
        mtrace = sample(Model(data), draws=100, tune=100, chains=1, return_inferencedata=False, **FAST)
        assert mtrace.get_values("N").min() >= 0
        K = mtrace.get_values("K")
        assert np.all(K >= data.validation.k)
        assert np.all(K <= data.val_v)


class TestStopping:
    def test_cancel_before_start(self, model):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(SamplingError, match="No draws"):
            sample(model, draws=10, tune=0, chains=2, cancel=cancel, **FAST)

    def test_cancel_during_sampling(self, model):
        cancel = threading.Event()

        def callback(trace, draw):
            if len(trace) == 7:
                cancel.set()

        mtrace = sample(
            model,
            draws=50,
            tune=5,
            chains=2,
            cancel=cancel,
            callback=callback,
            return_inferencedata=False,
            **FAST,
        )
        # the second chain is not started
        assert mtrace.nchains == 1
        assert len(mtrace) == 7

    def test_interrupt_keeps_draws(self, model, caplog):
        def callback(trace, draw):
            if len(trace) == 4:
                raise KeyboardInterrupt

        with caplog.at_level(logging.WARNING, logger="abundmc"):
            idata = sample(model, draws=50, tune=5, chains=2, callback=callback, **FAST)
        assert idata.posterior.sizes["draw"] == 4
        assert "interrupted after 4 draws" in caplog.text

    def test_max_time(self, model, caplog):
        with caplog.at_level(logging.WARNING, logger="abundmc"):
            with pytest.raises(SamplingError, match="No draws"):
                sample(model, draws=10, tune=10, chains=1, max_time=1e-9, **FAST)
        assert "time limit" in caplog.text


class TestValidation:
    @pytest.mark.parametrize(
        "kwargs, match",
        [
            ({"draws": 0}, "draws"),
            ({"chains": 0}, "chains"),
            ({"thin": 0}, "thin"),
            ({"tune": -1}, "tune"),
            ({"cores": 1.5}, "cores"),
            ({"draws": True}, "draws"),
            ({"max_time": 0}, "max_time"),
            ({"blas_cores": 0}, "blas_cores"),
            ({"tune_interval": 0}, "tune_interval"),
            ({"scaling": {"N": 1.0}}, "proposal scale"),
            ({"initvals": [{}, {}, {}]}, "initval"),
            ({"initvals": {"tau": 1.0}}, "do not belong"),
        ],
    )
    def test_invalid_arguments(self, model, kwargs, match):
        kwargs = {"draws": 5, "tune": 0, "chains": 2, **FAST, **kwargs}
        with pytest.raises(ConfigurationError, match=match):
            sample(model, **kwargs)

    def test_invalid_start(self, model):
        # site 1 has a point count of 4
        with pytest.raises(SamplingError, match="Initial evaluation"):
            sample(model, draws=5, tune=0, chains=1, initvals={"N": [5, 2]}, **FAST)

    def test_initvals_per_chain(self, model):
        mtrace = sample(
            model,
            draws=1,
            tune=0,
            chains=2,
            initvals=[{"N": [10, 10]}, {"N": [30, 30]}],
            return_inferencedata=False,
            **FAST,
        )
        # one sweep moves every site by at most 2
        assert np.all(np.abs(mtrace.get_values("N", chains=0) - 10) <= 2)
        assert np.all(np.abs(mtrace.get_values("N", chains=1) - 30) <= 2)

    def test_jitter(self, model):
        rngs = get_rngs_per_chain(1, 3)
        points = _initial_points(model, None, rngs, jitter=True, jitter_max_retries=3)
        assert len({float(p["omega"]) for p in points}) == 3
        again = _initial_points(model, None, get_rngs_per_chain(1, 3), jitter=True, jitter_max_retries=3)
        for p, q in zip(points, again):
            assert p["omega"] == q["omega"]
        plain = _initial_points(model, {"omega": 2.0}, rngs, jitter=False, jitter_max_retries=0)
        assert all(p["omega"] == 2.0 for p in plain)

    def test_jitter_retries_exhausted(self, model):
        with pytest.raises(SamplingError):
            _initial_points(
                model, {"N": [0, 0]}, get_rngs_per_chain(0, 1), jitter=True, jitter_max_retries=2
            )


class TestChainSampler:
    def test_single_chain(self, model):
        step = assign_step_methods(model)
        sampler = ChainSampler(
            model=model, step=step, draws=8, tune=4, thin=2, compute_posterior_predictive=False
        )
        assert sampler.total == 20
        ticks = []
        trace = sampler(
            chain=3, start=model.initial_point(), rng=np.random.default_rng(0), progress=ticks.append
        )
        assert trace.chain == 3
        assert len(trace) == 8
        assert trace.fit_names == []
        assert len(ticks) == 20
        assert ticks[-1].is_last
        assert [d.tuning for d in ticks[:5]] == [True] * 4 + [False]

    def test_init_traces(self, model):
        step = assign_step_methods(model)
        trace = init_traces(model, step, 10, True, chain=1)
        assert trace.sampler_names == step.vars
        assert trace.fit_names[0] == "fit_y"
        assert trace.samples["N"].shape == (10, 2)


class TestPosterior:
    def test_prior_only(self):
        model = Model(simple_data(), ModelConfig.prior_only())
        mtrace = sample(
            model, draws=3000, tune=500, chains=2, random_seed=4, return_inferencedata=False, **FAST
        )
        for name in ("beta0", "beta1"):
            beta = mtrace.get_values(name)
            assert abs(beta.mean()) < 1.5, name
            assert beta.var() == pytest.approx(100, rel=0.25), name
        assert mtrace.fit_names == []

    def test_recovers_abundance(self):
        # two sites, four acoustic and three count visits, five parameters at their true values
        true = {"beta0": 0.5, "beta1": 0.2, "mu_alpha": 0.3, "alpha1": 0.1, "omega": 0.5}
        data, truth = simulate_dataset(
            None, N=[3, 5], J=4, n_count=3, params=true, validated_fraction=1.0, random_seed=11
        )
        assert len(data.validation) > 0
        model = Model(data, fixed=true)
        mtrace = sample(
            model, draws=4000, tune=1000, chains=2, random_seed=2, return_inferencedata=False, **FAST
        )
        N = mtrace.get_values("N")
        assert N.shape == (8000, 2)
        npt.assert_allclose(N.mean(axis=0), truth["N"], atol=2)
        assert np.all(N >= data.counts.max_count())
        K = mtrace.get_values("K")
        assert np.all(K >= data.validation.k)
        assert np.all(K <= data.val_v)
        assert np.all(K <= data.val_v - data.validation.n + data.validation.k)

    def test_fit_and_acceptance(self, sim, caplog):
        data, _ = sim
        model = Model(data, ModelConfig.covariate())
        with caplog.at_level(logging.INFO, logger="abundmc"):
            idata = sample(
                model,
                draws=500,
                tune=2000,
                tune_interval=50,
                chains=2,
                random_seed=8,
                cores=1,
                progressbar=False,
            )
        stats = idata.sample_stats
        for block in model.free_vars:
            if f"{block}_scaling" in stats:
                rate = float(stats[f"{block}_accepted"].mean())
                assert 0.15 <= rate <= 0.6, block
        p_values = bayesian_p_values(idata)
        assert set(p_values) == {"y", "v", "c"}
        assert all(0.01 < p < 0.99 for p in p_values.values())
        assert "Bayesian p-values" in caplog.text
        assert "Sequential sampling (2 chains in 1 job)" in caplog.text

    def test_p_values_of_simulated_surveys(self):
        p_values = {"y": [], "v": [], "c": []}
        for seed in range(10):
            data, _ = simulated_data(random_seed=100 + seed)
            model = Model(data, ModelConfig.covariate())
            mtrace = sample(
                model,
                draws=300,
                tune=1000,
                tune_interval=50,
                chains=1,
                random_seed=seed,
                return_inferencedata=False,
                **FAST,
            )
            for layer, p in bayesian_p_values(mtrace).items():
                p_values[layer].append(p)
        # data drawn from the model itself: the count layers centre on 0.5
        for layer in ("v", "c"):
            assert 0.3 <= np.mean(p_values[layer]) <= 0.7, layer
            assert 0.05 < np.median(p_values[layer]) < 0.95, layer
        # the binary hurdle discrepancy sits below 0.5 once p_a is uncertain
        assert 0.15 <= np.mean(p_values["y"]) <= 0.6
