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

from abundmc.model import Model, ModelConfig
from abundmc.step_methods.metropolis import (
    AbundanceMetropolis,
    ElemwiseMetropolis,
    Metropolis,
    metrop_select,
    metrop_select_elemwise,
    tune,
)
from tests.models import conditional_model, simple_data


def run(step, point, n):
    draws = []
    for _ in range(n):
        point, _ = step.step(point)
        draws.append(point[step.vars[0]])
    return np.array(draws)


def grid_moments(model, name, grid):
    """Mean and variance of the full conditional of a scalar on a grid."""
    point = model.initial_point()
    logp = np.array([model.conditional_logp(name, {**point, name: np.asarray(x)}) for x in grid])
    w = np.exp(logp - logp.max())
    w /= w.sum()
    mean = np.sum(w * grid)
    return mean, np.sum(w * (grid - mean) ** 2)


class TestSelect:
    def test_metrop_select(self):
        rng = np.random.default_rng(0)
        assert metrop_select(0.0, 1, 0, rng) == (1, True)
        assert metrop_select(-np.inf, 1, 0, rng) == (0, False)
        assert metrop_select(np.nan, 1, 0, rng) == (0, False)
        # positive infinity is not a valid ratio either
        assert metrop_select(np.inf, 1, 0, rng) == (0, False)

    def test_metrop_select_rate(self):
        rng = np.random.default_rng(1)
        accepted = [metrop_select(np.log(0.3), 1, 0, rng)[1] for _ in range(5000)]
        assert np.mean(accepted) == pytest.approx(0.3, abs=0.03)

    def test_metrop_select_elemwise(self):
        rng = np.random.default_rng(2)
        q, accepted = metrop_select_elemwise(
            np.array([0.0, -np.inf, np.nan, 10.0]), np.array([1, 1, 1, 1]), np.zeros(4), rng
        )
        npt.assert_array_equal(accepted, [True, False, False, True])
        npt.assert_array_equal(q, [1, 0, 0, 1])

    @pytest.mark.parametrize(
        "rate, factor",
        [(0.0, 0.1), (0.01, 0.5), (0.1, 0.9), (0.3, 1.0), (0.6, 1.1), (0.8, 2.0), (0.99, 10.0)],
    )
    def test_tune(self, rate, factor):
        assert tune(2.0, rate) == pytest.approx(2.0 * factor)

    def test_tune_elementwise(self):
        npt.assert_allclose(tune(np.ones(3), np.array([0.0, 0.3, 0.99])), [0.1, 1.0, 10.0])


class TestMetropolis:
    def test_prior_moments(self):
        model = Model(simple_data(), ModelConfig.prior_only(), fixed={"beta1": 0.0})
        step = Metropolis("beta0", scaling=1.0, model=model, rng=123)
        point = model.initial_point()
        run(step, point, 2000)
        step.stop_tuning()
        draws = run(step, point, 20000)
        assert abs(draws.mean()) < 1.5
        assert draws.std() == pytest.approx(10.0, rel=0.15)

    @pytest.mark.parametrize(
        "name, grid",
        [
            ("mu_alpha", np.linspace(1e-4, 1 - 1e-4, 2000)),
            ("omega", np.linspace(1e-3, 15, 3000)),
            ("phi1", np.linspace(-25, 25, 3000)),
        ],
    )
    def test_conditional_moments(self, name, grid):
        model = conditional_model(name)
        mean, var = grid_moments(model, name, grid)
        step = Metropolis(name, model=model, rng=np.random.default_rng(42))
        point = model.initial_point()
        run(step, point, 2000)
        step.stop_tuning()
        draws = run(step, point, 20000)
        assert draws.mean() == pytest.approx(mean, abs=0.1 * np.sqrt(var))
        assert draws.var() == pytest.approx(var, rel=0.15)

    def test_stats(self):
        model = conditional_model("beta0")
        step = Metropolis("beta0", scaling=0.5, model=model, rng=1)
        point, stats = step.step(model.initial_point())
        assert len(stats) == 1
        assert set(stats[0]) == set(step.stats_dtypes_shapes)
        assert stats[0]["tune"] is True
        assert stats[0]["scaling"] == 0.5
        assert 0 <= stats[0]["accept"] <= 1
        assert stats[0]["accepted"] in (0.0, 1.0)

    def test_input_point_unchanged(self):
        model = conditional_model("beta0")
        step = Metropolis("beta0", model=model, rng=1)
        point = model.initial_point()
        before = dict(point)
        new, _ = step.step(point)
        assert all(point[name] is before[name] for name in before)
        assert new is not point

    def test_tuning(self):
        model = conditional_model("beta0")
        step = Metropolis("beta0", scaling=1e-4, tune_interval=50, model=model, rng=3)
        point = model.initial_point()
        run(step, point, 51)
        # nearly every tiny move is accepted, so the scale grows tenfold
        assert step.scaling == pytest.approx(1e-3)

        step.stop_tuning()
        frozen = step.scaling
        run(step, point, 200)
        assert step.scaling == frozen
        _, stats = step.step(point)
        assert stats[0]["tune"] is False

        step.reset_tuning()
        assert step.scaling == 1e-4
        assert step.tune
        assert step.accepted_sum == 0

    def test_reproducible(self):
        model = conditional_model("omega")
        a = run(Metropolis("omega", model=model, rng=7), model.initial_point(), 100)
        b = run(Metropolis("omega", model=model, rng=7), model.initial_point(), 100)
        npt.assert_array_equal(a, b)

    def test_fixed_variable_cannot_be_stepped(self):
        model = conditional_model("omega")
        with pytest.raises(ValueError, match="not free variables"):
            Metropolis("beta0", model=model)


class TestElemwiseMetropolis:
    @pytest.fixture
    def model(self):
        return conditional_model("phi", ModelConfig.random_effects(), a_phi=2.0)

    def test_visits_without_count_follow_prior(self, model):
        step = ElemwiseMetropolis(model=model, rng=5)
        draws = run(step, model.initial_point(), 4000)
        # visit 1 of site 0 has y = 0
        assert not step.active[1]
        assert draws[:, 1].mean() == pytest.approx(1.0, abs=0.06)
        assert draws[:, 1].var() == pytest.approx(0.5, rel=0.15)
        assert np.all(draws > 0)

    def test_active_visits_target_conditional(self, model):
        step = ElemwiseMetropolis(model=model, rng=6)
        point = model.initial_point()
        run(step, point, 1000)
        step.stop_tuning()
        draws = run(step, point, 20000)

        grid = np.linspace(1e-3, 12, 4000)
        visit = 0
        logp = np.array(
            [
                model.phi_conditional_logp(point, np.where(np.arange(5) == visit, x, point["phi"]))[visit]
                for x in grid
            ]
        )
        w = np.exp(logp - logp.max())
        w /= w.sum()
        mean = np.sum(w * grid)
        sd = np.sqrt(np.sum(w * (grid - mean) ** 2))
        assert draws[:, visit].mean() == pytest.approx(mean, abs=0.1 * sd)

    def test_scaling_per_element(self, model):
        step = ElemwiseMetropolis(scaling=0.3, model=model, rng=0)
        assert step.scaling.shape == (step.active.sum(),)
        _, stats = step.step(model.initial_point())
        assert stats[0]["scaling"] == pytest.approx(0.3)
        step.scaling[:] = 5.0
        step.reset_tuning()
        npt.assert_allclose(step.scaling, 0.3)

    def test_no_vocal_layer(self):
        model = Model(simple_data(), ModelConfig.random_effects(vocal=False))
        assert "phi" not in model.vars
        assert "a_phi" not in model.vars


class TestAbundanceMetropolis:
    def test_invalid_p_small(self):
        with pytest.raises(ValueError, match="p_small"):
            AbundanceMetropolis(model=conditional_model("N"), p_small=0)

    def test_proposal_kernel(self):
        step = AbundanceMetropolis(model=conditional_model("N"), p_small=0.8, rng=0)
        N0 = np.full(20000, 10)
        d = step.propose(N0) - N0
        assert set(np.unique(d)) == {-2, -1, 1, 2}
        assert np.mean(np.abs(d) == 1) == pytest.approx(0.8, abs=0.02)
        assert np.mean(d > 0) == pytest.approx(0.5, abs=0.02)

    def test_never_negative(self):
        model = conditional_model("N", ModelConfig(count=False, validation=False), beta0=-3.0)
        step = AbundanceMetropolis(model=model, rng=1)
        point = model.initial_point({"N": [0, 0]})
        draws = run(step, point, 2000)
        assert draws.min() == 0
        assert draws.dtype == np.int64

    def test_stationary_distribution(self):
        model = conditional_model("N")
        step = AbundanceMetropolis(model=model, rng=2)
        point = model.initial_point()
        draws = run(step, point, 30000)

        support = np.arange(0, 80)
        for site in range(2):
            logp = np.array(
                [
                    model.site_logp(point, np.where(np.arange(2) == site, n, point["N"]))[site]
                    for n in support
                ]
            )
            w = np.exp(logp - logp.max())
            w /= w.sum()
            mean = np.sum(w * support)
            sd = np.sqrt(np.sum(w * (support - mean) ** 2))
            assert draws[:, site].mean() == pytest.approx(mean, abs=0.15 * sd)
        # the largest point count of site 1 is 4
        assert draws[:, 1].min() >= 4

    def test_stats(self):
        step = AbundanceMetropolis(model=conditional_model("N"), rng=0)
        _, stats = step.step(step.model.initial_point())
        assert set(stats[0]) == {"accept", "accepted", "tune"}
        assert stats[0]["accepted"] in (0.0, 0.5, 1.0)
