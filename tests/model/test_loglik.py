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
import scipy.stats as st

from scipy.special import expit
from scipy.special import logit as sp_logit

from abundmc.model import Model, ModelConfig, layer_logps, model_loglik, site_logp
from abundmc.model import loglik
from tests.models import point_for, simple_data


def reference_loglik(data, point):
    """Straightforward per-observation evaluation with scipy.stats."""
    ac = data.acoustic
    cnt = data.counts
    val = data.validation
    N = point["N"]
    site = ac.site

    lam = np.exp(point["beta0"] + point["beta1"] * data.x_lambda)
    abundance = st.poisson.logpmf(N, lam).sum()

    p_a = expit(sp_logit(point["mu_alpha"]) + point["alpha1"] * N[site] + point["alpha2"] * ac.x_alpha)
    acoustic = st.bernoulli.logpmf(ac.y, p_a).sum()

    delta = np.exp(point["gamma0"] + point["gamma1"] * ac.x_delta + point["gamma_day"][ac.day])
    mu = delta * N[site] + point["omega"]
    det = ac.y == 1
    vocal = (st.poisson.logpmf(ac.v[det], mu[det]) - np.log1p(-np.exp(-mu[det]))).sum()

    p_c = expit(sp_logit(point["mu_phi"]) + point["phi1"] * cnt.x_phi)
    count = st.binom.logpmf(cnt.c, N[cnt.site], p_c).sum()

    dn = delta[val.visit] * N[data.val_site]
    tp = dn / (dn + point["omega"])
    v = ac.v[val.visit]
    K = point["K"]
    validation = (st.binom.logpmf(K, v, tp) + st.hypergeom.logpmf(val.k, v, K, val.n)).sum()
    return {
        "abundance": abundance,
        "acoustic": acoustic,
        "vocal": vocal,
        "count": count,
        "validation": validation,
    }


@pytest.fixture
def model():
    return Model(simple_data())


@pytest.fixture
def point(model):
    return point_for(
        model,
        N=[4, 6],
        K=[3, 4],
        beta0=1.1,
        beta1=-0.4,
        mu_alpha=0.35,
        alpha1=0.2,
        alpha2=0.5,
        gamma0=-0.3,
        gamma1=0.25,
        gamma_day=[0.2, -0.1, 0.4],
        omega=0.7,
        mu_phi=0.55,
        phi1=-0.6,
    )


class TestLayers:
    def test_matches_reference(self, model, point):
        expected = reference_loglik(model.data, point)
        actual = layer_logps(model, point)
        assert set(actual) == set(expected)
        for name, value in expected.items():
            npt.assert_allclose(actual[name], value, rtol=1e-10, err_msg=name)
        npt.assert_allclose(model_loglik(model, point), sum(expected.values()), rtol=1e-10)

    def test_vocal_term_is_zero_without_detection(self, model, point):
        res = loglik.vocal_logp(model, point)
        assert res[1] == 0
        assert np.all(res[model.data.acoustic.detected] < 0)

    def test_site_logp_partitions_loglik(self, model, point):
        per_site = site_logp(model, point)
        assert per_site.shape == (2,)
        npt.assert_allclose(per_site.sum(), model_loglik(model, point), rtol=1e-10)

    def test_day_logp_partitions_day_dependent_terms(self, model, point):
        per_day = loglik.day_logp(model, point)
        assert per_day.shape == (3,)
        layers = layer_logps(model, point)
        npt.assert_allclose(per_day.sum(), layers["vocal"] + layers["validation"], rtol=1e-10)

    def test_site_logp_at_proposed_abundance(self, model, point):
        proposed = np.array([5, 2])
        npt.assert_allclose(
            site_logp(model, point, proposed), site_logp(model, {**point, "N": proposed})
        )

    def test_zero_abundance_with_confirmed_calls_is_impossible(self, model, point):
        # site 0 has a validated visit with k = 2 confirmed true positives
        res = site_logp(model, {**point, "N": np.array([0, 6])})
        assert res[0] == -np.inf
        assert np.isfinite(res[1])

    def test_counts_above_abundance_are_impossible(self, model, point):
        # site 1 has a count of 4
        assert site_logp(model, point, np.array([4, 3]))[1] == -np.inf

    def test_observed_K_used_when_not_latent(self, point):
        model = Model(simple_data(K=[3, 4]))
        assert "K" not in model.vars
        point = {name: value for name, value in point.items() if name != "K"}
        npt.assert_array_equal(loglik.true_positive_counts(model, point), [3, 4])
        assert np.isfinite(loglik.validation_logp(model, point)).all()

    def test_disabled_parameters_take_neutral_values(self):
        model = Model(simple_data(), ModelConfig(alpha2=False, gamma1=False, day_effect=False))
        assert not {"alpha2", "gamma1", "gamma_day", "tau_day"} & set(model.vars)
        point = model.initial_point()
        ref = point_for(
            Model(simple_data()), alpha2=0.0, gamma1=0.0, gamma_day=np.zeros(3)
        )
        npt.assert_allclose(loglik.log_delta(model, point), loglik.log_delta(Model(simple_data()), ref))
        npt.assert_allclose(
            loglik.logit_p_acoustic(model, point),
            loglik.logit_p_acoustic(Model(simple_data()), ref),
        )

    def test_dispersion_scales_the_vocal_rate(self):
        model = Model(simple_data(), ModelConfig(dispersion=True))
        point = model.initial_point()
        base = loglik.vocal_rate(model, point)
        phi = np.array([2.0, 1.0, 0.5, 1.5, 3.0])
        npt.assert_allclose(loglik.vocal_rate(model, {**point, "phi": phi}), base * phi)

    def test_true_positive_rate(self, model, point):
        delta = np.exp(loglik.log_delta(model, point))[model.data.validation.visit]
        dn = delta * point["N"][model.data.val_site]
        npt.assert_allclose(loglik.true_positive_rate(model, point), dn / (dn + point["omega"]))


def test_layers_follow_config():
    config = ModelConfig(count=False, validation=False)
    model = Model(simple_data(), config)
    assert set(layer_logps(model, model.initial_point())) == {"abundance", "acoustic", "vocal"}
    assert "mu_phi" not in model.vars
    assert "K" not in model.vars
