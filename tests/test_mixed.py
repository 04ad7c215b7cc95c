"""Tests for the (G)LM and (G)LMM fitters.

Reference values come from statsmodels (OLS, GLM and MixedLM), which
implement the same estimators independently.
"""

import warnings

import numpy as np
import pytest
import statsmodels.api as sm
import statsmodels.regression.mixed_linear_model as mlm

from glmmtree.exceptions import ConvergenceFailure, RankDeficiency
from glmmtree.mixed import fit_glm, fit_glmm, fit_lmm, fit_mixed

# ------------------------------------------------------------------ #
# Fixtures
# ------------------------------------------------------------------ #


@pytest.fixture()
def rng():
    return np.random.default_rng(42)


def _one_hot(groups):
    levels, coded = np.unique(groups, return_inverse=True)
    Z = np.zeros((len(groups), len(levels)))
    Z[np.arange(len(groups)), coded] = 1.0
    return Z


@pytest.fixture()
def clustered(rng):
    n_groups, n_per = 30, 20
    groups = np.repeat(np.arange(n_groups), n_per)
    n = len(groups)
    x = rng.standard_normal(n)
    b = rng.normal(0.0, 1.0, n_groups)
    y = 1.0 + 2.0 * x + b[groups] + rng.normal(0.0, 0.5, n)
    X = np.column_stack([np.ones(n), x])
    return X, y, groups, _one_hot(groups)


@pytest.fixture()
def slopes(rng):
    n_groups, n_per = 40, 15
    groups = np.repeat(np.arange(n_groups), n_per)
    n = len(groups)
    t = np.tile(np.linspace(-1.0, 1.0, n_per), n_groups)
    b0 = rng.normal(0.0, 1.0, n_groups)
    b1 = rng.normal(0.0, 0.5, n_groups)
    y = 0.5 + 1.5 * t + b0[groups] + b1[groups] * t + rng.normal(0.0, 0.3, n)
    X = np.column_stack([np.ones(n), t])
    Z = np.zeros((n, 2 * n_groups))
    Z[np.arange(n), 2 * groups] = 1.0
    Z[np.arange(n), 2 * groups + 1] = t
    return X, y, groups, t, Z


# ------------------------------------------------------------------ #
# fit_glm
# ------------------------------------------------------------------ #


class TestFitGLM:
    def test_gaussian_matches_ols(self, rng):
        X = np.column_stack([np.ones(80), rng.standard_normal((80, 2))])
        y = X @ np.array([1.0, -2.0, 0.5]) + rng.standard_normal(80)
        model = fit_glm(X, y)
        ref = sm.OLS(y, X).fit()
        np.testing.assert_allclose(model.coef, ref.params, rtol=1e-10)
        np.testing.assert_allclose(model.std_errors, ref.bse, rtol=1e-8)
        assert model.loglik == pytest.approx(ref.llf, rel=1e-10)
        assert model.sigma2 == pytest.approx(ref.scale)
        assert model.converged

    def test_binomial_matches_statsmodels(self, rng):
        X = np.column_stack([np.ones(300), rng.standard_normal(300)])
        p = 1.0 / (1.0 + np.exp(-(X @ np.array([-0.3, 1.2]))))
        y = rng.binomial(1, p).astype(float)
        model = fit_glm(X, y, "binomial")
        ref = sm.GLM(y, X, family=sm.families.Binomial()).fit()
        np.testing.assert_allclose(model.coef, ref.params, rtol=1e-6)
        np.testing.assert_allclose(model.std_errors, ref.bse, rtol=1e-4)
        assert model.loglik == pytest.approx(ref.llf, rel=1e-8)
        assert model.deviance == pytest.approx(ref.deviance, rel=1e-8)

    def test_poisson_with_offset(self, rng):
        n = 200
        X = np.column_stack([np.ones(n), rng.standard_normal(n)])
        exposure = rng.uniform(0.5, 2.0, n)
        y = rng.poisson(exposure * np.exp(X @ np.array([0.2, 0.4]))).astype(float)
        model = fit_glm(X, y, "poisson", np.log(exposure))
        ref = sm.GLM(
            y, X, family=sm.families.Poisson(), offset=np.log(exposure)
        ).fit()
        np.testing.assert_allclose(model.coef, ref.params, rtol=1e-6)

    def test_gaussian_offset_shifts_response(self, rng):
        X = np.column_stack([np.ones(50), rng.standard_normal(50)])
        y = rng.standard_normal(50)
        off = rng.standard_normal(50)
        np.testing.assert_allclose(
            fit_glm(X, y, offset=off).coef, fit_glm(X, y - off).coef
        )

    def test_coef_names(self, rng):
        X = np.column_stack([np.ones(20), rng.standard_normal(20)])
        model = fit_glm(X, rng.standard_normal(20), coef_names=("a", "b"))
        assert list(model.coef_dict) == ["a", "b"]

    def test_default_names(self, rng):
        model = fit_glm(np.ones((10, 1)), rng.standard_normal(10))
        assert model.coef_names == ("x0",)

    def test_rank_deficiency(self, rng):
        x = rng.standard_normal(30)
        X = np.column_stack([np.ones(30), x, 2.0 * x])
        with pytest.raises(RankDeficiency) as exc_info:
            fit_glm(X, rng.standard_normal(30))
        assert exc_info.value.rank == 2
        assert exc_info.value.n_columns == 3

    def test_iteration_cap_carries_last_iterate(self, rng):
        X = np.column_stack([np.ones(100), rng.standard_normal(100)])
        y = rng.binomial(1, 0.4, 100).astype(float)
        with pytest.raises(ConvergenceFailure) as exc_info:
            fit_glm(X, y, "binomial", max_iter=1)
        model = exc_info.value.model
        assert model is not None
        assert not model.converged
        assert model.n_iter == 1
        assert np.all(np.isfinite(model.coef))

    def test_no_random_part(self, rng):
        model = fit_glm(np.ones((10, 1)), rng.standard_normal(10))
        assert not model.has_random
        assert model.random_eta is None


# ------------------------------------------------------------------ #
# fit_lmm
# ------------------------------------------------------------------ #


class TestFitLMM:
    def test_reml_matches_mixedlm(self, clustered):
        X, y, groups, Z = clustered
        model = fit_lmm(X, y, Z, [(30, 1)])
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            ref = mlm.MixedLM(y, X, groups=groups).fit(reml=True)
        np.testing.assert_allclose(model.coef, ref.fe_params, rtol=1e-3)
        assert model.sigma2 == pytest.approx(ref.scale, rel=1e-2)
        assert model.re_covariance[0][0, 0] == pytest.approx(
            float(ref.cov_re.iloc[0, 0]), rel=1e-2
        )
        np.testing.assert_allclose(model.std_errors, ref.bse_fe, rtol=5e-2)
        assert model.reml

    def test_ml_loglik_matches_mixedlm(self, clustered):
        X, y, groups, Z = clustered
        model = fit_lmm(X, y, Z, [(30, 1)], reml=False)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            ref = mlm.MixedLM(y, X, groups=groups).fit(reml=False)
        assert model.loglik == pytest.approx(ref.llf, abs=1e-2)
        np.testing.assert_allclose(model.coef, ref.fe_params, rtol=1e-3)
        assert not model.reml

    def test_blups_match_mixedlm(self, clustered):
        X, y, groups, Z = clustered
        model = fit_lmm(X, y, Z, [(30, 1)])
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            ref = mlm.MixedLM(y, X, groups=groups).fit(reml=True)
        ref_blups = np.array([ref.random_effects[g].iloc[0] for g in range(30)])
        np.testing.assert_allclose(model.blups[0][:, 0], ref_blups, atol=1e-2)
        np.testing.assert_allclose(model.random_eta, Z @ model.blups[0][:, 0])

    def test_random_slopes(self, slopes):
        X, y, groups, t, Z = slopes
        model = fit_lmm(X, y, Z, [(40, 2)])
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            ref = mlm.MixedLM(
                y, X, groups=groups, exog_re=np.column_stack([np.ones_like(t), t])
            ).fit(reml=True)
        np.testing.assert_allclose(model.coef, ref.fe_params, rtol=1e-2)
        np.testing.assert_allclose(
            model.re_covariance[0], ref.cov_re.to_numpy(), rtol=5e-2, atol=1e-2
        )
        assert model.blups[0].shape == (40, 2)

    def test_covariance_psd(self, slopes):
        X, y, _, _, Z = slopes
        cov = fit_lmm(X, y, Z, [(40, 2)]).re_covariance[0]
        assert np.all(np.linalg.eigvalsh(cov) >= -1e-12)

    def test_zero_variance_component(self, rng):
        groups = np.repeat(np.arange(20), 10)
        X = np.column_stack([np.ones(200), rng.standard_normal(200)])
        y = X @ np.array([1.0, 1.0]) + rng.standard_normal(200)
        model = fit_lmm(X, y, _one_hot(groups), [(20, 1)])
        var = model.re_covariance[0][0, 0]
        assert 0.0 <= var < 0.15
        assert np.isfinite(model.loglik)

    def test_warm_start_reaches_same_optimum(self, clustered):
        X, y, _, Z = clustered
        first = fit_lmm(X, y, Z, [(30, 1)])
        again = fit_lmm(X, y, Z, [(30, 1)], theta0=first.theta)
        np.testing.assert_allclose(again.coef, first.coef, rtol=1e-5)
        assert again.loglik == pytest.approx(first.loglik, abs=1e-6)

    def test_offset(self, clustered):
        X, y, _, Z = clustered
        off = np.full(len(y), 3.0)
        shifted = fit_lmm(X, y + off, Z, [(30, 1)], offset=off)
        base = fit_lmm(X, y, Z, [(30, 1)])
        np.testing.assert_allclose(shifted.coef, base.coef, rtol=1e-6)

    def test_rank_deficiency(self, clustered):
        X, y, _, Z = clustered
        with pytest.raises(RankDeficiency):
            fit_lmm(np.column_stack([X, X[:, 1]]), y, Z, [(30, 1)])


# ------------------------------------------------------------------ #
# fit_glmm
# ------------------------------------------------------------------ #


class TestFitGLMM:
    @pytest.fixture()
    def binary(self, rng):
        n_groups, n_per = 50, 40
        groups = np.repeat(np.arange(n_groups), n_per)
        n = len(groups)
        x = rng.standard_normal(n)
        b = rng.normal(0.0, 1.0, n_groups)
        eta = 0.5 + 1.0 * x + b[groups]
        y = rng.binomial(1, 1.0 / (1.0 + np.exp(-eta))).astype(float)
        X = np.column_stack([np.ones(n), x])
        return X, y, _one_hot(groups)

    def test_binomial_pql(self, binary):
        X, y, Z = binary
        model = fit_glmm(X, y, Z, [(50, 1)], "binomial")
        assert model.converged
        assert model.coef[0] == pytest.approx(0.5, abs=0.45)
        assert model.coef[1] == pytest.approx(1.0, abs=0.2)
        assert 0.3 < model.re_covariance[0][0, 0] < 2.5
        assert model.sigma2 == 1.0
        assert np.all((model.mu > 0) & (model.mu < 1))

    def test_poisson_pql(self, rng):
        groups = np.repeat(np.arange(40), 25)
        n = len(groups)
        x = rng.standard_normal(n)
        b = rng.normal(0.0, 0.5, 40)
        y = rng.poisson(np.exp(0.3 + 0.5 * x + b[groups])).astype(float)
        X = np.column_stack([np.ones(n), x])
        model = fit_glmm(X, y, _one_hot(groups), [(40, 1)], "poisson")
        assert model.converged
        assert model.coef[1] == pytest.approx(0.5, abs=0.1)
        assert model.re_covariance[0][0, 0] > 0.05

    def test_iteration_cap(self, binary):
        X, y, Z = binary
        with pytest.raises(ConvergenceFailure) as exc_info:
            fit_glmm(X, y, Z, [(50, 1)], "binomial", max_iter=1)
        assert exc_info.value.model is not None
        assert not exc_info.value.model.converged


# ------------------------------------------------------------------ #
# fit_mixed
# ------------------------------------------------------------------ #


class TestFitMixed:
    def test_dispatch_glm(self, clustered):
        X, y, _, _ = clustered
        assert not fit_mixed(X, y).has_random

    def test_dispatch_lmm(self, clustered):
        X, y, _, Z = clustered
        model = fit_mixed(X, y, Z, [(30, 1)])
        assert model.has_random
        assert model.theta is not None

    def test_empty_z_is_glm(self, clustered):
        X, y, _, _ = clustered
        model = fit_mixed(X, y, np.zeros((len(y), 0)), [])
        assert not model.has_random

    def test_requires_re_struct(self, clustered):
        X, y, _, Z = clustered
        with pytest.raises(ValueError, match="re_struct is required"):
            fit_mixed(X, y, Z)

    def test_re_struct_mismatch(self, clustered):
        X, y, _, Z = clustered
        with pytest.raises(ValueError, match="describes"):
            fit_mixed(X, y, Z, [(29, 1)])

    def test_pure_function(self, clustered):
        X, y, _, Z = clustered
        X_copy, y_copy = X.copy(), y.copy()
        a = fit_mixed(X, y, Z, [(30, 1)])
        b = fit_mixed(X, y, Z, [(30, 1)])
        np.testing.assert_array_equal(a.coef, b.coef)
        np.testing.assert_array_equal(X, X_copy)
        np.testing.assert_array_equal(y, y_copy)
