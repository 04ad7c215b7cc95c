"""Tests for design-matrix extraction."""

import numpy as np
import pandas as pd
import pytest

from glmmtree._design import INTERCEPT, build_design, leaf_design
from glmmtree.formula import parse_formula


@pytest.fixture()
def rng():
    return np.random.default_rng(42)


@pytest.fixture()
def df(rng):
    n = 12
    return pd.DataFrame(
        {
            "y": rng.standard_normal(n),
            "x": rng.standard_normal(n),
            "arm": np.tile(["a", "b", "c"], 4),
            "id": np.repeat([10, 20, 30], 4),
            "time": np.tile([0.0, 1.0, 2.0, 3.0], 3),
            "z": rng.uniform(size=n),
            "grade": pd.Categorical(
                np.tile(["low", "mid", "high"], 4),
                categories=["low", "mid", "high"],
                ordered=True,
            ),
            "flag": np.tile([True, False], 6),
        }
    )


class TestFixedEffects:
    def test_intercept_first(self, df):
        d = build_design(df, parse_formula("y ~ x | z"))
        assert d.x_names == (INTERCEPT, "x")
        np.testing.assert_array_equal(d.X[:, 0], 1.0)
        np.testing.assert_allclose(d.X[:, 1], df["x"].to_numpy())

    def test_treatment_coding(self, df):
        d = build_design(df, parse_formula("y ~ arm | z"))
        assert d.x_names == (INTERCEPT, "arm[T.b]", "arm[T.c]")
        np.testing.assert_array_equal(d.X[:3, 1:], [[0, 0], [1, 0], [0, 1]])

    def test_no_intercept(self, df):
        d = build_design(df, parse_formula("y ~ x - 1 | z"))
        assert d.x_names == ("x",)
        assert d.X.shape == (12, 1)

    def test_global_regressors(self, df):
        d = build_design(df, parse_formula("y ~ x | (1 | id) + time | z"))
        assert d.xg_names == ("time",)
        np.testing.assert_allclose(d.Xg[:, 0], df["time"].to_numpy())

    def test_encode_fixed_unseen_level(self, df):
        d = build_design(df, parse_formula("y ~ arm | z"))
        new = df.head(2).assign(arm=["a", "zzz"])
        with pytest.raises(ValueError, match="not seen"):
            d.encode_fixed(new)

    def test_encode_fixed_matches_training(self, df):
        d = build_design(df, parse_formula("y ~ x + arm | z"))
        np.testing.assert_allclose(d.encode_fixed(df), d.X)


class TestRandomEffects:
    def test_random_intercept_blocks(self, df):
        d = build_design(df, parse_formula("y ~ x | (1 | id) | z"))
        assert d.re_struct == ((3, 1),)
        assert d.Z.shape == (12, 3)
        np.testing.assert_array_equal(d.Z.sum(axis=1), 1.0)
        np.testing.assert_array_equal(d.Z[:4, 0], 1.0)
        assert d.re_levels == ((10, 20, 30),)

    def test_random_slope_layout(self, df):
        d = build_design(df, parse_formula("y ~ x | (1 + time | id) | z"))
        assert d.re_struct == ((3, 2),)
        # Group 1 occupies columns 2 (intercept) and 3 (slope).
        np.testing.assert_array_equal(d.Z[4:8, 2], 1.0)
        np.testing.assert_allclose(d.Z[4:8, 3], df["time"].to_numpy()[4:8])
        np.testing.assert_array_equal(d.Z[4:8, [0, 1, 4, 5]], 0.0)

    def test_cluster_from_first_term(self, df):
        d = build_design(df, parse_formula("y ~ x | (1 | id) | z"))
        np.testing.assert_array_equal(d.cluster, np.repeat([0, 1, 2], 4))
        assert d.n_clusters(np.arange(6)) == 2

    def test_no_random(self, df):
        d = build_design(df, parse_formula("y ~ x | z"))
        assert not d.has_random
        assert d.Z.shape == (12, 0)
        assert d.cluster is None
        assert d.n_clusters(np.arange(12)) == 0

    def test_non_numeric_slope(self, df):
        with pytest.raises(ValueError, match="must be numeric"):
            build_design(df, parse_formula("y ~ x | (1 + arm | id) | z"))


class TestPartitionVariables:
    def test_kinds(self, df):
        d = build_design(df, parse_formula("y ~ x | z + grade + arm + flag"))
        kinds = {v.name: v.kind for v in d.partition}
        assert kinds == {
            "z": "numeric",
            "grade": "ordinal",
            "arm": "nominal",
            "flag": "nominal",
        }

    def test_caller_order_preserved(self, df):
        d = build_design(df, parse_formula("y ~ x | arm + z + grade"))
        assert [v.name for v in d.partition] == ["arm", "z", "grade"]

    def test_ordinal_codes_follow_categories(self, df):
        d = build_design(df, parse_formula("y ~ x | grade"))
        var = d.partition[0]
        assert var.levels == ("low", "mid", "high")
        np.testing.assert_array_equal(var.values[:3], [0.0, 1.0, 2.0])
        assert var.is_ordered

    def test_nominal_codes_sorted(self, df):
        var = build_design(df, parse_formula("y ~ x | arm")).partition[0]
        assert var.levels == ("a", "b", "c")
        assert not var.is_ordered


class TestValidation:
    def test_missing_column(self, df):
        with pytest.raises(ValueError, match="not found"):
            build_design(df, parse_formula("y ~ x | nope"))

    def test_missing_values(self, df):
        df.loc[3, "z"] = np.nan
        with pytest.raises(ValueError, match="missing values"):
            build_design(df, parse_formula("y ~ x | z"))

    def test_empty(self, df):
        with pytest.raises(ValueError, match="at least one observation"):
            build_design(df.iloc[:0], parse_formula("y ~ x | z"))

    def test_non_numeric_response(self, df):
        with pytest.raises(ValueError, match="must be numeric"):
            build_design(df, parse_formula("arm ~ x | z"))

    def test_bool_response(self, df):
        d = build_design(df, parse_formula("flag ~ x | z"))
        np.testing.assert_array_equal(d.y[:2], [1.0, 0.0])

    def test_non_default_index(self, df):
        df.index = np.arange(100, 112)
        d = build_design(df, parse_formula("y ~ x | (1 | id) | z"))
        assert d.n == 12


class TestLeafDesign:
    def test_block_structure(self):
        X = np.column_stack([np.ones(4), np.arange(4.0)])
        out = leaf_design(X, np.array([0, 1, 0, 1]), 2)
        assert out.shape == (4, 4)
        np.testing.assert_array_equal(out[0], [1.0, 0.0, 0.0, 0.0])
        np.testing.assert_array_equal(out[1], [0.0, 0.0, 1.0, 1.0])

    def test_unassigned_rows_are_zero(self):
        X = np.ones((3, 1))
        out = leaf_design(X, np.array([0, -1, 0]), 1)
        np.testing.assert_array_equal(out[:, 0], [1.0, 0.0, 1.0])
