"""Edge-case tests for input validation and boundary conditions.

Covers: bad responses, categorical regressors and unseen levels,
ordered and boolean partitioning variables, intercept-only node models,
offsets, non-default indexes, Poisson trees, perfect separation, random
slopes, and warnings captured during fitting.
"""

import numpy as np
import pandas as pd
import pytest

from glmmtree import NodeStatus, TreeControl, glmm_tree, parse_formula

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def _shift_data(n: int = 400, seed: int = 42) -> pd.DataFrame:
    """Mean +1 for z <= 0.5 and -1 above, no node regressor."""
    rng = np.random.default_rng(seed)
    z = rng.uniform(size=n)
    y = np.where(z <= 0.5, 1.0, -1.0) + rng.normal(0.0, 0.5, n)
    return pd.DataFrame({"y": y, "z": z, "w": rng.uniform(size=n)})


def _slope_data(n: int = 400, seed: int = 42) -> pd.DataFrame:
    """Slope +1 for z <= 0.5 and -1 above."""
    rng = np.random.default_rng(seed)
    z = rng.uniform(size=n)
    x = rng.standard_normal(n)
    y = np.where(z <= 0.5, 1.0, -1.0) * x + rng.normal(0.0, 0.3, n)
    return pd.DataFrame({"y": y, "x": x, "z": z})


# ------------------------------------------------------------------ #
# 1. Bad responses
# ------------------------------------------------------------------ #


class TestBadResponse:
    def test_nan_response_raises(self) -> None:
        df = _shift_data()
        df.loc[3, "y"] = np.nan
        with pytest.raises(ValueError, match="missing values"):
            glmm_tree(df, "y ~ 1 | z")

    def test_infinite_response_raises(self) -> None:
        df = _shift_data()
        df.loc[3, "y"] = np.inf
        with pytest.raises(ValueError, match="NaN or infinite"):
            glmm_tree(df, "y ~ 1 | z")

    def test_string_response_raises(self) -> None:
        df = _shift_data()
        df["y"] = np.where(df["y"] > 0, "hi", "lo")
        with pytest.raises(ValueError, match="must be numeric"):
            glmm_tree(df, "y ~ 1 | z")

    def test_negative_counts_rejected_for_poisson(self) -> None:
        df = _shift_data()
        df["y"] = np.round(df["y"])
        with pytest.raises(ValueError, match="non-negative integer counts"):
            glmm_tree(df, "y ~ 1 | z", family="poisson")

    def test_empty_data_raises(self) -> None:
        df = _shift_data().iloc[:0]
        with pytest.raises(ValueError, match="at least one observation"):
            glmm_tree(df, "y ~ 1 | z")


# ------------------------------------------------------------------ #
# 2. Node model forms
# ------------------------------------------------------------------ #


class TestNodeModels:
    def test_intercept_only(self) -> None:
        result = glmm_tree(_shift_data(), "y ~ 1 | z + w", control=TreeControl(maxdepth=1))
        root = result.tree.root
        assert root.split.variable == "z"
        assert root.split.threshold == pytest.approx(0.5, abs=0.05)
        for leaf in result.leaves():
            assert list(leaf.model.coef_names) == ["(Intercept)"]
        assert root.left.model.coef[0] == pytest.approx(1.0, abs=0.15)
        assert root.right.model.coef[0] == pytest.approx(-1.0, abs=0.15)

    def test_without_intercept(self) -> None:
        result = glmm_tree(_slope_data(), "y ~ x - 1 | z", control=TreeControl(maxdepth=1))
        assert result.n_leaves == 2
        for leaf in result.leaves():
            assert list(leaf.model.coef_names) == ["x"]

    def test_categorical_regressor(self) -> None:
        rng = np.random.default_rng(42)
        df = _shift_data()
        df["arm"] = rng.choice(["a", "b", "c"], size=len(df))
        result = glmm_tree(df, "y ~ arm | z", control=TreeControl(maxdepth=1))
        names = list(result.leaves()[0].model.coef_names)
        assert names == ["(Intercept)", "arm[T.b]", "arm[T.c]"]

    def test_unseen_regressor_level_in_predict(self) -> None:
        rng = np.random.default_rng(42)
        df = _shift_data()
        df["arm"] = rng.choice(["a", "b"], size=len(df))
        result = glmm_tree(df, "y ~ arm | z")
        new = df.head(3).copy()
        new["arm"] = ["a", "b", "zzz"]
        with pytest.raises(ValueError, match="not seen when fitting"):
            result.predict(new)


# ------------------------------------------------------------------ #
# 3. Partitioning variable types
# ------------------------------------------------------------------ #


class TestPartitionTypes:
    def test_ordered_categorical_gives_ordinal_split(self) -> None:
        rng = np.random.default_rng(42)
        n = 600
        grade = rng.choice(["low", "mid", "high"], size=n)
        x = rng.standard_normal(n)
        y = np.where(grade == "low", 1.0, -1.0) * x + rng.normal(0.0, 0.3, n)
        df = pd.DataFrame(
            {
                "y": y,
                "x": x,
                "grade": pd.Categorical(
                    grade, categories=["low", "mid", "high"], ordered=True
                ),
            }
        )
        result = glmm_tree(df, "y ~ x | grade", control=TreeControl(maxdepth=1))
        rule = result.tree.root.split
        assert rule.kind == "ordinal"
        assert rule.variable == "grade"
        assert rule.threshold == "low"
        node = result.predict(df, type="node")
        assert np.all((node == result.tree.root.left.id) == (grade == "low"))

    def test_boolean_partition_variable(self) -> None:
        rng = np.random.default_rng(42)
        n = 400
        flag = rng.uniform(size=n) < 0.5
        x = rng.standard_normal(n)
        y = np.where(flag, 1.0, -1.0) * x + rng.normal(0.0, 0.3, n)
        df = pd.DataFrame({"y": y, "x": x, "flag": flag})
        result = glmm_tree(df, "y ~ x | flag")
        rule = result.tree.root.split
        assert rule.kind == "nominal"
        assert set(rule.left_levels) | set(rule.right_levels) == {False, True}
        assert result.n_leaves == 2

    def test_nominal_unseen_level_in_predict(self) -> None:
        rng = np.random.default_rng(42)
        n = 600
        site = rng.choice(["north", "south", "east"], size=n)
        x = rng.standard_normal(n)
        y = np.where(site == "north", 1.0, -1.0) * x + rng.normal(0.0, 0.3, n)
        df = pd.DataFrame({"y": y, "x": x, "site": site})
        result = glmm_tree(df, "y ~ x | site", control=TreeControl(maxdepth=1))
        rule = result.tree.root.split
        new = pd.DataFrame({"y": [0.0], "x": [1.0], "site": ["west"]})
        assert rule.variable == "site"
        larger = max(result.tree.root.children, key=lambda node: node.n_obs)
        assert result.predict(new, type="node")[0] == larger.id


# ------------------------------------------------------------------ #
# 4. Offsets and indexes
# ------------------------------------------------------------------ #


class TestOffsetAndIndex:
    def test_offset_enters_linear_predictor(self) -> None:
        df = _slope_data()
        rng = np.random.default_rng(7)
        df["off"] = rng.normal(3.0, 1.0, len(df))
        df["y"] = df["y"] + df["off"]
        spec = parse_formula("y ~ x | z", offset="off")
        result = glmm_tree(df, spec, control=TreeControl(maxdepth=1))
        for leaf in result.leaves():
            assert leaf.model.coef_dict["(Intercept)"] == pytest.approx(0.0, abs=0.1)

        shifted = df.copy()
        shifted["off"] = shifted["off"] + 10.0
        diff = result.predict(shifted, type="link") - result.predict(df, type="link")
        np.testing.assert_allclose(diff, 10.0)

    def test_non_default_index(self) -> None:
        df = _slope_data()
        reindexed = df.copy()
        reindexed.index = np.arange(len(df))[::-1] + 1000
        a = glmm_tree(df, "y ~ x | z")
        b = glmm_tree(reindexed, "y ~ x | z")
        assert a.n_leaves == b.n_leaves
        np.testing.assert_array_equal(
            a.predict(df, type="node"), b.predict(reindexed, type="node")
        )
        rows = np.concatenate([leaf.index for leaf in b.leaves()])
        np.testing.assert_array_equal(np.sort(rows), np.arange(len(df)))


# ------------------------------------------------------------------ #
# 5. Non-Gaussian trees
# ------------------------------------------------------------------ #


class TestNonGaussian:
    def test_poisson_tree(self) -> None:
        rng = np.random.default_rng(42)
        n = 800
        z = rng.uniform(size=n)
        x = rng.standard_normal(n)
        mu = np.exp(0.5 + np.where(z <= 0.5, 0.8, -0.8) * x)
        df = pd.DataFrame({"y": rng.poisson(mu), "x": x, "z": z})
        result = glmm_tree(df, "y ~ x | z", family="poisson", control=TreeControl(maxdepth=1))
        rule = result.tree.root.split
        assert rule.variable == "z"
        assert rule.threshold == pytest.approx(0.5, abs=0.1)
        assert result.tree.root.left.model.coef_dict["x"] == pytest.approx(0.8, abs=0.15)
        assert result.tree.root.right.model.coef_dict["x"] == pytest.approx(-0.8, abs=0.15)
        pred = result.predict(df)
        assert np.all(pred > 0)

    def test_perfect_separation_stops_at_pure_nodes(self) -> None:
        rng = np.random.default_rng(42)
        n = 200
        z = rng.uniform(size=n)
        df = pd.DataFrame({"y": (z > 0.5).astype(int), "z": z})
        result = glmm_tree(df, "y ~ 1 | z", family="binomial")
        assert result.n_leaves == 2
        rule = result.tree.root.split
        assert df.loc[df["y"] == 0, "z"].max() <= rule.threshold
        assert rule.threshold < df.loc[df["y"] == 1, "z"].min()
        for leaf in result.leaves():
            assert leaf.status == NodeStatus.NO_ADMISSIBLE_SPLIT

    def test_auto_family_binary_response(self) -> None:
        rng = np.random.default_rng(42)
        df = _shift_data()
        df["y"] = (df["y"] + rng.normal(0.0, 0.5, len(df)) > 0).astype(int)
        result = glmm_tree(df, "y ~ 1 | z")
        assert result.family.name == "binomial"


# ------------------------------------------------------------------ #
# 6. Random slopes
# ------------------------------------------------------------------ #


class TestRandomSlopes:
    def test_tree_with_random_slopes(self) -> None:
        rng = np.random.default_rng(42)
        n_clusters, n_per = 30, 20
        n = n_clusters * n_per
        cluster = np.repeat(np.arange(n_clusters), n_per)
        age = rng.uniform(20, 80, n)
        treatment = rng.integers(0, 2, n).astype(float)
        b0 = rng.normal(0.0, 1.0, n_clusters)
        b1 = rng.normal(0.0, 0.3, n_clusters)
        y = (
            b0[cluster]
            + (np.where(age <= 50, 2.0, -2.0) + b1[cluster]) * treatment
            + rng.normal(0.0, 0.5, n)
        )
        df = pd.DataFrame({"y": y, "treatment": treatment, "cluster": cluster, "age": age})
        result = glmm_tree(
            df,
            "y ~ treatment | (1 + treatment | cluster) | age",
            control=TreeControl(maxdepth=1),
        )
        assert result.strategy == "joint"
        assert result.tree.root.split.variable == "age"
        assert result.tree.root.split.threshold == pytest.approx(50.0, abs=5.0)
        assert np.isfinite(result.predict(df)).all()


# ------------------------------------------------------------------ #
# 7. Warnings raised while fitting
# ------------------------------------------------------------------ #


class TestCapturedWarnings:
    def test_count_response_warning_recorded_and_reemitted(self) -> None:
        rng = np.random.default_rng(42)
        df = _shift_data()
        df["y"] = rng.poisson(3.0, len(df))
        with pytest.warns(UserWarning, match="count data"):
            result = glmm_tree(df, "y ~ 1 | z")
        assert any("count data" in msg for msg in result.warnings)

    def test_clean_fit_has_no_warnings(self) -> None:
        result = glmm_tree(_slope_data(), "y ~ x | z")
        assert result.warnings == []
