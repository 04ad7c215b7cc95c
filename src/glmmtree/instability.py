"""Parameter instability tests and split-point search.

MOB decides *whether* to split a node by testing the node model's
score contributions for instability along every partitioning variable
(Zeileis & Hornik 2007), and *where* to split by minimising the summed
deviance of the two child models.

Score process
~~~~~~~~~~~~~
With per-row scores ψᵢ (see :func:`estfun`) and their outer-product
matrix ``J = n⁻¹ Σ ψᵢψᵢᵀ``, the decorrelated cumulative score process
ordered by a covariate *z* is::

    W(t) = n^{-1/2} J^{-1/2} Σ_{i ≤ ⌊nt⌋} ψ_(i)

Under parameter stability ``W`` converges to a k-dimensional Brownian
bridge.

* **Numeric / ordinal** *z*: the double-maximum statistic
  ``max_t max_j |W_j(t)|``, evaluated only at the ends of tie blocks,
  with p-value ``1 − (1 − Q(x))ᵏ`` where ``Q`` is the survival function
  of the Kolmogorov distribution (``scipy.stats.kstwobign``).
* **Nominal** *z*: the LM statistic ``Σ_l ‖S_l‖² / n_l`` of the
  per-level decorrelated score sums, χ²-distributed with ``k(L − 1)``
  degrees of freedom.

Clustered data
~~~~~~~~~~~~~~
In cluster-aware mode, a covariate that is constant within clusters
is tested on cluster-summed scores (one unit per cluster).  A
row-level covariate keeps the row-level process and the row-level
``J``: the node offset carries the BLUPs, so the per-cluster score sums
are close to zero and carry no information on the row-ordered process.

Multiplicity across the m tested covariates uses
``p_adj = 1 − (1 − p)^m``.
"""

from __future__ import annotations

import itertools
import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from typing import Protocol

import numpy as np
from scipy import stats

from ._design import PartitionVariable
from .exceptions import ConvergenceFailure, RankDeficiency
from .families import Family
from .mixed import FittedModel, fit_glm

logger = logging.getLogger(__name__)

_EIG_RTOL = 1e-10
_TIE_RTOL = 1e-9


# ------------------------------------------------------------------ #
# Scores
# ------------------------------------------------------------------ #


def estfun(model: FittedModel, X: np.ndarray, y: np.ndarray) -> np.ndarray:
    """Per-observation score contributions ``(n, p)``.

    ``ψᵢ = xᵢ (yᵢ − μᵢ) μ'(ηᵢ) / V(μᵢ)`` evaluated at the model's
    linear predictor (offset included).  The gaussian dispersion is a
    common factor and is left out; it cancels in the decorrelation.
    """
    w = model.family.score_weights(np.asarray(y, dtype=float), model.eta)
    return np.asarray(X, dtype=float) * w[:, None]


# ------------------------------------------------------------------ #
# Result types
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class CovariateTest:
    """Instability test of one partitioning variable.

    Attributes:
        name: Variable name.
        kind: ``"numeric"``, ``"ordinal"`` or ``"nominal"``.
        statistic: DM or LM statistic.
        p_value: Unadjusted p-value.
        p_adjusted: Multiplicity-adjusted p-value.
        df: Number of decorrelated score dimensions k (DM) or χ²
            degrees of freedom (LM).
        n_units: Units in the score process (rows, or clusters for
            cluster-level tests).
        cluster_level: Whether the cluster-summed process was used.
    """

    name: str
    kind: str
    statistic: float
    p_value: float
    p_adjusted: float
    df: int
    n_units: int
    cluster_level: bool = False


@dataclass(frozen=True)
class InstabilityResult:
    """Outcome of testing all partitioning variables in one node.

    Attributes:
        tests: Per-variable tests in caller order.
        selected: Name of the variable selected for splitting, or
            ``None`` when no adjusted p-value is below *alpha*.
        alpha: Significance level used.
    """

    tests: tuple[CovariateTest, ...]
    selected: str | None
    alpha: float

    @property
    def significant(self) -> bool:
        return self.selected is not None

    @property
    def best(self) -> CovariateTest | None:
        """Test with the smallest adjusted p-value (first on ties)."""
        return _pick_best(self.tests)

    def as_dict(self) -> dict[str, tuple[float, float]]:
        """``{name: (statistic, adjusted p)}``."""
        return {t.name: (t.statistic, t.p_adjusted) for t in self.tests}


def _pick_best(tests: Sequence[CovariateTest]) -> CovariateTest | None:
    best: CovariateTest | None = None
    for t in tests:
        if best is None:
            best = t
        elif t.p_adjusted < best.p_adjusted and not math.isclose(
            t.p_adjusted, best.p_adjusted, rel_tol=_TIE_RTOL
        ):
            best = t
    return best


# ------------------------------------------------------------------ #
# Building blocks
# ------------------------------------------------------------------ #


def _inv_sqrt(J: np.ndarray) -> tuple[np.ndarray, int]:
    """Symmetric pseudo-inverse square root and numerical rank of *J*."""
    vals, vecs = np.linalg.eigh(J)
    top = vals.max(initial=0.0)
    keep = vals > _EIG_RTOL * max(top, 0.0)
    if not keep.any():
        return np.zeros_like(J), 0
    inv = np.zeros_like(vals)
    inv[keep] = 1.0 / np.sqrt(vals[keep])
    return (vecs * inv) @ vecs.T, int(keep.sum())


def _cluster_sums(scores: np.ndarray, cluster: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Per-cluster score sums and the cluster code of each sum."""
    codes, inverse = np.unique(cluster, return_inverse=True)
    sums = np.zeros((len(codes), scores.shape[1]))
    np.add.at(sums, inverse, scores)
    return sums, codes


def _is_cluster_level(x: np.ndarray, cluster: np.ndarray) -> bool:
    """True when *x* takes one value within every cluster."""
    order = np.lexsort((x, cluster))
    c, v = cluster[order], x[order]
    return not bool(np.any((c[1:] == c[:-1]) & (v[1:] != v[:-1])))


def _cluster_values(x: np.ndarray, cluster: np.ndarray, codes: np.ndarray) -> np.ndarray:
    """Value of a cluster-level covariate for every cluster in *codes*."""
    first = {}
    for xi, ci in zip(x.tolist(), cluster.tolist(), strict=True):
        first.setdefault(ci, xi)
    return np.array([first[c] for c in codes.tolist()], dtype=float)


def _dm_pvalue(statistic: float, k: int) -> float:
    if k == 0 or statistic <= 0:
        return 1.0
    q = float(stats.kstwobign.sf(statistic))
    if q >= 1.0:
        return 1.0
    return float(-math.expm1(k * math.log1p(-q)))


def _adjust(p: float, m: int) -> float:
    if p >= 1.0:
        return 1.0
    return float(-math.expm1(m * math.log1p(-p)))


def _dm_test(
    scores: np.ndarray, x: np.ndarray, J: np.ndarray, n_norm: int
) -> tuple[float, float, int]:
    J_is, k = _inv_sqrt(J)
    order = np.argsort(x, kind="stable")
    xs = x[order]
    ends = np.flatnonzero(xs[1:] != xs[:-1])
    if ends.size == 0 or k == 0:
        return 0.0, 1.0, k
    W = np.cumsum(scores[order] @ J_is, axis=0) / math.sqrt(n_norm)
    statistic = float(np.max(np.abs(W[ends])))
    return statistic, _dm_pvalue(statistic, k), k


def _lm_test(
    scores: np.ndarray, x: np.ndarray, J: np.ndarray, n_norm: int
) -> tuple[float, float, int]:
    J_is, k = _inv_sqrt(J)
    levels, inverse = np.unique(x, return_inverse=True)
    L = len(levels)
    df = k * (L - 1)
    if df == 0:
        return 0.0, 1.0, 0
    dec = scores @ J_is
    sums = np.zeros((L, dec.shape[1]))
    np.add.at(sums, inverse, dec)
    counts = np.bincount(inverse, minlength=L).astype(float)
    statistic = float(np.sum(np.sum(sums**2, axis=1) / counts))
    return statistic, float(stats.chi2.sf(statistic, df)), df


# ------------------------------------------------------------------ #
# Instability test
# ------------------------------------------------------------------ #


def fluctuation_test(
    scores: np.ndarray,
    variables: Sequence[PartitionVariable],
    cluster: np.ndarray | None = None,
    cluster_aware: bool = False,
    bonferroni: bool = True,
    alpha: float = 0.05,
) -> InstabilityResult:
    """Test the node's parameters for instability along each variable.

    Args:
        scores: Per-row scores ``(n, k)`` of the node model.
        variables: Partitioning variables with *values* aligned to the
            rows of *scores*, in caller (tie-break) order.
        cluster: Cluster codes aligned to *scores*; required for
            cluster-aware testing.
        cluster_aware: Use cluster-summed scores for cluster-level
            variables; row-level variables are tested as without it.
        bonferroni: Apply the ``1 − (1 − p)^m`` adjustment.
        alpha: Significance level for selection.

    Returns:
        Per-variable statistics and the selected variable, if any.

    Raises:
        ValueError: If cluster-aware testing is requested without
            cluster codes, or shapes disagree.
    """
    scores = np.asarray(scores, dtype=float)
    n = scores.shape[0]
    if cluster_aware and cluster is None:
        msg = "cluster_aware=True requires cluster codes."
        raise ValueError(msg)
    for var in variables:
        if len(var.values) != n:
            msg = (
                f"Partition variable '{var.name}' has {len(var.values)} values "
                f"but the score matrix has {n} rows."
            )
            raise ValueError(msg)

    J_row = scores.T @ scores / n
    if cluster_aware:
        sums, codes = _cluster_sums(scores, cluster)
        G = len(codes)
        J_cluster = sums.T @ sums / G

    m = len(variables)
    raw: list[tuple[PartitionVariable, float, float, int, int, bool]] = []
    for var in variables:
        x = var.values
        test = _lm_test if var.kind == "nominal" else _dm_test
        if cluster_aware and _is_cluster_level(x, cluster):
            xg = _cluster_values(x, cluster, codes)
            statistic, p, df = test(sums, xg, J_cluster, G)
            raw.append((var, statistic, p, df, G, True))
        else:
            statistic, p, df = test(scores, x, J_row, n)
            raw.append((var, statistic, p, df, n, False))

    tests = tuple(
        CovariateTest(
            name=var.name,
            kind=var.kind,
            statistic=statistic,
            p_value=p,
            p_adjusted=_adjust(p, m) if bonferroni else p,
            df=df,
            n_units=units,
            cluster_level=level,
        )
        for var, statistic, p, df, units, level in raw
    )
    best = _pick_best(tests)
    selected = best.name if best is not None and best.p_adjusted < alpha else None
    return InstabilityResult(tests=tests, selected=selected, alpha=alpha)


# ------------------------------------------------------------------ #
# Split objectives
# ------------------------------------------------------------------ #


class SplitObjective(Protocol):
    """Deviance of a node model refitted on a subset of rows."""

    def deviance(self, rows: np.ndarray) -> float:
        """Deviance of the model fitted on *rows*; ``inf`` if not estimable."""
        ...

    def ordered_deviances(self, rows: np.ndarray, cuts: np.ndarray) -> np.ndarray:
        """Summed child deviance for each cut of the ordered *rows*.

        ``cuts[j]`` is the size of the left child (the first
        ``cuts[j]`` entries of *rows*).
        """
        ...


@dataclass(frozen=True)
class GaussianObjective:
    """Least-squares objective with closed-form cumulative cross-products.

    Attributes:
        X: Node-level design of the full dataset.
        y: Response with the offset already subtracted.
    """

    X: np.ndarray
    y: np.ndarray

    def deviance(self, rows: np.ndarray) -> float:
        Xr, yr = self.X[rows], self.y[rows]
        if np.linalg.matrix_rank(Xr) < Xr.shape[1]:
            return math.inf
        beta, _, _, _ = np.linalg.lstsq(Xr, yr, rcond=None)
        return float(np.sum((yr - Xr @ beta) ** 2))

    def ordered_deviances(self, rows: np.ndarray, cuts: np.ndarray) -> np.ndarray:
        if cuts.size == 0:
            return np.zeros(0)
        Xs, ys = self.X[rows], self.y[rows]
        p = Xs.shape[1]
        XtX = np.cumsum(Xs[:, :, None] * Xs[:, None, :], axis=0)
        Xty = np.cumsum(Xs * ys[:, None], axis=0)
        yty = np.cumsum(ys**2)

        left = cuts - 1
        A_l, b_l, c_l = XtX[left], Xty[left], yty[left]
        A_r, b_r, c_r = XtX[-1] - A_l, Xty[-1] - b_l, yty[-1] - c_l

        out = np.full(cuts.size, math.inf)
        ok = (np.linalg.matrix_rank(A_l, hermitian=True) == p) & (
            np.linalg.matrix_rank(A_r, hermitian=True) == p
        )
        if ok.any():
            rss_l = c_l[ok] - np.einsum(
                "ij,ij->i", b_l[ok], np.linalg.solve(A_l[ok], b_l[ok][..., None])[..., 0]
            )
            rss_r = c_r[ok] - np.einsum(
                "ij,ij->i", b_r[ok], np.linalg.solve(A_r[ok], b_r[ok][..., None])[..., 0]
            )
            out[ok] = np.maximum(rss_l, 0.0) + np.maximum(rss_r, 0.0)
        return out


@dataclass(frozen=True)
class GLMObjective:
    """IRLS refits of the node GLM on each candidate child."""

    X: np.ndarray
    y: np.ndarray
    family: Family
    offset: np.ndarray
    max_iter: int = 100
    tol: float = 1e-8

    def deviance(self, rows: np.ndarray) -> float:
        try:
            model = fit_glm(
                self.X[rows],
                self.y[rows],
                self.family,
                self.offset[rows],
                max_iter=self.max_iter,
                tol=self.tol,
            )
        except RankDeficiency:
            return math.inf
        except ConvergenceFailure as exc:
            if exc.model is None:
                return math.inf
            model = exc.model
        return model.deviance

    def ordered_deviances(self, rows: np.ndarray, cuts: np.ndarray) -> np.ndarray:
        return np.array(
            [self.deviance(rows[:c]) + self.deviance(rows[c:]) for c in cuts.tolist()],
            dtype=float,
        )


def make_objective(
    family: Family,
    X: np.ndarray,
    y: np.ndarray,
    offset: np.ndarray,
    *,
    max_iter: int = 100,
    tol: float = 1e-8,
) -> SplitObjective:
    """The split objective for *family* over the full dataset."""
    if family.is_canonical_gaussian:
        return GaussianObjective(X=X, y=y - offset)
    return GLMObjective(X=X, y=y, family=family, offset=offset, max_iter=max_iter, tol=tol)


# ------------------------------------------------------------------ #
# Best split
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class SplitCandidate:
    """The best binary split along one variable.

    Attributes:
        variable: Variable name.
        kind: Variable kind.
        threshold: For numeric / ordinal variables the left child is
            ``value <= threshold`` (ordinal thresholds are level codes).
        left_levels: For nominal variables, the level codes sent left.
        deviance: Summed deviance of the two child models.
        left: Row indices of the left child.
        right: Row indices of the right child.
    """

    variable: str
    kind: str
    threshold: float | None
    left_levels: tuple[int, ...] | None
    deviance: float
    left: np.ndarray = field(repr=False)
    right: np.ndarray = field(repr=False)

    @property
    def n_left(self) -> int:
        return len(self.left)

    @property
    def n_right(self) -> int:
        return len(self.right)


def _distinct_prefix(codes: np.ndarray) -> np.ndarray:
    """Number of distinct values among ``codes[:i + 1]`` for every i."""
    _, first = np.unique(codes, return_index=True)
    flags = np.zeros(len(codes), dtype=np.intp)
    flags[first] = 1
    return np.cumsum(flags)


def _admissible_cuts(
    xs: np.ndarray,
    cluster_sorted: np.ndarray | None,
    minsize: int,
    min_clusters: int,
) -> np.ndarray:
    n = len(xs)
    cuts = np.flatnonzero(xs[1:] != xs[:-1]) + 1
    cuts = cuts[(cuts >= minsize) & (n - cuts >= minsize)]
    if cluster_sorted is not None and min_clusters > 0 and cuts.size:
        left = _distinct_prefix(cluster_sorted)
        right = _distinct_prefix(cluster_sorted[::-1])[::-1]
        ok = (left[cuts - 1] >= min_clusters) & (right[cuts] >= min_clusters)
        cuts = cuts[ok]
    return cuts


def _children_ok(
    left: np.ndarray,
    right: np.ndarray,
    cluster: np.ndarray | None,
    minsize: int,
    min_clusters: int,
) -> bool:
    if len(left) < minsize or len(right) < minsize:
        return False
    if cluster is not None and min_clusters > 0:
        if np.unique(cluster[left]).size < min_clusters:
            return False
        if np.unique(cluster[right]).size < min_clusters:
            return False
    return True


def _ordered_split(
    index: np.ndarray,
    x: np.ndarray,
    objective: SplitObjective,
    minsize: int,
    cluster: np.ndarray | None,
    min_clusters: int,
) -> tuple[float, np.ndarray, np.ndarray, float] | None:
    order = np.argsort(x, kind="stable")
    rows = index[order]
    xs = x[order]
    cs = None if cluster is None else cluster[rows]
    cuts = _admissible_cuts(xs, cs, minsize, min_clusters)
    if cuts.size == 0:
        return None
    dev = objective.ordered_deviances(rows, cuts)
    if not np.isfinite(dev).any():
        return None
    j = int(np.argmin(dev))
    c = int(cuts[j])
    return float(xs[c - 1]), rows[:c], rows[c:], float(dev[j])


def best_split(
    variable: PartitionVariable,
    index: np.ndarray,
    objective: SplitObjective,
    minsize: int,
    cluster: np.ndarray | None = None,
    min_clusters: int = 0,
    *,
    residuals: np.ndarray | None = None,
    max_nominal_levels: int = 10,
) -> SplitCandidate | None:
    """Find the deviance-minimising binary split of *index* along *variable*.

    Args:
        variable: Partitioning variable over the full dataset.
        index: Row indices of the node.
        objective: Child-model deviance evaluator.
        minsize: Minimum rows per child.
        cluster: Cluster codes of the full dataset; enables the
            *min_clusters* constraint.
        min_clusters: Minimum distinct clusters per child.
        residuals: Working residuals aligned to *index*, used to order
            the levels of nominal variables with many levels.
        max_nominal_levels: Largest number of observed levels searched
            exhaustively.

    Returns:
        The best admissible split, or ``None`` when no split satisfies
        the size, cluster and rank constraints.
    """
    index = np.asarray(index, dtype=np.intp)
    x = variable.values[index]

    if variable.kind != "nominal":
        found = _ordered_split(index, x, objective, minsize, cluster, min_clusters)
        if found is None:
            return None
        threshold, left, right, dev = found
        return SplitCandidate(
            variable=variable.name,
            kind=variable.kind,
            threshold=threshold,
            left_levels=None,
            deviance=dev,
            left=left,
            right=right,
        )

    observed = np.unique(x).astype(int)
    if observed.size < 2:
        return None

    if observed.size > max_nominal_levels:
        if residuals is None:
            msg = "Nominal variables with many levels need working residuals."
            raise ValueError(msg)
        means = np.array([residuals[x == lvl].mean() for lvl in observed])
        ranked = observed[np.argsort(means, kind="stable")]
        position = {lvl: i for i, lvl in enumerate(ranked.tolist())}
        xr = np.array([position[v] for v in x.astype(int).tolist()], dtype=float)
        found = _ordered_split(index, xr, objective, minsize, cluster, min_clusters)
        if found is None:
            return None
        threshold, left, right, dev = found
        left_levels = tuple(sorted(ranked[: int(threshold) + 1].tolist()))
        return SplitCandidate(
            variable=variable.name,
            kind=variable.kind,
            threshold=None,
            left_levels=left_levels,
            deviance=dev,
            left=left,
            right=right,
        )

    best: SplitCandidate | None = None
    first, rest = int(observed[0]), observed[1:].tolist()
    # The first observed level always goes left, so each partition is
    # enumerated once.
    for r in range(0, len(rest)):
        for combo in itertools.combinations(rest, r):
            left_levels = (first, *combo)
            mask = np.isin(x, left_levels)
            left, right = index[mask], index[~mask]
            if not _children_ok(left, right, cluster, minsize, min_clusters):
                continue
            dev = objective.deviance(left) + objective.deviance(right)
            if not math.isfinite(dev):
                continue
            if best is None or dev < best.deviance:
                best = SplitCandidate(
                    variable=variable.name,
                    kind=variable.kind,
                    threshold=None,
                    left_levels=tuple(sorted(left_levels)),
                    deviance=dev,
                    left=left,
                    right=right,
                )
    return best


def subset_variables(
    variables: Sequence[PartitionVariable], index: np.ndarray
) -> list[PartitionVariable]:
    """Partition variables restricted to the rows in *index*."""
    return [replace(v, values=v.values[index]) for v in variables]


__all__ = [
    "CovariateTest",
    "GLMObjective",
    "GaussianObjective",
    "InstabilityResult",
    "SplitCandidate",
    "best_split",
    "estfun",
    "fluctuation_test",
    "make_objective",
    "subset_variables",
]
