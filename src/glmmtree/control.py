"""Tuning parameters for tree growth and the estimation loop."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

from typing_extensions import Self

from ._config import _validate as _validate_n_jobs

_STRATEGIES = ("joint", "once")
_RANK_POLICIES = ("raise", "terminal")


@dataclass(frozen=True)
class TreeControl:
    """Settings for :func:`~glmmtree.glmm_tree`.

    Attributes:
        alpha: Significance level of the instability tests.
        bonferroni: Adjust p-values for the number of partitioning
            variables tested in a node.
        minsize: Minimum number of rows per child node.  ``None`` uses
            ten times the number of node-model parameters.
        min_clusters: Minimum number of distinct clusters per child
            node.  ``None`` uses 2 in cluster-aware mode and 0 (no
            constraint) otherwise.
        maxdepth: Maximum depth; the root has depth 0.
        cluster_aware: Run cluster-aware instability tests.
        strategy: ``"joint"`` alternates tree growth with the full
            mixed model until the log-likelihood stabilises;
            ``"once"`` estimates the random and global effects in one
            auxiliary pass and grows the tree once.
        reml: Estimate variance components by REML (else ML).
        max_outer_iter: Cap on ``"joint"`` alternations.
        outer_tol: Absolute log-likelihood change ending the
            ``"joint"`` alternation.
        max_iter: Iteration cap of the IRLS / PQL fitters.
        tol: Convergence tolerance of the IRLS fitter.
        on_rank_deficiency: ``"raise"`` aborts the run on a
            rank-deficient node model; ``"terminal"`` marks the node
            terminal with the error attached.
        time_budget: Wall-clock seconds for growing one tree; nodes
            still unexpanded when it runs out are left as truncated
            leaves.  ``None`` means unlimited.
        n_jobs: Worker threads for sibling nodes (see
            :func:`~glmmtree.set_n_jobs`).
        max_nominal_levels: Largest number of levels for which nominal
            splits are searched exhaustively.
    """

    alpha: float = 0.05
    bonferroni: bool = True
    minsize: int | None = None
    min_clusters: int | None = None
    maxdepth: int = 10
    cluster_aware: bool = False
    strategy: str = "joint"
    reml: bool = True
    max_outer_iter: int = 100
    outer_tol: float = 1e-3
    max_iter: int = 100
    tol: float = 1e-8
    on_rank_deficiency: str = "raise"
    time_budget: float | None = None
    n_jobs: int | None = None
    max_nominal_levels: int = 10

    def __post_init__(self) -> None:
        if not 0.0 < self.alpha < 1.0:
            msg = f"alpha must be in (0, 1), got {self.alpha}."
            raise ValueError(msg)
        if self.minsize is not None and self.minsize < 1:
            msg = f"minsize must be a positive integer, got {self.minsize}."
            raise ValueError(msg)
        if self.min_clusters is not None and self.min_clusters < 0:
            msg = f"min_clusters must be non-negative, got {self.min_clusters}."
            raise ValueError(msg)
        if self.maxdepth < 0:
            msg = f"maxdepth must be non-negative, got {self.maxdepth}."
            raise ValueError(msg)
        if self.strategy not in _STRATEGIES:
            msg = f"strategy must be one of {_STRATEGIES}, got {self.strategy!r}."
            raise ValueError(msg)
        if self.on_rank_deficiency not in _RANK_POLICIES:
            msg = (
                f"on_rank_deficiency must be one of {_RANK_POLICIES}, "
                f"got {self.on_rank_deficiency!r}."
            )
            raise ValueError(msg)
        if self.max_outer_iter < 1 or self.max_iter < 1:
            msg = "Iteration caps must be at least 1."
            raise ValueError(msg)
        if self.outer_tol <= 0 or self.tol <= 0:
            msg = "Tolerances must be positive."
            raise ValueError(msg)
        if self.time_budget is not None and self.time_budget <= 0:
            msg = f"time_budget must be positive, got {self.time_budget}."
            raise ValueError(msg)
        if self.n_jobs is not None:
            _validate_n_jobs(self.n_jobs)
        if self.max_nominal_levels < 2:
            msg = f"max_nominal_levels must be at least 2, got {self.max_nominal_levels}."
            raise ValueError(msg)

    def with_options(self, **changes: Any) -> Self:
        """Copy with some settings changed (validated again)."""
        return replace(self, **changes)

    def resolve_minsize(self, n_params: int) -> int:
        return self.minsize if self.minsize is not None else 10 * n_params

    def resolve_min_clusters(self, has_clusters: bool) -> int:
        if self.min_clusters is not None:
            return self.min_clusters if has_clusters else 0
        return 2 if (self.cluster_aware and has_clusters) else 0


__all__ = ["TreeControl"]
