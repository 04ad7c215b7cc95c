"""GLMM trees: the public entry point and the outer estimation loop.

A GLMM tree partitions the data with MOB while cluster-level random
effects ``b`` (and optional global fixed effects ``γ``) are estimated
on the whole dataset.  The node models see those global quantities
only through a fixed offset, so the two parts have to be estimated in
turn.  Two strategies are available (``TreeControl.strategy``):

``"joint"`` (default)
    Start from the ``γ̂`` and ``b̂`` of a pooled mixed model (as for
    ``"once"``) and alternate

    1. grow the tree with offset ``X_g γ̂ + Z b̂``;
    2. fit one mixed model on all rows with node-specific fixed
       effects ``X ⊗ 1[leaf]``, the global regressors and the random
       effects, giving new ``γ̂`` and ``b̂``;

    until the mixed-model log-likelihood changes by less than
    ``outer_tol`` (Fokkema et al. 2018).  Leaf models are read off the
    final mixed model.

``"once"``
    One auxiliary mixed model with pooled regressors estimates ``γ̂``
    and ``b̂``; they are frozen and the tree is grown once.

Without random terms and global regressors there is nothing to
alternate with and a single MOB pass grows a plain (G)LM tree.

References:
    * Fokkema, M., Smits, N., Zeileis, A., Hothorn, T. & Kelderman, H.
      (2018). Detecting treatment-subgroup interactions in clustered
      data with generalized linear mixed-effects model trees.
      *Behavior Research Methods*, 50, 2016–2034.
    * Zeileis, A., Hothorn, T. & Hornik, K. (2008). Model-based
      recursive partitioning. *J. Computational and Graphical
      Statistics*, 17(2), 492–514.
"""

from __future__ import annotations

import logging
import warnings
from typing import Any

import numpy as np

from ._compat import DataFrameLike, _as_model_frame
from ._config import get_n_jobs
from ._context import GrowContext
from ._design import Design, build_design, leaf_design
from ._results import NodeReport, TreeResult
from .control import TreeControl
from .exceptions import ConvergenceFailure, ConvergenceWarning
from .families import Family, resolve_family
from .formula import ModelSpec, parse_formula
from .mixed import FittedModel, fit_mixed
from .mob import grow_tree, with_leaf_models
from .tree import Node, PartitionTree

logger = logging.getLogger(__name__)


def _fit_global(
    ctx: GrowContext,
    X: np.ndarray,
    names: list[str],
    theta0: np.ndarray | None = None,
) -> FittedModel:
    """Fit the whole-data mixed model; keep the last iterate on non-convergence."""
    d = ctx.design
    try:
        return fit_mixed(
            X,
            d.y,
            d.Z,
            list(d.re_struct),
            ctx.family,
            d.offset,
            reml=ctx.control.reml,
            coef_names=tuple(names),
            theta0=theta0,
            max_iter=ctx.control.max_iter,
            tol=ctx.control.tol,
        )
    except ConvergenceFailure as exc:
        if exc.model is None:
            raise
        warnings.warn(
            f"{exc} Continuing with the last estimates.",
            ConvergenceWarning,
            stacklevel=3,
        )
        return exc.model


def _global_eta(d: Design, model: FittedModel, gamma: np.ndarray) -> np.ndarray:
    eta = d.Xg @ gamma if gamma.size else np.zeros(d.n)
    if model.random_eta is not None:
        eta = eta + model.random_eta
    return eta


# ------------------------------------------------------------------ #
# Strategies
# ------------------------------------------------------------------ #


def _grow_plain(ctx: GrowContext) -> PartitionTree:
    ctx.freeze(np.zeros(ctx.design.n))
    tree = grow_tree(ctx)
    ctx.n_outer = 1
    ctx.loglik_history.append(
        float(sum(leaf.model.loglik for leaf in tree.leaves() if leaf.model is not None))
    )
    return tree


def _grow_once(ctx: GrowContext) -> PartitionTree:
    d = ctx.design
    p = d.X.shape[1]
    aux = _fit_global(
        ctx, np.hstack([d.X, d.Xg]), [*d.x_names, *d.xg_names]
    )
    gamma = aux.coef[p:]
    ctx.random_model = aux
    ctx.global_coef = gamma
    ctx.loglik_history.append(aux.loglik)
    ctx.freeze(_global_eta(d, aux, gamma))
    ctx.n_outer = 1
    logger.debug("Auxiliary mixed model: loglik=%.6f", aux.loglik)
    return grow_tree(ctx)


def _leaf_model(
    full: FittedModel, leaf: Node, block: slice, d: Design, family: Family
) -> FittedModel:
    rows = leaf.index
    mu = full.mu[rows]
    return FittedModel(
        family=family,
        coef=full.coef[block],
        coef_names=d.x_names,
        cov_coef=full.cov_coef[block, block],
        sigma2=full.sigma2,
        loglik=family.loglik(d.y[rows], mu, scale=full.sigma2),
        deviance=family.deviance(d.y[rows], mu),
        eta=full.eta[rows],
        mu=mu,
        n_obs=len(rows),
        n_iter=full.n_iter,
        converged=full.converged and leaf.reliable,
        re_covariance=full.re_covariance,
        blups=full.blups,
        random_eta=None if full.random_eta is None else full.random_eta[rows],
        theta=full.theta,
        reml=full.reml,
    )


def _grow_joint(ctx: GrowContext) -> PartitionTree:
    d = ctx.design
    control = ctx.control
    p = d.X.shape[1]
    ll_prev: float | None = None
    ctx.outer_converged = False

    # The first tree is grown with the random effects of the pooled model.
    aux = _fit_global(ctx, np.hstack([d.X, d.Xg]), [*d.x_names, *d.xg_names])
    theta = aux.theta
    global_eta = _global_eta(d, aux, aux.coef[p:])
    logger.debug("Pooled starting model: loglik=%.6f", aux.loglik)

    for it in range(1, control.max_outer_iter + 1):
        ctx.truncated = False
        ctx.freeze(global_eta)
        tree = grow_tree(ctx)

        # Leaves without a usable node model contribute no columns.
        fitted = [leaf for leaf in tree.leaves() if leaf.model is not None]
        leaf_of_row = np.full(d.n, -1, dtype=np.intp)
        for pos, leaf in enumerate(fitted):
            leaf_of_row[leaf.index] = pos
        X_full = np.hstack([leaf_design(d.X, leaf_of_row, len(fitted)), d.Xg])
        names = [f"{leaf.id}:{name}" for leaf in fitted for name in d.x_names]
        full = _fit_global(ctx, X_full, [*names, *d.xg_names], theta0=theta)

        theta = full.theta
        gamma = full.coef[len(fitted) * p :]
        ctx.random_model = full
        ctx.global_coef = gamma
        ctx.loglik_history.append(full.loglik)
        ctx.n_outer = it
        global_eta = _global_eta(d, full, gamma)
        logger.debug(
            "Outer iteration %d: loglik=%.6f, leaves=%d", it, full.loglik, len(fitted)
        )

        if ll_prev is not None and abs(full.loglik - ll_prev) < control.outer_tol:
            ctx.outer_converged = True
            break
        ll_prev = full.loglik

    if not ctx.outer_converged:
        warnings.warn(
            f"The tree / mixed-model alternation did not converge in "
            f"{control.max_outer_iter} iterations.",
            ConvergenceWarning,
            stacklevel=3,
        )

    models = {
        leaf.id: _leaf_model(full, leaf, slice(pos * p, (pos + 1) * p), d, ctx.family)
        for pos, leaf in enumerate(fitted)
    }
    global_coef = dict(zip(d.xg_names, gamma.tolist(), strict=True))
    return with_leaf_models(tree, models, global_coef)


# ------------------------------------------------------------------ #
# Public entry point
# ------------------------------------------------------------------ #


def _residual_variance(ctx: GrowContext, tree: PartitionTree) -> float:
    if ctx.random_model is not None:
        return float(ctx.random_model.sigma2)
    if not ctx.family.has_dispersion:
        return 1.0
    leaves = [leaf for leaf in tree.leaves() if leaf.model is not None]
    rss = sum(leaf.model.deviance for leaf in leaves)
    dof = ctx.design.n - sum(len(leaf.model.coef) for leaf in leaves)
    return float(rss / dof) if dof > 0 else float("nan")


def _random_effects_summary(ctx: GrowContext) -> list[dict[str, Any]]:
    model = ctx.random_model
    if model is None or not model.has_random:
        return []
    d = ctx.design
    return [
        {
            "group": term.group,
            "names": term.coef_names(),
            "covariance": cov,
            "n_groups": G,
        }
        for term, cov, (G, _) in zip(
            d.spec.random, model.re_covariance, d.re_struct, strict=True
        )
    ]


def glmm_tree(
    data: DataFrameLike,
    model: str | ModelSpec,
    family: str | Family = "auto",
    control: TreeControl | None = None,
    *,
    link: str | None = None,
) -> TreeResult:
    """Grow a (generalized) linear mixed-effects model tree.

    Args:
        data: The dataset (pandas, or Polars ``DataFrame`` /
            ``LazyFrame``).
        model: A :class:`~glmmtree.formula.ModelSpec` or a formula
            ``"y ~ x | (1 | id) + g | z1 + z2"`` (node regressors |
            random terms and global regressors | partitioning
            variables).  A two-part formula grows a tree without a
            random part.
        family: ``"gaussian"``, ``"binomial"``, ``"poisson"``,
            ``"auto"`` (binomial for a 0/1 response, else gaussian), or
            a :class:`~glmmtree.families.Family`.
        control: Tuning parameters; defaults to :class:`TreeControl()`.
        link: Optional link overriding the family default.

    Returns:
        A frozen :class:`~glmmtree._results.TreeResult`.

    Raises:
        TypeError: If *data* or *model* have unsupported types.
        ValueError: For invalid columns, responses or settings.
        RankDeficiency: If a node model is rank deficient and
            ``control.on_rank_deficiency == "raise"``, or the whole-data
            mixed model is rank deficient.

    Examples:
        >>> result = glmm_tree(df, "y ~ treatment | (1 | cluster) | age + sex")
        >>> result.tree.n_leaves
        2
        >>> result.predict(df_new, type="node")
    """
    df = _as_model_frame(data)
    control = control if control is not None else TreeControl()
    if isinstance(model, str):
        spec = parse_formula(model)
    elif isinstance(model, ModelSpec):
        spec = model
    else:
        msg = f"model must be a formula string or ModelSpec, got {type(model).__name__}."
        raise TypeError(msg)

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")

        design = build_design(df, spec)
        fam = resolve_family(family, y=design.y, link=link)
        fam.validate_y(design.y)
        if control.cluster_aware and design.cluster is None:
            msg = (
                "cluster_aware=True needs a cluster column or a random-effects "
                "term to define clusters."
            )
            raise ValueError(msg)

        ctx = GrowContext(
            control=control,
            family=fam,
            design=design,
            n_jobs=get_n_jobs(control.n_jobs),
            minsize=control.resolve_minsize(design.X.shape[1]),
            min_clusters=control.resolve_min_clusters(design.cluster is not None),
        )
        logger.debug(
            "glmm_tree: n=%d family=%s/%s minsize=%d min_clusters=%d n_jobs=%d",
            design.n, fam.name, fam.link_name, ctx.minsize, ctx.min_clusters, ctx.n_jobs,
        )

        if not design.has_random and design.Xg.shape[1] == 0:
            strategy = "tree"
            tree = _grow_plain(ctx)
        elif control.strategy == "once":
            strategy = "once"
            tree = _grow_once(ctx)
        else:
            strategy = "joint"
            tree = _grow_joint(ctx)

    ctx.warnings_captured = [str(w.message) for w in caught]
    for w in caught:
        warnings.warn_explicit(w.message, w.category, w.filename, w.lineno)

    random_model = ctx.random_model
    return TreeResult(
        tree=tree,
        nodes=tuple(NodeReport.from_node(node) for node in tree.walk()),
        formula=str(spec),
        family=fam,
        link=fam.link_name,
        strategy=strategy,
        global_coef=dict(tree.global_coef),
        random_effects=_random_effects_summary(ctx),
        sigma2=_residual_variance(ctx, tree),
        loglik_history=list(ctx.loglik_history),
        n_outer=ctx.n_outer,
        converged=ctx.outer_converged,
        truncated=ctx.truncated,
        warnings=list(ctx.warnings_captured),
        n_obs=design.n,
        design=design,
        blups=random_model.blups if random_model is not None else (),
        context=ctx,
    )


__all__ = ["glmm_tree"]
