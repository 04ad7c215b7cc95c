"""Model-based recursive partitioning driver.

Each node goes through ``Created → Fitting → Testing → Splitting`` or
stops in a terminal :class:`~glmmtree.tree.NodeStatus`:

1. **Fitting** — the node GLM is fitted on the node's rows with the
   frozen global offset from the :class:`~glmmtree._context.GrowContext`.
2. **Size check** — fewer than ``2·minsize`` rows (or, with a cluster
   constraint, fewer than ``2·min_clusters`` clusters) leaves no room
   for an admissible split.  A binomial or Poisson node that already
   fits its responses exactly is terminal as well.
3. **Testing** — score-based instability tests over all partitioning
   variables.  The deadline is checked here: a node reached after the
   time budget ran out keeps its fit but is not tested.
4. **Splitting** — the selected variable's best split creates two
   children one level deeper, unless ``maxdepth`` is reached.

The tree grows level by level.  All nodes of a level are independent
(disjoint rows, read-only context), so they are evaluated with joblib
threads when ``n_jobs > 1``.  Node ids are assigned afterwards in
pre-order, which makes the result independent of scheduling.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field, replace

import numpy as np
from joblib import Parallel, delayed

from ._context import GrowContext
from ._design import PartitionVariable
from .exceptions import ConvergenceFailure, RankDeficiency
from .instability import (
    InstabilityResult,
    SplitCandidate,
    best_split,
    estfun,
    fluctuation_test,
    subset_variables,
)
from .mixed import FittedModel, fit_glm
from .tree import Node, NodeStatus, PartitionTree, SplitRule

logger = logging.getLogger(__name__)

# Total deviance below which a fixed-scale node model fits its data exactly.
_EXACT_FIT_DEVIANCE = 1e-6


@dataclass
class _NodeState:
    """Mutable record of a node while the tree is growing."""

    index: np.ndarray
    depth: int
    model: FittedModel | None = None
    status: NodeStatus | None = None
    split: SplitRule | None = None
    instability: InstabilityResult | None = None
    errors: list[str] = field(default_factory=list)
    left: _NodeState | None = None
    right: _NodeState | None = None
    out_of_time: bool = False


def _split_rule(
    variable: PartitionVariable, candidate: SplitCandidate, index: np.ndarray
) -> SplitRule:
    default_left = candidate.n_left >= candidate.n_right
    if variable.kind == "numeric":
        return SplitRule(
            variable=variable.name,
            kind="numeric",
            threshold=float(candidate.threshold),
            default_left=default_left,
        )
    levels = variable.levels or ()
    if variable.kind == "ordinal":
        return SplitRule(
            variable=variable.name,
            kind="ordinal",
            threshold=levels[int(candidate.threshold)],
            levels=levels,
            default_left=default_left,
        )
    observed = np.unique(variable.values[index]).astype(int).tolist()
    left_codes = set(candidate.left_levels or ())
    return SplitRule(
        variable=variable.name,
        kind="nominal",
        left_levels=tuple(levels[c] for c in observed if c in left_codes),
        right_levels=tuple(levels[c] for c in observed if c not in left_codes),
        default_left=default_left,
    )


def _evaluate(ctx: GrowContext, state: _NodeState) -> None:
    """Fit, test and (possibly) split one node, writing into *state*."""
    control = ctx.control
    d = ctx.design
    idx = state.index
    X, y, offset = d.X[idx], d.y[idx], ctx.offset[idx]

    # ---- Fitting ----
    try:
        model = fit_glm(
            X,
            y,
            ctx.family,
            offset,
            coef_names=d.x_names,
            max_iter=control.max_iter,
            tol=control.tol,
        )
    except RankDeficiency as exc:
        if control.on_rank_deficiency == "raise":
            raise
        state.status = NodeStatus.RANK_DEFICIENCY
        state.errors.append(str(exc))
        logger.debug("Node at depth %d (n=%d): %s", state.depth, len(idx), exc)
        return
    except ConvergenceFailure as exc:
        state.model = exc.model
        state.status = NodeStatus.CONVERGENCE_FAILURE
        state.errors.append(str(exc))
        logger.debug("Node at depth %d (n=%d): %s", state.depth, len(idx), exc)
        return
    state.model = model

    # ---- Size check ----
    if len(idx) < 2 * ctx.minsize or (
        ctx.min_clusters > 0 and d.n_clusters(idx) < 2 * ctx.min_clusters
    ):
        state.status = NodeStatus.INSUFFICIENT_NODE_SIZE
        return

    # Pure binomial or all-zero count nodes: the scores are numerical residue.
    if not ctx.family.has_dispersion and model.deviance < _EXACT_FIT_DEVIANCE:
        state.status = NodeStatus.NO_ADMISSIBLE_SPLIT
        return

    if ctx.expired():
        state.status = NodeStatus.TRUNCATED
        state.out_of_time = True
        state.errors.append("Time budget exhausted before this node was tested.")
        return

    # ---- Testing ----
    cluster = d.cluster[idx] if control.cluster_aware else None
    result = fluctuation_test(
        estfun(model, X, y),
        subset_variables(d.partition, idx),
        cluster=cluster,
        cluster_aware=control.cluster_aware,
        bonferroni=control.bonferroni,
        alpha=control.alpha,
    )
    state.instability = result
    best = result.best
    logger.debug(
        "Node at depth %d (n=%d): best %s p_adj=%.4g",
        state.depth,
        len(idx),
        best.name if best else None,
        best.p_adjusted if best else 1.0,
    )
    if not result.significant:
        state.status = NodeStatus.NO_ADMISSIBLE_SPLIT
        return
    if state.depth >= control.maxdepth:
        state.status = NodeStatus.TRUNCATED
        return

    # ---- Splitting ----
    variable = next(v for v in d.partition if v.name == result.selected)
    working_residual = _working_residual(ctx, model, y)
    candidate = best_split(
        variable,
        idx,
        ctx.objective,
        ctx.minsize,
        cluster=d.cluster if ctx.min_clusters > 0 else None,
        min_clusters=ctx.min_clusters,
        residuals=working_residual,
        max_nominal_levels=control.max_nominal_levels,
    )
    if candidate is None:
        state.status = NodeStatus.NO_ADMISSIBLE_SPLIT
        return

    state.split = _split_rule(variable, candidate, idx)
    state.status = NodeStatus.SPLIT
    state.left = _NodeState(index=np.sort(candidate.left), depth=state.depth + 1)
    state.right = _NodeState(index=np.sort(candidate.right), depth=state.depth + 1)


def _working_residual(
    ctx: GrowContext, model: FittedModel, y: np.ndarray
) -> np.ndarray:
    """Working residuals ``(y − μ) / μ'(η)`` of a node model."""
    z, _, _ = ctx.family.working(y, model.eta)
    return z - model.eta


def _freeze(root: _NodeState, ctx: GrowContext) -> Node:
    counter = itertools.count(1)

    def build(state: _NodeState) -> Node:
        node_id = next(counter)
        left = build(state.left) if state.left is not None else None
        right = build(state.right) if state.right is not None else None
        return Node(
            id=node_id,
            depth=state.depth,
            index=state.index,
            model=state.model,
            status=state.status or NodeStatus.NO_ADMISSIBLE_SPLIT,
            split=state.split,
            left=left,
            right=right,
            instability=state.instability,
            errors=tuple(state.errors),
            n_clusters=ctx.design.n_clusters(state.index),
        )

    return build(root)


def grow_tree(ctx: GrowContext) -> PartitionTree:
    """Grow a partition tree with the context's frozen global offset.

    Args:
        ctx: Growth context; :meth:`GrowContext.freeze` must have been
            called for the current pass.

    Returns:
        The frozen tree.

    Raises:
        RankDeficiency: When a node design is rank deficient and
            ``on_rank_deficiency="raise"``.
    """
    if ctx.offset is None or ctx.objective is None:
        msg = "GrowContext.freeze() must be called before grow_tree()."
        raise RuntimeError(msg)

    ctx.start_clock()
    root = _NodeState(index=np.arange(ctx.design.n), depth=0)
    frontier = [root]
    all_states = [root]
    while frontier:
        if ctx.n_jobs == 1 or len(frontier) == 1:
            for state in frontier:
                _evaluate(ctx, state)
        else:
            Parallel(n_jobs=ctx.n_jobs, prefer="threads")(
                delayed(_evaluate)(ctx, state) for state in frontier
            )
        frontier = [
            child
            for state in frontier
            for child in (state.left, state.right)
            if child is not None
        ]
        all_states.extend(frontier)

    if any(s.out_of_time for s in all_states):
        ctx.truncated = True
        logger.debug("Tree growth stopped by the time budget.")

    tree = PartitionTree(root=_freeze(root, ctx), global_coef=_global_coef(ctx))
    logger.debug("Grown tree: %d nodes, %d leaves.", tree.n_nodes, tree.n_leaves)
    return tree


def _global_coef(ctx: GrowContext) -> dict[str, float]:
    if ctx.global_coef is None:
        return {}
    return dict(zip(ctx.design.xg_names, ctx.global_coef.tolist(), strict=True))


def with_leaf_models(
    tree: PartitionTree, models: dict[int, FittedModel], global_coef: dict[str, float]
) -> PartitionTree:
    """Copy of *tree* with the terminal node models replaced."""

    def rebuild(node: Node) -> Node:
        if node.is_terminal:
            return replace(node, model=models.get(node.id, node.model))
        return replace(node, left=rebuild(node.left), right=rebuild(node.right))

    return PartitionTree(root=rebuild(tree.root), global_coef=global_coef)


__all__ = ["grow_tree", "with_leaf_models"]
