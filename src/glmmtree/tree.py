"""Partition tree: nodes, split rules, and traversal.

A :class:`PartitionTree` is built once by the growing driver and is
read-only afterwards.  Node ids are assigned in pre-order (root = 1),
so ids, depths and traversal order depend only on the tree shape,
never on the order in which nodes were evaluated.
"""

from __future__ import annotations

import enum
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd

from ._compat import DataFrameLike, _as_model_frame
from .instability import InstabilityResult
from .mixed import FittedModel


class NodeStatus(enum.Enum):
    """Why a node ended up the way it did."""

    SPLIT = "split"
    NO_ADMISSIBLE_SPLIT = "no_admissible_split"
    INSUFFICIENT_NODE_SIZE = "insufficient_node_size"
    TRUNCATED = "truncated"
    RANK_DEFICIENCY = "rank_deficiency"
    CONVERGENCE_FAILURE = "convergence_failure"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class SplitRule:
    """A binary split on the raw values of one partitioning variable.

    Attributes:
        variable: Column name.
        kind: ``"numeric"``, ``"ordinal"`` or ``"nominal"``.
        threshold: Numeric threshold (left is ``x <= threshold``), or
            the last level sent left for ordinal variables.
        levels: Ordered level labels of an ordinal variable.
        left_levels: Levels sent left by a nominal split.
        right_levels: Levels sent right by a nominal split.
        default_left: Side taken by values unseen at fit time (the
            larger child).
    """

    variable: str
    kind: str
    threshold: Any = None
    levels: tuple[Any, ...] | None = None
    left_levels: tuple[Any, ...] | None = None
    right_levels: tuple[Any, ...] | None = None
    default_left: bool = True

    def goes_left(self, values: Any) -> np.ndarray:
        """Boolean mask of the values sent to the left child."""
        values = np.asarray(values)
        if self.kind == "numeric":
            x = pd.to_numeric(pd.Series(values), errors="coerce").to_numpy(dtype=float)
            known = ~np.isnan(x)
            return np.where(known, x <= float(self.threshold), self.default_left)
        if self.kind == "ordinal":
            codes = pd.Categorical(values, categories=list(self.levels), ordered=True).codes
            cut = list(self.levels).index(self.threshold)
            return np.where(codes >= 0, codes <= cut, self.default_left)
        left = pd.Series(values).isin(list(self.left_levels)).to_numpy()
        right = pd.Series(values).isin(list(self.right_levels)).to_numpy()
        return np.where(left | right, left, self.default_left)

    def describe(self, side: str = "left") -> str:
        """Human-readable condition for one side of the split."""
        is_left = side == "left"
        if self.kind == "numeric":
            op = "<=" if is_left else ">"
            return f"{self.variable} {op} {self.threshold:.6g}"
        if self.kind == "ordinal":
            op = "<=" if is_left else ">"
            return f"{self.variable} {op} {self.threshold}"
        lv = self.left_levels if is_left else self.right_levels
        return f"{self.variable} in {{{', '.join(str(v) for v in lv)}}}"


@dataclass(frozen=True)
class Node:
    """One node of the partition tree.

    Attributes:
        id: Pre-order id (root = 1).
        depth: Depth (root = 0).
        index: Row indices of the node's observations.
        model: Fitted node model (``None`` only when fitting failed
            before any estimate was available).
        status: Terminal condition, or :attr:`NodeStatus.SPLIT`.
        split: Split rule of an internal node.
        left: Left child.
        right: Right child.
        instability: Instability test record, when testing ran.
        errors: Messages of failures attached to this node.
        n_clusters: Distinct clusters in the node (0 without clusters).
    """

    id: int
    depth: int
    index: np.ndarray = field(repr=False)
    model: FittedModel | None = field(default=None, repr=False)
    status: NodeStatus = NodeStatus.NO_ADMISSIBLE_SPLIT
    split: SplitRule | None = None
    left: Node | None = field(default=None, repr=False)
    right: Node | None = field(default=None, repr=False)
    instability: InstabilityResult | None = field(default=None, repr=False)
    errors: tuple[str, ...] = ()
    n_clusters: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.left is None

    @property
    def n_obs(self) -> int:
        return len(self.index)

    @property
    def children(self) -> tuple[Node, ...]:
        if self.left is None or self.right is None:
            return ()
        return (self.left, self.right)

    @property
    def reliable(self) -> bool:
        """False when the node model did not converge or failed."""
        return self.status not in (
            NodeStatus.CONVERGENCE_FAILURE,
            NodeStatus.RANK_DEFICIENCY,
        )


@dataclass(frozen=True)
class PartitionTree:
    """The grown tree plus its global parameters.

    Attributes:
        root: Root node.
        global_coef: Globally-shared fixed-effect estimates by name.
    """

    root: Node
    global_coef: dict[str, float] = field(default_factory=dict)
    _by_id: dict[int, Node] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_by_id", {n.id: n for n in self.walk()})

    # ---- Traversal ---------------------------------------------------

    def walk(self) -> Iterator[Node]:
        """Yield every node once, in pre-order."""
        stack = [self.root]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def leaves(self) -> list[Node]:
        """Terminal nodes in pre-order."""
        return [n for n in self.walk() if n.is_terminal]

    def node(self, node_id: int) -> Node:
        """Node with the given id.

        Raises:
            KeyError: If no node has that id.
        """
        try:
            return self._by_id[node_id]
        except KeyError:
            msg = f"No node with id {node_id}; ids run from 1 to {self.n_nodes}."
            raise KeyError(msg) from None

    def leaf_models(self) -> dict[int, FittedModel | None]:
        return {n.id: n.model for n in self.leaves()}

    @property
    def n_nodes(self) -> int:
        return len(self._by_id)

    @property
    def n_leaves(self) -> int:
        return len(self.leaves())

    @property
    def depth(self) -> int:
        return max(n.depth for n in self.walk())

    # ---- Routing -----------------------------------------------------

    def apply(self, data: DataFrameLike) -> np.ndarray:
        """Terminal node id of every row of *data*.

        Split rules are evaluated on the raw column values, so *data*
        needs the partitioning columns only.
        """
        df = _as_model_frame(data)
        out = np.zeros(len(df), dtype=np.intp)
        stack: list[tuple[Node, np.ndarray]] = [(self.root, np.arange(len(df)))]
        while stack:
            node, rows = stack.pop()
            if node.is_terminal or node.split is None:
                out[rows] = node.id
                continue
            go_left = node.split.goes_left(df[node.split.variable].to_numpy()[rows])
            stack.append((node.right, rows[~go_left]))
            stack.append((node.left, rows[go_left]))
        return out


__all__ = ["Node", "NodeStatus", "PartitionTree", "SplitRule"]
