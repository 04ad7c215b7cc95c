"""Typed result objects for GLMM trees.

:class:`TreeResult` is the snapshot of a completed run and
:class:`NodeReport` the flat summary of one node.  Both are frozen
dataclasses whose fields can also be read by key (``result["strategy"]``,
``result.get("n_outer")``, ``"warnings" in result``).

``to_dict()`` produces strict JSON input: arrays become lists, node
statuses their string value, families their name, and non-finite
numbers (untested p-values, ``-inf`` log-likelihoods) ``None``.
"""

from __future__ import annotations

import enum
import functools
import math
from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING, Any, ClassVar

import numpy as np

from ._compat import DataFrameLike, _as_model_frame
from .families import Family
from .tree import Node, NodeStatus, PartitionTree

if TYPE_CHECKING:
    from ._context import GrowContext
    from ._design import Design


@functools.singledispatch
def _to_native(obj: Any) -> Any:
    """JSON-ready form of a result field value."""
    return obj


@_to_native.register
def _(obj: float) -> float | None:
    return obj if math.isfinite(obj) else None


@_to_native.register
def _(obj: np.generic) -> Any:
    return _to_native(obj.item())


@_to_native.register
def _(obj: np.ndarray) -> list[Any]:
    return _to_native(obj.tolist())


@_to_native.register(list)
@_to_native.register(tuple)
def _(obj: list | tuple) -> list[Any]:
    return [_to_native(item) for item in obj]


@_to_native.register
def _(obj: dict) -> dict[str, Any]:
    return {str(k): _to_native(v) for k, v in obj.items()}


@_to_native.register
def _(obj: enum.Enum) -> Any:
    return obj.value


@_to_native.register
def _(obj: Family) -> str:
    return obj.name


class _FieldAccess:
    """Key access to the dataclass fields of a result."""

    # Fields holding live objects rather than results.
    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset()

    def __getitem__(self, key: str) -> Any:
        if key not in self:
            raise KeyError(key)
        return getattr(self, key)

    def get(self, key: str, default: Any = None) -> Any:
        return getattr(self, key) if key in self else default

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key in {f.name for f in fields(self)}  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain, JSON-serialisable dictionary."""
        return {
            f.name: _to_native(getattr(self, f.name))
            for f in fields(self)  # type: ignore[arg-type]
            if f.name not in self._EXCLUDE_FROM_DICT
        }


_to_native.register(_FieldAccess, lambda obj: obj.to_dict())


# ------------------------------------------------------------------ #
# NodeReport
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class NodeReport(_FieldAccess):
    """Serialisable summary of one tree node."""

    id: int
    depth: int
    n_obs: int
    n_clusters: int
    status: NodeStatus
    terminal: bool
    split: str | None
    """Condition sending rows to the left child (internal nodes)."""

    coefficients: dict[str, float]
    std_errors: dict[str, float]
    converged: bool
    errors: list[str]
    instability: dict[str, dict[str, float]]
    """``{variable: {statistic, p_value, p_adjusted}}`` when tested."""

    @classmethod
    def from_node(cls, node: Node) -> NodeReport:
        model = node.model
        if model is not None:
            coefs = model.coef_dict
            ses = dict(zip(model.coef_names, model.std_errors.tolist(), strict=True))
        else:
            coefs, ses = {}, {}
        tests = {}
        if node.instability is not None:
            tests = {
                t.name: {
                    "statistic": t.statistic,
                    "p_value": t.p_value,
                    "p_adjusted": t.p_adjusted,
                }
                for t in node.instability.tests
            }
        return cls(
            id=node.id,
            depth=node.depth,
            n_obs=node.n_obs,
            n_clusters=node.n_clusters,
            status=node.status,
            terminal=node.is_terminal,
            split=node.split.describe("left") if node.split is not None else None,
            coefficients=coefs,
            std_errors=ses,
            converged=bool(model.converged) if model is not None else False,
            errors=list(node.errors),
            instability=tests,
        )


# ------------------------------------------------------------------ #
# TreeResult
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class TreeResult(_FieldAccess):
    """Result of :func:`~glmmtree.glmm_tree`.

    All fields are accessible both as attributes and via dict syntax.
    """

    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset(
        {"context", "tree", "design", "blups"}
    )

    # ---- Tree ------------------------------------------------------
    tree: PartitionTree
    """The grown partition tree."""

    nodes: tuple[NodeReport, ...]
    """Per-node summaries in pre-order."""

    # ---- Model -----------------------------------------------------
    formula: str
    """Model specification as a formula string."""

    family: Family
    """Response family."""

    link: str
    """Link function name."""

    strategy: str
    """``"joint"``, ``"once"``, or ``"tree"`` (no global part)."""

    global_coef: dict[str, float]
    """Globally-shared fixed-effect estimates."""

    random_effects: list[dict[str, Any]]
    """Per random term: grouping column, coefficient names,
    covariance matrix and number of groups."""

    sigma2: float
    """Residual variance (``1.0`` for families without dispersion)."""

    # ---- Estimation ------------------------------------------------
    loglik_history: list[float]
    """Mixed-model log-likelihood after each outer iteration."""

    n_outer: int
    """Outer iterations performed."""

    converged: bool
    """Whether the outer alternation met its tolerance."""

    truncated: bool
    """Whether tree growth stopped on the time budget."""

    warnings: list[str]
    """Warning messages captured during the run."""

    n_obs: int
    """Number of observations."""

    # ---- Prediction state (not serialised) -------------------------
    design: Design = field(repr=False, compare=False)
    """Design the tree was grown on; provides column encoders."""

    blups: tuple[np.ndarray, ...] = field(default=(), repr=False, compare=False)
    """Predicted random effects per term ``(G_k, d_k)``."""

    context: GrowContext | None = field(default=None, repr=False, compare=False)
    """Growth context.  Excluded from ``to_dict()``."""

    # ---- Convenience -----------------------------------------------

    @property
    def n_leaves(self) -> int:
        return self.tree.n_leaves

    def leaves(self) -> list[Node]:
        return self.tree.leaves()

    def predict(
        self,
        newdata: DataFrameLike,
        type: str = "response",  # noqa: A002
        random: bool = True,
    ) -> np.ndarray:
        """Predict for new observations.

        Args:
            newdata: Rows with the partitioning, regressor and (for
                ``random=True``) grouping columns.
            type: ``"response"`` (fitted means), ``"link"`` (linear
                predictor) or ``"node"`` (terminal node ids).
            random: Add the BLUPs of clusters seen during fitting;
                unseen clusters get zero random effects.

        Returns:
            Array of length ``len(newdata)``.

        Raises:
            ValueError: If *type* is not recognised.
        """
        if type not in ("response", "link", "node"):
            msg = f"type must be 'response', 'link' or 'node', got {type!r}."
            raise ValueError(msg)
        df = _as_model_frame(newdata, name="newdata").reset_index(drop=True)
        node_ids = self.tree.apply(df)
        if type == "node":
            return node_ids

        d = self.design
        X = d.encode_fixed(df)
        eta = d.encode_offset(df)
        for leaf in self.tree.leaves():
            rows = node_ids == leaf.id
            if rows.any() and leaf.model is not None:
                eta[rows] += X[rows] @ leaf.model.coef

        if self.global_coef:
            gamma = np.array([self.global_coef[name] for name in d.xg_names])
            eta += d.encode_global(df) @ gamma

        if random and self.blups:
            eta += self._random_part(df)

        if type == "link":
            return eta
        return self.family.linkinv(eta)

    def _random_part(self, df: Any) -> np.ndarray:
        d = self.design
        out = np.zeros(len(df))
        for term, levels, b in zip(d.spec.random, d.re_levels, self.blups, strict=True):
            position = {lvl: g for g, lvl in enumerate(levels)}
            groups = np.array(
                [position.get(v, -1) for v in df[term.group].tolist()], dtype=np.intp
            )
            known = groups >= 0
            cols = [np.ones(len(df))] if term.intercept else []
            cols.extend(df[s].to_numpy(dtype=float) for s in term.slopes)
            within = np.column_stack(cols)
            out[known] += np.sum(within[known] * b[groups[known]], axis=1)
        return out


__all__ = ["NodeReport", "TreeResult"]
