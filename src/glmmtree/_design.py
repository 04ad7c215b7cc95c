"""Dataset ingestion: design matrices and partition variables.

Everything the fitting loop touches is extracted from the caller's
DataFrame exactly once into an immutable :class:`Design`.  Tree nodes
then refer to rows by integer index arrays into this shared design, so
no node ever copies data and sibling nodes can be evaluated
concurrently.

Column encodings
~~~~~~~~~~~~~~~~
* Numeric and boolean regressors enter the fixed-effect design as-is.
* Categorical / string regressors are treatment-coded against their
  first level; columns are named ``"col[T.level]"``.
* Partitioning variables keep their measurement level:
  ``numeric`` (float values), ``ordinal`` (ordered pandas categorical,
  integer codes in category order), or ``nominal`` (anything else
  non-numeric, integer codes in sorted level order).

The random-effects design ``Z`` follows the layout of one block of
``d_k`` columns per group (intercept, then slopes), one factor after
another, described by ``re_struct = [(G_1, d_1), …]``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd

from ._typing import ReStruct
from .formula import ModelSpec, RandomTerm

INTERCEPT = "(Intercept)"

# ------------------------------------------------------------------ #
# Partition variables
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class PartitionVariable:
    """A candidate split variable extracted from the dataset.

    Attributes:
        name: Column name.
        kind: ``"numeric"``, ``"ordinal"`` or ``"nominal"``.
        values: Float values (numeric) or integer level codes stored
            as floats (ordinal / nominal), shape ``(n,)``.
        levels: Level labels for ordinal / nominal variables, in code
            order; ``None`` for numeric variables.
    """

    name: str
    kind: str
    values: np.ndarray
    levels: tuple[Any, ...] | None = None

    @property
    def is_ordered(self) -> bool:
        return self.kind in ("numeric", "ordinal")


def _partition_variable(name: str, column: pd.Series) -> PartitionVariable:
    if isinstance(column.dtype, pd.CategoricalDtype):
        cat = column.cat.remove_unused_categories()
        kind = "ordinal" if cat.cat.ordered else "nominal"
        return PartitionVariable(
            name=name,
            kind=kind,
            values=cat.cat.codes.to_numpy().astype(float),
            levels=tuple(cat.cat.categories),
        )
    if pd.api.types.is_bool_dtype(column) or not pd.api.types.is_numeric_dtype(column):
        levels, codes = np.unique(column.to_numpy(), return_inverse=True)
        return PartitionVariable(
            name=name,
            kind="nominal",
            values=codes.astype(float),
            levels=tuple(levels.tolist()),
        )
    return PartitionVariable(
        name=name, kind="numeric", values=column.to_numpy(dtype=float)
    )


# ------------------------------------------------------------------ #
# Fixed-effect column encoders
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class _ColumnEncoder:
    """Encodes one regressor column; remembers levels for new data."""

    name: str
    levels: tuple[Any, ...] | None = None

    @property
    def out_names(self) -> list[str]:
        if self.levels is None:
            return [self.name]
        return [f"{self.name}[T.{lvl}]" for lvl in self.levels[1:]]

    @classmethod
    def from_column(cls, name: str, column: pd.Series) -> _ColumnEncoder:
        if pd.api.types.is_bool_dtype(column) or pd.api.types.is_numeric_dtype(column):
            if not isinstance(column.dtype, pd.CategoricalDtype):
                return cls(name=name)
        if isinstance(column.dtype, pd.CategoricalDtype):
            levels = tuple(column.cat.remove_unused_categories().cat.categories)
        else:
            levels = tuple(np.unique(column.to_numpy()).tolist())
        return cls(name=name, levels=levels)

    def encode(self, column: pd.Series) -> np.ndarray:
        if self.levels is None:
            return column.to_numpy(dtype=float)[:, None]
        values = column.to_numpy()
        unknown = ~np.isin(values, np.asarray(self.levels, dtype=object))
        if unknown.any():
            bad = sorted({str(v) for v in values[unknown]})
            msg = f"Column '{self.name}' has levels not seen when fitting: {bad}."
            raise ValueError(msg)
        return np.column_stack(
            [(values == lvl).astype(float) for lvl in self.levels[1:]]
        ) if len(self.levels) > 1 else np.zeros((len(values), 0))


def _encode(
    data: pd.DataFrame,
    encoders: tuple[_ColumnEncoder, ...],
    intercept: bool,
) -> np.ndarray:
    blocks = [np.ones((len(data), 1))] if intercept else []
    blocks.extend(enc.encode(data[enc.name]) for enc in encoders)
    if not blocks:
        return np.zeros((len(data), 0))
    return np.hstack(blocks)


# ------------------------------------------------------------------ #
# Random-effects design
# ------------------------------------------------------------------ #


def _build_random_effects_design(
    data: pd.DataFrame,
    terms: tuple[RandomTerm, ...],
) -> tuple[np.ndarray, ReStruct, list[np.ndarray], list[tuple[Any, ...]]]:
    """Build the random-effect design matrix Z and ``re_struct``.

    For term k with G_k groups and slope columns ``[c_1, …, c_s]`` the
    dimension is ``d_k = [intercept] + s`` and Z_k has ``G_k · d_k``
    columns arranged as::

        [group_0_intercept, group_0_slope_c1, …,
         group_1_intercept, group_1_slope_c1, …, …]

    Args:
        data: The dataset.
        terms: Random-effects terms.

    Returns:
        ``(Z, re_struct, codes, levels)`` — Z of shape ``(n, q)``,
        ``[(G_k, d_k)]`` per term, integer group codes per term, and
        the group labels per term.

    Raises:
        ValueError: If a slope column is not numeric.
    """
    n = len(data)
    Z_list: list[np.ndarray] = []
    re_struct: ReStruct = []
    codes_list: list[np.ndarray] = []
    levels_list: list[tuple[Any, ...]] = []

    for term in terms:
        levels, coded = np.unique(data[term.group].to_numpy(), return_inverse=True)
        G_k = len(levels)
        d_k = term.dim

        cols: list[np.ndarray] = [np.ones(n)] if term.intercept else []
        for slope in term.slopes:
            if not pd.api.types.is_numeric_dtype(data[slope]):
                msg = f"Random slope column '{slope}' must be numeric."
                raise ValueError(msg)
            cols.append(data[slope].to_numpy(dtype=float))
        within = np.column_stack(cols)  # (n, d_k)

        Z_k = np.zeros((n, G_k * d_k), dtype=np.float64)
        rows = np.arange(n)
        for s in range(d_k):
            Z_k[rows, coded * d_k + s] = within[:, s]

        Z_list.append(Z_k)
        re_struct.append((G_k, d_k))
        codes_list.append(coded.astype(np.intp))
        levels_list.append(tuple(levels.tolist()))

    Z = np.hstack(Z_list) if Z_list else np.zeros((n, 0))
    return Z, re_struct, codes_list, levels_list


# ------------------------------------------------------------------ #
# Design
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class Design:
    """Immutable numeric view of a dataset under a :class:`ModelSpec`.

    Attributes:
        spec: The model specification.
        y: Response ``(n,)``.
        X: Node-level fixed-effect design ``(n, p)`` (intercept first
            when requested).
        x_names: Column names of *X*.
        Xg: Global fixed-effect design ``(n, p_g)`` (no intercept).
        xg_names: Column names of *Xg*.
        Z: Random-effect design ``(n, q)``; ``q = 0`` without random
            terms.
        re_struct: ``[(G_k, d_k)]`` per random term.
        re_codes: Integer group codes per random term.
        re_levels: Group labels per random term.
        cluster: Integer cluster codes ``(n,)`` used by cluster-aware
            tests, or ``None``.
        offset: Offset ``(n,)`` (zeros when not given).
        partition: Candidate partition variables in caller order.
    """

    spec: ModelSpec
    y: np.ndarray
    X: np.ndarray
    x_names: tuple[str, ...]
    Xg: np.ndarray
    xg_names: tuple[str, ...]
    Z: np.ndarray
    re_struct: tuple[tuple[int, int], ...]
    re_codes: tuple[np.ndarray, ...]
    re_levels: tuple[tuple[Any, ...], ...]
    cluster: np.ndarray | None
    cluster_levels: tuple[Any, ...] | None
    offset: np.ndarray
    partition: tuple[PartitionVariable, ...]
    _x_encoders: tuple[_ColumnEncoder, ...] = ()
    _xg_encoders: tuple[_ColumnEncoder, ...] = ()

    @property
    def n(self) -> int:
        return len(self.y)

    @property
    def has_random(self) -> bool:
        return self.Z.shape[1] > 0

    def n_clusters(self, index: np.ndarray) -> int:
        """Number of distinct clusters among the rows in *index*."""
        if self.cluster is None:
            return 0
        return int(np.unique(self.cluster[index]).size)

    # ---- New data ---------------------------------------------------

    def encode_fixed(self, data: pd.DataFrame) -> np.ndarray:
        """Node-level fixed-effect design for *data*."""
        return _encode(data, self._x_encoders, self.spec.intercept)

    def encode_global(self, data: pd.DataFrame) -> np.ndarray:
        """Global fixed-effect design for *data*."""
        return _encode(data, self._xg_encoders, intercept=False)

    def encode_offset(self, data: pd.DataFrame) -> np.ndarray:
        if self.spec.offset is None:
            return np.zeros(len(data))
        return np.array(data[self.spec.offset], dtype=float)


def build_design(data: pd.DataFrame, spec: ModelSpec) -> Design:
    """Extract a :class:`Design` from *data*.

    Args:
        data: The dataset.
        spec: The model specification.

    Returns:
        The immutable design.

    Raises:
        ValueError: If columns are missing, contain missing values, or
            the dataset is empty.
    """
    columns = spec.columns()
    missing = [c for c in columns if c not in data.columns]
    if missing:
        msg = f"Columns not found in data: {missing}."
        raise ValueError(msg)
    if len(data) == 0:
        msg = "data must contain at least one observation."
        raise ValueError(msg)
    with_na = [c for c in columns if data[c].isna().any()]
    if with_na:
        msg = f"Columns contain missing values: {with_na}."
        raise ValueError(msg)

    data = data.reset_index(drop=True)

    y_col = data[spec.response]
    if pd.api.types.is_bool_dtype(y_col):
        y_col = y_col.astype(int)
    if not pd.api.types.is_numeric_dtype(y_col):
        msg = f"Response '{spec.response}' must be numeric."
        raise ValueError(msg)
    y = y_col.to_numpy(dtype=float)

    x_encoders = tuple(_ColumnEncoder.from_column(c, data[c]) for c in spec.regressors)
    X = _encode(data, x_encoders, spec.intercept)
    x_names = ([INTERCEPT] if spec.intercept else []) + [
        name for enc in x_encoders for name in enc.out_names
    ]

    xg_encoders = tuple(
        _ColumnEncoder.from_column(c, data[c]) for c in spec.global_regressors
    )
    Xg = _encode(data, xg_encoders, intercept=False)
    xg_names = [name for enc in xg_encoders for name in enc.out_names]

    Z, re_struct, re_codes, re_levels = _build_random_effects_design(data, spec.random)

    cluster_col = spec.cluster_column
    cluster: np.ndarray | None = None
    cluster_levels: tuple[Any, ...] | None = None
    if cluster_col is not None:
        levels, coded = np.unique(data[cluster_col].to_numpy(), return_inverse=True)
        cluster = coded.astype(np.intp)
        cluster_levels = tuple(levels.tolist())

    offset = (
        data[spec.offset].to_numpy(dtype=float)
        if spec.offset is not None
        else np.zeros(len(data))
    )

    partition = tuple(_partition_variable(c, data[c]) for c in spec.partition)

    return Design(
        spec=spec,
        y=y,
        X=X,
        x_names=tuple(x_names),
        Xg=Xg,
        xg_names=tuple(xg_names),
        Z=Z,
        re_struct=tuple(re_struct),
        re_codes=tuple(re_codes),
        re_levels=tuple(re_levels),
        cluster=cluster,
        cluster_levels=cluster_levels,
        offset=offset,
        partition=partition,
        _x_encoders=x_encoders,
        _xg_encoders=xg_encoders,
    )


def leaf_design(X: np.ndarray, leaf_of_row: np.ndarray, n_leaves: int) -> np.ndarray:
    """Node-specific fixed-effect design ``X ⊗ 1[leaf]``.

    Column block ``l`` holds *X* on the rows of leaf ``l`` and zeros
    elsewhere, so a single mixed-model fit estimates separate
    coefficients per terminal node.

    Args:
        X: Node-level design ``(n, p)``.
        leaf_of_row: Leaf position ``0..n_leaves-1`` of every row.
        n_leaves: Number of terminal nodes.

    Returns:
        Array of shape ``(n, n_leaves · p)``.
    """
    n, p = X.shape
    out = np.zeros((n, n_leaves * p))
    for leaf in range(n_leaves):
        rows = leaf_of_row == leaf
        out[rows, leaf * p : (leaf + 1) * p] = X[rows]
    return out


__all__ = ["Design", "PartitionVariable", "build_design", "leaf_design"]
