"""Data-frame input for fitting and prediction.

:func:`glmm_tree` and :meth:`PartitionTree.apply` take pandas frames.
A ``polars.DataFrame`` or ``polars.LazyFrame`` is converted once on the
way in.  Partition-variable kinds are read from pandas dtypes, so the
conversion maps Polars dtypes onto them:

* ``pl.Enum`` becomes an **ordered** pandas categorical with the enum's
  category order, i.e. an ordinal partitioning variable.
* ``pl.Categorical`` becomes an unordered categorical (nominal).  Polars
  categoricals carry no level order, so pass an ``Enum`` (or an ordered
  pandas categorical) when a variable is ordinal.
* Everything else goes through ``to_pandas()`` unchanged.

Polars is an optional extra (``glmmtree[polars]``).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, TypeAlias

import pandas as pd

if TYPE_CHECKING:
    import polars as pl

    DataFrameLike: TypeAlias = pd.DataFrame | pl.DataFrame | pl.LazyFrame
else:
    DataFrameLike: TypeAlias = pd.DataFrame

try:
    import polars as pl

    _HAS_POLARS = True
except ImportError:
    _HAS_POLARS = False


def _from_polars(frame: pl.DataFrame) -> pd.DataFrame:
    df = frame.to_pandas()
    for name, dtype in frame.schema.items():
        if isinstance(dtype, pl.Enum):
            levels = dtype.categories.to_list()
            df[name] = pd.Categorical(
                frame[name].cast(pl.Utf8).to_list(), categories=levels, ordered=True
            )
    return df


def _as_model_frame(obj: DataFrameLike, *, name: str = "data") -> pd.DataFrame:
    """Return *obj* as a pandas frame whose dtypes encode variable kinds.

    Raises:
        TypeError: If *obj* is neither a pandas nor a Polars frame.
    """
    if isinstance(obj, pd.DataFrame):
        return obj

    if _HAS_POLARS:
        if isinstance(obj, pl.LazyFrame):
            return _from_polars(obj.collect())
        if isinstance(obj, pl.DataFrame):
            return _from_polars(obj)

    raise TypeError(
        f"'{name}' must be a pandas DataFrame"
        + (" or Polars DataFrame/LazyFrame" if _HAS_POLARS else "")
        + f", got {type(obj).__name__}."
    )
