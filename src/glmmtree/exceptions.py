"""Error taxonomy for model fitting and tree growth.

Two of the conditions a tree node can end in are genuine failures of
the numerical machinery and are raised as exceptions by the fitter:

* :class:`RankDeficiency` — the fixed-effect design matrix of a node
  (or of the full mixed model) does not have full column rank, so the
  coefficients are not identified.
* :class:`ConvergenceFailure` — an iterative fit (IRLS, PQL, or the
  variance-component optimiser) hit its iteration cap.  The exception
  carries the last estimates in :attr:`ConvergenceFailure.model` so the
  caller can report them, flagged as unreliable.

The remaining terminal conditions (no admissible split, insufficient
node size, truncation by depth or time budget) are *not* errors.  They
are recorded as a :class:`~glmmtree.tree.NodeStatus` on the node.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .mixed import FittedModel


class GLMMTreeError(Exception):
    """Base class for all errors raised by glmmtree."""


class FitError(GLMMTreeError):
    """A model fit could not produce usable estimates."""


class RankDeficiency(FitError):
    """The fixed-effect design matrix is not of full column rank.

    Attributes:
        rank: Numerical rank of the design.
        n_columns: Number of columns in the design.
    """

    def __init__(self, rank: int, n_columns: int, context: str = "") -> None:
        self.rank = rank
        self.n_columns = n_columns
        where = f" ({context})" if context else ""
        super().__init__(
            f"Design matrix is rank deficient{where}: rank {rank} < "
            f"{n_columns} columns."
        )


class ConvergenceFailure(FitError):
    """An iterative fit did not converge within its iteration cap.

    Attributes:
        model: The last estimates reached before the cap, or ``None``
            when not even a first iterate was available.
        n_iter: Number of iterations performed.
    """

    def __init__(
        self,
        message: str,
        model: FittedModel | None = None,
        n_iter: int = 0,
        **details: Any,
    ) -> None:
        self.model = model
        self.n_iter = n_iter
        self.details = details
        super().__init__(message)


class ConvergenceWarning(UserWarning):
    """Emitted when an estimate is reported despite non-convergence."""


__all__ = [
    "ConvergenceFailure",
    "ConvergenceWarning",
    "FitError",
    "GLMMTreeError",
    "RankDeficiency",
]
