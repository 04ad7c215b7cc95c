"""Growth context — the state threaded through tree growth.

A :class:`GrowContext` is created once per :func:`~glmmtree.glmm_tree`
call and handed to every node evaluation.  It carries the resolved
family, the immutable design, the resolved size constraints, and the
*frozen* global quantities of the current pass: the offset
``offset + X_g γ̂ + Z b̂`` and the split objective built from it.

Lifecycle::

    ┌───────────────────────────────────────────────┐
    │  glmm_tree()                                  │
    │  ├─ ctx = GrowContext(control, family, …)     │
    │  ├─ for each pass:                            │
    │  │   ├─ ctx.freeze(global_eta)  (no fitting   │
    │  │   │    has started yet in this pass)       │
    │  │   ├─ ctx.start_clock()                     │
    │  │   ├─ grow_tree(ctx)   ← read-only access   │
    │  │   │    from worker threads                 │
    │  │   └─ ctx.loglik_history.append(…)          │
    │  └─ result.context = ctx                      │
    └───────────────────────────────────────────────┘

Worker threads only *read* the context; everything they produce is
written to the node record they own.  Like the result objects'
``context`` field, the context is never serialised.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

import numpy as np

from ._design import Design
from .control import TreeControl
from .families import Family
from .instability import SplitObjective, make_objective
from .mixed import FittedModel


@dataclass
class GrowContext:
    """Mutable state of one GLMM-tree estimation run."""

    # ---- Setup ---------------------------------------------------
    control: TreeControl
    """Validated tuning parameters."""

    family: Family
    """Response family, resolved once."""

    design: Design
    """Immutable numeric view of the dataset."""

    n_jobs: int = 1
    """Worker threads for sibling nodes."""

    minsize: int = 1
    """Resolved minimum rows per child."""

    min_clusters: int = 0
    """Resolved minimum clusters per child (0 = unconstrained)."""

    # ---- Frozen global part of the current pass ------------------
    offset: np.ndarray | None = None
    """Offset of the node models: user offset + ``X_g γ̂ + Z b̂``."""

    objective: SplitObjective | None = None
    """Split objective built from :attr:`offset`."""

    global_coef: np.ndarray | None = None
    """Current global fixed-effect estimates ``γ̂``."""

    random_model: FittedModel | None = None
    """Mixed model supplying ``γ̂`` and ``b̂`` for the current pass."""

    # ---- Deadline ------------------------------------------------
    deadline: float | None = None
    """``time.monotonic()`` value after which expansion stops."""

    # ---- Bookkeeping ---------------------------------------------
    loglik_history: list[float] = field(default_factory=list)
    """Mixed-model log-likelihood after each outer iteration."""

    n_outer: int = 0
    """Outer iterations performed."""

    outer_converged: bool = True
    """Whether the outer alternation met its tolerance."""

    truncated: bool = False
    """Whether any tree growth ran out of its time budget."""

    warnings_captured: list[str] = field(default_factory=list)
    """Warning messages raised during the run."""

    def freeze(self, global_eta: np.ndarray) -> None:
        """Fix the global part of the linear predictor for the next pass.

        Args:
            global_eta: ``X_g γ̂ + Z b̂`` for every row.
        """
        d = self.design
        self.offset = d.offset + np.asarray(global_eta, dtype=float)
        self.objective = make_objective(
            self.family,
            d.X,
            d.y,
            self.offset,
            max_iter=self.control.max_iter,
            tol=self.control.tol,
        )

    def start_clock(self) -> None:
        budget = self.control.time_budget
        self.deadline = None if budget is None else time.monotonic() + budget

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline


__all__ = ["GrowContext"]
