"""glmmtree — Generalized linear mixed-effects model trees.

Model-based recursive partitioning (Zeileis, Hothorn & Hornik 2008)
with (generalized) linear node models whose cluster-level random
effects, and optional globally-shared fixed effects, are estimated on
the whole dataset (Fokkema et al. 2018).  Splits are chosen by
score-based parameter instability tests, optionally cluster-aware.

Public API:
    .. autosummary::
        glmm_tree
        TreeControl
        TreeResult
        NodeReport
        ModelSpec
        RandomTerm
        parse_formula
        PartitionTree
        Node
        NodeStatus
        SplitRule
        fit_mixed
        fit_glm
        fit_lmm
        fit_glmm
        FittedModel
        fluctuation_test
        best_split
        estfun
        Family
        resolve_family
        register_family
        format_tree
        print_tree
        get_n_jobs
        set_n_jobs
        GLMMTreeError
        FitError
        RankDeficiency
        ConvergenceFailure
        ConvergenceWarning
"""

from ._config import get_n_jobs, set_n_jobs
from ._results import NodeReport, TreeResult
from .control import TreeControl
from .core import glmm_tree
from .display import format_tree, print_tree
from .exceptions import (
    ConvergenceFailure,
    ConvergenceWarning,
    FitError,
    GLMMTreeError,
    RankDeficiency,
)
from .families import Family, register_family, resolve_family
from .formula import ModelSpec, RandomTerm, parse_formula
from .instability import best_split, estfun, fluctuation_test
from .mixed import FittedModel, fit_glm, fit_glmm, fit_lmm, fit_mixed
from .tree import Node, NodeStatus, PartitionTree, SplitRule

__all__ = [
    "glmm_tree",
    "TreeControl",
    "TreeResult",
    "NodeReport",
    "ModelSpec",
    "RandomTerm",
    "parse_formula",
    "PartitionTree",
    "Node",
    "NodeStatus",
    "SplitRule",
    "fit_mixed",
    "fit_glm",
    "fit_lmm",
    "fit_glmm",
    "FittedModel",
    "fluctuation_test",
    "best_split",
    "estfun",
    "Family",
    "resolve_family",
    "register_family",
    "format_tree",
    "print_tree",
    "get_n_jobs",
    "set_n_jobs",
    "GLMMTreeError",
    "FitError",
    "RankDeficiency",
    "ConvergenceFailure",
    "ConvergenceWarning",
]

__version__ = "0.1.0"
