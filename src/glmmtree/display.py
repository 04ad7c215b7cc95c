"""Plain-text rendering of GLMM-tree results.

The layout follows the statsmodels-style summaries (80-column panel
with ``=`` rules) for the model header, followed by the tree in the
indented ``[id] condition`` notation used by partykit::

    [1] root
    |   [2] age <= 42: n = 250
    |   |   (Intercept)  treatment
    |   |        0.1034    -0.9781
    |   [3] age > 42: n = 250
    ...
"""

from __future__ import annotations

import textwrap
from typing import TYPE_CHECKING

import numpy as np

from .tree import Node, NodeStatus, PartitionTree

if TYPE_CHECKING:
    from ._results import TreeResult

_WIDTH = 80


def _truncate(name: str, max_len: int) -> str:
    """Truncate *name* to *max_len*, appending ``'...'`` if needed."""
    if len(name) <= max_len:
        return name
    return name[: max_len - 3] + "..."


def _coef_lines(node: Node, prefix: str, digits: int) -> list[str]:
    model = node.model
    if model is None:
        return [f"{prefix}(no estimates)"]
    width = max(digits + 6, *(len(n) for n in model.coef_names))
    names = "".join(f"{_truncate(n, width):>{width + 1}}" for n in model.coef_names)
    values = "".join(f"{v:>{width + 1}.{digits}f}" for v in model.coef)
    return [f"{prefix}{names}", f"{prefix}{values}"]


def _node_label(node: Node, side: str | None, parent: Node | None) -> str:
    if parent is None or parent.split is None:
        return f"[{node.id}] root"
    return f"[{node.id}] {parent.split.describe(side or 'left')}"


def _status_note(node: Node) -> str:
    if node.status in (NodeStatus.SPLIT, NodeStatus.NO_ADMISSIBLE_SPLIT):
        return ""
    return f"  ({node.status})"


def _render_tree(tree: PartitionTree, digits: int) -> list[str]:
    lines: list[str] = []

    def visit(node: Node, depth: int, side: str | None, parent: Node | None) -> None:
        prefix = "|   " * depth
        label = _node_label(node, side, parent)
        if node.is_terminal:
            lines.append(f"{prefix}{label}: n = {node.n_obs}{_status_note(node)}")
            lines.extend(_coef_lines(node, prefix + "|   ", digits))
            return
        lines.append(f"{prefix}{label}")
        visit(node.left, depth + 1, "left", node)
        visit(node.right, depth + 1, "right", node)

    visit(tree.root, 0, None, None)
    return lines


def format_tree(result: TreeResult | PartitionTree, digits: int = 4) -> str:
    """Render a tree result (or a bare tree) as text.

    Args:
        result: A :class:`~glmmtree._results.TreeResult` or a
            :class:`~glmmtree.tree.PartitionTree`.
        digits: Decimal places for coefficients.

    Returns:
        The multi-line rendering.
    """
    if isinstance(result, PartitionTree):
        return "\n".join(_render_tree(result, digits))

    out = ["=" * _WIDTH]
    out.append(f"{'Generalized Linear Mixed Model Tree':^{_WIDTH}}")
    out.append("=" * _WIDTH)
    for line in textwrap.wrap(f"Model: {result.formula}", width=_WIDTH):
        out.append(line)
    col = _WIDTH // 2
    rows = [
        ("Family:", f"{result.family.name} ({result.link})", "No. Observations:", str(result.n_obs)),
        ("Strategy:", result.strategy, "No. Nodes:", str(result.tree.n_nodes)),
        ("Outer iter.:", str(result.n_outer), "No. Leaves:", str(result.n_leaves)),
        ("Converged:", str(result.converged), "Truncated:", str(result.truncated)),
    ]
    for ll, lv, rl, rv in rows:
        out.append(f"{ll:<14}{lv:<{col - 14}}{rl:>{col - 11}} {rv:>10}")
    if result.loglik_history:
        out.append(f"{'Log-Lik.:':<14}{result.loglik_history[-1]:.{digits}f}")

    if result.random_effects:
        out.append("-" * _WIDTH)
        out.append("Random effects:")
        for term in result.random_effects:
            sd = np.sqrt(np.maximum(np.diag(np.asarray(term["covariance"])), 0.0))
            for name, s in zip(term["names"], sd, strict=True):
                label = _truncate(f"{term['group']} {name}", 40)
                out.append(f"  {label:<40} Std.Dev. {s:>12.{digits}f}")
        if result.family.has_dispersion:
            out.append(
                f"  {'Residual':<40} Std.Dev. {np.sqrt(result.sigma2):>12.{digits}f}"
            )

    if result.global_coef:
        out.append("-" * _WIDTH)
        out.append("Global fixed effects:")
        for name, value in result.global_coef.items():
            out.append(f"  {_truncate(name, 40):<40} {value:>12.{digits}f}")

    out.append("-" * _WIDTH)
    out.extend(_render_tree(result.tree, digits))
    if result.warnings:
        out.append("-" * _WIDTH)
        out.append("Warnings:")
        out.extend(textwrap.fill(w, width=_WIDTH, initial_indent="  ",
                                 subsequent_indent="    ") for w in result.warnings)
    out.append("=" * _WIDTH)
    return "\n".join(out)


def print_tree(result: TreeResult | PartitionTree, digits: int = 4) -> None:
    """Print :func:`format_tree` output."""
    print(format_tree(result, digits=digits))


__all__ = ["format_tree", "print_tree"]
