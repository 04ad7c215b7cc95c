"""Model specification and the three-part tree formula.

A GLMM tree is specified by four groups of columns:

* **node regressors** — fixed effects estimated separately in every
  terminal node (plus a node-specific intercept by default);
* **random terms** — per-cluster random intercepts and slopes,
  estimated once across the whole dataset;
* **global regressors** — fixed effects shared by all nodes;
* **partitioning variables** — candidate split variables.

They can be given directly as a :class:`ModelSpec`, or as a formula
in the glmertree layout::

    "y ~ treatment | (1 + time | subject) + age | z1 + z2 + z3"
     ^   ^^^^^^^^^   ^^^^^^^^^^^^^^^^^^^^^^^^^   ^^^^^^^^^^^^^
     |   node part   random + global part        partitioning

A two-part formula (``"y ~ x | z1 + z2"``) has no random part and
grows a plain GLM tree.  In the node part ``1`` alone means
intercept-only and ``0`` / ``-1`` removes the intercept.  Inside a
random term ``(expr | group)`` the intercept is included unless
``expr`` contains ``0`` or ``-1``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

_NAME = re.compile(r"^[A-Za-z_.][A-Za-z0-9_.]*$")


@dataclass(frozen=True)
class RandomTerm:
    """One random-effects term ``(1 + slopes | group)``.

    Attributes:
        group: Grouping (cluster) column.
        slopes: Columns with random slopes within each group.
        intercept: Whether the term has a random intercept.
    """

    group: str
    slopes: tuple[str, ...] = ()
    intercept: bool = True

    def __post_init__(self) -> None:
        if not self.intercept and not self.slopes:
            msg = f"Random term for '{self.group}' has neither intercept nor slopes."
            raise ValueError(msg)

    @property
    def dim(self) -> int:
        """Random-effect dimension per group."""
        return int(self.intercept) + len(self.slopes)

    def coef_names(self) -> list[str]:
        names = ["(Intercept)"] if self.intercept else []
        return names + list(self.slopes)

    def __str__(self) -> str:
        parts = ["1" if self.intercept else "0", *self.slopes]
        return f"({' + '.join(parts)} | {self.group})"


@dataclass(frozen=True)
class ModelSpec:
    """Columns making up a GLMM tree model.

    Attributes:
        response: Response column.
        regressors: Node-specific fixed-effect columns.
        partition: Candidate partitioning columns (caller order is the
            tie-break order of the instability test).
        random: Random-effects terms.
        global_regressors: Fixed effects shared across all nodes.
        intercept: Whether node models include an intercept.
        cluster: Column identifying clusters for cluster-aware
            instability tests.  Defaults to the group of the first
            random term.
        offset: Optional column added to the linear predictor.
    """

    response: str
    regressors: tuple[str, ...] = ()
    partition: tuple[str, ...] = ()
    random: tuple[RandomTerm, ...] = ()
    global_regressors: tuple[str, ...] = ()
    intercept: bool = True
    cluster: str | None = None
    offset: str | None = None
    formula: str | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        # Accept lists from callers and store tuples.
        for name in ("regressors", "partition", "random", "global_regressors"):
            value = getattr(self, name)
            if isinstance(value, str):
                value = (value,)
            object.__setattr__(self, name, tuple(value))
        if not self.intercept and not self.regressors:
            msg = "Node models need an intercept or at least one regressor."
            raise ValueError(msg)
        if not self.partition:
            msg = "At least one partitioning variable is required."
            raise ValueError(msg)
        if self.response in self.partition:
            msg = f"The response '{self.response}' cannot be a partitioning variable."
            raise ValueError(msg)
        overlap = set(self.regressors) & set(self.global_regressors)
        if overlap:
            msg = (
                f"Columns {sorted(overlap)} are both node-specific and "
                "global regressors."
            )
            raise ValueError(msg)

    @property
    def has_random(self) -> bool:
        return len(self.random) > 0

    @property
    def cluster_column(self) -> str | None:
        """Column used for cluster-aware testing, if any."""
        if self.cluster is not None:
            return self.cluster
        return self.random[0].group if self.random else None

    def columns(self) -> list[str]:
        """Every data column referenced by the specification."""
        cols = [self.response, *self.regressors, *self.global_regressors]
        for term in self.random:
            cols.extend([term.group, *term.slopes])
        cols.extend(self.partition)
        if self.cluster is not None:
            cols.append(self.cluster)
        if self.offset is not None:
            cols.append(self.offset)
        return list(dict.fromkeys(cols))

    def __str__(self) -> str:
        if self.formula is not None:
            return self.formula
        node = " + ".join(self.regressors) or "1"
        if not self.intercept:
            node += " - 1"
        middle = [str(t) for t in self.random] + list(self.global_regressors)
        parts = [f"{self.response} ~ {node}"]
        if middle:
            parts.append(" + ".join(middle))
        parts.append(" + ".join(self.partition))
        return " | ".join(parts)


# ------------------------------------------------------------------ #
# Parsing
# ------------------------------------------------------------------ #


def _split_top_level(text: str, sep: str) -> list[str]:
    """Split *text* on *sep* outside parentheses."""
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for ch in text:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise ValueError(f"Unbalanced parentheses in {text!r}.")
        if ch == sep and depth == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
    if depth != 0:
        raise ValueError(f"Unbalanced parentheses in {text!r}.")
    parts.append("".join(current))
    return [p.strip() for p in parts]


def _check_name(name: str, formula: str) -> str:
    if not _NAME.match(name):
        msg = f"Cannot parse term {name!r} in formula {formula!r}."
        raise ValueError(msg)
    return name


def _parse_terms(text: str, formula: str) -> tuple[list[str], bool]:
    """Parse ``a + b - 1`` into names and an intercept flag."""
    intercept = True
    names: list[str] = []
    normalised = re.sub(r"\s*-\s*1\b", " + 0", text)
    for term in _split_top_level(normalised, "+"):
        if term in ("", "1"):
            continue
        if term == "0":
            intercept = False
            continue
        names.append(_check_name(term, formula))
    return names, intercept


def _parse_random_term(term: str, formula: str) -> RandomTerm:
    inner = term[1:-1]
    pieces = _split_top_level(inner, "|")
    if len(pieces) != 2:
        msg = f"Random term {term!r} must look like '(1 + x | group)'."
        raise ValueError(msg)
    slopes, intercept = _parse_terms(pieces[0], formula)
    group = _check_name(pieces[1], formula)
    return RandomTerm(group=group, slopes=tuple(slopes), intercept=intercept)


def parse_formula(formula: str, **kwargs: object) -> ModelSpec:
    """Parse a two- or three-part tree formula into a :class:`ModelSpec`.

    Args:
        formula: ``"y ~ x | z1 + z2"`` or
            ``"y ~ x | (1 | id) + g | z1 + z2"``.
        **kwargs: Extra :class:`ModelSpec` fields (``cluster``,
            ``offset``).

    Returns:
        The parsed specification.

    Raises:
        ValueError: If the formula is malformed.
    """
    if "~" not in formula:
        msg = f"Formula {formula!r} has no '~'."
        raise ValueError(msg)
    lhs, rhs = (s.strip() for s in formula.split("~", 1))
    response = _check_name(lhs, formula)

    parts = _split_top_level(rhs, "|")
    if len(parts) == 2:
        node_part, middle_part, partition_part = parts[0], "", parts[1]
    elif len(parts) == 3:
        node_part, middle_part, partition_part = parts
    else:
        msg = (
            f"Formula {formula!r} must have two or three parts separated "
            "by '|' (node | [random + global |] partitioning)."
        )
        raise ValueError(msg)

    regressors, intercept = _parse_terms(node_part, formula)

    random_terms: list[RandomTerm] = []
    global_regressors: list[str] = []
    for term in _split_top_level(middle_part, "+") if middle_part else []:
        if not term or term == "1":
            continue
        if term.startswith("(") and term.endswith(")"):
            random_terms.append(_parse_random_term(term, formula))
        else:
            global_regressors.append(_check_name(term, formula))

    partition, _ = _parse_terms(partition_part, formula)

    return ModelSpec(
        response=response,
        regressors=tuple(regressors),
        partition=tuple(partition),
        random=tuple(random_terms),
        global_regressors=tuple(global_regressors),
        intercept=intercept,
        formula=formula,
        **kwargs,  # type: ignore[arg-type]
    )


__all__ = ["ModelSpec", "RandomTerm", "parse_formula"]
