"""Parallelism configuration for the glmmtree package.

Controls how many joblib worker threads evaluate sibling nodes of the
same tree level.  Node fits are CPU-bound numpy/LAPACK work that
releases the GIL, so threads give real speed-ups without copying the
shared design matrices.

Resolution order (first match wins):
    1. An explicit ``n_jobs`` on :class:`~glmmtree.control.TreeControl`.
    2. Programmatic override via :func:`set_n_jobs`.
    3. The ``GLMMTREE_N_JOBS`` environment variable.
    4. ``1`` (sequential).

Values follow joblib semantics: positive integers are worker counts,
``-1`` uses all cores.

Examples:
    Use all cores from the shell::

        export GLMMTREE_N_JOBS=-1

    Programmatically::

        import glmmtree
        glmmtree.set_n_jobs(4)

    Restore the default resolution::

        glmmtree.set_n_jobs(None)
"""

from __future__ import annotations

import os

_ENV_VAR = "GLMMTREE_N_JOBS"

# Sentinel indicating "no programmatic override has been set".
_n_jobs_override: int | None = None


def _validate(n_jobs: int) -> int:
    if isinstance(n_jobs, bool) or not isinstance(n_jobs, int):
        raise TypeError(f"n_jobs must be an int, got {type(n_jobs).__name__}.")
    if n_jobs == 0 or n_jobs < -1:
        raise ValueError(
            f"n_jobs must be a positive integer or -1, got {n_jobs}."
        )
    return n_jobs


def get_n_jobs(explicit: int | None = None) -> int:
    """Return the effective number of worker threads.

    Args:
        explicit: A caller-supplied value that takes precedence over
            every other source (typically ``TreeControl.n_jobs``).

    Returns:
        A joblib-compatible worker count.

    Raises:
        ValueError: If ``GLMMTREE_N_JOBS`` is set to something that is
            not a valid worker count.
    """
    if explicit is not None:
        return _validate(explicit)

    if _n_jobs_override is not None:
        return _n_jobs_override

    env = os.environ.get(_ENV_VAR, "").strip()
    if env:
        try:
            value = int(env)
        except ValueError:
            msg = f"{_ENV_VAR} must be an integer, got {env!r}."
            raise ValueError(msg) from None
        return _validate(value)

    return 1


def set_n_jobs(n_jobs: int | None) -> None:
    """Override the default number of worker threads.

    Args:
        n_jobs: Worker count, ``-1`` for all cores, or ``None`` to
            restore environment/default resolution.

    Raises:
        ValueError: If *n_jobs* is ``0`` or below ``-1``.
    """
    global _n_jobs_override
    _n_jobs_override = None if n_jobs is None else _validate(n_jobs)
