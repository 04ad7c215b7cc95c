"""GLM families as explicit link/variance variants.

A :class:`Family` bundles everything the fitters need to know about
the response distribution — the link function, its inverse and
derivative, and the variance function — as plain function values
taken from statsmodels' family and link objects.  The family is
resolved **once** at setup (:func:`resolve_family`) and then threaded
through every node fit, the mixed-model step, and the score
computation, instead of branching on the family name inside the
numerical code.

Working quantities
~~~~~~~~~~~~~~~~~~
All iterative fitters (IRLS for node GLMs, PQL for GLMMs) share the
same linearisation around the current linear predictor η:

    μ  = g⁻¹(η)
    w  = μ'(η)² / V(μ)                (working weight)
    z  = η + (y − μ) / μ'(η)          (working response)

and the per-observation score for the coefficient vector is

    ψᵢ = xᵢ · (yᵢ − μᵢ) · μ'(ηᵢ) / V(μᵢ).

For the canonical links (identity/gaussian, logit/binomial,
log/poisson) μ'(η) = V(μ), so ψᵢ reduces to xᵢ(yᵢ − μᵢ).

Extensibility
~~~~~~~~~~~~~
New families are added with :func:`register_family`; any statsmodels
family whose link is one of :data:`LINKS` can be wrapped.
"""

from __future__ import annotations

import warnings
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import statsmodels.api as sm
from statsmodels.genmod.families import links

# ------------------------------------------------------------------ #
# Links
# ------------------------------------------------------------------ #

LINKS: dict[str, type[links.Link]] = {
    "identity": links.Identity,
    "logit": links.Logit,
    "probit": links.Probit,
    "cloglog": links.CLogLog,
    "log": links.Log,
}
"""Link names accepted by :func:`resolve_family`."""

# Probabilities and rates are kept strictly inside their domain so
# log-likelihoods and working weights stay finite.
_MU_EPS = 1e-10
_ETA_CLIP = 30.0


# ------------------------------------------------------------------ #
# Family
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class Family:
    """A GLM exponential-family distribution with a fixed link.

    Attributes:
        name: Family identifier (``"gaussian"``, ``"binomial"``,
            ``"poisson"``).
        link_name: Link identifier (key of :data:`LINKS`).
        has_dispersion: ``True`` when the family carries a free scale
            parameter (gaussian σ²).  Binomial and Poisson have their
            dispersion fixed at one.
        sm_family: The statsmodels family instance providing the link
            and variance functions, deviance, and log-likelihood.
    """

    name: str
    link_name: str
    has_dispersion: bool
    sm_family: Any = field(repr=False, compare=False)

    # ---- Link & variance -------------------------------------------

    @property
    def is_canonical_gaussian(self) -> bool:
        """Gaussian with identity link: node fits are closed-form."""
        return self.name == "gaussian" and self.link_name == "identity"

    def linkfun(self, mu: np.ndarray) -> np.ndarray:
        """η = g(μ)."""
        return np.asarray(self.sm_family.link(mu), dtype=float)

    def linkinv(self, eta: np.ndarray) -> np.ndarray:
        """μ = g⁻¹(η), clipped into the valid mean range."""
        if self.link_name != "identity":
            eta = np.clip(eta, -_ETA_CLIP, _ETA_CLIP)
        mu = np.asarray(self.sm_family.link.inverse(eta), dtype=float)
        return self.clip_mu(mu)

    def mu_eta(self, eta: np.ndarray) -> np.ndarray:
        """dμ/dη evaluated at *eta*."""
        if self.link_name != "identity":
            eta = np.clip(eta, -_ETA_CLIP, _ETA_CLIP)
        # All registered links are increasing, so the derivative is
        # bounded below rather than in absolute value.
        d = np.asarray(self.sm_family.link.inverse_deriv(eta), dtype=float)
        return np.maximum(d, _MU_EPS)

    def variance(self, mu: np.ndarray) -> np.ndarray:
        """V(μ), bounded away from zero."""
        return np.maximum(np.asarray(self.sm_family.variance(mu), dtype=float), _MU_EPS)

    def clip_mu(self, mu: np.ndarray) -> np.ndarray:
        if self.name == "binomial":
            return np.clip(mu, _MU_EPS, 1.0 - _MU_EPS)
        if self.name == "poisson":
            return np.maximum(mu, _MU_EPS)
        return mu

    # ---- Working quantities ----------------------------------------

    def working(
        self,
        y: np.ndarray,
        eta: np.ndarray,
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """IRLS working response, weights, and fitted means.

        Args:
            y: Response ``(n,)``.
            eta: Current linear predictor ``(n,)`` (offset included).

        Returns:
            ``(z, w, mu)`` with ``z = η + (y − μ)/μ'(η)`` and
            ``w = μ'(η)²/V(μ)``.
        """
        mu = self.linkinv(eta)
        d = self.mu_eta(eta)
        w = d**2 / self.variance(mu)
        z = eta + (y - mu) / d
        return z, w, mu

    def score_weights(self, y: np.ndarray, eta: np.ndarray) -> np.ndarray:
        """Per-row factor ``(y − μ) μ'(η) / V(μ)`` of the coefficient score."""
        mu = self.linkinv(eta)
        return (y - mu) * self.mu_eta(eta) / self.variance(mu)

    # ---- Likelihood ------------------------------------------------

    def deviance(self, y: np.ndarray, mu: np.ndarray) -> float:
        """Unit-scale deviance (RSS for the gaussian family)."""
        return float(self.sm_family.deviance(y, self.clip_mu(mu)))

    def loglik(self, y: np.ndarray, mu: np.ndarray, scale: float = 1.0) -> float:
        """Full log-likelihood Σ log f(yᵢ | μᵢ) at dispersion *scale*."""
        if not self.has_dispersion:
            scale = 1.0
        return float(self.sm_family.loglike(y, self.clip_mu(mu), scale=scale))

    def starting_mu(self, y: np.ndarray) -> np.ndarray:
        """Initial means for IRLS (statsmodels' starting values)."""
        return self.clip_mu(np.asarray(self.sm_family.starting_mu(y), dtype=float))

    # ---- Validation ------------------------------------------------

    def validate_y(self, y: np.ndarray) -> None:
        """Check that *y* is admissible for this family.

        Raises:
            ValueError: If *y* is non-numeric, non-finite, or outside
                the family's support.
        """
        if not np.issubdtype(y.dtype, np.number):
            msg = f"family='{self.name}' requires a numeric response."
            raise ValueError(msg)
        if not np.all(np.isfinite(y)):
            msg = "The response contains NaN or infinite values."
            raise ValueError(msg)
        if self.name == "binomial" and not np.all(np.isin(y, [0, 1])):
            msg = "family='binomial' requires a 0/1 response."
            raise ValueError(msg)
        if self.name == "poisson":
            if np.any(y < 0) or not np.all(np.equal(np.mod(y, 1), 0)):
                msg = "family='poisson' requires non-negative integer counts."
                raise ValueError(msg)


# ------------------------------------------------------------------ #
# Registry
# ------------------------------------------------------------------ #
#
# Each entry maps a family name to a factory taking an optional link
# name.  Factories (rather than instances) keep link selection at
# resolution time.

FamilyFactory = Callable[[str | None], Family]

_FAMILIES: dict[str, FamilyFactory] = {}
"""Registry mapping family names to :class:`Family` factories."""


def _make_factory(
    name: str,
    sm_cls: type,
    default_link: str,
    allowed: tuple[str, ...],
    has_dispersion: bool,
) -> FamilyFactory:
    def factory(link: str | None = None) -> Family:
        link_name = default_link if link is None else link.lower()
        if link_name not in allowed:
            msg = (
                f"Link '{link_name}' is not available for family "
                f"'{name}'.  Choose from: {', '.join(allowed)}."
            )
            raise ValueError(msg)
        sm_family = sm_cls(link=LINKS[link_name]())
        return Family(
            name=name,
            link_name=link_name,
            has_dispersion=has_dispersion,
            sm_family=sm_family,
        )

    return factory


def register_family(name: str, factory: FamilyFactory) -> None:
    """Register a :class:`Family` factory under *name*.

    Args:
        name: Lookup key used by :func:`resolve_family`.
        factory: Callable taking an optional link name and returning a
            :class:`Family`.

    Raises:
        TypeError: If the factory does not produce a ``Family`` for the
            default link.
    """
    try:
        instance = factory(None)
    except Exception:  # noqa: BLE001
        msg = f"{factory!r} could not build a default Family."
        raise TypeError(msg) from None
    if not isinstance(instance, Family):
        msg = f"{factory!r} did not return a Family instance."
        raise TypeError(msg)
    _FAMILIES[name] = factory


def resolve_family(
    family: str | Family,
    y: np.ndarray | None = None,
    link: str | None = None,
) -> Family:
    """Resolve a family name (or pass through an instance).

    ``"auto"`` picks ``"binomial"`` for a 0/1 response and
    ``"gaussian"`` otherwise, warning when the response looks like
    counts.

    Args:
        family: Family name, ``"auto"``, or a ready :class:`Family`.
        y: Response vector, required for ``"auto"``.
        link: Optional link name overriding the family default.

    Returns:
        The resolved :class:`Family`.

    Raises:
        ValueError: If *family* is unknown, ``"auto"`` is requested
            without *y*, or the link is not allowed.
    """
    if isinstance(family, Family):
        return family

    name = family.lower()
    if name == "auto":
        if y is None:
            msg = "resolve_family() requires 'y' when family='auto'."
            raise ValueError(msg)
        y = np.asarray(y)
        unique_y = np.unique(y)
        if len(unique_y) == 2 and np.all(np.isin(unique_y, [0, 1])):
            name = "binomial"
        else:
            name = "gaussian"
            is_count = (
                np.issubdtype(y.dtype, np.number)
                and np.all(np.equal(np.mod(y, 1), 0))
                and np.all(y >= 0)
            )
            if is_count and len(unique_y) > 2:
                warnings.warn(
                    "The response looks like count data (non-negative "
                    f"integers with {len(unique_y)} unique values). "
                    "Consider family='poisson'.",
                    UserWarning,
                    stacklevel=2,
                )

    if name not in _FAMILIES:
        available = ", ".join(sorted(_FAMILIES)) or "(none registered)"
        msg = f"Unknown family {family!r}.  Available families: {available}."
        raise ValueError(msg)
    return _FAMILIES[name](link)


register_family(
    "gaussian",
    _make_factory("gaussian", sm.families.Gaussian, "identity", ("identity",), True),
)
register_family(
    "binomial",
    _make_factory(
        "binomial",
        sm.families.Binomial,
        "logit",
        ("logit", "probit", "cloglog"),
        False,
    ),
)
register_family(
    "poisson",
    _make_factory("poisson", sm.families.Poisson, "log", ("log",), False),
)


__all__ = ["LINKS", "Family", "register_family", "resolve_family"]
