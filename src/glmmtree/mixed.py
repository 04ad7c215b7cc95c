"""(Generalized) linear mixed-model fitting.

Three fitters share one result type, :class:`FittedModel`:

* :func:`fit_glm` — fixed effects only.  Gaussian/identity is a single
  least-squares solve; every other family uses IRLS with step-halving.
  This is the node model of the tree (random effects and global fixed
  effects enter through the offset).
* :func:`fit_lmm` — linear mixed model by REML (default) or ML.
* :func:`fit_glmm` — generalized linear mixed model by penalized
  quasi-likelihood (PQL).

:func:`fit_mixed` dispatches between them from the family and the
presence of a random-effects design.

Profiled deviance
~~~~~~~~~~~~~~~~~
The LMM is parameterised as in lme4 (Bates et al. 2015, §3): the
random effects are ``b = Λθ u`` with ``u ~ N(0, σ² I)`` and ``Λθ``
block-diagonal, one lower-triangular factor ``T_k`` repeated for each
group of random term *k*, so that ``Cov(b_g) = σ² T_k T_kᵀ``.  For a
given θ, with ``C = ΛᵀZᵀZΛ + I = L Lᵀ``::

    cu  = L⁻¹ ΛᵀZᵀy
    RZX = L⁻¹ ΛᵀZᵀX
    β̂   = (XᵀX − RZXᵀRZX)⁻¹ (Xᵀy − RZXᵀcu)
    r²  = yᵀy − cuᵀcu − β̂ᵀ(Xᵀy − RZXᵀcu)

and β and σ² are profiled out of the deviance, leaving a function of θ
alone that is minimised by L-BFGS-B with the diagonal of every ``T_k``
bounded below by zero.  θ = 0 is admissible, so a variance component
sitting exactly on the boundary is represented without clamping, and
every estimated covariance ``σ² T_k T_kᵀ`` is positive semi-definite
by construction.

All products with ``Z`` are formed once (``ZᵀZ``, ``ZᵀX``, ``Zᵀy``);
each deviance evaluation then works with ``q × q`` matrices only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

import numpy as np
from scipy import linalg, optimize

from ._typing import ReStruct
from .exceptions import ConvergenceFailure, RankDeficiency
from .families import Family, resolve_family

logger = logging.getLogger(__name__)

_LOG_2PI = float(np.log(2.0 * np.pi))
_BAD_DEVIANCE = 1e30
_MAX_STEP_HALVE = 10


# ------------------------------------------------------------------ #
# Result type
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class FittedModel:
    """Estimates from one (G)LM or (G)LMM fit.

    Attributes:
        family: The response family.
        coef: Fixed-effect coefficients ``(p,)``.
        coef_names: Names of the coefficients.
        cov_coef: Wald covariance of *coef* ``(p, p)``.
        sigma2: Residual variance (gaussian); ``1.0`` otherwise.
        loglik: Log-likelihood at the estimates.  REML fits report the
            restricted log-likelihood; GLMMs the Laplace approximation.
        deviance: Unit deviance of the conditional fitted means.
        eta: Linear predictor ``(n,)`` including offset and random
            effects.
        mu: Fitted means ``(n,)``.
        n_obs: Number of observations.
        n_iter: Iterations used by the fitting algorithm.
        converged: Whether the algorithm met its tolerance.
        re_covariance: Random-effect covariance matrix per term
            ``(d_k, d_k)``.
        blups: Predicted random effects per term ``(G_k, d_k)``.
        random_eta: ``Z b̂`` ``(n,)``; zeros without random effects.
        theta: Relative covariance-factor parameters (mixed fits).
        reml: Whether variance components were estimated by REML.
    """

    family: Family
    coef: np.ndarray
    coef_names: tuple[str, ...]
    cov_coef: np.ndarray
    sigma2: float
    loglik: float
    deviance: float
    eta: np.ndarray = field(repr=False)
    mu: np.ndarray = field(repr=False)
    n_obs: int
    n_iter: int = 0
    converged: bool = True
    re_covariance: tuple[np.ndarray, ...] = ()
    blups: tuple[np.ndarray, ...] = field(default=(), repr=False)
    random_eta: np.ndarray | None = field(default=None, repr=False)
    theta: np.ndarray | None = None
    reml: bool = False

    @property
    def std_errors(self) -> np.ndarray:
        return np.sqrt(np.maximum(np.diag(self.cov_coef), 0.0))

    @property
    def has_random(self) -> bool:
        return len(self.re_covariance) > 0

    @property
    def coef_dict(self) -> dict[str, float]:
        return dict(zip(self.coef_names, self.coef.tolist(), strict=True))


def _default_names(p: int) -> tuple[str, ...]:
    return tuple(f"x{j}" for j in range(p))


def _check_rank(X: np.ndarray, context: str = "") -> None:
    """Raise :class:`RankDeficiency` unless *X* has full column rank."""
    n, p = X.shape
    if p == 0:
        return
    rank = int(np.linalg.matrix_rank(X)) if n > 0 else 0
    if rank < p:
        raise RankDeficiency(rank, p, context)


# ------------------------------------------------------------------ #
# GLM (node models)
# ------------------------------------------------------------------ #


def fit_glm(
    X: np.ndarray,
    y: np.ndarray,
    family: Family | str = "gaussian",
    offset: np.ndarray | None = None,
    *,
    coef_names: tuple[str, ...] | None = None,
    max_iter: int = 100,
    tol: float = 1e-8,
    check_rank: bool = True,
) -> FittedModel:
    """Fit a fixed-effects GLM.

    IRLS with step-halving (Marschner 2011): a step that increases the
    deviance is halved towards the previous coefficients.  Convergence
    is declared when the relative deviance change
    ``|Δd| / (|d| + 0.1)`` drops below *tol*.

    Args:
        X: Design ``(n, p)`` including any intercept column.
        y: Response ``(n,)``.
        family: Response family.
        offset: Fixed additive term of the linear predictor.
        coef_names: Coefficient names; defaults to ``x0, x1, …``.
        max_iter: IRLS iteration cap.
        tol: Relative deviance tolerance.
        check_rank: Verify full column rank before fitting.

    Returns:
        The fitted model.

    Raises:
        RankDeficiency: If *X* is not of full column rank.
        ConvergenceFailure: If IRLS hits *max_iter*; ``exc.model``
            holds the last iterate.
    """
    family = resolve_family(family)
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)
    n, p = X.shape
    offset = np.zeros(n) if offset is None else np.asarray(offset, dtype=float)
    names = coef_names if coef_names is not None else _default_names(p)
    if check_rank:
        _check_rank(X, "node model")

    if family.is_canonical_gaussian:
        beta, _, _, _ = np.linalg.lstsq(X, y - offset, rcond=None)
        eta = offset + X @ beta
        rss = float(np.sum((y - eta) ** 2))
        sigma2 = rss / (n - p) if n > p else 0.0
        XtX_inv = np.linalg.pinv(X.T @ X)
        scale_ml = max(rss / n, np.finfo(float).tiny)
        return FittedModel(
            family=family,
            coef=beta,
            coef_names=names,
            cov_coef=sigma2 * XtX_inv,
            sigma2=sigma2,
            loglik=family.loglik(y, eta, scale=scale_ml),
            deviance=rss,
            eta=eta,
            mu=eta,
            n_obs=n,
        )

    eta = family.linkfun(family.starting_mu(y))
    dev = np.inf
    beta = np.zeros(p)
    converged = False
    n_iter = 0

    for n_iter in range(1, max_iter + 1):  # noqa: B007
        z, w, _ = family.working(y, eta)
        sqrt_w = np.sqrt(np.clip(w, 1e-10, 1e10))
        beta_new, _, _, _ = np.linalg.lstsq(
            X * sqrt_w[:, None], (z - offset) * sqrt_w, rcond=None
        )
        eta_new = offset + X @ beta_new
        dev_new = family.deviance(y, family.linkinv(eta_new))

        if np.isfinite(dev):
            for _ in range(_MAX_STEP_HALVE):
                if dev_new <= dev + 1e-12:
                    break
                beta_new = 0.5 * (beta + beta_new)
                eta_new = offset + X @ beta_new
                dev_new = family.deviance(y, family.linkinv(eta_new))

        delta = abs(dev_new - dev) / (abs(dev_new) + 0.1)
        beta, eta, dev = beta_new, eta_new, dev_new
        if delta < tol:
            converged = True
            break

    mu = family.linkinv(eta)
    _, w, _ = family.working(y, eta)
    cov = np.linalg.pinv((X * w[:, None]).T @ X)
    model = FittedModel(
        family=family,
        coef=beta,
        coef_names=names,
        cov_coef=cov,
        sigma2=1.0,
        loglik=family.loglik(y, mu),
        deviance=float(dev),
        eta=eta,
        mu=mu,
        n_obs=n,
        n_iter=n_iter,
        converged=converged,
    )
    if not converged:
        msg = f"IRLS did not converge in {max_iter} iterations."
        raise ConvergenceFailure(msg, model=model, n_iter=n_iter)
    return model


# ------------------------------------------------------------------ #
# Relative covariance factor
# ------------------------------------------------------------------ #


def _n_theta(re_struct: ReStruct) -> int:
    return sum(d * (d + 1) // 2 for _, d in re_struct)


def _theta_to_T(theta_k: np.ndarray, d: int) -> np.ndarray:
    """Lower-triangular ``T`` from its column-major lower elements."""
    T = np.zeros((d, d))
    idx = 0
    for j in range(d):
        for i in range(j, d):
            T[i, j] = theta_k[idx]
            idx += 1
    return T


def _split_theta(
    theta: np.ndarray, re_struct: ReStruct
) -> list[np.ndarray]:
    """Per-term ``T_k`` factors from the stacked θ vector."""
    factors = []
    pos = 0
    for _, d in re_struct:
        m = d * (d + 1) // 2
        factors.append(_theta_to_T(theta[pos : pos + m], d))
        pos += m
    return factors


def _lambda(theta: np.ndarray, re_struct: ReStruct) -> np.ndarray:
    """Block-diagonal ``Λθ = ⊕_k (I_{G_k} ⊗ T_k)``."""
    blocks = [
        np.kron(np.eye(G), T)
        for (G, _), T in zip(re_struct, _split_theta(theta, re_struct), strict=True)
    ]
    return linalg.block_diag(*blocks)


def _theta_bounds(
    re_struct: ReStruct,
) -> tuple[list[tuple[float | None, float | None]], np.ndarray]:
    """L-BFGS-B bounds (diagonal ≥ 0) and the identity starting value."""
    bounds: list[tuple[float | None, float | None]] = []
    start: list[float] = []
    for _, d in re_struct:
        for j in range(d):
            for i in range(j, d):
                if i == j:
                    bounds.append((0.0, None))
                    start.append(1.0)
                else:
                    bounds.append((None, None))
                    start.append(0.0)
    return bounds, np.asarray(start)


# ------------------------------------------------------------------ #
# LMM core
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class _CrossProducts:
    """Weighted cross-products formed once per LMM fit."""

    XtX: np.ndarray
    Xty: np.ndarray
    yty: float
    ZtZ: np.ndarray
    ZtX: np.ndarray
    Zty: np.ndarray
    n: int
    p: int
    sum_log_w: float


@dataclass(frozen=True)
class _LMMSolution:
    beta: np.ndarray
    u: np.ndarray
    b: np.ndarray
    r2: float
    logdet_L: float
    logdet_RX: float
    A: np.ndarray
    objective: float


def _cross_products(
    X: np.ndarray, y: np.ndarray, Z: np.ndarray, weights: np.ndarray | None
) -> _CrossProducts:
    if weights is None:
        sum_log_w = 0.0
    else:
        sqrt_w = np.sqrt(weights)
        X = X * sqrt_w[:, None]
        Z = Z * sqrt_w[:, None]
        y = y * sqrt_w
        sum_log_w = float(np.sum(np.log(weights)))
    return _CrossProducts(
        XtX=X.T @ X,
        Xty=X.T @ y,
        yty=float(y @ y),
        ZtZ=Z.T @ Z,
        ZtX=Z.T @ X,
        Zty=Z.T @ y,
        n=X.shape[0],
        p=X.shape[1],
        sum_log_w=sum_log_w,
    )


def _solve_at(
    theta: np.ndarray,
    cp: _CrossProducts,
    re_struct: ReStruct,
    reml: bool,
    fixed_scale: bool,
) -> _LMMSolution | None:
    """Profile β (and σ²) out at *theta*; ``None`` if not positive definite."""
    Lam = _lambda(theta, re_struct)
    q = Lam.shape[0]
    C = Lam.T @ cp.ZtZ @ Lam + np.eye(q)
    try:
        L = linalg.cholesky(C, lower=True)
    except linalg.LinAlgError:
        return None
    cu = linalg.solve_triangular(L, Lam.T @ cp.Zty, lower=True)
    RZX = linalg.solve_triangular(L, Lam.T @ cp.ZtX, lower=True)
    A = cp.XtX - RZX.T @ RZX
    rhs = cp.Xty - RZX.T @ cu
    try:
        RX = linalg.cholesky(A, lower=True)
    except linalg.LinAlgError:
        return None
    beta = linalg.cho_solve((RX, True), rhs)
    r2 = cp.yty - float(cu @ cu) - float(beta @ rhs)
    if r2 <= 0 and not fixed_scale:
        return None

    logdet_L = 2.0 * float(np.sum(np.log(np.diag(L))))
    logdet_RX = 2.0 * float(np.sum(np.log(np.diag(RX))))
    n, p = cp.n, cp.p

    # -2 log-likelihood (ML) or restricted criterion (REML).
    if fixed_scale:
        obj = logdet_L + r2 + n * _LOG_2PI - cp.sum_log_w
        if reml:
            obj += logdet_RX - p * _LOG_2PI
    elif reml:
        dof = n - p
        obj = logdet_L + logdet_RX + dof * (1.0 + _LOG_2PI + np.log(r2 / dof))
        obj -= cp.sum_log_w
    else:
        obj = logdet_L + n * (1.0 + _LOG_2PI + np.log(r2 / n)) - cp.sum_log_w

    u = linalg.solve_triangular(L.T, cu - RZX @ beta, lower=False)
    return _LMMSolution(
        beta=beta,
        u=u,
        b=Lam @ u,
        r2=r2,
        logdet_L=logdet_L,
        logdet_RX=logdet_RX,
        A=A,
        objective=float(obj),
    )


def _optimise_theta(
    cp: _CrossProducts,
    re_struct: ReStruct,
    *,
    reml: bool,
    fixed_scale: bool,
    theta0: np.ndarray | None,
    max_iter: int,
) -> tuple[np.ndarray, _LMMSolution, optimize.OptimizeResult]:
    bounds, start = _theta_bounds(re_struct)
    if theta0 is not None and len(theta0) == len(start):
        start = np.asarray(theta0, dtype=float).copy()

    def objective(theta: np.ndarray) -> float:
        sol = _solve_at(theta, cp, re_struct, reml, fixed_scale)
        return _BAD_DEVIANCE if sol is None else sol.objective

    result = optimize.minimize(
        objective,
        start,
        method="L-BFGS-B",
        bounds=bounds,
        options={"maxiter": max_iter, "ftol": 1e-12, "gtol": 1e-7},
    )
    theta = np.asarray(result.x, dtype=float)
    sol = _solve_at(theta, cp, re_struct, reml, fixed_scale)
    if sol is None:
        # The optimiser may stop on a point that is numerically
        # indefinite; the start value is always admissible.
        theta = start
        sol = _solve_at(theta, cp, re_struct, reml, fixed_scale)
    if sol is None:
        msg = "The profiled deviance could not be evaluated at any admissible θ."
        raise ConvergenceFailure(msg, n_iter=int(result.nit))
    return theta, sol, result


def _blups_by_term(
    b: np.ndarray, re_struct: ReStruct
) -> tuple[np.ndarray, ...]:
    out = []
    pos = 0
    for G, d in re_struct:
        out.append(b[pos : pos + G * d].reshape(G, d))
        pos += G * d
    return tuple(out)


def fit_lmm(
    X: np.ndarray,
    y: np.ndarray,
    Z: np.ndarray,
    re_struct: ReStruct,
    *,
    offset: np.ndarray | None = None,
    reml: bool = True,
    coef_names: tuple[str, ...] | None = None,
    theta0: np.ndarray | None = None,
    max_iter: int = 200,
) -> FittedModel:
    """Fit a gaussian linear mixed model by REML or ML.

    Args:
        X: Fixed-effect design ``(n, p)``.
        y: Response ``(n,)``.
        Z: Random-effect design ``(n, q)``.
        re_struct: ``[(G_k, d_k)]`` describing the blocks of *Z*.
        offset: Fixed additive term.
        reml: REML (default) or ML estimation.
        coef_names: Fixed-effect names.
        theta0: Warm-start value for the covariance-factor parameters.
        max_iter: Cap on optimiser iterations.

    Returns:
        The fitted model with BLUPs and per-term covariance matrices.

    Raises:
        RankDeficiency: If *X* is not of full column rank.
        ConvergenceFailure: If the optimiser hits *max_iter*.
    """
    family = resolve_family("gaussian")
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)
    n, p = X.shape
    offset = np.zeros(n) if offset is None else np.asarray(offset, dtype=float)
    names = coef_names if coef_names is not None else _default_names(p)
    _check_rank(X, "mixed model")
    if reml and n <= p:
        msg = f"REML needs more observations than fixed effects ({n} <= {p})."
        raise ValueError(msg)

    cp = _cross_products(X, y - offset, Z, None)
    theta, sol, result = _optimise_theta(
        cp, re_struct, reml=reml, fixed_scale=False, theta0=theta0, max_iter=max_iter
    )
    sigma2 = sol.r2 / (n - p) if reml else sol.r2 / n
    random_eta = Z @ sol.b
    eta = offset + X @ sol.beta + random_eta
    re_cov = tuple(sigma2 * (T @ T.T) for T in _split_theta(theta, re_struct))

    logger.debug(
        "LMM fit: n=%d p=%d q=%d theta=%s sigma2=%.6g nit=%d",
        n, p, Z.shape[1], np.round(theta, 6), sigma2, result.nit,
    )

    model = FittedModel(
        family=family,
        coef=sol.beta,
        coef_names=names,
        cov_coef=sigma2 * np.linalg.inv(sol.A),
        sigma2=float(sigma2),
        loglik=-0.5 * sol.objective,
        deviance=float(np.sum((y - eta) ** 2)),
        eta=eta,
        mu=eta,
        n_obs=n,
        n_iter=int(result.nit),
        converged=bool(result.success),
        re_covariance=re_cov,
        blups=_blups_by_term(sol.b, re_struct),
        random_eta=random_eta,
        theta=theta,
        reml=reml,
    )
    _report_optimiser(result, model, max_iter)
    return model


def _report_optimiser(
    result: optimize.OptimizeResult, model: FittedModel, max_iter: int
) -> None:
    if result.success:
        return
    if result.nit >= max_iter:
        msg = f"Variance-component optimisation hit its cap of {max_iter} iterations."
        raise ConvergenceFailure(msg, model=model, n_iter=int(result.nit))
    # L-BFGS-B with finite-difference gradients routinely ends in a
    # line-search stall at the optimum.
    logger.debug("Variance-component optimiser stopped early: %s", result.message)


# ------------------------------------------------------------------ #
# GLMM via PQL
# ------------------------------------------------------------------ #


def fit_glmm(
    X: np.ndarray,
    y: np.ndarray,
    Z: np.ndarray,
    re_struct: ReStruct,
    family: Family | str,
    *,
    offset: np.ndarray | None = None,
    reml: bool = True,
    coef_names: tuple[str, ...] | None = None,
    theta0: np.ndarray | None = None,
    max_iter: int = 100,
    tol: float = 1e-6,
) -> FittedModel:
    """Fit a GLMM by penalized quasi-likelihood.

    Each iteration linearises the model around the current linear
    predictor (working response ``z`` and weights ``w``, see
    :meth:`Family.working`), fits the weighted LMM
    ``z ~ Xβ + Zb`` with residual variance fixed at one, and updates
    η.  Iteration stops when the relative change in the Laplace
    log-likelihood ``Σ log f(y | μ) − ½‖u‖² − ½ log|L|²`` drops below
    *tol*.

    Args:
        X: Fixed-effect design ``(n, p)``.
        y: Response ``(n,)``.
        Z: Random-effect design ``(n, q)``.
        re_struct: ``[(G_k, d_k)]`` describing the blocks of *Z*.
        family: Response family (without a dispersion parameter).
        offset: Fixed additive term of the linear predictor.
        reml: Use the restricted criterion for the working LMM.
        coef_names: Fixed-effect names.
        theta0: Warm-start covariance-factor parameters.
        max_iter: PQL iteration cap.
        tol: Relative log-likelihood tolerance.

    Returns:
        The fitted model.

    Raises:
        RankDeficiency: If *X* is not of full column rank.
        ConvergenceFailure: If PQL hits *max_iter*; ``exc.model`` holds
            the last iterate.
    """
    family = resolve_family(family)
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)
    n, p = X.shape
    offset = np.zeros(n) if offset is None else np.asarray(offset, dtype=float)
    names = coef_names if coef_names is not None else _default_names(p)
    _check_rank(X, "mixed model")

    try:
        start = fit_glm(X, y, family, offset, check_rank=False)
    except ConvergenceFailure as exc:
        start = exc.model
    eta = start.eta
    theta = theta0
    ll_prev = -np.inf
    model: FittedModel | None = None

    for it in range(1, max_iter + 1):
        z, w, _ = family.working(y, eta)
        w = np.clip(w, 1e-10, 1e10)
        cp = _cross_products(X, z - offset, Z, w)
        theta, sol, _ = _optimise_theta(
            cp, re_struct, reml=reml, fixed_scale=True, theta0=theta, max_iter=200
        )
        random_eta = Z @ sol.b
        eta = offset + X @ sol.beta + random_eta
        mu = family.linkinv(eta)
        ll = family.loglik(y, mu) - 0.5 * float(sol.u @ sol.u) - 0.5 * sol.logdet_L

        model = FittedModel(
            family=family,
            coef=sol.beta,
            coef_names=names,
            cov_coef=np.linalg.inv(sol.A),
            sigma2=1.0,
            loglik=ll,
            deviance=family.deviance(y, mu),
            eta=eta,
            mu=mu,
            n_obs=n,
            n_iter=it,
            converged=False,
            re_covariance=tuple(T @ T.T for T in _split_theta(theta, re_struct)),
            blups=_blups_by_term(sol.b, re_struct),
            random_eta=random_eta,
            theta=theta,
            reml=reml,
        )
        logger.debug("PQL iteration %d: laplace loglik=%.8g", it, ll)
        if abs(ll - ll_prev) < tol * (abs(ll) + 0.1):
            return replace(model, converged=True)
        ll_prev = ll

    msg = f"PQL did not converge in {max_iter} iterations."
    raise ConvergenceFailure(msg, model=model, n_iter=max_iter)


# ------------------------------------------------------------------ #
# Dispatcher
# ------------------------------------------------------------------ #


def fit_mixed(
    X: np.ndarray,
    y: np.ndarray,
    Z: np.ndarray | None = None,
    re_struct: ReStruct | None = None,
    family: Family | str = "gaussian",
    offset: np.ndarray | None = None,
    *,
    reml: bool = True,
    coef_names: tuple[str, ...] | None = None,
    theta0: np.ndarray | None = None,
    max_iter: int = 100,
    tol: float = 1e-8,
) -> FittedModel:
    """Fit the model implied by *family* and the random-effects design.

    * no *Z* (or zero columns) → :func:`fit_glm`;
    * gaussian/identity → :func:`fit_lmm`;
    * any other family → :func:`fit_glmm` (PQL).

    A pure function of its inputs.

    Raises:
        RankDeficiency: If the fixed-effect design is rank deficient.
        ConvergenceFailure: If the fitting algorithm hits its cap.
        ValueError: If *Z* is given without *re_struct*.
    """
    family = resolve_family(family)
    if Z is None or Z.shape[1] == 0:
        return fit_glm(
            X, y, family, offset, coef_names=coef_names, max_iter=max_iter, tol=tol
        )
    if re_struct is None:
        msg = "re_struct is required when a random-effects design Z is given."
        raise ValueError(msg)
    if sum(G * d for G, d in re_struct) != Z.shape[1]:
        msg = (
            f"re_struct {re_struct} describes "
            f"{sum(G * d for G, d in re_struct)} columns but Z has {Z.shape[1]}."
        )
        raise ValueError(msg)
    if family.is_canonical_gaussian:
        return fit_lmm(
            X, y, Z, re_struct,
            offset=offset, reml=reml, coef_names=coef_names, theta0=theta0,
            max_iter=max(max_iter, 200),
        )
    return fit_glmm(
        X, y, Z, re_struct, family,
        offset=offset, reml=reml, coef_names=coef_names, theta0=theta0,
        max_iter=max_iter,
    )


__all__ = ["FittedModel", "fit_glm", "fit_glmm", "fit_lmm", "fit_mixed"]
