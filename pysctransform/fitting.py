"""Per-gene regression of counts on the latent covariate.

Every method is a plain function ``fit(y, design_matrix, **config) -> GeneFit``
registered in :data:`FIT_METHODS`. The design matrix is ``[1, depth]``.
"""

import warnings
from typing import Literal
from typing import NamedTuple

import numpy as np
import statsmodels.api as sm  # type: ignore
from statsmodels.tools.sm_exceptions import ConvergenceWarning  # type: ignore
from statsmodels.tools.sm_exceptions import PerfectSeparationWarning  # type: ignore

from pysctransform.exceptions import FitNonConvergence
from pysctransform.exceptions import InvalidInput
from pysctransform.exceptions import ThetaNonConvergence
from pysctransform.exceptions import VSTError
from pysctransform.theta import MAX_THETA
from pysctransform.theta import MIN_THETA
from pysctransform.theta import clamp_theta
from pysctransform.theta import estimate_theta
from pysctransform.theta import theta_ml
from pysctransform.utils import fit_alpha_mle
from pysctransform.utils import fit_rough_dispersion
from pysctransform.utils import irls_solver
from pysctransform.utils import make_design_matrix
from pysctransform.utils import nb_nll
from pysctransform.utils import offset_coefficients

Method = Literal[
    "poisson",
    "qpoisson",
    "nb_fast",
    "nb",
    "glmGamPoi",
    "offset",
    "offset_shared_theta_estimate",
]


class GeneFit(NamedTuple):
    """Raw (unregularized) parameters of one gene.

    Parameters
    ----------
    intercept : float
        Intercept of the log-linear model.

    slope : float
        Coefficient of the cell depth.

    theta : float
        Negative binomial dispersion parameter.

    converged : bool
        Whether the fit converged. Failed fits carry NaN parameters.

    theta_fallback : bool
        Whether theta was clamped or replaced by a bound. (default: ``False``).
    """

    intercept: float
    slope: float
    theta: float
    converged: bool
    theta_fallback: bool = False


FAILED_FIT = GeneFit(np.nan, np.nan, np.nan, False)

# Errors of a single gene fit; they fail that gene only.
GENE_ERRORS = (VSTError, ValueError, ArithmeticError)


def _fit_poisson_glm(y: np.ndarray, X: np.ndarray, scale: str | None = None):
    # statsmodels warns on separation and IRLS convergence issues; both are
    # checked explicitly on the returned results.
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", PerfectSeparationWarning)
        warnings.simplefilter("ignore", ConvergenceWarning)
        warnings.simplefilter("ignore", RuntimeWarning)
        res = sm.GLM(y, X, family=sm.families.Poisson()).fit(scale=scale)
    if not res.converged or not np.isfinite(res.params).all():
        raise FitNonConvergence(message="Poisson regression did not converge")
    return res


def fit_poisson(
    y: np.ndarray,
    X: np.ndarray,
    theta_estimation_fun: Literal["ml", "mm"] = "ml",
    theta_limit: int = 10,
    min_theta: float = MIN_THETA,
    max_theta: float = MAX_THETA,
    **kwargs,
) -> GeneFit:
    """Poisson regression, then theta from the Poisson fitted means.

    Parameters
    ----------
    y : ndarray
        Counts of one gene.

    X : ndarray
        Design matrix ``[1, depth]``.

    theta_estimation_fun : str
        Theta estimator, ``"ml"`` or ``"mm"``. (default: ``"ml"``).

    theta_limit : int
        Iteration limit of the maximum likelihood theta estimation.
        (default: ``10``).

    min_theta : float
        Lower bound on theta. (default: ``1e-7``).

    max_theta : float
        Upper bound on theta, used for Poisson-like genes. (default: ``1e5``).

    **kwargs
        Ignored options of other methods.

    Returns
    -------
    GeneFit
        Raw parameters.
    """
    res = _fit_poisson_glm(y, X)
    theta, fallback = estimate_theta(
        y,
        res.mu,
        strategy=theta_estimation_fun,
        dfr=int(res.df_resid),
        limit=theta_limit,
        min_theta=min_theta,
        max_theta=max_theta,
    )
    return GeneFit(res.params[0], res.params[1], theta, True, fallback)


def fit_qpoisson(
    y: np.ndarray,
    X: np.ndarray,
    min_theta: float = MIN_THETA,
    max_theta: float = MAX_THETA,
    **kwargs,
) -> GeneFit:
    r"""Quasi-Poisson regression; theta from the over-dispersion factor.

    The scale :math:`\phi` is the Pearson :math:`\chi^2` over the residual degrees
    of freedom. Equating :math:`\phi \bar{\mu}` with :math:`\bar{\mu} +
    \bar{\mu}^2 / \theta` gives :math:`\theta = \bar{\mu} / (\phi - 1)`; genes
    with :math:`\phi \leq 1` get ``max_theta``.

    Parameters
    ----------
    y : ndarray
        Counts of one gene.

    X : ndarray
        Design matrix ``[1, depth]``.

    min_theta : float
        Lower bound on theta. (default: ``1e-7``).

    max_theta : float
        Upper bound on theta. (default: ``1e5``).

    **kwargs
        Ignored options of other methods.

    Returns
    -------
    GeneFit
        Raw parameters.
    """
    res = _fit_poisson_glm(y, X, scale="X2")
    phi = res.scale
    if phi > 1:
        theta, fallback = clamp_theta(np.mean(res.mu) / (phi - 1), min_theta, max_theta)
    else:
        theta, fallback = max_theta, True
    return GeneFit(res.params[0], res.params[1], theta, True, fallback)


def fit_nb_fast(
    y: np.ndarray,
    X: np.ndarray,
    beta_tol: float = 1e-8,
    **kwargs,
) -> GeneFit:
    """Poisson fit, then one negative binomial refit of the coefficients.

    Theta is estimated from the Poisson fit as in :func:`fit_poisson` and held
    fixed during the refit.

    Parameters
    ----------
    y : ndarray
        Counts of one gene.

    X : ndarray
        Design matrix ``[1, depth]``.

    beta_tol : float
        Stopping criterion for IRLS. (default: ``1e-8``).

    **kwargs
        Options of :func:`fit_poisson`.

    Returns
    -------
    GeneFit
        Raw parameters.
    """
    init = fit_poisson(y, X, **kwargs)
    beta, _, converged = irls_solver(
        y,
        X,
        disp=1 / init.theta,
        beta_init=np.array([init.intercept, init.slope]),
        beta_tol=beta_tol,
    )
    if not converged:
        raise FitNonConvergence(message="negative binomial refit did not converge")
    return GeneFit(beta[0], beta[1], init.theta, True, init.theta_fallback)


def fit_nb(
    y: np.ndarray,
    X: np.ndarray,
    beta_tol: float = 1e-8,
    nb_max_iter: int = 25,
    nb_tol: float = 1e-6,
    theta_limit: int = 10,
    min_theta: float = MIN_THETA,
    max_theta: float = MAX_THETA,
    **kwargs,
) -> GeneFit:
    """Full negative binomial regression with alternating updates.

    Starts from the Poisson fit, then alternates IRLS updates of the
    coefficients at fixed theta and maximum likelihood updates of theta at fixed
    means until the log-likelihood and ``log(theta)`` stabilise.

    Parameters
    ----------
    y : ndarray
        Counts of one gene.

    X : ndarray
        Design matrix ``[1, depth]``.

    beta_tol : float
        Stopping criterion for IRLS. (default: ``1e-8``).

    nb_max_iter : int
        Maximum number of alternations. (default: ``25``).

    nb_tol : float
        Convergence tolerance of the alternations. (default: ``1e-6``).

    theta_limit : int
        Iteration limit of each theta update. (default: ``10``).

    min_theta : float
        Lower bound on theta. (default: ``1e-7``).

    max_theta : float
        Upper bound on theta. (default: ``1e5``).

    **kwargs
        Ignored options of other methods.

    Returns
    -------
    GeneFit
        Raw parameters.
    """
    res = _fit_poisson_glm(y, X)
    beta = res.params
    mu = res.mu

    def update_theta(mu: np.ndarray) -> tuple[float, bool]:
        try:
            theta = theta_ml(y, np.maximum(mu, 1e-10), limit=theta_limit)
            return clamp_theta(theta, min_theta, max_theta)
        except ThetaNonConvergence:
            return max_theta, True

    theta, fallback = update_theta(mu)
    loglik = -nb_nll(y, mu, 1 / theta)
    d1 = np.sqrt(2 * max(1, len(y) - X.shape[1]))

    for _ in range(nb_max_iter):
        beta, mu, converged = irls_solver(
            y, X, disp=1 / theta, beta_init=beta, beta_tol=beta_tol
        )
        if not converged:
            raise FitNonConvergence(message="negative binomial IRLS did not converge")
        new_theta, fallback = update_theta(mu)
        new_loglik = -nb_nll(y, mu, 1 / new_theta)
        change = abs(new_loglik - loglik) / d1 + abs(np.log(new_theta) - np.log(theta))
        theta, loglik = new_theta, new_loglik
        if change < nb_tol:
            return GeneFit(beta[0], beta[1], theta, True, fallback)

    raise FitNonConvergence(
        message=f"negative binomial alternation did not converge in {nb_max_iter} "
        "iterations"
    )


def fit_glmgampoi(
    y: np.ndarray,
    X: np.ndarray,
    beta_tol: float = 1e-8,
    min_theta: float = MIN_THETA,
    max_theta: float = MAX_THETA,
    **kwargs,
) -> GeneFit:
    """Gamma-Poisson GLM with a Cox-Reid adjusted dispersion.

    Coefficients are first fitted by IRLS with a rough moment dispersion, then
    the dispersion :math:`\\alpha = 1 / \\theta` is estimated by maximizing the
    Cox-Reid adjusted profile likelihood, and the coefficients are refitted.

    Parameters
    ----------
    y : ndarray
        Counts of one gene.

    X : ndarray
        Design matrix ``[1, depth]``.

    beta_tol : float
        Stopping criterion for IRLS. (default: ``1e-8``).

    min_theta : float
        Lower bound on theta. (default: ``1e-7``).

    max_theta : float
        Upper bound on theta. (default: ``1e5``).

    **kwargs
        Ignored options of other methods.

    Returns
    -------
    GeneFit
        Raw parameters.
    """
    min_disp = 1 / max_theta
    max_disp = max(10.0, float(len(y)))

    alpha = np.clip(fit_rough_dispersion(y, X), min_disp, max_disp)
    beta, mu, converged = irls_solver(y, X, disp=alpha, beta_tol=beta_tol)
    if not converged:
        raise FitNonConvergence(message="Gamma-Poisson IRLS did not converge")

    alpha, _ = fit_alpha_mle(
        y,
        X,
        np.maximum(mu, 1e-10),
        alpha_hat=alpha,
        min_disp=min_disp,
        max_disp=max_disp,
    )
    beta, mu, converged = irls_solver(
        y, X, disp=alpha, beta_init=beta, beta_tol=beta_tol
    )
    if not converged:
        raise FitNonConvergence(message="Gamma-Poisson IRLS did not converge")

    theta, fallback = clamp_theta(1 / alpha, min_theta, max_theta)
    return GeneFit(beta[0], beta[1], theta, True, fallback or alpha <= min_disp)


def fit_offset(
    y: np.ndarray,
    X: np.ndarray,
    theta_given: float = 100.0,
    **kwargs,
) -> GeneFit:
    """Offset model: no regression, fixed slope and theta.

    The slope is ``ln(10)`` and the intercept ``ln(mean(y)) - ln(mean(10**depth))``,
    so that expected counts are proportional to the linear cell depth.

    Parameters
    ----------
    y : ndarray
        Counts of one gene.

    X : ndarray
        Design matrix ``[1, depth]``.

    theta_given : float
        Theta of every gene. (default: ``100``).

    **kwargs
        Ignored options of other methods.

    Returns
    -------
    GeneFit
        Raw parameters.
    """
    if not theta_given > 0:
        raise InvalidInput(f"theta_given must be positive, got {theta_given}.")
    intercept, slope = offset_coefficients(np.mean(y), np.mean(10 ** X[:, 1]))
    return GeneFit(float(intercept), float(slope), float(theta_given), True)


FIT_METHODS = {
    "poisson": fit_poisson,
    "qpoisson": fit_qpoisson,
    "nb_fast": fit_nb_fast,
    "nb": fit_nb,
    "glmGamPoi": fit_glmgampoi,
    "offset": fit_offset,
    # the shared theta is computed once by the caller and passed as theta_given
    "offset_shared_theta_estimate": fit_offset,
}


def fit_gene(
    y: np.ndarray,
    depth: np.ndarray,
    method: Method = "poisson",
    gene: int | str | None = None,
    **config,
) -> GeneFit:
    """Fit the model of one gene.

    Parameters
    ----------
    y : ndarray
        Counts of the gene in each cell.

    depth : ndarray
        Latent covariate of each cell.

    method : str
        One of the keys of :data:`FIT_METHODS`. (default: ``"poisson"``).

    gene : int or str, optional
        Gene identifier, used in error messages.

    **config
        Method options, see the individual ``fit_*`` functions.

    Returns
    -------
    GeneFit
        Raw parameters.

    Raises
    ------
    FitNonConvergence
        If the gene has no counts, or its solver did not converge.
    """
    if method not in FIT_METHODS:
        raise InvalidInput(
            f"Unknown method '{method}'. Expected one of {list(FIT_METHODS)}."
        )
    y = np.asarray(y)
    if len(y) != len(depth):
        raise InvalidInput("Counts and depth must have the same number of cells.")
    if y.sum() == 0:
        raise FitNonConvergence(gene, "gene has no counts in the fitted cells")

    try:
        return FIT_METHODS[method](y, make_design_matrix(depth), **config)
    except FitNonConvergence as e:
        if gene is None:
            raise
        raise type(e)(gene, str(e)) from e
    except (np.linalg.LinAlgError, FloatingPointError) as e:
        raise FitNonConvergence(gene, f"numerical failure: {e}") from e


def fit_gene_record(
    index: int,
    y: np.ndarray,
    depth: np.ndarray,
    method: Method,
    fallback_method: Method | None = None,
    **config,
) -> tuple[int, GeneFit]:
    """Fit one gene and return a failure record instead of raising.

    Worker function of the per-gene parallel map: convergence failures and any
    other error raised while fitting this gene are reported in the returned
    record, never propagated. Method names and options are validated by
    :meth:`VST.run <pysctransform.vst.VST.run>` before the map starts.

    Parameters
    ----------
    index : int
        Gene position, returned with the fit so that results may arrive in any
        order.

    y : ndarray
        Counts of the gene.

    depth : ndarray
        Latent covariate of each cell.

    method : str
        Fitting method.

    fallback_method : str, optional
        Method to retry with if ``method`` fails. (default: ``None``).

    **config
        Method options.

    Returns
    -------
    int
        The gene position.

    GeneFit
        Raw parameters, or NaN parameters with ``converged=False``.
    """
    try:
        return index, fit_gene(y, depth, method, gene=index, **config)
    except GENE_ERRORS:
        pass
    if fallback_method is not None and fallback_method != method:
        try:
            return index, fit_gene(y, depth, fallback_method, gene=index, **config)
        except GENE_ERRORS:
            pass
    return index, FAILED_FIT
