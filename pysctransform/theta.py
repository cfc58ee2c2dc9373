"""Estimation of the negative binomial dispersion parameter theta.

Variance of counts is modelled as :math:`\\mu + \\mu^2 / \\theta`, so that large
values of theta are close to Poisson.
"""

from typing import Literal

import numpy as np
from scipy.special import digamma  # type: ignore
from scipy.special import polygamma  # type: ignore

from pysctransform.counts import CountMatrix
from pysctransform.exceptions import InsufficientData
from pysctransform.exceptions import InvalidInput
from pysctransform.exceptions import ThetaNonConvergence
from pysctransform.utils import offset_coefficients

MIN_THETA = 1e-7
MAX_THETA = 1e5
THETA_EPS = np.finfo(float).eps ** 0.25


def theta_ml(
    y: np.ndarray,
    mu: np.ndarray,
    limit: int = 10,
    eps: float = THETA_EPS,
) -> float:
    """Maximum likelihood estimate of theta given fitted means.

    Newton iterations on the score of the negative binomial likelihood with
    respect to theta, scaled by the expected information. The starting point is
    the moment estimate :math:`n / \\sum_j (y_j / \\mu_j - 1)^2`.

    Parameters
    ----------
    y : ndarray
        Observed counts of one gene.

    mu : ndarray
        Fitted means for the same cells.

    limit : int
        Maximum number of iterations. (default: ``10``).

    eps : float
        Convergence tolerance on the Newton step. (default: ``eps ** 0.25``).

    Returns
    -------
    float
        Theta estimate, strictly positive.

    Raises
    ------
    ThetaNonConvergence
        If the iteration limit is reached before a step falls below the
        tolerance, or theta becomes non-finite or non-positive.
    """
    y = np.asarray(y, dtype=float)
    mu = np.asarray(mu, dtype=float)
    n = len(y)

    def score(th: float) -> float:
        return np.sum(
            digamma(th + y)
            - digamma(th)
            + np.log(th)
            + 1
            - np.log(th + mu)
            - (y + th) / (mu + th)
        )

    def info(th: float) -> float:
        return np.sum(
            -polygamma(1, th + y)
            + polygamma(1, th)
            - 1 / th
            + 2 / (mu + th)
            - (y + th) / (mu + th) ** 2
        )

    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        t0 = n / np.sum((y / mu - 1) ** 2)
        it = 0
        delta = 1.0
        while True:
            it += 1
            if it >= limit or abs(delta) <= eps:
                break
            if not np.isfinite(t0):
                break
            t0 = abs(t0)
            delta = score(t0) / info(t0)
            t0 = t0 + delta

    if not np.isfinite(t0) or t0 <= 0:
        raise ThetaNonConvergence(message=f"theta estimate diverged ({t0})")
    if abs(delta) > eps:
        raise ThetaNonConvergence(message="theta iteration limit reached")
    return float(t0)


def theta_mm(y: np.ndarray, mu: np.ndarray, dfr: int | None = None) -> float:
    """Method of moments estimate of theta given fitted means.

    Equates the Pearson statistic to its expectation under the negative
    binomial variance function, which gives the closed form
    :math:`\\sum \\mu^2 / (\\frac{n}{dfr} \\sum (y - \\mu)^2 - \\sum \\mu)`.

    Parameters
    ----------
    y : ndarray
        Observed counts of one gene.

    mu : ndarray
        Fitted means for the same cells.

    dfr : int, optional
        Residual degrees of freedom. If ``None``, ``n - 2``. (default: ``None``).

    Returns
    -------
    float
        Theta estimate. May be negative (under-dispersed data) or infinite:
        use :func:`clamp_theta` before using it.
    """
    y = np.asarray(y, dtype=float)
    mu = np.asarray(mu, dtype=float)
    n = len(y)
    if dfr is None:
        dfr = n - 2
    dfr = max(dfr, 1)
    with np.errstate(divide="ignore", invalid="ignore"):
        denom = np.sum((y - mu) ** 2) * n / dfr - np.sum(mu)
        return float(np.sum(mu**2) / denom)


def clamp_theta(
    theta: float, min_theta: float = MIN_THETA, max_theta: float = MAX_THETA
) -> tuple[float, bool]:
    """Clamp a theta estimate to ``[min_theta, max_theta]``.

    Non-positive values are set to ``min_theta``, infinite or ``NaN`` values to
    ``max_theta`` (Poisson-like).

    Parameters
    ----------
    theta : float
        Raw estimate.

    min_theta : float
        Smallest admissible theta. (default: ``1e-7``).

    max_theta : float
        Largest admissible theta. (default: ``1e5``).

    Returns
    -------
    float
        Clamped theta.

    bool
        Whether the value was modified.
    """
    if not np.isfinite(theta) or theta > max_theta:
        return max_theta, True
    if theta < min_theta:
        return min_theta, True
    return float(theta), False


def estimate_theta(
    y: np.ndarray,
    mu: np.ndarray,
    strategy: Literal["ml", "mm", "fixed"] = "ml",
    theta_given: float | None = None,
    dfr: int | None = None,
    limit: int = 10,
    min_theta: float = MIN_THETA,
    max_theta: float = MAX_THETA,
) -> tuple[float, bool]:
    """Estimate theta of one gene, falling back to bounds on failure.

    Parameters
    ----------
    y : ndarray
        Observed counts of one gene.

    mu : ndarray
        Fitted means for the same cells.

    strategy : str
        Either ``"ml"`` (maximum likelihood), ``"mm"`` (method of moments) or
        ``"fixed"`` (return ``theta_given``). (default: ``"ml"``).

    theta_given : float, optional
        Constant theta for the ``"fixed"`` strategy.

    dfr : int, optional
        Residual degrees of freedom for the ``"mm"`` strategy.

    limit : int
        Iteration limit for the ``"ml"`` strategy. (default: ``10``).

    min_theta : float
        Smallest admissible theta. (default: ``1e-7``).

    max_theta : float
        Value used when the estimate diverges, standing for a Poisson-like gene.
        (default: ``1e5``).

    Returns
    -------
    float
        Theta, strictly positive.

    bool
        Whether a fallback or a clamp was applied.
    """
    if strategy == "fixed":
        if theta_given is None or not theta_given > 0:
            raise InvalidInput(f"theta_given must be positive, got {theta_given}.")
        return float(theta_given), False
    elif strategy == "ml":
        try:
            theta = theta_ml(y, mu, limit=limit)
        except ThetaNonConvergence:
            return max_theta, True
    elif strategy == "mm":
        theta = theta_mm(y, mu, dfr=dfr)
    else:
        raise InvalidInput(
            f"Unknown theta estimation strategy '{strategy}'. "
            "Expected 'ml', 'mm' or 'fixed'."
        )
    return clamp_theta(theta, min_theta, max_theta)


def shared_theta(
    counts: CountMatrix,
    n_genes: int = 250,
    n_cells: int = 5000,
    seed: int = 42,
    min_detection_rate: float = 0.5,
    limit: int = 10,
    max_theta: float = MAX_THETA,
) -> float:
    """Estimate a single theta shared by all genes.

    Selects the ``n_genes`` genes with the highest mean, keeps those detected
    in at least ``min_detection_rate`` of the cells, and fits theta by maximum
    likelihood for each of them on a random subsample of cells, using the
    offset model for the fitted means. Genes whose estimation does not converge
    are Poisson-like and count as ``max_theta``. Returns the arithmetic mean of
    the per-gene estimates.

    Parameters
    ----------
    counts : CountMatrix
        Count matrix, with its latent covariate.

    n_genes : int
        Number of top expressed genes to consider. (default: ``250``).

    n_cells : int
        Number of cells to subsample. All cells are used if there are fewer.
        (default: ``5000``).

    seed : int
        Seed of the cell subsampling. (default: ``42``).

    min_detection_rate : float
        Minimum fraction of cells in which a gene must be detected.
        (default: ``0.5``).

    limit : int
        Iteration limit of the maximum likelihood estimation. (default: ``10``).

    max_theta : float
        Upper bound on theta, used for genes whose estimation does not converge.
        (default: ``1e5``).

    Returns
    -------
    float
        Shared theta.

    Raises
    ------
    InsufficientData
        If no gene passes the filters.
    """
    if n_genes < 1 or n_cells < 1:
        raise InvalidInput("n_genes and n_cells must be positive.")

    top_genes = np.argsort(-counts.gene_mean, kind="stable")[:n_genes]
    genes = top_genes[counts.detection_rate[top_genes] >= min_detection_rate]
    if len(genes) == 0:
        raise InsufficientData(
            f"None of the {len(top_genes)} most expressed genes is detected in at "
            f"least {min_detection_rate:.0%} of the cells; cannot estimate a "
            "shared theta."
        )

    rng = np.random.default_rng(seed)
    if n_cells < counts.n_cells:
        cells = np.sort(rng.choice(counts.n_cells, size=n_cells, replace=False))
    else:
        cells = np.arange(counts.n_cells)

    depth = counts.depth[cells]
    mean_cell_depth = np.mean(10**depth)

    thetas = []
    for gene in genes:
        y = counts.gene_counts(gene)[cells]
        if y.sum() == 0:
            continue
        intercept, slope = offset_coefficients(y.mean(), mean_cell_depth)
        mu = np.exp(intercept + slope * depth)
        try:
            thetas.append(min(theta_ml(y, mu, limit=limit), max_theta))
        except ThetaNonConvergence:
            thetas.append(max_theta)

    if len(thetas) == 0:
        raise InsufficientData(
            "None of the selected genes has counts in the subsampled cells."
        )
    return float(np.mean(thetas))
