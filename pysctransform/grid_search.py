import numpy as np
from scipy.special import gammaln  # type: ignore


def vec_nb_nll(counts: np.ndarray, mu: np.ndarray, alpha: np.ndarray) -> np.ndarray:
    """Return the negative log-likelihood of a negative binomial.

    Vectorized over a grid of parameters: ``alpha`` or the columns of ``mu``.

    Parameters
    ----------
    counts : ndarray
        Observations, of shape ``(n_cells,)``.

    mu : ndarray
        Mean of the distribution. Either ``(n_cells,)`` or ``(n_cells, n_grid)``.

    alpha : float or ndarray
        Dispersion of the distribution, s.t. the variance is
        :math:`\\mu + \\alpha * \\mu^2`.

    Returns
    -------
    ndarray
        Negative log likelihood of the observations counts following
        :math:`NB(\\mu, \\alpha)`, one value per grid point.
    """
    y = counts[:, None]
    mu = mu[:, None] if mu.ndim == 1 else mu
    size = 1 / np.asarray(alpha, dtype=float)
    log_binom = gammaln(y + size) - gammaln(y + 1) - gammaln(size)
    return (
        len(counts) * size * np.log(1 / size)
        + (-log_binom + (y + size) * np.log(mu + size) - y * np.log(mu)).sum(0)
    )


def _refined_argmin(loss, low: float, high: float, grid_length: int) -> float:
    # Coarse search on [low, high], then a second pass one step around the best point.
    grid = np.linspace(low, high, grid_length)
    best = grid[np.argmin(loss(grid))]
    step = grid[1] - grid[0]
    grid = np.linspace(best - step, best + step, grid_length)
    return grid[np.argmin(loss(grid))]


def grid_fit_alpha(
    counts: np.ndarray,
    design_matrix: np.ndarray,
    mu: np.ndarray,
    min_disp: float,
    max_disp: float,
    cr_reg: bool = True,
    grid_length: int = 100,
) -> float:
    """Find the dispersion of one gene by grid search.

    Used when the quasi-Newton dispersion fit fails. The (optionally Cox-Reid
    adjusted) negative log-likelihood is evaluated on a grid of
    :math:`\\log \\alpha`, then on a finer grid around its minimum.

    Parameters
    ----------
    counts : ndarray
        Raw counts for a given gene.

    design_matrix : ndarray
        Design matrix.

    mu : ndarray
        Mean estimation for the NB model.

    min_disp : float
        Lower threshold for dispersion parameters.

    max_disp : float
        Upper threshold for dispersion parameters.

    cr_reg : bool
        Whether to use Cox-Reid regularization. (default: ``True``).

    grid_length : int
        Number of grid points. (default: ``100``).

    Returns
    -------
    float
        Logarithm of the fitted dispersion parameter.
    """

    def loss(log_alpha: np.ndarray) -> np.ndarray:
        alpha = np.exp(log_alpha)
        nll = vec_nb_nll(counts, mu, alpha)
        if cr_reg:
            # one weighted information matrix per grid point
            W = mu[:, None] / (1 + mu[:, None] * alpha)
            info = np.einsum("ig,ik,il->gkl", W, design_matrix, design_matrix)
            nll = nll + 0.5 * np.linalg.slogdet(info)[1]
        return nll

    return _refined_argmin(loss, np.log(min_disp), np.log(max_disp), grid_length)


def grid_fit_beta(
    counts: np.ndarray,
    size_factors: np.ndarray,
    design_matrix: np.ndarray,
    disp: float,
    min_mu: float = 1e-10,
    grid_length: int = 60,
    min_beta: float = -30,
    max_beta: float = 30,
) -> np.ndarray:
    """Find the (intercept, slope) coefficients of one gene by grid search.

    Used when both IRLS and the quasi-Newton fallback fail. The slope is
    searched on a grid, and for each candidate slope, the intercept is searched
    on a nested grid; both are then refined around the best pair.

    Parameters
    ----------
    counts : ndarray
        Raw counts for a given gene.

    size_factors : ndarray
        Cell-wise multiplicative offsets.

    design_matrix : ndarray
        Design matrix ``[1, depth]``.

    disp : float
        Fixed dispersion :math:`\\alpha = 1 / \\theta`.

    min_mu : float
        Lower threshold for fitted means. (default: ``1e-10``).

    grid_length : int
        Number of grid points per coefficient. (default: ``60``).

    min_beta : float
        Lower-bound on coefficients. (default: ``-30``).

    max_beta : float
        Upper-bound on coefficients. (default: ``30``).

    Returns
    -------
    ndarray
        Fitted coefficients.
    """
    max_mu = np.finfo(float).max / 1e10

    def nll(intercepts: np.ndarray, slope: float) -> np.ndarray:
        with np.errstate(over="ignore"):
            eta = intercepts[None, :] + slope * design_matrix[:, 1:2]
            mu = np.clip(size_factors[:, None] * np.exp(eta), min_mu, max_mu)
        ridge = 0.5 * 1e-6 * (intercepts**2 + slope**2)
        return vec_nb_nll(counts, mu, disp) + ridge

    def best_intercept(slope: float, low: float, high: float) -> float:
        return _refined_argmin(lambda b0: nll(b0, slope), low, high, grid_length)

    def profile(slopes: np.ndarray, low: float, high: float) -> np.ndarray:
        return np.array(
            [nll(np.array([best_intercept(s, low, high)]), s)[0] for s in slopes]
        )

    slope = _refined_argmin(
        lambda slopes: profile(slopes, min_beta, max_beta),
        min_beta,
        max_beta,
        grid_length,
    )
    return np.array([best_intercept(slope, min_beta, max_beta), slope])
