import multiprocessing
from typing import Literal

import numpy as np
import pandas as pd
from scipy import sparse  # type: ignore
from scipy.linalg import solve  # type: ignore
from scipy.optimize import minimize  # type: ignore
from scipy.special import gammaln  # type: ignore
from scipy.special import logsumexp  # type: ignore
from scipy.special import polygamma  # type: ignore
from scipy.stats import norm  # type: ignore
from sklearn.linear_model import LinearRegression  # type: ignore

from pysctransform.exceptions import InvalidInput
from pysctransform.grid_search import grid_fit_alpha
from pysctransform.grid_search import grid_fit_beta


def test_valid_counts(counts: sparse.spmatrix | np.ndarray | pd.DataFrame) -> None:
    """Test that the count matrix contains valid inputs.

    More precisely, test that inputs are finite non-negative integers. Only the
    stored entries of sparse matrices are inspected.

    Parameters
    ----------
    counts : scipy.sparse matrix, ndarray or pandas.DataFrame
        Raw counts. One row per gene, one column per cell.

    Raises
    ------
    InvalidInput
        If the matrix contains NaNs, non-numeric, non-integer or negative values.
    """
    if isinstance(counts, pd.DataFrame):
        if counts.isna().any().any():
            raise InvalidInput("NaNs are not allowed in the count matrix.")
        if ~counts.apply(
            lambda s: pd.to_numeric(s, errors="coerce").notnull().all()
        ).all():
            raise InvalidInput("The count matrix should only contain numbers.")
        values = counts.to_numpy(dtype=float)
    elif sparse.issparse(counts):
        values = counts.data
    else:
        values = np.asarray(counts)

    if not np.issubdtype(values.dtype, np.number):
        raise InvalidInput("The count matrix should only contain numbers.")
    if np.isnan(values).any():
        raise InvalidInput("NaNs are not allowed in the count matrix.")
    if not np.isfinite(values).all():
        raise InvalidInput("The count matrix should only contain finite values.")
    if (values % 1 != 0).any():
        raise InvalidInput("The count matrix should only contain integers.")
    if (values < 0).any():
        raise InvalidInput("The count matrix should only contain non-negative values.")


def make_design_matrix(depth: np.ndarray) -> np.ndarray:
    """Return the ``[1, depth]`` design matrix of the per-gene regressions.

    Parameters
    ----------
    depth : ndarray
        Per-cell latent covariate.

    Returns
    -------
    ndarray
        Array of shape ``(n_cells, 2)``: intercept column, then depth.
    """
    depth = np.asarray(depth, dtype=float)
    return np.column_stack([np.ones_like(depth), depth])


def offset_coefficients(
    gene_mean: float | np.ndarray, mean_cell_depth: float
) -> tuple[float | np.ndarray, float]:
    r"""Return the coefficients of the offset model.

    The offset model assumes that expected counts are proportional to the
    linear cell depth :math:`10^{d_j}`, i.e.
    :math:`\mu_{ij} = \bar{y}_i \, 10^{d_j} / \bar{D}`.

    Parameters
    ----------
    gene_mean : float or ndarray
        Mean count of the gene(s).

    mean_cell_depth : float
        Average linear depth :math:`\bar{D}` of a cell.

    Returns
    -------
    intercept : float or ndarray
        The log mean of the gene minus :math:`\log \bar{D}`.

    slope : float
        The constant :math:`\log 10`.
    """
    with np.errstate(divide="ignore"):
        intercept = np.log(gene_mean) - np.log(mean_cell_depth)
    return intercept, np.log(10)


def nb_nll(counts: np.ndarray, mu: np.ndarray, alpha: float) -> float:
    r"""Neg log-likelihood of a negative binomial of parameters ``mu`` and ``alpha``.

    With :math:`\theta = 1 / \alpha`, the probability of a count :math:`y_j` is

    .. math::
        p(y_j | \mu_j, \theta) = \binom{y_j + \theta - 1}{y_j}
        \left(\frac{\theta}{\theta + \mu_j} \right)^{\theta}
        \left(\frac{\mu_j}{\theta + \mu_j} \right)^{y_j}.

    Parameters
    ----------
    counts : ndarray
        Observations.

    mu : ndarray
        Mean of the distribution :math:`\mu`.

    alpha : float
        Dispersion of the distribution :math:`\alpha`,
        s.t. the variance is :math:`\mu + \alpha \mu^2`.

    Returns
    -------
    float
        Negative log likelihood of the observations, summed over cells.
    """
    theta = 1 / alpha
    log_binom = gammaln(counts + theta) - gammaln(counts + 1) - gammaln(theta)
    log_p = (
        log_binom
        + theta * np.log(theta / (theta + mu))
        + counts * np.log(mu / (theta + mu))
    )
    return -np.sum(log_p)


def dnb_nll(counts: np.ndarray, mu: np.ndarray, alpha: float) -> float:
    r"""Gradient of the negative log-likelihood of a negative binomial.

    Unvectorized.

    Parameters
    ----------
    counts : ndarray
        Observations.

    mu : ndarray
        Mean of the distribution.

    alpha : float
        Dispersion of the distribution,
        s.t. the variance is :math:`\mu + \alpha\mu^2`.

    Returns
    -------
    float
        Derivative of negative log likelihood of NB w.r.t. :math:`\alpha`.
    """
    alpha_neg1 = 1 / alpha
    ll_part = (
        alpha_neg1**2
        * (
            polygamma(0, alpha_neg1)
            - polygamma(0, counts + alpha_neg1)
            + np.log(1 + mu * alpha)
            + (counts - mu) / (mu + alpha_neg1)
        ).sum()
    )

    return -ll_part


def irls_solver(
    counts: np.ndarray,
    design_matrix: np.ndarray,
    disp: float,
    size_factors: np.ndarray | None = None,
    beta_init: np.ndarray | None = None,
    min_mu: float = 1e-10,
    beta_tol: float = 1e-8,
    min_beta: float = -30,
    max_beta: float = 30,
    optimizer: Literal["BFGS", "L-BFGS-B"] = "L-BFGS-B",
    maxiter: int = 250,
) -> tuple[np.ndarray, np.ndarray, bool]:
    r"""Fit a NB GLM with log-link to predict counts from the design matrix.

    Iteratively reweighted least squares with a small ridge penalty. If IRLS
    starts diverging, switch to a bounded quasi-Newton optimizer, and to a grid
    search if that also fails.

    Parameters
    ----------
    counts : ndarray
        Raw counts for a given gene.

    design_matrix : ndarray
        Design matrix, typically ``[1, depth]``.

    disp : float
        Fixed dispersion :math:`\alpha = 1 / \theta`.

    size_factors : ndarray, optional
        Cell-wise multiplicative offsets. If ``None``, no offset is used.
        (default: ``None``).

    beta_init : ndarray, optional
        Initial coefficients, e.g. from a Poisson fit. If ``None``, they are
        obtained by least squares on ``log(counts + 0.1)``. (default: ``None``).

    min_mu : float
        Lower bound on estimated means, to ensure numerical stability.
        (default: ``1e-10``).

    beta_tol : float
        Stopping criterion for IRWLS:
        :math:`\vert dev - dev_{old}\vert / \vert dev + 0.1 \vert < \beta_{tol}`.
        (default: ``1e-8``).

    min_beta : float
        Lower-bound on coefficients. (default: ``-30``).

    max_beta : float
        Upper-bound on coefficients. (default: ``30``).

    optimizer : str
        Optimizing method to use in case IRLS starts diverging.
        Accepted values: 'BFGS' or 'L-BFGS-B'.
        NB: only 'L-BFGS-B' ensures that coefficients will
        lay in the [min_beta, max_beta] range. (default: ``'L-BFGS-B'``).

    maxiter : int
        Maximum number of IRLS iterations to perform before switching to L-BFGS-B.
        (default: ``250``).

    Returns
    -------
    beta: ndarray
        Fitted (intercept, slope) coefficients of the negative binomial GLM.

    mu: ndarray
        Means estimated from size factors and beta: :math:`\mu = s_j \exp(\beta^t X)`.

    converged: bool
        Whether IRLS or the optimizer converged. If not, the coefficients come
        from a grid search.
    """
    assert optimizer in ["BFGS", "L-BFGS-B"]

    num_vars = design_matrix.shape[1]
    X = design_matrix
    if size_factors is None:
        size_factors = np.ones(len(counts))

    if beta_init is None:
        if np.linalg.matrix_rank(X) == num_vars:
            Q, R = np.linalg.qr(X)
            y = np.log(counts / size_factors + 0.1)
            beta_init = solve(R, Q.T @ y)
        else:  # Initialise intercept with log mean
            beta_init = np.zeros(num_vars)
            beta_init[0] = np.log((counts / size_factors).mean() + 0.1)
    beta_init = np.clip(np.asarray(beta_init, dtype=float), min_beta, max_beta)
    beta = beta_init

    dev = 1000.0
    dev_ratio = 1.0

    ridge_factor = np.diag(np.repeat(1e-6, num_vars))
    mu = np.maximum(size_factors * np.exp(X @ beta), min_mu)

    converged = True
    i = 0
    while dev_ratio > beta_tol:
        W = mu / (1.0 + mu * disp)
        z = np.log(mu / size_factors) + (counts - mu) / mu
        H = (X.T * W) @ X + ridge_factor
        beta_hat = solve(H, X.T @ (W * z), assume_a="pos")
        i += 1

        if sum(np.abs(beta_hat) > max_beta) > 0 or i >= maxiter:
            # If IRLS starts diverging, use L-BFGS-B
            def f(beta: np.ndarray) -> float:
                # closure to minimize
                mu_ = np.maximum(size_factors * np.exp(X @ beta), min_mu)
                return nb_nll(counts, mu_, disp) + 0.5 * (ridge_factor @ beta**2).sum()

            def df(beta: np.ndarray) -> np.ndarray:
                mu_ = np.maximum(size_factors * np.exp(X @ beta), min_mu)
                return (
                    -X.T @ counts
                    + ((1 / disp + counts) * mu_ / (1 / disp + mu_)) @ X
                    + ridge_factor @ beta
                )

            res = minimize(
                f,
                beta_init,
                jac=df,
                method=optimizer,
                bounds=(
                    [(min_beta, max_beta)] * num_vars
                    if optimizer == "L-BFGS-B"
                    else None
                ),
            )

            beta = res.x
            converged = res.success

            if not res.success and num_vars <= 2:
                beta = grid_fit_beta(
                    counts,
                    size_factors,
                    X,
                    disp,
                    min_mu=min_mu,
                    min_beta=min_beta,
                    max_beta=max_beta,
                )
            break

        beta = beta_hat
        mu = np.maximum(size_factors * np.exp(X @ beta), min_mu)
        old_dev = dev
        dev = -2 * nb_nll(counts, mu, disp)
        dev_ratio = np.abs(dev - old_dev) / (np.abs(dev) + 0.1)

    # Return an unthresholded mu
    mu = size_factors * np.exp(X @ beta)
    return beta, mu, converged


def fit_alpha_mle(
    counts: np.ndarray,
    design_matrix: np.ndarray,
    mu: np.ndarray,
    alpha_hat: float,
    min_disp: float,
    max_disp: float,
    cr_reg: bool = True,
    optimizer: Literal["BFGS", "L-BFGS-B"] = "L-BFGS-B",
) -> tuple[float, bool]:
    """Estimate the dispersion parameter of a negative binomial GLM.

    Minimizes the (optionally Cox-Reid adjusted) negative log-likelihood with
    respect to :math:`\\log \\alpha`.

    Parameters
    ----------
    counts : ndarray
        Raw counts for a given gene.

    design_matrix : ndarray
        Design matrix.

    mu : ndarray
        Mean estimation for the NB model.

    alpha_hat : float
        Initial dispersion estimate.

    min_disp : float
        Lower threshold for dispersion parameters.

    max_disp : float
        Upper threshold for dispersion parameters.

    cr_reg : bool
        Whether to use Cox-Reid regularization. (default: ``True``).

    optimizer : str
        Optimizing method to use. Accepted values: 'BFGS' or 'L-BFGS-B'.
        (default: ``'L-BFGS-B'``).

    Returns
    -------
    float
        Dispersion estimate.

    bool
        Whether L-BFGS-B converged. If not, dispersion is estimated using grid search.
    """
    assert optimizer in ["BFGS", "L-BFGS-B"]

    def loss(log_alpha: float) -> float:
        # closure to be minimized
        alpha = np.exp(log_alpha)
        reg = 0
        if cr_reg:
            W = mu / (1 + mu * alpha)
            reg += 0.5 * np.linalg.slogdet((design_matrix.T * W) @ design_matrix)[1]
        return nb_nll(counts, mu, alpha) + reg

    def dloss(log_alpha: float) -> float:
        # gradient closure
        alpha = np.exp(log_alpha)
        reg_grad = 0
        if cr_reg:
            W = mu / (1 + mu * alpha)
            dW = -(W**2)
            reg_grad += (
                0.5
                * (
                    np.linalg.inv((design_matrix.T * W) @ design_matrix)
                    * ((design_matrix.T * dW) @ design_matrix)
                ).sum()
            ) * alpha  # gradient wrt log_alpha
        return alpha * dnb_nll(counts, mu, alpha) + reg_grad

    x0 = np.clip(np.log(alpha_hat), np.log(min_disp), np.log(max_disp))
    res = minimize(
        lambda x: loss(x[0]),
        x0=np.array([x0]),
        jac=lambda x: dloss(x[0]),
        method=optimizer,
        bounds=(
            [(np.log(min_disp), np.log(max_disp))] if optimizer == "L-BFGS-B" else None
        ),
    )

    if res.success:
        return np.exp(res.x[0]), res.success
    else:
        return (
            np.exp(
                grid_fit_alpha(
                    counts, design_matrix, mu, min_disp, max_disp, cr_reg=cr_reg
                )
            ),
            res.success,
        )


def fit_rough_dispersion(counts: np.ndarray, design_matrix: np.ndarray) -> float:
    """Rough dispersion estimate of one gene from a linear model.

    Used as the starting point of the Cox-Reid dispersion fit.

    Parameters
    ----------
    counts : ndarray
        Raw counts for a given gene.

    design_matrix : ndarray
        Design matrix, *with* intercept.

    Returns
    -------
    float
        Non-negative moment estimate of the dispersion :math:`\\alpha`.
    """
    num_cells, num_vars = design_matrix.shape
    if num_cells <= num_vars:
        raise InvalidInput(
            "The number of cells must exceed the number of design variables "
            "to estimate a dispersion."
        )

    reg = LinearRegression(fit_intercept=False)
    reg.fit(design_matrix, counts)
    y_hat = reg.predict(design_matrix)
    y_hat = np.maximum(y_hat, 1)
    alpha_rde = (
        ((counts - y_hat) ** 2 - y_hat) / ((num_cells - num_vars) * y_hat**2)
    ).sum()
    return max(alpha_rde, 0.0)


def get_num_processes(n_cpus: int | None) -> int:
    """Return the number of processes to use for multiprocessing.

    Returns the maximum number of available cpus by default.

    Parameters
    ----------
    n_cpus : int, optional
        Desired number of cpus. If ``None``, will return the number of available cpus.
        (default: ``None``).

    Returns
    -------
    int
        Number of processes to spawn.
    """
    if n_cpus is None:
        try:
            n_processes = multiprocessing.cpu_count()
        except NotImplementedError:
            n_processes = 5  # arbitrary default
    else:
        n_processes = n_cpus

    return n_processes


def mean_absolute_deviation(x: np.ndarray) -> float:
    """
    Compute a scaled estimator of the median absolute deviation.

    Used to compute robust z-scores of raw gene parameters.

    Parameters
    ----------
    x : ndarray
        1D array whose MAD to compute.

    Returns
    -------
    float
        Median absolute deviation estimator, consistent with the standard
        deviation for normal data.
    """
    center = np.median(x)
    return np.median(np.abs(x - center)) / norm.ppf(0.75)


def ksmooth(
    x: np.ndarray,
    y: np.ndarray,
    x_eval: np.ndarray,
    bandwidth: float,
    chunk_size: int = 1000,
) -> np.ndarray:
    """Nadaraya-Watson kernel regression with a normal kernel.

    The kernel is scaled so that its quartiles are at ``+/- 0.25 * bandwidth``.
    Weights are normalized in log-space, so that evaluation points far away
    from the training data take the value of their nearest training points
    instead of ``NaN``.

    Parameters
    ----------
    x : ndarray
        Training regressor values.

    y : ndarray
        Training targets (same shape as ``x``).

    x_eval : ndarray
        Points at which to evaluate the smoothed curve.

    bandwidth : float
        Kernel bandwidth.

    chunk_size : int
        Number of evaluation points processed at once, to bound memory usage.
        (default: ``1000``).

    Returns
    -------
    ndarray
        Smoothed values at ``x_eval``. Each value is a convex combination of
        ``y``.
    """
    sd = 0.25 / norm.ppf(0.75) * bandwidth
    x_eval = np.asarray(x_eval, dtype=float)
    fitted = np.empty(len(x_eval))
    for start in range(0, len(x_eval), chunk_size):
        chunk = slice(start, start + chunk_size)
        log_w = -0.5 * ((x_eval[chunk, None] - x[None, :]) / sd) ** 2
        log_w -= logsumexp(log_w, axis=1, keepdims=True)
        fitted[chunk] = np.exp(log_w) @ y
    return fitted
