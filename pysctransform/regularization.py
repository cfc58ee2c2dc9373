from typing import Literal

import numpy as np
import pandas as pd
from scipy.stats import gaussian_kde  # type: ignore
from statsmodels.nonparametric.bandwidths import bw_scott  # type: ignore
from statsmodels.nonparametric.bandwidths import bw_silverman  # type: ignore
from statsmodels.nonparametric.smoothers_lowess import lowess  # type: ignore

from pysctransform.exceptions import InsufficientData
from pysctransform.exceptions import InvalidInput
from pysctransform.theta import MAX_THETA
from pysctransform.theta import MIN_THETA
from pysctransform.utils import ksmooth
from pysctransform.utils import mean_absolute_deviation

PARAMETERS = ["intercept", "slope", "theta"]

_BANDWIDTHS = {"silverman": bw_silverman, "scott": bw_scott}


def bandwidth(
    x: np.ndarray, bw_method: Literal["silverman", "scott"] | float = "silverman"
) -> float:
    """Return a kernel bandwidth for the regressor ``x``.

    Parameters
    ----------
    x : ndarray
        Regressor values.

    bw_method : str or float
        Rule of thumb, ``"silverman"`` or ``"scott"``, or a fixed bandwidth.
        (default: ``"silverman"``).

    Returns
    -------
    float
        Strictly positive bandwidth. Falls back to ``1`` for degenerate ``x``.
    """
    if isinstance(bw_method, (int, float)):
        if not bw_method > 0:
            raise InvalidInput(f"Bandwidth must be positive, got {bw_method}.")
        return float(bw_method)
    if bw_method not in _BANDWIDTHS:
        raise InvalidInput(
            f"Unknown bandwidth rule '{bw_method}'. Expected 'silverman', 'scott' "
            "or a number."
        )
    bw = float(_BANDWIDTHS[bw_method](np.asarray(x, dtype=float)))
    if not np.isfinite(bw) or bw <= 0:
        # all regressor values are (nearly) equal: any bandwidth averages them
        return 1.0
    return bw


def robust_scale_binned(y: np.ndarray, x: np.ndarray, breaks: np.ndarray) -> np.ndarray:
    """Robust z-scores of ``y`` within bins of ``x``.

    Parameters
    ----------
    y : ndarray
        Values to score.

    x : ndarray
        Regressor used for binning.

    breaks : ndarray
        Bin edges (right-closed bins).

    Returns
    -------
    ndarray
        Robust z-scores ``(y - median) / (MAD + eps)`` computed within each bin,
        where MAD is scaled to be consistent with the standard deviation.
    """
    eps = np.finfo(float).eps * 10
    bins = pd.cut(x, breaks)
    scores = (
        pd.Series(y)
        .groupby(bins, observed=True)
        .transform(lambda v: (v - np.median(v)) / (mean_absolute_deviation(v) + eps))
    )
    return scores.to_numpy(dtype=float)


def is_outlier(
    y: np.ndarray, x: np.ndarray, bw: float, threshold: float = 10.0
) -> np.ndarray:
    """Flag values that are far from the values of genes with a similar mean.

    Robust z-scores are computed within two grids of bins along ``x``, shifted by
    half a bin; a value is an outlier if both scores exceed ``threshold`` in
    absolute value.

    Parameters
    ----------
    y : ndarray
        Raw parameter values.

    x : ndarray
        Regressor (log mean) values.

    bw : float
        Bandwidth of the regressor, used to set the bin width.

    threshold : float
        Robust z-score threshold. (default: ``10``).

    Returns
    -------
    ndarray
        Boolean outlier mask.
    """
    bin_width = (x.max() - x.min()) * bw / 2
    if not bin_width > 0:
        return np.zeros(len(y), dtype=bool)
    eps = np.finfo(float).eps * 10
    breaks1 = np.arange(x.min() - eps, x.max() + bin_width, bin_width)
    breaks2 = np.arange(x.min() - eps - bin_width / 2, x.max() + bin_width, bin_width)
    score1 = robust_scale_binned(y, x, breaks1)
    score2 = robust_scale_binned(y, x, breaks2)
    return np.minimum(np.abs(score1), np.abs(score2)) > threshold


def _to_dispersion(theta, log_mean, theta_regularization):
    if theta_regularization == "log_theta":
        return np.log10(theta)
    return np.log10(1 + 10**log_mean / theta)


def _from_dispersion(values, log_mean, theta_regularization):
    if theta_regularization == "log_theta":
        return 10**values
    with np.errstate(divide="ignore", over="ignore"):
        return 10**log_mean / (10**values - 1)


def smooth(
    x: np.ndarray,
    y: np.ndarray,
    x_eval: np.ndarray,
    bw: float,
    smoother: Literal["ksmooth", "lowess"] = "ksmooth",
    lowess_frac: float = 0.3,
) -> np.ndarray:
    """Fit a smooth curve of ``y`` against ``x`` and evaluate it at ``x_eval``.

    Parameters
    ----------
    x : ndarray
        Training regressor values.

    y : ndarray
        Training targets.

    x_eval : ndarray
        Evaluation points.

    bw : float
        Kernel bandwidth (``"ksmooth"`` only).

    smoother : str
        Either ``"ksmooth"`` (normal kernel regression) or ``"lowess"`` (robust local
        linear regression, interpolated between training points).
        (default: ``"ksmooth"``).

    lowess_frac : float
        Span of the lowess smoother. (default: ``0.3``).

    Returns
    -------
    ndarray
        Smoothed values at ``x_eval``.
    """
    if smoother == "ksmooth":
        return ksmooth(x, y, x_eval, bw)
    elif smoother == "lowess":
        order = np.argsort(x, kind="stable")
        fitted = lowess(
            y[order], x[order], frac=lowess_frac, it=3, return_sorted=False
        )
        return np.interp(x_eval, x[order], fitted)
    else:
        raise InvalidInput(
            f"Unknown smoother '{smoother}'. Expected 'ksmooth' or 'lowess'."
        )


def regularize(
    raw_params: pd.DataFrame,
    log_mean: np.ndarray,
    smoother: Literal["ksmooth", "lowess"] = "ksmooth",
    bw_method: Literal["silverman", "scott"] | float = "silverman",
    bw_adjust: float = 3.0,
    theta_regularization: Literal["log_theta", "od_factor"] = "log_theta",
    exclude_outliers: bool = True,
    outlier_threshold: float = 10.0,
    min_genes: int = 2,
    lowess_frac: float = 0.3,
    min_theta: float = MIN_THETA,
    max_theta: float = MAX_THETA,
    eval_log_mean: np.ndarray | None = None,
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Smooth raw per-gene parameters against the gene log mean.

    Intercept, slope and dispersion are smoothed independently, using the genes
    with a converged fit, a finite log mean and no outlying parameter as
    training data. The smoothed curves are evaluated at every gene, including
    genes whose fit failed.

    Parameters
    ----------
    raw_params : pandas.DataFrame
        Raw parameters, one row per gene, with columns ``intercept``, ``slope``,
        ``theta`` and ``converged``.

    log_mean : ndarray
        Log10 mean of each gene of ``raw_params``.

    smoother : str
        Smoother, ``"ksmooth"`` or ``"lowess"``. (default: ``"ksmooth"``).

    bw_method : str or float
        Bandwidth rule of the training regressor. (default: ``"silverman"``).

    bw_adjust : float
        Multiplier of the bandwidth. (default: ``3``).

    theta_regularization : str
        Dispersion scale on which theta is smoothed: ``"log_theta"``
        (``log10(theta)``) or ``"od_factor"`` (``log10(1 + mean / theta)``).
        (default: ``"log_theta"``).

    exclude_outliers : bool
        Whether to exclude genes with outlying raw parameters from the training
        data. (default: ``True``).

    outlier_threshold : float
        Robust z-score above which a raw parameter is an outlier.
        (default: ``10``).

    min_genes : int
        Minimum number of training genes. (default: ``2``).

    lowess_frac : float
        Span of the lowess smoother. (default: ``0.3``).

    min_theta : float
        Lower bound on regularized theta. (default: ``1e-7``).

    max_theta : float
        Upper bound on regularized theta. (default: ``1e5``).

    eval_log_mean : ndarray, optional
        Log10 means of the genes at which to evaluate the curves. If ``None``,
        the genes of ``raw_params``. (default: ``None``).

    Returns
    -------
    regularized : pandas.DataFrame
        Columns ``intercept``, ``slope`` and ``theta``, one row per evaluated
        gene. Genes with a non-finite log mean get ``NaN``.

    training : pandas.DataFrame
        For each gene of ``raw_params``, whether it was an ``outlier`` and
        whether it was ``used`` to fit the curves.

    Raises
    ------
    InsufficientData
        If fewer than ``min_genes`` genes can be used as training data.
    """
    if theta_regularization not in ["log_theta", "od_factor"]:
        raise InvalidInput(
            f"Unknown theta_regularization '{theta_regularization}'. "
            "Expected 'log_theta' or 'od_factor'."
        )
    log_mean = np.asarray(log_mean, dtype=float)
    if eval_log_mean is None:
        eval_log_mean = log_mean
        eval_index = raw_params.index
    else:
        eval_log_mean = np.asarray(eval_log_mean, dtype=float)
        eval_index = pd.RangeIndex(len(eval_log_mean))

    with np.errstate(divide="ignore", invalid="ignore"):
        targets = pd.DataFrame(
            {
                "intercept": raw_params["intercept"].to_numpy(dtype=float),
                "slope": raw_params["slope"].to_numpy(dtype=float),
                "theta": _to_dispersion(
                    raw_params["theta"].to_numpy(dtype=float),
                    log_mean,
                    theta_regularization,
                ),
            },
            index=raw_params.index,
        )

    valid = (
        raw_params["converged"].to_numpy(dtype=bool)
        & np.isfinite(targets.to_numpy()).all(axis=1)
        & np.isfinite(log_mean)
    )
    if valid.sum() < min_genes:
        raise InsufficientData(
            f"Only {valid.sum()} genes have a valid fit, at least {min_genes} are "
            "needed to regularize model parameters."
        )

    x = log_mean[valid]
    bw = bandwidth(x, bw_method)

    outlier = np.zeros(len(raw_params), dtype=bool)
    if exclude_outliers:
        for param in PARAMETERS:
            outlier[valid] |= is_outlier(
                targets[param].to_numpy()[valid], x, bw, outlier_threshold
            )
    used = valid & ~outlier
    if used.sum() < min_genes:
        raise InsufficientData(
            f"Only {used.sum()} genes are left after outlier removal, at least "
            f"{min_genes} are needed to regularize model parameters."
        )

    x_train = log_mean[used]
    bw = bw_adjust * bandwidth(x_train, bw_method)
    finite_eval = np.isfinite(eval_log_mean)

    regularized = pd.DataFrame(np.nan, index=eval_index, columns=PARAMETERS)
    for param in PARAMETERS:
        fitted = smooth(
            x_train,
            targets[param].to_numpy()[used],
            eval_log_mean[finite_eval],
            bw,
            smoother=smoother,
            lowess_frac=lowess_frac,
        )
        regularized.loc[finite_eval, param] = fitted

    theta = _from_dispersion(
        regularized["theta"].to_numpy(), eval_log_mean, theta_regularization
    )
    theta[finite_eval & ~(theta > 0)] = max_theta
    regularized["theta"] = np.where(
        finite_eval, np.clip(theta, min_theta, max_theta), np.nan
    )

    training = pd.DataFrame(
        {"outlier": outlier, "used": used}, index=raw_params.index
    )
    return regularized, training


def sample_genes(
    log_mean: np.ndarray, n_genes: int, rng: np.random.Generator
) -> np.ndarray:
    """Draw genes uniformly along the log mean axis.

    Genes are sampled without replacement with probability proportional to the
    inverse of the kernel density of their log mean, so that lowly and highly
    expressed genes are not swamped by the bulk of the distribution.

    Parameters
    ----------
    log_mean : ndarray
        Log10 mean of the candidate genes (all finite).

    n_genes : int
        Number of genes to draw.

    rng : numpy.random.Generator
        Random generator.

    Returns
    -------
    ndarray
        Sorted positions of the drawn genes in ``log_mean``.
    """
    if n_genes >= len(log_mean):
        return np.arange(len(log_mean))
    if np.ptp(log_mean) == 0:
        weights = np.ones(len(log_mean))
    else:
        density = gaussian_kde(log_mean)(log_mean)
        weights = 1.0 / np.clip(density, 1e-10, None)
    genes = rng.choice(
        len(log_mean), size=n_genes, replace=False, p=weights / weights.sum()
    )
    return np.sort(genes)
