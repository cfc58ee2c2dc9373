from typing import Literal

import numpy as np

from pysctransform.exceptions import InvalidInput
from pysctransform.exceptions import NumericOverflow


def expected_counts(
    depth: np.ndarray, intercept: float, slope: float
) -> np.ndarray:
    """Return the expected counts ``exp(intercept + slope * depth)`` of a gene.

    Parameters
    ----------
    depth : ndarray
        Latent covariate of each cell.

    intercept : float
        Regularized intercept.

    slope : float
        Regularized slope.

    Returns
    -------
    ndarray
        Expected count per cell. May contain ``inf`` on overflow.
    """
    with np.errstate(over="ignore"):
        return np.exp(intercept + slope * np.asarray(depth, dtype=float))


def compute_residuals(
    y: np.ndarray,
    depth: np.ndarray,
    intercept: float,
    slope: float,
    theta: float,
    residual_type: Literal["pearson", "deviance"] = "pearson",
    clip_range: tuple[float, float] | None = None,
    on_overflow: Literal["nan", "raise"] = "nan",
) -> tuple[np.ndarray, int]:
    r"""Compute the residuals of one gene under its regularized model.

    Pearson residuals are :math:`(y - \mu) / \sqrt{\mu + \mu^2 / \theta}`.
    Deviance residuals are the signed square roots of the negative binomial
    unit deviances.

    Cells whose expected count or residual denominator is not finite and
    positive get a ``NaN`` residual; the number of such cells is returned.

    Parameters
    ----------
    y : ndarray
        Observed counts of the gene.

    depth : ndarray
        Latent covariate of each cell.

    intercept : float
        Regularized intercept.

    slope : float
        Regularized slope.

    theta : float
        Regularized theta.

    residual_type : str
        Residual type, ``"pearson"`` or ``"deviance"``. (default: ``"pearson"``).

    clip_range : tuple, optional
        Residuals are clipped to ``[clip_range[0], clip_range[1]]``. If ``None``,
        no clipping. (default: ``None``).

    on_overflow : str
        Either ``"nan"`` to set the residual of overflowing cells to ``NaN``, or
        ``"raise"`` to raise :class:`~pysctransform.exceptions.NumericOverflow` instead.
        (default: ``"nan"``).

    Returns
    -------
    residuals : ndarray
        One residual per cell.

    n_overflow : int
        Number of cells whose residual is ``NaN`` because of a numeric overflow.
    """
    if on_overflow not in ["nan", "raise"]:
        raise InvalidInput(
            f"Unknown overflow policy '{on_overflow}'. Expected 'nan' or 'raise'."
        )
    y = np.asarray(y, dtype=float)
    if not np.isfinite([intercept, slope, theta]).all():
        return np.full(len(y), np.nan), 0

    mu = expected_counts(depth, intercept, slope)
    with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
        if residual_type == "pearson":
            denom = np.sqrt(mu + mu**2 / theta)
            res = (y - mu) / denom
            valid = np.isfinite(denom) & (denom > 0)
        elif residual_type == "deviance":
            y_log_y = np.where(y > 0, y * np.log(y / mu), 0.0)
            dev = 2 * (y_log_y - (y + theta) * np.log((y + theta) / (mu + theta)))
            res = np.sign(y - mu) * np.sqrt(np.maximum(dev, 0))
            valid = np.isfinite(mu) & (mu > 0)
        else:
            raise InvalidInput(
                f"Unknown residual type '{residual_type}'. "
                "Expected 'pearson' or 'deviance'."
            )
    valid &= np.isfinite(res)
    if on_overflow == "raise" and not valid.all():
        raise NumericOverflow(
            f"{(~valid).sum()} cells have a non-finite expected count or residual."
        )
    res[~valid] = np.nan

    if clip_range is not None:
        res = np.clip(res, clip_range[0], clip_range[1])
    return res, int((~valid).sum())


def residual_moments(residuals: np.ndarray) -> tuple[float, float]:
    """Return the mean and sample variance of finite residuals.

    Parameters
    ----------
    residuals : ndarray
        Residuals of one gene.

    Returns
    -------
    float
        Mean, ``NaN`` if there are no finite residuals.

    float
        Variance (``ddof=1``), ``NaN`` if there are fewer than two finite
        residuals.
    """
    finite = residuals[np.isfinite(residuals)]
    mean = finite.mean() if len(finite) > 0 else np.nan
    var = finite.var(ddof=1) if len(finite) > 1 else np.nan
    return float(mean), float(var)


def gene_residual_record(
    index: int,
    y: np.ndarray,
    depth: np.ndarray,
    intercept: float,
    slope: float,
    theta: float,
    residual_type: Literal["pearson", "deviance"] = "pearson",
    clip_range: tuple[float, float] | None = None,
    keep_residuals: bool = False,
) -> tuple[int, np.ndarray | None, float, float, int]:
    """Worker function of the per-gene residual map.

    Parameters
    ----------
    index : int
        Gene position.

    y : ndarray
        Observed counts of the gene.

    depth : ndarray
        Latent covariate of each cell.

    intercept : float
        Regularized intercept.

    slope : float
        Regularized slope.

    theta : float
        Regularized theta.

    residual_type : str
        Residual type, ``"pearson"`` or ``"deviance"``. (default: ``"pearson"``).

    clip_range : tuple, optional
        Clipping range of the residuals. (default: ``None``).

    keep_residuals : bool
        Whether to return the residual vector. (default: ``False``).

    Returns
    -------
    tuple
        The tuple ``(index, residuals or None, mean, variance, n_overflow)``.
    """
    res, n_overflow = compute_residuals(
        y, depth, intercept, slope, theta, residual_type, clip_range
    )
    mean, var = residual_moments(res)
    return index, (res if keep_residuals else None), mean, var, n_overflow
