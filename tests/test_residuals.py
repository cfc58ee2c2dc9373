import numpy as np
import pytest

from pysctransform.exceptions import InvalidInput
from pysctransform.exceptions import NumericOverflow
from pysctransform.residuals import compute_residuals
from pysctransform.residuals import gene_residual_record
from pysctransform.residuals import residual_moments


def test_pearson_residuals_well_fit_gene(nb_gene):
    """Test that residuals under the true model have mean 0 and variance 1."""
    y, depth, _ = nb_gene
    res, n_overflow = compute_residuals(y, depth, 0.0, np.log(10), 50.0)
    mean, var = residual_moments(res)

    assert n_overflow == 0
    assert abs(mean) < 0.1
    assert var == pytest.approx(1.0, abs=0.15)


def test_pearson_residuals_poisson_model(nb_gene):
    """Test that residuals under a Poisson model carry the over-dispersion."""
    y, depth, mu = nb_gene
    res, _ = compute_residuals(y, depth, 0.0, np.log(10), 1e5)
    _, var = residual_moments(res)

    assert var == pytest.approx(np.mean(1 + mu / 50.0), rel=0.1)


def test_deviance_residuals(nb_gene):
    y, depth, mu = nb_gene
    res, _ = compute_residuals(
        y, depth, 0.0, np.log(10), 50.0, residual_type="deviance"
    )

    assert np.isfinite(res).all()
    assert (np.sign(res) == np.sign(y - mu)).all()


def test_deviance_residual_exact_fit():
    depth = np.array([0.0, 1.0])
    y = np.array([1, 10])
    res, _ = compute_residuals(y, depth, 0.0, np.log(10), 5.0, residual_type="deviance")

    np.testing.assert_allclose(res, 0.0, atol=1e-6)


def test_clip_range(nb_gene):
    y, depth, _ = nb_gene
    res, _ = compute_residuals(
        y, depth, 0.0, np.log(10), 0.5, clip_range=(-0.5, 0.5)
    )

    assert res.min() >= -0.5
    assert res.max() <= 0.5


def test_overflow():
    """Test that cells with an infinite expected count get a NaN residual."""
    depth = np.array([1.0, 2.0, 1000.0])
    y = np.array([10, 90, 5])

    res, n_overflow = compute_residuals(y, depth, 0.0, np.log(10), 10.0)
    assert n_overflow == 1
    assert np.isfinite(res[:2]).all()
    assert np.isnan(res[2])

    mean, var = residual_moments(res)
    assert np.isfinite([mean, var]).all()

    with pytest.raises(NumericOverflow):
        compute_residuals(y, depth, 0.0, np.log(10), 10.0, on_overflow="raise")


def test_nan_params():
    res, n_overflow = compute_residuals(
        np.array([1, 2, 3]), np.zeros(3), np.nan, np.nan, np.nan
    )

    assert np.isnan(res).all()
    assert n_overflow == 0
    assert np.isnan(residual_moments(res)).all()


def test_residual_moments():
    mean, var = residual_moments(np.array([1.0, 2.0, np.nan, 3.0]))
    assert mean == pytest.approx(2.0)
    assert var == pytest.approx(1.0)

    mean, var = residual_moments(np.array([1.0, np.nan]))
    assert mean == 1.0
    assert np.isnan(var)


def test_gene_residual_record(nb_gene):
    y, depth, _ = nb_gene
    index, res, mean, var, n_overflow = gene_residual_record(
        7, y, depth, 0.0, np.log(10), 50.0
    )
    assert index == 7
    assert res is None
    assert n_overflow == 0

    _, res, mean_kept, _, _ = gene_residual_record(
        7, y, depth, 0.0, np.log(10), 50.0, keep_residuals=True
    )
    assert res.shape == y.shape
    assert mean_kept == mean


def test_invalid_residual_type(nb_gene):
    y, depth, _ = nb_gene
    with pytest.raises(InvalidInput):
        compute_residuals(y, depth, 0.0, np.log(10), 50.0, residual_type="anscombe")
    with pytest.raises(InvalidInput):
        compute_residuals(y, depth, 0.0, np.log(10), 50.0, on_overflow="ignore")
