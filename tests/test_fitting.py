import numpy as np
import pytest

from pysctransform.exceptions import FitNonConvergence
from pysctransform.exceptions import InvalidInput
from pysctransform.fitting import FAILED_FIT
from pysctransform.fitting import FIT_METHODS
from pysctransform.fitting import fit_gene
from pysctransform.fitting import fit_gene_record
from pysctransform.theta import MAX_THETA


@pytest.mark.parametrize("method", ["poisson", "nb_fast", "nb", "glmGamPoi"])
def test_coefficients_recovered(method, nb_gene):
    y, depth, _ = nb_gene
    fit = fit_gene(y, depth, method)

    assert fit.converged
    assert fit.intercept == pytest.approx(0.0, abs=0.15)
    assert fit.slope == pytest.approx(np.log(10), abs=0.1)


def test_nb_recovers_theta(nb_gene):
    """Test that the full negative binomial fit recovers theta within 20%."""
    y, depth, _ = nb_gene
    fit = fit_gene(y, depth, "nb")

    assert fit.theta == pytest.approx(50.0, rel=0.2)
    assert not fit.theta_fallback


@pytest.mark.parametrize(
    "method, config",
    [
        ("poisson", {"theta_estimation_fun": "ml"}),
        ("poisson", {"theta_estimation_fun": "mm"}),
        ("nb_fast", {}),
        ("qpoisson", {}),
        ("glmGamPoi", {}),
    ],
)
def test_theta_estimates(method, config, nb_gene):
    y, depth, _ = nb_gene
    fit = fit_gene(y, depth, method, **config)

    assert fit.theta == pytest.approx(50.0, rel=0.3)


def test_qpoisson_poisson_data():
    """Test that Poisson data yields a large theta with the quasi-Poisson fit."""
    rng = np.random.default_rng(0)
    depth = rng.uniform(1, 2, 2000)
    y = rng.poisson(np.exp(np.log(10) * depth))
    fit = fit_gene(y, depth, "qpoisson")

    assert fit.converged
    assert fit.theta > 10
    assert fit.theta <= MAX_THETA


def test_offset_coefficients(nb_gene):
    """Test that the offset model is ln(mean) - ln(mean linear depth), ln(10)."""
    y, depth, _ = nb_gene
    fit = fit_gene(y, depth, "offset", theta_given=20.0)

    assert fit.intercept == pytest.approx(np.log(y.mean()) - np.log(np.mean(10**depth)))
    assert fit.slope == pytest.approx(np.log(10))
    assert fit.theta == 20.0
    assert fit.converged


def test_offset_invalid_theta(nb_gene):
    y, depth, _ = nb_gene
    with pytest.raises(InvalidInput):
        fit_gene(y, depth, "offset", theta_given=-1.0)


@pytest.mark.parametrize("method", list(FIT_METHODS))
def test_zero_gene(method):
    """Test that a gene without counts is flagged instead of crashing."""
    depth = np.linspace(1, 2, 100)
    y = np.zeros(100, dtype=int)

    with pytest.raises(FitNonConvergence) as excinfo:
        fit_gene(y, depth, method, gene="zero_gene")
    assert excinfo.value.gene == "zero_gene"

    index, fit = fit_gene_record(4, y, depth, method)
    assert index == 4
    assert not fit.converged
    assert np.isnan([fit.intercept, fit.slope, fit.theta]).all()


def test_fallback_method(monkeypatch, nb_gene):
    """Test that a failed fit is retried with the fallback method."""

    def failing_fit(y, X, **kwargs):
        raise FitNonConvergence(message="always fails")

    monkeypatch.setitem(FIT_METHODS, "nb", failing_fit)
    y, depth, _ = nb_gene

    _, fit = fit_gene_record(0, y, depth, "nb")
    assert fit is FAILED_FIT

    _, fit = fit_gene_record(0, y, depth, "nb", fallback_method="poisson")
    assert fit.converged
    assert fit.slope == pytest.approx(np.log(10), abs=0.1)


def test_invalid_inputs(nb_gene):
    y, depth, _ = nb_gene
    with pytest.raises(InvalidInput):
        fit_gene(y, depth, "negative_binomial")
    with pytest.raises(InvalidInput):
        fit_gene(y, depth[:-1], "poisson")


def test_failed_fit_reports_gene(monkeypatch, nb_gene):
    def failing_fit(y, X, **kwargs):
        raise FitNonConvergence(message="always fails")

    monkeypatch.setitem(FIT_METHODS, "nb", failing_fit)
    y, depth, _ = nb_gene

    with pytest.raises(FitNonConvergence, match="gene MT-CO1") as excinfo:
        fit_gene(y, depth, "nb", gene="MT-CO1")
    assert excinfo.value.gene == "MT-CO1"


def test_gene_error_does_not_abort_batch(nb_gene):
    """Test that a gene whose fit raises an input error gets a failure
    record, e.g. a dispersion regression with fewer cells than coefficients.
    """
    y, depth, _ = nb_gene
    y, depth = np.array([3, 5]), depth[:2]

    index, fit = fit_gene_record(1, y, depth, "glmGamPoi")
    assert index == 1
    assert fit is FAILED_FIT

    _, fit = fit_gene_record(1, y, depth, "glmGamPoi", fallback_method="offset")
    assert fit.converged
