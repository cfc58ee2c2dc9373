import numpy as np
import pandas as pd
import pytest

from pysctransform.exceptions import InsufficientData
from pysctransform.exceptions import InvalidInput
from pysctransform.regularization import bandwidth
from pysctransform.regularization import is_outlier
from pysctransform.regularization import regularize
from pysctransform.regularization import sample_genes


@pytest.fixture
def log_mean():
    return np.random.default_rng(0).uniform(-2, 2, 300)


@pytest.fixture
def raw_params(log_mean):
    rng = np.random.default_rng(1)
    n_genes = len(log_mean)
    return pd.DataFrame(
        {
            "intercept": -7 + np.log(10) * log_mean + rng.normal(0, 0.1, n_genes),
            "slope": np.log(10) + rng.normal(0, 0.05, n_genes),
            "theta": 10 ** (0.5 * log_mean + 1 + rng.normal(0, 0.2, n_genes)),
            "converged": True,
        },
        index=[f"gene{i}" for i in range(n_genes)],
    )


def test_regularized_params_finite(raw_params, log_mean):
    regularized, training = regularize(raw_params, log_mean)

    assert list(regularized.index) == list(raw_params.index)
    assert np.isfinite(regularized.to_numpy()).all()
    assert (regularized["theta"] > 0).all()
    assert training["used"].all()
    assert not training["outlier"].any()


def test_regularized_params_in_training_range(raw_params, log_mean):
    """Test that the kernel smoother never extrapolates beyond the training
    values.
    """
    regularized, training = regularize(raw_params, log_mean)
    used = raw_params[training["used"].to_numpy()]

    for param in ["intercept", "slope", "theta"]:
        assert (regularized[param] >= used[param].min() - 1e-10).all()
        assert (regularized[param] <= used[param].max() + 1e-10).all()

    # the smoothed curve follows the trend of the intercept
    assert np.corrcoef(regularized["intercept"], log_mean)[0, 1] > 0.98


def test_far_evaluation_points(raw_params, log_mean):
    """Test that points far from the training data take the nearest value."""
    regularized, _ = regularize(
        raw_params,
        log_mean,
        exclude_outliers=False,
        eval_log_mean=np.array([-1e4, 1e4]),
    )
    lowest, highest = np.argmin(log_mean), np.argmax(log_mean)

    for param in ["intercept", "slope", "theta"]:
        assert regularized[param].iloc[0] == pytest.approx(
            raw_params[param].iloc[lowest]
        )
        assert regularized[param].iloc[1] == pytest.approx(
            raw_params[param].iloc[highest]
        )


def test_outlier_excluded(raw_params, log_mean):
    raw_params.iloc[10, raw_params.columns.get_loc("slope")] = 50.0
    regularized, training = regularize(raw_params, log_mean)

    assert training["outlier"].iloc[10]
    assert not training["used"].iloc[10]
    assert training["used"].sum() == len(raw_params) - 1
    assert regularized["slope"].iloc[10] == pytest.approx(np.log(10), abs=0.2)

    _, training = regularize(raw_params, log_mean, exclude_outliers=False)
    assert training["used"].all()


def test_failed_genes_predicted(raw_params, log_mean):
    """Test that genes whose fit failed get regularized parameters."""
    raw_params.loc[raw_params.index[:20], ["intercept", "slope", "theta"]] = np.nan
    raw_params.loc[raw_params.index[:20], "converged"] = False
    raw_params.loc[raw_params.index[20:30], "converged"] = False

    regularized, training = regularize(raw_params, log_mean)

    assert not training["used"].iloc[:30].any()
    assert np.isfinite(regularized.to_numpy()).all()


def test_zero_mean_gene(raw_params, log_mean):
    log_mean = log_mean.copy()
    log_mean[0] = -np.inf
    regularized, training = regularize(raw_params, log_mean)

    assert regularized.iloc[0].isna().all()
    assert not training["used"].iloc[0]
    assert np.isfinite(regularized.iloc[1:].to_numpy()).all()


@pytest.mark.parametrize("smoother", ["ksmooth", "lowess"])
@pytest.mark.parametrize("theta_regularization", ["log_theta", "od_factor"])
def test_smoothers(raw_params, log_mean, smoother, theta_regularization):
    regularized, _ = regularize(
        raw_params,
        log_mean,
        smoother=smoother,
        theta_regularization=theta_regularization,
    )

    assert np.isfinite(regularized.to_numpy()).all()
    assert (regularized["theta"] > 0).all()


def test_insufficient_data(raw_params, log_mean):
    raw_params["converged"] = False
    raw_params.loc[raw_params.index[0], "converged"] = True

    with pytest.raises(InsufficientData):
        regularize(raw_params, log_mean)


def test_invalid_options(raw_params, log_mean):
    with pytest.raises(InvalidInput):
        regularize(raw_params, log_mean, smoother="spline")
    with pytest.raises(InvalidInput):
        regularize(raw_params, log_mean, theta_regularization="theta")
    with pytest.raises(InvalidInput):
        regularize(raw_params, log_mean, bw_method="median")


def test_bandwidth(log_mean):
    assert bandwidth(log_mean, "silverman") > 0
    assert bandwidth(log_mean, "scott") > 0
    assert bandwidth(log_mean, 0.5) == 0.5
    assert bandwidth(np.ones(10)) == 1.0
    with pytest.raises(InvalidInput):
        bandwidth(log_mean, -1.0)


def test_is_outlier():
    rng = np.random.default_rng(2)
    x = np.linspace(0, 1, 200)
    y = rng.normal(0, 1, 200)
    y[100] = 100.0

    outlier = is_outlier(y, x, bw=0.5)
    assert outlier[100]
    assert outlier.sum() == 1


def test_sample_genes(log_mean):
    genes = sample_genes(log_mean, 50, np.random.default_rng(3))

    assert len(genes) == 50
    assert len(np.unique(genes)) == 50
    assert (np.diff(genes) > 0).all()
    np.testing.assert_array_equal(
        genes, sample_genes(log_mean, 50, np.random.default_rng(3))
    )
    np.testing.assert_array_equal(
        sample_genes(log_mean, 500, np.random.default_rng(3)), np.arange(300)
    )
