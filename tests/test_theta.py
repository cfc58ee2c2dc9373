import numpy as np
import pytest

from pysctransform.counts import CountMatrix
from pysctransform.exceptions import InsufficientData
from pysctransform.exceptions import InvalidInput
from pysctransform.exceptions import ThetaNonConvergence
from pysctransform.theta import MAX_THETA
from pysctransform.theta import MIN_THETA
from pysctransform.theta import clamp_theta
from pysctransform.theta import estimate_theta
from pysctransform.theta import shared_theta
from pysctransform.theta import theta_ml
from pysctransform.theta import theta_mm
from tests.synthetic import simulate_counts


@pytest.mark.parametrize("theta, seed", [(0.5, 0), (5.0, 1), (50.0, 2)])
def test_theta_ml_recovers_theta(theta, seed):
    rng = np.random.default_rng(seed)
    mu = rng.uniform(10, 100, 5000)
    y = rng.negative_binomial(theta, theta / (theta + mu))

    assert theta_ml(y, mu) == pytest.approx(theta, rel=0.15)


def test_theta_mm_recovers_theta():
    rng = np.random.default_rng(1)
    mu = rng.uniform(10, 100, 5000)
    y = rng.negative_binomial(5.0, 5.0 / (5.0 + mu))

    assert theta_mm(y, mu) == pytest.approx(5.0, rel=0.15)


def test_theta_ml_iteration_limit():
    rng = np.random.default_rng(2)
    mu = rng.uniform(10, 100, 1000)
    y = rng.negative_binomial(5.0, 5.0 / (5.0 + mu))

    with pytest.raises(ThetaNonConvergence):
        theta_ml(y, mu, limit=1)


def test_theta_mm_underdispersed():
    """Test that under-dispersed data gives a non-positive moment estimate, which
    is clamped to the lower bound.
    """
    mu = np.full(100, 10.0)
    y = np.full(100, 10)

    assert theta_mm(y, mu) < 0
    theta, clamped = estimate_theta(y, mu, strategy="mm")
    assert theta == MIN_THETA
    assert clamped


def test_poisson_like_theta():
    rng = np.random.default_rng(3)
    mu = np.full(5000, 5.0)
    y = rng.poisson(mu)

    theta, _ = estimate_theta(y, mu, strategy="ml")
    assert theta > 10
    assert theta <= MAX_THETA


def test_clamp_theta():
    assert clamp_theta(np.inf) == (MAX_THETA, True)
    assert clamp_theta(np.nan) == (MAX_THETA, True)
    assert clamp_theta(-1.0) == (MIN_THETA, True)
    assert clamp_theta(3.0) == (3.0, False)
    assert clamp_theta(3.0, min_theta=5.0) == (5.0, True)


def test_fixed_theta():
    y = np.arange(10)
    mu = np.full(10, 4.5)

    assert estimate_theta(y, mu, strategy="fixed", theta_given=7.0) == (7.0, False)
    with pytest.raises(InvalidInput):
        estimate_theta(y, mu, strategy="fixed", theta_given=0.0)
    with pytest.raises(InvalidInput):
        estimate_theta(y, mu, strategy="median")


def test_shared_theta_deterministic():
    """Test that the shared theta is bit-identical for identical seeds."""
    cm = CountMatrix(simulate_counts(n_genes=100, n_cells=800, theta=10.0))

    theta_1 = shared_theta(cm, n_genes=50, n_cells=300, seed=7)
    theta_2 = shared_theta(cm, n_genes=50, n_cells=300, seed=7)
    theta_3 = shared_theta(cm, n_genes=50, n_cells=300, seed=8)

    assert theta_1 == theta_2
    assert theta_1 != theta_3
    assert 0 < theta_1 < MAX_THETA


def test_shared_theta_all_cells():
    """Test that all cells are used when there are fewer than n_cells."""
    cm = CountMatrix(simulate_counts(n_genes=100, n_cells=300, theta=10.0))

    assert shared_theta(cm, n_cells=5000, seed=1) == shared_theta(
        cm, n_cells=5000, seed=2
    )


def test_shared_theta_insufficient_data():
    """Test that an error is raised when no gene is detected often enough."""
    counts = np.zeros((5, 50), dtype=int)
    counts[:, :5] = 1
    cm = CountMatrix(counts, depth=np.zeros(50))

    with pytest.raises(InsufficientData):
        shared_theta(cm)


def test_theta_ml_converges_on_last_iteration():
    """Test that a step below tolerance on the last allowed iteration is accepted."""
    rng = np.random.default_rng(4)
    mu = rng.uniform(10, 100, 2000)
    y = rng.negative_binomial(5.0, 5.0 / (5.0 + mu))
    theta = theta_ml(y, mu, limit=100)

    # smallest limit for which the iteration succeeds
    limit = 2
    while True:
        try:
            last = theta_ml(y, mu, limit=limit)
            break
        except ThetaNonConvergence:
            limit += 1
    assert limit < 100
    assert last == pytest.approx(theta, rel=1e-6)
    with pytest.raises(ThetaNonConvergence):
        theta_ml(y, mu, limit=limit - 1)


def test_shared_theta_poisson_counts():
    """Test that Poisson counts give a large shared theta instead of failing."""
    rng = np.random.default_rng(5)
    depth = rng.normal(3.3, 0.2, 1000)
    gene_mean = rng.uniform(2, 20, 50)
    counts = rng.poisson(gene_mean[:, None] * 10**depth / np.mean(10**depth))
    cm = CountMatrix(counts, depth=depth)

    theta = shared_theta(cm, n_genes=50)
    assert 10 < theta <= MAX_THETA
    assert shared_theta(cm, n_genes=50, max_theta=1e3) <= 1e3
