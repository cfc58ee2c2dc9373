import numpy as np


def simulate_counts(n_genes=200, n_cells=500, theta=10.0, seed=42):
    """Negative binomial counts whose mean is proportional to the cell depth.

    Returns a genes x cells integer array.
    """
    rng = np.random.default_rng(seed)
    log_depth = rng.normal(3.3, 0.2, n_cells)
    log_gene_mean = rng.uniform(-1.5, 1.5, n_genes)
    mu = 10 ** (log_gene_mean[:, None] + log_depth[None, :] - log_depth.mean())
    return rng.negative_binomial(theta, theta / (theta + mu))


def simulate_gene(n_cells=2000, intercept=0.0, slope=np.log(10), theta=50.0, seed=0):
    """Counts of a single gene drawn from a known negative binomial model."""
    rng = np.random.default_rng(seed)
    depth = rng.uniform(1, 2, n_cells)
    mu = np.exp(intercept + slope * depth)
    y = rng.negative_binomial(theta, theta / (theta + mu))
    return y, depth, mu
