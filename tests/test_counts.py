import anndata as ad
import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from pysctransform.counts import CountMatrix
from pysctransform.exceptions import InvalidInput


def test_summary_statistics(counts):
    cm = CountMatrix(counts)

    assert cm.shape == counts.shape
    np.testing.assert_allclose(cm.gene_mean, counts.mean(axis=1))
    np.testing.assert_allclose(cm.cell_umi, counts.sum(axis=0))
    np.testing.assert_allclose(cm.detection_rate, (counts > 0).mean(axis=1))
    np.testing.assert_allclose(cm.depth, np.log10(counts.sum(axis=0)))
    np.testing.assert_allclose(
        cm.gene_gmean, np.expm1(np.log1p(counts).mean(axis=1))
    )
    np.testing.assert_array_equal(cm.gene_counts(3), counts[3])
    assert cm.mean_cell_depth == pytest.approx(counts.sum(axis=0).mean())


def test_dataframe_names():
    counts_df = pd.DataFrame(
        [[0, 3, 1], [2, 0, 4]], index=["gene1", "gene2"], columns=["c1", "c2", "c3"]
    )
    cm = CountMatrix(counts_df)

    assert list(cm.gene_names) == ["gene1", "gene2"]
    assert list(cm.cell_names) == ["c1", "c2", "c3"]
    summary = cm.gene_summary()
    assert summary.loc["gene2", "n_detected"] == 2
    assert summary.loc["gene1", "mean"] == pytest.approx(4 / 3)


def test_sparse_input(counts):
    cm = CountMatrix(sparse.csc_matrix(counts))
    np.testing.assert_array_equal(cm.X.toarray(), counts)


def test_read_only(counts):
    """Test that neither counts nor derived statistics can be modified."""
    cm = CountMatrix(counts)

    with pytest.raises(ValueError):
        cm.X.data[0] = 10
    with pytest.raises(ValueError):
        cm.depth[0] = 1.0
    with pytest.raises(ValueError):
        cm.gene_mean[0] = 1.0


def test_custom_depth(counts):
    depth = np.linspace(0, 1, counts.shape[1])
    cm = CountMatrix(counts, depth=depth)
    np.testing.assert_array_equal(cm.depth, depth)
    assert cm.mean_cell_depth == pytest.approx(np.mean(10**depth))


@pytest.mark.parametrize(
    "depth", [np.ones(3), np.array([1.0, np.nan, 2.0, 3.0])], ids=["length", "nan"]
)
def test_invalid_depth(depth):
    counts = np.array([[1, 2, 3, 4], [0, 1, 0, 2]])
    with pytest.raises(InvalidInput):
        CountMatrix(counts, depth=depth)


def test_zero_umi_cell():
    """Test that cells without counts are rejected when depth is derived."""
    counts = np.array([[1, 0, 3], [2, 0, 0]])
    with pytest.raises(InvalidInput):
        CountMatrix(counts)
    # but accepted with a user-supplied depth
    CountMatrix(counts, depth=np.zeros(3))


def test_nan_counts():
    """Test that a ValueError is thrown when the count matrix contains NaNs."""
    counts_df = pd.DataFrame({"c1": [0, np.nan], "c2": [4, 12]})
    with pytest.raises(ValueError):
        CountMatrix(counts_df)


def test_numeric_counts():
    """Test that a ValueError is thrown when the count matrix contains
    non-numeric values.
    """
    counts_df = pd.DataFrame({"c1": [0, "a"], "c2": [4, 12]})
    with pytest.raises(ValueError):
        CountMatrix(counts_df)


def test_integer_counts():
    """Test that a ValueError is thrown when the count matrix contains
    non-integer values."""
    with pytest.raises(InvalidInput):
        CountMatrix(np.array([[0, 1.5], [4, 12]]))


def test_non_negative_counts():
    """Test that a ValueError is thrown when the count matrix contains
    negative values."""
    with pytest.raises(InvalidInput):
        CountMatrix(sparse.csr_matrix(np.array([[0, -1], [4, 12]])))


def test_from_anndata(counts):
    """Test that AnnData objects (cells x genes) are transposed."""
    adata = ad.AnnData(X=counts.T.astype(float))
    adata.obs["log_umi"] = np.log10(counts.sum(axis=0))
    cm = CountMatrix.from_anndata(adata, depth_key="log_umi")

    assert cm.shape == counts.shape
    np.testing.assert_array_equal(cm.X.toarray(), counts)
    np.testing.assert_allclose(cm.depth, np.log10(counts.sum(axis=0)))
    assert list(cm.gene_names) == list(adata.var_names)
