import anndata as ad  # type: ignore
import numpy as np
import pandas as pd
from scipy import sparse  # type: ignore

from pysctransform.exceptions import InvalidInput
from pysctransform.utils import test_valid_counts


class CountMatrix:
    """Read-only store of a genes x cells UMI count matrix.

    Counts are kept as an immutable ``scipy.sparse.csr_matrix`` with one row per
    gene, so that a gene's counts are a cheap row slice. Per-gene and per-cell
    summary statistics are computed once at construction.

    Parameters
    ----------
    counts : scipy.sparse matrix, ndarray or pandas.DataFrame
        Raw counts. One row per gene, one column per cell. If a DataFrame is
        given, its index and columns are used as gene and cell names.

    depth : ndarray, optional
        Per-cell latent covariate. If ``None``, ``log10`` of the total UMI count of
        each cell is used. (default: ``None``).

    gene_names : list or pandas.Index, optional
        Gene names. Defaults to the DataFrame index, or to integer positions.

    cell_names : list or pandas.Index, optional
        Cell names. Defaults to the DataFrame columns, or to integer positions.

    Attributes
    ----------
    X : scipy.sparse.csr_matrix
        Read-only integer counts, genes x cells.

    cell_umi : ndarray
        Total count of each cell.

    depth : ndarray
        Per-cell latent covariate used as the regressor of every gene model.

    gene_mean : ndarray
        Arithmetic mean count of each gene.

    gene_gmean : ndarray
        Geometric mean of each gene, computed as ``exp(mean(log(x + 1))) - 1``.

    detection_rate : ndarray
        Fraction of cells in which each gene has a non-zero count.

    n_detected : ndarray
        Number of cells in which each gene has a non-zero count.
    """

    def __init__(
        self,
        counts: sparse.spmatrix | np.ndarray | pd.DataFrame,
        depth: np.ndarray | None = None,
        gene_names: list | pd.Index | None = None,
        cell_names: list | pd.Index | None = None,
    ) -> None:
        test_valid_counts(counts)

        if isinstance(counts, pd.DataFrame):
            gene_names = counts.index if gene_names is None else gene_names
            cell_names = counts.columns if cell_names is None else cell_names
            counts = counts.to_numpy(dtype=float)

        X = sparse.csr_matrix(counts, dtype=np.int64, copy=True)
        X.sum_duplicates()
        X.eliminate_zeros()
        if X.ndim != 2 or 0 in X.shape:
            raise InvalidInput(f"Expected a non-empty 2D count matrix, got {X.shape}.")
        for buffer in (X.data, X.indices, X.indptr):
            buffer.setflags(write=False)
        self.X = X

        n_genes, n_cells = X.shape
        self.gene_names = pd.Index(
            range(n_genes) if gene_names is None else gene_names
        )
        self.cell_names = pd.Index(
            range(n_cells) if cell_names is None else cell_names
        )
        if len(self.gene_names) != n_genes or len(self.cell_names) != n_cells:
            raise InvalidInput(
                "Gene and cell names must match the dimensions of the count matrix."
            )

        self.cell_umi = np.asarray(X.sum(axis=0)).ravel().astype(float)
        self.gene_mean = np.asarray(X.sum(axis=1)).ravel() / n_cells
        self.n_detected = np.diff(X.indptr)
        self.detection_rate = self.n_detected / n_cells
        log_X = sparse.csr_matrix(
            (np.log1p(X.data.astype(float)), X.indices, X.indptr), shape=X.shape
        )
        self.gene_gmean = np.expm1(np.asarray(log_X.sum(axis=1)).ravel() / n_cells)

        if depth is None:
            if (self.cell_umi == 0).any():
                raise InvalidInput(
                    f"{(self.cell_umi == 0).sum()} cells have a total count of zero; "
                    "cannot derive log depths. Filter them out or provide depth."
                )
            depth = np.log10(self.cell_umi)
        else:
            depth = np.asarray(depth, dtype=float).ravel()
            if len(depth) != n_cells:
                raise InvalidInput(
                    f"depth has {len(depth)} entries, expected one per cell "
                    f"({n_cells})."
                )
            if not np.isfinite(depth).all():
                raise InvalidInput("depth should only contain finite values.")
            depth = depth.copy()
        depth.setflags(write=False)
        self.depth = depth

        for attr in (
            self.cell_umi,
            self.gene_mean,
            self.n_detected,
            self.detection_rate,
            self.gene_gmean,
        ):
            attr.setflags(write=False)

    @classmethod
    def from_anndata(
        cls,
        adata: ad.AnnData,
        layer: str | None = None,
        depth_key: str | None = None,
    ) -> "CountMatrix":
        """Build a count matrix from an in-memory AnnData object.

        Parameters
        ----------
        adata : anndata.AnnData
            Cells x genes AnnData object holding raw counts.

        layer : str, optional
            Layer holding the raw counts. If ``None``, ``adata.X`` is used.
            (default: ``None``).

        depth_key : str, optional
            Column of ``adata.obs`` to use as the latent covariate. If ``None``,
            ``log10`` of the total UMI count is used. (default: ``None``).

        Returns
        -------
        CountMatrix
            Genes x cells count matrix.
        """
        X = adata.X if layer is None else adata.layers[layer]
        counts = sparse.csr_matrix(X).T
        depth = None if depth_key is None else adata.obs[depth_key].to_numpy()
        return cls(
            counts,
            depth=depth,
            gene_names=adata.var_names,
            cell_names=adata.obs_names,
        )

    @property
    def n_genes(self) -> int:  # noqa: D102
        return self.X.shape[0]

    @property
    def n_cells(self) -> int:  # noqa: D102
        return self.X.shape[1]

    @property
    def shape(self) -> tuple[int, int]:  # noqa: D102
        return self.X.shape

    @property
    def mean_cell_depth(self) -> float:
        """Average depth of a cell on the linear scale, i.e. mean of ``10**depth``."""
        return float(np.mean(10**self.depth))

    def gene_counts(self, i: int) -> np.ndarray:
        """Return the dense counts of the ``i``-th gene across all cells.

        Parameters
        ----------
        i : int
            Gene position.

        Returns
        -------
        ndarray
            Integer counts, one per cell.
        """
        row = np.zeros(self.n_cells, dtype=np.int64)
        start, end = self.X.indptr[i], self.X.indptr[i + 1]
        row[self.X.indices[start:end]] = self.X.data[start:end]
        return row

    def gene_summary(self) -> pd.DataFrame:
        """Return per-gene summary statistics.

        Returns
        -------
        pandas.DataFrame
            Indexed by gene names, with columns ``mean``, ``gmean``,
            ``detection_rate`` and ``n_detected``.
        """
        return pd.DataFrame(
            {
                "mean": self.gene_mean,
                "gmean": self.gene_gmean,
                "detection_rate": self.detection_rate,
                "n_detected": self.n_detected,
            },
            index=self.gene_names,
        )

    def __repr__(self) -> str:
        return (
            f"CountMatrix with {self.n_genes} genes x {self.n_cells} cells, "
            f"{self.X.nnz} non-zero entries"
        )
