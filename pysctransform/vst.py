import sys
import threading
import time
import warnings
from typing import Literal

import anndata as ad  # type: ignore
import numpy as np
import pandas as pd
from scipy import sparse  # type: ignore

from pysctransform.counts import CountMatrix
from pysctransform.default_inference import DefaultInference
from pysctransform.exceptions import InsufficientData
from pysctransform.exceptions import InvalidInput
from pysctransform.exceptions import RunCancelled
from pysctransform.fitting import FIT_METHODS
from pysctransform.fitting import Method
from pysctransform.inference import Inference
from pysctransform.regularization import PARAMETERS
from pysctransform.regularization import regularize
from pysctransform.regularization import sample_genes
from pysctransform.results import MethodResult
from pysctransform.results import TimingRecord
from pysctransform.theta import MAX_THETA
from pysctransform.theta import MIN_THETA
from pysctransform.theta import shared_theta
from pysctransform.utils import offset_coefficients

OFFSET_METHODS = ["offset", "offset_shared_theta_estimate"]


class VST:
    r"""Variance-stabilizing transformation of a single-cell count matrix.

    For each gene, a generalized linear model of the counts against the cell
    depth is fitted, its parameters are regularized by smoothing them against
    the gene mean across genes, and the residuals of the counts under the
    regularized model are computed. Expected counts are modelled as

    .. math:: \mu_{ij} = \exp(\beta_{0,i} + \beta_{1,i} d_j),

    with negative binomial variance :math:`\mu + \mu^2 / \theta_i`.

    The count matrix is validated once at construction and shared, read-only,
    by every :meth:`run`. Runs do not modify the object, so that several
    methods may be applied to the same data.

    Parameters
    ----------
    counts : CountMatrix, sparse matrix, ndarray, DataFrame or AnnData
        Raw counts. Arrays and DataFrames are genes x cells; AnnData objects are
        cells x genes, as usual.

    depth : ndarray, optional
        Per-cell latent covariate. If ``None``, ``log10`` of the total count of
        each cell. Ignored for ``CountMatrix`` and ``AnnData`` inputs.
        (default: ``None``).

    gene_names : list or pandas.Index, optional
        Gene names, for array inputs.

    cell_names : list or pandas.Index, optional
        Cell names, for array inputs.

    layer : str, optional
        AnnData layer holding the raw counts. If ``None``, ``adata.X``.
        (default: ``None``).

    depth_key : str, optional
        Column of ``adata.obs`` holding the latent covariate. (default: ``None``).

    n_cpus : int
        Number of cpus to use. If ``None`` and if ``inference`` is not provided, all
        available cpus will be used by the ``DefaultInference``. If both are
        specified (i.e., ``n_cpus`` and ``inference`` are not ``None``), it will try
        to override the ``n_cpus`` attribute of the ``inference`` object.
        (default: ``None``).

    inference : Inference
        Implementation of the per-gene maps. (default:
        :class:`DefaultInference <pysctransform.default_inference.DefaultInference>`).

    quiet : bool
        Suppress status updates. (default: ``False``).

    Attributes
    ----------
    counts : CountMatrix
        Validated, read-only count matrix.
    """

    def __init__(
        self,
        counts: CountMatrix | sparse.spmatrix | np.ndarray | pd.DataFrame | ad.AnnData,
        depth: np.ndarray | None = None,
        gene_names: list | pd.Index | None = None,
        cell_names: list | pd.Index | None = None,
        layer: str | None = None,
        depth_key: str | None = None,
        n_cpus: int | None = None,
        inference: Inference | None = None,
        quiet: bool = False,
    ) -> None:
        if isinstance(counts, CountMatrix):
            if depth is not None:
                warnings.warn(
                    "counts is a CountMatrix; ignoring depth.",
                    UserWarning,
                    stacklevel=2,
                )
            self.counts = counts
        elif isinstance(counts, ad.AnnData):
            if depth is not None:
                warnings.warn(
                    "counts is an AnnData object; ignoring depth. Use depth_key "
                    "instead.",
                    UserWarning,
                    stacklevel=2,
                )
            self.counts = CountMatrix.from_anndata(
                counts, layer=layer, depth_key=depth_key
            )
        else:
            self.counts = CountMatrix(
                counts, depth=depth, gene_names=gene_names, cell_names=cell_names
            )

        self.quiet = quiet

        if inference:
            if hasattr(inference, "n_cpus"):
                if n_cpus:
                    inference.n_cpus = n_cpus
            else:
                warnings.warn(
                    "The provided inference object does not have an n_cpus "
                    "attribute, cannot override `n_cpus`.",
                    UserWarning,
                    stacklevel=2,
                )
        # Initialize the inference object.
        self.inference = inference or DefaultInference(n_cpus=n_cpus)

    @property
    def depth(self) -> np.ndarray:
        """Per-cell latent covariate (read-only)."""
        return self.counts.depth

    def run(
        self,
        method: Method = "poisson",
        theta_estimation_fun: Literal["ml", "mm"] = "ml",
        theta_given: float = 100.0,
        n_genes_shared_theta: int = 250,
        n_cells_shared_theta: int = 5000,
        random_seed: int = 42,
        n_genes: int | None = None,
        n_cells: int | None = None,
        min_cells: int = 5,
        use_geometric_mean: bool = False,
        residual_type: Literal["pearson", "deviance"] = "pearson",
        res_clip_range: tuple[float, float] | Literal["auto"] | None = "auto",
        return_residuals: bool = False,
        smoother: Literal["ksmooth", "lowess"] = "ksmooth",
        bw_method: Literal["silverman", "scott"] | float = "silverman",
        bw_adjust: float = 3.0,
        theta_regularization: Literal["log_theta", "od_factor"] = "log_theta",
        exclude_outliers: bool = True,
        outlier_threshold: float = 10.0,
        fallback_method: Method | None = None,
        theta_limit: int = 10,
        nb_max_iter: int = 25,
        nb_tol: float = 1e-6,
        beta_tol: float = 1e-8,
        min_theta: float = MIN_THETA,
        max_theta: float = MAX_THETA,
        cancel_event: threading.Event | None = None,
    ) -> MethodResult:
        """Run the transformation with one fitting method.

        Parameters
        ----------
        method : str
            Per-gene fitting method: ``"poisson"``, ``"qpoisson"``, ``"nb_fast"``,
            ``"nb"``, ``"glmGamPoi"``, ``"offset"`` or
            ``"offset_shared_theta_estimate"``. (default: ``"poisson"``).

        theta_estimation_fun : str
            Theta estimator of the ``"poisson"`` and ``"nb_fast"`` methods:
            ``"ml"`` or ``"mm"``. (default: ``"ml"``).

        theta_given : float
            Theta of the ``"offset"`` method. (default: ``100``).

        n_genes_shared_theta : int
            Number of top expressed genes used to estimate the shared theta of
            ``"offset_shared_theta_estimate"``. (default: ``250``).

        n_cells_shared_theta : int
            Number of cells used to estimate the shared theta. (default: ``5000``).

        random_seed : int
            Seed of every random subsampling of the run. (default: ``42``).

        n_genes : int, optional
            If given, fit only this many genes, drawn uniformly along the log
            mean axis, then predict the regularized parameters of every gene.
            (default: ``None``).

        n_cells : int, optional
            If given, fit the gene models on this many randomly drawn cells.
            Residuals are always computed for every cell. (default: ``None``).

        min_cells : int
            Genes detected in fewer cells are not fitted. (default: ``5``).

        use_geometric_mean : bool
            Whether to regularize against the geometric rather than the
            arithmetic gene mean. (default: ``False``).

        residual_type : str
            Residual type, ``"pearson"`` or ``"deviance"``. (default: ``"pearson"``).

        res_clip_range : tuple or str, optional
            Clipping range of the residuals. ``"auto"`` clips to
            ``[-sqrt(n_cells), sqrt(n_cells)]``, ``None`` disables clipping.
            (default: ``"auto"``).

        return_residuals : bool
            Whether to keep the genes x cells residual matrix. (default: ``False``).

        smoother : str
            Smoother, ``"ksmooth"`` or ``"lowess"``. (default: ``"ksmooth"``).

        bw_method : str or float
            Bandwidth rule of the smoother. (default: ``"silverman"``).

        bw_adjust : float
            Multiplier of the bandwidth. (default: ``3``).

        theta_regularization : str
            Dispersion scale of the smoothing, ``"log_theta"`` or ``"od_factor"``.
            (default: ``"log_theta"``).

        exclude_outliers : bool
            Whether to exclude genes with outlying parameters from the
            regularization. (default: ``True``).

        outlier_threshold : float
            Robust z-score threshold of outlier detection. (default: ``10``).

        fallback_method : str, optional
            Method used to refit genes whose fit failed. (default: ``None``).

        theta_limit : int
            Iteration limit of maximum likelihood theta estimation.
            (default: ``10``).

        nb_max_iter : int
            Maximum number of alternations of the ``"nb"`` method.
            (default: ``25``).

        nb_tol : float
            Convergence tolerance of the ``"nb"`` method. (default: ``1e-6``).

        beta_tol : float
            Stopping criterion for IRLS. (default: ``1e-8``).

        min_theta : float
            Lower bound on theta. (default: ``1e-7``).

        max_theta : float
            Upper bound on theta. (default: ``1e5``).

        cancel_event : threading.Event, optional
            When set from another thread, the run stops and raises
            :class:`~pysctransform.exceptions.RunCancelled`. (default: ``None``).

        Returns
        -------
        MethodResult
            Parameters, per-gene attributes, timing and optional residuals.

        Raises
        ------
        InvalidInput
            If an option is invalid.

        InsufficientData
            If too few genes can be fitted or used for regularization.

        RunCancelled
            If ``cancel_event`` was set.
        """
        params = dict(locals())
        del params["self"], params["cancel_event"]

        if method not in FIT_METHODS:
            raise InvalidInput(
                f"Unknown method '{method}'. Expected one of {list(FIT_METHODS)}."
            )
        if fallback_method is not None and fallback_method not in FIT_METHODS:
            raise InvalidInput(
                f"Unknown fallback method '{fallback_method}'. Expected one of "
                f"{list(FIT_METHODS)}."
            )
        if theta_estimation_fun not in ["ml", "mm"]:
            raise InvalidInput(
                f"Unknown theta_estimation_fun '{theta_estimation_fun}'. "
                "Expected 'ml' or 'mm'."
            )
        if residual_type not in ["pearson", "deviance"]:
            raise InvalidInput(
                f"Unknown residual type '{residual_type}'. "
                "Expected 'pearson' or 'deviance'."
            )
        if not theta_given > 0:
            raise InvalidInput(f"theta_given must be positive, got {theta_given}.")
        if n_genes is not None and n_genes < 1:
            raise InvalidInput(f"n_genes must be positive, got {n_genes}.")
        if n_cells is not None and n_cells < 3:
            raise InvalidInput(f"n_cells must be at least 3, got {n_cells}.")

        counts = self.counts
        clip_range = self._clip_range(res_clip_range)

        timing = TimingRecord()
        timing.checkpoint("start")
        rng = np.random.default_rng(random_seed)

        with np.errstate(divide="ignore"):
            log_mean = np.log10(
                counts.gene_gmean if use_geometric_mean else counts.gene_mean
            )

        cells = None
        if n_cells is not None and n_cells < counts.n_cells:
            cells = np.sort(rng.choice(counts.n_cells, size=n_cells, replace=False))

        genes = np.flatnonzero(counts.n_detected >= min_cells)
        if len(genes) == 0:
            raise InsufficientData(
                f"No gene is detected in at least {min_cells} cells; lower min_cells."
            )
        if n_genes is not None and n_genes < len(genes):
            candidates = genes[np.isfinite(log_mean[genes])]
            if n_genes < len(candidates):
                genes = candidates[sample_genes(log_mean[candidates], n_genes, rng)]

        theta_shared = None
        if method == "offset_shared_theta_estimate":
            if not self.quiet:
                print("Estimating shared theta...", file=sys.stderr)
            theta_shared = shared_theta(
                counts,
                n_genes=n_genes_shared_theta,
                n_cells=n_cells_shared_theta,
                seed=random_seed,
                limit=theta_limit,
                max_theta=max_theta,
            )
            theta_given = theta_shared
            if not self.quiet:
                print(f"Shared theta: {theta_shared:.4g}", file=sys.stderr)

        # Fit gene models
        if not self.quiet:
            print(
                f"Fitting {len(genes)} gene models with method '{method}'...",
                file=sys.stderr,
            )
        start = time.time()
        fits = self.inference.fit_genes(
            counts,
            genes,
            method,
            cells=cells,
            fallback_method=fallback_method,
            cancel_event=cancel_event,
            theta_estimation_fun=theta_estimation_fun,
            theta_given=theta_given,
            theta_limit=theta_limit,
            nb_max_iter=nb_max_iter,
            nb_tol=nb_tol,
            beta_tol=beta_tol,
            min_theta=min_theta,
            max_theta=max_theta,
        )
        end = timing.checkpoint("model_fit_done")
        if not self.quiet:
            print(f"... done in {end - start:.2f} seconds.\n", file=sys.stderr)

        raw = np.full((counts.n_genes, len(PARAMETERS)), np.nan)
        converged = np.zeros(counts.n_genes, dtype=bool)
        theta_fallback = np.zeros(counts.n_genes, dtype=bool)
        for i, fit in zip(genes, fits):
            raw[i] = fit.intercept, fit.slope, fit.theta
            converged[i] = fit.converged
            theta_fallback[i] = fit.theta_fallback
        raw_params = pd.DataFrame(raw, index=counts.gene_names, columns=PARAMETERS)
        raw_params["converged"] = converged

        fitted = np.zeros(counts.n_genes, dtype=bool)
        fitted[genes] = True
        failed = fitted & ~converged
        if failed.any():
            warnings.warn(
                f"The model fit of {failed.sum()} out of {len(genes)} genes failed; "
                "their raw parameters are set to NaN.",
                UserWarning,
                stacklevel=2,
            )
        if theta_fallback.any():
            warnings.warn(
                f"The theta estimate of {theta_fallback.sum()} genes was out of "
                f"[{min_theta:g}, {max_theta:g}] or did not converge, and was clamped.",
                UserWarning,
                stacklevel=2,
            )

        # Regularize parameters
        self._check_cancelled(cancel_event)
        outlier = np.zeros(counts.n_genes, dtype=bool)
        used = np.zeros(counts.n_genes, dtype=bool)
        if method in OFFSET_METHODS:
            regularized_params = self._offset_params(theta_given)
        else:
            if not self.quiet:
                print("Regularizing model parameters...", file=sys.stderr)
            start = time.time()
            regularized_params, training = regularize(
                raw_params.iloc[genes],
                log_mean[genes],
                smoother=smoother,
                bw_method=bw_method,
                bw_adjust=bw_adjust,
                theta_regularization=theta_regularization,
                exclude_outliers=exclude_outliers,
                outlier_threshold=outlier_threshold,
                min_theta=min_theta,
                max_theta=max_theta,
                eval_log_mean=log_mean,
            )
            regularized_params.index = counts.gene_names
            outlier[genes] = training["outlier"].to_numpy()
            used[genes] = training["used"].to_numpy()
        end = timing.checkpoint("regularize_done")
        if not self.quiet and method not in OFFSET_METHODS:
            print(f"... done in {end - start:.2f} seconds.\n", file=sys.stderr)

        # Compute residuals
        self._check_cancelled(cancel_event)
        if not self.quiet:
            print(f"Computing {residual_type} residuals...", file=sys.stderr)
        start = time.time()
        residuals, residual_mean, residual_variance, n_overflow = (
            self.inference.compute_residuals(
                counts,
                regularized_params,
                residual_type=residual_type,
                clip_range=clip_range,
                keep_residuals=return_residuals,
                cancel_event=cancel_event,
            )
        )
        end = timing.checkpoint("residuals_done")
        if not self.quiet:
            print(f"... done in {end - start:.2f} seconds.\n", file=sys.stderr)

        if n_overflow.sum() > 0:
            warnings.warn(
                f"{n_overflow.sum()} residuals of {(n_overflow > 0).sum()} genes could "
                "not be computed because of a numeric overflow and were set to NaN.",
                UserWarning,
                stacklevel=2,
            )

        gene_attr = pd.DataFrame(
            {
                "mean": counts.gene_mean,
                "detection_rate": counts.detection_rate,
                "log_mean": log_mean,
                "residual_mean": residual_mean,
                "residual_variance": residual_variance,
                "converged": converged,
                "used_for_regularization": used,
                "outlier": outlier,
            },
            index=counts.gene_names,
        )

        residuals_df = None
        if residuals is not None:
            residuals.setflags(write=False)
            residuals_df = pd.DataFrame(
                residuals, index=counts.gene_names, columns=counts.cell_names
            )

        timing.checkpoint("done")
        return MethodResult(
            method=method,
            gene_attr=gene_attr,
            raw_params=raw_params,
            regularized_params=regularized_params,
            timing=timing,
            residuals=residuals_df,
            n_failed=int(failed.sum()),
            failed_genes=counts.gene_names[failed],
            theta_shared=theta_shared,
            params=params,
        )

    def _clip_range(
        self, res_clip_range: tuple[float, float] | Literal["auto"] | None
    ) -> tuple[float, float] | None:
        if res_clip_range is None:
            return None
        if isinstance(res_clip_range, str):
            if res_clip_range != "auto":
                raise InvalidInput(
                    f"res_clip_range should be 'auto', None or a pair of floats, got "
                    f"'{res_clip_range}'."
                )
            bound = np.sqrt(self.counts.n_cells)
            return -bound, bound
        low, high = res_clip_range
        if not low < high:
            raise InvalidInput(
                f"Invalid res_clip_range {res_clip_range}: lower bound must be "
                "smaller than upper bound."
            )
        return float(low), float(high)

    def _offset_params(self, theta: float) -> pd.DataFrame:
        """Offset model parameters of every gene, on all cells.

        Genes without counts get ``NaN`` parameters.
        """
        expressed = self.counts.gene_mean > 0
        intercept, slope = offset_coefficients(
            self.counts.gene_mean, self.counts.mean_cell_depth
        )
        return pd.DataFrame(
            {
                "intercept": np.where(expressed, intercept, np.nan),
                "slope": np.where(expressed, slope, np.nan),
                "theta": np.where(expressed, theta, np.nan),
            },
            index=self.counts.gene_names,
        )

    @staticmethod
    def _check_cancelled(cancel_event: threading.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelled("Run cancelled.")


def vst(
    counts: CountMatrix | sparse.spmatrix | np.ndarray | pd.DataFrame | ad.AnnData,
    method: Method = "poisson",
    depth: np.ndarray | None = None,
    n_cpus: int | None = None,
    inference: Inference | None = None,
    quiet: bool = False,
    **options,
) -> MethodResult:
    """Run the variance-stabilizing transformation of a count matrix.

    Shortcut for ``VST(counts, ...).run(method, **options)``.

    Parameters
    ----------
    counts : CountMatrix, sparse matrix, ndarray, DataFrame or AnnData
        Raw counts, genes x cells (cells x genes for AnnData).

    method : str
        Per-gene fitting method. (default: ``"poisson"``).

    depth : ndarray, optional
        Per-cell latent covariate. (default: ``None``).

    n_cpus : int, optional
        Number of cpus to use. (default: ``None``).

    inference : Inference, optional
        Implementation of the per-gene maps. (default: ``None``).

    quiet : bool
        Suppress status updates. (default: ``False``).

    **options
        Options of :meth:`VST.run`.

    Returns
    -------
    MethodResult
        Outputs of the run.
    """
    return VST(
        counts, depth=depth, n_cpus=n_cpus, inference=inference, quiet=quiet
    ).run(method, **options)


def compare_methods(
    counts: CountMatrix | sparse.spmatrix | np.ndarray | pd.DataFrame | ad.AnnData,
    methods: list[Method] | None = None,
    depth: np.ndarray | None = None,
    n_cpus: int | None = None,
    inference: Inference | None = None,
    quiet: bool = False,
    **options,
) -> dict[str, MethodResult]:
    """Run several fitting methods on the same count matrix.

    The count matrix is validated once and shared by all runs.

    Parameters
    ----------
    counts : CountMatrix, sparse matrix, ndarray, DataFrame or AnnData
        Raw counts, genes x cells (cells x genes for AnnData).

    methods : list, optional
        Fitting methods to run, in order. If ``None``, all methods.
        (default: ``None``).

    depth : ndarray, optional
        Per-cell latent covariate. (default: ``None``).

    n_cpus : int, optional
        Number of cpus to use. (default: ``None``).

    inference : Inference, optional
        Implementation of the per-gene maps. (default: ``None``).

    quiet : bool
        Suppress status updates. (default: ``False``).

    **options
        Options of :meth:`VST.run`, applied to every method.

    Returns
    -------
    dict
        Results, keyed by method.
    """
    if methods is None:
        methods = list(FIT_METHODS)  # type: ignore
    runner = VST(counts, depth=depth, n_cpus=n_cpus, inference=inference, quiet=quiet)
    return {method: runner.run(method, **options) for method in methods}


def timing_table(results: dict[str, MethodResult]) -> pd.DataFrame:
    """Tabulate the phase durations of several runs.

    Parameters
    ----------
    results : dict
        Results, keyed by method, e.g. from :func:`compare_methods`.

    Returns
    -------
    pandas.DataFrame
        One row per run. One column per phase, named after the checkpoint that
        closes it, with durations in seconds, and a ``total`` column.
    """
    table = pd.DataFrame(
        {method: res.timing.durations() for method, res in results.items()}
    ).T
    table["total"] = [res.timing.total for res in results.values()]
    table.index.name = "method"
    return table


def gene_attr_table(results: dict[str, MethodResult]) -> pd.DataFrame:
    """Stack the per-gene attributes of several runs.

    Parameters
    ----------
    results : dict
        Results, keyed by method, e.g. from :func:`compare_methods`.

    Returns
    -------
    pandas.DataFrame
        Per-gene attributes, indexed by ``(method, gene)``.
    """
    return pd.concat(
        {method: res.gene_attr for method, res in results.items()},
        names=["method", "gene"],
    )
