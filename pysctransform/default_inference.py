import threading
from collections.abc import Iterable
from typing import Literal

import numpy as np
import pandas as pd
from joblib import Parallel  # type: ignore
from joblib import delayed
from joblib import parallel_backend

from pysctransform import inference
from pysctransform import utils
from pysctransform.counts import CountMatrix
from pysctransform.exceptions import RunCancelled
from pysctransform.fitting import GeneFit
from pysctransform.fitting import Method
from pysctransform.fitting import fit_gene_record
from pysctransform.residuals import gene_residual_record


class DefaultInference(inference.Inference):
    """Default per-gene maps, using joblib for parallelization.

    This object contains the interface to the default per-gene routines and uses
    joblib internally for parallelization. Inherit this class or its parent to write
    custom inference routines.

    Parameters
    ----------
    joblib_verbosity : int
        The verbosity level for joblib tasks. The higher the value, the more updates
        are reported. (default: ``0``).
    batch_size : int
        Number of tasks to allocate to each joblib parallel worker. (default: ``128``).
    n_cpus : int
        Number of cpus to use. If None, all available cpus will be used.
        (default: ``None``).
    backend : str
        Joblib backend.
    """

    def __init__(
        self,
        joblib_verbosity: int = 0,
        batch_size: int = 128,
        n_cpus: int | None = None,
        backend: str = "loky",
    ):
        self._joblib_verbosity = joblib_verbosity
        self._batch_size = batch_size
        self._n_cpus = utils.get_num_processes(n_cpus)
        self._backend = backend

    @property
    def n_cpus(self) -> int:  # noqa: D102
        return self._n_cpus

    @n_cpus.setter
    def n_cpus(self, n_cpus: int) -> None:
        self._n_cpus = utils.get_num_processes(n_cpus)

    def _map(
        self, tasks: Iterable, cancel_event: threading.Event | None = None
    ) -> list:
        """Run joblib tasks and collect their results as they complete.

        Parameters
        ----------
        tasks : iterable
            Calls wrapped with ``joblib.delayed``.

        cancel_event : threading.Event, optional
            Checked before each result is consumed. (default: ``None``).

        Returns
        -------
        list
            Task results, in completion order.
        """
        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelled("Run cancelled before the per-gene tasks started.")

        records = []
        with parallel_backend(self._backend, inner_max_num_threads=1):
            results = Parallel(
                n_jobs=self.n_cpus,
                verbose=self._joblib_verbosity,
                batch_size=self._batch_size,
                return_as="generator_unordered" if self.n_cpus > 1 else "generator",
            )(tasks)
            try:
                for record in results:
                    if cancel_event is not None and cancel_event.is_set():
                        raise RunCancelled(
                            f"Run cancelled after {len(records)} per-gene tasks."
                        )
                    records.append(record)
            finally:
                # Closing the generator aborts the outstanding tasks.
                results.close()
        return records

    def fit_genes(  # noqa: D102
        self,
        counts: CountMatrix,
        genes: np.ndarray,
        method: Method,
        cells: np.ndarray | None = None,
        fallback_method: Method | None = None,
        cancel_event: threading.Event | None = None,
        **config,
    ) -> list[GeneFit]:
        depth = counts.depth if cells is None else counts.depth[cells]
        records = self._map(
            (
                delayed(fit_gene_record)(
                    index=k,
                    y=(
                        counts.gene_counts(i)
                        if cells is None
                        else counts.gene_counts(i)[cells]
                    ),
                    depth=depth,
                    method=method,
                    fallback_method=fallback_method,
                    **config,
                )
                for k, i in enumerate(genes)
            ),
            cancel_event,
        )
        fits: list[GeneFit] = [None] * len(genes)  # type: ignore
        for k, fit in records:
            fits[k] = fit
        return fits

    def compute_residuals(  # noqa: D102
        self,
        counts: CountMatrix,
        params: pd.DataFrame,
        residual_type: Literal["pearson", "deviance"] = "pearson",
        clip_range: tuple[float, float] | None = None,
        keep_residuals: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> tuple[np.ndarray | None, np.ndarray, np.ndarray, np.ndarray]:
        intercept = params["intercept"].to_numpy(dtype=float)
        slope = params["slope"].to_numpy(dtype=float)
        theta = params["theta"].to_numpy(dtype=float)
        records = self._map(
            (
                delayed(gene_residual_record)(
                    index=i,
                    y=counts.gene_counts(i),
                    depth=counts.depth,
                    intercept=intercept[i],
                    slope=slope[i],
                    theta=theta[i],
                    residual_type=residual_type,
                    clip_range=clip_range,
                    keep_residuals=keep_residuals,
                )
                for i in range(counts.n_genes)
            ),
            cancel_event,
        )

        residuals = (
            np.empty((counts.n_genes, counts.n_cells)) if keep_residuals else None
        )
        residual_mean = np.empty(counts.n_genes)
        residual_variance = np.empty(counts.n_genes)
        n_overflow = np.empty(counts.n_genes, dtype=int)
        for i, res, mean, var, n in records:
            if residuals is not None:
                residuals[i] = res
            residual_mean[i] = mean
            residual_variance[i] = var
            n_overflow[i] = n
        return residuals, residual_mean, residual_variance, n_overflow
