import threading
from abc import ABC
from abc import abstractmethod
from typing import Literal

import numpy as np
import pandas as pd

from pysctransform.counts import CountMatrix
from pysctransform.fitting import GeneFit
from pysctransform.fitting import Method


class Inference(ABC):
    """Abstract class with the per-gene maps of a variance-stabilizing run.

    Each operation applies a per-gene worker to a set of genes and gathers the
    results in gene order. Implementations are free to run the workers
    concurrently and in any order, but must stop and raise
    :class:`~pysctransform.exceptions.RunCancelled` as soon as possible once
    ``cancel_event`` is set.
    """

    @abstractmethod
    def fit_genes(
        self,
        counts: CountMatrix,
        genes: np.ndarray,
        method: Method,
        cells: np.ndarray | None = None,
        fallback_method: Method | None = None,
        cancel_event: threading.Event | None = None,
        **config,
    ) -> list[GeneFit]:
        """Fit the model of each gene of ``genes``.

        Parameters
        ----------
        counts : CountMatrix
            Count matrix, with its latent covariate.

        genes : ndarray
            Positions of the genes to fit.

        method : str
            Fitting method, a key of :data:`pysctransform.fitting.FIT_METHODS`.

        cells : ndarray, optional
            Positions of the cells to fit on. If ``None``, all cells.
            (default: ``None``).

        fallback_method : str, optional
            Method to retry failed genes with. (default: ``None``).

        cancel_event : threading.Event, optional
            Cooperative cancellation flag. (default: ``None``).

        **config
            Method options.

        Returns
        -------
        list
            One :class:`~pysctransform.fitting.GeneFit` per gene of ``genes``, in
            the same order. Failed genes have ``NaN`` parameters and
            ``converged=False``.
        """

    @abstractmethod
    def compute_residuals(
        self,
        counts: CountMatrix,
        params: pd.DataFrame,
        residual_type: Literal["pearson", "deviance"] = "pearson",
        clip_range: tuple[float, float] | None = None,
        keep_residuals: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> tuple[np.ndarray | None, np.ndarray, np.ndarray, np.ndarray]:
        """Compute the residuals of every gene under its regularized model.

        Parameters
        ----------
        counts : CountMatrix
            Count matrix, with its latent covariate.

        params : pandas.DataFrame
            Regularized ``intercept``, ``slope`` and ``theta``, one row per gene
            of ``counts``, in the same order.

        residual_type : str
            Residual type, ``"pearson"`` or ``"deviance"``. (default: ``"pearson"``).

        clip_range : tuple, optional
            Clipping range of the residuals. (default: ``None``).

        keep_residuals : bool
            Whether to return the genes x cells residual matrix.
            (default: ``False``).

        cancel_event : threading.Event, optional
            Cooperative cancellation flag. (default: ``None``).

        Returns
        -------
        residuals : ndarray or None
            Genes x cells residuals if ``keep_residuals``, else ``None``.

        residual_mean : ndarray
            Mean residual of each gene.

        residual_variance : ndarray
            Residual variance of each gene.

        n_overflow : ndarray
            Number of cells with a ``NaN`` residual, for each gene.
        """
