import time
from collections.abc import Iterator
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
from typing import Any

import numpy as np
import pandas as pd

CHECKPOINTS = ["start", "model_fit_done", "regularize_done", "residuals_done", "done"]


class TimingRecord(Mapping):
    """Ordered, append-only record of wall-clock checkpoints of a run.

    Maps checkpoint names to ``time.time()`` stamps, in the order they were
    written. A checkpoint can only be written once.
    """

    def __init__(self) -> None:
        self._stamps: dict[str, float] = {}

    def checkpoint(self, name: str) -> float:
        """Write a checkpoint with the current time.

        Parameters
        ----------
        name : str
            Checkpoint name.

        Returns
        -------
        float
            The recorded time stamp.
        """
        if name in self._stamps:
            raise ValueError(f"Checkpoint '{name}' was already recorded.")
        self._stamps[name] = time.time()
        return self._stamps[name]

    def durations(self) -> pd.Series:
        """Return the duration of each phase, in seconds.

        Each phase is named after the checkpoint that closes it, and lasts from
        the previous checkpoint.

        Returns
        -------
        pandas.Series
            Durations, indexed by checkpoint name (the first checkpoint excluded).
        """
        names = list(self._stamps)
        stamps = np.array(list(self._stamps.values()))
        return pd.Series(np.diff(stamps), index=names[1:], dtype=float)

    @property
    def total(self) -> float:
        """Time elapsed between the first and the last checkpoint."""
        if len(self._stamps) < 2:
            return 0.0
        stamps = list(self._stamps.values())
        return stamps[-1] - stamps[0]

    def __getitem__(self, name: str) -> float:
        return self._stamps[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._stamps)

    def __len__(self) -> int:
        return len(self._stamps)

    def __repr__(self) -> str:
        return f"TimingRecord({self._stamps})"


@dataclass(frozen=True)
class MethodResult:
    """Result of one variance-stabilizing run.

    Parameters
    ----------
    method : str
        Fitting method of the run.

    gene_attr : pandas.DataFrame
        Per-gene attributes: ``mean``, ``detection_rate``, ``log_mean``,
        ``residual_mean``, ``residual_variance``, ``converged``,
        ``used_for_regularization`` and ``outlier``.

    raw_params : pandas.DataFrame
        Per-gene ``intercept``, ``slope``, ``theta`` and ``converged`` before
        regularization. Genes that were not fitted, or whose fit failed, have
        ``NaN`` parameters.

    regularized_params : pandas.DataFrame
        Per-gene ``intercept``, ``slope`` and ``theta`` after regularization.

    timing : TimingRecord
        Checkpoints of the run.

    residuals : pandas.DataFrame, optional
        Genes x cells residuals, if they were requested.

    n_failed : int
        Number of genes whose fit failed.

    failed_genes : pandas.Index
        Names of the genes whose fit failed.

    theta_shared : float, optional
        Theta shared by all genes, for ``"offset_shared_theta_estimate"``.

    params : dict
        Options of the run.
    """

    method: str
    gene_attr: pd.DataFrame
    raw_params: pd.DataFrame
    regularized_params: pd.DataFrame
    timing: TimingRecord
    residuals: pd.DataFrame | None = None
    n_failed: int = 0
    failed_genes: pd.Index = field(default_factory=lambda: pd.Index([]))
    theta_shared: float | None = None
    params: dict[str, Any] = field(default_factory=dict)

    def __repr__(self) -> str:
        return (
            f"MethodResult(method='{self.method}', genes={len(self.gene_attr)}, "
            f"n_failed={self.n_failed}, time={self.timing.total:.2f}s)"
        )
