class VSTError(Exception):
    """Base class for errors raised by pysctransform."""


class InvalidInput(VSTError, ValueError):
    """Invalid counts, latent covariate or option value.

    Raised before any fitting starts. Fatal to the whole run.
    """


class InsufficientData(VSTError, ValueError):
    """Too few usable genes to estimate a population-level quantity.

    Raised when the cross-gene smoothing or the shared theta estimation have
    fewer valid genes than they need. Fatal to the whole run.
    """


class FitNonConvergence(VSTError, RuntimeError):
    """A per-gene solver did not converge.

    Parameters
    ----------
    gene : int or str, optional
        Index or name of the gene whose fit failed. (default: ``None``).

    message : str
        Description of the failure. (default: ``"model fit did not converge"``).
    """

    def __init__(self, gene=None, message: str = "model fit did not converge"):
        self.gene = gene
        if gene is not None:
            message = f"{message} (gene {gene})"
        super().__init__(message)


class ThetaNonConvergence(FitNonConvergence):
    """The maximum likelihood iteration for theta failed.

    Parameters
    ----------
    gene : int or str, optional
        Index or name of the gene. (default: ``None``).

    message : str
        Description of the failure.
        (default: ``"theta iteration did not converge"``).
    """

    def __init__(self, gene=None, message: str = "theta iteration did not converge"):
        super().__init__(gene=gene, message=message)


class NumericOverflow(VSTError, ArithmeticError):
    """A fitted mean or a residual denominator became non-finite."""


class RunCancelled(VSTError, RuntimeError):
    """The run was aborted through its cancellation event."""
