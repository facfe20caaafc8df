"""
Error taxonomy for GWAS runs

Structural problems (alignment, degenerate input, a failed null model) abort
the run. UntestableMarker is per-marker: the scan loops catch it and record
the reason as the marker's status.
"""


class GWASError(Exception):
    """Base class for gwaskin errors"""


class AlignmentError(GWASError, ValueError):
    """Sample or marker identifiers cannot be reconciled between inputs"""


class DegenerateInputError(GWASError, ValueError):
    """Too few samples or markers remain to estimate kinship or variance"""


class NumericalInstabilityError(GWASError, ArithmeticError):
    """Variance-component optimisation failed for the null model"""


class UntestableMarker(GWASError):
    """A single marker cannot be tested

    Attributes:
        reason: Status string recorded in the association results
            ('monomorphic', 'too_few_observations', 'collinear',
            'singular_covariance')
    """

    def __init__(self, reason: str, message: str = ""):
        self.reason = reason
        super().__init__(message or reason)
