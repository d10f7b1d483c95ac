"""
Exception and warning classes raised by degset.

All fatal errors derive from ``ValueError`` so callers that already catch
``ValueError`` around input validation keep working.
"""


class DegsetError(ValueError):
    """Base class for fatal degset errors."""


class DataFormatError(DegsetError):
    """Malformed or missing input, or sample IDs that do not line up."""


class DegenerateInputError(DegsetError):
    """Input for which a quantity is undefined.

    Examples are a sample with zero total count, a fit without residual
    degrees of freedom, or a matrix in which no feature varies.
    """


class RankDeficiencyError(DegsetError):
    """Design matrix columns are linearly dependent."""

    def __init__(self, message, columns=None):
        super().__init__(message)
        self.columns = list(columns) if columns is not None else []


class UnknownCoefficientError(DegsetError, KeyError):
    """Coefficient or contrast selector not found in the design."""

    def __str__(self):
        # KeyError.__str__ would repr() the message
        return str(self.args[0]) if self.args else ''


class EmptySetWarning(UserWarning):
    """A gene set matched no features; its results are reported as NA."""
