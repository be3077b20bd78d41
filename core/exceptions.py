"""
Vigil Exceptions

Error taxonomy shared by the risk pipeline and its host surface.
"""


class VigilError(Exception):
    """Base class for all engine errors."""
    pass


class InvalidInputError(VigilError):
    """Raised when a feature vector has the wrong dimensionality or modality."""
    pass


class NotReadyError(VigilError):
    """Raised by accessors that require an established baseline or trained model."""
    pass


class NumericalInstabilityError(VigilError):
    """Raised when a covariance matrix is not positive-definite after regularization."""
    pass


class SnapshotError(VigilError):
    """Raised when a baseline snapshot is malformed or contains non-finite values."""
    pass
