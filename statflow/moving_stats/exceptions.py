"""Exceptions and warnings raised by the moving statistics estimator."""


class MovingStatsConfigError(ValueError):
    """Raised when the requested options cannot be combined or are malformed."""


class InsufficientWindowError(ValueError):
    """Raised when a stratum has too few window points to run the smoother."""


class InsufficientDataWarning(UserWarning):
    """Issued when a stratum has fewer than the minimum number of observations and is skipped."""
