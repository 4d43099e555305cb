"""
Exceptions and warnings raised by diffusion_mle.
"""

import numpy as np


class DiffusionMLEError(Exception):
    """Base class for errors raised by this package."""


class DegenerateInputError(DiffusionMLEError, ValueError):
    """Input that cannot be fitted (too-short trajectory, zero total weight, ...)."""


class SingularInformationError(DiffusionMLEError, np.linalg.LinAlgError):
    """Observed Fisher information is singular or not positive definite.

    Raised when the fitted parameters are not identifiable from the data,
    instead of returning meaningless error bars.
    """


class ConvergenceWarning(UserWarning):
    """An EM run exhausted its cycle budget before reaching the tolerance."""
