"""
Likelihood Module

Gaussian log-likelihood of displacement sequences under the blur-corrected
covariance model. Each spatial dimension is an independent realization of the
same tridiagonal covariance, so the d-dimensional log-likelihood is the sum of
the per-dimension values.

Both evaluators run in time linear in the trajectory length:

- :func:`log_likelihood` factorizes one banded covariance with LAPACK
- :func:`batch_log_likelihood` runs the bidiagonal Cholesky recursion for a
  whole :class:`~diffusion_mle.trajectory.DisplacementBatch` at once, one
  vectorized step per frame

A covariance that is not positive definite gives a log-likelihood of -inf
rather than an exception, so optimizers can reject the candidate and go on.
"""

import numpy as np
from scipy import linalg
from typing import Tuple

from .covariance import covariance_terms
from .trajectory import DisplacementBatch, TrajectoryLike, as_positions

LOG_2PI = np.log(2.0 * np.pi)


def log_likelihood(trajectory: TrajectoryLike,
                   blur: float,
                   a2: float,
                   sigma2: float) -> float:
    """
    Log-likelihood of one trajectory.

    Parameters
    ----------
    trajectory : Trajectory or array_like
        Positions, shape (N,) or (N, d), N >= 2
    blur : float
        Motion blur coefficient in [0, 1/4]
    a2 : float
        Localization variance
    sigma2 : float
        Diffusive variance per frame

    Returns
    -------
    ll : float
        Log-likelihood, -inf if the covariance is not positive definite
    """
    positions = as_positions(trajectory)
    if len(positions) < 2:
        raise ValueError("A trajectory needs at least 2 positions")
    if not (np.isfinite(a2) and np.isfinite(sigma2)):
        return -np.inf

    dx = np.diff(positions, axis=0)
    n, ndim = dx.shape

    diagonal, off_diagonal = covariance_terms(a2, sigma2, blur)
    ab = np.empty((2, n))
    ab[0, 0] = 0.0
    ab[0, 1:] = off_diagonal
    ab[1, :] = diagonal

    try:
        cb = linalg.cholesky_banded(ab, lower=False)
    except linalg.LinAlgError:
        return -np.inf

    solved = linalg.cho_solve_banded((cb, False), dx)
    quad = np.sum(dx * solved)
    logdet = 2.0 * np.sum(np.log(cb[1]))

    return -0.5 * (ndim * n * LOG_2PI + ndim * logdet + quad)


def _bidiagonal_recursion(batch: DisplacementBatch,
                          a2,
                          sigma2) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Log-determinant and quadratic form for every trajectory of a batch.

    The Cholesky factor of a symmetric tridiagonal matrix is lower bidiagonal
    with diagonal l_i and subdiagonal off / l_(i-1), where
    l_i^2 = diag - off^2 / l_(i-1)^2. Forward substitution runs alongside.

    Returns
    -------
    logdet : ndarray
        Log-determinant of one component's covariance, shape (M,)
    quad : ndarray
        Quadratic form summed over dimensions, shape (M,)
    valid : ndarray
        False where the covariance is not positive definite, shape (M,)
    """
    diagonal, off_diagonal = covariance_terms(a2, sigma2, batch.blur)
    diagonal = np.broadcast_to(diagonal, batch.blur.shape)
    off_diagonal = np.broadcast_to(off_diagonal, batch.blur.shape)

    n_traj, n_max, _ = batch.displacements.shape
    logdet = np.zeros(n_traj)
    quad = np.zeros(n_traj)
    valid = np.ones(n_traj, dtype=bool)

    pivot = None
    z = None
    with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
        for i in range(n_max):
            active = batch.mask[:, i]
            x = batch.displacements[:, i, :]
            if pivot is None:
                pivot = diagonal.copy()
                root = np.sqrt(np.maximum(pivot, np.finfo(float).tiny))
                z = x / root[:, None]
            else:
                coupling = off_diagonal / root
                pivot = diagonal - coupling**2
                root = np.sqrt(np.maximum(pivot, np.finfo(float).tiny))
                z = (x - coupling[:, None] * z) / root[:, None]

            valid &= (pivot > 0) | ~active
            logdet += np.where(active, np.log(np.abs(pivot)), 0.0)
            quad += np.where(active, np.sum(z**2, axis=1), 0.0)

    valid &= np.isfinite(logdet) & np.isfinite(quad)
    return logdet, quad, valid


def batch_log_likelihood(batch: DisplacementBatch, a2: float, sigma2: float) -> np.ndarray:
    """
    Per-trajectory log-likelihoods for a whole batch.

    Parameters
    ----------
    batch : DisplacementBatch
        Padded displacements and blur coefficients
    a2 : float
        Localization variance
    sigma2 : float
        Diffusive variance per frame

    Returns
    -------
    ll : ndarray
        Log-likelihood per trajectory, shape (M,); -inf where the covariance
        is not positive definite
    """
    if not (np.isfinite(a2) and np.isfinite(sigma2)):
        return np.full(batch.n_trajectories, -np.inf)

    logdet, quad, valid = _bidiagonal_recursion(batch, a2, sigma2)
    ll = -0.5 * (batch.n_components * LOG_2PI + batch.ndim * logdet + quad)
    ll[~valid] = -np.inf
    return ll


def batch_mahalanobis(batch: DisplacementBatch, a2: float, sigma2: float) -> np.ndarray:
    """
    Squared Mahalanobis distance of each trajectory's displacements.

    Under the model the value is chi-square distributed with
    ``batch.n_components`` degrees of freedom.

    Returns
    -------
    distance : ndarray
        Quadratic form summed over dimensions, shape (M,); NaN where the
        covariance is not positive definite
    """
    _, quad, valid = _bidiagonal_recursion(batch, a2, sigma2)
    quad[~valid] = np.nan
    return quad
