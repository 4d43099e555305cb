"""
Displacement Covariance Module

Covariance of the frame-to-frame displacements of a diffusing particle
observed with static localization noise and motion blur.

For one spatial component, with a2 the localization variance, sigma2 = 2 D dt
the diffusive variance per frame and B the motion blur coefficient:

    Var(dx_i)          = sigma2 * (1 - 2B) + 2 a2
    Cov(dx_i, dx_i+1)  = B sigma2 - a2
    Cov(dx_i, dx_i+k)  = 0   for k > 1

References
----------
Berglund (2010) "Statistics of camera-based single-particle tracking"
Phys. Rev. E 82:011917

Vestergaard, Blainey & Flyvbjerg (2014) "Optimal estimation of diffusion
coefficients from single-particle trajectories" Phys. Rev. E 89:022726
"""

import numpy as np
from typing import Tuple


def covariance_terms(a2, sigma2, blur) -> Tuple[np.ndarray, np.ndarray]:
    """
    Diagonal and off-diagonal covariance entries.

    Broadcasts over array arguments.

    Parameters
    ----------
    a2 : float or ndarray
        Localization variance
    sigma2 : float or ndarray
        Diffusive variance per frame (2 D dt)
    blur : float or ndarray
        Motion blur coefficient in [0, 1/4]

    Returns
    -------
    diagonal : ndarray
        Variance of one displacement component
    off_diagonal : ndarray
        Covariance of adjacent displacement components
    """
    a2 = np.asarray(a2, dtype=float)
    sigma2 = np.asarray(sigma2, dtype=float)
    blur = np.asarray(blur, dtype=float)
    diagonal = sigma2 * (1.0 - 2.0 * blur) + 2.0 * a2
    off_diagonal = blur * sigma2 - a2
    return diagonal, off_diagonal


def displacement_covariance(n_positions: int,
                            a2: float,
                            sigma2: float,
                            blur: float,
                            banded: bool = True) -> np.ndarray:
    """
    Covariance matrix of the displacements of one trajectory.

    Parameters
    ----------
    n_positions : int
        Number of positions N (the matrix is (N-1) x (N-1))
    a2 : float
        Localization variance, >= 0
    sigma2 : float
        Diffusive variance per frame, > 0
    blur : float
        Motion blur coefficient in [0, 1/4]
    banded : bool
        Return upper banded storage of shape (2, N-1) as used by
        scipy.linalg.cholesky_banded instead of the dense matrix

    Returns
    -------
    covariance : ndarray
        Banded (2, N-1) or dense (N-1, N-1) covariance
    """
    if n_positions < 2:
        raise ValueError("A trajectory needs at least 2 positions")
    if not a2 >= 0:
        raise ValueError(f"a2 must be >= 0, got {a2}")
    if not sigma2 > 0:
        raise ValueError(f"sigma2 must be > 0, got {sigma2}")
    if not 0 <= blur <= 0.25:
        raise ValueError(f"Blur coefficient must lie in [0, 1/4], got {blur}")

    n = n_positions - 1
    diagonal, off_diagonal = covariance_terms(a2, sigma2, blur)

    if banded:
        ab = np.empty((2, n))
        ab[0, 0] = 0.0
        ab[0, 1:] = off_diagonal
        ab[1, :] = diagonal
        return ab

    cov = np.diag(np.full(n, float(diagonal)))
    if n > 1:
        idx = np.arange(n - 1)
        cov[idx, idx + 1] = off_diagonal
        cov[idx + 1, idx] = off_diagonal
    return cov
