"""
Goodness-of-Fit Module

Distribution-free check of a fitted diffusion model.

Each trajectory's displacements are mapped to a quality factor, the
probability integral transform of its squared Mahalanobis distance under the
fitted covariance. For Gaussian displacements the distance is chi-square
distributed with d (N - 1) degrees of freedom, so quality factors are
uniform on [0, 1] when the model is right. The Kuiper statistic then measures
how far their empirical distribution is from uniform.

For mixtures every trajectory-population pair gets a quality factor weighted
by the responsibility. With posterior responsibilities the weighted
empirical CDF has expectation u at every u in [0, 1], since
E[P(k|x) 1{Q_k(x) <= u}] = P_k u.
"""

import numpy as np
from dataclasses import dataclass
from scipy import stats
from typing import Optional

from .likelihood import batch_mahalanobis
from .mixture import as_parameter_matrix
from .trajectory import ensure_batch

_KUIPER_MEAN = np.sqrt(np.pi / 2.0)


@dataclass
class QualityFactors:
    """Quality factors with their weights."""
    values: np.ndarray  # Quality factor in [0, 1]
    weights: np.ndarray  # Weight of each value (responsibility or 1)
    population: np.ndarray  # Population each value was computed under
    trajectory_index: np.ndarray  # Trajectory each value belongs to

    def __len__(self):
        return len(self.values)


@dataclass
class KuiperResult:
    """Result of the Kuiper test against the uniform distribution."""
    kappa: float  # Normalized statistic, about 1 for a correct model
    statistic: float  # Raw Kuiper statistic V = D+ + D-
    p_value: float  # Asymptotic probability of a larger V under uniformity
    sorted_values: np.ndarray  # Sorted copy of the input values
    n_effective: float  # Effective sample size (sum w)^2 / sum w^2

    def __float__(self):
        return float(self.kappa)


def _chi2_quality(batch, a2: float, sigma2: float) -> np.ndarray:
    distance = batch_mahalanobis(batch, a2, sigma2)
    return stats.chi2.cdf(distance, batch.n_components)


def quality_factors(n_populations: int,
                    responsibilities: Optional[np.ndarray],
                    parameters,
                    blur_coefficients,
                    trajectories,
                    assignment: str = 'weighted') -> QualityFactors:
    """
    Quality factors of trajectories under fitted parameters.

    Parameters
    ----------
    n_populations : int
        Number of populations K
    responsibilities : ndarray or None
        (M, K) responsibility matrix; may be None when K == 1
    parameters : array_like or sequence of PopulationParameters
        Fitted population parameters, (K, 2) or (K, 3)
    blur_coefficients : float or array_like
        Motion blur coefficient per trajectory
    trajectories : sequence
        Input trajectories
    assignment : {'weighted', 'hard'}
        'weighted' returns one value per trajectory-population pair weighted
        by the responsibility; 'hard' returns one value per trajectory,
        evaluated under its most probable population

    Returns
    -------
    qf : QualityFactors
        Values uniform on [0, 1] under a correctly specified model
    """
    batch = ensure_batch(trajectories, blur_coefficients)
    params = as_parameter_matrix(parameters, n_populations)
    n_traj = batch.n_trajectories

    if responsibilities is None:
        if n_populations != 1:
            raise ValueError("Responsibilities are required when n_populations > 1")
        resp = np.ones((n_traj, 1))
    else:
        resp = np.asarray(responsibilities, dtype=float)
        if resp.shape != (n_traj, n_populations):
            raise ValueError(
                f"Responsibilities have shape {resp.shape}, expected {(n_traj, n_populations)}"
            )

    quality = np.column_stack([_chi2_quality(batch, a2, s2) for a2, s2, _ in params])

    if assignment == 'hard':
        best = np.argmax(resp, axis=1)
        return QualityFactors(
            values=quality[np.arange(n_traj), best],
            weights=np.ones(n_traj),
            population=best,
            trajectory_index=np.arange(n_traj)
        )
    if assignment == 'weighted':
        return QualityFactors(
            values=quality.ravel(),
            weights=resp.ravel(),
            population=np.tile(np.arange(n_populations), n_traj),
            trajectory_index=np.repeat(np.arange(n_traj), n_populations)
        )
    raise ValueError(f"Unknown assignment '{assignment}', use 'weighted' or 'hard'")


def kuiper_pvalue(statistic: float, n: float) -> float:
    """
    Asymptotic tail probability of the Kuiper statistic.

    Q(lambda) = 2 sum_j (4 j^2 lambda^2 - 1) exp(-2 j^2 lambda^2), with
    lambda = V (sqrt(n) + 0.155 + 0.24 / sqrt(n)) (Stephens 1970).
    """
    if n <= 0:
        return 1.0
    sqrt_n = np.sqrt(n)
    lam = statistic * (sqrt_n + 0.155 + 0.24 / sqrt_n)
    if lam < 0.4:
        return 1.0
    j = np.arange(1, 101)
    terms = (4.0 * j**2 * lam**2 - 1.0) * np.exp(-2.0 * j**2 * lam**2)
    return float(np.clip(2.0 * np.sum(terms), 0.0, 1.0))


def kuiper_statistic(values, weights=None) -> KuiperResult:
    """
    Kuiper statistic of quality factors against the uniform distribution.

    The input is not modified; a sorted copy is returned in the result.

    The raw statistic V = D+ + D- is the sum of the largest positive and
    largest negative deviation of the empirical CDF from the uniform CDF.
    The reported kappa scales V by (sqrt(n) + 0.155 + 0.24/sqrt(n)) and by
    the asymptotic null mean sqrt(pi/2), so kappa is about 1 for a correct
    model and grows with misspecification.

    Parameters
    ----------
    values : array_like or QualityFactors
        Quality factors in [0, 1]
    weights : array_like, optional
        Non-negative weight per value; taken from ``values`` if it is a
        QualityFactors

    Returns
    -------
    result : KuiperResult
        kappa is exactly 0 for empty input
    """
    if isinstance(values, QualityFactors):
        if weights is None:
            weights = values.weights
        values = values.values

    x = np.array(values, dtype=float).ravel()
    if x.size == 0:
        return KuiperResult(kappa=0.0, statistic=0.0, p_value=1.0,
                            sorted_values=x, n_effective=0.0)
    if np.any(~np.isfinite(x)) or np.any(x < 0) or np.any(x > 1):
        raise ValueError("Quality factors must be finite and lie in [0, 1]")

    if weights is None:
        w = np.ones(x.size)
    else:
        w = np.asarray(weights, dtype=float).ravel()
        if w.shape != x.shape:
            raise ValueError("weights must match values")
        if np.any(~np.isfinite(w)) or np.any(w < 0):
            raise ValueError("weights must be finite and non-negative")
    total = w.sum()
    if not total > 0:
        raise ValueError("Total weight must be positive")

    order = np.argsort(x, kind='stable')
    x_sorted = x[order]
    w_sorted = w[order] / total

    cdf_after = np.cumsum(w_sorted)
    cdf_before = cdf_after - w_sorted
    d_plus = max(0.0, float(np.max(cdf_after - x_sorted)))
    d_minus = max(0.0, float(np.max(x_sorted - cdf_before)))
    statistic = d_plus + d_minus

    n_effective = total**2 / np.sum(w**2)
    sqrt_n = np.sqrt(n_effective)
    kappa = statistic * (sqrt_n + 0.155 + 0.24 / sqrt_n) / _KUIPER_MEAN

    return KuiperResult(
        kappa=float(kappa),
        statistic=statistic,
        p_value=kuiper_pvalue(statistic, n_effective),
        sorted_values=x_sorted,
        n_effective=float(n_effective)
    )
