"""
Maximum-Likelihood Estimation Module

Estimation of the localization variance a2 and the diffusive variance per
frame sigma2 for a homogeneous set of trajectories:

- Covariance-based estimator (CVE), used as a closed-form starting point
- Maximum-likelihood estimate, plain or with per-trajectory weights
- Standard errors from the observed Fisher information

The likelihood is maximized over the bounded region a2 >= 0, sigma2 > 0.
A single call converges to a local optimum; there is no global guarantee.
"""

import logging
import numpy as np
from dataclasses import dataclass
from scipy import optimize
from typing import Optional, Tuple

from .errors import DegenerateInputError, SingularInformationError
from .likelihood import batch_log_likelihood
from .trajectory import DisplacementBatch, ensure_batch

logger = logging.getLogger(__name__)

# Objective value for rejected candidates, in units of the normalized
# negative log-likelihood (which is O(1) near the optimum)
_PENALTY = 1e10
# Lower bound on sigma2 relative to the mean squared step
_MIN_SIGMA2 = 1e-8


@dataclass(frozen=True)
class PopulationParameters:
    """
    Parameters of one diffusive population.

    Attributes
    ----------
    a2 : float
        Localization variance (squared localization error), >= 0
    sigma2 : float
        Diffusive variance per frame, sigma2 = 2 D dt, > 0
    weight : float
        Mixing weight in [0, 1]; 1 for a single population
    """
    a2: float
    sigma2: float
    weight: float = 1.0

    def __post_init__(self):
        if not self.a2 >= 0:
            raise ValueError(f"a2 must be >= 0, got {self.a2}")
        if not self.sigma2 > 0:
            raise ValueError(f"sigma2 must be > 0, got {self.sigma2}")
        if not 0 <= self.weight <= 1:
            raise ValueError(f"weight must lie in [0, 1], got {self.weight}")

    @property
    def localization_error(self) -> float:
        """Localization error sqrt(a2)."""
        return float(np.sqrt(self.a2))

    def diffusion_coefficient(self, frame_interval: float = 1.0) -> float:
        """Diffusion coefficient D = sigma2 / (2 dt)."""
        return self.sigma2 / (2.0 * frame_interval)


@dataclass
class ParameterEstimate:
    """Result of a single-population fit."""
    a2: float
    sigma2: float
    a2_error: float = np.nan
    sigma2_error: float = np.nan
    log_likelihood: float = np.nan
    n_trajectories: int = 0
    success: bool = True

    @property
    def localization_error(self) -> float:
        return float(np.sqrt(self.a2))

    def diffusion_coefficient(self, frame_interval: float = 1.0) -> float:
        """Diffusion coefficient D = sigma2 / (2 dt)."""
        return self.sigma2 / (2.0 * frame_interval)

    def diffusion_coefficient_error(self, frame_interval: float = 1.0) -> float:
        """Standard error of the diffusion coefficient."""
        return self.sigma2_error / (2.0 * frame_interval)

    def as_parameters(self) -> PopulationParameters:
        return PopulationParameters(self.a2, self.sigma2)


def as_parameter_pair(parameters) -> Tuple[float, float]:
    """Extract (a2, sigma2) from a tuple, array, or parameter object."""
    if isinstance(parameters, (PopulationParameters, ParameterEstimate)):
        return float(parameters.a2), float(parameters.sigma2)
    values = np.asarray(parameters, dtype=float).ravel()
    if values.size < 2:
        raise ValueError("Parameters must contain (a2, sigma2)")
    return float(values[0]), float(values[1])


def _check_weights(weights, n_trajectories: int) -> np.ndarray:
    w = np.asarray(weights, dtype=float).ravel()
    if w.shape[0] != n_trajectories:
        raise DegenerateInputError(
            f"Got {w.shape[0]} weights for {n_trajectories} trajectories"
        )
    if np.any(~np.isfinite(w)) or np.any(w < 0) or np.any(w > 1 + 1e-9):
        raise ValueError("Weights must lie in [0, 1]")
    if not np.any(w > 0):
        raise DegenerateInputError("All weights are zero")
    return np.minimum(w, 1.0)


def _cve(batch: DisplacementBatch, weights=None) -> Tuple[float, float]:
    s0, s1, blur = batch.step_moments(weights)
    if not s0 > 0:
        raise DegenerateInputError("All displacements are zero")

    if np.isnan(s1):
        # no consecutive steps: localization and diffusion are not separable
        return 0.0, s0 / (1.0 - 2.0 * blur)

    sigma2 = s0 + 2.0 * s1
    a2 = blur * sigma2 - s1
    # clamp into the region where the covariance stays positive definite
    sigma2 = max(sigma2, 1e-3 * s0)
    a2 = min(max(a2, 0.0), s0)
    return a2, sigma2


def covariance_estimator(blur_coefficients, trajectories, weights=None) -> Tuple[float, float]:
    """
    Covariance-based estimate of (a2, sigma2).

    With S0 the mean squared step and S1 the mean product of consecutive
    steps, sigma2 = S0 + 2 S1 and a2 = B sigma2 - S1 (Vestergaard et al.
    2014). Estimates are clamped into the feasible region.

    Parameters
    ----------
    blur_coefficients : float or array_like
        Motion blur coefficient per trajectory
    trajectories : sequence
        Input trajectories
    weights : array_like, optional
        Per-trajectory weights

    Returns
    -------
    a2, sigma2 : float
        Closed-form estimates
    """
    batch = ensure_batch(trajectories, blur_coefficients)
    if weights is not None:
        weights = _check_weights(weights, batch.n_trajectories)
    return _cve(batch, weights)


def _total_log_likelihood(batch: DisplacementBatch, weights, a2: float, sigma2: float) -> float:
    ll = batch_log_likelihood(batch, a2, sigma2)
    if weights is None:
        return float(np.sum(ll))
    return float(np.dot(weights, ll))


def _maximize(batch: DisplacementBatch,
              weights: Optional[np.ndarray],
              initial: Tuple[float, float]) -> Tuple[float, float, float, bool]:
    """
    Maximize the (weighted) total log-likelihood from a starting point.

    Parameters are rescaled by the mean squared step and the objective is
    normalized per displacement component, so the optimizer works on O(1)
    numbers whatever the units of the data.

    Returns
    -------
    a2, sigma2, ll, success
    """
    s0, _, _ = batch.step_moments(weights)
    if not s0 > 0:
        raise DegenerateInputError("All displacements are zero")
    w = np.ones(batch.n_trajectories) if weights is None else weights
    norm = float(np.sum(w * batch.n_components))

    def objective(u):
        total = _total_log_likelihood(batch, weights, u[0] * s0, u[1] * s0)
        if not np.isfinite(total):
            return _PENALTY
        return -total / norm

    bounds = [(0.0, None), (_MIN_SIGMA2, None)]
    u0 = np.array([max(initial[0] / s0, 0.0), max(initial[1] / s0, 10 * _MIN_SIGMA2)])

    result = optimize.minimize(objective, u0, method='L-BFGS-B', bounds=bounds,
                               options={'ftol': 1e-11, 'gtol': 1e-7, 'maxiter': 500})
    success = bool(result.success)

    if not np.isfinite(result.fun) or result.fun >= _PENALTY or (not success and result.nit == 0):
        logger.debug("L-BFGS-B failed (%s), retrying with Nelder-Mead", result.message)
        fallback = optimize.minimize(objective, u0, method='Nelder-Mead', bounds=bounds,
                                     options={'xatol': 1e-8, 'fatol': 1e-12, 'maxiter': 2000})
        if fallback.fun < result.fun:
            result = fallback
            success = bool(fallback.success)

    if result.fun >= _PENALTY:
        success = False
    a2, sigma2 = result.x * s0
    return float(a2), float(sigma2), float(-result.fun * norm), success


def _fit_weighted(batch: DisplacementBatch,
                  weights: Optional[np.ndarray],
                  initial: Optional[Tuple[float, float]] = None) -> Tuple[float, float, float, bool]:
    """Weighted fit on a prepared batch; zero-weight trajectories are dropped."""
    if weights is not None:
        keep = weights > 0
        if not np.any(keep):
            raise DegenerateInputError("All weights are zero")
        if not np.all(keep):
            batch = batch.subset(keep)
            weights = weights[keep]
    if initial is None:
        initial = _cve(batch, weights)
    return _maximize(batch, weights, initial)


def estimate(blur_coefficients, trajectories) -> Tuple[float, float]:
    """
    Maximum-likelihood estimate of (a2, sigma2) for one population.

    Parameters
    ----------
    blur_coefficients : float or array_like
        Motion blur coefficient per trajectory, in [0, 1/4]
    trajectories : sequence
        Trajectories of shape (N,) or (N, d), N >= 2

    Returns
    -------
    a2 : float
        Localization variance
    sigma2 : float
        Diffusive variance per frame
    """
    batch = ensure_batch(trajectories, blur_coefficients)
    a2, sigma2, _, success = _fit_weighted(batch, None)
    if not success:
        logger.warning("Optimizer did not report convergence (a2=%.4g, sigma2=%.4g)", a2, sigma2)
    return a2, sigma2


def estimate_weighted(blur_coefficients,
                      trajectories,
                      weights,
                      initial=None) -> Tuple[float, float]:
    """
    Maximize the weight-scaled sum of log-likelihoods.

    Parameters
    ----------
    blur_coefficients : float or array_like
        Motion blur coefficient per trajectory
    trajectories : sequence
        Input trajectories
    weights : array_like
        Weight in [0, 1] per trajectory, e.g. responsibilities for one population
    initial : tuple or PopulationParameters, optional
        Starting point; the covariance-based estimate is used if omitted

    Returns
    -------
    a2, sigma2 : float
        Weighted maximum-likelihood estimate
    """
    batch = ensure_batch(trajectories, blur_coefficients)
    w = _check_weights(weights, batch.n_trajectories)
    start = as_parameter_pair(initial) if initial is not None else None
    a2, sigma2, _, _ = _fit_weighted(batch, w, start)
    return a2, sigma2


def _finite_difference_hessian(fun, x: np.ndarray, steps: np.ndarray) -> np.ndarray:
    n = len(x)
    f0 = fun(x)
    hessian = np.empty((n, n))
    for i in range(n):
        ei = np.zeros(n)
        ei[i] = steps[i]
        hessian[i, i] = (fun(x + ei) - 2.0 * f0 + fun(x - ei)) / steps[i]**2
        for j in range(i + 1, n):
            ej = np.zeros(n)
            ej[j] = steps[j]
            value = (fun(x + ei + ej) - fun(x + ei - ej)
                     - fun(x - ei + ej) + fun(x - ei - ej)) / (4.0 * steps[i] * steps[j])
            hessian[i, j] = hessian[j, i] = value
    return hessian


def information_matrix(blur_coefficients, trajectories, parameters) -> np.ndarray:
    """
    Observed Fisher information for (a2, sigma2).

    The negative Hessian of the total log-likelihood by central finite
    differences. If a2 is too close to zero for a centred stencil, the
    stencil is moved inward to [0, 2h].

    Parameters
    ----------
    blur_coefficients : float or array_like
        Motion blur coefficient per trajectory
    trajectories : sequence
        Input trajectories
    parameters : tuple or PopulationParameters or ParameterEstimate
        Fitted (a2, sigma2)

    Returns
    -------
    information : ndarray
        2x2 observed information matrix
    """
    batch = ensure_batch(trajectories, blur_coefficients)
    a2, sigma2 = as_parameter_pair(parameters)
    if not (a2 >= 0 and sigma2 > 0):
        raise ValueError(f"Invalid parameters a2={a2}, sigma2={sigma2}")

    steps = np.array([1e-3 * max(a2, 0.1 * sigma2), 1e-3 * sigma2])
    center = np.array([max(a2, steps[0]), sigma2])

    def total(theta):
        return _total_log_likelihood(batch, None, theta[0], theta[1])

    return -_finite_difference_hessian(total, center, steps)


def estimate_errors(blur_coefficients, trajectories, parameters) -> Tuple[float, float]:
    """
    Standard errors of (a2, sigma2) at a fitted optimum.

    Square roots of the diagonal of the inverse observed information.

    Parameters
    ----------
    blur_coefficients : float or array_like
        Motion blur coefficient per trajectory
    trajectories : sequence
        Trajectories the parameters were fitted to
    parameters : tuple or PopulationParameters or ParameterEstimate
        Fitted (a2, sigma2)

    Returns
    -------
    a2_error, sigma2_error : float
        Standard errors

    Raises
    ------
    SingularInformationError
        If the information matrix is not finite and positive definite
    """
    info = information_matrix(blur_coefficients, trajectories, parameters)
    if not np.all(np.isfinite(info)):
        raise SingularInformationError("Information matrix is not finite")
    try:
        np.linalg.cholesky(info)
        covariance = np.linalg.inv(info)
    except np.linalg.LinAlgError as exc:
        raise SingularInformationError(
            "Information matrix is singular or not positive definite; "
            "the fit is not identifiable"
        ) from exc

    variances = np.diag(covariance)
    if np.any(variances <= 0) or not np.all(np.isfinite(variances)):
        raise SingularInformationError("Non-positive parameter variance")
    errors = np.sqrt(variances)
    return float(errors[0]), float(errors[1])


def fit_population(blur_coefficients,
                   trajectories,
                   compute_errors: bool = True) -> ParameterEstimate:
    """
    Fit one population and, optionally, its standard errors.

    Parameters
    ----------
    blur_coefficients : float or array_like
        Motion blur coefficient per trajectory
    trajectories : sequence
        Input trajectories
    compute_errors : bool
        Whether to compute standard errors; an unidentifiable fit leaves
        them at NaN and logs a warning

    Returns
    -------
    result : ParameterEstimate
    """
    batch = ensure_batch(trajectories, blur_coefficients)
    a2, sigma2, ll, success = _fit_weighted(batch, None)
    result = ParameterEstimate(
        a2=a2,
        sigma2=sigma2,
        log_likelihood=ll,
        n_trajectories=batch.n_trajectories,
        success=success
    )
    if compute_errors:
        try:
            result.a2_error, result.sigma2_error = estimate_errors(None, batch, (a2, sigma2))
        except SingularInformationError as exc:
            logger.warning("Could not compute standard errors: %s", exc)
    return result
