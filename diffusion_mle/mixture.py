"""
Mixture Model Module

Expectation-Maximization for a mixture of K diffusive populations.

Local EM alternates an E-step (responsibilities from Bayes' rule) with an
M-step (weighted maximum-likelihood refit of each population and
re-estimation of the mixing weights) until the log-likelihood stops
increasing. The mixture likelihood is multi-modal, so global EM runs many
local EM runs from random starting points in parallel and keeps the one with
the highest log-likelihood.

Parameter matrices have shape (K, 3) with columns [a2, sigma2, weight].
"""

import logging
import warnings
import numpy as np
from dataclasses import dataclass, field
from joblib import Parallel, delayed
from scipy.special import logsumexp
from typing import List, Optional, Tuple

from .errors import ConvergenceWarning
from .estimation import PopulationParameters, _fit_weighted
from .likelihood import batch_log_likelihood
from .trajectory import DisplacementBatch, ensure_batch

logger = logging.getLogger(__name__)

# Populations with less total responsibility than this are left unchanged
_MIN_POPULATION_WEIGHT = 1e-8


@dataclass
class LocalEMResult:
    """Result of one local EM run."""
    parameters: np.ndarray  # (K, 3): a2, sigma2, weight
    log_likelihood: float  # Log-likelihood of the returned iterate
    log_likelihood_trace: np.ndarray  # Log-likelihood after each E-step
    responsibilities: np.ndarray  # (M, K), rows sum to 1
    converged: bool  # Tolerance reached before the cycle budget ran out
    n_cycles: int  # Number of M-steps performed

    @property
    def populations(self) -> List[PopulationParameters]:
        return _as_populations(self.parameters)


@dataclass
class MixtureModel:
    """
    Fitted K-population mixture.

    Populations are ordered by increasing sigma2 and the columns of
    ``responsibilities`` follow the same order.
    """
    populations: Tuple[PopulationParameters, ...]
    log_likelihood: float
    responsibilities: np.ndarray  # (M, K)
    converged: bool
    n_cycles: int
    restart_log_likelihoods: np.ndarray = field(default_factory=lambda: np.array([]))

    @property
    def n_populations(self) -> int:
        return len(self.populations)

    @property
    def parameters(self) -> np.ndarray:
        """Parameter matrix (K, 3) with columns a2, sigma2, weight."""
        return np.array([[p.a2, p.sigma2, p.weight] for p in self.populations])

    @property
    def weights(self) -> np.ndarray:
        return np.array([p.weight for p in self.populations])

    @property
    def assignments(self) -> np.ndarray:
        """Most probable population of each trajectory."""
        return np.argmax(self.responsibilities, axis=1)

    def to_dataframe(self, frame_interval: float = 1.0):
        """
        Population parameters as a pandas DataFrame.

        Parameters
        ----------
        frame_interval : float
            Time between frames, used for the diffusion coefficient

        Returns
        -------
        df : pandas.DataFrame
            One row per population
        """
        import pandas as pd

        counts = np.bincount(self.assignments, minlength=self.n_populations)
        return pd.DataFrame([{
            'population': k,
            'a2': p.a2,
            'sigma2': p.sigma2,
            'weight': p.weight,
            'localization_error': p.localization_error,
            'diffusion_coefficient': p.diffusion_coefficient(frame_interval),
            'n_assigned': int(counts[k])
        } for k, p in enumerate(self.populations)])

    def __repr__(self):
        return (f"MixtureModel(K={self.n_populations}, "
                f"log_likelihood={self.log_likelihood:.6g}, converged={self.converged})")


def _as_populations(params: np.ndarray) -> List[PopulationParameters]:
    # column sums can overshoot 1 by rounding
    return [PopulationParameters(float(a2), float(s2), float(np.clip(w, 0.0, 1.0)))
            for a2, s2, w in params]


def as_parameter_matrix(parameters, n_populations: Optional[int] = None) -> np.ndarray:
    """
    Normalize population parameters to a (K, 3) matrix.

    Parameters
    ----------
    parameters : sequence of PopulationParameters or array_like
        Either parameter objects, a (K, 2) array of [a2, sigma2] (equal
        weights assumed), or a (K, 3) array of [a2, sigma2, weight]
    n_populations : int, optional
        Expected K

    Returns
    -------
    matrix : ndarray
        (K, 3) parameters with weights summing to 1
    """
    if isinstance(parameters, PopulationParameters):
        parameters = [parameters]
    if len(parameters) and isinstance(parameters[0], PopulationParameters):
        matrix = np.array([[p.a2, p.sigma2, p.weight] for p in parameters], dtype=float)
    else:
        matrix = np.array(parameters, dtype=float)
        if matrix.ndim == 1:
            matrix = matrix[None, :]
        if matrix.ndim != 2 or matrix.shape[1] not in (2, 3):
            raise ValueError("Parameter matrix must have shape (K, 2) or (K, 3)")
        if matrix.shape[1] == 2:
            k = matrix.shape[0]
            matrix = np.column_stack([matrix, np.full(k, 1.0 / k)])

    if n_populations is not None and matrix.shape[0] != n_populations:
        raise ValueError(f"Expected {n_populations} populations, got {matrix.shape[0]}")
    if np.any(matrix[:, 0] < 0) or np.any(matrix[:, 1] <= 0) or np.any(matrix[:, 2] < 0):
        raise ValueError("Parameters need a2 >= 0, sigma2 > 0 and weight >= 0")

    total = matrix[:, 2].sum()
    if not total > 0:
        raise ValueError("Mixing weights must not all be zero")
    matrix[:, 2] /= total
    return matrix


def _log_joint(batch: DisplacementBatch, params: np.ndarray) -> np.ndarray:
    """log P_k + log L_ik, shape (M, K)."""
    log_l = np.column_stack([batch_log_likelihood(batch, a2, s2) for a2, s2, _ in params])
    with np.errstate(divide='ignore'):
        return log_l + np.log(params[:, 2])[None, :]


def _e_step(batch: DisplacementBatch, params: np.ndarray) -> Tuple[float, np.ndarray]:
    joint = _log_joint(batch, params)
    per_trajectory = logsumexp(joint, axis=1)
    finite = np.isfinite(per_trajectory)

    resp = np.full(joint.shape, 1.0 / joint.shape[1])
    resp[finite] = np.exp(joint[finite] - per_trajectory[finite, None])

    total = float(np.sum(per_trajectory)) if np.all(finite) else -np.inf
    return total, resp


def _m_step(batch: DisplacementBatch, resp: np.ndarray, params: np.ndarray) -> np.ndarray:
    new_params = params.copy()
    column_sums = resp.sum(axis=0)

    for k in range(params.shape[0]):
        if column_sums[k] <= _MIN_POPULATION_WEIGHT:
            logger.debug("Population %d has collapsed, keeping its parameters", k)
            continue
        a2, sigma2, _, success = _fit_weighted(batch, resp[:, k], initial=(params[k, 0], params[k, 1]))
        if not success:
            logger.debug("Weighted fit for population %d did not converge", k)
        new_params[k, 0] = a2
        new_params[k, 1] = sigma2

    new_params[:, 2] = column_sums / batch.n_trajectories
    return new_params


def _local_em(batch: DisplacementBatch,
              params: np.ndarray,
              max_cycles: int,
              tolerance: float) -> LocalEMResult:
    """Local EM on a prepared batch. Returns the best iterate seen."""
    ll, resp = _e_step(batch, params)
    trace = [ll]
    best = (ll, params, resp)
    converged = False
    n_cycles = 0

    for cycle in range(max_cycles):
        params = _m_step(batch, resp, params)
        ll, resp = _e_step(batch, params)
        trace.append(ll)
        n_cycles = cycle + 1

        if ll > best[0]:
            best = (ll, params, resp)
        if not ll - trace[-2] >= tolerance:
            converged = True
            break

    logger.debug("Local EM finished after %d cycles (converged=%s, ll=%.6g)",
                 n_cycles, converged, best[0])
    return LocalEMResult(
        parameters=best[1],
        log_likelihood=best[0],
        log_likelihood_trace=np.array(trace),
        responsibilities=best[2],
        converged=converged,
        n_cycles=n_cycles
    )


def fit_mixture_local(n_populations: int,
                      trajectories,
                      blur_coefficients,
                      initial_parameters,
                      max_cycles: int,
                      tolerance: float = 1e-3) -> LocalEMResult:
    """
    Local EM from a given starting point.

    Parameters
    ----------
    n_populations : int
        Number of populations K
    trajectories : sequence
        Input trajectories
    blur_coefficients : float or array_like
        Motion blur coefficient per trajectory
    initial_parameters : array_like or sequence of PopulationParameters
        Starting parameters, (K, 3) [a2, sigma2, weight] or (K, 2) [a2, sigma2]
    max_cycles : int
        Maximum number of EM cycles
    tolerance : float
        Stop when the log-likelihood increases by less than this

    Returns
    -------
    result : LocalEMResult
        Best iterate, log-likelihood trace and final responsibilities. A run
        that used up ``max_cycles`` has ``converged == False``.
    """
    if n_populations < 1:
        raise ValueError("n_populations must be at least 1")
    if max_cycles < 0:
        raise ValueError("max_cycles must be non-negative")
    batch = ensure_batch(trajectories, blur_coefficients)
    params = as_parameter_matrix(initial_parameters, n_populations)
    return _local_em(batch, params, max_cycles, tolerance)


def random_initial_parameters(n_populations: int,
                              a2_range: Tuple[float, float],
                              sigma2_range: Tuple[float, float],
                              rng: np.random.Generator) -> np.ndarray:
    """
    Draw a random starting point for EM.

    a2 and sigma2 are uniform over their ranges and the mixing weights are
    uniform over the simplex.

    Returns
    -------
    params : ndarray
        (K, 3) parameter matrix
    """
    a2_low, a2_high = a2_range
    s2_low, s2_high = sigma2_range
    if not 0 <= a2_low <= a2_high:
        raise ValueError(f"Invalid a2 range {a2_range}")
    if not (0 <= s2_low <= s2_high and s2_high > 0):
        raise ValueError(f"Invalid sigma2 range {sigma2_range}")

    a2 = rng.uniform(a2_low, a2_high, n_populations)
    sigma2 = np.maximum(rng.uniform(s2_low, s2_high, n_populations), 1e-9 * s2_high)
    weights = rng.dirichlet(np.ones(n_populations))
    return np.column_stack([a2, sigma2, weights])


def _seed_sequence(random_state) -> np.random.SeedSequence:
    if isinstance(random_state, np.random.SeedSequence):
        return random_state
    if isinstance(random_state, np.random.Generator):
        return np.random.SeedSequence(int(random_state.integers(2**63)))
    return np.random.SeedSequence(random_state)


def fit_mixture_global(n_populations: int,
                       trajectories,
                       blur_coefficients,
                       max_local_cycles: int,
                       num_restarts: int,
                       a2_range: Tuple[float, float],
                       sigma2_range: Tuple[float, float],
                       tolerance: float = 1e-3,
                       n_jobs: int = -1,
                       random_state=None,
                       verbose: bool = False) -> MixtureModel:
    """
    Global EM: local EM from many random starting points.

    Starting points are drawn up front from independent random streams, the
    restarts run in parallel with joblib, and the run with the highest
    log-likelihood is kept (ties go to the earliest restart).

    Parameters
    ----------
    n_populations : int
        Number of populations K
    trajectories : sequence
        Input trajectories
    blur_coefficients : float or array_like
        Motion blur coefficient per trajectory
    max_local_cycles : int
        Cycle budget of each local EM run
    num_restarts : int
        Number of local EM runs
    a2_range : (float, float)
        Range of initial localization variances
    sigma2_range : (float, float)
        Range of initial diffusive variances
    tolerance : float
        Convergence tolerance of the local runs
    n_jobs : int
        Number of parallel workers (joblib convention, -1 = all cores)
    random_state : int, SeedSequence or Generator, optional
        Seed for the starting points
    verbose : bool
        Print progress

    Returns
    -------
    model : MixtureModel
        Best mixture, populations sorted by sigma2
    """
    if n_populations < 1:
        raise ValueError("n_populations must be at least 1")
    if num_restarts < 1:
        raise ValueError("num_restarts must be at least 1")

    batch = ensure_batch(trajectories, blur_coefficients)
    streams = _seed_sequence(random_state).spawn(num_restarts)
    starts = [
        random_initial_parameters(n_populations, a2_range, sigma2_range, np.random.default_rng(s))
        for s in streams
    ]

    if verbose:
        print(f"Running {num_restarts} EM restarts with K={n_populations} "
              f"on {batch.n_trajectories} trajectories")

    runs = Parallel(n_jobs=n_jobs)(
        delayed(_local_em)(batch, start, max_local_cycles, tolerance) for start in starts
    )

    scores = np.array([r.log_likelihood for r in runs])
    scores = np.where(np.isnan(scores), -np.inf, scores)
    best_index = int(np.argmax(scores))
    best = runs[best_index]

    if verbose:
        n_converged = sum(r.converged for r in runs)
        print(f"Best log-likelihood {best.log_likelihood:.6g} (restart {best_index}), "
              f"{n_converged}/{num_restarts} runs converged")

    if not best.converged:
        warnings.warn(
            f"Best EM run did not converge within {max_local_cycles} cycles",
            ConvergenceWarning,
            stacklevel=2
        )

    order = np.argsort(best.parameters[:, 1], kind='stable')
    params = best.parameters[order]
    return MixtureModel(
        populations=tuple(_as_populations(params)),
        log_likelihood=best.log_likelihood,
        responsibilities=best.responsibilities[:, order],
        converged=best.converged,
        n_cycles=best.n_cycles,
        restart_log_likelihoods=scores
    )


def responsibilities(trajectories, blur_coefficients, parameters) -> np.ndarray:
    """
    Posterior population probabilities for given mixture parameters.

    Returns
    -------
    resp : ndarray
        (M, K) row-stochastic matrix
    """
    batch = ensure_batch(trajectories, blur_coefficients)
    return _e_step(batch, as_parameter_matrix(parameters))[1]


def mixture_log_likelihood(trajectories, blur_coefficients, parameters) -> float:
    """Total log-likelihood of a mixture."""
    batch = ensure_batch(trajectories, blur_coefficients)
    return _e_step(batch, as_parameter_matrix(parameters))[0]
