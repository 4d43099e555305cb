"""
Population Partitioning Module

Hard assignment of trajectories to the populations of a fitted mixture, so
that each population can be treated as a homogeneous collection (for example
to compute per-population standard errors).
"""

import logging
import numpy as np
from dataclasses import dataclass
from typing import List

from .errors import DegenerateInputError, SingularInformationError
from .estimation import ParameterEstimate, estimate_errors
from .mixture import MixtureModel
from .trajectory import as_blur_array, to_list

logger = logging.getLogger(__name__)


@dataclass
class PopulationSubset:
    """Trajectories assigned to one population."""
    population: int
    trajectories: list
    blur_coefficients: np.ndarray
    indices: np.ndarray  # Positions in the original collection

    @property
    def size(self) -> int:
        return len(self.trajectories)


def hard_assignments(responsibilities) -> np.ndarray:
    """
    Most probable population per trajectory; ties go to the lowest index.
    """
    resp = np.asarray(responsibilities, dtype=float)
    if resp.ndim != 2:
        raise ValueError("Responsibilities must be an (M, K) matrix")
    return np.argmax(resp, axis=1)


def partition(n_populations: int,
              responsibilities,
              blur_coefficients,
              trajectories) -> List[PopulationSubset]:
    """
    Split trajectories and blur coefficients by most probable population.

    Parameters
    ----------
    n_populations : int
        Number of populations K
    responsibilities : array_like
        (M, K) responsibility matrix
    blur_coefficients : float or array_like
        Motion blur coefficient per trajectory
    trajectories : sequence
        The M trajectories

    Returns
    -------
    subsets : list of PopulationSubset
        K disjoint subsets whose sizes add up to M (some may be empty)
    """
    trajectories = to_list(trajectories)
    resp = np.asarray(responsibilities, dtype=float)
    if resp.shape != (len(trajectories), n_populations):
        raise ValueError(
            f"Responsibilities have shape {resp.shape}, "
            f"expected {(len(trajectories), n_populations)}"
        )
    blur = as_blur_array(blur_coefficients, len(trajectories))
    labels = hard_assignments(resp)

    subsets = []
    for k in range(n_populations):
        indices = np.flatnonzero(labels == k)
        subsets.append(PopulationSubset(
            population=k,
            trajectories=[trajectories[i] for i in indices],
            blur_coefficients=blur[indices],
            indices=indices
        ))
    return subsets


def population_errors(model: MixtureModel,
                      blur_coefficients,
                      trajectories) -> List[ParameterEstimate]:
    """
    Standard errors of each population's (a2, sigma2).

    Each population's parameters are evaluated on the trajectories assigned
    to it. Empty or unidentifiable populations get NaN errors.

    Parameters
    ----------
    model : MixtureModel
        Fitted mixture
    blur_coefficients : float or array_like
        Motion blur coefficient per trajectory
    trajectories : sequence
        Trajectories the mixture was fitted to

    Returns
    -------
    estimates : list of ParameterEstimate
        One per population, in model order
    """
    subsets = partition(model.n_populations, model.responsibilities,
                        blur_coefficients, trajectories)
    results = []
    for population, subset in zip(model.populations, subsets):
        result = ParameterEstimate(
            a2=population.a2,
            sigma2=population.sigma2,
            n_trajectories=subset.size
        )
        if subset.size == 0:
            logger.warning("Population %d has no assigned trajectories", subset.population)
        else:
            try:
                result.a2_error, result.sigma2_error = estimate_errors(
                    subset.blur_coefficients, subset.trajectories, population
                )
            except (SingularInformationError, DegenerateInputError) as exc:
                logger.warning("No error bars for population %d: %s", subset.population, exc)
        results.append(result)
    return results
