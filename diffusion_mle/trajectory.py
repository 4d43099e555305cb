"""
Trajectory Data Module

Containers for position sequences and the padded displacement stack used by
the vectorized likelihood code.

A trajectory is any ordered sequence of N >= 2 positions recorded at a fixed
frame interval, given either as a :class:`Trajectory` or as an array of shape
(N,) or (N, d). Only displacements enter the likelihood, so the absolute
position of a trajectory is irrelevant.
"""

import numpy as np
from dataclasses import dataclass
from typing import List, Sequence, Union

from .errors import DegenerateInputError


@dataclass(frozen=True)
class Trajectory:
    """An immutable particle trajectory."""
    positions: np.ndarray
    id: int = -1

    def __post_init__(self):
        positions = np.array(self.positions, dtype=float)
        if positions.ndim == 1:
            positions = positions[:, None]
        if positions.ndim != 2:
            raise ValueError("positions must have shape (N,) or (N, d)")
        positions.setflags(write=False)
        object.__setattr__(self, 'positions', positions)

    @property
    def length(self) -> int:
        """Number of recorded positions."""
        return self.positions.shape[0]

    @property
    def ndim(self) -> int:
        """Spatial dimensionality."""
        return self.positions.shape[1]

    @property
    def displacements(self) -> np.ndarray:
        """Frame-to-frame displacements, shape (N-1, d)."""
        return np.diff(self.positions, axis=0)

    def __repr__(self):
        return f"Trajectory(id={self.id}, length={self.length}, ndim={self.ndim})"


TrajectoryLike = Union[Trajectory, np.ndarray, Sequence]


def as_positions(trajectory: TrajectoryLike) -> np.ndarray:
    """
    Return the positions of a trajectory as a 2D float array.

    Parameters
    ----------
    trajectory : Trajectory or array_like
        Trajectory object or positions of shape (N,) or (N, d)

    Returns
    -------
    positions : ndarray
        Positions, shape (N, d)
    """
    if isinstance(trajectory, Trajectory):
        return trajectory.positions
    positions = np.asarray(trajectory, dtype=float)
    if positions.ndim == 1:
        positions = positions[:, None]
    if positions.ndim != 2:
        raise ValueError("trajectory positions must have shape (N,) or (N, d)")
    return positions


def as_blur_array(blur_coefficients, n_trajectories: int) -> np.ndarray:
    """
    Broadcast and validate blur coefficients.

    Parameters
    ----------
    blur_coefficients : float or array_like
        One coefficient per trajectory, or a single value for all
    n_trajectories : int
        Number of trajectories the coefficients pair with

    Returns
    -------
    blur : ndarray
        Blur coefficients, shape (n_trajectories,)
    """
    blur = np.asarray(blur_coefficients, dtype=float)
    if blur.ndim == 0:
        blur = np.full(n_trajectories, float(blur))
    blur = blur.ravel()
    if blur.shape[0] != n_trajectories:
        raise DegenerateInputError(
            f"Got {blur.shape[0]} blur coefficients for {n_trajectories} trajectories"
        )
    if np.any(~np.isfinite(blur)) or np.any(blur < 0) or np.any(blur > 0.25):
        raise ValueError("Blur coefficients must lie in [0, 1/4]")
    return blur


class DisplacementBatch:
    """
    Zero-padded stack of displacement sequences.

    Trajectories of different lengths are stored in one array so that the
    likelihood can be evaluated for all of them with a single pass over time
    steps.

    Parameters
    ----------
    trajectories : sequence of Trajectory or array_like
        Input trajectories, all with the same spatial dimensionality
    blur_coefficients : float or array_like
        Blur coefficient per trajectory, in [0, 1/4]

    Attributes
    ----------
    displacements : ndarray
        Padded displacements, shape (M, L, d) where L is the longest step count
    mask : ndarray
        True where a displacement exists, shape (M, L)
    n_steps : ndarray
        Number of displacements per trajectory, shape (M,)
    blur : ndarray
        Blur coefficient per trajectory, shape (M,)
    """

    def __init__(self, trajectories: Sequence[TrajectoryLike], blur_coefficients):
        positions = [as_positions(t) for t in trajectories]
        if not positions:
            raise DegenerateInputError("No trajectories given")

        lengths = np.array([len(p) for p in positions])
        short = np.flatnonzero(lengths < 2)
        if short.size:
            raise DegenerateInputError(
                f"{short.size} trajectories have fewer than 2 positions "
                f"(first at index {short[0]})"
            )

        dims = {p.shape[1] for p in positions}
        if len(dims) != 1:
            raise ValueError(f"Trajectories have mixed dimensionality: {sorted(dims)}")

        self.blur = as_blur_array(blur_coefficients, len(positions))
        self.ndim = dims.pop()
        self.n_steps = lengths - 1

        n_max = int(self.n_steps.max())
        self.displacements = np.zeros((len(positions), n_max, self.ndim))
        for i, p in enumerate(positions):
            self.displacements[i, :len(p) - 1] = np.diff(p, axis=0)
        self.mask = np.arange(n_max)[None, :] < self.n_steps[:, None]

    @classmethod
    def _from_arrays(cls, displacements, mask, n_steps, blur, ndim):
        batch = cls.__new__(cls)
        batch.displacements = displacements
        batch.mask = mask
        batch.n_steps = n_steps
        batch.blur = blur
        batch.ndim = ndim
        return batch

    @property
    def n_trajectories(self) -> int:
        return self.displacements.shape[0]

    @property
    def n_components(self) -> np.ndarray:
        """Number of scalar displacement components per trajectory."""
        return self.ndim * self.n_steps

    def subset(self, indices) -> 'DisplacementBatch':
        """
        Select trajectories by index or boolean mask.

        Padding is trimmed to the longest selected trajectory.
        """
        indices = np.asarray(indices)
        if indices.dtype == bool:
            indices = np.flatnonzero(indices)
        if indices.size == 0:
            raise DegenerateInputError("Empty trajectory subset")
        n_steps = self.n_steps[indices]
        n_max = int(n_steps.max())
        return DisplacementBatch._from_arrays(
            self.displacements[indices, :n_max],
            self.mask[indices, :n_max],
            n_steps,
            self.blur[indices],
            self.ndim
        )

    def step_moments(self, weights=None):
        """
        Weighted mean squared step and mean product of consecutive steps.

        Parameters
        ----------
        weights : array_like, optional
            Per-trajectory weights (default: all ones)

        Returns
        -------
        s0 : float
            Mean of squared displacement components
        s1 : float
            Mean of products of consecutive displacement components,
            NaN if no trajectory has two or more displacements
        blur : float
            Weighted mean blur coefficient
        """
        w = np.ones(self.n_trajectories) if weights is None else np.asarray(weights, dtype=float)
        dx = self.displacements

        sq = np.sum(dx**2, axis=(1, 2))
        n0 = np.sum(w * self.n_components)
        s0 = np.sum(w * sq) / n0

        prod = np.sum(dx[:, 1:] * dx[:, :-1], axis=(1, 2))
        n1 = np.sum(w * self.ndim * np.maximum(self.n_steps - 1, 0))
        s1 = np.sum(w * prod) / n1 if n1 > 0 else np.nan

        blur = np.sum(w * self.blur) / np.sum(w)
        return s0, s1, blur

    def __repr__(self):
        return (f"DisplacementBatch(n_trajectories={self.n_trajectories}, "
                f"ndim={self.ndim}, max_steps={self.displacements.shape[1]})")


def ensure_batch(trajectories, blur_coefficients) -> DisplacementBatch:
    """Build a :class:`DisplacementBatch` unless one is passed in."""
    if isinstance(trajectories, DisplacementBatch):
        return trajectories
    return DisplacementBatch(trajectories, blur_coefficients)


def to_list(trajectories) -> List:
    """Materialize a trajectory collection as a list."""
    if isinstance(trajectories, np.ndarray) and trajectories.ndim == 3:
        return [t for t in trajectories]
    return list(trajectories)
