import numpy as np
import pytest


def dense_covariance(n_steps, a2, sigma2, blur):
    """Displacement covariance written out entry by entry."""
    cov = np.zeros((n_steps, n_steps))
    for i in range(n_steps):
        cov[i, i] = sigma2 * (1 - 2 * blur) + 2 * a2
        if i + 1 < n_steps:
            cov[i, i + 1] = cov[i + 1, i] = blur * sigma2 - a2
    return cov


def simulate_trajectories(rng, n_trajectories, n_positions, a2, sigma2, blur, ndim=2):
    """
    Exact Gaussian simulation of blurred, noisy diffusion.

    Displacements are drawn from the model covariance and summed into
    positions starting at a random offset.
    """
    cov = dense_covariance(n_positions - 1, a2, sigma2, blur)
    chol = np.linalg.cholesky(cov)
    z = rng.standard_normal((n_trajectories, n_positions - 1, ndim))
    steps = np.einsum('ij,mjd->mid', chol, z)
    start = rng.uniform(-10, 10, (n_trajectories, 1, ndim))
    positions = np.concatenate([np.zeros((n_trajectories, 1, ndim)), np.cumsum(steps, axis=1)], axis=1)
    return [p for p in positions + start]


def simulate_mixture(rng, sizes, n_positions, a2, sigma2_values, blur, ndim=2):
    """Concatenate populations with the given sizes; returns trajectories and labels."""
    trajectories = []
    labels = []
    for k, (size, sigma2) in enumerate(zip(sizes, sigma2_values)):
        trajectories += simulate_trajectories(rng, size, n_positions, a2, sigma2, blur, ndim)
        labels += [k] * size
    return trajectories, np.array(labels)


@pytest.fixture
def rng():
    return np.random.default_rng(20240611)


@pytest.fixture
def single_population(rng):
    """One population, 400 trajectories of 30 positions in 2D."""
    truth = {'a2': 0.05, 'sigma2': 1.0, 'blur': 1 / 6}
    trajectories = simulate_trajectories(rng, 400, 30, truth['a2'], truth['sigma2'], truth['blur'])
    return {'trajectories': trajectories, **truth}


@pytest.fixture
def two_populations(rng):
    """Well-separated slow and fast populations mixed 1:1."""
    truth = {'a2': 0.02, 'sigma2': (0.1, 2.0), 'weights': (0.5, 0.5), 'blur': 1 / 6}
    trajectories, labels = simulate_mixture(rng, (150, 150), 25, truth['a2'], truth['sigma2'], truth['blur'])
    return {'trajectories': trajectories, 'labels': labels, **truth}
