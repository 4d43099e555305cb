"""Hard partitioning of trajectories by population."""

import numpy as np
import pytest


@pytest.mark.parametrize("n_populations", [1, 2, 3, 4])
def test_partition_is_disjoint_and_complete(rng, n_populations):
    from diffusion_mle import partition

    n = 57
    trajectories = [rng.normal(size=(rng.integers(2, 12), 2)) for _ in range(n)]
    blur = rng.uniform(0, 0.25, n)
    resp = rng.dirichlet(np.ones(n_populations), size=n)

    subsets = partition(n_populations, resp, blur, trajectories)

    assert len(subsets) == n_populations
    assert sum(s.size for s in subsets) == n
    indices = np.concatenate([s.indices for s in subsets])
    np.testing.assert_array_equal(np.sort(indices), np.arange(n))

    for s in subsets:
        np.testing.assert_array_equal(s.blur_coefficients, blur[s.indices])
        assert all(t is trajectories[i] for t, i in zip(s.trajectories, s.indices))
        if s.size:
            assert np.all(np.argmax(resp[s.indices], axis=1) == s.population)


def test_ties_go_to_lowest_index():
    from diffusion_mle import hard_assignments

    resp = np.array([[0.5, 0.5], [0.2, 0.8], [1 / 3, 1 / 3 + 1e-12]])
    np.testing.assert_array_equal(hard_assignments(resp), [0, 1, 1])


def test_empty_population_gives_empty_subset(rng):
    from diffusion_mle import partition

    trajectories = [rng.normal(size=(5, 2)) for _ in range(4)]
    resp = np.tile([0.9, 0.1, 0.0], (4, 1))
    subsets = partition(3, resp, 0.1, trajectories)

    assert [s.size for s in subsets] == [4, 0, 0]
    assert subsets[1].blur_coefficients.shape == (0,)


def test_partition_shape_mismatch_raises(rng):
    from diffusion_mle import partition

    trajectories = [rng.normal(size=(5, 2)) for _ in range(4)]
    with pytest.raises(ValueError):
        partition(2, np.full((3, 2), 0.5), 0.1, trajectories)


def test_population_errors(two_populations):
    from diffusion_mle import fit_mixture_global, population_errors

    data = two_populations
    model = fit_mixture_global(2, data['trajectories'], data['blur'],
                               max_local_cycles=100, num_restarts=3,
                               a2_range=(0.0, 0.2), sigma2_range=(0.01, 4.0),
                               n_jobs=1, random_state=2)
    errors = population_errors(model, data['blur'], data['trajectories'])

    assert len(errors) == 2
    assert sum(e.n_trajectories for e in errors) == len(data['trajectories'])
    for estimate, population, true_sigma2 in zip(errors, model.populations, data['sigma2']):
        assert estimate.sigma2 == population.sigma2
        assert np.isfinite(estimate.sigma2_error) and estimate.sigma2_error > 0
        assert abs(estimate.sigma2 - true_sigma2) < 5 * estimate.sigma2_error
