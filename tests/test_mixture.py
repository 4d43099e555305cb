"""Expectation-Maximization for mixtures of diffusive populations."""

import numpy as np
import pytest

from conftest import simulate_mixture


def test_single_population_em_matches_mle(single_population):
    from diffusion_mle import estimate, fit_mixture_local

    data = single_population
    a2, sigma2 = estimate(data['blur'], data['trajectories'])
    result = fit_mixture_local(1, data['trajectories'], data['blur'],
                               initial_parameters=[[0.2, 3.0]], max_cycles=10)

    assert result.converged
    assert result.parameters[0, 2] == pytest.approx(1.0)
    assert result.parameters[0, 1] == pytest.approx(sigma2, rel=1e-3)
    assert result.parameters[0, 0] == pytest.approx(a2, abs=1e-3)
    np.testing.assert_allclose(result.responsibilities, 1.0)


def test_local_em_trace_is_monotone(two_populations):
    from diffusion_mle import fit_mixture_local

    data = two_populations
    result = fit_mixture_local(2, data['trajectories'], data['blur'],
                               initial_parameters=[[0.05, 0.5, 0.3], [0.05, 1.0, 0.7]],
                               max_cycles=50)

    trace = result.log_likelihood_trace
    assert len(trace) == result.n_cycles + 1
    assert np.all(np.diff(trace) >= -1e-6 * abs(trace[0]))
    assert result.log_likelihood == pytest.approx(trace.max())
    np.testing.assert_allclose(result.responsibilities.sum(axis=1), 1.0)
    assert result.parameters[:, 2].sum() == pytest.approx(1.0)


def test_cycle_budget_exhausted_is_not_converged(two_populations):
    from diffusion_mle import fit_mixture_local

    data = two_populations
    result = fit_mixture_local(2, data['trajectories'], data['blur'],
                               initial_parameters=[[0.05, 0.5], [0.05, 1.0]],
                               max_cycles=2, tolerance=-np.inf)

    assert not result.converged
    assert result.n_cycles == 2


def test_zero_cycles_returns_initial_point(two_populations):
    from diffusion_mle import fit_mixture_local, mixture_log_likelihood

    data = two_populations
    initial = np.array([[0.05, 0.5, 0.4], [0.05, 1.0, 0.6]])
    result = fit_mixture_local(2, data['trajectories'], data['blur'], initial, max_cycles=0)

    np.testing.assert_allclose(result.parameters, initial)
    assert result.n_cycles == 0
    assert result.log_likelihood == pytest.approx(
        mixture_log_likelihood(data['trajectories'], data['blur'], initial))


def test_global_em_recovers_two_populations(two_populations):
    from diffusion_mle import fit_mixture_global

    data = two_populations
    model = fit_mixture_global(2, data['trajectories'], data['blur'],
                               max_local_cycles=100, num_restarts=4,
                               a2_range=(0.0, 0.2), sigma2_range=(0.01, 4.0),
                               n_jobs=1, random_state=1)

    assert model.n_populations == 2
    assert model.converged
    sigma2 = model.parameters[:, 1]
    assert sigma2[0] < sigma2[1]
    np.testing.assert_allclose(sigma2, data['sigma2'], rtol=0.15)
    np.testing.assert_allclose(model.weights, data['weights'], atol=0.1)
    assert np.mean(model.assignments == data['labels']) > 0.95
    assert len(model.restart_log_likelihoods) == 4
    assert model.log_likelihood == pytest.approx(np.max(model.restart_log_likelihoods))


def test_global_em_is_reproducible_across_workers(two_populations):
    from diffusion_mle import fit_mixture_global

    data = two_populations
    kwargs = dict(max_local_cycles=15, num_restarts=3,
                  a2_range=(0.0, 0.2), sigma2_range=(0.01, 4.0), random_state=7)
    serial = fit_mixture_global(2, data['trajectories'], data['blur'], n_jobs=1, **kwargs)
    parallel = fit_mixture_global(2, data['trajectories'], data['blur'], n_jobs=2, **kwargs)

    np.testing.assert_allclose(serial.parameters, parallel.parameters)
    np.testing.assert_allclose(serial.restart_log_likelihoods, parallel.restart_log_likelihoods)


def test_unconverged_global_em_warns(two_populations):
    from diffusion_mle import ConvergenceWarning, fit_mixture_global

    data = two_populations
    with pytest.warns(ConvergenceWarning):
        model = fit_mixture_global(2, data['trajectories'], data['blur'],
                                   max_local_cycles=1, num_restarts=2,
                                   a2_range=(0.0, 0.2), sigma2_range=(0.01, 4.0),
                                   tolerance=-np.inf, n_jobs=1, random_state=0)
    assert not model.converged


def test_random_initial_parameters_within_ranges():
    from diffusion_mle import random_initial_parameters

    rng = np.random.default_rng(0)
    params = random_initial_parameters(4, (0.0, 0.1), (0.5, 2.0), rng)

    assert params.shape == (4, 3)
    assert np.all((params[:, 0] >= 0) & (params[:, 0] <= 0.1))
    assert np.all((params[:, 1] >= 0.5) & (params[:, 1] <= 2.0))
    assert params[:, 2].sum() == pytest.approx(1.0)
    with pytest.raises(ValueError):
        random_initial_parameters(2, (0.1, 0.0), (0.5, 2.0), rng)


def test_parameter_matrix_normalization():
    from diffusion_mle import PopulationParameters, as_parameter_matrix

    matrix = as_parameter_matrix([[0.1, 1.0, 2.0], [0.1, 2.0, 6.0]])
    np.testing.assert_allclose(matrix[:, 2], [0.25, 0.75])

    matrix = as_parameter_matrix(np.array([[0.1, 1.0], [0.2, 2.0]]))
    np.testing.assert_allclose(matrix[:, 2], [0.5, 0.5])

    matrix = as_parameter_matrix([PopulationParameters(0.1, 1.0, 0.5)])
    np.testing.assert_allclose(matrix, [[0.1, 1.0, 1.0]])

    with pytest.raises(ValueError):
        as_parameter_matrix([[0.1, 1.0]], n_populations=2)
    with pytest.raises(ValueError):
        as_parameter_matrix([[0.1, -1.0]])
    with pytest.raises(ValueError):
        as_parameter_matrix([[0.1, 1.0, 0.0]])


def test_responsibilities_favour_generating_population(two_populations):
    from diffusion_mle import responsibilities

    data = two_populations
    truth = [[data['a2'], s2, w] for s2, w in zip(data['sigma2'], data['weights'])]
    resp = responsibilities(data['trajectories'], data['blur'], truth)

    assert resp.shape == (len(data['trajectories']), 2)
    np.testing.assert_allclose(resp.sum(axis=1), 1.0)
    assert np.mean(np.argmax(resp, axis=1) == data['labels']) > 0.95


def test_mixture_model_dataframe(two_populations):
    from diffusion_mle import fit_mixture_global

    data = two_populations
    model = fit_mixture_global(2, data['trajectories'], data['blur'],
                               max_local_cycles=50, num_restarts=2,
                               a2_range=(0.0, 0.2), sigma2_range=(0.01, 4.0),
                               n_jobs=1, random_state=3)
    df = model.to_dataframe(frame_interval=0.5)

    assert list(df['population']) == [0, 1]
    assert df['n_assigned'].sum() == len(data['trajectories'])
    np.testing.assert_allclose(df['diffusion_coefficient'], df['sigma2'])


@pytest.mark.slow
def test_global_em_recovers_three_populations():
    """Three populations with sigma2 0.1, 1 and 10 mixed 3:4:3."""
    from diffusion_mle import fit_mixture_global

    rng = np.random.default_rng(11)
    trajectories, labels = simulate_mixture(rng, (300, 400, 300), 20, 0.05, (0.1, 1.0, 10.0), 1 / 6)
    model = fit_mixture_global(3, trajectories, 1 / 6,
                               max_local_cycles=200, num_restarts=10,
                               a2_range=(0.0, 1.0), sigma2_range=(0.01, 20.0),
                               random_state=5)

    np.testing.assert_allclose(model.parameters[:, 1], [0.1, 1.0, 10.0], rtol=0.15)
    np.testing.assert_allclose(model.weights, [0.3, 0.4, 0.3], atol=0.05)
    assert np.mean(model.assignments == labels) > 0.9
