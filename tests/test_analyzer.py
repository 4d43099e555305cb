"""High-level DiffusionAnalyzer workflow."""

import numpy as np
import pytest


def test_requires_data_before_fitting():
    from diffusion_mle import DiffusionAnalyzer

    analyzer = DiffusionAnalyzer()
    with pytest.raises(ValueError, match="load_trajectories"):
        analyzer.fit_single()
    with pytest.raises(ValueError, match="load_trajectories"):
        analyzer.fit_mixture(2)


def test_requires_fit_before_goodness_of_fit(single_population):
    from diffusion_mle import DiffusionAnalyzer

    data = single_population
    analyzer = DiffusionAnalyzer().load_trajectories(data['trajectories'], data['blur'])
    with pytest.raises(ValueError, match="fit_single"):
        analyzer.goodness_of_fit()
    with pytest.raises(ValueError, match="fit_mixture"):
        analyzer.population_errors()


def test_single_population_workflow(single_population):
    from diffusion_mle import AnalysisParameters, DiffusionAnalyzer

    data = single_population
    analyzer = DiffusionAnalyzer(AnalysisParameters(frame_interval=0.1))
    analyzer.load_trajectories(data['trajectories'], data['blur'])

    result = analyzer.fit_single()
    assert result.sigma2 == pytest.approx(data['sigma2'], rel=0.05)
    assert analyzer.goodness_of_fit().kappa < 2.5

    df = analyzer.get_summary_dataframe()
    assert len(df) == 1
    assert df.loc[0, 'diffusion_coefficient'] == pytest.approx(result.sigma2 / 0.2)
    assert np.isfinite(df.loc[0, 'sigma2_error'])


def test_mixture_workflow(two_populations):
    from diffusion_mle import AnalysisParameters, DiffusionAnalyzer

    data = two_populations
    params = AnalysisParameters(max_local_cycles=100, num_restarts=4, n_jobs=1, random_state=0)
    analyzer = DiffusionAnalyzer(params).load_trajectories(data['trajectories'], data['blur'])

    a2_range, sigma2_range = analyzer.search_ranges()
    assert a2_range[0] == 0.0 and sigma2_range[1] > sigma2_range[0] > 0

    model = analyzer.fit_mixture(2)
    np.testing.assert_allclose(model.parameters[:, 1], data['sigma2'], rtol=0.15)
    assert analyzer.goodness_of_fit().kappa < 2.5

    df = analyzer.get_summary_dataframe()
    expected = {'population', 'a2', 'sigma2', 'weight', 'localization_error',
                'diffusion_coefficient', 'n_assigned', 'a2_error', 'sigma2_error',
                'diffusion_coefficient_error'}
    assert expected <= set(df.columns)
    assert len(df) == 2
    assert df['n_assigned'].sum() == len(data['trajectories'])


def test_scan_detects_number_of_populations(two_populations):
    from diffusion_mle import AnalysisParameters, DiffusionAnalyzer

    data = two_populations
    params = AnalysisParameters(max_local_cycles=100, num_restarts=3, n_jobs=1, random_state=0)
    analyzer = DiffusionAnalyzer(params).load_trajectories(data['trajectories'], data['blur'])

    results = analyzer.scan_populations((1, 2))
    assert results[1].kappa > 3
    assert results[2].kappa < 2.5
    assert analyzer.mixture.n_populations == 2


def test_loading_resets_results(single_population):
    from diffusion_mle import DiffusionAnalyzer

    data = single_population
    analyzer = DiffusionAnalyzer().load_trajectories(data['trajectories'], data['blur'])
    analyzer.fit_single(compute_errors=False)
    assert analyzer.single_population is not None

    analyzer.load_trajectories(data['trajectories'][:50], data['blur'])
    assert analyzer.single_population is None
    assert analyzer.n_trajectories == 50
    assert "n_trajectories=50" in repr(analyzer)
