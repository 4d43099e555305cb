"""
Diffusion Analyzer

High-level interface that runs single-population and mixture fits,
error bars and goodness-of-fit checks on one trajectory collection.
"""

import numpy as np
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .estimation import ParameterEstimate, fit_population
from .goodness_of_fit import KuiperResult, kuiper_statistic, quality_factors
from .mixture import MixtureModel, fit_mixture_global
from .partition import population_errors
from .trajectory import DisplacementBatch, to_list


@dataclass
class AnalysisParameters:
    """
    Parameters for diffusion analysis.

    EM Parameters:
    - max_local_cycles: Maximum number of EM cycles per local run
    - num_restarts: Number of random restarts in global EM
    - tolerance: Local EM stops when the log-likelihood gains less than this
    - a2_range: Range of initial localization variances. If None, derived
                from the mean squared step S0 of the data as [0, S0/2].
    - sigma2_range: Range of initial diffusive variances. If None,
                    [S0/100, 2 S0].

    Execution Parameters:
    - n_jobs: Parallel workers for global EM (-1 = all cores)
    - random_state: Seed for the EM starting points

    Physical Parameters:
    - frame_interval: Time between frames (e.g., seconds), used to report
                      D = sigma2 / (2 frame_interval)
    """
    # EM parameters
    max_local_cycles: int = 200
    num_restarts: int = 20
    tolerance: float = 1e-3
    a2_range: Optional[Tuple[float, float]] = None
    sigma2_range: Optional[Tuple[float, float]] = None

    # Execution
    n_jobs: int = -1
    random_state: Optional[int] = None

    # Physical parameters
    frame_interval: float = 1.0


class DiffusionAnalyzer:
    """
    Main analysis class.

    Parameters
    ----------
    params : AnalysisParameters, optional
        Analysis parameters. If None, defaults are used.

    Examples
    --------
    >>> analyzer = DiffusionAnalyzer(AnalysisParameters(frame_interval=0.05))
    >>> analyzer.load_trajectories(trajectories, blur_coefficients=1/6)
    >>> analyzer.fit_single()
    >>> analyzer.goodness_of_fit().kappa
    >>> analyzer.fit_mixture(2)
    >>> df = analyzer.get_summary_dataframe()
    """

    def __init__(self, params: Optional[AnalysisParameters] = None):
        self.params = params or AnalysisParameters()
        self._trajectories: Optional[list] = None
        self._blur: Optional[np.ndarray] = None
        self._batch: Optional[DisplacementBatch] = None
        self._single: Optional[ParameterEstimate] = None
        self._mixture: Optional[MixtureModel] = None
        self._population_errors: Optional[List[ParameterEstimate]] = None

    @property
    def trajectories(self) -> Optional[list]:
        """Loaded trajectories."""
        return self._trajectories

    @property
    def n_trajectories(self) -> int:
        return len(self._trajectories) if self._trajectories else 0

    @property
    def single_population(self) -> Optional[ParameterEstimate]:
        """Result of the last single-population fit."""
        return self._single

    @property
    def mixture(self) -> Optional[MixtureModel]:
        """Result of the last mixture fit."""
        return self._mixture

    def load_trajectories(self, trajectories: Sequence, blur_coefficients) -> 'DiffusionAnalyzer':
        """
        Load trajectories and their blur coefficients.

        Parameters
        ----------
        trajectories : sequence
            Trajectories of shape (N,) or (N, d)
        blur_coefficients : float or array_like
            Motion blur coefficient per trajectory, or one value for all

        Returns
        -------
        self : DiffusionAnalyzer
            For method chaining
        """
        self._trajectories = to_list(trajectories)
        self._batch = DisplacementBatch(self._trajectories, blur_coefficients)
        self._blur = self._batch.blur

        # Reset results
        self._single = None
        self._mixture = None
        self._population_errors = None
        return self

    def _require_data(self):
        if self._batch is None:
            raise ValueError("No trajectories loaded. Call load_trajectories() first.")

    def search_ranges(self) -> Tuple[Tuple[float, float], Tuple[float, float]]:
        """Initial-value ranges for global EM (configured or data-derived)."""
        self._require_data()
        s0, _, _ = self._batch.step_moments()
        a2_range = self.params.a2_range or (0.0, 0.5 * s0)
        sigma2_range = self.params.sigma2_range or (0.01 * s0, 2.0 * s0)
        return a2_range, sigma2_range

    def fit_single(self, compute_errors: bool = True) -> ParameterEstimate:
        """
        Fit a single diffusive population.

        Returns
        -------
        result : ParameterEstimate
        """
        self._require_data()
        self._single = fit_population(None, self._batch, compute_errors=compute_errors)
        return self._single

    def fit_mixture(self, n_populations: int, verbose: bool = False) -> MixtureModel:
        """
        Fit a mixture of populations with global EM.

        Parameters
        ----------
        n_populations : int
            Number of populations K
        verbose : bool
            Print progress

        Returns
        -------
        model : MixtureModel
        """
        self._require_data()
        a2_range, sigma2_range = self.search_ranges()
        self._mixture = fit_mixture_global(
            n_populations,
            self._batch,
            None,
            max_local_cycles=self.params.max_local_cycles,
            num_restarts=self.params.num_restarts,
            a2_range=a2_range,
            sigma2_range=sigma2_range,
            tolerance=self.params.tolerance,
            n_jobs=self.params.n_jobs,
            random_state=self.params.random_state,
            verbose=verbose
        )
        self._population_errors = None
        return self._mixture

    def goodness_of_fit(self, assignment: str = 'weighted') -> KuiperResult:
        """
        Kuiper test of the mixture fit if present, else the single-population fit.

        Parameters
        ----------
        assignment : {'weighted', 'hard'}
            How mixture trajectories enter the test

        Returns
        -------
        result : KuiperResult
        """
        self._require_data()
        if self._mixture is not None:
            qf = quality_factors(self._mixture.n_populations, self._mixture.responsibilities,
                                 self._mixture.populations, None, self._batch, assignment)
        elif self._single is not None:
            qf = quality_factors(1, None, [self._single.as_parameters()], None, self._batch)
        else:
            raise ValueError("No fit available. Call fit_single() or fit_mixture() first.")
        return kuiper_statistic(qf)

    def population_errors(self) -> List[ParameterEstimate]:
        """
        Per-population standard errors of the mixture fit.

        Returns
        -------
        estimates : list of ParameterEstimate
        """
        self._require_data()
        if self._mixture is None:
            raise ValueError("No mixture fit. Call fit_mixture() first.")
        if self._population_errors is None:
            self._population_errors = population_errors(self._mixture, self._blur, self._trajectories)
        return self._population_errors

    def scan_populations(self, n_populations: Sequence[int] = (1, 2, 3),
                         verbose: bool = False) -> Dict[int, KuiperResult]:
        """
        Goodness of fit for several numbers of populations.

        The mixture for the last K in ``n_populations`` stays loaded.

        Returns
        -------
        results : dict
            Kuiper result per K
        """
        results = {}
        for k in n_populations:
            self.fit_mixture(k, verbose=verbose)
            results[k] = self.goodness_of_fit()
            if verbose:
                print(f"K={k}: kappa={results[k].kappa:.3f}, p={results[k].p_value:.3g}")
        return results

    def get_summary_dataframe(self):
        """
        Export fitted parameters as pandas DataFrame.

        Returns
        -------
        df : pandas.DataFrame
            One row per population of the mixture fit, or one row for the
            single-population fit
        """
        import pandas as pd

        dt = self.params.frame_interval
        if self._mixture is not None:
            df = self._mixture.to_dataframe(frame_interval=dt)
            errors = self.population_errors()
            df['a2_error'] = [e.a2_error for e in errors]
            df['sigma2_error'] = [e.sigma2_error for e in errors]
            df['diffusion_coefficient_error'] = [e.diffusion_coefficient_error(dt) for e in errors]
            return df

        if self._single is None:
            raise ValueError("No fit available. Call fit_single() or fit_mixture() first.")
        s = self._single
        return pd.DataFrame([{
            'population': 0,
            'a2': s.a2,
            'sigma2': s.sigma2,
            'weight': 1.0,
            'localization_error': s.localization_error,
            'diffusion_coefficient': s.diffusion_coefficient(dt),
            'n_assigned': s.n_trajectories,
            'a2_error': s.a2_error,
            'sigma2_error': s.sigma2_error,
            'diffusion_coefficient_error': s.diffusion_coefficient_error(dt)
        }])

    def __repr__(self):
        return (f"DiffusionAnalyzer(n_trajectories={self.n_trajectories}, "
                f"single_fit={self._single is not None}, "
                f"mixture_K={self._mixture.n_populations if self._mixture else None})")
