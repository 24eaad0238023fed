import pandas as pd
import numpy as np
import logging
from typing import Optional, Union, Tuple, List, Sequence

import matplotlib.pyplot as plt

from lifelines import KaplanMeierFitter
from lifelines.exceptions import StatisticalWarning

import warnings

from .bootstrap import BootstrapResult, ClusterBootstrap
from .panel import truncate_at_event, validate_panel
from .regimes import Regime, coerce_regimes, evaluate_regime, threshold_regimes, weighted_estimate
from .exceptions import DataShapeError, DivisionUndefined
from .weights import PooledLogisticWeightProvider

logging.basicConfig(
    level = logging.INFO,
    format = '%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

class RegimeIPWEstimator:
    """
    This class estimates time-varying inverse probability of treatment weights (IPTWs)
    for an absorbing treatment such as liver transplant, and uses them to estimate the
    outcome under "treat from visit x onwards" regimes in longitudinal clinical data.

    Subjects whose observed treatment path matches a regime at every visit are
    weighted by their cumulative IPTW at their last visit; all others get zero weight.
    Standard errors come from a cluster bootstrap over subjects.

    The implementation includes:
        - Pooled logistic treatment model with the same preprocessing pipeline
          (imputation, scaling, one-hot encoding) for every visit
        - Optional stabilized weights and propensity clipping
        - Regime compliance and weighted point estimates for x = 0..max visit and never
        - Cluster bootstrap standard errors, reusing or refitting the weights
        - Weighted Kaplan-Meier survival among compliant subjects

    Methods
    -------
    fit(...)
        Validate the panel and store the treatment model specification.
    transform()
        Fit the treatment model and compute cumulative IPTWs per visit.
    fit_transform(...)
        Convenience wrapper for `.fit()` followed by `.transform()`.
    weight_distribution_plot(...)
        Histogram of last-visit weights by final treatment status.
    regime_estimates(...)
        Point estimate and number of compliant subjects per regime.
    bootstrap_standard_errors(...)
        Cluster bootstrap standard errors per regime.
    regime_table()
        Point estimates joined with bootstrap standard errors, keyed by regime.
    regime_survival_curves(...)
        IPTW-weighted Kaplan-Meier survival curves among compliant subjects.
    regime_estimate_plot(...)
        Point estimates with bootstrap 95% intervals by regime.
    """

    def __init__(self):
        self.id_col = None
        self.time_col = None
        self.treatment_col = None
        self.status_col = None
        self.outcome_col = None
        self.max_visit = None
        self.panel_ = None
        self.provider_ = None

        self.weight_col = 'ipw'
        self.weights_ = None
        self.regime_estimates_ = None
        self.bootstrap_result_ = None
        self.bootstrap_standard_errors_ = None
        self.regime_survival_curves_ = None

    def fit(self,
            df: pd.DataFrame,
            id_col: str = 'id',
            time_col: str = 'visit',
            treatment_col: str = 'transplant',
            status_col: Optional[str] = 'death',
            outcome_col: Optional[str] = None,
            cat_var: Optional[List[str]] = None,
            cont_var: Optional[List[str]] = None,
            binary_var: Optional[List[str]] = None,
            lr_kwargs: Optional[dict] = None,
            clip_bounds: Optional[Union[Tuple[float, float], List[float]]] = None,
            stabilized: bool = False,
            use_missing_flags: bool = True,
            truncate_at_death: bool = True) -> None:
        """
        Validate the panel and configure the treatment model.

        Parameters
        ----------
        df : pd.DataFrame
            Long-format panel, one row per subject-visit.
        id_col : str
            Subject identifier.
        time_col : str
            Visit index, 0 at baseline and strictly increasing within a subject.
        treatment_col : str
            Binary treatment indicator (0/1) that stays 1 once treatment starts. Must be
            of integer type.
        status_col : str, optional
            Binary death indicator. Required by `.regime_survival_curves()` and by
            `truncate_at_death`.
        outcome_col : str, optional
            Column averaged by the regime estimates at each subject's last visit.
            Defaults to `treatment_col`.
        cat_var : list of str, optional
            Categorical covariates to be one-hot encoded (e.g. edema). Must contain no
            missing values.
        cont_var : list of str, optional
            Continuous covariates to be imputed (median) and scaled (e.g. age,
            bilirubin, albumin, prothrombin time).
        binary_var : list of str, optional
            Binary covariates passed through without transformation (e.g. sex).
        lr_kwargs : dict, optional
            Additional keyword arguments passed to sklearn's LogisticRegression.
        clip_bounds : tuple of float or list of float, optional
            If provided, clip treatment probabilities to this (min, max) range.
        stabilized : bool, default = False
            If True, weights are stabilized by a numerator model on visit index.
        use_missing_flags : bool, default = True
            If True, add a `<col>_missing` indicator for every continuous covariate
            with missing values.
        truncate_at_death : bool, default = True
            If True, drop records after each subject's first death record.

        Returns
        -------
        None
            Updates internal state. Use .transform() to calculate weights.

        Notes
        -----
        At least one of cat_var, cont_var, or binary_var must be provided.
        """
        if not isinstance(df, pd.DataFrame):
            raise ValueError("df must be a pandas DataFrame.")
        if treatment_col in df.columns and not pd.api.types.is_integer_dtype(df[treatment_col]):
            raise ValueError('treatment_col must be of integer type.')
        if not isinstance(truncate_at_death, bool):
            raise ValueError("truncate_at_death must be a boolean (True or False).")
        if truncate_at_death and status_col is None:
            raise ValueError("status_col is required when truncate_at_death is True.")

        extra_cols = [c for c in [status_col, outcome_col] if c is not None]
        panel = validate_panel(df, id_col, time_col, treatment_col, extra_cols)
        if truncate_at_death:
            panel = truncate_at_event(panel, id_col, time_col, status_col)
        if outcome_col is not None and panel[outcome_col].isnull().any():
            raise DataShapeError(f"Column '{outcome_col}' has missing values.")

        self.provider_ = PooledLogisticWeightProvider(
            cat_var = cat_var,
            cont_var = cont_var,
            binary_var = binary_var,
            stabilized = stabilized,
            lr_kwargs = lr_kwargs,
            clip_bounds = clip_bounds,
            use_missing_flags = use_missing_flags,
            weight_col = self.weight_col
        )
        self.provider_._check_covariates(panel)

        self.id_col = id_col
        self.time_col = time_col
        self.treatment_col = treatment_col
        self.status_col = status_col
        self.outcome_col = outcome_col or treatment_col
        self.max_visit = int(panel[time_col].max())
        self.panel_ = panel

        self.weights_ = None
        self.regime_estimates_ = None
        self.bootstrap_result_ = None
        self.bootstrap_standard_errors_ = None

    def transform(self) -> pd.DataFrame:
        """
        Calculate cumulative IPTW for every subject-visit.

        Returns
        -------
        pd.DataFrame
        A copy of the validated panel with an added 'ipw' column.

        Notes
        -----
        Must call `.fit()` before calling `.transform()`.
        Per visit at which the subject is still untreated:
            - If treatment starts: factor = 1 / P(start | covariates, visit)
            - If not: factor = 1 / (1 - P(start | covariates, visit))
            - Visits after treatment start: factor = 1
        The weight at a visit is the product of the factors up to that visit.
        """
        if self.panel_ is None:
            raise ValueError("Panel was not validated. Did you forget to run .fit() first?")

        df = self.panel_.copy()
        df[self.weight_col] = self.provider_.fit(
            df,
            exposure_col = self.treatment_col,
            id_col = self.id_col,
            time_col = self.time_col
        )
        self.weights_ = df
        return df

    def fit_transform(self,
                      *args,
                      **kwargs) -> pd.DataFrame:
        """
        Validate the panel and compute IPTW in one step.

        Returns
        -------
        pd.DataFrame
            The panel with an 'ipw' column added.
        """
        self.fit(*args, **kwargs)
        return self.transform()

    def _require_weights(self, method: str) -> None:
        if self.weights_ is None:
            raise ValueError(f"No weights found. Please run .fit() and .transform() or .fit_transform() before calling {method}().")

    def _columns(self) -> dict:
        return dict(
            id_col = self.id_col,
            time_col = self.time_col,
            treatment_col = self.treatment_col,
            weight_col = self.weight_col,
            outcome_col = self.outcome_col
        )

    def _resolve_regimes(self, regimes) -> List[Regime]:
        if regimes is None:
            return threshold_regimes(self.max_visit, include_never = True)
        return coerce_regimes(regimes)

    def weight_distribution_plot(self,
                                 bins: int = 20):
        """
        Generates a histogram of each subject's last-visit weight, mirrored by whether
        the subject was treated by that visit.

        Parameters
        ----------
        bins : int, default = 20
            Number of bins for the histogram

        Returns
        -------
        matplotlib.figure.Figure
        """
        self._require_weights('weight_distribution_plot')

        if not isinstance(bins, int) or bins <= 0:
            raise ValueError("bins must be a positive integer.")

        last = self.weights_.groupby(self.id_col).tail(1)
        treated = last.loc[last[self.treatment_col] == 1, self.weight_col]
        untreated = last.loc[last[self.treatment_col] == 0, self.weight_col]

        fig, ax = plt.subplots(figsize=(8, 5))

        ax.hist(treated,
                 bins = bins,
                 alpha = 0.3,
                 label = 'Treated',
                 color = 'blue',
                 edgecolor='black')

        # Negative counts flip the untreated histogram below the axis
        ax.hist(untreated,
                 bins = bins,
                 weights= -np.ones_like(untreated),
                 alpha = 0.3,
                 label = 'Untreated',
                 color = 'green',
                 edgecolor = 'black')

        ax.set_title('Last-Visit IPTW Distribution by Treatment Status', pad = 25, size = 18, weight = 'bold')
        ax.set_xlabel('Cumulative IPTW', labelpad = 15, size = 12, weight = 'bold')
        ax.set_ylabel('Count', labelpad = 15, size = 12, weight = 'bold')
        ax.spines['top'].set_visible(False)
        ax.spines['right'].set_visible(False)

        yticks = ax.get_yticks()
        ax.set_yticks(yticks)
        ax.set_yticklabels([f'{abs(int(tick))}' for tick in yticks])

        ax.legend(prop = {'size': 10})

        fig.tight_layout()
        plt.close(fig)
        return fig

    def regime_estimates(self,
                         regimes: Optional[Sequence[Union[Regime, int, None]]] = None) -> pd.DataFrame:
        """
        Estimate the weighted mean outcome under each regime on the observed panel.

        Parameters
        ----------
        regimes : sequence of Regime or int or None, optional
            Regimes or thresholds to evaluate. Defaults to x = 0..max visit and never.

        Returns
        -------
        pd.DataFrame
            Contains:
                - regime : regime label ('x=2', 'never')
                - threshold : x, or missing for never
                - point_estimate : weighted mean, NaN if no subject complies
                - n_compliant : number of compliant subjects
        """
        self._require_weights('regime_estimates')
        regimes = self._resolve_regimes(regimes)

        records = []
        for regime in regimes:
            rows = evaluate_regime(self.weights_, regime, **self._columns())
            try:
                estimate = weighted_estimate(rows)
            except DivisionUndefined:
                logger.warning(f"Regime {regime.label}: no compliant subjects, estimate is undefined.")
                estimate = np.nan
            records.append({
                'regime': regime.label,
                'threshold': regime.threshold,
                'point_estimate': estimate,
                'n_compliant': int(rows['compliant'].sum())
            })

        results_df = pd.DataFrame(records)
        results_df['threshold'] = results_df['threshold'].astype('Int64')
        self.regime_estimates_ = results_df
        return results_df

    def bootstrap_standard_errors(self,
                                  regimes: Optional[Sequence[Union[Regime, int, None]]] = None,
                                  n_bootstrap: int = 200,
                                  random_state: Optional[int] = None,
                                  refit_weights: bool = False,
                                  n_jobs: int = 1) -> pd.DataFrame:
        """
        Estimate the standard error of each regime estimate with a cluster bootstrap
        over subjects.

        Parameters
        ----------
        regimes : sequence of Regime or int or None, optional
            Defaults to x = 0..max visit and never.
        n_bootstrap : int, default = 200
            Number of bootstrap replicates.
        random_state : int, optional
            Seed for reproducibility of the resampling. To also fix the treatment model
            when refitting, pass random_state in lr_kwargs to `.fit()`.
        refit_weights : bool, default = False
            If True, the treatment model is refit on every replicate. Otherwise every
            copy of a subject reuses the weights fitted on the observed panel.
        n_jobs : int, default = 1
            Number of joblib workers.

        Returns
        -------
        pd.DataFrame
            Contains:
                - regime : regime label
                - bootstrap_standard_error : SD of the defined replicate estimates
                - n_failed : replicates whose estimate was undefined and excluded

        Notes
        -----
        A regime with fewer than two defined replicate estimates (always the case
        when n_bootstrap = 1) gets a NaN standard error and a ResampleDegenerate
        warning.
        """
        self._require_weights('bootstrap_standard_errors')
        regimes = self._resolve_regimes(regimes)

        engine = ClusterBootstrap(
            n_bootstrap = n_bootstrap,
            random_state = random_state,
            weight_provider = self.provider_,
            refit_weights = refit_weights,
            n_jobs = n_jobs,
            **self._columns()
        )
        result: BootstrapResult = engine.run(self.weights_, regimes)

        se_df = pd.concat([result.standard_errors(), result.failed_counts()], axis = 1)
        se_df = se_df.rename_axis('regime').reset_index()

        self.bootstrap_result_ = result
        self.bootstrap_standard_errors_ = se_df
        return se_df

    def regime_table(self) -> pd.DataFrame:
        """
        Point estimates joined with bootstrap standard errors, one row per regime.

        Notes
        -----
        Requires `.regime_estimates()` and `.bootstrap_standard_errors()` to have been
        run. Regimes missing from the bootstrap get a NaN standard error.
        """
        if self.regime_estimates_ is None or self.bootstrap_standard_errors_ is None:
            raise ValueError("Please run .regime_estimates() and .bootstrap_standard_errors() before calling regime_table().")
        return pd.merge(self.regime_estimates_, self.bootstrap_standard_errors_, on = 'regime', how = 'left')

    def regime_survival_curves(self,
                               regimes: Optional[Sequence[Union[Regime, int, None]]] = None) -> pd.DataFrame:
        """
        IPTW-weighted Kaplan-Meier survival among subjects compliant with each regime.

        Each subject's duration is its last visit index and its event is the death
        status recorded at that visit; the weight is the last-visit IPTW.

        Returns
        -------
        pd.DataFrame
            Contains a 'time' column on the common grid of observed durations and one
            survival column per regime label. A regime with no compliant subjects has
            an all-NaN column.
        """
        self._require_weights('regime_survival_curves')
        if self.status_col is None or self.status_col not in self.weights_.columns:
            raise ValueError("status_col is required for regime_survival_curves(); pass it to .fit().")
        regimes = self._resolve_regimes(regimes)

        last = self.weights_.groupby(self.id_col).tail(1).set_index(self.id_col)
        durations = last[self.time_col]
        events = last[self.status_col].fillna(0).astype(int)
        time = np.unique(durations)

        curves = pd.DataFrame({'time': time})
        for regime in regimes:
            rows = evaluate_regime(self.weights_, regime, **self._columns())
            ids = rows.index[(rows['compliant'] == 1) & (rows['weight'] > 0)]
            if len(ids) == 0:
                logger.warning(f"Regime {regime.label}: no compliant subjects, survival curve is undefined.")
                curves[regime.label] = np.nan
                continue

            km = KaplanMeierFitter()
            with warnings.catch_warnings():
                warnings.filterwarnings("ignore", category = StatisticalWarning)
                km.fit(
                    durations = durations.loc[ids],
                    event_observed = events.loc[ids],
                    timeline = time,
                    weights = rows.loc[ids, 'weight']
                )
            curves[regime.label] = km.survival_function_['KM_estimate'].values

        self.regime_survival_curves_ = curves
        return curves

    def regime_estimate_plot(self):
        """
        Plot regime point estimates with bootstrap 95% intervals
        (estimate +/- 1.96 * SE). The never-treat regime is drawn one step to the
        right of the largest threshold.

        Returns
        -------
        matplotlib.figure.Figure
        """
        table = self.regime_table()

        positions = table['threshold'].astype('float').to_numpy()
        positions = np.where(np.isnan(positions), np.nanmax(np.append(positions, -1)) + 1, positions)

        fig, ax = plt.subplots(figsize=(8, 5))
        ax.errorbar(positions,
                    table['point_estimate'],
                    yerr = 1.96 * table['bootstrap_standard_error'],
                    fmt = 'o',
                    color = 'blue',
                    ecolor = 'black',
                    capsize = 4)

        ax.set_xticks(positions)
        ax.set_xticklabels(table['regime'])
        ax.set_title('Regime Estimates with Bootstrap 95% Intervals', pad = 20, size = 18, weight = 'bold')
        ax.set_xlabel('Regime', labelpad = 15, size = 12, weight = 'bold')
        ax.set_ylabel('Weighted Estimate', labelpad = 15, size = 12, weight = 'bold')
        ax.spines['top'].set_visible(False)
        ax.spines['right'].set_visible(False)

        fig.tight_layout()
        plt.close(fig)
        return fig
