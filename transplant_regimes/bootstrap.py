"""
Cluster bootstrap over subjects for regime estimates.

Each replicate resamples subjects with replacement, rebuilds their full visit
histories, and re-evaluates every regime. Duplicate draws of a subject become
separate synthetic subjects. Replicate i draws from its own generator, spawned
from the master seed, so results do not depend on `n_jobs`.
"""
import copy
import logging
import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from .exceptions import DivisionUndefined, ResampleDegenerate
from .regimes import Regime, coerce_regimes, evaluate_regime, weighted_estimate
from .weights import PropensityWeightProvider

logger = logging.getLogger(__name__)


@dataclass(frozen = True)
class ReplicateResult:
    """
    Outcome of one bootstrap replicate.

    `estimates` maps each regime to its estimate; NaN marks an undefined one.
    `error` holds the message of a replicate-wide failure (e.g. a refit that
    raised), in which case every estimate is NaN.
    """
    replicate: int
    draws: Tuple
    estimates: Dict[Regime, float] = field(hash = False)
    error: Optional[str] = None


@dataclass(frozen = True)
class BootstrapResult:
    regimes: Tuple[Regime, ...]
    replicates: Tuple[ReplicateResult, ...]
    ddof: int = 1

    @property
    def n_bootstrap(self) -> int:
        return len(self.replicates)

    @property
    def estimates(self) -> pd.DataFrame:
        """Replicate-by-regime matrix of estimates, columns labelled by regime."""
        return pd.DataFrame(
            [[rep.estimates[r] for r in self.regimes] for rep in self.replicates],
            index = pd.Index([rep.replicate for rep in self.replicates], name = 'replicate'),
            columns = [r.label for r in self.regimes]
        )

    def failed_counts(self) -> pd.Series:
        """Number of replicates with an undefined estimate, per regime."""
        return self.estimates.isna().sum().rename('n_failed')

    def standard_errors(self) -> pd.Series:
        """
        Sample standard deviation of each regime's defined replicate estimates.

        Undefined replicates are excluded. A regime with fewer than two defined
        estimates gets NaN and a ResampleDegenerate warning. Identical defined
        estimates give 0.0, also with a ResampleDegenerate warning.
        """
        estimates = self.estimates
        se = {}
        for label in estimates.columns:
            defined = estimates[label].dropna().to_numpy()
            if len(defined) < 2:
                warnings.warn(
                    f"Regime {label}: only {len(defined)} of {self.n_bootstrap} bootstrap estimates "
                    "are defined; standard error is undefined.",
                    ResampleDegenerate
                )
                se[label] = np.nan
            else:
                se[label] = float(np.std(defined, ddof = self.ddof))
                if se[label] == 0.0:
                    warnings.warn(
                        f"Regime {label}: all {len(defined)} defined bootstrap estimates are identical; "
                        "the zero standard error reflects no resampling variability.",
                        ResampleDegenerate
                    )
        return pd.Series(se, name = 'bootstrap_standard_error')


class ClusterBootstrap:
    """
    Cluster bootstrap engine for regime estimates.

    Parameters
    ----------
    n_bootstrap : int, default = 200
        Number of replicates B.
    random_state : int, optional
        Master seed. Identical seeds reproduce identical draws and results.
    weight_provider : PropensityWeightProvider, optional
        Required when `refit_weights=True`; the provider is refit on every replicate.
    refit_weights : bool, default = False
        If False, each copy of a subject reuses that subject's weights from the fit on
        the observed panel.
    n_jobs : int, default = 1
        Number of joblib workers running replicates.
    id_col, time_col, treatment_col, weight_col, outcome_col : str
        Panel columns; `outcome_col` defaults to `treatment_col`.
    """

    boot_id_col = 'boot_id'
    copy_col = 'copy'

    def __init__(self,
                 n_bootstrap: int = 200,
                 random_state: Optional[int] = None,
                 weight_provider: Optional[PropensityWeightProvider] = None,
                 refit_weights: bool = False,
                 n_jobs: int = 1,
                 id_col: str = 'id',
                 time_col: str = 'visit',
                 treatment_col: str = 'transplant',
                 weight_col: str = 'ipw',
                 outcome_col: Optional[str] = None):

        if not isinstance(n_bootstrap, int) or n_bootstrap <= 0:
            raise ValueError("n_bootstrap must be a positive integer.")
        if random_state is not None and not isinstance(random_state, int):
            raise ValueError("random_state must be an integer or None.")
        if not isinstance(refit_weights, bool):
            raise ValueError("refit_weights must be a boolean (True or False).")
        if refit_weights and weight_provider is None:
            raise ValueError("weight_provider is required when refit_weights is True.")

        self.n_bootstrap = n_bootstrap
        self.random_state = random_state
        self.weight_provider = weight_provider
        self.refit_weights = refit_weights
        self.n_jobs = n_jobs
        self.id_col = id_col
        self.time_col = time_col
        self.treatment_col = treatment_col
        self.weight_col = weight_col
        self.outcome_col = outcome_col or treatment_col

    def replicate_rngs(self) -> List[np.random.Generator]:
        """One independent generator per replicate, derived from the master seed."""
        children = np.random.SeedSequence(self.random_state).spawn(self.n_bootstrap)
        return [np.random.default_rng(child) for child in children]

    def draw(self, ids: Sequence, rng: np.random.Generator) -> pd.DataFrame:
        """
        Sample as many subject ids as there are subjects, with replacement.

        Returns
        -------
        pd.DataFrame
            One row per draw with columns:
                `boot_id` : position of the draw, the synthetic subject id
                `id_col` : the original subject drawn
                `copy` : k for the k-th draw of the same original subject
        """
        sampled = rng.choice(np.asarray(ids), size = len(ids), replace = True)
        draws = pd.DataFrame({self.boot_id_col: np.arange(len(sampled)), self.id_col: sampled})
        draws[self.copy_col] = draws.groupby(self.id_col).cumcount()
        return draws

    def replicate_panel(self, panel: pd.DataFrame, draws: pd.DataFrame) -> pd.DataFrame:
        """
        Expand each draw into the original subject's visit history.

        Draws are crossed with the full visit grid 0..max visit and joined to the
        observed records; grid visits the subject never had (after death or end of
        follow-up) find no record and drop out.
        """
        visits = pd.DataFrame({self.time_col: np.arange(int(panel[self.time_col].max()) + 1)})
        grid = draws.merge(visits, how = 'cross')
        replicate = grid.merge(panel, on = [self.id_col, self.time_col], how = 'inner')
        return replicate.sort_values([self.boot_id_col, self.time_col]).reset_index(drop = True)

    def _estimate(self, panel: pd.DataFrame, regime: Regime) -> float:
        rows = evaluate_regime(
            panel,
            regime,
            id_col = self.boot_id_col,
            time_col = self.time_col,
            treatment_col = self.treatment_col,
            weight_col = self.weight_col,
            outcome_col = self.outcome_col
        )
        try:
            return weighted_estimate(rows)
        except DivisionUndefined:
            return np.nan

    def _run_replicate(self,
                       index: int,
                       panel: pd.DataFrame,
                       ids: np.ndarray,
                       regimes: List[Regime],
                       rng: np.random.Generator) -> ReplicateResult:
        draws = self.draw(ids, rng)
        replicate = self.replicate_panel(panel, draws)
        drawn = tuple(draws[self.id_col].tolist())

        if self.refit_weights:
            try:
                provider = copy.deepcopy(self.weight_provider)
                replicate[self.weight_col] = provider.fit(
                    replicate,
                    exposure_col = self.treatment_col,
                    id_col = self.boot_id_col,
                    time_col = self.time_col
                )
            except ValueError as e:
                logger.warning(f"Replicate {index}: weight refit failed ({e}).")
                return ReplicateResult(index, drawn, {r: np.nan for r in regimes}, error = str(e))

        estimates = {r: self._estimate(replicate, r) for r in regimes}
        return ReplicateResult(index, drawn, estimates)

    def run(self,
            panel: pd.DataFrame,
            regimes: Sequence[Union[Regime, int, None]]) -> BootstrapResult:
        """
        Run all replicates.

        Parameters
        ----------
        panel : pd.DataFrame
            Observed subject-visit panel. Must carry `weight_col` unless weights are
            refit per replicate.
        regimes : sequence of Regime or int or None
            Candidate regimes.

        Returns
        -------
        BootstrapResult
            Replicates in index order.
        """
        regimes = coerce_regimes(regimes)
        if not self.refit_weights and self.weight_col not in panel.columns:
            raise ValueError(f"Column '{self.weight_col}' not found in panel; fit weights first or set refit_weights.")

        ids = pd.unique(panel[self.id_col])
        logger.info(f"Starting cluster bootstrap: {self.n_bootstrap} replicates over {len(ids)} subjects "
                    f"and {len(regimes)} regimes")

        results = Parallel(n_jobs = self.n_jobs)(
            delayed(self._run_replicate)(i, panel, ids, regimes, rng)
            for i, rng in enumerate(self.replicate_rngs())
        )

        result = BootstrapResult(tuple(regimes), tuple(results))
        failed = result.failed_counts()
        if failed.any():
            logger.warning(f"Undefined bootstrap estimates per regime: {failed[failed > 0].to_dict()}")
        logger.info("Cluster bootstrap finished")
        return result
