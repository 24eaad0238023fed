"""
Threshold treatment regimes, per-subject compliance, and the weighted estimate of a
regime's outcome.
"""
from dataclasses import dataclass
from typing import Iterable, List, Optional, Union

import numpy as np
import pandas as pd

from .exceptions import DataShapeError, DivisionUndefined


@dataclass(frozen = True)
class Regime:
    """
    The rule "treat from visit `threshold` onwards, never before".

    `threshold=None` is the never-treat regime.
    """
    threshold: Optional[int] = None

    def __post_init__(self):
        if self.threshold is not None:
            if isinstance(self.threshold, bool) or not isinstance(self.threshold, (int, np.integer)):
                raise ValueError("threshold must be a non-negative integer or None.")
            if self.threshold < 0:
                raise ValueError("threshold must be a non-negative integer or None.")

    @property
    def label(self) -> str:
        return 'never' if self.threshold is None else f'x={self.threshold}'

    def prescribe(self, visit_times) -> np.ndarray:
        """Prescribed treatment indicator (0/1) for each visit time."""
        visit_times = np.asarray(visit_times)
        if self.threshold is None:
            return np.zeros(len(visit_times), dtype = int)
        return (visit_times >= self.threshold).astype(int)

    @classmethod
    def coerce(cls, regime: Union['Regime', int, None]) -> 'Regime':
        if isinstance(regime, Regime):
            return regime
        return cls(regime)


NEVER_TREAT = Regime(None)


def threshold_regimes(max_visit: int = 6, include_never: bool = True) -> List[Regime]:
    """Regimes x = 0..max_visit, optionally followed by never-treat."""
    if not isinstance(max_visit, int) or max_visit < 0:
        raise ValueError("max_visit must be a non-negative integer.")
    regimes = [Regime(x) for x in range(max_visit + 1)]
    if include_never:
        regimes.append(NEVER_TREAT)
    return regimes


def coerce_regimes(regimes: Iterable[Union[Regime, int, None]]) -> List[Regime]:
    regimes = [Regime.coerce(r) for r in regimes]
    if not regimes:
        raise ValueError("regimes must contain at least one regime.")
    if len(set(regimes)) != len(regimes):
        raise ValueError("regimes must not contain duplicates.")
    return regimes


def evaluate_regime(panel: pd.DataFrame,
                    regime: Union[Regime, int, None],
                    id_col: str = 'id',
                    time_col: str = 'visit',
                    treatment_col: str = 'transplant',
                    weight_col: str = 'ipw',
                    outcome_col: Optional[str] = None) -> pd.DataFrame:
    """
    Evaluate every subject's compliance with a regime.

    A record complies when its observed treatment equals the prescription at its
    visit. A subject complies only if every one of its records does.

    Parameters
    ----------
    panel : pd.DataFrame
        Subject-visit records carrying a weight column, e.g. the observed panel or a
        bootstrap replicate.
    regime : Regime or int or None
        The regime, or its threshold.
    outcome_col : str, optional
        Column read at the last visit. Defaults to `treatment_col`.

    Returns
    -------
    pd.DataFrame
        One row per subject, indexed by `id_col`, with columns:
            'outcome' : observed value of `outcome_col` at the subject's last visit
            'weight' : the subject's weight at that visit
            'compliant' : 1 if the subject complies at every visit, else 0
    """
    regime = Regime.coerce(regime)
    outcome_col = outcome_col or treatment_col

    missing = [col for col in [id_col, time_col, treatment_col, weight_col, outcome_col]
               if col not in panel.columns]
    if missing:
        raise DataShapeError(f"The following required columns are missing from the panel: {missing}")

    df = panel.sort_values([id_col, time_col])

    prescribed = regime.prescribe(df[time_col])
    record_compliant = pd.Series(
        (prescribed == df[treatment_col].to_numpy()).astype(int),
        index = df.index
    )
    compliant = record_compliant.groupby(df[id_col]).min()

    last = df.groupby(id_col).tail(1).set_index(id_col)

    return pd.DataFrame({
        'outcome': last[outcome_col].astype(float),
        'weight': last[weight_col].astype(float),
        'compliant': compliant
    })


def weighted_estimate(rows: pd.DataFrame) -> float:
    """
    Weighted mean of the last-visit outcome over compliant subjects:

        sum(w_i * m_i * y_i) / sum(w_i * m_i)

    where w is the weight, m the compliance indicator and y the outcome. Non-compliant
    subjects enter with zero weight.

    Raises
    ------
    DivisionUndefined
        If no subject with positive weight complies.
    ValueError
        If a weight is negative or missing, or an outcome is missing.
    """
    w = rows['weight'].to_numpy(dtype = float)
    m = rows['compliant'].to_numpy(dtype = float)
    y = rows['outcome'].to_numpy(dtype = float)

    if np.isnan(w).any() or (w < 0).any():
        raise ValueError("weights must be non-negative and non-missing.")
    if np.isnan(y).any():
        raise ValueError("outcomes must be non-missing.")

    effective = w * m
    denominator = effective.sum()
    if not denominator > 0:
        raise DivisionUndefined(f"No compliant subject with positive weight among {len(rows)} subjects.")
    return float(np.sum(effective * y) / denominator)


def regime_point_estimate(panel: pd.DataFrame,
                          regime: Union[Regime, int, None],
                          **columns) -> float:
    """
    Evaluate `regime` on `panel` and return its weighted estimate, or NaN if it is
    undefined.
    """
    try:
        return weighted_estimate(evaluate_regime(panel, regime, **columns))
    except DivisionUndefined:
        return float('nan')
