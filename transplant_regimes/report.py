import logging
from typing import Sequence

import pandas as pd

from .gformula import GFormulaProvider
from .regimes import Regime

logger = logging.getLogger(__name__)


def format_regime_table(table: pd.DataFrame,
                        digits: int = 3,
                        na_rep: str = 'NA') -> str:
    """
    Render a regime table as fixed-width text. Undefined estimates print as `na_rep`
    rather than 0.
    """
    if not isinstance(digits, int) or digits < 0:
        raise ValueError("digits must be a non-negative integer.")

    out = table.copy()
    for col in out.columns:
        if pd.api.types.is_float_dtype(out[col]):
            out[col] = out[col].map(lambda v: na_rep if pd.isna(v) else f"{v:.{digits}f}")
    return out.to_string(index = False)


def compare_with_gformula(ipw_table: pd.DataFrame,
                          provider: GFormulaProvider,
                          panel: pd.DataFrame,
                          regimes: Sequence[Regime]) -> pd.DataFrame:
    """
    Join the IPW regime table with the G-formula estimates from `provider`.

    Parameters
    ----------
    ipw_table : pd.DataFrame
        Output of `RegimeIPWEstimator.regime_table()` (must have a 'regime' column).
    provider : GFormulaProvider
        External G-formula engine.
    panel : pd.DataFrame
        The panel handed to the provider.
    regimes : sequence of Regime
        Regimes to simulate.

    Returns
    -------
    pd.DataFrame
        `ipw_table` with the provider's columns added and an 'ipw_minus_gformula'
        difference column.
    """
    if 'regime' not in ipw_table.columns:
        raise ValueError("ipw_table must have a 'regime' column.")

    simulated = provider.simulate(panel, list(regimes))
    missing = [col for col in ['regime', 'gformula_estimate'] if col not in simulated.columns]
    if missing:
        raise ValueError(f"G-formula provider output is missing columns: {missing}")
    if simulated['regime'].duplicated().any():
        dupes = simulated.loc[simulated['regime'].duplicated(), 'regime'].unique()
        raise ValueError(f"G-formula provider returned duplicate rows for regimes: {list(dupes)}")

    merged = ipw_table.merge(simulated, on = 'regime', how = 'left')
    unmatched = merged['gformula_estimate'].isna() & ~ipw_table['regime'].isin(simulated['regime']).to_numpy()
    if unmatched.any():
        logger.warning(f"No G-formula estimate for regimes: {list(merged.loc[unmatched, 'regime'])}")
    merged['ipw_minus_gformula'] = merged['point_estimate'] - merged['gformula_estimate']
    return merged
