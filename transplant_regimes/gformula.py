"""
Interface to an external parametric G-formula engine.

The simulation itself lives outside this package; a provider only has to map a panel
and a set of regimes to one simulated outcome per regime.
"""
from typing import Sequence

import pandas as pd

from .regimes import Regime


class GFormulaProvider:

    def simulate(self, panel: pd.DataFrame, regimes: Sequence[Regime]) -> pd.DataFrame:
        """
        Simulate the outcome under each regime.

        Returns
        -------
        pd.DataFrame
            One row per regime with columns 'regime' (the regime label) and
            'gformula_estimate'. A 'gformula_standard_error' column is optional.
        """
        raise NotImplementedError
