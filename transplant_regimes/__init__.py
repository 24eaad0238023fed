"""
transplant_regimes

A Python tool for estimating outcomes under dynamic treatment-timing regimes
with inverse probability of treatment weights and cluster bootstrap standard errors.
"""

__version__ = '0.1.0'

# Make key classes available at package level
from .regime_estimator import RegimeIPWEstimator
from .regimes import Regime, NEVER_TREAT, threshold_regimes, evaluate_regime, weighted_estimate
from .bootstrap import ClusterBootstrap, BootstrapResult, ReplicateResult
from .weights import PropensityWeightProvider, PooledLogisticWeightProvider, ColumnWeightProvider
from .gformula import GFormulaProvider
from .report import format_regime_table, compare_with_gformula
from .panel import read_panel, wide_to_long, validate_panel, truncate_at_event
from .exceptions import DataShapeError, DivisionUndefined, ResampleDegenerate

__all__ = [
    "RegimeIPWEstimator",
    "Regime",
    "NEVER_TREAT",
    "threshold_regimes",
    "evaluate_regime",
    "weighted_estimate",
    "ClusterBootstrap",
    "BootstrapResult",
    "ReplicateResult",
    "PropensityWeightProvider",
    "PooledLogisticWeightProvider",
    "ColumnWeightProvider",
    "GFormulaProvider",
    "format_regime_table",
    "compare_with_gformula",
    "read_panel",
    "wide_to_long",
    "validate_panel",
    "truncate_at_event",
    "DataShapeError",
    "DivisionUndefined",
    "ResampleDegenerate",
]
