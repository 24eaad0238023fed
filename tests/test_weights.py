import numpy as np
import pandas as pd
import pytest

from transplant_regimes.weights import ColumnWeightProvider, PooledLogisticWeightProvider
from transplant_regimes.exceptions import DataShapeError


def fit_weights(panel, **kwargs):
    provider = PooledLogisticWeightProvider(**kwargs)
    return provider, provider.fit(panel, exposure_col='transplant', id_col='id', time_col='visit')


def test_unstabilized_weights_at_least_one(pbc_panel, covariates):
    _, w = fit_weights(pbc_panel, **covariates)
    assert w.index.equals(pbc_panel.index)
    assert w.name == 'ipw'
    assert not w.isnull().any()
    assert (w >= 1.0 - 1e-12).all()

def test_weights_constant_after_treatment_start(pbc_panel, covariates):
    _, w = fit_weights(pbc_panel, **covariates)
    df = pbc_panel.assign(ipw=w).sort_values(['id', 'visit'])
    started = df.groupby('id')['transplant'].transform(lambda s: s.shift(1, fill_value=0).cummax())
    after = df[started == 1]
    assert len(after) > 0
    for _, group in df[df['transplant'] == 1].groupby('id'):
        assert np.allclose(group['ipw'], group['ipw'].iloc[0])

def test_weights_cumulative_within_subject(pbc_panel, covariates):
    _, w = fit_weights(pbc_panel, **covariates)
    df = pbc_panel.assign(ipw=w).sort_values(['id', 'visit'])
    # Every factor is >= 1 so cumulative weights never decrease
    assert (df.groupby('id')['ipw'].diff().dropna() >= -1e-12).all()

def test_stabilized_weights_positive(pbc_panel, covariates):
    _, w = fit_weights(pbc_panel, stabilized=True, **covariates)
    assert np.isfinite(w).all()
    assert (w > 0).all()

def test_clip_bounds_limit_weights(pbc_panel, covariates):
    _, w = fit_weights(pbc_panel, clip_bounds=(0.2, 0.8), **covariates)
    # At most 7 decisions per subject, each factor at most 1 / 0.2
    assert w.max() <= 5.0 ** 7 + 1e-9

def test_missing_flags(pbc_panel, covariates):
    pbc_panel.loc[[0, 5, 9], 'bili'] = np.nan
    provider, w = fit_weights(pbc_panel, **covariates)
    assert provider.missing_flag_var_ == ['bili_missing']
    assert not w.isnull().any()

def test_single_decision_risk_set():
    panel = pd.DataFrame({
        'id': [1, 1, 2, 2],
        'visit': [0, 1, 0, 1],
        'transplant': [0, 0, 0, 0],
        'age': [50.0, 50.0, 60.0, 60.0],
    })
    _, w = fit_weights(panel, cont_var=['age'])
    assert np.allclose(w, 1.0, rtol=1e-4)

def test_provider_argument_validation():
    with pytest.raises(ValueError, match="at least one"):
        PooledLogisticWeightProvider()
    with pytest.raises(ValueError, match="clip_bounds"):
        PooledLogisticWeightProvider(cont_var=['age'], clip_bounds=(0.9, 0.1))
    with pytest.raises(ValueError, match="stabilized"):
        PooledLogisticWeightProvider(cont_var=['age'], stabilized='yes')

def test_provider_missing_covariate(pbc_panel):
    with pytest.raises(DataShapeError, match="chol"):
        fit_weights(pbc_panel, cont_var=['chol'])

def test_column_weight_provider(three_subject_panel):
    provider = ColumnWeightProvider('ipw')
    w = provider.fit(three_subject_panel, 'transplant', 'id', 'visit')
    assert (w == 1.0).all()
    with pytest.raises(DataShapeError):
        ColumnWeightProvider('sw').fit(three_subject_panel, 'transplant', 'id', 'visit')
    bad = three_subject_panel.assign(ipw=-1.0)
    with pytest.raises(ValueError, match="non-negative"):
        provider.fit(bad, 'transplant', 'id', 'visit')
