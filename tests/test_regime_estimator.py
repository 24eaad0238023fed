import numpy as np
import pandas as pd
import pytest
from matplotlib.figure import Figure

from transplant_regimes import RegimeIPWEstimator
from transplant_regimes.panel import wide_to_long
from transplant_regimes.exceptions import DataShapeError


@pytest.fixture
def fitted(pbc_panel, covariates):
    est = RegimeIPWEstimator()
    est.fit_transform(pbc_panel, **covariates)
    return est


def test_fit_transform_adds_weights(pbc_panel, covariates):
    est = RegimeIPWEstimator()
    df = est.fit_transform(pbc_panel, **covariates)
    assert 'ipw' in df.columns
    assert not df['ipw'].isnull().any()
    assert est.max_visit == 6
    assert est.weights_ is df

def test_transform_before_fit():
    with pytest.raises(ValueError, match="forget"):
        RegimeIPWEstimator().transform()

def test_methods_require_weights(pbc_panel, covariates):
    est = RegimeIPWEstimator()
    est.fit(pbc_panel, **covariates)
    with pytest.raises(ValueError, match="regime_estimates"):
        est.regime_estimates()
    with pytest.raises(ValueError, match="regime_table"):
        est.regime_table()

def test_fit_rejects_bad_panel(pbc_panel, covariates):
    with pytest.raises(DataShapeError):
        RegimeIPWEstimator().fit(pd.concat([pbc_panel, pbc_panel.head(1)]), **covariates)
    with pytest.raises(ValueError, match="integer type"):
        RegimeIPWEstimator().fit(pbc_panel.assign(transplant=pbc_panel['transplant'].astype(float)), **covariates)
    with pytest.raises(ValueError, match="status_col"):
        RegimeIPWEstimator().fit(pbc_panel, status_col=None, **covariates)

def test_fit_truncates_after_death(covariates):
    rows = []
    for i in range(30):
        for t in range(4):
            rows.append({'id': i, 'visit': t, 'transplant': int(t >= 2 and i % 3 == 0),
                         'death': int(i == 0 and t == 1), 'age': 40.0 + i, 'sex': i % 2,
                         'edema': 'none', 'bili': 1.0 + 0.1 * t, 'albumin': 3.5, 'protime': 10.0})
    est = RegimeIPWEstimator()
    est.fit(pd.DataFrame(rows), **covariates)
    assert list(est.panel_.loc[est.panel_['id'] == 0, 'visit']) == [0, 1]

def test_regime_estimates_default_regimes(fitted):
    table = fitted.regime_estimates()
    assert list(table['regime']) == [f'x={x}' for x in range(7)] + ['never']
    assert table['threshold'].isna().sum() == 1
    defined = table['point_estimate'].dropna()
    assert ((defined >= 0) & (defined <= 1)).all()
    # Nobody is transplanted at baseline
    assert table.loc[0, 'n_compliant'] == 0
    assert np.isnan(table.loc[0, 'point_estimate'])
    # Under never-treat the last-visit treatment is 0 for every compliant subject
    assert table.loc[7, 'point_estimate'] == 0.0

def test_bootstrap_and_table(fitted):
    fitted.regime_estimates([2, 3, None])
    se = fitted.bootstrap_standard_errors([2, 3, None], n_bootstrap=20, random_state=1)
    assert list(se.columns) == ['regime', 'bootstrap_standard_error', 'n_failed']
    assert (se['bootstrap_standard_error'].dropna() >= 0).all()
    table = fitted.regime_table()
    assert list(table['regime']) == ['x=2', 'x=3', 'never']
    assert {'point_estimate', 'bootstrap_standard_error', 'n_compliant'}.issubset(table.columns)
    assert fitted.bootstrap_result_.n_bootstrap == 20

def test_bootstrap_is_reproducible(fitted):
    first = fitted.bootstrap_standard_errors([3], n_bootstrap=10, random_state=42)
    second = fitted.bootstrap_standard_errors([3], n_bootstrap=10, random_state=42)
    pd.testing.assert_frame_equal(first, second)

def test_bootstrap_with_refit(fitted):
    se = fitted.bootstrap_standard_errors([3, None], n_bootstrap=5, random_state=3, refit_weights=True)
    assert len(se) == 2
    assert (se['n_failed'] <= 5).all()

def test_regime_survival_curves(fitted):
    curves = fitted.regime_survival_curves([3, None])
    assert list(curves.columns) == ['time', 'x=3', 'never']
    for label in ['x=3', 'never']:
        s = curves[label].to_numpy()
        assert ((s >= 0) & (s <= 1)).all()
        assert (np.diff(s) <= 1e-12).all()

def test_survival_curve_undefined_regime(fitted):
    curves = fitted.regime_survival_curves([0])
    assert curves['x=0'].isna().all()

def test_plots(fitted):
    assert isinstance(fitted.weight_distribution_plot(bins=10), Figure)
    fitted.regime_estimates([3, None])
    fitted.bootstrap_standard_errors([3, None], n_bootstrap=5, random_state=0)
    assert isinstance(fitted.regime_estimate_plot(), Figure)
    with pytest.raises(ValueError, match="bins"):
        fitted.weight_distribution_plot(bins=0)

def test_fit_rejects_missing_outcome(pbc_panel, covariates):
    panel = pbc_panel.assign(response=1.0)
    panel.loc[3, 'response'] = np.nan
    with pytest.raises(DataShapeError, match="response"):
        RegimeIPWEstimator().fit(panel, outcome_col='response', **covariates)

def test_wide_to_long_feeds_estimator():
    rng = np.random.default_rng(11)
    rows = []
    for i in range(40):
        last = i % 4
        start = 1 + i % 3 if i % 2 == 0 else None
        row = {'id': i, 'age': 40.0 + i, 'sex': i % 2}
        for t in range(4):
            seen = t <= last
            row[f'bili_{t}'] = rng.lognormal(0.5, 0.5) if seen else np.nan
            row[f'transplant_{t}'] = float(start is not None and t >= start) if seen else np.nan
            row[f'death_{t}'] = float(t == last and i % 5 == 0) if seen else np.nan
        rows.append(row)
    long_df = wide_to_long(pd.DataFrame(rows), 'id', ['bili', 'transplant', 'death'])

    est = RegimeIPWEstimator()
    df = est.fit_transform(long_df, cont_var=['age', 'bili'], binary_var=['sex'], lr_kwargs={'max_iter': 1000})
    assert not df['ipw'].isnull().any()
    assert est.max_visit == 3
