import numpy as np
import pandas as pd
import pytest


def make_pbc_panel(n=60, max_visit=6, seed=2024):
    """Simulated PBC-style follow-up: annual visits, absorbing transplant, death."""
    rng = np.random.default_rng(seed)
    records = []
    for i in range(n):
        age = rng.normal(50, 10)
        sex = int(rng.random() < 0.9)
        edema = rng.choice(['none', 'untreated', 'resistant'])
        bili = rng.lognormal(0.5, 1.0)
        treated = 0
        for t in range(max_visit + 1):
            bili = bili * rng.lognormal(0.05, 0.2)
            albumin = rng.normal(3.5, 0.4)
            protime = rng.normal(10.7, 1.0)
            if not treated and t > 0 and rng.random() < min(0.6, 0.08 + 0.03 * bili):
                treated = 1
            death = int(rng.random() < 0.04)
            records.append({
                'id': i, 'visit': t, 'transplant': treated, 'death': death,
                'age': age, 'sex': sex, 'edema': edema,
                'bili': bili, 'albumin': albumin, 'protime': protime
            })
            if death:
                break
    return pd.DataFrame(records)


@pytest.fixture
def pbc_panel():
    return make_pbc_panel()


@pytest.fixture
def three_subject_panel():
    """Subjects 1-3 over visits 0-2, unit weights."""
    return pd.DataFrame({
        'id': [1, 1, 1, 2, 2, 2, 3, 3, 3],
        'visit': [0, 1, 2] * 3,
        'transplant': [0, 0, 1, 0, 1, 1, 0, 0, 0],
        'ipw': [1.0] * 9,
    })


@pytest.fixture
def covariates():
    return dict(
        cat_var = ['edema'],
        cont_var = ['age', 'bili', 'albumin', 'protime'],
        binary_var = ['sex'],
        lr_kwargs = {'max_iter': 1000},
    )
