import logging
from typing import List, Optional

import pandas as pd

from .exceptions import DataShapeError

logger = logging.getLogger(__name__)


def read_panel(path: str,
               id_col: str = 'id',
               time_col: str = 'visit',
               treatment_col: str = 'transplant',
               extra_cols: Optional[List[str]] = None,
               **read_csv_kwargs) -> pd.DataFrame:
    """
    Read a long-format panel from a CSV file and validate it.

    Parameters
    ----------
    path : str
        Location of the CSV file, one row per subject-visit.
    id_col, time_col, treatment_col : str
        Subject identifier, visit index and treatment indicator columns.
    extra_cols : list of str, optional
        Further columns that must be present (covariates, status).
    **read_csv_kwargs
        Passed through to `pd.read_csv`.

    Returns
    -------
    pd.DataFrame
        The validated panel sorted by subject and visit.
    """
    df = pd.read_csv(path, **read_csv_kwargs)
    logger.info(f"Read {len(df)} records from {path}")
    return validate_panel(df, id_col, time_col, treatment_col, extra_cols)


def wide_to_long(df: pd.DataFrame,
                 id_col: str,
                 stubs: List[str],
                 time_col: str = 'visit',
                 sep: str = '_') -> pd.DataFrame:
    """
    Reshape repeated-measure columns (e.g. `bili_0`, ..., `bili_6`) into one row
    per subject-visit. Columns that are not repeated are carried as baseline
    values. Visits where every repeated measure is missing are dropped, since the
    subject was not seen.
    """
    if id_col not in df.columns:
        raise DataShapeError(f"id column '{id_col}' not found in dataframe.")
    if not stubs:
        raise ValueError('stubs must name at least one repeated measure.')

    long_df = pd.wide_to_long(df, stubnames = stubs, i = id_col, j = time_col, sep = sep)
    long_df = long_df.reset_index()
    long_df = long_df.dropna(subset = stubs, how = 'all')
    long_df[time_col] = long_df[time_col].astype(int)
    # Restore integer dtype for indicators that were upcast by unobserved visits
    for stub in stubs:
        values = long_df[stub]
        if (pd.api.types.is_float_dtype(values) and values.notnull().all()
                and (values == values.round()).all()):
            long_df[stub] = values.astype(int)
    return long_df.sort_values([id_col, time_col]).reset_index(drop = True)


def validate_panel(df: pd.DataFrame,
                   id_col: str = 'id',
                   time_col: str = 'visit',
                   treatment_col: str = 'transplant',
                   extra_cols: Optional[List[str]] = None) -> pd.DataFrame:
    """
    Check the structural invariants of a subject-visit panel.

    Parameters
    ----------
    df : pd.DataFrame
        One row per subject-visit.
    id_col : str
        Subject identifier.
    time_col : str
        Visit index. Must be a non-negative integer, start at 0 for every subject and
        increase strictly within a subject in row order.
    treatment_col : str
        Binary treatment indicator. Once 1 it must stay 1.
    extra_cols : list of str, optional
        Further columns that must be present.

    Returns
    -------
    pd.DataFrame
        A copy of `df` sorted by subject and visit.

    Raises
    ------
    DataShapeError
        On any violation. Raised before any estimation starts.
    """
    if not isinstance(df, pd.DataFrame):
        raise ValueError("df must be a pandas DataFrame.")

    required = [id_col, time_col, treatment_col] + list(extra_cols or [])
    missing = [col for col in required if col not in df.columns]
    if missing:
        raise DataShapeError(f"The following required columns are missing from the panel: {missing}")

    for col in [id_col, time_col, treatment_col]:
        if df[col].isnull().any():
            raise DataShapeError(f"Column '{col}' has missing values.")

    if not pd.api.types.is_integer_dtype(df[time_col]):
        raise DataShapeError(f"Column '{time_col}' must be of integer type.")
    if (df[time_col] < 0).any():
        raise DataShapeError(f"Column '{time_col}' must contain non-negative values only.")
    if not set(df[treatment_col].unique()).issubset({0, 1}):
        raise DataShapeError(f"Column '{treatment_col}' must contain only binary values (0 and 1).")

    if df.duplicated(subset = [id_col, time_col]).any():
        dupes = df.loc[df.duplicated(subset = [id_col, time_col], keep = False), id_col].unique()
        raise DataShapeError(f"Duplicate ({id_col}, {time_col}) pairs for subjects: {list(dupes)}")

    # Row order within a subject must already be chronological
    steps = df.groupby(id_col, sort = False)[time_col].diff()
    if (steps <= 0).any():
        bad = df.loc[steps <= 0, id_col].unique()
        raise DataShapeError(f"Column '{time_col}' is not strictly increasing for subjects: {list(bad)}")

    first_visit = df.groupby(id_col, sort = False)[time_col].min()
    if (first_visit != 0).any():
        bad = first_visit.index[first_visit != 0]
        raise DataShapeError(f"Follow-up must start at {time_col} 0; it does not for subjects: {list(bad)}")

    out = df.sort_values([id_col, time_col]).reset_index(drop = True)

    prior = out.groupby(id_col, sort = False)[treatment_col].cummax()
    if (prior != out[treatment_col]).any():
        bad = out.loc[prior != out[treatment_col], id_col].unique()
        raise DataShapeError(f"Column '{treatment_col}' returns to 0 after treatment for subjects: {list(bad)}")

    return out


def truncate_at_event(df: pd.DataFrame,
                      id_col: str = 'id',
                      time_col: str = 'visit',
                      event_col: str = 'death') -> pd.DataFrame:
    """
    Drop every record after a subject's first event record. Death is absorbing, so a
    subject contributes no visits, and no treatment decisions, past it.
    """
    if event_col not in df.columns:
        raise DataShapeError(f"Column '{event_col}' not found in dataframe.")

    df = df.sort_values([id_col, time_col])
    events = df[event_col].fillna(0).astype(int)
    # Events strictly before this record
    seen = events.groupby(df[id_col]).transform(lambda s: s.shift(1, fill_value = 0).cummax())
    dropped = int((seen > 0).sum())
    if dropped:
        logger.info(f"Dropped {dropped} records recorded after {event_col}")
    return df.loc[seen == 0].reset_index(drop = True)
