import logging
from typing import List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from sklearn.pipeline import Pipeline
from sklearn.impute import SimpleImputer
from sklearn.preprocessing import OneHotEncoder, StandardScaler
from sklearn.compose import ColumnTransformer
from sklearn.linear_model import LogisticRegression

from .exceptions import DataShapeError

logger = logging.getLogger(__name__)


class PropensityWeightProvider:
    """
    Interface for anything that turns a subject-visit panel into inverse probability
    of treatment weights.

    Implementations carry their own covariate specification, so `fit` only needs to
    know which columns hold the exposure, the subject and the visit.
    """

    weight_col = 'ipw'

    def fit(self,
            panel: pd.DataFrame,
            exposure_col: str,
            id_col: str,
            time_col: str) -> pd.Series:
        """
        Return one non-negative weight per record, indexed like `panel`. The weight
        of a record is the inverse probability of the subject's observed treatment
        path up to and including that visit.
        """
        raise NotImplementedError


class ColumnWeightProvider(PropensityWeightProvider):
    """
    Reuse weights that are already stored in a column of the panel.
    """

    def __init__(self, weight_col: str = 'ipw'):
        self.weight_col = weight_col

    def fit(self, panel, exposure_col, id_col, time_col):
        if self.weight_col not in panel.columns:
            raise DataShapeError(f"Column '{self.weight_col}' not found in dataframe.")
        weights = panel[self.weight_col].astype(float)
        if weights.isnull().any() or (weights < 0).any():
            raise ValueError(f"Column '{self.weight_col}' must contain non-negative, non-missing values.")
        return weights.rename(self.weight_col)


class PooledLogisticWeightProvider(PropensityWeightProvider):
    """
    Time-varying inverse probability of treatment weights for an absorbing treatment.

    A pooled logistic regression models the probability of starting treatment at a
    visit among subjects not yet treated, given the covariates and the visit index.
    Each record's weight is the cumulative product, over the subject's visits so far,
    of 1 / P(observed treatment decision). Visits after treatment start contribute a
    factor of 1 since staying treated is certain.

    Parameters
    ----------
    cat_var : list of str, optional
        Categorical covariates to be one-hot encoded. Must contain no missing values.
    cont_var : list of str, optional
        Continuous covariates to be imputed (median) and scaled.
    binary_var : list of str, optional
        Binary covariates passed through without transformation.
    stabilized : bool, default = False
        If True, multiply each factor by the marginal probability of the observed
        decision from a numerator model on visit index only.
    lr_kwargs : dict, optional
        Additional keyword arguments passed to sklearn's LogisticRegression.
    clip_bounds : tuple of float, optional
        Clip predicted probabilities to this (min, max) range. Defaults to a safety
        clip of 1e-6 on both sides.
    use_missing_flags : bool, default = True
        If True, add a `<col>_missing` indicator for every continuous covariate with
        missing values.
    weight_col : str, default = 'ipw'
        Name given to the returned weight series.
    """

    def __init__(self,
                 cat_var: Optional[List[str]] = None,
                 cont_var: Optional[List[str]] = None,
                 binary_var: Optional[List[str]] = None,
                 stabilized: bool = False,
                 lr_kwargs: Optional[dict] = None,
                 clip_bounds: Optional[Union[Tuple[float, float], List[float]]] = None,
                 use_missing_flags: bool = True,
                 weight_col: str = 'ipw'):

        if all(var is None for var in [cat_var, cont_var, binary_var]):
            raise ValueError('at least one of cat_var, cont_var, or binary_var must be provided')

        if not isinstance(stabilized, bool):
            raise ValueError("stabilized must be a boolean (True or False).")

        if clip_bounds is not None:
            if (not isinstance(clip_bounds, (tuple, list)) or
                len(clip_bounds) != 2):
                raise ValueError("clip_bounds must be a tuple or list of two float values (min, max).")

            lower, upper = clip_bounds

            if not (isinstance(lower, (int, float)) and isinstance(upper, (int, float))):
                raise ValueError("Both values in clip_bounds must be numeric.")

            if not (0 < lower < upper < 1):
                raise ValueError("clip_bounds values must be between 0 and 1 and satisfy 0 < lower < upper.")

        self.cat_var = cat_var or []
        self.cont_var = cont_var or []
        self.binary_var = binary_var or []
        self.stabilized = stabilized
        self.lr_kwargs = lr_kwargs or {}
        self.clip_bounds = clip_bounds
        self.use_missing_flags = bool(use_missing_flags)
        self.weight_col = weight_col
        self.missing_flag_var_ = []

    def _check_covariates(self, df: pd.DataFrame) -> None:
        all_var = self.cat_var + self.cont_var + self.binary_var
        missing = [col for col in all_var if col not in df.columns]
        if missing:
            raise DataShapeError(f"The following covariates are missing from the panel: {missing}")

        non_numeric = [col for col in self.cont_var if not pd.api.types.is_numeric_dtype(df[col])]
        if non_numeric:
            raise ValueError(f"The following columns in cont_var are not numeric: {non_numeric}")

        not_complete = [col for col in self.cat_var + self.binary_var if df[col].isnull().any()]
        if not_complete:
            raise ValueError(f"The following categorical or binary covariates have missing values: {not_complete}")

        not_binary = [col for col in self.binary_var if df[col].nunique() > 2]
        if not_binary:
            raise ValueError(f"The following columns in binary_var are not binary: {not_binary}")

    def _clip(self, p: np.ndarray) -> np.ndarray:
        if self.clip_bounds is not None:
            lower, upper = self.clip_bounds
            return np.clip(p, lower, upper)
        eps = 1e-6 # Small buffer to avoid division by zero when inverting
        return np.clip(p, eps, 1 - eps)

    def _treatment_probability(self,
                               df: pd.DataFrame,
                               y: pd.Series,
                               cat_var: List[str],
                               cont_var: List[str],
                               binary_var: List[str]) -> np.ndarray:
        """
        Fit a logistic regression of `y` on the given covariates and return the
        fitted probability of treatment for every row of `df`.
        """
        # A risk set with a single observed decision cannot be modelled
        if y.nunique() < 2:
            logger.warning(f"Only one treatment decision observed among {len(y)} at-risk records; "
                           "using its empirical probability.")
            return self._clip(np.full(len(df), float(y.mean())))

        numeric_pipeline = Pipeline([
            ('imputer', SimpleImputer(strategy = 'median')),
            ('scaler', StandardScaler())
        ])

        categorical_pipeline = Pipeline([
            ('encoder', OneHotEncoder(handle_unknown = 'ignore'))
        ])

        preprocessor = ColumnTransformer(
            transformers = [
                ('num', numeric_pipeline, cont_var),
                ('cat', categorical_pipeline, cat_var),
                ('pass', 'passthrough', binary_var)],
                remainder = 'drop'
        )

        X_preprocessed = preprocessor.fit_transform(df)

        lr_model = LogisticRegression(**self.lr_kwargs)
        lr_model.fit(X_preprocessed, y)
        # Second column is the probability of receiving treatment
        return self._clip(lr_model.predict_proba(X_preprocessed)[:, 1])

    def fit(self, panel, exposure_col, id_col, time_col):
        """
        Fit the treatment model(s) on `panel` and return the cumulative weights.

        Returns
        -------
        pd.Series
            Weight per record, indexed like `panel` and named `weight_col`.
        """
        if not isinstance(panel, pd.DataFrame):
            raise ValueError("panel must be a pandas DataFrame.")
        for col in [exposure_col, id_col, time_col]:
            if col not in panel.columns:
                raise DataShapeError(f"Column '{col}' not found in dataframe.")
        self._check_covariates(panel)

        df = panel.sort_values([id_col, time_col]).copy()

        self.missing_flag_var_ = []
        if self.use_missing_flags:
            for col in self.cont_var:
                if df[col].isna().any():
                    flag = f"{col}_missing"
                    df[flag] = df[col].isna().astype(int)
                    self.missing_flag_var_.append(flag)

        # Only visits where treatment has not yet started carry a decision
        already_treated = df.groupby(id_col)[exposure_col].transform(
            lambda s: s.shift(1, fill_value = 0).cummax()
        )
        at_risk = df.loc[already_treated == 0]
        treated = at_risk[exposure_col].astype(int)

        p_denominator = self._treatment_probability(
            at_risk,
            treated,
            cat_var = self.cat_var,
            cont_var = self.cont_var + [time_col],
            binary_var = self.binary_var + self.missing_flag_var_
        )
        factor = np.where(treated == 1, 1 / p_denominator, 1 / (1 - p_denominator))

        if self.stabilized:
            p_numerator = self._treatment_probability(
                at_risk, treated, cat_var = [], cont_var = [time_col], binary_var = []
            )
            factor = factor * np.where(treated == 1, p_numerator, 1 - p_numerator)

        per_visit = pd.Series(1.0, index = df.index)
        per_visit.loc[at_risk.index] = factor
        weights = per_visit.groupby(df[id_col]).cumprod()

        logger.info(f"Fitted {'stabilized' if self.stabilized else 'unstabilized'} weights on "
                    f"{len(at_risk)} at-risk records from {df[id_col].nunique()} subjects")
        return weights.reindex(panel.index).rename(self.weight_col)
