"""
Design matrices for degset.

Treatment-coded designs from categorical sample covariates with an explicit
reference level per factor, the patsy formula interface, and the limma
helpers for checking estimability and selecting coefficients.
"""

from dataclasses import dataclass, field

import numpy as np
import pandas as pd
import patsy

from .errors import DataFormatError, RankDeficiencyError, UnknownCoefficientError


@dataclass
class FactorSpec:
    """A categorical covariate of the design.

    Parameters
    ----------
    column : str
        Column of the sample table.
    levels : list, optional
        Level order; the first level is the reference. Defaults to the
        sorted observed values.
    name : str, optional
        Prefix of the design column names. Defaults to ``column``.
    """

    column: str
    levels: list = field(default=None)
    name: str = None

    @classmethod
    def coerce(cls, spec):
        """Build a FactorSpec from a column name, dict or FactorSpec."""
        if isinstance(spec, cls):
            return spec
        if isinstance(spec, str):
            return cls(spec)
        if isinstance(spec, dict):
            unknown = set(spec) - {'column', 'levels', 'name'}
            if 'column' not in spec or unknown:
                raise DataFormatError(f"invalid factor specification: {spec}")
            return cls(**spec)
        raise DataFormatError(f"invalid factor specification: {spec!r}")


def non_estimable(x):
    """Identify non-estimable coefficients in a design matrix.

    Port of limma's nonEstimable(). Returns the names (for a DataFrame) or
    positions of the columns that are linear combinations of earlier
    columns, or None if the design is of full column rank.
    """
    names = list(x.columns) if isinstance(x, pd.DataFrame) else None
    x = np.asarray(x, dtype=np.float64)
    if x.ndim == 1:
        x = x.reshape(-1, 1)
    p = x.shape[1]
    if p == 0:
        return None
    _, R = np.linalg.qr(x)
    d = np.abs(np.diag(R))
    if len(d) < p:
        d = np.concatenate([d, np.zeros(p - len(d))])
    non_est = np.where(d < 1e-7 * max(np.max(d), 1e-300))[0]
    if len(non_est) == 0:
        return None
    if names is not None:
        return [names[k] for k in non_est]
    return non_est


def is_fullrank(x):
    """Check if a matrix is full column rank.

    Port of limma's is.fullrank().
    """
    x = np.asarray(x, dtype=np.float64)
    if x.ndim == 1:
        x = x.reshape(-1, 1)
    return np.linalg.matrix_rank(x) == x.shape[1]


def check_full_rank(design):
    """Raise RankDeficiencyError unless the design has full column rank."""
    if not is_fullrank(design):
        cols = non_estimable(design)
        raise RankDeficiencyError(
            f"design matrix is not of full rank; coefficients not estimable: {cols}",
            columns=cols if cols is not None else [])
    return design


def design_matrix(samples, factors, intercept=True):
    """Build a treatment-coded design matrix.

    Parameters
    ----------
    samples : DataFrame
        Sample table, one row per sample in count-matrix column order (for
        example ``y.samples``).
    factors : list of FactorSpec, str or dict
        Factors to include, in column order.
    intercept : bool
        Include an intercept column.

    Returns
    -------
    DataFrame
        Samples x coefficients, with columns ``Intercept`` and
        ``<factor>[T.<level>]`` for every non-reference level.

    Raises
    ------
    DataFormatError
        Unknown column, or a value not among the given levels.
    RankDeficiencyError
        A factor with fewer than two observed levels, or columns that are
        linearly dependent (confounded factors).

    Examples
    --------
    >>> samples = pd.DataFrame({'temperature': ['high', 'low', 'high', 'low']})
    >>> design_matrix(samples, [FactorSpec('temperature', ['low', 'high'])])
       Intercept  temperature[T.high]
    0        1.0                  1.0
    1        1.0                  0.0
    2        1.0                  1.0
    3        1.0                  0.0
    """
    factors = [FactorSpec.coerce(f) for f in factors]
    if not factors and not intercept:
        raise DataFormatError("design needs an intercept or at least one factor")

    data = {}
    terms = []
    prefixes = {}
    for k, spec in enumerate(factors):
        if spec.column not in samples.columns:
            raise DataFormatError(f"column '{spec.column}' not found in sample table")
        raw = samples[spec.column]
        missing = raw.isna() | (raw.astype(object).astype(str).str.strip() == '')
        if missing.any():
            raise DataFormatError(
                f"missing values of '{spec.column}' for samples "
                f"{[str(s) for s in samples.index[missing.to_numpy()]][:5]}")
        values = raw.astype(object).astype(str).str.strip()
        observed = list(pd.unique(values))
        if spec.levels is None:
            # numeric levels sort by value, as R's factor() does
            if pd.to_numeric(pd.Series(observed), errors='coerce').notna().all():
                levels = sorted(observed, key=float)
            else:
                levels = sorted(observed)
        else:
            levels = [str(v) for v in spec.levels]
            if len(set(levels)) != len(levels):
                raise DataFormatError(f"repeated levels for factor '{spec.column}'")
            unknown = [v for v in observed if v not in levels]
            if unknown:
                raise DataFormatError(
                    f"values {unknown} of '{spec.column}' are not among levels {levels}")
        if len(observed) < 2:
            raise RankDeficiencyError(
                f"factor '{spec.column}' has only one observed level ({observed})",
                columns=[spec.column])
        token = f"f{k}"
        data[token] = pd.Categorical(values, categories=levels)
        terms.append(token)
        prefixes[token] = spec.name or spec.column

    formula = ' + '.join(terms) if terms else '1'
    if not intercept:
        formula = '0 + ' + formula
    dm = patsy.dmatrix(formula, data=pd.DataFrame(data, index=samples.index),
                       return_type='dataframe')

    # With no intercept patsy uses full dummy coding for the first factor
    columns = []
    for col in dm.columns:
        token, _, rest = col.partition('[')
        columns.append(prefixes[token] + '[' + rest if token in prefixes else col)
    dm.columns = columns
    dm.index = samples.index
    return check_full_rank(dm)


def model_matrix(formula, data):
    """Create a design matrix from an R-style formula.

    Uses patsy to parse the formula, matching R's ``model.matrix``.

    Parameters
    ----------
    formula : str
        R-style formula, e.g. ``'~ group'``, ``'~ batch + condition'``,
        ``'~ 0 + group'`` (no intercept).
    data : DataFrame or dict
        Sample-level data.

    Returns
    -------
    DataFrame
        Design matrix (samples x coefficients).
    """
    if data is None:
        raise DataFormatError("data must be provided for formula-based design")
    if isinstance(data, dict):
        data = pd.DataFrame(data)
    try:
        dm = patsy.dmatrix(formula, data=data, return_type='dataframe')
    except patsy.PatsyError as e:
        raise DataFormatError(f"invalid design formula '{formula}': {e}") from None
    return check_full_rank(dm)


def coef_names(obj):
    """Coefficient names of a design, a fit, or None."""
    if isinstance(obj, pd.DataFrame):
        return [str(c) for c in obj.columns]
    if isinstance(obj, dict):
        names = obj.get('coef.names')
        if names is not None:
            return list(names)
        design = obj.get('design')
        if isinstance(design, pd.DataFrame):
            return [str(c) for c in design.columns]
    return None


def resolve_coef(obj, coef, ncoef=None):
    """Map a coefficient selector to a column position.

    Parameters
    ----------
    obj : DataFrame, MArrayLM or None
        Design matrix or fit providing coefficient names.
    coef : int or str
        Column position (negative counts from the end) or name.
    ncoef : int, optional
        Number of coefficients, when obj has no names.

    Raises
    ------
    UnknownCoefficientError
        If coef matches no column.
    """
    names = coef_names(obj)
    if ncoef is None:
        if names is not None:
            ncoef = len(names)
        elif isinstance(obj, dict) and obj.get('coefficients') is not None:
            ncoef = np.shape(obj['coefficients'])[1]
        elif obj is not None:
            ncoef = np.shape(obj)[1]
    if isinstance(coef, str):
        if names is None or coef not in names:
            raise UnknownCoefficientError(
                f"coefficient '{coef}' not found; available: {names}")
        return names.index(coef)
    if isinstance(coef, (int, np.integer)) and not isinstance(coef, bool):
        k = int(coef)
        if -ncoef <= k < ncoef:
            return k % ncoef
    raise UnknownCoefficientError(
        f"coefficient {coef!r} out of range for {ncoef} coefficients"
        + (f" ({names})" if names else ""))
