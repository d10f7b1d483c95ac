"""
DGEList construction, validation, and accessors.
"""

import logging
import warnings

import numpy as np
import pandas as pd

from .classes import DGEList
from .errors import DataFormatError

logger = logging.getLogger(__name__)


def _drop_empty_levels(x):
    """Drop unused levels from a categorical/factor variable."""
    if hasattr(x, 'cat'):
        return x.cat.remove_unused_categories()
    return pd.Categorical(x)


def _as_count_matrix(counts):
    """Coerce counts to a float matrix, raising DataFormatError on junk."""
    if isinstance(counts, pd.DataFrame):
        numeric = counts.dtypes.apply(lambda dt: np.issubdtype(dt, np.number))
        if not numeric.all():
            bad = list(counts.columns[~numeric])
            raise DataFormatError(f"non-numeric values in count columns: {bad}")
        values = counts.to_numpy(dtype=np.float64)
    else:
        try:
            values = np.asarray(counts, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise DataFormatError(f"counts must be numeric: {e}") from None
    if values.ndim == 1:
        values = values.reshape(-1, 1)
    if values.ndim != 2:
        raise DataFormatError("counts must be a 2-dimensional matrix")
    return values


def make_dgelist(counts, lib_size=None, norm_factors=None, samples=None,
                 group=None, genes=None, remove_zeros=False):
    """Construct a DGEList object from components.

    Parameters
    ----------
    counts : array-like or DataFrame
        Matrix of counts (genes x samples). Row and column labels of a
        DataFrame become feature and sample identifiers.
    lib_size : array-like, optional
        Library sizes. Defaults to column sums.
    norm_factors : array-like, optional
        Normalization factors. Defaults to all ones.
    samples : DataFrame, optional
        Sample-level information, one row per sample in column order.
    group : array-like, optional
        Group memberships.
    genes : DataFrame, optional
        Gene-level annotation.
    remove_zeros : bool
        Whether to remove rows with all zero counts.

    Returns
    -------
    DGEList
    """
    row_names = col_names = None
    if isinstance(counts, pd.DataFrame):
        row_names = [str(r) for r in counts.index]
        col_names = [str(c) for c in counts.columns]
    counts = _as_count_matrix(counts)

    if counts.size == 0:
        raise DataFormatError("'counts' must contain at least one value")
    if np.any(np.isnan(counts)):
        raise DataFormatError("NA counts not allowed")
    if np.min(counts) < 0:
        raise DataFormatError("Negative counts not allowed")
    if not np.all(np.isfinite(counts)):
        raise DataFormatError("Infinite counts not allowed")

    ntags, nlib = counts.shape
    if col_names is None:
        if samples is not None and isinstance(samples, pd.DataFrame) and len(samples) == nlib:
            col_names = [str(s) for s in samples.index]
        else:
            col_names = [f"Sample{i+1}" for i in range(nlib)]
    if row_names is None:
        if genes is not None and isinstance(genes, pd.DataFrame) and len(genes) == ntags:
            row_names = [str(g) for g in genes.index]
        else:
            row_names = [str(i+1) for i in range(ntags)]

    if len(set(col_names)) != nlib:
        raise DataFormatError("sample identifiers must be unique")
    if len(set(row_names)) != ntags:
        dup = pd.Index(row_names)[pd.Index(row_names).duplicated()].unique()
        raise DataFormatError(f"feature identifiers must be unique, duplicated: {list(dup[:5])}")

    # Library sizes
    if lib_size is None:
        lib_size = counts.sum(axis=0)
        if np.min(lib_size) <= 0:
            warnings.warn("At least one library size is zero")
    else:
        lib_size = np.asarray(lib_size, dtype=np.float64)
        if len(lib_size) != nlib:
            raise DataFormatError("length of 'lib_size' must equal number of samples")
        if np.any(np.isnan(lib_size)):
            raise DataFormatError("NA library sizes not allowed")
        if np.any(lib_size < 0):
            raise DataFormatError("negative library sizes not allowed")
        if np.any((lib_size == 0) & (counts.sum(axis=0) > 0)):
            raise DataFormatError("library size set to zero but counts for that sample are nonzero")

    # Normalization factors
    if norm_factors is None:
        norm_factors = np.ones(nlib)
    else:
        norm_factors = np.asarray(norm_factors, dtype=np.float64)
        if len(norm_factors) != nlib:
            raise DataFormatError("Length of 'norm_factors' must equal number of columns in 'counts'")
        if np.any(np.isnan(norm_factors)):
            raise DataFormatError("NA norm factors not allowed")
        if np.any(norm_factors <= 0):
            raise DataFormatError("norm factors must be positive")
        if abs(np.sum(np.log(norm_factors))) > 1e-6:
            warnings.warn("norm factors don't multiply to 1")

    if samples is not None:
        samples = pd.DataFrame(samples)
        if nlib != len(samples):
            raise DataFormatError("Number of rows in 'samples' must equal number of columns in 'counts'")

    if group is None and samples is not None and 'group' in samples.columns:
        group = samples['group'].values
        samples = samples.drop(columns=['group'])

    if group is None:
        group = pd.Categorical([1] * nlib)
    else:
        if len(group) != nlib:
            raise DataFormatError("Length of 'group' must equal number of columns in 'counts'")
        group = _drop_empty_levels(pd.Categorical(group))

    sam = pd.DataFrame({
        'group': group,
        'lib.size': lib_size,
        'norm.factors': norm_factors
    }, index=pd.Index(col_names, name='sample'))
    if samples is not None:
        for col in samples.columns:
            if col not in ('lib.size', 'norm.factors'):
                sam[col] = samples[col].values

    x = DGEList()
    x['counts'] = counts
    x['samples'] = sam

    if genes is None:
        genes = pd.DataFrame(index=row_names)
    else:
        genes = pd.DataFrame(genes).copy()
        if len(genes) != ntags:
            raise DataFormatError("Counts and genes have different numbers of rows")
        genes.index = row_names
    genes.index.name = 'feature'
    x['genes'] = genes

    if remove_zeros:
        all_zeros = np.sum(counts > 0, axis=1) == 0
        if np.any(all_zeros):
            logger.info("Removing %d rows with all zero counts", int(np.sum(all_zeros)))
            x = x.subset(~all_zeros)

    return x


def as_dgelist(y):
    """Return y as a DGEList, wrapping a bare matrix or DataFrame."""
    if isinstance(y, DGEList):
        return y
    if isinstance(y, dict) and 'counts' in y:
        return make_dgelist(y['counts'], samples=y.get('samples'), genes=y.get('genes'))
    return make_dgelist(y)


def get_norm_lib_sizes(y, log=False):
    """Get effective (normalized) library sizes.

    For a DGEList these are ``lib.size * norm.factors``; for a plain matrix
    the column sums.
    """
    if isinstance(y, dict) and 'samples' in y:
        els = y['samples']['lib.size'].to_numpy(dtype=np.float64) * \
            y['samples']['norm.factors'].to_numpy(dtype=np.float64)
    else:
        els = _as_count_matrix(y).sum(axis=0)
    if log:
        els = np.log(els)
    return els
