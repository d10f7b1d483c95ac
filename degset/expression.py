"""
Expression value computation for degset.

Counts per million on the raw and log2 scales.
"""

import numpy as np

from .errors import DataFormatError, DegenerateInputError


def add_prior_count(y, lib_size=None, prior_count=1):
    """Add library-size-adjusted prior counts.

    The prior is scaled in proportion to each library size so that it has
    the same effect on the log-CPM of every sample.

    Returns
    -------
    dict with 'y' (adjusted counts) and 'lib_size' (adjusted library sizes).
    """
    y = np.asarray(y, dtype=np.float64)
    if lib_size is None:
        lib_size = y.sum(axis=0)
    lib_size = np.asarray(lib_size, dtype=np.float64)

    prior_count = np.asarray(prior_count, dtype=np.float64)
    scaled = lib_size / np.mean(lib_size)
    if prior_count.ndim == 0:
        prior = prior_count * scaled[np.newaxis, :]
    else:
        # one prior count per gene
        prior = prior_count.reshape(-1, 1) * scaled[np.newaxis, :]

    y_aug = y + prior
    lib_aug = lib_size + 2.0 * np.mean(prior, axis=0)
    return {'y': y_aug, 'lib_size': lib_aug}


def cpm(y, lib_size=None, log=False, prior_count=2, normalized_lib_sizes=True):
    """Counts per million.

    Parameters
    ----------
    y : array-like or DGEList
        Count matrix or DGEList.
    lib_size : array-like, optional
        Library sizes. Defaults to the (normalized) library sizes of a
        DGEList or the column sums of a matrix.
    log : bool
        Return log2-CPM?
    prior_count : float
        Prior count for log transformation.
    normalized_lib_sizes : bool
        Use normalized library sizes (for DGEList input).

    Returns
    -------
    ndarray of CPM values.
    """
    if isinstance(y, dict) and 'counts' in y:
        if lib_size is None:
            lib_size = y['samples']['lib.size'].to_numpy(dtype=np.float64)
            if normalized_lib_sizes:
                lib_size = lib_size * y['samples']['norm.factors'].to_numpy(dtype=np.float64)
        y = y['counts']
    return _cpm_default(y, lib_size=lib_size, log=log, prior_count=prior_count)


def _cpm_default(y, lib_size=None, log=False, prior_count=2):
    """Core CPM calculation."""
    try:
        y = np.asarray(y, dtype=np.float64)
    except (TypeError, ValueError):
        raise DataFormatError("counts must be numeric") from None
    if y.ndim == 1:
        y = y.reshape(-1, 1)
    if y.size == 0:
        return y.copy()
    if np.any(np.isnan(y)):
        raise DataFormatError("NA counts not allowed")
    if np.min(y) < 0:
        raise DataFormatError("Negative counts not allowed")

    if lib_size is None:
        lib_size = y.sum(axis=0)
    lib_size = np.asarray(lib_size, dtype=np.float64)
    if len(lib_size) != y.shape[1]:
        raise DataFormatError("Length of lib_size differs from number of libraries")
    if np.any(lib_size <= 0):
        raise DegenerateInputError("library sizes should be greater than zero")

    if log:
        out = add_prior_count(y, lib_size=lib_size, prior_count=prior_count)
        return np.log2(out['y'] / out['lib_size'][np.newaxis, :] * 1e6)
    return y / lib_size[np.newaxis, :] * 1e6


def ave_log_cpm(y, lib_size=None, prior_count=2):
    """Average log2-CPM of each gene."""
    return np.mean(cpm(y, lib_size=lib_size, log=True, prior_count=prior_count), axis=1)
