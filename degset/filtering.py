"""
Gene filtering for degset.

A fixed CPM threshold filter and edgeR's design-aware filterByExpr.
Both return a boolean keep-mask in row order; :func:`filter_counts` applies
a mask.
"""

import logging

import numpy as np

from .dgelist import _as_count_matrix
from .expression import cpm

logger = logging.getLogger(__name__)


def _counts_and_lib_size(y, lib_size):
    if isinstance(y, dict) and 'counts' in y:
        counts = _as_count_matrix(y['counts'])
        if lib_size is None:
            lib_size = y['samples']['lib.size'].to_numpy(dtype=np.float64) * \
                y['samples']['norm.factors'].to_numpy(dtype=np.float64)
    else:
        counts = _as_count_matrix(y)
    if lib_size is None:
        lib_size = counts.sum(axis=0)
    return counts, np.asarray(lib_size, dtype=np.float64)


def _smallest_group(y, group):
    if group is None and isinstance(y, dict) and 'samples' in y:
        group = y['samples']['group'].values
    if group is None:
        return None
    _, n = np.unique(np.asarray(group).astype(str), return_counts=True)
    return int(np.min(n))


def filter_by_cpm(y, min_cpm=1.0, min_samples=None, group=None, lib_size=None):
    """Keep genes with CPM >= min_cpm in at least min_samples samples.

    Parameters
    ----------
    y : array-like or DGEList
        Count matrix or DGEList.
    min_cpm : float
        CPM threshold, must be positive.
    min_samples : int, optional
        Number of samples that must reach the threshold. Defaults to the
        size of the smallest group, or all samples if there are no groups.
    group : array-like, optional
        Group factor used for the default of min_samples.
    lib_size : array-like, optional
        Library sizes. For a DGEList the normalized library sizes.

    Returns
    -------
    ndarray of bool, True for genes to keep.
    """
    counts, lib_size = _counts_and_lib_size(y, lib_size)
    if not min_cpm > 0:
        raise ValueError("min_cpm must be positive")
    if min_samples is None:
        min_samples = _smallest_group(y, group)
        if min_samples is None:
            min_samples = counts.shape[1]
    if min_samples < 1:
        raise ValueError("min_samples must be at least 1")

    cpm_vals = cpm(counts, lib_size=lib_size)
    return np.sum(cpm_vals >= min_cpm, axis=1) >= min_samples


def filter_by_expr(y, design=None, group=None, lib_size=None,
                   min_count=10, min_total_count=15, large_n=10, min_prop=0.7):
    """Filter low-expressed genes.

    Port of edgeR's filterByExpr(). The CPM cutoff corresponds to
    ``min_count`` reads in a library of median size.

    Parameters
    ----------
    y : array-like or DGEList
        Count matrix or DGEList.
    design : array-like, optional
        Design matrix.
    group : array-like, optional
        Group factor.
    lib_size : array-like, optional
        Library sizes.
    min_count : float
        Minimum count threshold.
    min_total_count : float
        Minimum total count across all samples.
    large_n : int
        Large sample size threshold.
    min_prop : float
        Minimum proportion for large groups.

    Returns
    -------
    ndarray of bool, True for genes to keep.
    """
    if isinstance(y, dict) and 'counts' in y and design is None and group is None:
        group = y['samples']['group'].values
    counts, lib_size = _counts_and_lib_size(y, lib_size)

    # Minimum effective sample size
    if group is None:
        if design is None:
            min_sample_size = counts.shape[1]
        else:
            design = np.asarray(design, dtype=np.float64)
            h = _hat_values(design)
            min_sample_size = 1.0 / np.max(h)
    else:
        min_sample_size = _smallest_group(y, group)

    if min_sample_size > large_n:
        min_sample_size = large_n + (min_sample_size - large_n) * min_prop

    median_lib_size = np.median(lib_size)
    cpm_cutoff = min_count / median_lib_size * 1e6
    cpm_vals = cpm(counts, lib_size=lib_size)

    tol = 1e-14
    keep_cpm = np.sum(cpm_vals >= cpm_cutoff, axis=1) >= (min_sample_size - tol)
    keep_total = np.sum(counts, axis=1) >= (min_total_count - tol)

    return keep_cpm & keep_total


def filter_counts(y, keep=None, keep_lib_sizes=True, **kwargs):
    """Drop filtered genes, preserving row order.

    Parameters
    ----------
    y : array-like or DGEList
    keep : ndarray of bool, optional
        Keep-mask; computed with :func:`filter_by_cpm` and ``kwargs`` when
        omitted.
    keep_lib_sizes : bool
        For a DGEList, keep the original library sizes (so that filtering
        again with the same threshold is a no-op) or recompute them from the
        retained counts.

    Returns
    -------
    DGEList or ndarray of the retained rows.
    """
    if keep is None:
        keep = filter_by_cpm(y, **kwargs)
    keep = np.asarray(keep, dtype=bool)
    logger.info("Keeping %d of %d genes", int(keep.sum()), len(keep))
    if isinstance(y, dict) and 'counts' in y:
        return y.subset(keep, keep_lib_sizes=keep_lib_sizes)
    return _as_count_matrix(y)[keep]


def _hat_values(design):
    """Compute hat/leverage values for a design matrix."""
    Q, R = np.linalg.qr(design)
    return np.sum(Q ** 2, axis=1)
