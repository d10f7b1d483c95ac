"""
Normalization factors for degset.

Port of edgeR's calcNormFactors: trimmed mean of M-values (TMM), TMM with
singleton pairing (TMMwsp), relative log expression (RLE) and
upper-quartile scaling. Factors are rescaled to multiply to one.
"""

import logging
import warnings

import numpy as np
from scipy.stats import rankdata

from .dgelist import _as_count_matrix
from .errors import DegenerateInputError

logger = logging.getLogger(__name__)

NORM_METHODS = ('TMM', 'TMMwsp', 'RLE', 'upperquartile', 'none')


def calc_norm_factors(counts, lib_size=None, method='TMM', ref_column=None,
                      logratio_trim=0.3, sum_trim=0.05, do_weighting=True,
                      a_cutoff=-1e10, p=0.75):
    """Calculate normalization factors for a count matrix.

    Parameters
    ----------
    counts : array-like or DGEList
        Count matrix (genes x samples), or DGEList object.
    lib_size : array-like, optional
        Library sizes. Defaults to column sums.
    method : str
        One of 'TMM', 'TMMwsp', 'RLE', 'upperquartile', 'none'.
    ref_column : int, optional
        Reference column for TMM/TMMwsp.
    logratio_trim : float
        Amount of trim for log-ratios (TMM).
    sum_trim : float
        Amount of trim for sums (TMM).
    do_weighting : bool
        Use precision weights in TMM.
    a_cutoff : float
        Abundance cutoff for TMM.
    p : float
        Quantile for upper-quartile method.

    Returns
    -------
    DGEList (a copy with ``samples['norm.factors']`` set) if the input is a
    DGEList, otherwise an ndarray of normalization factors.

    Raises
    ------
    DegenerateInputError
        If a sample has zero total count.
    """
    kwargs = dict(method=method, ref_column=ref_column,
                  logratio_trim=logratio_trim, sum_trim=sum_trim,
                  do_weighting=do_weighting, a_cutoff=a_cutoff, p=p)
    if isinstance(counts, dict) and 'counts' in counts:
        y = counts._copy()
        if lib_size is None:
            lib_size = y['samples']['lib.size'].to_numpy(dtype=np.float64)
        nf = _calc_norm_factors_default(y['counts'], lib_size=lib_size, **kwargs)
        y['samples']['norm.factors'] = nf
        logger.info("%s normalization factors: %s", method,
                    ", ".join(f"{v:.3f}" for v in nf))
        return y

    return _calc_norm_factors_default(counts, lib_size=lib_size, **kwargs)


def _calc_norm_factors_default(x, lib_size=None, method='TMM', ref_column=None,
                               logratio_trim=0.3, sum_trim=0.05, do_weighting=True,
                               a_cutoff=-1e10, p=0.75):
    """Core normalization factor calculation for count matrices."""
    x = _as_count_matrix(x)
    if np.any(np.isnan(x)):
        raise DegenerateInputError("NA counts not permitted")
    nsamples = x.shape[1]

    if method == 'TMMwzp':
        method = 'TMMwsp'
    if method not in NORM_METHODS:
        raise ValueError(f"method must be one of {NORM_METHODS}")

    totals = x.sum(axis=0)
    empty = np.where(totals <= 0)[0]
    if len(empty) and method != 'none':
        raise DegenerateInputError(
            f"normalization factor undefined for sample(s) with zero total count: "
            f"columns {empty.tolist()}")

    if lib_size is None:
        lib_size = totals
    else:
        lib_size = np.asarray(lib_size, dtype=np.float64)
        if len(lib_size) != nsamples:
            raise ValueError("length of lib_size doesn't match number of samples")
        if np.any(np.isnan(lib_size)) or np.any(lib_size <= 0):
            raise DegenerateInputError("library sizes must be positive")

    allzero = np.sum(x > 0, axis=1) == 0
    if np.any(allzero):
        x = x[~allzero]

    if x.shape[0] == 0 or nsamples == 1:
        method = 'none'

    if method == 'TMM':
        f = _calc_tmm(x, lib_size, ref_column, logratio_trim, sum_trim, do_weighting, a_cutoff)
    elif method == 'TMMwsp':
        f = _calc_tmmwsp(x, lib_size, ref_column, logratio_trim, sum_trim, do_weighting, a_cutoff)
    elif method == 'RLE':
        f = _calc_factor_rle(x) / lib_size
    elif method == 'upperquartile':
        f = _calc_factor_quantile(x, lib_size, p)
    else:
        f = np.ones(nsamples)

    if not np.all(np.isfinite(f) & (f > 0)):
        raise DegenerateInputError(
            f"{method} produced non-positive normalization factors; "
            "too few genes are expressed in every sample")

    # Normalize so factors multiply to one
    return f / np.exp(np.mean(np.log(f)))


def _tmm_reference(x, lib_size):
    """Sample whose upper quartile is closest to the mean upper quartile."""
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        f75 = _calc_factor_quantile(x, lib_size, 0.75)
    if np.median(f75) < 1e-20:
        return int(np.argmax(np.sum(np.sqrt(x), axis=0)))
    return int(np.argmin(np.abs(f75 - np.mean(f75))))


def _calc_tmm(x, lib_size, ref_column, logratio_trim, sum_trim, do_weighting, a_cutoff):
    if ref_column is None:
        ref_column = _tmm_reference(x, lib_size)
    return np.array([
        _calc_factor_tmm(x[:, i], x[:, ref_column], lib_size[i], lib_size[ref_column],
                         logratio_trim, sum_trim, do_weighting, a_cutoff)
        for i in range(x.shape[1])])


def _calc_tmmwsp(x, lib_size, ref_column, logratio_trim, sum_trim, do_weighting, a_cutoff):
    if ref_column is None:
        ref_column = int(np.argmax(np.sum(np.sqrt(x), axis=0)))
    return np.array([
        _calc_factor_tmmwsp(x[:, i], x[:, ref_column], lib_size[i], lib_size[ref_column],
                            logratio_trim, sum_trim, do_weighting)
        for i in range(x.shape[1])])


def _calc_factor_rle(data):
    """Scale factors as in Anders et al (2010)."""
    with np.errstate(divide='ignore'):
        gm = np.exp(np.mean(np.log(data), axis=1))
    pos = gm > 0
    return np.median(data[pos] / gm[pos, np.newaxis], axis=0)


def _calc_factor_quantile(data, lib_size, p=0.75):
    """Upper-quartile normalization."""
    f = np.quantile(data, p, axis=0)
    if np.min(f) == 0:
        warnings.warn("One or more quantiles are zero")
    return f / lib_size


def _calc_factor_tmm(obs, ref, libsize_obs, libsize_ref, logratio_trim=0.3,
                     sum_trim=0.05, do_weighting=True, a_cutoff=-1e10):
    """TMM between two libraries."""
    nO, nR = float(libsize_obs), float(libsize_ref)
    with np.errstate(divide='ignore', invalid='ignore'):
        log_obs = np.log2(obs / nO)
        log_ref = np.log2(ref / nR)
        logR = log_obs - log_ref
        absE = (log_obs + log_ref) / 2
        v = (nO - obs) / nO / obs + (nR - ref) / nR / ref

    fin = np.isfinite(logR) & np.isfinite(absE) & (absE > a_cutoff)
    logR, absE, v = logR[fin], absE[fin], v[fin]

    if len(logR) == 0 or np.max(np.abs(logR)) < 1e-6:
        return 1.0

    # Trim by rank of M then by rank of A
    n = len(logR)
    loL = np.floor(n * logratio_trim) + 1
    hiL = n + 1 - loL
    loS = np.floor(n * sum_trim) + 1
    hiS = n + 1 - loS
    rank_logR = rankdata(logR)
    rank_absE = rankdata(absE)
    keep = ((rank_logR >= loL) & (rank_logR <= hiL) &
            (rank_absE >= loS) & (rank_absE <= hiS))
    if not np.any(keep):
        return 1.0

    if do_weighting:
        f = np.sum(logR[keep] / v[keep]) / np.sum(1 / v[keep])
    else:
        f = np.mean(logR[keep])
    if not np.isfinite(f):
        f = 0.0
    return 2 ** f


def _calc_factor_tmmwsp(obs, ref, libsize_obs, libsize_ref, logratio_trim=0.3,
                        sum_trim=0.05, do_weighting=True):
    """TMM with singleton pairing."""
    eps = 1e-14
    npos = 2 * (obs > eps).astype(int) + (ref > eps).astype(int)

    # Remove double zeros
    nz = npos != 0
    obs, ref, npos = obs[nz], ref[nz], npos[nz]

    # Pair singleton positives: largest unmatched in obs with largest in ref
    single = (npos == 1) | (npos == 2)
    n_pairs = min(np.sum(npos == 1), np.sum(npos == 2))
    obsk = np.sort(obs[single])[::-1][:n_pairs]
    refk = np.sort(ref[single])[::-1][:n_pairs]
    obs = np.concatenate([obs[~single], obsk])
    ref = np.concatenate([ref[~single], refk])

    n = len(obs)
    if n == 0:
        return 1.0

    obs_p = obs / libsize_obs
    ref_p = ref / libsize_ref
    M = np.log2(obs_p / ref_p)
    A = 0.5 * np.log2(obs_p * ref_p)
    if np.max(np.abs(M)) < 1e-6:
        return 1.0

    # Ties in M broken by shrunk log-ratios
    M_shrunk = np.log2(((obs + 0.5) / (libsize_obs + 0.5)) / ((ref + 0.5) / (libsize_ref + 0.5)))
    o_M = np.lexsort((M_shrunk, M))
    o_A = np.argsort(A, kind='stable')

    loM = int(n * logratio_trim) + 1
    keep_M = np.zeros(n, dtype=bool)
    keep_M[o_M[loM:n - loM]] = True
    loA = int(n * sum_trim) + 1
    keep_A = np.zeros(n, dtype=bool)
    keep_A[o_A[loA:n - loA]] = True

    keep = keep_M & keep_A
    if not np.any(keep):
        return 1.0
    M = M[keep]

    if do_weighting:
        obs_p, ref_p = obs_p[keep], ref_p[keep]
        v = (1 - obs_p) / obs_p / libsize_obs + (1 - ref_p) / ref_p / libsize_ref
        w = (1 + 1e-6) / (v + 1e-6)
        tmm = np.sum(w * M) / np.sum(w)
    else:
        tmm = np.mean(M)
    return 2 ** tmm
