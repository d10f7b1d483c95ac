"""
Precision-weighted linear models for RNA-seq.

Port of limma's voom, voomWithQualityWeights, arrayWeights, lmFit,
contrasts.fit and eBayes. Counts are transformed to log2-CPM, a lowess
mean-variance trend turns into observation-level precision weights, and
each gene gets a weighted least squares fit whose variance is moderated by
empirical Bayes.
"""

import logging
import re
import warnings

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy import linalg as sla
from scipy import stats
from statsmodels.nonparametric.smoothers_lowess import lowess

from .classes import EList, MArrayLM
from .design import check_full_rank, coef_names, resolve_coef
from .dgelist import _as_count_matrix, get_norm_lib_sizes
from .errors import DataFormatError, DegenerateInputError, UnknownCoefficientError
from .squeeze import squeeze_var

logger = logging.getLogger(__name__)

_EPS = 1e-8


def _design_array(design, n_samples):
    """Design as a float matrix plus its column names."""
    if design is None:
        return np.ones((n_samples, 1)), ['Intercept']
    names = coef_names(design)
    x = np.asarray(design, dtype=np.float64)
    if x.ndim == 1:
        x = x.reshape(-1, 1)
    if x.shape[0] != n_samples:
        raise DataFormatError(
            f"design has {x.shape[0]} rows but the data has {n_samples} samples")
    if not np.all(np.isfinite(x)):
        raise DataFormatError("NAs not allowed in design")
    if names is None:
        names = [f"x{k}" for k in range(x.shape[1])]
    return x, names


def _as_matrix_weights(weights, shape):
    if weights is None:
        return None
    w = np.asarray(weights, dtype=np.float64)
    if w.ndim == 0:
        return np.full(shape, float(w))
    if w.ndim == 1:
        if w.shape[0] == shape[1]:
            return np.repeat(w[np.newaxis, :], shape[0], axis=0)
        if w.shape[0] == shape[0]:
            return np.repeat(w[:, np.newaxis], shape[1], axis=1)
        raise DataFormatError("weights must have length n_genes or n_samples")
    if w.shape != shape:
        raise DataFormatError("weights has incompatible dimensions")
    return w


# ---------------------------------------------------------------------
# Weighted least squares


def _fit_rows(y, x, w):
    """Weighted least squares for a block of genes sharing one design.

    Missing values get zero weight. Returns coefficients, unscaled
    covariance diagonals, residual standard deviations and residual df.
    """
    obs = np.isfinite(y)
    if w is None:
        w = obs.astype(np.float64)
    else:
        w = np.where(obs, np.clip(w, _EPS, None), 0.0)
    y0 = np.where(obs, y, 0.0)

    xtwx = np.einsum('gs,sp,sq->gpq', w, x, x)
    xtwy = np.einsum('gs,sp->gp', w * y0, x)
    rank = np.linalg.matrix_rank(xtwx, hermitian=True)
    p = x.shape[1]

    ngenes = y.shape[0]
    coef = np.full((ngenes, p), np.nan)
    stdev = np.full((ngenes, p), np.nan)
    full = rank == p
    if np.any(full):
        inv = np.linalg.inv(xtwx[full])
        coef[full] = np.einsum('gpq,gq->gp', inv, xtwy[full])
        stdev[full] = np.sqrt(np.diagonal(inv, axis1=1, axis2=2))

    resid = y0 - coef @ x.T
    df = np.where(full, np.sum(w > 0, axis=1) - rank, 0)
    rss = np.nansum(w * resid ** 2, axis=1)
    with np.errstate(invalid='ignore', divide='ignore'):
        sigma = np.where(df > 0, np.sqrt(rss / np.maximum(df, 1)), np.nan)
    return coef, stdev, sigma, df


def lm_fit(obj, design=None, weights=None, n_jobs=None, chunk_size=2000):
    """Fit a linear model to each gene.

    Parameters
    ----------
    obj : EList, ndarray or DataFrame
        Log-expression values (genes x samples). An EList supplies its
        design and precision weights unless overridden.
    design : DataFrame or ndarray, optional
        Design matrix (samples x coefficients).
    weights : ndarray, optional
        Observation weights (genes x samples) or sample weights.
    n_jobs : int, optional
        Fit blocks of genes in parallel with joblib. Genes are
        independent so the result does not depend on n_jobs.
    chunk_size : int
        Genes per block when fitting in parallel.

    Returns
    -------
    MArrayLM

    Raises
    ------
    RankDeficiencyError
        If the design is not of full column rank.
    DegenerateInputError
        If the design leaves no residual degrees of freedom.
    """
    genes = None
    if isinstance(obj, dict) and 'E' in obj:
        y = np.asarray(obj['E'], dtype=np.float64)
        if design is None:
            design = obj.get('design')
        if weights is None:
            weights = obj.get('weights')
        genes = obj.get('genes')
    elif isinstance(obj, pd.DataFrame):
        genes = pd.DataFrame(index=obj.index.astype(str))
        y = obj.to_numpy(dtype=np.float64)
    else:
        y = np.asarray(obj, dtype=np.float64)
    if y.ndim == 1:
        y = y.reshape(1, -1)
    ngenes, nsamples = y.shape

    x, names = _design_array(design, nsamples)
    check_full_rank(pd.DataFrame(x, columns=names))
    if nsamples - x.shape[1] < 1:
        raise DegenerateInputError(
            f"no residual degrees of freedom: {nsamples} samples for "
            f"{x.shape[1]} coefficients")
    w = _as_matrix_weights(weights, y.shape)
    if w is not None and np.any(w < 0):
        raise DataFormatError("negative weights not allowed")

    if n_jobs is not None and n_jobs != 1 and ngenes > chunk_size:
        starts = range(0, ngenes, chunk_size)
        parts = Parallel(n_jobs=n_jobs, prefer='threads')(
            delayed(_fit_rows)(y[s:s + chunk_size], x,
                               None if w is None else w[s:s + chunk_size])
            for s in starts)
        coef, stdev, sigma, df = (np.concatenate(z) for z in zip(*parts))
    else:
        coef, stdev, sigma, df = _fit_rows(y, x, w)

    fit = MArrayLM()
    fit['coefficients'] = coef
    fit['stdev.unscaled'] = stdev
    fit['sigma'] = sigma
    fit['df.residual'] = df.astype(np.float64)
    fit['cov.coefficients'] = np.linalg.inv(x.T @ x)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        fit['Amean'] = np.nanmean(y, axis=1)
    fit['design'] = design if isinstance(design, pd.DataFrame) else pd.DataFrame(x, columns=names)
    fit['coef.names'] = list(names)
    fit['genes'] = genes if genes is not None else pd.DataFrame(index=[str(i+1) for i in range(ngenes)])
    fit['method'] = 'ls'
    return fit


# ---------------------------------------------------------------------
# voom


def _normalize_between_arrays(y, method='none'):
    method = (method or 'none').lower()
    if method == 'none':
        return y
    if method == 'scale':
        med = np.nanmedian(y, axis=0)
        return y - med[np.newaxis, :] + np.mean(med)
    if method == 'quantile':
        order = np.argsort(y, axis=0)
        ref = np.mean(np.take_along_axis(y, order, axis=0), axis=1)
        out = np.empty_like(y)
        np.put_along_axis(out, order, ref[:, np.newaxis], axis=0)
        return out
    raise ValueError("normalize_method must be one of: none, scale, quantile")


def _mean_variance_trend(sx, sy, span):
    """Lowess of sqrt(sd) on log-count, as an interpolating function.

    Outside the observed range the trend is held constant.
    """
    ok = np.isfinite(sx) & np.isfinite(sy)
    sx, sy = sx[ok], sy[ok]
    delta = 0.01 * (np.max(sx) - np.min(sx))
    fitted = lowess(sy, sx, frac=span, it=3, delta=delta, return_sorted=True)
    tx = pd.Series(fitted[:, 1]).groupby(fitted[:, 0]).mean()
    xp, fp = tx.index.to_numpy(), np.clip(tx.to_numpy(), _EPS, None)

    def trend(x):
        return np.interp(x, xp, fp)
    return trend, (xp, fp)


def voom(counts, design=None, lib_size=None, normalize_method='none', span=0.5,
         weights=None, sample_weights=False, var_group=None, prior_n=10.0):
    """Transform counts to log2-CPM with precision weights.

    Port of limma's voom and, with ``sample_weights=True``,
    voomWithQualityWeights.

    Parameters
    ----------
    counts : DGEList or array-like
        Counts (genes x samples). For a DGEList the effective library
        sizes ``lib.size * norm.factors`` are used.
    design : DataFrame or ndarray, optional
        Design matrix. Defaults to an intercept.
    lib_size : array-like, optional
        Library sizes, overriding those of a DGEList.
    normalize_method : str
        Between-sample normalization of the log-CPM: 'none', 'scale' or
        'quantile'.
    span : float
        Lowess span of the mean-variance trend.
    weights : array-like, optional
        Prior sample or observation weights used when fitting the trend.
    sample_weights : bool
        Estimate sample quality weights with :func:`array_weights` and
        combine them with the voom weights.
    var_group : array-like, optional
        Groups of samples sharing a quality weight.
    prior_n : float
        Prior strength of the sample weights toward equality.

    Returns
    -------
    EList
    """
    genes = targets = None
    if isinstance(counts, dict) and 'counts' in counts:
        if lib_size is None:
            lib_size = get_norm_lib_sizes(counts)
        genes = counts.get('genes')
        targets = counts['samples'].copy()
        counts = counts['counts']
    counts = _as_count_matrix(counts)
    ngenes, nsamples = counts.shape
    if ngenes < 2:
        raise DegenerateInputError("need at least two genes to fit a mean-variance trend")
    if np.any(np.isnan(counts)) or np.min(counts) < 0:
        raise DataFormatError("counts must be non-negative and not NA")

    if lib_size is None:
        lib_size = counts.sum(axis=0)
    lib_size = np.asarray(lib_size, dtype=np.float64)
    if np.any(lib_size <= 0):
        raise DegenerateInputError("library sizes must be positive")
    x, names = _design_array(design, nsamples)
    if design is None:
        design = pd.DataFrame(x, columns=names)

    if sample_weights:
        if weights is not None:
            raise ValueError("can't specify weights and estimate sample weights")
        v = voom(counts, design, lib_size=lib_size, normalize_method=normalize_method, span=span)
        aw = array_weights(v, design, var_group=var_group, prior_n=prior_n)
        v = voom(counts, design, lib_size=lib_size, normalize_method=normalize_method,
                 span=span, weights=aw)
        aw = array_weights(v, design, var_group=var_group, prior_n=prior_n)
        v['weights'] = v['weights'] * aw[np.newaxis, :]
        v['sample.weights'] = aw
        logger.info("Sample quality weights: %s", ", ".join(f"{a:.3f}" for a in aw))
        _attach_labels(v, genes, targets)
        return v

    y = np.log2((counts + 0.5) / (lib_size[np.newaxis, :] + 1.0) * 1e6)
    y = _normalize_between_arrays(y, normalize_method)

    fit = lm_fit(y, design, weights=weights)
    sx = fit['Amean'] + np.mean(np.log2(lib_size + 1.0)) - np.log2(1e6)
    sy = np.sqrt(fit['sigma'])
    allzero = counts.sum(axis=1) == 0
    trend, line = _mean_variance_trend(sx[~allzero], sy[~allzero], span)

    fitted_values = fit['coefficients'] @ x.T
    fitted_count = 1e-6 * 2.0 ** fitted_values * (lib_size[np.newaxis, :] + 1.0)
    w = 1.0 / trend(np.log2(fitted_count)) ** 4

    out = EList()
    out['E'] = y
    out['weights'] = w
    out['design'] = design
    out['voom.line'] = line
    out['lib.size'] = lib_size
    _attach_labels(out, genes, targets)
    return out


def voom_with_quality_weights(counts, design=None, lib_size=None, normalize_method='none',
                              span=0.5, var_group=None, prior_n=10.0):
    """voom with sample quality weights; see :func:`voom`."""
    return voom(counts, design=design, lib_size=lib_size, normalize_method=normalize_method,
                span=span, sample_weights=True, var_group=var_group, prior_n=prior_n)


def _attach_labels(v, genes, targets):
    ngenes, nsamples = v['E'].shape
    if genes is None:
        genes = v.get('genes')
    if genes is None:
        genes = pd.DataFrame(index=[str(i+1) for i in range(ngenes)])
    v['genes'] = genes
    if targets is None:
        targets = v.get('targets')
    if targets is None:
        targets = pd.DataFrame(index=[f"Sample{j+1}" for j in range(nsamples)])
    targets = targets.copy()
    targets['lib.size'] = v['lib.size']
    if v.get('sample.weights') is not None:
        targets['sample.weights'] = v['sample.weights']
    v['targets'] = targets


# ---------------------------------------------------------------------
# Sample quality weights


def _contr_sum(n):
    z = np.zeros((n, n - 1))
    z[:n - 1, :] = np.eye(n - 1)
    z[n - 1, :] = -1.0
    return z


def _variance_design(nsamples, var_group=None):
    """Sum-to-zero coded variance design: one weight per sample or group."""
    if var_group is None:
        return _contr_sum(nsamples)
    vg = np.asarray(var_group).astype(str)
    if len(vg) != nsamples:
        raise DataFormatError("var_group has wrong length")
    levels, inv = np.unique(vg, return_inverse=True)
    if len(levels) < 2:
        raise DataFormatError("need at least two variance groups")
    return _contr_sum(len(levels))[inv, :]


def _array_weights_genebygene(E, x, weights, z2, prior_n):
    """Gene-by-gene update of the sample variance model (Ritchie et al 2006)."""
    ngenes, narrays = E.shape
    z = np.column_stack([np.ones(narrays), z2])
    info2 = prior_n * (z2.T @ z2)
    gam = np.zeros(z2.shape[1])
    aw = np.ones(narrays)

    for i in range(ngenes):
        w = aw if weights is None else aw * weights[i]
        obs = np.isfinite(E[i]) & (w > 0)
        xo = x[obs]
        if obs.sum() - np.linalg.matrix_rank(xo) < 2:
            continue
        wo = w[obs]
        sw = np.sqrt(wo)
        q, _ = np.linalg.qr(xo * sw[:, np.newaxis])
        h = np.sum(q ** 2, axis=1)
        coef, *_ = np.linalg.lstsq(xo * sw[:, np.newaxis], E[i, obs] * sw, rcond=None)
        d = wo * (E[i, obs] - xo @ coef) ** 2
        s2 = np.sum(d) / (obs.sum() - xo.shape[1])
        if s2 < 1e-15:
            continue
        zo = z[obs]
        a = zo.T @ ((1.0 - h)[:, np.newaxis] * zo)
        info2 = info2 + a[1:, 1:] - np.outer(a[1:, 0], a[0, 1:]) / a[0, 0]
        dl = z2[obs].T @ (d / s2 - 1.0 + h)
        gam = gam + np.linalg.solve(info2, dl)
        aw = np.exp(-(z2 @ gam))
    return aw


def _array_weights_reml(E, x, z2, prior_n, maxiter=50, tol=1e-5):
    """REML scoring for the sample variance model, all genes at once."""
    ngenes, narrays = E.shape
    p = x.shape[1]
    z = np.column_stack([np.ones(narrays), z2])
    ngam = z2.shape[1]

    # Genes with no residual variation carry no information
    q_full, _ = np.linalg.qr(x, mode='complete')
    effects = (q_full.T @ E.T)[p:]
    keep = np.mean(effects ** 2, axis=0) >= 1e-15
    if keep.sum() < 2:
        return np.ones(narrays)
    yt = E[keep].T
    ngenes = yt.shape[1]

    gam = np.zeros(ngam)
    w = np.ones(narrays)
    last = np.inf
    iu = np.triu_indices(p)
    for _ in range(maxiter):
        sw = np.sqrt(w)
        q, _ = np.linalg.qr(x * sw[:, np.newaxis])
        coef, *_ = np.linalg.lstsq(x * sw[:, np.newaxis], yt * sw[:, np.newaxis], rcond=None)
        resid = yt - x @ coef
        s2 = np.sum(w[:, np.newaxis] * resid ** 2, axis=0) / (narrays - p)
        h = np.sum(q ** 2, axis=1)

        # products of hat-matrix columns, off-diagonal terms counted twice
        q2 = q[:, iu[0]] * q[:, iu[1]]
        q2[:, iu[0] != iu[1]] *= np.sqrt(2.0)
        info = z.T @ ((1.0 - 2.0 * h)[:, np.newaxis] * z) + (q2.T @ z).T @ (q2.T @ z)
        info2 = info[1:, 1:] - np.outer(info[1:, 0], info[0, 1:]) / info[0, 0]
        info2 = ngenes * info2 + prior_n * (z2.T @ z2)

        zbar = np.mean(w[:, np.newaxis] * resid ** 2 / s2[np.newaxis, :], axis=1) - (1.0 - h)
        dl = z2.T @ (ngenes * zbar + prior_n * (w - 1.0))
        step = np.linalg.solve(info2, dl)
        conv = float(dl @ step) / ngam / (ngenes + prior_n)
        if not np.isfinite(conv) or conv >= last:
            break
        last = conv
        gam = gam + step
        w = np.exp(-(z2 @ gam))
        if conv < tol:
            break
    return w


def array_weights(obj, design=None, weights=None, var_group=None, prior_n=10.0,
                  method='auto', maxiter=50, tol=1e-5):
    """Estimate relative quality weights for each sample.

    Port of limma's arrayWeights. Each sample (or group of samples given by
    ``var_group``) gets a variance multiplier, estimated by REML or by the
    gene-by-gene update; the weights are the inverse multipliers and have
    geometric mean near one.

    Parameters
    ----------
    obj : EList or ndarray
        Log-expression values; an EList supplies design and weights.
    design : DataFrame or ndarray, optional
    weights : ndarray, optional
        Observation precision weights.
    var_group : array-like, optional
    prior_n : float
        Prior number of genes squeezing the weights toward equality.
    method : str
        'auto', 'genebygene' or 'reml'. 'auto' uses genebygene when there
        are precision weights or missing values.

    Returns
    -------
    ndarray of sample weights.
    """
    if isinstance(obj, dict) and 'E' in obj:
        E = np.asarray(obj['E'], dtype=np.float64)
        if design is None:
            design = obj.get('design')
        if weights is None:
            weights = obj.get('weights')
    else:
        E = np.asarray(obj, dtype=np.float64)
    ngenes, narrays = E.shape
    x, _ = _design_array(design, narrays)

    # Drop aliased design columns
    _, r, piv = sla.qr(x, mode='economic', pivoting=True)
    d = np.abs(np.diag(r))
    rank = int(np.sum(d > np.max(d) * max(x.shape) * np.finfo(float).eps))
    x = x[:, np.sort(piv[:rank])]

    if ngenes < 2 or narrays - rank < 2:
        return np.ones(narrays)
    z2 = _variance_design(narrays, var_group)

    w = _as_matrix_weights(weights, E.shape)
    method = (method or 'auto').lower()
    if method not in ('auto', 'genebygene', 'reml'):
        raise ValueError("method must be one of: auto, genebygene, reml")
    if method == 'auto':
        method = 'genebygene' if (w is not None or np.any(~np.isfinite(E))) else 'reml'

    if method == 'genebygene':
        aw = _array_weights_genebygene(E, x, w, z2, float(prior_n))
    else:
        aw = _array_weights_reml(E, x, z2, float(prior_n), maxiter=maxiter, tol=tol)
    return aw


# ---------------------------------------------------------------------
# Contrasts


_TERM = re.compile(r'\s*([+-]?)\s*(?:(\d+(?:\.\d*)?|\.\d+)\s*\*\s*)?([^+\-*]+?)\s*(?=[+-]|$)')


def make_contrasts(*contrasts, levels):
    """Construct a contrast matrix from expressions in coefficient names.

    Parameters
    ----------
    *contrasts : str
        Expressions like ``'b - a'`` or ``'0.5*x + 0.5*y - z'``.
    levels : list of str, DataFrame or MArrayLM
        Coefficient names, or a design/fit to take them from.

    Returns
    -------
    DataFrame
        Coefficients x contrasts.
    """
    names = coef_names(levels) if not isinstance(levels, (list, tuple)) else list(levels)
    out = pd.DataFrame(0.0, index=names, columns=list(contrasts))
    for expr in contrasts:
        pos = 0
        for m in _TERM.finditer(expr):
            if m.end() == m.start():
                continue
            if m.start() != pos:
                raise DataFormatError(f"cannot parse contrast '{expr}'")
            pos = m.end()
            sign = -1.0 if m.group(1) == '-' else 1.0
            mult = float(m.group(2)) if m.group(2) else 1.0
            name = m.group(3).strip()
            if name not in names:
                raise UnknownCoefficientError(f"'{name}' in contrast '{expr}' is not a coefficient")
            out.loc[name, expr] += sign * mult
        if pos != len(expr.rstrip()):
            raise DataFormatError(f"cannot parse contrast '{expr}'")
    return out


def contrasts_fit(fit, contrasts=None, coefficients=None):
    """Re-express a fit in terms of contrasts of its coefficients.

    Port of limma's contrasts.fit. Must be called before :func:`e_bayes`.
    """
    if fit.get('t') is not None:
        warnings.warn("fit has been through e_bayes; the moderated statistics are dropped")
    names = fit['coef.names']
    p = len(names)
    if contrasts is None:
        if coefficients is None:
            raise ValueError("must specify contrasts or coefficients")
        idx = [resolve_coef(fit, c) for c in np.atleast_1d(coefficients)]
        contrasts = pd.DataFrame(np.eye(p)[:, idx], index=names,
                                 columns=[names[k] for k in idx])
    if isinstance(contrasts, pd.DataFrame):
        cnames = [str(c) for c in contrasts.columns]
        cmat = contrasts.reindex(names).fillna(0.0).to_numpy(dtype=np.float64)
    else:
        cmat = np.asarray(contrasts, dtype=np.float64)
        if cmat.ndim == 1:
            cmat = cmat.reshape(-1, 1)
        cnames = [f"contrast{k+1}" for k in range(cmat.shape[1])]
    if cmat.shape[0] != p:
        raise DataFormatError("number of rows of contrast matrix must match number of coefficients")

    out = fit._copy()
    for k in ('t', 'p.value', 'lods', 'F', 'F.p.value', 's2.post', 'df.total'):
        out.pop(k, None)
    out['contrasts'] = pd.DataFrame(cmat, index=names, columns=cnames)
    out['coefficients'] = fit['coefficients'] @ cmat

    cov = fit['cov.coefficients']
    sd = np.sqrt(np.diag(cov))
    cor = cov / np.outer(sd, sd)
    orthog = np.allclose(cor, np.eye(p), atol=1e-14)
    u = fit['stdev.unscaled']
    if orthog:
        out['stdev.unscaled'] = np.sqrt(u ** 2 @ cmat ** 2)
    else:
        # per-gene variance c' D R D c with D = diag(stdev.unscaled)
        su = np.empty((u.shape[0], cmat.shape[1]))
        for j in range(cmat.shape[1]):
            uc = u * cmat[:, j][np.newaxis, :]
            su[:, j] = np.sqrt(np.einsum('gp,pq,gq->g', uc, cor, uc))
        out['stdev.unscaled'] = su
    out['cov.coefficients'] = cmat.T @ cov @ cmat
    out['coef.names'] = cnames
    return out


# ---------------------------------------------------------------------
# Empirical Bayes


def _tmixture_vector(tstat, stdev_unscaled, df, proportion, v0_lim=None):
    """Prior variance of the non-null coefficients from the top t-statistics."""
    ok = ~np.isnan(tstat)
    tstat, stdev_unscaled, df = np.abs(tstat[ok]), stdev_unscaled[ok], df[ok]
    ngenes = len(tstat)
    ntarget = int(np.ceil(proportion / 2 * ngenes))
    if ntarget < 1:
        return np.nan
    p = max(ntarget / ngenes, proportion)

    maxdf = np.max(df)
    lo = df < maxdf
    if np.any(lo):
        tail = stats.t.logsf(tstat[lo], df[lo])
        tstat = tstat.copy()
        tstat[lo] = stats.t.isf(np.exp(tail), maxdf)

    o = np.argsort(-tstat, kind='stable')[:ntarget]
    tstat = tstat[o]
    v1 = stdev_unscaled[o] ** 2
    r = np.arange(1, ntarget + 1)
    p0 = 2 * stats.t.sf(tstat, maxdf)
    ptarget = ((r - 0.5) / ngenes - (1 - p) * p0) / p
    v0 = np.zeros(ntarget)
    pos = ptarget > p0
    if np.any(pos):
        qtarget = stats.t.isf(ptarget[pos] / 2, maxdf)
        v0[pos] = v1[pos] * ((tstat[pos] / qtarget) ** 2 - 1)
    if v0_lim is not None:
        v0 = np.clip(v0, v0_lim[0], v0_lim[1])
    return float(np.mean(v0))


def _moderated_f(t, cov_coefficients, df_total):
    """Overall moderated F-statistic across all coefficients."""
    sd = np.sqrt(np.diag(cov_coefficients))
    cor = cov_coefficients / np.outer(sd, sd)
    vals, vecs = np.linalg.eigh(cor)
    order = np.argsort(vals)[::-1]
    vals, vecs = vals[order], vecs[:, order]
    r = int(np.sum(vals / vals[0] > 1e-8))
    q = vecs[:, :r] / np.sqrt(vals[:r])[np.newaxis, :] / np.sqrt(r)
    tt = np.where(np.isnan(t), 0.0, t)
    F = np.sum((tt @ q) ** 2, axis=1)
    with np.errstate(invalid='ignore'):
        fp = np.where(np.isinf(df_total), stats.chi2.sf(r * F, r),
                      stats.f.sf(F, r, df_total))
    return F, fp


def e_bayes(fit, proportion=0.01, stdev_coef_lim=(0.1, 4.0), trend=False,
            robust=False, winsor_tail_p=(0.05, 0.1)):
    """Empirical Bayes moderated t-statistics.

    Port of limma's eBayes. Genewise residual variances are squeezed
    toward a common (or, with ``trend=True``, expression-dependent) prior;
    moderated t-statistics use the posterior variances and have
    ``df.residual + df.prior`` degrees of freedom.

    Parameters
    ----------
    fit : MArrayLM
        Output of :func:`lm_fit` or :func:`contrasts_fit`.
    proportion : float
        Assumed proportion of differentially expressed genes, for the
        B-statistic.
    stdev_coef_lim : tuple
        Limits on the prior standard deviation of log-fold-changes for DE
        genes, for the B-statistic.
    trend : bool
        Let the prior variance depend on ``Amean``.
    robust : bool
        Robust estimation of the prior, protecting against outlier genes.
    winsor_tail_p : tuple
        Winsorization tails for the robust fit.

    Returns
    -------
    MArrayLM
        Copy of fit with s2.prior, df.prior, s2.post, df.total, t,
        p.value, lods, F and F.p.value.

    Raises
    ------
    DegenerateInputError
        If there are no residual degrees of freedom, or every gene has zero
        residual variance.
    """
    coefficients = np.asarray(fit['coefficients'], dtype=np.float64)
    stdev_unscaled = np.asarray(fit['stdev.unscaled'], dtype=np.float64)
    sigma = np.asarray(fit['sigma'], dtype=np.float64)
    df_residual = np.asarray(fit['df.residual'], dtype=np.float64)

    if np.all(df_residual == 0):
        raise DegenerateInputError("no residual degrees of freedom in linear model fits")
    finite = np.isfinite(sigma)
    if not np.any(finite):
        raise DegenerateInputError("no finite residual standard deviations")
    if np.all(sigma[finite] < 1e-12):
        raise DegenerateInputError("all features have zero residual variance")

    covariate = None
    if trend:
        covariate = fit.get('Amean')
        if covariate is None:
            raise ValueError("need Amean component in fit to estimate trend")

    sv = squeeze_var(sigma ** 2, df_residual, covariate=covariate, robust=robust,
                     winsor_tail_p=winsor_tail_p)
    out = fit._copy()
    out['s2.prior'] = sv['var_prior']
    out['df.prior'] = sv['df_prior']
    out['s2.post'] = s2_post = sv['var_post']

    df_prior = np.broadcast_to(np.asarray(sv['df_prior'], dtype=np.float64), df_residual.shape)
    df_total = np.minimum(df_residual + df_prior, np.nansum(df_residual))
    out['df.total'] = df_total

    with np.errstate(invalid='ignore', divide='ignore'):
        t = coefficients / stdev_unscaled / np.sqrt(s2_post)[:, np.newaxis]
    out['t'] = t
    out['p.value'] = 2 * stats.t.sf(np.abs(t), df_total[:, np.newaxis])

    # B-statistics
    s2_prior_med = np.nanmedian(np.atleast_1d(sv['var_prior']))
    v0_lim = np.asarray(stdev_coef_lim) ** 2 / s2_prior_med
    var_prior = np.array([
        _tmixture_vector(t[:, j], stdev_unscaled[:, j], df_total, proportion, v0_lim)
        for j in range(t.shape[1])])
    if np.any(np.isnan(var_prior)):
        var_prior[np.isnan(var_prior)] = 1.0 / s2_prior_med
        warnings.warn("Estimation of var.prior failed - set to default value")
    r = (stdev_unscaled ** 2 + var_prior[np.newaxis, :]) / stdev_unscaled ** 2
    t2 = t ** 2
    dft = df_total[:, np.newaxis]
    with np.errstate(invalid='ignore', divide='ignore'):
        kernel = np.where(np.broadcast_to(df_prior[:, np.newaxis] > 1e6, t.shape),
                          t2 * (1 - 1 / r) / 2,
                          (1 + dft) / 2 * np.log((t2 + dft) / (t2 / r + dft)))
    out['lods'] = np.log(proportion / (1 - proportion)) - np.log(r) / 2 + kernel
    out['var.prior'] = var_prior

    if fit.get('cov.coefficients') is not None and t.shape[1] > 0:
        out['F'], out['F.p.value'] = _moderated_f(t, fit['cov.coefficients'], df_total)

    logger.debug("eBayes: s2.prior=%s df.prior=%s", np.median(np.atleast_1d(sv['var_prior'])),
                 np.median(df_prior))
    return out


__all__ = ['lm_fit', 'voom', 'voom_with_quality_weights', 'array_weights',
           'make_contrasts', 'contrasts_fit', 'e_bayes']
