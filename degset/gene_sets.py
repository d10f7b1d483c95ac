"""
Gene set testing for degset.

Port of limma's ids2indices, camera, cameraPR, roast, mroast and fry.
camera is a competitive test: genes in the set against the rest, with the
variance of the set mean inflated for inter-gene correlation. roast and
fry are self-contained tests: the set against the null of no change,
with significance from random rotations of the residual space (roast) or
their analytic limit (fry).
"""

import logging
import warnings

import numpy as np
import pandas as pd
from scipy.stats import beta as beta_dist, chi2, norm as norm_dist, rankdata
from scipy.stats import t as t_dist

from .design import resolve_coef
from .errors import DataFormatError, DegenerateInputError, EmptySetWarning
from .expression import cpm
from .results import p_adjust
from .squeeze import squeeze_var

logger = logging.getLogger(__name__)

SET_STATISTICS = ('mean', 'floormean', 'mean50', 'msq')

# sqrt of the median of chi-square(1)
_FLOOR = float(np.sqrt(chi2.ppf(0.5, df=1)))


def ids2indices(gene_sets, identifiers, remove_empty=False):
    """Convert gene sets of identifiers to row indices of an expression matrix.

    Port of limma's ids2indices.

    Parameters
    ----------
    gene_sets : dict or list
        Mapping of set name to member identifiers, or a list of member
        lists (named ``Set1``, ``Set2``, ...).
    identifiers : array-like or Index
        Feature identifiers in row order, e.g. ``y.genes.index``.
    remove_empty : bool
        Drop sets that match no identifier instead of keeping them empty.

    Returns
    -------
    dict of str to ndarray
        Sorted, deduplicated row indices for each set.

    Warns
    -----
    EmptySetWarning
        For each set that matches no identifier.
    """
    if isinstance(gene_sets, dict):
        items = list(gene_sets.items())
    else:
        items = [(f"Set{k+1}", members) for k, members in enumerate(gene_sets)]
    ids = pd.Index([str(i) for i in identifiers])

    out = {}
    for name, members in items:
        if isinstance(members, str):
            members = [members]
        idx = np.flatnonzero(ids.isin([str(m) for m in members]))
        if len(idx) == 0:
            warnings.warn(f"gene set '{name}' matches no features", EmptySetWarning)
            if remove_empty:
                continue
        out[name] = idx
    return out


def _as_index(index, ngenes):
    """Set names and integer index arrays, range-checked."""
    if isinstance(index, dict):
        names = [str(k) for k in index.keys()]
        sets = list(index.values())
    elif isinstance(index, (list, tuple)) and len(index) > 0 and np.ndim(index[0]) > 0:
        names = [f"Set{k+1}" for k in range(len(index))]
        sets = list(index)
    else:
        names = ['Set1']
        sets = [index]

    out = []
    for name, s in zip(names, sets):
        s = np.asarray(s)
        if s.dtype == bool:
            if len(s) != ngenes:
                raise IndexError(f"logical index for set '{name}' has wrong length")
            s = np.flatnonzero(s)
        s = s.astype(int)
        if len(s) and (s.min() < 0 or s.max() >= ngenes):
            raise IndexError(f"index for set '{name}' out of range for {ngenes} features")
        out.append(s)
    return names, out


def _zscore_t(x, df):
    """Convert t-statistics to z-scores with Hill's (1970) approximation."""
    x = np.asarray(x, dtype=np.float64)
    df = np.minimum(df, 1e100)
    A = df - 0.5
    B = 48.0 * A * A
    z = A * np.log1p(x / df * x)
    z = (((((-0.4 * z - 3.3) * z - 24.0) * z - 85.5) / (0.8 * z * z + 100.0 + B)
          + z + 3.0) / B + 1.0) * np.sqrt(z)
    return z * np.sign(x)


# ---------------------------------------------------------------------
# Effects of the contrast and the residual space


def _expression_input(y, design, weights):
    """Log-expression matrix, design and observation weights from any input."""
    if isinstance(y, dict) and 'counts' in y:
        expr = cpm(y, log=True)
    elif isinstance(y, dict) and 'E' in y:
        expr = np.asarray(y['E'], dtype=np.float64)
        if weights is None:
            weights = y.get('weights')
    else:
        expr = np.asarray(y, dtype=np.float64)
    if design is None and isinstance(y, dict):
        design = y.get('design')
    if design is None:
        raise DataFormatError("design matrix must be provided")
    if expr.ndim != 2:
        raise DataFormatError("expression data must be a genes x samples matrix")
    if not np.all(np.isfinite(expr)):
        raise DataFormatError("expression values must be finite")
    if np.shape(design)[0] != expr.shape[1]:
        raise DataFormatError(
            f"design has {np.shape(design)[0]} rows but the data has {expr.shape[1]} samples")
    return expr, design, weights


def _contrast_last(design, contrast):
    """Reparametrize the design so the contrast is its last coefficient."""
    x = np.asarray(design, dtype=np.float64)
    p = x.shape[1]
    if contrast is None:
        contrast = p - 1
    if isinstance(contrast, (str, int, np.integer)):
        j = resolve_coef(design, contrast, ncoef=p)
        return x[:, [k for k in range(p) if k != j] + [j]]

    c = np.asarray(contrast, dtype=np.float64).ravel()
    if len(c) != p:
        raise DataFormatError(f"contrast has length {len(c)} but design has {p} columns")
    if np.all(c == 0):
        raise DataFormatError("contrast is all zero")
    nonzero = np.flatnonzero(c)
    if len(nonzero) == 1:
        j = nonzero[0]
        x = x[:, [k for k in range(p) if k != j] + [j]]
        x[:, -1] *= np.sign(c[j])
        return x
    q, r = np.linalg.qr(c.reshape(-1, 1), mode='complete')
    x = x @ q
    if r[0, 0] < 0:
        x[:, 0] = -x[:, 0]
    return np.column_stack([x[:, 1:], x[:, 0]])


def _lm_effects(y, design, contrast=None, weights=None):
    """Contrast effect and residual effects of each gene.

    Port of limma's .lmEffects. Returns a genes x (df.residual + 1) matrix
    whose first column is the unscaled t-statistic of the contrast and
    whose remaining columns are orthonormal residual effects.
    """
    x = _contrast_last(design, contrast)
    n, p = x.shape
    if n - p < 1:
        raise DegenerateInputError("no residual degrees of freedom for gene set test")

    def effects_for(yw, xw):
        q, r = np.linalg.qr(xw, mode='complete')
        e = yw @ q
        e[..., p - 1] *= np.sign(r[p - 1, p - 1])
        return np.concatenate([e[..., p - 1:p], e[..., p:]], axis=-1)

    if weights is None:
        return effects_for(y, x)
    w = np.asarray(weights, dtype=np.float64)
    if np.any(w <= 0):
        raise DataFormatError("weights must be positive")
    if w.ndim == 1:
        sw = np.sqrt(w)
        return effects_for(y * sw[np.newaxis, :], x * sw[:, np.newaxis])
    if w.shape != y.shape:
        raise DataFormatError("weights must match the expression matrix")
    out = np.empty((y.shape[0], n - p + 1))
    for g in range(y.shape[0]):
        sw = np.sqrt(w[g])
        out[g] = effects_for(y[g] * sw, x * sw[:, np.newaxis])
    return out


# ---------------------------------------------------------------------
# camera


def _rank_sum_test_with_correlation(iset, statistics, correlation=0.0, df=np.inf):
    """Wilcoxon rank-sum test allowing for correlation between genes.

    Port of limma's rankSumTestWithCorrelation. Returns the p-values for
    the set ranking lower (down) and higher (up) than the rest.
    """
    n = len(statistics)
    ranks = rankdata(statistics)
    r1 = ranks[iset]
    n1 = len(r1)
    n2 = n - n1
    U = n1 * n2 + n1 * (n1 + 1) / 2.0 - np.sum(r1)
    mu = n1 * n2 / 2.0

    if correlation == 0 or n1 == 1:
        sigma2 = n1 * n2 * (n + 1) / 12.0
    else:
        sigma2 = (np.arcsin(1.0) * n1 * n2
                  + np.arcsin(0.5) * n1 * n2 * (n2 - 1)
                  + np.arcsin(correlation / 2.0) * n1 * (n1 - 1) * n2 * (n2 - 1)
                  + np.arcsin((correlation + 1.0) / 2.0) * n1 * (n1 - 1) * n2)
        sigma2 = sigma2 / 2.0 / np.pi

    _, nties = np.unique(ranks, return_counts=True)
    if np.any(nties > 1):
        adjustment = np.sum(nties * (nties + 1) * (nties - 1)) / (n * (n + 1) * (n - 1))
        sigma2 = sigma2 * (1.0 - adjustment)

    zlower = (U + 0.5 - mu) / np.sqrt(sigma2)
    zupper = (U - 0.5 - mu) / np.sqrt(sigma2)
    if np.isinf(df):
        return norm_dist.sf(zupper), norm_dist.cdf(zlower)
    return t_dist.sf(zupper, df), t_dist.cdf(zlower, df)


def _competitive_pvalues(stat, idx, vif, df, use_ranks, correlation):
    """Down and up p-values of a set against the remaining genes."""
    G = len(stat)
    m = len(idx)
    m2 = G - m
    if m == 0 or m2 == 0:
        return np.nan, np.nan
    if use_ranks:
        return _rank_sum_test_with_correlation(idx, stat, correlation, df)
    mean_stat = np.mean(stat)
    var_stat = np.var(stat, ddof=1)
    delta = G / m2 * (np.mean(stat[idx]) - mean_stat)
    var_pooled = ((G - 1) * var_stat - delta ** 2 * m * m2 / G) / (G - 2)
    two_sample_t = delta / np.sqrt(var_pooled * (vif / m + 1.0 / m2))
    return t_dist.cdf(two_sample_t, df), t_dist.sf(two_sample_t, df)


def _camera_table(names, ngenes, down, up, correlation=None, sort=True):
    down, up = np.asarray(down, dtype=np.float64), np.asarray(up, dtype=np.float64)
    pvalue = np.minimum(2 * np.minimum(down, up), 1.0)
    direction = np.where(np.isnan(pvalue), None, np.where(down < up, 'Down', 'Up'))
    tab = pd.DataFrame({'NGenes': np.asarray(ngenes, dtype=int)}, index=names)
    if correlation is not None:
        tab['Correlation'] = correlation
    tab['Direction'] = direction
    tab['PValue'] = pvalue
    if len(names) > 1:
        tab['FDR'] = p_adjust(pvalue, 'BH')
    if sort and len(names) > 1:
        tab = tab.sort_values('PValue', kind='mergesort')
    return tab


def camera_pr(statistic, index, use_ranks=False, sort=True):
    """Competitive gene set test on precomputed gene statistics.

    Port of limma's cameraPR with the inter-gene correlation fixed at 0.01.

    Parameters
    ----------
    statistic : array-like or Series
        One statistic per gene, e.g. moderated t or z-scores.
    index : dict or list
        Row indices of each set, as returned by :func:`ids2indices`.
    use_ranks : bool
        Use a correlation-adjusted rank-sum test instead of the parametric
        two-sample t-test.
    sort : bool
        Sort the result by p-value.

    Returns
    -------
    DataFrame
        ``NGenes, Direction, PValue`` and, for two or more sets, ``FDR``.
    """
    stat = np.asarray(statistic, dtype=np.float64)
    if stat.ndim != 1:
        raise DataFormatError("statistic must be a vector")
    if np.any(np.isnan(stat)):
        raise DataFormatError("NA values in statistic")
    G = len(stat)
    names, sets = _as_index(index, G)

    correlation = 0.01
    df = np.inf if use_ranks else G - 2
    down, up = [], []
    for idx in sets:
        vif = 1 + (len(idx) - 1) * correlation
        d, u = _competitive_pvalues(stat, idx, vif, df, use_ranks, correlation)
        down.append(d)
        up.append(u)
    return _camera_table(names, [len(s) for s in sets], down, up, sort=sort)


def camera(y, index, design=None, contrast=None, weights=None, use_ranks=False,
           allow_neg_cor=False, inter_gene_cor=0.01, trend_var=False, sort=True):
    """Competitive gene set test accounting for inter-gene correlation.

    Port of limma's camera.

    Parameters
    ----------
    y : ndarray, DataFrame, EList or DGEList
        Log-expression values, genes x samples. A DGEList is converted to
        log-CPM; an EList supplies its design and precision weights.
    index : dict or list
        Row indices of each set.
    design : DataFrame or ndarray, optional
    contrast : int, str or array-like, optional
        Coefficient or contrast vector to test. Defaults to the last
        column of the design.
    weights : ndarray, optional
        Sample or observation weights.
    use_ranks : bool
        Rank-based rather than parametric test.
    allow_neg_cor : bool
        Allow negative inter-gene correlations to lower the variance.
    inter_gene_cor : float, 'estimate' or None
        Fixed inter-gene correlation, or 'estimate' (or None) to estimate
        it for each set from the residuals.
    trend_var : bool
        Let the variance prior depend on average expression.
    sort : bool
        Sort the result by p-value.

    Returns
    -------
    DataFrame
        ``NGenes, Direction, PValue, FDR``, plus ``Correlation`` when the
        correlation is estimated.
    """
    if isinstance(inter_gene_cor, str):
        if inter_gene_cor != 'estimate':
            raise ValueError("inter_gene_cor must be a number, 'estimate' or None")
        inter_gene_cor = None
    fixed_cor = inter_gene_cor is not None and not np.isnan(inter_gene_cor)

    expr, design, weights = _expression_input(y, design, weights)
    effects = _lm_effects(expr, design, contrast, weights)
    G = effects.shape[0]
    df_residual = effects.shape[1] - 1
    if G < 3:
        raise DegenerateInputError("need at least three genes for camera")
    names, sets = _as_index(index, G)

    if fixed_cor:
        df_camera = np.inf if use_ranks else G - 2
    else:
        df_camera = min(df_residual, G - 2)

    unscaledt = effects[:, 0]
    U = effects[:, 1:]
    sigma2 = np.mean(U ** 2, axis=1)
    U = U / np.sqrt(sigma2)[:, np.newaxis]

    covariate = np.mean(expr, axis=1) if trend_var else None
    sv = squeeze_var(sigma2, df_residual, covariate=covariate)
    modt = unscaledt / np.sqrt(sv['var_post'])
    if use_ranks:
        stat = modt
    else:
        df_total = np.minimum(df_residual + np.asarray(sv['df_prior']), G * df_residual)
        stat = _zscore_t(modt, df_total)

    down, up, correlations = [], [], []
    for idx in sets:
        m = len(idx)
        if fixed_cor:
            correlation = inter_gene_cor
            vif = 1 + (m - 1) * correlation
        elif m > 1:
            vif = m * np.mean(np.mean(U[idx], axis=0) ** 2)
            correlation = (vif - 1) / (m - 1)
        else:
            vif, correlation = 1.0, np.nan
        correlations.append(correlation if m > 0 else np.nan)

        if use_ranks:
            cor = correlation if np.isfinite(correlation) else 0.0
            if not allow_neg_cor:
                cor = max(0.0, cor)
            d, u = _competitive_pvalues(stat, idx, vif, df_camera, True, cor)
        else:
            if not allow_neg_cor:
                vif = max(1.0, vif)
            d, u = _competitive_pvalues(stat, idx, vif, df_camera, False, correlation)
        down.append(d)
        up.append(u)

    return _camera_table(names, [len(s) for s in sets], down, up,
                         correlation=None if fixed_cor else correlations, sort=sort)


# ---------------------------------------------------------------------
# Rotation tests


def _variance_prior(effects, expr, var_prior, df_prior, trend_var):
    """Prior variance and df for moderating the rotated t-statistics."""
    if var_prior is not None and df_prior is not None:
        return var_prior, df_prior
    s2 = np.mean(effects[:, 1:] ** 2, axis=1)
    covariate = np.mean(expr, axis=1) if trend_var else None
    sv = squeeze_var(s2, effects.shape[1] - 1, covariate=covariate)
    if var_prior is None:
        var_prior = sv['var_prior']
    if df_prior is None:
        df_prior = sv['df_prior']
    return var_prior, df_prior


def _moderated_z(u0, rss, df_residual, var_prior, df_prior):
    """Moderated t of contrast effects u0 with residual sums of squares rss,
    converted to z-scores.

    u0 and rss are genes x rotations; var_prior and df_prior are scalars
    or per-gene vectors.
    """
    var_prior = np.asarray(var_prior, dtype=np.float64)
    df_prior = np.asarray(df_prior, dtype=np.float64)
    if var_prior.ndim:
        var_prior = var_prior[:, np.newaxis]
    if df_prior.ndim:
        df_prior = df_prior[:, np.newaxis]
    if np.all(np.isinf(df_prior)):
        return u0 / np.sqrt(var_prior)
    s2 = np.maximum(rss, 0) / df_residual
    finite = np.isfinite(df_prior)
    dp = np.where(finite, df_prior, 0.0)
    s2_post = np.where(finite, (dp * var_prior + df_residual * s2) / (dp + df_residual), var_prior)
    with np.errstate(divide='ignore', invalid='ignore'):
        t = u0 / np.sqrt(s2_post)
    return _zscore_t(t, df_residual + df_prior)


def _set_statistics(z, statistic):
    """Down, up and mixed set statistics of z (genes x rotations)."""
    m = z.shape[0]
    if statistic == 'mean':
        up = np.mean(z, axis=0)
        return -up, up, np.mean(np.abs(z), axis=0)
    if statistic == 'floormean':
        return (np.mean(np.maximum(-z, 0), axis=0), np.mean(np.maximum(z, 0), axis=0),
                np.mean(np.maximum(np.abs(z), _FLOOR), axis=0))
    if statistic == 'mean50':
        h = (m + 1) // 2
        s = np.sort(z, axis=0)
        down = -np.mean(s[:h], axis=0)
        up = np.mean(s[m - h:], axis=0)
        mixed = np.mean(np.sort(np.abs(z), axis=0)[m - h:], axis=0)
        return down, up, mixed
    if statistic == 'msq':
        z2 = z ** 2
        return (np.mean(np.where(z < 0, z2, 0), axis=0),
                np.mean(np.where(z > 0, z2, 0), axis=0), np.mean(z2, axis=0))
    raise ValueError(f"set_statistic must be one of {SET_STATISTICS}")


def _check_set_statistic(set_statistic):
    if set_statistic not in SET_STATISTICS:
        raise ValueError(f"set_statistic must be one of {SET_STATISTICS}")


def _rotation_counts(effects, sets, var_prior, df_prior, set_statistic, nrot, rng,
                     chunk_size=1000):
    """Observed set statistics, active proportions and rotation exceedances.

    Every set sees the same rotations. Returns per-set arrays for the
    down, up and mixed alternatives.
    """
    nsets = len(sets)
    df_residual = effects.shape[1] - 1
    genes = np.unique(np.concatenate(sets)) if nsets else np.array([], dtype=int)
    pos = {g: k for k, g in enumerate(genes)}
    local = [np.array([pos[g] for g in s], dtype=int) for s in sets]

    eff = effects[genes]
    vp = var_prior if np.ndim(var_prior) == 0 else np.asarray(var_prior)[genes]
    dp = df_prior if np.ndim(df_prior) == 0 else np.asarray(df_prior)[genes]
    rho2 = np.sum(eff ** 2, axis=1)

    u0 = eff[:, :1]
    z_obs = _moderated_z(u0, rho2[:, np.newaxis] - u0 ** 2, df_residual, vp, dp)[:, 0]

    observed = np.full((nsets, 3), np.nan)
    active = np.full((nsets, 2), np.nan)
    for k, idx in enumerate(local):
        if len(idx) == 0:
            continue
        observed[k] = [s[0] for s in _set_statistics(z_obs[idx, np.newaxis], set_statistic)]
        active[k] = [np.mean(z_obs[idx] < -np.sqrt(2)), np.mean(z_obs[idx] > np.sqrt(2))]

    counts = np.zeros((nsets, 3))
    done = 0
    while done < nrot:
        nchunk = min(chunk_size, nrot - done)
        r = rng.standard_normal((effects.shape[1], nchunk))
        r /= np.sqrt(np.sum(r ** 2, axis=0))
        u = eff @ r
        z = _moderated_z(u, rho2[:, np.newaxis] - u ** 2, df_residual, vp, dp)
        for k, idx in enumerate(local):
            if len(idx) == 0:
                continue
            rotated = _set_statistics(z[idx], set_statistic)
            for a in range(3):
                counts[k, a] += np.sum(rotated[a] >= observed[k, a])
        done += nchunk
    return observed, active, counts


def _rotation_input(y, index, design, contrast, weights, var_prior, df_prior, trend_var):
    expr, design, weights = _expression_input(y, design, weights)
    effects = _lm_effects(expr, design, contrast, weights)
    names, sets = _as_index(index, effects.shape[0])
    var_prior, df_prior = _variance_prior(effects, expr, var_prior, df_prior, trend_var)
    return effects, names, sets, var_prior, df_prior


def roast(y, index, design=None, contrast=None, set_statistic='mean', nrot=1999,
          var_prior=None, df_prior=None, weights=None, trend_var=False, rng=None):
    """Rotation gene set test for a single set.

    Port of limma's roast. The contrast effect and residual effects of
    each gene are rotated together by random unit vectors; moderated t
    statistics recomputed from the rotated effects give the null
    distribution of the set statistic.

    Parameters
    ----------
    y : ndarray, DataFrame, EList or DGEList
        Log-expression values.
    index : array-like, dict or list
        Row indices of the set. For a dict or list of sets the first set
        is tested.
    design : DataFrame or ndarray, optional
    contrast : int, str or array-like, optional
        Defaults to the last column of the design.
    set_statistic : str
        'mean', 'floormean', 'mean50' or 'msq'.
    nrot : int
        Number of rotations.
    var_prior, df_prior : float or ndarray, optional
        Variance prior; estimated with :func:`~degset.squeeze.squeeze_var`
        from all genes when not given.
    weights : ndarray, optional
        Sample or observation weights.
    trend_var : bool
        Let the variance prior depend on average expression.
    rng : numpy.random.Generator or int, optional
        Random source of the rotations.

    Returns
    -------
    DataFrame
        Indexed ``Down, Up, UpOrDown, Mixed`` with columns ``Active.Prop``
        and ``P.Value``. The set size is in ``attrs['NGenes']``.
    """
    _check_set_statistic(set_statistic)
    rng = np.random.default_rng(rng)
    effects, names, sets, var_prior, df_prior = _rotation_input(
        y, index, design, contrast, weights, var_prior, df_prior, trend_var)
    idx = sets[0]
    if len(sets) > 1:
        logger.debug("roast tests only the first of %d sets (%s)", len(sets), names[0])

    if len(idx) == 0:
        warnings.warn(f"gene set '{names[0]}' is empty", EmptySetWarning)
        active = np.full(4, np.nan)
        pvalue = np.full(4, np.nan)
    else:
        observed, prop, counts = _rotation_counts(
            effects, [idx], var_prior, df_prior, set_statistic, nrot, rng)
        p_down, p_up, p_mixed = (counts[0] + 1) / (nrot + 1)
        pvalue = np.array([p_down, p_up, min(2 * min(p_down, p_up), 1.0), p_mixed])
        down, up = prop[0]
        active = np.array([down, up, max(down, up), down + up])

    result = pd.DataFrame({'Active.Prop': active, 'P.Value': pvalue},
                          index=['Down', 'Up', 'UpOrDown', 'Mixed'])
    result.attrs['NGenes'] = len(idx)
    return result


def mroast(y, index, design=None, contrast=None, set_statistic='mean', nrot=1999,
           adjust_method='BH', midp=True, sort='directional', var_prior=None,
           df_prior=None, weights=None, trend_var=False, rng=None):
    """Rotation gene set test for many sets.

    Port of limma's mroast. All sets are evaluated on the same rotations,
    and p-values are adjusted across the supplied sets only.

    Parameters
    ----------
    y, design, contrast, set_statistic, nrot, var_prior, df_prior, weights,
    trend_var, rng
        As for :func:`roast`.
    index : dict or list
        Row indices of each set.
    adjust_method : str
        Multiple testing adjustment; see :func:`~degset.results.p_adjust`.
    midp : bool
        Adjust mid-p-values, ``(b + 0.5) / (nrot + 1)``, rather than the
        reported ``(b + 1) / (nrot + 1)``.
    sort : str
        'directional', 'mixed' or 'none'.

    Returns
    -------
    DataFrame
        ``NGenes, PropDown, PropUp, Direction, PValue, FDR, PValue.Mixed,
        FDR.Mixed, PValue.Up, FDR.Up, PValue.Down, FDR.Down`` indexed by set
        name. The FDR columns are present for two or more sets only. Empty
        sets get NA and are left out of the adjustment.
    """
    _check_set_statistic(set_statistic)
    if sort not in ('directional', 'mixed', 'none'):
        raise ValueError("sort must be one of 'directional', 'mixed', 'none'")
    rng = np.random.default_rng(rng)
    effects, names, sets, var_prior, df_prior = _rotation_input(
        y, index, design, contrast, weights, var_prior, df_prior, trend_var)
    ngenes = np.array([len(s) for s in sets], dtype=int)
    for name in np.asarray(names)[ngenes == 0]:
        warnings.warn(f"gene set '{name}' is empty", EmptySetWarning)

    observed, prop, counts = _rotation_counts(
        effects, sets, var_prior, df_prior, set_statistic, nrot, rng)
    empty = ngenes == 0
    counts[empty] = np.nan

    pv = (counts + 1) / (nrot + 1)
    p_down, p_up, p_mixed = pv[:, 0], pv[:, 1], pv[:, 2]
    p_dir = np.minimum(2 * np.minimum(p_down, p_up), 1.0)
    if midp:
        q = (counts + 0.5) / (nrot + 1)
    else:
        q = pv
    q_dir = np.minimum(2 * np.minimum(q[:, 0], q[:, 1]), 1.0)

    result = pd.DataFrame({
        'NGenes': ngenes,
        'PropDown': prop[:, 0],
        'PropUp': prop[:, 1],
        'Direction': np.where(empty, None, np.where(p_up < p_down, 'Up', 'Down')),
        'PValue': p_dir,
        'PValue.Mixed': p_mixed,
        'PValue.Up': p_up,
        'PValue.Down': p_down,
    }, index=names)
    if len(names) > 1:
        result.insert(5, 'FDR', p_adjust(q_dir, adjust_method))
        result.insert(7, 'FDR.Mixed', p_adjust(q[:, 2], adjust_method))
        result.insert(9, 'FDR.Up', p_adjust(q[:, 1], adjust_method))
        result['FDR.Down'] = p_adjust(q[:, 0], adjust_method)

    if sort == 'directional':
        result = result.sort_values('PValue', kind='mergesort')
    elif sort == 'mixed':
        result = result.sort_values('PValue.Mixed', kind='mergesort')
    return result


def fry(y, index, design=None, contrast=None, weights=None, standardize='posterior_sd',
        trend_var=False, sort='directional'):
    """Fast approximation to mroast with the mean statistic.

    Port of limma's fry: the limit of roast as the number of rotations
    tends to infinity, computed analytically.

    Parameters
    ----------
    y, index, design, contrast, weights, trend_var
        As for :func:`mroast`.
    standardize : str
        'posterior_sd' divides the effects of each gene by its posterior
        standard deviation, 'residual_sd' by its residual standard
        deviation, 'none' leaves them.
    sort : str
        'directional', 'mixed' or 'none'.

    Returns
    -------
    DataFrame
        ``NGenes, Direction, PValue, FDR, PValue.Mixed, FDR.Mixed``; the FDR
        columns only for two or more sets.
    """
    if standardize not in ('posterior_sd', 'residual_sd', 'none'):
        raise ValueError("standardize must be one of 'posterior_sd', 'residual_sd', 'none'")
    expr, design, weights = _expression_input(y, design, weights)
    effects = _lm_effects(expr, design, contrast, weights)
    df_residual = effects.shape[1] - 1
    names, sets = _as_index(index, effects.shape[0])

    if standardize != 'none':
        s2 = np.mean(effects[:, 1:] ** 2, axis=1)
        if standardize == 'posterior_sd':
            covariate = np.mean(expr, axis=1) if trend_var else None
            s2 = squeeze_var(s2, df_residual, covariate=covariate)['var_post']
        effects = effects / np.sqrt(s2)[:, np.newaxis]

    nsets = len(sets)
    tstat = np.full(nsets, np.nan)
    p_mixed = np.full(nsets, np.nan)
    for k, idx in enumerate(sets):
        m = len(idx)
        if m == 0:
            continue
        eset = effects[idx]
        mean_effects = np.mean(eset, axis=0)
        tstat[k] = mean_effects[0] / np.sqrt(np.mean(mean_effects[1:] ** 2))
        if m > 1:
            A = np.linalg.svd(eset, compute_uv=False) ** 2
            d1 = len(A)
            d = d1 - 1
            beta_mean = 1.0 / d1
            beta_var = d / d1 / d1 / (d1 / 2.0 + 1.0)
            spread = A[0] - A[-1]
            if d == 0 or spread <= 0:
                p_mixed[k] = 1.0
                continue
            fobs = (np.sum(eset[:, 0] ** 2) - A[-1]) / spread
            frb_mean = (np.sum(A) * beta_mean - A[-1]) / spread
            cov = np.full((d1, d1), -beta_var / d)
            np.fill_diagonal(cov, beta_var)
            frb_var = float(A @ cov @ A) / spread ** 2
            alphaplusbeta = frb_mean * (1 - frb_mean) / frb_var - 1
            alpha = alphaplusbeta * frb_mean
            p_mixed[k] = beta_dist.sf(fobs, alpha, alphaplusbeta - alpha)

    p_dir = 2 * t_dist.sf(np.abs(tstat), df_residual)
    single = np.array([len(s) == 1 for s in sets], dtype=bool)
    p_mixed[single] = p_dir[single]

    result = pd.DataFrame({
        'NGenes': [len(s) for s in sets],
        'Direction': np.where(np.isnan(tstat), None, np.where(tstat > 0, 'Up', 'Down')),
        'PValue': p_dir,
        'PValue.Mixed': p_mixed,
    }, index=names)
    if len(names) > 1:
        result.insert(3, 'FDR', p_adjust(p_dir, 'BH'))
        result['FDR.Mixed'] = p_adjust(p_mixed, 'BH')
    if sort == 'directional':
        result = result.sort_values('PValue', kind='mergesort')
    elif sort == 'mixed':
        result = result.sort_values('PValue.Mixed', kind='mergesort')
    return result
