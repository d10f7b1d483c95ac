"""
Empirical Bayes moderation of genewise variances.

Port of limma's squeezeVar, fitFDist and fitFDistRobustly. Sample variances
are modelled as scaled F-distributed around a prior variance, which may
follow a trend in a covariate (average log-expression); the posterior
variance combines genewise and prior information weighted by their
degrees of freedom.
"""

import numpy as np
import patsy
from scipy import stats
from scipy.interpolate import interp1d
from scipy.optimize import brentq
from scipy.special import digamma, polygamma
from statsmodels.nonparametric.smoothers_lowess import lowess


def squeeze_var(var, df, covariate=None, robust=False, winsor_tail_p=(0.05, 0.1)):
    """Empirical Bayes moderation of genewise variances.

    Parameters
    ----------
    var : array-like
        Genewise variances.
    df : array-like or float
        Residual degrees of freedom.
    covariate : array-like, optional
        Covariate for a trended prior, usually average log-expression.
    robust : bool
        Estimate the prior robustly, giving outlier genes smaller prior
        degrees of freedom.
    winsor_tail_p : tuple
        Lower and upper tail proportions for Winsorization when robust.

    Returns
    -------
    dict with keys: var_post, var_prior, df_prior
    """
    var = np.asarray(var, dtype=np.float64).copy()
    n = len(var)
    if n == 0:
        raise ValueError("var is empty")
    if n < 3:
        return {'var_post': var, 'var_prior': var.copy(), 'df_prior': 0.0}

    df = np.broadcast_to(np.asarray(df, dtype=np.float64), (n,)).copy()
    var[df == 0] = 0

    ok = np.isfinite(var) & np.isfinite(df) & (df > 0)
    if not np.any(ok):
        return {'var_post': var, 'var_prior': np.nan, 'df_prior': 0.0}

    if covariate is not None:
        covariate = np.asarray(covariate, dtype=np.float64)
        if len(np.unique(covariate[ok])) < 2:
            covariate = None

    if robust:
        fit = fit_f_dist_robustly(var, df, covariate=covariate, winsor_tail_p=winsor_tail_p)
        var_prior, df_prior = fit['scale'], fit['df2_shrunk']
    else:
        fit = fit_f_dist(var[ok], df[ok], covariate=None if covariate is None else covariate[ok])
        df_prior = fit['df2']
        var_prior = fit['scale']
        if covariate is not None:
            var_prior = _fill_by_covariate(covariate, ok, var_prior)

    return {'var_post': posterior_var(var, df, var_prior, df_prior),
            'var_prior': var_prior, 'df_prior': df_prior}


def _fill_by_covariate(covariate, ok, values, log=False):
    """Extend values known at covariate[ok] to all genes by interpolation."""
    out = np.empty(len(covariate))
    out[ok] = values
    if not np.all(ok):
        v = np.log(values) if log else values
        f = interp1d(covariate[ok], v, bounds_error=False, fill_value='extrapolate')
        filled = f(covariate[~ok])
        out[~ok] = np.exp(filled) if log else filled
    return out


def posterior_var(var, df, var_prior, df_prior):
    """Posterior variance ``(df*var + df_prior*var_prior) / (df + df_prior)``."""
    var = np.asarray(var, dtype=np.float64)
    n = len(var)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), (n,))
    var_prior = np.broadcast_to(np.asarray(var_prior, dtype=np.float64), (n,))
    df_prior = np.broadcast_to(np.asarray(df_prior, dtype=np.float64), (n,))

    total = df + df_prior
    with np.errstate(invalid='ignore', divide='ignore'):
        out = (df * var + df_prior * var_prior) / total
    out = np.where(np.isinf(df_prior), var_prior, out)
    return np.where(total > 0, out, var)


def logmdigamma(x):
    """log(x) - digamma(x), accurate for large x."""
    x = np.asarray(x, dtype=np.float64)
    with np.errstate(divide='ignore', invalid='ignore'):
        direct = np.log(x) - digamma(x)
        # asymptotic series avoids cancellation for large arguments
        z2 = 1.0 / (x * x)
        series = 1.0 / (2.0 * x) + z2 * (1.0/12 - z2 * (1.0/120 - z2 * (1.0/252 - z2 / 240)))
    out = np.where(x >= 10, series, direct)
    out = np.where(np.isinf(x), 0.0, out)
    return float(out) if out.ndim == 0 else out


def trigamma_inverse(x):
    """Solve trigamma(y) = x for y by Newton's method.

    Port of limma's trigammaInverse().
    """
    x = float(x)
    if x > 1e7 or x < 1e-6:
        return 1.0 / x

    y = 0.5 + 1.0 / x
    for _ in range(50):
        tri = float(polygamma(1, y))
        dif = tri * (1 - tri / x) / float(polygamma(2, y))
        y += dif
        if -dif / y < 1e-8:
            break
    return y


def _natural_spline_basis(x, df):
    """Natural cubic spline basis with ``df`` columns spanning the constant."""
    if df < 3:
        return np.column_stack([np.ones(len(x)), x])[:, :df]
    return np.asarray(patsy.dmatrix(f"cr(x, df={df}) - 1", {'x': x}))


def _clamp_variances(x):
    x = np.maximum(x, 0.0)
    m = np.median(x)
    if m == 0:
        m = 1.0
    return np.maximum(x, 1e-5 * m)


def fit_f_dist(x, df1, covariate=None):
    """Moment estimation of a scaled F-distribution.

    ``x`` are variances on ``df1`` degrees of freedom. The log-variances,
    corrected by logmdigamma(df1/2), have mean log(scale) plus a function of
    df2 and variance trigamma(df1/2) + trigamma(df2/2); matching these two
    moments gives the prior. With a covariate the mean is a natural
    regression spline in it.

    Returns
    -------
    dict with keys: scale (float, or ndarray with a covariate), df2
    """
    x = np.asarray(x, dtype=np.float64)
    n = len(x)
    df1 = np.broadcast_to(np.asarray(df1, dtype=np.float64), (n,))
    if n == 0:
        return {'scale': np.nan, 'df2': np.nan}
    if n == 1:
        return {'scale': float(x[0]), 'df2': 0.0}

    ok = np.isfinite(df1) & (df1 > 1e-15) & np.isfinite(x) & (x > -1e-15)
    nok = int(np.sum(ok))
    if nok <= 1:
        s = float(x[ok][0]) if nok == 1 else np.nan
        return {'scale': s, 'df2': 0.0 if nok == 1 else np.nan}

    z = np.log(_clamp_variances(x[ok]))
    e = z + logmdigamma(df1[ok] / 2)

    splinedf = 1
    cov_ok = None
    if covariate is not None:
        cov_ok = np.asarray(covariate, dtype=np.float64)[ok]
        splinedf = 1 + int(nok >= 3) + int(nok >= 6) + int(nok >= 30)
        splinedf = min(splinedf, len(np.unique(cov_ok)))
    if splinedf < 2:
        emean = np.full(nok, np.mean(e))
        evar = np.sum((e - emean) ** 2) / (nok - 1)
    else:
        basis = _natural_spline_basis(cov_ok, splinedf)
        coef, _, rank, _ = np.linalg.lstsq(basis, e, rcond=None)
        emean = basis @ coef
        evar = np.sum((e - emean) ** 2) / (nok - rank) if nok > rank else 0.0

    evar -= np.mean(polygamma(1, df1[ok] / 2))
    if evar > 0:
        df2 = 2.0 * trigamma_inverse(evar)
        if df2 > 1e15:
            df2 = np.inf
        s20 = np.exp(emean - logmdigamma(df2 / 2))
    else:
        df2 = np.inf
        s20 = np.exp(emean) if splinedf >= 2 else np.full(nok, np.mean(x[ok]))

    if splinedf < 2:
        return {'scale': max(float(s20[0]), 1e-15), 'df2': df2}
    scale = np.full(n, np.nan)
    scale[ok] = s20
    if not np.all(ok):
        scale = _fill_by_covariate(np.asarray(covariate, dtype=np.float64), ok, s20)
    return {'scale': scale, 'df2': df2}


def _winsorized_moments(df1, df2, tail_p, nodes, weights):
    """Mean and variance of a Winsorized log(F(df1, df2)) variable."""
    fq = stats.f.ppf([tail_p[0], 1.0 - tail_p[1]], df1, df2)
    zq = np.log(fq)
    q = fq / (1.0 + fq)
    u = q[0] + (q[1] - q[0]) * nodes
    fu = u / (1.0 - u)
    zu = np.log(fu)
    dens = stats.f.pdf(fu, df1, df2) / (1.0 - u) ** 2
    width = q[1] - q[0]
    tail_p = np.asarray(tail_p)
    m = width * np.sum(weights * dens * zu) + np.sum(zq * tail_p)
    v = width * np.sum(weights * dens * (zu - m) ** 2) + np.sum((zq - m) ** 2 * tail_p)
    return m, v


def _monotone_shrunk_df(df2_shrunk, order):
    """Make shrunk prior df non-decreasing in the tail probability."""
    n = len(df2_shrunk)
    ordered = df2_shrunk[order].copy()
    running = np.cumsum(ordered) / np.arange(1, n + 1)
    k = int(np.argmin(running))
    ordered[:k + 1] = running[k]
    out = np.empty(n)
    out[order] = np.maximum.accumulate(ordered)
    return out


def fit_f_dist_robustly(x, df1, covariate=None, winsor_tail_p=(0.05, 0.1)):
    """Robust moment estimation of a scaled F-distribution.

    Port of limma's fitFDistRobustly(). The log-variances are Winsorized
    and df2 is chosen so that the Winsorized variance matches its
    theoretical value. Genes whose variances lie in the upper tail
    beyond what the fitted distribution predicts get smaller prior df.

    Returns
    -------
    dict with keys: scale, df2, df2_shrunk (per gene)
    """
    x = np.asarray(x, dtype=np.float64).copy()
    n = len(x)
    df1 = np.broadcast_to(np.asarray(df1, dtype=np.float64), (n,)).copy()
    if covariate is not None:
        covariate = np.asarray(covariate, dtype=np.float64)

    if n < 3:
        fit = fit_f_dist(x, df1, covariate=covariate)
        return {'scale': fit['scale'], 'df2': fit['df2'],
                'df2_shrunk': np.full(n, fit['df2'])}

    ok = np.isfinite(x) & np.isfinite(df1) & (df1 > 1e-6)
    if not np.all(ok):
        fit = fit_f_dist_robustly(x[ok], df1[ok],
                                  covariate=None if covariate is None else covariate[ok],
                                  winsor_tail_p=winsor_tail_p)
        df2_shrunk = np.full(n, fit['df2'])
        df2_shrunk[ok] = fit['df2_shrunk']
        scale = fit['scale']
        if covariate is not None:
            scale = _fill_by_covariate(covariate, ok, scale, log=True)
        return {'scale': scale, 'df2': fit['df2'], 'df2_shrunk': df2_shrunk}

    m = np.median(x)
    if m <= 0:
        return {'scale': np.nan, 'df2': np.nan, 'df2_shrunk': np.full(n, np.nan)}
    x = np.maximum(x, m * 1e-12)

    nr = fit_f_dist(x, df1, covariate=covariate)
    nr_scale, nr_df2 = nr['scale'], nr['df2']
    tail_p = (float(winsor_tail_p[0]), float(winsor_tail_p[1]))
    if np.isnan(nr_df2) or max(tail_p) < 1.0 / n:
        return {'scale': nr_scale, 'df2': nr_df2, 'df2_shrunk': np.full(n, nr_df2)}

    # Map variances with smaller df1 onto the largest df1 by matching tail probabilities
    df1max = np.max(df1)
    lo = df1 < df1max - 1e-14
    if np.any(lo):
        s = nr_scale if np.ndim(nr_scale) == 0 else nr_scale[lo]
        f = x[lo] / s
        log_up = stats.f.logsf(f, df1[lo], nr_df2)
        log_lo = stats.f.logcdf(f, df1[lo], nr_df2)
        up = log_up < log_lo
        f[up] = stats.f.isf(np.exp(log_up[up]), df1max, nr_df2)
        f[~up] = stats.f.ppf(np.exp(log_lo[~up]), df1max, nr_df2)
        x[lo] = f * s
    d1 = df1max

    z = np.log(x)
    if covariate is None:
        ztrend = float(stats.trim_mean(z, proportiontocut=tail_p[1]))
    else:
        ztrend = lowess(z, covariate, frac=0.4, it=4, return_sorted=False)
    zresid = z - ztrend
    zrq = np.quantile(zresid, [tail_p[0], 1.0 - tail_p[1]])
    zwins = np.clip(zresid, zrq[0], zrq[1])
    zwmean = np.mean(zwins)
    zwvar = np.mean((zwins - zwmean) ** 2) * n / (n - 1)

    nodes, weights = np.polynomial.legendre.leggauss(128)
    nodes, weights = (nodes + 1.0) / 2.0, weights / 2.0

    mean_inf, var_inf = _winsorized_moments(d1, np.inf, tail_p, nodes, weights)
    if var_inf <= 0 or zwvar <= 0:
        return {'scale': nr_scale, 'df2': nr_df2, 'df2_shrunk': np.full(n, nr_df2)}

    if zwvar <= var_inf:
        # Observed spread no larger than with df2 = Inf
        s20 = np.exp(ztrend + zwmean - mean_inf)
        fstat = np.exp(z - np.log(s20))
        tail = stats.chi2.sf(fstat * d1, d1)
        empirical = (n - stats.rankdata(fstat) + 0.5) / n
        not_outlier = np.minimum(tail / empirical, 1.0)
        df2_shrunk = np.full(n, np.inf)
        if np.any(not_outlier < 1):
            out = not_outlier < 1
            df2_shrunk[out] = not_outlier[out] * n * d1
            o = np.argsort(tail)
            df2_shrunk[o] = np.maximum.accumulate(df2_shrunk[o])
        return {'scale': s20, 'df2': np.inf, 'df2_shrunk': df2_shrunk}

    if nr_df2 == np.inf:
        return {'scale': nr_scale, 'df2': nr_df2, 'df2_shrunk': np.full(n, nr_df2)}

    # Solve for df2 on the scale u = df2 / (1 + df2)
    def objective(u):
        _, v = _winsorized_moments(d1, u / (1.0 - u), tail_p, nodes, weights)
        return np.log(zwvar / v) if v > 0 else np.log(zwvar / var_inf)

    u0 = nr_df2 / (1.0 + nr_df2)
    if objective(u0) >= 0:
        df2 = nr_df2
    else:
        u = brentq(objective, u0, 1.0 - 1e-10, xtol=1e-8)
        df2 = u / (1.0 - u)

    mean_df2, _ = _winsorized_moments(d1, df2, tail_p, nodes, weights)
    ztrend_corrected = ztrend + zwmean - mean_df2
    s20 = np.exp(ztrend_corrected)
    fstat = np.exp(z - ztrend_corrected)

    log_tail = stats.f.logsf(fstat, d1, df2)
    log_empirical = np.log(n - stats.rankdata(fstat) + 0.5) - np.log(n)
    log_not_outlier = np.minimum(log_tail - log_empirical, 0.0)
    if not np.any(log_not_outlier < 0):
        return {'scale': s20, 'df2': df2, 'df2_shrunk': np.full(n, df2)}

    not_outlier = np.exp(log_not_outlier)
    min_log_tail = np.min(log_tail)
    if min_log_tail == -np.inf:
        df2_shrunk = not_outlier * df2
    else:
        df2_outlier = np.log(0.5) / min_log_tail * df2
        df2_outlier = np.log(0.5) / stats.f.logsf(np.max(fstat), d1, df2_outlier) * df2_outlier
        df2_shrunk = not_outlier * df2 - np.expm1(log_not_outlier) * df2_outlier
    return {'scale': s20, 'df2': df2,
            'df2_shrunk': _monotone_shrunk_df(df2_shrunk, np.argsort(log_tail))}
