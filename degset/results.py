"""
Results processing for degset.

Port of limma's topTable and decideTests, and R's p.adjust.
"""

import numpy as np
import pandas as pd
from scipy.stats import t as t_dist
from statsmodels.stats.multitest import multipletests

from .design import resolve_coef

_METHOD_MAP = {
    'BH': 'fdr_bh', 'fdr': 'fdr_bh', 'BY': 'fdr_by',
    'holm': 'holm', 'hochberg': 'simes-hochberg',
    'hommel': 'hommel', 'bonferroni': 'bonferroni',
}
ADJUST_METHODS = tuple(_METHOD_MAP) + ('none',)

_SORT_COLUMNS = {'P': 'P.Value', 'p': 'P.Value', 'B': 'B', 't': 't',
                 'logFC': 'logFC', 'AveExpr': 'AveExpr', 'F': 'F'}


def p_adjust(p, method='BH'):
    """Adjust p-values for multiple testing.

    Port of R's p.adjust on top of statsmodels' multipletests. NaN entries
    stay NaN and do not count towards the number of tests.

    Parameters
    ----------
    p : array-like
        Raw p-values.
    method : str
        One of 'BH' (or 'fdr'), 'BY', 'holm', 'hochberg', 'hommel',
        'bonferroni' or 'none'.

    Returns
    -------
    ndarray of adjusted p-values.
    """
    if method not in ADJUST_METHODS:
        raise ValueError(f"adjust_method must be one of {ADJUST_METHODS}")
    p = np.asarray(p, dtype=np.float64)
    out = np.full(p.shape, np.nan)
    ok = ~np.isnan(p)
    if method == 'none' or not np.any(ok):
        out[ok] = p[ok]
        return out
    _, out[ok], _, _ = multipletests(p[ok], method=_METHOD_MAP[method])
    return out


def _gene_labels(fit, ngenes):
    genes = fit.get('genes')
    if isinstance(genes, pd.DataFrame) and len(genes) == ngenes:
        return genes
    return pd.DataFrame(index=[str(i + 1) for i in range(ngenes)])


def _top_table_f(fit, number, adjust_method, sort_by, p_value, lfc):
    """Rank genes by the moderated F-statistic over all coefficients."""
    if fit.get('F') is None:
        raise ValueError("F-statistics not found in fit; run e_bayes first")
    coef = np.asarray(fit['coefficients'])
    names = fit['coef.names']
    tab = pd.DataFrame(coef, columns=names, index=_gene_labels(fit, coef.shape[0]).index)
    tab['AveExpr'] = fit.get('Amean')
    tab['F'] = fit['F']
    tab['P.Value'] = fit['F.p.value']
    tab['adj.P.Val'] = p_adjust(fit['F.p.value'], adjust_method)

    keep = tab['adj.P.Val'].to_numpy() <= p_value
    if lfc > 0:
        keep &= np.any(np.abs(coef) >= lfc, axis=1)
    tab = pd.concat([_gene_labels(fit, coef.shape[0]), tab], axis=1)[keep]
    if sort_by != 'none':
        tab = tab.sort_values(['P.Value', 'F'], ascending=[True, False], kind='stable')
    return tab if number is None else tab.iloc[:number]


def top_table(fit, coef=None, number=10, adjust_method='BH', sort_by='P',
              p_value=1.0, lfc=0.0, confint=False):
    """Table of the top-ranked genes from a linear model fit.

    Port of limma's topTable.

    Parameters
    ----------
    fit : MArrayLM
        Output of :func:`~degset.linear_model.e_bayes`.
    coef : int or str, optional
        Coefficient or contrast of interest. If None and the fit has more
        than one coefficient, genes are ranked by the moderated F-statistic.
    number : int or None
        Maximum number of genes to list; None lists all.
    adjust_method : str
        Multiple testing adjustment; see :func:`p_adjust`.
    sort_by : str
        'P', 'B', 't', 'logFC', 'AveExpr' or 'none'.
    p_value : float
        Cutoff on the adjusted p-value.
    lfc : float
        Minimum absolute log2-fold-change.
    confint : bool or float
        Add 95% (or the given level) confidence limits ``CI.L`` and ``CI.R``.

    Returns
    -------
    DataFrame
        Gene annotation followed by ``logFC, AveExpr, t, P.Value,
        adj.P.Val, B``, indexed by feature ID.

    Raises
    ------
    UnknownCoefficientError
        If coef is not a coefficient of the fit.
    """
    if fit.get('t') is None:
        raise ValueError("need to run e_bayes first")
    if adjust_method not in ADJUST_METHODS:
        raise ValueError(f"adjust_method must be one of {ADJUST_METHODS}")
    if sort_by not in _SORT_COLUMNS and sort_by != 'none':
        raise ValueError(f"sort_by must be one of {list(_SORT_COLUMNS) + ['none']}")

    ncoef = np.shape(fit['coefficients'])[1]
    if coef is None:
        if ncoef > 1:
            return _top_table_f(fit, number, adjust_method, sort_by, p_value, lfc)
        coef = 0
    j = resolve_coef(fit, coef)

    logfc = np.asarray(fit['coefficients'])[:, j]
    t = np.asarray(fit['t'])[:, j]
    p = np.asarray(fit['p.value'])[:, j]
    genes = _gene_labels(fit, len(logfc))
    tab = pd.DataFrame({
        'logFC': logfc,
        'AveExpr': fit.get('Amean'),
        't': t,
        'P.Value': p,
        'adj.P.Val': p_adjust(p, adjust_method),
        'B': np.asarray(fit['lods'])[:, j] if fit.get('lods') is not None else np.nan,
    }, index=genes.index)

    if confint:
        level = 0.95 if confint is True else float(confint)
        se = np.asarray(fit['stdev.unscaled'])[:, j] * np.sqrt(fit['s2.post'])
        margin = se * t_dist.ppf((1 + level) / 2, fit['df.total'])
        tab.insert(1, 'CI.L', logfc - margin)
        tab.insert(2, 'CI.R', logfc + margin)

    if genes.shape[1] > 0:
        tab = pd.concat([genes, tab], axis=1)

    keep = np.ones(len(tab), dtype=bool)
    if p_value < 1:
        keep &= tab['adj.P.Val'].to_numpy() <= p_value
    if lfc > 0:
        keep &= np.abs(logfc) >= lfc
    tab = tab[keep]

    if sort_by == 'P' or sort_by == 'p':
        # ties in p broken by larger |t|
        order = np.lexsort((-np.abs(tab['t'].to_numpy()), tab['P.Value'].to_numpy()))
        tab = tab.iloc[order]
    elif sort_by in ('logFC', 't'):
        tab = tab.iloc[np.argsort(-np.abs(tab[sort_by].to_numpy()), kind='stable')]
    elif sort_by != 'none':
        tab = tab.sort_values(_SORT_COLUMNS[sort_by], ascending=False, kind='stable')

    return tab if number is None else tab.iloc[:number]


def decide_tests(fit, coef=None, adjust_method='BH', p_value=0.05, lfc=0):
    """Classify each gene as up (1), down (-1) or not significant (0).

    Port of limma's decideTests with method="separate": p-values are
    adjusted separately for each coefficient.

    Parameters
    ----------
    fit : MArrayLM
        Output of e_bayes.
    coef : int, str or list, optional
        Coefficients to classify; all by default.
    adjust_method : str
    p_value : float
        Significance threshold on the adjusted p-value.
    lfc : float
        Minimum absolute log2-fold-change.

    Returns
    -------
    DataFrame of int, genes x coefficients.
    """
    if fit.get('p.value') is None:
        raise ValueError("need to run e_bayes first")
    names = list(fit['coef.names'])
    if coef is None:
        cols = list(range(len(names)))
    else:
        cols = [resolve_coef(fit, c) for c in np.atleast_1d(coef)]

    pv = np.asarray(fit['p.value'])
    tv = np.asarray(fit['t'])
    coefficients = np.asarray(fit['coefficients'])
    out = np.zeros((pv.shape[0], len(cols)), dtype=int)
    for k, j in enumerate(cols):
        adj = p_adjust(pv[:, j], adjust_method)
        sig = np.nan_to_num(adj, nan=1.0) < p_value
        if lfc > 0:
            sig &= np.abs(coefficients[:, j]) >= lfc
        out[sig, k] = np.sign(tv[sig, j]).astype(int)
    return pd.DataFrame(out, index=_gene_labels(fit, pv.shape[0]).index,
                        columns=[names[j] for j in cols])
