"""
Core data classes for degset.

Count data (DGEList), log-expression with precision weights (EList) and
linear model fits (MArrayLM) are dicts with attribute access, two-subscript
subsetting and a compact display, following the edgeR/limma containers.
"""

import numpy as np
import pandas as pd
from copy import deepcopy


class _ListBase(dict):
    """Base class providing dict-like access, subsetting, and display."""

    _shape_key = 'counts'

    def __getattr__(self, name):
        try:
            return self[name]
        except KeyError:
            raise AttributeError(f"'{type(self).__name__}' has no attribute '{name}'")

    def __setattr__(self, name, value):
        self[name] = value

    def __delattr__(self, name):
        try:
            del self[name]
        except KeyError:
            raise AttributeError(f"'{type(self).__name__}' has no attribute '{name}'")

    @property
    def shape(self):
        x = self.get(self._shape_key)
        if x is not None:
            return np.shape(x)
        return None

    @property
    def nrow(self):
        s = self.shape
        return s[0] if s is not None else 0

    @property
    def ncol(self):
        s = self.shape
        return s[1] if s is not None and len(s) > 1 else 0

    def __len__(self):
        return self.nrow

    def __repr__(self):
        cls = type(self).__name__
        components = list(self.keys())
        s = self.shape
        if s is not None and len(s) == 2:
            return f"{cls} with {s[0]} rows and {s[1]} columns\nComponents: {', '.join(components)}"
        return f"{cls}\nComponents: {', '.join(components)}"

    def _copy(self):
        """Deep copy of the object."""
        return deepcopy(self)

    def _split_key(self, key):
        if isinstance(key, tuple):
            if len(key) == 2:
                return key
            raise IndexError("Two subscripts required")
        return key, None

    def head(self, n=5):
        """Show first n rows."""
        return self._frame().head(n)

    def tail(self, n=5):
        """Show last n rows."""
        return self._frame().tail(n)

    def _frame(self):
        return pd.DataFrame(self[self._shape_key],
                            index=get_rownames(self),
                            columns=get_colnames(self))


def get_rownames(obj):
    """Feature identifiers of a container, or None."""
    genes = obj.get('genes')
    if genes is not None:
        return list(genes.index)
    return None


def get_colnames(obj):
    """Sample identifiers of a container, or None."""
    for key in ('samples', 'targets'):
        tab = obj.get(key)
        if tab is not None:
            return list(tab.index)
    return None


def _subset_matrix_or_df(x, i=None, j=None):
    """Subset a matrix, DataFrame, or vector by row (i) and/or column (j)."""
    if x is None:
        return None
    if isinstance(x, pd.DataFrame):
        if i is not None and j is not None:
            return x.iloc[i, j]
        elif i is not None:
            return x.iloc[i]
        elif j is not None:
            return x.iloc[:, j]
        return x
    if isinstance(x, np.ndarray):
        if x.ndim == 2:
            if i is not None and j is not None:
                if isinstance(i, slice) or isinstance(j, slice):
                    return x[i, :][:, j]
                return x[np.ix_(np.atleast_1d(i), np.atleast_1d(j))]
            elif i is not None:
                return x[i] if isinstance(i, slice) else x[np.atleast_1d(i)]
            elif j is not None:
                return x[:, j] if isinstance(j, slice) else x[:, np.atleast_1d(j)]
        elif x.ndim == 1:
            if i is not None:
                return x[i] if isinstance(i, slice) else x[np.atleast_1d(i)]
        return x
    return x


def _resolve_index(idx, names):
    """Resolve index to integer array. Supports bool, int, str, slice."""
    if idx is None:
        return None
    if isinstance(idx, slice):
        return idx
    idx = np.atleast_1d(idx)
    if idx.dtype == bool:
        return np.where(idx)[0]
    if idx.dtype.kind in ('U', 'S', 'O'):
        if names is None:
            raise KeyError("object has no names to subset by")
        lookup = {}
        for k, name in enumerate(names):
            lookup.setdefault(name, k)
        result = []
        for name in idx:
            if name not in lookup:
                raise KeyError(f"Name '{name}' not found")
            result.append(lookup[name])
        return np.array(result, dtype=int)
    return idx.astype(int)


class DGEList(_ListBase):
    """Digital Gene Expression data list.

    Attributes
    ----------
    counts : ndarray
        Matrix of counts (genes x samples).
    samples : DataFrame
        Sample information with columns group, lib.size, norm.factors and
        any covariates, indexed by sample ID.
    genes : DataFrame
        Gene annotation indexed by feature ID.
    """

    _IJ = {'counts', 'weights'}
    _IX = {'genes'}
    _JX = {'samples'}
    _I = {'AveLogCPM'}

    def __getitem__(self, key):
        if isinstance(key, str):
            return super().__getitem__(key)
        i, j = self._split_key(key)
        return self.subset(i, j)

    def subset(self, i=None, j=None, keep_lib_sizes=True):
        """Subset features (i) and/or samples (j), returning a copy.

        With ``keep_lib_sizes=False`` library sizes are recomputed from the
        remaining counts, as edgeR does after filtering.
        """
        i_idx = _resolve_index(i, get_rownames(self))
        j_idx = _resolve_index(j, get_colnames(self))

        out = self._copy()
        for k in self._IJ:
            if out.get(k) is not None:
                out[k] = _subset_matrix_or_df(out[k], i_idx, j_idx)
        for k in self._IX | self._I:
            if out.get(k) is not None:
                out[k] = _subset_matrix_or_df(out[k], i_idx)
        for k in self._JX:
            if out.get(k) is not None:
                out[k] = _subset_matrix_or_df(out[k], j_idx).copy()

        if j_idx is not None and 'group' in out['samples'].columns:
            group = out['samples']['group']
            if hasattr(group, 'cat'):
                out['samples']['group'] = group.cat.remove_unused_categories()
        if i_idx is not None and not keep_lib_sizes:
            out['samples']['lib.size'] = out['counts'].sum(axis=0)
        return out

    def to_dataframe(self):
        """Convert counts to a labelled DataFrame."""
        return self._frame()


class EList(_ListBase):
    """Log-expression values with observation-level precision weights.

    Attributes
    ----------
    E : ndarray
        log2-CPM values (genes x samples).
    weights : ndarray
        Precision weights, same shape as E.
    design : DataFrame or ndarray
    genes : DataFrame
    targets : DataFrame
        Sample information including ``lib.size``.
    """

    _shape_key = 'E'
    _IJ = {'E', 'weights'}
    _IX = {'genes'}
    _JX = {'targets', 'design'}
    _J = {'sample.weights'}

    def __getitem__(self, key):
        if isinstance(key, str):
            return super().__getitem__(key)
        i, j = self._split_key(key)
        i_idx = _resolve_index(i, get_rownames(self))
        j_idx = _resolve_index(j, get_colnames(self))

        out = self._copy()
        for k in self._IJ:
            if out.get(k) is not None:
                out[k] = _subset_matrix_or_df(out[k], i_idx, j_idx)
        for k in self._IX:
            if out.get(k) is not None:
                out[k] = _subset_matrix_or_df(out[k], i_idx)
        if j_idx is not None:
            for k in self._JX | self._J:
                if out.get(k) is not None:
                    # design and targets are indexed by sample along rows
                    out[k] = _subset_matrix_or_df(out[k], j_idx)
        return out


class MArrayLM(_ListBase):
    """Linear model fit for each feature.

    Attributes
    ----------
    coefficients : ndarray
        genes x coefficients.
    stdev.unscaled : ndarray
        Unscaled standard errors, same shape as coefficients.
    sigma : ndarray
        Residual standard deviation per gene.
    df.residual : ndarray
    Amean : ndarray
        Average log-expression per gene.
    design : DataFrame or ndarray
    genes : DataFrame
    coef.names : list of str

    After :func:`~degset.e_bayes` the fit also carries ``s2.prior``,
    ``df.prior``, ``s2.post``, ``df.total``, ``t``, ``p.value``, ``lods``,
    ``F`` and ``F.p.value``.
    """

    _shape_key = 'coefficients'
    _IJ = {'coefficients', 'stdev.unscaled', 't', 'p.value', 'lods'}
    _IX = {'genes'}
    _I = {'sigma', 'df.residual', 'Amean', 's2.post', 'df.total', 'F',
          'F.p.value', 's2.prior', 'df.prior'}

    def __getitem__(self, key):
        if isinstance(key, str):
            return super().__getitem__(key)
        i, j = self._split_key(key)
        i_idx = _resolve_index(i, get_rownames(self))
        j_idx = _resolve_index(j, self.get('coef.names'))

        out = self._copy()
        for k in self._IJ:
            if out.get(k) is not None:
                out[k] = _subset_matrix_or_df(out[k], i_idx, j_idx)
        for k in self._IX:
            if out.get(k) is not None:
                out[k] = _subset_matrix_or_df(out[k], i_idx)
        for k in self._I:
            v = out.get(k)
            if isinstance(v, np.ndarray) and v.ndim == 1:
                out[k] = _subset_matrix_or_df(v, i_idx)
        if j_idx is not None:
            if out.get('coef.names') is not None:
                names = np.asarray(out['coef.names'], dtype=object)
                out['coef.names'] = list(_subset_matrix_or_df(names, j_idx))
            if out.get('cov.coefficients') is not None:
                out['cov.coefficients'] = _subset_matrix_or_df(out['cov.coefficients'], j_idx, j_idx)
            for k in ('F', 'F.p.value'):
                out.pop(k, None)
        return out

    def _frame(self):
        return pd.DataFrame(self['coefficients'],
                            index=get_rownames(self),
                            columns=self.get('coef.names'))
