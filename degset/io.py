"""
I/O functions for degset.

Readers for the delimited text inputs of an analysis (count matrix, sample
table, gene-set membership lists) and a writer for result tables.
"""

import logging
import os

import numpy as np
import pandas as pd

from .errors import DataFormatError

logger = logging.getLogger(__name__)


def _sep_for(path, sep):
    """Infer the field separator from the file extension."""
    if sep is not None:
        return sep
    name = path[:-3] if path.endswith('.gz') else path
    return ',' if name.endswith('.csv') else '\t'


def _read_delim(path, sep, **kwargs):
    if not os.path.exists(path):
        raise DataFormatError(f"file not found: {path}")
    try:
        return pd.read_csv(path, sep=_sep_for(path, sep), compression='infer', **kwargs)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise DataFormatError(f"could not parse {path}: {e}") from None


def read_counts(path, sep='\t', round_counts=True):
    """Read a feature x sample count matrix.

    Parameters
    ----------
    path : str
        Delimited text file, optionally compressed (.gz, .bz2, .zip, .xz).
        Header row holds sample IDs, first column the feature IDs.
    sep : str
        Field separator.
    round_counts : bool
        Round estimated counts (e.g. from salmon or kallisto) to integers.

    Returns
    -------
    DGEList
    """
    from .dgelist import make_dgelist

    df = _read_delim(path, sep, index_col=0)
    if df.shape[1] == 0:
        raise DataFormatError(f"{os.path.basename(path)} has no sample columns")
    non_numeric = [c for c in df.columns if not pd.api.types.is_numeric_dtype(df[c])]
    if non_numeric:
        raise DataFormatError(
            f"non-numeric values in count columns of {os.path.basename(path)}: {non_numeric[:5]}")
    if df.index.has_duplicates:
        dup = df.index[df.index.duplicated()].unique()
        raise DataFormatError(f"Repeated feature IDs in {os.path.basename(path)}: {list(dup[:5])}")

    counts = df.to_numpy(dtype=np.float64)
    if round_counts:
        counts = np.round(counts)
    logger.info("Read %d features x %d samples from %s",
                counts.shape[0], counts.shape[1], os.path.basename(path))
    return make_dgelist(pd.DataFrame(counts, index=df.index.astype(str),
                                     columns=df.columns.astype(str)))


def read_targets(path, sample_column=None, sep=None):
    """Read a sample (targets) table, one row per sample.

    Parameters
    ----------
    path : str
        Delimited file with a header row.
    sample_column : str, optional
        Column holding sample IDs. Defaults to the first column.
    sep : str, optional
        Field separator; inferred from the extension when omitted.

    Returns
    -------
    DataFrame indexed by sample ID.
    """
    df = _read_delim(path, sep, dtype=str)
    if sample_column is None:
        sample_column = df.columns[0]
    if sample_column not in df.columns:
        raise DataFormatError(
            f"sample column '{sample_column}' not found in {os.path.basename(path)}")
    df = df.set_index(sample_column)
    df.index = df.index.astype(str).str.strip()
    if df.index.has_duplicates:
        raise DataFormatError(f"Repeated sample IDs in {os.path.basename(path)}")
    return df


def align_targets(targets, sample_ids):
    """Reorder a targets table to match count-matrix column order.

    Every sample must appear in both tables.
    """
    sample_ids = [str(s) for s in sample_ids]
    missing = [s for s in sample_ids if s not in targets.index]
    extra = [s for s in targets.index if s not in set(sample_ids)]
    if missing or extra:
        raise DataFormatError(
            "sample IDs differ between count matrix and sample table "
            f"(missing from table: {missing[:5]}, not in counts: {extra[:5]})")
    return targets.loc[sample_ids]


def read_dge(counts_path, targets_path=None, sample_column=None, group=None,
             sep='\t'):
    """Read a count matrix and its sample table into a DGEList.

    Parameters
    ----------
    counts_path : str
        Count matrix file, see :func:`read_counts`.
    targets_path : str, optional
        Sample table, see :func:`read_targets`. Its covariates are added to
        ``samples``, in count-matrix column order.
    sample_column : str, optional
        Sample ID column of the sample table.
    group : str, optional
        Sample-table column to use as the ``group`` factor. Defaults to a
        column named ``group`` when the table has one.
    sep : str
        Field separator of the count matrix.

    Returns
    -------
    DGEList
    """
    y = read_counts(counts_path, sep=sep)
    if targets_path is None:
        return y

    targets = align_targets(read_targets(targets_path, sample_column=sample_column),
                            y['samples'].index)
    if group is None and 'group' in targets.columns:
        group = 'group'
    if group is not None:
        if group not in targets.columns:
            raise DataFormatError(f"group column '{group}' not found in sample table")
        y['samples']['group'] = pd.Categorical(targets[group].values)
    for col in targets.columns:
        if col in ('group', 'lib.size', 'norm.factors'):
            continue
        y['samples'][col] = targets[col].values
    return y


def read_gene_set(path, name=None, sep=None):
    """Read a gene-set membership file.

    The file has a header row and one identifier per line in its first
    column. Blank lines and surrounding whitespace are ignored.

    Returns
    -------
    tuple of (name, list of str)
    """
    df = _read_delim(path, sep, dtype=str)
    if df.shape[1] == 0:
        raise DataFormatError(f"{os.path.basename(path)} has no columns")
    ids = df.iloc[:, 0].dropna().str.strip()
    ids = [g for g in ids if g]
    if name is None:
        base = os.path.basename(path)
        for ext in ('.gz', '.bz2', '.xz', '.zip'):
            if base.endswith(ext):
                base = base[:-len(ext)]
        name = os.path.splitext(base)[0]
    return name, ids


def read_gene_sets(paths, sep=None):
    """Read several membership files into an ordered ``{name: ids}`` dict."""
    if isinstance(paths, str):
        paths = [paths]
    sets = {}
    for p in paths:
        name, ids = read_gene_set(p, sep=sep)
        if name in sets:
            raise DataFormatError(f"duplicated gene set name '{name}'")
        sets[name] = ids
    return sets


def write_table(table, path, index_label=None):
    """Write a result table as tab-delimited text."""
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    table.to_csv(path, sep='\t', index=True, index_label=index_label,
                 na_rep='NA', float_format='%.6g')
    logger.info("Wrote %s", path)
