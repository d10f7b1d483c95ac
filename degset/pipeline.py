"""
End-to-end bulk RNA-seq analysis.

Each stage consumes the whole output of the previous one: read counts and
sample table, filter lowly expressed genes, TMM normalization, design
matrix, voom (optionally with sample quality weights), linear model fit,
empirical Bayes moderation, then competitive (camera) and self-contained
(mroast) gene set tests on the coefficient of interest.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from .design import design_matrix, resolve_coef
from .errors import DegenerateInputError
from .filtering import filter_by_cpm, filter_counts
from .gene_sets import camera, camera_pr, ids2indices, mroast
from .io import read_dge, read_gene_sets, write_table
from .linear_model import e_bayes, lm_fit, voom
from .normalization import calc_norm_factors
from .results import top_table

logger = logging.getLogger(__name__)


def setup_logging(level=logging.INFO, log_file=None):
    """Send log records to the console and, optionally, a file.

    Returns the package logger.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    root_logger.addHandler(console_handler)
    return logging.getLogger('degset')


@dataclass
class AnalysisResult:
    """Everything produced by :func:`run_analysis`."""

    dge: dict
    elist: dict
    fit: dict
    coef: str
    top_table: object
    gene_set_tests: dict = field(default_factory=dict)

    def write(self, directory):
        """Write the top table and gene set results as TSV files."""
        os.makedirs(directory, exist_ok=True)
        write_table(self.top_table, os.path.join(directory, 'top_table.tsv'),
                    index_label='feature')
        for name, table in self.gene_set_tests.items():
            write_table(table, os.path.join(directory, f'{name}.tsv'), index_label='set')


def run_analysis(config):
    """Run the full pipeline described by an :class:`~degset.config.AnalysisConfig`.

    Returns
    -------
    AnalysisResult

    Raises
    ------
    DegsetError
        Any fatal input problem; nothing is written in that case.
    """
    logger.info("Reading counts from %s", config.counts)
    y = read_dge(config.counts, config.targets, sample_column=config.sample_column,
                 group=config.factors[0].column, sep=config.sep)
    logger.info("Read %d genes x %d samples", y.nrow, y.ncol)

    keep = filter_by_cpm(y, min_cpm=config.min_cpm, min_samples=config.min_samples)
    if not np.any(keep):
        raise DegenerateInputError(
            f"no gene reaches {config.min_cpm} CPM in enough samples")
    y = filter_counts(y, keep=keep)

    y = calc_norm_factors(y, method=config.norm_method)
    design = design_matrix(y['samples'], config.factors, intercept=config.intercept)
    logger.info("Design columns: %s", ", ".join(design.columns))
    j = resolve_coef(design, config.coef)
    coef = design.columns[j]

    v = voom(y, design, sample_weights=config.sample_weights)
    fit = lm_fit(v, n_jobs=config.n_jobs)
    fit = e_bayes(fit, trend=config.trend, robust=config.robust)
    table = top_table(fit, coef=coef, number=None)
    logger.info("%d genes at adj.P.Val < 0.05 for %s",
                int(np.sum(table['adj.P.Val'] < 0.05)), coef)

    result = AnalysisResult(dge=y, elist=v, fit=fit, coef=coef, top_table=table)
    if config.gene_sets:
        sets = read_gene_sets(config.gene_sets)
        index = ids2indices(sets, y['genes'].index)
        logger.info("Testing %d gene sets", len(index))
        tests = result.gene_set_tests
        tests['camera'] = camera(v, index, design, contrast=j,
                                 inter_gene_cor=config.inter_gene_cor,
                                 use_ranks=config.use_ranks)
        if config.inter_gene_cor == 'estimate':
            logger.info("camera already uses estimated correlations; "
                        "skipping camera_estimated")
        else:
            tests['camera_estimated'] = camera(v, index, design, contrast=j,
                                               inter_gene_cor='estimate',
                                               use_ranks=config.use_ranks)
        tests['camera_pr'] = camera_pr(fit['t'][:, j], index, use_ranks=config.use_ranks)
        tests['mroast'] = mroast(v, index, design, contrast=j,
                                 set_statistic=config.set_statistic, nrot=config.nrot,
                                 adjust_method=config.adjust_method,
                                 rng=np.random.default_rng(config.seed))

    if config.output_dir:
        result.write(config.output_dir)
        logger.info("Results written to %s", config.output_dir)
    return result
