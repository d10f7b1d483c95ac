"""
degset: differential expression and gene set testing for bulk RNA-seq.

Python port of the edgeR/limma workflow: CPM filtering, TMM normalization,
voom precision weights, linear models with empirical Bayes moderation, and
the camera, roast, mroast and fry gene set tests.
"""

__version__ = "0.1.0"

# --- Errors ---
from .errors import (
    DegsetError,
    DataFormatError,
    DegenerateInputError,
    RankDeficiencyError,
    UnknownCoefficientError,
    EmptySetWarning,
)

# --- Classes ---
from .classes import DGEList, EList, MArrayLM

# --- DGEList construction & accessors ---
from .dgelist import make_dgelist, as_dgelist, get_norm_lib_sizes

# --- I/O ---
from .io import (
    read_counts,
    read_targets,
    align_targets,
    read_dge,
    read_gene_set,
    read_gene_sets,
    write_table,
)

# --- Expression ---
from .expression import cpm, ave_log_cpm, add_prior_count

# --- Filtering ---
from .filtering import filter_by_cpm, filter_by_expr, filter_counts

# --- Normalization ---
from .normalization import calc_norm_factors

# --- Design ---
from .design import (
    FactorSpec,
    design_matrix,
    model_matrix,
    check_full_rank,
    is_fullrank,
    non_estimable,
    resolve_coef,
)

# --- Linear models ---
from .linear_model import (
    voom,
    voom_with_quality_weights,
    array_weights,
    lm_fit,
    make_contrasts,
    contrasts_fit,
    e_bayes,
)
from .squeeze import squeeze_var, fit_f_dist, fit_f_dist_robustly

# --- Results ---
from .results import top_table, decide_tests, p_adjust

# --- Gene sets ---
from .gene_sets import ids2indices, camera, camera_pr, roast, mroast, fry

# --- Pipeline ---
from .config import AnalysisConfig, load_config
from .pipeline import AnalysisResult, run_analysis, setup_logging
