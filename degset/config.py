"""
Configuration of a degset analysis run.

Runs are described by a TOML file::

    [input]
    counts = "counts.tsv"
    targets = "samples.tsv"
    sample_column = "sample"
    gene_sets = ["sets/heat_shock.txt", "sets/ribosome.txt"]

    [filter]
    min_cpm = 1.0
    min_samples = 3

    [normalization]
    method = "TMM"

    [design]
    factors = [{column = "temperature", levels = ["low", "high"]}]
    coef = "temperature[T.high]"

    [model]
    sample_weights = true
    robust = false
    trend = false

    [camera]
    inter_gene_cor = 0.01
    use_ranks = false

    [mroast]
    set_statistic = "mean"
    nrot = 1999
    adjust_method = "BH"
    seed = 1

    [output]
    directory = "results"

Relative paths are taken relative to the directory holding the file.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional, Union

import tomli

from .design import FactorSpec
from .errors import DataFormatError
from .gene_sets import SET_STATISTICS
from .normalization import NORM_METHODS
from .results import ADJUST_METHODS

logger = logging.getLogger(__name__)

_SECTIONS = {
    'input': {'counts', 'targets', 'sample_column', 'gene_sets', 'sep'},
    'filter': {'min_cpm', 'min_samples'},
    'normalization': {'method'},
    'design': {'factors', 'coef', 'intercept'},
    'model': {'sample_weights', 'robust', 'trend', 'n_jobs'},
    'camera': {'inter_gene_cor', 'use_ranks'},
    'mroast': {'set_statistic', 'nrot', 'adjust_method', 'seed'},
    'output': {'directory'},
}


@dataclass
class AnalysisConfig:
    """Parameters of one analysis run, with edgeR/limma defaults."""

    counts: str
    targets: str
    factors: List[FactorSpec]
    sample_column: Optional[str] = None
    gene_sets: List[str] = field(default_factory=list)
    sep: str = '\t'
    min_cpm: float = 1.0
    min_samples: Optional[int] = None
    norm_method: str = 'TMM'
    coef: Union[str, int] = -1
    intercept: bool = True
    sample_weights: bool = False
    robust: bool = False
    trend: bool = False
    n_jobs: Optional[int] = None
    inter_gene_cor: float = 0.01
    use_ranks: bool = False
    set_statistic: str = 'mean'
    nrot: int = 1999
    adjust_method: str = 'BH'
    seed: Optional[int] = None
    output_dir: Optional[str] = None

    def __post_init__(self):
        self.factors = [FactorSpec.coerce(f) for f in self.factors]
        if not self.factors:
            raise DataFormatError("design needs at least one factor")
        if self.norm_method not in NORM_METHODS:
            raise ValueError(f"normalization method must be one of {NORM_METHODS}")
        if self.set_statistic not in SET_STATISTICS:
            raise ValueError(f"set_statistic must be one of {SET_STATISTICS}")
        if self.adjust_method not in ADJUST_METHODS:
            raise ValueError(f"adjust_method must be one of {ADJUST_METHODS}")
        if isinstance(self.inter_gene_cor, str) and self.inter_gene_cor != 'estimate':
            raise ValueError("inter_gene_cor must be a number or 'estimate'")
        if int(self.nrot) < 1:
            raise ValueError("nrot must be positive")
        self.nrot = int(self.nrot)

    @classmethod
    def from_dict(cls, data, base_dir=None):
        """Build a config from parsed TOML sections."""
        for section, values in data.items():
            if section not in _SECTIONS:
                raise DataFormatError(f"unknown configuration section [{section}]")
            unknown = set(values) - _SECTIONS[section]
            if unknown:
                raise DataFormatError(
                    f"unknown keys in [{section}]: {', '.join(sorted(unknown))}")
        for section in ('input', 'design'):
            if section not in data:
                raise DataFormatError(f"missing required section [{section}]")
        inp = data['input']
        for key in ('counts', 'targets'):
            if key not in inp:
                raise DataFormatError(f"missing required key '{key}' in [input]")
        if 'factors' not in data['design']:
            raise DataFormatError("missing required key 'factors' in [design]")

        def path(p):
            if base_dir is None or os.path.isabs(p):
                return p
            return os.path.join(base_dir, p)

        gene_sets = inp.get('gene_sets', [])
        if isinstance(gene_sets, str):
            gene_sets = [gene_sets]
        flt = data.get('filter', {})
        model = data.get('model', {})
        cam = data.get('camera', {})
        rot = data.get('mroast', {})
        out = data.get('output', {})
        output_dir = out.get('directory')

        return cls(
            counts=path(inp['counts']),
            targets=path(inp['targets']),
            sample_column=inp.get('sample_column'),
            gene_sets=[path(p) for p in gene_sets],
            sep=inp.get('sep', '\t'),
            min_cpm=flt.get('min_cpm', 1.0),
            min_samples=flt.get('min_samples'),
            norm_method=data.get('normalization', {}).get('method', 'TMM'),
            factors=data['design']['factors'],
            coef=data['design'].get('coef', -1),
            intercept=data['design'].get('intercept', True),
            sample_weights=model.get('sample_weights', False),
            robust=model.get('robust', False),
            trend=model.get('trend', False),
            n_jobs=model.get('n_jobs'),
            inter_gene_cor=cam.get('inter_gene_cor', 0.01),
            use_ranks=cam.get('use_ranks', False),
            set_statistic=rot.get('set_statistic', 'mean'),
            nrot=rot.get('nrot', 1999),
            adjust_method=rot.get('adjust_method', 'BH'),
            seed=rot.get('seed'),
            output_dir=path(output_dir) if output_dir is not None else None,
        )


def load_config(config_path):
    """Load an :class:`AnalysisConfig` from a TOML file.

    Raises
    ------
    DataFormatError
        If the file is missing, is not valid TOML, or lacks required
        sections or keys.
    """
    try:
        with open(config_path, "rb") as f:
            data = tomli.load(f)
    except FileNotFoundError:
        raise DataFormatError(f"configuration file {config_path} does not exist") from None
    except tomli.TOMLDecodeError as e:
        raise DataFormatError(f"error parsing configuration file {config_path}: {e}") from None
    logger.debug("Loaded configuration from %s", config_path)
    return AnalysisConfig.from_dict(data, base_dir=os.path.dirname(os.path.abspath(config_path)))
