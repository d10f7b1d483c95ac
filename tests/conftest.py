"""Shared fixtures for degset tests."""

import numpy as np
import pandas as pd
import pytest


@pytest.fixture
def rng():
    """Seeded random number generator for reproducibility."""
    return np.random.RandomState(42)


@pytest.fixture
def small_counts(rng):
    """Small count matrix: 100 genes x 6 samples, Poisson(10)."""
    counts = rng.poisson(10, (100, 6)).astype(np.float64)
    # Make first 10 genes differentially expressed
    counts[:5, 3:6] *= 3
    counts[5:10, 3:6] = 0
    return counts


@pytest.fixture
def group6():
    """Group vector for 6 samples (3+3)."""
    return np.array([0, 0, 0, 1, 1, 1])


@pytest.fixture
def design6():
    """Design matrix for 6 samples with intercept + group."""
    return pd.DataFrame({'Intercept': np.ones(6),
                         'group[T.1]': [0.0, 0.0, 0.0, 1.0, 1.0, 1.0]})


@pytest.fixture
def dgelist(small_counts, group6):
    """DGEList from small_counts with group factor."""
    import degset as ds
    return ds.make_dgelist(small_counts, group=group6)


@pytest.fixture
def gene_sets():
    """Dict of gene set indices for 100-gene data."""
    return {
        'Set1': list(range(10)),
        'Set2': list(range(50, 70)),
        'Set3': list(range(20, 30)),
    }


def simulate_experiment(seed=1, ngenes=100, nde=10, n_per_group=6, fold=2.0):
    """Negative binomial counts with the first nde genes up by fold in group 'high'."""
    r = np.random.RandomState(seed)
    nsamples = 2 * n_per_group
    base = r.uniform(100, 1000, ngenes)
    mu = np.repeat(base[:, np.newaxis], nsamples, axis=1)
    mu[:nde, n_per_group:] *= fold
    lib = r.uniform(0.8, 1.2, nsamples)
    mu = mu * lib[np.newaxis, :]
    # gamma-Poisson with biological CV of 0.1
    counts = r.poisson(r.gamma(100.0, mu / 100.0)).astype(np.float64)

    genes = [f"gene{i+1:03d}" for i in range(ngenes)]
    samples = [f"S{j+1:02d}" for j in range(nsamples)]
    targets = pd.DataFrame({
        'sample': samples,
        'temperature': ['low'] * n_per_group + ['high'] * n_per_group,
        'batch': (['a', 'b'] * n_per_group),
    })
    return pd.DataFrame(counts, index=genes, columns=samples), targets


@pytest.fixture
def experiment():
    """100 genes x 12 samples, genes 1-10 two-fold up at high temperature."""
    return simulate_experiment()


@pytest.fixture
def null_expression():
    """log-expression with no treatment effect: 200 genes x 8 samples."""
    r = np.random.RandomState(7)
    y = r.normal(8.0, 1.0, (200, 1)) + r.normal(0, 0.5, (200, 8))
    design = pd.DataFrame({'Intercept': np.ones(8),
                           'treatment': [0.0] * 4 + [1.0] * 4})
    return y, design


@pytest.fixture
def analysis_files(tmp_path, experiment):
    """Counts, sample table, gene sets and a TOML config on disk."""
    counts, targets = experiment
    counts.index.name = 'gene'
    counts.astype(int).to_csv(tmp_path / 'counts.tsv', sep='\t')
    targets.to_csv(tmp_path / 'samples.tsv', sep='\t', index=False)

    sets_dir = tmp_path / 'sets'
    sets_dir.mkdir()
    (sets_dir / 'heat_shock.txt').write_text(
        'gene_id\n' + '\n'.join(counts.index[:10]) + '\n')
    (sets_dir / 'background.txt').write_text(
        'gene_id\n' + '\n'.join(counts.index[40:60]) + '\n')
    (sets_dir / 'absent.txt').write_text('gene_id\nnot_a_gene\n')

    config = tmp_path / 'analysis.toml'
    config.write_text(
        '[input]\n'
        'counts = "counts.tsv"\n'
        'targets = "samples.tsv"\n'
        'sample_column = "sample"\n'
        'gene_sets = ["sets/heat_shock.txt", "sets/background.txt", "sets/absent.txt"]\n'
        '\n'
        '[filter]\n'
        'min_cpm = 1.0\n'
        '\n'
        '[design]\n'
        'factors = [{column = "temperature", levels = ["low", "high"]}]\n'
        'coef = "temperature[T.high]"\n'
        '\n'
        '[model]\n'
        'sample_weights = true\n'
        '\n'
        '[mroast]\n'
        'set_statistic = "mean"\n'
        'nrot = 499\n'
        'seed = 1\n'
        '\n'
        '[output]\n'
        'directory = "results"\n')
    return tmp_path
