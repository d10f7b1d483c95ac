"""Tests for design matrix construction and coefficient selection."""

import numpy as np
import pandas as pd
import pytest

import degset as ds


@pytest.fixture
def samples():
    return pd.DataFrame({
        'temperature': ['low', 'high', 'low', 'high', 'low', 'high'],
        'batch': ['a', 'a', 'b', 'b', 'c', 'c'],
    }, index=[f"S{i}" for i in range(1, 7)])


class TestDesignMatrix:
    """design_matrix()."""

    def test_reference_level_and_columns(self, samples):
        d = ds.design_matrix(samples, [ds.FactorSpec('temperature', ['low', 'high']), 'batch'])
        assert list(d.columns) == ['Intercept', 'temperature[T.high]',
                                   'batch[T.b]', 'batch[T.c]']
        assert list(d.index) == list(samples.index)
        assert d['temperature[T.high]'].tolist() == [0, 1, 0, 1, 0, 1]
        assert d['batch[T.c]'].tolist() == [0, 0, 0, 0, 1, 1]

    def test_levels_reorder_reference(self, samples):
        d = ds.design_matrix(samples, [{'column': 'temperature', 'levels': ['high', 'low']}])
        assert list(d.columns) == ['Intercept', 'temperature[T.low]']

    def test_default_levels_sorted(self, samples):
        d = ds.design_matrix(samples, ['temperature'])
        assert list(d.columns) == ['Intercept', 'temperature[T.low]']

    def test_numeric_levels_sorted_by_value(self, samples):
        samples = samples.assign(temperature=['8', '12'] * 3)
        d = ds.design_matrix(samples, ['temperature'])
        assert list(d.columns) == ['Intercept', 'temperature[T.12]']
        assert d['temperature[T.12]'].tolist() == [0, 1, 0, 1, 0, 1]

    def test_numeric_column_from_table(self, tmp_path):
        counts = pd.DataFrame(np.full((3, 4), 10), index=['g1', 'g2', 'g3'],
                              columns=['S1', 'S2', 'S3', 'S4'])
        counts.to_csv(tmp_path / 'counts.tsv', sep='\t', index_label='gene')
        pd.DataFrame({'sample': ['S1', 'S2', 'S3', 'S4'], 'temperature': [8, 12, 8, 12]}
                     ).to_csv(tmp_path / 'samples.tsv', sep='\t', index=False)
        y = ds.read_dge(str(tmp_path / 'counts.tsv'), str(tmp_path / 'samples.tsv'))
        d = ds.design_matrix(y['samples'], ['temperature'])
        assert list(d.columns) == ['Intercept', 'temperature[T.12]']

    def test_missing_value_raises(self, samples):
        samples = samples.copy()
        samples.loc['S3', 'batch'] = np.nan
        with pytest.raises(ds.DataFormatError, match="'batch'.*S3"):
            ds.design_matrix(samples, ['temperature', 'batch'])

    def test_missing_value_from_table(self, tmp_path):
        counts = pd.DataFrame(np.full((3, 4), 10), index=['g1', 'g2', 'g3'],
                              columns=['S1', 'S2', 'S3', 'S4'])
        counts.to_csv(tmp_path / 'counts.tsv', sep='\t', index_label='gene')
        (tmp_path / 'samples.tsv').write_text(
            'sample\ttemperature\tbatch\nS1\tlow\ta\nS2\thigh\t\nS3\tlow\tb\nS4\thigh\tb\n')
        y = ds.read_dge(str(tmp_path / 'counts.tsv'), str(tmp_path / 'samples.tsv'))
        with pytest.raises(ds.DataFormatError, match='S2'):
            ds.design_matrix(y['samples'], ['temperature', 'batch'])

    def test_custom_prefix(self, samples):
        d = ds.design_matrix(samples, [ds.FactorSpec('temperature', ['low', 'high'], name='temp')])
        assert 'temp[T.high]' in d.columns

    def test_no_intercept(self, samples):
        d = ds.design_matrix(samples, [ds.FactorSpec('temperature', ['low', 'high'])],
                             intercept=False)
        assert list(d.columns) == ['temperature[low]', 'temperature[high]']
        assert np.allclose(d.sum(axis=1), 1.0)

    def test_single_level_raises(self, samples):
        samples = samples.assign(site='x')
        with pytest.raises(ds.RankDeficiencyError) as info:
            ds.design_matrix(samples, ['temperature', 'site'])
        assert info.value.columns == ['site']

    def test_confounded_factors_raise(self, samples):
        samples = samples.assign(incubator=['i1', 'i2'] * 3)
        with pytest.raises(ds.RankDeficiencyError) as info:
            ds.design_matrix(samples, ['temperature', 'incubator'])
        assert info.value.columns == ['incubator[T.i2]']

    def test_value_outside_levels(self, samples):
        with pytest.raises(ds.DataFormatError):
            ds.design_matrix(samples, [ds.FactorSpec('temperature', ['low', 'medium'])])

    def test_unknown_column(self, samples):
        with pytest.raises(ds.DataFormatError):
            ds.design_matrix(samples, ['genotype'])


class TestModelMatrix:
    """model_matrix() and rank checks."""

    def test_formula(self, samples):
        d = ds.model_matrix('~ temperature', samples)
        assert list(d.columns) == ['Intercept', 'temperature[T.low]']

    def test_rank_deficient_formula(self, samples):
        samples = samples.assign(copy=samples['temperature'])
        with pytest.raises(ds.RankDeficiencyError):
            ds.model_matrix('~ temperature + copy', samples)

    def test_bad_formula(self, samples):
        with pytest.raises(ds.DataFormatError):
            ds.model_matrix('~ nonexistent', samples)

    def test_non_estimable(self):
        x = np.column_stack([np.ones(4), [0, 0, 1, 1], [0, 0, 1, 1]])
        assert ds.non_estimable(x).tolist() == [2]
        assert ds.non_estimable(x[:, :2]) is None
        assert not ds.is_fullrank(x)


class TestResolveCoef:
    """resolve_coef()."""

    def test_by_name_and_position(self, samples):
        d = ds.design_matrix(samples, ['temperature', 'batch'])
        assert ds.resolve_coef(d, 'batch[T.b]') == 2
        assert ds.resolve_coef(d, -1) == 3
        assert ds.resolve_coef(d, 0) == 0

    def test_unknown(self, samples):
        d = ds.design_matrix(samples, ['temperature'])
        with pytest.raises(ds.UnknownCoefficientError):
            ds.resolve_coef(d, 'temperature[T.medium]')
        with pytest.raises(KeyError):
            ds.resolve_coef(d, 5)
