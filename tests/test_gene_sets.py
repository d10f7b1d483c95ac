"""Tests for gene set indexing and the camera, roast, mroast and fry tests."""

import warnings

import numpy as np
import pandas as pd
import pytest

import degset as ds


@pytest.fixture
def de_expression(rng):
    """100 genes x 6 samples, genes 0-9 up by 3 units in group 1."""
    y = rng.normal(0, 1, (100, 6))
    y[:10, 3:] += 3.0
    return y


# ── ids2indices ──────────────────────────────────────────────────────

class TestIds2Indices:
    """ids2indices()."""

    def test_sorted_unique_indices(self):
        ids = ['g1', 'g2', 'g3', 'g4', 'g5']
        idx = ds.ids2indices({'A': ['g3', 'g1', 'g3', 'zz']}, ids)
        assert idx['A'].tolist() == [0, 2]

    def test_member_order_irrelevant(self):
        ids = [f"g{i}" for i in range(20)]
        members = ['g4', 'g11', 'g2', 'g17']
        a = ds.ids2indices({'S': members}, ids)
        b = ds.ids2indices({'S': members[::-1]}, ids)
        assert np.array_equal(a['S'], b['S'])

    def test_empty_set_warns(self):
        with pytest.warns(ds.EmptySetWarning, match='B'):
            idx = ds.ids2indices({'A': ['g1'], 'B': ['zz']}, ['g1', 'g2'])
        assert len(idx['B']) == 0

    def test_remove_empty(self):
        with pytest.warns(ds.EmptySetWarning):
            idx = ds.ids2indices({'A': ['g1'], 'B': ['zz']}, ['g1', 'g2'], remove_empty=True)
        assert list(idx) == ['A']

    def test_list_of_sets(self):
        idx = ds.ids2indices([['g2'], ['g1', 'g2']], ['g1', 'g2'])
        assert list(idx) == ['Set1', 'Set2']


# ── camera ───────────────────────────────────────────────────────────

class TestCamera:
    """camera() and camera_pr()."""

    def test_detects_up_set(self, de_expression, design6, gene_sets):
        res = ds.camera(de_expression, gene_sets, design6, contrast='group[T.1]')
        assert list(res.columns) == ['NGenes', 'Direction', 'PValue', 'FDR']
        assert res.index[0] == 'Set1'
        assert res.loc['Set1', 'Direction'] == 'Up'
        assert res.loc['Set1', 'PValue'] < 1e-3
        assert res.loc['Set1', 'NGenes'] == 10
        assert np.all(res['FDR'] >= res['PValue'])

    def test_negative_contrast_flips_direction(self, de_expression, design6, gene_sets):
        res = ds.camera(de_expression, gene_sets, design6, contrast=[0, -1])
        assert res.loc['Set1', 'Direction'] == 'Down'

    def test_pvalue_increases_with_correlation(self, de_expression, design6, gene_sets):
        pvals = [ds.camera(de_expression, gene_sets, design6, contrast=1,
                           inter_gene_cor=c).loc['Set1', 'PValue']
                 for c in (0.0, 0.01, 0.05, 0.2, 0.5)]
        assert np.all(np.diff(pvals) >= 0)
        assert pvals[-1] > pvals[0]

    @pytest.mark.parametrize('cor', ['estimate', None])
    def test_estimated_correlation(self, de_expression, design6, gene_sets, cor):
        res = ds.camera(de_expression, gene_sets, design6, contrast=1, inter_gene_cor=cor)
        assert list(res.columns) == ['NGenes', 'Correlation', 'Direction', 'PValue', 'FDR']
        assert np.all(np.abs(res['Correlation']) < 1)
        assert res.loc['Set1', 'Direction'] == 'Up'
        assert res.loc['Set1', 'PValue'] < 0.05

    def test_use_ranks(self, de_expression, design6, gene_sets):
        res = ds.camera(de_expression, gene_sets, design6, contrast=1, use_ranks=True)
        assert res.loc['Set1', 'Direction'] == 'Up'
        assert res.loc['Set1', 'PValue'] < 1e-3

    def test_unsorted_keeps_input_order(self, de_expression, design6, gene_sets):
        res = ds.camera(de_expression, gene_sets, design6, sort=False)
        assert list(res.index) == ['Set1', 'Set2', 'Set3']

    def test_dgelist_and_elist_input(self, dgelist, design6, gene_sets):
        res = ds.camera(dgelist, gene_sets, design6)
        assert res.shape[0] == 3
        v = ds.voom(dgelist, design6)
        res = ds.camera(v, gene_sets)
        assert res.shape[0] == 3

    def test_requires_design(self, de_expression, gene_sets):
        with pytest.raises(ds.DataFormatError):
            ds.camera(de_expression, gene_sets)

    def test_unknown_contrast(self, de_expression, design6, gene_sets):
        with pytest.raises(ds.UnknownCoefficientError):
            ds.camera(de_expression, gene_sets, design6, contrast='treatment')

    def test_index_out_of_range(self, de_expression, design6):
        with pytest.raises(IndexError):
            ds.camera(de_expression, {'S': [5, 100]}, design6)

    def test_camera_pr(self, rng):
        stat = np.concatenate([np.full(10, 3.0), rng.normal(size=90)])
        res = ds.camera_pr(stat, {'top': range(10), 'random': range(50, 70)})
        assert res.index[0] == 'top'
        assert res.loc['top', 'Direction'] == 'Up'
        assert res.loc['top', 'PValue'] < 1e-3
        ranked = ds.camera_pr(stat, {'top': range(10)}, use_ranks=True)
        assert 'FDR' not in ranked.columns
        assert ranked.loc['top', 'PValue'] < 1e-3


# ── roast / mroast ───────────────────────────────────────────────────

class TestRoast:
    """roast()."""

    def test_result_layout(self, de_expression, design6):
        res = ds.roast(de_expression, np.arange(10), design6, contrast=1, nrot=999, rng=0)
        assert list(res.index) == ['Down', 'Up', 'UpOrDown', 'Mixed']
        assert list(res.columns) == ['Active.Prop', 'P.Value']
        assert res.attrs['NGenes'] == 10

    def test_detects_up_set(self, de_expression, design6):
        res = ds.roast(de_expression, np.arange(10), design6, contrast=1, nrot=999, rng=0)
        assert res.loc['Up', 'P.Value'] < 0.01
        assert res.loc['Down', 'P.Value'] > 0.5
        assert res.loc['UpOrDown', 'P.Value'] == min(2 * res.loc['Up', 'P.Value'], 1.0)
        assert res.loc['Up', 'Active.Prop'] > 0.5
        assert res.loc['Mixed', 'Active.Prop'] == pytest.approx(
            res.loc['Up', 'Active.Prop'] + res.loc['Down', 'Active.Prop'])

    def test_minimum_pvalue(self, de_expression, design6):
        res = ds.roast(de_expression, np.arange(10), design6, nrot=99, rng=0)
        assert np.all(res['P.Value'] >= 1 / 100)

    @pytest.mark.parametrize('statistic', ds.gene_sets.SET_STATISTICS)
    def test_set_statistics(self, de_expression, design6, statistic):
        res = ds.roast(de_expression, np.arange(10), design6, set_statistic=statistic,
                       nrot=499, rng=1)
        assert res.loc['Up', 'P.Value'] < 0.05
        assert res.loc['Mixed', 'P.Value'] < 0.05

    def test_null_set_not_significant(self, null_expression):
        y, design = null_expression
        pvals = [ds.roast(y, np.arange(k, k + 20), design, nrot=499, rng=k)
                 .loc['UpOrDown', 'P.Value'] for k in range(0, 200, 20)]
        assert np.mean(pvals) > 0.2
        assert np.mean(np.asarray(pvals) < 0.05) <= 0.3

    def test_reproducible_with_seed(self, de_expression, design6):
        a = ds.roast(de_expression, np.arange(40, 60), design6, nrot=199, rng=5)
        b = ds.roast(de_expression, np.arange(40, 60), design6, nrot=199, rng=5)
        pd.testing.assert_frame_equal(a, b)

    def test_empty_set(self, de_expression, design6):
        with pytest.warns(ds.EmptySetWarning):
            res = ds.roast(de_expression, np.array([], dtype=int), design6, nrot=99)
        assert res['P.Value'].isna().all()
        assert res.attrs['NGenes'] == 0

    def test_unknown_statistic(self, de_expression, design6):
        with pytest.raises(ValueError):
            ds.roast(de_expression, np.arange(10), design6, set_statistic='median')


class TestMroast:
    """mroast()."""

    COLUMNS = ['NGenes', 'PropDown', 'PropUp', 'Direction', 'PValue', 'FDR',
               'PValue.Mixed', 'FDR.Mixed', 'PValue.Up', 'FDR.Up', 'PValue.Down',
               'FDR.Down']

    def test_columns_and_sorting(self, de_expression, design6, gene_sets):
        res = ds.mroast(de_expression, gene_sets, design6, nrot=499, rng=0)
        assert list(res.columns) == self.COLUMNS
        assert res.index[0] == 'Set1'
        assert res.loc['Set1', 'Direction'] == 'Up'
        assert np.all(np.diff(res['PValue'].to_numpy()) >= 0)
        assert res['NGenes'].tolist() == [len(gene_sets[n]) for n in res.index]

    def test_pvalue_and_midp_fdr(self, de_expression, design6, gene_sets):
        res = ds.mroast(de_expression, gene_sets, design6, nrot=499, rng=0, sort='none')
        up, down = res['PValue.Up'].to_numpy(), res['PValue.Down'].to_numpy()
        assert np.allclose(res['PValue'], np.minimum(2 * np.minimum(up, down), 1))
        assert np.all(res['PValue'] >= 1 / 500)
        # FDR from mid-p-values can fall below the reported p-value
        nomid = ds.mroast(de_expression, gene_sets, design6, nrot=499, rng=0,
                          sort='none', midp=False)
        assert np.all(res['FDR'] <= nomid['FDR'] + 1e-12)
        assert np.allclose(res['PValue'], nomid['PValue'])

    def test_same_rotations_as_roast(self, de_expression, design6, gene_sets):
        one = ds.roast(de_expression, gene_sets['Set1'], design6, nrot=299, rng=3)
        many = ds.mroast(de_expression, {'Set1': gene_sets['Set1']}, design6,
                         nrot=299, rng=3)
        assert many.loc['Set1', 'PValue.Up'] == one.loc['Up', 'P.Value']
        assert many.loc['Set1', 'PValue.Mixed'] == one.loc['Mixed', 'P.Value']

    def test_directional_fdr(self, de_expression, design6, gene_sets):
        res = ds.mroast(de_expression, gene_sets, design6, nrot=499, rng=0, sort='none')
        mid = ds.mroast(de_expression, gene_sets, design6, nrot=499, rng=0, sort='none',
                        midp=False)
        assert np.allclose(mid['FDR.Up'], ds.p_adjust(mid['PValue.Up'].to_numpy(), 'BH'))
        assert np.allclose(mid['FDR.Down'], ds.p_adjust(mid['PValue.Down'].to_numpy(), 'BH'))
        assert np.all(res['FDR.Up'] <= mid['FDR.Up'] + 1e-12)
        assert res.loc['Set1', 'FDR.Up'] < 0.05
        assert res.loc['Set1', 'FDR.Down'] > 0.5

    def test_single_set_has_no_fdr(self, de_expression, design6, gene_sets):
        res = ds.mroast(de_expression, {'Set1': gene_sets['Set1']}, design6,
                        nrot=199, rng=1)
        assert not any(c.startswith('FDR') for c in res.columns)
        assert list(res.columns) == [c for c in self.COLUMNS if not c.startswith('FDR')]

    def test_empty_set_excluded_from_adjustment(self, de_expression, design6, gene_sets):
        with pytest.warns(ds.EmptySetWarning):
            res = ds.mroast(de_expression, {**gene_sets, 'Empty': []},
                            design6, nrot=299, rng=3)
        base = ds.mroast(de_expression, gene_sets, design6, nrot=299, rng=3)
        assert res.loc['Empty', 'NGenes'] == 0
        assert np.isnan(res.loc['Empty', 'PValue'])
        assert np.isnan(res.loc['Empty', 'FDR.Up'])
        assert res.loc['Empty', 'Direction'] is None
        for col in ('FDR', 'FDR.Mixed', 'FDR.Up', 'FDR.Down'):
            assert np.allclose(res.loc[list(gene_sets), col], base.loc[list(gene_sets), col])
        assert res.index[-1] == 'Empty'

    def test_null_sets_uniform(self, null_expression):
        y, design = null_expression
        sets = {f"S{k}": np.arange(k * 10, k * 10 + 10) for k in range(20)}
        with warnings.catch_warnings():
            warnings.simplefilter("error", ds.EmptySetWarning)
            res = ds.mroast(y, sets, design, nrot=199, rng=0)
        p = res['PValue.Up'].to_numpy()
        assert 0.3 < np.mean(p) < 0.7
        assert np.mean(p < 0.05) <= 0.2

    def test_sort_mixed(self, de_expression, design6, gene_sets):
        res = ds.mroast(de_expression, gene_sets, design6, nrot=199, rng=0, sort='mixed')
        assert np.all(np.diff(res['PValue.Mixed'].to_numpy()) >= 0)
        with pytest.raises(ValueError):
            ds.mroast(de_expression, gene_sets, design6, sort='fdr')


class TestFry:
    """fry()."""

    def test_detects_up_set(self, de_expression, design6, gene_sets):
        res = ds.fry(de_expression, gene_sets, design6)
        assert list(res.columns[:6]) == ['NGenes', 'Direction', 'PValue', 'FDR',
                                         'PValue.Mixed', 'FDR.Mixed']
        assert res.index[0] == 'Set1'
        assert res.loc['Set1', 'Direction'] == 'Up'
        assert res.loc['Set1', 'PValue'] < 0.01
        assert np.all((res['PValue.Mixed'] >= 0) & (res['PValue.Mixed'] <= 1))

    def test_single_gene_set(self, de_expression, design6):
        res = ds.fry(de_expression, {'one': [0]}, design6)
        assert res.loc['one', 'PValue.Mixed'] == res.loc['one', 'PValue']
        assert 'FDR' not in res.columns
