"""Tests for top_table, decide_tests and p_adjust."""

import numpy as np
import pandas as pd
import pytest

import degset as ds


@pytest.fixture
def eb_fit(rng, design6):
    y = rng.normal(6.0, 1.0, (200, 1)) + rng.normal(0, 0.3, (200, 6))
    y[:10, 3:] += 2.0
    y[10:15, 3:] -= 2.0
    y = pd.DataFrame(y, index=[f"gene{i:03d}" for i in range(200)])
    return ds.e_bayes(ds.lm_fit(y, design6))


class TestPAdjust:
    """p_adjust()."""

    def test_bh_ignores_nan(self):
        adj = ds.p_adjust([0.01, np.nan, 0.04, 0.03], 'BH')
        assert np.isnan(adj[1])
        assert np.allclose(adj[[0, 2, 3]], [0.03, 0.04, 0.04])

    def test_bonferroni_capped(self):
        assert np.allclose(ds.p_adjust([0.2, 0.5], 'bonferroni'), [0.4, 1.0])

    def test_none(self):
        assert np.allclose(ds.p_adjust([0.2, 0.5], 'none'), [0.2, 0.5])

    def test_all_nan(self):
        assert np.all(np.isnan(ds.p_adjust([np.nan, np.nan])))

    def test_unknown_method(self):
        with pytest.raises(ValueError):
            ds.p_adjust([0.1], 'storey')


class TestTopTable:
    """top_table()."""

    def test_columns_and_order(self, eb_fit):
        tab = ds.top_table(eb_fit, coef='group[T.1]', number=None)
        assert list(tab.columns) == ['logFC', 'AveExpr', 't', 'P.Value', 'adj.P.Val', 'B']
        assert len(tab) == 200
        assert np.all(np.diff(tab['P.Value'].to_numpy()) >= 0)
        assert set(tab.index[:15]) == {f"gene{i:03d}" for i in range(15)}
        assert np.all(tab['adj.P.Val'] >= tab['P.Value'])

    def test_number_and_filters(self, eb_fit):
        assert len(ds.top_table(eb_fit, coef=1)) == 10
        sig = ds.top_table(eb_fit, coef=1, number=None, p_value=0.05, lfc=1.0)
        assert np.all(sig['adj.P.Val'] <= 0.05)
        assert np.all(np.abs(sig['logFC']) >= 1.0)

    def test_sort_by_logfc(self, eb_fit):
        tab = ds.top_table(eb_fit, coef=1, number=None, sort_by='logFC')
        assert np.all(np.diff(np.abs(tab['logFC'].to_numpy())) <= 0)

    def test_confint(self, eb_fit):
        tab = ds.top_table(eb_fit, coef=1, confint=True)
        assert list(tab.columns[:3]) == ['logFC', 'CI.L', 'CI.R']
        assert np.all((tab['CI.L'] < tab['logFC']) & (tab['logFC'] < tab['CI.R']))

    def test_f_table_without_coef(self, eb_fit):
        tab = ds.top_table(eb_fit, number=5)
        assert 'F' in tab.columns and 'Intercept' in tab.columns

    def test_unknown_coefficient(self, eb_fit):
        with pytest.raises(ds.UnknownCoefficientError):
            ds.top_table(eb_fit, coef='treatment')

    def test_requires_ebayes(self, design6, rng):
        fit = ds.lm_fit(rng.normal(size=(20, 6)), design6)
        with pytest.raises(ValueError):
            ds.top_table(fit, coef=1)


class TestDecideTests:
    """decide_tests()."""

    def test_directions(self, eb_fit):
        res = ds.decide_tests(eb_fit, coef='group[T.1]')
        assert list(res.columns) == ['group[T.1]']
        assert res.iloc[:10, 0].eq(1).all()
        assert res.iloc[10:15, 0].eq(-1).all()
        assert set(np.unique(res.to_numpy())) <= {-1, 0, 1}

    def test_all_coefficients(self, eb_fit):
        res = ds.decide_tests(eb_fit)
        assert res.shape == (200, 2)
        assert res.index[0] == 'gene000'
