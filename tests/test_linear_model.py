"""Tests for voom, linear model fits, contrasts and empirical Bayes."""

import warnings

import numpy as np
import pandas as pd
import pytest

import degset as ds


@pytest.fixture
def expression(rng):
    """Log-expression, 300 genes x 6 samples, genes 1-20 up in group 1."""
    y = rng.normal(6.0, 1.0, (300, 1)) + rng.normal(0, 0.3, (300, 6))
    y[:20, 3:] += 2.0
    return y


class TestLmFit:
    """lm_fit()."""

    def test_matches_least_squares(self, expression, design6):
        fit = ds.lm_fit(expression, design6)
        x = design6.to_numpy()
        coef, rss, _, _ = np.linalg.lstsq(x, expression.T, rcond=None)
        assert np.allclose(fit['coefficients'], coef.T)
        assert np.allclose(fit['sigma'], np.sqrt(rss / 4))
        assert np.allclose(fit['df.residual'], 4)
        su = np.sqrt(np.diag(np.linalg.inv(x.T @ x)))
        assert np.allclose(fit['stdev.unscaled'], su[np.newaxis, :])
        assert fit['coef.names'] == ['Intercept', 'group[T.1]']

    def test_weighted(self, expression, design6, rng):
        w = rng.uniform(0.5, 2.0, expression.shape)
        fit = ds.lm_fit(expression, design6, weights=w)
        x = design6.to_numpy()
        sw = np.sqrt(w[7])
        coef, *_ = np.linalg.lstsq(x * sw[:, np.newaxis], expression[7] * sw, rcond=None)
        assert np.allclose(fit['coefficients'][7], coef)

    def test_sample_weights_vector(self, expression, design6):
        aw = np.array([1, 1, 2, 1, 1, 2.0])
        a = ds.lm_fit(expression, design6, weights=aw)
        b = ds.lm_fit(expression, design6, weights=np.tile(aw, (300, 1)))
        assert np.allclose(a['coefficients'], b['coefficients'])

    def test_missing_values(self, expression, design6):
        y = expression.copy()
        y[0, 0] = np.nan
        fit = ds.lm_fit(y, design6)
        assert fit['df.residual'][0] == 3
        coef, *_ = np.linalg.lstsq(design6.to_numpy()[1:], y[0, 1:], rcond=None)
        assert np.allclose(fit['coefficients'][0], coef)

    def test_parallel_blocks_match(self, rng, design6):
        y = rng.normal(size=(2500, 6))
        serial = ds.lm_fit(y, design6)
        parallel = ds.lm_fit(y, design6, n_jobs=2, chunk_size=1000)
        for key in ('coefficients', 'stdev.unscaled', 'sigma', 'df.residual'):
            assert np.allclose(serial[key], parallel[key])

    def test_dataframe_labels(self, expression, design6):
        df = pd.DataFrame(expression, index=[f"g{i}" for i in range(300)])
        fit = ds.lm_fit(df, design6)
        assert list(fit['genes'].index[:2]) == ['g0', 'g1']

    def test_rank_deficient(self, expression, design6):
        x = design6.assign(copy=design6['group[T.1]'])
        with pytest.raises(ds.RankDeficiencyError) as info:
            ds.lm_fit(expression, x)
        assert info.value.columns == ['copy']

    def test_no_residual_df(self, expression):
        with pytest.raises(ds.DegenerateInputError):
            ds.lm_fit(expression, np.eye(6))

    def test_design_rows(self, expression):
        with pytest.raises(ds.DataFormatError):
            ds.lm_fit(expression, np.ones((5, 1)))


class TestVoom:
    """voom() and sample quality weights."""

    def test_log_cpm_and_weights(self, dgelist, design6):
        v = ds.voom(dgelist, design6)
        assert isinstance(v, ds.EList)
        lib = dgelist['samples']['lib.size'].to_numpy()
        expected = np.log2((dgelist['counts'] + 0.5) / (lib + 1) * 1e6)
        assert np.allclose(v['E'], expected)
        assert v['weights'].shape == v['E'].shape
        assert np.all(np.isfinite(v['weights'])) and np.all(v['weights'] > 0)
        assert np.allclose(v['targets']['lib.size'], lib)
        assert list(v['genes'].index) == list(dgelist['genes'].index)

    def test_precision_increases_with_count(self, experiment):
        counts, _ = experiment
        v = ds.voom(counts.to_numpy())
        xp, fp = v['voom.line']
        # the sqrt-sd trend falls with expression, so weights rise
        assert fp[0] > fp[-1]

    def test_uses_normalized_lib_sizes(self, dgelist, design6):
        y = ds.calc_norm_factors(dgelist)
        v = ds.voom(y, design6)
        assert np.allclose(v['lib.size'], ds.get_norm_lib_sizes(y))

    def test_sample_weights(self, experiment):
        counts, targets = experiment
        y = ds.make_dgelist(counts)
        design = ds.design_matrix(targets.set_index('sample'),
                                  [ds.FactorSpec('temperature', ['low', 'high'])])
        v = ds.voom(y, design, sample_weights=True)
        aw = v['sample.weights']
        assert aw.shape == (12,)
        assert np.all(aw > 0)
        assert np.allclose(v['targets']['sample.weights'], aw)
        assert np.all(v['weights'] > 0)

    def test_weights_and_sample_weights_exclusive(self, dgelist, design6):
        with pytest.raises(ValueError):
            ds.voom(dgelist, design6, weights=np.ones(6), sample_weights=True)


class TestArrayWeights:
    """array_weights()."""

    @pytest.mark.parametrize('method', ['reml', 'genebygene'])
    def test_noisy_sample_downweighted(self, rng, design6, method):
        E = rng.normal(0, 1, (500, 6))
        E[:, 0] *= 3
        aw = ds.array_weights(E, design6, method=method)
        assert np.argmin(aw) == 0
        assert np.all(aw > 0)

    def test_var_group(self, rng, design6):
        E = rng.normal(0, 1, (500, 6))
        E[:, :3] *= 2
        aw = ds.array_weights(E, design6, var_group=['a', 'a', 'a', 'b', 'b', 'b'])
        assert np.allclose(aw[:3], aw[0]) and np.allclose(aw[3:], aw[3])
        assert aw[0] < aw[3]


class TestContrasts:
    """make_contrasts() and contrasts_fit()."""

    def test_make_contrasts(self):
        c = ds.make_contrasts('b - a', '0.5*a + 0.5*b', levels=['a', 'b'])
        assert c['b - a'].tolist() == [-1.0, 1.0]
        assert c['0.5*a + 0.5*b'].tolist() == [0.5, 0.5]

    def test_make_contrasts_bracketed_names(self, design6):
        c = ds.make_contrasts('group[T.1] - Intercept', levels=design6)
        assert c.iloc[:, 0].tolist() == [-1.0, 1.0]

    def test_make_contrasts_unknown(self):
        with pytest.raises(ds.UnknownCoefficientError):
            ds.make_contrasts('c - a', levels=['a', 'b'])

    def test_make_contrasts_unparseable(self):
        with pytest.raises(ds.DataFormatError):
            ds.make_contrasts('a * * b', levels=['a', 'b'])

    def test_group_means_contrast_matches_treatment_coding(self, expression, design6):
        means = pd.DataFrame({'a': 1 - design6['group[T.1]'], 'b': design6['group[T.1]']})
        fit = ds.lm_fit(expression, means)
        cfit = ds.contrasts_fit(fit, ds.make_contrasts('b - a', levels=means))
        eb = ds.e_bayes(cfit)
        ref = ds.e_bayes(ds.lm_fit(expression, design6))
        assert np.allclose(eb['coefficients'][:, 0], ref['coefficients'][:, 1])
        assert np.allclose(eb['t'][:, 0], ref['t'][:, 1])
        assert cfit['coef.names'] == ['b - a']

    def test_select_coefficients(self, expression, design6):
        fit = ds.lm_fit(expression, design6)
        cfit = ds.contrasts_fit(fit, coefficients='group[T.1]')
        assert np.allclose(cfit['stdev.unscaled'][:, 0], fit['stdev.unscaled'][:, 1])
        assert np.allclose(cfit['coefficients'][:, 0], fit['coefficients'][:, 1])


class TestEBayes:
    """e_bayes()."""

    def test_moderated_t(self, expression, design6):
        fit = ds.lm_fit(expression, design6)
        eb = ds.e_bayes(fit)
        expected = fit['coefficients'] / fit['stdev.unscaled'] / np.sqrt(eb['s2.post'])[:, np.newaxis]
        assert np.allclose(eb['t'], expected)
        assert np.all((eb['p.value'] >= 0) & (eb['p.value'] <= 1))
        assert np.all(eb['df.total'] <= 4 * 300)
        assert np.all(eb['df.total'] >= 4)
        assert 'sigma' in eb and 't' not in fit

    def test_posterior_between_sample_and_prior(self, expression, design6):
        eb = ds.e_bayes(ds.lm_fit(expression, design6))
        s2 = eb['sigma'] ** 2
        lo = np.minimum(s2, eb['s2.prior'])
        hi = np.maximum(s2, eb['s2.prior'])
        assert np.all((eb['s2.post'] >= lo - 1e-12) & (eb['s2.post'] <= hi + 1e-12))

    def test_detects_de_genes(self, expression, design6):
        eb = ds.e_bayes(ds.lm_fit(expression, design6))
        top = np.argsort(eb['p.value'][:, 1])[:20]
        assert set(top) == set(range(20))
        assert eb['F'].shape == (300,)

    @pytest.mark.parametrize('kwargs', [{'trend': True}, {'robust': True}])
    def test_trend_and_robust(self, expression, design6, kwargs):
        eb = ds.e_bayes(ds.lm_fit(expression, design6), **kwargs)
        assert np.all(np.isfinite(eb['t'][:, 1]))
        assert np.all(eb['s2.post'] > 0)

    def test_zero_variance_raises(self):
        x = np.arange(6.0)
        y = np.tile(2 * x + 1, (10, 1))
        design = np.column_stack([np.ones(6), x])
        with pytest.raises(ds.DegenerateInputError):
            ds.e_bayes(ds.lm_fit(y, design))

    def test_contrasts_after_ebayes_warns(self, expression, design6):
        eb = ds.e_bayes(ds.lm_fit(expression, design6))
        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            cfit = ds.contrasts_fit(eb, coefficients=[1])
        assert any('e_bayes' in str(x.message) for x in w)
        assert 't' not in cfit
