"""Tests for normalization factors."""

import numpy as np
import pytest

import degset as ds


class TestCalcNormFactors:
    """calc_norm_factors()."""

    @pytest.mark.parametrize('method', ['TMM', 'TMMwsp', 'RLE', 'upperquartile'])
    def test_positive_and_multiply_to_one(self, rng, method):
        counts = rng.poisson(50, (500, 6)).astype(float) + 1
        nf = ds.calc_norm_factors(counts, method=method)
        assert nf.shape == (6,)
        assert np.all(nf > 0)
        assert np.isclose(np.prod(nf), 1.0)

    def test_none(self, small_counts):
        assert np.allclose(ds.calc_norm_factors(small_counts, method='none'), 1.0)

    def test_identical_libraries(self, rng):
        col = rng.poisson(30, 300).astype(float)
        counts = np.column_stack([col] * 4)
        assert np.allclose(ds.calc_norm_factors(counts), 1.0)

    def test_composition_bias(self, rng):
        """A few very highly expressed genes in one sample lower its factor."""
        counts = rng.poisson(100, (1000, 4)).astype(float)
        counts[:50, 3] *= 20
        nf = ds.calc_norm_factors(counts)
        assert np.argmax(nf) != 3
        assert nf[3] < 1.0

    def test_unweighted_tmm_scale_invariant(self, rng):
        counts = rng.poisson(80, (400, 6)).astype(float)
        counts[:40, 3:] *= 4
        nf = ds.calc_norm_factors(counts, do_weighting=False)
        scaled = counts * np.array([1, 2, 3, 5, 7, 11])
        nf_scaled = ds.calc_norm_factors(scaled, do_weighting=False)
        assert np.allclose(nf, nf_scaled)

    def test_dgelist_returns_copy(self, dgelist):
        y = ds.calc_norm_factors(dgelist)
        assert isinstance(y, ds.DGEList)
        assert np.allclose(dgelist['samples']['norm.factors'], 1.0)
        assert np.isclose(np.prod(y['samples']['norm.factors']), 1.0)

    def test_zero_library_raises(self, small_counts):
        counts = small_counts.copy()
        counts[:, 2] = 0
        with pytest.raises(ds.DegenerateInputError, match='zero total count'):
            ds.calc_norm_factors(counts)

    def test_unknown_method(self, small_counts):
        with pytest.raises(ValueError):
            ds.calc_norm_factors(small_counts, method='quantile')
