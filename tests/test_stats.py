"""Tests for statistical kernels."""

import pytest
import numpy as np

from bulkgsea.stats import (
    _count_exceedances,
    _enrichment_extrema,
    _null_enrichment_scores,
    _running_sum_curve,
    _same_sign_magnitude,
    empirical_p_value,
    perform_fdr_analysis,
)

# Absolute scores of the list A:5 B:4 C:3 D:2 E:1 F:-1 G:-2 H:-3
WEIGHTS = np.array([5.0, 4.0, 3.0, 2.0, 1.0, 1.0, 2.0, 3.0])


def test_enrichment_extrema_top_of_list():
    """Test that members at the top give a positive extremum at the last member."""
    score, rank = _enrichment_extrema(np.array([0, 1, 2], dtype=np.int64), WEIGHTS[[0, 1, 2]], 8)

    assert score == pytest.approx(1.0)
    assert rank == 2


def test_enrichment_extrema_bottom_of_list():
    """Test that members at the bottom give a negative extremum before the first member."""
    score, rank = _enrichment_extrema(np.array([5, 6, 7], dtype=np.int64), WEIGHTS[[5, 6, 7]], 8)

    assert score == pytest.approx(-1.0)
    assert rank == 4


def test_enrichment_extrema_full_coverage():
    """Test that a set covering the whole list has no miss steps and no NaN."""
    positions = np.arange(8, dtype=np.int64)
    score, rank = _enrichment_extrema(positions, WEIGHTS, 8)

    assert np.isfinite(score)
    assert score == pytest.approx(1.0)
    assert rank == 7


def test_enrichment_extrema_zero_weights():
    """Test that all-zero weights fall back to equal hit weights."""
    score, rank = _enrichment_extrema(np.array([0, 1], dtype=np.int64), np.zeros(2), 4)

    assert score == pytest.approx(1.0)
    assert rank == 1


def test_running_sum_curve_matches_extrema():
    """Test that the full curve and the sparse walk agree."""
    hit_mask = np.array([True, False, False, True, False, True, False, False])
    curve = _running_sum_curve(hit_mask, WEIGHTS)
    score, rank = _enrichment_extrema(np.array([0, 3, 5], dtype=np.int64), WEIGHTS[[0, 3, 5]], 8)

    assert len(curve) == 8
    assert curve[-1] == pytest.approx(0.0)
    if score >= 0:
        assert int(np.argmax(curve)) == rank
        assert curve.max() == score
    else:
        assert int(np.argmin(curve)) == rank
        assert curve.min() == score


def test_running_sum_curve_no_hits():
    """Test that a curve without members stays at zero."""
    curve = _running_sum_curve(np.zeros(5, dtype=np.bool_), np.ones(5))
    assert np.all(curve == 0.0)


def test_null_enrichment_scores_deterministic():
    """Test that null scores depend only on the supplied uniforms."""
    rng = np.random.default_rng(42)
    uniforms = rng.random((200, 3))

    first = _null_enrichment_scores(WEIGHTS, 3, uniforms)
    second = _null_enrichment_scores(WEIGHTS, 3, uniforms.copy())

    assert first.shape == (200,)
    np.testing.assert_array_equal(first, second)
    assert np.all(np.abs(first) <= 1.0 + 1e-12)


def test_null_enrichment_scores_full_coverage():
    """Test that drawing every rank reproduces the full-coverage score."""
    uniforms = np.random.default_rng(0).random((10, 8))
    scores = _null_enrichment_scores(WEIGHTS, 8, uniforms)
    observed, _ = _enrichment_extrema(np.arange(8, dtype=np.int64), WEIGHTS, 8)

    assert np.all(scores == observed)


def test_count_exceedances_sign_convention():
    """Test that exceedances are counted on the side of the observed sign."""
    null_scores = np.array([-0.9, -0.5, -0.1, 0.2, 0.6, 0.8])

    assert _count_exceedances(0.6, null_scores) == 2
    assert _count_exceedances(-0.5, null_scores) == 2
    assert _count_exceedances(0.95, null_scores) == 0


def test_same_sign_magnitude():
    """Test summing null magnitudes that share the observed sign."""
    null_scores = np.array([-0.4, -0.2, 0.3, 0.5])

    total, count = _same_sign_magnitude(0.7, null_scores)
    assert total == pytest.approx(0.8)
    assert count == 2

    total, count = _same_sign_magnitude(-0.1, null_scores)
    assert total == pytest.approx(0.6)
    assert count == 2


def test_empirical_p_value_floor():
    """Test that p-values never reach zero."""
    assert empirical_p_value(0, 10) == pytest.approx(0.1)
    assert empirical_p_value(5, 100) == pytest.approx(0.05)
    assert empirical_p_value(100, 100) == 1.0

    with pytest.raises(ValueError, match="must be positive"):
        empirical_p_value(0, 0)


def test_perform_fdr_analysis():
    """Test FDR analysis."""
    p_values = np.array([0.01, 0.02, 0.03, 0.04, 0.05])
    result = perform_fdr_analysis(p_values)

    assert isinstance(result['reject'], list)
    assert isinstance(result['pvals_corrected'], list)
    assert len(result['reject']) == len(p_values)
    assert len(result['pvals_corrected']) == len(p_values)

    result = perform_fdr_analysis(p_values, alpha=0.01)
    assert sum(result['reject']) <= sum(1 for p in p_values if p <= 0.01)

    with pytest.raises(ValueError, match="Input p-values array cannot be empty"):
        perform_fdr_analysis(np.array([]))


def test_fdr_adjustment_is_monotone():
    """Test that adjusted p-values dominate raw ones and keep their order."""
    rng = np.random.default_rng(7)
    p_values = rng.uniform(0.0001, 1.0, size=50)
    adjusted = np.array(perform_fdr_analysis(p_values)['pvals_corrected'])

    assert np.all(adjusted >= p_values - 1e-15)
    order = np.argsort(p_values)
    assert np.all(np.diff(adjusted[order]) >= -1e-15)
