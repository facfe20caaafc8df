import numpy as np
import pytest
from scipy import stats

from gwaskin.association.marker_checks import (
    check_marker,
    classify_markers,
    compute_t_pvalues,
    design_is_full_rank,
    group_by_missing_pattern,
    min_observations,
)
from gwaskin.utils.exceptions import UntestableMarker


def test_classify_markers_statuses() -> None:
    G = np.array([
        [1, 0, -9, 2],
        [1, 1, -9, 2],
        [1, 2, 1, -9],
        [1, 0, 2, 2],
    ])

    status, n_obs = classify_markers(G, n_fixed=1, min_samples=3)

    assert list(status) == ["monomorphic", "ok", "too_few_observations", "monomorphic"]
    np.testing.assert_array_equal(n_obs, [4, 4, 2, 3])


def test_too_few_observations_takes_priority() -> None:
    status, _ = classify_markers(np.array([[1], [1], [-9]]), n_fixed=1, min_samples=3)
    assert status[0] == "too_few_observations"


def test_min_observations_leaves_a_residual_degree_of_freedom() -> None:
    assert min_observations(n_fixed=1, min_samples=3) == 3
    assert min_observations(n_fixed=4, min_samples=3) == 6
    assert min_observations(n_fixed=1, min_samples=10) == 10


def test_check_marker_returns_observed_mask_or_raises() -> None:
    mask = check_marker(np.array([0, -9, 2, 1]), n_fixed=1)
    np.testing.assert_array_equal(mask, [True, False, True, True])

    with pytest.raises(UntestableMarker) as excinfo:
        check_marker(np.array([1, 1, 1, 1]), n_fixed=1)
    assert excinfo.value.reason == "monomorphic"


def test_group_by_missing_pattern() -> None:
    missing = np.array([
        [True, False, True, False],
        [False, False, False, False],
        [False, True, False, False],
    ])

    groups = group_by_missing_pattern(missing)

    assert sorted(groups.values()) == [[0, 2], [1], [3]]


def test_compute_t_pvalues_two_sided_with_invalid_entries() -> None:
    t_stats = np.array([2.0, np.nan, 0.0, 1.5])
    dfs = np.array([10.0, 5.0, -1.0, 20.0])

    pvals = compute_t_pvalues(t_stats, dfs)

    assert pvals[0] == pytest.approx(2 * stats.t.sf(2.0, 10))
    assert np.isnan(pvals[1])
    assert np.isnan(pvals[2])
    assert pvals[3] == pytest.approx(2 * stats.t.sf(1.5, 20))


def test_compute_t_pvalues_keeps_tiny_values() -> None:
    pvals = compute_t_pvalues(np.array([-40.0]), 500)
    assert 0 < pvals[0] < 1e-100


def test_design_rank_check() -> None:
    rng = np.random.default_rng(2)
    x = rng.normal(size=20)
    assert design_is_full_rank(np.column_stack([np.ones(20), x]))
    assert not design_is_full_rank(np.column_stack([np.ones(20), np.full(20, 3.0)]))
    assert not design_is_full_rank(np.column_stack([np.ones(20), x, 2.0 * x - 1.0]))
    assert not design_is_full_rank(np.ones((1, 2)))
