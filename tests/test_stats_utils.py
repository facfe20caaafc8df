import numpy as np
import pytest
from scipy import stats

from gwaskin.utils import stats as stats_utils


def test_fdr_correction_bh_procedure() -> None:
    pvalues = np.array([0.001, 0.01, 0.2, 0.5])

    rejected, corrected = stats_utils.fdr_correction(pvalues, alpha=0.05)

    np.testing.assert_array_equal(rejected, np.array([True, True, False, False]))
    np.testing.assert_allclose(
        corrected,
        np.array([0.004, 0.02, 0.26666667, 0.5]),
    )


def test_fdr_correction_keeps_nan_positions() -> None:
    rejected, corrected = stats_utils.fdr_correction(np.array([np.nan, 0.001]))
    assert np.isnan(corrected[0]) and not rejected[0]
    assert corrected[1] == pytest.approx(0.001)

    with pytest.raises(ValueError, match="Unknown method"):
        stats_utils.fdr_correction(np.array([0.1]), method="by")


def test_genomic_inflation_factor_handles_empty_and_valid_cases() -> None:
    assert stats_utils.genomic_inflation_factor(np.array([0, np.nan, -1])) == 1.0

    pvalues = np.array([0.5, 0.2, 0.1])
    chi2 = stats.chi2.ppf(1 - pvalues, df=1)
    expected_lambda = np.median(chi2) / stats.chi2.ppf(0.5, df=1)

    assert stats_utils.genomic_inflation_factor(pvalues) == pytest.approx(expected_lambda)


def test_qq_plot_data_filters_invalid_and_orders() -> None:
    pvalues = np.array([0.1, 0.5, np.nan, 0.0, -1.0])

    expected, observed = stats_utils.qq_plot_data(pvalues)

    np.testing.assert_allclose(expected, np.array([1 / 3, 2 / 3]))
    np.testing.assert_allclose(observed, np.array([0.1, 0.5]))


def test_rejection_rate_ignores_nan() -> None:
    assert stats_utils.rejection_rate(np.array([0.01, 0.2, np.nan, 0.04])) == pytest.approx(2 / 3)
    assert np.isnan(stats_utils.rejection_rate(np.array([np.nan])))


def test_uniformity_ks_on_uniform_and_skewed_samples() -> None:
    rng = np.random.default_rng(0)
    statistic, pvalue = stats_utils.uniformity_ks(rng.uniform(size=2000))
    assert statistic < 0.05
    assert pvalue > 0.001

    skewed_statistic, _ = stats_utils.uniformity_ks(rng.uniform(size=2000) ** 3)
    assert skewed_statistic > 0.2

    with pytest.raises(ValueError, match="No finite p-values"):
        stats_utils.uniformity_ks(np.array([np.nan]))
