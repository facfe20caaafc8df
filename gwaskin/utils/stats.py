"""
Statistical utilities for GWAS analysis
"""

import numpy as np
from typing import Tuple
from scipy import stats


def fdr_correction(pvalues: np.ndarray, alpha: float = 0.05, method: str = 'bh') -> Tuple[np.ndarray, np.ndarray]:
    """Apply False Discovery Rate correction (Benjamini-Hochberg)

    NaN p-values are skipped and reported as NaN / not rejected.

    Args:
        pvalues: Array of p-values
        alpha: False discovery rate (default: 0.05)
        method: Method ('bh' for Benjamini-Hochberg)

    Returns:
        Tuple of (rejected_hypotheses, corrected_pvalues)
    """
    if method != 'bh':
        raise ValueError(f"Unknown method: {method}")

    pvalues = np.asarray(pvalues, dtype=np.float64)
    corrected_pvalues = np.full(pvalues.shape, np.nan)
    rejected = np.zeros(pvalues.shape, dtype=bool)

    finite = np.isfinite(pvalues)
    valid = pvalues[finite]
    n = len(valid)
    if n == 0:
        return rejected, corrected_pvalues

    order = np.argsort(valid)
    ranked = valid[order] * n / np.arange(1, n + 1)
    ranked = np.minimum.accumulate(ranked[::-1])[::-1]
    corrected = np.empty(n)
    corrected[order] = np.minimum(ranked, 1.0)

    corrected_pvalues[finite] = corrected
    rejected[finite] = corrected <= alpha

    return rejected, corrected_pvalues


def genomic_inflation_factor(pvalues: np.ndarray) -> float:
    """Calculate genomic inflation factor (lambda)

    Args:
        pvalues: Array of p-values

    Returns:
        Genomic inflation factor (lambda)
    """
    pvalues = np.asarray(pvalues, dtype=np.float64)
    valid_pvals = pvalues[np.isfinite(pvalues) & (pvalues > 0)]
    if len(valid_pvals) == 0:
        return 1.0

    chi2_values = stats.chi2.isf(valid_pvals, df=1)
    median_chi2 = np.median(chi2_values)
    expected_median = stats.chi2.ppf(0.5, df=1)

    return float(median_chi2 / expected_median)


def qq_plot_data(pvalues: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Prepare data for Q-Q plot

    Args:
        pvalues: Array of observed p-values

    Returns:
        Tuple of (expected_pvalues, observed_pvalues) for plotting
    """
    pvalues = np.asarray(pvalues, dtype=np.float64)
    valid_pvals = pvalues[np.isfinite(pvalues) & (pvalues > 0)]
    valid_pvals = np.sort(valid_pvals)
    n = len(valid_pvals)

    if n == 0:
        return np.array([]), np.array([])

    # Expected p-values under null hypothesis
    expected_pvals = np.arange(1, n + 1) / (n + 1)

    return expected_pvals, valid_pvals


def rejection_rate(pvalues: np.ndarray, alpha: float = 0.05) -> float:
    """Fraction of tested markers with p <= alpha"""
    pvalues = np.asarray(pvalues, dtype=np.float64)
    valid = pvalues[np.isfinite(pvalues)]
    if len(valid) == 0:
        return float('nan')
    return float(np.mean(valid <= alpha))


def uniformity_ks(pvalues: np.ndarray) -> Tuple[float, float]:
    """Kolmogorov-Smirnov test of p-values against Uniform(0, 1)

    Returns:
        Tuple of (KS statistic, KS p-value)
    """
    pvalues = np.asarray(pvalues, dtype=np.float64)
    valid = pvalues[np.isfinite(pvalues)]
    if len(valid) == 0:
        raise ValueError("No finite p-values to test")
    result = stats.kstest(valid, 'uniform')
    return float(result.statistic), float(result.pvalue)
