"""
Per-marker testability checks shared by the GLM and MLM scans
"""

from typing import Dict, List, Tuple

import numpy as np
from scipy import stats

from ..utils.data_types import (
    MISSING_GENOTYPE,
    STATUS_OK,
    STATUS_MONOMORPHIC,
    STATUS_TOO_FEW,
)
from ..utils.exceptions import UntestableMarker

# Pivot below which the marker is treated as collinear with the covariates
COLLINEARITY_TOLERANCE = 1e-10


def min_observations(n_fixed: int, min_samples: int) -> int:
    """Smallest sample count that leaves at least one residual df"""
    return max(int(min_samples), n_fixed + 2)


def full_rank(R: np.ndarray) -> bool:
    """True when the triangular factor of a thin QR has no vanishing pivot"""
    diag = np.abs(np.diag(R))
    return diag.size > 0 and diag.min() > COLLINEARITY_TOLERANCE * max(diag.max(), 1.0)


def design_is_full_rank(X: np.ndarray) -> bool:
    """Column rank test for a fixed-effect design matrix"""
    X = np.asarray(X, dtype=np.float64)
    if X.shape[0] < X.shape[1]:
        return False
    return full_rank(np.linalg.qr(X, mode='r'))


def classify_markers(G: np.ndarray, n_fixed: int, min_samples: int = 3) -> Tuple[np.ndarray, np.ndarray]:
    """Status and observed-sample count for each column of a raw dosage batch

    Args:
        G: Raw dosages (n_individuals × n_markers), missing = -9
        n_fixed: Number of fixed effects besides the marker (intercept + covariates)
        min_samples: Minimum observed samples required for a test

    Returns:
        Tuple (status array, n_obs array)
    """
    observed = G != MISSING_GENOTYPE
    n_obs = observed.sum(axis=0)
    n_distinct = sum(np.any(G == dosage, axis=0).astype(int) for dosage in (0, 1, 2))

    status = np.full(G.shape[1], STATUS_OK, dtype=object)
    too_few = n_obs < min_observations(n_fixed, min_samples)
    status[too_few] = STATUS_TOO_FEW
    status[~too_few & (n_distinct < 2)] = STATUS_MONOMORPHIC
    return status, n_obs


def check_marker(dosages: np.ndarray, n_fixed: int, min_samples: int = 3) -> np.ndarray:
    """Observed-sample mask for one marker

    Raises:
        UntestableMarker: too few observations or a single observed dosage
    """
    status, n_obs = classify_markers(dosages[:, np.newaxis], n_fixed, min_samples)
    if status[0] != STATUS_OK:
        raise UntestableMarker(status[0], f"{status[0]} ({int(n_obs[0])} observed samples)")
    return dosages != MISSING_GENOTYPE


def group_by_missing_pattern(missing: np.ndarray) -> Dict[bytes, List[int]]:
    """Group marker columns that share the same set of missing samples

    Args:
        missing: Boolean mask (n_individuals × n_markers)

    Returns:
        Mapping of pattern key to column indices, in column order
    """
    groups: Dict[bytes, List[int]] = {}
    packed = np.packbits(missing, axis=0)
    for j in range(missing.shape[1]):
        groups.setdefault(packed[:, j].tobytes(), []).append(j)
    return groups


def compute_t_pvalues(t_stats: np.ndarray, dfs: np.ndarray) -> np.ndarray:
    """Two-sided t-test p-values; NaN where the statistic is undefined"""
    t_stats = np.asarray(t_stats, dtype=np.float64)
    dfs = np.broadcast_to(np.asarray(dfs, dtype=np.float64), t_stats.shape)
    pvalues = np.full(t_stats.shape, np.nan)
    valid_mask = ~np.isnan(t_stats) & np.isfinite(dfs) & (dfs > 0)

    if np.any(valid_mask):
        # sf keeps precision for very small p-values
        pvalues[valid_mask] = 2.0 * stats.t.sf(np.abs(t_stats[valid_mask]), dfs[valid_mask])

    return pvalues
