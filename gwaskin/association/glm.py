"""
FWL+QR GLM: per-marker ordinary least squares ignoring relatedness.

Algorithm:
- Build covariate matrix X = [1 | CV] and compute thin QR: X = Q R.
- Residualize phenotype once: y_r = y - Q(Q^T y).
- Process SNPs in batches G:
  - Residualize genotypes: G_r = G - Q(Q^T G).
  - Vectorized stats per SNP j:
      gTy = G_r.T @ y_r
      gTg = sum(G_r^2, axis=0)
      beta = gTy / gTg
      SSE = y_r·y_r - (gTy^2)/gTg
      sigma2 = SSE / df,  df = n - p - 1
      se = sqrt(sigma2 / gTg)
      t = beta / se,   p = 2 * sf(|t|, df)
- Markers with missing calls drop those samples; the QR of the observed
  covariate rows is shared by markers with the same missing pattern.
"""

from typing import Dict, Optional, Tuple, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from ..utils.data_types import (
    GenotypeMatrix,
    GenotypeMap,
    AssociationResults,
    Phenotype,
    MISSING_GENOTYPE,
    STATUS_OK,
    STATUS_COLLINEAR,
)
from ..utils.exceptions import DegenerateInputError, UntestableMarker
from .inputs import as_genotype, design_matrix, prepare_trait, resolve_cpu, resolve_map
from .marker_checks import (
    COLLINEARITY_TOLERANCE,
    check_marker,
    classify_markers,
    compute_t_pvalues,
    full_rank,
    group_by_missing_pattern,
)


def _compute_qr(X: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Compute thin QR; returns Q (n x p), R (p x p)."""
    Q, R = np.linalg.qr(X, mode="reduced")
    return Q, R


def _ols_batch(G: np.ndarray, Q: np.ndarray, y_r: np.ndarray, df: int):
    """Marker effect, SE, t-statistic and collinearity flag for each column of G"""
    G_r = G - Q @ (Q.T @ G)
    gTy = G_r.T @ y_r
    gTg = np.sum(G_r * G_r, axis=0)
    raw = np.sum(G * G, axis=0)

    collinear = gTg <= COLLINEARITY_TOLERANCE * np.maximum(raw, 1.0)
    safe = np.where(collinear, 1.0, gTg)

    beta = gTy / safe
    sse = np.maximum(float(y_r @ y_r) - gTy * gTy / safe, 0.0)
    se = np.sqrt((sse / df) / safe)
    with np.errstate(divide='ignore', invalid='ignore'):
        t = beta / se

    beta[collinear] = np.nan
    se[collinear] = np.nan
    t[collinear] = np.nan
    return beta, se, t, collinear


def GWASKIN_GLM(phe: Union[Phenotype, pd.Series, pd.DataFrame, np.ndarray],
                geno: Union[GenotypeMatrix, np.ndarray],
                CV: Optional[np.ndarray] = None,
                snp_map: Optional[Union[GenotypeMap, pd.DataFrame]] = None,
                min_samples: int = 3,
                maxLine: int = 5000,
                cpu: int = 1,
                verbose: bool = True) -> AssociationResults:
    """FWL+QR GLM scan with vectorized residualization and statistics.

    Args:
        phe: Trait values aligned with the genotype rows (Phenotype, 1-D
            array or n × 2 array [ID, trait_value])
        geno: GenotypeMatrix or numpy array (n x m), missing = -9
        CV: n x k covariates (optional)
        snp_map: Marker map aligned with the genotype columns, optional
        min_samples: Minimum observed samples for a marker to be tested
        maxLine: batch size (markers per block)
        cpu: threads for batch processing (0 = all cores)
        verbose: print brief progress

    Returns:
        AssociationResults; untestable markers keep NaN statistics
    """
    cpu = resolve_cpu(cpu)
    genotype = as_genotype(geno)
    y = prepare_trait(phe, genotype)
    n, m = genotype.shape

    X = design_matrix(CV, n)
    p = X.shape[1]
    snp_map = resolve_map(snp_map, m)

    Q, R = _compute_qr(X)
    if not full_rank(R):
        raise DegenerateInputError("Covariates are collinear with the intercept")
    y_r = y - Q @ (Q.T @ y)
    df_full = n - p - 1

    if verbose:
        print(f"Running GLM on {n} individuals, {m} markers ({p} fixed effects)")

    effects = np.full(m, np.nan)
    ses = np.full(m, np.nan)
    t_stats = np.full(m, np.nan)
    dfs = np.full(m, np.nan)
    n_obs = np.zeros(m, dtype=np.int64)
    status = np.full(m, STATUS_OK, dtype=object)

    # Residualizers for observed-sample subsets, keyed by missing pattern
    residualizers: Dict[bytes, Optional[Tuple[np.ndarray, np.ndarray]]] = {}

    def _residualizer(key: bytes, observed: np.ndarray):
        if key not in residualizers:
            Q_obs, R_obs = _compute_qr(X[observed])
            if full_rank(R_obs):
                y_obs = y[observed]
                residualizers[key] = (Q_obs, y_obs - Q_obs @ (Q_obs.T @ y_obs))
            else:
                residualizers[key] = None
        return residualizers[key]

    def _process_glm_batch(start: int, end: int) -> None:
        G_raw = genotype.get_batch(start, end)
        batch_status, batch_n_obs = classify_markers(G_raw, p, min_samples)
        status[start:end] = batch_status
        n_obs[start:end] = batch_n_obs

        missing = G_raw == MISSING_GENOTYPE
        complete = ~missing.any(axis=0)

        cols = np.flatnonzero(complete & (batch_status == STATUS_OK))
        if cols.size:
            beta, se, t, collinear = _ols_batch(G_raw[:, cols].astype(np.float64), Q, y_r, df_full)
            idx = start + cols
            effects[idx] = beta
            ses[idx] = se
            t_stats[idx] = t
            dfs[idx] = df_full
            status[idx[collinear]] = STATUS_COLLINEAR

        missing_cols = np.flatnonzero(~complete)
        if not missing_cols.size:
            return
        for key, members in group_by_missing_pattern(missing[:, missing_cols]).items():
            group = missing_cols[members]
            observed = ~missing[:, group[0]]
            testable = []
            for j in group:
                try:
                    check_marker(G_raw[:, j], p, min_samples)
                    testable.append(j)
                except UntestableMarker as e:
                    status[start + j] = e.reason
            if not testable:
                continue

            idx = start + np.asarray(testable)
            residualizer = _residualizer(key, observed)
            if residualizer is None:
                status[idx] = STATUS_COLLINEAR
                continue
            Q_obs, y_r_obs = residualizer
            df_obs = int(observed.sum()) - p - 1
            G_obs = G_raw[np.ix_(observed, np.asarray(testable))].astype(np.float64)
            beta, se, t, collinear = _ols_batch(G_obs, Q_obs, y_r_obs, df_obs)
            effects[idx] = beta
            ses[idx] = se
            t_stats[idx] = t
            dfs[idx] = df_obs
            status[idx[collinear]] = STATUS_COLLINEAR

    batch_size = max(1, min(maxLine, m))
    starts = list(range(0, m, batch_size))
    if cpu > 1 and len(starts) > 1:
        Parallel(n_jobs=cpu, backend='threading')(
            delayed(_process_glm_batch)(start, min(start + batch_size, m)) for start in starts
        )
    else:
        for start in starts:
            _process_glm_batch(start, min(start + batch_size, m))

    tested = status == STATUS_OK
    pvals = np.full(m, np.nan)
    pvals[tested] = compute_t_pvalues(t_stats[tested], dfs[tested])
    for arr in (effects, ses, t_stats):
        arr[~tested] = np.nan

    if verbose:
        valid_tests = int(tested.sum())
        print(f"FWL-QR GLM complete. {valid_tests}/{m} markers tested")
        if valid_tests > 0:
            print(f"Minimum p-value: {np.nanmin(pvals):.2e}")

    return AssociationResults(
        effects, ses, pvals,
        snp_map=snp_map,
        tstats=t_stats,
        n_obs=n_obs,
        status=status,
        method='GLM',
    )
