"""
Mixed Linear Model (MLM) for GWAS analysis using P3D variance components

Model for each marker:
    y = X*beta + g*alpha + u + e,   u ~ N(0, vg*K),   e ~ N(0, ve*I)

- The null model (no marker) is fitted once by REML in the eigenbasis of the
  PSD-repaired kinship, where the covariance is diagonal: vg*lambda_i + ve.
- vg and ve are then held fixed for every marker test (P3D).
- Complete markers are tested in the shared eigenbasis with a Numba kernel;
  markers with missing calls drop those samples and are whitened with the
  Cholesky factor of vg*K_obs + ve*I, shared by markers with the same
  missing pattern.
- Batches are fanned out with joblib threads and write into disjoint slices
  of the output arrays.
"""

import time
import warnings
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple, Union

import numba
import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy import linalg, optimize

from ..matrix.spectral import SpectralDecomposition, GWASKIN_Eigen
from ..utils.data_types import (
    GenotypeMatrix,
    GenotypeMap,
    KinshipMatrix,
    AssociationResults,
    Phenotype,
    MISSING_GENOTYPE,
    STATUS_OK,
    STATUS_COLLINEAR,
    STATUS_SINGULAR,
)
from ..utils.exceptions import DegenerateInputError, NumericalInstabilityError, UntestableMarker
from .inputs import (
    as_genotype,
    check_sample_ids,
    design_matrix,
    prepare_trait,
    resolve_cpu,
    resolve_map,
)
from .marker_checks import (
    COLLINEARITY_TOLERANCE,
    check_marker,
    classify_markers,
    compute_t_pvalues,
    design_is_full_rank,
    group_by_missing_pattern,
)

# Eigenvalue floor used in the null model and the marker weights
EIGEN_FLOOR = 1e-6
H2_BOUNDS = (0.001, 0.999)
H2_GRID_POINTS = 41
# Relative spread of the REML surface below which h² is unidentifiable
PLATEAU_TOLERANCE = 1e-8


@dataclass(frozen=True)
class VarianceComponents:
    """Null-model variance components, fixed for every marker in one scan"""
    h2: float
    vg: float
    ve: float
    delta: float
    neg_loglik: float
    n: int
    n_fixed: int

    def weights(self, eigenvals: np.ndarray) -> np.ndarray:
        """1 / (vg*lambda + ve) per eigen-direction"""
        return 1.0 / (self.vg * np.maximum(eigenvals, EIGEN_FLOOR) + self.ve)


@numba.njit(cache=True)
def wald_batch_jit(XWG, GWG, GWy, iXWX, beta0, tol):
    """Marker effect, SE and t-statistic from weighted cross products

    B22 = g'Wg - g'WX (X'WX)^-1 X'Wg is the marker precision after the
    fixed effects are absorbed; W is the inverse covariance, so
    Var(alpha) = 1 / B22.
    """
    q = XWG.shape[0]
    n_markers = XWG.shape[1]
    effects = np.full(n_markers, np.nan)
    std_errors = np.full(n_markers, np.nan)
    t_stats = np.full(n_markers, np.nan)
    collinear = np.zeros(n_markers, dtype=np.bool_)

    for j in range(n_markers):
        quad = 0.0
        proj = 0.0
        for a in range(q):
            s = 0.0
            for b in range(q):
                s += iXWX[a, b] * XWG[b, j]
            quad += XWG[a, j] * s
            proj += XWG[a, j] * beta0[a]

        B22 = GWG[j] - quad
        if B22 <= tol * GWG[j] or B22 <= 0.0:
            collinear[j] = True
            continue

        effects[j] = (GWy[j] - proj) / B22
        std_errors[j] = np.sqrt(1.0 / B22)
        t_stats[j] = effects[j] / std_errors[j]

    return effects, std_errors, t_stats, collinear


def _null_fit(h2: float, y: np.ndarray, X: np.ndarray, eig_safe: np.ndarray) -> Tuple[float, float]:
    """REML negative log-likelihood and y'Py at heritability h2

    y and X are in the eigenbasis (U'y, U'X). Returns (inf, nan) where the
    likelihood is undefined.
    """
    n, p = X.shape
    V0b = h2 * eig_safe + (1.0 - h2)
    if np.any(V0b <= 0):
        return np.inf, np.nan
    V0bi = 1.0 / V0b

    ViX = V0bi[:, np.newaxis] * X
    XViX = X.T @ ViX
    sign, logdet_XViX = np.linalg.slogdet(XViX)
    if sign <= 0:
        return np.inf, np.nan
    try:
        beta = np.linalg.solve(XViX, ViX.T @ y)
    except np.linalg.LinAlgError:
        return np.inf, np.nan

    P0y = V0bi * y - ViX @ beta
    yP0y = float(np.dot(P0y, y))
    if not np.isfinite(yP0y) or yP0y <= 0:
        return np.inf, np.nan

    df = n - p
    neg_loglik = 0.5 * (np.sum(np.log(V0b)) + logdet_XViX
                        + df * np.log(yP0y) + df * (1.0 - np.log(df)))
    return float(neg_loglik), yP0y


def estimate_variance_components(y: np.ndarray,
                                 X: np.ndarray,
                                 eigenvals: np.ndarray,
                                 verbose: bool = False) -> VarianceComponents:
    """REML variance components of the null model

    Searches h² = vg/(vg+ve) on a grid over H2_BOUNDS, then refines the best
    grid cell with bounded Brent.

    Args:
        y: Phenotype in the eigenbasis (U'y)
        X: Fixed-effect design in the eigenbasis (U'X)
        eigenvals: Eigenvalues of the PSD-repaired kinship
        verbose: Print optimization progress

    Returns:
        VarianceComponents

    Raises:
        NumericalInstabilityError: the likelihood is flat or non-finite, or
            Brent's method did not converge
        DegenerateInputError: too few samples or a rank-deficient design
    """
    n, p = X.shape
    if n - p < 1:
        raise DegenerateInputError(f"{n} samples cannot fit {p} fixed effects")
    if not design_is_full_rank(X):
        raise DegenerateInputError("Fixed-effect design is rank deficient")
    eig_safe = np.maximum(eigenvals, EIGEN_FLOOR)

    def neg_reml_likelihood(h2):
        return _null_fit(h2, y, X, eig_safe)[0]

    grid = np.linspace(H2_BOUNDS[0], H2_BOUNDS[1], H2_GRID_POINTS)
    with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
        values = np.array([neg_reml_likelihood(h2) for h2 in grid])

    finite = np.isfinite(values)
    if not np.any(finite):
        raise NumericalInstabilityError(
            f"REML likelihood is not finite anywhere on h² in {H2_BOUNDS}"
        )
    spread = values[finite].max() - values[finite].min()
    if spread <= PLATEAU_TOLERANCE * max(1.0, np.abs(values[finite]).max()):
        raise NumericalInstabilityError(
            "REML likelihood is flat in h²; heritability is not identifiable "
            "(is the kinship matrix close to the identity?)"
        )

    best = int(np.argmin(np.where(finite, values, np.inf)))
    lower = grid[max(best - 1, 0)]
    upper = grid[min(best + 1, len(grid) - 1)]

    with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
        result = optimize.minimize_scalar(
            neg_reml_likelihood,
            bounds=(lower, upper),
            method='bounded',
            options={'xatol': 1.22e-4, 'maxiter': 500}
        )

    if not result.success or not np.isfinite(result.fun):
        raise NumericalInstabilityError(f"Brent's method did not converge: {result.message}")

    h2_hat, neg_loglik = float(result.x), float(result.fun)
    if values[best] < neg_loglik:
        h2_hat, neg_loglik = float(grid[best]), float(values[best])
    if not (H2_BOUNDS[0] <= h2_hat <= H2_BOUNDS[1]):
        raise NumericalInstabilityError(f"Heritability estimate {h2_hat} left the search interval")

    _, yP0y = _null_fit(h2_hat, y, X, eig_safe)
    v_base = yP0y / (n - p)
    vg_hat = h2_hat * v_base
    ve_hat = (1.0 - h2_hat) * v_base

    if verbose:
        print(f"Brent optimization: h² = {h2_hat:.6f}, neg-log-likelihood = {neg_loglik:.6f}")
        print(f"Estimated vg = {vg_hat:.6f}, ve = {ve_hat:.6f}")

    return VarianceComponents(
        h2=h2_hat,
        vg=vg_hat,
        ve=ve_hat,
        delta=ve_hat / vg_hat,
        neg_loglik=neg_loglik,
        n=n,
        n_fixed=p,
    )


def _labelled(ids: Optional[Sequence[str]]) -> bool:
    return ids is not None and list(ids) != [str(i) for i in range(len(ids))]


def _resolve_eigen(K: Optional[Union[KinshipMatrix, np.ndarray]],
                   eigenK: Optional[SpectralDecomposition],
                   verbose: bool) -> SpectralDecomposition:
    if K is None and eigenK is None:
        raise ValueError("Kinship matrix K or its decomposition eigenK is required for MLM analysis")
    if K is not None and eigenK is not None:
        warnings.warn("Both K and eigenK provided, using eigenK")

    if eigenK is None:
        if not isinstance(K, (KinshipMatrix, np.ndarray)):
            raise ValueError("Kinship matrix must be KinshipMatrix or numpy array")
        eigenK = GWASKIN_Eigen(K, verbose=verbose)
    elif not isinstance(eigenK, SpectralDecomposition):
        raise ValueError("eigenK must be a SpectralDecomposition")

    if not eigenK.psd_repaired:
        if verbose:
            print(f"Repairing kinship: {eigenK.n_negative()} negative eigenvalues clamped to 0")
        eigenK = eigenK.repaired()
    return eigenK


def GWASKIN_MLM(phe: Union[Phenotype, pd.Series, pd.DataFrame, np.ndarray],
                geno: Union[GenotypeMatrix, np.ndarray],
                K: Optional[Union[KinshipMatrix, np.ndarray]] = None,
                eigenK: Optional[SpectralDecomposition] = None,
                CV: Optional[np.ndarray] = None,
                snp_map: Optional[Union[GenotypeMap, pd.DataFrame]] = None,
                min_samples: int = 3,
                maxLine: int = 1000,
                cpu: int = 1,
                verbose: bool = True) -> AssociationResults:
    """Mixed Linear Model association scan

    Args:
        phe: Trait values aligned with the genotype rows (Phenotype, 1-D
            array or n × 2 array [ID, trait_value]); no missing values
        geno: Genotype matrix (n_individuals × n_markers), missing = -9
        K: Kinship matrix (n_individuals × n_individuals)
        eigenK: Pre-computed SpectralDecomposition of K
        CV: Covariate matrix (n_individuals × n_covariates), optional
        snp_map: Marker map aligned with the genotype columns, optional
        min_samples: Minimum observed samples for a marker to be tested
        maxLine: Markers per batch
        cpu: Number of threads for batch processing (0 = all cores)
        verbose: Print progress information

    Returns:
        AssociationResults with a variance_components attribute. Untestable
        markers keep NaN statistics and a status other than 'ok'.
    """
    cpu = resolve_cpu(cpu)
    genotype = as_genotype(geno)
    trait_values = prepare_trait(phe, genotype)
    n_individuals, n_markers = genotype.shape

    if np.ptp(trait_values) == 0:
        raise DegenerateInputError("Phenotype is constant; no variance to partition")

    X = design_matrix(CV, n_individuals)
    q0 = X.shape[1]
    if not design_is_full_rank(X):
        raise DegenerateInputError("Covariates are collinear with the intercept")
    snp_map = resolve_map(snp_map, n_markers)

    if verbose:
        print(f"Running MLM on {n_individuals} individuals, {n_markers} markers")
        print(f"Design matrix: {n_individuals} × {q0} (including intercept)")

    kinship_ids = K.sample_ids if isinstance(K, KinshipMatrix) else None
    if eigenK is not None:
        kinship_ids = eigenK.sample_ids
    eigenK = _resolve_eigen(K, eigenK, verbose)

    if eigenK.n != n_individuals:
        raise ValueError("Kinship matrix dimensions must match number of individuals")
    if _labelled(kinship_ids) and _labelled(genotype.sample_ids):
        check_sample_ids(genotype.sample_ids, kinship_ids, "Kinship")

    eigenvals = np.asarray(eigenK.eigenvals, dtype=np.float64)
    eigenvecs = np.asarray(eigenK.eigenvecs, dtype=np.float64)

    # Null model: the single sequential step before any marker is tested
    Uy = eigenvecs.T @ trait_values
    UX = eigenvecs.T @ X
    if verbose:
        print("Estimating variance components (REML, Brent)...")
    vc = estimate_variance_components(Uy, UX, eigenvals, verbose=verbose)
    if verbose:
        print(f"Heritability estimate: h² = {vc.h2:.6f} (delta = {vc.delta:.6f})")

    weights = vc.weights(eigenvals)
    XTW = UX.T * weights
    XWX = XTW @ UX
    try:
        iXWX = np.linalg.inv(XWX)
    except np.linalg.LinAlgError:
        raise DegenerateInputError("Covariates are collinear with the intercept")
    beta0 = iXWX @ (XTW @ Uy)
    wy = weights * Uy

    effects = np.full(n_markers, np.nan)
    std_errors = np.full(n_markers, np.nan)
    t_stats = np.full(n_markers, np.nan)
    dfs = np.full(n_markers, np.nan)
    n_obs = np.zeros(n_markers, dtype=np.int64)
    status = np.full(n_markers, STATUS_OK, dtype=object)

    # Kinship as modelled (floored eigenvalues) for markers with missing calls
    K_model = None
    if genotype.has_missing:
        K_model = (eigenvecs * np.maximum(eigenvals, EIGEN_FLOOR)) @ eigenvecs.T
        K_model = (K_model + K_model.T) / 2.0
    whitened: Dict[bytes, Optional[Tuple]] = {}

    def _whiten(key: bytes, observed: np.ndarray):
        """Cholesky factor and whitened y / X for one observed-sample set"""
        if key in whitened:
            return whitened[key]
        V_obs = vc.vg * K_model[np.ix_(observed, observed)] + vc.ve * np.eye(int(observed.sum()))
        try:
            L = linalg.cholesky(V_obs, lower=True)
        except linalg.LinAlgError:
            whitened[key] = None
            return None
        Xs = linalg.solve_triangular(L, X[observed], lower=True)
        ys = linalg.solve_triangular(L, trait_values[observed], lower=True)
        iXWX_obs = None
        # Covariates can lose rank on the observed rows alone
        if design_is_full_rank(X[observed]):
            try:
                iXWX_obs = np.linalg.inv(Xs.T @ Xs)
            except np.linalg.LinAlgError:
                iXWX_obs = None
        entry = (L, Xs, ys, iXWX_obs)
        whitened[key] = entry
        return entry

    def _scan_missing_group(G_raw: np.ndarray, cols: np.ndarray, key: bytes, start: int) -> None:
        observed = G_raw[:, cols[0]] != MISSING_GENOTYPE
        testable = []
        for j in cols:
            try:
                check_marker(G_raw[:, j], q0, min_samples)
                testable.append(j)
            except UntestableMarker as e:
                status[start + j] = e.reason
        if not testable:
            return

        testable = np.asarray(testable)
        idx = start + testable
        entry = _whiten(key, observed)
        if entry is None:
            status[idx] = STATUS_SINGULAR
            return
        L, Xs, ys, iXWX_obs = entry
        if iXWX_obs is None:
            status[idx] = STATUS_COLLINEAR
            return

        Gs = linalg.solve_triangular(
            L, G_raw[np.ix_(observed, testable)].astype(np.float64), lower=True
        )
        XWG = np.ascontiguousarray(Xs.T @ Gs)
        GWG = np.sum(Gs * Gs, axis=0)
        GWy = Gs.T @ ys
        beta_obs = iXWX_obs @ (Xs.T @ ys)

        eff, se, t, collinear = wald_batch_jit(XWG, GWG, GWy, iXWX_obs, beta_obs,
                                               COLLINEARITY_TOLERANCE)
        effects[idx] = eff
        std_errors[idx] = se
        t_stats[idx] = t
        dfs[idx] = observed.sum() - q0 - 1
        status[idx[collinear]] = STATUS_COLLINEAR

    def _scan_batch(start: int, end: int) -> None:
        G_raw = genotype.get_batch(start, end)
        batch_status, batch_n_obs = classify_markers(G_raw, q0, min_samples)
        status[start:end] = batch_status
        n_obs[start:end] = batch_n_obs

        missing = G_raw == MISSING_GENOTYPE
        complete = ~missing.any(axis=0)

        cols = np.flatnonzero(complete & (batch_status == STATUS_OK))
        if cols.size:
            UG = eigenvecs.T @ G_raw[:, cols].astype(np.float64)
            XWG = np.ascontiguousarray(XTW @ UG)
            GWG = np.sum(weights[:, np.newaxis] * UG * UG, axis=0)
            GWy = UG.T @ wy

            eff, se, t, collinear = wald_batch_jit(XWG, GWG, GWy, iXWX, beta0,
                                                   COLLINEARITY_TOLERANCE)
            idx = start + cols
            effects[idx] = eff
            std_errors[idx] = se
            t_stats[idx] = t
            dfs[idx] = n_individuals - q0 - 1
            status[idx[collinear]] = STATUS_COLLINEAR

        missing_cols = np.flatnonzero(~complete)
        if missing_cols.size:
            groups = group_by_missing_pattern(missing[:, missing_cols])
            for key, members in groups.items():
                _scan_missing_group(G_raw, missing_cols[members], key, start)

    n_batches = (n_markers + maxLine - 1) // maxLine
    bounds = [(b * maxLine, min((b + 1) * maxLine, n_markers)) for b in range(n_batches)]
    if verbose:
        print(f"Testing markers in {n_batches} batches of up to {maxLine}"
              + (f" on {cpu} threads" if cpu > 1 else ""))

    start_time = time.time()
    with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
        if cpu > 1 and n_batches > 1:
            Parallel(n_jobs=cpu, backend='threading')(
                delayed(_scan_batch)(start, end) for start, end in bounds
            )
        else:
            for start, end in bounds:
                _scan_batch(start, end)

    tested = status == STATUS_OK
    p_values = np.full(n_markers, np.nan)
    p_values[tested] = compute_t_pvalues(t_stats[tested], dfs[tested])
    for arr in (effects, std_errors, t_stats):
        arr[~tested] = np.nan

    if verbose:
        n_tested = int(tested.sum())
        print(f"MLM complete. {n_tested}/{n_markers} markers tested "
              f"in {time.time() - start_time:.2f} seconds")
        if n_tested > 0:
            print(f"Minimum p-value: {np.nanmin(p_values):.2e}")

    results = AssociationResults(
        effects, std_errors, p_values,
        snp_map=snp_map,
        tstats=t_stats,
        n_obs=n_obs,
        status=status,
        method='MLM',
    )
    results.variance_components = vc
    return results
