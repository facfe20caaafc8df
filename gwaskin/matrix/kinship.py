"""
Genomic relationship matrix using the GCTA standardised estimator
"""

import numpy as np
from typing import Optional, Union, Tuple
import warnings

from ..utils.data_types import GenotypeMatrix, KinshipMatrix, MISSING_GENOTYPE
from ..utils.exceptions import DegenerateInputError


def GWASKIN_K_GCTA(M: Union[GenotypeMatrix, np.ndarray],
                   allele_freq: Optional[np.ndarray] = None,
                   maxLine: int = 5000,
                   verbose: bool = True) -> KinshipMatrix:
    """GCTA-style genomic relationship matrix with per-pair normalisation

    K_ik = sum_j z_ij z_kj / (number of markers observed in both i and k)
    where z_ij = (g_ij - 2p_j) / sqrt(2 p_j (1 - p_j)).

    Missing calls add nothing to the cross product and are left out of the
    pair's marker count. Markers with p_j of exactly 0 or 1 (or no calls)
    are skipped.

    Args:
        M: Genotype matrix (n_individuals × n_markers), missing = -9
        allele_freq: Optional alternate-allele frequencies; estimated from
            observed calls when omitted
        maxLine: Batch size for processing markers
        verbose: Print progress information

    Returns:
        KinshipMatrix labelled with the genotype sample IDs
    """
    if isinstance(M, GenotypeMatrix):
        genotype = M
    elif isinstance(M, np.ndarray):
        genotype = GenotypeMatrix(M)
    else:
        raise ValueError("M must be GenotypeMatrix or numpy array")

    n_individuals, n_markers = genotype.shape
    if n_individuals < 2:
        raise DegenerateInputError(
            f"Kinship needs at least 2 samples, got {n_individuals}"
        )

    if allele_freq is None:
        allele_freq = genotype.calculate_allele_frequencies(batch_size=maxLine)
    else:
        allele_freq = np.asarray(allele_freq, dtype=np.float64)
        if allele_freq.shape != (n_markers,):
            raise ValueError("allele_freq must have one entry per marker")

    usable = np.isfinite(allele_freq) & (allele_freq > 0.0) & (allele_freq < 1.0)
    n_usable = int(usable.sum())
    if n_usable == 0:
        raise DegenerateInputError("No polymorphic markers available for kinship")

    if verbose:
        print(f"Calculating GCTA kinship for {n_individuals} individuals, "
              f"{n_usable}/{n_markers} polymorphic markers")

    numerator = np.zeros((n_individuals, n_individuals), dtype=np.float64)
    shared = np.zeros((n_individuals, n_individuals), dtype=np.float64)

    n_batches = (n_markers + maxLine - 1) // maxLine
    for batch_idx in range(n_batches):
        start_marker = batch_idx * maxLine
        end_marker = min(start_marker + maxLine, n_markers)
        cols = np.flatnonzero(usable[start_marker:end_marker])
        if cols.size == 0:
            continue

        if verbose and n_batches > 1:
            print(f"Processing batch {batch_idx + 1}/{n_batches} (markers {start_marker}-{end_marker-1})")

        batch = genotype.get_batch(start_marker, end_marker)[:, cols]
        p = allele_freq[start_marker:end_marker][cols]
        observed = batch != MISSING_GENOTYPE

        Z = (batch.astype(np.float64) - 2.0 * p) / np.sqrt(2.0 * p * (1.0 - p))
        Z[~observed] = 0.0
        O = observed.astype(np.float64)

        numerator += Z @ Z.T
        shared += O @ O.T

    no_overlap = shared == 0
    if np.any(no_overlap):
        n_pairs = int(np.triu(no_overlap).sum())
        warnings.warn(
            f"{n_pairs} sample pairs share no observed marker; their relatedness is set to 0"
        )

    kin = np.divide(numerator, shared, out=np.zeros_like(numerator), where=~no_overlap)

    # Exact symmetry: floating-point addition is commutative
    kin = (kin + kin.T) / 2.0

    if verbose:
        print(f"Kinship computation complete. Mean diagonal: {np.mean(np.diag(kin)):.6f}")

    return KinshipMatrix(kin, sample_ids=genotype.sample_ids)


def validate_kinship_matrix(K: Union[KinshipMatrix, np.ndarray],
                            tolerance: float = 1e-10) -> Tuple[bool, list]:
    """Validate kinship matrix properties

    Args:
        K: Kinship matrix to validate
        tolerance: Numerical tolerance for checks

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    errors = []

    if isinstance(K, KinshipMatrix):
        matrix = K.to_numpy()
    else:
        matrix = np.asarray(K)

    if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
        errors.append("Matrix is not square")
        return False, errors

    if not np.allclose(matrix, matrix.T, atol=tolerance):
        errors.append("Matrix is not symmetric")
    else:
        try:
            eigenvals = np.linalg.eigvalsh(matrix)
            if np.any(eigenvals < -tolerance):
                errors.append("Matrix is not positive semi-definite")
        except np.linalg.LinAlgError:
            errors.append("Failed to compute eigenvalues")

    if np.any(np.diag(matrix) < 0):
        errors.append("Some diagonal elements are negative")

    return len(errors) == 0, errors
