"""
Principal components of the kinship matrix for population structure display
"""

import numpy as np
import pandas as pd
from typing import Optional, Union, Tuple
import warnings

from ..utils.data_types import KinshipMatrix
from .spectral import SpectralDecomposition, GWASKIN_Eigen


def GWASKIN_PCA(K: Optional[Union[KinshipMatrix, np.ndarray]] = None,
                eigenK: Optional[SpectralDecomposition] = None,
                pcs_keep: int = 5,
                verbose: bool = True) -> np.ndarray:
    """Principal components from the kinship eigendecomposition

    Args:
        K: Kinship matrix (n_individuals × n_individuals), optional
        eigenK: Pre-computed SpectralDecomposition, optional
        pcs_keep: Number of principal components to return
        verbose: Print progress information

    Returns:
        Principal components matrix (n_individuals × pcs_keep)
    """
    if K is None and eigenK is None:
        raise ValueError("Either kinship matrix K or its decomposition eigenK must be provided")

    if K is not None and eigenK is not None:
        warnings.warn("Both K and eigenK provided, using eigenK")

    if eigenK is None:
        eigenK = GWASKIN_Eigen(K, verbose=verbose)

    pcs_keep = min(pcs_keep, eigenK.n)

    if verbose:
        print(f"Keeping top {pcs_keep} principal components")
        print(f"Eigenvalues: {eigenK.eigenvals[:pcs_keep]}")
        print(f"Explained variance: {eigenK.explained_variance_ratio()[:pcs_keep] * 100}")

    return np.array(eigenK.eigenvecs[:, :pcs_keep])


def pca_table(eigenK: SpectralDecomposition, pcs_keep: int = 5) -> pd.DataFrame:
    """PC table with an ID column and explained-variance metadata in attrs"""
    table = eigenK.principal_components(pcs_keep).reset_index()
    table.attrs['explained_variance_ratio'] = eigenK.explained_variance_ratio()[:pcs_keep].tolist()
    return table


def validate_pca_results(pcs: np.ndarray,
                         tolerance: float = 1e-10) -> Tuple[bool, list]:
    """Validate PCA results

    Args:
        pcs: Principal components matrix (n_individuals × n_components)
        tolerance: Numerical tolerance for orthogonality check

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    errors = []

    if pcs.ndim != 2:
        errors.append("PCA results must be a 2D matrix")
        return False, errors

    n_individuals, n_components = pcs.shape

    if np.any(np.isnan(pcs)) or np.any(np.isinf(pcs)):
        errors.append("PCA results contain NaN or infinite values")
        return False, errors

    if n_components > 1:
        dot_product = pcs.T @ pcs
        if not np.allclose(dot_product, np.eye(n_components), atol=tolerance):
            errors.append("Principal components are not orthogonal")

    return len(errors) == 0, errors
