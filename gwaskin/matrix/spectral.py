"""
Eigendecomposition of the kinship matrix and positive semi-definite repair
"""

from dataclasses import dataclass, replace
from typing import List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from ..utils.data_types import KinshipMatrix
from ..utils.exceptions import NumericalInstabilityError

EIGEN_TOLERANCE = 1e-8


@dataclass(frozen=True, eq=False)
class SpectralDecomposition:
    """Eigenvalue/eigenvector pairs of a symmetric kinship matrix

    eigenvals are sorted in descending order; column i of eigenvecs belongs
    to eigenvals[i].
    """
    eigenvals: np.ndarray
    eigenvecs: np.ndarray
    sample_ids: List[str]
    psd_repaired: bool = False

    def __post_init__(self):
        if self.eigenvecs.shape != (len(self.eigenvals), len(self.eigenvals)):
            raise ValueError("Eigenvectors must form an n × n matrix matching the eigenvalues")
        self.eigenvals.setflags(write=False)
        self.eigenvecs.setflags(write=False)

    @property
    def n(self) -> int:
        return len(self.eigenvals)

    def reconstruct(self) -> np.ndarray:
        """V diag(lambda) V^T, symmetrised"""
        V = self.eigenvecs
        mat = (V * self.eigenvals) @ V.T
        return (mat + mat.T) / 2.0

    def n_negative(self, tolerance: float = EIGEN_TOLERANCE) -> int:
        return int(np.sum(self.eigenvals < -tolerance))

    def repaired(self, tolerance: float = EIGEN_TOLERANCE) -> "SpectralDecomposition":
        """Same eigenvectors with eigenvalues below tolerance set to exactly 0

        Negative eigenvalues and those within tolerance of zero are clamped.
        """
        if self.psd_repaired:
            return self
        clamped = np.array(self.eigenvals, dtype=np.float64)
        clamped[clamped < tolerance] = 0.0
        return replace(self, eigenvals=clamped, eigenvecs=np.array(self.eigenvecs),
                       psd_repaired=True)

    def to_kinship(self) -> KinshipMatrix:
        return KinshipMatrix(self.reconstruct(), sample_ids=self.sample_ids,
                             psd_repaired=self.psd_repaired)

    def explained_variance_ratio(self) -> np.ndarray:
        positive = np.clip(self.eigenvals, 0.0, None)
        total = positive.sum()
        if total <= 0:
            return np.zeros_like(positive)
        return positive / total

    def principal_components(self, n_components: int = 5) -> pd.DataFrame:
        """Top eigenvectors labelled PC1..PCk, indexed by sample ID"""
        k = max(0, min(n_components, self.n))
        return pd.DataFrame(
            self.eigenvecs[:, :k],
            index=pd.Index(self.sample_ids, name='ID'),
            columns=[f'PC{i + 1}' for i in range(k)],
        )


def _as_array(K: Union[KinshipMatrix, np.ndarray]) -> Tuple[np.ndarray, Optional[list]]:
    if isinstance(K, KinshipMatrix):
        return K.to_numpy(), K.sample_ids
    if isinstance(K, np.ndarray):
        if K.ndim != 2 or K.shape[0] != K.shape[1]:
            raise ValueError("Kinship matrix must be square")
        if not np.allclose(K, K.T, atol=1e-10):
            raise ValueError("Kinship matrix must be symmetric")
        return np.array(K, dtype=np.float64), None
    raise ValueError("Kinship matrix must be KinshipMatrix or numpy array")


def GWASKIN_Eigen(K: Union[KinshipMatrix, np.ndarray],
                  verbose: bool = True) -> SpectralDecomposition:
    """Eigendecomposition of a symmetric kinship matrix

    Args:
        K: Kinship matrix (n_individuals × n_individuals)
        verbose: Print progress information

    Returns:
        SpectralDecomposition with eigenvalues in descending order
    """
    matrix, sample_ids = _as_array(K)
    n = matrix.shape[0]
    if sample_ids is None:
        sample_ids = [str(i) for i in range(n)]

    if verbose:
        print(f"Computing eigendecomposition of kinship matrix ({n}×{n})")

    try:
        eigenvals, eigenvecs = np.linalg.eigh(matrix)
    except np.linalg.LinAlgError as e:
        raise NumericalInstabilityError(f"Failed to compute eigendecomposition: {e}")

    sort_indices = np.argsort(eigenvals)[::-1]
    eigenvals = eigenvals[sort_indices]
    eigenvecs = eigenvecs[:, sort_indices]

    decomposition = SpectralDecomposition(
        eigenvals=np.ascontiguousarray(eigenvals),
        eigenvecs=np.ascontiguousarray(eigenvecs),
        sample_ids=list(sample_ids),
        psd_repaired=False,
    )

    if verbose:
        print(f"Eigendecomposition complete. Range: [{eigenvals.min():.6f}, {eigenvals.max():.6f}], "
              f"{decomposition.n_negative()} negative")

    return decomposition


def repair_psd(K: Union[KinshipMatrix, np.ndarray, SpectralDecomposition],
               tolerance: float = EIGEN_TOLERANCE,
               verbose: bool = True) -> Tuple[KinshipMatrix, SpectralDecomposition]:
    """Clamp eigenvalues below tolerance to 0 and rebuild the kinship matrix

    Returns:
        Tuple (repaired KinshipMatrix, repaired SpectralDecomposition)
    """
    decomposition = K if isinstance(K, SpectralDecomposition) else GWASKIN_Eigen(K, verbose=verbose)
    fixed = decomposition.repaired(tolerance=tolerance)

    if verbose:
        n_clamped = int(np.sum(decomposition.eigenvals < tolerance))
        print(f"PSD repair: {n_clamped} eigenvalues below {tolerance:g} set to 0")

    return fixed.to_kinship(), fixed


def is_psd(matrix: Union[KinshipMatrix, np.ndarray], tolerance: float = EIGEN_TOLERANCE) -> bool:
    """True when no eigenvalue is below -tolerance"""
    if isinstance(matrix, KinshipMatrix):
        matrix = matrix.to_numpy()
    return bool(np.all(np.linalg.eigvalsh(matrix) >= -tolerance))
