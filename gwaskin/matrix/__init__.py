"""
Kinship, spectral decomposition and principal components
"""

from .kinship import GWASKIN_K_GCTA
from .spectral import GWASKIN_Eigen, SpectralDecomposition, repair_psd, is_psd
from .pca import GWASKIN_PCA

__all__ = ['GWASKIN_K_GCTA', 'GWASKIN_Eigen', 'SpectralDecomposition', 'repair_psd', 'is_psd', 'GWASKIN_PCA']
