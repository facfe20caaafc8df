"""
gwaskin: kinship-corrected genome-wide association studies

GCTA genomic relationship matrix, eigendecomposition with positive
semi-definite repair, a P3D mixed linear model scan and a naive GLM baseline.
"""

import os
import warnings

# Suppress OpenMP deprecation warnings that occur with Numba parallel processing
os.environ.setdefault('KMP_WARNINGS', 'off')
warnings.filterwarnings('ignore', message='.*omp_set_nested.*deprecated.*')

__version__ = "0.1.0"

from .utils.exceptions import (
    GWASError,
    AlignmentError,
    DegenerateInputError,
    NumericalInstabilityError,
    UntestableMarker,
)
from .utils.data_types import GenotypeMatrix, GenotypeMap, Phenotype, KinshipMatrix, AssociationResults
from .data.qc import GWASKIN_QC
from .matrix.kinship import GWASKIN_K_GCTA
from .matrix.spectral import GWASKIN_Eigen, SpectralDecomposition, repair_psd
from .matrix.pca import GWASKIN_PCA
from .association.glm import GWASKIN_GLM
from .association.mlm import GWASKIN_MLM, VarianceComponents

__all__ = [
    'GWASKIN_QC',
    'GWASKIN_K_GCTA',
    'GWASKIN_Eigen',
    'GWASKIN_PCA',
    'GWASKIN_GLM',
    'GWASKIN_MLM',
    'repair_psd',
    'SpectralDecomposition',
    'VarianceComponents',
    'GenotypeMatrix',
    'GenotypeMap',
    'Phenotype',
    'KinshipMatrix',
    'AssociationResults',
    'GWASError',
    'AlignmentError',
    'DegenerateInputError',
    'NumericalInstabilityError',
    'UntestableMarker',
]
