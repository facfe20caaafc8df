"""
Association testing methods for GWAS analysis
"""

from .glm import GWASKIN_GLM
from .mlm import GWASKIN_MLM, estimate_variance_components, VarianceComponents

__all__ = ['GWASKIN_GLM', 'GWASKIN_MLM', 'estimate_variance_components', 'VarianceComponents']
