"""
Quality control and file loaders
"""

from .qc import GWASKIN_QC, QCResult

__all__ = ['GWASKIN_QC', 'QCResult']
