"""
Input validation shared by the association scans
"""

from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd

from ..utils.data_types import GenotypeMatrix, GenotypeMap, Phenotype
from ..utils.exceptions import AlignmentError, DegenerateInputError


def as_genotype(geno: Union[GenotypeMatrix, np.ndarray]) -> GenotypeMatrix:
    if isinstance(geno, GenotypeMatrix):
        return geno
    if isinstance(geno, np.ndarray):
        return GenotypeMatrix(geno)
    raise ValueError("Genotype must be GenotypeMatrix or numpy array")


def check_sample_ids(expected: Sequence[str], found: Sequence[str], what: str) -> None:
    """Raise AlignmentError unless both ID lists are identical and in the same order"""
    if list(expected) != list(found):
        mismatched = [f for e, f in zip(expected, found) if e != f][:5]
        raise AlignmentError(
            f"{what} sample IDs do not match the genotype rows"
            + (f" (first mismatches: {', '.join(map(str, mismatched))})" if mismatched else "")
        )


def prepare_trait(phe: Union[Phenotype, pd.Series, pd.DataFrame, np.ndarray],
                  genotype: GenotypeMatrix) -> np.ndarray:
    """Trait vector aligned with the genotype rows

    A 1-D array or an (n × 2) array [ID, trait] is matched by position. ID-keyed inputs
    (Phenotype, Series, DataFrame) must list the genotype samples in order.
    """
    if isinstance(phe, np.ndarray) and phe.ndim == 1:
        trait_values = phe.astype(np.float64)
    elif isinstance(phe, np.ndarray):
        if phe.shape[1] != 2:
            raise ValueError("Phenotype matrix must have 2 columns [ID, trait_value]")
        trait_values = phe[:, 1].astype(np.float64)
    elif isinstance(phe, (Phenotype, pd.Series, pd.DataFrame)):
        if not isinstance(phe, Phenotype):
            phe = Phenotype(phe)
        if phe.n_individuals == genotype.n_individuals:
            check_sample_ids(genotype.sample_ids, list(phe.ids), "Phenotype")
        trait_values = phe.values
    else:
        raise ValueError("Phenotype must be Phenotype, Series, DataFrame or numpy array")

    if len(trait_values) != genotype.n_individuals:
        raise AlignmentError(
            f"Number of phenotype observations ({len(trait_values)}) must match "
            f"number of individuals ({genotype.n_individuals})"
        )
    if not np.all(np.isfinite(trait_values)):
        raise ValueError("Phenotype contains missing values; filter samples with GWASKIN_QC first")
    if genotype.n_individuals < 2:
        raise DegenerateInputError(f"At least 2 samples are required, got {genotype.n_individuals}")

    return trait_values


def design_matrix(CV: Optional[np.ndarray], n_individuals: int) -> np.ndarray:
    """Fixed-effect design [1 | CV]"""
    if CV is None:
        return np.ones((n_individuals, 1))
    CV = np.asarray(CV, dtype=np.float64)
    if CV.ndim == 1:
        CV = CV[:, np.newaxis]
    if CV.shape[0] != n_individuals:
        raise ValueError("Covariate matrix must have same number of rows as phenotypes")
    if not np.all(np.isfinite(CV)):
        raise ValueError("Covariate matrix contains missing values")
    return np.column_stack([np.ones(n_individuals), CV])


def resolve_map(snp_map: Optional[Union[GenotypeMap, pd.DataFrame]], n_markers: int) -> Optional[GenotypeMap]:
    if snp_map is None:
        return None
    if isinstance(snp_map, pd.DataFrame):
        snp_map = GenotypeMap(snp_map)
    if snp_map.n_markers != n_markers:
        raise AlignmentError(
            f"Marker map has {snp_map.n_markers} rows but genotype has {n_markers} markers"
        )
    return snp_map


def resolve_cpu(cpu: int) -> int:
    """cpu=0 means all available cores"""
    if cpu == 0:
        import multiprocessing
        cpu = multiprocessing.cpu_count()
    return max(1, int(cpu))
