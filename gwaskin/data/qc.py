"""
Sample and marker quality control

Produces an index-aligned (genotype, map, phenotype) triple:
1. keep samples with a measured phenotype (in phenotype order)
2. compute alternate-allele frequencies over observed calls
3. drop markers below the MAF threshold, together with their map rows
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from ..utils.data_types import (
    GenotypeMatrix,
    GenotypeMap,
    Phenotype,
    allele_frequencies_from_batch,
    maf_from_frequencies,
)
from ..utils.exceptions import AlignmentError, DegenerateInputError


@dataclass(frozen=True, eq=False)
class QCResult:
    """Filtered, index-aligned inputs for kinship and association"""
    genotype: GenotypeMatrix
    geno_map: GenotypeMap
    phenotype: Phenotype
    allele_freq: np.ndarray
    maf: np.ndarray
    kept_markers: np.ndarray
    summary: Dict[str, int] = field(default_factory=dict)

    @property
    def trait_values(self) -> np.ndarray:
        return self.phenotype.values


def _as_phenotype(phenotype: Union[Phenotype, pd.Series, pd.DataFrame]) -> Phenotype:
    if isinstance(phenotype, Phenotype):
        return phenotype
    return Phenotype(phenotype)


def filter_samples(geno: GenotypeMatrix,
                   phenotype: Union[Phenotype, pd.Series, pd.DataFrame]):
    """Keep samples with a measured trait, ordered as in the phenotype

    Raises:
        AlignmentError: A phenotyped sample has no genotype row
        DegenerateInputError: No phenotyped sample remains
    """
    phenotype = _as_phenotype(phenotype)
    measured = phenotype.data.loc[phenotype.observed_mask].reset_index(drop=True)

    index_of = {sid: i for i, sid in enumerate(geno.sample_ids)}
    unknown = [sid for sid in measured['ID'] if sid not in index_of]
    if unknown:
        preview = ', '.join(unknown[:5])
        if len(unknown) > 5:
            preview += ', ...'
        raise AlignmentError(
            f"{len(unknown)} phenotyped samples have no genotype row: {preview}"
        )

    if len(measured) == 0:
        raise DegenerateInputError("No samples with a measured phenotype")

    rows = np.array([index_of[sid] for sid in measured['ID']], dtype=int)
    return geno.subset_individuals(rows), Phenotype(measured), rows


def compute_allele_frequencies(geno: GenotypeMatrix,
                               maxLine: int = 5000,
                               cpu: int = 1) -> np.ndarray:
    """Per-marker alternate-allele frequency, batches fanned out over cpu workers

    Each batch writes into its own slice of the output array.
    """
    n_markers = geno.n_markers
    frequencies = np.full(n_markers, np.nan)
    starts = list(range(0, n_markers, maxLine))

    def _fill(start: int) -> None:
        end = min(start + maxLine, n_markers)
        frequencies[start:end] = allele_frequencies_from_batch(geno.get_batch(start, end))

    if cpu != 1 and len(starts) > 1:
        Parallel(n_jobs=cpu, backend='threading')(delayed(_fill)(s) for s in starts)
    else:
        for start in starts:
            _fill(start)

    return frequencies


def filter_markers_by_maf(geno: GenotypeMatrix,
                          geno_map: GenotypeMap,
                          maf_threshold: float = 0.05,
                          max_missing: float = 1.0,
                          maxLine: int = 5000,
                          cpu: int = 1):
    """Drop markers with MAF < maf_threshold or missing rate > max_missing

    Fully missing markers have MAF 0 and are removed by any positive
    threshold. Map rows are dropped at the same indices.

    Returns:
        Tuple (genotype, geno_map, kept_indices, allele_freq, maf, counts)
    """
    if geno_map.n_markers != geno.n_markers:
        raise AlignmentError(
            f"Map has {geno_map.n_markers} markers, genotype has {geno.n_markers}"
        )

    freqs = compute_allele_frequencies(geno, maxLine=maxLine, cpu=cpu)
    maf = maf_from_frequencies(freqs)
    missing_rate = 1.0 - geno.call_rate(batch_size=maxLine)

    low_maf = maf < maf_threshold
    high_missing = missing_rate > max_missing
    keep = ~(low_maf | high_missing)
    kept = np.flatnonzero(keep)

    counts = {
        'n_markers_low_maf': int(low_maf.sum()),
        'n_markers_high_missing': int((high_missing & ~low_maf).sum()),
    }
    return (geno.subset_markers(kept), geno_map.subset(kept), kept,
            freqs[kept], maf[kept], counts)


def GWASKIN_QC(geno: Union[GenotypeMatrix, np.ndarray],
               geno_map: Optional[GenotypeMap],
               phenotype: Union[Phenotype, pd.Series, pd.DataFrame],
               maf_threshold: float = 0.05,
               max_missing: float = 1.0,
               maxLine: int = 5000,
               cpu: int = 1,
               verbose: bool = True) -> QCResult:
    """Sample and marker QC

    Args:
        geno: Genotype matrix (n_individuals × n_markers) with sample IDs
        geno_map: Marker map aligned with the genotype columns (None for a
            placeholder map)
        phenotype: Trait values keyed by sample ID; NaN marks missing
        maf_threshold: Minimum minor allele frequency kept (default 0.05)
        max_missing: Maximum missing-call rate kept (default 1.0, no filter)
        maxLine: Markers per batch
        cpu: Workers for the frequency computation
        verbose: Print progress information

    Returns:
        QCResult with filtered genotype, map and phenotype
    """
    if isinstance(geno, np.ndarray):
        geno = GenotypeMatrix(geno)
    elif not isinstance(geno, GenotypeMatrix):
        raise ValueError("Genotype must be GenotypeMatrix or numpy array")
    if geno_map is None:
        geno_map = GenotypeMap.default(geno.n_markers)

    phenotype = _as_phenotype(phenotype)
    if verbose:
        print(f"QC on {geno.n_individuals} individuals, {geno.n_markers} markers "
              f"(MAF >= {maf_threshold}, missing <= {max_missing})")

    geno_s, pheno_s, _ = filter_samples(geno, phenotype)
    if verbose:
        print(f"Samples with phenotype: {geno_s.n_individuals}/{geno.n_individuals}")

    geno_f, map_f, kept, freqs, maf, counts = filter_markers_by_maf(
        geno_s, geno_map, maf_threshold=maf_threshold, max_missing=max_missing,
        maxLine=maxLine, cpu=cpu,
    )

    summary = {
        'n_samples_input': geno.n_individuals,
        'n_samples_kept': geno_f.n_individuals,
        'n_markers_input': geno.n_markers,
        'n_markers_kept': geno_f.n_markers,
        **counts,
    }
    if verbose:
        print(f"Markers kept: {geno_f.n_markers}/{geno.n_markers} "
              f"({counts['n_markers_low_maf']} low MAF, "
              f"{counts['n_markers_high_missing']} high missing)")

    return QCResult(
        genotype=geno_f,
        geno_map=map_f,
        phenotype=pheno_s,
        allele_freq=freqs,
        maf=maf,
        kept_markers=kept,
        summary=summary,
    )
