"""
Core data structures for gwaskin
"""

import warnings
import numpy as np
import pandas as pd
from typing import Optional, Union, Tuple, List, Sequence

from .exceptions import AlignmentError

MISSING_GENOTYPE = -9
VALID_DOSAGES = (0, 1, 2)

STATUS_OK = 'ok'
STATUS_MONOMORPHIC = 'monomorphic'
STATUS_TOO_FEW = 'too_few_observations'
STATUS_COLLINEAR = 'collinear'
STATUS_SINGULAR = 'singular_covariance'


def _as_id_list(ids: Optional[Sequence], n: int, what: str) -> List[str]:
    """Normalise identifiers to unique strings, defaulting to '0'..'n-1'"""
    if ids is None:
        return [str(i) for i in range(n)]
    ids = [str(i) for i in ids]
    if len(ids) != n:
        raise ValueError(f"Expected {n} {what} IDs, got {len(ids)}")
    if len(set(ids)) != len(ids):
        dups = pd.Series(ids)[pd.Series(ids).duplicated()].unique()[:5]
        raise AlignmentError(f"Duplicated {what} IDs: {', '.join(dups)}")
    return ids


class Phenotype:
    """Phenotype data: one trait value per sample ID

    Expected format: n × 2 table where:
    - Column 1: Individual IDs
    - Column 2: Trait values (NaN marks a missing measurement)
    """

    def __init__(self, data: Union[np.ndarray, pd.DataFrame, pd.Series]):
        if isinstance(data, pd.Series):
            self.data = pd.DataFrame({'ID': data.index, 'Trait': data.values})
        elif isinstance(data, pd.DataFrame):
            self.data = data.copy()
        elif isinstance(data, np.ndarray):
            self.data = pd.DataFrame(data)
        else:
            raise ValueError("Data must be array, Series or DataFrame")

        if self.data.shape[1] != 2:
            raise ValueError(f"Phenotype must have 2 columns, got {self.data.shape[1]}")

        self.data.columns = ['ID', 'Trait']
        self.data['ID'] = self.data['ID'].astype(str)
        raw = self.data['Trait']
        self.data['Trait'] = pd.to_numeric(raw, errors='coerce').astype(float)
        n_coerced = int((self.data['Trait'].isna() & raw.notna()).sum())
        if n_coerced:
            warnings.warn(f"{n_coerced} non-numeric trait values treated as missing")

        if self.data['ID'].duplicated().any():
            dups = self.data.loc[self.data['ID'].duplicated(), 'ID'].unique()[:5]
            raise AlignmentError(f"Duplicated phenotype IDs: {', '.join(dups)}")

    @property
    def ids(self) -> pd.Series:
        """Individual IDs"""
        return self.data['ID']

    @property
    def values(self) -> np.ndarray:
        """Trait values as float64"""
        return self.data['Trait'].to_numpy(dtype=np.float64)

    @property
    def observed_mask(self) -> np.ndarray:
        """True where the trait was measured"""
        return np.isfinite(self.values)

    @property
    def n_individuals(self) -> int:
        return len(self.data)

    def as_series(self) -> pd.Series:
        return pd.Series(self.values, index=self.ids.values, name='Trait')

    def to_numpy(self) -> np.ndarray:
        return self.data.values


class GenotypeMap:
    """SNP map information, positionally aligned with genotype columns

    Expected columns: [SNP, CHROM, POS]
    """

    def __init__(self, data: pd.DataFrame):
        if not isinstance(data, pd.DataFrame):
            raise ValueError("Map data must be a DataFrame")
        self.data = data.reset_index(drop=True).copy()

        required_cols = ['SNP', 'CHROM', 'POS']
        for col in required_cols:
            if col not in self.data.columns:
                raise ValueError(f"Missing required column: {col}")

        self.data['SNP'] = self.data['SNP'].astype(str)
        if self.data['SNP'].duplicated().any():
            dups = self.data.loc[self.data['SNP'].duplicated(), 'SNP'].unique()[:5]
            raise AlignmentError(f"Duplicated marker IDs: {', '.join(dups)}")

    @classmethod
    def default(cls, n_markers: int) -> "GenotypeMap":
        """Placeholder map for unlabelled marker matrices"""
        return cls(pd.DataFrame({
            'SNP': [f"M{i + 1}" for i in range(n_markers)],
            'CHROM': ['NA'] * n_markers,
            'POS': np.arange(1, n_markers + 1),
        }))

    @property
    def snp_ids(self) -> pd.Series:
        return self.data['SNP']

    @property
    def chromosomes(self) -> pd.Series:
        return self.data['CHROM']

    @property
    def positions(self) -> pd.Series:
        return self.data['POS']

    @property
    def n_markers(self) -> int:
        return len(self.data)

    def subset(self, indices: Union[np.ndarray, list]) -> "GenotypeMap":
        """Rows at the given marker indices, order preserved"""
        return GenotypeMap(self.data.iloc[np.asarray(indices, dtype=int)])

    def to_dataframe(self) -> pd.DataFrame:
        return self.data.copy()


class GenotypeMatrix:
    """Dosage matrix (n_individuals × n_markers) with a missing sentinel

    Entries are 0/1/2 alternate-allele counts or MISSING_GENOTYPE (-9).
    Float input may mark missing calls with NaN; they are stored as -9 and
    never coerced to a dosage.
    """

    def __init__(self, data: np.ndarray, sample_ids: Optional[Sequence] = None):
        if not isinstance(data, np.ndarray):
            raise ValueError("Genotype data must be a numpy array")
        if data.ndim != 2:
            raise ValueError("Genotype matrix must be 2D (individuals × markers)")

        if np.issubdtype(data.dtype, np.floating):
            nan_mask = np.isnan(data)
            filled = np.where(nan_mask, MISSING_GENOTYPE, data)
            if not np.all(np.isin(filled, VALID_DOSAGES + (MISSING_GENOTYPE,))):
                raise ValueError("Genotype entries must be 0, 1, 2 or missing")
            self._data = filled.astype(np.int8)
        else:
            if not np.all(np.isin(data, VALID_DOSAGES + (MISSING_GENOTYPE,))):
                raise ValueError("Genotype entries must be 0, 1, 2 or missing")
            self._data = data.astype(np.int8, copy=True)

        self._data.setflags(write=False)
        self.sample_ids = _as_id_list(sample_ids, self._data.shape[0], 'sample')

    @property
    def shape(self) -> Tuple[int, int]:
        """Matrix shape (n_individuals, n_markers)"""
        return self._data.shape

    @property
    def n_individuals(self) -> int:
        return self.shape[0]

    @property
    def n_markers(self) -> int:
        return self.shape[1]

    def __getitem__(self, key):
        return self._data[key]

    def to_numpy(self) -> np.ndarray:
        """Copy of the raw int8 matrix (missing stays -9)"""
        return np.array(self._data)

    def get_marker(self, marker_idx: int) -> np.ndarray:
        return self._data[:, marker_idx]

    def get_batch(self, marker_start: int, marker_end: int) -> np.ndarray:
        return self._data[:, marker_start:marker_end]

    def missing_mask(self, marker_start: int = 0, marker_end: Optional[int] = None) -> np.ndarray:
        """Boolean mask of missing calls for a marker range"""
        return self._data[:, marker_start:marker_end] == MISSING_GENOTYPE

    @property
    def has_missing(self) -> bool:
        return bool(np.any(self._data == MISSING_GENOTYPE))

    def subset_individuals(self, indices: Union[np.ndarray, list]) -> "GenotypeMatrix":
        """Rows at the given positions; sample IDs follow the rows"""
        indexer = np.asarray(indices)
        if indexer.dtype != bool:
            indexer = indexer.astype(int)
        ids = np.asarray(self.sample_ids, dtype=object)[indexer]
        return GenotypeMatrix(self._data[indexer, :], sample_ids=list(ids))

    def subset_markers(self, indices: Union[np.ndarray, list]) -> "GenotypeMatrix":
        indexer = np.asarray(indices)
        if indexer.dtype != bool:
            indexer = indexer.astype(int)
        return GenotypeMatrix(self._data[:, indexer], sample_ids=self.sample_ids)

    def call_rate(self, batch_size: int = 5000) -> np.ndarray:
        """Fraction of observed calls per marker"""
        rates = np.zeros(self.n_markers)
        for start in range(0, self.n_markers, batch_size):
            end = min(start + batch_size, self.n_markers)
            rates[start:end] = 1.0 - self.missing_mask(start, end).mean(axis=0)
        return rates

    def calculate_allele_frequencies(self, batch_size: int = 5000) -> np.ndarray:
        """Alternate-allele frequency per marker over observed calls

        Fully missing markers get NaN.
        """
        n_markers = self.n_markers
        frequencies = np.full(n_markers, np.nan)

        for start in range(0, n_markers, batch_size):
            end = min(start + batch_size, n_markers)
            frequencies[start:end] = allele_frequencies_from_batch(self.get_batch(start, end))

        return frequencies

    def calculate_maf(self, batch_size: int = 5000) -> np.ndarray:
        """Minor allele frequencies; fully missing markers get 0"""
        return maf_from_frequencies(self.calculate_allele_frequencies(batch_size=batch_size))


def allele_frequencies_from_batch(batch: np.ndarray) -> np.ndarray:
    """mean(g / 2) over observed calls, NaN for columns without any call"""
    observed = batch != MISSING_GENOTYPE
    counts = observed.sum(axis=0)
    totals = np.where(observed, batch, 0).sum(axis=0, dtype=np.float64)
    freqs = np.full(batch.shape[1], np.nan)
    has_calls = counts > 0
    freqs[has_calls] = totals[has_calls] / (2.0 * counts[has_calls])
    return freqs


def maf_from_frequencies(frequencies: np.ndarray) -> np.ndarray:
    maf = np.minimum(frequencies, 1.0 - frequencies)
    return np.where(np.isfinite(maf), maf, 0.0)


class KinshipMatrix:
    """Genomic relationship matrix with sample labels

    Must be square and symmetric. It need not be positive semi-definite
    unless psd_repaired is set.
    """

    def __init__(self, data: np.ndarray, sample_ids: Optional[Sequence] = None,
                 psd_repaired: bool = False):
        if not isinstance(data, np.ndarray):
            raise ValueError("Kinship data must be a numpy array")
        self._data = np.array(data, dtype=np.float64)

        if self._data.ndim != 2:
            raise ValueError("Kinship matrix must be 2D")
        if self._data.shape[0] != self._data.shape[1]:
            raise ValueError("Kinship matrix must be square")
        if not np.allclose(self._data, self._data.T, atol=1e-10):
            raise ValueError("Kinship matrix must be symmetric")

        self._data.setflags(write=False)
        self.n = self._data.shape[0]
        self.sample_ids = _as_id_list(sample_ids, self.n, 'sample')
        self.psd_repaired = psd_repaired

    @property
    def shape(self) -> Tuple[int, int]:
        return self._data.shape

    def __getitem__(self, key):
        return self._data[key]

    def to_numpy(self) -> np.ndarray:
        return self._data.copy()

    def to_dataframe(self) -> pd.DataFrame:
        """Sample-ID labelled copy for display or export"""
        return pd.DataFrame(self._data, index=self.sample_ids, columns=self.sample_ids)

    def subset(self, indices: Union[np.ndarray, list]) -> "KinshipMatrix":
        idx = np.asarray(indices, dtype=int)
        ids = [self.sample_ids[i] for i in idx]
        return KinshipMatrix(self._data[np.ix_(idx, idx)], sample_ids=ids,
                             psd_repaired=False)


class AssociationResults:
    """GWAS association results, one row per marker

    Untestable markers keep their row with NaN effect, SE and p-value and a
    status other than 'ok', so rows stay aligned with the marker map.
    """

    def __init__(self, effects: np.ndarray, se: np.ndarray, pvalues: np.ndarray,
                 snp_map: Optional[GenotypeMap] = None,
                 tstats: Optional[np.ndarray] = None,
                 n_obs: Optional[np.ndarray] = None,
                 status: Optional[np.ndarray] = None,
                 method: Optional[str] = None):

        if not (len(effects) == len(se) == len(pvalues)):
            raise ValueError("All result arrays must have same length")
        n = len(effects)

        self.effects = np.asarray(effects, dtype=np.float64)
        self.se = np.asarray(se, dtype=np.float64)
        self.pvalues = np.asarray(pvalues, dtype=np.float64)
        self.tstats = np.full(n, np.nan) if tstats is None else np.asarray(tstats, dtype=np.float64)
        self.n_obs = np.zeros(n, dtype=np.int64) if n_obs is None else np.asarray(n_obs, dtype=np.int64)
        if status is None:
            status = np.where(np.isfinite(self.pvalues), STATUS_OK, STATUS_COLLINEAR)
        self.status = np.asarray(status, dtype=object)
        self.method = method

        if snp_map is not None and snp_map.n_markers != n:
            raise AlignmentError(
                f"Marker map has {snp_map.n_markers} rows but results have {n} markers"
            )
        self.snp_map = snp_map

    @property
    def n_markers(self) -> int:
        return len(self.effects)

    @property
    def tested_mask(self) -> np.ndarray:
        return self.status == STATUS_OK

    @property
    def n_tested(self) -> int:
        """Markers that produced a p-value; the Bonferroni denominator"""
        return int(np.sum(self.tested_mask))

    def significance_threshold(self, alpha: float = 0.05) -> Tuple[float, int]:
        """Genome-wide Bonferroni threshold and the marker count it used

        The threshold is NaN when no marker was tested.
        """
        n_tested = self.n_tested
        if n_tested == 0:
            return np.nan, 0
        return alpha / n_tested, n_tested

    def to_dataframe(self) -> pd.DataFrame:
        df = pd.DataFrame({
            'Effect': self.effects,
            'SE': self.se,
            'T': self.tstats,
            'N': self.n_obs,
            'P-value': self.pvalues,
            'Status': self.status,
        })

        if self.snp_map is not None:
            df['SNP'] = self.snp_map.snp_ids.values
            df['Chr'] = self.snp_map.chromosomes.values
            df['Pos'] = self.snp_map.positions.values
            df = df[['SNP', 'Chr', 'Pos', 'Effect', 'SE', 'T', 'N', 'P-value', 'Status']]

        return df

    def to_numpy(self) -> np.ndarray:
        """[Effect, SE, P-value] columns"""
        return np.column_stack([self.effects, self.se, self.pvalues])
