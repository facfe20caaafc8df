"""
Data loading utilities for delimited text files
"""

import pandas as pd
import numpy as np
from pathlib import Path
from typing import Union, Tuple, Optional, List
import warnings

from ..utils.data_types import GenotypeMatrix, GenotypeMap, Phenotype, MISSING_GENOTYPE

# Tokens read as a missing value in every input table
NA_VALUES = [
    '', 'NA', 'NaN', 'nan', 'NAN', 'na', 'N/A', 'n/a', 'Null', 'NULL',
    '.', '-', '--'
]


def detect_file_format(filepath: Union[str, Path]) -> str:
    """Detect file format based on extension

    Returns:
        'csv' or 'tsv'
    """
    filepath = Path(filepath)
    suffix = filepath.suffix.lower()
    if suffix == '.gz':
        suffix = Path(filepath.stem).suffix.lower()

    if suffix == '.csv':
        return 'csv'
    if suffix in ('.tsv', '.txt', '.tab'):
        return 'tsv'
    raise ValueError(f"Unsupported file format for {filepath.name}; expected CSV or TSV")


def _detect_separator(filepath: Union[str, Path]) -> str:
    """Heuristically determine the delimiter from the header line."""
    try:
        with Path(filepath).open('r') as handle:
            for _ in range(10):
                line = handle.readline()
                if not line:
                    break
                line = line.strip()
                if not line:
                    continue
                comma_count = line.count(',')
                tab_count = line.count('\t')
                if tab_count or comma_count:
                    return '\t' if tab_count >= comma_count else ','
    except OSError:
        pass
    return ','


def _read_table(filepath: Union[str, Path], **kwargs) -> pd.DataFrame:
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"File not found: {filepath}")
    if detect_file_format(filepath) == 'csv':
        separator = ','
    else:
        separator = _detect_separator(filepath)
    return pd.read_csv(filepath, sep=separator, **kwargs)


def load_phenotype_file(filepath: Union[str, Path],
                        trait_columns: Optional[List[str]] = None,
                        id_column: str = 'ID') -> pd.DataFrame:
    """Load phenotype table

    Args:
        filepath: Path to phenotype file
        trait_columns: List of trait column names (if None, auto-detect)
        id_column: Name of ID column

    Returns:
        DataFrame with ID and trait columns; missing measurements are NaN
    """
    df = _read_table(filepath, na_values=NA_VALUES, keep_default_na=True)

    if id_column not in df.columns:
        first_col = df.columns[0]
        warnings.warn(
            "No '{}' column found; using first column '{}' as ID.".format(id_column, first_col)
        )
        id_column = first_col
    df = df.rename(columns={id_column: 'ID'})
    df['ID'] = df['ID'].astype(str)

    if trait_columns is None:
        trait_columns = [col for col in df.columns if col != 'ID']
    else:
        absent = [c for c in trait_columns if c not in df.columns]
        if absent:
            raise ValueError(f"Trait columns not found in phenotype file: {absent}")

    numeric = df[trait_columns].apply(pd.to_numeric, errors='coerce')
    # Keep columns that hold at least one number
    trait_columns = [c for c in trait_columns if numeric[c].notna().any()]
    n_coerced = int((numeric[trait_columns].isna() & df[trait_columns].notna()).to_numpy().sum())
    if n_coerced:
        warnings.warn(f"{n_coerced} non-numeric phenotype entries treated as missing")
    df = df[['ID']].join(numeric[trait_columns])

    # Deduplicate phenotype IDs by aggregating trait means (skip NaNs)
    if df['ID'].duplicated().any():
        n_dups = int(df['ID'].duplicated().sum())
        agg_cols = {col: 'mean' for col in trait_columns}
        df = df.groupby('ID', as_index=False, sort=False).agg(agg_cols)
        warnings.warn(
            f"Detected {n_dups} duplicated phenotype records by ID; deduplicated by computing "
            "per-ID mean of trait columns (missing values ignored)."
        )

    return df


def phenotype_for_trait(phenotype_df: pd.DataFrame, trait: str) -> Phenotype:
    """Single-trait Phenotype from a loaded phenotype table"""
    if trait not in phenotype_df.columns:
        raise ValueError(f"Trait '{trait}' not found; available: {list(phenotype_df.columns[1:])}")
    return Phenotype(phenotype_df[['ID', trait]])


def load_genotype_file(filepath: Union[str, Path]) -> Tuple[GenotypeMatrix, List[str], GenotypeMap]:
    """Load a numeric genotype table

    First column holds sample IDs, the remaining columns one marker each with
    dosages 0/1/2. Empty cells and NA tokens are missing and stored as -9;
    they are never imputed.

    Returns:
        Tuple of (GenotypeMatrix, individual_ids, GenotypeMap)
    """
    df = _read_table(filepath, na_values=NA_VALUES, keep_default_na=True, low_memory=False)
    if df.shape[1] < 2:
        raise ValueError("Genotype file needs an ID column and at least one marker column")

    individual_ids = df.iloc[:, 0].astype(str).tolist()
    marker_names = [str(c) for c in df.columns[1:]]

    data_df = df.iloc[:, 1:].apply(pd.to_numeric, errors='coerce')
    n_coerced = int((data_df.isna() & df.iloc[:, 1:].notna()).to_numpy().sum())
    if n_coerced:
        warnings.warn(f"{n_coerced} non-numeric genotype calls treated as missing")
    geno_np = data_df.fillna(MISSING_GENOTYPE).to_numpy(dtype=np.float64)

    geno_matrix = GenotypeMatrix(geno_np, sample_ids=individual_ids)

    # Placeholder positions until a map file is supplied
    geno_map = GenotypeMap(pd.DataFrame({
        'SNP': marker_names,
        'CHROM': ['NA'] * len(marker_names),
        'POS': list(range(1, len(marker_names) + 1))
    }))

    return geno_matrix, individual_ids, geno_map


def load_map_file(filepath: Union[str, Path]) -> GenotypeMap:
    """Load genetic map file

    Args:
        filepath: Path to map file

    Returns:
        GenotypeMap object
    """
    df = _read_table(filepath)

    # Standardize column names
    col_mapping = {
        'Chr': 'CHROM', 'chr': 'CHROM', 'chromosome': 'CHROM', 'CHR': 'CHROM',
        'Pos': 'POS', 'pos': 'POS', 'position': 'POS', 'bp': 'POS',
        'snp': 'SNP', 'marker': 'SNP', 'rs': 'SNP', 'ID': 'SNP'
    }

    for old_name, new_name in col_mapping.items():
        if old_name in df.columns and new_name not in df.columns:
            df = df.rename(columns={old_name: new_name})

    return GenotypeMap(df)
