"""
GWAS Pipeline Module

Runs the analysis in order, each step consuming the immutable output of the
previous one:

    load / set data -> QC -> kinship -> eigendecomposition + PSD repair
    -> {principal components, MLM} ; GLM on the QC output alone
"""

import time
import warnings
import numpy as np
import pandas as pd
from pathlib import Path
from typing import Dict, Optional, Sequence, Union

from ..data.loaders import load_phenotype_file, load_genotype_file, load_map_file, phenotype_for_trait
from ..data.qc import GWASKIN_QC, QCResult
from ..matrix.kinship import GWASKIN_K_GCTA, validate_kinship_matrix
from ..matrix.spectral import GWASKIN_Eigen, SpectralDecomposition, repair_psd
from ..matrix.pca import pca_table, validate_pca_results
from ..association.glm import GWASKIN_GLM
from ..association.mlm import GWASKIN_MLM
from ..utils.data_types import GenotypeMatrix, GenotypeMap, KinshipMatrix, Phenotype, AssociationResults
from ..utils.exceptions import NumericalInstabilityError
from ..utils.stats import (
    fdr_correction,
    genomic_inflation_factor,
    qq_plot_data,
    rejection_rate,
    uniformity_ks,
)

SUPPORTED_METHODS = ('GLM', 'MLM')


def normalize_methods(methods: Union[str, Sequence[str]]) -> list:
    """Upper-case, deduplicated method names; unknown names raise ValueError"""
    if isinstance(methods, str):
        methods = methods.split(',')
    normalized = []
    for m in methods:
        name = str(m).strip().upper()
        if not name:
            continue
        if name not in SUPPORTED_METHODS:
            raise ValueError(f"Unknown method '{m}'; choose from {', '.join(SUPPORTED_METHODS)}")
        if name not in normalized:
            normalized.append(name)
    if not normalized:
        raise ValueError("No association method selected")
    return normalized


class GWASPipeline:
    """
    High-level pipeline for a kinship-corrected GWAS of one trait.

    Typical workflow:
        1. Initialize pipeline with output directory
        2. Load phenotype, genotype and map files (or set_data with objects)
        3. run_qc(): sample filter and MAF filter
        4. compute_population_structure(): GCTA kinship, eigendecomposition,
           PSD repair and principal components
        5. run_analysis(): GLM and/or MLM scans; results saved to output_dir

    Attributes:
        genotype_matrix (GenotypeMatrix): Genotypes as loaded
        geno_map (GenotypeMap): Marker map aligned with genotype columns
        phenotype (Phenotype): Trait values keyed by sample ID
        qc (QCResult): Filtered, aligned inputs
        kinship_raw (KinshipMatrix): GCTA kinship before repair
        kinship (KinshipMatrix): PSD-repaired kinship
        eigenK (SpectralDecomposition): Repaired decomposition used by MLM
        pcs (DataFrame): Principal components table
        results (dict): {method: AssociationResults}
        summary (DataFrame): One row per method

    Example:
        >>> pipeline = GWASPipeline(output_dir='./my_gwas')
        >>> pipeline.load_data('phenotypes.csv', 'genotypes.csv', map_file='map.csv', trait='Height')
        >>> pipeline.run_qc(maf_threshold=0.05)
        >>> pipeline.compute_population_structure(n_pcs=3)
        >>> pipeline.run_analysis(methods=['GLM', 'MLM'])
    """

    def __init__(self, output_dir: str = "./GWAS_results", cpu: int = 1, verbose: bool = True):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.cpu = cpu
        self.verbose = verbose

        # Data storage
        self.genotype_matrix: Optional[GenotypeMatrix] = None
        self.geno_map: Optional[GenotypeMap] = None
        self.phenotype: Optional[Phenotype] = None
        self.trait_name: str = 'Trait'

        self.qc: Optional[QCResult] = None

        # Population Structure
        self.kinship_raw: Optional[KinshipMatrix] = None
        self.kinship: Optional[KinshipMatrix] = None
        self.eigenK: Optional[SpectralDecomposition] = None
        self.pcs: Optional[pd.DataFrame] = None

        # Analysis State
        self.results: Dict[str, AssociationResults] = {}
        self.summary: Optional[pd.DataFrame] = None

    def log(self, message: str):
        """Internal logger"""
        if self.verbose:
            print(message)

    def log_step(self, step_name: str, start_time: Optional[float] = None):
        """Log a pipeline step with optional timing"""
        if start_time is not None:
            elapsed = time.time() - start_time
            self.log(f"{step_name} completed in {elapsed:.2f} seconds")
        else:
            self.log(f"{step_name}...")

    def load_data(self,
                  phenotype_file: str,
                  genotype_file: str,
                  map_file: Optional[str] = None,
                  trait: Optional[str] = None):
        """
        Load phenotype, genotype and optional map files.

        Args:
            phenotype_file: CSV/TSV with an ID column and trait columns
            genotype_file: CSV/TSV with an ID column and one dosage column per marker
            map_file: CSV/TSV with SNP, CHROM, POS; must list the genotype markers in order
            trait: Trait column to analyze (default: first trait column)
        """
        step_start = time.time()
        self.log_step("Step 1: Loading input data")

        phenotype_df = load_phenotype_file(phenotype_file)
        if trait is None:
            if phenotype_df.shape[1] < 2:
                raise ValueError("Phenotype file has no numeric trait column")
            trait = phenotype_df.columns[1]
        phenotype = phenotype_for_trait(phenotype_df, trait)
        self.log(f"   Loaded {phenotype.n_individuals} phenotype records for trait '{trait}'")

        genotype, _, geno_map = load_genotype_file(genotype_file)
        self.log(f"   Loaded {genotype.n_individuals} individuals x {genotype.n_markers} markers")

        if map_file:
            supplied_map = load_map_file(map_file)
            if supplied_map.n_markers != genotype.n_markers:
                raise ValueError(
                    f"Map marker count ({supplied_map.n_markers}) != genotype marker count ({genotype.n_markers})"
                )
            if list(supplied_map.snp_ids) != list(geno_map.snp_ids):
                raise ValueError("Map file markers are not in genotype column order")
            geno_map = supplied_map
            self.log(f"   Loaded map for {supplied_map.n_markers} markers")

        self.set_data(genotype, geno_map, phenotype, trait_name=trait)
        self.log_step("Data loading", step_start)

    def set_data(self,
                 genotype: GenotypeMatrix,
                 geno_map: Optional[GenotypeMap],
                 phenotype: Union[Phenotype, pd.Series, pd.DataFrame],
                 trait_name: str = 'Trait'):
        """Use in-memory data instead of files; clears any downstream state"""
        if not isinstance(phenotype, Phenotype):
            phenotype = Phenotype(phenotype)
        if geno_map is None:
            geno_map = GenotypeMap.default(genotype.n_markers)
        self.genotype_matrix = genotype
        self.geno_map = geno_map
        self.phenotype = phenotype
        self.trait_name = str(trait_name)

        self.qc = None
        self.kinship_raw = self.kinship = self.eigenK = None
        self.pcs = None
        self.results = {}
        self.summary = None

    def run_qc(self, maf_threshold: float = 0.05, max_missing: float = 1.0) -> QCResult:
        """Sample and marker QC; see GWASKIN_QC"""
        if self.genotype_matrix is None or self.phenotype is None:
            raise ValueError("Data not loaded. Call load_data() or set_data() first.")

        step_start = time.time()
        self.log_step("Step 2: Quality control")
        self.qc = GWASKIN_QC(
            self.genotype_matrix, self.geno_map, self.phenotype,
            maf_threshold=maf_threshold, max_missing=max_missing,
            cpu=self.cpu, verbose=False,
        )
        s = self.qc.summary
        self.log(f"   Samples kept: {s['n_samples_kept']}/{s['n_samples_input']}")
        self.log(f"   Markers kept: {s['n_markers_kept']}/{s['n_markers_input']} "
                 f"({s['n_markers_low_maf']} low MAF, {s['n_markers_high_missing']} high missing)")
        self.log_step("Quality control", step_start)
        return self.qc

    def compute_population_structure(self, n_pcs: int = 3):
        """
        GCTA kinship, eigendecomposition, PSD repair and principal components.

        Saves the PC table as GWAS_<trait>_PCs.csv when n_pcs > 0.
        """
        if self.qc is None:
            raise ValueError("QC has not been run. Call run_qc() first.")

        step_start = time.time()
        self.log_step("Step 3: Calculating population structure")

        self.kinship_raw = GWASKIN_K_GCTA(self.qc.genotype, allele_freq=self.qc.allele_freq, verbose=False)
        decomposition = GWASKIN_Eigen(self.kinship_raw, verbose=False)
        n_negative = decomposition.n_negative()
        self.kinship, self.eigenK = repair_psd(decomposition, verbose=False)
        valid, problems = validate_kinship_matrix(self.kinship, tolerance=1e-8)
        if not valid:
            raise NumericalInstabilityError(f"Repaired kinship failed validation: {'; '.join(problems)}")
        self.log(f"   Kinship {self.kinship.shape}; {n_negative} negative eigenvalues clamped to 0")

        if n_pcs > 0:
            self.pcs = pca_table(self.eigenK, pcs_keep=n_pcs)
            valid, problems = validate_pca_results(self.pcs.drop(columns='ID').to_numpy(), tolerance=1e-8)
            if not valid:
                warnings.warn(f"Principal components failed validation: {'; '.join(problems)}")
            pc_path = self.output_dir / f"GWAS_{self.trait_name}_PCs.csv"
            self.pcs.to_csv(pc_path, index=False)
            explained = ', '.join(f"{v * 100:.1f}%" for v in self.pcs.attrs['explained_variance_ratio'])
            self.log(f"   Saved {self.pcs.shape[1] - 1} PCs to {pc_path} (explained variance: {explained})")
        else:
            self.pcs = None
            self.log("   Skipping PCA (n_pcs=0)")

        self.log_step("Population structure", step_start)

    def run_analysis(self,
                     methods: Union[str, Sequence[str]] = SUPPORTED_METHODS,
                     alpha: float = 0.05,
                     min_samples: int = 3) -> Dict[str, AssociationResults]:
        """
        Run the association scans and save one table per method.

        Structural errors (AlignmentError, DegenerateInputError,
        NumericalInstabilityError) propagate and abort the run.

        Writes:
            GWAS_<trait>_<method>.csv: one row per marker, with BH FDR q-values
            GWAS_<trait>_<method>_QQ.csv: expected vs observed p-values
            GWAS_<trait>_summary.csv: lambda_GC, tested markers, Bonferroni
                threshold, significant hits, FDR hits, nominal rejection rate,
                KS statistic and (MLM) h²
        """
        if self.qc is None:
            raise ValueError("QC has not been run. Call run_qc() first.")
        methods = normalize_methods(methods)
        if 'MLM' in methods and self.eigenK is None:
            raise ValueError("MLM needs the kinship decomposition. Call compute_population_structure() first.")

        self.log_step("Step 4: Running GWAS analysis")
        summary_rows = []

        for method in methods:
            step_start = time.time()
            if method == 'GLM':
                res = GWASKIN_GLM(
                    self.qc.phenotype, self.qc.genotype, snp_map=self.qc.geno_map,
                    min_samples=min_samples, cpu=self.cpu, verbose=False,
                )
            else:
                res = GWASKIN_MLM(
                    self.qc.phenotype, self.qc.genotype, eigenK=self.eigenK,
                    snp_map=self.qc.geno_map, min_samples=min_samples,
                    cpu=self.cpu, verbose=False,
                )
            self.results[method] = res

            threshold, n_tested = res.significance_threshold(alpha)
            lambda_gc = genomic_inflation_factor(res.pvalues)
            n_hits = int(np.sum(res.pvalues[res.tested_mask] <= threshold)) if n_tested else 0
            fdr_rejected, fdr_pvalues = fdr_correction(res.pvalues, alpha=alpha)
            ks_stat = uniformity_ks(res.pvalues)[0] if n_tested else np.nan

            table = res.to_dataframe()
            table['FDR'] = fdr_pvalues
            out_path = self.output_dir / f"GWAS_{self.trait_name}_{method}.csv"
            table.to_csv(out_path, index=False)

            expected, observed = qq_plot_data(res.pvalues)
            qq_path = self.output_dir / f"GWAS_{self.trait_name}_{method}_QQ.csv"
            pd.DataFrame({'Expected': expected, 'Observed': observed}).to_csv(qq_path, index=False)

            vc = getattr(res, 'variance_components', None)
            summary_rows.append({
                'Trait': self.trait_name,
                'Method': method,
                'N_Markers': res.n_markers,
                'N_Tested': n_tested,
                'Bonferroni_Threshold': threshold,
                'Significant_Hits': n_hits,
                'FDR_Hits': int(fdr_rejected.sum()),
                'Lambda_GC': lambda_gc,
                'Rejection_Rate': rejection_rate(res.pvalues, alpha),
                'KS_Statistic': ks_stat,
                'H2': vc.h2 if vc is not None else np.nan,
            })
            self.log(f"   {method}: {n_tested}/{res.n_markers} tested, lambda_GC = {lambda_gc:.3f}, "
                     f"{n_hits} hits at p <= {threshold:.2e}, {int(fdr_rejected.sum())} at FDR <= {alpha}")
            self.log_step(f"   {method}", step_start)

        self.summary = pd.DataFrame(summary_rows)
        sum_path = self.output_dir / f"GWAS_{self.trait_name}_summary.csv"
        self.summary.to_csv(sum_path, index=False)
        self.log(f"\nSaved summary to {sum_path}")
        self.log("\nGWAS Analysis Completed Successfully.")
        return self.results
