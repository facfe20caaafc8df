import argparse
from typing import List, Optional

from ..pipelines.gwas import GWASPipeline, SUPPORTED_METHODS, normalize_methods


def parse_args(argv: Optional[List[str]] = None):
    """Parse command line arguments for GWAS pipeline"""
    parser = argparse.ArgumentParser(
        description="Kinship-corrected GWAS (GCTA kinship, P3D mixed model, naive GLM)",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    # Required arguments
    parser.add_argument("--phenotype", "-p", required=True,
                       help="Phenotype file (CSV/TSV with ID column and trait columns)")
    parser.add_argument("--genotype", "-g", required=True,
                       help="Numeric genotype file (CSV/TSV, ID column + one 0/1/2 column per marker)")

    # Optional arguments
    parser.add_argument("--map", "-m", default=None,
                       help="Genetic map file (CSV/TSV with SNP, CHROM, POS)")
    parser.add_argument("--trait", "-t", default=None,
                       help="Trait column to analyze (default: first trait column)")
    parser.add_argument("--outputdir", "-o", default="./GWAS_results",
                       help="Output directory")
    parser.add_argument("--methods", default=",".join(SUPPORTED_METHODS),
                       help="Methods to run (comma-separated)")
    parser.add_argument("--n-pcs", type=int, default=3,
                       help="Number of PCs to save")

    # Thresholds
    parser.add_argument("--maf", type=float, default=0.05,
                       help="Minimum minor allele frequency")
    parser.add_argument("--max-missing", type=float, default=1.0,
                       help="Maximum missing-call rate per marker")
    parser.add_argument("--min-samples", type=int, default=3,
                       help="Minimum observed samples for a marker to be tested")
    parser.add_argument("--alpha", type=float, default=0.05,
                       help="Bonferroni alpha")

    # Resources
    parser.add_argument("--cpu", type=int, default=1,
                       help="Threads for marker batches (0 = all cores)")
    parser.add_argument("--quiet", action='store_true',
                       help="Suppress progress output")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    methods = normalize_methods(args.methods)

    pipeline = GWASPipeline(output_dir=args.outputdir, cpu=args.cpu, verbose=not args.quiet)
    pipeline.load_data(
        phenotype_file=args.phenotype,
        genotype_file=args.genotype,
        map_file=args.map,
        trait=args.trait,
    )
    pipeline.run_qc(maf_threshold=args.maf, max_missing=args.max_missing)
    pipeline.compute_population_structure(n_pcs=args.n_pcs)
    pipeline.run_analysis(methods=methods, alpha=args.alpha, min_samples=args.min_samples)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
