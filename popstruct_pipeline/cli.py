#!/usr/bin/env python3
"""
Command-line entry point for the population structure clustering pipeline.
"""

import argparse
import logging
import signal
import sys

from .config import PipelineConfig
from .errors import ConfigurationError, PipelineError
from .pipeline import PipelineRun

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='popstruct-pipeline',
        description='Population structure clustering with ADMIXTURE, STRUCTURE and CLUMPAK',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Analysis steps:
  1. Data validation and preprocessing
  2. ADMIXTURE analysis (fast, cross-validation)
  3. STRUCTURE analysis (Bayesian, multiple runs)
  4. CLUMPAK alignment and comparison
  5. Visualization and summary report

Examples:
  # Basic analysis
  popstruct-pipeline data/sample 2 10 --clumpak-dir /opt/CLUMPAK

  # High-performance analysis
  popstruct-pipeline data/my_samples 2 8 --threads 4 --workers 4 --structure-runs 20

  # Quick ADMIXTURE-only analysis
  popstruct-pipeline data/my_samples 2 10 --skip-structure --skip-clumpak
        """
    )

    parser.add_argument('input_prefix',
                        help='Path to PLINK files without extension (e.g., data/sample)')
    parser.add_argument('min_k', type=int, help='Minimum number of clusters (e.g., 2)')
    parser.add_argument('max_k', type=int, help='Maximum number of clusters (e.g., 10)')

    parser.add_argument('--threads', type=int, default=4,
                        help='Threads per external tool invocation (default: 4)')
    parser.add_argument('--workers', type=int, default=1,
                        help='Trials run concurrently within a stage (default: 1)')
    parser.add_argument('--structure-runs', type=int, default=10,
                        help='Number of STRUCTURE runs per K (default: 10)')
    parser.add_argument('--admixture-cv', type=int, default=10,
                        help='Cross-validation folds for ADMIXTURE (default: 10)')
    parser.add_argument('--seed', type=int, default=12345,
                        help='Base random seed (default: 12345)')
    parser.add_argument('--timeout', type=float, default=None,
                        help='Per-trial time limit in seconds (default: none)')
    parser.add_argument('--burnin', type=int, default=10000,
                        help='STRUCTURE burnin iterations (default: 10000)')
    parser.add_argument('--numreps', type=int, default=20000,
                        help='STRUCTURE MCMC iterations after burnin (default: 20000)')
    parser.add_argument('--admixalpha', type=float, default=1.0,
                        help='STRUCTURE admixture model alpha (default: 1.0)')
    freq_model = parser.add_mutually_exclusive_group()
    freq_model.add_argument('--correlated', dest='freqscorr', action='store_const', const=1,
                            help='Correlated allele frequency model (default)')
    freq_model.add_argument('--independent', dest='freqscorr', action='store_const', const=0,
                            help='Independent allele frequency model')
    parser.set_defaults(freqscorr=1)
    parser.add_argument('--popflag', type=int, choices=[0, 1], default=0,
                        help='Use population data in STRUCTURE (0=no, 1=yes, default: 0)')
    parser.add_argument('--supervised', action='store_true',
                        help='Run supervised ADMIXTURE (requires a .pop file)')
    parser.add_argument('--output-base', default='output',
                        help='Base output directory (default: output)')
    parser.add_argument('--clumpak-dir', default=None,
                        help='Path to local CLUMPAK installation')
    parser.add_argument('--clumpak-threshold', type=float, default=0.8,
                        help='Similarity threshold for alignment (default: 0.8)')
    parser.add_argument('--viz-script', default='scripts/visualize_results.R',
                        help='R script producing the plots (default: scripts/visualize_results.R)')

    parser.add_argument('--skip-admixture', action='store_true', help='Skip ADMIXTURE analysis')
    parser.add_argument('--skip-structure', action='store_true', help='Skip STRUCTURE analysis')
    parser.add_argument('--skip-clumpak', action='store_true', help='Skip CLUMPAK alignment')
    parser.add_argument('--skip-visualization', action='store_true',
                        help='Skip visualization step')
    parser.add_argument('--no-cleanup', action='store_true', help='Keep temporary files')
    parser.add_argument('--resume', action='store_true',
                        help='Reuse trial outputs left by a previous run')
    parser.add_argument('--dry-run', action='store_true',
                        help='Only validate inputs and estimate the runtime')
    parser.add_argument('--quiet', action='store_true', help='Reduce output verbosity')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable debug output')

    return parser


def config_from_args(args: argparse.Namespace) -> PipelineConfig:
    return PipelineConfig(
        input_prefix=args.input_prefix,
        min_k=args.min_k,
        max_k=args.max_k,
        threads=args.threads,
        workers=args.workers,
        structure_runs=args.structure_runs,
        admixture_cv=args.admixture_cv,
        seed=args.seed,
        timeout=args.timeout,
        output_base=args.output_base,
        skip_admixture=args.skip_admixture,
        skip_structure=args.skip_structure,
        skip_clumpak=args.skip_clumpak,
        skip_visualization=args.skip_visualization,
        cleanup=not args.no_cleanup,
        resume=args.resume,
        burnin=args.burnin,
        numreps=args.numreps,
        admixalpha=args.admixalpha,
        freqscorr=args.freqscorr,
        popflag=args.popflag,
        supervised=args.supervised,
        clumpak_dir=args.clumpak_dir,
        clumpak_threshold=args.clumpak_threshold,
        viz_script=args.viz_script,
    )


def configure_logging(quiet: bool = False, verbose: bool = False):
    level = logging.INFO
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )


def run(argv=None) -> int:
    """
    Parse arguments and run the pipeline.

    Returns:
        Process exit code
    """
    args = build_parser().parse_args(argv)
    configure_logging(args.quiet, args.verbose)

    config = config_from_args(args)
    try:
        config.validate()
    except ConfigurationError as e:
        print(f"✗ {e}", file=sys.stderr)
        return EXIT_USAGE

    if not args.quiet:
        print("=" * 60)
        print("Population Structure Clustering Pipeline")
        print("=" * 60)
        print(f"Input: {config.input_prefix}")
        print(f"K range: {config.min_k} to {config.max_k}")
        print(f"Threads: {config.threads}")
        print(f"Output: {config.output_base}")
        print("=" * 60)

    pipeline = PipelineRun(config)

    def handle_sigterm(signum, frame):
        pipeline.cancel()

    previous_handler = signal.signal(signal.SIGTERM, handle_sigterm)
    try:
        if args.dry_run:
            pipeline.preflight()
            print("✓ Pre-flight checks passed (dry run, no analysis performed)")
            return EXIT_OK
        summary = pipeline.run()
    except ConfigurationError as e:
        print(f"✗ {e}", file=sys.stderr)
        return EXIT_USAGE
    except PipelineError as e:
        print(f"✗ {e}", file=sys.stderr)
        return EXIT_FAILURE
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    if not args.quiet:
        print()
        print("=" * 60)
        print("Pipeline Completed Successfully!")
        print("=" * 60)
        print(f"Output directory: {config.output_base}")
        print(f"Summary report: {summary}")
        if pipeline.warnings:
            print(f"⚠ {len(pipeline.warnings)} warning(s), see the summary report")
        print("=" * 60)

    return EXIT_OK


def main(argv=None):
    """Main entry point."""
    sys.exit(run(argv))


if __name__ == '__main__':
    main()
