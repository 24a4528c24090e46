#!/usr/bin/env python3
"""
Command line interface for the gene set enrichment pipeline.
"""

import argparse
import logging
import sys
import tempfile
from pathlib import Path
from typing import List, Optional

import tomli
from tomli_w import dump

from .exceptions import BulkGseaError
from .pipeline import GeneSetEnrichmentPipeline
from .utils import setup_logging


def parse_args(argv: Optional[List[str]] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Run permutation-based gene set enrichment analysis"
    )

    parser.add_argument(
        "config_file",
        type=str,
        help="Path to TOML configuration file"
    )

    input_group = parser.add_argument_group("Input file overrides")
    input_group.add_argument(
        "--ranked-list",
        type=str,
        help="Override ranked list file path"
    )
    input_group.add_argument(
        "--gene-sets",
        type=str,
        help="Override gene set file path (GMT or long-format TSV)"
    )
    input_group.add_argument(
        "--score-column",
        type=str,
        help="Override the ranked list score column"
    )

    output_group = parser.add_argument_group("Output configuration overrides")
    output_group.add_argument(
        "--output-dir",
        type=str,
        help="Override output directory"
    )

    analysis_group = parser.add_argument_group("Analysis parameter overrides")
    analysis_group.add_argument(
        "--min-size",
        type=int,
        help="Override minimum gene set size (exclusive)"
    )
    analysis_group.add_argument(
        "--max-size",
        type=int,
        help="Override maximum gene set size (exclusive)"
    )
    analysis_group.add_argument(
        "--trial-schedule",
        type=int,
        nargs="+",
        help="Override cumulative permutation counts per stage"
    )
    analysis_group.add_argument(
        "--min-exceedances",
        type=int,
        help="Override exceedances needed to stop escalating"
    )
    analysis_group.add_argument(
        "--seed",
        type=int,
        help="Override random seed"
    )
    analysis_group.add_argument(
        "--power",
        type=float,
        help="Override hit weighting exponent"
    )
    analysis_group.add_argument(
        "--use-ranks",
        action="store_true",
        help="Weight hits by rank instead of score"
    )
    analysis_group.add_argument(
        "--num-threads",
        type=int,
        help="Override number of worker processes"
    )
    analysis_group.add_argument(
        "--verbose",
        action="store_true",
        help="Log debug messages to the console"
    )

    return parser.parse_args(argv)


def update_config(config: dict, args: argparse.Namespace) -> dict:
    """Update configuration with command line overrides."""
    for section in ('input', 'output', 'analysis'):
        config.setdefault(section, {})

    if args.ranked_list:
        config['input']['ranked_list_file'] = args.ranked_list
    if args.gene_sets:
        config['input']['gene_sets_file'] = args.gene_sets
    if args.score_column:
        config['input']['score_column'] = args.score_column

    if args.output_dir:
        config['output']['directory'] = args.output_dir
        config['output'].pop('output_dir', None)

    if args.min_size is not None:
        config['analysis']['min_size'] = args.min_size
    if args.max_size is not None:
        config['analysis']['max_size'] = args.max_size
    if args.trial_schedule:
        config['analysis']['trial_schedule'] = args.trial_schedule
    if args.min_exceedances is not None:
        config['analysis']['min_exceedances'] = args.min_exceedances
    if args.seed is not None:
        config['analysis']['random_seed'] = args.seed
    if args.power is not None:
        config['analysis']['power'] = args.power
    if args.use_ranks:
        config['analysis']['use_ranks'] = True
    if args.num_threads is not None:
        config['analysis']['num_threads'] = args.num_threads

    return config


def main(argv: Optional[List[str]] = None):
    """Main entry point for the CLI."""
    args = parse_args(argv)

    try:
        with open(args.config_file, 'rb') as f:
            config = tomli.load(f)
    except Exception as e:
        print(f"Error loading configuration file: {str(e)}")
        sys.exit(1)

    config = update_config(config, args)

    output_dir = Path(config['output'].get('output_dir', config['output'].get('directory', 'results')))
    setup_logging(
        output_dir / 'logs',
        level=logging.DEBUG,
        console_level=logging.DEBUG if args.verbose else logging.INFO
    )

    logging.info("Starting gene set enrichment analysis pipeline")
    logging.info(f"Using configuration file: {args.config_file}")

    with tempfile.TemporaryDirectory() as tmp_dir:
        merged_config_path = Path(tmp_dir) / "config.toml"
        with open(merged_config_path, 'wb') as f:
            dump(config, f)

        try:
            pipeline = GeneSetEnrichmentPipeline(merged_config_path)
            pipeline.run()
            logging.info("Pipeline execution completed successfully")
        except (BulkGseaError, ValueError, FileNotFoundError, RuntimeError) as e:
            logging.error(f"Pipeline execution failed: {str(e)}")
            sys.exit(1)


if __name__ == "__main__":
    main()
