"""
Command line interface for degset.
"""

import argparse
import logging
import os
import sys

from .config import load_config
from .errors import DegsetError
from .pipeline import run_analysis, setup_logging


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog='degset',
        description="Differential expression and gene set testing for bulk RNA-seq")
    parser.add_argument("config_file", help="Path to TOML configuration file")
    parser.add_argument("--output-dir", help="Override output directory")
    parser.add_argument("--seed", type=int, help="Override random seed of the rotation test")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point for the CLI."""
    args = parse_args(argv)
    level = logging.DEBUG if args.verbose else logging.INFO

    try:
        config = load_config(args.config_file)
    except (DegsetError, ValueError) as e:
        print(f"Error loading configuration file: {e}", file=sys.stderr)
        return 1

    if args.output_dir:
        config.output_dir = args.output_dir
    if args.seed is not None:
        config.seed = args.seed

    log_file = os.path.join(config.output_dir, 'degset.log') if config.output_dir else None
    logger = setup_logging(level, log_file=log_file)
    logger.info("Using configuration file: %s", args.config_file)

    try:
        run_analysis(config)
    except DegsetError as e:
        logger.error("Analysis failed: %s", e)
        return 1
    logger.info("Analysis completed successfully")
    return 0


if __name__ == "__main__":
    sys.exit(main())
