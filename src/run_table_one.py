"""
Main script to compute the Table One statistics of the MIMIC-III ICU cohort
"""

import argparse
import logging
import os
import sys

import pandas as pd

# Add src to path
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from table_one import TableOneError, load_config, run_table_one
from table_one.constants import STRATIFICATION_KEYS, TIE_POLICIES
from table_one.config import BACKENDS
from table_one.report import render_report

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Compute Table One statistics for first ICU stays')
    parser.add_argument('--stratify-by', dest='stratify_by', action='append',
                        choices=STRATIFICATION_KEYS,
                        help='Stratification key (repeatable, default: all)')
    parser.add_argument('--env-file', type=str, default=None,
                        help='.env file with database settings')
    parser.add_argument('--backend', type=str, default=None, choices=BACKENDS,
                        help='Source database backend')
    parser.add_argument('--duckdb-path', type=str, default=None,
                        help='MIMIC-III DuckDB database file')
    parser.add_argument('--schema', type=str, default=None,
                        help='Schema holding the MIMIC-III tables')
    parser.add_argument('--output-dir', type=str, default=None,
                        help='Directory to save the reports')
    parser.add_argument('--tie-policy', type=str, default=None, choices=TIE_POLICIES,
                        help='Keep or reject patients with tied first ICU stays')
    return parser


def main(argv=None) -> int:
    """Main function"""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(
            args.env_file,
            backend=args.backend,
            duckdb_path=args.duckdb_path,
            schema=args.schema,
            output_dir=args.output_dir,
            tie_policy=args.tie_policy,
        )
        logger.info(f"Using configuration: backend={config.backend}, output_dir={config.output_dir}")

        results = run_table_one(config, args.stratify_by)
    except TableOneError as e:
        logger.error(f"Table One computation failed: {e}")
        return 1

    with pd.option_context('display.max_columns', None, 'display.width', 200):
        for stratify_by, result in results.items():
            print("\n" + "=" * 80)
            print(f"TABLE ONE BY {stratify_by.upper()}")
            print("=" * 80)
            print(render_report(result.report))
            print("=" * 80)
            logger.info(f"Report saved to {result.report_path}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
