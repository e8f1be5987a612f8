"""
Marketing Attribution ETL — Entry Point
=========================================

Run: python main.py [--phase ingest|rollup|report] [--skip-ingest] [--dry-run]
                    [--no-email] [--window-days N]
"""

import sys

from dotenv import load_dotenv

load_dotenv()

from etl.pipeline_orchestrator import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
