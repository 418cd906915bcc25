#!/usr/bin/env python
"""
Discovery Run Script

Runs one discovery batch (fetch, rank, summarize) and prints the results as
JSON.

Usage:
    python scripts/run_discovery.py            # Run discovery
    python scripts/run_discovery.py --latest   # Show the last run's results

Exit codes:
    0 - Success
    1 - Failure
"""

import argparse
import json
import logging
import os
import sys
from contextlib import redirect_stdout

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()

from apricot.config import load_settings
from apricot.database import SessionLocal, init_db
from apricot.services.discovery import get_latest_discovery, run_discovery
from apricot.services.errors import ApricotError
from apricot.services.oracle import create_oracle

# Logs go to stderr so stdout stays valid JSON
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stderr)
    ]
)
logger = logging.getLogger('run_discovery')


def main():
    parser = argparse.ArgumentParser(description='Run one discovery batch')
    parser.add_argument('--latest', action='store_true', help='Print the latest stored results without fetching')
    args = parser.parse_args()

    init_db()
    session = SessionLocal()
    try:
        # Progress lines go to stderr with the logs
        with redirect_stdout(sys.stderr):
            if args.latest:
                result = get_latest_discovery(session)
            else:
                settings = load_settings()
                result = run_discovery(session, create_oracle(settings), settings)
    except (ApricotError, ValueError) as e:
        logger.error(f"Discovery failed: {e}")
        return 1
    finally:
        session.close()

    json.dump(result.to_dict(), sys.stdout, indent=2)
    sys.stdout.write('\n')
    logger.info(f"{len(result.results)} results, {len(result.failed_feeds)} failed feeds")
    return 0


if __name__ == '__main__':
    sys.exit(main())
