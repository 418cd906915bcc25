#!/usr/bin/env python
"""
Seed Data Script

Creates the database tables, seeds the default engineering blog sources and
optionally stores the user's topics.

Usage:
    python scripts/seed_data.py                                   # Tables + sources
    python scripts/seed_data.py --topics "distributed systems, databases"

Idempotent: Running multiple times will not create duplicates.
"""

import argparse
import logging
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()

from apricot.database import SessionLocal, init_db
from apricot.services.store import seed_default_sources, set_preference

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger('seed_data')


def seed(topics: str = None) -> int:
    """Create tables and seed sources; returns the number of sources created."""
    init_db()

    session = SessionLocal()
    try:
        created = seed_default_sources(session)
        if created:
            logger.info(f"Created {created} sources")
        else:
            logger.info("Sources already present, skipping")

        if topics:
            set_preference(session, 'topics', topics)
            logger.info(f"Saved topics: {topics}")
    except Exception as e:
        logger.error(f"Error seeding data: {e}")
        session.rollback()
        raise
    finally:
        session.close()

    return created


def main():
    parser = argparse.ArgumentParser(description='Create tables and seed default sources')
    parser.add_argument('--topics', help='Interests used to rank posts, as free text')

    args = parser.parse_args()

    try:
        logger.info("=" * 40)
        logger.info("SEEDING")
        logger.info("=" * 40)
        seed(args.topics)
        logger.info("=" * 40)
        logger.info("SEEDING COMPLETE")
        logger.info("=" * 40)
        return 0

    except Exception as e:
        logger.error(f"Seeding failed: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
