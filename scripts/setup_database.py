#!/usr/bin/env python3
"""
Settlement Database Setup Script

This script initializes the settlement database schema.
Run this before first use with STORAGE_BACKEND=postgres.
"""

import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import psycopg2
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT
import logging

from settlement.config import DB_CONFIG

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SCHEMA_FILES = [
    '01_redemptions.sql',
    '02_rebalance.sql',
]

EXPECTED_TABLES = [
    'redemption_requests',
    'account_cooldowns',
    'system_state',
    'nav_snapshots',
    'rebalance_legs',
]


def _admin_connection():
    return psycopg2.connect(
        host=DB_CONFIG['host'],
        port=DB_CONFIG['port'],
        database='postgres',
        user=DB_CONFIG['user'],
        password=DB_CONFIG['password']
    )


def check_postgres_connection():
    """Check if we can connect to PostgreSQL."""
    try:
        conn = _admin_connection()
        conn.close()
        return True
    except psycopg2.Error as e:
        logger.error(f"Cannot connect to PostgreSQL: {e}")
        return False


def create_database():
    """Create the settlement database if it doesn't exist."""
    try:
        conn = _admin_connection()
        conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)
        cursor = conn.cursor()

        cursor.execute(
            "SELECT 1 FROM pg_database WHERE datname = %s",
            (DB_CONFIG['database'],)
        )
        if cursor.fetchone():
            logger.info(f"Database '{DB_CONFIG['database']}' already exists")
        else:
            cursor.execute(f"CREATE DATABASE {DB_CONFIG['database']}")
            logger.info(f"Created database '{DB_CONFIG['database']}'")

        cursor.close()
        conn.close()
        return True

    except psycopg2.Error as e:
        logger.error(f"Error creating database: {e}")
        return False


def run_sql_file(filepath: Path):
    """Run a SQL file against the settlement database."""
    try:
        conn = psycopg2.connect(**DB_CONFIG)
        cursor = conn.cursor()

        logger.info(f"Running {filepath.name}...")
        cursor.execute(filepath.read_text())
        conn.commit()

        cursor.close()
        conn.close()

        logger.info(f"✓ {filepath.name} completed")
        return True

    except psycopg2.Error as e:
        logger.error(f"Error running {filepath.name}: {e}")
        return False


def setup_schema():
    """Set up the complete database schema."""
    sql_dir = Path(__file__).parent.parent / 'sql'

    logger.info("Setting up settlement database schema...")

    for filename in SCHEMA_FILES:
        filepath = sql_dir / filename
        if not filepath.exists():
            logger.error(f"Schema file not found: {filepath}")
            return False

        if not run_sql_file(filepath):
            return False

    return True


def verify_setup():
    """Verify that all tables and the one-pending index exist."""
    try:
        conn = psycopg2.connect(**DB_CONFIG)
        cursor = conn.cursor()

        cursor.execute("""
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = 'public'
            AND table_type = 'BASE TABLE'
            ORDER BY table_name;
        """)
        tables = [row[0] for row in cursor.fetchall()]

        logger.info(f"\nVerifying schema...")
        logger.info(f"Found {len(tables)} tables:")

        all_present = True
        for table in EXPECTED_TABLES:
            if table in tables:
                logger.info(f"  ✓ {table}")
            else:
                logger.error(f"  ✗ {table} - MISSING")
                all_present = False

        cursor.execute(
            "SELECT 1 FROM pg_indexes WHERE indexname = 'redemption_requests_one_pending'"
        )
        if cursor.fetchone() is not None:
            logger.info(f"  ✓ one-pending-per-account index")
        else:
            logger.error(f"  ✗ one-pending-per-account index - MISSING")
            all_present = False

        cursor.close()
        conn.close()

        return all_present

    except psycopg2.Error as e:
        logger.error(f"Error verifying setup: {e}")
        return False


def main():
    """Main setup routine."""
    logger.info("=" * 60)
    logger.info("Settlement Database Setup")
    logger.info("=" * 60)

    logger.info(f"\nDatabase configuration:")
    logger.info(f"  Host: {DB_CONFIG['host']}")
    logger.info(f"  Port: {DB_CONFIG['port']}")
    logger.info(f"  Database: {DB_CONFIG['database']}")
    logger.info(f"  User: {DB_CONFIG['user']}")

    logger.info("\nChecking PostgreSQL connection...")
    if not check_postgres_connection():
        logger.error("Cannot connect to PostgreSQL. Please check:")
        logger.error("  1. PostgreSQL is running")
        logger.error("  2. Database credentials in .env are correct")
        logger.error("  3. User has necessary permissions")
        sys.exit(1)

    logger.info("✓ PostgreSQL connection successful")

    logger.info("\nCreating database if needed...")
    if not create_database():
        logger.error("Failed to create database")
        sys.exit(1)

    logger.info("\nSetting up schema...")
    if not setup_schema():
        logger.error("Failed to set up schema")
        sys.exit(1)

    if not verify_setup():
        logger.error("\nSetup verification failed")
        sys.exit(1)

    logger.info("\n" + "=" * 60)
    logger.info("Database setup completed successfully!")
    logger.info("=" * 60)
    logger.info("\nStart the API with STORAGE_BACKEND=postgres.")


if __name__ == '__main__':
    main()
