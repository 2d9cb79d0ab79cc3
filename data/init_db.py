"""
Database Initialization Script

Creates SQLite or PostgreSQL database with the engine schema.

Usage:
    python data/init_db.py              # Initialize SQLite (default)
    python data/init_db.py --cloud      # Initialize Supabase PostgreSQL
"""

import logging
import os
import sqlite3
from pathlib import Path

try:
    import psycopg2
except ImportError:
    psycopg2 = None

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / 'schema.sql'


def load_schema_sql() -> str:
    """Read schema.sql shipped next to this module"""
    with open(SCHEMA_PATH, 'r') as f:
        return f.read()


def init_sqlite(db_path='data/yield_allocator.db'):
    """Initialize SQLite database with schema"""

    # Ensure data directory exists
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    print(f"📂 Creating SQLite database: {db_path}")
    conn = sqlite3.connect(db_path)

    try:
        conn.executescript(load_schema_sql())
        conn.commit()

        cursor = conn.cursor()
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
        tables = [row[0] for row in cursor.fetchall()]
        print(f"✅ Created tables: {', '.join(tables)}")
    finally:
        conn.close()

    print(f"✅ Database initialized: {db_path}\n")


def init_postgres(connection_url):
    """Initialize PostgreSQL database with schema"""

    if psycopg2 is None:
        raise ImportError("psycopg2 is required for PostgreSQL support. Install with: pip install psycopg2-binary")

    if not connection_url:
        raise ValueError("SUPABASE_URL not set - export SUPABASE_URL='postgresql://...'")

    print(f"🌐 Connecting to PostgreSQL...")
    conn = psycopg2.connect(connection_url)

    try:
        cursor = conn.cursor()
        cursor.execute(load_schema_sql())
        conn.commit()

        cursor.execute("""
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = 'public'
              AND table_type = 'BASE TABLE'
        """)
        tables = [row[0] for row in cursor.fetchall()]
        print(f"✅ Created tables: {', '.join(tables)}")
    except Exception:
        conn.rollback()
        logger.exception("[DB] Schema creation failed")
        raise
    finally:
        conn.close()

    print(f"✅ Database initialized: Supabase PostgreSQL\n")


def main():
    """Main entry point"""
    import sys

    if len(sys.argv) > 1 and sys.argv[1] == '--cloud':
        init_postgres(os.getenv('SUPABASE_URL'))
    else:
        init_sqlite()


if __name__ == '__main__':
    main()
