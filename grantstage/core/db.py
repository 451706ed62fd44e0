"""
SQLite persistence for the local audit trail.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator

from . import config


@contextmanager
def get_db(path: str = None) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    db_path = path or config.DB_PATH
    config.ensure_db_directory(db_path)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def init_db(path: str = None):
    """Initialize the database with required tables."""
    with get_db(path) as conn:
        cursor = conn.cursor()

        # Append-only audit log; partition_month mirrors toYYYYMM(timestamp)
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS audit_log (
                id TEXT PRIMARY KEY,
                timestamp TEXT NOT NULL,
                partition_month INTEGER NOT NULL,
                actor TEXT NOT NULL,
                change_type TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_name TEXT NOT NULL,
                description TEXT,
                statements TEXT,      -- JSON array
                before_state TEXT,    -- JSON object or NULL
                after_state TEXT,     -- JSON object or NULL
                success INTEGER NOT NULL,
                error_message TEXT DEFAULT ''
            )
        ''')

        cursor.execute('CREATE INDEX IF NOT EXISTS idx_audit_ts_actor ON audit_log(timestamp DESC, actor)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_audit_partition ON audit_log(partition_month)')

        conn.commit()
