"""
Database connection management.

One SQLite file holds the image cache, the spend ledger and the menus.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "menu_images.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = 5.0) -> sqlite3.Connection:
    """Open a connection to the pipeline database.

    ``timeout`` bounds how long a write waits on another writer's lock
    before sqlite3 raises "database is locked"; the spend ledger relies on
    it to turn contention into a LedgerError.
    """
    return sqlite3.connect(str(Path(db_path)), timeout=timeout)
