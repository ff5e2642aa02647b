"""
Repository pattern for data access.

Creates the schema shared by the cache, ledger and menu tables and
provides access to menu records, the entities that own generated images.
"""

import logging
from datetime import datetime
from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import MenuRecord

logger = logging.getLogger(__name__)

LEDGER_ROW_ID = 1


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the cache, ledger and menu tables if they don't exist.

    The ledger is a single row that is seeded with zero counters; it is
    only ever mutated through the spend ledger's transactions.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS image_cache (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                key TEXT NOT NULL,
                image_ref TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_image_cache_key ON image_cache (key)")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS spend_ledger (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                units_generated INTEGER NOT NULL DEFAULT 0,
                total_spent TEXT NOT NULL DEFAULT '0',
                reserved_units INTEGER NOT NULL DEFAULT 0,
                reserved_amount TEXT NOT NULL DEFAULT '0',
                last_updated TEXT
            )
        """)
        conn.execute(
            "INSERT OR IGNORE INTO spend_ledger (id) VALUES (?)",
            (LEDGER_ROW_ID,)
        )
        conn.execute("""
            CREATE TABLE IF NOT EXISTS menu (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                generating INTEGER NOT NULL DEFAULT 1,
                image_ref TEXT,
                created_at TEXT NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


class MenuRepository:
    """Repository for menu records and their image state.

    The only mutation besides creation is ``resolve_menu_image``, which
    can succeed once per menu: a resolved menu never goes back to
    generating.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def create_menu(self, title: str) -> MenuRecord:
        """Insert a menu whose illustration is still being generated.

        Args:
            title: Menu title as entered by the user

        Returns:
            The stored record with ``generating`` set
        """
        created_at = datetime.now()
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "INSERT INTO menu (title, generating, image_ref, created_at) VALUES (?, 1, NULL, ?)",
                (title, created_at.isoformat())
            )
            conn.commit()
            menu_id = cursor.lastrowid
        finally:
            conn.close()
        return MenuRecord(
            id=menu_id,
            title=title,
            generating=True,
            image_ref=None,
            created_at=created_at
        )

    def get_menu(self, menu_id: int) -> Optional[MenuRecord]:
        """Fetch a menu by id, or None if it doesn't exist."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT id, title, generating, image_ref, created_at FROM menu WHERE id = ?",
                (menu_id,)
            ).fetchone()
        finally:
            conn.close()
        return _row_to_menu(row) if row else None

    def list_menus(self, limit: int = 100) -> List[MenuRecord]:
        """Return menus newest first."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT id, title, generating, image_ref, created_at FROM menu ORDER BY id DESC LIMIT ?",
                (limit,)
            ).fetchall()
        finally:
            conn.close()
        return [_row_to_menu(row) for row in rows]

    def resolve_menu_image(self, menu_id: int, image_ref: Optional[str]) -> bool:
        """Move a menu to its terminal image state.

        Clears ``generating`` and stores ``image_ref`` when one is given.
        The update only applies while the menu is still generating, so a
        second resolution is a no-op.

        Args:
            menu_id: Menu to resolve
            image_ref: Public URL of the illustration, or None on failure

        Returns:
            True if this call performed the transition
        """
        conn = get_connection(self.db_path)
        try:
            if image_ref:
                cursor = conn.execute(
                    "UPDATE menu SET generating = 0, image_ref = ? WHERE id = ? AND generating = 1",
                    (image_ref, menu_id)
                )
            else:
                cursor = conn.execute(
                    "UPDATE menu SET generating = 0 WHERE id = ? AND generating = 1",
                    (menu_id,)
                )
            conn.commit()
            updated = cursor.rowcount == 1
        finally:
            conn.close()

        if updated:
            logger.info("Updated menu %s with image: %s", menu_id, "success" if image_ref else "failed")
        else:
            logger.warning("Menu %s was already resolved or does not exist", menu_id)
        return updated


def _row_to_menu(row) -> MenuRecord:
    return MenuRecord(
        id=row[0],
        title=row[1],
        generating=bool(row[2]),
        image_ref=row[3],
        created_at=datetime.fromisoformat(row[4])
    )
