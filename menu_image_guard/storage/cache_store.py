"""
Image cache keyed by normalized menu title.

Unbounded, no expiry. A failed lookup behaves like a miss and a failed
insert only costs a future cache hit.
"""

import logging
import sqlite3
import threading
from datetime import datetime
from typing import Dict, List, Optional

from menu_image_guard.core.errors import CacheWriteError

from .db import DEFAULT_DB_PATH, get_connection
from .models import CacheEntry

logger = logging.getLogger(__name__)


class SqliteImageCache:
    """Cache store backed by the ``image_cache`` table."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def lookup(self, key: str) -> Optional[str]:
        """Return the image reference cached for ``key``, or None.

        When racing generations inserted several rows for one key the
        oldest one wins. Database errors are logged and reported as a miss.
        """
        try:
            conn = get_connection(self.db_path)
            try:
                row = conn.execute(
                    "SELECT image_ref FROM image_cache WHERE key = ? ORDER BY id ASC LIMIT 1",
                    (key,)
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error("Error checking image cache for %r: %s", key, e)
            return None

        if row:
            logger.info("Image cache hit for: %s", key)
            return row[0]
        logger.info("Image cache miss for: %s", key)
        return None

    def insert(self, key: str, image_ref: str) -> None:
        """Append a cache row for ``key``.

        Raises:
            CacheWriteError: If the row could not be written
        """
        try:
            conn = get_connection(self.db_path)
            try:
                conn.execute(
                    "INSERT INTO image_cache (key, image_ref, created_at) VALUES (?, ?, ?)",
                    (key, image_ref, datetime.now().isoformat())
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise CacheWriteError(f"Failed to cache image for {key!r}: {e}") from e
        logger.info("Cached image for: %s", key)

    def entries(self, key: Optional[str] = None, limit: int = 100) -> List[CacheEntry]:
        """List cache rows, oldest first, optionally for a single key."""
        conn = get_connection(self.db_path)
        try:
            query = "SELECT key, image_ref, created_at FROM image_cache"
            params = []
            if key is not None:
                query += " WHERE key = ?"
                params.append(key)
            query += " ORDER BY id ASC LIMIT ?"
            params.append(limit)
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [
            CacheEntry(key=row[0], image_ref=row[1], created_at=datetime.fromisoformat(row[2]))
            for row in rows
        ]


class InMemoryImageCache:
    """Process-local cache store with the same first-writer-wins lookup."""

    def __init__(self):
        self._entries: Dict[str, List[CacheEntry]] = {}
        self._lock = threading.Lock()

    def lookup(self, key: str) -> Optional[str]:
        with self._lock:
            rows = self._entries.get(key)
            image_ref = rows[0].image_ref if rows else None
        logger.info("Image cache %s for: %s", "hit" if image_ref else "miss", key)
        return image_ref

    def insert(self, key: str, image_ref: str) -> None:
        entry = CacheEntry(key=key, image_ref=image_ref, created_at=datetime.now())
        with self._lock:
            self._entries.setdefault(key, []).append(entry)
