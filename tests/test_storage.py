"""
Unit tests for storage layer.

Tests schema creation, the image cache and menu records.
"""

import os
import tempfile

import pytest

from menu_image_guard.core.errors import CacheWriteError
from menu_image_guard.storage.cache_store import InMemoryImageCache, SqliteImageCache
from menu_image_guard.storage.db import get_connection
from menu_image_guard.storage.repository import MenuRepository, initialize_schema


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify all tables are created."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                cursor = conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
                )
                tables = [row[0] for row in cursor.fetchall()]
                assert tables == ["image_cache", "menu", "spend_ledger"]

                cursor = conn.execute("PRAGMA table_info(image_cache)")
                column_names = [col[1] for col in cursor.fetchall()]
                assert column_names == ['id', 'key', 'image_ref', 'created_at']
            finally:
                conn.close()

    def test_ledger_row_seeded_once(self):
        """The ledger singleton row exists with zero counters, even after re-initialization."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                rows = conn.execute(
                    "SELECT id, units_generated, total_spent, reserved_units FROM spend_ledger"
                ).fetchall()
            finally:
                conn.close()
            assert rows == [(1, 0, '0', 0)]


class TestSqliteImageCache:
    """Test the SQLite cache store."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.cache = SqliteImageCache(self.db_path)

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_miss_on_empty_cache(self):
        assert self.cache.lookup("tacos") is None

    def test_insert_then_hit(self):
        self.cache.insert("tacos", "https://cdn.test/images/tacos.png")
        assert self.cache.lookup("tacos") == "https://cdn.test/images/tacos.png"

    def test_first_writer_wins(self):
        """When racing tasks insert duplicates, the oldest row is returned."""
        self.cache.insert("tacos", "https://cdn.test/first.png")
        self.cache.insert("tacos", "https://cdn.test/second.png")

        assert self.cache.lookup("tacos") == "https://cdn.test/first.png"
        assert len(self.cache.entries("tacos")) == 2

    def test_keys_are_independent(self):
        self.cache.insert("tacos", "https://cdn.test/tacos.png")
        assert self.cache.lookup("taco") is None

    def test_entries_listing(self):
        self.cache.insert("tacos", "https://cdn.test/tacos.png")
        self.cache.insert("chili", "https://cdn.test/chili.png")

        entries = self.cache.entries()
        assert [entry.key for entry in entries] == ["tacos", "chili"]
        assert entries[0].image_ref == "https://cdn.test/tacos.png"

    def test_lookup_error_is_a_miss(self):
        """A broken database is reported as a miss, not an exception."""
        cache = SqliteImageCache(os.path.join(self.temp_dir, "missing-dir", "nope.db"))
        assert cache.lookup("tacos") is None

    def test_lookup_without_schema_is_a_miss(self):
        cache = SqliteImageCache(os.path.join(self.temp_dir, "empty.db"))
        assert cache.lookup("tacos") is None

    def test_insert_error_raises_cache_write_error(self):
        cache = SqliteImageCache(os.path.join(self.temp_dir, "empty.db"))
        with pytest.raises(CacheWriteError, match="tacos"):
            cache.insert("tacos", "https://cdn.test/tacos.png")


class TestInMemoryImageCache:
    """Test the in-memory cache store."""

    def test_insert_then_hit(self):
        cache = InMemoryImageCache()
        assert cache.lookup("chili") is None
        cache.insert("chili", "ref-1")
        assert cache.lookup("chili") == "ref-1"

    def test_first_writer_wins(self):
        cache = InMemoryImageCache()
        cache.insert("chili", "ref-1")
        cache.insert("chili", "ref-2")
        assert cache.lookup("chili") == "ref-1"


class TestMenuRepository:
    """Test menu records and their single terminal transition."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repository = MenuRepository(self.db_path)

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_created_menu_is_generating(self):
        menu = self.repository.create_menu("Sarah's Chili")

        assert menu.generating is True
        assert menu.image_ref is None
        stored = self.repository.get_menu(menu.id)
        assert stored.title == "Sarah's Chili"
        assert stored.generating is True
        assert stored.image_ref is None

    def test_resolve_with_image(self):
        menu = self.repository.create_menu("Tacos")

        assert self.repository.resolve_menu_image(menu.id, "https://cdn.test/tacos.png") is True

        stored = self.repository.get_menu(menu.id)
        assert stored.generating is False
        assert stored.image_ref == "https://cdn.test/tacos.png"

    def test_resolve_without_image(self):
        menu = self.repository.create_menu("Tacos")

        assert self.repository.resolve_menu_image(menu.id, None) is True

        stored = self.repository.get_menu(menu.id)
        assert stored.generating is False
        assert stored.image_ref is None

    def test_second_resolution_is_ignored(self):
        """A resolved menu never changes again."""
        menu = self.repository.create_menu("Tacos")
        self.repository.resolve_menu_image(menu.id, None)

        assert self.repository.resolve_menu_image(menu.id, "https://cdn.test/late.png") is False

        stored = self.repository.get_menu(menu.id)
        assert stored.generating is False
        assert stored.image_ref is None

    def test_unknown_menu(self):
        assert self.repository.get_menu(999) is None
        assert self.repository.resolve_menu_image(999, None) is False

    def test_list_menus_newest_first(self):
        self.repository.create_menu("Tacos")
        self.repository.create_menu("Chili")

        assert [menu.title for menu in self.repository.list_menus()] == ["Chili", "Tacos"]
