"""
Tests for the CLI interface.
"""
import os
import tempfile
from decimal import Decimal
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from menu_image_guard.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from menu_image_guard.core.pipeline import ImagePipeline
from menu_image_guard.sdk.gemini_client import GeneratedImage
from menu_image_guard.storage.cache_store import SqliteImageCache
from menu_image_guard.storage.db import get_connection
from menu_image_guard.storage.ledger import SqliteSpendLedger
from menu_image_guard.storage.repository import MenuRepository, initialize_schema

runner = CliRunner()


class FakeGenerator:
    def __init__(self):
        self.prompts = []

    async def generate(self, prompt):
        self.prompts.append(prompt)
        return GeneratedImage(payload=b"image-bytes", mime_type="image/png")


class StaticAssetStore:
    def store(self, key, payload, mime_type):
        return f"https://cdn.test/images/{key.replace(' ', '-')}.png"


@pytest.fixture
def workspace():
    """Temporary database and fast-polling config."""
    temp_dir = tempfile.mkdtemp()
    db_path = os.path.join(temp_dir, "test.db")
    config_path = os.path.join(temp_dir, "pipeline.yaml")
    with open(config_path, 'w', encoding='utf-8') as f:
        yaml.dump({
            "budget": {"cap": 25},
            "tasks": {"deadline_seconds": 5, "poll_interval_seconds": 0.01}
        }, f)
    yield db_path, config_path
    import shutil
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def fake_pipeline():
    """Replace the wired pipeline with one using fake generation and storage."""
    generator = FakeGenerator()

    def build(config, db_path, api_key=None, ledger=None):
        return ImagePipeline(
            cache=SqliteImageCache(db_path),
            ledger=SqliteSpendLedger(db_path),
            generator=generator,
            assets=StaticAssetStore(),
            budget=config.budget
        )

    with patch('menu_image_guard.cli.main.build_pipeline', side_effect=build):
        yield generator


class TestCLI:
    """Test CLI commands."""

    def test_init_creates_database(self, workspace):
        db_path, _ = workspace
        result = runner.invoke(app, ["init", "--db", db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized" in result.output
        assert os.path.exists(db_path)

    def test_budget_shows_cap(self, workspace):
        db_path, _ = workspace
        initialize_schema(db_path)

        result = runner.invoke(app, ["budget", "--db", db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Image Generation Budget" in result.output
        assert "$25.00" in result.output
        assert "$0.04" in result.output

    def test_budget_missing_config_fails(self, workspace):
        db_path, _ = workspace
        initialize_schema(db_path)

        result = runner.invoke(app, ["budget", "--db", db_path, "--config", "nonexistent.yaml"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "not found" in result.output

    def test_lookup_miss(self, workspace):
        db_path, _ = workspace
        initialize_schema(db_path)

        result = runner.invoke(app, ["lookup", "Sarah's Chili", "--db", db_path])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Key: sarahs chili" in result.output
        assert "Filename: sarahs-chili" in result.output
        assert "Not cached" in result.output

    def test_lookup_hit(self, workspace):
        db_path, _ = workspace
        initialize_schema(db_path)
        SqliteImageCache(db_path).insert("tacos", "https://cdn.test/images/tacos.png")

        result = runner.invoke(app, ["lookup", "TACOS!", "--db", db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "https://cdn.test/images/tacos.png" in result.output
        assert "cache rows" not in result.output

    def test_lookup_lists_duplicate_rows(self, workspace):
        db_path, _ = workspace
        initialize_schema(db_path)
        cache = SqliteImageCache(db_path)
        cache.insert("tacos", "https://cdn.test/a.png")
        cache.insert("tacos", "https://cdn.test/b.png")

        result = runner.invoke(app, ["lookup", "Tacos", "--db", db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Cached: https://cdn.test/a.png" in result.output
        assert "2 cache rows for this key" in result.output
        assert "https://cdn.test/b.png" in result.output

    def test_lookup_empty_key(self, workspace):
        db_path, _ = workspace
        result = runner.invoke(app, ["lookup", "!!!", "--db", db_path])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "no cacheable characters" in result.output

    def test_generate_resolves_menu(self, workspace, fake_pipeline):
        db_path, config_path = workspace

        result = runner.invoke(app, ["generate", "Thanksgiving Dinner", "--db", db_path, "--config", config_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "https://cdn.test/images/thanksgiving-dinner.png" in result.output
        assert len(fake_pipeline.prompts) == 1

        menus = MenuRepository(db_path).list_menus()
        assert len(menus) == 1
        assert menus[0].generating is False
        assert menus[0].image_ref == "https://cdn.test/images/thanksgiving-dinner.png"
        assert SqliteSpendLedger(db_path).snapshot().total_spent == Decimal("0.04")

    def test_generate_second_time_uses_cache(self, workspace, fake_pipeline):
        db_path, config_path = workspace

        runner.invoke(app, ["generate", "Tacos", "--db", db_path, "--config", config_path])
        result = runner.invoke(app, ["generate", "tacos!!", "--db", db_path, "--config", config_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert len(fake_pipeline.prompts) == 1
        assert SqliteSpendLedger(db_path).snapshot().units_generated == 1

    def test_generate_budget_exhausted(self, workspace, fake_pipeline):
        db_path, config_path = workspace
        initialize_schema(db_path)
        conn = get_connection(db_path)
        conn.execute("UPDATE spend_ledger SET units_generated = 625, total_spent = '25.00' WHERE id = 1")
        conn.commit()
        conn.close()

        result = runner.invoke(app, ["generate", "Tacos", "--db", db_path, "--config", config_path])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "no image generated" in result.output
        assert fake_pipeline.prompts == []

    def test_release_holds(self, workspace):
        db_path, _ = workspace
        initialize_schema(db_path)
        ledger = SqliteSpendLedger(db_path)
        ledger.try_reserve(Decimal("0.04"), Decimal("25"))
        ledger.try_reserve(Decimal("0.04"), Decimal("25"))

        result = runner.invoke(app, ["release-holds", "--db", db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Released 2 hold(s)" in result.output
        assert ledger.snapshot().reserved_units == 0
