"""
Configuration management and loading.

Handles pipeline settings from YAML and the generation API key from the
environment.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from menu_image_guard.core.errors import ConfigurationError
from menu_image_guard.core.pricing import (
    DEFAULT_BUDGET_CAP,
    DEFAULT_IMAGE_MODEL,
    cost_per_image,
    to_money,
)

API_KEY_ENV_VAR = "GEMINI_API_KEY"
DEFAULT_API_BASE = "https://generativelanguage.googleapis.com/v1beta"

# Values shipped in sample env files that must never reach the API
_PLACEHOLDER_MARKERS = ("your_", "YOUR_GEMINI_API_KEY_HERE")


@dataclass(frozen=True)
class BudgetConfig:
    """Global spend cap for image generation."""
    unit_cost: Decimal
    cap: Decimal

    def __post_init__(self):
        """Validate budget values are positive."""
        if self.unit_cost <= 0:
            raise ValueError("unit_cost must be > 0")
        if self.cap <= 0:
            raise ValueError("cap must be > 0")


@dataclass(frozen=True)
class GenerationConfig:
    """Settings for the external image generation call."""
    model: str = DEFAULT_IMAGE_MODEL
    aspect_ratio: str = "4:3"
    api_base: str = DEFAULT_API_BASE
    timeout_seconds: float = 60.0

    def __post_init__(self):
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")


@dataclass(frozen=True)
class StorageConfig:
    """Where generated images are written and how they are addressed."""
    root: str = "assets"
    public_base_url: str = "http://localhost:8000/assets"


@dataclass(frozen=True)
class TaskConfig:
    """Deadline and polling cadence for detached generation tasks."""
    deadline_seconds: float = 90.0
    poll_interval_seconds: float = 2.0

    def __post_init__(self):
        if self.deadline_seconds <= 0:
            raise ValueError("deadline_seconds must be > 0")
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")


@dataclass(frozen=True)
class PipelineConfig:
    """Complete pipeline configuration."""
    budget: BudgetConfig
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    tasks: TaskConfig = field(default_factory=TaskConfig)


def default_pipeline_config() -> PipelineConfig:
    """Configuration used when no YAML file is given."""
    return PipelineConfig(
        budget=BudgetConfig(
            unit_cost=cost_per_image(DEFAULT_IMAGE_MODEL),
            cap=to_money(DEFAULT_BUDGET_CAP)
        )
    )


def load_pipeline_config(path: str) -> PipelineConfig:
    """Load and validate pipeline configuration from YAML file.

    Strict validation ensures no silent misconfigurations that could
    push image spend past the intended cap.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated PipelineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Pipeline config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {'budget', 'generation', 'storage', 'tasks'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if 'budget' not in raw_config:
        raise ValueError("Missing required 'budget' section")

    generation_data = _section(raw_config, 'generation', {'model', 'aspect_ratio', 'api_base', 'timeout_seconds'})
    generation = GenerationConfig(**_typed(generation_data, 'generation', {
        'model': str,
        'aspect_ratio': str,
        'api_base': str,
        'timeout_seconds': float,
    }))

    budget_data = _section(raw_config, 'budget', {'unit_cost', 'cap'})
    budget = _parse_budget(budget_data, generation.model)

    storage_data = _section(raw_config, 'storage', {'root', 'public_base_url'})
    storage = StorageConfig(**_typed(storage_data, 'storage', {
        'root': str,
        'public_base_url': str,
    }))

    tasks_data = _section(raw_config, 'tasks', {'deadline_seconds', 'poll_interval_seconds'})
    tasks = TaskConfig(**_typed(tasks_data, 'tasks', {
        'deadline_seconds': float,
        'poll_interval_seconds': float,
    }))

    return PipelineConfig(
        budget=budget,
        generation=generation,
        storage=storage,
        tasks=tasks
    )


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict[str, Any]:
    """Fetch an optional section and reject unknown keys in it."""
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _typed(data: Dict[str, Any], path: str, types: Dict[str, type]) -> Dict[str, Any]:
    """Check value types of a section, coercing ints where floats are expected."""
    parsed = {}
    for key, value in data.items():
        expected = types[key]
        if expected is float:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"'{key}' in {path} must be a number")
            parsed[key] = float(value)
        elif not isinstance(value, expected) or not value:
            raise ValueError(f"'{key}' in {path} must be a non-empty string")
        else:
            parsed[key] = value
    return parsed


def _parse_budget(data: Dict[str, Any], model: str) -> BudgetConfig:
    """Parse the budget section, pricing unit_cost from the model when omitted.

    Raises:
        ValueError: If configuration is invalid
    """
    for key in ('unit_cost', 'cap'):
        value = data.get(key)
        if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float))):
            raise ValueError(f"'{key}' in budget must be a number")

    if 'cap' not in data:
        raise ValueError("Missing required 'cap' budget")

    if 'unit_cost' in data:
        unit_cost = to_money(data['unit_cost'])
    else:
        unit_cost = cost_per_image(model)

    return BudgetConfig(unit_cost=unit_cost, cap=to_money(data['cap']))


def resolve_api_key(explicit: Optional[str] = None) -> str:
    """Return the generation API key or raise ConfigurationError.

    Args:
        explicit: Key passed in by the caller; wins over the environment

    Raises:
        ConfigurationError: If no usable key is available
    """
    api_key = explicit if explicit is not None else os.environ.get(API_KEY_ENV_VAR, "")
    api_key = api_key.strip()
    if not api_key or any(marker in api_key for marker in _PLACEHOLDER_MARKERS):
        raise ConfigurationError(
            f"Gemini API key not configured. Please set the {API_KEY_ENV_VAR} environment variable."
        )
    return api_key
