"""
Configuration management and loading.

Handles the meter configuration (where each source's logs live, billing
window settings, status thresholds) and external pricing tables.
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..adapters.base import CollectOptions
from ..adapters.registry import system_names
from ..core.pricing import PRICING_TABLE, ModelPricing, PricingTable

# Single-path and multi-path option keys accepted per source
SOURCE_PATH_KEYS = {
    "claude_code": {"projects_dir", "alt_projects_dir"},
    "codex": {"sessions_dir"},
    "opencode": {"db_path", "events_file"},
}
SOURCE_PATH_LIST_KEYS = {
    "opencode": {"events_dirs"},
}

_RATE_KEYS = {
    "input": "input_per_million",
    "output": "output_per_million",
    "cache_read": "cache_read_per_million",
    "cache_create": "cache_create_per_million",
}
_REQUIRED_RATE_KEYS = {"input", "output"}


@dataclass(frozen=True)
class SourceConfig:
    """Resolved locations for one telemetry source."""
    system: str
    paths: Dict[str, str] = field(default_factory=dict)
    path_lists: Dict[str, List[str]] = field(default_factory=dict)
    account_id: Optional[str] = None


@dataclass(frozen=True)
class BillingConfig:
    """Billing window settings."""
    block_hours: float = 5.0
    burn_rate_min_elapsed_seconds: float = 60.0

    def __post_init__(self):
        """Validate billing values."""
        if self.block_hours <= 0:
            raise ValueError("billing.block_hours must be > 0")
        if self.burn_rate_min_elapsed_seconds < 0:
            raise ValueError("billing.burn_rate_min_elapsed_seconds must be >= 0")

    @property
    def block_duration(self) -> timedelta:
        return timedelta(hours=self.block_hours)

    @property
    def min_burn_elapsed(self) -> timedelta:
        return timedelta(seconds=self.burn_rate_min_elapsed_seconds)


@dataclass(frozen=True)
class ThresholdConfig:
    """Percent-of-quota thresholds for status derivation."""
    near_limit: float = 90.0
    limited: float = 100.0

    def __post_init__(self):
        """Validate threshold ordering."""
        if self.near_limit <= 0:
            raise ValueError("thresholds.near_limit must be > 0")
        if self.limited < self.near_limit:
            raise ValueError("thresholds.limited must be >= thresholds.near_limit")


@dataclass(frozen=True)
class MeterConfig:
    """Complete meter configuration."""
    sources: Dict[str, SourceConfig] = field(default_factory=dict)
    billing: BillingConfig = field(default_factory=BillingConfig)
    thresholds: ThresholdConfig = field(default_factory=ThresholdConfig)
    pricing_file: Optional[str] = None

    def collect_options(self, system: str) -> CollectOptions:
        """Build adapter options for a source, empty if it is not configured."""
        source = self.sources.get(system)
        if source is None:
            return CollectOptions()
        return CollectOptions(
            paths=dict(source.paths),
            path_lists={key: list(values) for key, values in source.path_lists.items()},
            account_id=source.account_id,
        )

    def options_by_system(self) -> Dict[str, CollectOptions]:
        return {system: self.collect_options(system) for system in self.sources}

    def pricing_table(self) -> PricingTable:
        """Pricing table from ``pricing_file``, or the built-in table."""
        if self.pricing_file:
            return load_pricing_table(self.pricing_file)
        return PRICING_TABLE


def _read_yaml(path: str, label: str) -> Any:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"{label} file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            return yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in {label.lower()} file {path}: {e}")


def _resolve_path(value: Any, base_dir: Path, key_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{key_path}' must be a non-empty string")
    expanded = Path(os.path.expanduser(value.strip()))
    if not expanded.is_absolute():
        expanded = base_dir / expanded
    return str(expanded)


def _number(value: Any, key_path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key_path}' must be a number")
    return float(value)


def load_meter_config(path: str) -> MeterConfig:
    """Load and validate the meter configuration from a YAML file.

    Relative source paths are resolved against the directory holding the
    configuration file.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MeterConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    raw_config = _read_yaml(path, "Meter config")
    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = {'sources', 'billing', 'thresholds', 'pricing_file'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    base_dir = Path(path).resolve().parent

    sources_data = raw_config.get('sources') or {}
    if not isinstance(sources_data, dict):
        raise ValueError("'sources' must be a dictionary")

    known_systems = set(system_names())
    sources = {}
    for system, source_data in sources_data.items():
        if system not in known_systems:
            raise ValueError(f"Unknown source '{system}', expected one of: {sorted(known_systems)}")
        sources[system] = _parse_source_config(system, source_data or {}, base_dir)

    billing = _parse_billing_config(raw_config.get('billing') or {})
    thresholds = _parse_threshold_config(raw_config.get('thresholds') or {})

    pricing_file = raw_config.get('pricing_file')
    if pricing_file is not None:
        pricing_file = _resolve_path(pricing_file, base_dir, "pricing_file")

    return MeterConfig(
        sources=sources,
        billing=billing,
        thresholds=thresholds,
        pricing_file=pricing_file,
    )


def _parse_source_config(system: str, data: Any, base_dir: Path) -> SourceConfig:
    """Parse and validate one ``sources.<system>`` section.

    Args:
        system: Source system name
        data: Section content
        base_dir: Directory relative paths are resolved against

    Returns:
        Validated SourceConfig

    Raises:
        ValueError: If the section is invalid
    """
    prefix = f"sources.{system}"
    if not isinstance(data, dict):
        raise ValueError(f"'{prefix}' must be a dictionary")

    path_keys = SOURCE_PATH_KEYS.get(system, set())
    list_keys = SOURCE_PATH_LIST_KEYS.get(system, set())
    allowed_keys = path_keys | list_keys | {'account_id'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {prefix}: {unknown_keys}")

    paths = {}
    for key in path_keys & set(data.keys()):
        paths[key] = _resolve_path(data[key], base_dir, f"{prefix}.{key}")

    path_lists = {}
    for key in list_keys & set(data.keys()):
        values = data[key]
        if isinstance(values, str):
            values = [values]
        if not isinstance(values, list):
            raise ValueError(f"'{prefix}.{key}' must be a list of paths")
        path_lists[key] = [
            _resolve_path(value, base_dir, f"{prefix}.{key}[{index}]")
            for index, value in enumerate(values)
        ]

    account_id = data.get('account_id')
    if account_id is not None and (not isinstance(account_id, str) or not account_id.strip()):
        raise ValueError(f"'{prefix}.account_id' must be a non-empty string")

    return SourceConfig(
        system=system,
        paths=paths,
        path_lists=path_lists,
        account_id=account_id.strip() if account_id else None,
    )


def _parse_billing_config(data: Any) -> BillingConfig:
    if not isinstance(data, dict):
        raise ValueError("'billing' must be a dictionary")
    allowed_keys = {'block_hours', 'burn_rate_min_elapsed_seconds'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown billing keys: {unknown_keys}")

    values = {key: _number(value, f"billing.{key}") for key, value in data.items()}
    return BillingConfig(**values)


def _parse_threshold_config(data: Any) -> ThresholdConfig:
    if not isinstance(data, dict):
        raise ValueError("'thresholds' must be a dictionary")
    allowed_keys = {'near_limit', 'limited'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown threshold keys: {unknown_keys}")

    values = {key: _number(value, f"thresholds.{key}") for key, value in data.items()}
    return ThresholdConfig(**values)


def load_pricing_table(path: str) -> PricingTable:
    """Load a pricing table from a YAML file.

    Expected layout (rates are USD per million tokens)::

        models:
          claude-sonnet-4-5: {input: 3.0, output: 15.0, cache_read: 0.3, cache_create: 3.75}
        categories:
          opus: {input: 15.0, output: 75.0}
        default: {input: 3.0, output: 15.0}

    Args:
        path: Path to YAML pricing file

    Returns:
        Validated PricingTable

    Raises:
        FileNotFoundError: If the file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If a section or rate is invalid
    """
    raw = _read_yaml(path, "Pricing")
    if not raw:
        raise ValueError("Pricing file is empty")
    if not isinstance(raw, dict):
        raise ValueError("Pricing file must be a mapping")

    allowed_top_keys = {'models', 'categories', 'default'}
    unknown_keys = set(raw.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown pricing keys: {unknown_keys}")

    if 'models' not in raw:
        raise ValueError("Missing required 'models' section")

    prices = _parse_rate_section(raw['models'], "models")
    categories = _parse_rate_section(raw.get('categories') or {}, "categories")
    default = None
    if raw.get('default') is not None:
        default = _parse_model_pricing(raw['default'], "default")

    return PricingTable(prices=prices, categories=categories, default=default)


def _parse_rate_section(data: Any, section: str) -> Dict[str, ModelPricing]:
    if not isinstance(data, dict):
        raise ValueError(f"'{section}' must be a dictionary")
    return {
        str(name): _parse_model_pricing(rates, f"{section}.{name}")
        for name, rates in data.items()
    }


def _parse_model_pricing(data: Any, key_path: str) -> ModelPricing:
    """Parse and validate one rate entry.

    Raises:
        ValueError: If keys are unknown or missing, or a rate is negative
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{key_path}' must be a dictionary")

    unknown_keys = set(data.keys()) - set(_RATE_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown keys in {key_path}: {unknown_keys}")
    missing = _REQUIRED_RATE_KEYS - set(data.keys())
    if missing:
        raise ValueError(f"Missing required rates in {key_path}: {sorted(missing)}")

    rates = {}
    for key, attribute in _RATE_KEYS.items():
        if key not in data:
            continue
        value = _number(data[key], f"{key_path}.{key}")
        if value < 0:
            raise ValueError(f"'{key_path}.{key}' must be >= 0")
        rates[attribute] = Decimal(str(data[key]))
    return ModelPricing(**rates)
