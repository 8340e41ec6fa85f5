"""
Ledgerfold Configuration System

Typed settings grouped by component, loaded from YAML files and overridable
at runtime or through the environment.

Configuration Sources (in order of precedence):
    1. Environment variables (LEDGERFOLD_*)
    2. Runtime overrides (ConfigManager.set, CLI flags)
    3. User config file (~/.ledgerfold/config.yaml)
    4. Project config file (./ledgerfold.yaml, ./config/ledgerfold.yaml)
    5. Default values

A YAML file mirrors the section layout:

    aggregation:
      recursion_interval: 16
    distribution:
      max_attempts: 8
      reroute_window_seconds: 900

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar, Union

import yaml

from ledgerfold.observability import LOG_FORMATS, LOG_LEVELS, Layer, get_logger

T = TypeVar("T")

_log = get_logger("config_manager", Layer.CONFIG)


class ConfigError(Exception):
    """Bad configuration source or path."""


class ValidationError(ConfigError):
    """A value failed its type coercion or validator."""


@dataclass
class ConfigValue(Generic[T]):
    """
    One setting: a default, an optional environment binding, an optional
    validator and change callbacks.

    The environment always wins over a runtime override, so ``get`` reads
    the variable on every call.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[T, T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        raw = os.environ.get(self.env_var) if self.env_var else None
        if raw is not None:
            return self._from_string(raw)
        return self.default if self._value is None else self._value

    def set(self, value: Any) -> None:
        value = self._normalize(value)
        if self.validator is not None and not self.validator(value):
            raise ValidationError(f"Invalid value for config: {value!r}")
        previous = self.get()
        self._value = value
        for callback in self._callbacks:
            callback(previous, value)

    def reset(self) -> None:
        self._value = None

    def on_change(self, callback: Callable[[T, T], None]) -> None:
        self._callbacks.append(callback)

    def _normalize(self, value: Any) -> Any:
        kind = type(self.default)
        if isinstance(value, str) and kind is not str:
            try:
                return self._from_string(value)
            except ValueError as e:
                raise ValidationError(f"Invalid value for config: {value!r} ({e})") from e
        if kind is float and isinstance(value, int) and not isinstance(value, bool):
            return float(value)
        return value

    def _from_string(self, raw: str) -> T:
        kind = type(self.default)
        if kind is int:
            return int(raw)  # type: ignore[return-value]
        if kind is float:
            return float(raw)  # type: ignore[return-value]
        return raw  # type: ignore[return-value]


def _setting(
    default: Any,
    env_var: str,
    description: str,
    validator: Optional[Callable[[Any], bool]] = None,
) -> Any:
    """Dataclass field holding a fresh ConfigValue per config instance."""
    return field(default_factory=lambda: ConfigValue(default, env_var, description, validator))


def _positive(x: Any) -> bool:
    return x > 0


def _non_negative(x: Any) -> bool:
    return x >= 0


# =============================================================================
# SECTIONS
# =============================================================================

@dataclass
class TreeConfig:
    max_depth: ConfigValue[int] = _setting(
        20, "LEDGERFOLD_TREE_MAX_DEPTH",
        "Maximum tree depth; capacity is 2**max_depth leaves per epoch",
        lambda x: 1 <= x <= 40,
    )


@dataclass
class AggregationConfig:
    recursion_interval: ConfigValue[int] = _setting(
        10, "LEDGERFOLD_AGG_INTERVAL",
        "Buffered item proofs that trigger an aggregation round", _positive,
    )
    max_wait_seconds: ConfigValue[float] = _setting(
        30.0, "LEDGERFOLD_AGG_MAX_WAIT",
        "Seconds the oldest buffered proof may wait before a round is forced", _positive,
    )
    stale_retry_limit: ConfigValue[int] = _setting(
        3, "LEDGERFOLD_AGG_STALE_RETRIES",
        "Attempts per round when the tree root moves during proving", _positive,
    )
    timer_poll_seconds: ConfigValue[float] = _setting(
        1.0, "LEDGERFOLD_AGG_POLL",
        "Polling interval of the background aggregation timer", _positive,
    )


@dataclass
class AnchorConfig:
    max_retry_attempts: ConfigValue[int] = _setting(
        3, "LEDGERFOLD_ANCHOR_MAX_RETRIES", "Maximum anchor submission attempts", _positive,
    )
    base_delay_seconds: ConfigValue[float] = _setting(
        0.5, "LEDGERFOLD_ANCHOR_BASE_DELAY", "Base backoff delay between anchor attempts", _non_negative,
    )
    max_delay_seconds: ConfigValue[float] = _setting(
        30.0, "LEDGERFOLD_ANCHOR_MAX_DELAY", "Backoff cap between anchor attempts", _non_negative,
    )
    timeout_seconds: ConfigValue[float] = _setting(
        10.0, "LEDGERFOLD_ANCHOR_TIMEOUT", "Deadline for a single anchor gateway call", _positive,
    )


@dataclass
class DistributionConfig:
    max_attempts: ConfigValue[int] = _setting(
        5, "LEDGERFOLD_DIST_MAX_ATTEMPTS", "Delivery attempts before a job is dead-lettered", _positive,
    )
    base_delay_seconds: ConfigValue[float] = _setting(
        1.0, "LEDGERFOLD_DIST_BASE_DELAY", "Base delay for exponential delivery backoff", _non_negative,
    )
    max_delay_seconds: ConfigValue[float] = _setting(
        300.0, "LEDGERFOLD_DIST_MAX_DELAY", "Delivery backoff cap", _non_negative,
    )
    jitter_factor: ConfigValue[float] = _setting(
        0.5, "LEDGERFOLD_DIST_JITTER",
        "Random jitter as a fraction of the backoff delay (0-1)",
        lambda x: 0 <= x <= 1,
    )
    reroute_window_seconds: ConfigValue[float] = _setting(
        600.0, "LEDGERFOLD_DIST_REROUTE_WINDOW",
        "Length of the batched low-cost window for rerouted jobs", _positive,
    )
    max_workers: ConfigValue[int] = _setting(
        8, "LEDGERFOLD_DIST_WORKERS", "Size of the delivery worker pool", _positive,
    )
    attempt_timeout_seconds: ConfigValue[float] = _setting(
        10.0, "LEDGERFOLD_DIST_ATTEMPT_TIMEOUT", "Deadline for a single delivery attempt", _positive,
    )


@dataclass
class StorageConfig:
    backend: ConfigValue[str] = _setting(
        "memory", "LEDGERFOLD_STORAGE_BACKEND", "Storage backend (memory, file)",
        lambda x: x in ("memory", "file"),
    )
    path: ConfigValue[str] = _setting(
        "./ledgerfold-data", "LEDGERFOLD_STORAGE_PATH", "Directory for the file backend",
    )


@dataclass
class ObservabilityConfig:
    log_level: ConfigValue[str] = _setting(
        "info", "LEDGERFOLD_LOG_LEVEL", "Log level (debug, info, warning, error, critical)",
        lambda x: x in LOG_LEVELS,
    )
    log_format: ConfigValue[str] = _setting(
        "json", "LEDGERFOLD_LOG_FORMAT", "Log format (json, text)",
        lambda x: x in LOG_FORMATS,
    )


def _walk(obj: Any, prefix: str = "") -> Iterator[Tuple[str, ConfigValue]]:
    """Yield (dotted path, ConfigValue) for every setting under ``obj``."""
    for f in fields(obj):
        child = getattr(obj, f.name)
        path = f"{prefix}.{f.name}" if prefix else f.name
        if isinstance(child, ConfigValue):
            yield path, child
        elif is_dataclass(child):
            yield from _walk(child, path)


def _values(obj: Any) -> Any:
    if isinstance(obj, ConfigValue):
        return obj.get()
    return {f.name: _values(getattr(obj, f.name)) for f in fields(obj)}


@dataclass
class LedgerfoldConfig:
    """Root configuration: one section per engine component."""
    tree: TreeConfig = field(default_factory=TreeConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    anchor: AnchorConfig = field(default_factory=AnchorConfig)
    distribution: DistributionConfig = field(default_factory=DistributionConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        return _values(self)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=False)


# =============================================================================
# MANAGER
# =============================================================================

class ConfigManager:
    """
    Process-wide configuration holder.

    Thread-safe singleton; ``reset`` discards it so the next access starts
    again from defaults.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                instance = super().__new__(cls)
                instance._config = LedgerfoldConfig()
                instance._loaded_from = []
                cls._instance = instance
            return cls._instance

    @classmethod
    def reset(cls) -> None:
        with cls._lock:
            cls._instance = None

    @property
    def config(self) -> LedgerfoldConfig:
        return self._config

    @property
    def loaded_from(self) -> List[Path]:
        """Files applied so far, in load order."""
        return list(self._loaded_from)

    def load_from_file(self, path: Union[str, Path]) -> None:
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ConfigError(f"Configuration file not found: {path}") from None
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration root must be a mapping: {path}")
        self._apply(self._config, data, "")
        self._loaded_from.append(path)
        _log.info("Configuration loaded", operation="load", path=str(path))

    def load_defaults(self) -> None:
        """Apply whichever of the default config files exist, lowest precedence first."""
        for path in (
            Path("ledgerfold.yaml"),
            Path("config/ledgerfold.yaml"),
            Path.home() / ".ledgerfold" / "config.yaml",
        ):
            if not path.exists():
                continue
            try:
                self.load_from_file(path)
            except ConfigError as e:
                _log.warning("Ignoring default config", operation="load", path=str(path), error=str(e))

    def _apply(self, section: Any, values: Dict[str, Any], prefix: str) -> None:
        known = {f.name for f in fields(section)}
        for key, value in values.items():
            path = f"{prefix}.{key}" if prefix else key
            if key not in known:
                raise ConfigError(f"Unknown config key: {path}")
            target = getattr(section, key)
            if isinstance(target, ConfigValue):
                target.set(value)
            elif isinstance(value, dict):
                self._apply(target, value, path)
            else:
                raise ConfigError(f"Expected a mapping for config section: {path}")

    def _resolve(self, path: str) -> Any:
        node: Any = self._config
        for part in path.split("."):
            if not is_dataclass(node) or part not in {f.name for f in fields(node)}:
                raise ConfigError(f"Invalid config path: {path}")
            node = getattr(node, part)
        return node

    def set(self, path: str, value: Any) -> None:
        """Override one setting, e.g. ``set("aggregation.recursion_interval", 16)``."""
        target = self._resolve(path)
        if not isinstance(target, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        target.set(value)

    def get(self, path: str) -> Any:
        """Value of a setting, or a dict of values for a section path."""
        return _values(self._resolve(path))

    def validate(self) -> List[str]:
        """Effective values (environment included) that fail coercion or validation."""
        errors: List[str] = []
        for path, setting in _walk(self._config):
            try:
                value = setting.get()
            except ValueError as e:
                errors.append(f"{path}: {e}")
                continue
            if setting.validator is not None and not setting.validator(value):
                errors.append(f"{path}: validation failed for value {value!r}")
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Describe every setting: type, default, description and environment variable."""
        properties: Dict[str, Any] = {}
        for path, setting in _walk(self._config):
            section, _, name = path.rpartition(".")
            entry = {
                "type": type(setting.default).__name__,
                "default": str(setting.default),
                "description": setting.description,
            }
            if setting.env_var:
                entry["env_var"] = setting.env_var
            properties.setdefault(section, {})[name] = entry
        return {"properties": properties}


def get_config() -> LedgerfoldConfig:
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    return ConfigManager()
