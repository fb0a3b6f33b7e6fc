"""
CHAINCHECK Configuration System

Unified configuration for the proof verification engine: witness network
endpoints, ledger RPC, content store, verification thresholds and logging.

Configuration Sources (in order of precedence):
    1. Environment variables (CHAINCHECK_*)
    2. Runtime overrides
    3. User config file (~/.chaincheck/config.yaml)
    4. Project config file (./chaincheck.yaml)
    5. Default values

Endpoint path variants are configuration, not code. Each list is tried in
order by the endpoint cascade, so reordering or adding a deployment-specific
path never needs a code change.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

T = TypeVar("T")


class ConfigError(Exception):
    """Configuration error."""
    pass


class ConfigValidationError(ConfigError):
    """Configuration validation error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    validation, and masking of secrets.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    secret: bool = False  # Masked in exports
    _value: Optional[T] = field(default=None, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])

        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value!r}")

        self._value = value

    def reset(self) -> None:
        """Drop any runtime or file override."""
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        try:
            return self._parse(value)
        except ValueError as e:
            raise ConfigValidationError(f"Invalid value for {self.env_var}: {value!r}") from e

    def _parse(self, value: str) -> T:
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        elif target_type == float:
            return float(value)  # type: ignore
        elif target_type == list:
            return [part.strip() for part in value.split(",") if part.strip()]  # type: ignore
        else:
            return value  # type: ignore


def _is_timeout(x: float) -> bool:
    return 0 < x <= 120


def _is_path_list(x: Any) -> bool:
    return isinstance(x, list) and all(isinstance(p, str) and p.startswith("/") for p in x)


@dataclass
class WitnessConfig:
    """Configuration for the witness network (location diviner)."""
    disabled: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=False,
        env_var="CHAINCHECK_WITNESS_DISABLED",
        description="Skip the witness network and use ledger/degraded results",
    ))
    base_url: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="http://localhost:8086",
        env_var="CHAINCHECK_WITNESS_URL",
        description="Base URL of the witness network query service",
    ))
    api_key: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="CHAINCHECK_WITNESS_API_KEY",
        description="API key sent as the x-api-key header",
        secret=True,
    ))
    archive: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="chaincheck",
        env_var="CHAINCHECK_WITNESS_ARCHIVE",
        description="Archive the location witnesses are stored under",
    ))
    archivist_url: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="http://localhost:8080",
        env_var="CHAINCHECK_WITNESS_ARCHIVIST_URL",
        description="Archivist the witness network reads source payloads from",
    ))
    hash_query_paths: ConfigValue[list] = field(default_factory=lambda: ConfigValue(
        default=[
            "/location/query/{hash}",
            "/api/location/query/{hash}",
            "/query/{hash}",
        ],
        env_var="CHAINCHECK_WITNESS_HASH_PATHS",
        description="Path templates for querying by record hash, tried in order",
        validator=_is_path_list,
    ))
    location_query_paths: ConfigValue[list] = field(default_factory=lambda: ConfigValue(
        default=[
            "/location/query",
            "/api/location/query",
            "/query",
        ],
        env_var="CHAINCHECK_WITNESS_LOCATION_PATHS",
        description="Path templates for location/time range queries, tried in order",
        validator=_is_path_list,
    ))
    result_path: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="/location/query/{handle}",
        env_var="CHAINCHECK_WITNESS_RESULT_PATH",
        description="Path template for polling a created query by its handle",
        validator=lambda x: "{handle}" in x,
    ))
    timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=10.0,
        env_var="CHAINCHECK_WITNESS_TIMEOUT",
        description="Per-request timeout for witness queries",
        validator=_is_timeout,
    ))
    poll_delay_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=0.5,
        env_var="CHAINCHECK_WITNESS_POLL_DELAY",
        description="Delay between query submission and the single result poll",
        validator=lambda x: 0 <= x <= 10,
    ))
    poll_timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=5.0,
        env_var="CHAINCHECK_WITNESS_POLL_TIMEOUT",
        description="Timeout for the result poll request",
        validator=_is_timeout,
    ))
    query_window_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3600,
        env_var="CHAINCHECK_WITNESS_QUERY_WINDOW",
        description="Half-width of the time window around the claimed timestamp",
        validator=lambda x: x > 0,
    ))


@dataclass
class LedgerConfig:
    """Configuration for the ledger read API."""
    rpc_url: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="http://localhost:8545/rpc",
        env_var="CHAINCHECK_LEDGER_RPC_URL",
        description="JSON-RPC endpoint of the ledger viewer",
    ))
    method_prefix: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="xyoViewer_",
        env_var="CHAINCHECK_LEDGER_METHOD_PREFIX",
        description="Prefix prepended to ledger viewer RPC method names",
    ))
    timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=30.0,
        env_var="CHAINCHECK_LEDGER_TIMEOUT",
        description="Per-request timeout for ledger RPC calls",
        validator=_is_timeout,
    ))
    max_scan_blocks: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=100,
        env_var="CHAINCHECK_LEDGER_MAX_SCAN_BLOCKS",
        description="Upper bound on blocks examined by the block scan",
        validator=lambda x: 0 < x <= 10000,
    ))
    default_chain_depth: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=5,
        env_var="CHAINCHECK_LEDGER_CHAIN_DEPTH",
        description="Back-link hops followed when no depth is given",
        validator=lambda x: 0 <= x <= 1000,
    ))


@dataclass
class ContentStoreConfig:
    """Configuration for the content-addressed payload store (archivist)."""
    disabled: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=False,
        env_var="CHAINCHECK_CONTENT_STORE_DISABLED",
        description="Treat every payload lookup as unavailable",
    ))
    base_url: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="http://localhost:8080",
        env_var="CHAINCHECK_CONTENT_STORE_URL",
        description="Base URL of the content store",
    ))
    payload_paths: ConfigValue[list] = field(default_factory=lambda: ConfigValue(
        default=[
            "/get/{hash}",
            "/archivist/get/{hash}",
            "/api/v1/huri/{hash}/tuple",
            "/api/v1/huri/{hash}",
            "/huri/{hash}/tuple",
            "/huri/{hash}",
        ],
        env_var="CHAINCHECK_CONTENT_STORE_PATHS",
        description="Path templates for payload lookup by hash, tried in order",
        validator=_is_path_list,
    ))
    timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=10.0,
        env_var="CHAINCHECK_CONTENT_STORE_TIMEOUT",
        description="Per-request timeout for content store lookups",
        validator=_is_timeout,
    ))
    anchored_schema: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="network.xyo.chaincheck",
        env_var="CHAINCHECK_ANCHORED_SCHEMA",
        description="Payload schema whose hash is anchored on the ledger",
    ))


@dataclass
class VerificationConfig:
    """Configuration for location verification."""
    location_match_radius_meters: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=100.0,
        env_var="CHAINCHECK_MATCH_RADIUS",
        description="Maximum distance for a claimed location to match",
        validator=lambda x: x > 0,
    ))
    ledger_corroboration: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=False,
        env_var="CHAINCHECK_LEDGER_CORROBORATION",
        description="Derive a result from signed ledger records when the witness network has no nodes",
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="CHAINCHECK_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="CHAINCHECK_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class ChainCheckConfig:
    """
    Root configuration for CHAINCHECK.

    Aggregates all component configurations and provides
    loading/saving functionality.
    """
    witness: WitnessConfig = field(default_factory=WitnessConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    content_store: ContentStoreConfig = field(default_factory=ContentStoreConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self, mask_secrets: bool = True) -> Dict[str, Any]:
        """Convert to dictionary."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                value = obj.get()
                if obj.secret and mask_secrets and value:
                    return "***"
                return value
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        """Convert to YAML string."""
        return yaml.dump(self.to_dict(), default_flow_style=False)


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Thread-safe singleton that manages configuration lifecycle.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._config = ChainCheckConfig()
        self._config_paths: List[Path] = []
        self._initialized = True

    @property
    def config(self) -> ChainCheckConfig:
        """Get the current configuration."""
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration root must be a mapping: {path}")

        self._apply_dict(data)
        self._config_paths.append(path)

    def load_defaults(self) -> List[Path]:
        """Load default configuration files if they exist."""
        default_paths = [
            Path("chaincheck.yaml"),
            Path("config/chaincheck.yaml"),
            Path.home() / ".chaincheck" / "config.yaml",
        ]

        loaded: List[Path] = []
        for path in default_paths:
            if path.exists():
                self.load_from_file(path)
                loaded.append(path)
        return loaded

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply dictionary values to configuration."""
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                path = f"{prefix}.{key}" if prefix else key
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown config key: {path}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, path)
                else:
                    raise ConfigError(f"Expected a mapping for config section: {path}")

        apply_to_config(self._config, data, "")

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not part or not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("ledger.max_scan_blocks", 250)
        """
        attr = self._resolve(path)
        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        attr.set(value)

    def get(self, path: str, mask_secrets: bool = False) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("witness.poll_delay_seconds")
        """
        def read(value: ConfigValue) -> Any:
            current = value.get()
            return "***" if mask_secrets and value.secret and current else current

        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return read(obj)
        if hasattr(obj, "__dataclass_fields__"):
            return {k: read(getattr(obj, k)) for k in obj.__dataclass_fields__}
        return obj

    def reset(self) -> None:
        """Restore defaults and forget loaded files."""
        self._config = ChainCheckConfig()
        self._config_paths = []

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value!r}")
                except (ConfigError, TypeError, ValueError) as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Export configuration schema for documentation."""
        schema: Dict[str, Any] = {"properties": {}}

        def extract_schema(obj: Any, properties: Dict[str, Any]) -> None:
            if isinstance(obj, ConfigValue):
                properties["type"] = type(obj.default).__name__
                properties["default"] = "***" if obj.secret else obj.default
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema


def get_config() -> ChainCheckConfig:
    """Get the current CHAINCHECK configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()
