"""
MYR Node Configuration

Configuration management with a YAML file, environment variables and
validation.

Configuration Sources (in order of precedence):
    1. Environment variables (MYR_*)
    2. Config file (--config, $MYR_CONFIG, or ./myr.yaml)
    3. Default values

``node_id`` deliberately has no default: a node that has not chosen its
label is rejected at startup instead of silently sharing a factory value
with every other fresh install.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, TypeVar, Union

import yaml

from myr.errors import ConfigError

T = TypeVar("T")

CONFIG_FILENAME = "myr.yaml"
NODE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$")
UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")


class ValidationError(ConfigError):
    """Configuration validation error."""


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding and validation.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var:
            env_value = os.environ.get(self.env_var, "").strip()
            if env_value:
                return self._coerce(env_value)
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if value is not None and self.validator and not self.validator(value):
            raise ValidationError(f"Invalid value for config: {value!r}")
        self._value = value

    def _coerce(self, value: str) -> T:
        target_type = type(self.default)
        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        return value  # type: ignore


def _is_node_id(value: Any) -> bool:
    return isinstance(value, str) and bool(NODE_ID_RE.match(value))


@dataclass
class MyrConfig:
    """Root configuration of one MYR node."""
    node_id: ConfigValue[Optional[str]] = field(default_factory=lambda: ConfigValue(
        default=None,
        env_var="MYR_NODE_ID",
        description="Human-chosen node label (required, no default)",
        validator=_is_node_id,
    ))
    node_name: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="MYR_NODE_NAME",
        description="Display name shown on the identity card",
    ))
    node_uuid: ConfigValue[Optional[str]] = field(default_factory=lambda: ConfigValue(
        default=None,
        description="Random secondary identifier, generated once by keygen",
        validator=lambda x: isinstance(x, str) and bool(UUID_RE.match(x)),
    ))
    db_path: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="./db/myr.db",
        env_var="MYR_DB_PATH",
        description="SQLite record store",
    ))
    keys_path: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="./keys/",
        env_var="MYR_KEYS_PATH",
        description="Directory holding <node_id>.private.pem / .public.pem files",
    ))
    export_path: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="./exports/",
        env_var="MYR_EXPORT_PATH",
        description="Directory export batches are written to",
    ))
    import_path: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="./imports/",
        env_var="MYR_IMPORT_PATH",
        description="Default directory for incoming batches",
    ))
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="warning",
        env_var="MYR_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="text",
        env_var="MYR_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))
    base_dir: Path = field(default_factory=Path.cwd)
    source_path: Optional[Path] = None

    _VALUE_FIELDS = (
        "node_id", "node_name", "node_uuid", "db_path", "keys_path",
        "export_path", "import_path", "log_level", "log_format",
    )

    def get(self, name: str) -> Any:
        attr = getattr(self, name)
        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config key: {name}")
        return attr.get()

    def set(self, name: str, value: Any) -> None:
        attr = getattr(self, name, None)
        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config key: {name}")
        attr.set(value)

    def path(self, name: str) -> Path:
        """Resolve a path-valued setting against the config file directory."""
        p = Path(str(self.get(name))).expanduser()
        if not p.is_absolute():
            p = self.base_dir / p
        return p.resolve()

    def apply_dict(self, data: Dict[str, Any]) -> None:
        for key, value in data.items():
            if key not in self._VALUE_FIELDS:
                continue
            self.set(key, value)

    def to_dict(self) -> Dict[str, Any]:
        return {k: self.get(k) for k in self._VALUE_FIELDS}

    def validate(self, names: Optional[Sequence[str]] = None) -> List[str]:
        """Return a list of validation errors (empty when usable).

        ``names`` restricts the check to those settings.
        """
        errors: List[str] = []
        for name in (self._VALUE_FIELDS if names is None else names):
            cv: ConfigValue = getattr(self, name)
            try:
                value = cv.get()
            except ValueError as e:
                errors.append(f"{name}: {e}")
                continue
            if value is not None and cv.validator and not cv.validator(value):
                errors.append(f"{name}: invalid value {value!r}")

        if (names is None or "node_id" in names) and not self.get("node_id"):
            errors.append(
                "node_id: not configured. Set node_id in myr.yaml or MYR_NODE_ID "
                "to a label unique among your peers."
            )
        return errors

    def require_valid(self, names: Optional[Sequence[str]] = None) -> "MyrConfig":
        """Fail fast when the node identity (or the named settings) is unusable."""
        errors = self.validate(names)
        if errors:
            raise ConfigError("Invalid configuration:\n  " + "\n  ".join(errors))
        return self


def _default_config_path() -> Optional[Path]:
    env = os.environ.get("MYR_CONFIG", "").strip()
    if env:
        return Path(env).expanduser()
    candidate = Path.cwd() / CONFIG_FILENAME
    if candidate.exists():
        return candidate
    return None


def load_config(path: Union[str, Path, None] = None) -> MyrConfig:
    """Load configuration from a YAML file (optional) plus environment.

    An explicitly named file must exist; the implicit ``./myr.yaml`` is only
    read when present.
    """
    config_path = Path(path).expanduser() if path else _default_config_path()
    cfg = MyrConfig()

    if config_path is None:
        return cfg

    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Malformed configuration file {config_path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file must be a mapping: {config_path}")

    cfg.base_dir = config_path.resolve().parent
    cfg.source_path = config_path.resolve()
    cfg.apply_dict(data)
    return cfg


def persist_node_uuid(cfg: MyrConfig, node_uuid: str) -> Path:
    """Write ``node_uuid`` into the config file, never replacing an existing one."""
    existing = cfg.get("node_uuid")
    if existing and existing != node_uuid:
        raise ConfigError(
            f"node_uuid is already set ({existing}); it is immutable once generated"
        )

    target = cfg.source_path or (cfg.base_dir / CONFIG_FILENAME)
    data: Dict[str, Any] = {}
    if target.exists():
        loaded = yaml.safe_load(target.read_text(encoding="utf-8"))
        if isinstance(loaded, dict):
            data = loaded
    if not data.get("node_id") and cfg.get("node_id"):
        data["node_id"] = cfg.get("node_id")
    data["node_uuid"] = node_uuid

    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(yaml.safe_dump(data, default_flow_style=False, sort_keys=False), encoding="utf-8")
    cfg.set("node_uuid", node_uuid)
    cfg.source_path = target.resolve()
    return target
