"""
Scanner configuration.

Values come from defaults, an optional YAML file (SCANNER_CONFIG_FILE) and
SCANNER_* environment variables, in increasing order of precedence.
"""

import os
import re
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional, Tuple

import yaml


class ConfigError(ValueError):
    """Raised for missing or malformed scanner configuration"""


ENV_PREFIX = "SCANNER_"

DEFAULT_PROTECTED_NAMESPACES = ("kube-system", "kube-public", "monitoring")
DEFAULT_CRITICAL_LABELS = (("app.kubernetes.io/component", "monitoring"),)

# Probe patterns end up inside a shell command
_PATTERN_RE = re.compile(r"^[A-Za-z0-9._/:=-]+$")

_STRING_FIELDS = (
    "namespace_pattern",
    "main_container_annotation",
    "main_container_marker",
    "runtime_pattern",
    "agent_pattern",
    "annotation_prefix",
    "status_message",
    "log_level",
)


@dataclass(frozen=True)
class ScannerConfig:
    """Everything a scan cycle needs to decide scope and act"""
    namespace_pattern: str
    protected_namespaces: Tuple[str, ...] = DEFAULT_PROTECTED_NAMESPACES
    critical_labels: Tuple[Tuple[str, str], ...] = DEFAULT_CRITICAL_LABELS
    main_container_annotation: str = "app.kubernetes.io/main-container"
    main_container_marker: str = "main"
    runtime_pattern: str = "java"
    agent_pattern: str = "pinpoint"
    annotation_prefix: str = "pinpoint-scanner"
    status_message: str = "killed by pod-scanner"
    scan_interval: float = 60.0
    max_workers: int = 4
    request_timeout: float = 10.0
    exec_timeout: float = 15.0
    dry_run: bool = False
    log_level: str = "INFO"
    _namespace_re: Any = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        for name in _STRING_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, str):
                raise ConfigError(f"{name} must be a string, got {value!r}")

        if not self.namespace_pattern:
            raise ConfigError("namespace_pattern is required")
        try:
            compiled = re.compile(self.namespace_pattern)
        except re.error as e:
            raise ConfigError(f"Invalid namespace_pattern {self.namespace_pattern!r}: {e}")
        object.__setattr__(self, "_namespace_re", compiled)

        for name in ("runtime_pattern", "agent_pattern"):
            value = getattr(self, name)
            if not _PATTERN_RE.match(value or ""):
                raise ConfigError(f"{name} must match {_PATTERN_RE.pattern}, got {value!r}")

        if self.scan_interval <= 0:
            raise ConfigError("scan_interval must be positive")
        if self.max_workers < 1:
            raise ConfigError("max_workers must be at least 1")
        if self.request_timeout <= 0 or self.exec_timeout <= 0:
            raise ConfigError("timeouts must be positive")
        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigError(f"Unknown log_level {self.log_level!r}")

    def namespace_in_scope(self, name: str) -> bool:
        return self._namespace_re.search(name) is not None

    def is_protected_namespace(self, name: str) -> bool:
        lowered = name.lower()
        return any(ns.lower() == lowered for ns in self.protected_namespaces)

    @property
    def status_annotation(self) -> str:
        return f"{self.annotation_prefix}/status"

    @property
    def timestamp_annotation(self) -> str:
        return f"{self.annotation_prefix}/last-terminated"

    @property
    def call_timeout(self) -> float:
        """Upper bound for one blocking call, exec included"""
        return 2 * max(self.request_timeout, self.exec_timeout)


def parse_list(value: Any) -> Tuple[str, ...]:
    """Accept 'a,b,c' or a YAML list"""
    if value is None:
        return ()
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(v) for v in value]
    else:
        raise ConfigError(f"Expected a list or comma separated string, got {value!r}")
    return tuple(item.strip() for item in items if item.strip())


def parse_labels(value: Any) -> Tuple[Tuple[str, str], ...]:
    """Accept 'k=v,k2=v2', a list of 'k=v' strings or a mapping"""
    if isinstance(value, dict):
        return tuple((str(k), str(v)) for k, v in value.items())

    labels = []
    for item in parse_list(value):
        parts = item.split("=")
        if len(parts) != 2 or not parts[0]:
            raise ConfigError(f"Critical label must look like key=value, got {item!r}")
        labels.append((parts[0].strip(), parts[1].strip()))
    return tuple(labels)


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off", ""):
        return False
    raise ConfigError(f"Expected a boolean, got {value!r}")


_CONVERTERS = {
    "protected_namespaces": parse_list,
    "critical_labels": parse_labels,
    "scan_interval": float,
    "max_workers": int,
    "request_timeout": float,
    "exec_timeout": float,
    "dry_run": parse_bool,
}


def _field_names():
    return [f.name for f in fields(ScannerConfig) if f.init]


def _convert(raw: Dict[str, Any]) -> Dict[str, Any]:
    known = set(_field_names())
    converted = {}
    for key, value in raw.items():
        if key not in known:
            raise ConfigError(f"Unknown configuration key: {key}")
        converter = _CONVERTERS.get(key)
        try:
            converted[key] = converter(value) if converter else value
        except ConfigError:
            raise
        except (TypeError, ValueError):
            raise ConfigError(f"Invalid value for {key}: {value!r}")
    return converted


def load_file(path: str) -> Dict[str, Any]:
    """Read a YAML mapping of configuration keys"""
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config file {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


def load_env(environ: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    environ = os.environ if environ is None else environ
    values = {}
    for name in _field_names():
        value = environ.get(ENV_PREFIX + name.upper())
        if value is not None:
            values[name] = value
    return values


def load_config(environ: Optional[Dict[str, str]] = None) -> ScannerConfig:
    """Build the configuration from the YAML file and environment"""
    environ = os.environ if environ is None else environ
    raw: Dict[str, Any] = {}

    config_file = environ.get(ENV_PREFIX + "CONFIG_FILE")
    if config_file:
        raw.update(load_file(config_file))
    raw.update(load_env(environ))

    if not raw.get("namespace_pattern"):
        raise ConfigError(
            f"{ENV_PREFIX}NAMESPACE_PATTERN must be set to restrict which namespaces may be scaled down"
        )
    return ScannerConfig(**_convert(raw))
