"""
Scan configuration.

Values come from three layers, lowest first: built-in defaults (with the
timing template filling timeout and concurrency), an optional YAML file, and
command-line arguments that were given explicitly.
"""

import os
from dataclasses import dataclass, field, fields
from typing import List, Optional

import yaml

from models import ConfigError
from validators import parse_bool


DEFAULT_PORTS = "1-1024"
DEFAULT_TIMING = 4
DEFAULT_PROBES_FILE = os.path.join(os.path.dirname(os.path.abspath(__file__)), "data", "service-probes")

TIMING_PROFILES = {
    0: {"concurrency": 25, "timeout_ms": 3000},
    1: {"concurrency": 60, "timeout_ms": 2000},
    2: {"concurrency": 120, "timeout_ms": 1200},
    3: {"concurrency": 250, "timeout_ms": 800},
    4: {"concurrency": 450, "timeout_ms": 450},
    5: {"concurrency": 700, "timeout_ms": 250},
}


@dataclass
class ScanConfig:
    targets: List[str] = field(default_factory=list)
    ports: str = DEFAULT_PORTS
    tcp: bool = True
    udp: bool = False
    timing: int = DEFAULT_TIMING
    timeout_ms: Optional[int] = None
    service_timeout_ms: int = 5000
    concurrency: Optional[int] = None
    service_detection: bool = False
    probes_file: str = DEFAULT_PROBES_FILE
    script: Optional[str] = None
    scripts_dir: Optional[str] = None
    ports_explicitly_specified: bool = False
    show_all: bool = False
    json_out: Optional[str] = None
    verbose: bool = False

    def apply_timing_profile(self):
        if self.timing not in TIMING_PROFILES:
            raise ConfigError("timing must be between 0 and 5")
        selected = TIMING_PROFILES[self.timing]
        if self.timeout_ms is None:
            self.timeout_ms = selected["timeout_ms"]
        if self.concurrency is None:
            self.concurrency = selected["concurrency"]

    def validate(self):
        self.apply_timing_profile()
        if self.concurrency < 1:
            raise ConfigError("concurrency must be >= 1")
        if self.timeout_ms <= 0:
            raise ConfigError("timeout must be > 0")
        if self.service_timeout_ms <= 0:
            raise ConfigError("service timeout must be > 0")
        if not self.tcp and not self.udp:
            raise ConfigError("at least one of TCP or UDP scanning must be enabled")
        if not self.targets:
            raise ConfigError("no target specified")
        return self

    @property
    def only_open(self):
        return not (self.show_all or self.ports_explicitly_specified)


BOOL_KEYS = {f.name for f in fields(ScanConfig) if f.type is bool}
INT_KEYS = {"timing", "timeout_ms", "service_timeout_ms", "concurrency"}
# Short names accepted in config files.
KEY_ALIASES = {"target": "targets", "timeout": "timeout_ms", "threads": "concurrency", "json": "json_out"}


def _coerce(key, value):
    if key == "targets":
        if isinstance(value, str):
            return [value]
        if not isinstance(value, list):
            raise ConfigError("targets must be a string or a list")
        return [str(v) for v in value]
    if key in BOOL_KEYS:
        return parse_bool(value)
    if key in INT_KEYS:
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{key} must be an integer, got {value!r}") from exc
    if key in ("ports", "probes_file"):
        if value is None:
            raise ConfigError(f"{key} must not be empty")
        return str(value)
    return None if value is None else str(value)


def merge_values(config, values):
    known = {f.name for f in fields(ScanConfig)}
    for raw_key, value in values.items():
        key = KEY_ALIASES.get(raw_key, raw_key)
        if key not in known:
            continue  # unknown keys are ignored
        setattr(config, key, _coerce(key, value))
    if "ports" in values:
        config.ports_explicitly_specified = True
    return config


def load_config_file(path, base=None):
    config = base if base is not None else ScanConfig()
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise ConfigError(f"Could not read config file '{path}': {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error parsing '{path}': {exc}") from exc

    if data is None:
        return config
    if not isinstance(data, dict):
        raise ConfigError(f"Config file '{path}' must contain a mapping")
    return merge_values(config, data)
