"""Exporter configuration — defaults, env vars, optional YAML file."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from iptraffic.errors import ConfigError

BACKENDS = ("iftop", "bpftrace")

_ENV_PREFIX = "IPTRAFFIC_"


@dataclass
class ExporterConfig:
    """Application-wide configuration."""

    backend: str = "iftop"
    interface: str | None = None
    duration: int = 30  # seconds; 0 runs until interrupted
    sample_interval: int = 2
    metrics_port: int | None = None  # None disables the endpoint
    metrics_host: str = "0.0.0.0"
    export_threshold: int = 1024 * 1024
    geoip_db: Path | None = None
    isp_db: Path | None = None
    bpftrace_script: Path | None = None
    conntable_freshness: float = 5.0
    cache_max_entries: int = 0  # 0 keeps every entry for the process lifetime
    public_only: bool = True
    geo_locales: list[str] = field(default_factory=lambda: ["zh-CN", "en"])
    verbose: bool = False

    @property
    def is_unbounded(self) -> bool:
        return self.duration == 0

    @classmethod
    def load(cls, path: str | Path | None = None) -> ExporterConfig:
        """Build config from an optional YAML file, then IPTRAFFIC_* env vars."""
        config = cls()
        if path is not None:
            config.update(_read_yaml(Path(path)))
        config.update(_read_env())
        return config

    def update(self, values: dict[str, Any]) -> None:
        """Apply a mapping of field name → value, skipping None."""
        known = {f.name: f for f in fields(self)}
        for key, raw in values.items():
            name = key.replace("-", "_")
            if name not in known:
                raise ConfigError(f"unknown configuration key: {key}")
            if raw is None:
                continue
            setattr(self, name, _coerce(name, raw))

    def validate(self) -> None:
        """Raise ConfigError for settings that cannot work."""
        if self.backend not in BACKENDS:
            raise ConfigError(
                f"unsupported backend {self.backend!r} (choose from {', '.join(BACKENDS)})"
            )
        if self.backend == "iftop" and not self.interface:
            raise ConfigError("the iftop backend requires a network interface (--iface)")
        if self.sample_interval <= 0:
            raise ConfigError("sample interval must be a positive number of seconds")
        if self.duration < 0:
            raise ConfigError("duration must be >= 0")
        if self.metrics_port is not None and not 1 <= self.metrics_port <= 65535:
            raise ConfigError(f"invalid metrics port: {self.metrics_port}")
        if self.export_threshold < 0:
            raise ConfigError("export threshold must be >= 0")
        if self.conntable_freshness < 0:
            raise ConfigError("connection table freshness must be >= 0")
        for label, path in (
            ("GeoIP database", self.geoip_db),
            ("ISP database", self.isp_db),
            ("bpftrace script", self.bpftrace_script),
        ):
            if path is not None and not path.is_file():
                raise ConfigError(f"{label} not found: {path}")


_PATH_FIELDS = {"geoip_db", "isp_db", "bpftrace_script"}
_INT_FIELDS = {"duration", "sample_interval", "metrics_port", "export_threshold", "cache_max_entries"}
_FLOAT_FIELDS = {"conntable_freshness"}
_BOOL_FIELDS = {"public_only", "verbose"}


def _coerce(name: str, raw: Any) -> Any:
    try:
        if name in _PATH_FIELDS:
            return Path(raw).expanduser()
        if name in _INT_FIELDS:
            return int(raw)
        if name in _FLOAT_FIELDS:
            return float(raw)
        if name in _BOOL_FIELDS:
            if isinstance(raw, str):
                return raw.strip().lower() in ("1", "true", "yes", "on")
            return bool(raw)
        if name == "geo_locales":
            if isinstance(raw, str):
                return [loc.strip() for loc in raw.split(",") if loc.strip()]
            return [str(loc) for loc in raw]
        if name == "backend":
            return str(raw).lower()
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid value for {name}: {raw!r}") from exc
    return raw


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("config YAML must be a mapping")
    return data


def _read_env() -> dict[str, Any]:
    values: dict[str, Any] = {}
    for f in fields(ExporterConfig):
        raw = os.environ.get(_ENV_PREFIX + f.name.upper())
        if raw:
            values[f.name] = raw
    return values
