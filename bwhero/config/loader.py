"""
Config Loader — Build the proxy configuration once at startup.

Supports two sources:
1. Config file: YAML file named by BWHERO_CONFIG (or passed explicitly)
2. Individual env vars: one env var per setting (override the file)

## Usage

    # Option 1: config file
    export BWHERO_CONFIG=/etc/bwhero.yaml      # min_compress_length: 2048 ...

    # Option 2: individual keys
    export MIN_COMPRESS_LENGTH=2048
    export MODERN_FORMAT=webp

The resulting ProxyConfig is immutable and passed explicitly to every
component; nothing in the pipeline reads os.environ.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from ..validation import ConfigurationError, clamp

logger = logging.getLogger(__name__)

# ── Defaults ─────────────────────────────────────────────────

MIN_COMPRESS_LENGTH = 1024             # bytes, below this never transcode
MIN_QUALITY = 10
MAX_QUALITY = 100
DEFAULT_QUALITY = 40
MODERN_FORMAT = "avif"                 # output for the webp/avif preference
MAX_BUFFER_SIZE = 10 * 1024 * 1024     # bytes, largest origin body we buffer
MAX_DIMENSION = 16383                  # px, WebP container limit
TRANSCODE_TIMEOUT = 30.0               # seconds, per codec step
FETCH_TIMEOUT = 10.0                   # seconds
STREAM_THRESHOLD = 2 * 1024 * 1024     # bytes, encoded output spills to disk above this

MODERN_FORMATS = ("avif", "webp")


@dataclass(frozen=True)
class ProxyConfig:
    """All process-wide settings in one place. Read-only after startup."""

    min_compress_length: int = MIN_COMPRESS_LENGTH
    min_quality: int = MIN_QUALITY
    max_quality: int = MAX_QUALITY
    default_quality: int = DEFAULT_QUALITY
    modern_format: str = MODERN_FORMAT
    max_buffer_size: int = MAX_BUFFER_SIZE
    max_dimension: int = MAX_DIMENSION
    transcode_timeout: float = TRANSCODE_TIMEOUT
    fetch_timeout: float = FETCH_TIMEOUT
    transcode_concurrency: int = 0     # 0 → os.cpu_count()
    stream_threshold: int = STREAM_THRESHOLD
    login: Optional[str] = None
    password: Optional[str] = None

    def __post_init__(self) -> None:
        if self.min_compress_length < 0:
            raise ConfigurationError("min_compress_length must be >= 0")
        if not (1 <= self.min_quality <= self.max_quality <= 100):
            raise ConfigurationError(
                f"quality bounds must satisfy 1 <= min <= max <= 100 "
                f"(got {self.min_quality}..{self.max_quality})"
            )
        if self.modern_format not in MODERN_FORMATS:
            raise ConfigurationError(
                f"modern_format must be one of {MODERN_FORMATS}, got {self.modern_format!r}"
            )
        for name in ("max_buffer_size", "max_dimension", "stream_threshold"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be > 0")
        for name in ("transcode_timeout", "fetch_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be > 0")
        if self.transcode_concurrency < 0:
            raise ConfigurationError("transcode_concurrency must be >= 0")

    @property
    def min_transparent_compress_length(self) -> int:
        """PNG/GIF below this are not worth a lossy JPEG re-encode."""
        return self.min_compress_length * 50

    @property
    def apng_threshold_length(self) -> int:
        """Animated PNGs below this are forwarded untouched."""
        return self.min_compress_length * 100

    @property
    def concurrency(self) -> int:
        """Effective number of parallel transcodes."""
        return self.transcode_concurrency or (os.cpu_count() or 1)

    @property
    def auth_enabled(self) -> bool:
        return bool(self.login and self.password)

    def clamp_quality(self, quality: int) -> int:
        """Clamp a quality value into the configured bounds."""
        return clamp(int(quality), self.min_quality, self.max_quality)

    def to_dict(self) -> Dict[str, Any]:
        """Settings as a dict, with secrets masked."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        if data.get("password"):
            data["password"] = "***"
        return data


# env var → (field, parser)
_ENV_VARS = {
    "MIN_COMPRESS_LENGTH": ("min_compress_length", int),
    "MIN_QUALITY": ("min_quality", int),
    "MAX_QUALITY": ("max_quality", int),
    "DEFAULT_QUALITY": ("default_quality", int),
    "MODERN_FORMAT": ("modern_format", lambda v: v.strip().lower()),
    "MAX_BUFFER_SIZE": ("max_buffer_size", int),
    "MAX_DIMENSION": ("max_dimension", int),
    "TRANSCODE_TIMEOUT": ("transcode_timeout", float),
    "FETCH_TIMEOUT": ("fetch_timeout", float),
    "TRANSCODE_CONCURRENCY": ("transcode_concurrency", int),
    "STREAM_THRESHOLD": ("stream_threshold", int),
    "LOGIN": ("login", str),
    "PASSWORD": ("password", str),
}


def load_config(
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ProxyConfig:
    """
    Load configuration from a YAML file and/or individual env vars.

    Priority:
    1. Individual environment variables
    2. YAML file (explicit path, else BWHERO_CONFIG)
    3. Built-in defaults

    Raises:
        ConfigurationError: If a value cannot be parsed or is out of range
    """
    env = os.environ if environ is None else environ
    values: Dict[str, Any] = {}

    config_path = path or (Path(env["BWHERO_CONFIG"]) if env.get("BWHERO_CONFIG") else None)
    if config_path is not None:
        values.update(_load_config_file(config_path))
        logger.info(f"Loaded configuration from {config_path}")

    for var, (name, parse) in _ENV_VARS.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        try:
            values[name] = parse(raw)
        except ValueError:
            raise ConfigurationError(f"{var}: cannot parse {raw!r}")

    if "default_quality" not in values:
        # Keep the default inside whatever bounds were configured
        low = values.get("min_quality", MIN_QUALITY)
        high = values.get("max_quality", MAX_QUALITY)
        values["default_quality"] = clamp(DEFAULT_QUALITY, low, high)

    return ProxyConfig(**values)


def _load_config_file(path: Path) -> Dict[str, Any]:
    """Parse a YAML config file into ProxyConfig field values."""
    try:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    except FileNotFoundError:
        raise ConfigurationError(f"Config file not found: {path}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")

    known = {f.name for f in fields(ProxyConfig)}
    values = {}
    for key, value in data.items():
        name = str(key).lower()
        if name not in known:
            logger.warning(f"Ignoring unknown config key {key!r} in {path}")
            continue
        values[name] = value
    return values


def with_overrides(config: ProxyConfig, **overrides: Any) -> ProxyConfig:
    """Return a copy of config with some fields replaced (validated again)."""
    return replace(config, **overrides)
