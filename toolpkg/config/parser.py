"""YAML configuration parser for Toolpkg.

This module provides parsing and validation for toolpkg.yaml configuration
files. The parsed ToolpkgConfig is passed explicitly to the manifest client
and the installer; nothing here is stored globally.

Example toolpkg.yaml:

    version: 1
    channel: release
    channels:
      release: https://example.com/toolpkg/release.json
    manifest_update: daily
    lock_file: toolpkg.lock
    packages:
      - msvc@14.40.33807
      - sdk
      - id: cmake
        destination: tools
    concurrency: 8
    strict_conflicts: true
    retry:
      max_attempts: 5
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from toolpkg.core.directory import Layout, get_default_data_dir
from toolpkg.core.download import RetryPolicy, exponential_backoff
from toolpkg.core.exceptions import ConfigError
from toolpkg.core.platform import NEUTRAL, host_arch, normalize_arch
from toolpkg.toolchain.manifest import ManifestUpdate
from toolpkg.toolchain.models import PackageRequest

DEFAULT_DESTINATION = "default"


@dataclass
class RetryConfig:
    """Download retry settings."""

    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0


@dataclass
class ToolpkgConfig:
    """Complete Toolpkg configuration."""

    data_dir: Path = field(default_factory=get_default_data_dir)
    install_root: Optional[Path] = None
    cache_dir: Optional[Path] = None
    channel: str = "release"
    channels: Dict[str, str] = field(default_factory=dict)
    manifest_update: ManifestUpdate = ManifestUpdate.DAILY
    lock_file: Optional[Path] = None
    allow_reresolve: bool = True
    packages: List[PackageRequest] = field(default_factory=list)
    destination: str = DEFAULT_DESTINATION
    concurrency: int = 4
    strict_conflicts: bool = False
    arch: str = field(default_factory=host_arch)
    retry: RetryConfig = field(default_factory=RetryConfig)
    timeout: float = 30
    verify_cache_hits: bool = True

    def layout(self) -> Layout:
        """On-disk layout derived from the configured directories."""
        return Layout.from_data_dir(self.data_dir, self.install_root, self.cache_dir)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry.max_attempts,
            backoff=exponential_backoff(self.retry.backoff_base, self.retry.backoff_max),
        )


def parse_config(config_path: Path) -> ToolpkgConfig:
    """
    Parse toolpkg.yaml configuration file.

    Relative paths inside the file are resolved against the file's directory.

    Args:
        config_path: Path to toolpkg.yaml

    Returns:
        Parsed and validated configuration

    Raises:
        ConfigError: If configuration is invalid
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}") from e

    if data is None:
        raise ConfigError("Configuration file is empty")

    return config_from_dict(data, base_dir=config_path.parent)


def config_from_dict(data: dict, base_dir: Optional[Path] = None) -> ToolpkgConfig:
    """Parse and validate configuration data."""
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping")

    version = data.get("version", 1)
    if version != 1:
        raise ConfigError(f"Unsupported version: {version} (expected 1)")

    base_dir = Path(base_dir) if base_dir else Path.cwd()
    config = ToolpkgConfig()

    if "data_dir" in data:
        config.data_dir = _path(data["data_dir"], base_dir, "data_dir")
    if data.get("install_root"):
        config.install_root = _path(data["install_root"], base_dir, "install_root")
    if data.get("cache_dir"):
        config.cache_dir = _path(data["cache_dir"], base_dir, "cache_dir")
    if data.get("lock_file"):
        config.lock_file = _path(data["lock_file"], base_dir, "lock_file")

    config.channel = str(data.get("channel", config.channel))
    channels = data.get("channels", {})
    if not isinstance(channels, dict):
        raise ConfigError("channels must be a mapping of channel name to URL")
    config.channels = {str(k): str(v) for k, v in channels.items()}

    try:
        config.manifest_update = ManifestUpdate.parse(str(data.get("manifest_update", "daily")))
    except ValueError as e:
        raise ConfigError(str(e)) from e

    config.allow_reresolve = _bool(data, "allow_reresolve", True)
    config.strict_conflicts = _bool(data, "strict_conflicts", False)
    config.verify_cache_hits = _bool(data, "verify_cache_hits", True)

    config.destination = str(data.get("destination", DEFAULT_DESTINATION))
    config.packages = _parse_packages(data.get("packages", []))

    config.concurrency = _positive_int(data, "concurrency", 4)
    config.timeout = _positive_number(data, "timeout", 30)

    if "arch" in data:
        arch = normalize_arch(str(data["arch"]))
        if arch is None or arch == NEUTRAL:
            raise ConfigError(f"Invalid arch: {data['arch']} (expected x64, x86, arm or arm64)")
        config.arch = arch

    config.retry = _parse_retry(data.get("retry", {}))
    return config


def _parse_packages(data) -> List[PackageRequest]:
    if not isinstance(data, list):
        raise ConfigError("packages must be a list")

    requests = []
    seen = set()
    for item in data:
        try:
            if isinstance(item, str):
                request = PackageRequest.parse(item)
            elif isinstance(item, dict) and "id" in item:
                spec = str(item["id"])
                if item.get("version"):
                    spec += f"@{item['version']}"
                request = PackageRequest.parse(spec, item.get("destination"))
            else:
                raise ValueError(f"expected 'id[@version]' or a mapping with 'id', got {item!r}")
        except ValueError as e:
            raise ConfigError(f"Invalid package entry: {e}") from e

        if request.package_id in seen:
            raise ConfigError(f"Duplicate package: {request.package_id}")
        seen.add(request.package_id)
        requests.append(request)
    return requests


def _parse_retry(data) -> RetryConfig:
    if not isinstance(data, dict):
        raise ConfigError("retry must be a mapping")
    return RetryConfig(
        max_attempts=_positive_int(data, "max_attempts", 3),
        backoff_base=_non_negative_number(data, "backoff_base", 1.0),
        backoff_max=_non_negative_number(data, "backoff_max", 30.0),
    )


def _path(value, base_dir: Path, name: str) -> Path:
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{name} must be a non-empty path string")
    path = Path(value).expanduser()
    return path if path.is_absolute() else base_dir / path


def _bool(data: dict, key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be true or false, got {value!r}")
    return value


def _positive_int(data: dict, key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{key} must be a positive integer, got {value!r}")
    return value


def _positive_number(data: dict, key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{key} must be a positive number, got {value!r}")
    return float(value)


def _non_negative_number(data: dict, key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ConfigError(f"retry.{key} must be a non-negative number, got {value!r}")
    return float(value)
