"""
Tests for toolpkg.yaml parsing.
"""

from pathlib import Path

import pytest

from toolpkg.config.parser import DEFAULT_DESTINATION, config_from_dict, parse_config
from toolpkg.core.exceptions import ConfigError
from toolpkg.toolchain.manifest import ManifestUpdate
from toolpkg.toolchain.models import PackageRequest


class TestParseConfig:
    """Test parse_config function."""

    def test_full_config(self, tmp_path):
        """Test a complete configuration file."""
        config_file = tmp_path / "toolpkg.yaml"
        config_file.write_text(
            """
version: 1
data_dir: .toolpkg
channel: preview
channels:
  preview: https://example.com/preview.json
manifest_update: always
lock_file: toolpkg.lock
packages:
  - msvc@14.40.33807
  - sdk
  - id: cmake
    version: 3.29.2
    destination: tools
concurrency: 8
strict_conflicts: true
arch: aarch64
retry:
  max_attempts: 5
  backoff_base: 0.5
"""
        )

        config = parse_config(config_file)

        assert config.data_dir == tmp_path / ".toolpkg"
        assert config.lock_file == tmp_path / "toolpkg.lock"
        assert config.channel == "preview"
        assert config.channels == {"preview": "https://example.com/preview.json"}
        assert config.manifest_update is ManifestUpdate.ALWAYS
        assert config.packages == [
            PackageRequest("msvc", "14.40.33807"),
            PackageRequest("sdk"),
            PackageRequest("cmake", "3.29.2", "tools"),
        ]
        assert config.concurrency == 8
        assert config.strict_conflicts is True
        assert config.arch == "arm64"
        assert config.retry.max_attempts == 5
        assert config.retry.backoff_base == 0.5
        assert config.retry.backoff_max == 30.0

    def test_defaults(self, tmp_path):
        """Test defaults for a minimal configuration."""
        config = config_from_dict({"version": 1}, base_dir=tmp_path)

        assert config.data_dir == tmp_path / "home"
        assert config.manifest_update is ManifestUpdate.DAILY
        assert config.destination == DEFAULT_DESTINATION
        assert config.strict_conflicts is False
        assert config.allow_reresolve is True
        assert config.lock_file is None
        assert config.packages == []

    def test_layout_and_retry_policy(self, tmp_path):
        """Test derived layout and retry policy."""
        config = config_from_dict(
            {"data_dir": str(tmp_path / "d"), "retry": {"max_attempts": 2, "backoff_base": 0}}
        )

        assert config.layout().install_root == tmp_path / "d" / "packages"
        policy = config.retry_policy()
        assert policy.max_attempts == 2
        assert policy.backoff(3) == 0

    def test_missing_file(self, tmp_path):
        """Test missing file raises ConfigError."""
        with pytest.raises(ConfigError, match="not found"):
            parse_config(tmp_path / "missing.yaml")

    def test_empty_file(self, tmp_path):
        """Test empty file raises ConfigError."""
        config_file = tmp_path / "toolpkg.yaml"
        config_file.write_text("")

        with pytest.raises(ConfigError, match="empty"):
            parse_config(config_file)

    def test_invalid_yaml(self, tmp_path):
        """Test invalid YAML raises ConfigError."""
        config_file = tmp_path / "toolpkg.yaml"
        config_file.write_text("packages: [unclosed")

        with pytest.raises(ConfigError, match="Invalid YAML"):
            parse_config(config_file)


class TestValidation:
    """Test configuration validation."""

    @pytest.mark.parametrize(
        "data,message",
        [
            ({"version": 2}, "Unsupported version"),
            ({"manifest_update": "hourly"}, "manifest update policy"),
            ({"concurrency": 0}, "concurrency"),
            ({"concurrency": True}, "concurrency"),
            ({"timeout": -1}, "timeout"),
            ({"strict_conflicts": "yes"}, "strict_conflicts"),
            ({"arch": "neutral"}, "Invalid arch"),
            ({"arch": "sparc"}, "Invalid arch"),
            ({"channels": ["a"]}, "channels"),
            ({"packages": "cmake"}, "packages must be a list"),
            ({"packages": ["cmake@latest"]}, "Invalid package entry"),
            ({"packages": ["cmake", "cmake@3.29.2"]}, "Duplicate package"),
            ({"packages": [42]}, "Invalid package entry"),
            ({"retry": {"max_attempts": 0}}, "max_attempts"),
            ({"retry": {"backoff_max": -1}}, "backoff_max"),
            ({"data_dir": ""}, "data_dir"),
        ],
    )
    def test_invalid_values(self, data, message):
        """Test invalid values raise ConfigError naming the problem."""
        with pytest.raises(ConfigError, match=message):
            config_from_dict(data, base_dir=Path("/project"))

    def test_not_a_mapping(self):
        """Test a non-mapping document is rejected."""
        with pytest.raises(ConfigError, match="mapping"):
            config_from_dict(["cmake"])

    def test_absolute_paths_kept(self, tmp_path):
        """Test absolute paths are not rebased."""
        config = config_from_dict(
            {"cache_dir": str(tmp_path / "cache")}, base_dir=Path("/project")
        )
        assert config.cache_dir == tmp_path / "cache"
