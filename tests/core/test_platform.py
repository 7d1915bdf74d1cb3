"""
Unit tests for architecture detection and directory layout.
"""

from pathlib import Path
from unittest.mock import patch

import pytest

from toolpkg.core import platform as platform_module
from toolpkg.core.directory import Layout, get_default_data_dir, safe_name
from toolpkg.core.platform import NEUTRAL, arch_matches, host_arch, normalize_arch


class TestNormalizeArch:
    """Test architecture normalization."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("AMD64", "x64"),
            ("x86_64", "x64"),
            ("aarch64", "arm64"),
            ("ARM64", "arm64"),
            ("i686", "x86"),
            ("armv7l", "arm"),
            ("", NEUTRAL),
            ("neutral", NEUTRAL),
            ("sparc", None),
        ],
    )
    def test_normalize(self, value, expected):
        """Test common spellings map to canonical names."""
        assert normalize_arch(value) == expected

    def test_host_arch_unknown_machine(self):
        """Test unknown machines fall back to x64."""
        host_arch.cache_clear()
        try:
            with patch.object(platform_module.platform, "machine", return_value="sparc"):
                assert host_arch() == "x64"
        finally:
            host_arch.cache_clear()

    def test_arch_matches(self):
        """Test neutral artifacts match every target."""
        assert arch_matches(NEUTRAL, "arm64")
        assert arch_matches("x64", "x64")
        assert not arch_matches("x86", "x64")


class TestDirectory:
    """Test data directory resolution and layout."""

    def test_default_data_dir_override(self, tmp_path, monkeypatch):
        """Test TOOLPKG_HOME overrides the default."""
        monkeypatch.setenv("TOOLPKG_HOME", str(tmp_path / "custom"))
        assert get_default_data_dir() == tmp_path / "custom"

    def test_default_data_dir_home(self, monkeypatch):
        """Test the per-user default on POSIX."""
        monkeypatch.delenv("TOOLPKG_HOME", raising=False)
        monkeypatch.setattr("toolpkg.core.directory.os.name", "posix")
        assert get_default_data_dir() == Path.home() / ".toolpkg"

    def test_safe_name(self):
        """Test safe names are kept and unsafe ones are replaced and tagged."""
        assert safe_name("cmake-3.29.2+1") == "cmake-3.29.2+1"
        assert safe_name("win/sdk:10") == "win_sdk_10~8789ef9e"
        assert safe_name("..") == "..~5ec1f7e7"

    def test_safe_name_distinct(self):
        """Test ids differing only in unsafe characters get distinct roots."""
        layout = Layout.from_data_dir(Path("/data"))

        assert safe_name("a b") != safe_name("a_b")
        assert safe_name("a b") != safe_name("a:b")
        assert layout.package_root("a b", "1") != layout.package_root("a_b", "1")

    def test_layout(self, tmp_path):
        """Test layout paths derived from the data directory."""
        layout = Layout.from_data_dir(tmp_path, cache_dir=tmp_path / "elsewhere")

        assert layout.install_root == tmp_path / "packages"
        assert layout.cache_dir == tmp_path / "elsewhere"
        assert layout.staging_dir == tmp_path / "packages" / ".staging"
        assert layout.package_root("cmake", "3.29.2") == tmp_path / "packages" / "cmake-3.29.2"

        layout.ensure()
        assert layout.lock_dir.is_dir()
        assert layout.manifest_dir.is_dir()
